"""Tests for iteration prompt construction."""

import pytest

from ralph_agent.guardrails import GuardrailStore
from ralph_agent.models import PromptVariant, Session
from ralph_agent.parser import STORY_COMPLETE_MARKER
from ralph_agent.prompts import PromptBuilder
from ralph_agent.workspace import Workspace


@pytest.fixture
def workspace(tmp_path):
    workspace = Workspace(tmp_path)
    workspace.ensure_structure()
    return workspace


@pytest.fixture
def session(workspace, sample_prd):
    return Session(id="sess-1", project_path=str(workspace.project_path), prd=sample_prd)


class TestPromptBuilder:
    def test_normal_prompt(self, workspace, session):
        story = session.prd.next_story()
        prompt = PromptBuilder(workspace).build(session, story, PromptVariant.NORMAL)

        assert 'project "Test Project"' in prompt
        assert "US-001 - Add greeting" in prompt
        assert "- [ ] greet() returns hello" in prompt
        assert STORY_COMPLETE_MARKER in prompt
        assert "iteration 1 of at most 20" in prompt
        assert "IMPORTANT" not in prompt

    def test_wrap_up_prompt(self, workspace, session):
        session.token_usage.add(72_000)
        prompt = PromptBuilder(workspace).build(session, session.prd.next_story(), PromptVariant.WRAP_UP)

        preamble, _, body = prompt.partition("\n\n---\n\n")
        assert "72000 of 80000 tokens" in preamble
        assert "US-001" in body

    def test_rotate_prompt(self, workspace, session):
        prompt = PromptBuilder(workspace).build(session, session.prd.next_story(), PromptVariant.ROTATE)
        assert prompt.startswith("Fresh context")

    def test_includes_guardrails_and_progress(self, workspace, session):
        GuardrailStore(workspace.project_path).append_guardrail(session, "Never edit generated files")
        workspace.progress_file.write_text("## [2026-01-01 10:00:00] US-000 (iteration 1)\n- setup\n")

        prompt = PromptBuilder(workspace).build(session, session.prd.next_story(), PromptVariant.NORMAL)

        assert "Never edit generated files" in prompt
        assert "US-000 (iteration 1)" in prompt

    def test_guardrail_limit(self, workspace, session):
        session.config.guardrails_in_prompt = 1
        store = GuardrailStore(workspace.project_path)
        store.append_guardrail(session, "old lesson")
        store.append_guardrail(session, "new lesson")

        prompt = PromptBuilder(workspace).build(session, session.prd.next_story(), PromptVariant.NORMAL)

        assert "new lesson" in prompt
        assert "old lesson" not in prompt

    def test_project_override(self, workspace, session):
        workspace.prompts_dir.mkdir(parents=True, exist_ok=True)
        (workspace.prompts_dir / "iteration.txt").write_text("Do {story_id} now.")

        prompt = PromptBuilder(workspace).build(session, session.prd.next_story(), PromptVariant.NORMAL)

        assert prompt == "Do US-001 now.\n"

    def test_missing_template(self, workspace):
        with pytest.raises(FileNotFoundError):
            PromptBuilder(workspace).load_template("no-such-template")
