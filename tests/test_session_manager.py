"""Tests for SessionManager and the supervising loop.

Sessions run against real git repositories with the scripted fake agent
standing in for the agent CLI.
"""

import json
from unittest.mock import patch

import pytest

from conftest import complete_record, git, result_record
from ralph_agent.exceptions import (
    ConfigError,
    ConfigErrorKind,
    GitError,
    InvalidStateError,
    SessionNotFoundError,
)
from ralph_agent.git_manager import GitManager
from ralph_agent.models import (
    ActivityKind,
    Prd,
    SessionState,
    Signal,
    Story,
)
from ralph_agent.prompts import PromptBuilder
from ralph_agent.session_manager import SessionManager
from ralph_agent.workspace import Workspace


def completing_step(path: str = "feature.py", tokens: int = 1000) -> dict:
    """Agent run that writes a file and reports the story done."""
    return {
        "write": {path: "VALUE = 1\n"},
        "records": [
            {"type": "write", "path": path},
            {"type": "usage", "total_tokens": tokens},
            {"type": "learning", "text": f"{path} holds the feature"},
            complete_record(),
            result_record("Implemented the story"),
        ],
    }


def blocking_step() -> dict:
    """Agent run that never finishes on its own."""
    return {"records": [{"type": "usage", "total_tokens": 10}], "sleep": 60}


@pytest.fixture
def manager():
    return SessionManager()


async def create(manager, git_repo, agent_config, prd=None, **config):
    session = await manager.create_session(
        git_repo, agent_config.model_copy(update=config)
    )
    if prd is not None:
        await manager.set_prd(session.id, prd)
    return session


# =============================================================================
# Creation and validation
# =============================================================================

class TestCreateSession:
    @pytest.mark.asyncio
    async def test_creates_idle_session(self, manager, git_repo):
        session = await manager.create_session(git_repo)

        assert session.status.state == SessionState.IDLE
        assert session.current_iteration == 0
        assert session.token_usage.lifetime_tokens == 0
        assert (git_repo / ".ralph" / "progress.md").exists()
        assert manager.get_session(session.id) == session
        assert [s.id for s in manager.list_sessions()] == [session.id]

    @pytest.mark.asyncio
    async def test_missing_path(self, manager, tmp_path):
        with pytest.raises(ConfigError) as exc_info:
            await manager.create_session(tmp_path / "nope")
        assert exc_info.value.kind == ConfigErrorKind.PATH_NOT_FOUND

    @pytest.mark.asyncio
    async def test_not_a_git_repo(self, manager, tmp_path):
        plain = tmp_path / "plain"
        plain.mkdir()
        with pytest.raises(ConfigError) as exc_info:
            await manager.create_session(plain)
        assert exc_info.value.kind == ConfigErrorKind.NOT_A_GIT_REPO

    @pytest.mark.asyncio
    async def test_invalid_config(self, manager, git_repo):
        with pytest.raises(ConfigError) as exc_info:
            await manager.create_session(git_repo, {"warn_threshold": 90_000, "rotate_threshold": 80_000})
        assert exc_info.value.kind == ConfigErrorKind.INVALID_CONFIG

    @pytest.mark.asyncio
    async def test_picks_up_existing_prd(self, manager, git_repo, sample_prd):
        Workspace(git_repo).save_prd(sample_prd)
        session = await manager.create_session(git_repo)
        assert session.prd == sample_prd

    @pytest.mark.asyncio
    async def test_unknown_session(self, manager):
        with pytest.raises(SessionNotFoundError):
            manager.get_session("missing")
        with pytest.raises(SessionNotFoundError):
            await manager.start_session("missing")


class TestStartPreconditions:
    @pytest.mark.asyncio
    async def test_requires_prd(self, manager, git_repo):
        session = await manager.create_session(git_repo)
        with pytest.raises(InvalidStateError, match="PRD"):
            await manager.start_session(session.id)
        assert manager.get_session(session.id).status.state == SessionState.IDLE

    @pytest.mark.asyncio
    async def test_requires_stories(self, manager, git_repo):
        session = await manager.create_session(git_repo)
        await manager.set_prd(session.id, Prd(project="p", branch_name="b", stories=[]))
        with pytest.raises(InvalidStateError, match="empty PRD"):
            await manager.start_session(session.id)

    @pytest.mark.asyncio
    async def test_set_prd_writes_file(self, manager, git_repo, sample_prd):
        session = await manager.create_session(git_repo)
        updated = await manager.set_prd(session.id, sample_prd.model_dump())
        assert updated.prd == sample_prd
        assert Workspace(git_repo).load_prd() == sample_prd

    @pytest.mark.asyncio
    async def test_set_prd_rejects_invalid(self, manager, git_repo):
        session = await manager.create_session(git_repo)
        with pytest.raises(ConfigError):
            await manager.set_prd(session.id, {"project": "p"})


# =============================================================================
# Loop behaviour
# =============================================================================

class TestCompletion:
    @pytest.mark.asyncio
    async def test_all_stories_passing_completes_without_agent(
        self, manager, git_repo, agent_config, fake_agent
    ):
        prd = Prd(project="p", branch_name="ralph/done", stories=[
            Story(id="US-1", title="a", passes=True),
            Story(id="US-2", title="b", passes=True),
        ])
        session = await create(manager, git_repo, agent_config, prd)

        await manager.start_session(session.id)
        final = await manager.wait_for_session(session.id, timeout=15)

        assert final.status.state == SessionState.COMPLETE
        assert final.current_iteration == 0
        assert fake_agent.calls == 0

    @pytest.mark.asyncio
    async def test_runs_stories_to_completion(
        self, manager, git_repo, agent_config, fake_agent, sample_prd
    ):
        fake_agent.script(completing_step("greeting.py"), completing_step("farewell.py"))
        session = await create(manager, git_repo, agent_config, sample_prd)

        await manager.start_session(session.id)
        final = await manager.wait_for_session(session.id, timeout=30)

        assert final.status.state == SessionState.COMPLETE
        assert final.current_iteration == 2
        assert all(s.passes for s in final.prd.stories)
        assert final.token_usage.lifetime_tokens == 2000
        assert fake_agent.calls == 2
        assert "US-001 - Add greeting" in fake_agent.prompt(1)
        assert "US-002 - Add farewell" in fake_agent.prompt(2)
        assert fake_agent.args(1)[-2:] == ["--model", agent_config.execution_model]

        # Work lands on the PRD branch, one commit per completed story
        assert git(git_repo, "branch", "--show-current") == "ralph/test"
        log = git(git_repo, "log", "--format=%s").splitlines()
        assert "feat(US-001): Add greeting" in log
        assert "feat(US-002): Add farewell" in log

        # prd.json on disk has the flipped flags
        on_disk = Workspace(git_repo).load_prd()
        assert all(s.passes for s in on_disk.stories)

        progress = Workspace(git_repo).progress_file.read_text()
        assert "US-001 (iteration 1)" in progress
        assert "greeting.py" in progress
        assert "greeting.py holds the feature" in progress

        # The last entry rides along with the last story commit
        committed = git(git_repo, "show", "HEAD:.ralph/progress.md")
        assert "US-002 (iteration 2)" in committed
        assert ".ralph/progress.md" not in git(git_repo, "status", "--porcelain")

    @pytest.mark.asyncio
    async def test_story_not_done_gets_wip_commit(
        self, manager, git_repo, agent_config, fake_agent, sample_prd
    ):
        fake_agent.script(
            {"write": {"partial.py": "x = 1\n"}, "records": [result_record("halfway")]},
            completing_step("a.py"),
            completing_step("b.py"),
        )
        session = await create(manager, git_repo, agent_config, sample_prd)

        await manager.start_session(session.id)
        final = await manager.wait_for_session(session.id, timeout=30)

        assert final.status.state == SessionState.COMPLETE
        assert final.current_iteration == 3
        log = git(git_repo, "log", "--format=%s").splitlines()
        assert "wip(US-001): iteration 1" in log

    @pytest.mark.asyncio
    async def test_max_iterations(self, manager, git_repo, agent_config, fake_agent, sample_prd):
        fake_agent.script({"write": {"x.py": "1"}, "records": [result_record()]})
        session = await create(manager, git_repo, agent_config, sample_prd, max_iterations=2)

        await manager.start_session(session.id)
        final = await manager.wait_for_session(session.id, timeout=30)

        assert final.status.state == SessionState.FAILED
        assert final.status.error == "max iterations exceeded"
        assert final.current_iteration == 2

    @pytest.mark.asyncio
    async def test_explicit_branch_overrides_prd(
        self, manager, git_repo, agent_config, fake_agent, sample_prd
    ):
        fake_agent.script(completing_step("a.py"), completing_step("b.py"))
        session = await create(manager, git_repo, agent_config, sample_prd, branch_name="custom/branch")

        await manager.start_session(session.id)
        await manager.wait_for_session(session.id, timeout=30)

        assert git(git_repo, "branch", "--show-current") == "custom/branch"

    @pytest.mark.asyncio
    async def test_pull_request_failure_keeps_complete(
        self, manager, git_repo, agent_config, fake_agent
    ):
        prd = Prd(project="p", branch_name="ralph/pr", stories=[Story(id="US-1", title="a", passes=True)])
        session = await create(manager, git_repo, agent_config, prd, open_pr=True)

        await manager.start_session(session.id)
        final = await manager.wait_for_session(session.id, timeout=15)

        assert final.status.state == SessionState.COMPLETE
        assert final.pull_request_url is None
        assert final.last_error.startswith("Pull request failed")


class TestTokenSignals:
    @pytest.mark.asyncio
    async def test_warn_asks_for_wrap_up(
        self, manager, git_repo, agent_config, fake_agent, sample_prd, wait_until
    ):
        fake_agent.script(
            {"records": [{"type": "usage", "total_tokens": 72_000}, result_record()]},
            blocking_step(),
        )
        session = await create(manager, git_repo, agent_config, sample_prd)

        await manager.start_session(session.id)
        await wait_until(lambda: fake_agent.calls >= 2)
        snapshot = manager.get_session(session.id)

        assert snapshot.status.state == SessionState.RUNNING
        assert snapshot.last_signal == Signal.WARN
        assert snapshot.token_usage.iteration_tokens >= 72_000
        assert "IMPORTANT: Your context is nearly full (72000 of 80000" in fake_agent.prompt(2)
        assert "IMPORTANT" not in fake_agent.prompt(1)

        await manager.stop_session(session.id)
        final = await manager.wait_for_session(session.id, timeout=15)
        assert final.status.state == SessionState.FAILED
        assert final.status.error == "stopped by user"

    @pytest.mark.asyncio
    async def test_rotate_starts_fresh_context(
        self, manager, git_repo, agent_config, fake_agent, sample_prd, wait_until
    ):
        fake_agent.script(
            {"records": [{"type": "usage", "total_tokens": 81_000}, result_record()]},
            blocking_step(),
        )
        session = await create(manager, git_repo, agent_config, sample_prd)
        queue = manager.subscribe(session.id)

        await manager.start_session(session.id)
        await wait_until(lambda: fake_agent.calls >= 2)
        snapshot = manager.get_session(session.id)

        assert snapshot.last_signal == Signal.ROTATE
        assert snapshot.token_usage.lifetime_tokens >= 81_000
        assert snapshot.token_usage.iteration_tokens < 81_000
        assert fake_agent.prompt(2).startswith("Fresh context")

        states = []
        while not queue.empty():
            entry = queue.get_nowait()
            if entry.kind == ActivityKind.STATUS and "state" in entry.data:
                states.append(entry.data["state"])
        assert SessionState.WAITING_FOR_ROTATION.value in states

        await manager.pause_session(session.id)
        final = await manager.wait_for_session(session.id, timeout=15)
        assert final.status.state == SessionState.PAUSED


class TestGutter:
    @pytest.mark.asyncio
    async def test_identical_failures_halt(
        self, manager, git_repo, agent_config, fake_agent, sample_prd
    ):
        fake_agent.script({
            "write": {"broken.py": "oops"},
            "records": [
                {"type": "write", "path": "broken.py"},
                {"type": "error", "message": "tests failed"},
            ],
            "exit_code": 1,
        })
        session = await create(manager, git_repo, agent_config, sample_prd)
        head_before = git(git_repo, "rev-parse", "HEAD")

        await manager.start_session(session.id)
        final = await manager.wait_for_session(session.id, timeout=30)

        assert final.status.state == SessionState.GUTTER
        assert "US-001" in final.status.reason
        assert final.current_iteration == 3
        assert fake_agent.calls == 3
        assert git(git_repo, "rev-parse", "HEAD") == head_before

        guardrails = manager.get_guardrails(session.id)
        assert len(guardrails) == 3
        assert "agent_error" in guardrails[0].text
        assert "broken.py" in guardrails[0].text

    @pytest.mark.asyncio
    async def test_failing_quality_checks(
        self, manager, git_repo, agent_config, fake_agent, sample_prd
    ):
        fake_agent.script(completing_step("a.py"))
        session = await create(
            manager, git_repo, agent_config, sample_prd, quality_commands=["exit 1"]
        )

        await manager.start_session(session.id)
        final = await manager.wait_for_session(session.id, timeout=30)

        assert final.status.state == SessionState.GUTTER
        assert "quality_check" in final.status.reason
        assert not any(s.passes for s in final.prd.stories)

    @pytest.mark.asyncio
    async def test_looping_command_cuts_run_short(
        self, manager, git_repo, agent_config, fake_agent, sample_prd
    ):
        failing = {"type": "shell", "command": "pytest -x", "exit_code": 1}
        fake_agent.script({"records": [failing, failing, failing], "sleep": 60})
        session = await create(manager, git_repo, agent_config, sample_prd)

        await manager.start_session(session.id)
        final = await manager.wait_for_session(session.id, timeout=15)

        assert final.status.state == SessionState.GUTTER
        assert final.status.reason == "Command failed 3 times: pytest -x"
        assert final.current_iteration == 1
        assert fake_agent.calls == 1

        guardrails = manager.get_guardrails(session.id)
        assert len(guardrails) == 1
        assert "stuck" in guardrails[0].text

    @pytest.mark.asyncio
    async def test_reset_allows_restart(
        self, manager, git_repo, agent_config, fake_agent, sample_prd
    ):
        fake_agent.script(
            {"records": [], "exit_code": 1},
            {"records": [], "exit_code": 1},
            {"records": [], "exit_code": 1},
            completing_step("a.py"),
            completing_step("b.py"),
        )
        session = await create(manager, git_repo, agent_config, sample_prd)
        await manager.start_session(session.id)
        assert (await manager.wait_for_session(session.id, timeout=30)).status.state == SessionState.GUTTER

        with pytest.raises(InvalidStateError):
            await manager.start_session(session.id)

        reset = await manager.reset_session(session.id)
        assert reset.status.state == SessionState.PAUSED

        await manager.start_session(session.id)
        final = await manager.wait_for_session(session.id, timeout=30)
        assert final.status.state == SessionState.COMPLETE

    @pytest.mark.asyncio
    async def test_reset_requires_gutter(self, manager, git_repo):
        session = await manager.create_session(git_repo)
        with pytest.raises(InvalidStateError):
            await manager.reset_session(session.id)


# =============================================================================
# Control operations
# =============================================================================

class TestPauseStop:
    @pytest.mark.asyncio
    async def test_pause_commits_work_in_progress(
        self, manager, git_repo, agent_config, fake_agent, sample_prd, wait_until
    ):
        fake_agent.script({"write": {"draft.py": "x = 1\n"}, **blocking_step()})
        session = await create(manager, git_repo, agent_config, sample_prd)

        await manager.start_session(session.id)
        await wait_until(lambda: (git_repo / "draft.py").exists())
        await manager.pause_session(session.id)
        final = await manager.wait_for_session(session.id, timeout=15)

        assert final.status.state == SessionState.PAUSED
        assert git(git_repo, "log", "-1", "--format=%s").startswith("wip: interrupted by pause")
        assert "draft.py" in git(git_repo, "show", "--name-only", "--format=", "HEAD")
        assert fake_agent.calls == 1

    @pytest.mark.asyncio
    async def test_stop_after_pause_wins(
        self, manager, git_repo, agent_config, fake_agent, sample_prd, wait_until
    ):
        fake_agent.script(blocking_step())
        session = await create(manager, git_repo, agent_config, sample_prd)

        await manager.start_session(session.id)
        await wait_until(lambda: fake_agent.calls >= 1)
        await manager.pause_session(session.id)
        await manager.stop_session(session.id)
        final = await manager.wait_for_session(session.id, timeout=15)

        assert final.status.state == SessionState.FAILED
        assert final.status.error == "stopped by user"

    @pytest.mark.asyncio
    async def test_paused_session_can_resume(
        self, manager, git_repo, agent_config, fake_agent, sample_prd, wait_until
    ):
        fake_agent.script(blocking_step(), completing_step("a.py"), completing_step("b.py"))
        session = await create(manager, git_repo, agent_config, sample_prd)

        await manager.start_session(session.id)
        await wait_until(lambda: fake_agent.calls >= 1)
        await manager.pause_session(session.id)
        await manager.wait_for_session(session.id, timeout=15)

        resumed = await manager.start_session(session.id)
        assert resumed.status.state == SessionState.RUNNING
        final = await manager.wait_for_session(session.id, timeout=30)
        assert final.status.state == SessionState.COMPLETE

    @pytest.mark.asyncio
    async def test_set_prd_rejected_while_running(
        self, manager, git_repo, agent_config, fake_agent, sample_prd, wait_until
    ):
        fake_agent.script(blocking_step())
        session = await create(manager, git_repo, agent_config, sample_prd)
        await manager.start_session(session.id)
        await wait_until(lambda: fake_agent.calls >= 1)

        with pytest.raises(InvalidStateError):
            await manager.set_prd(session.id, sample_prd)

        await manager.stop_session(session.id)
        await manager.wait_for_session(session.id, timeout=15)

    @pytest.mark.asyncio
    async def test_start_is_idempotent_while_running(
        self, manager, git_repo, agent_config, fake_agent, sample_prd, wait_until
    ):
        fake_agent.script(blocking_step())
        session = await create(manager, git_repo, agent_config, sample_prd)
        await manager.start_session(session.id)
        await manager.start_session(session.id)
        await wait_until(lambda: fake_agent.calls >= 1)

        await manager.stop_session(session.id)
        await manager.wait_for_session(session.id, timeout=15)
        assert fake_agent.calls == 1

    @pytest.mark.asyncio
    async def test_stop_idle_session(self, manager, git_repo):
        session = await manager.create_session(git_repo)
        stopped = await manager.stop_session(session.id)
        assert stopped.status.state == SessionState.FAILED
        assert stopped.status.error == "stopped by user"

    @pytest.mark.asyncio
    async def test_pause_complete_session_rejected(
        self, manager, git_repo, agent_config, fake_agent
    ):
        prd = Prd(project="p", branch_name="b", stories=[Story(id="US-1", title="a", passes=True)])
        session = await create(manager, git_repo, agent_config, prd)
        await manager.start_session(session.id)
        await manager.wait_for_session(session.id, timeout=15)

        with pytest.raises(InvalidStateError):
            await manager.pause_session(session.id)


class TestEvict:
    @pytest.mark.asyncio
    async def test_evict_finished_session(self, manager, git_repo):
        session = await manager.create_session(git_repo)
        with pytest.raises(InvalidStateError):
            manager.evict_session(session.id)

        await manager.stop_session(session.id)
        manager.evict_session(session.id)

        with pytest.raises(SessionNotFoundError):
            manager.get_session(session.id)
        assert manager.list_sessions() == []


class TestActivity:
    @pytest.mark.asyncio
    async def test_activity_logged_and_published(
        self, manager, git_repo, agent_config, fake_agent, sample_prd
    ):
        fake_agent.script(completing_step("a.py"), completing_step("b.py"))
        session = await create(manager, git_repo, agent_config, sample_prd)
        queue = manager.subscribe(session.id)

        await manager.start_session(session.id)
        await manager.wait_for_session(session.id, timeout=30)

        kinds = set()
        while not queue.empty():
            kinds.add(queue.get_nowait().kind)
        assert {ActivityKind.STATUS, ActivityKind.COMMIT, ActivityKind.SIGNAL, ActivityKind.TOOL} <= kinds

        lines = Workspace(git_repo).activity_file.read_text().splitlines()
        records = [json.loads(line) for line in lines]
        assert all(r["session_id"] == session.id for r in records)
        assert any(r["kind"] == "commit" for r in records)

    @pytest.mark.asyncio
    async def test_read_activity(self, manager, git_repo, agent_config, fake_agent):
        prd = Prd(project="p", branch_name="ralph/act", stories=[Story(id="US-1", title="a", passes=True)])
        session = await create(manager, git_repo, agent_config, prd)
        await manager.start_session(session.id)
        await manager.wait_for_session(session.id, timeout=15)

        entries = await manager.read_activity(session.id)
        assert entries[0].message.startswith("Session created")
        assert entries[-1].data == {"state": "complete"}
        assert len(await manager.read_activity(session.id, limit=2)) == 2
        assert await manager.read_activity(session.id, limit=0) == []

    @pytest.mark.asyncio
    async def test_add_guardrail(self, manager, git_repo):
        session = await manager.create_session(git_repo)
        manager.add_guardrail(session.id, "Prefer small commits", title="Small commits")
        guardrails = manager.get_guardrails(session.id)
        assert [g.title for g in guardrails] == ["Small commits"]


class TestFaultHandling:
    @pytest.mark.asyncio
    async def test_commit_failure_pauses_and_restores_prd(
        self, manager, git_repo, agent_config, fake_agent, sample_prd
    ):
        fake_agent.script(completing_step("a.py"))
        session = await create(manager, git_repo, agent_config, sample_prd)

        with patch.object(GitManager, "commit", side_effect=GitError("index.lock exists")) as commit:
            await manager.start_session(session.id)
            final = await manager.wait_for_session(session.id, timeout=30)

        assert final.status.state == SessionState.PAUSED
        assert final.last_error == "index.lock exists"
        assert commit.call_count == 2
        assert not any(s.passes for s in final.prd.stories)
        assert not any(s.passes for s in Workspace(git_repo).load_prd().stories)
        assert "(iteration 1)" not in Workspace(git_repo).progress_file.read_text()

    @pytest.mark.asyncio
    async def test_malformed_records_do_not_fail_session(
        self, manager, git_repo, agent_config, fake_agent
    ):
        step = completing_step("a.py")
        step["records"][:0] = [
            {"type": "tool_call", "tool_call": {"shellToolCall": {"args": "ls"}}},
            {"type": "write", "path": ["a.py", "b.py"]},
            {"type": "assistant", "message": {"content": [{"type": "text", "text": None}]}},
        ]
        fake_agent.script(step)
        prd = Prd(project="p", branch_name="ralph/bad", stories=[Story(id="US-1", title="Only")])
        session = await create(manager, git_repo, agent_config, prd)

        await manager.start_session(session.id)
        final = await manager.wait_for_session(session.id, timeout=30)

        assert final.status.state == SessionState.COMPLETE
        assert final.prd.stories[0].passes

    @pytest.mark.asyncio
    async def test_unexpected_error_fails_session(
        self, manager, git_repo, agent_config, fake_agent, sample_prd
    ):
        session = await create(manager, git_repo, agent_config, sample_prd)

        with patch.object(PromptBuilder, "build", side_effect=RuntimeError("template missing")):
            await manager.start_session(session.id)
            final = await manager.wait_for_session(session.id, timeout=15)

        assert final.status.state == SessionState.FAILED
        assert final.status.error == "Internal error: template missing"
        assert fake_agent.calls == 0

    @pytest.mark.asyncio
    async def test_missing_agent_executable(self, manager, git_repo, agent_config, sample_prd, tmp_path):
        session = await create(
            manager, git_repo, agent_config, sample_prd,
            agent_command=[str(tmp_path / "no-such-agent")],
        )

        await manager.start_session(session.id)
        final = await manager.wait_for_session(session.id, timeout=15)

        assert final.status.state == SessionState.GUTTER
        assert "spawn" in final.status.reason
        assert final.current_iteration == 3
