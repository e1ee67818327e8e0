"""Iteration prompt construction.

Templates live in the package ``templates/`` directory and can be overridden
per project in ``.ralph/prompts/<name>.txt``.
"""

from pathlib import Path
from typing import Optional

from .guardrails import GuardrailStore
from .models import PromptVariant, Session, Story
from .parser import STORY_COMPLETE_MARKER
from .progress import ProgressTracker
from .workspace import Workspace


PACKAGE_TEMPLATES = Path(__file__).parent / "templates"

VARIANT_PREAMBLES = {
    PromptVariant.WRAP_UP: "wrap_up",
    PromptVariant.ROTATE: "rotate",
}


class PromptBuilder:
    """Builds the prompt for one iteration of a session."""

    def __init__(self, workspace: Workspace, guardrails: Optional[GuardrailStore] = None):
        self.workspace = workspace
        self.guardrails = guardrails or GuardrailStore(workspace.project_path)
        self.progress = ProgressTracker(workspace.progress_file)

    def load_template(self, name: str) -> str:
        """Project override first, then the packaged template."""
        override = self.workspace.load_prompt_override(name)
        if override is not None:
            return override

        packaged = PACKAGE_TEMPLATES / f"{name}.txt"
        if packaged.exists():
            return packaged.read_text(encoding="utf-8")

        raise FileNotFoundError(f"Prompt template not found: {name}")

    def build(self, session: Session, story: Story, variant: PromptVariant) -> str:
        config = session.config
        body = self.load_template("iteration").format(
            project_name=session.prd.project if session.prd else self.workspace.project_path.name,
            project_path=session.project_path,
            iteration=session.current_iteration + 1,
            max_iterations=config.max_iterations,
            story_id=story.id,
            story_title=story.title,
            story_description=story.description or "(no description)",
            acceptance_criteria=self._format_acceptance_criteria(story),
            story_notes=story.notes or "(none)",
            completion_marker=STORY_COMPLETE_MARKER,
            progress_context=self.progress.read_recent(100).strip() or "(no progress yet)",
            patterns=self.workspace.read_patterns() or "(none recorded)",
            guardrails=self.guardrails.format_for_prompt(config.guardrails_in_prompt),
        ).rstrip() + "\n"

        preamble_name = VARIANT_PREAMBLES.get(variant)
        if preamble_name is None:
            return body

        preamble = self.load_template(preamble_name).format(
            iteration_tokens=session.token_usage.iteration_tokens,
            rotate_threshold=config.rotate_threshold,
        ).strip()
        return f"{preamble}\n\n---\n\n{body}"

    @staticmethod
    def _format_acceptance_criteria(story: Story) -> str:
        if not story.acceptance_criteria:
            return "- No specific criteria defined"
        return "\n".join(f"- [ ] {c}" for c in story.acceptance_criteria)
