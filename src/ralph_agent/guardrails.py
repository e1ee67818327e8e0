"""Guardrail store: lessons ("signs") learned from failed iterations.

Guardrails live in ``.ralph/guardrails.md``, one markdown section per sign.
The file is append-only; compaction is left to humans.

    ## Sign: Run tests before commit

    - **Timestamp**: 2026-01-05T14:03:11.482913
    - **Session**: 6f1c...
    - **Lesson**: Always run `npm test` first
"""

import logging
from datetime import datetime
from pathlib import Path
from typing import Optional

from .models import Guardrail, Session
from .workspace import Workspace


logger = logging.getLogger(__name__)

HEADER = "# Ralph Guardrails (Signs)\n\n"
SIGN_PREFIX = "## Sign:"


def _title_for(text: str) -> str:
    first = text.strip().splitlines()[0] if text.strip() else "Lesson"
    return first if len(first) <= 60 else first[:57] + "..."


class GuardrailStore:
    """Append-only guardrail file for one project."""

    def __init__(self, project_path: Path | str):
        self.workspace = Workspace(project_path)
        self.path = self.workspace.guardrails_file

    @classmethod
    def for_session(cls, session: Session) -> "GuardrailStore":
        return cls(session.project_path)

    def append_guardrail(
        self,
        session: Session,
        text: str,
        title: Optional[str] = None,
    ) -> Guardrail:
        """Append a timestamped lesson for ``session``."""
        guardrail = Guardrail(
            session_id=session.id,
            project_path=session.project_path,
            text=text.strip(),
            title=title or _title_for(text),
        )

        lesson_lines = guardrail.text.splitlines() or [""]
        block = [
            f"{SIGN_PREFIX} {guardrail.title}",
            "",
            f"- **Timestamp**: {guardrail.timestamp.isoformat()}",
            f"- **Session**: {guardrail.session_id}",
            f"- **Lesson**: {lesson_lines[0]}",
        ]
        block.extend(f"  {line}" for line in lesson_lines[1:])

        self.path.parent.mkdir(parents=True, exist_ok=True)
        if not self.path.exists():
            self.path.write_text(HEADER, encoding="utf-8")
        with open(self.path, "a", encoding="utf-8") as f:
            f.write("\n".join(block) + "\n\n")

        logger.info("Recorded guardrail for session %s: %s", session.id, guardrail.title)
        return guardrail

    def load_guardrails(self, session: Optional[Session] = None) -> list[Guardrail]:
        """All guardrails of the project, in insertion order."""
        if not self.path.exists():
            return []
        project_path = session.project_path if session else str(self.workspace.project_path)
        return self.parse(self.path.read_text(encoding="utf-8"), project_path)

    def format_for_prompt(self, limit: Optional[int] = None) -> str:
        """Markdown block with the most recent guardrails, '' when none."""
        guardrails = self.load_guardrails()
        if limit is not None:
            guardrails = guardrails[-limit:] if limit > 0 else []
        if not guardrails:
            return ""

        lines = [
            "# Guardrails (Signs to Follow)",
            "",
            "The following guardrails were learned from previous iterations. Please follow them:",
            "",
        ]
        for guardrail in guardrails:
            lines.append(f"## {guardrail.title}")
            lines.append(guardrail.text)
            lines.append("")
        return "\n".join(lines)

    @staticmethod
    def parse(content: str, project_path: str = "") -> list[Guardrail]:
        """Parse the guardrails file.

        Also reads the older Trigger / Instruction / Added after layout.
        """
        guardrails: list[Guardrail] = []
        current: Optional[dict] = None
        last_key: Optional[str] = None

        def flush() -> None:
            if current is None:
                return
            text = current.get("lesson")
            if text is None and "instruction" in current:
                text = current["instruction"]
                if current.get("trigger"):
                    text = f"When {current['trigger']}: {text}"
            if text is None:
                logger.warning("Skipping guardrail without a lesson: %s", current.get("title"))
                return
            timestamp = datetime.now()
            if current.get("timestamp"):
                try:
                    timestamp = datetime.fromisoformat(current["timestamp"])
                except ValueError:
                    logger.warning("Unreadable guardrail timestamp %r, using now", current["timestamp"])
            guardrails.append(Guardrail(
                timestamp=timestamp,
                session_id=current.get("session") or current.get("added after") or "",
                project_path=project_path,
                text=text,
                title=current.get("title"),
            ))

        for line in content.splitlines():
            if line.startswith(SIGN_PREFIX):
                flush()
                current = {"title": line[len(SIGN_PREFIX):].strip()}
                last_key = None
            elif current is not None and line.startswith("- **") and "**:" in line:
                key, _, value = line[4:].partition("**:")
                last_key = key.strip().lower()
                current[last_key] = value.strip()
            elif current is not None and last_key and line.startswith("  "):
                current[last_key] += "\n" + line[2:]

        flush()
        return guardrails
