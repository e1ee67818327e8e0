"""Workspace management for the .ralph/ directory and prd.json.

Directory structure:
    <project>/
    ├── prd.json                # Stories and their passes flags
    └── .ralph/
        ├── config.json         # Optional session config overrides
        ├── progress.md         # Append-only progress log
        ├── guardrails.md       # Append-only lessons ("signs")
        ├── patterns.md         # Freeform codebase notes, optional
        ├── activity.log        # JSONL activity feed (git-ignored)
        └── prompts/            # Custom prompt overrides
"""

import json
import logging
from pathlib import Path
from typing import Any, Optional

from pydantic import ValidationError

from .models import Prd


logger = logging.getLogger(__name__)

PRD_FILE = "prd.json"
RALPH_DIR = ".ralph"


class Workspace:
    """Paths and small file helpers for one project."""

    def __init__(self, project_path: Path | str):
        self.project_path = Path(project_path).resolve()
        self.ralph_dir = self.project_path / RALPH_DIR
        self.prompts_dir = self.ralph_dir / "prompts"

        # File paths
        self.prd_file = self.project_path / PRD_FILE
        self.config_file = self.ralph_dir / "config.json"
        self.progress_file = self.ralph_dir / "progress.md"
        self.guardrails_file = self.ralph_dir / "guardrails.md"
        self.patterns_file = self.ralph_dir / "patterns.md"
        self.activity_file = self.ralph_dir / "activity.log"

    def ensure_structure(self) -> None:
        """Create .ralph/ and its seed files if they don't exist."""
        self.ralph_dir.mkdir(exist_ok=True)

        seeds = {
            self.progress_file: "# Ralph Progress Log\n\n",
            self.guardrails_file: "# Ralph Guardrails (Signs)\n\n",
            self.patterns_file: "# Codebase Patterns\n\n",
            self.activity_file: "",
            self.ralph_dir / ".gitignore": "activity.log\n",
        }
        for path, content in seeds.items():
            if not path.exists():
                path.write_text(content, encoding="utf-8")

    def exists(self) -> bool:
        return self.ralph_dir.exists()

    # =========================================================================
    # PRD
    # =========================================================================

    def load_prd(self) -> Optional[Prd]:
        """Load prd.json, None if missing.

        Raises:
            ValueError: If the file exists but is not a valid PRD
        """
        if not self.prd_file.exists():
            return None
        try:
            return Prd.model_validate_json(self.prd_file.read_text(encoding="utf-8"))
        except ValidationError as e:
            raise ValueError(f"Invalid {PRD_FILE}: {e}") from e

    def save_prd(self, prd: Prd) -> None:
        self.prd_file.write_text(prd.model_dump_json(indent=2) + "\n", encoding="utf-8")

    # =========================================================================
    # Config overrides
    # =========================================================================

    def load_config_overrides(self) -> dict[str, Any]:
        """Read .ralph/config.json, empty dict if absent or unreadable."""
        if not self.config_file.exists():
            return {}
        try:
            data = json.loads(self.config_file.read_text(encoding="utf-8"))
        except json.JSONDecodeError as e:
            logger.warning("Ignoring unreadable %s: %s", self.config_file, e)
            return {}
        if not isinstance(data, dict):
            logger.warning("Ignoring %s: expected a JSON object", self.config_file)
            return {}
        return data

    # =========================================================================
    # Pattern notes
    # =========================================================================

    def read_patterns(self) -> str:
        """Pattern notes, empty string when there are none."""
        if not self.patterns_file.exists():
            return ""
        return self.patterns_file.read_text(encoding="utf-8").strip()

    def load_prompt_override(self, name: str) -> Optional[str]:
        path = self.prompts_dir / f"{name}.txt"
        if path.exists():
            return path.read_text(encoding="utf-8")
        return None
