"""Progress log - the hand-off artifact between iterations.

A plain markdown file the next iteration reads as context. Entries are only
ever appended:

    ## [2026-01-05 14:03:11] US-002 (iteration 4)
    - Added login form
    - Wired validation
    Files changed:
    - src/login.py
    Learnings:
    - Forms live in src/forms/
    ---
"""

from pathlib import Path

from .models import ProgressEntry


SEPARATOR = "---"


def format_entry(entry: ProgressEntry) -> str:
    """Render an entry as markdown."""
    timestamp = entry.timestamp.strftime("%Y-%m-%d %H:%M:%S")
    lines = [f"## [{timestamp}] {entry.story_id} (iteration {entry.iteration})"]

    lines.extend(f"- {item}" for item in entry.summary or ["No summary"])

    lines.append("Files changed:")
    lines.extend(f"- {path}" for path in entry.files_changed or ["(none)"])

    lines.append("Learnings:")
    lines.extend(f"- {item}" for item in entry.learnings or ["(none)"])

    lines.append(SEPARATOR)
    return "\n".join(lines) + "\n\n"


class ProgressTracker:
    """Appends progress entries and reads recent context back."""

    def __init__(self, progress_file: Path):
        self.progress_file = Path(progress_file)

    def read_progress(self) -> str:
        """Read the full progress file."""
        if not self.progress_file.exists():
            return ""
        return self.progress_file.read_text(encoding="utf-8")

    def read_recent(self, lines: int = 50) -> str:
        """Read only recent progress for context efficiency."""
        content = self.read_progress()
        all_lines = content.strip().split("\n")

        if len(all_lines) <= lines:
            return content

        return "\n".join(["[... earlier progress truncated ...]\n"] + all_lines[-lines:])

    def append_entry(self, entry: ProgressEntry) -> None:
        """Append a progress entry to the file."""
        self.progress_file.parent.mkdir(parents=True, exist_ok=True)
        with open(self.progress_file, "a", encoding="utf-8") as f:
            f.write(format_entry(entry))

    def restore(self, content: str) -> None:
        """Put back content read earlier, dropping entries appended since."""
        self.progress_file.write_text(content, encoding="utf-8")
