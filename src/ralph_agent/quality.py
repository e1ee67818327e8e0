"""Quality checks run before an iteration's work is committed.

Each configured shell command must exit 0. A failing check keeps the work
uncommitted and counts as a failed iteration.
"""

import logging
import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional


logger = logging.getLogger(__name__)

# Per-command limit
CHECK_TIMEOUT_SECONDS = 300


@dataclass
class CheckResult:
    """Result of a single quality check."""
    command: str
    passed: bool
    message: str
    details: Optional[str] = None


@dataclass
class QualityReport:
    """Aggregated results from all checks."""
    results: list[CheckResult] = field(default_factory=list)

    @property
    def passed(self) -> bool:
        return all(r.passed for r in self.results)

    @property
    def failures(self) -> list[CheckResult]:
        return [r for r in self.results if not r.passed]

    def summary(self) -> str:
        if self.passed:
            return f"{len(self.results)} quality check(s) passed"
        return "; ".join(f"{r.command}: {r.message}" for r in self.failures)


class QualityChecker:
    """Runs shell commands in the project directory."""

    def __init__(self, project_path: Path | str, timeout_seconds: int = CHECK_TIMEOUT_SECONDS):
        self.project_path = Path(project_path)
        self.timeout_seconds = timeout_seconds

    def run(self, commands: list[str]) -> QualityReport:
        """Run every command; later ones still run after a failure."""
        report = QualityReport()
        for command in commands:
            result = self._run_command(command)
            if not result.passed:
                logger.warning("Quality check failed: %s (%s)", command, result.message)
            report.results.append(result)
        return report

    def _run_command(self, command: str) -> CheckResult:
        try:
            result = subprocess.run(
                command,
                shell=True,
                cwd=self.project_path,
                capture_output=True,
                text=True,
                timeout=self.timeout_seconds,
            )
        except subprocess.TimeoutExpired:
            return CheckResult(
                command=command,
                passed=False,
                message=f"Timed out after {self.timeout_seconds} seconds"
            )
        except OSError as e:
            return CheckResult(
                command=command,
                passed=False,
                message=f"Error running command: {e}"
            )

        if result.returncode == 0:
            return CheckResult(command=command, passed=True, message="Passed")

        # Combine stdout and stderr, truncate if too long
        output = (result.stdout + result.stderr).strip()
        if len(output) > 500:
            output = output[:500] + "\n... (truncated)"

        return CheckResult(
            command=command,
            passed=False,
            message=f"Failed (exit code {result.returncode})",
            details=output
        )
