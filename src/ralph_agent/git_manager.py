"""Git operations for supervised sessions.

Handles commits, branch selection and pull requests. Every session works on
its own project path, so calls are never shared between sessions.
"""

import logging
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from .exceptions import GitError


logger = logging.getLogger(__name__)


@dataclass
class GitStatus:
    """Current git status."""
    branch: str
    has_changes: bool
    staged_files: list[str]
    modified_files: list[str]
    untracked_files: list[str]
    last_commit_hash: Optional[str]
    last_commit_message: Optional[str]

    @property
    def changed_files(self) -> list[str]:
        return sorted(set(self.staged_files + self.modified_files + self.untracked_files))


@dataclass
class Branch:
    """A local branch."""
    name: str
    is_current: bool


class GitManager:
    """Manages git operations for the project."""

    def __init__(self, project_path: Path | str):
        self.project_path = Path(project_path)

    def _run(self, *args: str, check: bool = True) -> subprocess.CompletedProcess:
        """Run a git command.

        Raises:
            GitError: If ``check`` is set and the command fails
        """
        return self._exec(["git", *args], check=check)

    def _exec(self, cmd: list[str], check: bool = True) -> subprocess.CompletedProcess:
        try:
            result = subprocess.run(
                cmd,
                cwd=self.project_path,
                capture_output=True,
                text=True,
            )
        except OSError as e:
            raise GitError(f"Failed to run {cmd[0]}: {e}", command=cmd) from e

        if check and result.returncode != 0:
            stderr = result.stderr.strip()
            raise GitError(
                f"{' '.join(cmd[:2])} failed: {stderr or result.stdout.strip()}",
                command=cmd,
                stderr=stderr,
            )
        return result

    def is_git_repo(self) -> bool:
        """Check if the project is a git repository."""
        if not self.project_path.is_dir():
            return False
        result = self._run("rev-parse", "--git-dir", check=False)
        return result.returncode == 0

    def get_status(self) -> GitStatus:
        """Get current git status."""
        branch = self.current_branch() or "main"

        status_result = self._run("status", "--porcelain", "--untracked-files=all", check=False)
        lines = status_result.stdout.splitlines()

        staged = []
        modified = []
        untracked = []

        for line in lines:
            if not line:
                continue
            status_code = line[:2]
            filename = line[3:]
            if " -> " in filename:
                filename = filename.split(" -> ", 1)[1]

            if status_code == "??":
                untracked.append(filename)
                continue
            if status_code[0] in "MADRC":
                staged.append(filename)
            if status_code[1] in "MD":
                modified.append(filename)

        last_hash = self.head()
        last_message = None
        if last_hash:
            log_result = self._run("log", "-1", "--format=%s", check=False)
            last_message = log_result.stdout.strip()

        return GitStatus(
            branch=branch,
            has_changes=bool(staged or modified or untracked),
            staged_files=staged,
            modified_files=modified,
            untracked_files=untracked,
            last_commit_hash=last_hash,
            last_commit_message=last_message
        )

    def has_changes(self) -> bool:
        result = self._run("status", "--porcelain")
        return bool(result.stdout.strip())

    def head(self) -> Optional[str]:
        """Current HEAD revision, None on an unborn branch."""
        result = self._run("rev-parse", "--verify", "--quiet", "HEAD", check=False)
        return result.stdout.strip() or None

    def stage_all(self) -> None:
        """Stage all changes."""
        self._run("add", "-A")

    def commit(self, message: str) -> Optional[str]:
        """Stage everything and commit.

        On a clean working tree nothing is committed and the current HEAD is
        returned unchanged.

        Returns:
            The resulting HEAD revision (None only for an unborn, clean repo)
        """
        if not self.has_changes():
            logger.debug("Working tree clean in %s, nothing to commit", self.project_path)
            return self.head()

        self.stage_all()
        self._run("commit", "-m", message)
        revision = self.head()
        logger.info("Committed %s: %s", (revision or "")[:8], message.splitlines()[0])
        return revision

    def current_branch(self) -> Optional[str]:
        result = self._run("branch", "--show-current", check=False)
        return result.stdout.strip() or None

    def branch_exists(self, name: str) -> bool:
        result = self._run("rev-parse", "--verify", "--quiet", f"refs/heads/{name}", check=False)
        return result.returncode == 0

    def list_branches(self) -> list[Branch]:
        result = self._run("branch", "--format=%(HEAD) %(refname:short)")
        branches = []
        for line in result.stdout.splitlines():
            if not line.strip():
                continue
            branches.append(Branch(name=line[2:].strip(), is_current=line.startswith("*")))
        return branches

    def default_branch(self) -> str:
        """Best guess at the repository's default branch."""
        result = self._run("symbolic-ref", "--quiet", "--short", "refs/remotes/origin/HEAD", check=False)
        if result.returncode == 0 and result.stdout.strip():
            return result.stdout.strip().split("/", 1)[-1]
        for candidate in ("main", "master"):
            if self.branch_exists(candidate):
                return candidate
        return self.current_branch() or "main"

    def checkout(self, name: str) -> None:
        self._run("checkout", name)

    def ensure_branch(self, name: str) -> None:
        """Check out ``name``, creating it from the default branch if missing."""
        current = self.current_branch()
        if current == name:
            return
        if self.branch_exists(name):
            logger.info("Checking out existing branch %s", name)
            self.checkout(name)
            return

        base = self.default_branch()
        if self.head() is None:
            # Unborn repository: nothing to branch from yet
            self._run("checkout", "-b", name)
        else:
            logger.info("Creating branch %s from %s", name, base)
            self._run("checkout", "-b", name, base)

    def push(self, branch: Optional[str] = None) -> None:
        if branch:
            self._run("push", "-u", "origin", branch)
        else:
            self._run("push")

    def open_pull_request(self, title: str, body: str, branch: Optional[str] = None) -> str:
        """Push the branch and open a PR with the gh CLI.

        Returns:
            URL of the new pull request
        """
        branch = branch or self.current_branch()
        if not branch:
            raise GitError("Cannot open a pull request from a detached HEAD")
        self.push(branch)
        result = self._exec([
            "gh", "pr", "create",
            "--head", branch,
            "--title", title,
            "--body", body,
        ])
        url = result.stdout.strip().splitlines()[-1] if result.stdout.strip() else ""
        logger.info("Opened pull request %s", url)
        return url
