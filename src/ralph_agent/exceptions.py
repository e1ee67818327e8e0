"""Error taxonomy for the session supervisor.

Only ConfigError, SessionNotFoundError and InvalidStateError reach API
callers. ProcessError, ParseError and GitError are absorbed by the
supervising loop and turned into state transitions.
"""

from enum import Enum
from typing import Optional

from .models import ErrorCategory


class RalphError(Exception):
    """Base class for supervisor errors."""


class ConfigErrorKind(str, Enum):
    NOT_A_GIT_REPO = "not_a_git_repo"
    PATH_NOT_FOUND = "path_not_found"
    INVALID_CONFIG = "invalid_config"


class ConfigError(RalphError):
    """Invalid project path or session configuration.

    Raised at session creation; a session that fails this never starts.
    """

    def __init__(self, kind: ConfigErrorKind, message: str):
        super().__init__(message)
        self.kind = kind


class ProcessError(RalphError):
    """Agent process failed to spawn, exited nonzero or timed out."""

    def __init__(
        self,
        message: str,
        category: ErrorCategory = ErrorCategory.EXIT_CODE,
        exit_code: Optional[int] = None,
    ):
        super().__init__(message)
        self.category = category
        self.exit_code = exit_code


class ParseError(RalphError):
    """A stream record could not be decoded."""


class GitError(RalphError):
    """A git (or gh) command failed."""

    def __init__(self, message: str, command: Optional[list[str]] = None, stderr: str = ""):
        super().__init__(message)
        self.command = command or []
        self.stderr = stderr


class SessionNotFoundError(RalphError):
    """No session with the given id is registered."""

    def __init__(self, session_id: str):
        super().__init__(f"Session not found: {session_id}")
        self.session_id = session_id


class InvalidStateError(RalphError):
    """Operation not allowed in the session's current state."""
