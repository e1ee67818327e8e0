"""Ralph: supervisor for autonomous coding-agent sessions.

Drives an external coding agent iteration by iteration through a PRD's
stories, watching token usage and failures, and checkpointing work to git.
"""

__version__ = "0.1.0"

from .exceptions import (
    ConfigError,
    ConfigErrorKind,
    GitError,
    InvalidStateError,
    ParseError,
    ProcessError,
    RalphError,
    SessionNotFoundError,
)
from .models import (
    ErrorCategory,
    Guardrail,
    Prd,
    Session,
    SessionConfig,
    SessionState,
    SessionStatus,
    Signal,
    Story,
    TokenUsage,
)
from .session_manager import SessionManager

__all__ = [
    "__version__",
    "ConfigError",
    "ConfigErrorKind",
    "ErrorCategory",
    "GitError",
    "Guardrail",
    "InvalidStateError",
    "ParseError",
    "Prd",
    "ProcessError",
    "RalphError",
    "Session",
    "SessionConfig",
    "SessionManager",
    "SessionNotFoundError",
    "SessionState",
    "SessionStatus",
    "Signal",
    "Story",
    "TokenUsage",
]
