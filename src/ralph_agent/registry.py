"""Process-wide table of sessions.

Each entry has its own lock, so publishing one session's state never
blocks readers of another. The mutable Session object belongs to whoever
currently drives it (the supervising loop while it runs, the manager
otherwise); readers only ever see deep-copied snapshots.
"""

import asyncio
import threading
from dataclasses import dataclass, field
from typing import Optional

from .activity import ActivityLog, ActivityWriter
from .exceptions import InvalidStateError, SessionNotFoundError
from .models import PromptVariant, Session
from .runner import CancellationToken
from .signals import SignalDetector
from .workspace import Workspace


@dataclass
class SessionEntry:
    """Registry slot for one session and its supervision state."""
    session: Session
    detector: SignalDetector
    task: Optional[asyncio.Task] = None
    token: Optional[CancellationToken] = None
    next_variant: PromptVariant = PromptVariant.NORMAL
    activity: Optional[ActivityWriter] = None
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)
    _snapshot: Optional[Session] = field(default=None, repr=False)

    def __post_init__(self) -> None:
        self.publish()

    @property
    def id(self) -> str:
        return self.session.id

    @property
    def running(self) -> bool:
        return self.task is not None and not self.task.done()

    def publish(self) -> None:
        """Make the owner's current state visible to readers."""
        self.session.touch()
        copy = self.session.snapshot()
        with self._lock:
            self._snapshot = copy

    def read(self) -> Session:
        """Immutable view as of the last publish."""
        with self._lock:
            return self._snapshot.model_copy(deep=True)


class SessionRegistry:
    """Register on creation, deregister only by evicting a finished session."""

    def __init__(self) -> None:
        self._entries: dict[str, SessionEntry] = {}
        self._lock = threading.Lock()

    def register(self, session: Session) -> SessionEntry:
        entry = SessionEntry(
            session=session,
            detector=SignalDetector(
                warn_threshold=session.config.warn_threshold,
                rotate_threshold=session.config.rotate_threshold,
                failure_count=session.config.gutter_failure_count,
                command_failure_limit=session.config.command_failure_limit,
                file_write_limit=session.config.file_write_limit,
                write_window_seconds=session.config.file_write_window_seconds,
            ),
            activity=ActivityWriter(ActivityLog(Workspace(session.project_path).activity_file)),
        )
        with self._lock:
            if session.id in self._entries:
                raise InvalidStateError(f"Session {session.id} already registered")
            self._entries[session.id] = entry
        return entry

    def get(self, session_id: str) -> SessionEntry:
        with self._lock:
            entry = self._entries.get(session_id)
        if entry is None:
            raise SessionNotFoundError(session_id)
        return entry

    def snapshot(self, session_id: str) -> Session:
        return self.get(session_id).read()

    def list_sessions(self) -> list[Session]:
        """Snapshots of all sessions, oldest first."""
        with self._lock:
            entries = list(self._entries.values())
        sessions = [e.read() for e in entries]
        sessions.sort(key=lambda s: s.created_at)
        return sessions

    def entries(self) -> list[SessionEntry]:
        with self._lock:
            return list(self._entries.values())

    def evict(self, session_id: str) -> Session:
        """Remove a terminal session.

        Raises:
            InvalidStateError: If the session is not terminal or still running
        """
        entry = self.get(session_id)
        snapshot = entry.read()
        if not snapshot.status.is_terminal or entry.running:
            raise InvalidStateError(
                f"Only finished sessions can be evicted (status: {snapshot.status})"
            )
        with self._lock:
            self._entries.pop(session_id, None)
        return snapshot

    def __contains__(self, session_id: object) -> bool:
        with self._lock:
            return session_id in self._entries

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
