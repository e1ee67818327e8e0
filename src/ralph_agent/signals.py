"""Threshold and loop detection for supervised sessions.

The detector is evaluated once per loop tick and yields at most one signal,
with precedence GUTTER > ROTATE > WARN. GUTTER wins over ROTATE when both
hold: a stuck session needs a human, not a fresh context.

GUTTER has two sources: repeated identical iteration failures, and loops
spotted inside the agent's stream (one shell command failing again and
again, or one file rewritten over and over). The stream checks run on every
tool event so a looping run can be cut short.
"""

import time
from collections import deque
from dataclasses import dataclass
from typing import Optional

from .models import FailureSignature, IterationRecord, Signal
from .parser import ToolEvent


# How many iteration outcomes to keep around for gutter detection
HISTORY_WINDOW = 10


@dataclass(frozen=True)
class SignalEvaluation:
    """Result of one evaluation tick."""
    signal: Optional[Signal] = None
    reason: str = ""

    def __bool__(self) -> bool:
        return self.signal is not None


class SignalDetector:
    """Classifies token usage and failure history into a signal.

    - WARN when iteration tokens >= warn_threshold
    - ROTATE when iteration tokens >= rotate_threshold
    - GUTTER when the last ``failure_count`` iterations all failed with the
      same signature (story, error category, touched files), when one shell
      command has failed ``command_failure_limit`` times, or when one file
      was written ``file_write_limit`` times within ``write_window_seconds``
    """

    def __init__(
        self,
        warn_threshold: int = 70_000,
        rotate_threshold: int = 80_000,
        failure_count: int = 3,
        window: int = HISTORY_WINDOW,
        command_failure_limit: int = 3,
        file_write_limit: int = 5,
        write_window_seconds: float = 600.0,
    ):
        self.warn_threshold = warn_threshold
        self.rotate_threshold = rotate_threshold
        self.failure_count = failure_count
        self.command_failure_limit = command_failure_limit
        self.file_write_limit = file_write_limit
        self.write_window_seconds = write_window_seconds
        self._history: deque[IterationRecord] = deque(maxlen=max(window, failure_count))
        self._warned_iterations: set[int] = set()
        self._command_failures: dict[str, int] = {}
        self._file_writes: dict[str, deque[float]] = {}
        self._stream_gutter: Optional[str] = None

    @property
    def history(self) -> list[IterationRecord]:
        return list(self._history)

    def record(self, record: IterationRecord) -> None:
        """Add the outcome of a finished iteration."""
        self._history.append(record)

    def reset_history(self) -> None:
        """Forget failures, e.g. after a human reset out of GUTTER."""
        self._history.clear()
        self._command_failures.clear()
        self._file_writes.clear()
        self._stream_gutter = None

    def observe_tool(self, event: ToolEvent, now: Optional[float] = None) -> Optional[str]:
        """Track one tool event for in-stream loops.

        Returns the gutter reason once a loop has been seen. A command that
        succeeds clears its own failure count.
        """
        if event.command and event.exit_code is not None:
            if event.exit_code == 0:
                self._command_failures.pop(event.command, None)
            else:
                count = self._command_failures.get(event.command, 0) + 1
                self._command_failures[event.command] = count
                if count >= self.command_failure_limit and self._stream_gutter is None:
                    self._stream_gutter = f"Command failed {count} times: {event.command}"

        if event.writes_file:
            now = time.monotonic() if now is None else now
            writes = self._file_writes.setdefault(event.path, deque())
            writes.append(now)
            while writes[0] <= now - self.write_window_seconds:
                writes.popleft()
            if len(writes) >= self.file_write_limit and self._stream_gutter is None:
                self._stream_gutter = (
                    f"File thrashing detected: {event.path} "
                    f"({len(writes)} writes in {self.write_window_seconds:g}s)"
                )

        return self._stream_gutter

    def should_warn(self, tokens: int) -> bool:
        return tokens >= self.warn_threshold

    def should_rotate(self, tokens: int) -> bool:
        return tokens >= self.rotate_threshold

    def gutter_signature(self) -> Optional[FailureSignature]:
        """The repeated signature if the session is stuck, else None."""
        if len(self._history) < self.failure_count:
            return None
        recent = list(self._history)[-self.failure_count:]
        first = recent[0].signature
        if first is None:
            return None
        if all(r.signature == first for r in recent[1:]):
            return first
        return None

    def evaluate(self, iteration_tokens: int) -> SignalEvaluation:
        """Evaluate all conditions together and return the highest one."""
        if self._stream_gutter is not None:
            return SignalEvaluation(Signal.GUTTER, self._stream_gutter)
        signature = self.gutter_signature()
        if signature is not None:
            return SignalEvaluation(
                Signal.GUTTER,
                f"{self.failure_count} consecutive failures with the same "
                f"signature ({signature.describe()})",
            )
        if self.should_rotate(iteration_tokens):
            return SignalEvaluation(
                Signal.ROTATE,
                f"{iteration_tokens} tokens >= rotate threshold {self.rotate_threshold}",
            )
        if self.should_warn(iteration_tokens):
            return SignalEvaluation(
                Signal.WARN,
                f"{iteration_tokens} tokens >= warn threshold {self.warn_threshold}",
            )
        return SignalEvaluation()

    def first_warning(self, iteration: int) -> bool:
        """True the first time WARN is announced for ``iteration``."""
        if iteration in self._warned_iterations:
            return False
        self._warned_iterations.add(iteration)
        return True


def format_signal(signal: Signal, detail: str = "") -> str:
    """Human-readable line for a signal."""
    if signal == Signal.WARN:
        return "WARN: Approaching token limit. Wrap up current work and commit."
    if signal == Signal.ROTATE:
        return "ROTATE: Token limit reached. Committing and starting fresh iteration."
    if signal == Signal.GUTTER:
        return f"GUTTER: Stuck state detected. {detail}".rstrip()
    if signal == Signal.COMPLETE:
        return "COMPLETE: All stories have passed!"
    return f"Story {detail} completed"
