"""Async supervision of the external coding-agent process.

One CursorRunner.start() call spawns one agent process and hands back an
AgentProcess handle. The handle streams decoded events, enforces the
wall-clock timeout and honours a CancellationToken; both timeout and
cancellation go through terminate -> grace period -> kill.
"""

import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass, field
from pathlib import Path
from typing import AsyncIterator, Optional, Sequence

from .exceptions import ProcessError
from .models import ErrorCategory
from .parser import (
    FailureEvent,
    ResultEvent,
    StoryCompleteEvent,
    StreamEvent,
    StreamParser,
)


logger = logging.getLogger(__name__)

# Agent records can carry whole file contents
STREAM_LIMIT_BYTES = 16 * 1024 * 1024

STDERR_TAIL_LINES = 50


class CancellationToken:
    """Cooperative cancellation flag shared by a session loop and its process."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: Optional[str] = None

    def cancel(self, reason: str = "cancelled", force: bool = False) -> None:
        """Request cancellation. ``force`` replaces the reason of an earlier request."""
        if force or not self._event.is_set():
            self.reason = reason
            self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    async def wait(self) -> None:
        await self._event.wait()


@dataclass
class RunResult:
    """Outcome of one agent invocation."""
    args: tuple[str, ...]
    exit_code: Optional[int]
    timed_out: bool = False
    cancelled: bool = False
    terminal_event: Optional[StreamEvent] = None
    story_completed: bool = False
    touched_files: list[str] = field(default_factory=list)
    learnings: list[str] = field(default_factory=list)
    total_tokens: int = 0
    stderr: str = ""
    duration_seconds: float = 0.0

    @property
    def ok(self) -> bool:
        return (
            not self.timed_out
            and not self.cancelled
            and self.exit_code == 0
            and isinstance(self.terminal_event, (ResultEvent, StoryCompleteEvent))
        )

    def raise_for_status(self) -> None:
        """Raise ProcessError if the invocation failed.

        A cancelled run is not a failure; callers check ``cancelled`` first.
        """
        if self.cancelled or self.ok:
            return
        if self.timed_out:
            raise ProcessError(
                "Agent timed out and was terminated",
                category=ErrorCategory.TIMEOUT,
                exit_code=self.exit_code,
            )
        if isinstance(self.terminal_event, FailureEvent):
            raise ProcessError(
                f"Agent reported failure: {self.terminal_event.message}",
                category=self.terminal_event.category,
                exit_code=self.exit_code,
            )
        if self.exit_code != 0:
            detail = self.stderr.strip().splitlines()[-1:] or [""]
            raise ProcessError(
                f"Agent exited with code {self.exit_code}: {detail[0]}".rstrip(": "),
                category=ErrorCategory.EXIT_CODE,
                exit_code=self.exit_code,
            )
        raise ProcessError(
            "Agent exited without a terminal record",
            category=ErrorCategory.INCOMPLETE,
            exit_code=self.exit_code,
        )


class AgentProcess:
    """Owned handle on one running agent process.

    ``events()`` may be iterated once; a new invocation needs a new process.
    ``wait()`` finishes the stream if needed, reaps the process and returns
    the RunResult.
    """

    def __init__(
        self,
        process: asyncio.subprocess.Process,
        args: Sequence[str],
        token: CancellationToken,
        timeout_seconds: float,
        grace_seconds: float,
    ):
        self._process = process
        self.args = tuple(args)
        self.token = token
        self.timeout_seconds = timeout_seconds
        self.grace_seconds = grace_seconds
        self.parser = StreamParser()

        loop = asyncio.get_running_loop()
        self._started = time.monotonic()
        self._deadline = loop.time() + timeout_seconds
        self._stderr_tail: deque[str] = deque(maxlen=STDERR_TAIL_LINES)
        self._stderr_task = asyncio.create_task(self._drain_stderr())

        self._consumed = False
        self._result: Optional[RunResult] = None
        self.timed_out = False
        self.cancelled = False
        self.terminal_event: Optional[StreamEvent] = None
        self.story_completed = False

    @property
    def pid(self) -> int:
        return self._process.pid

    @property
    def returncode(self) -> Optional[int]:
        return self._process.returncode

    def cancel(self, reason: str = "cancelled") -> None:
        """Request termination; the stream ends on its next read."""
        self.token.cancel(reason)

    async def events(self) -> AsyncIterator[StreamEvent]:
        """Yield decoded events until exit, a terminal record, timeout or cancel."""
        if self._consumed:
            raise RuntimeError("Agent output stream can only be consumed once")
        self._consumed = True

        while True:
            line = await self._next_line()
            if line is None:
                return
            event = self.parser.feed(line)
            if event is None:
                continue
            if isinstance(event, StoryCompleteEvent):
                self.story_completed = True
            yield event
            if event.terminal:
                self.terminal_event = event
                return

    async def wait(self) -> RunResult:
        """Finish the invocation and return its result."""
        if self._result is not None:
            return self._result

        if not self._consumed:
            async for _ in self.events():
                pass

        if self.timed_out or self.cancelled:
            logger.info(
                "Terminating agent pid %s (%s)",
                self.pid, "timeout" if self.timed_out else self.token.reason,
            )
            await self.terminate()
        else:
            # Give the agent a moment to exit on its own after the final record
            try:
                await asyncio.wait_for(self._process.wait(), timeout=self.grace_seconds)
            except asyncio.TimeoutError:
                logger.warning("Agent pid %s lingered after its final record", self.pid)
                await self.terminate()

        await self._stderr_task

        self._result = RunResult(
            args=self.args,
            exit_code=self._process.returncode,
            timed_out=self.timed_out,
            cancelled=self.cancelled,
            terminal_event=self.terminal_event,
            story_completed=self.story_completed,
            touched_files=sorted(self.parser.touched_files),
            learnings=list(self.parser.learnings),
            total_tokens=self.parser.last_total_tokens,
            stderr="\n".join(self._stderr_tail),
            duration_seconds=time.monotonic() - self._started,
        )
        return self._result

    async def terminate(self) -> None:
        """SIGTERM, wait the grace period, then SIGKILL."""
        if self._process.returncode is not None:
            return
        try:
            self._process.terminate()
        except ProcessLookupError:
            return
        try:
            await asyncio.wait_for(self._process.wait(), timeout=self.grace_seconds)
        except asyncio.TimeoutError:
            logger.warning("Agent pid %s ignored SIGTERM, killing", self.pid)
            try:
                self._process.kill()
            except ProcessLookupError:
                pass
            await self._process.wait()

    async def _next_line(self) -> Optional[str]:
        """Next stdout line, or None on EOF, timeout or cancellation."""
        if self.token.cancelled:
            self.cancelled = True
            return None
        remaining = self._deadline - asyncio.get_running_loop().time()
        if remaining <= 0:
            self.timed_out = True
            return None

        read = asyncio.ensure_future(self._process.stdout.readline())
        cancel = asyncio.ensure_future(self.token.wait())
        try:
            done, _ = await asyncio.wait(
                {read, cancel},
                timeout=remaining,
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            for task in (read, cancel):
                if not task.done():
                    task.cancel()

        if read in done:
            try:
                data = read.result()
            except ValueError as e:
                logger.warning("Agent output line exceeded buffer limit: %s", e)
                return ""
            if not data:
                return None
            return data.decode("utf-8", errors="replace")
        if cancel in done:
            self.cancelled = True
            return None
        self.timed_out = True
        return None

    async def _drain_stderr(self) -> None:
        if self._process.stderr is None:
            return
        while True:
            data = await self._process.stderr.readline()
            if not data:
                return
            self._stderr_tail.append(data.decode("utf-8", errors="replace").rstrip())


class CursorRunner:
    """Spawns the agent CLI for a project.

    The agent is invoked as ``<command> -p --output-format stream-json
    --force --model <model> <prompt>`` with the project as working directory.
    """

    def __init__(
        self,
        project_path: Path | str,
        command: Sequence[str] = ("cursor-agent",),
        timeout_seconds: float = 1800.0,
        grace_seconds: float = 10.0,
    ):
        self.project_path = Path(project_path)
        self.command = list(command)
        self.timeout_seconds = timeout_seconds
        self.grace_seconds = grace_seconds

    def build_args(self, prompt: str, model: str) -> list[str]:
        return [
            *self.command,
            "-p",
            "--output-format", "stream-json",
            "--force",
            "--model", model,
            prompt,
        ]

    async def start(
        self,
        prompt: str,
        model: str,
        token: Optional[CancellationToken] = None,
    ) -> AgentProcess:
        """Spawn the agent and return its handle.

        Raises:
            ProcessError: If the executable cannot be started
        """
        args = self.build_args(prompt, model)
        logger.info("Starting agent with model %s in %s", model, self.project_path)
        logger.debug("Prompt length: %d chars", len(prompt))

        try:
            process = await asyncio.create_subprocess_exec(
                *args,
                cwd=self.project_path,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                limit=STREAM_LIMIT_BYTES,
            )
        except OSError as e:
            raise ProcessError(
                f"Failed to spawn {self.command[0]}: {e}",
                category=ErrorCategory.SPAWN,
            ) from e

        return AgentProcess(
            process,
            args,
            token or CancellationToken(),
            timeout_seconds=self.timeout_seconds,
            grace_seconds=self.grace_seconds,
        )
