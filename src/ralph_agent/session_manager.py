"""Session manager: public API and the per-session supervising loop.

Each started session runs as its own asyncio task:

1. Pick the next failing story (lowest priority number, declaration order)
2. Build the prompt (normal / wrap-up after WARN / fresh after ROTATE)
3. Run the agent and account its token usage
4. On success run quality checks, append a progress entry, then commit and
   flip ``passes`` if the agent reported the story done
5. On failure record the failure signature and a guardrail
6. Evaluate the SignalDetector and act on its single signal

The loop stops on Complete, Gutter, max iterations, a git failure it could
not recover from, or a pause/stop request.
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Optional, TypeVar

from pydantic import ValidationError

from .activity import ActivityHub
from .exceptions import (
    ConfigError,
    ConfigErrorKind,
    GitError,
    InvalidStateError,
    ProcessError,
)
from .git_manager import Branch, GitManager, GitStatus
from .guardrails import GuardrailStore
from .models import (
    ActivityEntry,
    ActivityKind,
    ErrorCategory,
    FailureSignature,
    Guardrail,
    IterationRecord,
    Phase,
    Prd,
    ProgressEntry,
    PromptVariant,
    Session,
    SessionConfig,
    SessionState,
    SessionStatus,
    Signal,
    Story,
)
from .parser import (
    FailureEvent,
    MessageEvent,
    ResultEvent,
    TokenUsageEvent,
    ToolEvent,
)
from .progress import ProgressTracker
from .prompts import PromptBuilder
from .quality import QualityChecker
from .registry import SessionEntry, SessionRegistry
from .runner import CancellationToken, CursorRunner, RunResult
from .signals import SignalEvaluation, format_signal
from .workspace import Workspace


logger = logging.getLogger(__name__)

T = TypeVar("T")

PAUSE = "pause"
STOP = "stop"
STOPPED_BY_USER = "stopped by user"
MAX_ITERATIONS_EXCEEDED = "max iterations exceeded"


class IterationOutcome(str, Enum):
    CONTINUE = "continue"
    HALT = "halt"


@dataclass
class IterationFailure:
    """Why an iteration did not produce committable work."""
    category: ErrorCategory
    message: str


RunnerFactory = Callable[[Session], CursorRunner]


def default_runner(session: Session) -> CursorRunner:
    config = session.config
    return CursorRunner(
        session.project_path,
        command=config.agent_command,
        timeout_seconds=config.iteration_timeout_seconds,
        grace_seconds=config.termination_grace_seconds,
    )


def _carry_passes(current: Optional[Prd], loaded: Prd) -> Prd:
    """Stories that already pass keep passing when prd.json is re-read."""
    if current is None:
        return loaded
    passing = {s.id for s in current.stories if s.passes}
    for story in loaded.stories:
        if story.id in passing:
            story.passes = True
    return loaded


class SessionManager:
    """Creates sessions and supervises their loops.

    All public methods must be called from the event loop that runs the
    supervising tasks.
    """

    def __init__(
        self,
        registry: Optional[SessionRegistry] = None,
        hub: Optional[ActivityHub] = None,
        runner_factory: Optional[RunnerFactory] = None,
    ):
        self.registry = registry or SessionRegistry()
        self.hub = hub or ActivityHub()
        self.runner_factory = runner_factory or default_runner

    # =========================================================================
    # Public API
    # =========================================================================

    async def create_session(
        self,
        project_path: Path | str,
        config: Optional[SessionConfig | dict[str, Any]] = None,
    ) -> Session:
        """Register a new idle session for a git repository.

        Raises:
            ConfigError: Path missing, not a git repository, or bad config
        """
        path = Path(project_path).expanduser()
        if not path.exists():
            raise ConfigError(
                ConfigErrorKind.PATH_NOT_FOUND,
                f"Project path does not exist: {path}",
            )
        is_repo = await asyncio.to_thread(GitManager(path).is_git_repo)
        if not is_repo:
            raise ConfigError(
                ConfigErrorKind.NOT_A_GIT_REPO,
                f"Not a git repository: {path}",
            )

        session_config = self._validate_config(config)

        workspace = Workspace(path)
        workspace.ensure_structure()
        prd = None
        try:
            prd = workspace.load_prd()
        except ValueError as e:
            logger.warning("Ignoring existing prd.json in %s: %s", path, e)

        session = Session(
            id=uuid.uuid4().hex,
            project_path=str(workspace.project_path),
            config=session_config,
            prd=prd,
        )
        entry = self.registry.register(session)
        self._record(entry, ActivityKind.STATUS, f"Session created for {session.project_path}")
        logger.info("Session %s created for %s", session.id, session.project_path)
        return entry.read()

    def list_sessions(self) -> list[Session]:
        return self.registry.list_sessions()

    def get_session(self, session_id: str) -> Session:
        return self.registry.snapshot(session_id)

    async def set_prd(self, session_id: str, prd: Prd | dict[str, Any]) -> Session:
        """Replace the session's PRD and write prd.json.

        Raises:
            InvalidStateError: While the loop is running
            ConfigError: If ``prd`` does not validate
        """
        entry = self.registry.get(session_id)
        if entry.running:
            raise InvalidStateError("Cannot replace the PRD while the session is running")
        if not isinstance(prd, Prd):
            try:
                prd = Prd.model_validate(prd)
            except ValidationError as e:
                raise ConfigError(ConfigErrorKind.INVALID_CONFIG, f"Invalid PRD: {e}") from e

        session = entry.session
        Workspace(session.project_path).save_prd(prd)
        session.prd = prd
        entry.publish()
        self._record(entry, ActivityKind.STATUS, f"PRD set with {len(prd.stories)} stories")
        return entry.read()

    async def start_session(self, session_id: str) -> Session:
        """Move an idle or paused session to Running and spawn its loop.

        A no-op when the loop is already running.

        Raises:
            InvalidStateError: Terminal/gutter session, or no stories to work on
        """
        entry = self.registry.get(session_id)
        if entry.running:
            return entry.read()

        session = entry.session
        if session.status.state not in (SessionState.IDLE, SessionState.PAUSED):
            raise InvalidStateError(f"Cannot start session in state: {session.status}")

        workspace = Workspace(session.project_path)
        try:
            loaded = workspace.load_prd()
        except ValueError as e:
            raise InvalidStateError(str(e)) from e
        if loaded is not None:
            session.prd = _carry_passes(session.prd, loaded)
        elif session.prd is not None:
            workspace.save_prd(session.prd)

        if session.prd is None:
            raise InvalidStateError("Cannot start session without a PRD. Please set a PRD first.")
        if not session.prd.stories:
            raise InvalidStateError("Cannot start session with empty PRD. PRD must contain at least one story.")

        story = session.prd.next_story()
        session.status = SessionStatus.running(story.id if story else "initializing")
        session.last_error = None
        entry.token = CancellationToken()
        entry.publish()
        self._record(entry, ActivityKind.STATUS, f"Session started ({len(session.prd.stories)} stories)")

        entry.task = asyncio.create_task(self._supervise(entry), name=f"ralph-session-{session_id}")
        return entry.read()

    async def pause_session(self, session_id: str) -> Session:
        """Request a pause; a running loop stops and ends up Paused.

        Raises:
            InvalidStateError: For terminal or gutter sessions
        """
        entry = self.registry.get(session_id)
        if entry.running:
            entry.token.cancel(PAUSE)
            return entry.read()

        session = entry.session
        if session.status.is_terminal or session.status.state == SessionState.GUTTER:
            raise InvalidStateError(f"Cannot pause session in state: {session.status}")
        if session.status.state != SessionState.PAUSED:
            self._transition(entry, SessionStatus.paused())
        return entry.read()

    async def stop_session(self, session_id: str) -> Session:
        """Request a stop; the session ends Failed("stopped by user")."""
        entry = self.registry.get(session_id)
        if entry.running:
            # Overrides a pending pause
            entry.token.cancel(STOP, force=True)
            return entry.read()

        if not entry.session.status.is_terminal:
            self._transition(entry, SessionStatus.failed(STOPPED_BY_USER))
        return entry.read()

    async def reset_session(self, session_id: str) -> Session:
        """Clear a gutter halt so the session can be started again.

        Raises:
            InvalidStateError: If the session is not in Gutter
        """
        entry = self.registry.get(session_id)
        if entry.running or entry.session.status.state != SessionState.GUTTER:
            raise InvalidStateError(f"Only gutter sessions can be reset (status: {entry.session.status})")
        entry.detector.reset_history()
        entry.next_variant = PromptVariant.NORMAL
        self._transition(entry, SessionStatus.paused())
        return entry.read()

    def evict_session(self, session_id: str) -> Session:
        snapshot = self.registry.evict(session_id)
        self.hub.drop_session(session_id)
        logger.info("Session %s evicted", session_id)
        return snapshot

    def get_guardrails(self, session_id: str) -> list[Guardrail]:
        session = self.registry.snapshot(session_id)
        return GuardrailStore.for_session(session).load_guardrails(session)

    def add_guardrail(self, session_id: str, text: str, title: Optional[str] = None) -> Guardrail:
        entry = self.registry.get(session_id)
        guardrail = GuardrailStore.for_session(entry.session).append_guardrail(entry.read(), text, title)
        self._record(entry, ActivityKind.GUARDRAIL, f"Guardrail added: {guardrail.title}")
        return guardrail

    def subscribe(self, session_id: str) -> asyncio.Queue:
        self.registry.get(session_id)
        return self.hub.subscribe(session_id)

    def unsubscribe(self, session_id: str, queue: asyncio.Queue) -> None:
        self.hub.unsubscribe(session_id, queue)

    async def wait_for_session(self, session_id: str, timeout: Optional[float] = None) -> Session:
        """Wait until the session's loop has exited, then return its snapshot."""
        entry = self.registry.get(session_id)
        if entry.task is not None and not entry.task.done():
            await asyncio.wait({entry.task}, timeout=timeout)
        await entry.activity.flush()
        return entry.read()

    async def read_activity(self, session_id: str, limit: Optional[int] = None) -> list[ActivityEntry]:
        """The session's entries from the project's activity log, oldest first."""
        entry = self.registry.get(session_id)
        await entry.activity.flush()
        entries = await asyncio.to_thread(entry.activity.log.read)
        entries = [e for e in entries if e.session_id == session_id]
        if limit is not None:
            return entries[-limit:] if limit > 0 else []
        return entries

    async def git_info(self, session_id: str) -> tuple[GitStatus, list[Branch]]:
        """Working tree status and local branches of the session's project."""
        entry = self.registry.get(session_id)
        git = GitManager(entry.session.project_path)
        status = await asyncio.to_thread(git.get_status)
        branches = await asyncio.to_thread(git.list_branches)
        return status, branches

    async def shutdown(self) -> None:
        """Pause every running session and wait for the loops to exit."""
        tasks = []
        for entry in self.registry.entries():
            if entry.running:
                entry.token.cancel(PAUSE)
                tasks.append(entry.task)
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        for entry in self.registry.entries():
            await entry.activity.flush()

    # =========================================================================
    # Supervising loop
    # =========================================================================

    async def _supervise(self, entry: SessionEntry) -> None:
        session = entry.session
        try:
            if not await self._prepare_branch(entry):
                return
            while True:
                if entry.token.cancelled:
                    await self._finish_cancelled(entry)
                    return
                if await self._tick(entry) == IterationOutcome.HALT:
                    return
        except asyncio.CancelledError:
            logger.warning("Supervising task for session %s was cancelled", session.id)
            if not session.status.is_terminal:
                session.status = SessionStatus.paused()
                entry.publish()
            raise
        except Exception as e:
            logger.exception("Session %s loop crashed", session.id)
            session.last_error = str(e)
            self._transition(entry, SessionStatus.failed(f"Internal error: {e}"))

    async def _tick(self, entry: SessionEntry) -> IterationOutcome:
        """One loop iteration: select, run, evaluate."""
        session = entry.session
        config = session.config

        if not Path(session.project_path).is_dir():
            self._transition(entry, SessionStatus.failed(f"Project path no longer exists: {session.project_path}"))
            return IterationOutcome.HALT

        story = session.prd.next_story()
        if story is None:
            await self._complete(entry)
            return IterationOutcome.HALT

        if session.current_iteration >= config.max_iterations:
            logger.warning("Session %s reached max iterations without completion", session.id)
            self._transition(entry, SessionStatus.failed(MAX_ITERATIONS_EXCEEDED))
            return IterationOutcome.HALT

        outcome = await self._run_iteration(entry, story)
        if outcome == IterationOutcome.HALT:
            return outcome

        evaluation = entry.detector.evaluate(session.token_usage.iteration_tokens)
        return self._apply_signal(entry, evaluation)

    async def _run_iteration(self, entry: SessionEntry, story: Story) -> IterationOutcome:
        session = entry.session
        config = session.config
        workspace = Workspace(session.project_path)
        iteration = session.current_iteration + 1

        variant = entry.next_variant
        session.status = SessionStatus.running(story.id)
        entry.publish()
        self._record(entry, ActivityKind.STATUS, f"Iteration {iteration} on {story.id} ({variant.value} prompt)")

        prompt = PromptBuilder(workspace).build(session, story, variant)
        model = config.model_for(Phase.EXECUTION)
        runner = self.runner_factory(session)

        result: Optional[RunResult] = None
        failure: Optional[IterationFailure] = None
        counted_tokens = 0
        process = None
        stuck: Optional[str] = None

        if entry.token.cancelled:
            return IterationOutcome.CONTINUE

        try:
            process = await runner.start(prompt, model, entry.token)
            events = process.events()
            async for event in events:
                if isinstance(event, (TokenUsageEvent, ResultEvent)) and event.total_tokens is not None:
                    counted_tokens = self._account_tokens(entry, iteration, event.total_tokens, counted_tokens)
                elif isinstance(event, MessageEvent) and event.text:
                    self._record(entry, ActivityKind.MESSAGE, event.text[:500])
                elif isinstance(event, ToolEvent):
                    self._record(
                        entry, ActivityKind.TOOL,
                        f"{event.tool} {event.path or event.command or ''}".strip(),
                        exit_code=event.exit_code,
                    )
                    stuck = entry.detector.observe_tool(event)
                    if stuck is not None:
                        break
                elif isinstance(event, FailureEvent) and not event.terminal:
                    self._record(entry, ActivityKind.ERROR, event.message[:500])
            if stuck is not None:
                logger.warning("Session %s is looping, terminating the agent: %s", session.id, stuck)
                await events.aclose()
                await process.terminate()
            result = await process.wait()
            counted_tokens = self._account_tokens(entry, iteration, result.total_tokens, counted_tokens)
            if stuck is not None:
                failure = IterationFailure(ErrorCategory.STUCK, stuck)
            else:
                result.raise_for_status()
        except ProcessError as e:
            failure = IterationFailure(category=e.category, message=str(e))
        except asyncio.CancelledError:
            if process is not None:
                process.cancel(STOP)
                await process.terminate()
            raise

        session.current_iteration = iteration
        entry.publish()

        if result is not None and result.cancelled:
            logger.info("Iteration %d of session %s interrupted (%s)", iteration, session.id, entry.token.reason)
            return IterationOutcome.CONTINUE

        if failure is None:
            report = await asyncio.to_thread(
                QualityChecker(session.project_path).run, config.quality_commands
            )
            if not report.passed:
                failure = IterationFailure(ErrorCategory.QUALITY_CHECK, report.summary())

        if failure is not None:
            self._record_failure(entry, story, iteration, failure, result)
            return IterationOutcome.CONTINUE

        return await self._commit_success(entry, story, iteration, result)

    def _account_tokens(self, entry: SessionEntry, iteration: int, total: int, counted: int) -> int:
        """Add the growth of an invocation's cumulative token count."""
        if total <= counted:
            return counted
        session = entry.session
        session.token_usage.add(total - counted)
        entry.publish()

        tokens = session.token_usage.iteration_tokens
        if entry.detector.should_warn(tokens) and not entry.detector.should_rotate(tokens):
            if entry.detector.first_warning(iteration):
                self._record(entry, ActivityKind.SIGNAL, format_signal(Signal.WARN), tokens=tokens)
        return total

    async def _commit_success(
        self,
        entry: SessionEntry,
        story: Story,
        iteration: int,
        result: RunResult,
    ) -> IterationOutcome:
        session = entry.session
        workspace = Workspace(session.project_path)
        completed = result.story_completed

        prd_after = session.prd.model_copy(deep=True)
        if completed:
            prd_after.mark_story_passed(story.id)
            workspace.save_prd(prd_after)

        if completed:
            message = f"feat({story.id}): {story.title}"
        else:
            message = f"wip({story.id}): iteration {iteration}"

        git = GitManager(session.project_path)
        previous_head = await asyncio.to_thread(git.head)
        status = await asyncio.to_thread(git.get_status)

        summary = []
        if isinstance(result.terminal_event, ResultEvent) and result.terminal_event.summary:
            summary.append(result.terminal_event.summary.strip().splitlines()[0])
        summary.append("Story completed" if completed else "Work in progress, story not yet complete")

        # The entry goes into the same commit as the work it describes
        tracker = ProgressTracker(workspace.progress_file)
        progress_before = tracker.read_progress()
        tracker.append_entry(ProgressEntry(
            session_id=session.id,
            story_id=story.id,
            iteration=iteration,
            summary=summary,
            files_changed=status.changed_files,
            learnings=result.learnings,
        ))

        try:
            revision = await self._git(entry, "commit", lambda g: g.commit(message))
        except GitError as e:
            if completed:
                workspace.save_prd(session.prd)
            tracker.restore(progress_before)
            self._pause_for_git(entry, e)
            return IterationOutcome.HALT

        if revision and revision != previous_head:
            self._record(entry, ActivityKind.COMMIT, f"{revision[:8]} {message}", revision=revision)

        session.prd = prd_after
        entry.detector.record(IterationRecord(iteration=iteration, story_id=story.id))

        entry.publish()
        if completed:
            self._record(entry, ActivityKind.SIGNAL, format_signal(Signal.STORY_COMPLETE, story.id), story_id=story.id)
        return IterationOutcome.CONTINUE

    def _record_failure(
        self,
        entry: SessionEntry,
        story: Story,
        iteration: int,
        failure: IterationFailure,
        result: Optional[RunResult],
    ) -> None:
        session = entry.session
        files = frozenset(result.touched_files) if result else frozenset()
        signature = FailureSignature(story_id=story.id, category=failure.category, files=files)
        entry.detector.record(IterationRecord(iteration=iteration, story_id=story.id, signature=signature))

        self._record(
            entry, ActivityKind.FAILURE,
            f"Iteration {iteration} failed ({failure.category.value}): {failure.message}",
            category=failure.category.value,
            files=sorted(files),
        )

        lesson = f"Iteration {iteration} on {story.id} failed ({failure.category.value}): {failure.message}"
        if files:
            lesson += f"\nFiles touched: {', '.join(sorted(files))}"
        guardrail = GuardrailStore.for_session(session).append_guardrail(
            session.snapshot(), lesson, title=f"{story.id}: avoid {failure.category.value} failure"
        )
        self._record(entry, ActivityKind.GUARDRAIL, f"Guardrail added: {guardrail.title}")

    def _apply_signal(self, entry: SessionEntry, evaluation: SignalEvaluation) -> IterationOutcome:
        session = entry.session
        session.last_signal = evaluation.signal

        if evaluation.signal == Signal.GUTTER:
            self._record(entry, ActivityKind.SIGNAL, format_signal(Signal.GUTTER, evaluation.reason))
            self._transition(entry, SessionStatus.gutter(evaluation.reason))
            return IterationOutcome.HALT

        if evaluation.signal == Signal.ROTATE:
            self._record(entry, ActivityKind.SIGNAL, format_signal(Signal.ROTATE), reason=evaluation.reason)
            session.token_usage.rotate()
            entry.next_variant = PromptVariant.ROTATE
            self._transition(entry, SessionStatus.waiting_for_rotation())
            return IterationOutcome.CONTINUE

        if evaluation.signal == Signal.WARN:
            if entry.detector.first_warning(session.current_iteration):
                self._record(entry, ActivityKind.SIGNAL, format_signal(Signal.WARN), reason=evaluation.reason)
            entry.next_variant = PromptVariant.WRAP_UP
        else:
            entry.next_variant = PromptVariant.NORMAL
        entry.publish()
        return IterationOutcome.CONTINUE

    async def _complete(self, entry: SessionEntry) -> None:
        session = entry.session
        self._record(entry, ActivityKind.SIGNAL, format_signal(Signal.COMPLETE))
        self._transition(entry, SessionStatus.complete())
        if session.config.open_pr:
            await self._open_pull_request(entry)

    async def _open_pull_request(self, entry: SessionEntry) -> None:
        """Failure here is reported but never un-completes the session."""
        session = entry.session
        prd = session.prd
        title = f"[ralph] {prd.project}"
        body = "\n".join(
            ["Stories completed:", ""] + [f"- {s.id}: {s.title}" for s in prd.stories]
        )
        try:
            url = await self._git(entry, "open pull request", lambda g: g.open_pull_request(title, body))
        except GitError as e:
            session.last_error = f"Pull request failed: {e}"
            self._record(entry, ActivityKind.ERROR, session.last_error)
        else:
            session.pull_request_url = url
            self._record(entry, ActivityKind.PULL_REQUEST, f"Opened pull request {url}", url=url)
        entry.publish()

    async def _prepare_branch(self, entry: SessionEntry) -> bool:
        session = entry.session
        branch = session.config.branch_name or session.prd.branch_name
        if not branch:
            return True
        try:
            await self._git(entry, "ensure branch", lambda g: g.ensure_branch(branch))
        except GitError as e:
            self._pause_for_git(entry, e)
            return False
        return True

    async def _finish_cancelled(self, entry: SessionEntry) -> None:
        session = entry.session
        reason = entry.token.reason
        if session.config.commit_on_interrupt:
            message = f"wip: interrupted by {reason} request\n\nAuto-committed at iteration {session.current_iteration}."
            try:
                revision = await self._git(entry, "commit", lambda g: g.commit(message))
            except GitError as e:
                logger.warning("Could not commit interrupted work for %s: %s", session.id, e)
                session.last_error = str(e)
            else:
                self._record(entry, ActivityKind.COMMIT, f"{(revision or '')[:8]} wip on {reason}", revision=revision)

        # A stop may arrive while the pause commit runs
        if entry.token.reason == STOP:
            self._transition(entry, SessionStatus.failed(STOPPED_BY_USER))
        else:
            self._transition(entry, SessionStatus.paused())

    async def _git(self, entry: SessionEntry, action: str, operation: Callable[[GitManager], T]) -> T:
        """Run a git operation in a thread, retrying once."""
        git = GitManager(entry.session.project_path)
        try:
            return await asyncio.to_thread(operation, git)
        except GitError as e:
            logger.warning("git %s failed for session %s, retrying: %s", action, entry.id, e)
            return await asyncio.to_thread(operation, git)

    def _pause_for_git(self, entry: SessionEntry, error: GitError) -> None:
        entry.session.last_error = str(error)
        self._record(entry, ActivityKind.ERROR, f"Git error, pausing for human intervention: {error}")
        self._transition(entry, SessionStatus.paused())

    # =========================================================================
    # Helpers
    # =========================================================================

    @staticmethod
    def _validate_config(config: Optional[SessionConfig | dict[str, Any]]) -> SessionConfig:
        if config is None:
            return SessionConfig()
        data = config.model_dump() if isinstance(config, SessionConfig) else config
        try:
            return SessionConfig.model_validate(data)
        except ValidationError as e:
            raise ConfigError(ConfigErrorKind.INVALID_CONFIG, f"Invalid session config: {e}") from e

    def _transition(self, entry: SessionEntry, status: SessionStatus) -> None:
        previous = entry.session.status
        entry.session.status = status
        entry.publish()
        logger.info("Session %s: %s -> %s", entry.id, previous, status)
        self._record(entry, ActivityKind.STATUS, f"{previous} -> {status}", state=status.state.value)

    def _record(self, entry: SessionEntry, kind: ActivityKind, message: str, **data: Any) -> None:
        session = entry.session
        activity = ActivityEntry(
            session_id=session.id,
            iteration=session.current_iteration,
            kind=kind,
            message=message,
            data=data,
        )
        entry.activity.submit(activity)
        self.hub.publish(activity)
