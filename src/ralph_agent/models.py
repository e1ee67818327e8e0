"""Data models for the ralph session supervisor.

Uses Pydantic for validation. The PRD is persisted as JSON so that agents
editing it by hand are caught by schema validation on the next read.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    model_validator,
)


class SessionState(str, Enum):
    """Tag of a SessionStatus."""
    IDLE = "idle"
    RUNNING = "running"
    PAUSED = "paused"
    WAITING_FOR_ROTATION = "waiting_for_rotation"
    GUTTER = "gutter"
    COMPLETE = "complete"
    FAILED = "failed"


TERMINAL_STATES = frozenset({SessionState.COMPLETE, SessionState.FAILED})


class ErrorCategory(str, Enum):
    """Classification of a failed iteration.

    Part of the failure signature used for gutter detection, so two failures
    only look "the same" when they share a category.
    """
    SPAWN = "spawn"                  # Agent executable could not be started
    EXIT_CODE = "exit_code"          # Process exited nonzero
    TIMEOUT = "timeout"              # Wall-clock limit hit, process killed
    INCOMPLETE = "incomplete"        # Exited without a terminal record
    AGENT_ERROR = "agent_error"      # Agent reported a failure record
    RATE_LIMIT = "rate_limit"        # 429 / throttled
    AUTH = "auth"                    # Invalid credentials
    QUALITY_CHECK = "quality_check"  # External quality command failed
    STUCK = "stuck"                  # Looping within one run (failing command, file thrashing)


class Signal(str, Enum):
    """Signals raised while supervising a session.

    WARN / ROTATE / GUTTER come out of the SignalDetector (precedence
    GUTTER > ROTATE > WARN). COMPLETE and STORY_COMPLETE are only ever
    reported through the activity feed.
    """
    WARN = "warn"
    ROTATE = "rotate"
    GUTTER = "gutter"
    COMPLETE = "complete"
    STORY_COMPLETE = "story_complete"


class PromptVariant(str, Enum):
    """Which iteration prompt to send to the agent."""
    NORMAL = "normal"
    WRAP_UP = "wrap_up"   # Previous tick raised WARN
    ROTATE = "rotate"     # Previous tick raised ROTATE, fresh context


class Phase(str, Enum):
    """Which model a CursorRunner invocation should use."""
    PRD = "prd"
    EXECUTION = "execution"


class ContextHealth(str, Enum):
    """Display classification of the current context window."""
    HEALTHY = "healthy"
    WARNING = "warning"
    CRITICAL = "critical"


class SessionStatus(BaseModel):
    """Tagged status of a session.

    Only the payload field that belongs to the tag may be set:
    ``story_id`` for RUNNING, ``reason`` for GUTTER, ``error`` for FAILED.
    Use the constructor helpers rather than building one by hand.
    """
    model_config = ConfigDict(frozen=True)

    state: SessionState = SessionState.IDLE
    story_id: Optional[str] = None
    reason: Optional[str] = None
    error: Optional[str] = None

    @model_validator(mode="after")
    def _check_payload(self) -> "SessionStatus":
        expected = {
            SessionState.RUNNING: "story_id",
            SessionState.GUTTER: "reason",
            SessionState.FAILED: "error",
        }.get(self.state)
        for name in ("story_id", "reason", "error"):
            value = getattr(self, name)
            if name == expected and value is None:
                raise ValueError(f"{self.state.value} status requires '{name}'")
            if name != expected and value is not None:
                raise ValueError(f"{self.state.value} status does not carry '{name}'")
        return self

    @classmethod
    def idle(cls) -> "SessionStatus":
        return cls(state=SessionState.IDLE)

    @classmethod
    def running(cls, story_id: str) -> "SessionStatus":
        return cls(state=SessionState.RUNNING, story_id=story_id)

    @classmethod
    def paused(cls) -> "SessionStatus":
        return cls(state=SessionState.PAUSED)

    @classmethod
    def waiting_for_rotation(cls) -> "SessionStatus":
        return cls(state=SessionState.WAITING_FOR_ROTATION)

    @classmethod
    def gutter(cls, reason: str) -> "SessionStatus":
        return cls(state=SessionState.GUTTER, reason=reason)

    @classmethod
    def complete(cls) -> "SessionStatus":
        return cls(state=SessionState.COMPLETE)

    @classmethod
    def failed(cls, error: str) -> "SessionStatus":
        return cls(state=SessionState.FAILED, error=error)

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def __str__(self) -> str:
        detail = self.story_id or self.reason or self.error
        return f"{self.state.value}({detail})" if detail else self.state.value


class SessionConfig(BaseModel):
    """Configuration for one supervised session."""
    # Models
    prd_model: str = Field(
        default="sonnet-4.5-thinking",
        description="Model used for the PRD phase"
    )
    execution_model: str = Field(
        default="opus-4.5-thinking",
        description="Model used for story execution iterations"
    )

    # Loop limits
    max_iterations: int = Field(
        default=20,
        description="Iterations allowed before the session fails"
    )

    # Context thresholds (tokens in the current context window)
    warn_threshold: int = Field(
        default=70_000,
        description="Ask the agent to wrap up when reached"
    )
    rotate_threshold: int = Field(
        default=80_000,
        description="Discard context and start fresh when reached"
    )

    # Git
    branch_name: Optional[str] = Field(
        default=None,
        description="Branch to work on (falls back to the PRD's branch)"
    )
    open_pr: bool = Field(
        default=False,
        description="Open a pull request once every story passes"
    )
    commit_on_interrupt: bool = Field(
        default=True,
        description="Commit dirty work as 'wip' when paused or stopped"
    )

    # External agent process
    agent_command: list[str] = Field(
        default_factory=lambda: ["cursor-agent"],
        description="Executable (and leading arguments) of the agent CLI"
    )
    iteration_timeout_seconds: float = Field(
        default=1800.0,
        description="Hard wall-clock limit per agent invocation"
    )
    termination_grace_seconds: float = Field(
        default=10.0,
        description="Wait between terminate and kill"
    )

    # Quality checks run before committing
    quality_commands: list[str] = Field(
        default_factory=list,
        description="Shell commands that must exit 0 before a commit"
    )

    # Gutter detection and guardrails
    gutter_failure_count: int = Field(
        default=3,
        description="Consecutive identical failures that halt the session"
    )
    command_failure_limit: int = Field(
        default=3,
        description="Failures of the same shell command that halt the session"
    )
    file_write_limit: int = Field(
        default=5,
        description="Writes to one file within the write window that halt the session"
    )
    file_write_window_seconds: float = Field(
        default=600.0,
        description="Window for counting repeated writes to one file"
    )
    guardrails_in_prompt: int = Field(
        default=5,
        description="Most recent guardrails included in each prompt"
    )

    @model_validator(mode="after")
    def _check_invariants(self) -> "SessionConfig":
        if self.warn_threshold <= 0 or self.rotate_threshold <= 0:
            raise ValueError("token thresholds must be positive")
        if self.warn_threshold >= self.rotate_threshold:
            raise ValueError(
                f"warn_threshold ({self.warn_threshold}) must be lower than "
                f"rotate_threshold ({self.rotate_threshold})"
            )
        if self.max_iterations < 1:
            raise ValueError("max_iterations must be at least 1")
        if self.iteration_timeout_seconds <= 0 or self.termination_grace_seconds < 0:
            raise ValueError("timeouts must be positive")
        if min(self.gutter_failure_count, self.command_failure_limit, self.file_write_limit) < 1:
            raise ValueError("gutter limits must be at least 1")
        if self.file_write_window_seconds <= 0:
            raise ValueError("file_write_window_seconds must be positive")
        if not self.agent_command:
            raise ValueError("agent_command must not be empty")
        return self

    def model_for(self, phase: Phase) -> str:
        """Model selector for the given phase."""
        return self.prd_model if phase == Phase.PRD else self.execution_model


class Story(BaseModel):
    """An atomic unit of work in the PRD."""
    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(..., description="Unique identifier for the story")
    title: str
    description: str = ""
    acceptance_criteria: list[str] = Field(
        default_factory=list,
        validation_alias=AliasChoices("acceptance_criteria", "acceptanceCriteria"),
    )
    priority: int = Field(default=0, description="Lower number = more urgent")
    passes: bool = Field(default=False, description="Flips false -> true only")
    notes: str = ""


class Prd(BaseModel):
    """Ordered collection of stories for one project."""
    model_config = ConfigDict(populate_by_name=True)

    project: str
    branch_name: str = Field(
        ...,
        validation_alias=AliasChoices("branch_name", "branchName"),
    )
    description: str = ""
    stories: list[Story] = Field(
        default_factory=list,
        validation_alias=AliasChoices("stories", "userStories"),
    )

    @model_validator(mode="after")
    def _check_unique_ids(self) -> "Prd":
        seen: set[str] = set()
        for story in self.stories:
            if story.id in seen:
                raise ValueError(f"Duplicate story id: {story.id}")
            seen.add(story.id)
        return self

    def next_story(self) -> Optional[Story]:
        """Lowest priority number among failing stories, first declared wins ties."""
        pending = [s for s in self.stories if not s.passes]
        if not pending:
            return None
        return min(pending, key=lambda s: s.priority)

    def is_complete(self) -> bool:
        return all(s.passes for s in self.stories)

    def get_story(self, story_id: str) -> Story:
        for story in self.stories:
            if story.id == story_id:
                return story
        raise KeyError(f"Story {story_id} not found")

    def mark_story_passed(self, story_id: str) -> Story:
        """Set ``passes`` on a story. There is no way back to False."""
        story = self.get_story(story_id)
        story.passes = True
        return story


class TokenUsage(BaseModel):
    """Token consumption of a session.

    ``iteration_tokens`` counts the current context window and is cleared on
    rotation; ``lifetime_tokens`` only ever grows.
    """
    iteration_tokens: int = 0
    lifetime_tokens: int = 0

    def add(self, tokens: int) -> None:
        if tokens <= 0:
            return
        self.iteration_tokens += tokens
        self.lifetime_tokens += tokens

    def rotate(self) -> None:
        self.iteration_tokens = 0

    def percentage(self, threshold: int) -> float:
        return min(self.iteration_tokens / threshold * 100.0, 100.0)

    def health(self, warn_threshold: int, rotate_threshold: int) -> ContextHealth:
        if self.iteration_tokens >= rotate_threshold:
            return ContextHealth.CRITICAL
        if self.iteration_tokens >= warn_threshold:
            return ContextHealth.WARNING
        return ContextHealth.HEALTHY


class Guardrail(BaseModel):
    """A lesson ("sign") learned from a failure. Never edited once written."""
    timestamp: datetime = Field(default_factory=datetime.now)
    session_id: str
    project_path: str
    text: str
    title: Optional[str] = None


class FailureSignature(BaseModel):
    """What makes two failures 'the same' for gutter detection."""
    model_config = ConfigDict(frozen=True)

    story_id: str
    category: ErrorCategory
    files: frozenset[str] = frozenset()

    def describe(self) -> str:
        files = ", ".join(sorted(self.files)) or "no files"
        return f"story {self.story_id} / {self.category.value} / {files}"


class IterationRecord(BaseModel):
    """Outcome of one iteration, kept in a short rolling window."""
    iteration: int
    story_id: str
    signature: Optional[FailureSignature] = None  # None = no failure

    @property
    def failed(self) -> bool:
        return self.signature is not None


class Session(BaseModel):
    """A supervised agent session.

    Owned by its supervising task; everybody else gets a deep copy.
    """
    id: str
    project_path: str
    status: SessionStatus = Field(default_factory=SessionStatus.idle)
    config: SessionConfig = Field(default_factory=SessionConfig)
    prd: Optional[Prd] = None
    current_iteration: int = 0
    token_usage: TokenUsage = Field(default_factory=TokenUsage)
    created_at: datetime = Field(default_factory=datetime.now)
    updated_at: datetime = Field(default_factory=datetime.now)

    # Last evaluation and problems, for display
    last_signal: Optional[Signal] = None
    last_error: Optional[str] = None
    pull_request_url: Optional[str] = None

    def touch(self) -> None:
        self.updated_at = datetime.now()

    def snapshot(self) -> "Session":
        return self.model_copy(deep=True)


class ProgressEntry(BaseModel):
    """A single entry in the progress log."""
    timestamp: datetime = Field(default_factory=datetime.now)
    session_id: str
    story_id: str
    iteration: int = 0
    summary: list[str] = Field(default_factory=list)
    files_changed: list[str] = Field(default_factory=list)
    learnings: list[str] = Field(default_factory=list)


class ActivityKind(str, Enum):
    """Type of an activity feed entry."""
    STATUS = "status"
    SIGNAL = "signal"
    MESSAGE = "message"
    TOOL = "tool"
    TOKENS = "tokens"
    FAILURE = "failure"
    COMMIT = "commit"
    GUARDRAIL = "guardrail"
    PULL_REQUEST = "pull_request"
    ERROR = "error"


class ActivityEntry(BaseModel):
    """One line of the activity log / subscriber feed."""
    timestamp: datetime = Field(default_factory=datetime.now)
    session_id: str
    iteration: int = 0
    kind: ActivityKind
    message: str = ""
    data: dict[str, Any] = Field(default_factory=dict)
