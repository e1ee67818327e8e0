"""Decoder for the agent's newline-delimited JSON output.

Each stdout line of the agent is one record. Records are turned into typed
events; anything that cannot be decoded is skipped with a warning so that a
single garbled line never takes an iteration down.

Records understood (``type`` field):

    assistant          {"type": "assistant", "message": {"content": [{"type": "text", "text": "..."}]}}
    usage              {"type": "usage", "total_tokens": 1234}
    read/write/shell   {"type": "write", "path": "src/app.py"} / {"type": "shell", "command": "...", "exit_code": 1}
    tool_call          {"type": "tool_call", "tool_call": {"editToolCall": {"args": {"path": "..."}}}}
    learning           {"type": "learning", "text": "..."}
    story_complete     {"type": "story_complete", "story_id": "US-001"}
    error / failure    {"type": "error", "message": "..."}
    result             {"type": "result", "subtype": "success", "is_error": false, "result": "..."}
"""

import json
import logging
from dataclasses import dataclass
from typing import Any, ClassVar, Optional, Union

from .exceptions import ParseError
from .models import ErrorCategory


logger = logging.getLogger(__name__)

# The agent prints this in its final message when the story is done
STORY_COMPLETE_MARKER = "<ralph>STORY_COMPLETE</ralph>"

WRITE_TOOLS = {"write", "edit", "delete", "multiedit", "notebookedit"}


@dataclass
class MessageEvent:
    """Informational text from the agent."""
    text: str
    role: str = "assistant"
    terminal: ClassVar[bool] = False


@dataclass
class TokenUsageEvent:
    """Cumulative token count for the running invocation."""
    total_tokens: int
    terminal: ClassVar[bool] = False


@dataclass
class ToolEvent:
    """A tool the agent used (file read/write, shell command)."""
    tool: str
    path: Optional[str] = None
    command: Optional[str] = None
    exit_code: Optional[int] = None
    terminal: ClassVar[bool] = False

    @property
    def writes_file(self) -> bool:
        return self.path is not None and self.tool.lower() in WRITE_TOOLS


@dataclass
class LearningEvent:
    """Something the agent wants recorded under 'Learnings'."""
    text: str
    terminal: ClassVar[bool] = False


@dataclass
class StoryCompleteEvent:
    """The agent claims the current story is done.

    Explicit ``story_complete`` records end the stream; the in-text marker
    does not, since a result record still follows it.
    """
    story_id: Optional[str] = None
    terminal: bool = True


@dataclass
class FailureEvent:
    """The agent reports that it failed."""
    message: str
    category: ErrorCategory = ErrorCategory.AGENT_ERROR
    terminal: bool = True


@dataclass
class ResultEvent:
    """Successful end of the agent's run."""
    summary: str = ""
    total_tokens: Optional[int] = None
    terminal: ClassVar[bool] = True


StreamEvent = Union[
    MessageEvent, TokenUsageEvent, ToolEvent, LearningEvent,
    StoryCompleteEvent, FailureEvent, ResultEvent,
]


def classify_error(error_text: str) -> ErrorCategory:
    """Classify an agent-reported error message.

    Args:
        error_text: The error message to classify

    Returns:
        ErrorCategory for the failure signature
    """
    if not error_text:
        return ErrorCategory.AGENT_ERROR

    error_lower = error_text.lower()

    if any(phrase in error_lower for phrase in [
        "rate limit",
        "429",
        "too many requests",
        "throttl",
    ]):
        return ErrorCategory.RATE_LIMIT

    if any(phrase in error_lower for phrase in [
        "authentication",
        "unauthorized",
        "401",
        "invalid api key",
        "not logged in",
        "forbidden",
        "403",
    ]):
        return ErrorCategory.AUTH

    if any(phrase in error_lower for phrase in ["timeout", "timed out"]):
        return ErrorCategory.TIMEOUT

    return ErrorCategory.AGENT_ERROR


def _require_int(data: dict, key: str) -> int:
    value = data.get(key)
    if isinstance(value, bool) or not isinstance(value, int):
        raise ParseError(f"'{key}' must be an integer, got {value!r}")
    return value


def _optional_str(data: dict, key: str) -> Optional[str]:
    value = data.get(key)
    if value is not None and not isinstance(value, str):
        raise ParseError(f"'{key}' must be a string, got {value!r}")
    return value


def _usage_total(data: Any) -> Optional[int]:
    """Sum a usage dict (``total_tokens`` wins over the parts)."""
    if not isinstance(data, dict):
        return None
    if "total_tokens" in data:
        return _require_int(data, "total_tokens")
    parts = [
        data.get(key, 0)
        for key in ("input_tokens", "output_tokens",
                    "cache_read_input_tokens", "cache_creation_input_tokens")
    ]
    if not any(parts):
        return None
    if not all(isinstance(p, int) and not isinstance(p, bool) for p in parts):
        raise ParseError(f"Malformed usage block: {data!r}")
    return sum(parts)


def _message_text(data: dict) -> str:
    if isinstance(data.get("text"), str):
        return data["text"]
    message = data.get("message")
    if isinstance(message, str):
        return message
    if isinstance(message, dict):
        content = message.get("content")
        if isinstance(content, str):
            return content
        if isinstance(content, list):
            texts = [
                _optional_str(block, "text") or ""
                for block in content
                if isinstance(block, dict) and block.get("type") == "text"
            ]
            return "".join(texts)
    return ""


class StreamParser:
    """Turns agent output lines into typed events.

    One parser per agent invocation. Also remembers which files the agent
    wrote, for the failure signature, and the latest cumulative token count.
    """

    def __init__(self) -> None:
        self.records = 0
        self.skipped = 0
        self.touched_files: set[str] = set()
        self.last_total_tokens = 0
        self.learnings: list[str] = []

    def feed(self, line: str) -> Optional[StreamEvent]:
        """Decode one line, logging and skipping it if malformed."""
        try:
            event = self.parse_line(line)
        except ParseError as e:
            self.skipped += 1
            logger.warning("Skipping malformed agent record: %s (%.200s)", e, line)
            return None

        if isinstance(event, ToolEvent) and event.writes_file:
            self.touched_files.add(event.path)
        elif isinstance(event, (TokenUsageEvent, ResultEvent)) and event.total_tokens is not None:
            self.last_total_tokens = max(self.last_total_tokens, event.total_tokens)
        elif isinstance(event, LearningEvent):
            self.learnings.append(event.text)
        return event

    def parse_line(self, line: str) -> Optional[StreamEvent]:
        """Decode one line.

        Returns None for blank lines and record types we don't use.

        Raises:
            ParseError: If the line is not a JSON object with a ``type``, or a
                field has the wrong type
        """
        line = line.strip()
        if not line:
            return None

        try:
            data = json.loads(line)
        except json.JSONDecodeError as e:
            raise ParseError(f"Invalid JSON: {e}") from e

        if not isinstance(data, dict):
            raise ParseError("Record is not a JSON object")
        kind = data.get("type")
        if not isinstance(kind, str):
            raise ParseError("Record has no 'type'")

        self.records += 1
        try:
            return self._decode(kind, data)
        except (AttributeError, TypeError, ValueError) as e:
            raise ParseError(f"Malformed {kind} record: {e}") from e

    def _decode(self, kind: str, data: dict) -> Optional[StreamEvent]:
        if kind in ("assistant", "message"):
            text = _message_text(data)
            if STORY_COMPLETE_MARKER in text:
                return StoryCompleteEvent(terminal=False)
            return MessageEvent(text=text, role=_optional_str(data, "role") or "assistant")

        if kind == "usage":
            total = _usage_total(data.get("usage", data))
            if total is None:
                raise ParseError("Usage record without token counts")
            return TokenUsageEvent(total_tokens=total)

        if kind in ("read", "write", "edit", "shell"):
            exit_code = data.get("exit_code")
            if exit_code is not None:
                exit_code = _require_int(data, "exit_code")
            return ToolEvent(
                tool=kind,
                path=_optional_str(data, "path"),
                command=_optional_str(data, "command"),
                exit_code=exit_code,
            )

        if kind == "tool_call":
            return self._decode_tool_call(data)

        if kind == "learning":
            text = data.get("text")
            if not isinstance(text, str):
                raise ParseError("Learning record without text")
            return LearningEvent(text=text)

        if kind == "story_complete":
            return StoryCompleteEvent(story_id=_optional_str(data, "story_id"))

        if kind in ("error", "failure"):
            message = data.get("message") or data.get("error") or ""
            return FailureEvent(
                message=str(message),
                category=classify_error(str(message)),
                terminal=not data.get("recoverable", False),
            )

        if kind == "result":
            summary = str(data.get("result") or data.get("summary") or "")
            if data.get("is_error") or data.get("subtype", "success") != "success":
                return FailureEvent(message=summary, category=classify_error(summary))
            return ResultEvent(summary=summary, total_tokens=_usage_total(data.get("usage")))

        logger.debug("Ignoring agent record of type %s", kind)
        return None

    def _decode_tool_call(self, data: dict) -> Optional[ToolEvent]:
        call = data.get("tool_call")
        if not isinstance(call, dict) or not call:
            raise ParseError("tool_call record without a call")
        name, body = next(iter(call.items()))
        if not isinstance(body, dict):
            raise ParseError(f"tool_call body for {name} is not an object")
        tool = name[:-len("ToolCall")] if name.endswith("ToolCall") else name
        args = body.get("args") or {}
        if not isinstance(args, dict):
            raise ParseError(f"tool_call args for {name} are not an object")
        exit_code = None
        result = body.get("result")
        if isinstance(result, dict):
            success = result.get("success")
            if isinstance(success, dict) and isinstance(success.get("exitCode"), int):
                exit_code = success["exitCode"]
        return ToolEvent(
            tool=tool,
            path=_optional_str(args, "path"),
            command=_optional_str(args, "command"),
            exit_code=exit_code,
        )
