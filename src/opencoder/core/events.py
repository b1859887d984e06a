"""Agent event stream interpretation.

``opencode run --format json`` prints one JSON object per line::

    {"type": "message.part.text", "properties": {"text": "..."}}

:func:`decode_event` turns such a line into one of a closed set of event
dataclasses and :func:`interpret` maps each event onto calls to an event
logger.  The logger is duck-typed; :class:`opencoder.core.console.ConsoleLogger`
is the real one and the tests use a recorder.  It must provide::

    start_spinner(message)  stop_spinner()
    stream(text)            stream_end()
    tool_call(name, input)  tool_result(output)
    thinking(text)          tokens(input, output)
    log_error(message)      log_verbose(message)
    file_change(action, path)
    step(action, detail)

Malformed ``properties`` never raise; the affected fields decode as None
and are simply not reported.
"""
from __future__ import annotations

from dataclasses import dataclass, field
import json
import logging
import math
import time
from typing import Any, Callable, Dict, List, Literal, Optional, Union

logger = logging.getLogger("opencoder.events")

NOISY_EVENTS = frozenset({
    "message.part.updated",
    "session.updated",
    "session.diff",
    "lsp.updated",
    "lsp.client.diagnostics",
})

_FILE_ACTIONS = {
    "file.edited": "Edited",
    "file.created": "Created",
    "file.deleted": "Deleted",
}

_CONTEXT_LIMIT = 50

# USD per million tokens: (input, output)
MODEL_PRICING: Dict[str, tuple[float, float]] = {
    "claude-opus-4": (15.0, 75.0),
    "claude-sonnet-4": (3.0, 15.0),
    "claude-3-5-sonnet": (3.0, 15.0),
    "claude-3-opus": (15.0, 75.0),
    "claude-3-sonnet": (3.0, 15.0),
    "claude-3-haiku": (0.25, 1.25),
    "gpt-4o-mini": (0.15, 0.6),
    "gpt-4o": (2.5, 10.0),
    "gpt-4-turbo": (10.0, 30.0),
    "gpt-4": (30.0, 60.0),
    "gpt-3.5-turbo": (0.5, 1.5),
}
DEFAULT_PRICING = (3.0, 15.0)


# ── Event variants ───────────────────────────────────────────

@dataclass(frozen=True)
class TextDelta:
    text: Optional[str]


@dataclass(frozen=True)
class ToolStart:
    name: Optional[str]
    input: Any = None


@dataclass(frozen=True)
class ToolResult:
    output: Optional[str]


@dataclass(frozen=True)
class Thinking:
    text: Optional[str]


@dataclass(frozen=True)
class MessageComplete:
    input_tokens: Optional[float]
    output_tokens: Optional[float]


@dataclass(frozen=True)
class MessageError:
    message: Optional[str]


@dataclass(frozen=True)
class FileChange:
    action: Literal["Edited", "Created", "Deleted"]
    path: Optional[str]


@dataclass(frozen=True)
class SessionStatus:
    status: Optional[str]


@dataclass(frozen=True)
class SessionEnd:
    kind: str               # "session.complete" | "session.abort"


@dataclass(frozen=True)
class Unhandled:
    type: str


Event = Union[
    TextDelta, ToolStart, ToolResult, Thinking, MessageComplete,
    MessageError, FileChange, SessionStatus, SessionEnd, Unhandled,
]


@dataclass(frozen=True)
class StatsUpdate:
    tool_call: bool = False
    input_tokens: int = 0
    output_tokens: int = 0
    file_modified: Optional[str] = None


@dataclass
class SessionStats:
    """Per-invocation counters fed by ``on_stats``."""
    tool_calls: int = 0
    input_tokens: int = 0
    output_tokens: int = 0
    files_modified: List[str] = field(default_factory=list)
    start_time: float = field(default_factory=time.monotonic)

    def apply(self, update: StatsUpdate) -> None:
        if update.tool_call:
            self.tool_calls += 1
        self.input_tokens += update.input_tokens
        self.output_tokens += update.output_tokens
        if update.file_modified and update.file_modified not in self.files_modified:
            self.files_modified.append(update.file_modified)

    def cost(self, model: str) -> float:
        return estimate_cost(model, self.input_tokens, self.output_tokens)


# ── Decoding ─────────────────────────────────────────────────

def _str(value: Any) -> Optional[str]:
    return value if isinstance(value, str) else None


def _number(value: Any) -> Optional[float]:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    if not math.isfinite(value):
        return None
    return value


def parse_json_object(line: str) -> Optional[Dict[str, Any]]:
    """Parse *line* as a JSON object, or return None."""
    line = line.strip()
    if not line.startswith("{"):
        return None
    try:
        obj = json.loads(line)
    except ValueError:
        return None
    return obj if isinstance(obj, dict) else None


def event_from_dict(obj: Dict[str, Any]) -> Event:
    etype = _str(obj.get("type")) or ""
    props = obj.get("properties")
    if not isinstance(props, dict):
        props = {}

    if etype == "message.part.text":
        return TextDelta(_str(props.get("text")))
    if etype == "message.part.tool.start":
        return ToolStart(_str(props.get("name")), props.get("input"))
    if etype == "message.part.tool.result":
        return ToolResult(_str(props.get("output")))
    if etype == "message.part.thinking":
        return Thinking(_str(props.get("text")))
    if etype == "message.complete":
        usage = props.get("usage")
        if not isinstance(usage, dict):
            usage = {}
        return MessageComplete(_number(usage.get("input")), _number(usage.get("output")))
    if etype == "message.error":
        return MessageError(_str(props.get("message")))
    if etype in _FILE_ACTIONS:
        path = _str(props.get("path")) or _str(props.get("filePath"))
        return FileChange(_FILE_ACTIONS[etype], path)  # type: ignore[arg-type]
    if etype == "session.status":
        return SessionStatus(_str(props.get("status")))
    if etype in ("session.complete", "session.abort"):
        return SessionEnd(etype)
    return Unhandled(etype)


def decode_event(line: str) -> Optional[Event]:
    """Decode one output line; None when it is not a JSON object."""
    obj = parse_json_object(line)
    if obj is None:
        return None
    return event_from_dict(obj)


# ── Interpretation ───────────────────────────────────────────

def _truncate(text: str, limit: int = _CONTEXT_LIMIT) -> str:
    return f"{text[:limit]}..." if len(text) > limit else text


def tool_context(tool_input: Any) -> str:
    """Short description of a tool invocation for the spinner line."""
    if isinstance(tool_input, str):
        return _truncate(tool_input)
    if isinstance(tool_input, dict):
        if "filePath" in tool_input:
            return str(tool_input["filePath"])
        if "path" in tool_input:
            return str(tool_input["path"])
        if "pattern" in tool_input:
            return str(tool_input["pattern"])
        if "command" in tool_input:
            return _truncate(str(tool_input["command"]))
        if "query" in tool_input:
            return f'"{tool_input["query"]}"'
    return ""


def is_noisy(event_type: str) -> bool:
    return event_type in NOISY_EVENTS or event_type.startswith("server.")


def interpret(
    event: Event,
    event_logger: Any,
    on_stats: Optional[Callable[[StatsUpdate], None]] = None,
) -> None:
    """Apply one event to *event_logger*.  Keeps no state between calls."""
    if isinstance(event, TextDelta):
        if event.text is not None:
            event_logger.stop_spinner()
            event_logger.stream(event.text)

    elif isinstance(event, ToolStart):
        if event.name is not None:
            event_logger.stop_spinner()
            event_logger.stream_end()
            event_logger.tool_call(event.name, event.input)
            if on_stats:
                on_stats(StatsUpdate(tool_call=True))
            context = tool_context(event.input)
            if context:
                event_logger.start_spinner(f"Running {event.name}: {context}...")
            else:
                event_logger.start_spinner(f"Running {event.name}...")

    elif isinstance(event, ToolResult):
        event_logger.stop_spinner()
        if event.output:
            event_logger.tool_result(event.output)

    elif isinstance(event, Thinking):
        if event.text is not None:
            event_logger.stop_spinner()
            event_logger.thinking(event.text)

    elif isinstance(event, MessageComplete):
        event_logger.stop_spinner()
        event_logger.stream_end()
        if event.input_tokens is not None and event.output_tokens is not None:
            event_logger.tokens(event.input_tokens, event.output_tokens)
            if on_stats:
                on_stats(StatsUpdate(
                    input_tokens=int(event.input_tokens),
                    output_tokens=int(event.output_tokens),
                ))

    elif isinstance(event, MessageError):
        event_logger.stop_spinner()
        if event.message:
            event_logger.log_error(event.message)

    elif isinstance(event, FileChange):
        if event.path:
            event_logger.file_change(event.action, event.path)
            if on_stats:
                on_stats(StatsUpdate(file_modified=event.path))

    elif isinstance(event, SessionStatus):
        if event.status is not None and event.status != "idle":
            event_logger.step("Session", event.status)

    elif isinstance(event, SessionEnd):
        event_logger.stop_spinner()
        event_logger.log_verbose(f"Session {event.kind}")

    elif isinstance(event, Unhandled):
        if event.type and not is_noisy(event.type):
            event_logger.log_verbose(f"Event: {event.type}")

    else:
        raise TypeError(f"unknown event variant: {event!r}")


def estimate_cost(model: str, input_tokens: float, output_tokens: float) -> float:
    """Approximate USD cost of a call.  Unknown models use the default rate."""
    model_id = model.split("/", 1)[1] if "/" in model else model
    pricing = DEFAULT_PRICING
    lowered = model_id.lower()
    for key, value in MODEL_PRICING.items():
        if key in lowered:
            pricing = value
            break
    return input_tokens / 1_000_000 * pricing[0] + output_tokens / 1_000_000 * pricing[1]
