from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, Dict, Optional, TypedDict, Union


class StreamEvent(StrEnum):
    TEXT = "text"
    REASONING_DELTA = "reasoning_delta"
    TOOL_CALL = "tool_call"
    TOOL_RESULT = "tool_result"
    ERROR = "error"
    DONE = "done"


class ErrorKind(StrEnum):
    PARSE_ERROR = "parse_error"
    UNKNOWN_TOOL = "unknown_tool"
    TOOL_EXECUTION_ERROR = "tool_execution_error"


class Event(TypedDict, total=False):
    type: str  # "text" | "reasoning_delta" | "tool_call" | "tool_result" | "error" | "done"
    turn_id: str
    data: Dict[str, Any]
    ts: str


# --- Provider chunks ---

@dataclass(frozen=True)
class TextChunk:
    text: str


@dataclass(frozen=True)
class ReasoningChunk:
    text: str


@dataclass(frozen=True)
class ToolCallChunk:
    """A structured call emitted natively by the provider (not embedded in text)."""
    tool_name: str
    input: Dict[str, Any] = field(default_factory=dict)
    tool_call_id: Optional[str] = None


@dataclass(frozen=True)
class StreamEnd:
    """Terminal sentinel; carries the provider's message id."""
    message_id: Optional[str] = None


Chunk = Union[TextChunk, ReasoningChunk, ToolCallChunk, StreamEnd]


# --- Parsed tool calls ---

@dataclass
class Invocation:
    tool_name: str
    input: Dict[str, Any]
    raw_payload: Optional[str] = None
    tool_call_id: str = ""
    autocompleted: bool = False
    ends_agent_step: bool = False


@dataclass
class InvocationError:
    kind: ErrorKind
    message: str
    raw_payload: str = ""
    tool_name: Any = None
    autocompleted: bool = False
