"""Shared data types for tactus-agent."""

from __future__ import annotations

import enum
import time
from dataclasses import dataclass, field
from typing import Any


# ---------------------------------------------------------------------------
# Wire messages
# ---------------------------------------------------------------------------

ROLES = ("system", "user", "assistant", "tool")


@dataclass
class ToolCall:
    """A tool call as the model emitted it: arguments are the raw JSON text."""

    id: str
    name: str
    arguments: str = ""

    def to_wire(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": "function",
            "function": {"name": self.name, "arguments": self.arguments},
        }

    @classmethod
    def from_wire(cls, raw: dict[str, Any]) -> ToolCall:
        func = raw.get("function", {}) or {}
        return cls(
            id=raw.get("id", ""),
            name=func.get("name", ""),
            arguments=func.get("arguments", "") or "",
        )


@dataclass
class Message:
    """One entry of the wire-level conversation."""

    role: str
    content: str | None = None
    tool_calls: list[ToolCall] = field(default_factory=list)
    tool_call_id: str | None = None
    name: str | None = None

    def __post_init__(self) -> None:
        if self.role not in ROLES:
            raise ValueError(f"Unknown message role: {self.role!r}")

    @classmethod
    def system(cls, content: str) -> Message:
        return cls(role="system", content=content)

    @classmethod
    def user(cls, content: str) -> Message:
        return cls(role="user", content=content)

    @classmethod
    def assistant(
        cls, content: str | None, tool_calls: list[ToolCall] | None = None,
    ) -> Message:
        return cls(role="assistant", content=content, tool_calls=list(tool_calls or []))

    @classmethod
    def tool(cls, tool_call_id: str, name: str, content: str) -> Message:
        return cls(role="tool", content=content, tool_call_id=tool_call_id, name=name)

    def to_wire(self) -> dict[str, Any]:
        """Render as an OpenAI chat-completions message dict."""
        wire: dict[str, Any] = {"role": self.role, "content": self.content}
        if self.role == "assistant" and self.tool_calls:
            wire["tool_calls"] = [tc.to_wire() for tc in self.tool_calls]
        if self.role == "tool":
            wire["tool_call_id"] = self.tool_call_id
            if self.name:
                wire["name"] = self.name
        return wire

    @classmethod
    def from_wire(cls, raw: dict[str, Any]) -> Message:
        return cls(
            role=raw.get("role", "user"),
            content=raw.get("content"),
            tool_calls=[ToolCall.from_wire(tc) for tc in raw.get("tool_calls") or []],
            tool_call_id=raw.get("tool_call_id"),
            name=raw.get("name"),
        )


# ---------------------------------------------------------------------------
# Tool types
# ---------------------------------------------------------------------------

@dataclass
class ResolvedToolCall:
    """Tool call whose arguments parsed as a JSON object."""

    id: str
    name: str
    arguments: dict[str, Any] = field(default_factory=dict)


@dataclass
class ToolResult:
    """Result handed back by the external tool executor."""

    tool_call_id: str
    name: str
    result: str
    success: bool = True

    def to_message(self) -> str:
        if self.success:
            return self.result
        return f"[Tool Error] {self.result}"


# ---------------------------------------------------------------------------
# Stream decoding
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ContentDelta:
    text: str


@dataclass(frozen=True)
class ReasoningDelta:
    text: str


@dataclass(frozen=True)
class ToolCallDelta:
    """One ``delta.tool_calls[]`` entry of a streamed chunk."""

    index: int
    id: str | None = None
    name: str | None = None
    arguments: str | None = None


# ---------------------------------------------------------------------------
# LLM types
# ---------------------------------------------------------------------------

@dataclass
class LLMResponse:
    """One completed model turn."""

    content: str = ""
    reasoning: str = ""
    tool_calls: list[ToolCall] = field(default_factory=list)
    finish_reason: str = ""
    usage: dict[str, int] = field(default_factory=dict)
    model: str = ""
    latency_ms: float = 0
    attempts: int = 1

    @property
    def has_tool_calls(self) -> bool:
        return len(self.tool_calls) > 0


@dataclass
class ModelInfo:
    id: str
    name: str = ""


# ---------------------------------------------------------------------------
# Event types
# ---------------------------------------------------------------------------

class EventType(enum.Enum):
    """Events handed to the consumer of an exchange."""

    CONTENT = "content"
    REASONING = "reasoning"
    TOOL_CALL = "tool_call"
    TOOL_RESULT = "tool_result"
    THINKING = "thinking"
    ERROR = "error"
    DONE = "done"


@dataclass
class StreamEvent:
    """Observational event; never persisted."""

    type: EventType
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)

    @property
    def text(self) -> str:
        return str(self.data.get("text", ""))


# ---------------------------------------------------------------------------
# Prompt context
# ---------------------------------------------------------------------------

@dataclass
class PageInfo:
    title: str
    domain: str
    url: str = ""


@dataclass
class SkillInfo:
    name: str
    description: str


@dataclass
class PromptContext:
    """Optional hints rendered into the system prompt.

    ``share_page_content`` is tri-state: ``None`` leaves the page section
    out entirely, ``False`` tells the model page extraction is off.
    """

    share_page_content: bool | None = None
    page: PageInfo | None = None
    skills: list[SkillInfo] = field(default_factory=list)
    language: str | None = None
