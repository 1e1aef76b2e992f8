"""Reasoner: interprets a completed model turn and decides the next action.

The Reasoner is pure: it takes an ``LLMResponse`` and returns a
``ReasonerDecision`` describing what the orchestrator should do next.
"""

from __future__ import annotations

import enum
import json
import logging
from dataclasses import dataclass, field

from tactus_agent.llm.errors import ChatError, ErrorKind
from tactus_agent.types import LLMResponse, ResolvedToolCall, ToolCall

_logger = logging.getLogger(__name__)


class ActionType(enum.Enum):
    """What the orchestrator should do after reasoning."""

    EXECUTE_TOOLS = "execute_tools"  # Dispatch the resolved tool calls
    RESPOND = "respond"              # Content-only turn, exchange is done
    DISCARD = "discard"              # Tool arguments did not parse


@dataclass
class ReasonerDecision:
    """Output of the Reasoner."""

    action: ActionType
    tool_calls: list[ResolvedToolCall] = field(default_factory=list)
    response_text: str = ""
    error: ChatError | None = None


def resolve_tool_call(call: ToolCall) -> ResolvedToolCall:
    """Parse the raw argument string of *call* into a JSON object.

    An empty string means no arguments.  Anything that is not a JSON
    object raises ``ChatError(TOOL_PARSE_ERROR)``.
    """
    raw = call.arguments.strip()
    if not raw:
        return ResolvedToolCall(id=call.id, name=call.name, arguments={})
    try:
        args = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ChatError(
            ErrorKind.TOOL_PARSE_ERROR,
            f"Arguments of {call.name} ({call.id}) are not valid JSON: {e}",
            retryable=False,
        ) from e
    if not isinstance(args, dict):
        raise ChatError(
            ErrorKind.TOOL_PARSE_ERROR,
            f"Arguments of {call.name} ({call.id}) are not a JSON object",
            retryable=False,
        )
    return ResolvedToolCall(id=call.id, name=call.name, arguments=args)


class Reasoner:
    """Decision logic:

    1. No tool calls -> RESPOND with the turn's content.
    2. Every tool call's arguments parse -> EXECUTE_TOOLS.
    3. Any argument string fails to parse -> DISCARD; nothing is executed.
    """

    def resolve(self, tool_calls: list[ToolCall]) -> list[ResolvedToolCall]:
        """Resolve every call or raise on the first bad argument string."""
        return [resolve_tool_call(tc) for tc in tool_calls]

    def decide(self, response: LLMResponse) -> ReasonerDecision:
        if not response.has_tool_calls:
            return ReasonerDecision(
                action=ActionType.RESPOND,
                response_text=response.content,
            )

        try:
            resolved = self.resolve(response.tool_calls)
        except ChatError as e:
            _logger.warning("Discarding model turn: %s", e.message)
            return ReasonerDecision(
                action=ActionType.DISCARD,
                response_text=response.content,
                error=e,
            )

        return ReasonerDecision(
            action=ActionType.EXECUTE_TOOLS,
            tool_calls=resolved,
            response_text=response.content,
        )
