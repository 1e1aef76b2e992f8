"""Executor: hands resolved tool calls to the external tool executor.

The executor never knows how a tool works; it only forwards the call
and normalizes the outcome into a ``ToolResult``.
"""

from __future__ import annotations

import logging
from typing import Awaitable, Callable

from tactus_agent.types import ResolvedToolCall, ToolResult

_logger = logging.getLogger(__name__)

# The collaborator: (ResolvedToolCall) -> ToolResult
ToolExecutor = Callable[[ResolvedToolCall], Awaitable[ToolResult]]


class Executor:
    """Runs tool calls through the supplied collaborator.

    Calls are awaited one at a time by the orchestrator; a dispatched call
    always runs to completion or explicit failure.
    """

    def __init__(self, tool_executor: ToolExecutor | None = None) -> None:
        self._tool_executor = tool_executor

    async def run_one(self, tc: ResolvedToolCall) -> ToolResult:
        """Run one call; collaborator exceptions become failed results."""
        if self._tool_executor is None:
            return ToolResult(
                tool_call_id=tc.id,
                name=tc.name,
                result=f"No tool executor is configured to run {tc.name}",
                success=False,
            )
        try:
            result = await self._tool_executor(tc)
        except Exception as e:
            _logger.warning("Tool %s (%s) raised: %s", tc.name, tc.id, e)
            return ToolResult(
                tool_call_id=tc.id,
                name=tc.name,
                result=f"Tool '{tc.name}' execution failed: {type(e).__name__}: {e}",
                success=False,
            )
        if not result.tool_call_id:
            result.tool_call_id = tc.id
        if not result.name:
            result.name = tc.name
        return result
