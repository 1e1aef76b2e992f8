"""Orchestrator: the reason-act loop.

    ledger -> client stream -> reasoner -> executor -> ledger -> loop

The Orchestrator holds the long-lived collaborators.  Each user request
becomes an ``Exchange``: iterate it to pull ``StreamEvent`` values one at
a time, or ``await exchange.run()`` for just the final text.
"""

from __future__ import annotations

import copy
import logging
from typing import Any, AsyncIterator

from tactus_agent.config import LoopSpec
from tactus_agent.core.context import ContextLedger, MessageBuilder
from tactus_agent.core.executor import Executor, ToolExecutor
from tactus_agent.core.reasoner import ActionType, Reasoner
from tactus_agent.i18n import t
from tactus_agent.llm.client import AsyncChatClient
from tactus_agent.llm.errors import ChatError, ErrorKind
from tactus_agent.tools.catalog import ToolCatalog, status_text
from tactus_agent.types import (
    EventType,
    Message,
    PromptContext,
    StreamEvent,
    ToolResult,
)

_logger = logging.getLogger(__name__)

PENDING = "pending"
RUNNING = "running"
DONE = "done"
FAILED = "failed"


class Orchestrator:
    """Factory for exchanges.

    Parameters
    ----------
    client:
        Streaming chat client; shared by every exchange.
    catalog:
        Tool schemas, filtered per exchange by the prompt context.
    tool_executor:
        Async ``(ResolvedToolCall) -> ToolResult`` that actually runs tools.
    builder:
        Prompt assembly for fresh exchanges.
    loop:
        Iteration cap and tool retry budget.
    language:
        Locale of status and error texts when the context names none.
    """

    def __init__(
        self,
        client: AsyncChatClient,
        catalog: ToolCatalog | None = None,
        tool_executor: ToolExecutor | None = None,
        builder: MessageBuilder | None = None,
        loop: LoopSpec | None = None,
        language: str | None = None,
    ) -> None:
        self.client = client
        self.catalog = catalog or ToolCatalog()
        self.builder = builder or MessageBuilder()
        self.loop = loop or LoopSpec()
        self.language = language
        self._executor = Executor(tool_executor)
        self._reasoner = Reasoner()

    def start(
        self,
        user_text: str,
        history: list[Message] | list[dict[str, Any]] | None = None,
        context: PromptContext | None = None,
        ledger: ContextLedger | None = None,
        quote: str | None = None,
    ) -> Exchange:
        """Open an exchange for *user_text*.

        Without *ledger* a fresh one is built from *history*.  A given
        ledger is continued in place; an empty one is seeded first.
        """
        if ledger is None:
            ledger = ContextLedger(self.builder.build(history, context))
        elif len(ledger) == 0:
            ledger.extend(self.builder.build(history, context))
        ledger.append(self.builder.user_message(user_text, quote))
        return Exchange(self, ledger, context)

    def edit(
        self,
        ledger: ContextLedger,
        user_index: int,
        new_text: str,
        context: PromptContext | None = None,
    ) -> Exchange:
        """Replace the *user_index*-th user message and everything after it."""
        removed = ledger.truncate_at_user_message(user_index)
        _logger.debug("Edit of user message %d dropped %d messages", user_index, len(removed))
        return self.start(new_text, context=context, ledger=ledger)


class Exchange:
    """One user request through as many model and tool turns as it takes.

    Single use: iterate it once.  Attributes are readable at any point,
    including ``last_request``, the exact payload of the latest send.
    """

    def __init__(
        self,
        orchestrator: Orchestrator,
        ledger: ContextLedger,
        context: PromptContext | None = None,
    ) -> None:
        self._orch = orchestrator
        self.ledger = ledger
        self.context = context
        self.language = (context.language if context else None) or orchestrator.language
        self.status = PENDING
        self.error: ChatError | None = None
        self.final_content = ""
        self.iterations = 0
        self.tool_failures = 0
        self.truncated = False
        self.last_request: dict[str, Any] | None = None

    def __aiter__(self) -> AsyncIterator[StreamEvent]:
        if self.status != PENDING:
            raise RuntimeError(f"exchange already {self.status}")
        self.status = RUNNING
        return self._run()

    async def run(self) -> str:
        """Drain the events; return the final text or raise the failure."""
        async for _ in self:
            pass
        if self.error is not None:
            raise self.error
        return self.final_content

    # ------------------------------------------------------------------
    # Loop
    # ------------------------------------------------------------------

    async def _run(self) -> AsyncIterator[StreamEvent]:
        orch = self._orch
        tools = orch.catalog.schemas(self.context)

        try:
            while self.iterations < orch.loop.max_iterations:
                self.iterations += 1
                _logger.debug(
                    "Iteration %d/%d, ledger has %d messages",
                    self.iterations, orch.loop.max_iterations, len(self.ledger),
                )

                # 1. Send and stream
                stream = orch.client.stream_chat(self.ledger.messages, tools or None)
                self.last_request = copy.deepcopy(stream.payload)
                async for event in stream:
                    yield event
                response = stream.response
                assert response is not None

                # 2. Decide
                decision = orch._reasoner.decide(response)
                if decision.action == ActionType.RESPOND:
                    self.ledger.append(Message.assistant(response.content))
                    if response.content:
                        self.final_content = response.content
                    self.status = DONE
                    yield self._done()
                    return

                mark = len(self.ledger)
                self.ledger.append(
                    Message.assistant(response.content or None, response.tool_calls)
                )

                if decision.action == ActionType.DISCARD:
                    assert decision.error is not None
                    self.ledger.discard_from(mark)
                    for event in self._count_failure(decision.error):
                        yield event
                    if self.status == FAILED:
                        return
                    continue

                # 3. Dispatch, in resolution order
                results: list[ToolResult] = []
                failed: ToolResult | None = None
                settled = False
                try:
                    for call in decision.tool_calls:
                        yield StreamEvent(EventType.TOOL_CALL, {
                            "id": call.id,
                            "name": call.name,
                            "arguments": call.arguments,
                        })
                        yield StreamEvent(EventType.THINKING, {
                            "text": status_text(call.name, call.arguments, self.language),
                            "tool": call.name,
                        })
                        result = await orch._executor.run_one(call)
                        yield StreamEvent(EventType.TOOL_RESULT, {
                            "id": call.id,
                            "name": call.name,
                            "result": result.result,
                            "success": result.success,
                        })
                        if not result.success:
                            failed = result
                            break
                        results.append(result)
                    settled = True
                finally:
                    if not settled:
                        # Consumer stopped mid-turn: no half-executed turn stays.
                        self.ledger.discard_from(mark)

                if failed is not None:
                    self.ledger.discard_from(mark)
                    err = ChatError(
                        ErrorKind.TOOL_EXECUTION_ERROR,
                        f"{failed.name} ({failed.tool_call_id}) failed: {failed.result}",
                        retryable=False,
                    )
                    for event in self._count_failure(err):
                        yield event
                    if self.status == FAILED:
                        return
                    continue

                # 4. Observe
                for result in results:
                    self.ledger.append(
                        Message.tool(result.tool_call_id, result.name, result.to_message())
                    )
                if response.content:
                    self.final_content = response.content

        except ChatError as err:
            yield self._fail(err)
            return
        except Exception as e:
            _logger.exception("Exchange failed")
            yield self._fail(orch.client.classifier.classify(e))
            return

        _logger.info(
            "Exchange stopped at the iteration cap (%d)", orch.loop.max_iterations,
        )
        self.truncated = True
        self.status = DONE
        yield self._done()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _count_failure(self, err: ChatError) -> list[StreamEvent]:
        """Charge a discarded turn to the tool retry budget."""
        budget = self._orch.loop.tool_retry_budget
        self.tool_failures += 1
        err.attempt = self.tool_failures
        err.localized(self.language)

        if self.tool_failures > budget:
            _logger.warning(
                "Tool retry budget exhausted (%d/%d): %s",
                self.tool_failures, budget, err.message,
            )
            return [self._fail(err)]

        _logger.warning(
            "Discarded model turn with %s (%d/%d): %s",
            err.kind.name, self.tool_failures, budget, err.message,
        )
        return [
            StreamEvent(EventType.ERROR, err.to_event_data(retrying=True)),
            StreamEvent(EventType.THINKING, {
                "text": t(
                    "tool.retry", self.language,
                    count=self.tool_failures, budget=budget,
                ),
            }),
        ]

    def _fail(self, err: ChatError) -> StreamEvent:
        err.localized(self.language)
        self.error = err
        self.status = FAILED
        return StreamEvent(EventType.ERROR, err.to_event_data(retrying=False))

    def _done(self) -> StreamEvent:
        return StreamEvent(EventType.DONE, {
            "content": self.final_content,
            "iterations": self.iterations,
            "truncated": self.truncated,
        })
