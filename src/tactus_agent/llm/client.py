"""Async streaming client for OpenAI-compatible chat-completion APIs.

Uses ``httpx.AsyncClient``.  ``stream_chat()`` returns a ``ChatStream``:
iterate it for ``StreamEvent`` values, then read ``.response`` for the
completed turn.  One ``ChatStream`` is one logical send that may span
several physical attempts.
"""

from __future__ import annotations

import asyncio
import logging
import random
import time
from typing import Any, AsyncIterator

import httpx

from tactus_agent.config import ProfileSpec, RetrySpec
from tactus_agent.i18n import t
from tactus_agent.types import (
    ContentDelta,
    EventType,
    LLMResponse,
    Message,
    ModelInfo,
    ReasoningDelta,
    StreamEvent,
    ToolCallDelta,
)

from .errors import ChatError, ErrorClassifier, ErrorKind
from .response_parser import SSEDecoder, ToolCallAggregator

_logger = logging.getLogger(__name__)

_CONNECT_TIMEOUT = 30


def normalize_base_url(url: str) -> str:
    """Strip a trailing slash and ``/v1`` so paths can add ``/v1/...``."""
    return url.rstrip("/").removesuffix("/v1").rstrip("/")


class AsyncChatClient:
    """Client for one OpenAI-compatible provider profile.

    Safe to share between exchanges: per-send state lives on the
    ``ChatStream`` it returns, never on the client.
    """

    def __init__(
        self,
        profile: ProfileSpec,
        retry: RetrySpec | None = None,
        classifier: ErrorClassifier | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        language: str | None = None,
    ) -> None:
        self.profile = profile
        self.retry = retry or RetrySpec()
        self.classifier = classifier or ErrorClassifier()
        self.language = language

        headers = {
            "Authorization": f"Bearer {profile.resolved_api_key()}",
            "Content-Type": "application/json",
        }
        self._client = httpx.AsyncClient(
            base_url=normalize_base_url(profile.url),
            headers=headers,
            timeout=httpx.Timeout(
                self.retry.timeout,
                connect=_CONNECT_TIMEOUT,
                read=self.retry.read_timeout,
            ),
            transport=transport,
        )

    # ------------------------------------------------------------------
    # Chat
    # ------------------------------------------------------------------

    def build_payload(
        self,
        messages: list[Message] | list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
        tool_choice: str | None = None,
        model: str | None = None,
    ) -> dict[str, Any]:
        """The exact JSON body sent to ``/v1/chat/completions``."""
        payload: dict[str, Any] = {
            "model": model or self.profile.model,
            "messages": [
                m.to_wire() if isinstance(m, Message) else dict(m) for m in messages
            ],
            "stream": True,
        }
        if tools:
            payload["tools"] = tools
            payload["tool_choice"] = tool_choice or "auto"
        if self.profile.extra_params:
            payload.update(self.profile.extra_params)
        return payload

    def stream_chat(
        self,
        messages: list[Message] | list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
        tool_choice: str | None = None,
        model: str | None = None,
    ) -> ChatStream:
        """Start a streaming completion.  Nothing is sent until iterated."""
        payload = self.build_payload(messages, tools, tool_choice, model)
        return ChatStream(self, payload)

    # ------------------------------------------------------------------
    # Models
    # ------------------------------------------------------------------

    async def list_models(self) -> list[ModelInfo]:
        """Model ids from ``GET /v1/models``; empty on any failure."""
        try:
            resp = await self._client.get("/v1/models")
            resp.raise_for_status()
            data = resp.json()
        except (httpx.HTTPError, ValueError) as e:
            err = self.classifier.classify(e)
            _logger.warning("Failed to fetch models (%s): %s", err.kind.value, err.message)
            return []
        return [
            ModelInfo(id=m["id"], name=m.get("name") or m["id"])
            for m in data.get("data", [])
            if isinstance(m, dict) and m.get("id")
        ]

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _open_stream(self, payload: dict[str, Any]) -> httpx.Response:
        """Send the request and wait (bounded) for response headers."""
        request = self._client.build_request("POST", "/v1/chat/completions", json=payload)
        resp = await asyncio.wait_for(
            self._client.send(request, stream=True), timeout=self.retry.timeout,
        )
        if resp.status_code >= 400:
            try:
                await resp.aread()
            finally:
                await resp.aclose()
            raise httpx.HTTPStatusError(
                f"Chat completion returned {resp.status_code}",
                request=request,
                response=resp,
            )
        return resp

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        await self._client.aclose()

    async def __aenter__(self) -> AsyncChatClient:
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.close()


class ChatStream:
    """One logical send: retries, decoding and tool-call aggregation.

    Iterating yields ``content`` / ``reasoning`` events as they arrive,
    plus ``error{retrying: True}`` and a ``thinking`` countdown before each
    backoff sleep.  A terminal failure is raised as ``ChatError``.
    """

    def __init__(
        self,
        client: AsyncChatClient,
        payload: dict[str, Any],
    ) -> None:
        self._client = client
        self.payload = payload
        self.response: LLMResponse | None = None
        self.attempts = 0
        self.last_error: ChatError | None = None

    def __aiter__(self) -> AsyncIterator[StreamEvent]:
        return self._run()

    async def _run(self) -> AsyncIterator[StreamEvent]:
        retry = self._client.retry
        language = self._client.language
        start = time.monotonic()

        for attempt in range(1, retry.max_attempts + 1):
            self.attempts = attempt
            decoder = SSEDecoder()
            aggregator = ToolCallAggregator()
            content: list[str] = []
            reasoning: list[str] = []
            emitted = False

            try:
                resp = await self._client._open_stream(self.payload)
                try:
                    async for text in resp.aiter_text():
                        for delta in decoder.feed(text):
                            event = _route(delta, aggregator, content, reasoning)
                            if event is not None:
                                emitted = True
                                yield event
                        if decoder.done:
                            break
                    for delta in decoder.finish():
                        event = _route(delta, aggregator, content, reasoning)
                        if event is not None:
                            emitted = True
                            yield event
                finally:
                    await resp.aclose()
            except Exception as e:  # classified below; nothing is swallowed
                err = self._client.classifier.classify(e)
            else:
                self.response = LLMResponse(
                    content="".join(content),
                    reasoning="".join(reasoning),
                    tool_calls=aggregator.finalize(),
                    finish_reason=decoder.finish_reason or "stop",
                    usage=decoder.usage,
                    model=decoder.model or self.payload.get("model", ""),
                    latency_ms=(time.monotonic() - start) * 1000,
                    attempts=attempt,
                )
                return

            err.attempt = attempt
            err.localized(language)
            self.last_error = err

            if emitted and err.retryable:
                # Text already reached the consumer; a resend would duplicate it.
                _logger.warning(
                    "Stream interrupted after output (attempt %d/%d): %s",
                    attempt, retry.max_attempts, err.message,
                )
                err.retryable = False
                raise err
            if not err.retryable:
                _logger.warning(
                    "Chat request failed with %s (attempt %d/%d): %s",
                    err.kind.name, attempt, retry.max_attempts, err.message,
                )
                raise err
            if attempt >= retry.max_attempts:
                _logger.warning(
                    "Chat request failed with %s, retries exhausted (%d/%d): %s",
                    err.kind.name, attempt, retry.max_attempts, err.message,
                )
                raise err

            delay = retry.delay(attempt - 1, random.uniform(0, retry.jitter))
            _logger.warning(
                "Chat request failed with %s (attempt %d/%d), retrying in %.1fs: %s",
                err.kind.name, attempt, retry.max_attempts, delay, err.message,
            )
            yield StreamEvent(EventType.ERROR, err.to_event_data(retrying=True))
            yield StreamEvent(EventType.THINKING, {
                "text": t(
                    "retry.countdown", language,
                    seconds=max(1, round(delay)),
                    attempt=attempt + 1,
                    total=retry.max_attempts,
                ),
                "delay": delay,
                "attempt": attempt + 1,
                "max_attempts": retry.max_attempts,
            })
            await asyncio.sleep(delay)

        # max_attempts >= 1 means the loop always returns or raises
        raise ChatError(ErrorKind.UNKNOWN, "no attempt was made", retryable=False)

    async def collect(self) -> LLMResponse:
        """Drain the stream, discarding events, and return the response."""
        async for _ in self:
            pass
        assert self.response is not None
        return self.response


def _route(
    delta: ContentDelta | ReasoningDelta | ToolCallDelta,
    aggregator: ToolCallAggregator,
    content: list[str],
    reasoning: list[str],
) -> StreamEvent | None:
    if isinstance(delta, ToolCallDelta):
        aggregator.feed(delta)
        return None
    if isinstance(delta, ReasoningDelta):
        reasoning.append(delta.text)
        return StreamEvent(EventType.REASONING, {"text": delta.text})
    content.append(delta.text)
    return StreamEvent(EventType.CONTENT, {"text": delta.text})
