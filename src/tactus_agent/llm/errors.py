"""Failure taxonomy and classification.

Every failure that reaches the exchange is folded into exactly one
``ErrorKind`` with a retryable flag.  Transport only retries the
network-level kinds; tool faults are handled by the orchestrator's
discard-and-retry path instead.
"""

from __future__ import annotations

import asyncio
import enum
import logging

import httpx

from tactus_agent.i18n import t

_logger = logging.getLogger(__name__)


class ErrorKind(enum.Enum):
    TIMEOUT = "timeout"
    NETWORK_ERROR = "network_error"
    AUTH_ERROR = "auth_error"
    RATE_LIMIT = "rate_limit"
    QUOTA_EXCEEDED = "quota_exceeded"
    MODEL_NOT_FOUND = "model_not_found"
    INVALID_REQUEST = "invalid_request"
    SERVER_ERROR = "server_error"
    TOOL_PARSE_ERROR = "tool_parse_error"
    TOOL_EXECUTION_ERROR = "tool_execution_error"
    UNKNOWN = "unknown"


# Kinds Transport may retry on its own
RETRYABLE_KINDS = frozenset({
    ErrorKind.TIMEOUT,
    ErrorKind.NETWORK_ERROR,
    ErrorKind.RATE_LIMIT,
    ErrorKind.SERVER_ERROR,
})

# Wording that turns a 429 into a hard quota failure
_QUOTA_KEYWORDS = (
    "quota",
    "billing",
    "insufficient_quota",
    "exceeded your current",
    "credit",
    "payment",
)

_TIMEOUT_KEYWORDS = ("timeout", "timed out")
_NETWORK_KEYWORDS = ("network",)


class ChatError(Exception):
    """A classified failure.

    ``message`` is the internal description (status line, exception text);
    ``user_message`` is the short localized text meant for display.
    """

    def __init__(
        self,
        kind: ErrorKind,
        message: str,
        *,
        retryable: bool | None = None,
        status_code: int | None = None,
        attempt: int = 0,
        language: str | None = None,
    ) -> None:
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.retryable = kind in RETRYABLE_KINDS if retryable is None else retryable
        self.status_code = status_code
        self.attempt = attempt
        self.language = language

    @property
    def user_message(self) -> str:
        return t(f"error.{self.kind.value}", self.language)

    def localized(self, language: str | None) -> ChatError:
        self.language = language
        return self

    def to_event_data(self, retrying: bool) -> dict[str, object]:
        return {
            "kind": self.kind.value,
            "message": self.user_message,
            "detail": self.message,
            "retrying": retrying,
            "attempt": self.attempt,
            "status_code": self.status_code,
        }

    def __repr__(self) -> str:
        return f"ChatError({self.kind.name}, {self.message!r}, retryable={self.retryable})"


class ErrorClassifier:
    """Map transport, HTTP and runtime failures onto ``ErrorKind``.

    Precedence: explicit abort/timeout, then HTTP status, then network-layer
    exceptions, then keywords in the message text, then UNKNOWN.  Status
    codes always win over text heuristics.
    """

    def classify(
        self,
        error: BaseException | None = None,
        *,
        status_code: int | None = None,
        body: str = "",
    ) -> ChatError:
        if isinstance(error, ChatError):
            return error

        # 1. Abort / timeout signal
        if isinstance(error, (asyncio.TimeoutError, TimeoutError, httpx.TimeoutException)):
            return ChatError(ErrorKind.TIMEOUT, _describe(error) or "request timed out")

        # 2. HTTP status
        if status_code is None and isinstance(error, httpx.HTTPStatusError):
            status_code = error.response.status_code
            if not body:
                body = _response_text(error.response)
        if status_code is not None:
            by_status = self._classify_status(status_code, body or _describe(error))
            if by_status is not None:
                return by_status

        # 3. Network layer
        if isinstance(error, (httpx.TransportError, OSError)):
            return ChatError(ErrorKind.NETWORK_ERROR, _describe(error) or "network error")

        # 4. Text heuristics
        text = (_describe(error) or body).lower()
        if any(kw in text for kw in _TIMEOUT_KEYWORDS):
            return ChatError(ErrorKind.TIMEOUT, _describe(error) or body, status_code=status_code)
        if any(kw in text for kw in _NETWORK_KEYWORDS):
            return ChatError(
                ErrorKind.NETWORK_ERROR, _describe(error) or body, status_code=status_code,
            )

        _logger.debug("Unclassified failure: %r", error)
        return ChatError(
            ErrorKind.UNKNOWN,
            _describe(error) or body or "unknown error",
            status_code=status_code,
        )

    @staticmethod
    def _classify_status(status_code: int, text: str) -> ChatError | None:
        detail = f"HTTP {status_code}"
        if text:
            detail = f"{detail}: {text[:300]}"

        if status_code in (401, 403):
            return ChatError(ErrorKind.AUTH_ERROR, detail, status_code=status_code)
        if status_code == 429:
            lower = text.lower()
            if any(kw in lower for kw in _QUOTA_KEYWORDS):
                return ChatError(ErrorKind.QUOTA_EXCEEDED, detail, status_code=status_code)
            return ChatError(ErrorKind.RATE_LIMIT, detail, status_code=status_code)
        if status_code == 404:
            return ChatError(ErrorKind.MODEL_NOT_FOUND, detail, status_code=status_code)
        if status_code == 400:
            return ChatError(ErrorKind.INVALID_REQUEST, detail, status_code=status_code)
        if status_code >= 500:
            return ChatError(ErrorKind.SERVER_ERROR, detail, status_code=status_code)
        return None


def _describe(error: BaseException | None) -> str:
    if error is None:
        return ""
    text = str(error)
    return text or type(error).__name__


def _response_text(response: httpx.Response) -> str:
    try:
        return response.text
    except httpx.ResponseNotRead:
        return ""
