"""Streaming chat client, stream decoding and error classification."""

from tactus_agent.llm.client import AsyncChatClient, ChatStream
from tactus_agent.llm.errors import ChatError, ErrorClassifier, ErrorKind
from tactus_agent.llm.response_parser import SSEDecoder, ToolCallAggregator

__all__ = [
    "AsyncChatClient",
    "ChatStream",
    "ChatError",
    "ErrorClassifier",
    "ErrorKind",
    "SSEDecoder",
    "ToolCallAggregator",
]
