"""Server-sent-event decoding and tool-call reconstruction.

The decoder only demultiplexes the wire format into content, reasoning
and tool-call deltas.  The aggregator turns tool-call deltas back into
complete calls, tolerating the quirks some OpenAI-compatible backends
show when streaming function calls.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Iterator, Union

from tactus_agent.types import ContentDelta, ReasoningDelta, ToolCall, ToolCallDelta

_logger = logging.getLogger(__name__)

Delta = Union[ContentDelta, ReasoningDelta, ToolCallDelta]

_DATA_PREFIX = "data:"
_DONE_SENTINEL = "[DONE]"


# ---------------------------------------------------------------------------
# Closed-JSON heuristic
# ---------------------------------------------------------------------------

def is_closed_json(text: str) -> bool:
    """Return True when *text* is one brace-balanced ``{...}`` object.

    This is a string-only brace counter that ignores braces inside quoted
    strings; it is NOT a JSON validator.  ``{"a": }`` counts as closed.
    """
    stripped = text.strip()
    if not stripped.startswith("{"):
        return False
    depth = 0
    in_string = False
    escape = False
    for i, ch in enumerate(stripped):
        if escape:
            escape = False
            continue
        if ch == "\\":
            escape = True
            continue
        if ch == '"':
            in_string = not in_string
            continue
        if in_string:
            continue
        if ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                return i == len(stripped) - 1
    return False


# ---------------------------------------------------------------------------
# SSEDecoder
# ---------------------------------------------------------------------------

class SSEDecoder:
    """Incremental decoder for ``data: {...}`` completion-chunk frames.

    Feed it text as it arrives; partial lines are held back until their
    newline shows up.  A frame that fails to parse is dropped on its own
    without affecting the rest of the stream.
    """

    def __init__(self) -> None:
        self._buffer = ""
        self.done = False
        self.finish_reason = ""
        self.model = ""
        self.usage: dict[str, int] = {}
        self.skipped_frames = 0

    def feed(self, chunk: str) -> Iterator[Delta]:
        if self.done:
            return
        self._buffer += chunk
        *lines, self._buffer = self._buffer.split("\n")
        for line in lines:
            yield from self._decode_line(line)
            if self.done:
                self._buffer = ""
                return

    def finish(self) -> Iterator[Delta]:
        """Flush a trailing line that never got its newline."""
        rest, self._buffer = self._buffer, ""
        if rest and not self.done:
            yield from self._decode_line(rest)

    def _decode_line(self, line: str) -> Iterator[Delta]:
        line = line.strip()
        if not line.startswith(_DATA_PREFIX):
            # blank separators, ``event:`` lines and ``: keep-alive`` comments
            return
        payload = line[len(_DATA_PREFIX):].strip()
        if payload == _DONE_SENTINEL:
            self.done = True
            return
        try:
            data = json.loads(payload)
            yield from self._decode_chunk(data)
        except (ValueError, TypeError, AttributeError) as e:
            self.skipped_frames += 1
            _logger.debug("Skipping malformed stream frame %r: %s", payload[:200], e)

    def _decode_chunk(self, data: dict[str, Any]) -> Iterator[Delta]:
        if data.get("model"):
            self.model = data["model"]
        if data.get("usage"):
            self.usage = data["usage"]

        choices = data.get("choices") or []
        if not choices:
            return
        choice = choices[0]
        if choice.get("finish_reason"):
            self.finish_reason = choice["finish_reason"]

        delta = choice.get("delta") or {}
        reasoning = delta.get("reasoning_content") or delta.get("reasoning")
        if reasoning:
            yield ReasoningDelta(reasoning)
        content = delta.get("content")
        if content:
            yield ContentDelta(content)

        for raw in delta.get("tool_calls") or []:
            func = raw.get("function") or {}
            yield ToolCallDelta(
                index=int(raw.get("index") or 0),
                id=raw.get("id") or None,
                name=func.get("name") or None,
                arguments=func.get("arguments") or None,
            )


# ---------------------------------------------------------------------------
# ToolCallAggregator
# ---------------------------------------------------------------------------

@dataclass
class ToolCallFragment:
    """In-progress tool call, keyed by ``(slot, id)``."""

    slot: int
    id: str
    name: str = ""
    arguments: str = ""
    rejected: list[str] = field(default_factory=list, compare=False)

    @property
    def closed(self) -> bool:
        return is_closed_json(self.arguments)

    def append(self, name: str | None, arguments: str | None) -> None:
        if name:
            if self.closed and self.name:
                # Whole delta re-sent: name and arguments are both complete.
                _logger.debug(
                    "Ignoring name %r for closed tool call %s[%d]",
                    name, self.id, self.slot,
                )
            else:
                self.name += name
        if arguments:
            if self.closed:
                # Already a complete object: a backend is re-sending it.
                self.rejected.append(arguments)
                _logger.debug(
                    "Rejecting fragment %r for closed tool call %s[%d]",
                    arguments, self.id, self.slot,
                )
                return
            self.arguments += arguments

    def to_tool_call(self) -> ToolCall:
        return ToolCall(id=self.id, name=self.name, arguments=self.arguments)


class ToolCallAggregator:
    """Rebuild complete tool calls from streamed ``ToolCallDelta`` values.

    Holds a two-level container: slot index -> call id -> fragment.

    * a delta with an id unseen at its slot opens a new fragment;
    * a delta with a known id appends to that fragment;
    * a delta without an id continues the fragment most recently opened
      at its slot.

    This covers ordinary one-id-per-slot streams, zero-argument calls
    whose ``{}`` is re-sent verbatim, and backends that put several ids
    on the same slot.
    """

    def __init__(self) -> None:
        self._slots: dict[int, dict[str, ToolCallFragment]] = {}
        self._latest: dict[int, str] = {}

    def feed(self, delta: ToolCallDelta) -> None:
        fragments = self._slots.setdefault(delta.index, {})
        call_id = delta.id
        if call_id is None:
            call_id = self._latest.get(delta.index)
            if call_id is None:
                # Continuation with nothing to continue: keep it anonymous.
                call_id = ""
        if call_id not in fragments:
            fragments[call_id] = ToolCallFragment(slot=delta.index, id=call_id)
            self._latest[delta.index] = call_id
        fragments[call_id].append(delta.name, delta.arguments)

    def has_calls(self) -> bool:
        return any(self._slots.values())

    def fragments(self) -> list[ToolCallFragment]:
        """All fragments in slot order, then creation order."""
        return [
            frag
            for slot in sorted(self._slots)
            for frag in self._slots[slot].values()
        ]

    def finalize(self) -> list[ToolCall]:
        """Complete calls only: fragments lacking an id or a name are dropped."""
        result: list[ToolCall] = []
        for frag in self.fragments():
            if not frag.id or not frag.name:
                _logger.debug(
                    "Dropping incomplete tool-call fragment at slot %d (id=%r, name=%r)",
                    frag.slot, frag.id, frag.name,
                )
                continue
            result.append(frag.to_tool_call())
        return result
