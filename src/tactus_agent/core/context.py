"""Prompt assembly and the context ledger.

``MessageBuilder`` turns base instructions, contextual hints and prior
turns into the opening message list of an exchange.  ``ContextLedger``
is the ordered, wire-exact history the orchestrator appends to.
"""

from __future__ import annotations

import copy
import logging
from typing import Any, Iterable, Sequence

from tactus_agent.types import Message, PromptContext, SkillInfo

_logger = logging.getLogger(__name__)

DEFAULT_INSTRUCTIONS = """You are a helpful AI assistant. Always respond using Markdown format for better readability. Use:
- Headers (##, ###) for sections
- **bold** and *italic* for emphasis
- `code` for inline code and ``` for code blocks with language specification
- Lists (- or 1.) for enumerations
- > for quotes
- Tables when presenting structured data"""

_LANGUAGE_NAMES = {
    "en": "English",
    "zh-CN": "Simplified Chinese (简体中文)",
}


class LedgerError(ValueError):
    """Raised when an append would break the tool-message invariant."""


def render_context(context: PromptContext | None) -> str:
    """Deterministic text for *context*; empty when nothing is set."""
    if context is None:
        return ""

    hints: list[str] = []
    if context.language:
        name = _LANGUAGE_NAMES.get(context.language, context.language)
        hints.append(f"- Always respond in {name}")

    if context.share_page_content:
        hint = (
            "- The user is sharing the current page. When a question is about "
            "the page, fetch its content with a tool first"
        )
        if context.page:
            hint += f"\n- Current page: {context.page.title} ({context.page.domain})"
            if context.page.url:
                hint += f"\n- Page URL: {context.page.url}"
        hints.append(hint)
    elif context.share_page_content is False:
        hints.append(
            "- The user is not sharing the current page; "
            "extract_page_content is unavailable"
        )

    sections: list[str] = []
    if hints:
        sections.append("## Current context\n" + "\n".join(hints))
    if context.skills:
        sections.append(_render_skills(context.skills))
    if not sections:
        return ""
    sections.append(
        "## Important\n"
        "- Do not assume page content; obtain it through tools\n"
        "- Tool results are returned to you; base your answer on them"
    )
    return "\n\n".join(sections)


def _render_skills(skills: Sequence[SkillInfo]) -> str:
    entries = "\n".join(
        f"  <skill>\n    <name>{s.name}</name>\n"
        f"    <description>{s.description}</description>\n  </skill>"
        for s in skills
    )
    return (
        "## Available skills\n"
        "These skills are installed. When the user's task matches a skill's "
        "description, activate it with the activate_skill tool.\n\n"
        f"<available_skills>\n{entries}\n</available_skills>\n\n"
        "When page content is needed, prefer a skill that targets the current "
        "site; otherwise use extract_page_content."
    )


class MessageBuilder:
    """Build the opening message list of an exchange.

    The output starts with exactly one system message.  A restored history
    that carries its own system message has it replaced.
    """

    def __init__(self, base_instructions: str = DEFAULT_INSTRUCTIONS) -> None:
        self.base_instructions = base_instructions

    def system_prompt(self, context: PromptContext | None = None) -> str:
        parts = [self.base_instructions.strip()]
        rendered = render_context(context)
        if rendered:
            parts.append(rendered)
        return "\n\n".join(p for p in parts if p)

    @staticmethod
    def user_message(text: str, quote: str | None = None) -> Message:
        """User turn, prefixed with the passage the user quoted, if any."""
        if quote:
            return Message.user(f'[Quote: "{quote}"]\n\n{text}')
        return Message.user(text)

    def build(
        self,
        history: Iterable[Message | dict[str, Any]] | None = None,
        context: PromptContext | None = None,
    ) -> list[Message]:
        messages = [Message.system(self.system_prompt(context))]
        for item in history or []:
            msg = item if isinstance(item, Message) else Message.from_wire(item)
            if msg.role == "system":
                continue
            messages.append(copy.deepcopy(msg))
        return messages


# ---------------------------------------------------------------------------
# Ledger
# ---------------------------------------------------------------------------

class ContextLedger:
    """Ordered wire history of one exchange.

    Only the orchestrator mutates it.  ``messages`` and ``snapshot()`` hand
    out copies, so readers cannot change what will be sent next.
    """

    def __init__(self, messages: Iterable[Message] | None = None) -> None:
        self._messages: list[Message] = []
        for msg in messages or []:
            self.append(msg)

    @classmethod
    def restore(cls, snapshot: Iterable[dict[str, Any] | Message]) -> ContextLedger:
        """Rebuild a ledger from ``snapshot()`` output."""
        return cls(
            m if isinstance(m, Message) else Message.from_wire(m) for m in snapshot
        )

    # -- reading -------------------------------------------------------

    def __len__(self) -> int:
        return len(self._messages)

    def __getitem__(self, index: int) -> Message:
        return copy.deepcopy(self._messages[index])

    @property
    def messages(self) -> list[Message]:
        return copy.deepcopy(self._messages)

    def to_wire(self) -> list[dict[str, Any]]:
        return [m.to_wire() for m in self._messages]

    def snapshot(self) -> list[dict[str, Any]]:
        """Opaque copy for a session store."""
        return copy.deepcopy(self.to_wire())

    def user_message_indices(self) -> list[int]:
        return [i for i, m in enumerate(self._messages) if m.role == "user"]

    # -- mutation ------------------------------------------------------

    def append(self, message: Message) -> None:
        if message.role == "tool":
            self._check_tool_message(message)
        self._messages.append(copy.deepcopy(message))

    def extend(self, messages: Iterable[Message]) -> None:
        for msg in messages:
            self.append(msg)

    def truncate(self, length: int) -> list[Message]:
        """Keep the first *length* messages; return what was removed."""
        if length < 0 or length > len(self._messages):
            raise IndexError(f"cannot truncate ledger of {len(self)} to {length}")
        removed = self._messages[length:]
        del self._messages[length:]
        return removed

    def discard_from(self, index: int) -> list[Message]:
        """Drop a speculative turn that started at *index*."""
        removed = self.truncate(index)
        _logger.debug(
            "Discarded %d speculative messages: %s",
            len(removed), [m.role for m in removed],
        )
        return removed

    def truncate_at_user_message(self, user_index: int) -> list[Message]:
        """Cut right before the *user_index*-th user message (0-based).

        Used when that message is edited or regenerated: everything from it
        onward, tool calls and tool results included, goes away.
        """
        indices = self.user_message_indices()
        if not 0 <= user_index < len(indices):
            raise IndexError(
                f"ledger has {len(indices)} user messages, no index {user_index}"
            )
        return self.truncate(indices[user_index])

    # -- invariants ----------------------------------------------------

    def _check_tool_message(self, message: Message) -> None:
        """A tool message must answer a call of the nearest assistant turn."""
        for prev in reversed(self._messages):
            if prev.role == "tool":
                continue
            if prev.role == "assistant":
                ids = {tc.id for tc in prev.tool_calls}
                if message.tool_call_id in ids:
                    return
            break
        raise LedgerError(
            f"tool message {message.tool_call_id!r} does not answer the "
            "preceding assistant turn"
        )
