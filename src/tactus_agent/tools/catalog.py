"""Declarative tool catalog.

The catalog only knows schemas; running a tool is the job of the
externally supplied executor.  Schemas are filtered by the prompt
context before they go on the wire.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from tactus_agent.i18n import has_key, t
from tactus_agent.types import PromptContext

_logger = logging.getLogger(__name__)

# Tool requirement tags checked against PromptContext
REQUIRES_PAGE = "page"
REQUIRES_SKILLS = "skills"


@dataclass
class ToolParameter:
    """Definition of a tool parameter."""

    name: str
    type: str  # string, integer, boolean, array, object
    description: str
    required: bool = True
    enum: list[str] | None = None


@dataclass
class ToolSpec:
    """Schema of one callable tool."""

    name: str
    description: str
    parameters: list[ToolParameter] = field(default_factory=list)
    requires: str | None = None
    strict: bool = False

    def to_openai_schema(self) -> dict[str, Any]:
        """Convert to OpenAI function calling format."""
        properties: dict[str, Any] = {}
        required: list[str] = []
        for p in self.parameters:
            prop: dict[str, Any] = {
                "type": p.type,
                "description": p.description,
            }
            if p.enum:
                prop["enum"] = p.enum
            properties[p.name] = prop
            if p.required:
                required.append(p.name)

        function: dict[str, Any] = {
            "name": self.name,
            "description": self.description,
            "parameters": {
                "type": "object",
                "properties": properties,
                "required": required,
                "additionalProperties": False,
            },
        }
        if self.strict:
            function["strict"] = True
        return {"type": "function", "function": function}

    def available(self, context: PromptContext | None) -> bool:
        if self.requires == REQUIRES_PAGE:
            return bool(context and context.share_page_content)
        if self.requires == REQUIRES_SKILLS:
            return bool(context and context.skills)
        return True


class ToolCatalog:
    """Registry of tool schemas."""

    def __init__(self, tools: list[ToolSpec] | None = None) -> None:
        self._tools: dict[str, ToolSpec] = {}
        for tool in tools or []:
            self.register(tool)

    def register(self, tool: ToolSpec) -> None:
        if tool.name in self._tools:
            _logger.warning("Replacing tool schema %s", tool.name)
        self._tools[tool.name] = tool

    def get(self, name: str) -> ToolSpec | None:
        return self._tools.get(name)

    def tool_names(self) -> list[str]:
        return list(self._tools)

    def filtered(self, context: PromptContext | None = None) -> list[ToolSpec]:
        return [tool for tool in self._tools.values() if tool.available(context)]

    def schemas(self, context: PromptContext | None = None) -> list[dict[str, Any]]:
        """OpenAI schemas for the tools usable under *context*."""
        return [tool.to_openai_schema() for tool in self.filtered(context)]


def status_text(
    name: str,
    arguments: dict[str, Any] | None = None,
    language: str | None = None,
) -> str:
    """Progress line shown while tool *name* runs."""
    args = arguments or {}
    named = f"tool.{name}.named"
    if has_key(named):
        try:
            return t(named, language, **args)
        except KeyError:
            pass  # a placeholder argument is missing: use the plain text
    if has_key(f"tool.{name}"):
        return t(f"tool.{name}", language)
    return t("tool.default", language, name=name)


def default_catalog() -> ToolCatalog:
    """Schemas of the browser-side tools: page extraction and skills."""
    return ToolCatalog([
        ToolSpec(
            name="extract_page_content",
            description=(
                "Extract and clean the main content of the current web page. "
                "Returns structured Markdown with title, author and source "
                "metadata. Call this when the user asks about the current page."
            ),
            requires=REQUIRES_PAGE,
        ),
        ToolSpec(
            name="activate_skill",
            description=(
                "Activate an installed skill and load its full instructions "
                "into the context. Call this when the user's task matches a "
                "skill's description."
            ),
            parameters=[
                ToolParameter("skill_name", "string", "Name of the skill"),
            ],
            requires=REQUIRES_SKILLS,
        ),
        ToolSpec(
            name="execute_skill_script",
            description=(
                "Run a script file bundled with a skill in the context of the "
                "current page. The user may be asked to confirm first. Pass "
                "parameters through 'arguments'; the script reads them from "
                "__args__."
            ),
            parameters=[
                ToolParameter("skill_name", "string", "Name of the skill"),
                ToolParameter("script_path", "string", "Path of the script file"),
                ToolParameter(
                    "arguments", "object",
                    "Optional arguments object exposed to the script as __args__",
                    required=False,
                ),
            ],
            requires=REQUIRES_SKILLS,
        ),
        ToolSpec(
            name="read_skill_file",
            description=(
                "Read a text file bundled with a skill, from its references/ "
                "or assets/ directory."
            ),
            parameters=[
                ToolParameter("skill_name", "string", "Name of the skill"),
                ToolParameter("file_path", "string", "Path of the referenced file"),
            ],
            requires=REQUIRES_SKILLS,
        ),
    ])
