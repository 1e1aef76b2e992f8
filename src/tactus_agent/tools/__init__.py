"""Tool schemas for tactus-agent."""

from tactus_agent.tools.catalog import ToolCatalog, ToolParameter, ToolSpec, default_catalog

__all__ = ["ToolCatalog", "ToolParameter", "ToolSpec", "default_catalog"]
