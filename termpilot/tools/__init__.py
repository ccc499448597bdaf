"""Tool catalog, per-turn mask, execution and tool-call dispatch."""

from termpilot.tools.catalog import ToolAction, ToolCatalog, ToolDefinition, ToolParameter, to_wire_schema
from termpilot.tools.executor import CommandExecutor, ExecutionResult
from termpilot.tools.handler import ToolCallHandler, parse_tool_call_name
from termpilot.tools.mask import ToolMaskOptions, ToolMaskState, build_tool_mask, is_tool_allowed
from termpilot.tools.specs import discover_catalog

__all__ = [
    "CommandExecutor",
    "ExecutionResult",
    "ToolAction",
    "ToolCallHandler",
    "ToolCatalog",
    "ToolDefinition",
    "ToolMaskOptions",
    "ToolMaskState",
    "ToolParameter",
    "build_tool_mask",
    "discover_catalog",
    "is_tool_allowed",
    "parse_tool_call_name",
    "to_wire_schema",
]
