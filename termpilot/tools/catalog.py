"""Tool catalog model.

A tool is an external program (or a builtin) with named actions.  Each
action is exposed to the model as one function named ``{tool_id}_{action}``;
tool ids therefore never contain ``_``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional

TOOL_NAME_DELIMITER = "_"


class ParamType(str, Enum):
    """Parameter types. ``file`` and ``directory`` are strings holding paths."""

    STRING = "string"
    NUMBER = "number"
    BOOLEAN = "boolean"
    FILE = "file"
    DIRECTORY = "directory"

    @property
    def json_type(self) -> str:
        if self in (ParamType.NUMBER, ParamType.BOOLEAN):
            return self.value
        return "string"


@dataclass
class ToolParameter:
    name: str
    description: str
    type: ParamType = ParamType.STRING
    required: bool = False
    default: Any = None
    # Inserted into the command line verbatim instead of shell-quoted.
    raw: bool = False

    def check(self, value: Any) -> Optional[str]:
        """Return an error message when ``value`` does not fit the declared type."""
        if self.type is ParamType.NUMBER:
            if isinstance(value, bool):
                return f"Parameter {self.name} must be a number"
            if isinstance(value, (int, float)):
                return None
            try:
                float(str(value))
            except ValueError:
                return f"Parameter {self.name} must be a number"
        elif self.type is ParamType.BOOLEAN:
            if not isinstance(value, bool) and value not in ("true", "false"):
                return f"Parameter {self.name} must be a boolean"
        elif not isinstance(value, (str, int, float)):
            return f"Parameter {self.name} must be a string"
        return None


@dataclass
class ToolAction:
    name: str
    description: str
    parameters: List[ToolParameter] = field(default_factory=list)
    # ``{{param}}`` placeholders plus ``{{execPath}}``; ``__NAME__`` marks a builtin.
    command_template: str = ""

    @property
    def is_builtin(self) -> bool:
        t = self.command_template
        return t.startswith("__") and t.endswith("__")


@dataclass
class ToolDefinition:
    id: str
    name: str
    description: str
    category: str = "other"
    actions: List[ToolAction] = field(default_factory=list)
    capabilities: List[str] = field(default_factory=list)
    # Executable names looked up on PATH; empty for builtins.
    executables: List[str] = field(default_factory=list)
    install_hint: str = ""
    env: Dict[str, str] = field(default_factory=dict)
    installed: bool = False
    executable_path: str = ""
    version: Optional[str] = None

    def __post_init__(self) -> None:
        if TOOL_NAME_DELIMITER in self.id:
            raise ValueError(f"Tool id {self.id!r} must not contain {TOOL_NAME_DELIMITER!r}")

    def get_action(self, name: str) -> Optional[ToolAction]:
        for action in self.actions:
            if action.name == name:
                return action
        return None

    @property
    def action_names(self) -> List[str]:
        return [a.name for a in self.actions]


def validate_params(action: ToolAction, params: Dict[str, Any]) -> List[str]:
    """Check required parameters and declared types; returns error messages."""
    errors: List[str] = []
    for param in action.parameters:
        value = params.get(param.name)
        if param.required and (value is None or value == ""):
            errors.append(f"Missing required parameter: {param.name}")
            continue
        if value is not None:
            error = param.check(value)
            if error:
                errors.append(error)
    return errors


def fill_defaults(action: ToolAction, params: Dict[str, Any]) -> Dict[str, Any]:
    result = dict(params)
    for param in action.parameters:
        if result.get(param.name) is None and param.default is not None:
            result[param.name] = param.default
    return result


def params_to_json_schema(params: List[ToolParameter]) -> Dict[str, Any]:
    """Convert parameter definitions to a JSON Schema object."""
    properties: Dict[str, Any] = {}
    required: List[str] = []
    for param in params:
        schema: Dict[str, Any] = {"type": param.type.json_type, "description": param.description}
        if param.default is not None:
            schema["default"] = param.default
        properties[param.name] = schema
        if param.required:
            required.append(param.name)
    return {"type": "object", "properties": properties, "required": required}


class ToolCatalog:
    """Read-only lookup over tool definitions."""

    def __init__(self, tools: Iterable[ToolDefinition] = ()):
        self._tools: Dict[str, ToolDefinition] = {}
        for tool in tools:
            self._tools[tool.id] = tool

    def get(self, tool_id: str) -> Optional[ToolDefinition]:
        return self._tools.get(tool_id)

    def all(self) -> List[ToolDefinition]:
        return list(self._tools.values())

    def installed(self) -> List[ToolDefinition]:
        return [t for t in self._tools.values() if t.installed]

    def installed_ids(self) -> set[str]:
        return {t.id for t in self._tools.values() if t.installed}

    def __contains__(self, tool_id: str) -> bool:
        return tool_id in self._tools

    def __len__(self) -> int:
        return len(self._tools)


def to_wire_schema(catalog: ToolCatalog) -> List[Dict[str, Any]]:
    """Function schema for every installed tool action.

    Sorted by tool id and action name so the schema, and with it the
    request prefix, stays byte-stable between turns.
    """
    tools: List[Dict[str, Any]] = []
    for tool in sorted(catalog.installed(), key=lambda t: t.id):
        for action in sorted(tool.actions, key=lambda a: a.name):
            tools.append(
                {
                    "type": "function",
                    "function": {
                        "name": f"{tool.id}{TOOL_NAME_DELIMITER}{action.name}",
                        "description": f"[{tool.name}] {action.description}",
                        "parameters": params_to_json_schema(action.parameters),
                    },
                }
            )
    return tools
