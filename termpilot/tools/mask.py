"""Per-turn tool mask.

The schema sent to the model stays fixed between turns so the request
prefix can be cached by the provider; the mask decides which calls are
honoured after the fact.  Only plan mode on a provider without tool-choice
or prefill support falls back to filtering the schema itself.
"""

from __future__ import annotations

import logging
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Set

from termpilot.tools.catalog import TOOL_NAME_DELIMITER

logger = logging.getLogger(__name__)

ACTION_MODE = "action"
PLAN_MODE = "plan"

CORE_ACTION_TOOLS = ("askuser", "file", "web", "git", "enterplan")
PLAN_TOOLS = ("plan",)

WINDOWS_SHELL_TOOLS = ("powershell", "pwsh", "cmd")
UNIX_SHELL_TOOLS = ("bash",)

PROJECT_TOOLS: Dict[str, tuple] = {
    "node": ("node", "npm"),
    "python": ("python",),
    "java": ("java", "javac", "maven", "gradle"),
    "cpp": ("cmake",),
    "dotnet": ("vs2022", "msbuild"),
    "rust": (),
    "go": (),
    "unknown": (),
}

KEYWORD_TO_TOOL: Dict[str, tuple] = {
    "web": ("http", "https", "url", "fetch", "web", "webpage", "website", "网页", "网站", "链接"),
    "git": ("git", "commit", "branch", "merge", "push", "pull", "clone", "checkout", "stash", "rebase",
            "提交", "分支"),
    "node": ("node", "nodejs", "npm", "npx", "yarn", "pnpm", "package.json", "javascript", "typescript"),
    "npm": ("npm", "npx", "package.json"),
    "python": ("python", "pip", "pyenv", "conda", "poetry", "requirements.txt"),
    "java": ("java", "javac", "maven", "gradle", "mvn"),
    "cmake": ("cmake", "cmakelists", "make"),
    "gradle": ("gradle", "gradlew"),
    "maven": ("maven", "mvn", "pom.xml"),
    "docker": ("docker", "dockerfile", "container", "compose", "容器"),
    "dockercompose": ("dockercompose", "docker compose", "docker-compose", "compose.yml"),
    "mysql": ("mysql", "mariadb"),
    "psql": ("postgresql", "postgres", "psql"),
    "sqlite3": ("sqlite", "sqlite3"),
    "vscode": ("vscode", "visual studio code"),
    "vs2022": ("visual studio", "msbuild", ".sln", "csproj"),
    "msbuild": ("msbuild", ".sln", "csproj"),
    "beyondcompare": ("beyond compare", "bcompare", "compare files", "merge files"),
}

# Checked in order; the first marker found wins.
PROJECT_MARKERS = (
    ("node", ("package.json",)),
    ("python", ("pyproject.toml", "setup.py", "setup.cfg", "requirements.txt", "Pipfile")),
    ("java", ("pom.xml", "build.gradle", "build.gradle.kts")),
    ("rust", ("Cargo.toml",)),
    ("go", ("go.mod",)),
    ("cpp", ("CMakeLists.txt",)),
)


@dataclass
class ToolMaskState:
    mode: str
    allowed_tools: Set[str] = field(default_factory=set)
    required_tool: Optional[str] = None
    # Send only allowed tools instead of the full stable schema.
    use_dynamic_filtering: bool = False


@dataclass
class ToolMaskOptions:
    user_input: str = ""
    project_type: str = "unknown"
    plan_mode: bool = False
    installed_tools: Set[str] = field(default_factory=set)
    supports_tool_choice: bool = True
    supports_prefill: bool = False
    platform: str = sys.platform
    filter_schema: bool = False


def shell_tools_for(platform: str) -> tuple:
    if platform.startswith("win"):
        return WINDOWS_SHELL_TOOLS
    return UNIX_SHELL_TOOLS


def match_keywords(user_input: str) -> Set[str]:
    """Tool ids whose keywords appear in ``user_input`` (case-insensitive)."""
    text = user_input.lower()
    if not text:
        return set()
    return {tool_id for tool_id, words in KEYWORD_TO_TOOL.items() if any(w in text for w in words)}


def detect_project_type(cwd: Path | str) -> str:
    root = Path(cwd)
    for project_type, markers in PROJECT_MARKERS:
        if any((root / marker).exists() for marker in markers):
            return project_type
    try:
        if any(p.suffix in (".sln", ".csproj") for p in root.iterdir()):
            return "dotnet"
    except OSError:
        pass
    return "unknown"


def build_tool_mask(options: ToolMaskOptions) -> ToolMaskState:
    installed = set(options.installed_tools)

    if options.plan_mode:
        allowed = set(PLAN_TOOLS) & installed
        required = next(iter(sorted(allowed)), None)
        if options.supports_tool_choice or options.supports_prefill:
            return ToolMaskState(mode=PLAN_MODE, allowed_tools=allowed, required_tool=required)
        return ToolMaskState(mode=PLAN_MODE, allowed_tools=allowed, use_dynamic_filtering=True)

    candidates: Set[str] = set(CORE_ACTION_TOOLS)
    candidates.update(shell_tools_for(options.platform))
    candidates.update(PROJECT_TOOLS.get(options.project_type, ()))
    candidates.update(match_keywords(options.user_input))

    allowed = candidates & installed
    logger.debug(f"Tool mask ({options.project_type}): {sorted(allowed)}")
    return ToolMaskState(mode=ACTION_MODE, allowed_tools=allowed, use_dynamic_filtering=options.filter_schema)


def is_tool_allowed(tool_id: str, mask: Optional[ToolMaskState]) -> bool:
    if mask is None:
        return True
    return tool_id in mask.allowed_tools


def tool_not_allowed_error(tool_id: str, mask: ToolMaskState) -> str:
    available = ", ".join(sorted(mask.allowed_tools)) or "none"
    return f'Error: Tool "{tool_id}" is not available in current context. Available tools: {available}'


def filter_tool_schema(schema: Iterable[Dict[str, Any]], mask: Optional[ToolMaskState]) -> List[Dict[str, Any]]:
    """Drop functions whose tool id the mask does not allow."""
    schema = list(schema)
    if mask is None:
        return schema
    result = []
    for entry in schema:
        name = entry.get("function", {}).get("name", "")
        tool_id = name.split(TOOL_NAME_DELIMITER, 1)[0]
        if tool_id in mask.allowed_tools:
            result.append(entry)
    return result
