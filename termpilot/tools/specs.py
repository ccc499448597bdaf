"""Built-in tool definitions and PATH discovery.

Builtin tools (``askuser``, ``plan``, ``enterplan``, ``file``, ``web``) run
in-process and are always installed; everything else wraps an executable
found on PATH.
"""

from __future__ import annotations

import logging
import shutil
from dataclasses import replace
from typing import Callable, List, Optional

from termpilot.tools.catalog import ParamType, ToolAction, ToolCatalog, ToolDefinition, ToolParameter

logger = logging.getLogger(__name__)

ASK_USER_TOOL_ID = "askuser"
PLAN_TOOL_ID = "plan"
ENTER_PLAN_TOOL_ID = "enterplan"

BUILTIN_PATH = "builtin"


def _p(name: str, description: str, type: ParamType = ParamType.STRING, required: bool = True,
       default=None, raw: bool = False) -> ToolParameter:
    return ToolParameter(name=name, description=description, type=type, required=required,
                         default=default, raw=raw)


def _shell_run(description: str, template: str) -> ToolAction:
    return ToolAction(
        name="run",
        description=description,
        parameters=[_p("command", "Command line to execute", raw=True)],
        command_template=template,
    )


def _line_range() -> List[ToolParameter]:
    return [
        _p("start_line", "Start line (1-based)", ParamType.NUMBER, required=False, default=1),
        _p("end_line", "End line (1-based, -1 for end of file)", ParamType.NUMBER, required=False, default=-1),
    ]


def _replacement() -> List[ToolParameter]:
    return [
        _p("old_content", "Exact text to find"),
        _p("new_content", "Replacement text", required=False, default=""),
        _p("replace_all", "Replace every occurrence instead of the first", ParamType.BOOLEAN,
           required=False, default=False),
    ]


def _search() -> List[ToolParameter]:
    return [
        _p("pattern", "Text to look for"),
        _p("regex", "Treat the pattern as a regular expression", ParamType.BOOLEAN, required=False, default=False),
        _p("max_matches", "Maximum matches to return", ParamType.NUMBER, required=False, default=100),
    ]


BUILTIN_TOOLS: List[ToolDefinition] = [
    ToolDefinition(
        id=ASK_USER_TOOL_ID,
        name="Ask User",
        description="Ask the user a question and wait for the answer",
        category="utility",
        actions=[
            ToolAction(
                name="ask",
                description="Ask the user a question, optionally offering predefined answers",
                parameters=[
                    _p("question", "The question to ask the user"),
                    _p("options", 'JSON array of predefined answers, e.g. ["Yes", "No"]', required=False),
                ],
                command_template="__ASK_USER__",
            )
        ],
    ),
    ToolDefinition(
        id=PLAN_TOOL_ID,
        name="Plan",
        description="Plan file management (.termpilot/plans/plan.md)",
        category="utility",
        capabilities=["read", "write", "search"],
        actions=[
            ToolAction(name="read", description="Read the current plan", command_template="__PLAN_READ__"),
            ToolAction(
                name="read_lines",
                description="Read a range of lines from the plan",
                parameters=_line_range(),
                command_template="__PLAN_READ_LINES__",
            ),
            ToolAction(
                name="write",
                description="Write or replace the entire plan",
                parameters=[_p("content", "Complete plan content in Markdown")],
                command_template="__PLAN_WRITE__",
            ),
            ToolAction(
                name="append",
                description="Append content to the end of the plan",
                parameters=[_p("content", "Content to append")],
                command_template="__PLAN_APPEND__",
            ),
            ToolAction(
                name="edit",
                description="Replace exact text in the plan",
                parameters=_replacement(),
                command_template="__PLAN_EDIT__",
            ),
            ToolAction(
                name="search",
                description="Search the plan for text or a regular expression",
                parameters=_search(),
                command_template="__PLAN_SEARCH__",
            ),
            ToolAction(
                name="exit",
                description="Leave plan mode and start carrying out the plan",
                command_template="__PLAN_EXIT__",
            ),
        ],
    ),
    ToolDefinition(
        id=ENTER_PLAN_TOOL_ID,
        name="Enter Plan Mode",
        description="Switch to plan mode for tasks that need a written plan first",
        category="utility",
        actions=[
            ToolAction(
                name="enter",
                description="Enter plan mode",
                parameters=[_p("reason", "Why a plan is needed", required=False)],
                command_template="__PLAN_ENTER__",
            )
        ],
    ),
    ToolDefinition(
        id="file",
        name="File",
        description="Read, edit, search and list files in the working directory",
        category="utility",
        capabilities=["read", "write", "search"],
        actions=[
            ToolAction(
                name="read",
                description="Read a text file",
                parameters=[_p("path", "File path", ParamType.FILE)],
                command_template="__FILE_READ__",
            ),
            ToolAction(
                name="read_lines",
                description="Read a range of lines from a text file",
                parameters=[_p("path", "File path", ParamType.FILE)] + _line_range(),
                command_template="__FILE_READ_LINES__",
            ),
            ToolAction(
                name="write",
                description="Create, overwrite or append to a text file",
                parameters=[
                    _p("path", "File path", ParamType.FILE),
                    _p("content", "Content to write"),
                    _p("mode", "Write mode: overwrite (default) or append", required=False, default="overwrite"),
                ],
                command_template="__FILE_WRITE__",
            ),
            ToolAction(
                name="edit",
                description="Replace exact text in a file",
                parameters=[_p("path", "File path", ParamType.FILE)] + _replacement(),
                command_template="__FILE_EDIT__",
            ),
            ToolAction(
                name="search",
                description="Search a file for text or a regular expression",
                parameters=[_p("path", "File path", ParamType.FILE)] + _search(),
                command_template="__FILE_SEARCH__",
            ),
            ToolAction(
                name="list",
                description="List a directory",
                parameters=[_p("path", "Directory path", ParamType.DIRECTORY, required=False, default=".")],
                command_template="__FILE_LIST__",
            ),
        ],
    ),
    ToolDefinition(
        id="web",
        name="Web",
        description="Fetch web pages",
        category="web",
        capabilities=["read"],
        actions=[
            ToolAction(
                name="fetch",
                description="Fetch a URL and return its text",
                parameters=[_p("url", "http(s) URL to fetch")],
                command_template="__WEB_FETCH__",
            )
        ],
    ),
]


EXTERNAL_TOOLS: List[ToolDefinition] = [
    ToolDefinition(
        id="git",
        name="Git",
        description="Version control",
        category="vcs",
        executables=["git"],
        install_hint="Install git from https://git-scm.com/downloads",
        actions=[
            ToolAction(name="status", description="Show working tree status",
                       command_template="{{execPath}} status --short --branch"),
            ToolAction(name="diff", description="Show changes",
                       parameters=[_p("path", "Limit to a path", ParamType.FILE, required=False)],
                       command_template="{{execPath}} diff -- {{path}}"),
            ToolAction(name="log", description="Show recent commits",
                       parameters=[_p("count", "Number of commits", ParamType.NUMBER, required=False, default=10)],
                       command_template="{{execPath}} log --oneline -n {{count}}"),
            ToolAction(name="add", description="Stage files",
                       parameters=[_p("path", "Path to stage", ParamType.FILE)],
                       command_template="{{execPath}} add -- {{path}}"),
            ToolAction(name="commit", description="Commit staged changes",
                       parameters=[_p("message", "Commit message")],
                       command_template="{{execPath}} commit -m {{message}}"),
            ToolAction(name="branch", description="List branches",
                       command_template="{{execPath}} branch --all"),
            ToolAction(name="checkout", description="Switch branches",
                       parameters=[_p("target", "Branch or commit")],
                       command_template="{{execPath}} checkout {{target}}"),
            ToolAction(name="pull", description="Pull from the upstream branch",
                       command_template="{{execPath}} pull"),
            ToolAction(name="push", description="Push to the upstream branch",
                       command_template="{{execPath}} push"),
        ],
    ),
    ToolDefinition(
        id="bash",
        name="Bash",
        description="Unix shell",
        category="shell",
        executables=["bash"],
        install_hint="Install bash with your system package manager",
        actions=[_shell_run("Run a bash command line", "{{command}}")],
    ),
    ToolDefinition(
        id="powershell",
        name="PowerShell",
        description="Windows PowerShell",
        category="shell",
        executables=["powershell"],
        actions=[_shell_run("Run a PowerShell command", '{{execPath}} -NoProfile -Command "{{command}}"')],
    ),
    ToolDefinition(
        id="pwsh",
        name="PowerShell 7",
        description="Cross-platform PowerShell",
        category="shell",
        executables=["pwsh"],
        install_hint="Install PowerShell 7 from https://aka.ms/powershell",
        actions=[_shell_run("Run a PowerShell 7 command", '{{execPath}} -NoProfile -Command "{{command}}"')],
    ),
    ToolDefinition(
        id="cmd",
        name="Command Prompt",
        description="Windows command interpreter",
        category="shell",
        executables=["cmd"],
        actions=[_shell_run("Run a cmd.exe command", "{{execPath}} /c {{command}}")],
    ),
    ToolDefinition(
        id="python",
        name="Python",
        description="Python interpreter",
        category="runtime",
        executables=["python3", "python"],
        install_hint="Install Python from https://www.python.org/downloads/",
        actions=[
            ToolAction(name="run", description="Run a Python script",
                       parameters=[_p("script", "Script path", ParamType.FILE),
                                   _p("args", "Script arguments", required=False, raw=True)],
                       command_template="{{execPath}} {{script}} {{args}}"),
            ToolAction(name="version", description="Show the Python version",
                       command_template="{{execPath}} --version"),
            ToolAction(name="pip", description="Run pip",
                       parameters=[_p("args", "pip arguments, e.g. 'install requests'", raw=True)],
                       command_template="{{execPath}} -m pip {{args}}"),
        ],
    ),
    ToolDefinition(
        id="node",
        name="Node.js",
        description="JavaScript runtime",
        category="runtime",
        executables=["node"],
        install_hint="Install Node.js from https://nodejs.org/",
        actions=[
            ToolAction(name="run", description="Run a JavaScript file",
                       parameters=[_p("script", "Script path", ParamType.FILE)],
                       command_template="{{execPath}} {{script}}"),
            ToolAction(name="version", description="Show the Node.js version",
                       command_template="{{execPath}} --version"),
        ],
    ),
    ToolDefinition(
        id="npm",
        name="npm",
        description="Node package manager",
        category="package",
        executables=["npm"],
        install_hint="npm ships with Node.js: https://nodejs.org/",
        actions=[
            ToolAction(name="install", description="Install dependencies",
                       parameters=[_p("package", "Package to add", required=False)],
                       command_template="{{execPath}} install {{package}}"),
            ToolAction(name="run", description="Run a package.json script",
                       parameters=[_p("script", "Script name")],
                       command_template="{{execPath}} run {{script}}"),
            ToolAction(name="test", description="Run the test script",
                       command_template="{{execPath}} test"),
        ],
    ),
    ToolDefinition(
        id="java",
        name="Java",
        description="Java runtime",
        category="runtime",
        executables=["java"],
        install_hint="Install a JDK from https://adoptium.net/",
        actions=[
            ToolAction(name="run", description="Run a jar file",
                       parameters=[_p("jar", "Jar path", ParamType.FILE)],
                       command_template="{{execPath}} -jar {{jar}}"),
        ],
    ),
    ToolDefinition(
        id="javac",
        name="javac",
        description="Java compiler",
        category="build",
        executables=["javac"],
        install_hint="Install a JDK from https://adoptium.net/",
        actions=[
            ToolAction(name="compile", description="Compile Java sources",
                       parameters=[_p("files", "Source files", raw=True)],
                       command_template="{{execPath}} {{files}}"),
        ],
    ),
    ToolDefinition(
        id="maven",
        name="Maven",
        description="Java build tool",
        category="build",
        executables=["mvn"],
        install_hint="Install Maven from https://maven.apache.org/",
        actions=[
            ToolAction(name="build", description="Run maven goals",
                       parameters=[_p("goals", "Goals, e.g. 'clean package'", required=False,
                                      default="package", raw=True)],
                       command_template="{{execPath}} {{goals}}"),
        ],
    ),
    ToolDefinition(
        id="gradle",
        name="Gradle",
        description="Build automation tool",
        category="build",
        executables=["gradle"],
        install_hint="Install Gradle from https://gradle.org/install/",
        actions=[
            ToolAction(name="build", description="Run gradle tasks",
                       parameters=[_p("tasks", "Tasks, e.g. 'build'", required=False, default="build", raw=True)],
                       command_template="{{execPath}} {{tasks}}"),
        ],
    ),
    ToolDefinition(
        id="cmake",
        name="CMake",
        description="C/C++ build system generator",
        category="build",
        executables=["cmake"],
        install_hint="Install CMake from https://cmake.org/download/",
        actions=[
            ToolAction(name="configure", description="Configure a build directory",
                       parameters=[_p("build_dir", "Build directory", ParamType.DIRECTORY, required=False,
                                      default="build")],
                       command_template="{{execPath}} -S . -B {{build_dir}}"),
            ToolAction(name="build", description="Build a configured directory",
                       parameters=[_p("build_dir", "Build directory", ParamType.DIRECTORY, required=False,
                                      default="build")],
                       command_template="{{execPath}} --build {{build_dir}}"),
        ],
    ),
    ToolDefinition(
        id="docker",
        name="Docker",
        description="Container runtime",
        category="container",
        executables=["docker"],
        install_hint="Install Docker from https://docs.docker.com/get-docker/",
        actions=[
            ToolAction(name="ps", description="List containers", command_template="{{execPath}} ps -a"),
            ToolAction(name="images", description="List images", command_template="{{execPath}} images"),
            ToolAction(name="build", description="Build an image",
                       parameters=[_p("tag", "Image tag"),
                                   _p("path", "Build context", ParamType.DIRECTORY, required=False, default=".")],
                       command_template="{{execPath}} build -t {{tag}} {{path}}"),
            ToolAction(name="logs", description="Show container logs",
                       parameters=[_p("container", "Container id or name")],
                       command_template="{{execPath}} logs --tail 200 {{container}}"),
        ],
    ),
    ToolDefinition(
        id="dockercompose",
        name="Docker Compose",
        description="Multi-container orchestration",
        category="container",
        executables=["docker-compose"],
        install_hint="Install Docker Compose from https://docs.docker.com/compose/install/",
        actions=[
            ToolAction(name="up", description="Start services", command_template="{{execPath}} up -d"),
            ToolAction(name="down", description="Stop services", command_template="{{execPath}} down"),
            ToolAction(name="ps", description="List services", command_template="{{execPath}} ps"),
        ],
    ),
    ToolDefinition(
        id="mysql",
        name="MySQL client",
        description="MySQL command-line client",
        category="database",
        executables=["mysql"],
        actions=[
            ToolAction(name="query", description="Run a SQL statement",
                       parameters=[_p("database", "Database name"), _p("sql", "SQL statement")],
                       command_template="{{execPath}} {{database}} -e {{sql}}"),
        ],
    ),
    ToolDefinition(
        id="psql",
        name="psql",
        description="PostgreSQL command-line client",
        category="database",
        executables=["psql"],
        actions=[
            ToolAction(name="query", description="Run a SQL statement",
                       parameters=[_p("database", "Database name"), _p("sql", "SQL statement")],
                       command_template="{{execPath}} -d {{database}} -c {{sql}}"),
        ],
    ),
    ToolDefinition(
        id="sqlite3",
        name="SQLite",
        description="SQLite command-line shell",
        category="database",
        executables=["sqlite3"],
        actions=[
            ToolAction(name="query", description="Run a SQL statement",
                       parameters=[_p("database", "Database file", ParamType.FILE), _p("sql", "SQL statement")],
                       command_template="{{execPath}} {{database}} {{sql}}"),
        ],
    ),
    ToolDefinition(
        id="vscode",
        name="Visual Studio Code",
        description="Code editor",
        category="ide",
        executables=["code"],
        actions=[
            ToolAction(name="open", description="Open a file or folder",
                       parameters=[_p("path", "Path to open", ParamType.FILE)],
                       command_template="{{execPath}} {{path}}"),
        ],
    ),
    ToolDefinition(
        id="msbuild",
        name="MSBuild",
        description=".NET build engine",
        category="build",
        executables=["msbuild", "dotnet"],
        actions=[
            ToolAction(name="build", description="Build a project or solution",
                       parameters=[_p("project", "Project or solution file", ParamType.FILE)],
                       command_template="{{execPath}} {{project}}"),
        ],
    ),
    ToolDefinition(
        id="vs2022",
        name="Visual Studio 2022",
        description="Visual Studio IDE",
        category="ide",
        executables=["devenv"],
        actions=[
            ToolAction(name="open", description="Open a solution",
                       parameters=[_p("solution", "Solution file", ParamType.FILE)],
                       command_template="{{execPath}} {{solution}}"),
            ToolAction(name="build", description="Build a solution from the command line",
                       parameters=[_p("solution", "Solution file", ParamType.FILE),
                                   _p("configuration", "Build configuration", required=False, default="Debug")],
                       command_template="{{execPath}} {{solution}} /Build {{configuration}}"),
        ],
    ),
    ToolDefinition(
        id="beyondcompare",
        name="Beyond Compare",
        description="File and folder comparison",
        category="diff",
        executables=["bcompare"],
        actions=[
            ToolAction(name="diff", description="Compare two files",
                       parameters=[_p("left", "Left file", ParamType.FILE), _p("right", "Right file", ParamType.FILE)],
                       command_template="{{execPath}} {{left}} {{right}}"),
        ],
    ),
]


def _detect(tool: ToolDefinition, which: Callable[[str], Optional[str]]) -> ToolDefinition:
    for exe in tool.executables:
        path = which(exe)
        if path:
            return replace(tool, installed=True, executable_path=path)
    return replace(tool, installed=False, executable_path="")


def discover_catalog(which: Callable[[str], Optional[str]] = shutil.which) -> ToolCatalog:
    """Build the catalog: builtins plus every external tool looked up on PATH."""
    tools = [replace(t, installed=True, executable_path=BUILTIN_PATH) for t in BUILTIN_TOOLS]
    tools.extend(_detect(t, which) for t in EXTERNAL_TOOLS)
    installed = [t.id for t in tools if t.installed]
    logger.info(f"Discovered {len(installed)} installed tool(s): {', '.join(installed)}")
    return ToolCatalog(tools)
