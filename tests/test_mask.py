import pytest

from termpilot.tools.catalog import to_wire_schema
from termpilot.tools.mask import (
    ACTION_MODE,
    PLAN_MODE,
    ToolMaskOptions,
    build_tool_mask,
    detect_project_type,
    filter_tool_schema,
    is_tool_allowed,
    match_keywords,
    tool_not_allowed_error,
)


@pytest.fixture
def installed(catalog):
    return catalog.installed_ids()


def test_plan_mode_allows_only_plan(installed):
    mask = build_tool_mask(ToolMaskOptions(user_input="refactor the git hooks", plan_mode=True, installed_tools=installed))

    assert mask.mode == PLAN_MODE
    assert mask.allowed_tools == {"plan"}
    assert mask.required_tool == "plan"
    assert not mask.use_dynamic_filtering


def test_plan_mode_without_tool_choice_or_prefill_filters_schema(installed):
    mask = build_tool_mask(
        ToolMaskOptions(plan_mode=True, installed_tools=installed, supports_tool_choice=False, supports_prefill=False)
    )
    assert mask.required_tool is None
    assert mask.use_dynamic_filtering


def test_plan_mode_with_prefill_keeps_required_tool(installed):
    mask = build_tool_mask(
        ToolMaskOptions(plan_mode=True, installed_tools=installed, supports_tool_choice=False, supports_prefill=True)
    )
    assert mask.required_tool == "plan"
    assert not mask.use_dynamic_filtering


def test_action_mode_core_tools_and_shell(installed):
    mask = build_tool_mask(ToolMaskOptions(installed_tools=installed, platform="linux"))

    assert mask.mode == ACTION_MODE
    assert mask.allowed_tools == {"askuser", "file", "web", "git", "enterplan", "bash"}
    assert "plan" not in mask.allowed_tools
    assert mask.allowed_tools <= installed


def test_action_mode_never_allows_missing_tools():
    mask = build_tool_mask(
        ToolMaskOptions(user_input="build the docker image", project_type="node", installed_tools={"git", "docker"},
                        platform="win32")
    )
    assert mask.allowed_tools == {"git", "docker"}


def test_project_type_adds_project_tools():
    mask = build_tool_mask(
        ToolMaskOptions(project_type="python", installed_tools={"python", "node"}, platform="linux")
    )
    assert mask.allowed_tools == {"python"}


def test_keywords_match_case_insensitive_and_chinese():
    assert "docker" in match_keywords("Build the Dockerfile")
    assert "git" in match_keywords("请帮我提交代码")
    assert "web" in match_keywords("打开这个网页")
    assert match_keywords("") == set()


def test_filter_schema_option_enables_dynamic_filtering(installed):
    mask = build_tool_mask(ToolMaskOptions(installed_tools=installed, filter_schema=True))
    assert mask.use_dynamic_filtering


@pytest.mark.parametrize(
    "marker,expected",
    [
        ("package.json", "node"),
        ("pyproject.toml", "python"),
        ("pom.xml", "java"),
        ("Cargo.toml", "rust"),
        ("go.mod", "go"),
        ("CMakeLists.txt", "cpp"),
        ("App.sln", "dotnet"),
    ],
)
def test_detect_project_type(tmp_path, marker, expected):
    (tmp_path / marker).write_text("", encoding="utf-8")
    assert detect_project_type(tmp_path) == expected


def test_detect_project_type_unknown(tmp_path):
    assert detect_project_type(tmp_path) == "unknown"
    assert detect_project_type(tmp_path / "missing") == "unknown"


def test_not_allowed_error_lists_available_tools(installed):
    mask = build_tool_mask(ToolMaskOptions(plan_mode=True, installed_tools=installed))

    assert not is_tool_allowed("bash", mask)
    assert is_tool_allowed("bash", None)
    assert tool_not_allowed_error("bash", mask) == (
        'Error: Tool "bash" is not available in current context. Available tools: plan'
    )


def test_filter_tool_schema_keeps_allowed_functions(catalog, installed):
    schema = to_wire_schema(catalog)
    mask = build_tool_mask(ToolMaskOptions(plan_mode=True, installed_tools=installed, supports_tool_choice=False))

    names = [entry["function"]["name"] for entry in filter_tool_schema(schema, mask)]

    assert names == [
        "plan_append",
        "plan_edit",
        "plan_exit",
        "plan_read",
        "plan_read_lines",
        "plan_search",
        "plan_write",
    ]
    assert filter_tool_schema(schema, None) == schema
