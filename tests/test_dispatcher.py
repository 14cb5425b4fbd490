from unittest.mock import AsyncMock, MagicMock

import pytest

from taskpilot.config import AutoApprovalSettings
from taskpilot.dispatcher import ToolDispatcher, _normalize, split_capability_name
from taskpilot.errors import CapabilityConnectionError
from taskpilot.models import RemoteContent, ToolCallResponse, ToolResult
from taskpilot.tools import ToolContext, ToolRegistry


@pytest.fixture
def context(tmp_path):
    return ToolContext(task_id="t1", working_directory=str(tmp_path))


@pytest.fixture
def hub():
    hub = MagicMock()
    hub.call_tool = AsyncMock(
        return_value=ToolCallResponse(content=[RemoteContent(type="text", text="remote file")])
    )
    hub.is_auto_approved = MagicMock(return_value=False)
    return hub


# ---------------------------------------------------------------------------
# Routing
# ---------------------------------------------------------------------------


def test_split_capability_name():
    assert split_capability_name("fs/read_file") == ("fs", "read_file")
    assert split_capability_name("git/log/oneline") == ("git", "log/oneline")
    assert split_capability_name("read_file") is None


@pytest.mark.asyncio
async def test_namespaced_name_goes_to_the_hub(context, hub):
    registry = ToolRegistry(context)
    registry.execute = AsyncMock()
    dispatcher = ToolDispatcher(registry, hub)

    result = await dispatcher.execute("fs/read_file", {"path": "a.txt"})

    hub.call_tool.assert_awaited_once_with("fs", "read_file", {"path": "a.txt"})
    registry.execute.assert_not_called()
    assert result == ToolResult(success=True, content="remote file")


@pytest.mark.asyncio
async def test_plain_name_goes_to_the_registry(context, hub, tmp_path):
    (tmp_path / "a.txt").write_text("local")
    dispatcher = ToolDispatcher(ToolRegistry(context), hub)

    result = await dispatcher.execute("read_file", {"path": "a.txt"})

    hub.call_tool.assert_not_called()
    assert result.success is True
    assert result.content.endswith("local")


@pytest.mark.asyncio
async def test_namespaced_name_without_hub(context):
    dispatcher = ToolDispatcher(ToolRegistry(context))

    result = await dispatcher.execute("fs/read_file", {})

    assert result == ToolResult(success=False, content="No capability hub configured for fs/read_file")


@pytest.mark.asyncio
async def test_hub_failure_becomes_failed_result(context, hub):
    hub.call_tool.side_effect = CapabilityConnectionError("No connection found for server: fs")
    dispatcher = ToolDispatcher(ToolRegistry(context), hub)

    result = await dispatcher.execute("fs/read_file", {})

    assert result.success is False
    assert result.content == "Error executing tool fs/read_file: No connection found for server: fs"


def test_normalize_remote_response():
    response = ToolCallResponse(
        content=[
            RemoteContent(type="text", text="line one"),
            RemoteContent(type="image", data="aW1n", mime_type="image/png"),
            RemoteContent(type="text", text="line two"),
        ],
        is_error=True,
    )

    assert _normalize(response) == ToolResult(success=False, content="line one\nline two", images=["aW1n"])


# ---------------------------------------------------------------------------
# Mode gating
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_plan_mode_blocks_mutating_tools(context, tmp_path):
    context.mode = "plan"
    dispatcher = ToolDispatcher(ToolRegistry(context))

    result = await dispatcher.execute("write_to_file", {"path": "x.txt", "content": "x"})

    assert result.success is False
    assert "not available in PLAN mode" in result.content
    assert not (tmp_path / "x.txt").exists()


@pytest.mark.asyncio
async def test_plan_mode_allows_read_only_tools(context):
    context.mode = "plan"
    dispatcher = ToolDispatcher(ToolRegistry(context))

    result = await dispatcher.execute("list_files", {"path": "."})

    assert result.success is True


# ---------------------------------------------------------------------------
# Auto-approval
# ---------------------------------------------------------------------------


def test_auto_approval_disabled_by_default(context):
    dispatcher = ToolDispatcher(ToolRegistry(context))
    assert dispatcher.is_auto_approved("read_file", {}, 0) is False


def test_auto_approval_allow_list_and_budget(context):
    policy = AutoApprovalSettings(enabled=True, max_requests=2, enabled_tools=["read_file"])
    dispatcher = ToolDispatcher(ToolRegistry(context), auto_approval=policy)

    assert dispatcher.is_auto_approved("read_file", {}, 0) is True
    assert dispatcher.is_auto_approved("read_file", {}, 2) is False
    assert dispatcher.is_auto_approved("write_to_file", {}, 0) is False


def test_auto_approval_risky_commands(context):
    policy = AutoApprovalSettings(enabled=True, enabled_tools=["execute_command"])
    dispatcher = ToolDispatcher(ToolRegistry(context), auto_approval=policy)

    assert dispatcher.is_auto_approved("execute_command", {"command": "ls"}, 0) is True
    assert dispatcher.is_auto_approved("execute_command", {"command": "rm -rf build"}, 0) is False

    dispatcher.auto_approval = policy.model_copy(update={"risky_commands_enabled": True})
    assert dispatcher.is_auto_approved("execute_command", {"command": "rm -rf build"}, 0) is True


def test_auto_approval_for_capability_tools_asks_the_hub(context, hub):
    hub.is_auto_approved.return_value = True
    dispatcher = ToolDispatcher(ToolRegistry(context), hub, AutoApprovalSettings(enabled=True))

    assert dispatcher.is_auto_approved("fs/read_file", {}, 0) is True
    hub.is_auto_approved.assert_called_once_with("fs", "read_file")
