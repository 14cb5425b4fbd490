# dispatcher.py
# Routes a named tool call to the local registry or a capability server.
#
#   "server/tool"  → CapabilityHub.call_tool(server, tool, args)
#   anything else  → ToolRegistry
#
# Tool failures are data, not control flow: execute() always returns exactly
# one ToolResult and never raises.

from typing import Any

import structlog

from taskpilot.config import AutoApprovalSettings
from taskpilot.hub import CapabilityHub
from taskpilot.models import ToolCallResponse, ToolResult
from taskpilot.tools import MUTATING_TOOLS, ToolRegistry, is_risky_command

logger = structlog.get_logger(__name__)

NAMESPACE_SEPARATOR = "/"


def split_capability_name(name: str) -> tuple[str, str] | None:
    """('server', 'tool') for namespaced names, None for local ones."""
    if NAMESPACE_SEPARATOR not in name:
        return None
    server, tool = name.split(NAMESPACE_SEPARATOR, 1)
    return server, tool


def _normalize(response: ToolCallResponse) -> ToolResult:
    texts = [item.text or "" for item in response.content if item.type == "text"]
    images = [item.data for item in response.content if item.type == "image" and item.data]
    return ToolResult(success=not response.is_error, content="\n".join(texts), images=images)


class ToolDispatcher:
    def __init__(
        self,
        registry: ToolRegistry,
        hub: CapabilityHub | None = None,
        auto_approval: AutoApprovalSettings | None = None,
    ) -> None:
        self.registry = registry
        self.hub = hub
        self.auto_approval = auto_approval or AutoApprovalSettings()

    async def execute(self, name: str, args: dict[str, Any]) -> ToolResult:
        route = split_capability_name(name)
        if route is not None:
            return await self._execute_remote(route[0], route[1], args)

        if self.registry.context.mode == "plan" and name in MUTATING_TOOLS:
            return ToolResult(
                success=False,
                content=f"Tool {name} is not available in PLAN mode. Switch to ACT mode to make changes.",
            )
        return await self.registry.execute(name, args)

    async def _execute_remote(self, server: str, tool: str, args: dict[str, Any]) -> ToolResult:
        if self.hub is None:
            return ToolResult(success=False, content=f"No capability hub configured for {server}/{tool}")
        try:
            response = await self.hub.call_tool(server, tool, args)
        except Exception as exc:
            logger.warning("capability_tool_failed", server=server, tool=tool, error=str(exc))
            return ToolResult(success=False, content=f"Error executing tool {server}/{tool}: {exc}")
        return _normalize(response)

    # ------------------------------------------------------------------
    # Auto-approval
    # ------------------------------------------------------------------

    def is_auto_approved(self, name: str, args: dict[str, Any], approved_count: int) -> bool:
        """
        True when the call may run without asking the user.

        Requires auto-approval to be enabled and under its request budget.
        Local tools must be allow-listed, and risky commands additionally need
        risky_commands_enabled. Capability tools are allow-listed by their
        server's auto_approve list.
        """
        policy = self.auto_approval
        if not policy.enabled or approved_count >= policy.max_requests:
            return False

        route = split_capability_name(name)
        if route is not None:
            return self.hub is not None and self.hub.is_auto_approved(*route)

        if name not in policy.enabled_tools:
            return False
        if name == "execute_command" and is_risky_command(str(args.get("command", ""))):
            return policy.risky_commands_enabled
        return True
