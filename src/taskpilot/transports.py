# transports.py
# Capability-provider transports over the MCP client SDK.
#
# One McpTransport wraps one ClientSession on top of a stdio process, an SSE
# stream or a streamable HTTP endpoint. It converts SDK result types into
# taskpilot models so the hub never touches SDK types directly.

import asyncio
from contextlib import AsyncExitStack
from typing import Any, Awaitable, Callable, Protocol

import structlog
from mcp import ClientSession, StdioServerParameters
from mcp import types as mcp_types
from mcp.client.sse import sse_client
from mcp.client.stdio import get_default_environment, stdio_client
from mcp.client.streamable_http import streamablehttp_client
from pydantic import AnyUrl

from taskpilot.config import CapabilityServerConfig
from taskpilot.models import (
    CapabilityResource,
    CapabilityResourceTemplate,
    CapabilityTool,
    RemoteContent,
    ResourceContent,
    ResourceResponse,
    ToolCallResponse,
)

logger = structlog.get_logger(__name__)

ErrorHandler = Callable[[Exception], None]
CloseHandler = Callable[[], None]
NotificationHandler = Callable[[str, str], None]  # (level, message)


class CapabilityTransport(Protocol):
    async def connect(self) -> None: ...

    async def close(self) -> None: ...

    async def call_tool(
        self, tool_name: str, arguments: dict[str, Any] | None, timeout_ms: int
    ) -> ToolCallResponse: ...

    async def list_tools(self, timeout_ms: int) -> list[CapabilityTool]: ...

    async def list_resources(self, timeout_ms: int) -> list[CapabilityResource]: ...

    async def list_resource_templates(self, timeout_ms: int) -> list[CapabilityResourceTemplate]: ...

    async def read_resource(self, uri: str, timeout_ms: int) -> ResourceResponse: ...


TransportFactory = Callable[
    [str, CapabilityServerConfig, ErrorHandler, CloseHandler, NotificationHandler],
    CapabilityTransport,
]


def _format_notification(params: mcp_types.LoggingMessageNotificationParams) -> str:
    data = params.data if isinstance(params.data, str) else str(params.data or "")
    return f"[{params.logger}] {data}" if params.logger else data


class McpTransport:
    """ClientSession bound to one configured server."""

    def __init__(
        self,
        name: str,
        config: CapabilityServerConfig,
        on_error: ErrorHandler,
        on_close: CloseHandler,
        on_notification: NotificationHandler,
    ) -> None:
        self.name = name
        self.config = config
        self._on_error = on_error
        self._on_close = on_close
        self._on_notification = on_notification
        self._stack: AsyncExitStack | None = None
        self._session: ClientSession | None = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def connect(self) -> None:
        stack = AsyncExitStack()
        try:
            if self.config.type == "stdio":
                params = StdioServerParameters(
                    command=self.config.command,
                    args=self.config.args,
                    env={**get_default_environment(), **self.config.env},
                    cwd=self.config.cwd,
                )
                read, write = await stack.enter_async_context(stdio_client(params))
            elif self.config.type == "sse":
                read, write = await stack.enter_async_context(
                    sse_client(self.config.url, headers=self.config.headers or None)
                )
            else:
                read, write, _ = await stack.enter_async_context(
                    streamablehttp_client(self.config.url, headers=self.config.headers or None)
                )

            session = await stack.enter_async_context(
                ClientSession(
                    read,
                    write,
                    logging_callback=self._handle_log,
                    message_handler=self._handle_message,
                )
            )
            await session.initialize()
        except BaseException:
            await stack.aclose()
            raise

        self._stack = stack
        self._session = session
        logger.debug("transport_connected", server=self.name, type=self.config.type)

    async def close(self) -> None:
        stack, self._stack, self._session = self._stack, None, None
        if stack is not None:
            await stack.aclose()
            self._on_close()

    async def _handle_log(self, params: mcp_types.LoggingMessageNotificationParams) -> None:
        self._on_notification(params.level or "info", _format_notification(params))

    async def _handle_message(self, message: Any) -> None:
        if isinstance(message, Exception):
            logger.error("transport_error", server=self.name, error=str(message))
            self._on_error(message)

    # ------------------------------------------------------------------
    # Requests
    # ------------------------------------------------------------------

    def _require_session(self) -> ClientSession:
        if self._session is None:
            raise ConnectionError(f"Transport for '{self.name}' is not connected")
        return self._session

    async def _request(self, call: Awaitable[Any], timeout_ms: int) -> Any:
        return await asyncio.wait_for(call, timeout=timeout_ms / 1000)

    async def call_tool(
        self, tool_name: str, arguments: dict[str, Any] | None, timeout_ms: int
    ) -> ToolCallResponse:
        session = self._require_session()
        result = await self._request(session.call_tool(tool_name, arguments or {}), timeout_ms)
        return ToolCallResponse(
            content=[
                RemoteContent(
                    type=getattr(item, "type", "text"),
                    text=getattr(item, "text", None),
                    data=getattr(item, "data", None),
                    mime_type=getattr(item, "mimeType", None),
                )
                for item in result.content or []
            ],
            is_error=bool(result.isError),
        )

    async def list_tools(self, timeout_ms: int) -> list[CapabilityTool]:
        result = await self._request(self._require_session().list_tools(), timeout_ms)
        return [
            CapabilityTool(
                name=tool.name,
                description=tool.description or "",
                input_schema=tool.inputSchema or {},
            )
            for tool in result.tools
        ]

    async def list_resources(self, timeout_ms: int) -> list[CapabilityResource]:
        result = await self._request(self._require_session().list_resources(), timeout_ms)
        return [
            CapabilityResource(
                uri=str(resource.uri),
                name=resource.name or "",
                description=resource.description or "",
                mime_type=resource.mimeType,
            )
            for resource in result.resources
        ]

    async def list_resource_templates(self, timeout_ms: int) -> list[CapabilityResourceTemplate]:
        result = await self._request(self._require_session().list_resource_templates(), timeout_ms)
        return [
            CapabilityResourceTemplate(
                uri_template=template.uriTemplate,
                name=template.name or "",
                description=template.description or "",
                mime_type=template.mimeType,
            )
            for template in result.resourceTemplates
        ]

    async def read_resource(self, uri: str, timeout_ms: int) -> ResourceResponse:
        result = await self._request(self._require_session().read_resource(AnyUrl(uri)), timeout_ms)
        return ResourceResponse(
            contents=[
                ResourceContent(
                    uri=str(item.uri),
                    mime_type=item.mimeType,
                    text=getattr(item, "text", None),
                    blob=getattr(item, "blob", None),
                )
                for item in result.contents
            ]
        )
