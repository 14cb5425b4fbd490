# hub.py
# Capability Hub. Owns every external capability-provider connection.
#
# Per connection:  disconnected → connecting → connected
# Any transport failure forces the connection back to disconnected and is
# appended to that connection's error log (never overwritten).
#
# Connections are looked up by name and never duplicated. Only the hub
# mutates them; reconciliation runs under a single lock so overlapping
# update_connections() calls cannot interleave connect/disconnect pairs.

import asyncio
import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable

import structlog

from taskpilot.config import (
    DEFAULT_CAPABILITY_TIMEOUT_SECONDS,
    DEFAULT_REQUEST_TIMEOUT_MS,
    CapabilityServerConfig,
    load_capability_settings,
)
from taskpilot.errors import CapabilityConnectionError
from taskpilot.models import ResourceResponse, ServerRecord, ToolCallResponse
from taskpilot.transports import CapabilityTransport, McpTransport, TransportFactory

logger = structlog.get_logger(__name__)

NotificationCallback = Callable[[str, str, str], None]  # (server, level, message)


@dataclass
class CapabilityConnection:
    server: ServerRecord
    transport: CapabilityTransport | None = None


class CapabilityHub:
    """
    Reconciles a desired set of capability servers against live connections.

    Example:
        hub = CapabilityHub(settings_path="~/.taskpilot/mcp-settings.json")
        await hub.initialize()
        response = await hub.call_tool("fs", "read_file", {"path": "README.md"})
    """

    def __init__(
        self,
        transport_factory: TransportFactory = McpTransport,
        settings_path: str | Path | None = None,
    ) -> None:
        self._transport_factory = transport_factory
        self._settings_path = Path(settings_path).expanduser() if settings_path else None
        self._connections: list[CapabilityConnection] = []
        self._lock = asyncio.Lock()
        self._is_connecting = False
        self._notification_callback: NotificationCallback | None = None

    # ------------------------------------------------------------------
    # Public surface
    # ------------------------------------------------------------------

    @property
    def is_connecting(self) -> bool:
        return self._is_connecting

    @property
    def servers(self) -> list[ServerRecord]:
        """Records of every non-disabled connection."""
        return [conn.server for conn in self._connections if not conn.server.disabled]

    def find_connection(self, name: str) -> CapabilityConnection | None:
        for connection in self._connections:
            if connection.server.name == name:
                return connection
        return None

    async def initialize(self, configs: dict[str, CapabilityServerConfig] | None = None) -> None:
        """Connect to the settings-file servers merged with `configs` (which win)."""
        desired: dict[str, CapabilityServerConfig] = {}
        if self._settings_path is not None:
            desired.update(load_capability_settings(self._settings_path))
        desired.update(configs or {})
        await self.update_connections(desired)

    def set_notification_callback(self, callback: NotificationCallback) -> None:
        self._notification_callback = callback

    def clear_notification_callback(self) -> None:
        self._notification_callback = None

    def is_auto_approved(self, server_name: str, tool_name: str) -> bool:
        connection = self.find_connection(server_name)
        if connection is None:
            return False
        return any(tool.name == tool_name and tool.auto_approve for tool in connection.server.tools)

    # ------------------------------------------------------------------
    # Remote calls
    # ------------------------------------------------------------------

    def _usable_connection(self, server_name: str) -> CapabilityConnection:
        connection = self.find_connection(server_name)
        if connection is None:
            raise CapabilityConnectionError(f"No connection found for server: {server_name}")
        if connection.server.disabled or connection.transport is None:
            raise CapabilityConnectionError(
                f'Server "{server_name}" is disabled and cannot be used'
            )
        return connection

    async def call_tool(
        self, server_name: str, tool_name: str, arguments: dict[str, Any] | None = None
    ) -> ToolCallResponse:
        connection = self._usable_connection(server_name)
        timeout_ms = self._server_timeout_ms(connection)
        logger.debug("capability_call", server=server_name, tool=tool_name, timeout_ms=timeout_ms)
        return await connection.transport.call_tool(tool_name, arguments, timeout_ms)

    async def read_resource(self, server_name: str, uri: str) -> ResourceResponse:
        connection = self._usable_connection(server_name)
        return await connection.transport.read_resource(uri, DEFAULT_REQUEST_TIMEOUT_MS)

    def _server_timeout_ms(self, connection: CapabilityConnection) -> int:
        try:
            seconds = json.loads(connection.server.config).get("timeout")
        except (ValueError, AttributeError):
            seconds = None
        return int((seconds or DEFAULT_CAPABILITY_TIMEOUT_SECONDS) * 1000)

    # ------------------------------------------------------------------
    # Reconciliation
    # ------------------------------------------------------------------

    async def update_connections(self, new_configs: dict[str, CapabilityServerConfig]) -> None:
        """
        Make live connections match `new_configs`.

        Removed names are disconnected, new names connected, and names whose
        serialized configuration changed are disconnected then reconnected.
        Connection failures are recorded on the connection and do not abort
        the reconciliation of other servers.
        """
        async with self._lock:
            self._is_connecting = True
            try:
                for name in [conn.server.name for conn in self._connections]:
                    if name not in new_configs:
                        await self._delete_connection(name)
                        logger.info("capability_removed", server=name)

                for name, config in new_configs.items():
                    current = self.find_connection(name)
                    if current is None:
                        await self._try_connect(name, config)
                    elif json.loads(current.server.config) != config.model_dump(mode="json"):
                        await self._delete_connection(name)
                        await self._try_connect(name, config)
                        logger.info("capability_reconnected", server=name)
            finally:
                self._is_connecting = False

    async def _try_connect(self, name: str, config: CapabilityServerConfig) -> None:
        try:
            await self._connect(name, config)
        except CapabilityConnectionError as exc:
            logger.error("capability_connect_failed", server=name, error=str(exc))

    async def _connect(self, name: str, config: CapabilityServerConfig) -> None:
        self._connections = [conn for conn in self._connections if conn.server.name != name]
        record = ServerRecord(
            name=name,
            config=config.model_dump_json(),
            status="disconnected" if config.disabled else "connecting",
            disabled=config.disabled,
        )
        connection = CapabilityConnection(server=record)
        self._connections.append(connection)

        if config.disabled:
            return

        connection.transport = self._transport_factory(
            name,
            config,
            lambda exc: self._mark_failed(connection, exc),
            lambda: self._mark_closed(connection),
            lambda level, message: self._notify(name, level, message),
        )

        try:
            await connection.transport.connect()
        except Exception as exc:
            self._mark_failed(connection, exc)
            raise CapabilityConnectionError(f"Failed to connect to {name}: {exc}") from exc

        record.status = "connected"
        record.error = ""

        record.tools = await self._fetch(name, "tools", connection.transport.list_tools)
        for tool in record.tools:
            tool.auto_approve = tool.name in config.auto_approve
        record.resources = await self._fetch(name, "resources", connection.transport.list_resources)
        record.resource_templates = await self._fetch(
            name, "resource_templates", connection.transport.list_resource_templates
        )
        logger.info(
            "capability_connected",
            server=name,
            tools=len(record.tools),
            resources=len(record.resources),
        )

    async def _fetch(self, name: str, catalog: str, request: Callable) -> list:
        try:
            return await request(DEFAULT_REQUEST_TIMEOUT_MS)
        except Exception as exc:
            logger.warning("capability_catalog_failed", server=name, catalog=catalog, error=str(exc))
            return []

    async def _delete_connection(self, name: str) -> None:
        connection = self.find_connection(name)
        if connection is None:
            return
        if connection.transport is not None:
            try:
                await connection.transport.close()
            except Exception as exc:
                logger.error("capability_close_failed", server=name, error=str(exc))
        self._connections = [conn for conn in self._connections if conn is not connection]

    async def dispose(self) -> None:
        async with self._lock:
            for name in [conn.server.name for conn in self._connections]:
                await self._delete_connection(name)
            self._connections = []

    # ------------------------------------------------------------------
    # Transport callbacks
    # ------------------------------------------------------------------

    def _mark_failed(self, connection: CapabilityConnection, exc: BaseException) -> None:
        record = connection.server
        record.status = "disconnected"
        message = str(exc) or exc.__class__.__name__
        record.error = f"{record.error}\n{message}" if record.error else message

    def _mark_closed(self, connection: CapabilityConnection) -> None:
        connection.server.status = "disconnected"

    def _notify(self, server_name: str, level: str, message: str) -> None:
        if self._notification_callback is not None:
            self._notification_callback(server_name, level, message)
