# config.py
# Configuration values threaded explicitly through constructors.
# Nothing here is read from process-wide state except the settings file a
# caller points at.

import json
import os
from pathlib import Path
from typing import Literal

import structlog
from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from taskpilot.models import Mode

logger = structlog.get_logger(__name__)

DEFAULT_CAPABILITY_TIMEOUT_SECONDS = 30
MIN_CAPABILITY_TIMEOUT_SECONDS = 5
DEFAULT_REQUEST_TIMEOUT_MS = 30_000


class AutoApprovalSettings(BaseModel):
    """Which tool calls may run without asking the user first."""

    enabled: bool = False
    max_requests: int = Field(default=10, ge=0)
    enabled_tools: list[str] = Field(default_factory=list)
    risky_commands_enabled: bool = False


class CapabilityServerConfig(BaseModel):
    """
    One external capability provider.

    Accepts the camelCase keys used by `mcpServers` settings files.
    """

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    type: Literal["stdio", "sse", "http"] = "stdio"
    command: str | None = None
    args: list[str] = Field(default_factory=list)
    env: dict[str, str] = Field(default_factory=dict)
    cwd: str | None = None
    url: str | None = None
    headers: dict[str, str] = Field(default_factory=dict)
    disabled: bool = False
    timeout: int | None = Field(default=None, ge=MIN_CAPABILITY_TIMEOUT_SECONDS)
    auto_approve: list[str] = Field(default_factory=list, alias="autoApprove")

    @model_validator(mode="after")
    def _check_endpoint(self) -> "CapabilityServerConfig":
        if self.type == "stdio" and not self.command:
            raise ValueError("stdio capability servers require a command")
        if self.type in ("sse", "http") and not self.url:
            raise ValueError(f"{self.type} capability servers require a url")
        return self


class AgentConfig(BaseModel):
    """Everything a thin outer layer hands to the orchestrator."""

    api_provider: str = "openrouter"
    api_key: str | None = None
    model: str = "anthropic/claude-3.5-sonnet"
    base_url: str | None = None
    mode: Mode = "act"
    working_directory: str = Field(default_factory=os.getcwd)
    max_tokens: int = 8192
    temperature: float = 0.0
    auto_approval: AutoApprovalSettings = Field(default_factory=AutoApprovalSettings)
    capability_servers: dict[str, CapabilityServerConfig] = Field(default_factory=dict)
    capability_settings_path: str | None = None

    tool_wait_timeout: float = Field(default=300.0, gt=0)
    command_timeout: float = Field(default=30.0, gt=0)
    max_compaction_retries: int = Field(default=3, ge=0)
    max_consecutive_mistakes: int = Field(default=3, ge=1)


# ---------------------------------------------------------------------------
# Settings file
# ---------------------------------------------------------------------------


def load_capability_settings(path: str | Path) -> dict[str, CapabilityServerConfig]:
    """
    Read `{"mcpServers": {...}}` from `path`.

    A missing file is created with an empty server set. An unreadable or
    invalid document degrades to an empty set; a single invalid server entry
    is skipped.
    """
    settings_path = Path(path)
    if not settings_path.exists():
        settings_path.parent.mkdir(parents=True, exist_ok=True)
        settings_path.write_text(json.dumps({"mcpServers": {}}, indent=2), encoding="utf-8")
        logger.info("capability_settings_created", path=str(settings_path))
        return {}

    try:
        raw = json.loads(settings_path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        logger.error("capability_settings_unreadable", path=str(settings_path), error=str(exc))
        return {}

    servers = raw.get("mcpServers") if isinstance(raw, dict) else None
    if not isinstance(servers, dict):
        return {}

    configs: dict[str, CapabilityServerConfig] = {}
    for name, entry in servers.items():
        try:
            configs[name] = CapabilityServerConfig.model_validate(entry)
        except ValidationError as exc:
            logger.warning("capability_server_invalid", server=name, error=str(exc))
    return configs
