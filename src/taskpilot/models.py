# models.py
# Data contracts for the task orchestrator.
# No business logic lives here. Pure schema and validation.

import time
from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, Field

Mode = Literal["plan", "act"]
Role = Literal["user", "assistant"]


# ---------------------------------------------------------------------------
# Content blocks
# ---------------------------------------------------------------------------


class TextBlock(BaseModel):
    """Plain assistant or user text."""

    type: Literal["text"] = "text"
    text: str
    partial: bool = Field(
        default=False, description="More text may still arrive for this block."
    )


class ToolUseBlock(BaseModel):
    """A parsed tool invocation. Never partial: it only exists once its tag closed."""

    type: Literal["tool_use"] = "tool_use"
    name: str
    input: dict[str, Any] = Field(default_factory=dict)
    partial: bool = False


class ImageBlock(BaseModel):
    """Base64 image attachment."""

    type: Literal["image"] = "image"
    media_type: str = "image/jpeg"
    data: str
    partial: bool = False


ContentBlock = Annotated[
    Union[TextBlock, ToolUseBlock, ImageBlock], Field(discriminator="type")
]


class Message(BaseModel):
    """One entry of the conversation history."""

    role: Role
    content: list[ContentBlock] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Tools
# ---------------------------------------------------------------------------


class ToolResult(BaseModel):
    """Outcome of exactly one tool invocation."""

    success: bool
    content: str = ""
    images: list[str] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Provider stream
# ---------------------------------------------------------------------------


class ModelInfo(BaseModel):
    id: str
    name: str
    context_window: int = Field(..., gt=0)
    supports_images: bool = True
    input_price: float = 0.0
    output_price: float = 0.0


class StreamChunk(BaseModel):
    """One item yielded by an LLM stream provider."""

    type: Literal["text", "usage", "reasoning"]
    text: str = ""
    input_tokens: int = 0
    output_tokens: int = 0
    total_cost: float = 0.0


# ---------------------------------------------------------------------------
# Context management
# ---------------------------------------------------------------------------


class ContextWindowInfo(BaseModel):
    context_window: int
    max_allowed: int


class ContextMetadata(BaseModel):
    view: list[Message]
    estimated_tokens: int
    window_info: ContextWindowInfo
    should_compact: bool


class ContextEdit(BaseModel):
    """A text overlay for one block of one historical message."""

    timestamp: float
    text: str
    update_type: Literal["replace", "prepend"] = "replace"


# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------

EventType = Literal["task_started", "task_completed", "tool_executed", "error", "message"]


class TaskEvent(BaseModel):
    type: EventType
    data: dict[str, Any] = Field(default_factory=dict)
    timestamp: float = Field(default_factory=time.time)


class UiMessage(BaseModel):
    """Timestamped record of what happened in a task, for outer layers."""

    ts: float = Field(default_factory=time.time)
    say: str
    text: str = ""
    images: list[str] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Task state
# ---------------------------------------------------------------------------


class TaskStatus(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    STREAMING = "streaming"
    PRESENTING = "presenting"
    AWAITING_TOOLS = "awaiting_tools"
    COMPLETED = "completed"
    ABORTED = "aborted"
    ERRORED = "errored"


class TaskState(BaseModel):
    task_id: str
    mode: Mode
    status: TaskStatus = TaskStatus.IDLE
    abort: bool = False
    api_request_count: int = 0
    consecutive_mistake_count: int = 0
    consecutive_auto_approved_requests_count: int = 0
    did_edit_file: bool = False
    deleted_range: tuple[int, int] | None = None
    tokens_in: int = 0
    tokens_out: int = 0
    total_cost: float = 0.0


# ---------------------------------------------------------------------------
# Capability catalogs
# ---------------------------------------------------------------------------

ConnectionStatus = Literal["disconnected", "connecting", "connected"]


class CapabilityTool(BaseModel):
    name: str
    description: str = ""
    input_schema: dict[str, Any] = Field(default_factory=dict)
    auto_approve: bool = False


class CapabilityResource(BaseModel):
    uri: str
    name: str = ""
    description: str = ""
    mime_type: str | None = None


class CapabilityResourceTemplate(BaseModel):
    uri_template: str
    name: str = ""
    description: str = ""
    mime_type: str | None = None


class ServerRecord(BaseModel):
    """Observable state of one capability connection."""

    name: str
    config: str = Field(..., description="JSON-serialized CapabilityServerConfig.")
    status: ConnectionStatus = "disconnected"
    disabled: bool = False
    error: str = ""
    tools: list[CapabilityTool] = Field(default_factory=list)
    resources: list[CapabilityResource] = Field(default_factory=list)
    resource_templates: list[CapabilityResourceTemplate] = Field(default_factory=list)


class RemoteContent(BaseModel):
    """One content item returned by a remote tool call."""

    type: str = "text"
    text: str | None = None
    data: str | None = None
    mime_type: str | None = None


class ToolCallResponse(BaseModel):
    content: list[RemoteContent] = Field(default_factory=list)
    is_error: bool = False


class ResourceContent(BaseModel):
    uri: str
    mime_type: str | None = None
    text: str | None = None
    blob: str | None = None


class ResourceResponse(BaseModel):
    contents: list[ResourceContent] = Field(default_factory=list)
