import asyncio

import pytest

from taskpilot.config import AgentConfig
from taskpilot.models import (
    CapabilityTool,
    ModelInfo,
    RemoteContent,
    ResourceContent,
    ResourceResponse,
    StreamChunk,
    ToolCallResponse,
)

# ---------------------------------------------------------------------------
# Scripted LLM provider
# ---------------------------------------------------------------------------


class ScriptedHandler:
    """
    Replays one scripted turn per request.

    A turn is either a list of text chunks (str) / StreamChunks, or an
    exception instance that is raised when the request is made.
    """

    def __init__(self, turns, context_window=200_000):
        self.turns = list(turns)
        self.requests = []  # (system_prompt, view) per request
        self.model = ModelInfo(id="scripted", name="Scripted", context_window=context_window)

    def get_model(self):
        return self.model

    async def create_message(self, system_prompt, messages):
        self.requests.append((system_prompt, list(messages)))
        if not self.turns:
            raise AssertionError("ScriptedHandler ran out of turns")
        turn = self.turns.pop(0)
        if isinstance(turn, Exception):
            raise turn
        for chunk in turn:
            await asyncio.sleep(0)
            if isinstance(chunk, StreamChunk):
                yield chunk
            else:
                yield StreamChunk(type="text", text=chunk)


def tool_tag(name, payload="{}"):
    return f"<tool_use>\n<name>{name}</name>\n<input>{payload}</input>\n</tool_use>"


COMPLETE = tool_tag("attempt_completion", '{"result": "done"}')


@pytest.fixture
def config(tmp_path):
    return AgentConfig(api_key="test-key", working_directory=str(tmp_path), mode="act")


# ---------------------------------------------------------------------------
# Fake capability transport
# ---------------------------------------------------------------------------


class FakeTransport:
    """In-memory CapabilityTransport recording every call made to it."""

    def __init__(self, name, config, on_error, on_close, on_notification, connect_error=None):
        self.name = name
        self.config = config
        self.on_error = on_error
        self.on_close = on_close
        self.on_notification = on_notification
        self.connect_error = connect_error
        self.connected = False
        self.closed = False
        self.calls = []
        self.tools = [CapabilityTool(name="read_file", description="Read a file")]
        self.response = ToolCallResponse(content=[RemoteContent(type="text", text="remote ok")])

    async def connect(self):
        if self.connect_error is not None:
            raise self.connect_error
        self.connected = True

    async def close(self):
        self.closed = True
        self.on_close()

    async def call_tool(self, tool_name, arguments, timeout_ms):
        self.calls.append(("call_tool", tool_name, arguments, timeout_ms))
        return self.response

    async def list_tools(self, timeout_ms):
        return list(self.tools)

    async def list_resources(self, timeout_ms):
        return []

    async def list_resource_templates(self, timeout_ms):
        return []

    async def read_resource(self, uri, timeout_ms):
        self.calls.append(("read_resource", uri, timeout_ms))
        return ResourceResponse(contents=[ResourceContent(uri=uri, text="resource body")])


@pytest.fixture
def transports():
    """Factory that records every FakeTransport it builds, keyed by server name."""
    created = {}
    fail_on_connect = {}

    def factory(name, config, on_error, on_close, on_notification):
        transport = FakeTransport(
            name, config, on_error, on_close, on_notification, fail_on_connect.get(name)
        )
        created.setdefault(name, []).append(transport)
        return transport

    factory.created = created
    factory.fail_on_connect = fail_on_connect
    return factory
