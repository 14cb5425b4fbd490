# orchestrator.py
# Task Orchestrator
#
# The Task is the kernel. The LLM is a passive responder; this module owns
# all control flow: compaction, streaming, block presentation, tool routing
# and loop termination.
#
# Control flow per turn:
#   context metadata → compact? → LLM stream → re-parse buffer per chunk
#   → present blocks in strict order (text events / tool execution)
#   → append assistant message → wait until every block is handled
#   → append tool results → completion tool? stop : loop
#
# States: idle → running → streaming → presenting → awaiting_tools
#         → running | completed | aborted | errored

import asyncio
import time
import uuid
from contextlib import aclosing
from typing import Any, Awaitable, Callable

import structlog

from taskpilot.config import AgentConfig
from taskpilot.context import ContextManager, KeepPolicy
from taskpilot.dispatcher import ToolDispatcher
from taskpilot.errors import (
    CompactionExhaustedError,
    ContextWindowExceededError,
    NoActiveTaskError,
    TooManyMistakesError,
    ToolWaitTimeoutError,
)
from taskpilot.events import EventCallback, EventEmitter
from taskpilot.hub import CapabilityHub
from taskpilot.models import (
    ImageBlock,
    Message,
    Mode,
    ServerRecord,
    StreamChunk,
    TaskState,
    TaskStatus,
    TextBlock,
    ToolResult,
    ToolUseBlock,
    UiMessage,
)
from taskpilot.parser import finalize, parse
from taskpilot.providers import ApiHandler, build_api_handler
from taskpilot.tools import COMPLETION_TOOL, LocalTool, ToolContext, ToolRegistry

logger = structlog.get_logger(__name__)

HandlerFactory = Callable[[AgentConfig], ApiHandler]
Approver = Callable[[str, dict[str, Any]], Awaitable[bool]]


# ---------------------------------------------------------------------------
# System Prompt
# ---------------------------------------------------------------------------

SYSTEM_PROMPT_HEADER = """\
You are an autonomous software agent that completes tasks by using tools.

To use a tool, emit exactly this structure, with a valid JSON object as input:

<tool_use>
<name>tool_name</name>
<input>{"param_name": "value"}</input>
</tool_use>

Tools run one at a time, in the order you write them. Each result is sent \
back to you in the next message.\
"""

PLAN_MODE_GUIDANCE = """\
You are currently in PLAN mode. Focus on:
- Understanding the task requirements
- Breaking complex tasks down into steps
- Asking clarifying questions
- Producing a detailed plan
File edits and commands are unavailable until the user switches to ACT mode.\
"""

ACT_MODE_GUIDANCE = """\
You are currently in ACT mode. Focus on:
- Executing the planned actions
- Using tools to make progress toward the goal
- Providing concrete results\
"""

SYSTEM_PROMPT_FOOTER = (
    f"Always use tools when appropriate and call {COMPLETION_TOOL} when the task is finished."
)

NO_TOOLS_USED = (
    "[ERROR] You did not use a tool in your previous response. Use a tool to make "
    f"progress, or call {COMPLETION_TOOL} if the task is finished."
)

EMPTY_RESPONSE = "Failure: I did not provide a response."


def build_system_prompt(mode: Mode, tools: list[LocalTool], servers: list[ServerRecord]) -> str:
    """Render the tool catalog and mode guidance for one request."""
    sections = [SYSTEM_PROMPT_HEADER]
    sections.append("Available tools:\n" + "\n".join(f"- {t.name}: {t.description}" for t in tools))

    capability_lines = [
        f"- {server.name}/{tool.name}: {tool.description}".rstrip(": ")
        for server in servers
        if server.status == "connected"
        for tool in server.tools
    ]
    if capability_lines:
        sections.append("Capability server tools (call them by their full name):\n" + "\n".join(capability_lines))

    sections.append(PLAN_MODE_GUIDANCE if mode == "plan" else ACT_MODE_GUIDANCE)
    sections.append(SYSTEM_PROMPT_FOOTER)
    return "\n\n".join(sections)


def _user_content(text: str, images: list[str] | None) -> list[TextBlock | ImageBlock]:
    blocks: list[TextBlock | ImageBlock] = [TextBlock(text=text)]
    blocks.extend(ImageBlock(data=image) for image in images or [])
    return blocks


def _result_text(name: str, result: ToolResult) -> str:
    verb = "result" if result.success else "failed"
    return f'Tool "{name}" {verb}: {result.content}'


# ---------------------------------------------------------------------------
# Task
# ---------------------------------------------------------------------------


class Task:
    """
    One conversation/execution session driven until completion or abort.

    Every error is emitted as an `error` event before it is re-raised to the
    caller of start_task / continue_task.

    Example:
        task = Task(AgentConfig(mode="act"))
        task.add_listener(print)
        await task.start_task("Add a README to this project.")
    """

    def __init__(
        self,
        config: AgentConfig,
        hub: CapabilityHub | None = None,
        handler_factory: HandlerFactory = build_api_handler,
        context_manager: ContextManager | None = None,
        approver: Approver | None = None,
    ) -> None:
        self.task_id = uuid.uuid4().hex
        self._config = config.model_copy(deep=True)
        self._hub = hub
        self._handler_factory = handler_factory
        self._api = handler_factory(self._config)
        self._context = context_manager or ContextManager()
        self._approver = approver
        self._events = EventEmitter()

        self.state = TaskState(task_id=self.task_id, mode=self._config.mode)
        self._tool_context = ToolContext(
            task_id=self.task_id,
            working_directory=self._config.working_directory,
            mode=self._config.mode,
            command_timeout=self._config.command_timeout,
        )
        self._registry = ToolRegistry(self._tool_context)
        self._dispatcher = ToolDispatcher(self._registry, hub, self._config.auto_approval)

        self._history: list[Message] = []
        self._ui_messages: list[UiMessage] = []

        # Per-turn presentation state
        self._blocks: list[TextBlock | ToolUseBlock] = []
        self._cursor = 0
        self._stream_complete = False
        self._blocks_done = asyncio.Event()
        self._presenter: asyncio.Task | None = None
        self._pending_update = False
        self._presentation_error: Exception | None = None
        self._turn_results: list[tuple[str, ToolResult]] = []

    # ------------------------------------------------------------------
    # Observers
    # ------------------------------------------------------------------

    def add_listener(self, callback: EventCallback) -> None:
        self._events.add_listener(callback)

    def remove_listener(self, callback: EventCallback) -> None:
        self._events.remove_listener(callback)

    def emit(self, event_type, data: dict[str, Any]) -> None:
        self._events.emit(event_type, data)

    @property
    def history(self) -> list[Message]:
        return list(self._history)

    @property
    def messages(self) -> list[UiMessage]:
        return list(self._ui_messages)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def start_task(self, task: str, images: list[str] | None = None) -> None:
        self._events.emit("task_started", {"task": task, "images": images or []})
        self._append_user_content(_user_content(f"<task>\n{task}\n</task>", images))
        self._ui_messages.append(UiMessage(say="task_started", text=task, images=images or []))
        await self._run_loop()

    async def continue_task(self, message: str, images: list[str] | None = None) -> None:
        self._append_user_content(_user_content(message, images))
        self._ui_messages.append(UiMessage(say="user_message", text=message, images=images or []))
        await self._run_loop()

    def switch_mode(self, mode: Mode) -> None:
        """Rebuild the request configuration for `mode`; history is kept."""
        self._config = self._config.model_copy(update={"mode": mode})
        self.state.mode = mode
        self._tool_context.mode = mode
        self._api = self._handler_factory(self._config)
        self._events.emit("message", {"type": "mode_switched", "mode": mode})

    def abort(self) -> None:
        """Stop before the next step. In-flight tool or network work finishes on its own."""
        if self.state.abort:
            return
        self.state.abort = True
        if self.state.status not in (TaskStatus.COMPLETED, TaskStatus.ERRORED):
            self.state.status = TaskStatus.ABORTED
        self._blocks_done.set()
        logger.info("task_aborted", task_id=self.task_id)
        self._events.emit("message", {"type": "task_aborted", "task_id": self.task_id})

    # ------------------------------------------------------------------
    # Loop
    # ------------------------------------------------------------------

    async def _run_loop(self) -> None:
        try:
            await self._execute_task_loop()
        except Exception as exc:
            self.state.status = TaskStatus.ERRORED
            logger.error("task_failed", task_id=self.task_id, error=str(exc))
            self._events.emit("error", {"error": str(exc), "kind": exc.__class__.__name__})
            raise

    async def _execute_task_loop(self) -> None:
        compaction_retries = 0
        while not self.state.abort:
            self.state.status = TaskStatus.RUNNING
            meta = self._context.metadata(self._history, self._api.get_model(), self.state.deleted_range)
            if meta.should_compact:
                self._compact("half")
                meta = self._context.metadata(self._history, self._api.get_model(), self.state.deleted_range)

            try:
                finished = await self._run_turn(meta.view)
            except ContextWindowExceededError as exc:
                if compaction_retries >= self._config.max_compaction_retries:
                    raise CompactionExhaustedError(exc.provider or "", exc.model or "") from exc
                compaction_retries += 1
                logger.warning("context_window_exceeded", task_id=self.task_id, retry=compaction_retries)
                self._compact("quarter")
                continue

            compaction_retries = 0
            if finished:
                break

    def _compact(self, keep: KeepPolicy) -> None:
        previous = self.state.deleted_range
        self.state.deleted_range = self._context.next_truncation_range(self._history, previous, keep)
        self._context.apply_notice(time.time())
        logger.info(
            "context_compacted",
            task_id=self.task_id,
            keep=keep,
            deleted_range=self.state.deleted_range,
        )
        self._events.emit(
            "message",
            {"type": "context_truncated", "keep": keep, "deleted_range": list(self.state.deleted_range)},
        )

    async def _run_turn(self, view: list[Message]) -> bool:
        """One request/stream plus its tool executions. True when the loop should stop."""
        self.state.api_request_count += 1
        self._blocks = []
        self._cursor = 0
        self._stream_complete = False
        self._blocks_done = asyncio.Event()
        self._presenter = None
        self._pending_update = False
        self._presentation_error = None
        self._turn_results = []

        system_prompt = build_system_prompt(
            self.state.mode, self._registry.all(), self._hub.servers if self._hub else []
        )

        self.state.status = TaskStatus.STREAMING
        buffer = ""
        try:
            async with aclosing(self._api.create_message(system_prompt, view)) as stream:
                async for chunk in stream:
                    if self.state.abort:
                        break
                    if chunk.type == "text":
                        buffer += chunk.text
                        self._blocks = parse(buffer)
                        self._schedule_presentation()
                    else:
                        self._record_side_chunk(chunk)
        except BaseException:
            await self._cancel_presenter()
            raise

        if self.state.abort:
            return True

        self._blocks = finalize(self._blocks)
        self._stream_complete = True
        self._history.append(Message(role="assistant", content=[TextBlock(text=buffer or EMPTY_RESPONSE)]))
        if buffer:
            self._ui_messages.append(UiMessage(say="assistant_message", text=buffer))

        self.state.status = TaskStatus.PRESENTING
        self._schedule_presentation()
        try:
            await asyncio.wait_for(self._blocks_done.wait(), timeout=self._config.tool_wait_timeout)
        except asyncio.TimeoutError as exc:
            await self._cancel_presenter()
            raise ToolWaitTimeoutError(
                f"Tool execution did not finish within {self._config.tool_wait_timeout:g}s"
            ) from exc

        if self._presentation_error is not None:
            raise self._presentation_error
        if self.state.abort:
            return True

        if self._turn_results:
            self._append_user_content(
                [TextBlock(text=_result_text(name, result)) for name, result in self._turn_results]
                + [ImageBlock(data=image) for _, result in self._turn_results for image in result.images]
            )

        tool_names = [block.name for block in self._blocks if isinstance(block, ToolUseBlock)]
        completed = any(name == COMPLETION_TOOL and result.success for name, result in self._turn_results)
        if completed:
            self.state.status = TaskStatus.COMPLETED
            logger.info("task_completed", task_id=self.task_id, requests=self.state.api_request_count)
            self._events.emit("task_completed", {"task_id": self.task_id})
            return True

        if tool_names:
            self.state.consecutive_mistake_count = 0
            return False
        return self._handle_turn_without_tools(bool(buffer.strip()))

    def _handle_turn_without_tools(self, responded: bool) -> bool:
        if self.state.mode == "plan" and responded:
            self.state.status = TaskStatus.IDLE
            self._events.emit("message", {"type": "awaiting_user"})
            return True

        self.state.consecutive_mistake_count += 1
        if self.state.consecutive_mistake_count >= self._config.max_consecutive_mistakes:
            raise TooManyMistakesError(
                f"No tool was used in {self.state.consecutive_mistake_count} consecutive responses"
            )
        self._append_user_content([TextBlock(text=NO_TOOLS_USED)])
        return False

    def _record_side_chunk(self, chunk: StreamChunk) -> None:
        if chunk.type == "usage":
            self.state.tokens_in += chunk.input_tokens
            self.state.tokens_out += chunk.output_tokens
            self.state.total_cost += chunk.total_cost
            self._events.emit(
                "message",
                {
                    "type": "token_usage",
                    "input_tokens": chunk.input_tokens,
                    "output_tokens": chunk.output_tokens,
                    "total_cost": chunk.total_cost,
                },
            )
        elif chunk.type == "reasoning":
            self._events.emit("message", {"type": "reasoning", "content": chunk.text})

    # ------------------------------------------------------------------
    # Presentation
    # ------------------------------------------------------------------

    def _schedule_presentation(self) -> None:
        """Start the presenter, or flag new blocks for the one already running."""
        if self._presenter is not None and not self._presenter.done():
            self._pending_update = True
            return
        self._presenter = asyncio.create_task(self._present())

    async def _cancel_presenter(self) -> None:
        """Cancel the presenter and wait until the running tool has cleaned up."""
        if self._presenter is not None and not self._presenter.done():
            self._presenter.cancel()
            await asyncio.wait([self._presenter])

    async def _present(self) -> None:
        try:
            while True:
                self._pending_update = False
                await self._present_blocks()
                if not self._pending_update:
                    return
        except Exception as exc:
            self._presentation_error = exc
            self._blocks_done.set()

    async def _present_blocks(self) -> None:
        """
        Advance the cursor over the parsed blocks.

        The cursor only moves past complete blocks, so re-parsing the buffer
        on every chunk never executes a tool twice or out of order.
        """
        while self._cursor < len(self._blocks):
            if self.state.abort:
                self._blocks_done.set()
                return

            block = self._blocks[self._cursor]
            if isinstance(block, TextBlock):
                self._events.emit(
                    "message",
                    {"type": "assistant_text", "content": block.text, "partial": block.partial},
                )
            elif isinstance(block, ToolUseBlock):
                await self._execute_tool(block)

            if block.partial:
                return
            self._cursor += 1

        if self._stream_complete:
            self._blocks_done.set()

    async def _execute_tool(self, block: ToolUseBlock) -> None:
        previous_status = self.state.status
        self.state.status = TaskStatus.AWAITING_TOOLS
        self._events.emit(
            "message", {"type": "tool_execution_started", "tool_name": block.name, "args": block.input}
        )

        result = await self._approve_and_execute(block.name, block.input)

        self._turn_results.append((block.name, result))
        self._ui_messages.append(UiMessage(say="tool_result", text=f"{block.name}: {result.content}"))
        if block.name in ("write_to_file", "replace_in_file") and result.success:
            self.state.did_edit_file = True

        logger.info("tool_executed", task_id=self.task_id, tool=block.name, success=result.success)
        self._events.emit(
            "tool_executed", {"tool_name": block.name, "args": block.input, "result": result.model_dump()}
        )
        if not self.state.abort:
            self.state.status = previous_status

    async def _approve_and_execute(self, name: str, args: dict[str, Any]) -> ToolResult:
        if self._approver is not None:
            count = self.state.consecutive_auto_approved_requests_count
            if self._dispatcher.is_auto_approved(name, args, count):
                self.state.consecutive_auto_approved_requests_count = count + 1
            else:
                self.state.consecutive_auto_approved_requests_count = 0
                if not await self._approver(name, args):
                    return ToolResult(success=False, content="The user denied this operation.")
        return await self._dispatcher.execute(name, args)

    # ------------------------------------------------------------------
    # History
    # ------------------------------------------------------------------

    def _append_user_content(self, blocks: list[TextBlock | ImageBlock]) -> None:
        """Append a user message, merging into a trailing user message to keep roles alternating."""
        if self._history and self._history[-1].role == "user":
            last = self._history[-1]
            self._history[-1] = Message(role="user", content=list(last.content) + list(blocks))
        else:
            self._history.append(Message(role="user", content=list(blocks)))


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------


class Orchestrator:
    """
    Owns the capability hub and the single active Task.

    Starting a task aborts and discards the previous one. Task events are
    forwarded to the orchestrator's own observers.

    Example:
        async with Orchestrator(AgentConfig(mode="act")) as orchestrator:
            orchestrator.add_listener(display.render_event)
            await orchestrator.start_task("List the files in this directory.")
    """

    def __init__(
        self,
        config: AgentConfig,
        hub: CapabilityHub | None = None,
        handler_factory: HandlerFactory = build_api_handler,
        approver: Approver | None = None,
    ) -> None:
        self._config = config
        self._handler_factory = handler_factory
        self._approver = approver
        self._events = EventEmitter()
        self._task: Task | None = None

        if hub is None and (config.capability_servers or config.capability_settings_path):
            hub = CapabilityHub(settings_path=config.capability_settings_path)
        self.hub = hub
        if self.hub is not None:
            self.hub.set_notification_callback(self._forward_notification)

    async def __aenter__(self) -> "Orchestrator":
        await self.initialize()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.dispose()

    async def initialize(self) -> None:
        if self.hub is not None:
            await self.hub.initialize(self._config.capability_servers)

    # ------------------------------------------------------------------
    # Tasks
    # ------------------------------------------------------------------

    async def start_task(self, task: str, images: list[str] | None = None) -> None:
        if self._task is not None:
            self._task.abort()

        self._task = Task(
            self._config,
            hub=self.hub,
            handler_factory=self._handler_factory,
            approver=self._approver,
        )
        self._task.add_listener(self._events.dispatch)
        await self._task.start_task(task, images)

    async def continue_task(self, message: str, images: list[str] | None = None) -> None:
        if self._task is None:
            raise NoActiveTaskError("No active task. Start a task first.")
        await self._task.continue_task(message, images)

    def switch_mode(self, mode: Mode) -> None:
        self._config = self._config.model_copy(update={"mode": mode})
        if self._task is not None:
            self._task.switch_mode(mode)

    def abort_task(self) -> None:
        if self._task is not None:
            self._task.abort()
            self._task = None

    # ------------------------------------------------------------------
    # Observers and accessors
    # ------------------------------------------------------------------

    def add_listener(self, callback: EventCallback) -> None:
        self._events.add_listener(callback)

    def remove_listener(self, callback: EventCallback) -> None:
        self._events.remove_listener(callback)

    @property
    def config(self) -> AgentConfig:
        return self._config.model_copy(deep=True)

    @property
    def current_task(self) -> Task | None:
        return self._task

    @property
    def state(self) -> TaskState | None:
        return self._task.state.model_copy() if self._task else None

    @property
    def messages(self) -> list[UiMessage]:
        return self._task.messages if self._task else []

    @property
    def servers(self) -> list[ServerRecord]:
        return self.hub.servers if self.hub else []

    def update_config(self, **updates: Any) -> None:
        """Applies to the next task; the running task keeps its configuration."""
        self._config = self._config.model_copy(update=updates)

    def _forward_notification(self, server: str, level: str, message: str) -> None:
        if self._task is not None:
            self._task.emit(
                "message",
                {"type": "capability_notification", "server": server, "level": level, "message": message},
            )

    async def dispose(self) -> None:
        if self._task is not None:
            self._task.abort()
        if self.hub is not None:
            self.hub.clear_notification_callback()
            await self.hub.dispose()
        self._events.clear()
