# display.py
# Terminal rendering of task events.
#
# This module owns presentation entirely. The orchestrator never formats
# strings. render_event() is registered as an ordinary event observer.
# Swap this file to change the entire UI.
#
# Colour language:
#   cyan    : task lifecycle and routing events
#   blue    : assistant output
#   magenta : tool execution
#   green   : success / completion
#   red     : failures and halts
#   dim     : token usage, notifications

import json

from rich.console import Console
from rich.panel import Panel
from rich.rule import Rule
from rich.text import Text

from taskpilot.models import TaskEvent

console = Console()


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _label(tag: str, color: str) -> Text:
    t = Text()
    t.append(f" {tag} ", style=f"bold white on {color}")
    return t


def _mono(value: str, max_len: int = 120) -> str:
    if len(value) > max_len:
        return value[:max_len] + "…"
    return value


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------


def banner(provider: str, model: str, mode: str) -> None:
    console.print()
    console.print(
        Panel.fit(
            "[bold cyan]taskpilot[/bold cyan]\n"
            "[dim]Streaming tool-use agent loop[/dim]\n\n"
            f"[dim]Provider :[/dim] [white]{provider}[/white]\n"
            f"[dim]Model    :[/dim] [white]{model}[/white]\n"
            f"[dim]Mode     :[/dim] [white]{mode.upper()}[/white]",
            border_style="cyan",
            padding=(1, 4),
        )
    )


def task_started(task: str) -> None:
    console.print()
    console.print(Rule("[cyan]NEW TASK[/cyan]", style="cyan"))
    console.print(
        Panel(
            f"[white]{task}[/white]",
            title=_label("TASK", "cyan"),
            border_style="cyan",
            padding=(0, 2),
        )
    )


def task_completed() -> None:
    console.print()
    console.print(_label("COMPLETED", "green"), "[green] Task finished.[/green]")
    console.print()


def error(message: str) -> None:
    console.print()
    console.print(
        Panel(
            f"[bold white]{message}[/bold white]",
            title=_label("ERROR", "red"),
            border_style="red",
            padding=(0, 2),
        )
    )


# ---------------------------------------------------------------------------
# Assistant output and tools
# ---------------------------------------------------------------------------


def assistant_text(content: str) -> None:
    console.print()
    console.print(Panel(f"[white]{content}[/white]", title=_label("ASSISTANT", "blue"), border_style="blue"))


def tool_started(tool_name: str, args: dict) -> None:
    console.print(
        f"  [magenta]Tool[/magenta]     [bold white]{tool_name}[/bold white]"
        f"  [dim]{_mono(json.dumps(args), 100)}[/dim]"
    )


def tool_finished(tool_name: str, result: dict) -> None:
    mark = "[bold green]✓[/bold green]" if result.get("success") else "[bold red]✗[/bold red]"
    console.print(f"  {mark} [magenta]{tool_name}[/magenta]  [white]{_mono(result.get('content', ''), 140)}[/white]")


def notice(kind: str, detail: str) -> None:
    console.print(f"  [dim]{kind}: {detail}[/dim]")


# ---------------------------------------------------------------------------
# Observer
# ---------------------------------------------------------------------------


def render_event(event: TaskEvent) -> None:
    data = event.data
    if event.type == "task_started":
        task_started(data.get("task", ""))
    elif event.type == "task_completed":
        task_completed()
    elif event.type == "error":
        error(data.get("error", "Unknown error"))
    elif event.type == "tool_executed":
        tool_finished(data.get("tool_name", ""), data.get("result", {}))
    elif event.type == "message":
        kind = data.get("type")
        if kind == "assistant_text" and not data.get("partial"):
            assistant_text(data.get("content", ""))
        elif kind == "tool_execution_started":
            tool_started(data.get("tool_name", ""), data.get("args", {}))
        elif kind == "token_usage":
            notice(
                "usage",
                f"{data['input_tokens']} in / {data['output_tokens']} out (${data['total_cost']:.4f})",
            )
        elif kind == "context_truncated":
            notice("context", f"history compacted, deleted range {data['deleted_range']}")
        elif kind == "capability_notification":
            notice(data.get("server", "capability"), data.get("message", ""))
        elif kind == "mode_switched":
            notice("mode", f"switched to {data.get('mode', '')}")
        elif kind == "task_aborted":
            notice("task", "aborted")
        elif kind == "awaiting_user":
            notice("plan", "waiting for your reply")
