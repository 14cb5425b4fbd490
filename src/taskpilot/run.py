# run.py
# Entry point. Config and wiring only, no logic lives here.
#
# Swap model strings for any OpenRouter-supported model.
# https://openrouter.ai/models

import argparse
import asyncio
import logging
import os

import structlog

from taskpilot import display
from taskpilot.config import AgentConfig
from taskpilot.errors import ConfigurationError, TaskPilotError
from taskpilot.orchestrator import Orchestrator

PROVIDER = "openrouter"
MODEL = "anthropic/claude-3.5-sonnet"
SETTINGS_PATH = os.path.join(os.path.expanduser("~"), ".taskpilot", "mcp-settings.json")


def configure_logging(level: str = "WARNING") -> None:
    logging.basicConfig(format="%(message)s", level=getattr(logging, level.upper(), logging.WARNING))
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run one agent task in the current directory.")
    parser.add_argument("task", help="What the agent should do.")
    parser.add_argument("--mode", choices=["plan", "act"], default="act")
    parser.add_argument("--provider", default=PROVIDER)
    parser.add_argument("--model", default=MODEL)
    parser.add_argument("--settings", default=SETTINGS_PATH, help="Capability server settings file.")
    parser.add_argument("--log-level", default="WARNING")
    return parser.parse_args()


async def run(args: argparse.Namespace) -> None:
    config = AgentConfig(
        api_provider=args.provider,
        model=args.model,
        mode=args.mode,
        capability_settings_path=args.settings,
    )
    display.banner(config.api_provider, config.model, config.mode)

    async with Orchestrator(config) as orchestrator:
        orchestrator.add_listener(display.render_event)
        await orchestrator.start_task(args.task)


def main() -> None:
    args = parse_args()
    configure_logging(args.log_level)
    try:
        asyncio.run(run(args))
    except ConfigurationError as exc:
        display.error(str(exc))
        raise SystemExit(2) from exc
    except TaskPilotError as exc:
        raise SystemExit(1) from exc


if __name__ == "__main__":
    main()
