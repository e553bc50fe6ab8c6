"""Fiber Runtime CLI.

Usage:
    fiber-runtime config                   # Show effective configuration
    fiber-runtime config --format json     # ... as JSON
    fiber-runtime chat                     # Console conversation on stdin
    fiber-runtime chat --invalidate-after 5 --show-events
    fiber-runtime chat --event-prefix wait  # Only wait.* events

Chat lines have the form ``nick: text`` for a private query or
``nick@#channel: text`` for a channel message.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
import sys
from typing import Any

import click

from .bus import Bus
from .config import FiberConfig
from .dispatcher import Dispatcher
from .demo import PagerDemo
from .message import Message
from .plugin import FiberPlugin
from .routing import TemplateRouter

# Output format options
FORMAT_TABLE = "table"
FORMAT_JSON = "json"

LOG_LEVELS = ["debug", "info", "warning", "error"]

_LINE = re.compile(r"^\s*(?P<nick>[^\s@:]+)(?:@(?P<channel>#[^\s:]+))?\s*:\s*(?P<text>.*?)\s*$")


def parse_line(line: str) -> Message | None:
    """Parse ``nick[@#channel]: text`` into a message, None if malformed."""
    match = _LINE.match(line)
    if match is None or not match.group("text"):
        return None
    return Message(
        sender=match.group("nick"),
        channel=match.group("channel"),
        text=match.group("text"),
    )


@click.group()
@click.option(
    "--log-level",
    type=click.Choice(LOG_LEVELS),
    default="warning",
    help="Logging level (logs go to stderr)",
)
def main(log_level: str) -> None:
    """Fiber Runtime - conversational handlers that wait for replies."""
    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format="%(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )


@main.command("config")
@click.option(
    "--format",
    "-f",
    "output_format",
    type=click.Choice([FORMAT_TABLE, FORMAT_JSON]),
    default=FORMAT_TABLE,
    help="Output format",
)
def config_show(output_format: str) -> None:
    """Show configuration resolved from FIBER_* environment variables."""
    try:
        config = FiberConfig.from_env()
    except ValueError as e:
        click.echo(f"Invalid configuration: {e}", err=True)
        sys.exit(1)

    values = config.to_dict()
    if output_format == FORMAT_JSON:
        click.echo(json.dumps(values, indent=2))
        return

    click.echo(f"{'Setting':<20} {'Value':<10}")
    click.echo("-" * 31)
    for key, value in values.items():
        click.echo(f"{key:<20} {value!s:<10}")


@main.command()
@click.option("--invalidate-after", type=float, help="Seconds before an unanswered wait expires")
@click.option(
    "--exclusive/--shared",
    "exclusive_patterns",
    default=None,
    help="Allow one live wait per pattern, or one per source and pattern",
)
@click.option("--debug-replies", is_flag=True, help="Echo resume diagnostics into the chat")
@click.option("--show-events", is_flag=True, help="Print bus events to stderr")
@click.option(
    "--event-prefix",
    "event_prefixes",
    multiple=True,
    help="Only print events of this family (wait, fiber, pattern); implies --show-events",
)
def chat(
    invalidate_after: float | None,
    exclusive_patterns: bool | None,
    debug_replies: bool,
    show_events: bool,
    event_prefixes: tuple[str, ...],
) -> None:
    """Talk to the demo pager on stdin.

    Examples:

        printf 'alice: list fruit\\nalice: page_to 2\\n' | fiber-runtime chat
    """
    try:
        config = FiberConfig.from_env(
            invalidate_after=invalidate_after,
            exclusive_patterns=exclusive_patterns,
            debug_replies=debug_replies or None,
        )
    except ValueError as e:
        raise click.UsageError(str(e)) from e

    try:
        asyncio.run(_run_chat(config, show_events, event_prefixes))
    except KeyboardInterrupt:
        click.echo("\nShutting down", err=True)


async def _run_chat(
    config: FiberConfig, show_events: bool, event_prefixes: tuple[str, ...] = ()
) -> None:
    router = TemplateRouter()
    fibers = FiberPlugin(router, config)
    dispatcher = Dispatcher(router, fibers, config)
    PagerDemo(fibers).register(router)

    async def show_waits(message: Message, params: dict[str, str]) -> None:
        waits = fibers.pending()
        if not waits:
            await message.reply("no pending waits")
        for wait in waits:
            await message.reply(f"{wait['wait_id']}: {wait['source']} -> {wait['pattern']!r}")

    router.map("waits", show_waits)

    async def echo_reply(message: Message, text: str) -> None:
        target = message.channel or message.sender
        click.echo(f"<bot> [{target}] {text}")

    async def print_event(event: dict[str, Any]) -> None:
        click.echo(f"[event] {event['type']} {json.dumps(event['properties'])}", err=True)

    unsubscribers = []
    if event_prefixes:
        for prefix in event_prefixes:
            unsubscribers.append(await Bus.subscribe_prefix(prefix, print_event))
    elif show_events:
        unsubscribers.append(await Bus.subscribe_all(print_event))
    runner = asyncio.create_task(dispatcher.run())

    try:
        while True:
            line = await asyncio.to_thread(sys.stdin.readline)
            if not line:
                break
            if not line.strip():
                continue
            message = parse_line(line)
            if message is None:
                click.echo(f"Expected 'nick[@#channel]: text', got {line.strip()!r}", err=True)
                continue
            message.reply_fn = echo_reply
            await dispatcher.submit(message)
            await dispatcher.join()
    finally:
        await dispatcher.stop()
        await runner
        for unsubscribe in unsubscribers:
            unsubscribe()


if __name__ == "__main__":
    main()
