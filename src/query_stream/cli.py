"""Terminal front end: stream one AI answer into a live view."""

from __future__ import annotations

import asyncio
import json
import logging
import os
import sys
from pathlib import Path

import click
from rich.console import Console, Group
from rich.live import Live
from rich.markdown import Markdown
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from query_stream.config import ConfigError, QueryStreamConfig, load_config
from query_stream.conversation import Messages
from query_stream.core.orchestrator import QueryOrchestrator
from query_stream.stream.client import StaticTokenProvider, StreamTransport
from query_stream.types import (
    Cancelled,
    Err,
    ErrorRecord,
    EventType,
    Message,
    Ok,
    Role,
    SessionEvent,
    Severity,
)

console = Console()

TOKEN_ENV = "QUERY_STREAM_TOKEN"

_SEVERITY_STYLE = {
    Severity.INFO: "cyan",
    Severity.WARNING: "yellow",
    Severity.ERROR: "red",
}


def _load_deals(path: str | None) -> list[dict]:
    if not path:
        return []
    try:
        data = json.loads(Path(path).read_text())
    except json.JSONDecodeError as e:
        raise click.BadParameter(f"invalid JSON: {e}", param_hint="--deals") from e
    if isinstance(data, dict):
        data = data.get("deals", [])
    if not isinstance(data, list):
        raise click.BadParameter("deals file must hold a list", param_hint="--deals")
    return [d for d in data if isinstance(d, dict)]


def _render_answer(message: Message | None) -> Panel:
    if message is None:
        return Panel("[dim]Waiting for response...[/dim]", border_style="dim")
    body = Markdown(message.content) if message.content else "[dim]...[/dim]"
    title = Text(message.provider or "AI")
    if message.streaming:
        title.append(" (streaming)", style="dim")
    return Panel(body, title=title, border_style="blue")


def _plan_item(item: object) -> str:
    if isinstance(item, dict):
        text = item.get("title") or item.get("action") or item.get("description") or ""
        reason = item.get("reason")
        return f"{text} ({reason})" if text and reason else str(text)
    return str(item)


def _render_fallback_plan(plan: dict) -> Group:
    """The server's offline summary, shown in place of an answer."""
    headline = (
        plan.get("headline") or plan.get("summary")
        or "Here's your pipeline at a glance"
    )
    lines: list[Text] = [Text(str(headline), style="bold")]
    for bullet in plan.get("bullets") or []:
        lines.append(Text(f"  • {_plan_item(bullet)}"))
    items = list(plan.get("tasks") or []) + list(plan.get("recommendedActions") or [])[:3]
    for item in items:
        text = _plan_item(item)
        if text:
            lines.append(Text(f"  → {text}"))
    return Group(*lines)


def _render_error(error: ErrorRecord) -> Panel:
    style = _SEVERITY_STYLE.get(error.severity, "red")
    parts: list = [Text(error.message)]
    if error.providers:
        table = Table(show_header=True, header_style="bold", box=None)
        table.add_column("Provider")
        table.add_column("Code")
        table.add_column("Message")
        for failure in error.providers:
            table.add_row(failure.provider, failure.code.value, Text(failure.message))
        parts.append(table)
    if error.fallback_plan:
        parts.append(Text(""))
        parts.append(_render_fallback_plan(error.fallback_plan))
    subtitle = f"[dim]{error.action.label}[/dim]" if error.action else None
    return Panel(
        Group(*parts), title=f"[bold]{error.code.value}[/bold]",
        subtitle=subtitle, border_style=style,
    )


def _render_extras(message: Message) -> None:
    if message.chart is not None:
        title = message.chart.chart_title or message.chart.chart_type
        console.print(Text(f"Chart: {title} ({message.chart.chart_type})", style="dim"))
    if message.structured:
        kind = message.structured.get("response_type", "structured")
        console.print(Text(f"Structured response: {kind}", style="dim"))
    if message.is_provider_error:
        console.print(
            "[yellow]The provider answered with an error. "
            "Check your API key or try again.[/yellow]"
        )


async def _ask(
    config: QueryStreamConfig,
    text: str,
    deals: list[dict],
    provider: str | None,
    action_id: str | None,
) -> int:
    if provider:
        config.providers.primary = provider
        if provider not in config.providers.connected:
            config.providers.connected.insert(0, provider)

    transport = StreamTransport(config, StaticTokenProvider(os.environ.get(TOKEN_ENV)))
    orchestrator = QueryOrchestrator(transport, config)

    def on_notice(event: SessionEvent) -> None:
        style = _SEVERITY_STYLE.get(Severity(event.data.get("severity", "info")), "cyan")
        console.print(Text(str(event.data.get("message", "")), style=style))

    orchestrator.event_bus.subscribe(EventType.NOTICE, on_notice)

    with Live(_render_answer(None), console=console, refresh_per_second=20) as live:

        def on_change(messages: Messages) -> None:
            answer = next(
                (m for m in reversed(messages) if m.role is Role.ASSISTANT), None,
            )
            live.update(_render_answer(answer))

        orchestrator.conversation.subscribe(on_change)
        try:
            result = await orchestrator.ask(text, deals=deals, action_id=action_id)
        finally:
            await orchestrator.close()

    if isinstance(result, Ok):
        _render_extras(result.message)
        return 0
    if isinstance(result, Err):
        console.print(_render_error(result.error))
        return 1
    if isinstance(result, Cancelled):
        console.print("[dim]Cancelled.[/dim]")
    return 130


@click.group()
def main() -> None:
    """query-stream: streaming AI queries from the terminal."""


@main.command()
@click.argument("message")
@click.option("--deals", "deals_path", default=None, type=click.Path(exists=True),
              help="JSON file with a list of deals to send as context")
@click.option("--config", "-c", "config_path", default=None,
              help="Path to query_stream.yaml")
@click.option("--provider", "-p", default=None, help="Preferred provider")
@click.option("--action", "action_id", default=None,
              help="Quick action id (e.g. plan_my_day)")
@click.option("--verbose", "-v", is_flag=True, help="Verbose logging")
def ask(message: str, deals_path: str | None, config_path: str | None,
        provider: str | None, action_id: str | None, verbose: bool) -> None:
    """Ask one question and stream the answer."""
    if verbose:
        logging.basicConfig(level=logging.DEBUG)
    else:
        logging.basicConfig(level=logging.WARNING)

    try:
        config = load_config(config_path)
    except ConfigError as e:
        console.print(Text(str(e), style="red"))
        sys.exit(1)

    deals = _load_deals(deals_path)
    try:
        code = asyncio.run(_ask(config, message, deals, provider, action_id))
    except KeyboardInterrupt:
        console.print("[dim]Cancelled.[/dim]")
        code = 130
    sys.exit(code)


if __name__ == "__main__":
    main()
