"""Command-line front end for ide-assist."""

from __future__ import annotations

import asyncio
import logging
import signal
from pathlib import Path
from typing import Any, Awaitable, Callable

import click
from rich.console import Console
from rich.markdown import Markdown
from rich.table import Table

from ide_assist.cancellation import CancellationToken
from ide_assist.config import EngineConfig, load_config
from ide_assist.core.context import ProjectFile
from ide_assist.core.tool_loop import ProjectContext
from ide_assist.errors import Cancelled, EngineError, error_reply
from ide_assist.events.bus import EventBus
from ide_assist.service import AssistantService
from ide_assist.tools import TOOL_SPECS, ProjectFileExecutor
from ide_assist.types import AgentEvent, EventType

console = Console()


def _run_cancellable(
    body: Callable[[CancellationToken], Awaitable[Any]],
) -> Any:
    """Run *body* with a token that Ctrl-C triggers."""

    async def _main() -> Any:
        token = CancellationToken()
        loop = asyncio.get_running_loop()
        try:
            loop.add_signal_handler(signal.SIGINT, token.cancel)
        except (NotImplementedError, RuntimeError):
            pass  # signal handlers are unavailable on this platform
        try:
            return await body(token)
        finally:
            try:
                loop.remove_signal_handler(signal.SIGINT)
            except (NotImplementedError, RuntimeError):
                pass

    return asyncio.run(_main())


def _show_error(config: EngineConfig, exc: EngineError) -> None:
    reply = error_reply(exc, config.backend.provider)
    if reply is not None:
        console.print(f"[red]{reply.content}[/red]")


@click.group()
@click.option("--config", "-c", "config_path", default=None,
              help="Path to ide_assist.yaml (auto-detected from CWD or ~/.config/ide-assist/)")
@click.option("--provider", "-p", type=click.Choice(["ollama", "openai"]), default=None,
              help="Backend wire protocol")
@click.option("--model", "-m", default=None, help="Model name")
@click.option("--url", default=None, help="Backend base URL")
@click.option("--verbose", "-v", is_flag=True, help="Verbose logging")
@click.pass_context
def main(ctx: click.Context, config_path: str | None, provider: str | None,
         model: str | None, url: str | None, verbose: bool) -> None:
    """ide-assist - coding assistant for local LLM backends."""
    if verbose:
        logging.basicConfig(level=logging.DEBUG)
    else:
        logging.basicConfig(level=logging.WARNING)

    overrides = {
        k: v for k, v in {"provider": provider, "model": model, "url": url}.items()
        if v is not None
    }
    try:
        config = load_config(config_path)
        if overrides:
            config = config.with_backend(**overrides)
    except EngineError as e:
        console.print(f"[red]Invalid configuration: {e}[/red]")
        raise SystemExit(1) from None
    ctx.obj = config


@main.command()
@click.pass_obj
def models(config: EngineConfig) -> None:
    """List models served by the backend."""

    async def _body(token: CancellationToken) -> list[str]:
        async with AssistantService() as service:
            return await service.list_models(config, token)

    names = _run_cancellable(_body)
    if not names:
        console.print("[yellow]No models found.[/yellow]")
        return
    table = Table(title=f"Models ({config.backend.provider.value})")
    table.add_column("Name", style="cyan")
    for name in names:
        table.add_row(name)
    console.print(table)


@main.command()
@click.pass_obj
def ping(config: EngineConfig) -> None:
    """Check that the backend is reachable."""

    async def _body(token: CancellationToken):
        async with AssistantService() as service:
            return await service.test_connection(config)

    status = _run_cancellable(_body)
    if status.success:
        console.print(f"[green]Connected to {config.backend.url}[/green]")
        return
    console.print(f"[red]Connection failed: {status.error}[/red]")
    console.print(f"[dim]{status.hint}[/dim]")
    raise SystemExit(1)


@main.command()
def tools() -> None:
    """Show the tools declared to the model."""
    for spec in TOOL_SPECS:
        console.print(f"  [cyan]{spec.to_compact_description()}[/cyan]")


@main.command()
@click.argument("message")
@click.option("--stream/--no-stream", default=True, help="Stream the reply as it arrives")
@click.option("--file", "-f", "files", multiple=True,
              type=click.Path(exists=True, dir_okay=False, path_type=Path),
              help="Project file to include as context (repeatable)")
@click.option("--root", "-r", type=click.Path(file_okay=False, path_type=Path), default=None,
              help="Project root; enables the file tools")
@click.pass_obj
def chat(config: EngineConfig, message: str, stream: bool,
         files: tuple[Path, ...], root: Path | None) -> None:
    """Send MESSAGE and print the assistant's reply."""
    project = ProjectContext(
        files=[ProjectFile(str(p), p.read_text(errors="replace")) for p in files],
        project_path=str(root.resolve()) if root else None,
    )
    bus = EventBus()
    bus.subscribe(EventType.TOOL_EXECUTED, _print_tool_event)
    bus.subscribe(EventType.TOOL_ERROR, _print_tool_event)
    bus.subscribe(EventType.LLM_RETRY, _print_retry_event)
    executor = ProjectFileExecutor(root) if root else None

    async def _body(token: CancellationToken):
        async with AssistantService(executor=executor, event_bus=bus) as service:
            if stream:
                return await service.chat_stream(
                    config, message,
                    on_delta=lambda d: console.print(d, end="", markup=False, highlight=False),
                    context=project, token=token,
                )
            return await service.chat(config, message, context=project, token=token)

    try:
        reply = _run_cancellable(_body)
    except Cancelled:
        console.print("\n[dim]Cancelled.[/dim]")
        return
    except EngineError as e:
        _show_error(config, e)
        raise SystemExit(1) from None

    if stream and not reply.tool_calls:
        console.print()
    else:
        if stream:
            console.print()
        console.print(Markdown(reply.content))


def _print_tool_event(event: AgentEvent) -> None:
    tool = event.data.get("tool", "?")
    if event.type is EventType.TOOL_ERROR:
        console.print(f"\n[red]  {tool} failed: {event.data.get('error', '')}[/red]")
    else:
        console.print(f"\n[dim]  {tool} done[/dim]")


def _print_retry_event(event: AgentEvent) -> None:
    console.print(
        f"[yellow]  retrying ({event.data.get('attempt')}/"
        f"{event.data.get('max_attempts')}): {event.data.get('error', '')}[/yellow]"
    )
