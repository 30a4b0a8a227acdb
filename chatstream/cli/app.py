"""
Main CLI application for chatstream.

Usage:
    chatstream chat MESSAGE [--provider NAME] [--resume FILE] [--export FILE]
    chatstream ask MESSAGE [--provider NAME]
    chatstream decode FILE [--provider NAME] [--chunk-size N]
    chatstream demo
    chatstream config show|validate
    chatstream version
"""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.live import Live
from rich.logging import RichHandler

from chatstream import __version__
from chatstream.chat.events import ChatState, send_message
from chatstream.chat.models import AgentConfig, ChatContext
from chatstream.chat.state_machine import ChatStateMachine
from chatstream.cli.output import OutputFormatter
from chatstream.config import ChatStreamConfig, find_config_file, load_config
from chatstream.llm.decoder import WireDecoder
from chatstream.llm.factory import ServiceFactory
from chatstream.llm.providers.base import create_error_response
from chatstream.llm.retry import with_retry
from chatstream.llm.scripts import demo_script
from chatstream.llm.types import Message
from chatstream.types import ChatStreamError, TransportError

app = typer.Typer(name="chatstream", help="Streaming chat client for language-model services")
config_app = typer.Typer(help="Configuration management")
app.add_typer(config_app, name="config")

console = Console()
err_console = Console(stderr=True)

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

class _Options:
    def __init__(self, config_path: Path | None, profile: str | None, verbose: bool):
        self.config_path = config_path
        self.profile = profile
        self.verbose = verbose


def _load(ctx: typer.Context, **overrides) -> ChatStreamConfig:
    opts: _Options = ctx.obj
    cfg = load_config(
        opts.config_path or find_config_file(),
        profile=opts.profile,
        cli_overrides=overrides,
    )
    level = "DEBUG" if opts.verbose else cfg.logging.level.upper()
    logging.basicConfig(
        level=level,
        format=cfg.logging.format,
        handlers=[RichHandler(console=err_console, show_time=False)],
        force=True,
    )
    return cfg


def _machine(cfg: ChatStreamConfig, factory: ServiceFactory) -> ChatStateMachine:
    service = factory.get_instance(cfg.provider.name, cfg.provider_config())
    agent = AgentConfig(
        name=cfg.agent.name,
        model=None,
        temperature=None,
        max_tokens=None,
        system_prompt=cfg.agent.system_prompt,
    )
    return ChatStateMachine(ChatContext(config=agent), service=service, options=cfg.machine)


async def _run_turn(
    machine: ChatStateMachine,
    message: str,
    formatter: OutputFormatter,
    show_thinking: bool,
) -> ChatState:
    with Live(console=formatter.console, refresh_per_second=12, transient=True) as live:
        unsubscribe = machine.subscribe(
            lambda state, context: live.update(formatter.render_turn(state, context, show_thinking))
        )
        try:
            await machine.send(send_message(message))
            await machine.wait_stream()
        finally:
            unsubscribe()
    return machine.get_state()


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

@app.callback()
def main_options(
    ctx: typer.Context,
    config: Optional[Path] = typer.Option(None, "--config", "-c", help="Config file path"),
    profile: Optional[str] = typer.Option(None, help="Config profile name"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging"),
):
    """Streaming chat client for language-model services."""
    ctx.obj = _Options(config, profile, verbose)


@app.command()
def chat(
    ctx: typer.Context,
    message: str = typer.Argument(..., help="Message to send"),
    provider: Optional[str] = typer.Option(None, help="Provider id (custom, deepseek)"),
    model: Optional[str] = typer.Option(None, help="Model name"),
    base_url: Optional[str] = typer.Option(None, help="Endpoint URL"),
    mock: Optional[bool] = typer.Option(None, "--mock/--no-mock", help="Force mock mode"),
    resume: Optional[Path] = typer.Option(None, help="Conversation snapshot to continue"),
    export: Optional[Path] = typer.Option(None, help="Write the conversation snapshot here"),
    show_thinking: bool = typer.Option(False, "--thinking", help="Show reasoning output"),
    stats: bool = typer.Option(False, help="Print session statistics"),
):
    """Send MESSAGE and stream the reply through the conversation state machine."""
    cfg = _load(
        ctx,
        **{
            "provider.name": provider,
            "provider.model": model,
            "provider.base_url": base_url,
            "provider.mock_mode": mock,
        },
    )
    formatter = OutputFormatter(console)

    async def _run() -> ChatState:
        factory = ServiceFactory()
        try:
            machine = _machine(cfg, factory)
            if resume is not None:
                machine.import_conversation(resume.read_text(encoding="utf-8"))
            state = await _run_turn(machine, message, formatter, show_thinking)
            formatter.format_conversation(machine.get_context(), show_thinking)
            if stats:
                formatter.format_stats(machine.get_stats())
            if export is not None:
                export.write_text(machine.export_conversation(), encoding="utf-8")
                console.print(f"[dim]Saved conversation to {export}[/dim]")
            if state is ChatState.ERROR:
                formatter.format_error(state, machine.get_context())
            machine.destroy()
            return state
        finally:
            await factory.destroy_all()

    try:
        state = asyncio.run(_run())
    except ChatStreamError as e:
        console.print(f"[red]{type(e).__name__}:[/red] {e}")
        raise typer.Exit(1)
    if state is ChatState.ERROR:
        raise typer.Exit(1)


@app.command()
def ask(
    ctx: typer.Context,
    message: str = typer.Argument(..., help="Message to send"),
    provider: Optional[str] = typer.Option(None, help="Provider id (custom, deepseek)"),
    model: Optional[str] = typer.Option(None, help="Model name"),
    retries: Optional[int] = typer.Option(None, help="Attempts before giving up"),
):
    """Send MESSAGE as a single non-streaming request, retrying transport failures."""
    cfg = _load(
        ctx,
        **{
            "provider.name": provider,
            "provider.model": model,
            "provider.max_retries": retries,
        },
    )
    formatter = OutputFormatter(console)

    async def _run():
        factory = ServiceFactory()
        service = factory.get_instance(cfg.provider.name, cfg.provider_config())
        messages = []
        if cfg.agent.system_prompt:
            messages.append(Message(role="system", content=cfg.agent.system_prompt))
        messages.append(Message(role="user", content=message))
        try:
            return await with_retry(
                lambda: service.request(messages, raise_errors=True),
                retries=cfg.provider.max_retries,
                delay=cfg.provider.retry_delay,
                retry_on=(TransportError,),
            )
        except TransportError as e:
            return create_error_response(str(e), service.provider_id)
        finally:
            await factory.destroy_all()

    try:
        response = asyncio.run(_run())
    except ChatStreamError as e:
        console.print(f"[red]{type(e).__name__}:[/red] {e}")
        raise typer.Exit(1)
    formatter.format_response(response)
    if response.status == "error":
        raise typer.Exit(1)


@app.command()
def decode(
    ctx: typer.Context,
    path: Path = typer.Argument(..., exists=True, dir_okay=False, help="Captured wire stream"),
    provider: Optional[str] = typer.Option(None, help="Provider whose wire format to use"),
    chunk_size: int = typer.Option(4096, min=1, help="Bytes per simulated read"),
):
    """Decode a captured provider stream into canonical JSON lines."""
    cfg = _load(ctx, **{"provider.name": provider})
    factory = ServiceFactory()
    try:
        service = factory.get_instance(cfg.provider.name)
    except ChatStreamError as e:
        console.print(f"[red]{type(e).__name__}:[/red] {e}")
        raise typer.Exit(1)

    decoder = WireDecoder(
        framing=service.framing,
        chunk_adapter=service.make_chunk_adapter(),
        sentinel=service.sentinel,
    )
    count = 0
    with path.open("rb") as f:
        while not decoder.finished:
            block = f.read(chunk_size)
            if not block:
                break
            for event in decoder.feed(block):
                typer.echo(json.dumps(event.to_dict(), ensure_ascii=False))
                count += 1
    for event in decoder.flush():
        typer.echo(json.dumps(event.to_dict(), ensure_ascii=False))
        count += 1

    err_console.print(f"[dim]{count} events, {decoder.dropped} malformed records dropped[/dim]")


@app.command()
def demo(
    ctx: typer.Context,
    delay: float = typer.Option(0.3, help="Seconds between events"),
    show_thinking: bool = typer.Option(True, "--thinking/--no-thinking", help="Show reasoning output"),
):
    """Replay a scripted thinking / tool / text stream through the state machine."""
    cfg = _load(ctx, **{"provider.name": "custom", "provider.mock_mode": True, "provider.mock_delay": delay})
    formatter = OutputFormatter(console)

    async def _run():
        factory = ServiceFactory()
        try:
            machine = _machine(cfg, factory)
            machine.service.set_mock_script(demo_script())
            await _run_turn(machine, "Show me the sales figures for Q1", formatter, show_thinking)
            formatter.format_conversation(machine.get_context(), show_thinking)
            formatter.format_stats(machine.get_stats())
            machine.destroy()
        finally:
            await factory.destroy_all()

    asyncio.run(_run())


@config_app.command("show")
def config_show(ctx: typer.Context):
    """Show effective config."""
    cfg = _load(ctx)
    formatter = OutputFormatter(console)
    formatter.format_config(cfg.to_dict())


@config_app.command("validate")
def config_validate(ctx: typer.Context):
    """Validate config and check that the provider is known."""
    opts: _Options = ctx.obj
    config_path = opts.config_path or find_config_file()
    try:
        cfg = _load(ctx)
        factory = ServiceFactory()
        service = factory.get_instance(cfg.provider.name, cfg.provider_config())
    except (ChatStreamError, ValueError, TypeError) as e:
        console.print(f"[red]Config validation failed:[/red] {e}")
        raise typer.Exit(1)

    console.print("[green]Config is valid.[/green]")
    if config_path:
        console.print(f"  Loaded from: {config_path}")
    else:
        console.print("  [dim]No config file found, using defaults.[/dim]")
    provider_cfg = service.get_config()
    console.print(f"  Provider: {service.provider_id} ({provider_cfg.model or 'default model'})")
    console.print(f"  Mock mode: {service.mock_mode}")
    console.print(f"  Registered providers: {', '.join(factory.registry.providers)}")


@app.command()
def version():
    """Show version."""
    console.print(f"chatstream v{__version__}")


def main():
    app()


if __name__ == "__main__":
    main()
