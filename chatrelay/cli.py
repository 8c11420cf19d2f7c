"""chatrelay CLI — Typer + Rich terminal interface.

Commands: chat, chunk, models.
"""

from __future__ import annotations

import asyncio
import os
from pathlib import Path

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from chatrelay import __version__
from chatrelay.display.console import ConsoleSink
from chatrelay.display.runner import run_turn
from chatrelay.history import ConversationCache
from chatrelay.log import configure_logging
from chatrelay.markdown.chunker import ChunkOptions, chunk_markdown
from chatrelay.providers.base import ModelProvider
from chatrelay.providers.litellm_provider import build_provider
from chatrelay.providers.registry import load_settings, resolve_model, to_litellm_model
from chatrelay.schemas.config import Settings
from chatrelay.schemas.messages import ChatMessage, Role
from chatrelay.tools.builtin import default_registry
from chatrelay.tools.registry import ToolRegistry

console = Console()

_EXIT_COMMANDS = {"/exit", "/quit"}

# ── App ─────────────────────────────────────────────────────────

app = typer.Typer(
    name="chatrelay",
    help="Stream LLM chat responses as markdown-safe display chunks.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)


# ── Version callback ───────────────────────────────────────────


def _version_callback(value: bool) -> None:
    if value:
        console.print(f"chatrelay {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool = typer.Option(
        False, "--version", "-V",
        help="Show version and exit.",
        callback=_version_callback,
        is_eager=True,
    ),
) -> None:
    """chatrelay — streaming chat front-end with inline tool calls."""


# ── Helpers ──────────────────────────────────────────────────────


def _load_settings(config_path: Path | None) -> Settings:
    """Load settings, exit on error."""
    try:
        return load_settings(config_path)
    except (FileNotFoundError, ValueError) as e:
        console.print(f"[red]Error loading config:[/red] {e}")
        raise typer.Exit(1) from None


async def _answer(
    provider: ModelProvider,
    prompt: str,
    *,
    settings: Settings,
    registry: ToolRegistry | None,
    history: ConversationCache,
    parent_id: str | None,
) -> str | None:
    """Stream one reply to the console; returns the id of its last unit."""
    sink = ConsoleSink(
        console,
        plain=settings.bot.use_plain_responses,
        title=provider.display_name,
    )
    with sink:
        result = await run_turn(
            provider,
            ChatMessage(role=Role.USER, content=prompt),
            sink,
            settings=settings,
            registry=registry,
            history=history,
            parent_id=parent_id,
        )
    return result.last_unit_id


# ── chatrelay chat ───────────────────────────────────────────────


@app.command()
def chat(
    prompt: str | None = typer.Argument(None, help="Prompt to answer (omit for interactive mode)"),
    model: str | None = typer.Option(None, "--model", "-m", help="Model registry key"),
    config: Path | None = typer.Option(None, "--config", "-c", help="Settings TOML file"),
    no_tools: bool = typer.Option(False, "--no-tools", help="Do not offer tools to the model"),
) -> None:
    """Chat with a model, one-shot or interactively."""
    settings = _load_settings(config)
    configure_logging(settings.bot.log_level, console=console)

    try:
        cfg = resolve_model(settings, model)
    except KeyError as e:
        console.print(f"[red]Model not found:[/red] {e}")
        console.print(f"[dim]Available: {', '.join(sorted(settings.models))}[/dim]")
        raise typer.Exit(1) from None

    provider = build_provider(cfg, settings.providers)
    registry = None if no_tools else default_registry(settings.tools.disabled)
    history = ConversationCache.from_config(settings.cache)

    def _turn(text: str, parent_id: str | None) -> str | None:
        return asyncio.run(
            _answer(
                provider,
                text,
                settings=settings,
                registry=registry,
                history=history,
                parent_id=parent_id,
            )
        )

    if prompt:
        try:
            _turn(prompt, None)
        except (RuntimeError, TimeoutError) as e:
            console.print(f"[red]Failed:[/red] {e}")
            raise typer.Exit(1) from None
        return

    console.print(
        f"[bold]{provider.display_name}[/bold] [dim]({cfg.key}) — "
        f"type {' or '.join(sorted(_EXIT_COMMANDS))} to leave[/dim]"
    )
    parent_id: str | None = None
    while True:
        try:
            text = console.input("[bold cyan]you>[/bold cyan] ").strip()
        except (EOFError, KeyboardInterrupt):
            console.print()
            break
        if not text:
            continue
        if text in _EXIT_COMMANDS:
            break
        try:
            parent_id = _turn(text, parent_id) or parent_id
        except (RuntimeError, TimeoutError) as e:
            console.print(f"[red]Failed:[/red] {e}")
        except KeyboardInterrupt:
            console.print("[yellow]Cancelled[/yellow]")


# ── chatrelay chunk ──────────────────────────────────────────────


@app.command()
def chunk(
    file: Path = typer.Argument(..., exists=True, dir_okay=False, help="Markdown file to chunk"),
    max_length: int = typer.Option(4000, "--max-length", "-n", min=1, help="Max chunk length"),
    last_length: int | None = typer.Option(
        None, "--last-length", min=1, help="Smaller budget for the last chunk",
    ),
    no_smart: bool = typer.Option(False, "--no-smart", help="Fixed-width slicing"),
) -> None:
    """Split a markdown file into display chunks and show them."""
    content = file.read_text(encoding="utf-8")
    chunks = chunk_markdown(
        content,
        ChunkOptions(
            max_chunk_length=max_length,
            max_last_chunk_length=last_length,
            smart_splitting=not no_smart,
        ),
    )
    for i, part in enumerate(chunks, start=1):
        console.print(
            Panel(
                part.display_text,
                title=f"chunk {i}/{len(chunks)}",
                subtitle=f"raw {part.raw_start}-{part.raw_end}, {len(part.display_text)} chars",
                border_style="blue",
            )
        )
    console.print(f"\n[dim]{len(content)} chars -> {len(chunks)} chunks[/dim]")


# ── chatrelay models ─────────────────────────────────────────────


@app.command()
def models(
    config: Path | None = typer.Option(None, "--config", "-c", help="Settings TOML file"),
) -> None:
    """Show all configured models as a table."""
    settings = _load_settings(config)

    table = Table(title="Configured Models", show_lines=True)
    table.add_column("Key", style="bold cyan")
    table.add_column("Display Name")
    table.add_column("Route", style="dim")
    table.add_column("Tools", justify="center")
    table.add_column("Input $/M", justify="right")
    table.add_column("Output $/M", justify="right")
    table.add_column("API Key")

    for key, cfg in sorted(settings.models.items()):
        provider_cfg = settings.providers.get(cfg.provider)
        env = provider_cfg.api_key_env if provider_cfg else ""
        if not env:
            key_status = "[dim]n/a[/dim]"
        elif os.environ.get(env):
            key_status = "[green]set[/green]"
        else:
            key_status = f"[red]{env} not set[/red]"
        marker = " *" if key == settings.bot.default_model else ""
        table.add_row(
            f"{key}{marker}",
            cfg.display_name,
            to_litellm_model(cfg),
            "yes" if cfg.use_tools else "no",
            f"${cfg.cost_input:.2f}",
            f"${cfg.cost_output:.2f}",
            key_status,
        )

    console.print(table)
    console.print(f"\n[dim]{len(settings.models)} models configured (* default)[/dim]")
