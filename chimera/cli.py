"""Click CLI: config loading, model selection, chat sessions and chat storage."""

import asyncio
import logging
import sys
from datetime import datetime
from pathlib import Path

import click
from dotenv import load_dotenv
from rich.live import Live
from rich.logging import RichHandler

from config.config_loader import AppConfig, ModelCatalogEntry, load_config
from chimera.aggregator import Aggregator
from chimera.context import ChimeraContext, open_context
from chimera.healthcheck import run_health_checks
from chimera.models import Message, StrategyResult
from chimera.output import (
    console,
    print_chat_list,
    print_message,
    print_model_catalog,
    render_message,
    save_to_file,
)
from chimera.providers.base import ChatClient, ProviderError
from chimera.transcript import ChatRepository, JsonChatRepository, Transcript

logger = logging.getLogger(__name__)


def _setup_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.WARNING
    logging.basicConfig(
        level=level,
        format="%(message)s",
        handlers=[RichHandler(rich_tracebacks=True, show_path=False, console=console)],
    )


def _resolve_models(models: list[str], catalog: list[ModelCatalogEntry]) -> list[str]:
    """Map catalog ids to OpenRouter model ids; unknown ids pass through."""
    lookup: dict[str, str] = {}
    for entry in catalog:
        lookup.setdefault(entry.id, entry.model_id)
    return [lookup.get(m, m) for m in models]


def _parse_models(models_arg: str | None, catalog: list[ModelCatalogEntry] | None = None) -> list[str]:
    """Comma-separated model list; duplicates are kept on purpose."""
    if not models_arg:
        return []
    models = [m.strip() for m in models_arg.split(",") if m.strip()]
    return _resolve_models(models, catalog or [])


def _search_catalog(catalog: list[ModelCatalogEntry], text: str | None) -> list[ModelCatalogEntry]:
    if not text:
        return list(catalog)
    needle = text.lower()
    return [
        e for e in catalog
        if any(needle in value.lower() for value in (e.id, e.name, e.description, e.model_id, e.category))
    ]


def _default_chat_name() -> str:
    now = datetime.now()
    return f"New Chat - {now:%b} {now.day}"


def _open_transcript(
    repository: ChatRepository,
    chat_id: str | None,
    name: str | None,
    models: list[str],
    default_models: list[str],
) -> tuple[Transcript, list[str]]:
    """Load an existing chat or create a new one. Returns (transcript, models).

    --models wins over the chat's stored models, which win over config defaults.
    """
    if chat_id:
        doc = repository.load_chat(chat_id)
        effective = models or list(doc.get("modelIds", [])) or list(default_models)
        return Transcript.load(repository, chat_id), effective

    effective = models or list(default_models)
    new_id = repository.create_chat(name or _default_chat_name(), effective)
    return Transcript(new_id, repository), effective


async def _check_models(client: ChatClient, models: list[str]) -> list[str]:
    """Run health checks, print results, and ask what to do on failures.

    Returns the models that passed, in their original order. Exits if the
    user declines to continue or no model passes.
    """
    console.print("\n[bold]Checking models...[/bold]")
    results = await run_health_checks(client, models)

    failed: list[str] = []
    for model in sorted(results):
        ok, err = results[model]
        if ok:
            console.print(f"  [green]OK  [/green] {model}")
        else:
            short_err = err.splitlines()[0][:120] if err else "unknown error"
            console.print(f"  [red]FAIL[/red] {model}: {short_err}")
            failed.append(model)

    if not failed:
        console.print()
        return models

    working = [m for m in models if m not in failed]
    if not working:
        console.print("\n[bold red]Error:[/bold red] No models passed the health check.")
        sys.exit(1)

    console.print(f"\n[yellow]{len(failed)} model(s) failed:[/yellow] {', '.join(failed)}")
    console.print(f"Working models: {', '.join(dict.fromkeys(working))}")

    if not click.confirm("Continue with working models only?", default=True):
        sys.exit(0)

    console.print()
    return working


async def _run_round(
    aggregator: Aggregator,
    transcript: Transcript,
    models: list[str],
    text: str,
    show_user: bool = False,
) -> StrategyResult | None:
    """Run one round with a live streaming view. Returns None if the round failed."""
    before = len(transcript.messages)
    result: StrategyResult | None = None
    error: Exception | None = None

    with Live(console=console, refresh_per_second=12, transient=True) as live:

        def on_update(msg: Message) -> None:
            if msg.is_pending:
                live.update(render_message(msg))

        aggregator.on_update = on_update
        try:
            result = await aggregator.respond(text, models)
        except Exception as exc:
            logger.debug("Round error", exc_info=True)
            error = exc
        finally:
            aggregator.on_update = None

    for msg in transcript.messages[before:]:
        if show_user or not msg.is_user:
            print_message(msg)
    if error is not None:
        console.print(f"[bold red]Error:[/bold red] {error}")
    return result


async def _prepare_session(
    ctx: ChimeraContext,
    chat_id: str | None,
    name: str | None,
    models_arg: str | None,
    skip_health_check: bool,
) -> tuple[Transcript, list[str]]:
    catalog = ctx.config.catalog
    transcript, models = _open_transcript(
        ctx.repository,
        chat_id,
        name,
        _parse_models(models_arg, catalog),
        _resolve_models(ctx.config.defaults.models, catalog),
    )
    if not models:
        console.print("[bold red]Error:[/bold red] No models selected. Use --models or set defaults.models.")
        sys.exit(1)
    if not skip_health_check:
        models = await _check_models(ctx.client, models)
    return transcript, models


async def _chat_session(
    config: AppConfig,
    chat_id: str | None,
    name: str | None,
    models_arg: str | None,
    skip_health_check: bool,
) -> None:
    async with open_context(config) as ctx:
        transcript, models = await _prepare_session(ctx, chat_id, name, models_arg, skip_health_check)

        console.print(f"\n[bold cyan]ChimeraAI[/bold cyan] chat {transcript.chat_id}")
        console.print(f"Models: {', '.join(models)}")
        console.print("[dim]Prefix with /series or /parallel to change strategy, /exit to quit.[/dim]\n")
        for msg in transcript.messages:
            print_message(msg)

        aggregator = ctx.aggregator_for(transcript)
        while True:
            try:
                text = await asyncio.to_thread(console.input, "[bold blue]You[/bold blue] > ")
            except (EOFError, KeyboardInterrupt):
                break
            text = text.strip()
            if not text:
                continue
            if text in ("/exit", "/quit"):
                break
            await _run_round(aggregator, transcript, models, text)


async def _ask_once(
    config: AppConfig,
    text: str,
    chat_id: str | None,
    models_arg: str | None,
    skip_health_check: bool,
) -> bool:
    async with open_context(config) as ctx:
        transcript, models = await _prepare_session(ctx, chat_id, None, models_arg, skip_health_check)
        result = await _run_round(ctx.aggregator_for(transcript), transcript, models, text, show_user=True)
        console.print(f"\n[dim]Chat: {transcript.chat_id}[/dim]")
        return result is not None


@click.group()
@click.option("--verbose", is_flag=True, help="Enable DEBUG-level logging")
@click.option("--settings", "settings_path", type=click.Path(exists=True, dir_okay=False), default=None,
              help="Path to settings.yaml (default: bundled config)")
@click.pass_context
def main(ctx: click.Context, verbose: bool, settings_path: str | None) -> None:
    """ChimeraAI -- chat with several LLMs through one thread.

    \b
    Examples:
      chimera chat --models google/gemini-2.0-flash-exp:free,deepseek/deepseek-chat:free
      chimera ask "/parallel Compare REST and GraphQL"
      chimera models --search gemini
      chimera chats
      chimera export <chat-id>
    """
    # Model responses may contain characters the Windows console codepage cannot encode.
    if sys.platform == "win32":
        if hasattr(sys.stdout, "reconfigure"):
            sys.stdout.reconfigure(encoding="utf-8", errors="replace")
        if hasattr(sys.stderr, "reconfigure"):
            sys.stderr.reconfigure(encoding="utf-8", errors="replace")

    load_dotenv()
    _setup_logging(verbose)

    try:
        ctx.obj = load_config(Path(settings_path)) if settings_path else load_config()
    except (FileNotFoundError, ValueError) as exc:
        console.print(f"[bold red]Config error:[/bold red] {exc}")
        sys.exit(1)


@main.command()
@click.option("--chat-id", default=None, help="Continue a stored chat")
@click.option("--name", default=None, help="Name for a new chat")
@click.option("--models", "models_arg", default=None, help="Comma-separated catalog ids or OpenRouter model identifiers")
@click.option("--skip-health-check", is_flag=True, default=False,
              help="Skip pinging the models at startup")
@click.pass_obj
def chat(config: AppConfig, chat_id: str | None, name: str | None, models_arg: str | None,
         skip_health_check: bool) -> None:
    """Interactive chat session."""
    try:
        asyncio.run(_chat_session(config, chat_id, name, models_arg, skip_health_check))
    except (ProviderError, FileNotFoundError, ValueError) as exc:
        console.print(f"[bold red]Error:[/bold red] {exc}")
        sys.exit(1)


@main.command()
@click.argument("text")
@click.option("--chat-id", default=None, help="Append to a stored chat instead of creating one")
@click.option("--models", "models_arg", default=None, help="Comma-separated catalog ids or OpenRouter model identifiers")
@click.option("--health-check", is_flag=True, default=False,
              help="Ping the models before sending")
@click.pass_obj
def ask(config: AppConfig, text: str, chat_id: str | None, models_arg: str | None,
        health_check: bool) -> None:
    """Send one message and print the response."""
    try:
        ok = asyncio.run(_ask_once(config, text, chat_id, models_arg, not health_check))
    except (ProviderError, FileNotFoundError, ValueError) as exc:
        console.print(f"[bold red]Error:[/bold red] {exc}")
        sys.exit(1)
    if not ok:
        sys.exit(1)


@main.command()
@click.pass_obj
def chats(config: AppConfig) -> None:
    """List stored chats."""
    print_chat_list(JsonChatRepository(config.defaults.chats_dir).list_chats())


@main.command()
@click.option("--search", default=None, help="Only show models whose id, name, description, model or category contains TEXT")
@click.pass_obj
def models(config: AppConfig, search: str | None) -> None:
    """List the curated model catalog by category."""
    print_model_catalog(_search_catalog(config.catalog, search))


@main.command()
@click.argument("chat_id")
@click.confirmation_option(prompt="Are you sure you want to delete this chat?")
@click.pass_obj
def delete(config: AppConfig, chat_id: str) -> None:
    """Delete a stored chat."""
    try:
        JsonChatRepository(config.defaults.chats_dir).delete_chat(chat_id)
    except (FileNotFoundError, ValueError) as exc:
        console.print(f"[bold red]Error:[/bold red] {exc}")
        sys.exit(1)
    click.echo(f"Deleted: {chat_id}")


@main.command()
@click.argument("chat_id")
@click.option("--output", "output_path", default=None, help="Output directory (default: from config)")
@click.pass_obj
def export(config: AppConfig, chat_id: str, output_path: str | None) -> None:
    """Write a stored chat as a markdown transcript."""
    try:
        doc = JsonChatRepository(config.defaults.chats_dir).load_chat(chat_id)
    except (FileNotFoundError, ValueError) as exc:
        console.print(f"[bold red]Error:[/bold red] {exc}")
        sys.exit(1)
    output_dir = Path(output_path) if output_path else config.defaults.export_dir
    saved = save_to_file(doc, output_dir)
    console.print(f"[dim]Saved to: {saved}[/dim]")


if __name__ == "__main__":
    main()
