"""Rich console rendering of chat messages, chat lists and the model catalog, plus markdown export."""

import logging
import re
from datetime import datetime
from pathlib import Path
from typing import Any

from rich.console import Console
from rich.markdown import Markdown
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from config.config_loader import ModelCatalogEntry
from chimera.models import Message

logger = logging.getLogger(__name__)

console = Console(legacy_windows=False)


def _slug(text: str, max_len: int = 40) -> str:
    """Convert text to a filename-safe slug."""
    slug = re.sub(r"[^\w\s-]", "", text.lower())
    slug = re.sub(r"[\s_-]+", "-", slug).strip("-")
    return slug[:max_len]


def render_message(msg: Message) -> Panel:
    """Panel for one transcript entry; pending replies show their source model."""
    timestamp = msg.created_at.astimezone().strftime("%H:%M:%S")
    if msg.is_user:
        return Panel(Text(msg.content), title="[bold]You[/bold]", subtitle=timestamp, border_style="blue")
    if msg.is_error:
        return Panel(Text(msg.content, style="red"), title="[red]error[/red]", border_style="red")
    model = msg.source_model or "assistant"
    if msg.is_pending:
        body = Markdown(msg.content) if msg.content else Text("thinking...", style="dim italic")
        return Panel(body, title=f"[bold]{model}[/bold] [dim](streaming)[/dim]", border_style="dim")
    return Panel(Markdown(msg.content), title=f"[bold]{model}[/bold]", subtitle=timestamp, border_style="green")


def print_message(msg: Message) -> None:
    console.print(render_message(msg))


def last_message_preview(chat: dict[str, Any], max_words: int = 8) -> str:
    """First words of the chat's last message, or a placeholder for an empty chat."""
    history = chat.get("chatHistory", [])
    if not history:
        return "No messages yet"
    words = str(history[-1].get("content", "")).split()
    preview = " ".join(words[:max_words])
    return f"{preview}..." if len(words) > max_words else preview


def print_chat_list(chats: list[dict[str, Any]]) -> None:
    """Print stored chats, most recently updated first."""
    if not chats:
        console.print("[dim]No conversations yet. Start one with `chimera chat`.[/dim]")
        return
    table = Table(show_header=True, header_style="bold cyan")
    table.add_column("ID", style="dim")
    table.add_column("Name")
    table.add_column("Last message")
    table.add_column("Models")
    table.add_column("Messages", justify="right")
    table.add_column("Updated")
    for chat in chats:
        table.add_row(
            chat["id"],
            chat.get("name", ""),
            Text(last_message_preview(chat)),
            ", ".join(chat.get("modelIds", [])),
            str(len(chat.get("chatHistory", []))),
            chat.get("updatedAt", "")[:19].replace("T", " "),
        )
    console.print(table)


def print_model_catalog(entries: list[ModelCatalogEntry]) -> None:
    """Print catalog entries as one table per category, in catalog order."""
    if not entries:
        console.print("[dim]No models match.[/dim]")
        return
    by_category: dict[str, list[ModelCatalogEntry]] = {}
    for entry in entries:
        by_category.setdefault(entry.category, []).append(entry)

    for category, group in by_category.items():
        table = Table(title=f"[bold]{category}[/bold]", show_header=True, header_style="bold cyan")
        table.add_column("ID", style="bold")
        table.add_column("Name")
        table.add_column("Context", justify="right")
        table.add_column("OpenRouter model", style="dim")
        table.add_column("Description")
        for entry in group:
            table.add_row(entry.id, entry.name, entry.context, entry.model_id, entry.description)
        console.print(table)


def save_to_file(chat: dict[str, Any], output_dir: Path, slug_override: str | None = None) -> Path:
    """Save a stored chat document as a markdown transcript.

    Args:
        chat: Chat document as returned by ChatRepository.load_chat.
        output_dir: Directory to save the file in.
        slug_override: If provided, use this as the filename stem instead of
            deriving one from the chat name.

    Returns:
        Path to the saved file.
    """
    output_dir.mkdir(parents=True, exist_ok=True)

    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    slug = slug_override if slug_override is not None else _slug(chat.get("name", "chat")) or "chat"
    filepath = output_dir / f"{timestamp}_{slug}.md"

    history = chat.get("chatHistory", [])
    lines: list[str] = [
        f"# ChimeraAI Chat: {chat.get('name', '')}",
        "",
        f"**Date:** {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}",
        f"**Models:** {', '.join(chat.get('modelIds', []))}",
        f"**Messages:** {len(history)}",
        "",
        "---",
        "",
    ]

    for record in history:
        author = "You" if record.get("isUser") else (record.get("modelId") or "Assistant")
        lines.append(f"### {author}")
        lines.append("")
        lines.append(record.get("content", ""))
        lines.append("")
        lines.append(f"*{record.get('timestamp', '')}*")
        lines.append("")

    filepath.write_text("\n".join(lines), encoding="utf-8")
    logger.info("Chat saved to: %s", filepath)
    return filepath
