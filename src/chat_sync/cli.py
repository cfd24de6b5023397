from __future__ import annotations

import argparse
import asyncio
import logging
from typing import Iterable, Optional, Sequence

from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from chat_sync.adapters import get_gateway
from chat_sync.config import SyncSettings, load_settings
from chat_sync.engine import ChatSyncEngine
from chat_sync.models.conversation import ConversationSummary
from chat_sync.models.message import ClientState, Message
from chat_sync.outcome import Outcome
from chat_sync.services.filter_index import FilterMode

console = Console()

_STATE_STYLES = {
    ClientState.CONFIRMED: "green",
    ClientState.PENDING: "yellow",
    ClientState.FAILED: "red",
}


def render_conversations(
    conversations: Iterable[ConversationSummary], *, viewer_id: Optional[str] = None
) -> Table:
    table = Table(title="Conversations", show_lines=False)
    table.add_column("ID", style="cyan", no_wrap=True)
    table.add_column("Role", style="magenta")
    table.add_column("With", style="green")
    table.add_column("Subject")
    table.add_column("Unread", justify="right")
    table.add_column("Last activity", style="dim")
    table.add_column("Last message", overflow="fold")

    for conversation in conversations:
        counterparts = conversation.counterparts(viewer_id)
        names = ", ".join(
            p.name or p.username or p.email or p.id for p in counterparts
        )
        snippet = (conversation.last_message_preview or "—").replace("\n", " ").strip()
        if len(snippet) > 80:
            snippet = f"{snippet[:77]}..."
        table.add_row(
            conversation.id,
            conversation.participant_role or "—",
            names or "—",
            conversation.subject or "—",
            str(conversation.unread_count),
            conversation.last_activity_at.strftime("%Y-%m-%d %H:%M"),
            snippet,
        )
    return table


def render_messages(messages: Iterable[Message], *, viewer_id: Optional[str] = None) -> None:
    for message in messages:
        sender = "you" if message.sender_id == viewer_id else message.sender_id
        style = _STATE_STYLES[message.client_state]
        body = message.body.strip() or f"[attachment {message.attachment_ref}]"
        console.print(
            f"[cyan]{message.created_at:%Y-%m-%d %H:%M:%S}[/cyan] "
            f"[magenta]{sender}[/magenta] [{style}]({message.client_state.value})[/{style}]: "
            f"{body}"
        )


def _report_failure(outcome: Outcome) -> bool:
    if outcome.ok:
        return False
    console.print(f"[red]{type(outcome.error).__name__}: {outcome.error}[/red]")
    return True


async def _conversations(engine: ChatSyncEngine, args: argparse.Namespace) -> int:
    engine.set_filter_mode(args.role)
    engine.set_search_text(args.search or "")
    if args.watch:
        await engine.start()
        try:
            while True:
                console.clear()
                console.print(
                    render_conversations(engine.conversations(), viewer_id=engine.viewer_id)
                )
                if engine.last_error is not None:
                    console.print(f"[yellow]Last sync error: {engine.last_error}[/yellow]")
                await asyncio.sleep(args.watch)
        finally:
            await engine.stop()

    outcome = await engine.refresh_conversations()
    if _report_failure(outcome):
        return 1
    console.print(render_conversations(engine.conversations(), viewer_id=engine.viewer_id))
    console.print(
        f"[dim]Showing {len(engine.conversations())} of {len(engine.all_conversations())}"
        f" conversations, unread: {engine.unread_total(filtered=True)}[/dim]"
    )
    return 0


async def _messages(engine: ChatSyncEngine, args: argparse.Namespace) -> int:
    if _report_failure(await engine.refresh_conversations()):
        return 1
    if _report_failure(await engine.select_conversation(args.conversation_id)):
        return 1
    for _ in range(args.older):
        outcome = await engine.load_older()
        if _report_failure(outcome) or not outcome.value:
            break
    snapshot = engine.window_snapshot()
    if snapshot is None or not snapshot.messages:
        console.print("[yellow]No messages found for this conversation.[/yellow]")
        return 0
    render_messages(snapshot.messages, viewer_id=engine.viewer_id)
    if snapshot.has_more:
        console.print("[dim]Older messages available (use --older).[/dim]")
    return 0


async def _send(engine: ChatSyncEngine, args: argparse.Namespace) -> int:
    if _report_failure(await engine.refresh_conversations()):
        return 1
    if _report_failure(await engine.select_conversation(args.conversation_id)):
        return 1
    outcome = await engine.send_message(args.message)
    if _report_failure(outcome):
        return 1
    console.print(f"[green]Message confirmed with id {outcome.value.id}[/green]")
    return 0


_COMMANDS = {
    "conversations": _conversations,
    "messages": _messages,
    "send": _send,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="chat-sync", description="Browse and send marketplace chat messages."
    )
    parser.add_argument("--config", help="Path to the variables YAML file.")
    parser.add_argument("--env-file", help="Path to a .env file.")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging.")
    commands = parser.add_subparsers(dest="command", required=True)

    listing = commands.add_parser("conversations", help="List conversations.")
    listing.add_argument(
        "--role",
        choices=[mode.value for mode in FilterMode],
        default=FilterMode.ALL.value,
        help="Only show conversations with this participant role.",
    )
    listing.add_argument("--search", help="Case-insensitive text filter.")
    listing.add_argument(
        "--watch",
        type=float,
        metavar="SECONDS",
        help="Keep polling and redraw the list every SECONDS.",
    )

    messages = commands.add_parser("messages", help="Show a conversation's messages.")
    messages.add_argument("conversation_id")
    messages.add_argument(
        "--older", type=int, default=0, metavar="N", help="Load N older pages."
    )

    send = commands.add_parser("send", help="Send a message to a conversation.")
    send.add_argument("conversation_id")
    send.add_argument("message")
    return parser


def configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True)],
    )


async def run(args: argparse.Namespace, settings: SyncSettings) -> int:
    engine = ChatSyncEngine(get_gateway(settings), settings)
    return await _COMMANDS[args.command](engine, args)


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    configure_logging(args.verbose)
    settings = load_settings(args.config, dotenv_path=args.env_file, debug=args.verbose)
    try:
        return asyncio.run(run(args, settings))
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    raise SystemExit(main())
