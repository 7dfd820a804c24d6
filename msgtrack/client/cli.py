import asyncio
from datetime import datetime
from typing import List, Optional

import typer

from ..core.chats import ChatRegistry
from ..core.docstore import DocumentStore, JsonlDocumentStore
from ..core.errors import MsgTrackError, TransientStoreError
from ..core.hub import Hub
from ..core.indicators import TypingTracker
from ..core.messages import MessageStore
from ..core.models import Message
from ..core.notify import GrpcPushGateway, LoggingPushGateway, NotificationDispatcher
from ..core.retry import RetryPolicy
from ..core.service import DeliveryService
from ..core.unread import UnreadCounter
from ..core.users import UserDirectory
from ..utils.config import Settings

app = typer.Typer(help="Message delivery and read-state tracker (local JSONL store)")

UserOpt = typer.Option(..., "--user", "-u", envvar="MSGTRACK_USER", help="Acting user id")


def build_service(settings: Settings, store: Optional[DocumentStore] = None) -> DeliveryService:
    """Wire the tracker components for one device.

    Args:
        settings (Settings): Runtime settings
        store (DocumentStore, optional): Store to use instead of the JSONL one

    Returns:
        DeliveryService: Ready to sign in
    """
    store = store or JsonlDocumentStore(settings.data_dir)
    hub = Hub()
    retry = RetryPolicy.from_settings(settings)
    users = UserDirectory(store, retry)
    messages = MessageStore(store, hub, retry)
    chats = ChatRegistry(store, hub, messages, retry)
    gateway = (GrpcPushGateway(settings.push_target, settings.push_timeout)
               if settings.push_target else LoggingPushGateway())
    return DeliveryService(
        messages=messages,
        chats=chats,
        unread=UnreadCounter(store, hub, retry),
        notifier=NotificationDispatcher(gateway, users),
        users=users,
        typing=TypingTracker(store, hub),
    )


def _run(user_id: Optional[str], action):
    """Run `action(service)` inside a signed-in session, reporting errors."""
    async def main():
        service = build_service(Settings.from_env())
        try:
            if user_id:
                await service.sign_in(user_id)
            return await action(service)
        finally:
            if service.user_id:
                await service.sign_out()
            await service.notifier.gateway.close()

    try:
        return asyncio.run(main())
    except MsgTrackError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(code=1)


def _ts(ms: int) -> str:
    return datetime.fromtimestamp(ms / 1000).strftime("%Y-%m-%d %H:%M")


def _format(message: Message, service: DeliveryService) -> str:
    name = service.users.display_name(message.sender_id)
    line = f"[{_ts(message.timestamp)}] {name}: {message.content}  ({message.delivery_state.value}"
    if message.read_by:
        line += f", read by {len(message.read_by)}/{len(message.recipients)}"
    line += ")"
    if message.reactions:
        line += "  " + " ".join(f"{s}{len(u)}" for s, u in sorted(message.reactions.items()))
    return f"{message.id}  {line}"


@app.command()
def register(name: str, email: Optional[str] = typer.Option(None, help="Contact address")):
    """Register a new user and print its id."""
    async def action(service):
        user = await service.users.register(name, email=email)
        typer.echo(f"Registered as {user.display_name} ({user.id})")
    _run(None, action)


@app.command()
def users(query: str = typer.Argument("", help="Substring of the display name")):
    """Search users by display name."""
    async def action(service):
        found = await service.users.search(query)
        if not found:
            typer.echo("[search] No matches")
        for u in found:
            typer.echo(f"[search] {u.display_name} ({u.id}){' online' if u.is_online else ''}")
    _run(None, action)


@app.command("new-chat")
def new_chat(participants: List[str], user: str = UserOpt,
             group: Optional[str] = typer.Option(None, "--group", "-g", help="Group name")):
    """Start a chat with one or more users."""
    async def action(service):
        chat_id = await service.create_chat(participants, group_name=group)
        typer.echo(f"Chat {chat_id}")
    _run(user, action)


@app.command()
def chats(user: str = UserOpt):
    """List chats with unread counts."""
    async def action(service):
        summaries = await service.list_chats()
        if not summaries:
            typer.echo("No chats")
        for s in summaries:
            badge = f" ({s.unread} unread)" if s.unread else ""
            last = s.chat.last_message.preview if s.chat.last_message else ""
            typer.echo(f"{s.chat.id}  {s.title}{badge}  {last}")
        typer.echo(f"Total unread: {sum(s.unread for s in summaries)}")
    _run(user, action)


@app.command()
def send(chat_id: str, text: str, user: str = UserOpt):
    """Send a text message; offers a manual retry if it fails."""
    async def action(service):
        try:
            message = await service.send(chat_id, text)
        except TransientStoreError as e:
            failed = [m for m in service.history(chat_id) if m.delivery_state.value == "failed"]
            typer.echo(f"Message failed: {e}", err=True)
            while failed and typer.confirm("Retry sending?"):
                try:
                    message = await service.retry(failed[-1].id)
                    break
                except TransientStoreError as e:
                    typer.echo(f"Message failed again: {e}", err=True)
            else:
                raise typer.Exit(code=1)
        typer.echo(f"Sent {message.id} ({message.delivery_state.value})")
    _run(user, action)


@app.command()
def history(chat_id: str, user: str = UserOpt):
    """Show a chat's messages (acknowledges delivery, does not mark read)."""
    async def action(service):
        view = await service.open_chat(chat_id)
        try:
            messages = service.history(chat_id)
            await service.users.resolve_many(m.sender_id for m in messages)
            for m in messages:
                typer.echo(_format(m, service))
        finally:
            view.cancel()
    _run(user, action)


@app.command()
def read(chat_id: str, user: str = UserOpt):
    """Mark every message in a chat as read."""
    async def action(service):
        count = await service.view_chat(chat_id)
        typer.echo(f"Marked {count} messages read")
    _run(user, action)


@app.command()
def react(chat_id: str, message_id: str, symbol: str, user: str = UserOpt,
          remove: bool = typer.Option(False, "--remove", help="Remove the reaction instead")):
    """Set (or remove) your reaction on a message."""
    async def action(service):
        await service.messages.load(chat_id)
        if remove:
            await service.unreact(message_id, symbol)
            typer.echo(f"Removed {symbol}")
        else:
            await service.react(message_id, symbol)
            typer.echo(f"Reacted {symbol}")
    _run(user, action)


@app.command()
def leave(chat_id: str, user: str = UserOpt):
    """Leave a chat; the last one out deletes it."""
    async def action(service):
        deleted = await service.leave(chat_id)
        typer.echo("Chat deleted" if deleted else "Left chat")
    _run(user, action)


if __name__ == "__main__":
    app()
