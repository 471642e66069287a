"""Interactive terminal chat for the meshchat CLI."""

import asyncio
import logging
from typing import Optional

from prompt_toolkit import PromptSession
from prompt_toolkit.patch_stdout import patch_stdout

from meshchat.api import ChatRoom
from meshchat.config import get_config
from meshchat.models import ChatMessage, MessageOrigin

HELP_TEXT = "Commands: /peers (list peers), /status, /help, /quit"


def format_message(message: ChatMessage) -> str:
    """Render one log entry as a single terminal line."""
    stamp = message.timestamp.astimezone().strftime("%H:%M:%S")
    if message.origin is MessageOrigin.SYSTEM:
        return f"[{stamp}] * {message.content}"
    if message.origin is MessageOrigin.OWN:
        return f"[{stamp}] <{message.sender} (you)> {message.content}"
    return f"[{stamp}] <{message.sender}> {message.content}"


def format_peers(room: ChatRoom) -> str:
    statuses = room.peer_statuses
    if not statuses:
        return "No peers in this room yet"
    lines = [f"{room.status_text}:"]
    for status in statuses:
        lines.append(f"  {status.display_name} ({status.peer_id}): {status.state.value}")
    return "\n".join(lines)


async def _chat_session(room: ChatRoom, username: str, room_id: str) -> bool:
    room.subscribe(lambda message: print(format_message(message)))
    room.subscribe_status(lambda summary: print(f"* Status: {summary.status_text}"))

    if not await room.join_room(username, room_id):
        room.close()
        return False

    print(HELP_TEXT)
    prompt = PromptSession()
    try:
        with patch_stdout():
            while True:
                try:
                    line = await prompt.prompt_async("> ")
                except (EOFError, KeyboardInterrupt):
                    break

                line = line.strip()
                if not line:
                    continue
                if line == "/quit":
                    break
                if line == "/peers":
                    print(format_peers(room))
                elif line == "/status":
                    print(room.status_text)
                elif line == "/help":
                    print(HELP_TEXT)
                else:
                    await room.send_message(line)
    finally:
        await room.leave_room()
        room.close()
    return True


def run_chat(
    room_id: str,
    username: str,
    server: Optional[str] = None,
):
    """Join a room and chat until the user quits.

    Args:
        room_id: Room code to join
        username: Display name shown to other participants
        server: Signaling service base URL (overrides config)

    Returns:
        True if the room was entered.
    """
    config = get_config()
    if server:
        config.signaling_http = server

    room = ChatRoom(config)

    try:
        return asyncio.run(_chat_session(room, username, room_id))
    except KeyboardInterrupt:
        logging.info("Chat interrupted by user. Shutting down...")
        return True
