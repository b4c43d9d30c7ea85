"""
Conversation Reconstructor — rebuilds the turn list for a thread message.

Workflow:
  1. Cutoff: if the new message replies to an older thread message, nothing
     sent after that message is part of the conversation
  2. Fetch the most recent HISTORY_WINDOW messages and sort them oldest first
  3. Drop messages after the cutoff, non-conversational message kinds, and
     messages whose normalized text is empty
  4. Tag each survivor as assistant (bot author) or user
  5. Append the new user prompt as the final turn

Threads hold no stored state; the list is recomputed on every message, so
the same thread snapshot and reply target always give the same turns.
"""

from __future__ import annotations

import math
from typing import Awaitable, Callable

from message_normalizer import normalize_message
from turns import (
    ChatMessage,
    ChatPlatformError,
    MessageKind,
    MessageUnavailable,
    Role,
    ThreadHandle,
    Turn,
)
from events import (
    EventEmitter,
    get_default_emitter,
    COMPONENT_CONVERSATION,
    EVENT_ERROR,
    EVENT_LOG,
    EVENT_PROGRESS,
    EVENT_WARNING,
)

A = COMPONENT_CONVERSATION

# Hard platform limit on a single history fetch; older messages are unreachable.
HISTORY_WINDOW = 100
CONVERSATIONAL_KINDS = {MessageKind.PLAIN, MessageKind.REPLY}
NO_CUTOFF = math.inf

Normalizer = Callable[[ChatMessage], Awaitable[str]]


async def find_cutoff(
    thread: ThreadHandle,
    originating_message: ChatMessage,
    em: EventEmitter | None = None,
) -> tuple[float, str | None]:
    """Return (cutoff timestamp, reply target id) for the originating message."""
    em = em or get_default_emitter()
    reply_id = originating_message.reply_to_id
    if not reply_id:
        return NO_CUTOFF, None

    try:
        target = await thread.fetch_message(reply_id)
    except MessageUnavailable as e:
        em.emit(A, EVENT_WARNING, "cutoff",
                f"Could not fetch replied-to message {reply_id}; proceeding without cutoff ({e})")
        return NO_CUTOFF, None

    em.emit(A, EVENT_LOG, "cutoff",
            f"Reply detected; ignoring messages after {target.created_at}")
    return target.created_at, reply_id


def role_for(message: ChatMessage) -> Role:
    return Role.ASSISTANT if message.author_is_bot else Role.USER


async def reconstruct_conversation(
    thread: ThreadHandle,
    new_user_prompt: str,
    originating_message: ChatMessage,
    *,
    normalizer: Normalizer = normalize_message,
    window: int = HISTORY_WINDOW,
    emitter: EventEmitter | None = None,
) -> list[Turn]:
    """Build the ordered turn list the reasoner should see for a new message.

    The result always ends with ``Turn(user, new_user_prompt)``. Earlier turns
    are in send order. When the originating message is already in the fetched
    history and no reply cuts it off, it appears there as well.
    """
    em = emitter or get_default_emitter()
    cutoff, target_id = await find_cutoff(thread, originating_message, em)

    turns: list[Turn] = []
    try:
        fetched = await thread.history(limit=window)
    except ChatPlatformError as e:
        em.emit(A, EVENT_ERROR, "fetch_history", f"Error fetching messages from thread: {e}")
        fetched = []

    if target_id is not None and all(m.id != target_id for m in fetched):
        em.emit(A, EVENT_WARNING, "cutoff",
                f"Replied-to message {target_id} is outside the last {window} messages; "
                "proceeding without cutoff")
        cutoff = NO_CUTOFF

    for message in sorted(fetched, key=lambda m: m.created_at):
        if message.created_at > cutoff:
            continue
        if message.kind not in CONVERSATIONAL_KINDS:
            continue
        text = await normalizer(message)
        if not text:
            continue
        turns.append(Turn(role_for(message), text))

    em.emit(A, EVENT_PROGRESS, "reconstruct",
            f"Reconstructed {len(turns)} prior turn(s) from {len(fetched)} fetched message(s)")

    turns.append(Turn.user(new_user_prompt))
    return turns
