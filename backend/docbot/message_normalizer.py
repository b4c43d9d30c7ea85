"""Flattens a chat message (text + attachment text) into one prompt string."""

from __future__ import annotations

from typing import Awaitable, Callable

from attachment_extractor import extract_text
from turns import Attachment, ChatMessage

Extractor = Callable[[Attachment], Awaitable[str]]


async def normalize_message(
    message: ChatMessage,
    args: list[str] | None = None,
    extractor: Extractor = extract_text,
) -> str:
    """Return the message's prompt text followed by each attachment's text.

    ``args`` (command arguments) replace the literal content when given, so a
    ``!ask what is X`` command yields ``"what is X"``.
    """
    prompt = " ".join(args) if args else message.content.strip()
    parts = [prompt]
    for attachment in message.attachments:
        extracted = await extractor(attachment)
        if extracted:
            parts.append(extracted)
    return "\n".join(parts).strip()
