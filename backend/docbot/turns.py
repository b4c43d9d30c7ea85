"""
Conversation data model shared by every component.

The chat platform is reduced to a narrow interface (``ChatMessage`` and
``ThreadHandle``) so the conversation logic never touches platform objects.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import PurePosixPath
from typing import Protocol

from pydantic import BaseModel, Field


class Role(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


@dataclass(frozen=True)
class Turn:
    """One role-tagged unit of conversation text."""

    role: Role
    content: str

    @classmethod
    def user(cls, content: str) -> Turn:
        return cls(Role.USER, content)

    @classmethod
    def assistant(cls, content: str) -> Turn:
        return cls(Role.ASSISTANT, content)

    @classmethod
    def system(cls, content: str) -> Turn:
        return cls(Role.SYSTEM, content)

    def to_dict(self) -> dict[str, str]:
        return {"role": self.role.value, "content": self.content}


class MessageKind(str, Enum):
    PLAIN = "plain"
    REPLY = "reply"
    SYSTEM = "system"


@dataclass(frozen=True)
class Attachment:
    name: str
    url: str

    @property
    def extension(self) -> str:
        return PurePosixPath(self.name.lower()).suffix


@dataclass(frozen=True)
class ChatMessage:
    id: str
    author_is_bot: bool
    created_at: float
    content: str = ""
    attachments: tuple[Attachment, ...] = field(default_factory=tuple)
    reply_to_id: str | None = None
    kind: MessageKind = MessageKind.PLAIN


class ChatPlatformError(Exception):
    """The chat platform failed to serve a request."""


class MessageUnavailable(ChatPlatformError):
    """A specific message could not be fetched (deleted, no access, ...)."""


class ThreadHandle(Protocol):
    async def fetch_message(self, message_id: str) -> ChatMessage: ...

    async def history(self, limit: int) -> list[ChatMessage]: ...


@dataclass(frozen=True)
class RetrievalHit:
    text: str
    path: str
    score: float


class RerankResult(BaseModel):
    """One reranked candidate; ``index`` is 1-based into the hit list."""

    index: int = Field(ge=1)
    path: str
    rationale: str = ""
