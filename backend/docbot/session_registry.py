"""
Stateless Session Registry — continues one-off answers through replies.

A conversation started by a one-off command is stored under the id of the
bot's answer message. When a user replies to that answer, the stored turns
are extended, answered, and re-keyed under the id of the new bot answer; the
old key is removed. Only the newest bot message of a chain is ever live.

Mutations of a key are serialized with a per-key asyncio.Lock, so two
replies racing on the same bot message cannot both extend the chain. The
store is a cachetools cache: least recently used entries are evicted past
``max_entries``, and with ``ttl_seconds`` set, entries expire that long
after they were stored.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Awaitable, Callable

from cachetools import Cache, LRUCache, TTLCache

from turns import Turn

logger = logging.getLogger(__name__)

# Receives the extended turn list, returns (answer text, new bot message id).
Responder = Callable[[list[Turn]], Awaitable[tuple[str, str]]]


@dataclass(frozen=True)
class Continuation:
    key: str
    turns: list[Turn]
    answer: str


class SessionRegistry:
    def __init__(
        self,
        max_entries: int = 1000,
        ttl_seconds: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_entries < 1:
            raise ValueError("max_entries must be at least 1")
        self._entries: Cache
        if ttl_seconds is None:
            self._entries = LRUCache(maxsize=max_entries)
        else:
            self._entries = TTLCache(maxsize=max_entries, ttl=ttl_seconds, timer=clock)
        self._locks: dict[str, asyncio.Lock] = {}

    def __len__(self) -> int:
        if isinstance(self._entries, TTLCache):
            self._entries.expire()
        return len(self._entries)

    def __contains__(self, key: object) -> bool:
        return isinstance(key, str) and self.get(key) is not None

    def remember(self, key: str, turns: list[Turn]) -> None:
        """Store (or overwrite) the turn list for a bot reply id."""
        self._entries[key] = tuple(turns)

    def get(self, key: str) -> list[Turn] | None:
        stored = self._entries.get(key)
        if stored is None:
            self._release_lock(key)
            return None
        return list(stored)

    def forget(self, key: str) -> None:
        self._entries.pop(key, None)
        self._release_lock(key)

    async def continue_conversation(
        self,
        key: str,
        new_user_text: str,
        respond: Responder,
    ) -> Continuation | None:
        """Extend the chain stored under ``key``; None if ``key`` is not live.

        ``respond`` receives its own copy of the turns. If it raises, the
        registry is left untouched and the exception propagates.
        """
        if self.get(key) is None:
            return None

        lock = self._locks.setdefault(key, asyncio.Lock())
        async with lock:
            # Another reply may have re-keyed the chain while we waited.
            stored = self.get(key)
            if stored is None:
                logger.info("Stateless conversation %s was continued concurrently", key)
                return None

            turns = [*stored, Turn.user(new_user_text)]
            answer, new_key = await respond(list(turns))
            extended = [*turns, Turn.assistant(answer)]

            self._entries.pop(key, None)
            self.remember(new_key, extended)
            logger.debug("Re-keyed stateless conversation %s -> %s (%d turns)",
                         key, new_key, len(extended))

        self._release_lock(key)
        return Continuation(key=new_key, turns=extended, answer=answer)

    def _release_lock(self, key: str) -> None:
        lock = self._locks.get(key)
        if lock is not None and not lock.locked():
            del self._locks[key]
