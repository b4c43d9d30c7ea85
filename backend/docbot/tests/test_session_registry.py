import asyncio

import pytest

from session_registry import SessionRegistry
from turns import Turn


def _responder(answer="more detail", new_key="B2", calls=None):
    async def respond(turns):
        if calls is not None:
            calls.append(list(turns))
        return answer, new_key
    return respond


def test_continuation_rekeys_and_tombstones_old_key():
    registry = SessionRegistry()
    registry.remember("B1", [Turn.user("what is X?"), Turn.assistant("X is Y")])
    calls = []

    result = asyncio.run(
        registry.continue_conversation("B1", "tell me more", _responder(calls=calls))
    )

    assert result.key == "B2"
    assert calls[0][-1] == Turn.user("tell me more")
    assert result.turns == [
        Turn.user("what is X?"),
        Turn.assistant("X is Y"),
        Turn.user("tell me more"),
        Turn.assistant("more detail"),
    ]
    assert "B1" not in registry
    assert registry.get("B2") == result.turns

    again = asyncio.run(registry.continue_conversation("B1", "hi", _responder()))
    assert again is None

    later = asyncio.run(
        registry.continue_conversation("B2", "and then?", _responder(new_key="B3"))
    )
    assert later.key == "B3"
    assert len(later.turns) == 6


def test_unknown_key_is_not_a_continuation():
    registry = SessionRegistry()
    assert asyncio.run(registry.continue_conversation("nope", "hi", _responder())) is None


def test_failed_response_leaves_registry_untouched():
    registry = SessionRegistry()
    stored = [Turn.user("q"), Turn.assistant("a")]
    registry.remember("B1", stored)

    async def boom(turns):
        raise RuntimeError("reasoner down")

    with pytest.raises(RuntimeError):
        asyncio.run(registry.continue_conversation("B1", "again", boom))

    assert registry.get("B1") == stored
    assert len(registry) == 1


def test_concurrent_replies_to_same_message_only_one_wins():
    registry = SessionRegistry()
    registry.remember("B1", [Turn.user("q"), Turn.assistant("a")])

    def slow(answer, key):
        async def respond(turns):
            await asyncio.sleep(0.01)
            return answer, key
        return respond

    async def run():
        first = registry.continue_conversation("B1", "reply one", slow("x", "B2"))
        second = registry.continue_conversation("B1", "reply two", slow("y", "B3"))
        return await asyncio.gather(first, second)

    one, two = asyncio.run(run())

    assert one is not None and one.key == "B2"
    assert two is None
    assert "B2" in registry and "B3" not in registry and "B1" not in registry


def test_least_recently_used_entry_is_evicted():
    registry = SessionRegistry(max_entries=2)
    registry.remember("a", [Turn.user("1")])
    registry.remember("b", [Turn.user("2")])
    registry.remember("c", [Turn.user("3")])

    assert "a" not in registry
    assert "b" in registry and "c" in registry


def test_entries_expire_after_ttl():
    now = [0.0]
    registry = SessionRegistry(ttl_seconds=60, clock=lambda: now[0])
    registry.remember("B1", [Turn.user("q")])

    now[0] = 59.0
    assert "B1" in registry
    now[0] = 61.0
    assert "B1" not in registry
    assert len(registry) == 0


def test_max_entries_must_be_positive():
    with pytest.raises(ValueError):
        SessionRegistry(max_entries=0)


def test_responder_keeps_its_own_copy_of_the_turns():
    registry = SessionRegistry()
    registry.remember("B1", [Turn.user("q"), Turn.assistant("a")])
    seen = []

    async def keep(turns):
        seen.append(turns)
        return "answer", "B2"

    result = asyncio.run(registry.continue_conversation("B1", "more", keep))

    assert seen[0][-1] == Turn.user("more")
    assert len(seen[0]) == 3
    assert result.turns[-1] == Turn.assistant("answer")


def test_reading_an_entry_protects_it_from_eviction():
    registry = SessionRegistry(max_entries=2)
    registry.remember("a", [Turn.user("1")])
    registry.remember("b", [Turn.user("2")])
    registry.get("a")
    registry.remember("c", [Turn.user("3")])

    assert "a" in registry and "c" in registry
    assert "b" not in registry
