import asyncio

from events import CallbackEventEmitter, NoOpEventEmitter
from pipeline import build_pipeline, strip_source_markers
from retrieval import CONTEXT_PREAMBLE
from turns import ChatMessage, MessageKind, Role, Turn


class FakeReasoner:
    def __init__(self, answer="It is configured in config.toml."):
        self.answer = answer
        self.calls = []

    async def ask(self, turns):
        self.calls.append(list(turns))
        return self.answer


class FakeAugmenter:
    def __init__(self, context):
        self.context = context
        self.queries = []

    async def augment(self, latest):
        self.queries.append(latest.content)
        if not self.context:
            return [latest]
        return [Turn.system(CONTEXT_PREAMBLE + self.context), latest]


class FakeThread:
    def __init__(self, messages):
        self.messages = messages

    async def fetch_message(self, message_id):
        return next(m for m in self.messages if m.id == message_id)

    async def history(self, limit):
        return list(reversed(self.messages))[:limit]


def _message(id="10", content="where is the port set?", **kwargs):
    return ChatMessage(id=id, author_is_bot=False, created_at=10.0, content=content, **kwargs)


def _run(pipeline, state):
    return asyncio.run(pipeline.ainvoke({"emitter": NoOpEventEmitter(), **state}))


def test_stateless_start_sends_single_user_turn():
    reasoner = FakeReasoner()
    result = _run(build_pipeline(reasoner), {"message": _message(content="!ask ignored"),
                                              "args": ["where", "is", "it?"]})

    assert result["prompt"] == "where is it?"
    assert reasoner.calls == [[Turn.user("where is it?")]]
    assert result["answer"] == "It is configured in config.toml."


def test_thread_mode_reconstructs_history():
    history = [
        ChatMessage(id="1", author_is_bot=False, created_at=1.0, content="what is X?"),
        ChatMessage(id="2", author_is_bot=True, created_at=2.0, content="X is Y"),
    ]
    origin = _message()
    reasoner = FakeReasoner()

    _run(build_pipeline(reasoner), {"message": origin, "thread": FakeThread(history + [origin])})

    assert reasoner.calls[0] == [
        Turn.user("what is X?"),
        Turn.assistant("X is Y"),
        Turn.user("where is the port set?"),
        Turn.user("where is the port set?"),
    ]


def test_empty_input_never_reaches_the_reasoner():
    reasoner = FakeReasoner()
    result = _run(build_pipeline(reasoner), {"message": _message(content="   ")})

    assert result["prompt"] == ""
    assert "answer" not in result
    assert reasoner.calls == []


def test_preset_turns_go_straight_to_the_reasoner():
    reasoner = FakeReasoner()
    turns = [Turn.user("q"), Turn.assistant("a"), Turn.user("more?")]

    result = _run(build_pipeline(reasoner), {"turns": turns})

    assert reasoner.calls == [turns]
    assert result["answer"]


def test_retrieval_replaces_history_with_context_and_latest_turn():
    reasoner = FakeReasoner()
    augmenter = FakeAugmenter("From docs/config.md:\nport = 8080")
    turns = [Turn.user("q"), Turn.assistant("a"), Turn.user("which port?")]

    _run(build_pipeline(reasoner, augmenter), {"turns": turns, "use_retrieval": True})

    sent = reasoner.calls[0]
    assert [t.role for t in sent] == [Role.SYSTEM, Role.USER]
    assert sent[0].content.endswith("port = 8080")
    assert sent[1] == Turn.user("which port?")
    assert augmenter.queries == ["which port?"]


def test_retrieval_without_context_keeps_full_conversation():
    reasoner = FakeReasoner()
    turns = [Turn.user("q"), Turn.assistant("a"), Turn.user("which port?")]

    _run(build_pipeline(reasoner, FakeAugmenter("")), {"turns": turns, "use_retrieval": True})

    assert reasoner.calls == [turns]


def test_retrieval_is_skipped_unless_requested():
    augmenter = FakeAugmenter("ctx")
    _run(build_pipeline(FakeReasoner(), augmenter), {"turns": [Turn.user("q")]})
    assert augmenter.queries == []


def test_source_markers_are_stripped_from_answers():
    reasoner = FakeReasoner("Set the port in config.toml【4:0†source】.")
    result = _run(build_pipeline(reasoner), {"turns": [Turn.user("q")]})
    assert result["answer"] == "Set the port in config.toml."
    assert strip_source_markers("a【1:2†source】b【3†source】") == "ab"


def test_events_are_emitted_through_state_emitter():
    events = []
    pipeline = build_pipeline(FakeReasoner())

    asyncio.run(pipeline.ainvoke({
        "message": _message(kind=MessageKind.PLAIN),
        "emitter": CallbackEventEmitter(events.append),
    }))

    steps = [e["step"] for e in events if e["component"] == "pipeline"]
    assert steps[:2] == ["normalize", "reconstruct"]
    assert events[-1]["type"] == "result"
