import asyncio
import json

import httpx
import pytest

from events import NoOpEventEmitter
from reasoner_client import (
    NO_REPLY,
    AssistantsReasoner,
    CompletionReasoner,
    ReasonerError,
    ReasonerTimeout,
    RunFailed,
    message_text,
)
from turns import Turn


class FakeAssistantsAPI:
    """Just enough of the threads/runs/messages REST surface."""

    def __init__(self, statuses=("in_progress", "completed"), messages=None,
                 run_messages=None, thread_failures=0, last_error=None):
        self.statuses = list(statuses)
        self.messages = messages if messages is not None else []
        self.run_messages = run_messages
        self.thread_failures = thread_failures
        self.last_error = last_error
        self.requests = []

    def _run(self, status):
        run = {"id": "run_1", "status": status}
        if self.run_messages is not None and status == "completed":
            run["messages"] = self.run_messages
        if self.last_error:
            run["last_error"] = self.last_error
        return run

    def handler(self, request):
        body = json.loads(request.content) if request.content else None
        self.requests.append((request.method, request.url.path, body))
        path = request.url.path
        if request.method == "POST" and path == "/v1/threads":
            if self.thread_failures:
                self.thread_failures -= 1
                return httpx.Response(500, text="upstream error")
            return httpx.Response(200, json={"id": "thread_1"})
        if request.method == "POST" and path == "/v1/threads/thread_1/runs":
            return httpx.Response(200, json=self._run("queued"))
        if request.method == "GET" and path == "/v1/threads/thread_1/runs/run_1":
            status = self.statuses.pop(0) if len(self.statuses) > 1 else self.statuses[0]
            return httpx.Response(200, json=self._run(status))
        if request.method == "GET" and path == "/v1/threads/thread_1/messages":
            return httpx.Response(200, json={"data": self.messages})
        return httpx.Response(404)


def _ask(api, turns, **kwargs):
    async def run():
        async with httpx.AsyncClient(transport=httpx.MockTransport(api.handler)) as http:
            reasoner = AssistantsReasoner(
                "sk-test", "asst_1",
                base_url="https://api.test/v1",
                poll_interval=0,
                retry_delay=0,
                http=http,
                emitter=NoOpEventEmitter(),
                **kwargs,
            )
            return await reasoner.ask(turns)
    return asyncio.run(run())


def _text(value):
    return {"type": "text", "text": {"value": value, "annotations": []}}


def test_polls_until_complete_and_joins_multipart_reply():
    api = FakeAssistantsAPI(
        statuses=("queued", "in_progress", "completed"),
        messages=[
            {"role": "assistant", "content": [_text("part one"), _text("part two")]},
            {"role": "user", "content": [_text("question")]},
        ],
    )

    answer = _ask(api, [Turn.user("question")])

    assert answer == "part one\npart two"
    polls = [r for r in api.requests if r[1].endswith("/runs/run_1")]
    assert len(polls) == 3


def test_reply_in_run_result_skips_message_listing():
    api = FakeAssistantsAPI(
        statuses=("completed",),
        run_messages=[{"role": "assistant", "content": [_text("from the run")]}],
    )

    assert _ask(api, [Turn.user("q")]) == "from the run"
    assert not any(path.endswith("/messages") for _, path, _ in api.requests)


def test_system_turns_become_additional_instructions():
    api = FakeAssistantsAPI(statuses=("completed",),
                            messages=[{"role": "assistant", "content": [_text("ok")]}])

    _ask(api, [Turn.system("Use ONLY these contexts:\n\nctx"), Turn.user("q")],
         max_prompt_tokens=1000, max_completion_tokens=500)

    thread_body = next(b for m, p, b in api.requests if p == "/v1/threads")
    run_body = next(b for m, p, b in api.requests if p.endswith("/runs") and m == "POST")
    assert thread_body == {"messages": [{"role": "user", "content": "q"}]}
    assert run_body["additional_instructions"] == "Use ONLY these contexts:\n\nctx"
    assert run_body["max_prompt_tokens"] == 1000
    assert run_body["max_completion_tokens"] == 500
    assert run_body["assistant_id"] == "asst_1"


def test_no_assistant_message_returns_no_reply():
    api = FakeAssistantsAPI(statuses=("completed",),
                            messages=[{"role": "user", "content": [_text("q")]}])
    assert _ask(api, [Turn.user("q")]) == NO_REPLY


def test_poll_deadline_raises_timeout():
    api = FakeAssistantsAPI(statuses=("in_progress",))
    with pytest.raises(ReasonerTimeout):
        _ask(api, [Turn.user("q")], poll_timeout=0)


def test_failed_run_raises_run_failed():
    api = FakeAssistantsAPI(statuses=("failed",),
                            last_error={"code": "rate_limit_exceeded", "message": "slow down"})
    with pytest.raises(RunFailed, match="slow down"):
        _ask(api, [Turn.user("q")])


def test_transient_failures_are_retried():
    api = FakeAssistantsAPI(statuses=("completed",), thread_failures=2,
                            messages=[{"role": "assistant", "content": [_text("ok")]}])
    assert _ask(api, [Turn.user("q")]) == "ok"
    assert sum(1 for _, p, _ in api.requests if p == "/v1/threads") == 3


def test_retries_are_bounded_and_reraise():
    api = FakeAssistantsAPI(thread_failures=10)
    with pytest.raises(httpx.HTTPStatusError):
        _ask(api, [Turn.user("q")], max_attempts=3)
    assert sum(1 for _, p, _ in api.requests if p == "/v1/threads") == 3


def test_message_text_handles_plain_string_content():
    assert message_text({"content": "plain"}) == "plain"
    assert message_text({"content": None}) == ""


def test_completion_reasoner_retries_then_answers(monkeypatch):
    calls = []

    async def flaky(turns, model=None, max_tokens=4096):
        calls.append(turns)
        if len(calls) < 2:
            raise ConnectionError("reset")
        return "answer"

    monkeypatch.setattr("llm.complete", flaky)
    reasoner = CompletionReasoner("gpt-4o-mini", retry_delay=0, emitter=NoOpEventEmitter())

    assert asyncio.run(reasoner.ask([Turn.user("q")])) == "answer"
    assert len(calls) == 2


def test_completion_reasoner_gives_up(monkeypatch):
    async def down(turns, model=None, max_tokens=4096):
        raise ConnectionError("down")

    monkeypatch.setattr("llm.complete", down)
    reasoner = CompletionReasoner("gpt-4o-mini", max_attempts=2, retry_delay=0,
                                  emitter=NoOpEventEmitter())

    with pytest.raises(ReasonerError):
        asyncio.run(reasoner.ask([Turn.user("q")]))
