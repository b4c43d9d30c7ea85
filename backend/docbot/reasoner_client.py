"""
Reasoner Client — turns an ordered turn list into one answer string.

Assistants protocol (AssistantsReasoner):
  1. Create a remote thread seeded with the user/assistant turns
  2. Create a run against the configured assistant with token budgets
  3. Poll the run every ``poll_interval`` seconds until it leaves
     queued/in_progress, failing with ReasonerTimeout after ``poll_timeout``
  4. Extract the assistant reply from the run result, or fall back to the
     thread's message list (most recent assistant message first)

Every network call is retried ``max_attempts`` times with a fixed delay and
re-raised after exhaustion.

CompletionReasoner offers the same ``ask(turns)`` contract over a single
chat-completion call (see llm.py).
"""

from __future__ import annotations

import asyncio
import time
from typing import Any, Awaitable, Callable, Protocol, TypeVar

import httpx

import llm
from turns import Role, Turn
from events import (
    EventEmitter,
    get_default_emitter,
    COMPONENT_REASONER,
    EVENT_ERROR,
    EVENT_LOG,
    EVENT_PROGRESS,
    EVENT_RESULT,
)

A = COMPONENT_REASONER
T = TypeVar("T")

DEFAULT_API_BASE = "https://api.openai.com/v1"
PENDING_STATUSES = {"queued", "in_progress", "cancelling"}
FAILED_STATUSES = {"failed", "cancelled", "expired"}
NO_REPLY = "No reply found."
REQUEST_TIMEOUT = 60.0


class ReasonerError(Exception):
    """The reasoner could not produce an answer."""


class ReasonerTimeout(ReasonerError):
    """A run did not finish before the polling deadline."""


class RunFailed(ReasonerError):
    """A run ended in a failed, cancelled or expired state."""


class Reasoner(Protocol):
    async def ask(self, turns: list[Turn]) -> str: ...


async def retry(
    fn: Callable[[], Awaitable[T]],
    context: str,
    *,
    max_attempts: int = 3,
    delay: float = 2.0,
    em: EventEmitter | None = None,
) -> T:
    """Await ``fn()`` up to ``max_attempts`` times, sleeping ``delay`` between."""
    em = em or get_default_emitter()
    attempt = 0
    while True:
        try:
            return await fn()
        except (httpx.HTTPError, ReasonerError) as e:
            attempt += 1
            detail = str(e)
            if isinstance(e, httpx.HTTPStatusError):
                detail = f"{e.response.status_code} {e.response.text[:300]}"
            em.emit(A, EVENT_ERROR, "retry",
                    f"Attempt {attempt} failed for {context}: {detail}")
            if attempt >= max_attempts:
                raise
            await asyncio.sleep(delay)


def message_text(message: dict[str, Any]) -> str:
    """Concatenate the text parts of an assistants-API message in order."""
    content = message.get("content")
    if isinstance(content, str):
        return content
    if not isinstance(content, list):
        return ""
    parts = []
    for part in content:
        if not isinstance(part, dict):
            continue
        text = part.get("text")
        if isinstance(text, dict):
            parts.append(text.get("value", ""))
        elif isinstance(text, str):
            parts.append(text)
    return "\n".join(parts)


def _split_system(turns: list[Turn]) -> tuple[list[dict[str, str]], str]:
    """Remote threads only accept user/assistant messages."""
    messages = [t.to_dict() for t in turns if t.role != Role.SYSTEM]
    system = "\n\n".join(t.content for t in turns if t.role == Role.SYSTEM)
    return messages, system


class AssistantsReasoner:
    """Stateless reasoner over the hosted assistants REST API."""

    def __init__(
        self,
        api_key: str,
        assistant_id: str,
        *,
        base_url: str = DEFAULT_API_BASE,
        instructions: str = "",
        max_prompt_tokens: int = 30000,
        max_completion_tokens: int = 30000,
        poll_interval: float = 2.0,
        poll_timeout: float = 300.0,
        max_attempts: int = 3,
        retry_delay: float = 2.0,
        http: httpx.AsyncClient | None = None,
        emitter: EventEmitter | None = None,
    ) -> None:
        self.assistant_id = assistant_id
        self.instructions = instructions
        self.max_prompt_tokens = max_prompt_tokens
        self.max_completion_tokens = max_completion_tokens
        self.poll_interval = poll_interval
        self.poll_timeout = poll_timeout
        self.max_attempts = max_attempts
        self.retry_delay = retry_delay
        self._em = emitter or get_default_emitter()
        self._http = http or httpx.AsyncClient(timeout=REQUEST_TIMEOUT)
        self._base_url = base_url.rstrip("/")
        self._headers = {
            "Authorization": f"Bearer {api_key}",
            "OpenAI-Beta": "assistants=v2",
            "Content-Type": "application/json",
        }

    async def aclose(self) -> None:
        await self._http.aclose()

    async def _request(self, method: str, path: str, context: str, **kwargs: Any) -> dict:
        async def call() -> dict:
            resp = await self._http.request(
                method, f"{self._base_url}{path}", headers=self._headers, **kwargs
            )
            resp.raise_for_status()
            return resp.json()

        return await retry(call, context, max_attempts=self.max_attempts,
                           delay=self.retry_delay, em=self._em)

    async def create_thread(self, turns: list[Turn]) -> str:
        messages, _ = _split_system(turns)
        data = await self._request("POST", "/threads", "creating thread",
                                   json={"messages": messages})
        self._em.emit(A, EVENT_LOG, "create_thread", f"Thread created with ID: {data['id']}")
        return data["id"]

    async def create_run(self, thread_id: str, additional_instructions: str = "") -> dict:
        body: dict[str, Any] = {
            "assistant_id": self.assistant_id,
            "max_prompt_tokens": self.max_prompt_tokens,
            "max_completion_tokens": self.max_completion_tokens,
        }
        if self.instructions:
            body["instructions"] = self.instructions
        if additional_instructions:
            body["additional_instructions"] = additional_instructions
        run = await self._request("POST", f"/threads/{thread_id}/runs",
                                  f"creating run on thread {thread_id}", json=body)
        self._em.emit(A, EVENT_LOG, "create_run", f"Run started with ID: {run['id']}")
        return run

    async def wait_for_run(self, thread_id: str, run: dict) -> dict:
        """Poll a run until it settles; raise ReasonerTimeout past the deadline."""
        deadline = time.monotonic() + self.poll_timeout
        while run.get("status") in PENDING_STATUSES:
            if time.monotonic() >= deadline:
                raise ReasonerTimeout(
                    f"Run {run.get('id')} still {run.get('status')} after {self.poll_timeout}s"
                )
            await asyncio.sleep(self.poll_interval)
            run = await self._request("GET", f"/threads/{thread_id}/runs/{run['id']}",
                                      f"polling run {run['id']}")
        return run

    async def list_messages(self, thread_id: str) -> list[dict]:
        data = await self._request("GET", f"/threads/{thread_id}/messages",
                                   f"listing messages on thread {thread_id}",
                                   params={"order": "desc"})
        return data.get("data", [])

    async def ask(self, turns: list[Turn]) -> str:
        _, system = _split_system(turns)
        thread_id = await self.create_thread(turns)
        run = await self.create_run(thread_id, additional_instructions=system)
        run = await self.wait_for_run(thread_id, run)

        status = run.get("status")
        if status in FAILED_STATUSES:
            error = run.get("last_error") or {}
            raise RunFailed(f"Run {run.get('id')} {status}: {error.get('message', 'no detail')}")
        self._em.emit(A, EVENT_PROGRESS, "run_complete", f"Run {run.get('id')} finished: {status}")

        reply = None
        if isinstance(run.get("messages"), list):
            reply = next((m for m in run["messages"] if m.get("role") == "assistant"), None)
        if reply is None:
            self._em.emit(A, EVENT_LOG, "extract_reply",
                          "No assistant message in run result; checking thread messages")
            messages = await self.list_messages(thread_id)
            reply = next((m for m in messages if m.get("role") == "assistant"), None)

        answer = message_text(reply) if reply else ""
        if not answer:
            return NO_REPLY
        self._em.emit(A, EVENT_RESULT, "answer", f"Assistant reply received ({len(answer)} chars)")
        return answer


class CompletionReasoner:
    """Reasoner backed by a single chat-completion call."""

    def __init__(
        self,
        model: str | None = None,
        *,
        max_tokens: int = 4096,
        max_attempts: int = 3,
        retry_delay: float = 2.0,
        emitter: EventEmitter | None = None,
    ) -> None:
        self.model = model or llm.get_default_model()
        self.max_tokens = max_tokens
        self.max_attempts = max_attempts
        self.retry_delay = retry_delay
        self._em = emitter or get_default_emitter()

    async def ask(self, turns: list[Turn]) -> str:
        attempt = 0
        while True:
            try:
                answer = await llm.complete(turns, model=self.model, max_tokens=self.max_tokens)
                break
            except Exception as e:
                attempt += 1
                self._em.emit(A, EVENT_ERROR, "retry",
                              f"Attempt {attempt} failed for completion ({self.model}): {e}")
                if attempt >= self.max_attempts:
                    raise ReasonerError(f"Completion failed after {attempt} attempts") from e
                await asyncio.sleep(self.retry_delay)
        return answer or NO_REPLY
