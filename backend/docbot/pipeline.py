"""
LangGraph Pipeline — inbound message → answer text.

Uses a LangGraph StateGraph to wire the components. Each node receives the
shared state, runs one component, and updates state.

Flow:
  START → normalize → reconstruct → [retrieve] → reason → END
  START → [retrieve] → reason → END        (turns supplied by the caller)

  - normalize:   message text + attachment text (empty input ends the run
                 with no answer; the caller asks the user for text)
  - reconstruct: thread history when a thread is given, otherwise the
                 stateless conversation (prior turns, if any, + new prompt)
  - retrieve:    optional retrieval augmentation of the latest user turn
  - reason:      one reasoner call; source markers are stripped

The event emitter is passed through state so each component can report
progress to the logs, the console or an SSE stream.
"""

from __future__ import annotations

import re
from typing import Any, TypedDict

from langgraph.graph import StateGraph, START, END

from bot_config import BotConfig, REASONER_COMPLETIONS
from conversation import reconstruct_conversation
from message_normalizer import normalize_message
from reasoner_client import AssistantsReasoner, CompletionReasoner, Reasoner
from retrieval import (
    HostedVectorStore,
    OpenAIEmbedder,
    ReasonerReranker,
    RetrievalAugmenter,
)
from turns import ChatMessage, Turn
from events import (
    EventEmitter,
    get_default_emitter,
    COMPONENT_PIPELINE,
    EVENT_PROGRESS,
    EVENT_RESULT,
    EVENT_STATUS,
)

A = COMPONENT_PIPELINE
SOURCE_MARKER = re.compile(r"【.*?†source】")


# ── Pipeline State ───────────────────────────────────────────────

class AnswerState(TypedDict, total=False):
    """Shared state flowing through the pipeline."""
    # Input
    message: ChatMessage
    args: list[str]  # Optional: command arguments replacing the message text
    thread: Any  # Optional: ThreadHandle for thread-backed conversations
    prior_turns: list[Turn]  # Optional: earlier turns of a stateless conversation
    use_retrieval: bool

    # Event emitter (not serializable, runtime only)
    emitter: Any

    # Output from normalize
    prompt: str

    # Output from reconstruct / retrieve (may also be supplied as input)
    turns: list[Turn]

    # Final answer
    answer: str


def strip_source_markers(answer: str) -> str:
    return SOURCE_MARKER.sub("", answer)


def _emitter(state: AnswerState) -> EventEmitter:
    return state.get("emitter") or get_default_emitter()


# ── Graph Definition ─────────────────────────────────────────────

def build_pipeline(
    reasoner: Reasoner,
    augmenter: RetrievalAugmenter | None = None,
    normalizer=normalize_message,
) -> Any:
    """Build and compile the answer pipeline.

    Returns a compiled graph that can be awaited with:
      result = await pipeline.ainvoke({
          "message": chat_message,
          "thread": thread_handle,      # optional
          "use_retrieval": False,
          "emitter": ConsoleEventEmitter(),  # optional
      })
    """

    async def normalize_node(state: AnswerState) -> dict:
        em = _emitter(state)
        prompt = await normalizer(state["message"], state.get("args"))
        em.emit(A, EVENT_PROGRESS, "normalize", f"Normalized input ({len(prompt)} chars)")
        return {"prompt": prompt}

    async def reconstruct_node(state: AnswerState) -> dict:
        em = _emitter(state)
        thread = state.get("thread")
        if thread is not None:
            turns = await reconstruct_conversation(
                thread, state["prompt"], state["message"],
                normalizer=normalizer, emitter=em,
            )
        else:
            turns = list(state.get("prior_turns") or []) + [Turn.user(state["prompt"])]
        em.emit(A, EVENT_PROGRESS, "reconstruct", f"Conversation has {len(turns)} turn(s)")
        return {"turns": turns}

    async def retrieve_node(state: AnswerState) -> dict:
        turns = state["turns"]
        augmented = await augmenter.augment(turns[-1])
        if len(augmented) == 1:
            return {"turns": turns}
        # Retrieval answers from the docs alone; earlier turns are dropped.
        return {"turns": augmented}

    async def reason_node(state: AnswerState) -> dict:
        em = _emitter(state)
        em.emit(A, EVENT_STATUS, "reason",
                f"Asking reasoner with {len(state['turns'])} turn(s)")
        answer = strip_source_markers(await reasoner.ask(state["turns"]))
        em.emit(A, EVENT_RESULT, "reason", "Answer ready", {"chars": len(answer)})
        return {"answer": answer}

    def route_start(state: AnswerState) -> str:
        if state.get("turns"):
            return route_retrieval(state)
        return "normalize"

    def route_after_normalize(state: AnswerState) -> str:
        return "reconstruct" if state.get("prompt") else END

    def route_retrieval(state: AnswerState) -> str:
        if augmenter is not None and state.get("use_retrieval"):
            return "retrieve"
        return "reason"

    graph = StateGraph(AnswerState)

    graph.add_node("normalize", normalize_node)
    graph.add_node("reconstruct", reconstruct_node)
    graph.add_node("retrieve", retrieve_node)
    graph.add_node("reason", reason_node)

    graph.add_conditional_edges(START, route_start, ["normalize", "retrieve", "reason"])
    graph.add_conditional_edges("normalize", route_after_normalize, ["reconstruct", END])
    graph.add_conditional_edges("reconstruct", route_retrieval, ["retrieve", "reason"])
    graph.add_edge("retrieve", "reason")
    graph.add_edge("reason", END)

    return graph.compile()


# ── Wiring ───────────────────────────────────────────────────────

def build_reasoner(config: BotConfig, emitter: EventEmitter | None = None) -> Reasoner:
    if config.reasoner.backend == REASONER_COMPLETIONS:
        return CompletionReasoner(
            max_attempts=config.reasoner.max_attempts,
            retry_delay=config.reasoner.retry_delay,
            emitter=emitter,
        )
    return AssistantsReasoner(
        config.openai.api_key,
        config.openai.assistant_id,
        base_url=config.openai.api_base,
        instructions=config.reasoner.instructions,
        max_prompt_tokens=config.reasoner.max_prompt_tokens,
        max_completion_tokens=config.reasoner.max_completion_tokens,
        poll_interval=config.reasoner.poll_interval,
        poll_timeout=config.reasoner.poll_timeout,
        max_attempts=config.reasoner.max_attempts,
        retry_delay=config.reasoner.retry_delay,
        emitter=emitter,
    )


def build_augmenter(
    config: BotConfig, reasoner: Reasoner, emitter: EventEmitter | None = None
) -> RetrievalAugmenter | None:
    """None unless retrieval is enabled and a vector store is known."""
    if not config.retrieval.enabled or not config.openai.vector_store_id:
        return None
    return RetrievalAugmenter(
        OpenAIEmbedder(config.openai.embedding_model),
        HostedVectorStore(
            config.openai.api_key,
            config.openai.vector_store_id,
            base_url=config.openai.api_base,
        ),
        ReasonerReranker(reasoner),
        top_k=config.retrieval.top_k,
        threshold=config.retrieval.threshold,
        top_n=config.retrieval.top_n,
        emitter=emitter,
    )
