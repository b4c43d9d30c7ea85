"""
Retrieval-Augmentation — narrows the docs corpus to a small context block.

Workflow:
  1. Embed the latest user turn
  2. Query the vector store for the top-K nearest documents
  3. Keep hits scoring at or above the threshold
  4. Rerank the survivors down to top-N (through the reasoner by default;
     raw-score order when the rerank reply is unusable)
  5. Join "From <path>:\\n<text>" sections in reranked order
  6. Emit [system("Use ONLY these contexts: ..."), user(latest)]

Any failure in this path degrades to "no context"; it never fails the
user's request.

Rerank output schema (asked of the reasoner):
[
  {"index": 3, "path": "docs/setup.md", "rationale": "Covers node setup"}
]
"""

from __future__ import annotations

import json
from typing import Any, Protocol

import httpx
import openai
from pydantic import TypeAdapter, ValidationError

import llm
from reasoner_client import Reasoner, ReasonerError
from turns import RerankResult, RetrievalHit, Turn
from events import (
    EventEmitter,
    get_default_emitter,
    COMPONENT_RETRIEVAL,
    EVENT_ERROR,
    EVENT_LOG,
    EVENT_PROGRESS,
    EVENT_RESULT,
    EVENT_WARNING,
)

A = COMPONENT_RETRIEVAL

DEFAULT_TOP_K = 20
DEFAULT_THRESHOLD = 0.75
DEFAULT_TOP_N = 5
CONTEXT_SEPARATOR = "\n\n---\n\n"
CONTEXT_PREAMBLE = "Use ONLY these contexts:\n\n"

RERANK_SYSTEM_PROMPT = "Rank these snippets by relevance to the user's question."

_RERANK_ADAPTER = TypeAdapter(list[RerankResult])


class RerankParseError(ValueError):
    """The reranker's reply was not a valid list of rerank results."""


# ═══════════════════════════════════════════════════════════════════
#  COLLABORATOR PROTOCOLS
# ═══════════════════════════════════════════════════════════════════

class Embedder(Protocol):
    async def embed(self, text: str) -> list[float]: ...


class VectorStore(Protocol):
    async def search(self, embedding: list[float], top_k: int) -> list[RetrievalHit]: ...


class RankingStrategy(Protocol):
    async def rerank(
        self, query: str, hits: list[RetrievalHit], top_n: int
    ) -> list[RerankResult]: ...


# ═══════════════════════════════════════════════════════════════════
#  IMPLEMENTATIONS
# ═══════════════════════════════════════════════════════════════════

class OpenAIEmbedder:
    def __init__(self, model: str | None = None) -> None:
        self.model = model

    async def embed(self, text: str) -> list[float]:
        return await llm.embed(text, model=self.model)


class HostedVectorStore:
    """Vector-similarity search against the hosted vector store."""

    def __init__(
        self,
        api_key: str,
        vector_store_id: str,
        *,
        base_url: str = "https://api.openai.com/v1",
        http: httpx.AsyncClient | None = None,
    ) -> None:
        self.vector_store_id = vector_store_id
        self._base_url = base_url.rstrip("/")
        self._http = http or httpx.AsyncClient(timeout=30.0)
        self._headers = {
            "Authorization": f"Bearer {api_key}",
            "OpenAI-Beta": "assistants=v2",
        }

    async def search(self, embedding: list[float], top_k: int) -> list[RetrievalHit]:
        resp = await self._http.post(
            f"{self._base_url}/vector_stores/{self.vector_store_id}/search",
            headers=self._headers,
            json={"embedding": embedding, "top_k": top_k},
        )
        resp.raise_for_status()
        return [_hit_from_payload(item) for item in resp.json().get("data", [])]


def _hit_from_payload(item: dict[str, Any]) -> RetrievalHit:
    metadata = item.get("metadata") or {}
    return RetrievalHit(
        text=str(metadata.get("text", "")),
        path=str(metadata.get("path", "")),
        score=float(item.get("score", 0.0)),
    )


class ScoreRanker:
    """Keeps the top-N hits in raw similarity order."""

    async def rerank(
        self, query: str, hits: list[RetrievalHit], top_n: int
    ) -> list[RerankResult]:
        return rank_by_score(hits, top_n)


def rank_by_score(hits: list[RetrievalHit], top_n: int) -> list[RerankResult]:
    order = sorted(range(len(hits)), key=lambda i: hits[i].score, reverse=True)
    return [
        RerankResult(
            index=i + 1,
            path=hits[i].path,
            rationale=f"similarity score {hits[i].score:.2f}",
        )
        for i in order[:top_n]
    ]


def build_rerank_prompt(query: str, hits: list[RetrievalHit], top_n: int) -> str:
    numbered = "\n\n".join(f"{i}) [{h.path}] {h.text}" for i, h in enumerate(hits, 1))
    return (
        f"Question: {query}\n\n"
        f"{numbered}\n\n"
        f"Return the top {top_n} as JSON array [{{index, path, rationale}}]."
    )


def parse_rerank_reply(raw: str, hit_count: int, top_n: int) -> list[RerankResult]:
    """Validate a rerank reply; raise RerankParseError when it is unusable."""
    text = llm.strip_markdown_fences(raw)
    try:
        data = json.loads(text)
    except json.JSONDecodeError:
        start, end = text.find("["), text.rfind("]") + 1
        if start < 0 or end <= start:
            raise RerankParseError(f"Rerank reply is not JSON: {raw[:200]!r}") from None
        try:
            data = json.loads(text[start:end])
        except json.JSONDecodeError as e:
            raise RerankParseError(f"Rerank reply is not JSON: {raw[:200]!r}") from e

    try:
        results = _RERANK_ADAPTER.validate_python(data)
    except ValidationError as e:
        raise RerankParseError(f"Rerank reply does not match schema: {e}") from e

    seen: set[int] = set()
    ranked = []
    for result in results:
        if result.index > hit_count:
            raise RerankParseError(
                f"Rerank index {result.index} is outside 1..{hit_count}"
            )
        if result.index in seen:
            continue
        seen.add(result.index)
        ranked.append(result)
    if not ranked:
        raise RerankParseError("Rerank reply is empty")
    return ranked[:top_n]


class ReasonerReranker:
    """Asks the reasoner, as a side conversation, to rerank candidates."""

    def __init__(self, reasoner: Reasoner) -> None:
        self._reasoner = reasoner

    async def rerank(
        self, query: str, hits: list[RetrievalHit], top_n: int
    ) -> list[RerankResult]:
        reply = await self._reasoner.ask([
            Turn.system(RERANK_SYSTEM_PROMPT),
            Turn.user(build_rerank_prompt(query, hits, top_n)),
        ])
        return parse_rerank_reply(reply, len(hits), top_n)


# ═══════════════════════════════════════════════════════════════════
#  PIPELINE
# ═══════════════════════════════════════════════════════════════════

def build_context_block(hits: list[RetrievalHit], ranked: list[RerankResult]) -> str:
    sections = []
    for result in ranked:
        hit = hits[result.index - 1]
        sections.append(f"From {hit.path}:\n{hit.text}")
    return CONTEXT_SEPARATOR.join(sections)


class RetrievalAugmenter:
    def __init__(
        self,
        embedder: Embedder,
        store: VectorStore,
        ranker: RankingStrategy,
        *,
        top_k: int = DEFAULT_TOP_K,
        threshold: float = DEFAULT_THRESHOLD,
        top_n: int = DEFAULT_TOP_N,
        fallback_ranker: RankingStrategy | None = None,
        emitter: EventEmitter | None = None,
    ) -> None:
        self.embedder = embedder
        self.store = store
        self.ranker = ranker
        self.fallback_ranker = fallback_ranker or ScoreRanker()
        self.top_k = top_k
        self.threshold = threshold
        self.top_n = top_n
        self._em = emitter or get_default_emitter()

    async def semantic_search(self, query: str) -> list[RetrievalHit]:
        """Embed, search and keep only hits at or above the threshold."""
        embedding = await self.embedder.embed(query)
        hits = await self.store.search(embedding, self.top_k)
        kept = [h for h in hits if h.score >= self.threshold]
        self._em.emit(A, EVENT_PROGRESS, "search",
                      f"{len(kept)} of {len(hits)} hit(s) cleared threshold {self.threshold}")
        return kept

    async def _rank(self, query: str, hits: list[RetrievalHit]) -> list[RerankResult]:
        try:
            return await self.ranker.rerank(query, hits, self.top_n)
        except (RerankParseError, ReasonerError, httpx.HTTPError) as e:
            self._em.emit(A, EVENT_WARNING, "rerank",
                          f"Rerank failed, using raw score order: {e}")
            return await self.fallback_ranker.rerank(query, hits, self.top_n)

    async def build_context(self, query: str) -> str:
        """Return the context block for ``query``; "" when nothing relevant."""
        try:
            hits = await self.semantic_search(query)
        except (httpx.HTTPError, openai.OpenAIError, ValueError, KeyError) as e:
            self._em.emit(A, EVENT_ERROR, "search", f"Semantic search failed: {e}")
            return ""
        if not hits:
            return ""

        ranked = await self._rank(query, hits)
        self._em.emit(A, EVENT_LOG, "rerank",
                      "Reranked: " + ", ".join(f"#{r.index} {r.path}" for r in ranked))
        context = build_context_block(hits, ranked)
        self._em.emit(A, EVENT_RESULT, "context",
                      f"Built context from {len(ranked)} snippet(s)")
        return context

    async def augment(self, latest: Turn) -> list[Turn]:
        """Return [system context, latest] or just [latest] without context."""
        context = await self.build_context(latest.content)
        if not context:
            return [latest]
        return [Turn.system(CONTEXT_PREAMBLE + context), latest]
