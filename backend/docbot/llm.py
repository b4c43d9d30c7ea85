"""
LLM abstraction layer — chat completions over turn lists, plus embeddings.

Supports Claude (Anthropic) and OpenAI-compatible endpoints (OpenAI itself
or NVIDIA NIM).

Usage:
    from llm import complete, embed, get_default_model

    answer = await complete([Turn.user("What is 2+2?")], model=get_default_model())
    vector = await embed("What is 2+2?")

Configuration (via .env or environment):
    LLM_PROVIDER=openai          # "openai", "anthropic" or "nvidia" (default: openai)
    OPENAI_API_KEY=sk-...        # required for openai and for embeddings
    NVIDIA_API_KEY=nvapi-...     # required if provider is nvidia
    ANTHROPIC_API_KEY=sk-ant-... # required if provider is anthropic
"""

from __future__ import annotations

import os
import re

from turns import Role, Turn

# ── Provider detection ────────────────────────────────────────────

PROVIDER_OPENAI = "openai"
PROVIDER_NVIDIA = "nvidia"
PROVIDER_ANTHROPIC = "anthropic"

NVIDIA_BASE_URL = "https://integrate.api.nvidia.com/v1"
DEFAULT_OPENAI_MODEL = "gpt-4o-mini"
DEFAULT_NVIDIA_MODEL = "nvidia/llama-3.3-nemotron-super-49b-v1"
DEFAULT_ANTHROPIC_MODEL = "claude-opus-4-5"
DEFAULT_EMBEDDING_MODEL = "text-embedding-ada-002"


def get_provider() -> str:
    """Return the configured LLM provider."""
    return os.environ.get("LLM_PROVIDER", PROVIDER_OPENAI).strip().lower()


def get_default_model() -> str:
    """Return the default model for the configured provider."""
    provider = get_provider()
    if provider == PROVIDER_NVIDIA:
        return os.environ.get("NVIDIA_MODEL", DEFAULT_NVIDIA_MODEL)
    if provider == PROVIDER_ANTHROPIC:
        return os.environ.get("ANTHROPIC_MODEL", DEFAULT_ANTHROPIC_MODEL)
    return os.environ.get("OPENAI_MODEL", DEFAULT_OPENAI_MODEL)


def resolve_provider(model: str) -> str:
    """Pick a provider from the model name, falling back to LLM_PROVIDER."""
    if model.startswith("claude") or model.startswith("anthropic"):
        return PROVIDER_ANTHROPIC
    if model.startswith(("nvidia/", "meta/", "mistralai/")):
        return PROVIDER_NVIDIA
    if model.startswith(("gpt-", "o1", "o3", "o4")):
        return PROVIDER_OPENAI
    return get_provider()


# ── Unified call ──────────────────────────────────────────────────

async def complete(turns: list[Turn], model: str | None = None, max_tokens: int = 4096) -> str:
    """Send a turn list to the configured LLM and return the text reply."""
    model = model or get_default_model()
    provider = resolve_provider(model)

    if provider == PROVIDER_ANTHROPIC:
        return await _call_anthropic(turns, model, max_tokens)
    return await _call_openai_compatible(turns, model, max_tokens, provider)


def strip_markdown_fences(text: str) -> str:
    """Remove markdown code fences (```json ... ```) from LLM output.

    Returns the content inside the *first* fenced block if one exists,
    otherwise the original text.
    """
    m = re.search(r"```(?:\w+)?\s*\n(.*?)```", text, re.DOTALL)
    if m:
        return m.group(1).strip()
    # Fallback: if it starts with ``` (no closing)
    if text.startswith("```"):
        return text.split("\n", 1)[1].strip() if "\n" in text else ""
    return text.strip()


# ── Anthropic (Claude) ────────────────────────────────────────────

def _anthropic_payload(turns: list[Turn]) -> tuple[str, list[dict[str, str]]]:
    """Split system turns out; Claude takes them as a separate parameter."""
    system = "\n\n".join(t.content for t in turns if t.role == Role.SYSTEM)
    messages = [t.to_dict() for t in turns if t.role != Role.SYSTEM]
    return system, messages


async def _call_anthropic(turns: list[Turn], model: str, max_tokens: int) -> str:
    """Call Claude via the Anthropic SDK."""
    import anthropic

    system, messages = _anthropic_payload(turns)
    client = anthropic.AsyncAnthropic()  # uses ANTHROPIC_API_KEY env var
    kwargs = {"model": model, "max_tokens": max_tokens, "messages": messages}
    if system:
        kwargs["system"] = system
    response = await client.messages.create(**kwargs)
    return "".join(
        block.text for block in response.content if getattr(block, "type", "") == "text"
    ).strip()


# ── OpenAI-compatible (OpenAI, NVIDIA NIM) ───────────────────────

def _openai_client(provider: str):
    from openai import AsyncOpenAI

    if provider == PROVIDER_NVIDIA:
        api_key = os.environ.get("NVIDIA_API_KEY", "")
        if not api_key:
            raise ValueError(
                "NVIDIA_API_KEY not set. Get one from https://build.nvidia.com/ "
                "and add it to your .env file."
            )
        return AsyncOpenAI(base_url=NVIDIA_BASE_URL, api_key=api_key)
    return AsyncOpenAI(base_url=os.environ.get("OPENAI_API_BASE") or None)


async def _call_openai_compatible(
    turns: list[Turn], model: str, max_tokens: int, provider: str
) -> str:
    client = _openai_client(provider)
    response = await client.chat.completions.create(
        model=model,
        max_tokens=max_tokens,
        messages=[t.to_dict() for t in turns],
        temperature=0.2,
    )
    return (response.choices[0].message.content or "").strip()


# ── Embeddings ───────────────────────────────────────────────────

async def embed(text: str, model: str | None = None) -> list[float]:
    """Return the embedding vector for ``text``."""
    client = _openai_client(PROVIDER_OPENAI)
    response = await client.embeddings.create(
        model=model or os.environ.get("EMBEDDING_MODEL", DEFAULT_EMBEDDING_MODEL),
        input=text,
    )
    return list(response.data[0].embedding)
