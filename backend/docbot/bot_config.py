"""
Environment-driven configuration for the docs assistant bot.

Every setting is read from the process environment, after loading an
optional ``.env`` file. Defaults mirror the values the bot has always run
with; only credentials and identifiers are required.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

from dotenv import load_dotenv

DEFAULT_API_BASE = "https://api.openai.com/v1"
DEFAULT_ASSISTANT_MODEL = "gpt-4o-mini"
DEFAULT_EMBEDDING_MODEL = "text-embedding-ada-002"
DEFAULT_RUN_INSTRUCTIONS = (
    "Please provide a detailed answer based on the conversation context, "
    "including references to the documentation but without any source "
    "annotations or citations. Be concise."
)

REASONER_ASSISTANTS = "assistants"
REASONER_COMPLETIONS = "completions"


def _env(name: str, default: str = "") -> str:
    return os.environ.get(name, default).strip()


def _env_int(name: str, default: int) -> int:
    raw = _env(name)
    return int(raw) if raw else default


def _env_float(name: str, default: float) -> float:
    raw = _env(name)
    return float(raw) if raw else default


def _env_bool(name: str, default: bool = False) -> bool:
    raw = _env(name)
    if not raw:
        return default
    return raw.lower() in ("1", "true", "yes", "on")


@dataclass
class DiscordConfig:
    token: str
    command_prefix: str = "!"
    guild_id: str = ""
    client_id: str = ""


@dataclass
class OpenAIConfig:
    api_key: str
    api_base: str = DEFAULT_API_BASE
    assistant_id: str = ""
    vector_store_id: str = ""
    assistant_model: str = DEFAULT_ASSISTANT_MODEL
    embedding_model: str = DEFAULT_EMBEDDING_MODEL


@dataclass
class ReasonerConfig:
    backend: str = REASONER_ASSISTANTS
    poll_interval: float = 2.0
    poll_timeout: float = 300.0
    max_attempts: int = 3
    retry_delay: float = 2.0
    max_prompt_tokens: int = 30000
    max_completion_tokens: int = 30000
    instructions: str = DEFAULT_RUN_INSTRUCTIONS


@dataclass
class RetrievalConfig:
    enabled: bool = False
    top_k: int = 20
    threshold: float = 0.75
    top_n: int = 5


@dataclass
class RegistryConfig:
    max_entries: int = 1000
    ttl_seconds: float | None = 7 * 24 * 3600


@dataclass
class DocsConfig:
    repo_url: str = ""
    local_path: str = "./docs"
    manual_folder: str = "./ManualFolder"
    tags_repo: str = ""
    vector_store_id_path: str = "./vectorStoreId.txt"
    store_name: str = "Docs Vector Store"
    assistant_name: str = "Docs Assistant"
    refresh_cron: str = "0 0 * * *"


@dataclass
class BotConfig:
    discord: DiscordConfig
    openai: OpenAIConfig
    reasoner: ReasonerConfig = field(default_factory=ReasonerConfig)
    retrieval: RetrievalConfig = field(default_factory=RetrievalConfig)
    registry: RegistryConfig = field(default_factory=RegistryConfig)
    docs: DocsConfig = field(default_factory=DocsConfig)
    schedule_file: str = "./scheduledContent.json"

    def missing(self, *, need_discord: bool = True) -> list[str]:
        """Names of required environment variables that are not set."""
        missing = []
        if need_discord and not self.discord.token:
            missing.append("DISCORD_BOT_TOKEN")
        if not self.openai.api_key:
            missing.append("OPENAI_API_KEY")
        if self.reasoner.backend == REASONER_ASSISTANTS and not self.openai.assistant_id:
            missing.append("ASSISTANT_ID")
        if self.retrieval.enabled and not self.openai.vector_store_id:
            missing.append("VECTOR_STORE_ID")
        return missing


def _read_vector_store_id(path: str) -> str:
    p = Path(path)
    if p.is_file():
        return p.read_text().strip()
    return ""


def load_config(env_file: str | Path | None = None) -> BotConfig:
    """Load a BotConfig from the environment (and an optional .env file)."""
    if env_file is not None:
        load_dotenv(env_file)
    else:
        load_dotenv()

    ttl_raw = _env("REGISTRY_TTL_SECONDS")
    docs = DocsConfig(
        repo_url=_env("GITHUB_REPO"),
        local_path=_env("DOCS_LOCAL_PATH", "./docs"),
        manual_folder=_env("MANUAL_FOLDER", "./ManualFolder"),
        tags_repo=_env("DOCS_TAGS_REPO"),
        vector_store_id_path=_env("VECTOR_STORE_ID_PATH", "./vectorStoreId.txt"),
        store_name=_env("VECTOR_STORE_NAME", "Docs Vector Store"),
        assistant_name=_env("ASSISTANT_NAME", "Docs Assistant"),
        refresh_cron=_env("DOCS_REFRESH_CRON", "0 0 * * *"),
    )

    return BotConfig(
        discord=DiscordConfig(
            token=_env("DISCORD_BOT_TOKEN"),
            command_prefix=_env("COMMAND_PREFIX", "!"),
            guild_id=_env("GUILD_ID"),
            client_id=_env("CLIENT_ID"),
        ),
        openai=OpenAIConfig(
            api_key=_env("OPENAI_API_KEY"),
            api_base=_env("OPENAI_API_BASE", DEFAULT_API_BASE).rstrip("/"),
            assistant_id=_env("ASSISTANT_ID"),
            vector_store_id=(
                _env("VECTOR_STORE_ID") or _read_vector_store_id(docs.vector_store_id_path)
            ),
            assistant_model=_env("ASSISTANT_MODEL", DEFAULT_ASSISTANT_MODEL),
            embedding_model=_env("EMBEDDING_MODEL", DEFAULT_EMBEDDING_MODEL),
        ),
        reasoner=ReasonerConfig(
            backend=_env("REASONER_BACKEND", REASONER_ASSISTANTS).lower(),
            poll_interval=_env_float("REASONER_POLL_INTERVAL", 2.0),
            poll_timeout=_env_float("REASONER_POLL_TIMEOUT", 300.0),
            max_attempts=_env_int("REASONER_MAX_ATTEMPTS", 3),
            retry_delay=_env_float("REASONER_RETRY_DELAY", 2.0),
            max_prompt_tokens=_env_int("REASONER_MAX_PROMPT_TOKENS", 30000),
            max_completion_tokens=_env_int("REASONER_MAX_COMPLETION_TOKENS", 30000),
            instructions=_env("REASONER_INSTRUCTIONS", DEFAULT_RUN_INSTRUCTIONS),
        ),
        retrieval=RetrievalConfig(
            enabled=_env_bool("RETRIEVAL_ENABLED"),
            top_k=_env_int("RETRIEVAL_TOP_K", 20),
            threshold=_env_float("RETRIEVAL_THRESHOLD", 0.75),
            top_n=_env_int("RETRIEVAL_TOP_N", 5),
        ),
        registry=RegistryConfig(
            max_entries=_env_int("REGISTRY_MAX_ENTRIES", 1000),
            ttl_seconds=float(ttl_raw) if ttl_raw else 7 * 24 * 3600,
        ),
        docs=docs,
        schedule_file=_env("SCHEDULE_FILE", "./scheduledContent.json"),
    )
