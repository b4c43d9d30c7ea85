#!/usr/bin/env python3
"""
Start the Discord docs assistant.

Run:
    cd backend/docbot
    python run_bot.py [--env-file .env]

Set SENTRY_DSN to enable Sentry error tracking.
"""

import argparse
import logging
import os

import sentry_sdk
from dotenv import load_dotenv
from sentry_sdk.integrations.logging import LoggingIntegration

from bot_config import load_config
from discord_bot import DocsAnswerer, DocsBot
from docs_sync import AssistantAdmin
from pipeline import build_augmenter, build_pipeline, build_reasoner
from scheduler import ContentScheduler, ScheduledContentStore
from session_registry import SessionRegistry

logger = logging.getLogger("docbot")


def init_sentry() -> None:
    dsn = os.environ.get("SENTRY_DSN", "")
    if not dsn:
        logger.info("Sentry disabled (no SENTRY_DSN set)")
        return
    sentry_sdk.init(
        dsn=dsn,
        integrations=[
            LoggingIntegration(
                level=logging.INFO,         # INFO+ captured as breadcrumbs
                event_level=logging.ERROR,  # ERROR+ sent as Sentry events
            ),
        ],
        traces_sample_rate=float(os.environ.get("SENTRY_TRACES_SAMPLE_RATE", "0.0")),
        environment=os.environ.get("SENTRY_ENVIRONMENT", "development"),
    )
    logger.info("Sentry initialized (env=%s)", os.environ.get("SENTRY_ENVIRONMENT", "development"))


def build_bot(config) -> DocsBot:
    reasoner = build_reasoner(config)
    augmenter = build_augmenter(config, reasoner)
    pipeline = build_pipeline(reasoner, augmenter)
    registry = SessionRegistry(
        max_entries=config.registry.max_entries,
        ttl_seconds=config.registry.ttl_seconds,
    )
    answerer = DocsAnswerer(pipeline, registry, use_retrieval=augmenter is not None)
    admin = None
    if config.docs.repo_url or config.openai.vector_store_id:
        admin = AssistantAdmin(config.openai, max_attempts=config.reasoner.max_attempts,
                               retry_delay=config.reasoner.retry_delay)
    return DocsBot(
        config,
        answerer,
        ScheduledContentStore(config.schedule_file),
        ContentScheduler(),
        admin=admin,
        vector_store=augmenter.store if augmenter is not None else None,
    )


def main() -> None:
    parser = argparse.ArgumentParser(description="Run the Discord docs assistant")
    parser.add_argument("--env-file", default=None, help="Path to a .env file")
    args = parser.parse_args()

    if args.env_file:
        load_dotenv(args.env_file)
    else:
        load_dotenv()
    logging.basicConfig(
        level=os.environ.get("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    init_sentry()

    config = load_config(args.env_file)
    missing = config.missing()
    if missing:
        raise SystemExit(f"Missing required environment variables: {', '.join(missing)}")

    bot = build_bot(config)
    bot.run(config.discord.token, log_handler=None)


if __name__ == "__main__":
    main()
