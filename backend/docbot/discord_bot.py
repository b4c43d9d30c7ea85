"""
Discord front end for the docs assistant.

Routing of an inbound message:
  1. Messages from bots are ignored
  2. A reply to a stateless bot answer continues that chain (registry)
  3. A message in a bot conversation thread that is not a command is
     answered from the thread history
  4. Everything else goes to the prefix commands:
       !ask                one-off answer, continued by replying to it
       !askthread          answer in a new public thread (or the current one)
       !askprivatethread   answer in a new private thread (or the current one)

Admins manage the docs index and scheduled content with /docsmanager.
"""

from __future__ import annotations

import asyncio
import io
import logging
from typing import Any, Awaitable, Callable

import discord
from discord import app_commands
from discord.ext import commands

from docs_sync import AssistantAdmin, sync_docs
from bot_config import BotConfig
from message_normalizer import normalize_message
from scheduler import ContentScheduler, ScheduledContent, ScheduledContentStore
from session_registry import SessionRegistry
from turns import (
    Attachment,
    ChatMessage,
    ChatPlatformError,
    MessageKind,
    MessageUnavailable,
    Turn,
)

logger = logging.getLogger(__name__)

THREAD_NAME = "Docs Conversation"
PRIVATE_THREAD_NAME = "Docs Private Conversation"
CONVERSATION_THREAD_NAMES = {THREAD_NAME, PRIVATE_THREAD_NAME}
THREAD_ARCHIVE_MINUTES = 60

MESSAGE_LIMIT = 1900
LONG_RESPONSE_NOTICE = "The response is too long; please see the attached file:"
LONG_RESPONSE_FILE = "response.txt"
ERROR_MESSAGE = "There was an error processing your request. Please try again later."
EMPTY_INPUT_MESSAGE = "Please provide some text or attach a file/image with text."

# send(content, file=None) -> the sent message (anything with an ``id``)
Send = Callable[..., Awaitable[Any]]


# ── platform adapters ────────────────────────────────────────────

_KINDS = {
    discord.MessageType.default: MessageKind.PLAIN,
    discord.MessageType.reply: MessageKind.REPLY,
}


def to_chat_message(message: discord.Message) -> ChatMessage:
    reference = message.reference
    return ChatMessage(
        id=str(message.id),
        author_is_bot=message.author.bot,
        created_at=message.created_at.timestamp(),
        content=message.content or "",
        attachments=tuple(Attachment(a.filename, a.url) for a in message.attachments),
        reply_to_id=str(reference.message_id) if reference and reference.message_id else None,
        kind=_KINDS.get(message.type, MessageKind.SYSTEM),
    )


class DiscordThread:
    """ThreadHandle over a discord.Thread."""

    def __init__(self, thread: discord.Thread) -> None:
        self.thread = thread

    async def fetch_message(self, message_id: str) -> ChatMessage:
        try:
            message = await self.thread.fetch_message(int(message_id))
        except discord.HTTPException as e:
            raise MessageUnavailable(f"message {message_id}: {e}") from e
        return to_chat_message(message)

    async def history(self, limit: int) -> list[ChatMessage]:
        try:
            return [to_chat_message(m) async for m in self.thread.history(limit=limit)]
        except discord.HTTPException as e:
            raise ChatPlatformError(f"history of thread {self.thread.id}: {e}") from e


async def deliver(send: Send, answer: str) -> Any:
    """Send an answer, as a file attachment when it exceeds the message limit."""
    if len(answer) > MESSAGE_LIMIT:
        file = discord.File(io.BytesIO(answer.encode("utf-8")), filename=LONG_RESPONSE_FILE)
        return await send(LONG_RESPONSE_NOTICE, file=file)
    return await send(answer)


# ── answering ────────────────────────────────────────────────────

class DocsAnswerer:
    """Runs the answer pipeline for each entry point and delivers the result.

    Failures are logged with their detail; the user only sees ERROR_MESSAGE.
    """

    def __init__(self, pipeline: Any, registry: SessionRegistry, use_retrieval: bool = False) -> None:
        self.pipeline = pipeline
        self.registry = registry
        self.use_retrieval = use_retrieval

    async def _run(self, state: dict) -> dict:
        return await self.pipeline.ainvoke({"use_retrieval": self.use_retrieval, **state})

    async def ask_stateless(self, message: ChatMessage, args: list[str], send: Send) -> None:
        """Answer a one-off question and remember it under the answer's id."""
        try:
            result = await self._run({"message": message, "args": args})
            answer = result.get("answer")
            if not answer:
                await send(EMPTY_INPUT_MESSAGE)
                return
            sent = await deliver(send, answer)
            self.registry.remember(
                str(sent.id), [Turn.user(result["prompt"]), Turn.assistant(answer)]
            )
        except Exception:
            logger.exception("Error processing one-off question %s", message.id)
            await send(ERROR_MESSAGE)

    async def continue_stateless(self, message: ChatMessage, send: Send) -> bool:
        """Continue the chain the message replies to; False if it is not live."""
        key = message.reply_to_id
        if not key or key not in self.registry:
            return False

        prompt = await normalize_message(message)
        if not prompt:
            await send(EMPTY_INPUT_MESSAGE)
            return True

        async def respond(turns: list[Turn]) -> tuple[str, str]:
            result = await self._run({"turns": turns})
            answer = result.get("answer") or ""
            sent = await deliver(send, answer)
            return answer, str(sent.id)

        try:
            continuation = await self.registry.continue_conversation(key, prompt, respond)
        except Exception:
            logger.exception("Error continuing conversation %s", key)
            await send(ERROR_MESSAGE)
            return True
        return continuation is not None

    async def ask_in_thread(
        self, thread: Any, message: ChatMessage, send: Send, args: list[str] | None = None
    ) -> None:
        try:
            result = await self._run({"message": message, "thread": thread, "args": args})
            answer = result.get("answer")
            if not answer:
                await send(EMPTY_INPUT_MESSAGE)
                return
            await deliver(send, answer)
        except Exception:
            logger.exception("Error processing thread message %s", message.id)
            await send(ERROR_MESSAGE)

    async def answer_scheduled(self, content: ScheduledContent, send: Send) -> None:
        parts = [content.prompt, content.general_info, content.context]
        prompt = "\n\n".join(p.strip() for p in parts if p and p.strip())
        try:
            result = await self._run({"turns": [Turn.user(prompt)]})
            await deliver(send, result.get("answer") or "")
        except Exception:
            # Nobody asked; there is no user to show an error to.
            logger.exception("Scheduled content %s (%s) failed", content.id, content.title)


# ── slash commands ───────────────────────────────────────────────

def format_content_list(contents: list[ScheduledContent]) -> str:
    if not contents:
        return "No scheduled content."
    return "\n".join(
        f"`{c.id}` **{c.title}** ({c.status}) `{c.cron_expression}` from {c.start_time}"
        for c in contents
    )


class DocsManager(app_commands.Group):
    def __init__(self, bot: DocsBot) -> None:
        super().__init__(
            name="docsmanager",
            description="Manage the docs index and scheduled content",
            default_permissions=discord.Permissions(administrator=True),
        )
        self.bot = bot

    @app_commands.command(name="update", description="Pull the docs and rebuild the vector store")
    async def update(self, interaction: discord.Interaction, reupload: bool = True) -> None:
        await interaction.response.defer(ephemeral=True, thinking=True)
        try:
            result = await self.bot.refresh_docs(reupload)
        except Exception:
            logger.exception("Docs update failed")
            await interaction.followup.send(ERROR_MESSAGE, ephemeral=True)
            return
        await interaction.followup.send(
            f"Docs updated. Vector store `{result.vector_store_id}`, "
            f"{len(result.uploaded)} file(s) uploaded, {len(result.failed)} failed.",
            ephemeral=True,
        )

    @app_commands.command(name="list", description="List scheduled content")
    async def list_content(self, interaction: discord.Interaction) -> None:
        await interaction.response.send_message(
            format_content_list(self.bot.content_store.list()), ephemeral=True
        )

    @app_commands.command(name="add", description="Schedule content to be posted in this channel")
    @app_commands.describe(
        repeat_interval='e.g. "3 minutes", "2 hours", "1 day"',
        start_time="YYYY-MM-DD HH:mm (UTC+1)",
    )
    async def add(
        self,
        interaction: discord.Interaction,
        title: str,
        repeat_interval: str,
        start_time: str,
        prompt: str,
        general_info: str = "",
    ) -> None:
        try:
            content = self.bot.content_store.create(
                title, repeat_interval, start_time, prompt, general_info,
                channel_id=str(interaction.channel_id),
            )
        except ValueError as e:
            await interaction.response.send_message(f"Invalid schedule: {e}", ephemeral=True)
            return
        self.bot.schedule_content()
        await interaction.response.send_message(
            f"Scheduled **{content.title}** (`{content.cron_expression}`) as `{content.id}`.",
            ephemeral=True,
        )

    @app_commands.command(name="toggle", description="Pause or resume scheduled content")
    async def toggle(self, interaction: discord.Interaction, content_id: str) -> None:
        content = self.bot.content_store.toggle(content_id)
        if content is None:
            await interaction.response.send_message(f"No content with id `{content_id}`.",
                                                    ephemeral=True)
            return
        self.bot.schedule_content()
        await interaction.response.send_message(
            f"**{content.title}** is now {content.status}.", ephemeral=True
        )


# ── prefix commands ──────────────────────────────────────────────

class AskCommands(commands.Cog):
    def __init__(self, bot: DocsBot) -> None:
        self.bot = bot

    @commands.command(name="ask")
    async def ask(self, ctx: commands.Context, *args: str) -> None:
        async with ctx.typing():
            await self.bot.answerer.ask_stateless(
                to_chat_message(ctx.message), list(args), ctx.message.reply
            )

    @commands.command(name="askthread")
    async def ask_thread(self, ctx: commands.Context, *args: str) -> None:
        thread = _current_thread(ctx)
        if thread is None:
            try:
                thread = await ctx.message.create_thread(
                    name=THREAD_NAME, auto_archive_duration=THREAD_ARCHIVE_MINUTES
                )
            except discord.HTTPException:
                logger.exception("Could not create thread for message %s", ctx.message.id)
                await ctx.reply(ERROR_MESSAGE)
                return
        await self._answer_in_thread(ctx, thread, args)

    @commands.command(name="askprivatethread")
    async def ask_private_thread(self, ctx: commands.Context, *args: str) -> None:
        thread = _current_thread(ctx)
        if thread is None:
            try:
                thread = await ctx.channel.create_thread(
                    name=PRIVATE_THREAD_NAME,
                    type=discord.ChannelType.private_thread,
                    auto_archive_duration=THREAD_ARCHIVE_MINUTES,
                )
                await thread.add_user(ctx.author)
            except (discord.HTTPException, AttributeError):
                logger.exception("Could not create private thread in channel %s", ctx.channel.id)
                await ctx.reply(ERROR_MESSAGE)
                return
        await self._answer_in_thread(ctx, thread, args)

    async def _answer_in_thread(
        self, ctx: commands.Context, thread: discord.Thread, args: tuple[str, ...]
    ) -> None:
        async with thread.typing():
            await self.bot.answerer.ask_in_thread(
                DiscordThread(thread), to_chat_message(ctx.message), thread.send, list(args)
            )


def _current_thread(ctx: commands.Context) -> discord.Thread | None:
    # Threads cannot hold threads; a thread command inside one answers in place.
    return ctx.channel if isinstance(ctx.channel, discord.Thread) else None


# ── bot ──────────────────────────────────────────────────────────

class DocsBot(commands.Bot):
    def __init__(
        self,
        config: BotConfig,
        answerer: DocsAnswerer,
        content_store: ScheduledContentStore,
        scheduler: ContentScheduler,
        admin: AssistantAdmin | None = None,
        vector_store: Any = None,
    ) -> None:
        intents = discord.Intents.default()
        intents.message_content = True
        super().__init__(command_prefix=config.discord.command_prefix, intents=intents)
        self.config = config
        self.answerer = answerer
        self.content_store = content_store
        self.scheduler = scheduler
        self.admin = admin
        self.vector_store = vector_store

    async def setup_hook(self) -> None:
        await self.add_cog(AskCommands(self))
        self.tree.add_command(DocsManager(self))
        if self.config.discord.guild_id:
            guild = discord.Object(id=int(self.config.discord.guild_id))
            self.tree.copy_global_to(guild=guild)
            await self.tree.sync(guild=guild)
        else:
            await self.tree.sync()

        self.schedule_content()
        if self.admin is not None and self.config.docs.refresh_cron:
            self.scheduler.schedule("docs_refresh", self.config.docs.refresh_cron,
                                    self._scheduled_refresh)

    async def on_ready(self) -> None:
        logger.info("Logged in as %s", self.user)

    async def on_message(self, message: discord.Message) -> None:
        if message.author.bot:
            return

        chat_message = to_chat_message(message)
        if chat_message.reply_to_id and chat_message.reply_to_id in self.answerer.registry:
            async with message.channel.typing():
                if await self.answerer.continue_stateless(chat_message, message.reply):
                    return

        if self._is_conversation_thread(message.channel) and not message.content.startswith(
            self.config.discord.command_prefix
        ):
            async with message.channel.typing():
                await self.answerer.ask_in_thread(
                    DiscordThread(message.channel), chat_message, message.channel.send
                )
            return

        await self.process_commands(message)

    def _is_conversation_thread(self, channel: Any) -> bool:
        return (
            isinstance(channel, discord.Thread)
            and channel.name in CONVERSATION_THREAD_NAMES
            and self.user is not None
            and channel.owner_id == self.user.id
        )

    # ── scheduled work ───────────────────────────────────────────

    def schedule_content(self) -> None:
        self.scheduler.schedule_all_active(self.content_store.list(), self._post_scheduled)

    async def _post_scheduled(self, content: ScheduledContent) -> None:
        if not content.channel_id:
            logger.warning("Scheduled content %s has no channel", content.id)
            return
        channel_id = int(content.channel_id)
        channel = self.get_channel(channel_id) or await self.fetch_channel(channel_id)
        await self.answerer.answer_scheduled(content, channel.send)

    async def refresh_docs(self, reupload: bool = True):
        if self.admin is None:
            raise RuntimeError("Docs sync is not configured")
        result = await asyncio.to_thread(sync_docs, self.config.docs, self.admin, reupload)
        if self.vector_store is not None:
            self.vector_store.vector_store_id = result.vector_store_id
        self.config.openai.vector_store_id = result.vector_store_id
        return result

    async def _scheduled_refresh(self) -> None:
        logger.info("Running scheduled docs refresh")
        await self.refresh_docs(reupload=True)
