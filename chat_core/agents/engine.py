"""会话引擎核心模块。

把平台事件编排成一轮完整的对话：状态获取与身份校验、扩展模块分发、
检索上下文与图片选择、调用 Provider、组装并发送回复、写回历史与持久化。

同一会话的事件在 ConversationLocks 下串行执行，不同会话并发。
"""

import json
import logging
from typing import Any, Dict, List, Optional
from uuid import uuid4

from chat_core.agents.commands import COMMAND_NAME, apply_core_option, build_core_options
from chat_core.domain.exceptions import BusinessError
from chat_core.domain.models import ChatMessage, ChatRequest
from chat_core.domain.platform import (
    CommandOption,
    IncomingMessage,
    InteractionEvent,
    MessageCommandEvent,
    ReactionEvent,
)
from chat_core.domain.state import ConversationState
from chat_core.infrastructure.concurrency import ConversationLocks
from chat_core.infrastructure.logging.logger import logger
from chat_core.modules.base import ModuleContext
from chat_core.modules.pipeline import ModulePipeline, merge_command_contributions
from chat_core.response.assembler import (
    CLEANUP_EMOJI,
    ResponseDeliverer,
    aggregate_stream,
    build_history_text,
    dedupe_files,
    extract_file_payloads,
    replace_pseudo_mentions,
)
from chat_core.retrieval.engine import (
    CONTEXT_SIMILARITY_THRESHOLD,
    ContextRetrievalEngine,
    RetrievalResult,
    image_attachments,
)
from chat_core.retrieval.images import (
    image_context_messages,
    select_images,
    should_attach_images,
    should_use_vision,
)

PIN_EMOJI = "📌"
REPLAY_EMOJI = "🔄"
SAVE_EMOJI = "💾"

IGNORE_PREFIX = "!ignore"
INSTRUCTION_COMMAND = "instruction"

MISMATCH_MESSAGE = "Guild mismatch detected for cached channel data. Refusing to apply command."


class ConversationEngine:
    def __init__(
        self,
        context: ModuleContext,
        pipeline: ModulePipeline,
        retrieval: ContextRetrievalEngine,
        deliverer: Optional[ResponseDeliverer] = None,
    ):
        self._context = context
        self._pipeline = pipeline
        self._retrieval = retrieval
        self._store = context.store
        self._provider_client = context.provider
        self._platform = context.platform
        self._settings = context.settings
        self._locks = ConversationLocks()
        self._deliverer = deliverer or ResponseDeliverer(
            context.platform,
            max_message_length=context.settings.max_message_length,
            max_file_bytes=context.settings.max_file_bytes,
            resolve_path=self._store.resolve_stored_path,
            on_image_sent=self._store.track_image_response,
        )

    @property
    def bot_user_id(self) -> int:
        return self._context.bot_user_id

    # ---- 生命周期 ----

    async def start(self) -> None:
        """加载持久化状态，初始化模块并注册命令。"""
        states = self._store.load()
        chunks = self._store.load_chunks()
        self._store.save_all()

        await self._pipeline.initialize()
        options = merge_command_contributions(build_core_options(), self._pipeline.get_command_contributions())
        await self._platform.register_commands(
            [CommandOption(COMMAND_NAME, "GPT-CLI commands", type="command", options=options)]
        )
        await self._pipeline.on_ready()
        logger.info(
            "Engine started",
            extra={"extra": {"states": states, "chunks": chunks,
                             "modules": [m.id for m in self._pipeline.modules]}},
        )

    async def shutdown(self) -> None:
        saved = self._store.save_all()
        logger.info("Engine stopped", extra={"extra": {"saved_states": saved}})

    # ---- 消息 ----

    async def handle_message(self, message: IncomingMessage) -> None:
        if message.author_id == self.bot_user_id:
            return
        async with self._locks.hold(message.channel_id):
            await self._process_message(message)

    async def handle_message_updated(self, message: IncomingMessage, previous_content: Optional[str] = None) -> None:
        """消息被编辑：先通知模块，正文确有变化时按新消息重新处理。"""
        if message.author_id == self.bot_user_id:
            return
        async with self._locks.hold(message.channel_id):
            await self._pipeline.on_message_updated(message)
            if message.content and message.content != previous_content:
                await self._process_message(message)

    async def _process_message(self, message: IncomingMessage) -> None:
        log_ctx: Dict[str, Any] = {
            "trace_id": f"tr-{uuid4().hex}",
            "conversation_id": message.channel_id,
            "message_id": message.id,
        }
        state = self._context.get_or_create_state(message)
        self._store.ensure_metadata(state, message.guild_id, message.guild_name, message.channel_name)

        await self._pipeline.on_message_received(message)
        claimed = self._context.release_turn(message.id)

        guild_match = self._store.is_identity_match(state, message.guild_id, "message")
        self._store.reset_prime_directives(state)

        if not state.options.enabled:
            return
        content = message.content or ""
        if content.startswith(IGNORE_PREFIX):
            return

        if message.attachments:
            await self._try_react(message.channel_id, message.id, SAVE_EMOJI)
            if any(a.is_image for a in message.attachments):
                await self._try_react(message.channel_id, message.id, CLEANUP_EMOJI)
        if not content.strip():
            return

        turn = ChatMessage(role="user", content=f"{message.author_name} (mention: <@{message.author_id}>): {content}")
        state.add_turn(turn)

        if claimed:
            self._log(logging.INFO, "Turn handled by module", log_ctx)
            self._store.save(message.channel_id)
            return
        if not message.is_tagged:
            self._store.save(message.channel_id)
            return

        await self._respond(state, message, turn, guild_match, log_ctx)
        self._store.save(message.channel_id)

    async def _respond(
        self,
        state: ConversationState,
        message: IncomingMessage,
        turn: ChatMessage,
        guild_match: bool,
        log_ctx: Dict[str, Any],
    ) -> None:
        new_images = []
        result = RetrievalResult()
        if guild_match:
            new_images = await self._retrieval.ingest_images(state, message)
            result = await self._retrieval.retrieve(state, message)

        selected = select_images(
            message.content,
            explicit=result.explicit_images,
            replied=result.replied_images,
            new=new_images,
            best_match=result.best_image,
            threshold=CONTEXT_SIMILARITY_THRESHOLD,
        )
        if selected:
            selected = await self._retrieval.refresh_descriptions(state, message.content, selected)
        image_files = image_attachments(selected) if should_attach_images(
            result.explicit_images, result.replied_images
        ) else []

        context: List[ChatMessage] = []
        context.extend(result.context)
        context.extend(await self._pipeline.get_additional_message_context(message, state))
        context.extend(image_context_messages(selected))
        if image_files:
            names = ", ".join(f.name for f in image_files)
            context.append(ChatMessage(
                role="system",
                content=f"Your response will include the image file(s) attached: {names}. "
                        "Do not say you cannot show, attach, or resend the image.",
            ))

        if state.options.muted:
            self._log(logging.INFO, "Conversation muted", log_ctx)
            return

        self._log(
            logging.INFO,
            "Generating response",
            log_ctx,
            context_messages=len(context),
            images=len(selected),
            history_length=state.history.length,
        )
        async with self._platform.typing(message.channel_id):
            answer: Optional[str] = None
            stored = [c for c in selected if c.has_stored_file]
            if should_use_vision(message.content, stored, bool(new_images)):
                answer = await self._retrieval.answer_with_vision(state, message.content, stored)
            if answer is None:
                req = ChatRequest(
                    provider=self._provider_client.name,
                    model=state.parameters.model,
                    messages=state.compose_prompt(context, turn),
                    temperature=state.parameters.temperature,
                    top_p=state.parameters.top_p,
                    max_tokens=state.parameters.max_tokens,
                )
                try:
                    answer = await aggregate_stream(self._provider_client.chat_stream(req))
                except BusinessError as e:
                    self._log(logging.ERROR, "Chat turn failed", log_ctx, code=e.code, error=e.message)
                    return

        text, files = extract_file_payloads(answer)
        text = replace_pseudo_mentions(text, message.author_name, message.author_id) or ""
        files = dedupe_files(files + image_files)
        if not text.strip() and not files:
            self._log(logging.WARNING, "Empty response", log_ctx)
            return

        sent = await self._deliverer.deliver(message.channel_id, text, files, reply_to=message.id)
        state.add_turn(ChatMessage(role="assistant", content=build_history_text(text, files)))
        self._log(
            logging.INFO,
            "Response delivered",
            log_ctx,
            messages=len(sent),
            files=len(files),
            response_chars=len(text),
        )

    # ---- 反应 ----

    async def handle_reaction(self, reaction: ReactionEvent) -> None:
        if reaction.user_id == self.bot_user_id:
            return
        message = reaction.message
        async with self._locks.hold(message.channel_id):
            await self._pipeline.on_reaction_added(reaction)
            if reaction.emoji == PIN_EMOJI:
                await self._pin_instruction(reaction)
            elif reaction.emoji == REPLAY_EMOJI:
                if message.author_id != self.bot_user_id:
                    await self._process_message(message)
            elif reaction.emoji == SAVE_EMOJI:
                if message.author_id != self.bot_user_id:
                    await self._save_embed(message)
            elif reaction.emoji == CLEANUP_EMOJI:
                await self._delete_images(reaction)

    async def _pin_instruction(self, reaction: ReactionEvent) -> None:
        message = reaction.message
        state = self._context.get_or_create_state(message)
        if not state.options.enabled or not message.content.strip():
            return
        state.add_instruction(message.content)
        await self._try_remove_reaction(message.channel_id, message.id, reaction.emoji, reaction.user_id)
        await self._try_reply(message.channel_id, message.id, "Instruction added.")
        self._store.save(message.channel_id)

    async def _save_embed(self, message: IncomingMessage) -> None:
        state = self._context.get_or_create_state(message)
        if not self._store.is_identity_match(state, message.guild_id, "embed-save"):
            await self._try_reply(message.channel_id, message.id, "Guild mismatch detected for embeds. Refusing save.")
            return
        for saved in await self._retrieval.save_embed(state, message):
            payload = json.dumps([c.to_dict() for c in saved.chunks], ensure_ascii=False, indent=2)
            sent = await self._platform.send_file(
                message.channel_id, saved.file_name, payload.encode("utf-8"),
                content=saved.summary, reply_to=message.id,
            )
            await self._try_react(message.channel_id, sent.id, CLEANUP_EMOJI)

    async def _delete_images(self, reaction: ReactionEvent) -> None:
        message = reaction.message
        state = self._context.get_or_create_state(message)
        if not self._store.is_identity_match(state, message.guild_id, "image-embed-delete"):
            await self._try_reply(
                message.channel_id, message.id, "Guild mismatch detected for image embeds. Refusing delete."
            )
            return
        embeds, files = self._store.delete_image_chunks(state, message)
        await self._try_remove_reaction(message.channel_id, message.id, reaction.emoji, reaction.user_id)
        if embeds > 0:
            reply = f"<@{reaction.user_id}> Deleted {embeds} image embed(s) and {files} file(s)."
        else:
            reply = f"<@{reaction.user_id}> No image embeds found to delete for that message."
        await self._try_reply(message.channel_id, message.id, reply)

    # ---- 命令 ----

    async def handle_interaction(self, interaction: InteractionEvent) -> None:
        async with self._locks.hold(interaction.channel_id):
            if await self._pipeline.on_interaction(interaction):
                return
            if interaction.command_name != COMMAND_NAME:
                return

            state = self._store.get_or_create(
                interaction.channel_id,
                guild_id=interaction.guild_id,
                guild_name=interaction.guild_name,
                channel_name=interaction.channel_name,
                is_private=interaction.is_private,
            )
            if not self._store.is_identity_match(state, interaction.guild_id, "slash-command"):
                await self._platform.respond_ephemeral(interaction.id, MISMATCH_MESSAGE)
                return

            if not interaction.options:
                responses = ["No options provided."]
            else:
                responses = [apply_core_option(state, option) for option in interaction.options]
            await self._platform.respond_ephemeral(interaction.id, "\n".join(responses) or "No changes made.")
            self._store.save(interaction.channel_id)
            logger.info(
                "Command applied",
                extra={"extra": {"conversation_id": interaction.channel_id,
                                 "options": [o.name for o in interaction.options]}},
            )

    async def handle_message_command(self, command: MessageCommandEvent) -> None:
        """消息菜单命令：先交给模块；``Instruction`` 把该消息加为置顶指令。"""
        message = command.message
        async with self._locks.hold(message.channel_id):
            await self._pipeline.on_message_command_executed(command)
            if command.command_name.lower() != INSTRUCTION_COMMAND:
                return
            state = self._context.get_or_create_state(message)
            if not state.options.enabled or not message.content.strip():
                return
            state.add_instruction(message.content)
            self._store.save(message.channel_id)
            await self._try_reply(message.channel_id, message.id, "Instruction added.")

    # ---- 平台调用 ----

    async def _try_react(self, channel_id: int, message_id: int, emoji: str) -> None:
        try:
            await self._platform.add_reaction(channel_id, message_id, emoji)
        except Exception as e:
            logger.warning(
                "Failed to add reaction",
                extra={"extra": {"channel_id": channel_id, "message_id": message_id, "emoji": emoji, "error": str(e)}},
            )

    async def _try_remove_reaction(self, channel_id: int, message_id: int, emoji: str, user_id: int) -> None:
        try:
            await self._platform.remove_reaction(channel_id, message_id, emoji, user_id)
        except Exception as e:
            logger.warning(
                "Failed to remove reaction",
                extra={"extra": {"channel_id": channel_id, "message_id": message_id, "error": str(e)}},
            )

    async def _try_reply(self, channel_id: int, message_id: int, content: str) -> None:
        try:
            await self._platform.send_message(channel_id, content, reply_to=message_id)
        except Exception as e:
            logger.warning(
                "Failed to reply",
                extra={"extra": {"channel_id": channel_id, "message_id": message_id, "error": str(e)}},
            )

    @staticmethod
    def _log(level: int, message: str, log_ctx: Dict[str, Any], **fields: Any) -> None:
        payload = dict(log_ctx)
        payload.update(fields)
        logger.log(level, message, extra={"extra": payload})
