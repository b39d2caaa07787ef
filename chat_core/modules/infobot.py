"""内置 infobot 模块：从聊天中学习 “X is Y” 形式的事实，并精确回答对应问题。

- 学习：未 @ 机器人的 ``<term> is|are|was|were <fact>`` 消息会被记下（learning 开启时）。
- 问答：@ 机器人或以问号结尾的消息先经过口语化改写，生成若干候选查询；
  任一查询规范化后与已知术语完全相等即命中。命中时模块直接回复并 claim_turn，
  引擎不再调用常规对话模型。
- 上下文：常规对话时，把与本轮消息向量相似度达标的事实作为系统上下文附加。
- 命中日志保留最近 50 条，另有按术语聚合的统计，用于排行榜。

文件（均在会话目录下，带社区令牌）：``facts``、``matches``、``matches.stats``。
"""

from collections import OrderedDict
from typing import Dict, List, Optional, Tuple

from chat_core.domain.documents import Factoid, FactoidMatch, FactoidMatchStats, format_ts, utcnow
from chat_core.domain.exceptions import BusinessError, StoreError
from chat_core.domain.models import ChatMessage, ChatRequest
from chat_core.domain.platform import (
    CommandOption,
    IncomingMessage,
    InteractionEvent,
    InteractionOption,
    ReactionEvent,
)
from chat_core.domain.state import ConversationState
from chat_core.factoids.normalize import build_queries, normalize_term, parse_set_statement, preprocess_question
from chat_core.infrastructure.logging.logger import logger
from chat_core.infrastructure.storage.paths import permalink
from chat_core.modules.base import CommandContribution, FeatureModule, ModuleContext
from chat_core.retrieval.similarity import chunk_text, rank

MAX_MATCH_LOG = 50
LEADERBOARD_SIZE = 20
MIN_QUERY_LENGTH = 2
MAX_QUERY_LENGTH = 512
# 可响应 🗑️/🛑 的最近回复数
MAX_TRACKED_RESPONSES = 500

DELETE_EMOJIS = ("🗑️", "🗑")
STOP_EMOJI = "🛑"

MISMATCH_MESSAGE = "Guild mismatch detected for cached channel data. Refusing to apply command."
REACTION_FOOTER = "React with 🛑 to disable infobot here, or 🗑️ to delete this factoid."

FACTOID_SYSTEM_PROMPT = (
    "You are a concise, personable Discord bot. Answer matched factoids in an infobot-inspired style. "
    "Never wrap replies in triple backtick code fences (including ```discord) unless the user explicitly "
    "asks for a code block. If prior conversation includes code fences, override that style and respond "
    "without code fences."
)

HELP_TEXT = "\n".join([
    "**Infobot help**",
    "_Teach it facts, then ask exact-match questions._",
    "",
    "**Learn facts (infobot on)**",
    "• `<term> is <fact>`",
    "• `<terms> are <fact>`",
    "• `<term> was <fact>`",
    "• `<terms> were <fact>`",
    "",
    "**Ask questions (exact match only)**",
    "• `what|who|where is|are <term>?`",
    "• `<term>?` (short form)",
    "",
    "**Enable / disable**",
    "• `/gptcli set infobot true|false`",
    "",
    "**Factoid commands**",
    "• `/gptcli infobot set term text`",
    "• `/gptcli infobot get term`",
    "• `/gptcli infobot delete term`",
    "• `/gptcli infobot list`",
    "• `/gptcli infobot leaderboard`",
    "• `/gptcli infobot clear`",
    "",
    "**Personality**",
    "• `/gptcli infobot personality prompt:\"...\"`",
    "",
    "**Reactions on factoid matches**",
    "• 🗑️ remove the matched factoid term",
    "• 🛑 disable infobot for this channel",
])

LIST_FOOTER = "\n".join([
    "",
    "**Manage factoids**",
    "• `/gptcli infobot set term text`",
    "• `/gptcli infobot get term`",
    "• `/gptcli infobot delete term`",
    "• `/gptcli infobot list`",
    "• `/gptcli infobot clear`",
    "• `/gptcli infobot leaderboard`",
])


def infobot_commands() -> CommandOption:
    def term_option() -> CommandOption:
        return CommandOption("term", "The factoid term", type="string", required=True)

    return CommandOption(
        "infobot",
        "Infobot commands",
        type="group",
        options=[
            CommandOption("help", "Show infobot help"),
            CommandOption("set", "Set a factoid", options=[
                term_option(),
                CommandOption("text", "The factoid text", type="string", required=True),
            ]),
            CommandOption("get", "Get a factoid", options=[term_option()]),
            CommandOption("delete", "Delete a factoid", options=[term_option()]),
            CommandOption("list", "List factoids"),
            CommandOption("leaderboard", "Show the infobot leaderboard"),
            CommandOption("clear", "Clear all factoids for this channel"),
            CommandOption("personality", "Set the infobot personality prompt", options=[
                CommandOption("prompt", "The personality prompt", type="string", required=True),
            ]),
        ],
    )


def filter_for_channel(factoids: List[Factoid], guild_id: int, channel_id: int) -> List[Factoid]:
    """来源为 0 视为通配；否则必须与当前社区、会话一致。"""
    return [
        f for f in factoids
        if (f.source_guild_id == 0 or f.source_guild_id == guild_id)
        and (f.source_channel_id == 0 or f.source_channel_id == channel_id)
    ]


def find_exact(factoids: List[Factoid], queries: List[str]) -> Optional[Factoid]:
    for query in queries:
        normalized = normalize_term(query)
        if not normalized:
            continue
        for factoid in factoids:
            if factoid.term and normalize_term(factoid.term) == normalized:
                return factoid
    return None


def stats_from_matches(matches: List[FactoidMatch]) -> FactoidMatchStats:
    stats = FactoidMatchStats()
    for match in sorted(matches, key=lambda m: m.matched_at):
        key = normalize_term(match.term) or normalize_term(match.query) or "unknown"
        display = match.term if match.term and match.term.strip() else key
        stats.record(key, display, match.response_message_id, match.user_id)
    return stats


def source_mention(factoid: Factoid) -> str:
    if factoid.source_user_id:
        return f"<@{factoid.source_user_id}>"
    return factoid.source_username or "unknown"


def format_source_line(factoid: Factoid, link: Optional[str]) -> str:
    mention = source_mention(factoid)
    created = format_ts(factoid.created_at)
    if link is None:
        return f"Source: {mention} on {created}."
    return f"Source: {mention} in {link} on {created}."


def canned_reply(term: str, factoid: Factoid, link: Optional[str]) -> str:
    lines = [f"I heard {term} is {factoid.text}", format_source_line(factoid, link)]
    if link:
        lines.append(f"Original message: {link}")
    return "\n".join(lines) + f"\n\n{REACTION_FOOTER}"


def complete_phrased_reply(content: str, factoid: Factoid, link: Optional[str]) -> str:
    """模型润色后的回复必须保留来源提及、链接和事实原文，缺失的补在末尾。"""
    mention = source_mention(factoid)
    missing = []
    if mention and mention not in content:
        missing.append(mention)
    if link and link not in content:
        missing.append(link)
    if factoid.text and factoid.text not in content:
        missing.append(f"Fact: {factoid.text}")
    if missing:
        content = f"{content}\n\nSource: {' '.join(missing)}"
    if link:
        line = f"Original message: {link}"
        if line.lower() not in content.lower():
            content = f"{content}\n{line}"
    return f"{content}\n\n{REACTION_FOOTER}"


def _log_invalid_artifact(artifact, error: Exception) -> None:
    logger.error(
        "Invalid infobot file",
        extra={"extra": {"code": "STORE_READ_ERROR", "path": str(artifact.path), "error": str(error)}},
    )


class InfobotModule(FeatureModule):
    id = "infobot"
    name = "Infobot"

    def __init__(self) -> None:
        self.factoids: Dict[int, List[Factoid]] = {}
        self.matches: Dict[int, List[FactoidMatch]] = {}
        self.stats: Dict[int, FactoidMatchStats] = {}
        # 机器人回复消息 id -> (会话 id, 命中的术语)
        self._responses: "OrderedDict[int, Tuple[int, str]]" = OrderedDict()

    # ---- 生命周期 ----

    async def initialize(self, context: ModuleContext) -> None:
        self._load_factoids(context)
        self._load_matches(context)
        self._load_stats(context)
        logger.info(
            "Infobot data loaded",
            extra={"extra": {"factoid_channels": len(self.factoids), "match_channels": len(self.matches)}},
        )

    def get_command_contributions(self, context: ModuleContext) -> List[CommandContribution]:
        return [
            CommandContribution.top_level(infobot_commands()),
            CommandContribution.for_option(
                "set", CommandOption("infobot", "Enable or disable infobot learning", type="boolean")
            ),
        ]

    # ---- 加载 ----

    def _load_factoids(self, context: ModuleContext) -> None:
        store = context.store
        for artifact in store.iter_module_artifacts("facts", "factoids"):
            raw = artifact.payload if isinstance(artifact.payload, list) else []
            try:
                factoids = [Factoid.from_dict(item) for item in raw if isinstance(item, dict)]
            except (TypeError, ValueError) as e:
                _log_invalid_artifact(artifact, e)
                continue
            updated = False
            for factoid in factoids:
                if factoid.source_channel_id == 0:
                    factoid.source_channel_id = artifact.channel_id
                    updated = True
                if factoid.source_guild_id == 0 and artifact.guild_id:
                    factoid.source_guild_id = artifact.guild_id
                    updated = True
            self.factoids[artifact.channel_id] = factoids

            payload = [f.to_dict() for f in factoids]
            try:
                if not artifact.has_token and artifact.path_guild_id is not None:
                    store.adopt_legacy_json(
                        artifact.path, ".json", artifact.guild_id, "json", payload, delete_legacy=True
                    )
                elif updated and artifact.has_token:
                    store.adopt_legacy_json(
                        artifact.path, ".json", artifact.guild_id, "json", payload, overwrite_existing=True
                    )
            except StoreError as e:
                logger.error(e.message, extra={"extra": {"code": e.code, "path": str(artifact.path)}})

    def _load_matches(self, context: ModuleContext) -> None:
        store = context.store
        for artifact in store.iter_module_artifacts("matches", "matches", exclude_prefix="matches.stats"):
            raw = artifact.payload if isinstance(artifact.payload, list) else []
            try:
                matches = [FactoidMatch.from_dict(item) for item in raw if isinstance(item, dict)]
            except (TypeError, ValueError) as e:
                _log_invalid_artifact(artifact, e)
                continue
            self.matches[artifact.channel_id] = matches
            if not artifact.has_token and artifact.path_guild_id is not None:
                try:
                    store.adopt_legacy_json(
                        artifact.path, ".json", artifact.guild_id, "json",
                        [m.to_dict() for m in matches], delete_legacy=True,
                    )
                except StoreError as e:
                    logger.error(e.message, extra={"extra": {"code": e.code, "path": str(artifact.path)}})

    def _load_stats(self, context: ModuleContext) -> None:
        store = context.store
        for artifact in store.iter_module_artifacts("matches.stats", "match-stats"):
            raw = artifact.payload if isinstance(artifact.payload, dict) else {}
            try:
                stats = FactoidMatchStats.from_dict(raw)
            except (TypeError, ValueError) as e:
                _log_invalid_artifact(artifact, e)
                continue
            self.stats[artifact.channel_id] = stats
            if not artifact.has_token and artifact.path_guild_id is not None:
                try:
                    store.adopt_legacy_json(
                        artifact.path, ".json", artifact.guild_id, "json", stats.to_dict(), delete_legacy=True
                    )
                except StoreError as e:
                    logger.error(e.message, extra={"extra": {"code": e.code, "path": str(artifact.path)}})

    # ---- 持久化 ----

    def _write(self, context: ModuleContext, state: ConversationState, base_name: str, payload) -> None:
        try:
            context.store.write_module_json(state, base_name, payload)
        except StoreError as e:
            logger.error(e.message, extra={"extra": {"code": e.code, "channel_id": state.channel_id}})

    def _save_factoids(self, context: ModuleContext, state: ConversationState) -> None:
        entries = self.factoids.get(state.channel_id, [])
        self._write(context, state, "facts", [f.to_dict() for f in entries])

    def _save_matches(self, context: ModuleContext, state: ConversationState) -> None:
        entries = self.matches.get(state.channel_id, [])
        self._write(context, state, "matches", [m.to_dict() for m in entries])

    def _save_stats(self, context: ModuleContext, state: ConversationState) -> None:
        stats = self.stats.get(state.channel_id) or FactoidMatchStats()
        self._write(context, state, "matches.stats", stats.to_dict())

    # ---- 事实增删查 ----

    def usable_factoids(self, channel_id: int, guild_id: int) -> List[Factoid]:
        return filter_for_channel(self.factoids.get(channel_id, []), guild_id, channel_id)

    def find_term(self, channel_id: int, guild_id: int, term: str) -> Optional[Factoid]:
        return find_exact(self.usable_factoids(channel_id, guild_id), [term])

    def remove_term(self, context: ModuleContext, state: ConversationState, guild_id: int, term: str) -> bool:
        factoids = self.factoids.get(state.channel_id)
        if not factoids:
            return False
        normalized = normalize_term(term)
        scoped = {id(f) for f in filter_for_channel(factoids, guild_id, state.channel_id)}
        kept = [
            f for f in factoids
            if not (id(f) in scoped and f.term and normalize_term(f.term) == normalized)
        ]
        if len(kept) == len(factoids):
            return False
        self.factoids[state.channel_id] = kept
        self._save_factoids(context, state)
        return True

    async def save_factoid(
        self,
        context: ModuleContext,
        state: ConversationState,
        term: str,
        text: str,
        *,
        guild_id: int,
        message_id: int = 0,
        user_id: int = 0,
        username: Optional[str] = None,
    ) -> int:
        """切片并向量化事实文本后保存；同一作用域内的同名术语被替换。返回保存的条数。"""
        normalized = normalize_term(term)
        if not normalized:
            return 0
        pieces = [p.strip() for p in chunk_text(text.strip(), state.parameters.chunk_size) if p.strip()]
        if not pieces:
            return 0
        try:
            vectors = await context.provider.embed(pieces)
        except BusinessError as e:
            logger.warning(
                "Factoid embedding failed",
                extra={"extra": {"code": e.code, "error": e.message, "channel_id": state.channel_id}},
            )
            return 0

        created = utcnow()
        entries = [
            Factoid(
                term=normalized,
                text=piece,
                embedding=vector,
                source_guild_id=guild_id,
                source_channel_id=state.channel_id,
                source_message_id=message_id,
                source_user_id=user_id,
                source_username=username,
                created_at=created,
            )
            for piece, vector in zip(pieces, vectors)
            if vector
        ]
        if not entries:
            return 0

        existing = self.factoids.get(state.channel_id, [])
        scoped = {id(f) for f in filter_for_channel(existing, guild_id, state.channel_id)}
        kept = [f for f in existing if not (id(f) in scoped and normalize_term(f.term) == normalized)]
        self.factoids[state.channel_id] = kept + entries
        self._save_factoids(context, state)
        logger.info(
            "Saved factoid",
            extra={"extra": {"channel_id": state.channel_id, "term": normalized, "chunks": len(entries)}},
        )
        return len(entries)

    # ---- 消息 ----

    async def on_message_received(self, context: ModuleContext, message: IncomingMessage) -> None:
        if message.author_id == context.bot_user_id or not message.content or not message.content.strip():
            return
        state = context.get_or_create_state(message)
        context.store.ensure_metadata(state, message.guild_id, message.guild_name, message.channel_name)
        if not context.is_identity_match(state, message.guild_id, "factoid-message"):
            return
        if not state.options.learning_enabled:
            return
        await self._handle_message(context, state, message)

    async def _handle_message(self, context: ModuleContext, state: ConversationState, message: IncomingMessage) -> None:
        tagged = message.is_tagged
        content = message.content.strip()
        if tagged:
            for token in (f"<@{context.bot_user_id}>", f"<@!{context.bot_user_id}>"):
                content = content.replace(token, "")
            content = content.strip()

        has_question_mark = content.endswith("?")
        if tagged or has_question_mark:
            question = preprocess_question(content)
            queries = build_queries(question, message.author_name, tagged, context.bot_name)
            if queries:
                if not tagged and not MIN_QUERY_LENGTH <= len(queries[0]) <= MAX_QUERY_LENGTH:
                    return
                matched = await self._respond_with_match(context, state, message, queries)
                if matched or has_question_mark:
                    return

        parsed = parse_set_statement(content)
        if parsed is None or message.mentions_bot:
            return
        term, fact = parsed
        saved = await self.save_factoid(
            context, state, term, fact,
            guild_id=message.guild_id,
            message_id=message.id,
            user_id=message.author_id,
            username=message.author_name,
        )
        if saved and tagged:
            await context.platform.send_message(
                message.channel_id, f"Learned a new factoid. `{term}` → {fact}", reply_to=message.id
            )

    async def _respond_with_match(
        self, context: ModuleContext, state: ConversationState, message: IncomingMessage, queries: List[str]
    ) -> bool:
        usable = self.usable_factoids(message.channel_id, message.guild_id)
        if not usable:
            return False
        factoid = find_exact(usable, queries)
        if factoid is None:
            return False

        async with context.platform.typing(message.channel_id):
            reply = await self._build_reply(context, state, queries[0], factoid)
        if not reply or not reply.strip():
            return False

        context.claim_turn(message.id)
        sent = await context.platform.send_message(message.channel_id, reply, reply_to=message.id)
        logger.info(
            "Factoid matched",
            extra={"extra": {"channel_id": message.channel_id, "term": factoid.term, "query": queries[0]}},
        )
        if factoid.term:
            self._responses[sent.id] = (message.channel_id, factoid.term)
            while len(self._responses) > MAX_TRACKED_RESPONSES:
                self._responses.popitem(last=False)
            for emoji in (DELETE_EMOJIS[0], STOP_EMOJI):
                await context.platform.add_reaction(message.channel_id, sent.id, emoji)
            self._track_match(context, state, message, factoid, queries[0], sent.id)
        return True

    async def _build_reply(
        self, context: ModuleContext, state: ConversationState, query: str, factoid: Factoid
    ) -> Optional[str]:
        link = permalink(state.guild_id, state.channel_id, factoid.source_message_id)
        term = factoid.term if factoid.term and factoid.term.strip() else query
        if not context.settings.infobot_llm_phrasing:
            return canned_reply(term, factoid, link)

        instruction = "Include the mention verbatim." if link is None else "Include the mention and link verbatim."
        prompt = (
            f"Matched factoid\nTerm: {term}\nFact: {factoid.text}\n{format_source_line(factoid, link)}\n"
            "Respond in one short paragraph: lead with an infobot-style sentence that repeats the fact verbatim, "
            "then add a short, personable blurb that explains why it matches the question or provides likely "
            f"context. {instruction}"
        )
        personality = state.options.learning_personality_prompt or context.settings.learning_personality_prompt
        system = FACTOID_SYSTEM_PROMPT if not personality else f"{FACTOID_SYSTEM_PROMPT}\n{personality}"
        req = ChatRequest(
            provider=context.provider.name,
            model=state.parameters.model,
            messages=[ChatMessage(role="system", content=system), ChatMessage(role="user", content=prompt)],
        )
        try:
            result = await context.provider.chat(req)
        except BusinessError as e:
            logger.warning("Factoid response failed", extra={"extra": {"code": e.code, "error": e.message}})
            return canned_reply(term, factoid, link)
        content = result.content
        if not content or not content.strip():
            return canned_reply(term, factoid, link)
        return complete_phrased_reply(content, factoid, link)

    def _track_match(
        self,
        context: ModuleContext,
        state: ConversationState,
        message: IncomingMessage,
        factoid: Factoid,
        query: str,
        response_message_id: int,
    ) -> None:
        if message.is_private:
            return
        matches = self.matches.setdefault(message.channel_id, [])
        matches.append(
            FactoidMatch(
                term=factoid.term,
                query=query,
                query_message_id=message.id,
                response_message_id=response_message_id,
                user_id=message.author_id,
            )
        )
        if len(matches) > MAX_MATCH_LOG:
            del matches[: len(matches) - MAX_MATCH_LOG]
        self._save_matches(context, state)

        stats = self.stats.setdefault(message.channel_id, FactoidMatchStats())
        key = normalize_term(factoid.term) or normalize_term(query) or "unknown"
        display = factoid.term if factoid.term and factoid.term.strip() else key
        stats.record(key, display, response_message_id, message.author_id)
        self._save_stats(context, state)

    # ---- 附加上下文 ----

    async def get_additional_message_context(
        self, context: ModuleContext, message: IncomingMessage, state: ConversationState
    ) -> List[ChatMessage]:
        if not context.is_identity_match(state, message.guild_id, "factoid-context"):
            return []
        usable = self.usable_factoids(message.channel_id, message.guild_id)
        if not usable or not message.content.strip():
            return []
        try:
            vectors = await context.provider.embed([message.content])
        except BusinessError as e:
            logger.warning("Factoid context embedding failed", extra={"extra": {"code": e.code, "error": e.message}})
            return []
        if not vectors or not vectors[0]:
            return []
        closest = rank(
            usable, vectors[0], state.options.factoid_similarity_threshold, state.parameters.closest_match_limit
        )
        if not closest:
            return []
        messages = [
            ChatMessage(role="system", content="Factoid context for the next message. Use these facts if relevant:")
        ]
        for factoid, _ in closest:
            messages.append(ChatMessage(role="system", content=f"---factoid---\r\n{factoid.text}\r\n--end factoid---"))
        return messages

    # ---- 反应 ----

    async def on_reaction_added(self, context: ModuleContext, reaction: ReactionEvent) -> None:
        if reaction.user_id == context.bot_user_id:
            return
        if reaction.emoji not in DELETE_EMOJIS and reaction.emoji != STOP_EMOJI:
            return
        message = reaction.message
        metadata = self._responses.get(message.id)
        if metadata is None or metadata[0] != message.channel_id:
            return
        term = metadata[1]
        state = context.get_or_create_state(message)
        platform = context.platform

        if reaction.emoji in DELETE_EMOJIS:
            removed = self.remove_term(context, state, message.guild_id, term)
            await platform.remove_all_reactions(message.channel_id, message.id)
            reply = (
                f"<@{reaction.user_id}> Factoid removed: {term}."
                if removed else f"<@{reaction.user_id}> No factoid found for {term}."
            )
            await platform.send_message(message.channel_id, reply, reply_to=message.id)
            context.save(message.channel_id)
            return

        if state.options.learning_enabled:
            state.options.learning_enabled = False
            context.save(message.channel_id)
        await platform.remove_reaction(message.channel_id, message.id, reaction.emoji, reaction.user_id)
        await platform.send_message(message.channel_id, "Infobot disabled for this channel.", reply_to=message.id)

    # ---- 命令 ----

    async def on_interaction(self, context: ModuleContext, interaction: InteractionEvent) -> bool:
        if interaction.command_name != "gptcli" or not interaction.options:
            return False
        handled = False
        for option in interaction.options:
            name = option.name.lower()
            if name == "infobot":
                await self._handle_command(context, interaction, option)
                handled = True
            elif name == "set":
                sub = option.first
                if sub is not None and sub.name.lower() == "infobot":
                    await self._handle_toggle(context, interaction, sub)
                    handled = True
        return handled

    def _interaction_state(self, context: ModuleContext, interaction: InteractionEvent) -> Optional[ConversationState]:
        state = context.store.get_or_create(
            interaction.channel_id,
            guild_id=interaction.guild_id,
            guild_name=interaction.guild_name,
            channel_name=interaction.channel_name,
            is_private=interaction.is_private,
        )
        if not context.is_identity_match(state, interaction.guild_id, "slash-command"):
            return None
        return state

    async def _handle_toggle(self, context: ModuleContext, interaction: InteractionEvent, option: InteractionOption) -> None:
        state = self._interaction_state(context, interaction)
        if state is None:
            await context.platform.respond_ephemeral(interaction.id, MISMATCH_MESSAGE)
            return
        if isinstance(option.value, bool):
            state.options.learning_enabled = option.value
            reply = f"Infobot {'enabled' if option.value else 'disabled'}."
        else:
            reply = "Provide true or false for infobot setting."
        await context.platform.respond_ephemeral(interaction.id, reply)
        context.save(interaction.channel_id)

    async def _handle_command(self, context: ModuleContext, interaction: InteractionEvent, option: InteractionOption) -> None:
        state = self._interaction_state(context, interaction)
        if state is None:
            await context.platform.respond_ephemeral(interaction.id, MISMATCH_MESSAGE)
            return

        sub = option.first
        if sub is None:
            reply = "Specify an infobot command."
        else:
            reply = await self._run_command(context, interaction, state, sub)
        await context.platform.respond_ephemeral(interaction.id, reply or "No changes made.")
        context.save(interaction.channel_id)

    async def _run_command(
        self,
        context: ModuleContext,
        interaction: InteractionEvent,
        state: ConversationState,
        sub: InteractionOption,
    ) -> str:
        name = sub.name.lower()
        term = str(sub.value_of("term") or "").strip()
        channel_id, guild_id = interaction.channel_id, interaction.guild_id

        if name == "help":
            return HELP_TEXT
        if name == "set":
            text = str(sub.value_of("text") or "").strip()
            if not term or not text:
                return "Provide term and text."
            await self.save_factoid(
                context, state, term, text,
                guild_id=guild_id, user_id=interaction.user_id, username=interaction.user_name,
            )
            return f"Factoid set: {term}."
        if name == "get":
            if not term:
                return "Provide term."
            entry = self.find_term(channel_id, guild_id, term)
            return f"No factoid found for {term}." if entry is None else f"{term} -> {entry.text}"
        if name == "delete":
            if not term:
                return "Provide term."
            if self.remove_term(context, state, guild_id, term):
                return f"Factoid deleted: {term}."
            return f"No factoid found for {term}."
        if name == "list":
            return self._list_text(channel_id, guild_id)
        if name == "leaderboard":
            if interaction.is_private:
                return "Infobot leaderboard is not tracked in DMs."
            return self._leaderboard_text(context, state)
        if name == "clear":
            if self.factoids.pop(channel_id, None) is not None:
                self._save_factoids(context, state)
                return "All factoids cleared for this channel."
            return "No factoids stored."
        if name == "personality":
            prompt = str(sub.value_of("prompt") or "").strip()
            if not prompt:
                return "Provide a personality prompt."
            state.options.learning_personality_prompt = prompt
            return "Infobot personality prompt updated."
        return f"Unknown infobot command: {sub.name}"

    def _list_text(self, channel_id: int, guild_id: int) -> str:
        usable = [f for f in self.usable_factoids(channel_id, guild_id) if f.term and f.term.strip()]
        if not usable:
            return "No factoids stored."
        # 同一术语可能被切成多片：取最新一批，按原顺序拼接
        grouped: Dict[str, List[Factoid]] = {}
        for factoid in usable:
            grouped.setdefault(factoid.term.lower(), []).append(factoid)
        lines = []
        for key in sorted(grouped):
            entries = grouped[key]
            latest = max(f.created_at for f in entries)
            text = " ".join(f.text for f in entries if f.created_at == latest and f.text.strip())
            lines.append(f"{entries[0].term} -> {text}")
        return "Factoids:\n" + "\n".join(lines) + LIST_FOOTER

    def _leaderboard_text(self, context: ModuleContext, state: ConversationState) -> str:
        stats = self.stats.setdefault(state.channel_id, FactoidMatchStats())
        matches = self.matches.get(state.channel_id)
        if stats.total == 0 and matches:
            stats = stats_from_matches(matches)
            self.stats[state.channel_id] = stats
            self._save_stats(context, state)
        if stats.total == 0 or not stats.term_counts:
            return "No infobot matches recorded yet."

        ordered = sorted(stats.term_counts.items(), key=lambda kv: (-kv[1], kv[0]))[:LEADERBOARD_SIZE]
        lines = []
        for index, (key, count) in enumerate(ordered, start=1):
            display = stats.term_display_names.get(key) or key
            message_id = stats.last_response_message_ids.get(key)
            link = permalink(state.guild_id, state.channel_id, message_id) if message_id else None
            label = "match" if count == 1 else "matches"
            lines.append(f"• {index}. {display} - {count} {label} - {link or '(link unavailable)'}")
        return "**Infobot leaderboard**\n" + "\n".join(lines) + f"\nTotal matches: {stats.total}."
