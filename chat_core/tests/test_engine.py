import asyncio

import pytest

from conftest import FakePlatform, FakeProvider

from chat_core.api.service import build_engine
from chat_core.domain.documents import Chunk
from chat_core.domain.exceptions import RateLimitError
from chat_core.domain.models import ChatMessage
from chat_core.domain.platform import (
    Attachment,
    IncomingMessage,
    InteractionEvent,
    InteractionOption,
    MessageCommandEvent,
    ReactionEvent,
)
from chat_core.modules.base import FeatureModule

GUILD = dict(guild_id=1, guild_name="guild", channel_name="general")


def _message(message_id, content, **kwargs):
    values = dict(id=message_id, channel_id=10, author_id=1, author_name="alice", content=content, **GUILD)
    values.update(kwargs)
    return IncomingMessage(**values)


def _tagged(message_id, content, **kwargs):
    return _message(message_id, f"<@999> {content}", mentions_bot=True, **kwargs)


def _set(name, value, interaction_id=1, channel_id=10):
    return InteractionEvent(
        id=interaction_id, command_name="gptcli", channel_id=channel_id, user_id=1, user_name="alice",
        options=[InteractionOption("set", options=[InteractionOption(name, value)])], **GUILD,
    )


class FailingStreamProvider(FakeProvider):
    async def chat_stream(self, req):
        self.stream_requests.append(req)
        raise RateLimitError(code="RATE_LIMIT", message="slow down", http_status=429)
        yield


@pytest.fixture
def make_engine(make_settings):
    def _make(provider=None, **overrides):
        platform = FakePlatform()
        provider = provider or FakeProvider()
        engine = build_engine(platform, make_settings(**overrides), provider=provider)
        return engine, platform, provider

    return _make


def _state(engine):
    return engine._store.get(10)


def test_start_registers_merged_command_tree(make_engine):
    engine, platform, _ = make_engine()
    asyncio.run(engine.start())

    root = platform.commands[0]
    assert root.name == "gptcli"
    assert root.type == "command"
    assert [o.name for o in root.options] == ["help", "instruction", "clear", "set", "infobot"]
    assert root.find("set").find("infobot") is not None


def test_disabled_channel_stays_silent(make_engine):
    engine, platform, provider = make_engine()

    async def scenario():
        await engine.start()
        await engine.handle_message(_tagged(100, "hello there"))

    asyncio.run(scenario())
    assert platform.sent == []
    assert provider.stream_requests == []
    assert len(_state(engine).history) == 0


def test_tagged_message_gets_streamed_reply(make_engine):
    engine, platform, provider = make_engine(provider=FakeProvider(reply="Hi <@alice>, general answer"))

    async def scenario():
        await engine.start()
        await engine.handle_interaction(_set("enabled", True))
        await engine.handle_message(_message(99, "just chatting"))
        await engine.handle_message(_tagged(100, "hello there"))

    asyncio.run(scenario())

    assert platform.ephemeral[0] == (1, "InstructionChat bot enabled.")
    assert len(provider.stream_requests) == 1
    request = provider.stream_requests[0]
    assert request.messages[0].content.startswith("Prime Directive: ")
    assert request.messages[1].content == "Instructions: "
    assert request.messages[2].content == "alice (mention: <@1>): just chatting"
    assert request.messages[-1].content == "alice (mention: <@1>): <@999> hello there"
    assert request.model == "gpt-4o"

    assert platform.sent[-1]["content"] == "Hi <@1>, general answer"
    assert platform.sent[-1]["reply_to"] == 100
    turns = _state(engine).history.turns
    assert [t.role for t in turns] == ["user", "user", "assistant"]
    assert turns[-1].content == "Hi <@1>, general answer"


def test_factoid_hit_skips_the_model(make_engine):
    engine, platform, provider = make_engine()

    async def scenario():
        await engine.start()
        await engine.handle_interaction(_set("enabled", True))
        await engine.handle_message(_message(100, "foo is a metasyntactic variable"))
        await engine.handle_message(_tagged(101, "what is foo?"))

    asyncio.run(scenario())

    assert provider.stream_requests == []
    assert platform.sent[-1]["content"].startswith("I heard foo is a metasyntactic variable")
    assert platform.sent[-1]["reply_to"] == 101
    turns = _state(engine).history.turns
    assert [t.content for t in turns] == [
        "alice (mention: <@1>): foo is a metasyntactic variable",
        "alice (mention: <@1>): <@999> what is foo?",
    ]


def test_muted_conversation_records_but_does_not_reply(make_engine):
    engine, platform, provider = make_engine()

    async def scenario():
        await engine.start()
        await engine.handle_interaction(_set("enabled", True))
        await engine.handle_interaction(_set("mute", True, interaction_id=2))
        await engine.handle_message(_tagged(100, "anyone there"))

    asyncio.run(scenario())
    assert platform.sent == []
    assert provider.stream_requests == []
    assert len(_state(engine).history) == 1


def test_ignore_prefix_skips_message(make_engine):
    engine, platform, provider = make_engine()

    async def scenario():
        await engine.start()
        await engine.handle_interaction(_set("enabled", True))
        await engine.handle_message(_message(100, "!ignore <@999> not for you", mentions_bot=True))

    asyncio.run(scenario())
    assert provider.stream_requests == []
    assert len(_state(engine).history) == 0


def test_provider_failure_fails_only_the_turn(make_engine):
    engine, platform, provider = make_engine(provider=FailingStreamProvider())

    async def scenario():
        await engine.start()
        await engine.handle_interaction(_set("enabled", True))
        await engine.handle_message(_tagged(100, "hello there"))

    asyncio.run(scenario())
    assert len(provider.stream_requests) == 1
    assert platform.sent == []
    assert [t.role for t in _state(engine).history.turns] == ["user"]


def test_file_blocks_become_attachments(make_engine):
    reply = 'Here it is.\n<gptcli_file name="hello.py">print("hi")</gptcli_file>'
    engine, platform, _ = make_engine(provider=FakeProvider(reply=reply))

    async def scenario():
        await engine.start()
        await engine.handle_interaction(_set("enabled", True))
        await engine.handle_message(_tagged(100, "write hello world"))

    asyncio.run(scenario())
    assert platform.files[0]["filename"] == "hello.py"
    assert platform.files[0]["data"] == b'print("hi")'
    assert platform.files[0]["content"] == "Here it is."
    assert _state(engine).history.turns[-1].content == "Here it is.\n[Attached file(s): hello.py]"


def test_image_upload_then_explicit_request_attaches_and_cleans_up(make_engine):
    engine, platform, provider = make_engine()
    upload = _tagged(100, "what is in this picture?", attachments=[Attachment(id=7, filename="cat.png", data=b"png")])

    async def scenario():
        await engine.start()
        await engine.handle_interaction(_set("enabled", True))
        await engine.handle_message(upload)
        await engine.handle_message(_tagged(101, "show me cat.png again"))
        response_id = platform.files[-1]["id"]
        response = _message(response_id, "general answer", author_id=999, author_name="bot")
        await engine.handle_reaction(ReactionEvent("🧹", 1, "alice", response))
        return response_id

    response_id = asyncio.run(scenario())

    assert (10, 100, "💾") in platform.reactions
    assert (10, 100, "🧹") in platform.reactions
    first_prompt = [m.content for m in provider.stream_requests[0].messages]
    assert any(c.startswith('Image context (cat.png): Image attachment "cat.png".') for c in first_prompt)

    assert platform.files[-1]["filename"] == "cat.png"
    assert platform.files[-1]["data"] == b"png"
    assert (10, response_id, "🧹") in platform.reactions
    assert platform.sent[-1]["content"] == "<@1> Deleted 1 image embed(s) and 1 file(s)."
    assert [c for c in engine._store.channel_chunks(10) if c.is_image] == []


def test_pin_reaction_adds_instruction(make_engine):
    engine, platform, _ = make_engine()
    message = _message(100, "always answer in haiku")

    async def scenario():
        await engine.start()
        await engine.handle_interaction(_set("enabled", True))
        await engine.handle_reaction(ReactionEvent("📌", 2, "bob", message))

    asyncio.run(scenario())
    assert _state(engine).instruction_text == "always answer in haiku"
    assert platform.removed_reactions == [(10, 100, "📌", 2)]
    assert platform.sent[-1]["content"] == "Instruction added."


def test_replay_reaction_reprocesses_message(make_engine):
    engine, platform, provider = make_engine()
    message = _tagged(100, "hello there")

    async def scenario():
        await engine.start()
        await engine.handle_interaction(_set("enabled", True))
        await engine.handle_message(message)
        await engine.handle_reaction(ReactionEvent("🔄", 1, "alice", message))

    asyncio.run(scenario())
    assert len(provider.stream_requests) == 2
    assert len(platform.sent) == 2


def test_edited_message_is_reprocessed_only_when_changed(make_engine):
    engine, platform, provider = make_engine()
    edited = _tagged(100, "hello again")

    async def scenario():
        await engine.start()
        await engine.handle_interaction(_set("enabled", True))
        await engine.handle_message_updated(edited, previous_content=edited.content)
        await engine.handle_message_updated(edited, previous_content="<@999> hello")

    asyncio.run(scenario())
    assert len(provider.stream_requests) == 1


def test_save_reaction_sends_embed_files(make_engine):
    engine, platform, _ = make_engine()
    message = _message(100, "remember the deploy steps")

    async def scenario():
        await engine.start()
        await engine.handle_reaction(ReactionEvent("💾", 1, "alice", message))

    asyncio.run(scenario())
    sent = platform.files[0]
    assert sent["filename"] == "100.embed.json"
    assert sent["content"] == "Message saved as 1 documents."
    assert sent["reply_to"] == 100
    assert (10, sent["id"], "🧹") in platform.reactions
    assert len(engine._store.channel_chunks(10)) == 1


def test_cleanup_reaction_without_images(make_engine):
    engine, platform, _ = make_engine()

    async def scenario():
        await engine.start()
        await engine.handle_reaction(ReactionEvent("🧹", 1, "alice", _message(100, "nothing here")))

    asyncio.run(scenario())
    assert platform.sent[-1]["content"] == "<@1> No image embeds found to delete for that message."


def test_interaction_responses(make_engine):
    engine, platform, _ = make_engine()
    multi = InteractionEvent(
        id=5, command_name="gptcli", channel_id=10, user_id=1, user_name="alice",
        options=[
            InteractionOption("set", options=[InteractionOption("max-tokens", 1024)]),
            InteractionOption("instruction", options=[
                InteractionOption("add", options=[InteractionOption("text", "be brief")]),
            ]),
        ],
        **GUILD,
    )
    empty = InteractionEvent(id=6, command_name="gptcli", channel_id=10, user_id=1, user_name="alice", **GUILD)
    infobot = InteractionEvent(
        id=7, command_name="gptcli", channel_id=10, user_id=1, user_name="alice",
        options=[InteractionOption("infobot", options=[InteractionOption("list")])], **GUILD,
    )
    other_guild = InteractionEvent(
        id=8, command_name="gptcli", channel_id=10, user_id=1, user_name="alice",
        guild_id=2, options=[InteractionOption("help")],
    )

    async def scenario():
        await engine.start()
        for interaction in (multi, empty, infobot, other_guild):
            await engine.handle_interaction(interaction)

    asyncio.run(scenario())
    assert platform.ephemeral[0] == (5, "Max tokens set to 1024.\nInstruction added.")
    assert platform.ephemeral[1] == (6, "No options provided.")
    assert platform.ephemeral[2] == (7, "No factoids stored.")
    assert platform.ephemeral[3][0] == 8
    assert platform.ephemeral[3][1].startswith("Guild mismatch detected")
    assert len(platform.ephemeral) == 4
    assert _state(engine).parameters.max_tokens == 1024


def test_message_command_adds_instruction(make_engine):
    engine, platform, _ = make_engine()
    message = _message(100, "use metric units")

    async def scenario():
        await engine.start()
        await engine.handle_interaction(_set("enabled", True))
        await engine.handle_message_command(MessageCommandEvent("Instruction", 1, "alice", message))
        await engine.handle_message_command(MessageCommandEvent("Something else", 1, "alice", message))

    asyncio.run(scenario())
    assert _state(engine).instruction_text == "use metric units"


def test_state_survives_restart(make_engine, make_settings):
    engine, _, _ = make_engine()

    async def scenario():
        await engine.start()
        await engine.handle_interaction(_set("enabled", True))
        await engine.handle_message(_message(100, "remember me"))
        await engine.shutdown()

    asyncio.run(scenario())

    restarted = build_engine(FakePlatform(), make_settings(), provider=FakeProvider())
    asyncio.run(restarted.start())
    state = restarted._store.get(10)
    assert state.options.enabled is True
    assert [t.content for t in state.history.turns] == ["alice (mention: <@1>): remember me"]


class ContextModule(FeatureModule):
    id = "context-module"

    async def get_additional_message_context(self, context, message, state):
        return [ChatMessage(role="system", content="MODULE_CONTEXT")]


def test_module_context_follows_retrieved_context(make_settings):
    platform = FakePlatform()
    provider = FakeProvider(vectors={"cat": [1.0, 0.0, 0.0, 0.0]})
    engine = build_engine(platform, make_settings(), provider=provider, builtins=(ContextModule,))

    async def scenario():
        await engine.start()
        await engine.handle_interaction(_set("enabled", True))
        engine._store.channel_chunks(10).append(
            Chunk(text="cats sleep sixteen hours a day", embedding=[1.0, 0.0, 0.0, 0.0])
        )
        await engine.handle_message(_tagged(100, "tell me about cats"))

    asyncio.run(scenario())

    contents = [m.content for m in provider.stream_requests[0].messages]
    retrieval_index = next(i for i, c in enumerate(contents) if c.startswith("---context---"))
    module_index = contents.index("MODULE_CONTEXT")
    assert retrieval_index < module_index
    assert module_index == len(contents) - 2
    assert contents[-1] == "alice (mention: <@1>): <@999> tell me about cats"


class SlowProvider(FakeProvider):
    def __init__(self):
        super().__init__()
        self.events = []

    async def chat_stream(self, req):
        live = req.messages[-1].content
        self.events.append(("start", live))
        await asyncio.sleep(0.05)
        self.events.append(("end", live))
        async for chunk in super().chat_stream(req):
            yield chunk


def test_same_conversation_events_run_one_at_a_time(make_engine):
    engine, platform, provider = make_engine(provider=SlowProvider())

    async def scenario():
        await engine.start()
        await engine.handle_interaction(_set("enabled", True))
        await asyncio.gather(
            engine.handle_message(_tagged(100, "first")),
            engine.handle_message(_tagged(101, "second")),
        )

    asyncio.run(scenario())

    kinds = [kind for kind, _ in provider.events]
    assert kinds == ["start", "end", "start", "end"]
    assert provider.events[0][1] == provider.events[1][1]
    assert len(engine._locks) == 0
    assert len(platform.sent) == 2


def test_different_conversations_run_concurrently(make_engine):
    engine, platform, provider = make_engine(provider=SlowProvider())

    async def scenario():
        await engine.start()
        await engine.handle_interaction(_set("enabled", True))
        await engine.handle_interaction(_set("enabled", True, interaction_id=2, channel_id=11))
        await asyncio.gather(
            engine.handle_message(_tagged(100, "first")),
            engine.handle_message(_tagged(200, "second", channel_id=11)),
        )

    asyncio.run(scenario())

    kinds = [kind for kind, _ in provider.events]
    assert kinds == ["start", "start", "end", "end"]
    assert len(platform.sent) == 2
