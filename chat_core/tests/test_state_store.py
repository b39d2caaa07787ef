import json
import os
import tempfile
from pathlib import Path

from chat_core.domain.documents import Chunk
from chat_core.domain.models import ChatMessage
from chat_core.domain.state import ConversationOptions, ConversationState, ModelParameters
from chat_core.infrastructure.storage import paths
from chat_core.infrastructure.storage import state_store
from chat_core.infrastructure.storage.state_store import ConversationStateStore, StateDefaults


def _defaults() -> StateDefaults:
    return StateDefaults(
        parameters=ModelParameters(model="chat", max_chat_history_length=500),
        options=ConversationOptions(),
        prime_directive="directive",
    )


def _write_state(
    root: Path, guild_folder: str, channel_folder: str, file_name: str, guild_id: int, channel_id: int,
    content: str = None,
):
    directory = root / "channels" / guild_folder / channel_folder
    directory.mkdir(parents=True, exist_ok=True)
    state = ConversationState(channel_id=channel_id, guild_id=guild_id, channel_name="general")
    state.add_turn(ChatMessage(role="user", content=content or f"hello from {guild_id}"))
    (directory / file_name).write_text(json.dumps(state.to_dict()), encoding="utf-8")
    return directory / file_name


def test_save_and_load_roundtrip():
    with tempfile.TemporaryDirectory() as d:
        store = ConversationStateStore(root=d, defaults=_defaults())
        state = store.get_or_create(10, guild_id=1, guild_name="My Guild", channel_name="general")
        state.add_instruction("be brief")
        state.add_turn(ChatMessage(role="user", content="hi"))
        assert store.save(10)

        expected = Path(d).resolve() / "channels" / "My-Guild_1" / "general_10" / "general_10.1.token.state.json"
        assert expected.exists()

        reloaded = ConversationStateStore(root=d, defaults=_defaults())
        assert reloaded.load() == 1
        loaded = reloaded.get(10)
        assert loaded.guild_id == 1
        assert loaded.instruction_text == "be brief"
        assert [t.content for t in loaded.history.turns] == ["hi"]
        assert loaded.prime_directive_text == "directive"


def test_conflicting_communities_accept_only_one():
    with tempfile.TemporaryDirectory() as d:
        root = Path(d).resolve()
        _write_state(root, "A_1", "general_10", "general_10.1.token.state.json", 1, 10)
        _write_state(root, "B_2", "general_10", "general_10.2.token.state.json", 2, 10)

        store = ConversationStateStore(root=root, defaults=_defaults())
        assert store.load() == 1
        assert store.get(10).guild_id == 1
        assert store.get(10).history.turns[0].content == "hello from 1"


def test_token_path_mismatch_is_refused():
    with tempfile.TemporaryDirectory() as d:
        root = Path(d).resolve()
        _write_state(root, "A_1", "general_10", "general_10.2.token.state.json", 2, 10)

        store = ConversationStateStore(root=root, defaults=_defaults())
        assert store.load() == 0
        assert store.get(10) is None


def test_legacy_state_is_adopted_with_token():
    with tempfile.TemporaryDirectory() as d:
        root = Path(d).resolve()
        legacy = _write_state(root, "A_1", "general_10", "general_10.state.json", 0, 10)

        store = ConversationStateStore(root=root, defaults=_defaults())
        assert store.load() == 1
        assert store.get(10).guild_id == 1
        assert not legacy.exists()
        assert (legacy.parent / "general_10.1.token.state.json").exists()


def test_identity_mismatch_keeps_in_memory_state():
    with tempfile.TemporaryDirectory() as d:
        store = ConversationStateStore(root=d, defaults=_defaults())
        state = store.get_or_create(10, guild_id=1)
        assert store.is_identity_match(state, 1, "message")
        assert not store.is_identity_match(state, 2, "message")
        assert state.guild_id == 1
        assert store.registered_community(10) == 1


def test_private_conversation_defaults_enabled():
    with tempfile.TemporaryDirectory() as d:
        store = ConversationStateStore(root=d, defaults=_defaults())
        state = store.get_or_create(20, is_private=True)
        assert state.options.enabled
        assert state.guild_name == "dm"


def test_module_json_written_with_token(tmp_path):
    store = ConversationStateStore(root=tmp_path, defaults=_defaults())
    state = store.get_or_create(10, guild_id=1, guild_name="g", channel_name="c")
    path = store.write_module_json(state, "facts", [{"term": "foo"}])
    assert path.name == "facts.1.token.json"

    artifacts = list(store.iter_module_artifacts("facts", "factoids"))
    assert len(artifacts) == 1
    assert artifacts[0].channel_id == 10
    assert artifacts[0].guild_id == 1
    assert artifacts[0].has_token
    assert artifacts[0].payload == [{"term": "foo"}]


def test_path_helpers():
    assert paths.sanitize_name("My  Guild!") == "My-Guild"
    assert paths.sanitize_name("  ") == "unknown"
    assert paths.tokenized_file_name("facts", 5, "json") == "facts.5.token.json"
    assert paths.guild_token_from_file_name(Path("x_1.5.token.state.json")) == 5
    assert paths.guild_token_from_file_name(Path("x_1.state.json")) is None
    assert paths.parse_id_from_name("general_123") == 123
    assert paths.normalize_file_name("dir/sub/notes") == "notes.txt"
    assert paths.normalize_file_name(None) == "response.txt"
    assert paths.permalink(1, 2, 3) == "https://discord.com/channels/1/2/3"
    assert paths.permalink(0, 2, 3) is None


def test_renamed_channel_keeps_latest_history():
    with tempfile.TemporaryDirectory() as d:
        store = ConversationStateStore(root=d, defaults=_defaults())
        state = store.get_or_create(10, guild_id=1, guild_name="guild", channel_name="zeta")
        state.add_turn(ChatMessage(role="user", content="old"))
        assert store.save(10)
        old_path = store.state_file_path(state)

        store.ensure_metadata(state, 1, "guild", "alpha")
        state.add_turn(ChatMessage(role="user", content="new"))
        assert store.save(10)
        assert not old_path.exists()
        assert store.state_file_path(state).exists()

        reloaded = ConversationStateStore(root=d, defaults=_defaults())
        assert reloaded.load() == 1
        assert [t.content for t in reloaded.get(10).history.turns] == ["old", "new"]


def test_load_prefers_newest_state_file():
    with tempfile.TemporaryDirectory() as d:
        root = Path(d).resolve()
        newer = _write_state(root, "A_1", "alpha_10", "alpha_10.1.token.state.json", 1, 10, content="new")
        older = _write_state(root, "A_1", "zeta_10", "zeta_10.1.token.state.json", 1, 10, content="old")
        os.utime(older, (1_000_000, 1_000_000))
        os.utime(newer, (2_000_000, 2_000_000))

        store = ConversationStateStore(root=root, defaults=_defaults())
        assert store.load() == 1
        assert [t.content for t in store.get(10).history.turns] == ["new"]


def test_corrupt_state_falls_back_to_defaults():
    with tempfile.TemporaryDirectory() as d:
        root = Path(d).resolve()
        directory = root / "channels" / "A_1" / "general_10"
        directory.mkdir(parents=True)
        (directory / "general_10.1.token.state.json").write_text("{not json", encoding="utf-8")
        _write_state(root, "A_1", "other_11", "other_11.1.token.state.json", 1, 11)

        store = ConversationStateStore(root=root, defaults=_defaults())
        assert store.load() == 1
        assert store.get(10) is None

        state = store.get_or_create(10, guild_id=1, guild_name="A", channel_name="general")
        assert len(state.history) == 0
        assert state.parameters.model == "chat"
        assert state.prime_directive_text == "directive"
        assert not state.options.enabled


def test_legacy_state_ignored_when_token_sibling_exists():
    with tempfile.TemporaryDirectory() as d:
        root = Path(d).resolve()
        _write_state(root, "A_1", "general_10", "general_10.1.token.state.json", 1, 10)
        legacy = _write_state(root, "A_1", "general_10", "general_10.state.json", 0, 10, content="legacy")

        store = ConversationStateStore(root=root, defaults=_defaults())
        assert store.load() == 1
        assert store.get(10).history.turns[0].content == "hello from 1"
        assert legacy.exists()
        assert json.loads(legacy.read_text(encoding="utf-8"))["guild-id"] == 0


def test_malformed_embed_file_is_skipped():
    with tempfile.TemporaryDirectory() as d:
        store = ConversationStateStore(root=d, defaults=_defaults())
        state = store.get_or_create(10, guild_id=1, guild_name="A", channel_name="general")
        store.save_chunks(state, "100", [Chunk(text="good", embedding=[1.0, 0.0])])
        bad = store.chunk_file_path(state, "200")
        bad.write_text(json.dumps([{"text": "bad", "embedding": ["x"]}]), encoding="utf-8")
        worse = store.chunk_file_path(state, "300")
        worse.write_text(json.dumps([{"text": "worse", "embedding": 5}]), encoding="utf-8")

        reloaded = ConversationStateStore(root=d, defaults=_defaults())
        assert reloaded.load_chunks() == 1
        assert [c.text for c in reloaded.channel_chunks(10)] == ["good"]


def test_image_response_tracking_is_capped(monkeypatch):
    monkeypatch.setattr(state_store, "MAX_TRACKED_IMAGE_RESPONSES", 2)
    with tempfile.TemporaryDirectory() as d:
        store = ConversationStateStore(root=d, defaults=_defaults())
        for message_id in (1, 2, 3):
            store.track_image_response(message_id, f"files/{message_id}.1.cat.png")
        assert list(store._image_responses) == [2, 3]
