from chat_core.domain.history import HistoryWindow
from chat_core.domain.models import ChatMessage
from chat_core.domain.state import ConversationState, ModelParameters


def _turn(text: str, role: str = "user") -> ChatMessage:
    return ChatMessage(role=role, content=text)


def test_length_tracks_sum_of_turns():
    window = HistoryWindow(max_length=100)
    for text in ("a" * 10, "b" * 20, "c" * 30):
        window.add_turn(_turn(text))
    assert window.length == 60
    assert window.length == sum(len(t.content) for t in window.turns)


def test_oldest_turns_evicted_to_fit_budget():
    window = HistoryWindow(max_length=50)
    window.add_turn(_turn("a" * 20))
    window.add_turn(_turn("b" * 20))
    evicted = window.add_turn(_turn("c" * 20))
    assert [t.content[0] for t in evicted] == ["a"]
    assert [t.content[0] for t in window.turns] == ["b", "c"]
    assert window.length == 40


def test_oversized_turn_is_kept_alone():
    window = HistoryWindow(max_length=10)
    window.add_turn(_turn("short"))
    window.add_turn(_turn("x" * 25))
    assert len(window) == 1
    assert window.length == 25
    # 下一条消息会把超长消息挤出去
    window.add_turn(_turn("ok"))
    assert [t.content for t in window.turns] == ["ok"]
    assert window.length == 2


def test_shrinking_budget_evicts_immediately():
    window = HistoryWindow(max_length=100)
    for text in ("a" * 30, "b" * 30, "c" * 30):
        window.add_turn(_turn(text))
    window.max_length = 40
    assert [t.content[0] for t in window.turns] == ["c"]
    assert window.length == 30


def test_from_dict_recomputes_length():
    data = {"messages": [{"role": "user", "content": "abc"}, {"role": "assistant", "content": "de"}],
            "message-length": 999}
    window = HistoryWindow.from_dict(data, max_length=100)
    assert window.length == 5


def test_instructions_never_evicted_and_prompt_order():
    state = ConversationState(channel_id=1, parameters=ModelParameters(max_chat_history_length=100))
    state.prime_directives = [_turn("be nice", role="system")]
    state.add_instruction("pinned")
    for i in range(20):
        state.add_turn(_turn(f"message {i:02d} " + "x" * 10))
    live = _turn("current question")
    state.add_turn(live)

    context = [_turn("retrieved", role="system")]
    prompt = state.compose_prompt(context, live)

    assert prompt[0].content == "Prime Directive: be nice"
    assert prompt[1].content == "Instructions: pinned"
    assert prompt[-2].content == "retrieved"
    assert prompt[-1] is live
    assert state.instructions[0].content == "pinned"
    assert state.history.length <= 100
