import asyncio
import textwrap

from chat_core.domain.platform import CommandOption, IncomingMessage, InteractionEvent
from chat_core.modules.base import CommandContribution, FeatureModule, ModuleContext
from chat_core.modules.pipeline import (
    ModulePipeline,
    discover_modules,
    merge_command_contributions,
    order_modules,
)


def _module(module_id, depends_on=(), **hooks):
    cls = type(f"Module_{module_id}", (FeatureModule,), dict(id=module_id, depends_on=tuple(depends_on), **hooks))
    return cls()


def _context():
    return ModuleContext(settings=None, store=None, provider=None, platform=None)


def _ids(modules):
    return [m.id for m in modules]


def test_dependencies_are_ordered_first():
    c = _module("C", ["A", "B"])
    b = _module("B", ["A"])
    a = _module("A")
    assert _ids(order_modules([c, b, a])) == ["A", "B", "C"]


def test_missing_dependency_excludes_module():
    a = _module("A")
    d = _module("D", ["X"])
    assert _ids(order_modules([a, d])) == ["A"]


def test_cycle_excludes_members_only():
    e = _module("E", ["F"])
    f = _module("F", ["E"])
    g = _module("G")
    assert _ids(order_modules([e, f, g])) == ["G"]


def test_dependents_of_invalid_modules_are_excluded():
    d = _module("D", ["X"])
    h = _module("H", ["d"])
    assert _ids(order_modules([d, h])) == []


def test_duplicate_and_empty_ids():
    first = _module("dup")
    second = _module("DUP")
    empty = _module("")
    ordered = order_modules([first, second, empty])
    assert len(ordered) == 1
    assert ordered[0] is first


def test_failing_module_does_not_stop_others():
    seen = []

    async def boom(self, context, message):
        raise RuntimeError("boom")

    async def record(self, context, message):
        seen.append(message.id)

    pipeline = ModulePipeline(_context(), [_module("bad", on_message_received=boom),
                                           _module("good", on_message_received=record)])
    message = IncomingMessage(id=7, channel_id=1, author_id=2, author_name="alice")
    asyncio.run(pipeline.on_message_received(message))
    assert seen == [7]


def test_interaction_handled_if_any_module_handles():
    async def yes(self, context, interaction):
        return True

    async def explode(self, context, interaction):
        raise ValueError("nope")

    interaction = InteractionEvent(id=1, command_name="gptcli", channel_id=1, user_id=2, user_name="bob")
    handled = ModulePipeline(_context(), [_module("a", on_interaction=explode), _module("b", on_interaction=yes)])
    ignored = ModulePipeline(_context(), [_module("a", on_interaction=explode), _module("c")])
    assert asyncio.run(handled.on_interaction(interaction)) is True
    assert asyncio.run(ignored.on_interaction(interaction)) is False


def test_additional_context_is_concatenated_in_order():
    from chat_core.domain.models import ChatMessage

    def provider_of(text):
        async def hook(self, context, message, state):
            return [ChatMessage(role="system", content=text)]
        return hook

    pipeline = ModulePipeline(_context(), [
        _module("a", get_additional_message_context=provider_of("first")),
        _module("b"),
        _module("c", get_additional_message_context=provider_of("second")),
    ])
    message = IncomingMessage(id=1, channel_id=1, author_id=2, author_name="alice")
    result = asyncio.run(pipeline.get_additional_message_context(message, None))
    assert [m.content for m in result] == ["first", "second"]


def test_merge_command_contributions():
    options = [
        CommandOption("help", "Help"),
        CommandOption("set", "Settings", type="group", options=[CommandOption("model", "Model", type="string")]),
    ]
    contributions = [
        CommandContribution.top_level(CommandOption("infobot", "Infobot", type="group")),
        CommandContribution.top_level(CommandOption("HELP", "Conflicting help")),
        CommandContribution.for_option("set", CommandOption("infobot", "Toggle", type="boolean")),
        CommandContribution.for_option("set", CommandOption("model", "Conflicting model")),
        CommandContribution.for_option("missing", CommandOption("thing", "Lost")),
    ]
    merged = merge_command_contributions(options, contributions)
    assert [o.name for o in merged] == ["help", "set", "infobot"]
    assert merged[0].description == "Help"
    assert [o.name for o in merged[1].options] == ["model", "infobot"]
    assert merged[1].options[0].description == "Model"


def test_discover_modules_from_directory(tmp_path):
    (tmp_path / "greeter.py").write_text(textwrap.dedent(
        """
        from chat_core.modules.base import FeatureModule


        class GreeterModule(FeatureModule):
            id = "greeter"


        class ContextAwareModule(FeatureModule):
            id = "aware"

            def __init__(self, context):
                self.context = context
        """
    ), encoding="utf-8")
    (tmp_path / "broken.py").write_text("raise RuntimeError('bad module')\n", encoding="utf-8")
    (tmp_path / "_private.py").write_text("raise RuntimeError('never imported')\n", encoding="utf-8")

    context = _context()
    builtin = _module("builtin")
    modules = discover_modules(context, str(tmp_path), builtins=[builtin])

    assert modules[0] is builtin
    assert sorted(m.id for m in modules[1:]) == ["aware", "greeter"]
    aware = next(m for m in modules if m.id == "aware")
    assert aware.context is context


def test_missing_module_directory_is_ignored(tmp_path):
    modules = discover_modules(_context(), str(tmp_path / "nope"))
    assert modules == []
