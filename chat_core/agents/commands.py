"""核心 ``/gptcli`` 命令。

命令树由 build_core_options() 构造，扩展模块的贡献在注册前合并进来。
apply_core_option() 只修改传入的 ConversationState；输入不合法时返回提示文本，状态保持不变。
"""

from typing import List, Optional

from chat_core.domain.platform import CommandOption, InteractionOption
from chat_core.domain.state import EMBED_MODES, RESPONSE_MODES, ConversationState

COMMAND_NAME = "gptcli"

MIN_CHAT_HISTORY_LENGTH = 100
MIN_MAX_TOKENS = 50

HELP_TEXT = "\n".join([
    "**GPT-CLI help**",
    "_Quick guide to the slash commands and reactions_",
    "",
    "**Core commands**",
    "• `/gptcli help` shows this message",
    "• `/gptcli instruction add text:\"...\"`",
    "• `/gptcli instruction list`",
    "• `/gptcli instruction get index:<n>`",
    "• `/gptcli instruction delete index:<n>`",
    "• `/gptcli instruction clear`",
    "• `/gptcli clear messages|instructions|all`",
    "",
    "**Bot settings**",
    "• `/gptcli set enabled true|false`",
    "• `/gptcli set mute true|false`",
    "• `/gptcli set model <name>`",
    "• `/gptcli set max-tokens <number>`",
    "• `/gptcli set max-chat-history-length <number>`",
    "• `/gptcli set response-mode All|Matches`",
    "• `/gptcli set embed-mode Explicit|All`",
    "• `/gptcli set infobot true|false`",
    "",
    "**Infobot**",
    "• `/gptcli infobot help` explains how it learns and matches",
    "• `/gptcli infobot set term text`",
    "• `/gptcli infobot get term`",
    "• `/gptcli infobot delete term`",
    "• `/gptcli infobot list`",
    "• `/gptcli infobot leaderboard`",
    "• `/gptcli infobot personality prompt:\"...\"`",
    "",
    "**Reactions**",
    "• 📌 add message as instruction",
    "• 💾 save message as embed",
    "• 🧹 delete image embeds for that message",
    "• 🔄 replay a user message as a prompt",
    "• 🗑️ remove matched factoid term (on infobot reply)",
    "• 🛑 disable infobot for this channel (on infobot reply)",
])


def build_core_options() -> List[CommandOption]:
    def index_option() -> CommandOption:
        return CommandOption("index", "1-based instruction index", type="integer", required=True, min_value=1)

    return [
        CommandOption("help", "Show help for GPT-CLI commands"),
        CommandOption("instruction", "Manage system instructions", type="group", options=[
            CommandOption("add", "Add a system instruction", options=[
                CommandOption("text", "Instruction text", type="string", required=True),
            ]),
            CommandOption("list", "List current instructions"),
            CommandOption("get", "Get an instruction by index", options=[index_option()]),
            CommandOption("delete", "Delete an instruction by index", options=[index_option()]),
            CommandOption("clear", "Clear all instructions"),
        ]),
        CommandOption("clear", "Clear messages or instructions", type="group", options=[
            CommandOption("messages", "Clear messages", type="string", choices=["messages"]),
            CommandOption("instructions", "Clear instructions", type="string", choices=["instructions"]),
            CommandOption("all", "Clear all", type="string", choices=["all"]),
        ]),
        CommandOption("set", "Change bot settings", type="group", options=[
            CommandOption("enabled", "Enable or disable the chat bot", type="boolean"),
            CommandOption("mute", "Mute or unmute the chat bot", type="boolean"),
            CommandOption("response-mode", "Set the response mode", type="string", choices=list(RESPONSE_MODES)),
            CommandOption("embed-mode", "Set the embed mode", type="string", choices=list(EMBED_MODES)),
            CommandOption(
                "max-chat-history-length",
                "Set the maximum chat history length",
                type="integer",
                min_value=MIN_CHAT_HISTORY_LENGTH,
            ),
            CommandOption("max-tokens", "Set the maximum tokens", type="integer", min_value=MIN_MAX_TOKENS),
            CommandOption("model", "Set the model", type="string"),
        ]),
    ]


def _as_int(value) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.strip().lstrip("-").isdigit():
        return int(value.strip())
    return None


def _pick_choice(value, choices) -> Optional[str]:
    if not isinstance(value, str):
        return None
    for choice in choices:
        if choice.lower() == value.strip().lower():
            return choice
    return None


def apply_core_option(state: ConversationState, option: InteractionOption) -> str:
    """执行一个顶层选项并返回回复文本。"""
    name = option.name.lower()
    sub = option.first

    if name == "help":
        return HELP_TEXT
    if name == "clear":
        return _clear(state, sub)
    if name == "instruction":
        return _instruction(state, sub)
    if name == "set":
        return _set(state, sub)
    return f"Unknown option: {option.name}"


def _clear(state: ConversationState, sub: Optional[InteractionOption]) -> str:
    if sub is None:
        return "Specify messages, instructions, or all."
    name = sub.name.lower()
    if name == "messages":
        state.clear_messages()
    elif name == "instructions":
        state.clear_instructions()
    elif name == "all":
        state.clear_messages()
        state.clear_instructions()
    else:
        return f"Unknown clear option: {sub.name}"
    return f"{name.capitalize()} cleared."


def _instruction_index(state: ConversationState, sub: InteractionOption):
    value = _as_int(sub.value_of("index"))
    if value is None:
        return None, "Provide instruction index."
    index = value - 1
    if index < 0 or index >= len(state.instructions):
        return None, "Instruction index out of range."
    return index, None


def _instruction(state: ConversationState, sub: Optional[InteractionOption]) -> str:
    if sub is None:
        return "Specify an instruction command."
    name = sub.name.lower()

    if name == "add":
        text = sub.value_of("text", sub.value)
        if text is None or not str(text).strip():
            return "Provide instruction text."
        state.add_instruction(str(text))
        return "Instruction added."

    if name == "list":
        if not state.instructions:
            return "No instructions stored."
        lines = [f"{i}. {inst.content}" for i, inst in enumerate(state.instructions, start=1)]
        return "Instructions:\n" + "\n".join(lines)

    if name == "get":
        index, error = _instruction_index(state, sub)
        if error:
            return error
        return f"{index + 1}. {state.instructions[index].content}"

    if name == "delete":
        index, error = _instruction_index(state, sub)
        if error:
            return error
        state.remove_instruction(index)
        return f"Instruction {index + 1} deleted."

    if name == "clear":
        state.clear_instructions()
        return "Instructions cleared."

    return f"Unknown instruction command: {sub.name}"


def _set(state: ConversationState, sub: Optional[InteractionOption]) -> str:
    if sub is None:
        return "Specify a setting to change."
    name = sub.name.lower()
    value = sub.value

    if name == "enabled":
        if not isinstance(value, bool):
            return "Provide true or false for enabled."
        state.options.enabled = value
        return f"InstructionChat bot {'enabled' if value else 'disabled'}."

    if name == "mute":
        if not isinstance(value, bool):
            return "Provide true or false for mute."
        state.options.muted = value
        return f"InstructionChat bot {'muted' if value else 'un-muted'}."

    if name == "max-tokens":
        number = _as_int(value)
        if number is None or number < MIN_MAX_TOKENS:
            return f"Max tokens must be a number of at least {MIN_MAX_TOKENS}."
        state.parameters.max_tokens = number
        return f"Max tokens set to {number}."

    if name == "max-chat-history-length":
        number = _as_int(value)
        if number is None or number < MIN_CHAT_HISTORY_LENGTH:
            return f"Max chat history length must be a number of at least {MIN_CHAT_HISTORY_LENGTH}."
        state.set_max_history_length(number)
        return f"Max chat history length set to {number}."

    if name == "model":
        if not isinstance(value, str) or not value.strip():
            return "Provide a model name."
        state.parameters.model = value.strip()
        return f"Model set to {value.strip()}."

    if name == "embed-mode":
        mode = _pick_choice(value, EMBED_MODES)
        if mode is None:
            return f"Embed mode must be one of: {', '.join(EMBED_MODES)}."
        state.embed_mode = mode
        return f"Embed mode set to {mode}."

    if name == "response-mode":
        mode = _pick_choice(value, RESPONSE_MODES)
        if mode is None:
            return f"Response mode must be one of: {', '.join(RESPONSE_MODES)}."
        state.response_mode = mode
        return f"Response mode set to {mode}."

    return f"Unknown setting: {sub.name}"
