"""Minimal terminal demonstration of the conversation engine.

Every line typed is delivered as a direct message to the bot; replies are printed.
Requires an API key for the configured provider (see config.example.yaml).
"""

import asyncio
import itertools
from contextlib import asynccontextmanager

from chat_core import start_engine
from chat_core.domain.platform import IncomingMessage, SentMessage

_ids = itertools.count(1)


class ConsolePlatform:
    bot_user_id = 1

    async def send_message(self, channel_id, content, *, reply_to=None):
        print("Bot:", content)
        return SentMessage(id=next(_ids), channel_id=channel_id)

    async def send_file(self, channel_id, filename, data, *, content=None, reply_to=None):
        if content:
            print("Bot:", content)
        print(f"[file {filename}, {len(data)} bytes]")
        return SentMessage(id=next(_ids), channel_id=channel_id)

    async def add_reaction(self, channel_id, message_id, emoji):
        pass

    async def remove_reaction(self, channel_id, message_id, emoji, user_id):
        pass

    async def remove_all_reactions(self, channel_id, message_id):
        pass

    @asynccontextmanager
    async def typing(self, channel_id):
        yield

    async def register_commands(self, commands):
        pass

    async def respond_ephemeral(self, interaction_id, content):
        print("Bot (only you):", content)


async def main():
    engine = await start_engine(ConsolePlatform(), bot_name="gptcli")
    try:
        while True:
            line = await asyncio.to_thread(input, "User: ")
            if line.strip().lower() in {"exit", "quit"}:
                break
            await engine.handle_message(IncomingMessage(
                id=next(_ids), channel_id=1, author_id=2, author_name="console", content=line, is_private=True,
            ))
    finally:
        await engine.shutdown()


if __name__ == "__main__":
    asyncio.run(main())
