"""Streaming chat example — tokens printed in real-time, stopped after 40 tokens."""

import asyncio

from openchatmobile import ChatClient, ChatStream


async def main():
    client = ChatClient()
    print("llama-server:", client.health()["llama"])

    print("--- Streaming ---")
    async with ChatStream(client.ws_url) as stream:
        async for token in stream.generate(
            "User: Write a short poem about the sea\nAssistant:",
            max_tokens=128,
            temperature=0.8,
        ):
            print(token, end="", flush=True)
            if stream.result.tokens == 40:
                await stream.stop()

    print(f"\n--- Done: {stream.result.tokens} tokens, reason={stream.result.reason or 'eos'} ---")
    client.close()

asyncio.run(main())
