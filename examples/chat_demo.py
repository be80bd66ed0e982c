"""Minimal demonstration of a streaming chat session with behavior logging."""

import asyncio
from contextlib import aclosing
from uuid import uuid4

from chat_core import get_default_factory


async def main() -> None:
    factory = get_default_factory()
    session = factory.create_session(system_instruction="你是一个简洁的编程助手。")
    question = "请读取 README.md 的前 20 行，并解释这个文件的主要内容"
    prompt_id = uuid4().hex
    factory.log_prompt_submit(prompt_id, question)
    print("User:", question)
    print("Agent: ", end="", flush=True)
    async with aclosing(session.send_streaming(question, prompt_id)) as stream:
        async for chunk in stream:
            print(chunk.text, end="", flush=True)
    print()


if __name__ == "__main__":
    asyncio.run(main())
