"""Minimal demonstration of the conversation coordinator.

Reads MODEL_API_KEY / MODEL_PROVIDER from the environment (or config.yaml).
Use MODEL_PROVIDER=ollama to talk to a local Ollama server without a key.
"""

import asyncio

from chat_core import create_coordinator
from chat_core.api.service import chat_once
from chat_core.domain.personas import Persona


async def main() -> None:
    coordinator = create_coordinator()
    await coordinator.start()
    await coordinator.change_persona(Persona.PROFESSOR)

    updates = coordinator.subscribe()
    question = "Why is the sky blue?"
    result = await chat_once(coordinator, question)
    for event in updates.drain():
        if event.kind == "recovery":
            print("...", event.text)
    print("User:", question)
    print("Assistant:", result["reply"] or result["state"])

    session = await coordinator.start_new_session()
    for summary in await coordinator.list_sessions():
        print(f"[{summary.id}] {summary.title} ({summary.message_count} messages)")
    print("New session:", session.id)
    await coordinator.shutdown()


if __name__ == "__main__":
    asyncio.run(main())
