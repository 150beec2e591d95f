import asyncio
import logging

from llm_switchboard.attachments import FileData
from llm_switchboard.errors import AttachmentError
from llm_switchboard.orchestrator import RequestOrchestrator, SendOptions
from llm_switchboard.registry import ProviderRegistry, register_builtin_providers
from llm_switchboard.store import InMemoryMessageStore


async def main() -> None:
    logging.basicConfig(level=logging.INFO)

    registry = register_builtin_providers(ProviderRegistry())
    registry.configure_provider("lmstudio", {"retry_attempts": 1})
    store = InMemoryMessageStore()
    orchestrator = RequestOrchestrator(registry, store)

    # Explicit but unconfigured provider: rejected, never swapped for another one
    session = await orchestrator.send("demo", "hi", SendOptions(provider_id="openai"))
    session = await orchestrator.wait(session.id)
    print("Explicit openai:", session.state.value, session.error)

    # Attachment caps are checked before a session exists
    big = FileData(name="huge.png", mime_type="image/png", data=b"\0" * (11 * 1024 * 1024))
    try:
        await orchestrator.send(
            "demo", "describe", SendOptions(provider_id="anthropic", attachments=[big])
        )
    except AttachmentError as e:
        print("Expected error:", type(e).__name__, e)

    # Local LM Studio server, if one is running on localhost:1234
    session = await orchestrator.send("demo", "Say hello in five words.")
    async for event in orchestrator.subscribe(session.id):
        if event.kind == "terminal":
            print("Final:", event.state.value, event.content or event.error)

    await orchestrator.aclose()
    await registry.aclose()


if __name__ == "__main__":
    asyncio.run(main())
