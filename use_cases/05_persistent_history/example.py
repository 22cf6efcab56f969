import asyncio
import os
from pathlib import Path

from ezllm import ChatOrchestrator, ChatStore, create_provider

DB_PATH = Path("datasets/example_history.sqlite3")


async def main():
    provider = create_provider(os.environ.get("EZLLM_BACKEND", "apple"))

    with ChatStore(DB_PATH) as store:
        orchestrator = ChatOrchestrator(provider, store=store)
        thread = orchestrator.create_thread("Reading list", style="precise")
        await orchestrator.send(thread.id, "Recommend three classic science fiction novels.")
        await orchestrator.send(thread.id, "Which one is the shortest?")

        target = Path("datasets") / "reading-list.md"
        store.export_markdown(thread.id, target)
        print(f"Saved {thread.turn_count} turns to {DB_PATH} and exported {target}.")

    # A new orchestrator over the same store sees the saved chat.
    with ChatStore(DB_PATH) as store:
        reloaded = ChatOrchestrator(provider, store=store)
        for saved in reloaded.list_threads():
            print(f"- {saved.title}: {len(saved.messages)} messages")


if __name__ == "__main__":
    asyncio.run(main())
