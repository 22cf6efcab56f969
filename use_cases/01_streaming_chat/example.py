import asyncio
import os

from ezllm import ChatOrchestrator, create_provider


async def main():
    # Set EZLLM_BACKEND=scripted to run without Apple Foundation Models.
    provider = create_provider(os.environ.get("EZLLM_BACKEND", "apple"))
    if not provider.is_supported():
        print(f"Backend '{provider.name}' unavailable: {provider.unavailable_reason()}")
        return

    orchestrator = ChatOrchestrator(provider)
    thread = orchestrator.create_thread()

    for question in ["What is a haiku?", "Write one about autumn."]:
        print(f"You: {question}")
        print("Assistant: ", end="", flush=True)
        result = await orchestrator.send(
            thread.id, question, on_token=lambda chunk: print(chunk, end="", flush=True)
        )
        print(f"\n  ({result.finish_reason.value}, {result.latency_s:.2f}s)\n")

    print(f"{thread.title}: {thread.turn_count} turns, {len(thread.messages)} messages kept.")


if __name__ == "__main__":
    asyncio.run(main())
