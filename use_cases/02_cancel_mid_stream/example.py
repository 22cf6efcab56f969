import asyncio
import os

from ezllm import ChatOrchestrator, FinishReason, create_provider

STOP_AFTER_CHUNKS = 5


async def main():
    provider = create_provider(os.environ.get("EZLLM_BACKEND", "apple"))
    orchestrator = ChatOrchestrator(provider)
    thread = orchestrator.create_thread("Cancellation demo")
    received = []

    def on_token(chunk):
        received.append(chunk)
        print(chunk, end="", flush=True)
        # Cancelling from the callback: no further chunk is delivered after this one.
        if len(received) == STOP_AFTER_CHUNKS:
            orchestrator.cancel(thread.id)

    print("Assistant: ", end="", flush=True)
    result = await orchestrator.send(
        thread.id, "Explain in detail how a bicycle gear system works.", on_token=on_token
    )
    print()

    if result.finish_reason is FinishReason.CANCEL:
        kept = len(thread.messages)
        print(f"Cancelled after {len(received)} chunks; history has {kept} messages.")
        retried = await orchestrator.retry(thread.id)
        print(f"Retry finished with '{retried.finish_reason.value}' ({len(retried.text)} chars).")
    else:
        print(f"Reply finished before the cut-off: {result.finish_reason.value}")


if __name__ == "__main__":
    asyncio.run(main())
