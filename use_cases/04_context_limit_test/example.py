import asyncio
import os
import time

from ezllm import ChatOrchestrator, create_provider


async def main():
    print("Testing how EzLLM reports oversized prompts...\n")

    provider = create_provider(os.environ.get("EZLLM_BACKEND", "apple"))
    base_paragraph = "Apple Silicon runs language models locally on the Neural Engine. " * 50

    for mult in [1, 2, 4, 8]:
        text = base_paragraph * mult
        orchestrator = ChatOrchestrator(provider)
        thread = orchestrator.create_thread()
        print(f"Prompt size: {len(text):,} characters (approx {len(text) // 4:,} tokens)...")

        start_time = time.perf_counter()
        result = await orchestrator.send(thread.id, f"Summarize this:\n{text}")
        elapsed = time.perf_counter() - start_time

        if result.ok:
            print(f"  ok ({result.finish_reason.value}) in {elapsed:.2f}s")
        else:
            print(f"  failed: [{result.error.kind.value}] {result.error.message}")
            break
        print("-" * 50)


if __name__ == "__main__":
    asyncio.run(main())
