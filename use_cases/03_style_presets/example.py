import asyncio
import os

from ezllm import ChatOrchestrator, StylePreset, create_provider, resolve_options

QUESTION = "Suggest a name for a coffee shop run by robots."


async def main():
    provider = create_provider(os.environ.get("EZLLM_BACKEND", "apple"))
    orchestrator = ChatOrchestrator(provider)

    for preset in StylePreset:
        options = resolve_options(preset)
        print(f"── {preset.value} (temperature={options.temperature}) ──")
        thread = orchestrator.create_thread(preset.value, style=preset)
        result = await orchestrator.send(thread.id, QUESTION)
        print(result.text or f"[{result.finish_reason.value}]")
        print()

    # Explicit overrides win over the preset.
    thread = orchestrator.create_thread("override", style=StylePreset.PRECISE)
    result = await orchestrator.send(thread.id, QUESTION, overrides={"temperature": 1.5})
    print("── precise + temperature=1.5 ──")
    print(result.text or f"[{result.finish_reason.value}]")


if __name__ == "__main__":
    asyncio.run(main())
