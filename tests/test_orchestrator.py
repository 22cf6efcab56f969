"""
Tests for ezllm.orchestrator (threads, per-turn sessions, append-on-completion).

Covers:
  - Default titles and thread bookkeeping
  - A completed turn appends user + assistant messages and bumps turn_count
  - Cancelled / failed turns append nothing and can be retried, even when
    the task is cancelled before it starts
  - One generation per thread; independent threads run concurrently
  - Style preset, guardrails and overrides reach the backend
  - Unavailable provider surfaces as a failed result
  - Persistence through ChatStore, with rollback when a save fails
"""

import asyncio
import sqlite3
from unittest.mock import patch

import pytest

from ezllm.backends.scripted import ScriptedProvider, ScriptedReply
from ezllm.exceptions import ErrorKind, InvalidState, ThreadBusy, UnknownThread
from ezllm.models import FinishReason, Role, SafetyPolicy, StylePreset
from ezllm.orchestrator import ChatOrchestrator
from ezllm.store import ChatStore

from .conftest import wait_for


def make_orchestrator(*replies, store=None, **kwargs):
    provider = ScriptedProvider(list(replies))
    kwargs.setdefault("system_prompt", "")
    return provider, ChatOrchestrator(provider, store=store, **kwargs)


# ========================================================================
# Thread management
# ========================================================================


class TestThreads:
    def test_default_titles_are_numbered(self):
        _, orchestrator = make_orchestrator()
        assert orchestrator.create_thread().title == "Chat 1"
        assert orchestrator.create_thread().title == "Chat 2"
        assert orchestrator.create_thread("Notes").title == "Notes"

    def test_default_title_skips_taken_names(self):
        _, orchestrator = make_orchestrator()
        orchestrator.create_thread("Chat 2")
        assert orchestrator.create_thread().title == "Chat 3"

    def test_unknown_thread(self):
        _, orchestrator = make_orchestrator()
        with pytest.raises(UnknownThread):
            orchestrator.get_thread("missing")

    def test_rename_style_guardrails(self):
        _, orchestrator = make_orchestrator()
        thread = orchestrator.create_thread()
        orchestrator.rename_thread(thread.id, "  Trip plan ")
        orchestrator.set_style(thread.id, "creative")
        orchestrator.set_guardrails(thread.id, False)
        assert thread.title == "Trip plan"
        assert thread.style is StylePreset.CREATIVE
        assert thread.guardrails is False

    def test_rename_rejects_blank_title(self):
        _, orchestrator = make_orchestrator()
        thread = orchestrator.create_thread()
        with pytest.raises(ValueError):
            orchestrator.rename_thread(thread.id, "   ")

    def test_delete_thread(self):
        _, orchestrator = make_orchestrator()
        thread = orchestrator.create_thread()
        orchestrator.delete_thread(thread.id)
        assert orchestrator.list_threads() == []


# ========================================================================
# Sending turns
# ========================================================================


class TestSend:
    async def test_completed_turn_is_appended(self):
        _, orchestrator = make_orchestrator(ScriptedReply(tokens=("Hi", " there", "!")))
        thread = orchestrator.create_thread()
        tokens = []

        result = await orchestrator.send(thread.id, "Hello", on_token=tokens.append)

        assert tokens == ["Hi", " there", "!"]
        assert result.text == "Hi there!"
        assert [(m.role, m.text) for m in thread.messages] == [
            (Role.USER, "Hello"),
            (Role.ASSISTANT, "Hi there!"),
        ]
        assert thread.messages[1].metadata["finish_reason"] == "stop"
        assert thread.turn_count == 1
        assert not orchestrator.is_generating(thread.id)

    async def test_thread_is_updated_before_on_completion(self):
        _, orchestrator = make_orchestrator(ScriptedReply(tokens=("ok",)))
        thread = orchestrator.create_thread()
        seen = []

        def on_completion(result):
            seen.append((result.finish_reason, len(thread.messages)))

        await orchestrator.send(thread.id, "Hello", on_completion=on_completion)
        assert seen == [(FinishReason.STOP, 2)]

    async def test_history_is_sent_with_next_turn(self):
        provider, orchestrator = make_orchestrator()
        thread = orchestrator.create_thread()
        await orchestrator.send(thread.id, "first")
        await orchestrator.send(thread.id, "second")

        assert "[Assistant]\nYou said: first" in provider.prompts[1]
        assert provider.prompts[1].endswith("[User]\nsecond\n\n[Assistant]\n")
        assert thread.turn_count == 2

    async def test_system_prompt_leads_the_prompt(self):
        provider, orchestrator = make_orchestrator(system_prompt="Be brief.")
        thread = orchestrator.create_thread()
        await orchestrator.send(thread.id, "Hello")
        assert provider.prompts[0].startswith("[System]\nBe brief.\n\n[User]\nHello")

    async def test_style_guardrails_and_overrides_reach_backend(self):
        provider, orchestrator = make_orchestrator()
        thread = orchestrator.create_thread(style="precise", guardrails=False)
        await orchestrator.send(thread.id, "one")
        await orchestrator.send(thread.id, "two", overrides={"temperature": 1.5})

        assert provider.options[0].temperature == 0.25
        assert provider.options[0].safety_policy is SafetyPolicy.PERMISSIVE
        assert provider.options[1].temperature == 1.5
        assert provider.options[1].top_p is None

    async def test_blank_text_rejected(self):
        _, orchestrator = make_orchestrator()
        thread = orchestrator.create_thread()
        with pytest.raises(ValueError):
            orchestrator.send(thread.id, "  ")

    async def test_length_and_safety_turns_are_kept(self):
        _, orchestrator = make_orchestrator(
            ScriptedReply(tokens=("long",), finish=FinishReason.LENGTH),
            ScriptedReply(tokens=("par",), finish=FinishReason.SAFETY),
        )
        thread = orchestrator.create_thread()
        await orchestrator.send(thread.id, "a")
        await orchestrator.send(thread.id, "b")

        assert thread.turn_count == 2
        assert thread.messages[1].metadata["finish_reason"] == "length"
        assert thread.messages[3].metadata["safety"] == ["scripted"]


# ========================================================================
# Cancellation, failure and retry
# ========================================================================


class TestCancelAndRetry:
    async def test_cancelled_turn_appends_nothing(self):
        _, orchestrator = make_orchestrator(ScriptedReply(tokens=("a", "b"), hang_after=1))
        thread = orchestrator.create_thread()
        tokens = []
        task = orchestrator.send(thread.id, "Hello", on_token=tokens.append)

        await wait_for(lambda: tokens)
        assert orchestrator.is_generating(thread.id)
        assert orchestrator.cancel(thread.id) is True
        result = await task

        assert result.finish_reason is FinishReason.CANCEL
        assert thread.messages == []
        assert thread.turn_count == 0
        assert orchestrator.has_failed_turn(thread.id)
        assert not orchestrator.is_generating(thread.id)

    async def test_task_cancelled_before_first_step_frees_the_thread(self):
        _, orchestrator = make_orchestrator(
            ScriptedReply(tokens=("a",)), ScriptedReply(tokens=("b",))
        )
        thread = orchestrator.create_thread()
        completions = []
        task = orchestrator.send(thread.id, "Hello", on_completion=completions.append)
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task
        await wait_for(lambda: not orchestrator.is_generating(thread.id))

        assert [r.finish_reason for r in completions] == [FinishReason.CANCEL]
        assert thread.messages == []
        assert orchestrator.has_failed_turn(thread.id)
        result = await orchestrator.send(thread.id, "Again")
        assert result.text == "b"

    def test_cancel_without_generation(self):
        _, orchestrator = make_orchestrator()
        thread = orchestrator.create_thread()
        assert orchestrator.cancel(thread.id) is False

    async def test_one_generation_per_thread(self):
        _, orchestrator = make_orchestrator(ScriptedReply(tokens=("a",), hang_after=0))
        thread = orchestrator.create_thread()
        task = orchestrator.send(thread.id, "first")

        with pytest.raises(ThreadBusy):
            orchestrator.send(thread.id, "second")
        with pytest.raises(ThreadBusy):
            orchestrator.clear_history(thread.id)

        orchestrator.cancel(thread.id)
        await task

    async def test_threads_generate_independently(self):
        provider, orchestrator = make_orchestrator()
        first = orchestrator.create_thread()
        second = orchestrator.create_thread()

        await asyncio.gather(
            orchestrator.send(first.id, "A"),
            orchestrator.send(second.id, "B"),
        )

        assert first.messages[1].text == "You said: A"
        assert second.messages[1].text == "You said: B"
        assert len(provider.sessions) == 2

    async def test_retry_replays_failed_turn(self):
        provider, orchestrator = make_orchestrator(
            ScriptedReply(tokens=("x",), finish=FinishReason.ERROR, error=RuntimeError("boom")),
            ScriptedReply(tokens=("ok",)),
        )
        thread = orchestrator.create_thread()

        failed = await orchestrator.send(thread.id, "Hi")
        assert failed.error.kind is ErrorKind.GENERIC_FAILURE
        assert thread.messages == []

        result = await orchestrator.retry(thread.id)
        assert result.text == "ok"
        assert [m.text for m in thread.messages] == ["Hi", "ok"]
        assert provider.prompts[0] == provider.prompts[1]
        assert not orchestrator.has_failed_turn(thread.id)

    def test_retry_without_failed_turn(self):
        _, orchestrator = make_orchestrator()
        thread = orchestrator.create_thread()
        with pytest.raises(InvalidState):
            orchestrator.retry(thread.id)

    async def test_prompt_over_limit_is_a_failed_turn(self):
        _, orchestrator = make_orchestrator(max_prompt_chars=20)
        thread = orchestrator.create_thread()
        result = await orchestrator.send(thread.id, "x" * 100)

        assert result.error.kind is ErrorKind.INPUT_TOO_LONG
        assert thread.messages == []
        assert orchestrator.has_failed_turn(thread.id)

    async def test_unavailable_provider_gives_failed_result(self):
        provider = ScriptedProvider(supported=False, reason="no model")
        orchestrator = ChatOrchestrator(provider)
        thread = orchestrator.create_thread()
        completions = []

        result = await orchestrator.send(thread.id, "Hello", on_completion=completions.append)

        assert result.finish_reason is FinishReason.ERROR
        assert result.error.kind is ErrorKind.PROVIDER_UNAVAILABLE
        assert completions == [result]
        assert thread.messages == []
        assert provider.sessions == []


# ========================================================================
# History clearing and persistence
# ========================================================================


class TestHistory:
    async def test_clear_history_keeps_identity(self):
        _, orchestrator = make_orchestrator()
        thread = orchestrator.create_thread("Keep me")
        await orchestrator.send(thread.id, "Hello")

        orchestrator.clear_history(thread.id)

        assert thread.messages == []
        assert thread.title == "Keep me"
        assert thread.turn_count == 1
        assert orchestrator.get_thread(thread.id) is thread

    async def test_clear_all(self):
        _, orchestrator = make_orchestrator()
        first = orchestrator.create_thread()
        second = orchestrator.create_thread()
        await orchestrator.send(first.id, "a")
        await orchestrator.send(second.id, "b")

        orchestrator.clear_all()

        assert first.messages == [] and second.messages == []
        assert len(orchestrator.list_threads()) == 2

    async def test_turns_persist_to_store(self, tmp_path):
        path = tmp_path / "chat.sqlite3"
        with ChatStore(path) as store:
            _, orchestrator = make_orchestrator(store=store)
            thread = orchestrator.create_thread("Saved", style="creative")
            await orchestrator.send(thread.id, "Hello")

        with ChatStore(path) as store:
            _, reloaded = make_orchestrator(store=store)
            restored = reloaded.get_thread(thread.id)

        assert restored.title == "Saved"
        assert restored.style is StylePreset.CREATIVE
        assert restored.turn_count == 1
        assert [m.text for m in restored.messages] == ["Hello", "You said: Hello"]

    async def test_cancelled_turn_is_not_persisted(self, tmp_path):
        with ChatStore(tmp_path / "chat.sqlite3") as store:
            _, orchestrator = make_orchestrator(
                ScriptedReply(tokens=("a",), hang_after=0), store=store
            )
            thread = orchestrator.create_thread()
            task = orchestrator.send(thread.id, "Hello")
            await asyncio.sleep(0)
            orchestrator.cancel(thread.id)
            await task

            assert store.load_messages(thread.id) == []

    async def test_store_failure_rolls_back_turn_and_still_completes(self, tmp_path):
        with ChatStore(tmp_path / "chat.sqlite3") as store:
            _, orchestrator = make_orchestrator(store=store)
            thread = orchestrator.create_thread()
            completions = []
            with patch.object(
                store, "append_messages", side_effect=sqlite3.OperationalError("disk full")
            ):
                task = orchestrator.send(thread.id, "Hello", on_completion=completions.append)
                with pytest.raises(sqlite3.OperationalError):
                    await task

            assert [r.finish_reason for r in completions] == [FinishReason.STOP]
            assert thread.messages == []
            assert thread.turn_count == 0
            assert orchestrator.has_failed_turn(thread.id)
            assert not orchestrator.is_generating(thread.id)
            assert store.load_messages(thread.id) == []
