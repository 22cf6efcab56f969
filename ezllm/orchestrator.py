"""
Chat orchestration: threads, per-turn Sessions and append-on-completion.

The orchestrator is the only writer of a thread's message list. A turn is
appended (user message + assistant reply) only once its Session completes
successfully; cancelled or failed turns leave the thread untouched and are kept
aside so :meth:`ChatOrchestrator.retry` can replay them on a fresh Session.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Mapping
from typing import Any

from .exceptions import InvalidState, ProviderUnavailable, ThreadBusy, UnknownThread
from .models import (
    ChatThread,
    FailureCause,
    GenerationResult,
    Message,
    Role,
    StylePreset,
)
from .options import resolve_options
from .provider import Provider
from .session import (
    DEFAULT_MAX_PROMPT_CHARS,
    CompletionCallback,
    Session,
    SessionConfig,
    TokenCallback,
    invoke_callback,
)
from .store import ChatStore

logger = logging.getLogger("ezllm.orchestrator")

SYSTEM_INSTRUCTIONS = (
    "You are a local-first assistant running entirely on-device. "
    "Be accurate, practical, and explicit about uncertainty."
)


class ChatOrchestrator:
    """Holds chat threads and routes each user turn through resolver, provider and session."""

    def __init__(
        self,
        provider: Provider,
        *,
        store: ChatStore | None = None,
        system_prompt: str = SYSTEM_INSTRUCTIONS,
        logging_enabled: bool = False,
        max_prompt_chars: int | None = DEFAULT_MAX_PROMPT_CHARS,
    ) -> None:
        self.provider = provider
        self.store = store
        self.system_prompt = system_prompt
        self.logging_enabled = logging_enabled
        self.max_prompt_chars = max_prompt_chars
        self._threads: dict[str, ChatThread] = {}
        self._in_flight: dict[str, Session] = {}
        self._failed_turns: dict[str, str] = {}
        if store is not None:
            for thread in store.load_threads():
                self._threads[thread.id] = thread

    # -- thread management -------------------------------------------------

    def _default_title(self) -> str:
        taken = {thread.title for thread in self._threads.values()}
        index = len(self._threads) + 1
        while f"Chat {index}" in taken:
            index += 1
        return f"Chat {index}"

    def _persist(self, thread: ChatThread) -> None:
        if self.store is not None:
            self.store.save_thread(thread)

    def create_thread(
        self,
        title: str | None = None,
        *,
        style: StylePreset | str = StylePreset.BALANCED,
        guardrails: bool = True,
    ) -> ChatThread:
        thread = ChatThread(
            title=(title or "").strip() or self._default_title(),
            style=StylePreset.parse(style),
            guardrails=guardrails,
        )
        self._threads[thread.id] = thread
        self._persist(thread)
        logger.debug("[EzLLM Chat] Created thread %s (%s)", thread.id, thread.title)
        return thread

    def get_thread(self, thread_id: str) -> ChatThread:
        try:
            return self._threads[thread_id]
        except KeyError:
            raise UnknownThread(thread_id) from None

    def list_threads(self) -> list[ChatThread]:
        """Threads ordered by most recent activity."""
        return sorted(self._threads.values(), key=lambda t: t.updated_at, reverse=True)

    def rename_thread(self, thread_id: str, title: str) -> ChatThread:
        if not title.strip():
            raise ValueError("title must not be empty")
        thread = self.get_thread(thread_id)
        thread.title = title.strip()
        thread.touch()
        self._persist(thread)
        return thread

    def set_style(self, thread_id: str, style: StylePreset | str) -> ChatThread:
        thread = self.get_thread(thread_id)
        thread.style = StylePreset.parse(style)
        thread.touch()
        self._persist(thread)
        return thread

    def set_guardrails(self, thread_id: str, enabled: bool) -> ChatThread:
        thread = self.get_thread(thread_id)
        thread.guardrails = enabled
        thread.touch()
        self._persist(thread)
        return thread

    def clear_history(self, thread_id: str) -> ChatThread:
        """Empty a thread's messages; its id, title and counters are kept."""
        thread = self.get_thread(thread_id)
        if thread_id in self._in_flight:
            raise ThreadBusy(thread_id)
        thread.clear_history()
        self._failed_turns.pop(thread_id, None)
        if self.store is not None:
            self.store.clear_messages(thread_id)
        return thread

    def clear_all(self) -> None:
        if self._in_flight:
            raise ThreadBusy(next(iter(self._in_flight)))
        for thread in self._threads.values():
            thread.clear_history()
        self._failed_turns.clear()
        if self.store is not None:
            self.store.clear_all()

    def delete_thread(self, thread_id: str) -> None:
        self.get_thread(thread_id)
        if thread_id in self._in_flight:
            raise ThreadBusy(thread_id)
        del self._threads[thread_id]
        self._failed_turns.pop(thread_id, None)
        if self.store is not None:
            self.store.delete_thread(thread_id)

    # -- generation ----------------------------------------------------------

    def is_generating(self, thread_id: str) -> bool:
        return thread_id in self._in_flight

    def has_failed_turn(self, thread_id: str) -> bool:
        return thread_id in self._failed_turns

    def send(
        self,
        thread_id: str,
        text: str,
        *,
        on_token: TokenCallback | None = None,
        on_completion: CompletionCallback | None = None,
        overrides: Mapping[str, Any] | None = None,
    ) -> asyncio.Task[GenerationResult]:
        """Start generating the assistant reply to ``text`` on ``thread_id``.

        Returns a task resolving to the GenerationResult; ``on_completion`` is
        called exactly once, after the thread has been updated.

        Raises:
            UnknownThread: no such thread.
            ThreadBusy: the thread already has a generation in flight.
            ValueError: ``text`` is blank.
        """
        thread = self.get_thread(thread_id)
        if thread_id in self._in_flight:
            raise ThreadBusy(thread_id)
        if not text.strip():
            raise ValueError("message text must not be empty")

        user_message = Message(role=Role.USER, text=text)
        options = resolve_options(
            thread.style,
            overrides,
            system_prompt=self.system_prompt,
            guardrails=thread.guardrails,
        )
        config = SessionConfig(
            default_options=options,
            logging_enabled=self.logging_enabled,
            max_prompt_chars=self.max_prompt_chars,
        )

        async def finish(result: GenerationResult) -> None:
            self._in_flight.pop(thread_id, None)
            try:
                self._apply_result(thread, user_message, result)
            finally:
                await invoke_callback(on_completion, result)

        try:
            session = self.provider.make_session(config)
        except ProviderUnavailable as exc:
            logger.warning("[EzLLM Chat] %s", exc)
            result = GenerationResult.failed(FailureCause.from_exception(exc))
            return asyncio.get_running_loop().create_task(self._resolved(result, finish))

        task = session.generate(
            [*thread.messages, user_message], on_token=on_token, on_completion=finish
        )
        self._in_flight[thread_id] = session
        return task

    @staticmethod
    async def _resolved(result: GenerationResult, finish: CompletionCallback) -> GenerationResult:
        await finish(result)
        return result

    def _apply_result(
        self, thread: ChatThread, user_message: Message, result: GenerationResult
    ) -> None:
        if not result.ok:
            self._failed_turns[thread.id] = user_message.text
            logger.info(
                "[EzLLM Chat] Turn on %s ended with '%s'; nothing appended.",
                thread.id,
                result.finish_reason.value,
            )
            return

        metadata: dict[str, Any] = {"finish_reason": result.finish_reason.value}
        if result.latency_s is not None:
            metadata["latency_s"] = round(result.latency_s, 4)
        if result.safety_findings:
            metadata["safety"] = [finding.category for finding in result.safety_findings]
        assistant_message = Message(role=Role.ASSISTANT, text=result.text, metadata=metadata)

        kept, turn_count, updated_at = len(thread.messages), thread.turn_count, thread.updated_at
        thread.append(user_message)
        thread.append(assistant_message)
        thread.turn_count += 1
        if self.store is not None:
            try:
                self.store.append_messages(thread, [user_message, assistant_message])
            except Exception:
                del thread.messages[kept:]
                thread.turn_count, thread.updated_at = turn_count, updated_at
                self._failed_turns[thread.id] = user_message.text
                logger.exception(
                    "[EzLLM Chat] Could not save turn on %s; kept for retry.", thread.id
                )
                raise
        self._failed_turns.pop(thread.id, None)

    def cancel(self, thread_id: str) -> bool:
        """Cancel the thread's in-flight generation. Returns False when nothing was running."""
        session = self._in_flight.get(thread_id)
        if session is None:
            return False
        session.cancel()
        return True

    def retry(
        self,
        thread_id: str,
        *,
        on_token: TokenCallback | None = None,
        on_completion: CompletionCallback | None = None,
        overrides: Mapping[str, Any] | None = None,
    ) -> asyncio.Task[GenerationResult]:
        """Replay the last cancelled or failed turn on a new Session with the same transcript."""
        self.get_thread(thread_id)
        text = self._failed_turns.get(thread_id)
        if text is None:
            raise InvalidState(f"Thread {thread_id} has no failed turn to retry")
        return self.send(
            thread_id, text, on_token=on_token, on_completion=on_completion, overrides=overrides
        )
