"""
Single-use, cancellable streaming generation sessions.

A :class:`Session` moves through ``Idle -> Generating -> {Completed | Cancelled | Failed}``
exactly once. Backends subclass it and implement :meth:`Session._stream`, an async
generator of text chunks; everything else (ordering, cancellation, the single
terminal delivery and error mapping) lives here so every backend behaves the same.
"""

from __future__ import annotations

import asyncio
import contextlib
import functools
import inspect
import logging
import time
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Callable, Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from .exceptions import (
    ErrorKind,
    GenerationCancelled,
    InputTooLong,
    InvalidState,
    ResponseTruncated,
    SafetyBlocked,
)
from .models import (
    FailureCause,
    FinishReason,
    GenerationOptions,
    GenerationResult,
    Message,
    Role,
    SafetyFinding,
    TokenUsage,
)

logger = logging.getLogger("ezllm.session")

# Roughly 4096 tokens at ~4 characters per token.
DEFAULT_MAX_PROMPT_CHARS = 16_000

TokenCallback = Callable[[str], Any]
CompletionCallback = Callable[[GenerationResult], Any]

_ROLE_TAGS = {Role.SYSTEM: "System", Role.USER: "User", Role.ASSISTANT: "Assistant"}


class SessionState(str, Enum):
    IDLE = "idle"
    GENERATING = "generating"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (SessionState.COMPLETED, SessionState.CANCELLED, SessionState.FAILED)


_TERMINAL_STATES = {
    FinishReason.STOP: SessionState.COMPLETED,
    FinishReason.LENGTH: SessionState.COMPLETED,
    FinishReason.SAFETY: SessionState.COMPLETED,
    FinishReason.CANCEL: SessionState.CANCELLED,
    FinishReason.ERROR: SessionState.FAILED,
}


@dataclass(frozen=True)
class SessionConfig:
    """Defaults a Provider binds into every Session it makes."""

    default_options: GenerationOptions = field(default_factory=GenerationOptions)
    logging_enabled: bool = False
    max_prompt_chars: int | None = DEFAULT_MAX_PROMPT_CHARS


def build_prompt(messages: Sequence[Message], system_prompt: str = "") -> str:
    """Assemble the model-facing prompt: system prompt, then every turn role-tagged in order.

    No truncation happens here; context management is left to the model runtime.
    """
    blocks: list[str] = []
    if system_prompt.strip():
        blocks.append(f"[System]\n{system_prompt.strip()}")
    for message in messages:
        blocks.append(f"[{_ROLE_TAGS[message.role]}]\n{message.text}")
    blocks.append("[Assistant]\n")
    return "\n\n".join(blocks)


async def invoke_callback(callback: Callable[..., Any] | None, *args: Any) -> None:
    if callback is None:
        return
    outcome = callback(*args)
    if inspect.isawaitable(outcome):
        await outcome


def _cancelled_result(latency: float) -> GenerationResult:
    cause = FailureCause.from_exception(GenerationCancelled("Generation cancelled by caller."))
    return GenerationResult.failed(cause, latency_s=latency)


class Session(ABC):
    """Base class for one streaming generation request.

    Subclasses implement :meth:`_stream`. To report a non-natural end they raise
    :class:`ResponseTruncated` (backend length limit), :class:`SafetyBlocked`
    (content policy) or :class:`InputTooLong` (context overflow); any other
    exception becomes a ``generic_failure``.
    """

    provider_name = "abstract"

    def __init__(self, config: SessionConfig | None = None) -> None:
        self.config = config or SessionConfig()
        self._state = SessionState.IDLE
        self._task: asyncio.Task[GenerationResult] | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._cancel_requested = False
        self._streaming = False
        self._result: GenerationResult | None = None
        self._late_delivery: asyncio.Task[GenerationResult] | None = None

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def result(self) -> GenerationResult | None:
        return self._result

    @abstractmethod
    def _stream(self, prompt: str, options: GenerationOptions) -> AsyncIterator[str]:
        """Yield incremental text chunks in generation order."""

    def _usage(self) -> TokenUsage | None:
        """Token counts for the finished generation, when the backend exposes them."""
        return None

    def generate(
        self,
        messages: Sequence[Message],
        options: GenerationOptions | None = None,
        on_token: TokenCallback | None = None,
        on_completion: CompletionCallback | None = None,
    ) -> asyncio.Task[GenerationResult]:
        """Start generating and return immediately.

        Must be called from a running event loop; both callbacks are delivered on
        that loop, strictly in order, and ``on_completion`` exactly once. The
        returned task resolves to the same result ``on_completion`` receives.

        Raises:
            InvalidState: the session has already been used.
            ValueError: ``messages`` is empty or does not end with a user turn.
        """
        if self._state is not SessionState.IDLE:
            raise InvalidState(
                f"generate() called on a session in state '{self._state.value}'; "
                "sessions are single-use"
            )
        transcript = list(messages)
        if not transcript:
            raise ValueError("messages must contain at least the pending user turn")
        if transcript[-1].role is not Role.USER:
            raise ValueError("the last message must be the pending user turn")

        loop = asyncio.get_running_loop()
        resolved = options or self.config.default_options
        prompt = build_prompt(transcript, resolved.system_prompt)
        self._loop = loop

        limit = self.config.max_prompt_chars
        if limit is not None and len(prompt) > limit:
            self._state = SessionState.FAILED
            cause = FailureCause(
                kind=ErrorKind.INPUT_TOO_LONG,
                message=f"Prompt is {len(prompt)} characters; the limit is {limit}.",
                exception_type=InputTooLong.__name__,
            )
            logger.warning("[EzLLM Session] %s Not starting generation.", cause.message)
            preflight = GenerationResult.failed(cause, latency_s=0.0)
            coro = self._deliver(preflight, on_completion)
        else:
            preflight = None
            self._state = SessionState.GENERATING
            coro = self._run(prompt, resolved, on_token, on_completion)

        self._task = loop.create_task(coro, name=f"ezllm-{self.provider_name}-generate")
        self._task.add_done_callback(
            functools.partial(self._resolve_if_unstarted, preflight, on_completion)
        )
        return self._task

    def cancel(self) -> None:
        """Stop an in-flight generation; a no-op unless the session is generating.

        Safe to call from a callback, another task, or another thread. Once this
        returns no further ``on_token`` call is started.
        """
        if self._state is not SessionState.GENERATING or self._cancel_requested:
            return
        self._cancel_requested = True
        if self._loop is None:
            return
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is self._loop:
            self._interrupt()
        else:
            self._loop.call_soon_threadsafe(self._interrupt)

    def _interrupt(self) -> None:
        task = self._task
        # Before streaming starts _run sees the flag itself; from inside our own
        # task the flag stops the stream at the next chunk.
        if task is None or task.done() or not self._streaming:
            return
        if asyncio.current_task() is not task:
            task.cancel()

    def _resolve_if_unstarted(
        self,
        preflight: GenerationResult | None,
        on_completion: CompletionCallback | None,
        task: asyncio.Task[GenerationResult],
    ) -> None:
        """Deliver the terminal result of a task cancelled before its first step."""
        if not task.cancelled() or self._result is not None:
            return
        self._cancel_requested = True
        result = preflight or _cancelled_result(0.0)
        self._state = _TERMINAL_STATES[result.finish_reason]
        self._late_delivery = task.get_loop().create_task(
            self._deliver(result, on_completion), name=f"ezllm-{self.provider_name}-complete"
        )

    async def _run(
        self,
        prompt: str,
        options: GenerationOptions,
        on_token: TokenCallback | None,
        on_completion: CompletionCallback | None,
    ) -> GenerationResult:
        started = time.perf_counter()
        chunks: list[str] = []
        error: Exception | None = None
        self._streaming = True
        if self._cancel_requested:
            return await self._deliver(self._outcome(chunks, None, started), on_completion)
        try:
            async with contextlib.aclosing(self._stream(prompt, options)) as stream:
                async for chunk in stream:
                    if self._cancel_requested:
                        break
                    if not chunk:
                        continue
                    chunks.append(chunk)
                    await invoke_callback(on_token, chunk)
                    if self._cancel_requested:
                        break
        except asyncio.CancelledError:
            if not self._cancel_requested:
                # Task cancelled directly (e.g. a caller deadline): resolve, then propagate.
                self._cancel_requested = True
                await self._deliver(self._outcome(chunks, None, started), on_completion)
                raise
            # Requested through cancel(): the cancellation ends here.
            task = asyncio.current_task()
            if task is not None:
                task.uncancel()
        except Exception as exc:
            error = exc

        return await self._deliver(self._outcome(chunks, error, started), on_completion)

    def _outcome(
        self, chunks: list[str], error: Exception | None, started: float
    ) -> GenerationResult:
        latency = time.perf_counter() - started
        if self._cancel_requested:
            return _cancelled_result(latency)

        text = "".join(chunks)
        if error is None:
            reason = FinishReason.STOP
        elif isinstance(error, ResponseTruncated):
            reason = FinishReason.LENGTH
        elif isinstance(error, SafetyBlocked):
            findings = error.findings or (SafetyFinding(category="content_policy"),)
            return GenerationResult(
                text=text,
                finish_reason=FinishReason.SAFETY,
                usage=self._usage(),
                latency_s=latency,
                safety_findings=findings,
            )
        else:
            if not isinstance(error, InputTooLong):
                logger.error(
                    "[EzLLM Session] %s backend failed: %s",
                    self.provider_name,
                    error,
                    exc_info=error,
                )
            return GenerationResult.failed(FailureCause.from_exception(error), latency_s=latency)

        return GenerationResult(
            text=text, finish_reason=reason, usage=self._usage(), latency_s=latency
        )

    async def _deliver(
        self, result: GenerationResult, on_completion: CompletionCallback | None
    ) -> GenerationResult:
        if self._result is not None:
            return self._result
        self._result = result
        self._state = _TERMINAL_STATES[result.finish_reason]

        if self.config.logging_enabled:
            latency = result.latency_s or 0.0
            rate = len(result.text) / latency if latency > 0 else 0
            logger.info(
                "[EzLLM Session] %s finished (%s) in %.3fs. Output: %d chars, %.0f chars/sec.",
                self.provider_name,
                result.finish_reason.value,
                latency,
                len(result.text),
                rate,
            )
        await invoke_callback(on_completion, result)
        return result

    def __repr__(self) -> str:
        name = type(self).__name__
        return f"{name}(provider={self.provider_name!r}, state={self._state.value!r})"
