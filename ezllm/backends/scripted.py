"""
Deterministic in-process backend.

Plays back scripted replies token by token. Used by the test-suite, the use cases,
and the CLI on machines without Apple Foundation Models.
"""

from __future__ import annotations

import asyncio
import re
from collections import deque
from collections.abc import AsyncIterator, Callable, Sequence
from dataclasses import dataclass

from ..exceptions import GenericFailure, ResponseTruncated, SafetyBlocked
from ..models import FinishReason, GenerationOptions, SafetyFinding, TokenUsage
from ..provider import Provider
from ..session import Session, SessionConfig

_WORD_PATTERN = re.compile(r"\s*\S+")


@dataclass(frozen=True)
class ScriptedReply:
    """One scripted generation.

    ``hang_after`` blocks the stream after that many tokens until the session is
    cancelled, which makes mid-stream cancellation deterministic.
    """

    tokens: tuple[str, ...] = ()
    finish: FinishReason = FinishReason.STOP
    error: Exception | None = None
    hang_after: int | None = None
    delay_s: float = 0.0


ReplyFactory = Callable[[str], ScriptedReply]


def tokenize(text: str) -> tuple[str, ...]:
    """Split text into word chunks that keep their leading whitespace."""
    return tuple(_WORD_PATTERN.findall(text))


def last_user_turn(prompt: str) -> str:
    tail = prompt.rsplit("[User]\n", 1)[-1]
    return tail.split("\n\n[Assistant]", 1)[0].strip()


def echo_reply(prompt: str) -> ScriptedReply:
    """Default script: repeat the pending user turn back."""
    return ScriptedReply(tokens=tokenize(f"You said: {last_user_turn(prompt)}"))


class ScriptedSession(Session):
    provider_name = "scripted"

    def __init__(
        self, provider: ScriptedProvider, reply: ScriptedReply | None, config: SessionConfig
    ):
        super().__init__(config)
        self._provider = provider
        self._reply = reply
        self._prompt_chars = 0
        self._emitted = 0

    async def _stream(self, prompt: str, options: GenerationOptions) -> AsyncIterator[str]:
        self._provider.prompts.append(prompt)
        self._provider.options.append(options)
        self._prompt_chars = len(prompt)
        reply = self._reply or self._provider.factory(prompt)
        limit = options.max_response_tokens

        for index, token in enumerate(reply.tokens):
            if reply.hang_after is not None and index >= reply.hang_after:
                await asyncio.Event().wait()
            if limit is not None and index >= limit:
                raise ResponseTruncated(f"Reached max_response_tokens={limit}")
            await asyncio.sleep(reply.delay_s)
            self._emitted += 1
            yield token

        if reply.hang_after is not None and reply.hang_after >= len(reply.tokens):
            await asyncio.Event().wait()

        if reply.finish is FinishReason.LENGTH:
            raise ResponseTruncated("Scripted length limit")
        if reply.finish is FinishReason.SAFETY:
            raise SafetyBlocked(findings=(SafetyFinding(category="scripted"),))
        if reply.finish is FinishReason.ERROR:
            raise reply.error or GenericFailure("Scripted backend failure")

    def _usage(self) -> TokenUsage:
        return TokenUsage(prompt_tokens=self._prompt_chars // 4, completion_tokens=self._emitted)


class ScriptedProvider(Provider):
    """Provider whose sessions replay ``replies`` in order (the last one repeats).

    ``replies`` may instead be a callable mapping the prompt to a reply; the
    default echoes the user's last message.
    """

    name = "scripted"

    def __init__(
        self,
        replies: Sequence[ScriptedReply] | ReplyFactory | None = None,
        *,
        supported: bool = True,
        reason: str | None = None,
    ) -> None:
        self.factory: ReplyFactory = echo_reply
        self._queue: deque[ScriptedReply] = deque()
        if callable(replies):
            self.factory = replies
        elif replies:
            self._queue.extend(replies)
        self.supported = supported
        self.reason = reason
        self.sessions: list[ScriptedSession] = []
        self.prompts: list[str] = []
        self.options: list[GenerationOptions] = []

    def is_supported(self) -> bool:
        return self.supported

    def unavailable_reason(self) -> str | None:
        if self.supported:
            return None
        return self.reason or "scripted backend disabled"

    def _next_reply(self) -> ScriptedReply | None:
        if not self._queue:
            return None
        if len(self._queue) == 1:
            return self._queue[0]
        return self._queue.popleft()

    def _create_session(self, config: SessionConfig) -> ScriptedSession:
        session = ScriptedSession(self, self._next_reply(), config)
        self.sessions.append(session)
        return session
