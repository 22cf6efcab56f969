"""Apple Foundation Models backend built on ``apple_fm_sdk``.

The SDK stream runs on a dedicated worker thread with its own event loop and
forwards cumulative snapshots to the caller's loop, so the caller's loop stays
responsive. Snapshots are converted into append-only deltas for ``on_token``.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import threading
from collections.abc import AsyncIterator
from typing import Any

from ..exceptions import (
    AppleFMSetupError,
    InputTooLong,
    ResponseTruncated,
    SafetyBlocked,
    ensure_model_available,
    load_apple_fm,
)
from ..models import GenerationOptions, SafetyFinding, SafetyPolicy
from ..provider import Provider
from ..session import Session, SessionConfig

logger = logging.getLogger("ezllm.backends.apple_fm")

STREAM_WORKER_JOIN_TIMEOUT_SECONDS = 0.4
_CONTEXT_OVERFLOW_MARKERS = ("ExceededContextWindowSize", "Context window size exceeded")


def create_model(fm: Any, policy: SafetyPolicy = SafetyPolicy.DEFAULT) -> Any:
    """Build the system model, relaxing guardrails only when the SDK offers it."""
    guardrails = getattr(fm, "SystemLanguageModelGuardrails", None)
    if policy is SafetyPolicy.PERMISSIVE and guardrails is not None:
        permissive = getattr(guardrails, "PERMISSIVE_CONTENT_TRANSFORMATIONS", None)
        if permissive is not None:
            return fm.SystemLanguageModel(guardrails=permissive)
        logger.debug("[EzLLM Apple] Permissive guardrails not offered by this SDK; using default.")
    return fm.SystemLanguageModel()


def to_sdk_options(fm: Any, options: GenerationOptions) -> Any | None:
    """Translate GenerationOptions; ``None`` leaves every sampling knob at the SDK default."""
    kwargs: dict[str, Any] = {}
    if options.temperature is not None:
        kwargs["temperature"] = options.temperature
    if options.max_response_tokens is not None:
        kwargs["maximum_response_tokens"] = options.max_response_tokens
    if options.top_p is not None:
        logger.debug("[EzLLM Apple] top_p=%s has no SDK equivalent; ignored.", options.top_p)
    if options.model_variant.value != "auto":
        logger.debug(
            "[EzLLM Apple] Only the system model is available; variant '%s' ignored.",
            options.model_variant.value,
        )
    sdk_options_cls = getattr(fm, "GenerationOptions", None)
    if not kwargs or sdk_options_cls is None:
        return None
    return sdk_options_cls(**kwargs)


def map_sdk_error(exc: Exception, *, produced_output: bool) -> Exception:
    """Map SDK exceptions onto the EzLLM taxonomy by class name and message."""
    described = f"{type(exc).__name__}: {exc}"
    if any(marker in described for marker in _CONTEXT_OVERFLOW_MARKERS):
        if produced_output:
            return ResponseTruncated(str(exc) or "Context window size exceeded")
        return InputTooLong(str(exc) or "Context window size exceeded")
    if "guardrail" in described.lower():
        return SafetyBlocked(findings=(SafetyFinding(category="guardrail_violation"),))
    return exc


def _snapshot_delta(previous: str, snapshot: str) -> str:
    """Text to forward for ``snapshot`` after ``previous`` was already forwarded.

    Delivered chunks cannot be retracted, so when the SDK rewrites earlier text
    only the part past the common prefix is sent.
    """
    if snapshot.startswith(previous):
        return snapshot[len(previous) :]
    common = os.path.commonprefix([previous, snapshot])
    logger.warning(
        "[EzLLM Apple] Stream snapshot rewrote earlier text; forwarding from the divergence."
    )
    return snapshot[len(common) :]


class AppleFoundationSession(Session):
    provider_name = "apple"

    def __init__(self, fm: Any, config: SessionConfig) -> None:
        super().__init__(config)
        self._fm = fm

    async def _stream(self, prompt: str, options: GenerationOptions) -> AsyncIterator[str]:
        fm = self._fm
        caller_loop = asyncio.get_running_loop()
        event_queue: asyncio.Queue[tuple[str, Any]] = asyncio.Queue()
        cancel_event = threading.Event()
        worker_done = threading.Event()

        def post(kind: str, payload: Any) -> None:
            # The caller's loop may already be closed once we have been cancelled.
            with contextlib.suppress(RuntimeError):
                caller_loop.call_soon_threadsafe(event_queue.put_nowait, (kind, payload))

        def producer_sync() -> None:
            async def producer() -> None:
                sdk_session = fm.LanguageModelSession(model=create_model(fm, options.safety_policy))
                sdk_options = to_sdk_options(fm, options)
                if sdk_options is None:
                    stream = sdk_session.stream_response(prompt)
                else:
                    stream = sdk_session.stream_response(prompt, options=sdk_options)
                try:
                    async for snapshot in stream:
                        if cancel_event.is_set():
                            break
                        post("snapshot", str(snapshot))
                except Exception as exc:
                    post("error", exc)
                    return
                post("done", None)

            try:
                asyncio.run(producer())
            except Exception as exc:
                post("error", exc)
            finally:
                worker_done.set()

        worker = threading.Thread(target=producer_sync, name="ezllm-apple-stream", daemon=True)
        worker.start()
        previous = ""
        try:
            while True:
                kind, payload = await event_queue.get()
                if kind == "snapshot":
                    delta = _snapshot_delta(previous, payload)
                    previous = payload
                    if delta:
                        yield delta
                    continue
                if kind == "error":
                    mapped = map_sdk_error(payload, produced_output=bool(previous))
                    if mapped is payload:
                        raise payload
                    raise mapped from payload
                break
        finally:
            cancel_event.set()
            with contextlib.suppress(Exception):
                await asyncio.to_thread(worker_done.wait, STREAM_WORKER_JOIN_TIMEOUT_SECONDS)


class AppleFoundationProvider(Provider):
    """Provider for the on-device Apple Foundation Model.

    The capability probe imports the SDK lazily and asks the system model whether
    it can run; the answer is cached until :meth:`refresh` is called.
    """

    name = "apple"

    def __init__(self) -> None:
        self._probe: tuple[bool, str | None] | None = None

    def _run_probe(self) -> tuple[bool, str | None]:
        if self._probe is None:
            try:
                fm = load_apple_fm("apple provider")
                ensure_model_available(fm.SystemLanguageModel(), context="apple provider")
            except AppleFMSetupError as exc:
                self._probe = (False, exc.reason)
            except Exception as exc:
                logger.warning("[EzLLM Apple] Capability probe failed.", exc_info=True)
                self._probe = (False, f"capability probe failed: {exc}")
            else:
                self._probe = (True, None)
        return self._probe

    def is_supported(self) -> bool:
        return self._run_probe()[0]

    def unavailable_reason(self) -> str | None:
        return self._run_probe()[1]

    def refresh(self) -> None:
        """Forget the cached probe result (e.g. after the model finished downloading)."""
        self._probe = None

    def _create_session(self, config: SessionConfig) -> AppleFoundationSession:
        return AppleFoundationSession(load_apple_fm("apple provider"), config)
