"""Shared fixtures: a fake ``apple_fm_sdk`` module and scripted-backend helpers."""

import asyncio
import sys
import threading
import types
from unittest.mock import MagicMock

import pytest

from ezllm.models import Message, Role


def make_mock_model(available=True, reason=None):
    """A stand-in for ``apple_fm_sdk.SystemLanguageModel()``."""
    model = MagicMock()
    model.is_available.return_value = (available, reason)
    return model


def user(text="Hello"):
    return Message(role=Role.USER, text=text)


async def wait_for(predicate, timeout=2.0):
    """Yield to the loop until ``predicate()`` is true."""
    async with asyncio.timeout(timeout):
        while not predicate():
            await asyncio.sleep(0.001)


class FakeFoundationModels(types.ModuleType):
    """Minimal surface of ``apple_fm_sdk`` used by the apple backend.

    ``stream_response`` yields cumulative snapshots, then raises ``error`` if set.
    When ``hold`` is set to a threading.Event the stream blocks after the last
    snapshot until the event is set.
    """

    def __init__(self):
        super().__init__("apple_fm_sdk")
        self.snapshots = []
        self.error = None
        self.hold = None
        self.available = True
        self.reason = None
        self.sessions = []
        fake = self

        class SystemLanguageModel:
            def __init__(self, guardrails=None):
                self.guardrails = guardrails

            def is_available(self):
                return fake.available, fake.reason

        class SystemLanguageModelGuardrails:
            DEFAULT = "default"
            PERMISSIVE_CONTENT_TRANSFORMATIONS = "permissive"

        class GenerationOptions:
            def __init__(self, **kwargs):
                self.kwargs = kwargs

        class LanguageModelSession:
            def __init__(self, model=None, instructions=None):
                self.model = model
                self.prompts = []
                self.options = []
                fake.sessions.append(self)

            async def stream_response(self, prompt, options=None):
                self.prompts.append(prompt)
                self.options.append(options)
                for snapshot in fake.snapshots:
                    await asyncio.sleep(0)
                    yield snapshot
                if fake.hold is not None:
                    while not fake.hold.is_set():
                        await asyncio.sleep(0.005)
                if fake.error is not None:
                    raise fake.error

        self.SystemLanguageModel = SystemLanguageModel
        self.SystemLanguageModelGuardrails = SystemLanguageModelGuardrails
        self.GenerationOptions = GenerationOptions
        self.LanguageModelSession = LanguageModelSession


@pytest.fixture
def fake_fm(monkeypatch):
    fake = FakeFoundationModels()
    monkeypatch.setitem(sys.modules, "apple_fm_sdk", fake)
    yield fake
    if fake.hold is not None:
        fake.hold.set()


@pytest.fixture
def missing_fm(monkeypatch):
    """Make ``import apple_fm_sdk`` fail as it does on machines without the SDK."""
    monkeypatch.setitem(sys.modules, "apple_fm_sdk", None)


@pytest.fixture
def hold_event():
    event = threading.Event()
    yield event
    event.set()


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    for name in (
        "EZLLM_BACKEND",
        "EZLLM_DB_PATH",
        "EZLLM_LOG_LEVEL",
        "EZLLM_MAX_PROMPT_CHARS",
        "EZLLM_SYSTEM_PROMPT",
        "EZLLM_LOG_GENERATIONS",
    ):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture(autouse=True)
def _restore_ezllm_logger():
    """configure_logging() mutates the package logger; undo it between tests."""
    import logging

    logger = logging.getLogger("ezllm")
    handlers, level = list(logger.handlers), logger.level
    yield
    logger.handlers[:] = handlers
    logger.setLevel(level)
