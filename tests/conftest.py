"""Shared test fixtures."""

from __future__ import annotations

import asyncio
from collections.abc import Callable

import pytest

from book_distiller.distiller.backend import ScriptedModelClient
from book_distiller.distiller.models import Artifact, RunConfig
from book_distiller.distiller.retry import RetryController
from book_distiller.distiller.state_machine import JobStateMachine

SEED_PROMPT = "Walk me through the book."

_ENV_VARS = (
    "BOOK_DISTILLER_API_KEY",
    "GEMINI_API_KEY",
    "BOOK_DISTILLER_MODEL",
    "BOOK_DISTILLER_TEMPERATURE",
    "BOOK_DISTILLER_SEED_PROMPT",
    "BOOK_DISTILLER_SEED_PROMPT_FILE",
    "BOOK_DISTILLER_STREAMING",
    "BOOK_DISTILLER_DB_PATH",
    "BOOK_DISTILLER_RETRY_MAX_ATTEMPTS",
    "BOOK_DISTILLER_RETRY_BASE_DELAY_SECONDS",
    "BOOK_DISTILLER_RETRY_MAX_DELAY_SECONDS",
    "BOOK_DISTILLER_RETRY_JITTER_MAX_SECONDS",
    "BOOK_DISTILLER_GEMINI_API_BASE",
    "BOOK_DISTILLER_PROMPT_HISTORY_LIMIT",
)


class RecordingSleep:
    """Sleep stand-in that records delays and returns without suspending."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    for name in _ENV_VARS:
        monkeypatch.delenv(name, raising=False)


@pytest.fixture()
def artifact() -> Artifact:
    return Artifact(display_name="book.pdf", mime_type="application/pdf", data=b"%PDF-1.7 book")


@pytest.fixture()
def run_config() -> RunConfig:
    return RunConfig(
        api_key="test-key",
        model="gemini-2.5-flash",
        temperature=0.7,
        seed_prompt=SEED_PROMPT,
    )


@pytest.fixture()
def recording_sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture()
def build_machine(recording_sleep) -> Callable[..., JobStateMachine]:
    def _build(client: ScriptedModelClient, **kwargs) -> JobStateMachine:
        retry = kwargs.pop(
            "retry",
            RetryController(random_fn=lambda: 0.0, sleep=recording_sleep),
        )
        return JobStateMachine(lambda _config: client, retry=retry, **kwargs)

    return _build


async def wait_until(predicate: Callable[[], object], *, max_steps: int = 1_000) -> None:
    """Yield to the event loop until ``predicate`` holds."""

    for _ in range(max_steps):
        if predicate():
            return
        await asyncio.sleep(0)
    raise AssertionError("Condition was not reached.")


@pytest.fixture(name="wait_until")
def _wait_until_fixture() -> Callable[..., object]:
    return wait_until
