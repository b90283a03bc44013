"""Sequential turn driver: one outbound call at a time until the job ends."""

from __future__ import annotations

import asyncio
import logging
from contextlib import aclosing
from enum import Enum
from typing import Protocol

from book_distiller.distiller.backend.base import RemoteCallError
from book_distiller.distiller.failure_classifier import classify_turn_failure
from book_distiller.distiller.models import (
    ArtifactHandle,
    Job,
    JobStatus,
    RetryState,
    TurnCompleted,
    TurnDelta,
)
from book_distiller.distiller.prompts import NEXT_PROMPT, seed_turn_trace
from book_distiller.distiller.retry import RetryController, describe_retry
from book_distiller.distiller.trace import render_metadata
from book_distiller.distiller.validator import (
    contains_termination_marker,
    strip_termination_marker,
    validate_turn_text,
)

logger = logging.getLogger(__name__)

FINISHED_TRACE = "End of book marker received. Distillation finished."

_RETRYING_STATUSES = frozenset({JobStatus.RUNNING, JobStatus.WAITING_TO_RETRY})


class TurnOutcome(str, Enum):
    """How a single turn ended."""

    COMPLETED = "completed"
    FINISHED = "finished"
    DISCARDED = "discarded"
    FAILED = "failed"


class LoopHost(Protocol):
    """Owner of job status that the loop reports transitions to."""

    @property
    def status(self) -> JobStatus: ...

    def is_current(self, job: Job) -> bool: ...

    def transition(
        self,
        job: Job,
        status: JobStatus,
        cause: str | None,
        *,
        retry_state: RetryState | None = None,
        error_message: str | None = None,
    ) -> None: ...


class _TurnEntry:
    """Bookkeeping for the output entry of one attempt."""

    __slots__ = ("job", "opened")

    def __init__(self, job: Job) -> None:
        self.job = job
        self.opened = False

    def open(self) -> None:
        self.job.output_log.append("")
        self.opened = True

    def append(self, text: str) -> None:
        if self.opened:
            self.job.output_log[-1] += text

    def replace(self, text: str) -> None:
        if not self.opened:
            self.open()
        self.job.output_log[-1] = text

    def withdraw(self) -> None:
        if self.opened:
            self.job.output_log.pop()
            self.opened = False
        if self.job.conversation is not None:
            self.job.conversation.rollback()


class TurnLoop:
    """Request turns until the marker arrives or the job leaves Running."""

    def __init__(self, *, host: LoopHost, retry: RetryController) -> None:
        self._host = host
        self._retry = retry

    async def run(self, job: Job) -> None:
        while self._host.is_current(job) and self._host.status is JobStatus.RUNNING:
            outcome = await self.run_turn(job)
            logger.debug("job=%s turn outcome=%s", job.job_id, outcome.value)
            if outcome in {TurnOutcome.FINISHED, TurnOutcome.FAILED}:
                return

    async def run_turn(self, job: Job) -> TurnOutcome:
        """Issue the next turn, retrying failed calls within the attempt budget."""

        is_seed = job.next_prompt_is_seed
        prompt = job.config.seed_prompt if is_seed else NEXT_PROMPT
        artifact = job.handle if is_seed else None
        job.trace.user(seed_turn_trace(prompt) if is_seed else prompt)

        attempt = 1
        while True:
            try:
                return await self._attempt(job, prompt, artifact)
            except Exception as error:  # noqa: BLE001
                if not self._host.is_current(job) or self._host.status not in _RETRYING_STATUSES:
                    return TurnOutcome.DISCARDED
                if not await self._schedule_retry(job, error, attempt):
                    return TurnOutcome.FAILED
            waiting = self._host.status is JobStatus.WAITING_TO_RETRY
            if not self._host.is_current(job) or not waiting:
                return TurnOutcome.DISCARDED
            attempt += 1

    async def _schedule_retry(self, job: Job, error: Exception, attempt: int) -> bool:
        """Wait out the backoff for ``attempt``; ``False`` once the budget is spent."""

        classification = classify_turn_failure(error, during_turn=True)
        logger.warning(
            "job=%s turn=%d attempt=%d failed (%s): %s",
            job.job_id,
            job.completed_turns + 1,
            attempt,
            classification.reason_code,
            classification.message,
        )
        if not classification.retryable or not self._retry.should_retry(attempt):
            self._host.transition(
                job,
                JobStatus.ERROR,
                f"Distillation failed: {classification.message}",
                error_message=classification.message,
            )
            return False

        delay = self._retry.compute_delay(attempt)
        state = self._retry.begin(
            attempt=attempt,
            delay=delay,
            error_message=classification.message,
        )
        self._host.transition(
            job,
            JobStatus.WAITING_TO_RETRY,
            describe_retry(state),
            retry_state=state,
        )
        await self._retry.wait(state, delay)
        return True

    async def _attempt(
        self,
        job: Job,
        prompt: str,
        artifact: ArtifactHandle | None,
    ) -> TurnOutcome:
        if job.conversation is None:
            raise RemoteCallError(f"Job {job.job_id} has no open conversation.")
        interruptions = job.interruptions
        entry = _TurnEntry(job)
        if self._host.status is JobStatus.RUNNING:
            entry.open()

        completed: TurnCompleted | None = None
        try:
            events = job.conversation.send_turn(
                prompt,
                model=job.config.model,
                temperature=job.config.temperature,
                artifact=artifact,
            )
            async with aclosing(events):
                async for event in events:
                    retrying = self._host.status is JobStatus.WAITING_TO_RETRY
                    if retrying and self._host.is_current(job):
                        attempt = job.retry_state.attempt + 1 if job.retry_state else 0
                        self._host.transition(
                            job,
                            JobStatus.RUNNING,
                            f"Retry attempt {attempt} is delivering output. Distillation resumed.",
                        )
                        entry.open()
                    if isinstance(event, TurnDelta):
                        entry.append(event.text)
                    else:
                        completed = event

            if completed is None:
                raise RemoteCallError("Turn stream ended without a completion event.")

            if (
                not self._host.is_current(job)
                or self._host.status is not JobStatus.RUNNING
                or job.interruptions != interruptions
            ):
                entry.withdraw()
                if self._host.is_current(job):
                    job.trace.system("In-flight turn output discarded after pause.")
                return TurnOutcome.DISCARDED

            validate_turn_text(completed.text)
        except (Exception, asyncio.CancelledError):
            entry.withdraw()
            raise

        if completed.metadata:
            job.trace.system(render_metadata(completed.metadata))
        job.trace.assistant(completed.text)
        job.completed_turns += 1

        if contains_termination_marker(completed.text):
            entry.replace(strip_termination_marker(completed.text))
            self._host.transition(job, JobStatus.FINISHED, FINISHED_TRACE)
            return TurnOutcome.FINISHED

        entry.replace(completed.text)
        return TurnOutcome.COMPLETED
