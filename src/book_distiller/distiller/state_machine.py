"""Job lifecycle: commands, status transitions and teardown."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from datetime import datetime
from typing import Protocol
from uuid import uuid4

from book_distiller.config import validate_temperature
from book_distiller.distiller.backend.base import RemoteModelClient
from book_distiller.distiller.failure_classifier import classify_turn_failure
from book_distiller.distiller.models import (
    ACTIVE_STATUSES,
    STOPPABLE_STATUSES,
    Artifact,
    Job,
    JobStatus,
    RetryState,
    RunConfig,
    TraceEntry,
    UploadState,
    render_document,
)
from book_distiller.distiller.prompts import PROMPT_HISTORY_LIMIT, remember_prompt
from book_distiller.distiller.retry import RetryController
from book_distiller.distiller.trace import TraceListener, TraceRecorder
from book_distiller.distiller.turn_loop import TurnLoop
from book_distiller.storage.common import utc_now

logger = logging.getLogger(__name__)

MISSING_API_KEY_MESSAGE = "A Gemini API key is required to start."
MISSING_ARTIFACT_MESSAGE = "A file is required to start."

ClientFactory = Callable[[RunConfig], RemoteModelClient]
StatusListener = Callable[[JobStatus], None]


class PromptStore(Protocol):
    """Persists the most-recent-first prompt history."""

    def record_prompt(self, prompt: str) -> list[str]: ...


class InMemoryPromptStore:
    """Prompt history kept for the life of the process."""

    def __init__(self, limit: int = PROMPT_HISTORY_LIMIT) -> None:
        self.limit = limit
        self.history: list[str] = []

    def record_prompt(self, prompt: str) -> list[str]:
        self.history = remember_prompt(self.history, prompt, limit=self.limit)
        return list(self.history)


class JobStateMachine:
    """Single active distillation job driven by Start/Pause/Resume/Stop/Retry.

    Every status change goes through :meth:`transition`, which also writes the
    system trace entry naming its cause. The turn loop runs as one background
    task; Stop cancels it and discards the job, so results arriving for an
    older job are ignored by identity.
    """

    def __init__(
        self,
        client_factory: ClientFactory,
        *,
        retry: RetryController | None = None,
        prompt_store: PromptStore | None = None,
        clock: Callable[[], datetime] = utc_now,
        trace_listener: TraceListener | None = None,
        status_listener: StatusListener | None = None,
    ) -> None:
        self._client_factory = client_factory
        self._retry = retry or RetryController()
        self._prompt_store = prompt_store or InMemoryPromptStore()
        self._clock = clock
        self._trace_listener = trace_listener
        self._status_listener = status_listener
        self._loop = TurnLoop(host=self, retry=self._retry)

        self._status = JobStatus.IDLE
        self._artifact: Artifact | None = None
        self._job: Job | None = None
        self._client: RemoteModelClient | None = None
        self._task: asyncio.Task[None] | None = None
        self._trace = self._new_trace("idle")
        self._error_message: str | None = None
        self._last_config: RunConfig | None = None

    @property
    def status(self) -> JobStatus:
        return self._status

    @property
    def job(self) -> Job | None:
        return self._job

    @property
    def artifact(self) -> Artifact | None:
        return self._artifact

    @property
    def output_log(self) -> tuple[str, ...]:
        return tuple(self._job.output_log) if self._job is not None else ()

    @property
    def trace_log(self) -> tuple[TraceEntry, ...]:
        return self._trace.entries

    @property
    def trace(self) -> TraceRecorder:
        return self._trace

    @property
    def retry_state(self) -> RetryState | None:
        return self._job.retry_state if self._job is not None else None

    @property
    def error_message(self) -> str | None:
        return self._error_message

    def document(self) -> str:
        """Current output joined for export."""

        return render_document(self.output_log)

    def is_current(self, job: Job) -> bool:
        return self._job is job

    def transition(
        self,
        job: Job,
        status: JobStatus,
        cause: str | None,
        *,
        retry_state: RetryState | None = None,
        error_message: str | None = None,
    ) -> None:
        """Move ``job`` to ``status``; retry state only survives into WaitingToRetry."""

        if not self.is_current(job):
            logger.debug("Ignoring %s transition for stale job %s", status.value, job.job_id)
            return
        previous = self._status
        self._status = status
        job.retry_state = retry_state if status is JobStatus.WAITING_TO_RETRY else None
        if status is JobStatus.ERROR:
            self._error_message = error_message
        logger.info("job=%s status %s -> %s", job.job_id, previous.value, status.value)
        if cause is not None:
            job.trace.system(cause)
        self._notify_status()

    async def select_artifact(self, artifact: Artifact) -> None:
        """Remember the source for the next Start, stopping any run that holds a job."""

        if (
            self._status in ACTIVE_STATUSES
            or self._status is JobStatus.PAUSED
            or self._job is not None
        ):
            logger.info("New artifact selected while %s; stopping the run.", self._status.value)
            await self._teardown()
            self._set_status(JobStatus.STOPPED)
        self._artifact = artifact

    async def start(self, config: RunConfig) -> Job | None:
        """Tear down any previous job and begin uploading the selected artifact."""

        await self._teardown()
        self._last_config = config
        job_id = str(uuid4())
        self._trace = self._new_trace(job_id)

        artifact = self._artifact
        validation_error = _validate_start(config, artifact)
        if validation_error is not None or artifact is None:
            message = validation_error or MISSING_ARTIFACT_MESSAGE
            logger.warning("Start rejected: %s", message)
            self._error_message = message
            self._set_status(JobStatus.ERROR)
            self._trace.system(message)
            return None

        self._prompt_store.record_prompt(config.seed_prompt)
        client = self._client_factory(config)
        job = Job(
            job_id=job_id,
            config=config,
            artifact=artifact,
            trace=self._trace,
            conversation=client.open_conversation(job_id=job_id),
        )
        self._client = client
        self._job = job
        self.transition(job, JobStatus.UPLOADING, f"Uploading {job.artifact.display_name}...")
        self._task = asyncio.create_task(self._drive(job), name=f"distill-{job_id}")
        return job

    async def pause(self) -> bool:
        """Pause at the next turn boundary; a pending retry is abandoned."""

        job = self._job
        if job is None or self._status not in {JobStatus.RUNNING, JobStatus.WAITING_TO_RETRY}:
            return False
        waiting = self._status is JobStatus.WAITING_TO_RETRY
        job.interruptions += 1
        self.transition(job, JobStatus.PAUSED, "Distillation paused.")
        if waiting:
            await self._cancel_task()
        return True

    async def resume(self) -> bool:
        job = self._job
        if job is None or self._status is not JobStatus.PAUSED:
            return False
        self.transition(job, JobStatus.RUNNING, "Distillation resumed.")
        self._ensure_driving(job)
        return True

    async def stop(self) -> bool:
        """Discard all job state; allowed from any status that owns results."""

        if self._status not in STOPPABLE_STATUSES:
            return False
        await self._teardown()
        self._set_status(JobStatus.STOPPED)
        return True

    async def retry(self, config: RunConfig | None = None) -> Job | None:
        """Manual retry from Error: re-issue the failed turn, or Start again."""

        if self._status is not JobStatus.ERROR:
            return None
        job = self._job
        if job is None:
            fallback = config or self._last_config
            if fallback is None:
                return None
            return await self.start(fallback)

        self._error_message = None
        self.transition(
            job,
            JobStatus.RUNNING,
            f"Manual retry requested. Re-issuing turn {job.completed_turns + 1}.",
        )
        self._ensure_driving(job)
        return job

    async def wait(self) -> JobStatus:
        """Block until the background task settles; returns the resulting status."""

        while self._task is not None and not self._task.done():
            await asyncio.wait({self._task})
        return self._status

    async def aclose(self) -> None:
        await self._teardown()

    async def _drive(self, job: Job) -> None:
        try:
            if job.handle is None and not await self._ingest(job):
                return
            await self._loop.run(job)
        except Exception as error:  # noqa: BLE001
            logger.exception("Unexpected failure driving job %s", job.job_id)
            message = classify_turn_failure(error).message
            self.transition(
                job,
                JobStatus.ERROR,
                f"Distillation failed: {message}",
                error_message=message,
            )

    async def _ingest(self, job: Job) -> bool:
        client = self._client
        if client is None:
            return False

        def on_state(state: UploadState) -> None:
            if state is UploadState.PROCESSING and self._status is JobStatus.UPLOADING:
                self.transition(
                    job,
                    JobStatus.PROCESSING_FILE,
                    "File uploaded. Waiting for processing to complete.",
                )

        try:
            handle = await client.upload(job.artifact, on_state=on_state)
        except Exception as error:  # noqa: BLE001
            message = str(error) or type(error).__name__
            logger.warning("Artifact ingestion failed for job %s: %s", job.job_id, message)
            self.transition(
                job,
                JobStatus.ERROR,
                f"Distillation failed: {message}",
                error_message=message,
            )
            if self.is_current(job):
                await self._release(job)
                self._artifact = None
            return False

        if not self.is_current(job):
            return False
        job.handle = handle
        self.transition(job, JobStatus.RUNNING, f"File ready. URI: {handle.uri}")
        return True

    def _ensure_driving(self, job: Job) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._drive(job), name=f"distill-{job.job_id}")

    async def _cancel_task(self) -> None:
        task = self._task
        if task is None or task.done():
            return
        if task is asyncio.current_task():
            raise RuntimeError("The distillation task cannot cancel itself.")
        task.cancel()
        await asyncio.wait({task})

    async def _release(self, job: Job) -> None:
        """Close the job's conversation and client and forget the job."""

        self._job = None
        client, self._client = self._client, None
        if job.conversation is not None:
            await job.conversation.aclose()
        if client is not None:
            await client.aclose()

    async def _teardown(self) -> None:
        await self._cancel_task()
        self._task = None
        job = self._job
        if job is not None:
            await self._release(job)
        self._error_message = None
        self._trace = self._new_trace("idle")

    def _set_status(self, status: JobStatus) -> None:
        self._status = status
        self._notify_status()

    def _notify_status(self) -> None:
        if self._status_listener is not None:
            self._status_listener(self._status)

    def _new_trace(self, job_id: str) -> TraceRecorder:
        return TraceRecorder(job_id=job_id, clock=self._clock, listener=self._trace_listener)


def _validate_start(config: RunConfig, artifact: Artifact | None) -> str | None:
    if not config.api_key:
        return MISSING_API_KEY_MESSAGE
    if artifact is None:
        return MISSING_ARTIFACT_MESSAGE
    if not config.model.strip():
        return "A model name is required to start."
    try:
        validate_temperature(config.temperature)
    except ValueError as error:
        return str(error)
    return None
