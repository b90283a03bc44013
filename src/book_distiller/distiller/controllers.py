"""Controllers for distillation CLI commands."""

from __future__ import annotations

import asyncio
import logging
import signal
from collections.abc import Callable, Coroutine, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from book_distiller.config import Settings, validate_temperature
from book_distiller.distiller.backend import GeminiModelClient, ScriptedModelClient
from book_distiller.distiller.export import ExportFormat, default_export_path, write_export
from book_distiller.distiller.models import Artifact, JobStatus, RunConfig, TraceEntry, TraceRole
from book_distiller.distiller.retry import RetryController, RetryPolicy
from book_distiller.distiller.state_machine import ClientFactory, JobStateMachine
from book_distiller.storage.repository import SETTING_KEYS, SettingsRepository

logger = logging.getLogger(__name__)

ProgressFn = Callable[[str], None]

DRY_RUN_API_KEY = "dry-run"
_PROMPT_PREVIEW_CHARS = 80
_EXPORTABLE_STATUSES = frozenset(
    {JobStatus.FINISHED, JobStatus.PAUSED, JobStatus.ERROR, JobStatus.STOPPED},
)


@dataclass(slots=True)
class DistillRunCommand:
    """CLI input for one distillation run."""

    file_path: Path
    db_path: Path | None = None
    model: str | None = None
    temperature: float | None = None
    prompt_file: Path | None = None
    output_path: Path | None = None
    export_format: ExportFormat = ExportFormat.MARKDOWN
    trace_file: Path | None = None
    streaming: bool | None = None
    dry_run_script: Path | None = None


@dataclass(slots=True)
class ConfigSetCommand:
    """CLI input for storing one setting."""

    db_path: Path | None
    key: str
    value: str


@dataclass(slots=True)
class ConfigKeyCommand:
    """CLI input addressing one stored setting."""

    db_path: Path | None
    key: str


@dataclass(slots=True)
class PromptShowCommand:
    """CLI input for printing one prompt history entry."""

    db_path: Path | None
    index: int


@dataclass(slots=True)
class DistillRunResult:
    """Outcome of a run command."""

    status: JobStatus
    lines: list[str] = field(default_factory=list)
    output_path: Path | None = None
    error_message: str | None = None

    @property
    def success(self) -> bool:
        return self.status is JobStatus.FINISHED


@dataclass(slots=True)
class DistillerCliController:
    """Coordinates distillation runs, stored settings and prompt history."""

    progress: ProgressFn | None = None

    def run(self, command: DistillRunCommand) -> DistillRunResult:
        settings = Settings.from_env(db_path=command.db_path)
        if command.streaming is not None:
            settings.generation.streaming = command.streaming
        settings.validate_for_run()

        with _repository(settings) as repository:
            config = resolve_run_config(
                settings=settings,
                stored=repository.items(),
                command=command,
            )
            artifact = Artifact.from_path(command.file_path)
            client_factory = _client_factory(settings=settings, command=command)
            machine = JobStateMachine(
                client_factory,
                retry=RetryController(RetryPolicy.from_settings(settings.retry)),
                prompt_store=repository,
                trace_listener=self._on_trace,
            )
            snapshot = asyncio.run(_drive_run(machine, artifact=artifact, config=config))

        lines = [
            f"Run status: {snapshot.status.label}",
            f"Turns: {len(snapshot.output_log)}",
        ]
        result = DistillRunResult(
            status=snapshot.status,
            lines=lines,
            error_message=snapshot.error_message,
        )
        if snapshot.status in _EXPORTABLE_STATUSES and snapshot.output_log:
            output_path = command.output_path or default_export_path(
                command.file_path.name,
                command.export_format,
            )
            result.output_path = write_export(output_path, snapshot.document)
            lines.append(f"Document: {result.output_path}")
        else:
            lines.append("Document: nothing to export")
        if command.trace_file is not None:
            write_export(command.trace_file, snapshot.trace_jsonl)
            lines.append(f"Trace: {command.trace_file}")
        if snapshot.error_message:
            lines.append(f"Error: {snapshot.error_message}")
        return result

    def show_config(self, db_path: Path | None) -> list[str]:
        settings = Settings.from_env(db_path=db_path)
        with _repository(settings) as repository:
            stored = repository.items()
        lines = [f"Database: {settings.db_path}"]
        for key in SETTING_KEYS:
            value = stored.get(key)
            if value is None:
                lines.append(f"{key}: -")
            elif key == "api_key":
                lines.append(f"{key}: {mask_secret(value)}")
            elif key == "seed_prompt":
                lines.append(f"{key}: {_preview(value)}")
            else:
                lines.append(f"{key}: {value}")
        return lines

    def set_config(self, command: ConfigSetCommand) -> list[str]:
        value = command.value.strip()
        if not value:
            raise ValueError(f"Value for {command.key} must not be empty.")
        if command.key == "temperature":
            try:
                value = str(validate_temperature(float(value)))
            except ValueError as error:
                raise ValueError(f"Invalid temperature {command.value!r}: {error}") from error
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            repository.set(command.key, value)
        return [f"Stored {command.key}."]

    def unset_config(self, command: ConfigKeyCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            removed = repository.delete(command.key)
        if not removed:
            return [f"{command.key} was not set."]
        return [f"Removed {command.key}."]

    def prompt_history(self, db_path: Path | None) -> list[str]:
        settings = Settings.from_env(db_path=db_path)
        with _repository(settings) as repository:
            prompts = repository.list_prompts()
        if not prompts:
            return ["Prompt history is empty."]
        return [f"{index}. {_preview(prompt)}" for index, prompt in enumerate(prompts, start=1)]

    def show_prompt(self, command: PromptShowCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            prompts = repository.list_prompts()
        if not 1 <= command.index <= len(prompts):
            raise ValueError(
                f"No prompt #{command.index}; history holds {len(prompts)} entries.",
            )
        return [prompts[command.index - 1]]

    def _on_trace(self, entry: TraceEntry) -> None:
        if self.progress is None:
            return
        if entry.role is TraceRole.SYSTEM and not entry.content.startswith("[METADATA]"):
            self.progress(entry.content)
        elif entry.role is TraceRole.ASSISTANT:
            self.progress(f"Received turn ({len(entry.content)} characters).")


def resolve_run_config(
    *,
    settings: Settings,
    stored: dict[str, str],
    command: DistillRunCommand,
) -> RunConfig:
    """Snapshot run settings: CLI option, then stored value, then environment/default."""

    api_key = stored.get("api_key") or settings.api_key
    if command.dry_run_script is not None and not api_key:
        api_key = DRY_RUN_API_KEY

    if command.temperature is not None:
        temperature = command.temperature
    elif "temperature" in stored:
        temperature = float(stored["temperature"])
    else:
        temperature = settings.generation.temperature

    if command.prompt_file is not None:
        seed_prompt = command.prompt_file.read_text("utf-8")
    else:
        seed_prompt = stored.get("seed_prompt") or settings.generation.seed_prompt

    return RunConfig(
        api_key=api_key,
        model=command.model or stored.get("model") or settings.generation.model,
        temperature=temperature,
        seed_prompt=seed_prompt,
    )


def mask_secret(value: str) -> str:
    if len(value) <= 8:
        return "*" * len(value)
    return f"{value[:4]}...{value[-4:]}"


@dataclass(slots=True)
class _RunSnapshot:
    """Results captured before the state machine is closed."""

    status: JobStatus
    output_log: tuple[str, ...]
    document: str
    trace_jsonl: str
    error_message: str | None


class _RunInterrupts:
    """First signal pauses the run, the second stops it."""

    def __init__(self, machine: JobStateMachine) -> None:
        self._machine = machine
        self._count = 0
        self._pending: set[asyncio.Task[bool]] = set()
        self.snapshot: _RunSnapshot | None = None

    def request(self, signal_name: str) -> None:
        self._count += 1
        pausable = self._machine.status in {JobStatus.RUNNING, JobStatus.WAITING_TO_RETRY}
        if self._count == 1 and pausable:
            logger.warning("Received %s; pausing after the current turn.", signal_name)
            self._schedule(self._machine.pause())
            return
        logger.warning("Received %s; stopping the run.", signal_name)
        self.snapshot = _snapshot(self._machine)
        self._schedule(self._machine.stop())

    async def drain(self) -> None:
        if self._pending:
            await asyncio.wait(set(self._pending))

    def _schedule(self, coroutine: Coroutine[Any, Any, bool]) -> None:
        task = asyncio.create_task(coroutine)
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)


async def _drive_run(
    machine: JobStateMachine,
    *,
    artifact: Artifact,
    config: RunConfig,
) -> _RunSnapshot:
    interrupts = _RunInterrupts(machine)
    try:
        with _signal_handlers(interrupts.request):
            await machine.select_artifact(artifact)
            await machine.start(config)
            await machine.wait()
            await interrupts.drain()
            await machine.wait()
        if machine.status is JobStatus.STOPPED and interrupts.snapshot is not None:
            stopped = interrupts.snapshot
            stopped.status = JobStatus.STOPPED
            return stopped
        return _snapshot(machine)
    finally:
        await machine.aclose()


def _snapshot(machine: JobStateMachine) -> _RunSnapshot:
    return _RunSnapshot(
        status=machine.status,
        output_log=machine.output_log,
        document=machine.document(),
        trace_jsonl=machine.trace.to_jsonl(),
        error_message=machine.error_message,
    )


def _client_factory(*, settings: Settings, command: DistillRunCommand) -> ClientFactory:
    if command.dry_run_script is not None:
        scripted = ScriptedModelClient.from_file(
            command.dry_run_script,
            streaming=settings.generation.streaming,
        )
        return lambda _config: scripted

    def build(config: RunConfig) -> GeminiModelClient:
        return GeminiModelClient(
            api_key=config.api_key or "",
            settings=settings.gemini,
            streaming=settings.generation.streaming,
        )

    return build


@contextmanager
def _signal_handlers(on_signal: Callable[[str], None]) -> Iterator[None]:
    loop = asyncio.get_running_loop()
    installed: list[signal.Signals] = []
    for signum in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(signum, on_signal, signum.name)
        except (NotImplementedError, RuntimeError, ValueError):
            # Unsupported platform or not the main thread.
            continue
        installed.append(signum)
    try:
        yield
    finally:
        for signum in installed:
            loop.remove_signal_handler(signum)


@contextmanager
def _repository(settings: Settings) -> Iterator[SettingsRepository]:
    repository = SettingsRepository(
        settings.db_path,
        prompt_history_limit=settings.prompt_history_limit,
    )
    repository.init_schema()
    try:
        yield repository
    finally:
        repository.close()


def _preview(prompt: str) -> str:
    first_line = next((line.strip() for line in prompt.splitlines() if line.strip()), "")
    if len(first_line) <= _PROMPT_PREVIEW_CHARS:
        return first_line
    return first_line[:_PROMPT_PREVIEW_CHARS] + "..."
