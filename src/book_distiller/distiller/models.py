"""Domain models for distillation jobs, turns and trace entries."""

from __future__ import annotations

import mimetypes
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from book_distiller.distiller.backend.base import Conversation
    from book_distiller.distiller.trace import TraceRecorder

DEFAULT_ARTIFACT_MIME_TYPE = "application/pdf"
DOCUMENT_SEPARATOR = "\n\n"


class JobStatus(str, Enum):
    """Job lifecycle states."""

    IDLE = "idle"
    UPLOADING = "uploading"
    PROCESSING_FILE = "processing_file"
    RUNNING = "running"
    WAITING_TO_RETRY = "waiting_to_retry"
    PAUSED = "paused"
    STOPPED = "stopped"
    FINISHED = "finished"
    ERROR = "error"

    @property
    def label(self) -> str:
        return self.value.replace("_", " ").title()


ACTIVE_STATUSES = frozenset(
    {
        JobStatus.UPLOADING,
        JobStatus.PROCESSING_FILE,
        JobStatus.RUNNING,
        JobStatus.WAITING_TO_RETRY,
    },
)
STOPPABLE_STATUSES = frozenset(
    {
        JobStatus.UPLOADING,
        JobStatus.PROCESSING_FILE,
        JobStatus.RUNNING,
        JobStatus.PAUSED,
        JobStatus.WAITING_TO_RETRY,
        JobStatus.FINISHED,
        JobStatus.ERROR,
    },
)


class TraceRole(str, Enum):
    """Author of a trace entry."""

    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


class UploadState(str, Enum):
    """Remote artifact states reported during upload."""

    UPLOADING = "uploading"
    PROCESSING = "processing"
    ACTIVE = "active"
    FAILED = "failed"


class FailureClass(str, Enum):
    """Normalized failure classes used by retry policy."""

    VALIDATION = "validation"
    INGESTION = "ingestion"
    TRANSIENT_CALL = "transient_call"
    EMPTY_RESPONSE = "empty_response"
    REASONING_LEAKAGE = "reasoning_leakage"


@dataclass(slots=True, frozen=True)
class TraceEntry:
    """One audit trail record."""

    timestamp: datetime
    role: TraceRole
    content: str

    def to_dict(self) -> dict[str, str]:
        return {
            "timestamp": self.timestamp.isoformat(),
            "role": self.role.value,
            "content": self.content,
        }


@dataclass(slots=True)
class RetryState:
    """Display state while a failed turn waits for its next attempt."""

    attempt: int
    max_attempts: int
    remaining_seconds: int
    last_error_message: str


@dataclass(slots=True, frozen=True)
class RunConfig:
    """Immutable configuration snapshot taken at job start."""

    api_key: str | None
    model: str
    temperature: float
    seed_prompt: str


@dataclass(slots=True, frozen=True)
class Artifact:
    """User-supplied source document."""

    display_name: str
    mime_type: str
    data: bytes = field(repr=False)

    @classmethod
    def from_path(cls, path: Path) -> Artifact:
        mime_type, _ = mimetypes.guess_type(path.name)
        return cls(
            display_name=path.name,
            mime_type=mime_type or DEFAULT_ARTIFACT_MIME_TYPE,
            data=path.read_bytes(),
        )

    @property
    def size_bytes(self) -> int:
        return len(self.data)


@dataclass(slots=True, frozen=True)
class ArtifactHandle:
    """Remote reference to a processed artifact."""

    name: str
    uri: str
    mime_type: str


@dataclass(slots=True, frozen=True)
class TurnDelta:
    """Incremental text of a streaming turn."""

    text: str


@dataclass(slots=True, frozen=True)
class TurnCompleted:
    """Final event of a turn: full text plus response metadata."""

    text: str
    metadata: dict[str, Any] = field(default_factory=dict)


TurnEvent = TurnDelta | TurnCompleted


@dataclass(slots=True, eq=False)
class Job:
    """State of one distillation run, discarded on Stop or a new Start."""

    job_id: str
    config: RunConfig
    artifact: Artifact
    trace: TraceRecorder
    conversation: Conversation | None = None
    handle: ArtifactHandle | None = None
    output_log: list[str] = field(default_factory=list)
    completed_turns: int = 0
    retry_state: RetryState | None = None
    interruptions: int = 0

    @property
    def next_prompt_is_seed(self) -> bool:
        return self.completed_turns == 0


def render_document(output_log: list[str] | tuple[str, ...]) -> str:
    """Join per-turn sections into the exported document."""

    return DOCUMENT_SEPARATOR.join(output_log)
