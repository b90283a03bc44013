"""Transport interface the orchestrator depends on."""

from __future__ import annotations

from collections.abc import AsyncGenerator, Callable
from typing import Protocol

from book_distiller.distiller.models import Artifact, ArtifactHandle, TurnEvent, UploadState

UploadStateCallback = Callable[[UploadState], None]


class RemoteCallError(RuntimeError):
    """Any transport or server failure of a remote call."""


class ArtifactIngestionError(RemoteCallError):
    """Upload or server-side processing of the source artifact failed."""


class Conversation(Protocol):
    """Stateful multi-turn exchange owned by exactly one job.

    Turn N implicitly carries turns 1..N-1. A turn that failed or whose output
    was discarded is removed with :meth:`rollback` before it is re-issued.
    """

    def send_turn(
        self,
        prompt: str,
        *,
        model: str,
        temperature: float,
        artifact: ArtifactHandle | None = None,
    ) -> AsyncGenerator[TurnEvent, None]:
        """Yield zero or more deltas followed by exactly one completion."""

    def rollback(self) -> None:
        """Drop the last exchange so the same prompt can be sent again."""

    async def aclose(self) -> None:
        """Release transport resources held by the conversation."""


class RemoteModelClient(Protocol):
    """Protocol implemented by model transports."""

    async def upload(
        self,
        artifact: Artifact,
        *,
        on_state: UploadStateCallback | None = None,
    ) -> ArtifactHandle:
        """Upload ``artifact`` and wait until the remote side can use it."""

    def open_conversation(self, *, job_id: str) -> Conversation:
        """Start an empty conversation scoped to ``job_id``."""

    async def aclose(self) -> None:
        """Close the underlying client."""


class ConversationHandle:
    """Base for concrete conversations: bound to one job and never copied."""

    def __init__(self, *, job_id: str) -> None:
        self.job_id = job_id
        self.closed = False

    def __copy__(self) -> ConversationHandle:
        raise TypeError(f"Conversation for job {self.job_id} cannot be copied.")

    def __deepcopy__(self, memo: dict[int, object]) -> ConversationHandle:
        raise TypeError(f"Conversation for job {self.job_id} cannot be copied.")

    def _ensure_open(self) -> None:
        if self.closed:
            raise RemoteCallError(f"Conversation for job {self.job_id} is closed.")
