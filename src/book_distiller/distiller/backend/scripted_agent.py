"""Deterministic in-process transport for tests and offline rehearsals."""

from __future__ import annotations

import asyncio
import json
from collections import deque
from collections.abc import AsyncGenerator, Iterable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from book_distiller.distiller.backend.base import (
    ArtifactIngestionError,
    ConversationHandle,
    RemoteCallError,
    UploadStateCallback,
)
from book_distiller.distiller.models import (
    Artifact,
    ArtifactHandle,
    TurnCompleted,
    TurnDelta,
    TurnEvent,
    UploadState,
)
from book_distiller.distiller.prompts import REASONING_LEAKAGE_MARKER


@dataclass(slots=True)
class TurnScript:
    """Outcome of one outbound call.

    ``error`` fails the call with ``error_type`` after ``chunks_before_error``
    deltas. ``gate`` holds the stream after its first delta until the event
    is set.
    """

    text: str = ""
    chunks: int = 1
    error: str | None = None
    error_type: type[Exception] = RemoteCallError
    chunks_before_error: int = 0
    metadata: dict[str, Any] = field(default_factory=dict)
    gate: asyncio.Event | None = None

    @classmethod
    def fail(cls, message: str = "HTTP 503 service unavailable") -> TurnScript:
        return cls(error=message)

    @classmethod
    def empty(cls) -> TurnScript:
        return cls(text="   ")

    @classmethod
    def leaking(cls, text: str = "thinking") -> TurnScript:
        return cls(text=f"{REASONING_LEAKAGE_MARKER}{text}")

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> TurnScript:
        if "fail" in payload:
            return cls(
                error=str(payload["fail"]),
                text=str(payload.get("text", "")),
                chunks_before_error=int(payload.get("chunks_before_error", 0)),
            )
        return cls(
            text=str(payload.get("text", "")),
            chunks=int(payload.get("chunks", 1)),
            metadata=dict(payload.get("metadata") or {}),
        )


@dataclass(slots=True)
class ScriptedCall:
    """Outbound call captured for assertions."""

    job_id: str
    prompt: str
    model: str
    temperature: float
    artifact: ArtifactHandle | None


class ScriptedModelClient:
    """Replays a fixed list of turn outcomes, one per outbound call."""

    def __init__(
        self,
        turns: Iterable[TurnScript] = (),
        *,
        upload_error: str | None = None,
        processing_polls: int = 1,
        streaming: bool = True,
    ) -> None:
        self._turns: deque[TurnScript] = deque(turns)
        self._upload_error = upload_error
        self._processing_polls = processing_polls
        self._streaming = streaming
        self.calls: list[ScriptedCall] = []
        self.uploads: list[Artifact] = []
        self.conversations: list[ScriptedConversation] = []
        self.open_streams = 0
        self.closed = False

    @classmethod
    def from_file(cls, path: Path, *, streaming: bool = True) -> ScriptedModelClient:
        """Load a rehearsal script: ``{"upload_error": ..., "turns": [...]}``."""

        try:
            payload = json.loads(path.read_text("utf-8"))
        except json.JSONDecodeError as error:
            raise ValueError(f"Script {path} is not valid JSON: {error}") from error
        if not isinstance(payload, dict) or not isinstance(payload.get("turns"), list):
            raise ValueError(f"Script {path} must be an object with a 'turns' list.")
        return cls(
            [TurnScript.from_dict(item) for item in payload["turns"]],
            upload_error=payload.get("upload_error"),
            streaming=streaming,
        )

    def extend(self, turns: Iterable[TurnScript]) -> None:
        self._turns.extend(turns)

    async def upload(
        self,
        artifact: Artifact,
        *,
        on_state: UploadStateCallback | None = None,
    ) -> ArtifactHandle:
        def notify(state: UploadState) -> None:
            if on_state is not None:
                on_state(state)

        self.uploads.append(artifact)
        notify(UploadState.UPLOADING)
        await asyncio.sleep(0)
        notify(UploadState.PROCESSING)
        for _ in range(self._processing_polls):
            await asyncio.sleep(0)
        if self._upload_error is not None:
            notify(UploadState.FAILED)
            raise ArtifactIngestionError(self._upload_error)
        notify(UploadState.ACTIVE)
        index = len(self.uploads)
        return ArtifactHandle(
            name=f"files/scripted-{index}",
            uri=f"scripted://files/{index}",
            mime_type=artifact.mime_type,
        )

    def open_conversation(self, *, job_id: str) -> ScriptedConversation:
        conversation = ScriptedConversation(job_id=job_id, client=self)
        self.conversations.append(conversation)
        return conversation

    async def aclose(self) -> None:
        self.closed = True

    def _next_turn(self) -> TurnScript:
        if not self._turns:
            raise RemoteCallError("Scripted transport has no turns left.")
        return self._turns.popleft()


class ScriptedConversation(ConversationHandle):
    """History of (prompt, answer) pairs; answers are ``None`` while pending."""

    def __init__(self, *, job_id: str, client: ScriptedModelClient) -> None:
        super().__init__(job_id=job_id)
        self._client = client
        self.history: list[tuple[str, str | None]] = []

    async def send_turn(
        self,
        prompt: str,
        *,
        model: str,
        temperature: float,
        artifact: ArtifactHandle | None = None,
    ) -> AsyncGenerator[TurnEvent, None]:
        self._ensure_open()
        self._client.calls.append(
            ScriptedCall(
                job_id=self.job_id,
                prompt=prompt,
                model=model,
                temperature=temperature,
                artifact=artifact,
            ),
        )
        self.history.append((prompt, None))
        script = self._client._next_turn()
        pieces = _split(script.text, script.chunks)
        self._client.open_streams += 1
        try:
            await asyncio.sleep(0)

            if script.error is not None:
                for piece in pieces[: script.chunks_before_error]:
                    yield TurnDelta(text=piece)
                    await asyncio.sleep(0)
                raise script.error_type(script.error)

            if self._client._streaming:
                for index, piece in enumerate(pieces):
                    yield TurnDelta(text=piece)
                    if index == 0 and script.gate is not None:
                        await script.gate.wait()
                    await asyncio.sleep(0)
            elif script.gate is not None:
                await script.gate.wait()

            self.history[-1] = (prompt, script.text)
            yield TurnCompleted(
                text=script.text,
                metadata={"backend": "scripted_agent", **script.metadata},
            )
        finally:
            self._client.open_streams -= 1

    def rollback(self) -> None:
        if self.history:
            self.history.pop()

    async def aclose(self) -> None:
        self.closed = True


def _split(text: str, chunks: int) -> list[str]:
    if not text:
        return []
    count = max(1, min(chunks, len(text)))
    size = -(-len(text) // count)
    return [text[index : index + size] for index in range(0, len(text), size)]
