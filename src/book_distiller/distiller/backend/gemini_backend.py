"""Gemini REST transport built on httpx."""

from __future__ import annotations

import asyncio
import json
import logging
import math
from collections.abc import AsyncGenerator, Awaitable, Callable
from contextlib import aclosing
from typing import Any

import httpx

from book_distiller.config import GeminiSettings
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

logger = logging.getLogger(__name__)

SleepFn = Callable[[float], Awaitable[None]]

_SSE_DATA_PREFIX = "data: "
_PENDING_FILE_STATES = frozenset({"PROCESSING", "STATE_UNSPECIFIED"})


class GeminiModelClient:
    """Uploads artifacts via the Files API and opens chat conversations."""

    def __init__(
        self,
        *,
        api_key: str,
        settings: GeminiSettings | None = None,
        streaming: bool = True,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: SleepFn = asyncio.sleep,
    ) -> None:
        if not api_key:
            raise ValueError("API key is required for GeminiModelClient.")
        self._settings = settings or GeminiSettings()
        self._streaming = streaming
        self._sleep = sleep
        self._client = httpx.AsyncClient(
            base_url=self._settings.api_base,
            headers={"x-goog-api-key": api_key},
            timeout=httpx.Timeout(self._settings.request_timeout_seconds, connect=10.0),
            transport=transport,
            follow_redirects=True,
        )

    async def upload(
        self,
        artifact: Artifact,
        *,
        on_state: UploadStateCallback | None = None,
    ) -> ArtifactHandle:
        """Upload bytes with the resumable protocol and poll until ACTIVE."""

        def notify(state: UploadState) -> None:
            if on_state is not None:
                on_state(state)

        notify(UploadState.UPLOADING)
        try:
            created = await self._upload_bytes(artifact)
            notify(UploadState.PROCESSING)
            ready = await self._wait_until_active(created)
        except httpx.HTTPError as exc:
            logger.warning("HTTP error uploading %s: %s", artifact.display_name, exc)
            notify(UploadState.FAILED)
            raise ArtifactIngestionError(f"Upload failed: {exc}") from exc
        except RemoteCallError as error:
            notify(UploadState.FAILED)
            if isinstance(error, ArtifactIngestionError):
                raise
            raise ArtifactIngestionError(str(error)) from error

        notify(UploadState.ACTIVE)
        return ArtifactHandle(
            name=str(ready["name"]),
            uri=str(ready.get("uri", "")),
            mime_type=str(ready.get("mimeType") or artifact.mime_type),
        )

    def open_conversation(self, *, job_id: str) -> GeminiConversation:
        return GeminiConversation(
            job_id=job_id,
            client=self._client,
            api_version=self._settings.api_version,
            streaming=self._streaming,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _upload_bytes(self, artifact: Artifact) -> dict[str, Any]:
        version = self._settings.api_version
        start = await self._client.post(
            f"/upload/{version}/files",
            headers={
                "X-Goog-Upload-Protocol": "resumable",
                "X-Goog-Upload-Command": "start",
                "X-Goog-Upload-Header-Content-Length": str(artifact.size_bytes),
                "X-Goog-Upload-Header-Content-Type": artifact.mime_type,
            },
            json={"file": {"display_name": artifact.display_name}},
        )
        _raise_for_status(start, "Failed to create file resource")
        upload_url = start.headers.get("x-goog-upload-url")
        if not upload_url:
            raise ArtifactIngestionError("File resource response did not include an upload URL.")

        finalize = await self._client.post(
            upload_url,
            headers={
                "X-Goog-Upload-Command": "upload, finalize",
                "X-Goog-Upload-Offset": "0",
                "Content-Type": artifact.mime_type,
            },
            content=artifact.data,
        )
        _raise_for_status(finalize, "Failed to upload file bytes")
        created = _json_body(finalize).get("file")
        if not isinstance(created, dict) or not created.get("name"):
            raise ArtifactIngestionError("Upload response did not include a file resource.")
        return created

    async def _wait_until_active(self, created: dict[str, Any]) -> dict[str, Any]:
        name = str(created["name"])
        payload = created
        state = str(payload.get("state") or "PROCESSING")
        max_polls = max(
            1,
            math.ceil(self._settings.max_poll_seconds / self._settings.poll_interval_seconds),
        )
        polls = 0
        while state in _PENDING_FILE_STATES:
            if polls >= max_polls:
                waited = self._settings.max_poll_seconds
                raise ArtifactIngestionError(
                    f"File {name} was still processing after {waited:.0f}s.",
                )
            await self._sleep(self._settings.poll_interval_seconds)
            polls += 1
            response = await self._client.get(f"/{self._settings.api_version}/{name}")
            _raise_for_status(response, "Polling failed")
            payload = _json_body(response)
            state = str(payload.get("state") or "STATE_UNSPECIFIED")

        if state == "FAILED":
            message = (payload.get("error") or {}).get("message") or "Unknown error"
            raise ArtifactIngestionError(f"File processing failed: {message}")
        if state != "ACTIVE":
            raise ArtifactIngestionError(f"Unexpected file state {state!r} for {name}.")
        return payload


class GeminiConversation(ConversationHandle):
    """Chat history replayed on every ``generateContent`` call."""

    def __init__(
        self,
        *,
        job_id: str,
        client: httpx.AsyncClient,
        api_version: str,
        streaming: bool,
    ) -> None:
        super().__init__(job_id=job_id)
        self._client = client
        self._api_version = api_version
        self._streaming = streaming
        self._history: list[dict[str, Any]] = []

    @property
    def history(self) -> list[dict[str, Any]]:
        return list(self._history)

    async def send_turn(
        self,
        prompt: str,
        *,
        model: str,
        temperature: float,
        artifact: ArtifactHandle | None = None,
    ) -> AsyncGenerator[TurnEvent, None]:
        self._ensure_open()
        if self._history and self._history[-1]["role"] == "user":
            raise RemoteCallError("Previous turn is unanswered; roll it back before sending.")

        parts: list[dict[str, Any]] = [{"text": prompt}]
        if artifact is not None:
            parts.insert(
                0,
                {"file_data": {"mime_type": artifact.mime_type, "file_uri": artifact.uri}},
            )
        self._history.append({"role": "user", "parts": parts})
        body = {
            "contents": list(self._history),
            "generationConfig": {"temperature": temperature},
        }
        if self._streaming:
            async with aclosing(self._stream(model=model, body=body)) as events:
                async for event in events:
                    yield event
        else:
            yield await self._generate(model=model, body=body)

    def rollback(self) -> None:
        if not self._history:
            return
        if self._history[-1]["role"] == "model":
            self._history.pop()
        if self._history and self._history[-1]["role"] == "user":
            self._history.pop()

    async def aclose(self) -> None:
        self.closed = True
        self._history.clear()

    async def _stream(
        self,
        *,
        model: str,
        body: dict[str, Any],
    ) -> AsyncGenerator[TurnEvent, None]:
        url = f"/{self._api_version}/models/{model}:streamGenerateContent"
        chunks: list[str] = []
        last_payload: dict[str, Any] = {}
        try:
            request = self._client.stream("POST", url, params={"alt": "sse"}, json=body)
            async with request as response:
                if response.status_code >= 400:
                    detail = (await response.aread()).decode("utf-8", errors="replace")
                    raise RemoteCallError(
                        f"API request failed with status {response.status_code}: {detail}",
                    )
                async for line in response.aiter_lines():
                    payload = _parse_sse_line(line)
                    if payload is None:
                        continue
                    last_payload = payload
                    text = _candidate_text(payload)
                    if text:
                        chunks.append(text)
                        yield TurnDelta(text=text)
        except httpx.HTTPError as exc:
            logger.warning("HTTP error streaming turn for job %s: %s", self.job_id, exc)
            raise RemoteCallError(f"Network error during turn: {exc}") from exc

        full_text = "".join(chunks)
        self._record_answer(full_text)
        yield TurnCompleted(text=full_text, metadata=strip_candidate_content(last_payload))

    async def _generate(self, *, model: str, body: dict[str, Any]) -> TurnCompleted:
        url = f"/{self._api_version}/models/{model}:generateContent"
        try:
            response = await self._client.post(url, json=body)
        except httpx.HTTPError as exc:
            logger.warning("HTTP error sending turn for job %s: %s", self.job_id, exc)
            raise RemoteCallError(f"Network error during turn: {exc}") from exc
        _raise_for_status(response, "API request failed")
        payload = _json_body(response)
        full_text = _candidate_text(payload)
        self._record_answer(full_text)
        return TurnCompleted(text=full_text, metadata=strip_candidate_content(payload))

    def _record_answer(self, text: str) -> None:
        self._history.append({"role": "model", "parts": [{"text": text}]})


def strip_candidate_content(payload: dict[str, Any]) -> dict[str, Any]:
    """Response metadata without the generated content itself."""

    metadata = {key: value for key, value in payload.items() if key != "candidates"}
    candidates = payload.get("candidates")
    if isinstance(candidates, list):
        metadata["candidates"] = [
            {key: value for key, value in candidate.items() if key != "content"}
            for candidate in candidates
            if isinstance(candidate, dict)
        ]
    return metadata


def _candidate_text(payload: dict[str, Any]) -> str:
    candidates = payload.get("candidates") or []
    if not candidates:
        return ""
    content = candidates[0].get("content") or {}
    return "".join(
        str(part.get("text", ""))
        for part in content.get("parts") or []
        if isinstance(part, dict) and not part.get("thought")
    )


def _parse_sse_line(line: str) -> dict[str, Any] | None:
    if not line.startswith(_SSE_DATA_PREFIX):
        return None
    raw = line[len(_SSE_DATA_PREFIX) :]
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError:
        logger.warning("Skipping malformed SSE chunk: %s", raw[:200])
        return None
    return payload if isinstance(payload, dict) else None


def _raise_for_status(response: httpx.Response, context: str) -> None:
    if response.status_code < 400:
        return
    raise RemoteCallError(f"{context} with status {response.status_code}: {response.text}")


def _json_body(response: httpx.Response) -> dict[str, Any]:
    try:
        payload = response.json()
    except json.JSONDecodeError as error:
        raise RemoteCallError(f"Malformed JSON response from {response.url}") from error
    if not isinstance(payload, dict):
        raise RemoteCallError(f"Unexpected JSON payload from {response.url}")
    return payload
