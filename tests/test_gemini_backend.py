from __future__ import annotations

import asyncio
import copy
import json

import allure
import httpx
import pytest

from book_distiller.config import GeminiSettings
from book_distiller.distiller.backend import (
    ArtifactIngestionError,
    GeminiModelClient,
    RemoteCallError,
)
from book_distiller.distiller.backend.gemini_backend import strip_candidate_content
from book_distiller.distiller.models import (
    Artifact,
    ArtifactHandle,
    TurnCompleted,
    TurnDelta,
    UploadState,
)

pytestmark = [
    allure.epic("Transports"),
    allure.feature("Gemini REST"),
]

_UPLOAD_URL = "https://upload.example.test/session-1"
_HANDLE = ArtifactHandle(
    name="files/abc",
    uri="https://generativelanguage.googleapis.com/v1beta/files/abc",
    mime_type="application/pdf",
)


def _sse(*payloads: dict) -> bytes:
    return "".join(f"data: {json.dumps(payload)}\r\n\r\n" for payload in payloads).encode()


def _chunk(text: str, **extra) -> dict:
    candidate = {"content": {"role": "model", "parts": [{"text": text}]}, **extra}
    return {"candidates": [candidate]}


async def _no_sleep(_delay: float) -> None:
    return None


def _client(handler, **kwargs) -> GeminiModelClient:
    return GeminiModelClient(
        api_key="secret-key",
        settings=GeminiSettings(poll_interval_seconds=0.01, max_poll_seconds=0.05),
        transport=httpx.MockTransport(handler),
        sleep=_no_sleep,
        **kwargs,
    )


async def _collect(conversation, prompt: str, **kwargs) -> list:
    return [
        event
        async for event in conversation.send_turn(
            prompt,
            model="gemini-2.5-flash",
            temperature=0.7,
            **kwargs,
        )
    ]


def test_upload_uses_resumable_protocol_and_polls_until_active() -> None:
    requests: list[httpx.Request] = []
    poll_states = iter(["PROCESSING", "ACTIVE"])

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        if request.url.path == "/upload/v1beta/files":
            return httpx.Response(200, headers={"x-goog-upload-url": _UPLOAD_URL})
        if str(request.url) == _UPLOAD_URL:
            return httpx.Response(
                200,
                json={"file": {"name": "files/abc", "state": "PROCESSING"}},
            )
        if request.url.path == "/v1beta/files/abc":
            return httpx.Response(
                200,
                json={
                    "name": "files/abc",
                    "uri": _HANDLE.uri,
                    "mimeType": "application/pdf",
                    "state": next(poll_states),
                },
            )
        return httpx.Response(404)

    states: list[UploadState] = []
    artifact = Artifact(display_name="book.pdf", mime_type="application/pdf", data=b"%PDF-data")

    async def scenario() -> ArtifactHandle:
        client = _client(handler)
        try:
            return await client.upload(artifact, on_state=states.append)
        finally:
            await client.aclose()

    handle = asyncio.run(scenario())

    assert handle == _HANDLE
    assert states == [UploadState.UPLOADING, UploadState.PROCESSING, UploadState.ACTIVE]
    start, finalize = requests[0], requests[1]
    assert start.headers["x-goog-api-key"] == "secret-key"
    assert start.headers["x-goog-upload-protocol"] == "resumable"
    assert start.headers["x-goog-upload-header-content-length"] == str(len(b"%PDF-data"))
    assert json.loads(start.content) == {"file": {"display_name": "book.pdf"}}
    assert finalize.headers["x-goog-upload-command"] == "upload, finalize"
    assert finalize.content == b"%PDF-data"
    assert len(requests) == 4


def test_upload_reports_failed_processing() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/upload/v1beta/files":
            return httpx.Response(200, headers={"x-goog-upload-url": _UPLOAD_URL})
        if str(request.url) == _UPLOAD_URL:
            return httpx.Response(200, json={"file": {"name": "files/abc", "state": "PROCESSING"}})
        return httpx.Response(
            200,
            json={"name": "files/abc", "state": "FAILED", "error": {"message": "corrupt"}},
        )

    states: list[UploadState] = []
    artifact = Artifact(display_name="book.pdf", mime_type="application/pdf", data=b"x")

    async def scenario() -> None:
        client = _client(handler)
        try:
            await client.upload(artifact, on_state=states.append)
        finally:
            await client.aclose()

    with pytest.raises(ArtifactIngestionError, match="File processing failed: corrupt"):
        asyncio.run(scenario())
    assert states[-1] is UploadState.FAILED


def test_upload_http_error_is_an_ingestion_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(403, text="forbidden")

    async def scenario() -> None:
        client = _client(handler)
        try:
            await client.upload(
                Artifact(display_name="a.pdf", mime_type="application/pdf", data=b"x"),
            )
        finally:
            await client.aclose()

    with pytest.raises(ArtifactIngestionError, match="status 403"):
        asyncio.run(scenario())


def test_upload_gives_up_after_max_poll_window() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/upload/v1beta/files":
            return httpx.Response(200, headers={"x-goog-upload-url": _UPLOAD_URL})
        if str(request.url) == _UPLOAD_URL:
            return httpx.Response(200, json={"file": {"name": "files/abc", "state": "PROCESSING"}})
        return httpx.Response(200, json={"name": "files/abc", "state": "PROCESSING"})

    async def scenario() -> None:
        client = _client(handler)
        try:
            await client.upload(
                Artifact(display_name="a.pdf", mime_type="application/pdf", data=b"x"),
            )
        finally:
            await client.aclose()

    with pytest.raises(ArtifactIngestionError, match="still processing"):
        asyncio.run(scenario())


def test_streaming_turns_replay_history_and_attach_file_once() -> None:
    bodies: list[dict] = []
    responses = iter(
        [
            _sse(_chunk("Hello "), _chunk("world", finishReason="STOP")),
            _sse(
                _chunk("Second", finishReason="STOP"),
            ),
        ],
    )

    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/v1beta/models/gemini-2.5-flash:streamGenerateContent"
        assert request.url.params["alt"] == "sse"
        bodies.append(json.loads(request.content))
        return httpx.Response(
            200,
            content=next(responses),
            headers={"content-type": "text/event-stream"},
        )

    async def scenario():
        client = _client(handler)
        conversation = client.open_conversation(job_id="job-1")
        try:
            first = await _collect(conversation, "Seed prompt", artifact=_HANDLE)
            second = await _collect(conversation, "Next")
            return conversation, first, second
        finally:
            await client.aclose()

    conversation, first, second = asyncio.run(scenario())

    assert first[:2] == [TurnDelta(text="Hello "), TurnDelta(text="world")]
    assert isinstance(first[-1], TurnCompleted)
    assert first[-1].text == "Hello world"
    assert first[-1].metadata == {"candidates": [{"finishReason": "STOP"}]}
    assert second[-1].text == "Second"
    assert len(conversation.history) == 4

    first_parts = bodies[0]["contents"][0]["parts"]
    assert first_parts[0] == {
        "file_data": {"mime_type": "application/pdf", "file_uri": _HANDLE.uri},
    }
    assert first_parts[1] == {"text": "Seed prompt"}
    assert bodies[0]["generationConfig"] == {"temperature": 0.7}
    assert [content["role"] for content in bodies[1]["contents"]] == ["user", "model", "user"]
    assert bodies[1]["contents"][2]["parts"] == [{"text": "Next"}]


def test_stream_error_status_raises_and_rollback_resyncs_history() -> None:
    statuses = iter([503, 200])

    def handler(request: httpx.Request) -> httpx.Response:
        status = next(statuses)
        if status != 200:
            return httpx.Response(status, text="The model is overloaded")
        return httpx.Response(200, content=_sse(_chunk("Recovered")))

    async def scenario():
        client = _client(handler)
        conversation = client.open_conversation(job_id="job-1")
        try:
            with pytest.raises(RemoteCallError, match="status 503: The model is overloaded"):
                await _collect(conversation, "Seed")
            with pytest.raises(RemoteCallError, match="unanswered"):
                await _collect(conversation, "Seed")
            conversation.rollback()
            events = await _collect(conversation, "Seed")
            return conversation, events
        finally:
            await client.aclose()

    conversation, events = asyncio.run(scenario())

    assert events[-1].text == "Recovered"
    assert [content["role"] for content in conversation.history] == ["user", "model"]


def test_non_streaming_turn_uses_generate_content_and_skips_thoughts() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/v1beta/models/gemini-2.5-flash:generateContent"
        return httpx.Response(
            200,
            json={
                "candidates": [
                    {
                        "content": {
                            "role": "model",
                            "parts": [
                                {"text": "hidden plan", "thought": True},
                                {"text": "Visible answer"},
                            ],
                        },
                        "finishReason": "STOP",
                    },
                ],
                "usageMetadata": {"totalTokenCount": 12},
            },
        )

    async def scenario():
        client = _client(handler, streaming=False)
        conversation = client.open_conversation(job_id="job-1")
        try:
            return await _collect(conversation, "Seed")
        finally:
            await client.aclose()

    events = asyncio.run(scenario())

    assert len(events) == 1
    assert events[0].text == "Visible answer"
    assert events[0].metadata == {
        "candidates": [{"finishReason": "STOP"}],
        "usageMetadata": {"totalTokenCount": 12},
    }


def test_network_error_is_a_remote_call_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    async def scenario():
        client = _client(handler)
        conversation = client.open_conversation(job_id="job-1")
        try:
            await _collect(conversation, "Seed")
        finally:
            await client.aclose()

    with pytest.raises(RemoteCallError, match="Network error during turn"):
        asyncio.run(scenario())


def test_conversation_cannot_be_copied() -> None:
    async def scenario():
        client = _client(lambda request: httpx.Response(200))
        try:
            return client.open_conversation(job_id="job-1")
        finally:
            await client.aclose()

    conversation = asyncio.run(scenario())

    with pytest.raises(TypeError, match="cannot be copied"):
        copy.copy(conversation)
    with pytest.raises(TypeError, match="cannot be copied"):
        copy.deepcopy(conversation)


def test_missing_api_key_is_rejected() -> None:
    with pytest.raises(ValueError, match="API key is required"):
        GeminiModelClient(api_key="")


def test_strip_candidate_content_keeps_everything_else() -> None:
    payload = {
        "candidates": [{"content": {"parts": []}, "finishReason": "STOP", "index": 0}],
        "modelVersion": "gemini-2.5-flash",
    }

    assert strip_candidate_content(payload) == {
        "candidates": [{"finishReason": "STOP", "index": 0}],
        "modelVersion": "gemini-2.5-flash",
    }
