from __future__ import annotations

import json
from collections.abc import Generator
from dataclasses import dataclass, field

import httpx
import pytest
from fastapi import FastAPI, HTTPException
from fastapi.testclient import TestClient

from voxa.app import create_app
from voxa.auth import Principal, get_optional_principal, require_principal
from voxa.config import get_settings
from voxa.services.rate_limit import InMemoryRateLimiter
from voxa.services.speech_client import SpeechSynthesisClient
from voxa.services.transcoder import TranscoderExitError
from voxa.services.tts_pipeline import TTSPipeline


class StaticTranscoder:
    def __init__(self, output: bytes, error: Exception | None = None) -> None:
        self.output = output
        self.error = error

    async def transcode(self, data: bytes) -> bytes:
        if self.error is not None:
            raise self.error
        return self.output


@dataclass
class Harness:
    app: FastAPI
    client: TestClient
    provider_calls: list[httpx.Request] = field(default_factory=list)
    principal: Principal | None = None

    def install_pipeline(
        self,
        wav: bytes,
        *,
        provider_response: tuple[int, dict] = (200, {"content": b"ID3-mp3"}),
        transcode_error: Exception | None = None,
        limit: int = 50,
        window_seconds: int = 900,
        with_credential: bool = True,
    ) -> None:
        status_code, kwargs = provider_response

        def handler(request: httpx.Request) -> httpx.Response:
            self.provider_calls.append(request)
            return httpx.Response(status_code, **kwargs)

        app = self.app
        speech_client = None
        if with_credential:
            speech_client = SpeechSynthesisClient(
                api_key="sk-test",
                model="gpt-4o-mini-tts",
                endpoint="https://api.test/v1/audio/speech",
                http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
            )
        app.state.tts_pipeline = TTSPipeline(
            speech_client=speech_client,
            transcoder=StaticTranscoder(wav, transcode_error),
            rate_limiter=InMemoryRateLimiter(limit=limit, window_seconds=window_seconds),
            ledger=app.state.message_ledger,
        )

    def drain(self) -> None:
        self.client.portal.call(self.app.state.message_ledger.drain)

    def auth(self) -> dict[str, str]:
        return {"Authorization": "Bearer test-token"}


@pytest.fixture
def harness(monkeypatch, tmp_path, wav_factory) -> Generator[Harness, None, None]:
    monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
    monkeypatch.setenv("DATABASE_PATH", str(tmp_path / "voxa.db"))
    monkeypatch.setenv("ENVIRONMENT", "development")
    monkeypatch.delenv("LOG_DIR", raising=False)
    monkeypatch.delenv("SUPABASE_URL", raising=False)
    get_settings.cache_clear()

    app = create_app()

    with TestClient(app) as client:
        harness = Harness(app=app, client=client, principal=Principal(user_id="user-1"))

        def optional_principal() -> Principal | None:
            return harness.principal

        def required_principal() -> Principal:
            if harness.principal is None:
                raise HTTPException(status_code=401, detail="Authentication required")
            return harness.principal

        app.dependency_overrides[get_optional_principal] = optional_principal
        app.dependency_overrides[require_principal] = required_principal
        harness.install_pipeline(wav_factory(b"\x01\x00" * 4_800))
        yield harness

    get_settings.cache_clear()


def _messages(harness: Harness) -> list[dict]:
    response = harness.client.get("/api/tts/messages", headers=harness.auth())
    assert response.status_code == 200
    return response.json()


def test_health_reports_connected_database(harness: Harness) -> None:
    response = harness.client.get("/api/health")

    assert response.status_code == 200
    assert response.json() == {"status": "ok", "database": "connected"}


def test_stream_returns_wav_and_logs_sent(harness: Harness) -> None:
    response = harness.client.post(
        "/api/tts/stream",
        json={"text": "Hello team", "voice": "alloy", "speed": 1.0},
    )
    harness.drain()

    assert response.status_code == 200
    assert response.headers["content-type"] == "audio/wav"
    assert int(response.headers["content-length"]) == len(response.content) > 44
    assert response.content[:4] == b"RIFF"

    rows = _messages(harness)
    assert len(rows) == 1
    assert rows[0]["status"] == "sent"
    assert rows[0]["text_input"] == "Hello team"
    assert rows[0]["audio_duration_seconds"] == pytest.approx(0.1)


@pytest.mark.parametrize("body", [{"text": ""}, {}, {"text": "   "}])
def test_stream_rejects_missing_text(harness: Harness, body: dict) -> None:
    response = harness.client.post("/api/tts/stream", json=body)

    assert response.status_code == 400
    assert response.json() == {"error": "Text is required."}
    assert harness.provider_calls == []
    assert _messages(harness) == []


def test_stream_rejects_long_text(harness: Harness) -> None:
    response = harness.client.post("/api/tts/stream", json={"text": "a" * 501})

    assert response.status_code == 400
    assert response.json()["error"] == (
        "Text is too long. Maximum allowed length is 500 characters."
    )


def test_stream_surfaces_provider_status(harness: Harness, wav_factory) -> None:
    harness.install_pipeline(
        wav_factory(b""),
        provider_response=(429, {"json": {"error": {"message": "quota hit"}}}),
    )

    response = harness.client.post("/api/tts/stream", json={"text": "hi"})

    assert response.status_code == 429
    assert response.json() == {"error": "quota hit", "details": "quota hit", "statusCode": 429}
    assert [row["status"] for row in _messages(harness)] == ["failed"]


def test_stream_reports_transcoder_failure_as_503(harness: Harness, wav_factory) -> None:
    harness.install_pipeline(
        wav_factory(b""),
        transcode_error=TranscoderExitError("ffmpeg exited with code 1", 1),
    )

    response = harness.client.post("/api/tts/stream", json={"text": "hi"})

    assert response.status_code == 503
    body = response.json()
    assert body["error"] == "Audio conversion unavailable."
    assert "ffmpeg" in body["details"]
    assert [row["status"] for row in _messages(harness)] == ["failed"]


def test_stream_reports_empty_provider_body_as_502(harness: Harness, wav_factory) -> None:
    harness.install_pipeline(wav_factory(b""), provider_response=(200, {"content": b""}))

    response = harness.client.post("/api/tts/stream", json={"text": "hi"})

    assert response.status_code == 502
    assert response.json()["error"] == "TTS provider returned no audio stream."


def test_stream_without_credential_is_500(harness: Harness, wav_factory) -> None:
    harness.install_pipeline(wav_factory(b""), with_credential=False)

    response = harness.client.post("/api/tts/stream", json={"text": "hi"})

    assert response.status_code == 500
    assert response.json()["error"] == "OPENAI_API_KEY is not configured on the server."


def test_stream_rate_limit_sets_retry_after(harness: Harness, wav_factory) -> None:
    harness.install_pipeline(wav_factory(b"\x00\x00"), limit=1, window_seconds=60)

    first = harness.client.post("/api/tts/stream", json={"text": "one"})
    second = harness.client.post("/api/tts/stream", json={"text": "two"})
    harness.drain()

    assert first.status_code == 200
    assert second.status_code == 429
    body = second.json()
    assert body["error"] == "Too many TTS requests"
    assert 55 <= body["retryAfter"] <= 60
    assert body["limit"] == 1
    assert body["window"] == 1
    assert second.headers["retry-after"] == str(body["retryAfter"])


def test_anonymous_stream_creates_no_rows(harness: Harness) -> None:
    harness.principal = None

    response = harness.client.post("/api/tts/stream", json={"text": "hi"})
    harness.drain()

    assert response.status_code == 200
    harness.principal = Principal(user_id="user-1")
    assert _messages(harness) == []


@pytest.mark.parametrize("text", [123, ["hi"], {"text": "hi"}, None])
def test_stream_rejects_non_string_text_with_400(harness: Harness, text) -> None:
    response = harness.client.post("/api/tts/stream", json={"text": text})

    assert response.status_code == 400
    assert response.json() == {"error": "Text is required."}
    assert harness.provider_calls == []


def test_stream_defaults_null_voice_and_bad_speed(harness: Harness) -> None:
    response = harness.client.post(
        "/api/tts/stream",
        json={"text": "hi", "voice": None, "speed": "fast", "pitch": "high"},
    )

    assert response.status_code == 200
    sent = json.loads(harness.provider_calls[0].content)
    assert sent["voice"] == "alloy"
    assert sent["speed"] == 1.0


def test_message_endpoints_require_authentication(harness: Harness) -> None:
    harness.principal = None

    assert harness.client.get("/api/tts/messages").status_code == 401
    assert harness.client.post("/api/tts/messages", json={"text_input": "x"}).status_code == 401


def test_create_and_fetch_message(harness: Harness) -> None:
    created = harness.client.post(
        "/api/tts/messages",
        json={"text_input": "Logged elsewhere", "voice_used": "nova", "speed": 1.5},
    )

    assert created.status_code == 201
    record = created.json()
    assert record["status"] == "sent"
    assert record["text_length"] == len("Logged elsewhere")
    assert record["voice_used"] == "nova"

    fetched = harness.client.get(f"/api/tts/messages/{record['id']}")
    assert fetched.status_code == 200
    assert fetched.json()["id"] == record["id"]

    assert harness.client.get("/api/tts/messages/missing").status_code == 404


def test_create_message_validation(harness: Harness) -> None:
    empty = harness.client.post("/api/tts/messages", json={})
    too_long = harness.client.post("/api/tts/messages", json={"text_input": "a" * 501})
    foreign = harness.client.post(
        "/api/tts/messages", json={"text_input": "hi", "meeting_id": "nope"}
    )

    assert (empty.status_code, empty.json()["detail"]) == (400, "text_input is required")
    assert too_long.status_code == 400
    assert too_long.json()["detail"] == "Text input exceeds 500 character limit"
    assert (foreign.status_code, foreign.json()["detail"]) == (404, "Meeting not found")


def test_status_updates_only_move_forward(harness: Harness) -> None:
    harness.client.post("/api/tts/stream", json={"text": "hi"})
    harness.drain()
    message_id = _messages(harness)[0]["id"]

    same = harness.client.put(
        f"/api/tts/messages/{message_id}/status", json={"status": "sent"}
    )
    backwards = harness.client.put(
        f"/api/tts/messages/{message_id}/status",
        json={"status": "failed", "error_message": "late"},
    )
    invalid = harness.client.put(
        f"/api/tts/messages/{message_id}/status", json={"status": "queued"}
    )
    missing = harness.client.put("/api/tts/messages/missing/status", json={"status": "sent"})

    assert same.status_code == 200
    assert backwards.status_code == 409
    assert backwards.json()["detail"] == "TTS message is already sent"
    assert invalid.status_code == 400
    assert missing.status_code == 404


def test_duration_patch_rounds_and_validates(harness: Harness) -> None:
    record = harness.client.post("/api/tts/messages", json={"text_input": "hi"}).json()
    url = f"/api/tts/messages/{record['id']}/duration"

    updated = harness.client.patch(url, json={"audio_duration_seconds": 2.6})
    assert updated.status_code == 200
    assert updated.json()["audio_duration_seconds"] == 3

    for bad in (-1, 86_401, "abc", None):
        response = harness.client.patch(url, json={"audio_duration_seconds": bad})
        assert response.status_code == 400

    assert harness.client.patch(
        "/api/tts/messages/missing/duration", json={"audio_duration_seconds": 1}
    ).status_code == 404


def test_list_messages_filters_by_status(harness: Harness, wav_factory) -> None:
    harness.client.post("/api/tts/stream", json={"text": "ok"})
    harness.install_pipeline(
        wav_factory(b""), provider_response=(500, {"text": "provider down"})
    )
    harness.client.post("/api/tts/stream", json={"text": "broken"})
    harness.drain()

    failed = harness.client.get("/api/tts/messages", params={"status": "failed"}).json()
    sent = harness.client.get("/api/tts/messages", params={"status": "sent"}).json()
    limited = harness.client.get("/api/tts/messages", params={"limit": 1}).json()

    assert [row["text_input"] for row in failed] == ["broken"]
    assert failed[0]["error_message"] == "provider down"
    assert [row["text_input"] for row in sent] == ["ok"]
    assert len(limited) == 1
    assert harness.client.get("/api/tts/messages", params={"limit": 0}).status_code == 422


def test_database_disabled(monkeypatch) -> None:
    monkeypatch.setenv("DATABASE_ENABLED", "false")
    monkeypatch.delenv("LOG_DIR", raising=False)
    get_settings.cache_clear()
    app = create_app()
    app.dependency_overrides[require_principal] = lambda: Principal(user_id="user-1")

    try:
        with TestClient(app) as client:
            health = client.get("/api/health")
            messages = client.get("/api/tts/messages")
    finally:
        get_settings.cache_clear()

    assert health.json() == {"status": "ok", "database": "not-configured"}
    assert (messages.status_code, messages.json()["detail"]) == (503, "Database not configured")
