from __future__ import annotations

import json

import httpx
import pytest

from voxa.repository import MessageRepository
from voxa.services.ledger import MessageLedger
from voxa.services.rate_limit import InMemoryRateLimiter
from voxa.services.speech_client import SpeechSynthesisClient
from voxa.services.transcoder import TranscoderNotFound
from voxa.services.tts_errors import (
    InvalidInput,
    ProviderError,
    RateLimited,
    ServiceUnavailable,
    TranscodeUnavailable,
    Unexpected,
    UpstreamEmptyResponse,
)
from voxa.services.tts_pipeline import (
    StatusTracker,
    SynthesisRequest,
    TTSPipeline,
    build_instructions,
    extract_provider_error,
)


class FakeProvider:
    """MockTransport handler recording every provider call."""

    def __init__(self, status_code: int = 200, **response_kwargs) -> None:
        self.calls: list[dict] = []
        self.status_code = status_code
        self.response_kwargs = response_kwargs or {"content": b"ID3-fake-mp3"}

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.calls.append(json.loads(request.content))
        return httpx.Response(self.status_code, **self.response_kwargs)


class FakeTranscoder:
    def __init__(self, output: bytes | None = None, error: Exception | None = None) -> None:
        self.output = output
        self.error = error
        self.inputs: list[bytes] = []

    async def transcode(self, data: bytes) -> bytes:
        self.inputs.append(data)
        if self.error is not None:
            raise self.error
        return self.output


@pytest.fixture
async def repository(tmp_path):
    repo = MessageRepository(tmp_path / "voxa.db")
    await repo.initialize()
    try:
        yield repo
    finally:
        await repo.close()


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def transcoder(wav_factory) -> FakeTranscoder:
    return FakeTranscoder(output=wav_factory(b"\x00\x00" * 48_000))


def _pipeline(
    provider: FakeProvider | None,
    transcoder: FakeTranscoder,
    repository: MessageRepository | None = None,
    *,
    limit: int = 50,
    window_seconds: int = 900,
) -> TTSPipeline:
    speech_client = None
    if provider is not None:
        speech_client = SpeechSynthesisClient(
            api_key="sk-test",
            model="gpt-4o-mini-tts",
            endpoint="https://api.test/v1/audio/speech",
            http_client=httpx.AsyncClient(transport=httpx.MockTransport(provider)),
        )
    return TTSPipeline(
        speech_client=speech_client,
        transcoder=transcoder,
        rate_limiter=InMemoryRateLimiter(limit=limit, window_seconds=window_seconds),
        ledger=MessageLedger(repository),
    )


async def _rows(repository: MessageRepository, user_id: str = "user-1") -> list[dict]:
    return await repository.list_messages(user_id=user_id)


async def _count_rows(repository: MessageRepository) -> int:
    cursor = await repository._require_connection().execute("SELECT COUNT(*) FROM tts_messages")
    (count,) = await cursor.fetchone()
    await cursor.close()
    return count


def test_build_instructions() -> None:
    assert build_instructions(None, None) is None
    assert build_instructions("French", None) == "Speak in French."
    assert (
        build_instructions("German", 1.25)
        == "Speak in German. Use a pitch of 1.2x (best-effort)."
    )


@pytest.mark.parametrize(
    ("body", "expected"),
    [
        ('{"error": {"message": "Invalid voice"}}', "Invalid voice"),
        ('{"message": "Slow down"}', "Slow down"),
        ("plain failure " + "x" * 300, ("plain failure " + "x" * 300)[:200]),
        ("", "TTS provider error"),
    ],
)
def test_extract_provider_error(body: str, expected: str) -> None:
    message, _ = extract_provider_error(body)
    assert message == expected


def test_status_tracker_is_bounded() -> None:
    tracker = StatusTracker(max_entries=2)
    tracker.set("a", "pending")
    tracker.set("b", "pending")
    tracker.set("c", "sent")

    assert len(tracker) == 2
    assert tracker.get("a") is None
    assert tracker.get("c") == "sent"


@pytest.mark.anyio
async def test_hello_team_succeeds_and_row_ends_sent(provider, transcoder, repository):
    pipeline = _pipeline(provider, transcoder, repository)

    result = await pipeline.synthesize(
        SynthesisRequest(text="Hello team", voice="alloy", speed=1.0),
        user_id="user-1",
    )
    await pipeline._ledger.drain()

    assert result.media_type == "audio/wav"
    assert result.content_length == len(result.audio) > 0
    assert result.duration_seconds == pytest.approx(1.0)
    assert transcoder.inputs == [b"ID3-fake-mp3"]
    assert provider.calls[0]["input"] == "Hello team"
    assert pipeline.statuses.get(result.request_id) == "sent"

    rows = await _rows(repository)
    assert len(rows) == 1
    assert rows[0]["id"] == result.message_id
    assert rows[0]["status"] == "sent"
    assert rows[0]["audio_duration_seconds"] == pytest.approx(1.0)


@pytest.mark.anyio
@pytest.mark.parametrize("text", ["", "   \n\t"])
async def test_empty_text_is_rejected_without_side_effects(
    text, provider, transcoder, repository
):
    pipeline = _pipeline(provider, transcoder, repository)

    with pytest.raises(InvalidInput) as excinfo:
        await pipeline.synthesize(SynthesisRequest(text=text), user_id="user-1")

    assert excinfo.value.status_code == 400
    assert excinfo.value.message == "Text is required."
    assert provider.calls == []
    assert await _rows(repository) == []


@pytest.mark.anyio
async def test_over_length_text_reports_maximum(provider, transcoder, repository):
    pipeline = _pipeline(provider, transcoder, repository)

    with pytest.raises(InvalidInput) as excinfo:
        await pipeline.synthesize(SynthesisRequest(text="a" * 501), user_id="user-1")

    assert "500" in excinfo.value.message
    assert provider.calls == []
    assert await _rows(repository) == []


@pytest.mark.anyio
async def test_text_is_trimmed_before_length_check(provider, transcoder):
    pipeline = _pipeline(provider, transcoder)

    await pipeline.synthesize(SynthesisRequest(text="  " + "a" * 500 + "  "))

    assert provider.calls[0]["input"] == "a" * 500


@pytest.mark.anyio
async def test_missing_credential_fails_before_any_call(transcoder, repository):
    pipeline = _pipeline(None, transcoder, repository)

    with pytest.raises(ServiceUnavailable) as excinfo:
        await pipeline.synthesize(SynthesisRequest(text="hi"), user_id="user-1")

    assert excinfo.value.status_code == 500
    assert "OPENAI_API_KEY" in excinfo.value.message
    assert transcoder.inputs == []
    assert await _rows(repository) == []


@pytest.mark.anyio
async def test_provider_429_is_surfaced_and_row_fails(transcoder, repository):
    provider = FakeProvider(
        429, json={"error": {"message": "Rate limit reached for requests"}}
    )
    pipeline = _pipeline(provider, transcoder, repository)

    with pytest.raises(ProviderError) as excinfo:
        await pipeline.synthesize(SynthesisRequest(text="hi"), user_id="user-1")

    assert excinfo.value.status_code == 429
    assert excinfo.value.to_payload() == {
        "error": "Rate limit reached for requests",
        "details": "Rate limit reached for requests",
        "statusCode": 429,
    }
    assert transcoder.inputs == []
    rows = await _rows(repository)
    assert [row["status"] for row in rows] == ["failed"]
    assert rows[0]["error_message"] == "Rate limit reached for requests"


@pytest.mark.anyio
async def test_empty_provider_body_is_upstream_error(transcoder, repository):
    provider = FakeProvider(200, content=b"")
    pipeline = _pipeline(provider, transcoder, repository)

    with pytest.raises(UpstreamEmptyResponse) as excinfo:
        await pipeline.synthesize(SynthesisRequest(text="hi"), user_id="user-1")

    assert excinfo.value.status_code == 502
    assert [row["status"] for row in await _rows(repository)] == ["failed"]


@pytest.mark.anyio
async def test_missing_transcoder_is_distinct_503(provider, repository):
    transcoder = FakeTranscoder(error=TranscoderNotFound("ffmpeg not available"))
    pipeline = _pipeline(provider, transcoder, repository)

    with pytest.raises(TranscodeUnavailable) as excinfo:
        await pipeline.synthesize(SynthesisRequest(text="hi"), user_id="user-1")

    assert excinfo.value.status_code == 503
    assert excinfo.value.message == "Audio conversion unavailable."
    assert "ffmpeg" in excinfo.value.details
    rows = await _rows(repository)
    assert rows[0]["status"] == "failed"
    assert "ffmpeg" in rows[0]["error_message"]


@pytest.mark.anyio
async def test_unknown_failure_becomes_unexpected(provider, repository):
    transcoder = FakeTranscoder(error=KeyError("boom"))
    pipeline = _pipeline(provider, transcoder, repository)

    with pytest.raises(Unexpected) as excinfo:
        await pipeline.synthesize(SynthesisRequest(text="hi"), user_id="user-1")

    assert excinfo.value.status_code == 500
    assert [row["status"] for row in await _rows(repository)] == ["failed"]


@pytest.mark.anyio
async def test_second_request_in_window_is_rate_limited(provider, transcoder, repository):
    pipeline = _pipeline(provider, transcoder, repository, limit=1, window_seconds=60)

    await pipeline.synthesize(SynthesisRequest(text="first"), user_id="user-1")
    with pytest.raises(RateLimited) as excinfo:
        await pipeline.synthesize(SynthesisRequest(text="second"), user_id="user-1")
    await pipeline._ledger.drain()

    payload = excinfo.value.to_payload()
    assert excinfo.value.status_code == 429
    assert 55 <= payload["retryAfter"] <= 60
    assert payload["limit"] == 1
    assert payload["window"] == 1
    assert len(provider.calls) == 1
    assert len(await _rows(repository)) == 1


@pytest.mark.anyio
async def test_rate_limit_falls_back_to_client_address(provider, transcoder):
    pipeline = _pipeline(provider, transcoder, limit=1)

    await pipeline.synthesize(SynthesisRequest(text="hi"), client_address="10.0.0.1")
    await pipeline.synthesize(SynthesisRequest(text="hi"), client_address="10.0.0.2")
    with pytest.raises(RateLimited):
        await pipeline.synthesize(SynthesisRequest(text="hi"), client_address="10.0.0.1")


@pytest.mark.anyio
async def test_anonymous_requests_never_create_rows(transcoder, repository):
    pipeline = _pipeline(FakeProvider(), transcoder, repository)
    failing = _pipeline(FakeProvider(500, text="down"), transcoder, repository)

    result = await pipeline.synthesize(SynthesisRequest(text="hi"))
    with pytest.raises(ProviderError):
        await failing.synthesize(SynthesisRequest(text="hi"))

    assert result.message_id is None
    assert await _count_rows(repository) == 0


@pytest.mark.anyio
@pytest.mark.parametrize(("speed", "forwarded"), [(10.0, 4.0), (-1.0, 0.25), (None, 1.0)])
async def test_speed_is_clamped_and_pitch_becomes_instructions(
    speed, forwarded, provider, transcoder
):
    pipeline = _pipeline(provider, transcoder)

    await pipeline.synthesize(
        SynthesisRequest(text="hi", speed=speed, pitch=0.8, language="Spanish")
    )

    call = provider.calls[0]
    assert call["speed"] == forwarded
    assert call["response_format"] == "mp3"
    assert call["instructions"] == "Speak in Spanish. Use a pitch of 0.8x (best-effort)."


@pytest.mark.anyio
async def test_ledger_outage_does_not_block_speech(tmp_path, provider, transcoder):
    broken = MessageRepository(tmp_path / "voxa.db")  # never initialized
    pipeline = _pipeline(provider, transcoder, broken)

    result = await pipeline.synthesize(SynthesisRequest(text="hi"), user_id="user-1")

    assert result.message_id is None
    assert result.audio
