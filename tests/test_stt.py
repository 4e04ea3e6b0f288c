"""Tests for transcription requests and WAV handling."""

from __future__ import annotations

import logging

import numpy as np
import pytest
import requests

from handsfree.audio_capture import encode_wav
from handsfree.errors import EmptyAudio, TranscriptionFailure
from handsfree.stt import MistralTranscriber, WhisperTranscriber, decode_wav, make_transcriber


@pytest.fixture()
def logger():
    return logging.getLogger("test_stt")


@pytest.fixture(autouse=True)
def api_key(monkeypatch):
    monkeypatch.setenv("MISTRAL_API_KEY", "m-key")


class FakeResponse:
    def __init__(self, status_code=200, payload=None, text=""):
        self.status_code = status_code
        self.payload = payload
        self.text = text

    def json(self):
        if self.payload is None:
            raise ValueError("no json")
        return self.payload


class FakeSession:
    def __init__(self, response=None, error=None):
        self.response = response
        self.error = error
        self.calls = []

    def post(self, url, **kwargs):
        self.calls.append((url, kwargs))
        if self.error is not None:
            raise self.error
        return self.response


class TestMistralTranscriber:
    def test_upload_shape(self, logger):
        session = FakeSession(FakeResponse(payload={"text": "  What's the weather  "}))
        stt = MistralTranscriber({"stt": {"language": "en"}}, logger, session=session)
        wav = encode_wav(np.zeros(1600, dtype=np.float32))

        assert stt.transcribe(wav) == "What's the weather"
        url, kwargs = session.calls[0]
        assert url == "https://api.mistral.ai/v1/audio/transcriptions"
        assert kwargs["headers"] == {"x-api-key": "m-key"}
        assert kwargs["files"]["file"] == ("audio.wav", wav, "audio/wav")
        assert kwargs["data"] == {"model": "voxtral-mini-latest", "language": "en"}

    def test_empty_audio(self, logger):
        stt = MistralTranscriber({"stt": {}}, logger, session=FakeSession())
        with pytest.raises(EmptyAudio):
            stt.transcribe(b"")

    def test_http_error(self, logger):
        stt = MistralTranscriber({"stt": {}}, logger, session=FakeSession(FakeResponse(401, text="bad key")))
        with pytest.raises(TranscriptionFailure) as exc:
            stt.transcribe(b"RIFF")
        assert "401" in exc.value.message

    def test_network_error(self, logger):
        session = FakeSession(error=requests.ConnectionError("offline"))
        stt = MistralTranscriber({"stt": {}}, logger, session=session)
        with pytest.raises(TranscriptionFailure):
            stt.transcribe(b"RIFF")

    def test_invalid_json(self, logger):
        stt = MistralTranscriber({"stt": {}}, logger, session=FakeSession(FakeResponse(payload=None)))
        with pytest.raises(TranscriptionFailure):
            stt.transcribe(b"RIFF")

    def test_missing_key(self, logger, monkeypatch):
        monkeypatch.delenv("MISTRAL_API_KEY")
        stt = MistralTranscriber({"stt": {}}, logger, session=FakeSession())
        with pytest.raises(TranscriptionFailure):
            stt.transcribe(b"RIFF")


class TestWav:
    def test_decode_matches_encode(self):
        samples = np.array([0.0, 0.5, -0.5], dtype=np.float32)
        decoded = decode_wav(encode_wav(samples))
        assert decoded.dtype == np.float32
        assert np.allclose(decoded, samples, atol=1e-4)


class TestFactory:
    def test_selects_engine(self, logger):
        assert isinstance(make_transcriber({"stt": {}}, logger), MistralTranscriber)
        assert isinstance(make_transcriber({"stt": {"engine": "whisper"}}, logger), WhisperTranscriber)

    def test_whisper_empty_audio(self, logger):
        stt = WhisperTranscriber({"stt": {}}, logger)
        with pytest.raises(EmptyAudio):
            stt.transcribe(encode_wav(np.zeros(0, dtype=np.float32)))
