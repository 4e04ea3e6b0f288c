"""Speech-to-text: remote Mistral transcription and local faster-whisper."""

from __future__ import annotations

import io
import json
import logging
import os
import time
import wave
from typing import Any, Dict, Optional

import numpy as np
import requests

from handsfree.errors import EmptyAudio, TranscriptionFailure
from handsfree.warmup import SingleFlight

try:
    from faster_whisper import WhisperModel
    WHISPER_AVAILABLE = True
except ImportError:
    WhisperModel = None
    WHISPER_AVAILABLE = False


class MistralTranscriber:
    """Uploads 16 kHz mono 16-bit WAV to the Mistral transcription endpoint."""

    def __init__(self, cfg: Dict[str, Any], logger: logging.Logger,
                 session: Optional[requests.Session] = None):
        self.cfg = cfg.get("stt", {})
        self.logger = logger
        self.session = session or requests.Session()
        self.endpoint = self.cfg.get("endpoint", "https://api.mistral.ai/v1/audio/transcriptions")
        self.model = self.cfg.get("model", "voxtral-mini-latest")
        self.api_key_env = self.cfg.get("api_key_env", "MISTRAL_API_KEY")
        self.language = self.cfg.get("language")
        self.timeout = float(self.cfg.get("timeout_s", 30.0))

    def transcribe(self, wav_bytes: bytes) -> str:
        if not wav_bytes:
            raise EmptyAudio()
        api_key = os.environ.get(self.api_key_env or "", "")
        if not api_key:
            raise TranscriptionFailure(f"Transcription API key missing ({self.api_key_env})")

        data = {"model": self.model}
        if self.language:
            data["language"] = self.language

        t0 = time.time()
        try:
            resp = self.session.post(
                self.endpoint,
                headers={"x-api-key": api_key},
                files={"file": ("audio.wav", wav_bytes, "audio/wav")},
                data=data,
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            raise TranscriptionFailure(f"Transcription request failed: {e}") from e

        if resp.status_code != 200:
            self.logger.error("stt_failed %s", json.dumps({
                "status": resp.status_code, "body": resp.text[:300]
            }))
            raise TranscriptionFailure(f"Transcription service returned HTTP {resp.status_code}")

        try:
            text = (resp.json().get("text") or "").strip()
        except ValueError as e:
            raise TranscriptionFailure("Transcription response was not valid JSON") from e

        self.logger.info("stt_done %s", json.dumps({
            "engine": "mistral", "len": len(text), "ms": int((time.time() - t0) * 1000)
        }))
        return text


class WhisperTranscriber:
    """Local faster-whisper model, loaded on first use by exactly one caller."""

    def __init__(self, cfg: Dict[str, Any], logger: logging.Logger):
        self.cfg = cfg.get("stt", {})
        self.logger = logger
        self.model_tag = self.cfg.get("whisper_model", "small")
        self.device = self.cfg.get("device", "cpu")
        self.compute_type = self.cfg.get("compute_type", "int8")
        self.beam_size = int(self.cfg.get("beam_size", 1))
        self.language = self.cfg.get("language", "en")
        self.initial_prompt = self.cfg.get("initial_prompt")
        self._model = SingleFlight(self._load)

    def _load(self):
        if not WHISPER_AVAILABLE:
            raise TranscriptionFailure("faster-whisper is not installed")
        if self.device == "cuda":
            try:
                model = WhisperModel(self.model_tag, device="cuda", compute_type=self.compute_type)
                self.logger.info("stt_ready %s", json.dumps({
                    "engine": "whisper-cuda", "model": self.model_tag,
                    "compute_type": self.compute_type
                }))
                return model
            except Exception as e:
                self.logger.warning("stt_cuda_failed %s", json.dumps({"error": str(e)}))

        # Fallback to CPU Whisper
        model = WhisperModel(self.model_tag, device="cpu", compute_type="int8")
        self.logger.info("stt_ready %s", json.dumps({"engine": "whisper-cpu", "model": self.model_tag}))
        return model

    def warm_up(self):
        self._model.get()

    def transcribe(self, wav_bytes: bytes) -> str:
        if not wav_bytes:
            raise EmptyAudio()
        audio = decode_wav(wav_bytes)
        if audio.size == 0:
            raise EmptyAudio()

        try:
            model = self._model.get()
            segments, info = model.transcribe(
                audio,
                beam_size=self.beam_size,
                language=self.language,
                initial_prompt=self.initial_prompt,
            )
            text = " ".join(seg.text for seg in segments).strip()
        except TranscriptionFailure:
            raise
        except Exception as e:
            self.logger.error("stt_failed %s", json.dumps({"error": str(e)}))
            raise TranscriptionFailure(f"Local transcription failed: {e}") from e

        self.logger.info("stt_done %s", json.dumps({
            "engine": "whisper", "len": len(text),
            "lang": info.language if info else self.language
        }))
        return text


def decode_wav(wav_bytes: bytes) -> np.ndarray:
    """16-bit PCM WAV to float32 in [-1, 1]."""
    with wave.open(io.BytesIO(wav_bytes), "rb") as wf:
        frames = wf.readframes(wf.getnframes())
    return np.frombuffer(frames, dtype="<i2").astype(np.float32) / 32768.0


def make_transcriber(cfg: Dict[str, Any], logger: logging.Logger):
    engine = cfg.get("stt", {}).get("engine", "mistral")
    if engine == "whisper":
        return WhisperTranscriber(cfg, logger)
    return MistralTranscriber(cfg, logger)
