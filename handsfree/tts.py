"""
Text-to-speech side of the loop.

TTSChunker cuts streamed text into speakable pieces, a TTSFetcher turns each
piece into audio bytes, and PlaybackQueue plays them strictly in sequence
order on a dedicated player thread.
"""

from __future__ import annotations

import io
import json
import logging
import os
import re
import tempfile
import threading
import time
import wave
from collections import deque
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Deque, Dict, List, Optional, Tuple

import numpy as np
import requests
import soundfile as sf

from handsfree.config import SettingsSnapshot
from handsfree.coordinator import EventKind, VoiceLoopEvent
from handsfree.errors import HardwareFailure, SynthesisFailure
from handsfree.warmup import SingleFlight

try:
    import sounddevice as sd
except (ImportError, OSError):
    sd = None

try:
    from piper import PiperVoice
    PIPER_AVAILABLE = True
except ImportError:
    PiperVoice = None
    PIPER_AVAILABLE = False


# =========================
# Text chunking
# =========================

def strip_markdown(text: str) -> str:
    """Remove markdown formatting for TTS."""
    # Remove bold/italic (**text** or *text*)
    text = re.sub(r'\*\*([^\*]+)\*\*', r'\1', text)
    text = re.sub(r'\*([^\*]+)\*', r'\1', text)
    # Remove inline code (`code`)
    text = re.sub(r'`([^`]+)`', r'\1', text)
    # Remove headers (# text)
    text = re.sub(r'^#{1,6}\s+', '', text, flags=re.MULTILINE)
    # Remove list markers (- item, * item, 1. item)
    text = re.sub(r'^\s*(?:[-*+]|\d+\.)\s+', '', text, flags=re.MULTILINE)
    # Remove links [text](url)
    text = re.sub(r'\[([^\]]+)\]\([^\)]+\)', r'\1', text)
    # Markers split across chunk boundaries
    text = re.sub(r'[*`]+', '', text)
    return text.strip()


@dataclass(frozen=True)
class TTSChunk:
    text: str
    sequence_index: int


_BOUNDARY_CHARS = ".!?;:,"


class TTSChunker:
    """
    Incrementally groups streamed deltas into chunks.

    A chunk is cut at the nearest sentence or phrase boundary that lies at or
    past the minimum length and within the current limit. The minimum shrinks
    as playback speeds up. The limit starts at the configured maximum and then
    follows the previous chunk length times the growth factor, capped at the
    maximum. Without any boundary the chunk is hard cut at the limit.
    """

    def __init__(self, settings: SettingsSnapshot):
        scaled = settings.min_chunk_length * settings.min_chunk_scale / settings.playback_speed
        self.min_length = max(1, int(round(scaled)))
        self.max_length = max(self.min_length, int(settings.max_chunk_length))
        self.growth = settings.chunk_growth
        self._buffer = ""
        self._next_index = 0
        self._prev_len: Optional[int] = None
        self.finished = False

    @property
    def emitted(self) -> int:
        return self._next_index

    @property
    def buffered(self) -> str:
        return self._buffer

    def current_limit(self) -> int:
        if self._prev_len is None:
            return self.max_length
        grown = int(self._prev_len * self.growth)
        return max(self.min_length, min(self.max_length, grown))

    def feed(self, delta: str) -> List[TTSChunk]:
        if self.finished:
            raise RuntimeError("chunker already finished")
        self._buffer += delta
        chunks: List[TTSChunk] = []
        while True:
            cut = self._find_cut()
            if cut is None:
                break
            chunk = self._take(cut)
            if chunk:
                chunks.append(chunk)
        return chunks

    def finish(self) -> List[TTSChunk]:
        """Flush the remainder once the stream has ended."""
        chunks: List[TTSChunk] = []
        while len(self._buffer) > self.current_limit():
            chunk = self._take(self._find_cut() or self.current_limit())
            if chunk:
                chunks.append(chunk)
        chunk = self._take(len(self._buffer))
        if chunk:
            chunks.append(chunk)
        self.finished = True
        return chunks

    def _find_cut(self) -> Optional[int]:
        buf = self._buffer
        if len(buf) < self.min_length:
            return None
        limit = self.current_limit()

        for i in range(self.min_length - 1, min(len(buf), limit)):
            ch = buf[i]
            if ch == "\n":
                return i + 1
            if ch in _BOUNDARY_CHARS and i + 1 < len(buf) and buf[i + 1].isspace():
                return i + 1

        if len(buf) < limit:
            return None
        window = buf[:limit]
        space = max(window.rfind(" "), window.rfind("\t"))
        if space >= self.min_length:
            return space
        return limit

    def _take(self, cut: int) -> Optional[TTSChunk]:
        raw = self._buffer[:cut]
        self._buffer = self._buffer[cut:].lstrip()
        text = strip_markdown(raw)
        if not text:
            return None
        self._prev_len = len(raw)
        chunk = TTSChunk(text=text, sequence_index=self._next_index)
        self._next_index += 1
        return chunk


# =========================
# Synthesis
# =========================

@dataclass(frozen=True)
class VoiceConfig:
    voice: str = "nova"
    response_format: str = "wav"
    instruction: str = ""
    speed: float = 1.0

    @classmethod
    def from_config(cls, cfg: Dict[str, Any], settings: SettingsSnapshot) -> "VoiceConfig":
        tts = cfg.get("tts", {})
        return cls(
            voice=tts.get("voice", "nova"),
            response_format=tts.get("format", "wav"),
            instruction=tts.get("instruction") or "",
            speed=settings.playback_speed,
        )


class OpenAITTSFetcher:
    """Remote speech synthesis over the OpenAI audio endpoint."""

    def __init__(self, cfg: Dict[str, Any], logger: logging.Logger,
                 session: Optional[requests.Session] = None):
        self.cfg = cfg.get("tts", {})
        self.logger = logger
        self.session = session or requests.Session()
        self.endpoint = self.cfg.get("endpoint", "https://api.openai.com/v1/audio/speech")
        self.model = self.cfg.get("model", "gpt-4o-mini-tts")
        self.api_key_env = self.cfg.get("api_key_env", "OPENAI_API_KEY")
        self.timeout = float(self.cfg.get("timeout_s", 30.0))

    def synthesize(self, text: str, voice: VoiceConfig) -> bytes:
        api_key = os.environ.get(self.api_key_env or "", "")
        if not api_key:
            raise SynthesisFailure(f"Speech API key missing ({self.api_key_env})")

        payload = {
            "model": self.model,
            "input": text,
            "voice": voice.voice,
            "response_format": voice.response_format,
            "speed": voice.speed,
        }
        if voice.instruction:
            payload["instructions"] = voice.instruction

        t0 = time.time()
        try:
            resp = self.session.post(
                self.endpoint,
                json=payload,
                headers={"Authorization": f"Bearer {api_key}"},
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            raise SynthesisFailure(f"Speech request failed: {e}") from e

        if resp.status_code != 200:
            self.logger.error("tts_fetch_failed %s", json.dumps({
                "status": resp.status_code, "body": resp.text[:300]
            }))
            raise SynthesisFailure(f"Speech service returned HTTP {resp.status_code}")
        if not resp.content:
            raise SynthesisFailure("Speech service returned no audio")

        self.logger.info("tts_fetch_done %s", json.dumps({
            "chars": len(text), "bytes": len(resp.content),
            "ms": int((time.time() - t0) * 1000)
        }))
        return resp.content


class PiperTTSFetcher:
    """Local synthesis with a Piper voice model, loaded once per speed."""

    def __init__(self, cfg: Dict[str, Any], logger: logging.Logger):
        self.cfg = cfg.get("tts", {})
        self.logger = logger
        voice_path = self.cfg.get("piper_voice")
        self.model_path = Path(voice_path).expanduser() if voice_path else None
        config_path = self.cfg.get("piper_config")
        self.config_path = Path(config_path).expanduser() if config_path else None
        self._voices: Dict[float, SingleFlight] = {}
        self._voices_lock = threading.Lock()

    def _voice(self, length_scale: float):
        with self._voices_lock:
            flight = self._voices.get(length_scale)
            if flight is None:
                flight = SingleFlight(lambda: self._load(length_scale))
                self._voices[length_scale] = flight
        return flight.get()

    def _load(self, length_scale: float):
        if not PIPER_AVAILABLE:
            raise SynthesisFailure("piper-tts is not installed")
        if self.model_path is None or not self.model_path.exists():
            raise SynthesisFailure(f"Piper voice model not found: {self.model_path}")

        config_path = self.config_path or Path(f"{self.model_path}.json")
        with open(config_path, "r", encoding="utf-8") as f:
            config_data = json.load(f)

        tmp_path: Optional[Path] = None
        config_to_use = config_path
        if length_scale != 1.0:
            config_data["length_scale"] = length_scale
            # Some voices keep params inside an 'inference' block
            if "inference" in config_data:
                config_data["inference"]["length_scale"] = length_scale
            with tempfile.NamedTemporaryFile("w", suffix=".json", delete=False) as tmp:
                json.dump(config_data, tmp)
            tmp_path = config_to_use = Path(tmp.name)

        t0 = time.time()
        try:
            voice = PiperVoice.load(str(self.model_path), config_path=str(config_to_use))
        finally:
            if tmp_path is not None:
                tmp_path.unlink(missing_ok=True)

        self.logger.info("piper_voice_loaded %s", json.dumps({
            "model": self.model_path.name, "length_scale": length_scale,
            "ms": int((time.time() - t0) * 1000)
        }))
        return voice

    def synthesize(self, text: str, voice: VoiceConfig) -> bytes:
        length_scale = round(1.0 / voice.speed, 3) if voice.speed > 0 else 1.0
        piper_voice = self._voice(length_scale)

        frames = bytearray()
        sample_rate = int(getattr(getattr(piper_voice, "config", None), "sample_rate", 22050))
        try:
            for chunk in piper_voice.synthesize(text):
                frames.extend(chunk.audio_int16_bytes)
                sample_rate = int(getattr(chunk, "sample_rate", sample_rate))
        except Exception as e:
            raise SynthesisFailure(f"Local synthesis failed: {e}") from e

        buf = io.BytesIO()
        with wave.open(buf, "wb") as wf:
            wf.setnchannels(1)
            wf.setsampwidth(2)  # 16-bit PCM
            wf.setframerate(sample_rate)
            wf.writeframes(bytes(frames))
        return buf.getvalue()


def make_fetcher(cfg: Dict[str, Any], logger: logging.Logger):
    engine = cfg.get("tts", {}).get("engine", "openai")
    if engine == "piper":
        return PiperTTSFetcher(cfg, logger)
    return OpenAITTSFetcher(cfg, logger)


# =========================
# Playback
# =========================

class AudioPlayer:
    """Decodes audio bytes and writes them to one output stream, block by block."""

    def __init__(self, cfg: Dict[str, Any], logger: logging.Logger,
                 device_lock: Optional[threading.Lock] = None,
                 stream_factory: Optional[Callable[..., Any]] = None,
                 block_size: int = 1024):
        self.cfg = cfg.get("audio", {})
        self.logger = logger
        self.device = self.cfg.get("output_device")
        self.block_size = block_size
        if stream_factory is None and sd is not None:
            stream_factory = sd.OutputStream
        self._stream_factory = stream_factory
        self._device_lock = device_lock or threading.Lock()
        self._stream = None
        self._rate: Optional[int] = None

    def _open(self, rate: int):
        with self._device_lock:
            if self._stream is not None and self._rate == rate:
                return self._stream
            if self._stream is not None:
                self._stream.close()
                self._stream = None
            if self._stream_factory is None:
                raise HardwareFailure("No audio output backend available")
            stream = self._stream_factory(samplerate=rate, channels=1, dtype="float32",
                                          blocksize=self.block_size, device=self.device)
            stream.start()
            self._stream, self._rate = stream, rate
            return stream

    def play(self, data: bytes, stop_event: threading.Event) -> bool:
        """Blocks until played. Returns False if ``stop_event`` cut it short."""
        try:
            audio, rate = sf.read(io.BytesIO(data), dtype="float32", always_2d=False)
        except (RuntimeError, ValueError) as e:
            raise SynthesisFailure(f"Could not decode speech audio: {e}") from e
        if audio.ndim > 1:
            audio = audio.mean(axis=1)

        try:
            stream = self._open(int(rate))
            for start in range(0, audio.shape[0], self.block_size):
                if stop_event.is_set():
                    # Drop whatever is still buffered in the device.
                    stream.abort()
                    self.close()
                    return False
                block = np.ascontiguousarray(audio[start:start + self.block_size], dtype=np.float32)
                stream.write(block.reshape(-1, 1))
        except HardwareFailure:
            raise
        except Exception as e:
            self.close()
            raise HardwareFailure(f"Audio playback failed: {e}") from e
        return True

    def close(self):
        with self._device_lock:
            stream = self._stream
            self._stream = None
            self._rate = None
        if stream is not None:
            try:
                stream.close()
            except Exception as e:
                self.logger.warning("playback_close_failed %s", json.dumps({"error": str(e)}))


PersistChunk = Callable[[str, str, int, bytes], Optional[str]]


class PlaybackQueue:
    """
    Plays synthesized chunks back to back in ascending sequence order.

    Results that arrive early are parked until every lower index has been
    released. The first chunk of a turn emits tts-speaking-started; when the
    chunker has reported its total and every chunk has played, the queue emits
    tts-completed and calls ``on_drained``.
    """

    def __init__(self, logger: logging.Logger, emit: Callable[[VoiceLoopEvent], None],
                 player, persist: Optional[PersistChunk] = None,
                 on_drained: Optional[Callable[[Optional[int]], None]] = None,
                 on_error: Optional[Callable[[Optional[int], Exception], None]] = None):
        self.logger = logger
        self.emit = emit
        self.player = player
        self.persist = persist
        self.on_drained = on_drained
        self.on_error = on_error

        self._cond = threading.Condition()
        self._turn_id: Optional[int] = None
        self._conversation_id: Optional[str] = None
        self._message_id: Optional[str] = None
        self._active = False
        self._pending: Dict[int, bytes] = {}
        self._ready: Deque[Tuple[int, bytes]] = deque()
        self._next_release = 0
        self._total: Optional[int] = None
        self._played = 0
        self._playing = False
        self._had_spoken = False
        self._speaking_reported = False
        self._stop_event = threading.Event()
        self._t0 = time.time()
        self._closed = False
        self.saved_paths: List[str] = []

        self._thread = threading.Thread(target=self._run, name="playback", daemon=True)
        self._thread.start()

    @property
    def had_spoken(self) -> bool:
        with self._cond:
            return self._had_spoken

    @property
    def turn_id(self) -> Optional[int]:
        with self._cond:
            return self._turn_id

    @property
    def playing(self) -> bool:
        with self._cond:
            return self._playing

    def begin_turn(self, turn_id: Optional[int], conversation_id: Optional[str],
                   message_id: Optional[str]):
        with self._cond:
            self._turn_id = turn_id
            self._conversation_id = conversation_id
            self._message_id = message_id
            self._active = True
            self._pending.clear()
            self._ready.clear()
            self._next_release = 0
            self._total = None
            self._played = 0
            self._had_spoken = False
            self._speaking_reported = False
            self._stop_event = threading.Event()
            self._t0 = time.time()
            self.saved_paths = []
            self._cond.notify_all()

    def enqueue(self, turn_id: Optional[int], sequence_index: int, audio: bytes) -> bool:
        with self._cond:
            if not self._active or turn_id != self._turn_id:
                self.logger.debug("playback_stale_chunk %s", json.dumps({
                    "turn": turn_id, "current_turn": self._turn_id, "index": sequence_index
                }))
                return False
            if sequence_index < self._next_release or sequence_index in self._pending:
                return False
            self._pending[sequence_index] = audio
            while self._next_release in self._pending:
                self._ready.append((self._next_release, self._pending.pop(self._next_release)))
                self._next_release += 1
            self._cond.notify_all()
            return True

    def finish(self, turn_id: Optional[int], total: int):
        """The chunker is done; ``total`` chunks make up this turn."""
        with self._cond:
            if not self._active or turn_id != self._turn_id:
                return
            self._total = total
            self._cond.notify_all()

    def cancel(self):
        """Stop sounding audio now and drop everything not yet played."""
        with self._cond:
            self._active = False
            self._pending.clear()
            self._ready.clear()
            self._total = None
            self._stop_event.set()
            self._cond.notify_all()

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """Block until the player thread is not inside a chunk."""
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._cond:
            while self._playing:
                remaining = None if deadline is None else deadline - time.monotonic()
                if remaining is not None and remaining <= 0:
                    return False
                self._cond.wait(remaining)
        return True

    def close(self):
        with self._cond:
            self._closed = True
            self._active = False
            self._stop_event.set()
            self._cond.notify_all()
        self._thread.join(timeout=2.0)
        close = getattr(self.player, "close", None)
        if close:
            close()

    # ---- player thread ----

    def _next_action(self):
        """Wait for work. Returns ('play', ...), ('done', turn) or None on close."""
        with self._cond:
            while True:
                if self._closed:
                    return None
                if self._active and self._ready:
                    index, audio = self._ready.popleft()
                    self._playing = True
                    first = not self._speaking_reported
                    self._speaking_reported = True
                    return ("play", self._turn_id, index, audio, first, self._stop_event,
                            self._conversation_id, self._message_id)
                if self._active and self._total is not None and self._played >= self._total:
                    self._active = False
                    return ("done", self._turn_id)
                if self._active and self._speaking_reported:
                    # Ran dry mid-turn: report it once, resume with speaking-started.
                    self._speaking_reported = False
                    self.emit(VoiceLoopEvent(EventKind.TTS_WAITING, turn_id=self._turn_id))
                self._cond.wait()

    def _run(self):
        while True:
            action = self._next_action()
            if action is None:
                return
            if action[0] == "done":
                turn_id = action[1]
                self.logger.info("tts_completed %s", json.dumps({
                    "turn": turn_id, "chunks": self._played,
                    "ms": int((time.time() - self._t0) * 1000)
                }))
                self.emit(VoiceLoopEvent(EventKind.TTS_COMPLETED, turn_id=turn_id))
                if self.on_drained:
                    self.on_drained(turn_id)
                continue

            _, turn_id, index, audio, first, stop_event, conversation_id, message_id = action
            try:
                self._play_one(turn_id, index, audio, first, stop_event, conversation_id, message_id)
            except Exception as e:
                self.logger.error("playback_failed %s", json.dumps({
                    "turn": turn_id, "index": index, "error": str(e), "type": type(e).__name__
                }))
                with self._cond:
                    failed_turn_active = self._active and turn_id == self._turn_id
                    self._playing = False
                    self._cond.notify_all()
                if failed_turn_active and self.on_error:
                    self.on_error(turn_id, e)
                continue

            with self._cond:
                self._playing = False
                if self._active and turn_id == self._turn_id:
                    self._played += 1
                self._cond.notify_all()

    def _play_one(self, turn_id, index, audio, first, stop_event, conversation_id, message_id):
        if stop_event.is_set():
            return

        if self.persist and conversation_id and message_id:
            try:
                path = self.persist(conversation_id, message_id, index, audio)
                if path:
                    self.saved_paths.append(path)
            except Exception as e:
                self.logger.error("audio_chunk_persist_failed %s", json.dumps({
                    "index": index, "error": str(e)
                }))

        with self._cond:
            if stop_event.is_set():
                return
            self._had_spoken = True
        if first:
            self.emit(VoiceLoopEvent(EventKind.TTS_SPEAKING_STARTED, turn_id=turn_id))
        if index == 0:
            self.logger.info("tts_ttfa_ms %s", json.dumps({
                "ms": int((time.time() - self._t0) * 1000), "turn": turn_id
            }))

        t_play = time.time()
        completed = self.player.play(audio, stop_event)
        self.logger.info("tts_profile %s", json.dumps({
            "turn": turn_id, "chunk": index, "bytes": len(audio),
            "play_ms": int((time.time() - t_play) * 1000), "interrupted": not completed,
        }))
