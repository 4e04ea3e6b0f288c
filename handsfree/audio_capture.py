"""Microphone capture, energy VAD and the post-playback echo cooldown."""

from __future__ import annotations

import io
import json
import logging
import threading
import time
import wave
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

import numpy as np

from handsfree.config import CANONICAL_SAMPLE_RATE, SettingsSnapshot
from handsfree.coordinator import EventKind, VoiceLoopEvent
from handsfree.errors import HardwareFailure

try:
    import sounddevice as sd
    AUDIO_BACKEND = "sounddevice"
except (ImportError, OSError):
    sd = None
    AUDIO_BACKEND = None


# =========================
# DSP helpers
# =========================

def rms_amplitude(block: np.ndarray) -> float:
    if block.size == 0:
        return 0.0
    return float(np.sqrt(np.mean(np.square(block, dtype=np.float64))))


def to_canonical(block: np.ndarray, native_rate: int) -> np.ndarray:
    """Downmix to mono float32 and resample to the canonical 16 kHz."""
    data = np.asarray(block)
    if np.issubdtype(data.dtype, np.integer):
        data = data.astype(np.float32) / 32768.0
    else:
        data = data.astype(np.float32, copy=False)
    if data.ndim > 1:
        data = data.mean(axis=1)

    if native_rate == CANONICAL_SAMPLE_RATE or data.size == 0:
        return data

    n_out = int(round(data.size * CANONICAL_SAMPLE_RATE / float(native_rate)))
    if n_out <= 0:
        return np.zeros(0, dtype=np.float32)
    x_old = np.arange(data.size, dtype=np.float64)
    x_new = np.linspace(0.0, data.size - 1, n_out)
    return np.interp(x_new, x_old, data).astype(np.float32)


def encode_wav(samples: np.ndarray, sample_rate: int = CANONICAL_SAMPLE_RATE) -> bytes:
    """16-bit mono PCM WAV, clamping out-of-range samples."""
    clipped = np.clip(np.asarray(samples, dtype=np.float32), -1.0, 1.0)
    pcm = (clipped * 32767.0).astype("<i2")
    buf = io.BytesIO()
    with wave.open(buf, "wb") as wf:
        wf.setnchannels(1)
        wf.setsampwidth(2)
        wf.setframerate(sample_rate)
        wf.writeframes(pcm.tobytes())
    return buf.getvalue()


# =========================
# Cooldown & session state
# =========================

class CooldownGuard:
    """Expiry timer. No side effects beyond the comparison."""

    def __init__(self):
        self.expiry: Optional[float] = None

    def arm(self, duration: float, now: float):
        self.expiry = now + duration

    def is_active(self, now: float) -> bool:
        return self.expiry is not None and now < self.expiry


@dataclass
class CaptureSession:
    turn_id: Optional[int]
    started_at: float
    cooldown: CooldownGuard = field(default_factory=CooldownGuard)
    blocks: List[np.ndarray] = field(default_factory=list)
    length: int = 0
    speech_start_index: Optional[int] = None
    speech_end_index: Optional[int] = None

    def append(self, block: np.ndarray):
        self.blocks.append(block)
        self.length += int(block.size)

    def trimmed(self) -> np.ndarray:
        if self.speech_start_index is None or self.speech_end_index is None:
            return np.zeros(0, dtype=np.float32)
        if not self.blocks:
            return np.zeros(0, dtype=np.float32)
        audio = np.concatenate(self.blocks)
        return audio[self.speech_start_index:self.speech_end_index]


class EnergyVAD:
    """
    RMS detector with hysteresis.

    Speech starts at the first frame whose energy reaches the activation
    threshold. It ends at the first sample of a run of frames below the silence
    threshold lasting ``silence_duration_s``. Each is reported at most once.
    """

    def __init__(self, activation_threshold: float = 0.02, silence_threshold: float = 0.012,
                 silence_duration_s: float = 1.5, frame_size: int = 512,
                 sample_rate: int = CANONICAL_SAMPLE_RATE):
        self.activation_threshold = activation_threshold
        self.silence_threshold = min(silence_threshold, activation_threshold)
        self.frame_size = frame_size
        self.silence_samples = max(frame_size, int(silence_duration_s * sample_rate))
        self.speech_start: Optional[int] = None
        self.speech_end: Optional[int] = None
        self._pending = np.zeros(0, dtype=np.float32)
        self._offset = 0
        self._silence_start: Optional[int] = None
        self._silence_run = 0

    def feed(self, samples: np.ndarray):
        if self.speech_end is not None:
            return
        data = np.concatenate([self._pending, samples]) if self._pending.size else samples
        n_frames = data.size // self.frame_size
        for k in range(n_frames):
            frame = data[k * self.frame_size:(k + 1) * self.frame_size]
            self._frame(frame, self._offset)
            self._offset += self.frame_size
            if self.speech_end is not None:
                break
        self._pending = data[n_frames * self.frame_size:].copy()

    def _frame(self, frame: np.ndarray, index: int):
        level = rms_amplitude(frame)
        if self.speech_start is None:
            if level >= self.activation_threshold:
                self.speech_start = index
            return

        if level < self.silence_threshold:
            if self._silence_start is None:
                self._silence_start = index
            self._silence_run += frame.size
            if self._silence_run >= self.silence_samples:
                self.speech_end = self._silence_start
        else:
            self._silence_start = None
            self._silence_run = 0


# =========================
# Capture engine
# =========================

Emit = Callable[[VoiceLoopEvent], None]
UtteranceCallback = Callable[[Optional[int], np.ndarray], None]


class AudioCaptureEngine:
    """Owns the microphone stream and the single live CaptureSession."""

    def __init__(self, cfg: Dict[str, Any], logger: logging.Logger, emit: Emit,
                 on_utterance: UtteranceCallback, clock: Callable[[], float] = time.monotonic,
                 stream_factory: Optional[Callable[..., Any]] = None,
                 device_lock: Optional[threading.Lock] = None):
        self.cfg = cfg.get("audio", {})
        self.vad_cfg = cfg.get("vad", {})
        self.logger = logger
        self.emit = emit
        self.on_utterance = on_utterance
        self.clock = clock
        self.device = self.cfg.get("input_device")
        self.block_size = int(self.cfg.get("block_size", 1024))

        if stream_factory is None and sd is not None:
            stream_factory = sd.InputStream
        self._stream_factory = stream_factory
        self._device_lock = device_lock or threading.Lock()
        self._lock = threading.RLock()

        self._stream = None
        self._stream_gen = 0
        self._native_rate = CANONICAL_SAMPLE_RATE
        self._session: Optional[CaptureSession] = None
        self._vad: Optional[EnergyVAD] = None
        self._settings = SettingsSnapshot()

        self.logger.info("audio_backend %s", json.dumps({
            "backend": AUDIO_BACKEND or ("injected" if stream_factory else "none")
        }))

    @property
    def session(self) -> Optional[CaptureSession]:
        with self._lock:
            return self._session

    @property
    def listening(self) -> bool:
        return self.session is not None

    def start_listening(self, use_cooldown: bool = False, turn_id: Optional[int] = None,
                        settings: Optional[SettingsSnapshot] = None) -> bool:
        """Open the input stream and begin a fresh CaptureSession."""
        if settings is not None:
            self._settings = settings

        try:
            self._ensure_stream()
        except Exception as e:
            self.logger.error("capture_open_failed %s", json.dumps({
                "error": str(e), "type": type(e).__name__
            }))
            message = e.message if isinstance(e, HardwareFailure) else f"Microphone unavailable: {e}"
            self.emit(VoiceLoopEvent(EventKind.ENCOUNTERED_ERROR, turn_id=turn_id, message=message))
            return False

        with self._lock:
            now = self.clock()
            session = CaptureSession(turn_id=turn_id, started_at=now)
            if use_cooldown:
                session.cooldown.arm(self._settings.cooldown_s, now)
            self._session = session
            self._vad = self._new_vad()
            self.emit(VoiceLoopEvent(EventKind.LISTENING_STARTED, turn_id=turn_id,
                                     use_cooldown=use_cooldown))

        self.logger.info("capture_begin %s", json.dumps({
            "turn": turn_id,
            "cooldown_s": self._settings.cooldown_s if use_cooldown else 0.0,
            "timeout_s": self._settings.listen_timeout_s,
            "native_rate": self._native_rate,
        }))
        return True

    def process_samples(self, samples: np.ndarray):
        """Feed one canonical block. Called from the stream callback."""
        utterance = None
        timed_out = False

        with self._lock:
            session = self._session
            if session is None:
                return
            now = self.clock()

            if (session.speech_start_index is None
                    and now - session.started_at >= self._settings.listen_timeout_s):
                self._session = None
                self._vad = None
                timed_out = True
                self.emit(VoiceLoopEvent(EventKind.LISTENING_STOPPED, turn_id=session.turn_id))
            elif session.cooldown.is_active(now):
                return
            else:
                session.append(samples)
                vad = self._vad
                vad.feed(samples)
                if session.speech_start_index is None and vad.speech_start is not None:
                    session.speech_start_index = vad.speech_start
                    self.logger.info("speech_start %s", json.dumps({
                        "turn": session.turn_id, "index": vad.speech_start
                    }))
                if vad.speech_end is not None:
                    session.speech_end_index = vad.speech_end
                    trimmed = session.trimmed()
                    if trimmed.size == 0:
                        self.logger.info("capture_empty_trim %s", json.dumps({"turn": session.turn_id}))
                        self._session = CaptureSession(turn_id=session.turn_id, started_at=now)
                        self._vad = self._new_vad()
                    else:
                        self._session = None
                        self._vad = None
                        self.emit(VoiceLoopEvent(EventKind.TRANSCRIPTION_BEGAN, turn_id=session.turn_id))
                        utterance = (session.turn_id, trimmed)

        if timed_out:
            self.logger.info("capture_timeout %s", json.dumps({
                "turn": session.turn_id, "timeout_s": self._settings.listen_timeout_s
            }))
            self._release_stream()
        if utterance is not None:
            self.logger.info("capture_end %s", json.dumps({
                "turn": utterance[0],
                "sec": round(utterance[1].size / CANONICAL_SAMPLE_RATE, 2),
                "samples": int(utterance[1].size),
            }))
            self.on_utterance(*utterance)

    def teardown(self):
        """Drop the session and close the stream. Never raises."""
        with self._lock:
            self._session = None
            self._vad = None
        try:
            self._close_stream()
        except Exception as e:
            self.logger.warning("capture_teardown_failed %s", json.dumps({"error": str(e)}))

    # ---- stream management ----

    def _new_vad(self) -> EnergyVAD:
        return EnergyVAD(
            activation_threshold=float(self.vad_cfg.get("activation_threshold", 0.02)),
            silence_threshold=float(self.vad_cfg.get("silence_threshold", 0.012)),
            silence_duration_s=self._settings.vad_silence_s,
            frame_size=int(self.vad_cfg.get("frame_size", 512)),
        )

    def _resolve_native_rate(self) -> int:
        configured = self.cfg.get("input_samplerate")
        if configured:
            return int(configured)
        if sd is not None and self._stream_factory is sd.InputStream:
            info = sd.query_devices(self.device, "input")
            return int(info["default_samplerate"])
        return CANONICAL_SAMPLE_RATE

    def _ensure_stream(self):
        with self._device_lock:
            if self._stream is not None:
                return
            if self._stream_factory is None:
                raise HardwareFailure("No audio input backend available")
            rate = self._resolve_native_rate()
            self._stream_gen += 1
            gen = self._stream_gen

            def callback(indata, frames, time_info, status):
                if status:
                    self.logger.debug("capture_status %s", json.dumps({"status": str(status)}))
                try:
                    self.process_samples(to_canonical(indata, rate))
                except Exception as e:
                    self.logger.error("capture_callback_failed %s", json.dumps({
                        "error": str(e), "type": type(e).__name__
                    }))
                    self._hardware_failure(gen, f"Audio capture failed: {e}")

            stream = self._stream_factory(
                samplerate=rate,
                channels=1,
                dtype="float32",
                blocksize=self.block_size,
                device=self.device,
                callback=callback,
                finished_callback=lambda: self._hardware_failure(gen, "Microphone stream stopped unexpectedly"),
            )
            stream.start()
            self._stream = stream
            self._native_rate = rate

    def _detach_stream(self):
        with self._device_lock:
            stream = self._stream
            self._stream = None
            # Invalidate the finished callback of the stream being closed.
            self._stream_gen += 1
        return stream

    def _close_stream(self):
        stream = self._detach_stream()
        if stream is None:
            return
        try:
            stream.stop()
        finally:
            stream.close()

    def _release_stream(self):
        """Close from a helper thread; the stream callback must not stop its own stream."""
        stream = self._detach_stream()
        if stream is not None:
            threading.Thread(target=self._close_quietly, args=(stream,),
                             name="capture-close", daemon=True).start()

    def _close_quietly(self, stream):
        try:
            stream.stop()
            stream.close()
        except Exception as e:
            self.logger.warning("capture_close_failed %s", json.dumps({"error": str(e)}))

    def _hardware_failure(self, gen: int, message: str):
        with self._device_lock:
            if gen != self._stream_gen:
                return
        self._release_stream()
        with self._lock:
            session = self._session
            self._session = None
            self._vad = None
        self.logger.error("capture_hardware_failure %s", json.dumps({
            "message": message, "turn": session.turn_id if session else None
        }))
        if session is not None:
            self.emit(VoiceLoopEvent(EventKind.ENCOUNTERED_ERROR, turn_id=session.turn_id,
                                     message=message))
