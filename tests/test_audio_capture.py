"""Tests for capture sessions, the energy VAD and the echo cooldown."""

from __future__ import annotations

import io
import logging
import time
import wave

import numpy as np
import pytest

from handsfree.audio_capture import (
    AudioCaptureEngine,
    CooldownGuard,
    EnergyVAD,
    encode_wav,
    rms_amplitude,
    to_canonical,
)
from handsfree.config import SettingsSnapshot
from handsfree.coordinator import EventKind


class FakeClock:
    def __init__(self, now=0.0):
        self.now = now

    def __call__(self):
        return self.now


class FakeInputStream:
    def __init__(self, **kwargs):
        self.kwargs = kwargs
        self.callback = kwargs["callback"]
        self.finished_callback = kwargs["finished_callback"]
        self.started = False
        self.closed = False

    def start(self):
        self.started = True

    def stop(self):
        self.started = False

    def close(self):
        self.closed = True


class StreamRecorder:
    def __init__(self):
        self.streams = []

    def __call__(self, **kwargs):
        stream = FakeInputStream(**kwargs)
        self.streams.append(stream)
        return stream


@pytest.fixture()
def logger():
    return logging.getLogger("test_capture")


@pytest.fixture()
def cfg():
    return {
        "audio": {"input_samplerate": 16000, "block_size": 512},
        "vad": {"activation_threshold": 0.02, "silence_threshold": 0.012, "frame_size": 512},
    }


@pytest.fixture()
def settings():
    return SettingsSnapshot(vad_silence_s=0.1, cooldown_s=0.5, listen_timeout_s=60.0)


@pytest.fixture()
def harness(cfg, logger):
    events = []
    utterances = []
    clock = FakeClock()
    recorder = StreamRecorder()
    engine = AudioCaptureEngine(
        cfg, logger, events.append, lambda turn, samples: utterances.append((turn, samples)),
        clock=clock, stream_factory=recorder,
    )
    return engine, events, utterances, clock, recorder


def quiet(n):
    return np.zeros(n, dtype=np.float32)


def loud(n, level=0.5):
    return np.full(n, level, dtype=np.float32)


def kinds(events):
    return [e.kind for e in events]


def wait_for(predicate, timeout=2.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


class TestHelpers:
    def test_rms(self):
        assert rms_amplitude(quiet(0)) == 0.0
        assert rms_amplitude(loud(100, 0.5)) == pytest.approx(0.5)

    def test_to_canonical_resamples_and_downmixes(self):
        stereo = np.ones((4800, 2), dtype=np.float32) * 0.25
        out = to_canonical(stereo, 48000)
        assert out.dtype == np.float32
        assert out.shape == (1600,)
        assert np.allclose(out, 0.25)

    def test_to_canonical_scales_int16(self):
        out = to_canonical(np.array([16384, -16384], dtype=np.int16), 16000)
        assert out.tolist() == [0.5, -0.5]

    def test_encode_wav_header(self):
        data = encode_wav(np.array([0.0, 2.0, -2.0], dtype=np.float32))
        with wave.open(io.BytesIO(data), "rb") as wf:
            assert wf.getnchannels() == 1
            assert wf.getsampwidth() == 2
            assert wf.getframerate() == 16000
            frames = np.frombuffer(wf.readframes(wf.getnframes()), dtype="<i2")
        assert frames.tolist() == [0, 32767, -32767]


class TestCooldownGuard:
    def test_unarmed_is_inactive(self):
        assert not CooldownGuard().is_active(0.0)

    def test_expiry(self):
        guard = CooldownGuard()
        guard.arm(0.6, now=10.0)
        assert guard.is_active(10.5)
        assert not guard.is_active(10.6)


class TestEnergyVAD:
    def test_detects_start_and_end(self):
        vad = EnergyVAD(silence_duration_s=0.1, frame_size=512)
        vad.feed(np.concatenate([quiet(1024), loud(2048), quiet(2048)]))
        assert vad.speech_start == 1024
        assert vad.speech_end == 3072

    def test_short_pause_does_not_end_speech(self):
        vad = EnergyVAD(silence_duration_s=0.1, frame_size=512)
        vad.feed(np.concatenate([loud(1024), quiet(1024), loud(512)]))
        assert vad.speech_start == 0
        assert vad.speech_end is None

    def test_partial_frames_carry_over(self):
        vad = EnergyVAD(frame_size=512)
        vad.feed(loud(300))
        assert vad.speech_start is None
        vad.feed(loud(300))
        assert vad.speech_start == 0


class TestCaptureEngine:
    def test_start_opens_stream_and_emits(self, harness, settings):
        engine, events, _, _, recorder = harness
        assert engine.start_listening(False, turn_id=1, settings=settings)
        assert kinds(events) == [EventKind.LISTENING_STARTED]
        assert events[0].turn_id == 1
        assert not events[0].use_cooldown
        stream = recorder.streams[0]
        assert stream.started
        assert stream.kwargs["samplerate"] == 16000
        assert stream.kwargs["channels"] == 1

    def test_open_failure_reports_error(self, cfg, logger, settings):
        events = []

        def broken(**kwargs):
            raise OSError("no such device")

        engine = AudioCaptureEngine(cfg, logger, events.append, lambda *a: None, stream_factory=broken)
        assert not engine.start_listening(turn_id=4, settings=settings)
        assert kinds(events) == [EventKind.ENCOUNTERED_ERROR]
        assert "no such device" in events[0].message
        assert not engine.listening

    def test_cooldown_drops_samples(self, harness, settings):
        engine, events, _, clock, _ = harness
        engine.start_listening(True, turn_id=1, settings=settings)
        assert events[0].use_cooldown

        clock.now = 0.2
        engine.process_samples(loud(2048))
        assert engine.session.length == 0
        assert engine.session.speech_start_index is None

        clock.now = 0.5
        engine.process_samples(loud(512))
        assert engine.session.length == 512
        assert engine.session.speech_start_index == 0

    def test_utterance_is_trimmed_and_delivered(self, harness, settings):
        engine, events, utterances, clock, _ = harness
        engine.start_listening(False, turn_id=7, settings=settings)
        engine.process_samples(np.concatenate([quiet(1024), loud(2048), quiet(2048)]))

        assert kinds(events) == [EventKind.LISTENING_STARTED, EventKind.TRANSCRIPTION_BEGAN]
        assert events[1].turn_id == 7
        assert len(utterances) == 1
        turn, samples = utterances[0]
        assert turn == 7
        assert samples.size == 2048
        assert np.allclose(samples, 0.5)
        assert engine.session is None

    def test_timeout_fires_once(self, harness, settings):
        engine, events, utterances, clock, recorder = harness
        engine.start_listening(False, turn_id=2, settings=settings)

        clock.now = 59.9
        engine.process_samples(quiet(512))
        assert engine.listening

        clock.now = 60.0
        engine.process_samples(quiet(512))
        engine.process_samples(quiet(512))

        assert kinds(events).count(EventKind.LISTENING_STOPPED) == 1
        assert not engine.listening
        assert utterances == []
        assert wait_for(lambda: recorder.streams[0].closed)

    def test_no_timeout_once_speech_started(self, harness, settings):
        engine, events, _, clock, _ = harness
        engine.start_listening(False, turn_id=2, settings=settings)
        engine.process_samples(loud(512))
        clock.now = 61.0
        engine.process_samples(loud(512))
        assert EventKind.LISTENING_STOPPED not in kinds(events)
        assert engine.listening

    def test_stream_callback_feeds_session(self, harness, settings):
        engine, _, _, _, recorder = harness
        engine.start_listening(False, turn_id=1, settings=settings)
        recorder.streams[0].callback(loud(512).reshape(-1, 1), 512, None, None)
        assert engine.session.length == 512

    def test_status_flags_are_not_failures(self, harness, settings):
        engine, events, _, _, recorder = harness
        engine.start_listening(False, turn_id=1, settings=settings)
        recorder.streams[0].callback(loud(512).reshape(-1, 1), 512, None, "input overflow")

        assert engine.listening
        assert engine.session.length == 512
        assert kinds(events) == [EventKind.LISTENING_STARTED]

    def test_callback_exception_reports_error(self, harness, settings):
        engine, events, _, _, recorder = harness
        engine.start_listening(False, turn_id=2, settings=settings)
        recorder.streams[0].callback(np.array([["garbled"]]), 1, None, None)

        assert kinds(events)[-1] is EventKind.ENCOUNTERED_ERROR
        assert events[-1].turn_id == 2
        assert not engine.listening

    def test_hardware_failure_reports_error(self, harness, settings):
        engine, events, _, _, recorder = harness
        engine.start_listening(False, turn_id=3, settings=settings)
        recorder.streams[0].finished_callback()

        assert kinds(events)[-1] is EventKind.ENCOUNTERED_ERROR
        assert events[-1].turn_id == 3
        assert not engine.listening

    def test_teardown_is_safe_and_invalidates_stream(self, harness, settings):
        engine, events, _, _, recorder = harness
        engine.teardown()
        engine.start_listening(False, turn_id=1, settings=settings)
        engine.teardown()
        engine.teardown()

        stream = recorder.streams[0]
        assert stream.closed
        stream.finished_callback()
        assert kinds(events) == [EventKind.LISTENING_STARTED]

    def test_restart_reopens_stream(self, harness, settings):
        engine, _, _, _, recorder = harness
        engine.start_listening(False, turn_id=1, settings=settings)
        engine.teardown()
        engine.start_listening(False, turn_id=2, settings=settings)
        assert len(recorder.streams) == 2
        assert engine.session.turn_id == 2
