#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""
handsfree voice loop

Continuous hands-free conversation:
- microphone capture with energy VAD and a post-playback echo cooldown
- remote (Mistral) or local (faster-whisper) transcription
- streaming LLM responses (Ollama, OpenAI, Claude, Gemini)
- chunked TTS fetched in parallel and played strictly in order
- spacebar tap to stop listening, start listening or cancel a turn

The VoiceLoop owns turns: it allocates turn ids and cancel tokens, starts the
worker thread for each utterance, and translates control actions into event
sequences. The phase itself is only ever decided by VoiceLoopCoordinator.
"""

from __future__ import annotations

import json
import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, Callable, Dict, List, Optional

import numpy as np

from handsfree.audio_capture import AUDIO_BACKEND, AudioCaptureEngine, encode_wav
from handsfree.cancel import CancelToken
from handsfree.config import (
    AUDIO_DIR, MEMORY_DB, SettingsSnapshot, ensure_logger, load_config, log_event, now_iso,
)
from handsfree.conversation import ASSISTANT_PARTIAL, USER, ChatMessage, Conversation
from handsfree.coordinator import (
    EventKind, PhaseState, VoiceLoopCoordinator, VoiceLoopEvent, VoicePhase,
)
from handsfree.errors import (
    CancellationUnwind, EmptyAudio, StreamFailure, SynthesisFailure, TranscriptionFailure,
    VoiceLoopError,
)
from handsfree.llm_client import LLMStreamConsumer
from handsfree.memory_store import MemoryStore
from handsfree.stt import WHISPER_AVAILABLE, make_transcriber
from handsfree.tts import (
    PIPER_AVAILABLE, AudioPlayer, PlaybackQueue, TTSChunk, TTSChunker, VoiceConfig, make_fetcher,
)

# Keyboard tap support
try:
    from pynput import keyboard
    KEYBOARD_AVAILABLE = True
except ImportError:
    keyboard = None
    KEYBOARD_AVAILABLE = False

BUSY_PHASES = (
    VoicePhase.TRANSCRIBING,
    VoicePhase.WAITING_FOR_LLM,
    VoicePhase.FETCHING_TTS,
    VoicePhase.SPEAKING,
)


class VoiceLoop:
    """Main orchestrator with all components integrated."""

    def __init__(self, cfg: Dict[str, Any], logger: logging.Logger, *,
                 settings_source: Optional[Callable[[], SettingsSnapshot]] = None,
                 coordinator: Optional[VoiceLoopCoordinator] = None,
                 store: Optional[MemoryStore] = None,
                 transcriber=None, llm: Optional[LLMStreamConsumer] = None,
                 fetcher=None, player=None,
                 capture_stream_factory: Optional[Callable[..., Any]] = None,
                 clock: Callable[[], float] = time.monotonic):
        self.cfg = cfg
        self.logger = logger

        orch = cfg.get("orchestrator", {})
        self.auto_listen = orch.get("auto_listen", True)
        self.keyboard_tap = orch.get("keyboard_tap", True)
        self.error_restart_delay = float(orch.get("error_restart_delay_s", 0.2))
        self.cancel_join_timeout = float(orch.get("cancel_join_timeout_s", 5.0))
        self.max_consecutive_failures = int(orch.get("max_consecutive_failures", 3))
        self.audio_ext = cfg.get("tts", {}).get("format", "wav")

        self.settings_source = settings_source or (lambda: SettingsSnapshot.from_config(self.cfg))
        self.coordinator = coordinator or VoiceLoopCoordinator(logger)
        self.coordinator.add_listener(self._on_transition)

        # Capture and playback never configure the device at the same time.
        self.device_lock = threading.Lock()

        # Core components
        self.store = store or MemoryStore(MEMORY_DB, AUDIO_DIR, logger, cfg)
        self.capture = AudioCaptureEngine(
            cfg, logger, self.coordinator.emit, self._on_utterance,
            clock=clock, stream_factory=capture_stream_factory, device_lock=self.device_lock,
        )
        self.transcriber = transcriber or make_transcriber(cfg, logger)
        self.llm = llm or LLMStreamConsumer(cfg, logger)
        self.fetcher = fetcher or make_fetcher(cfg, logger)
        self.playback = PlaybackQueue(
            logger, self.coordinator.emit,
            player or AudioPlayer(cfg, logger, device_lock=self.device_lock),
            persist=self._persist_chunk,
            on_drained=self._on_drained,
            on_error=self._on_playback_error,
        )
        max_fetches = max(1, int(cfg.get("tts", {}).get("max_concurrent_fetches", 2)))
        self._fetch_pool = ThreadPoolExecutor(max_workers=max_fetches, thread_name_prefix="tts-fetch")

        # Turn state
        self._lock = threading.RLock()
        self._turn_id = 0
        self._token = CancelToken(0, logger)
        self._settings = self.settings_source()
        self._worker: Optional[threading.Thread] = None
        self._fetches: List[Future] = []
        self._failed_turn: Optional[int] = None
        self._consecutive_failures = 0
        self._stop_event = threading.Event()
        self._kb_listener = None

        self.conversation = self._resume_conversation()

    # =========================
    # Conversation
    # =========================

    def _resume_conversation(self) -> Conversation:
        timeout_hours = self.cfg.get("memory", {}).get("session_timeout_hours", 24)
        resumed = self.store.latest_conversation(timeout_hours)
        if resumed:
            conversation = self.store.load_conversation(resumed)
            if conversation is not None:
                info = self.store.get_conversation_info(resumed)
                self.logger.info("conversation_resumed %s", json.dumps({
                    "conversation_id": conversation.id,
                    "timeout_hours": timeout_hours,
                    "existing_messages": info.get("message_count", 0),
                    "last_activity": info.get("last_activity"),
                }))
                return conversation

        conversation = Conversation()
        self.store.create_conversation(conversation)
        self.logger.info("conversation_created %s", json.dumps({"conversation_id": conversation.id}))
        return conversation

    def _persist_chunk(self, conversation_id: str, message_id: str, index: int, data: bytes) -> Optional[str]:
        path = self.store.save_audio_chunk(conversation_id, message_id, index, data, ext=self.audio_ext)
        if path:
            with self.conversation.lock:
                self.conversation.audio_paths.setdefault(message_id, []).append(path)
        return path

    # =========================
    # Turn control
    # =========================

    @property
    def turn_id(self) -> int:
        with self._lock:
            return self._turn_id

    def start_listening(self, use_cooldown: bool = False) -> bool:
        with self._lock:
            return self._start_listening_locked(use_cooldown)

    def _start_listening_locked(self, use_cooldown: bool) -> bool:
        self._turn_id += 1
        self._token = CancelToken(self._turn_id, self.logger)
        self._settings = self.settings_source()
        self._worker = None
        self._fetches = []
        return self.capture.start_listening(use_cooldown, self._turn_id, self._settings)

    def _had_spoken(self, turn_id: int) -> bool:
        return self.playback.turn_id == turn_id and self.playback.had_spoken

    def tap(self):
        """Single control action: stop listening, start listening, or cancel the turn."""
        if self.capture.listening:
            self.logger.info("tap %s", json.dumps({
                "action": "stop_listening", "phase": self.coordinator.phase.value
            }))
            self.capture.teardown()
            self.coordinator.emit(VoiceLoopEvent(EventKind.LISTENING_STOPPED, turn_id=self.turn_id))
            return

        # A session that just ended has already queued its event; apply it first.
        self.coordinator.flush()
        phase = self.coordinator.phase
        if phase in BUSY_PHASES:
            self.logger.info("tap %s", json.dumps({"action": "cancel", "phase": phase.value}))
            self.cancel_turn()
        else:
            self.logger.info("tap %s", json.dumps({"action": "start_listening", "phase": phase.value}))
            self._consecutive_failures = 0
            self.start_listening(use_cooldown=False)

    def cancel_turn(self):
        """Abort all in-flight work of the current turn, then listen again."""
        with self._lock:
            turn_id = self._turn_id
            token = self._token
            worker = self._worker
            fetches = list(self._fetches)

        token.cancel()
        for fut in fetches:
            fut.cancel()
        self.capture.teardown()
        self.playback.cancel()
        self.playback.wait_idle(self.cancel_join_timeout)
        self._join_worker(worker)

        had_spoken = self._had_spoken(turn_id)
        self.logger.info("turn_cancelled %s", json.dumps({"turn": turn_id, "had_spoken": had_spoken}))

        with self._lock:
            if self._turn_id != turn_id:
                return
            self._start_listening_locked(use_cooldown=had_spoken)

    def _join_worker(self, worker: Optional[threading.Thread]):
        if worker is None or worker is threading.current_thread():
            return
        worker.join(timeout=self.cancel_join_timeout)
        if worker.is_alive():
            self.logger.warning("turn_worker_still_running %s", json.dumps({"name": worker.name}))

    # =========================
    # Turn pipeline
    # =========================

    def _on_utterance(self, turn_id: Optional[int], samples: np.ndarray):
        with self._lock:
            if turn_id != self._turn_id:
                self.logger.info("utterance_stale %s", json.dumps({"turn": turn_id, "current": self._turn_id}))
                return
            token = self._token
            settings = self._settings
            worker = threading.Thread(
                target=self._run_turn, args=(turn_id, samples, token, settings),
                name=f"turn-{turn_id}", daemon=True,
            )
            self._worker = worker
        worker.start()

    def _run_turn(self, turn_id: int, samples: np.ndarray, token: CancelToken,
                  settings: SettingsSnapshot):
        t0 = time.time()
        emit = self.coordinator.emit
        try:
            token.raise_if_cancelled()
            try:
                text = self.transcriber.transcribe(encode_wav(samples))
            except EmptyAudio:
                text = ""
            token.raise_if_cancelled()

            if not text.strip():
                self.logger.info("stt_empty %s", json.dumps({"turn": turn_id}))
                with self._lock:
                    if self._turn_id == turn_id:
                        self._start_listening_locked(use_cooldown=False)
                return

            self.logger.info("heard_text %s", json.dumps({"turn": turn_id, "chars": len(text)}))
            user_message = self.conversation.add(ChatMessage(role=USER, content=text))
            self.store.append_message(self.conversation.id, user_message)
            emit(VoiceLoopEvent(EventKind.TRANSCRIPTION_DELIVERED, turn_id=turn_id))
            emit(VoiceLoopEvent(EventKind.LLM_STARTED, turn_id=turn_id))

            self._respond(turn_id, token, settings)
        except CancellationUnwind:
            self.logger.info("turn_unwound %s", json.dumps({"turn": turn_id}))
        except VoiceLoopError as e:
            self._report_failure(turn_id, e)
        except Exception as e:
            self.logger.error("loop_error %s", json.dumps({"error": str(e), "type": type(e).__name__}))
            self._report_failure(turn_id, VoiceLoopError(f"Unexpected error: {e}"))
        finally:
            self.logger.info("turn_timing %s", json.dumps({
                "turn": turn_id, "worker_ms": int((time.time() - t0) * 1000)
            }))

    def _respond(self, turn_id: int, token: CancelToken, settings: SettingsSnapshot):
        emit = self.coordinator.emit
        voice = VoiceConfig.from_config(self.cfg, settings)
        chunker = TTSChunker(settings)
        placeholder = ChatMessage(role=ASSISTANT_PARTIAL, content="")
        self.playback.begin_turn(turn_id, self.conversation.id, placeholder.id)

        def on_delta(delta: str):
            for chunk in chunker.feed(delta):
                self._submit_chunk(turn_id, token, chunk, voice)

        try:
            message = self.llm.consume(self.conversation, token, on_delta, placeholder=placeholder)
        except CancellationUnwind:
            self.store.append_message(self.conversation.id, placeholder)
            raise
        except StreamFailure as e:
            self.store.append_message(self.conversation.id, placeholder)
            # The error report goes first so the failure message lands in last_error.
            self._report_failure(turn_id, e)
            emit(VoiceLoopEvent(EventKind.LLM_COMPLETED, turn_id=turn_id, success=False))
            return

        self.store.append_message(self.conversation.id, message)
        emit(VoiceLoopEvent(EventKind.LLM_COMPLETED, turn_id=turn_id, success=True))

        token.raise_if_cancelled()
        for chunk in chunker.finish():
            self._submit_chunk(turn_id, token, chunk, voice)
        self.playback.finish(turn_id, chunker.emitted)
        self.logger.info("tts_chunks %s", json.dumps({"turn": turn_id, "total": chunker.emitted}))

    def _submit_chunk(self, turn_id: int, token: CancelToken, chunk: TTSChunk, voice: VoiceConfig):
        token.raise_if_cancelled()
        self.coordinator.emit(VoiceLoopEvent(EventKind.TTS_FETCH_STARTED, turn_id=turn_id))
        fut = self._fetch_pool.submit(self._fetch_chunk, turn_id, token, chunk, voice)
        with self._lock:
            if self._turn_id == turn_id:
                self._fetches.append(fut)

    def _fetch_chunk(self, turn_id: int, token: CancelToken, chunk: TTSChunk, voice: VoiceConfig):
        if token.cancelled:
            return
        try:
            audio = self.fetcher.synthesize(chunk.text, voice)
        except VoiceLoopError as e:
            if not token.cancelled:
                self._report_failure(turn_id, e)
            return
        except Exception as e:
            if not token.cancelled:
                self._report_failure(turn_id, SynthesisFailure(f"Speech synthesis failed: {e}"))
            return
        if token.cancelled:
            return
        self.playback.enqueue(turn_id, chunk.sequence_index, audio)

    # =========================
    # Completion & failure
    # =========================

    def _on_drained(self, turn_id: Optional[int]):
        with self._lock:
            if turn_id != self._turn_id or self._stop_event.is_set():
                return
            self._start_listening_locked(use_cooldown=self._had_spoken(turn_id))

    def _on_playback_error(self, turn_id: Optional[int], error: Exception):
        if not isinstance(error, VoiceLoopError):
            error = VoiceLoopError(f"Playback failed: {error}")
        self._report_failure(turn_id, error)

    def _report_failure(self, turn_id: Optional[int], error: VoiceLoopError):
        """Surface the first failure of a turn and stop its sibling work."""
        with self._lock:
            if turn_id != self._turn_id or self._failed_turn == turn_id:
                return
            self._failed_turn = turn_id
            token = self._token
            fetches = list(self._fetches)

        self.logger.error("turn_failed %s", json.dumps({
            "turn": turn_id, "error": error.message, "type": type(error).__name__
        }))
        kind = EventKind.TRANSCRIPTION_FAILED if isinstance(error, TranscriptionFailure) \
            else EventKind.ENCOUNTERED_ERROR
        self.coordinator.emit(VoiceLoopEvent(kind, turn_id=turn_id, message=error.message))

        token.cancel()
        for fut in fetches:
            fut.cancel()
        self.playback.cancel()

    def _on_transition(self, before: PhaseState, after: PhaseState, event: VoiceLoopEvent):
        if event.kind is EventKind.TRANSCRIPTION_DELIVERED:
            self._consecutive_failures = 0
        if after.phase is not VoicePhase.ERROR or before.phase is VoicePhase.ERROR:
            return

        self._consecutive_failures += 1
        if self._consecutive_failures > self.max_consecutive_failures:
            self.logger.warning("auto_restart_suspended %s", json.dumps({
                "failures": self._consecutive_failures, "last_error": after.last_error
            }))
            return
        timer = threading.Timer(self.error_restart_delay, self._recover, args=(after.turn_id,))
        timer.daemon = True
        timer.start()

    def _recover(self, turn_id: Optional[int]):
        with self._lock:
            if turn_id != self._turn_id or self._stop_event.is_set():
                return
            token = self._token
            worker = self._worker

        token.cancel()
        self.playback.cancel()
        self.playback.wait_idle(self.cancel_join_timeout)
        self._join_worker(worker)
        had_spoken = self._had_spoken(turn_id)

        with self._lock:
            if turn_id != self._turn_id or self._stop_event.is_set():
                return
            self.logger.info("error_recovery %s", json.dumps({"turn": turn_id, "cooldown": had_spoken}))
            self._start_listening_locked(use_cooldown=had_spoken)

    # =========================
    # Lifecycle
    # =========================

    def _start_keyboard(self):
        if not (KEYBOARD_AVAILABLE and self.keyboard_tap):
            return
        try:
            def on_press(key):
                if key == keyboard.Key.space:
                    self.logger.info("spacebar_tap %s", json.dumps({"phase": self.coordinator.phase.value}))
                    threading.Thread(target=self.tap, name="tap", daemon=True).start()
            self._kb_listener = keyboard.Listener(on_press=on_press)
            self._kb_listener.start()
            self.logger.info("keyboard_listener_started %s", json.dumps({"key": "spacebar"}))
        except Exception as e:
            self.logger.warning("keyboard_listener_failed %s", json.dumps({"error": str(e)}))

    def start(self):
        self.coordinator.start()
        self._start_keyboard()
        self.logger.info("loop_start %s", json.dumps({
            "conversation": self.conversation.id,
            "auto_listen": self.auto_listen,
            "stt": self.cfg.get("stt", {}).get("engine"),
            "llm": self.cfg.get("llm", {}).get("provider"),
            "tts": self.cfg.get("tts", {}).get("engine"),
        }))
        if self.auto_listen:
            self.start_listening(use_cooldown=False)

    def stop(self):
        self._stop_event.set()

    def shutdown(self):
        self._stop_event.set()
        if self._kb_listener is not None:
            self._kb_listener.stop()
            self._kb_listener = None
        with self._lock:
            token = self._token
        token.cancel()
        self.capture.teardown()
        self.playback.cancel()
        self.playback.close()
        self._fetch_pool.shutdown(wait=False, cancel_futures=True)
        self.coordinator.stop()
        self.logger.info("shutdown_complete %s", json.dumps({
            "conversation": self.conversation.id,
            "turns": self.conversation.turn_count,
        }))

    def run(self):
        """Main loop: everything happens on worker threads until interrupted."""
        self.start()
        try:
            while not self._stop_event.wait(0.5):
                pass
        except KeyboardInterrupt:
            self.logger.info("shutdown_requested %s", json.dumps({"reason": "user_interrupt"}))
        finally:
            self.shutdown()


# =========================
# Entry Point
# =========================

def main():
    """Main entry point."""
    cfg = load_config()

    logger, log_path = ensure_logger(cfg.get("logging", {}))

    log_event(logger, "boot", {
        "log_file": log_path,
        "time": now_iso(),
        "version": cfg.get("version", "v1"),
    })

    log_event(logger, "capabilities", {
        "audio": AUDIO_BACKEND,
        "whisper": WHISPER_AVAILABLE,
        "piper": PIPER_AVAILABLE,
        "keyboard": KEYBOARD_AVAILABLE,
    })

    try:
        loop = VoiceLoop(cfg, logger, settings_source=lambda: SettingsSnapshot.from_config(load_config()))
        loop.run()
    except KeyboardInterrupt:
        logger.info("shutdown_requested %s", json.dumps({"reason": "keyboard_interrupt"}))
    except Exception as e:
        logger.error("fatal_error %s", json.dumps({
            "error": str(e),
            "type": type(e).__name__
        }))
        raise


if __name__ == "__main__":
    main()
