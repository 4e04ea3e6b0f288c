"""
Voice loop phase machine.

Every component reports what happened as an immutable VoiceLoopEvent on one
bounded channel. A single reducer thread drains that channel in arrival order
and folds each event into the current PhaseState with ``reduce``. Nothing else
assigns phase.
"""

from __future__ import annotations

import json
import logging
import queue
import threading
from dataclasses import dataclass, replace
from enum import Enum
from typing import Callable, Iterable, List, Optional


class VoicePhase(str, Enum):
    IDLE = "idle"
    LISTENING = "listening"
    TRANSCRIBING = "transcribing"
    WAITING_FOR_LLM = "waitingForLLM"
    FETCHING_TTS = "fetchingTTS"
    SPEAKING = "speaking"
    ERROR = "error"


class EventKind(str, Enum):
    RESET = "reset"
    LISTENING_STARTED = "listening_started"
    LISTENING_STOPPED = "listening_stopped"
    TRANSCRIPTION_BEGAN = "transcription_began"
    TRANSCRIPTION_DELIVERED = "transcription_delivered"
    TRANSCRIPTION_FAILED = "transcription_failed"
    LLM_STARTED = "llm_started"
    LLM_COMPLETED = "llm_completed"
    TTS_FETCH_STARTED = "tts_fetch_started"
    TTS_SPEAKING_STARTED = "tts_speaking_started"
    TTS_COMPLETED = "tts_completed"
    TTS_WAITING = "tts_waiting"
    ENCOUNTERED_ERROR = "encountered_error"


@dataclass(frozen=True)
class VoiceLoopEvent:
    kind: EventKind
    turn_id: Optional[int] = None
    message: Optional[str] = None
    success: bool = True
    use_cooldown: bool = False


@dataclass(frozen=True)
class PhaseState:
    phase: VoicePhase = VoicePhase.IDLE
    error: Optional[str] = None
    last_error: Optional[str] = None
    turn_id: Optional[int] = None


# event -> (phases it applies in, next phase)
_GUARDED = {
    EventKind.LISTENING_STOPPED: ({VoicePhase.LISTENING}, VoicePhase.IDLE),
    EventKind.TRANSCRIPTION_BEGAN: ({VoicePhase.LISTENING}, VoicePhase.TRANSCRIBING),
    EventKind.TRANSCRIPTION_DELIVERED: ({VoicePhase.TRANSCRIBING}, VoicePhase.WAITING_FOR_LLM),
    EventKind.TTS_COMPLETED: ({VoicePhase.SPEAKING, VoicePhase.FETCHING_TTS}, VoicePhase.LISTENING),
}

_UNGUARDED = {
    EventKind.LLM_STARTED: VoicePhase.WAITING_FOR_LLM,
    EventKind.TTS_SPEAKING_STARTED: VoicePhase.SPEAKING,
    EventKind.TTS_WAITING: VoicePhase.FETCHING_TTS,
}

_TURN_ADOPTING = (EventKind.RESET, EventKind.LISTENING_STARTED)


def is_stale(state: PhaseState, event: VoiceLoopEvent) -> bool:
    """True when the event belongs to a turn older than the current one."""
    if event.kind in _TURN_ADOPTING:
        return False
    if event.turn_id is None or state.turn_id is None:
        return False
    return event.turn_id < state.turn_id


def _enter(state: PhaseState, phase: VoicePhase, **changes) -> PhaseState:
    changes.setdefault("error", None)
    return replace(state, phase=phase, **changes)


def reduce(state: PhaseState, event: VoiceLoopEvent) -> PhaseState:
    """Apply one event. Irrelevant or stale events return ``state`` unchanged.

    An applied event from a newer turn moves the state onto that turn, so a
    failure raised before the turn's ``listening-started`` is not lost.
    """
    if is_stale(state, event):
        return state

    after = _transition(state, event)
    if after is state or event.turn_id is None or after.turn_id == event.turn_id:
        return after
    return replace(after, turn_id=event.turn_id)


def _transition(state: PhaseState, event: VoiceLoopEvent) -> PhaseState:
    kind = event.kind
    turn_id = event.turn_id if event.turn_id is not None else state.turn_id

    if kind is EventKind.RESET:
        return PhaseState(turn_id=turn_id)
    if kind is EventKind.LISTENING_STARTED:
        return _enter(state, VoicePhase.LISTENING, turn_id=turn_id)

    if kind in _GUARDED:
        allowed, target = _GUARDED[kind]
        if state.phase not in allowed:
            return state
        if kind is EventKind.TRANSCRIPTION_DELIVERED:
            return _enter(state, target, last_error=None)
        return _enter(state, target)

    if kind in _UNGUARDED:
        return _enter(state, _UNGUARDED[kind])

    if kind is EventKind.TRANSCRIPTION_FAILED:
        if state.phase is not VoicePhase.TRANSCRIBING:
            return state
        return _enter(state, VoicePhase.ERROR, error=event.message,
                      last_error=event.message or state.last_error)

    if kind is EventKind.LLM_COMPLETED:
        if event.success or state.phase is not VoicePhase.WAITING_FOR_LLM:
            return state
        return _enter(state, VoicePhase.ERROR)

    if kind is EventKind.TTS_FETCH_STARTED:
        if state.phase is VoicePhase.SPEAKING:
            return state
        return _enter(state, VoicePhase.FETCHING_TTS)

    if kind is EventKind.ENCOUNTERED_ERROR:
        return _enter(state, VoicePhase.ERROR, error=event.message,
                      last_error=event.message or state.last_error)

    return state


def fold(events: Iterable[VoiceLoopEvent], initial: Optional[PhaseState] = None) -> PhaseState:
    state = initial or PhaseState()
    for event in events:
        state = reduce(state, event)
    return state


Listener = Callable[[PhaseState, PhaseState, VoiceLoopEvent], None]

_STOP = object()


class VoiceLoopCoordinator:
    """Single-consumer reducer loop over the merged event channel."""

    def __init__(self, logger: logging.Logger, maxsize: int = 256,
                 initial: Optional[PhaseState] = None):
        self.logger = logger
        self._state = initial or PhaseState()
        self._channel: "queue.Queue[object]" = queue.Queue(maxsize=maxsize)
        self._lock = threading.Lock()
        self._listeners: List[Listener] = []
        self._thread: Optional[threading.Thread] = None

    # ---- producers ----

    def emit(self, event: VoiceLoopEvent):
        """Enqueue an event. Blocks while the channel is full."""
        self._channel.put(event)

    # ---- observers ----

    @property
    def state(self) -> PhaseState:
        with self._lock:
            return self._state

    @property
    def phase(self) -> VoicePhase:
        return self.state.phase

    @property
    def last_error(self) -> Optional[str]:
        return self.state.last_error

    def add_listener(self, listener: Listener):
        with self._lock:
            self._listeners.append(listener)

    # ---- reducer loop ----

    def start(self):
        if self._thread and self._thread.is_alive():
            return
        self._thread = threading.Thread(target=self._run, name="voice-coordinator", daemon=True)
        self._thread.start()

    def stop(self, timeout: float = 2.0):
        if not self._thread:
            return
        self._channel.put(_STOP)
        self._thread.join(timeout=timeout)
        self._thread = None

    def flush(self):
        """Wait until every event emitted so far has been applied."""
        if self._thread and self._thread.is_alive():
            self._channel.join()
        else:
            self.process_pending()

    def process_pending(self) -> int:
        """Apply queued events on the calling thread. Only valid while stopped."""
        count = 0
        while True:
            try:
                item = self._channel.get_nowait()
            except queue.Empty:
                return count
            try:
                if item is not _STOP:
                    self._apply(item)
                    count += 1
            finally:
                self._channel.task_done()

    def _run(self):
        while True:
            item = self._channel.get()
            try:
                if item is _STOP:
                    return
                self._apply(item)
            finally:
                self._channel.task_done()

    def _apply(self, event: VoiceLoopEvent):
        with self._lock:
            before = self._state
            after = reduce(before, event)
            self._state = after
            listeners = list(self._listeners)

        if after is before:
            reason = "stale_turn" if is_stale(before, event) else "irrelevant"
            self.logger.debug("event_ignored %s", json.dumps({
                "event": event.kind.value, "phase": before.phase.value,
                "turn": event.turn_id, "current_turn": before.turn_id, "reason": reason,
            }))
            return

        if after.phase is not before.phase:
            self.logger.info("phase %s", json.dumps({
                "from": before.phase.value, "to": after.phase.value,
                "event": event.kind.value, "turn": after.turn_id,
                "error": after.error,
            }))

        for listener in listeners:
            try:
                listener(before, after, event)
            except Exception as e:
                self.logger.error("phase_listener_failed %s", json.dumps({
                    "error": str(e), "type": type(e).__name__,
                }))
