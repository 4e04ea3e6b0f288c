"""Failure types raised at component seams of the voice loop."""

from __future__ import annotations

from typing import Optional


class VoiceLoopError(Exception):
    """Base for user-visible failures. ``message`` lands in the last-error slot."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class TranscriptionFailure(VoiceLoopError):
    pass


class EmptyAudio(VoiceLoopError):
    """Nothing to transcribe. Not surfaced to the user."""

    def __init__(self, message: str = "no audio captured"):
        super().__init__(message)


class StreamFailure(VoiceLoopError):
    pass


class NetworkError(StreamFailure):
    pass


class ProviderError(StreamFailure):
    def __init__(self, message: str, status: Optional[int] = None, body: str = ""):
        super().__init__(message)
        self.status = status
        self.body = body


class SynthesisFailure(VoiceLoopError):
    pass


class HardwareFailure(VoiceLoopError):
    pass


class CancellationUnwind(Exception):
    """Raised inside a cancelled turn so workers unwind. Never shown to the user."""
