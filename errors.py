"""Exceptions raised by the recorder, the recording reader and the outputs."""
from __future__ import annotations

from typing import Iterable, List, Optional


class DMXRecError(Exception):
    """Base class for every error reported to the operator."""


class RecordingError(DMXRecError):
    """A recording could not be turned into a playback session.

    ``available`` is filled in by :class:`recorder.DMXRecorder` so callers can
    show the operator which recordings do exist.
    """

    def __init__(self, message: str, available: Optional[Iterable[str]] = None) -> None:
        super().__init__(message)
        self.available: List[str] = list(available or [])


class RecordingNotFound(RecordingError):
    pass


class InvalidRecordingFormat(RecordingError):
    pass


class CorruptRecording(RecordingError):
    pass


class EmptyRecording(RecordingError):
    pass


class TransportError(DMXRecError):
    """Sending to (or receiving from) a single output failed."""
