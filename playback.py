"""Real-time playback of frame sequences.

:class:`PlaybackScheduler` walks a :class:`PlaybackSession` on a daemon
thread, sends each frame to the outputs and waits out the recorded gap to the
next one, minus the time the send took.  A frame that overruns its slot is
counted in ``late_frames`` and the next one goes out immediately.
"""
from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence

from dmx import blackout, transmit
from errors import EmptyRecording
from frames import Frame

LOGGER = logging.getLogger("dmxrec.playback")


@dataclass
class PlaybackSession:
    frames: List[Frame]
    delays: List[float]
    fps: float
    source: Optional[str] = None
    cursor: int = 0
    loops: int = 0
    frames_sent: int = 0
    late_frames: int = 0
    stop_event: threading.Event = field(default_factory=threading.Event, repr=False)

    @property
    def playing(self) -> bool:
        return not self.stop_event.is_set()

    def describe(self) -> Dict[str, Any]:
        return {
            "source": self.source,
            "frames": len(self.frames),
            "cursor": self.cursor,
            "loops": self.loops,
            "frames_sent": self.frames_sent,
            "late_frames": self.late_frames,
            "fps": self.fps,
        }


class PlaybackScheduler:
    def __init__(
        self,
        senders: Sequence[Any],
        *,
        clock: Callable[[], float] = time.monotonic,
        on_finished: Optional[Callable[[PlaybackSession], None]] = None,
    ) -> None:
        self.senders = senders
        self._clock = clock
        self._on_finished = on_finished
        self._lock = threading.Lock()
        self.start_lock = threading.RLock()
        self._session: Optional[PlaybackSession] = None
        self._thread: Optional[threading.Thread] = None

    @property
    def session(self) -> Optional[PlaybackSession]:
        with self._lock:
            return self._session

    @property
    def is_playing(self) -> bool:
        session = self.session
        return session is not None and session.playing

    def start(
        self,
        frames: Sequence[Frame],
        delays: Sequence[float],
        fps: float,
        *,
        source: Optional[str] = None,
    ) -> PlaybackSession:
        if not frames:
            raise EmptyRecording("Nothing to play: the recording holds no frames")
        if len(delays) != len(frames):
            raise ValueError("Each frame needs exactly one delay")
        if fps <= 0:
            raise ValueError("Playback rate must be positive")

        # Held across stop, blackout and install so two sessions never overlap.
        with self.start_lock:
            if self.stop():
                blackout(self.senders)

            session = PlaybackSession(
                frames=list(frames),
                delays=[max(0.0, float(delay)) for delay in delays],
                fps=float(fps),
                source=source,
            )
            thread = threading.Thread(target=self._run, args=(session,), daemon=True)
            with self._lock:
                self._session = session
                self._thread = thread
            thread.start()
        LOGGER.info(
            "Playing %s: %s frames at fallback rate %s fps",
            source or "recording",
            len(session.frames),
            session.fps,
        )
        return session

    def stop(self) -> bool:
        """Stop the active session; returns True if one was playing."""
        thread: Optional[threading.Thread]
        with self.start_lock:
            with self._lock:
                session = self._session
                thread = self._thread
                self._session = None
                self._thread = None
            if session is None or not session.playing:
                return False
            session.stop_event.set()
            if thread and thread.is_alive() and thread is not threading.current_thread():
                thread.join(timeout=1.0)
        LOGGER.info("Playback stopped after %s frames", session.frames_sent)
        return True

    def _send_frame(self, frame: Frame) -> None:
        for packet in frame.packets:
            transmit(self.senders, packet.address, packet.data)

    def _run(self, session: PlaybackSession) -> None:
        count = len(session.frames)
        nominal = 1.0 / session.fps
        try:
            while not session.stop_event.is_set():
                frame_start = self._clock()
                try:
                    self._send_frame(session.frames[session.cursor])
                except Exception:
                    LOGGER.exception("Error while sending frame %s", session.cursor)
                session.frames_sent += 1
                processing_time = self._clock() - frame_start

                session.cursor = (session.cursor + 1) % count
                delay = session.delays[session.cursor]
                if session.cursor == 0:
                    session.loops += 1
                    if delay <= 0:
                        delay = nominal

                wait = delay - processing_time
                if wait < 0:
                    session.late_frames += 1
                    LOGGER.debug("Frame %s ran %.4fs over its slot", session.cursor, -wait)
                if session.stop_event.wait(max(0.0, wait)):
                    break
        finally:
            session.stop_event.set()
            if self._on_finished is not None:
                try:
                    self._on_finished(session)
                except Exception:
                    LOGGER.exception("Error in playback finished callback")
