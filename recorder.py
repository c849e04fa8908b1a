"""Capture, passthrough and the operator commands tying everything together."""
from __future__ import annotations

import logging
import queue
import threading
import time
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, ContextManager, Dict, List, Optional, Sequence

from artnet import MAX_CHANNELS, InboundPacket, address_for_universe
from config import MAX_FPS, MIN_FPS, PlayerConfig
from dmx import blackout, fill, transmit
from errors import EmptyRecording, RecordingError, RecordingNotFound
from frames import build_frames, fade_window_frames, splice_loop
from playback import PlaybackScheduler, PlaybackSession
from recording import (
    RECORDING_SUFFIX,
    Packet,
    RecordingWriter,
    list_recordings,
    load_recording,
    new_metadata,
)

LOGGER = logging.getLogger("dmxrec.recorder")

HIGHLIGHT_BLINKS = 3
HIGHLIGHT_STEP_SECONDS = 0.5

_STOP = object()


class Recorder:
    """Timestamps inbound packets and streams them to a recording file.

    :meth:`capture` only enqueues; a writer thread owns the file so the
    inbound path never waits on disk I/O.
    """

    def __init__(self, recordings_dir: Path, universes: Sequence[int]) -> None:
        self.recordings_dir = Path(recordings_dir)
        self.universes = list(universes)
        self._lock = threading.Lock()
        self._queue: Optional["queue.Queue[Any]"] = None
        self._thread: Optional[threading.Thread] = None
        self._path: Optional[Path] = None
        self.captured = 0
        self.dropped = 0

    @property
    def is_recording(self) -> bool:
        with self._lock:
            return self._queue is not None

    @property
    def path(self) -> Optional[Path]:
        with self._lock:
            return self._path

    def _next_path(self) -> Path:
        stamp = datetime.now().strftime("%Y-%m-%d-%H-%M-%S")
        path = self.recordings_dir / f"{stamp}{RECORDING_SUFFIX}"
        suffix = 1
        while path.exists():
            path = self.recordings_dir / f"{stamp}-{suffix}{RECORDING_SUFFIX}"
            suffix += 1
        return path

    def start(self) -> Path:
        with self._lock:
            if self._queue is not None and self._path is not None:
                LOGGER.warning("Already recording to %s", self._path)
                return self._path
            path = self._next_path()
            writer = RecordingWriter.open(path)
            try:
                writer.append_metadata(new_metadata(self.universes, filename=path.name))
            except Exception:
                writer.close()
                raise
            packets: "queue.Queue[Any]" = queue.Queue()
            thread = threading.Thread(target=self._write_loop, args=(writer, packets), daemon=True)
            self._queue = packets
            self._thread = thread
            self._path = path
            self.captured = 0
            self.dropped = 0
        thread.start()
        LOGGER.info("Recording started: %s", path)
        return path

    def capture(self, inbound: InboundPacket) -> bool:
        with self._lock:
            # stop() swaps the queue out under this lock.
            packets = self._queue
            if packets is None:
                return False
            if not inbound.data or len(inbound.data) > MAX_CHANNELS:
                self.dropped += 1
                LOGGER.debug("Dropping malformed packet for %s (%s bytes)", inbound.address, len(inbound.data))
                return False
            packets.put(Packet(timestamp=inbound.arrival, address=inbound.address, data=bytes(inbound.data)))
            self.captured += 1
        return True

    def stop(self) -> Optional[Path]:
        with self._lock:
            packets = self._queue
            thread = self._thread
            path = self._path
            self._queue = None
            self._thread = None
        if packets is None:
            return None
        packets.put(_STOP)
        if thread is not None:
            thread.join(timeout=5.0)
        LOGGER.info(
            "Recording stopped. Saved to: %s (%s packets, %s dropped)",
            path,
            self.captured,
            self.dropped,
        )
        return path

    def _write_loop(self, writer: RecordingWriter, packets: "queue.Queue[Any]") -> None:
        failed = False
        try:
            while True:
                item = packets.get()
                if item is _STOP:
                    break
                if failed:
                    continue
                try:
                    writer.append_packet(item)
                except (OSError, ValueError):
                    failed = True
                    LOGGER.exception("Unable to write to recording %s; discarding further packets", writer.path)
        finally:
            try:
                writer.close()
            except OSError:
                LOGGER.exception("Error while closing recording %s", writer.path)


class PassthroughRouter:
    """Forwards live input straight to the outputs while nothing is playing.

    ``lock`` is held while checking for playback and sending, so a session
    starting under the same lock cannot interleave with a forwarded packet.
    """

    def __init__(
        self,
        senders: Sequence[Any],
        playback_active: Callable[[], bool],
        enabled: bool = True,
        lock: Optional[ContextManager[Any]] = None,
    ) -> None:
        self.senders = senders
        self._playback_active = playback_active
        self.enabled = enabled
        self._lock = lock if lock is not None else threading.Lock()

    def toggle(self, enabled: Optional[bool] = None) -> bool:
        self.enabled = (not self.enabled) if enabled is None else bool(enabled)
        LOGGER.info("Passthrough %s", "enabled" if self.enabled else "disabled")
        return self.enabled

    def forward(self, inbound: InboundPacket) -> int:
        if not self.enabled:
            return 0
        with self._lock:
            if self._playback_active():
                return 0
            return transmit(self.senders, inbound.address, inbound.data)


class IdleWatchdog:
    """Calls ``on_idle`` once when there has been no activity for ``timeout``."""

    def __init__(
        self,
        timeout: float,
        is_busy: Callable[[], bool],
        on_idle: Callable[[], Any],
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.timeout = timeout
        self._is_busy = is_busy
        self._on_idle = on_idle
        self._clock = clock
        self._lock = threading.Lock()
        self._last_activity = clock()
        self._fired = False
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop_event.set()
        if self._thread and self._thread.is_alive():
            self._thread.join(timeout=1.0)
        self._thread = None

    def touch(self) -> None:
        with self._lock:
            self._last_activity = self._clock()
            self._fired = False

    def check(self) -> bool:
        """Fire if the idle window has passed; returns True when it fired."""
        with self._lock:
            if self._fired or self._clock() - self._last_activity < self.timeout:
                return False
            self._fired = True
        if self._is_busy():
            return False
        LOGGER.info("Timeout detected.")
        self._on_idle()
        return True

    def _run(self) -> None:
        interval = min(0.25, self.timeout / 4)
        while not self._stop_event.wait(interval):
            try:
                self.check()
            except Exception:
                LOGGER.exception("Error in idle watchdog")


class DMXRecorder:
    """Everything the operator can do: record, play, passthrough, blackout."""

    def __init__(
        self,
        config: PlayerConfig,
        senders: Sequence[Any],
        recordings_dir: Path,
        *,
        fps: float = 35.0,
        fade_seconds: float = 1.0,
        idle_timeout: float = 3.0,
        passthrough: bool = True,
    ) -> None:
        self.config = config
        self.senders = list(senders)
        self.recordings_dir = Path(recordings_dir)
        self.recordings_dir.mkdir(parents=True, exist_ok=True)
        self.fade_seconds = fade_seconds
        self._fps = float(fps)
        self.recorder = Recorder(self.recordings_dir, config.universes)
        self.scheduler = PlaybackScheduler(self.senders, on_finished=self._playback_finished)
        self.router = PassthroughRouter(
            self.senders,
            lambda: self.scheduler.is_playing,
            enabled=passthrough,
            lock=self.scheduler.start_lock,
        )
        self.watchdog = IdleWatchdog(
            idle_timeout,
            is_busy=lambda: self.scheduler.is_playing or self.recorder.is_recording,
            on_idle=self.blackout,
        )
        self._highlight_lock = threading.Lock()
        self._highlight_stop = threading.Event()

    @property
    def fps(self) -> float:
        return self._fps

    @property
    def is_playing(self) -> bool:
        return self.scheduler.is_playing

    @property
    def is_recording(self) -> bool:
        return self.recorder.is_recording

    @property
    def passthrough(self) -> bool:
        return self.router.enabled

    def start(self) -> None:
        self.watchdog.start()
        self.watchdog.touch()

    def close(self) -> None:
        self._highlight_stop.set()
        self.scheduler.stop()
        self.recorder.stop()
        self.watchdog.stop()

    def handle_inbound(self, inbound: InboundPacket) -> None:
        self.watchdog.touch()
        if self.scheduler.is_playing:
            return
        if self.recorder.is_recording:
            self.recorder.capture(inbound)
        self.router.forward(inbound)

    def start_recording(self) -> Path:
        return self.recorder.start()

    def stop_recording(self) -> Optional[Path]:
        path = self.recorder.stop()
        self.watchdog.touch()
        return path

    def list_recordings(self) -> List[str]:
        return list_recordings(self.recordings_dir)

    def resolve_recording(self, name: str) -> Path:
        path = Path(name)
        if not path.is_absolute():
            path = self.recordings_dir / path
        return path

    def play(self, name: Optional[str]) -> PlaybackSession:
        """Load a recording and loop it; the current session survives a failed load."""
        try:
            if not name:
                raise RecordingNotFound("No file name provided")
            recording = load_recording(self.resolve_recording(name))
            frames, delays = build_frames(recording.packets)
            if not frames:
                raise EmptyRecording(f"{name} holds no packets")
        except RecordingError as exc:
            exc.available = self.list_recordings()
            LOGGER.error("Unable to play %s: %s", name, exc)
            LOGGER.info("Available files: %s", ", ".join(exc.available) or "none")
            raise

        window = fade_window_frames(self._fps, self.fade_seconds)
        frames, delays = splice_loop(frames, delays, window)
        self._highlight_stop.set()
        return self.scheduler.start(frames, delays, self._fps, source=Path(name).name)

    def stop_playback(self) -> bool:
        stopped = self.scheduler.stop()
        self.watchdog.touch()
        return stopped

    def _playback_finished(self, session: PlaybackSession) -> None:
        self.watchdog.touch()

    def toggle_passthrough(self, enabled: Optional[bool] = None) -> bool:
        return self.router.toggle(enabled)

    def set_fps(self, fps: float) -> float:
        value = float(fps)
        if not MIN_FPS <= value <= MAX_FPS:
            raise ValueError(f"Playback rate must be between {MIN_FPS:g} and {MAX_FPS:g} fps")
        self._fps = value
        LOGGER.info("Playback rate set to %s fps", value)
        return value

    def blackout(self) -> int:
        return blackout(self.senders)

    def highlight(self, universe: int) -> threading.Thread:
        """Blink every output of ``universe`` on and off to identify it."""
        address = address_for_universe(universe)
        with self._highlight_lock:
            self._highlight_stop.set()
            stop_event = threading.Event()
            self._highlight_stop = stop_event

        def _worker() -> None:
            for _ in range(HIGHLIGHT_BLINKS):
                for value in (255, 0):
                    if stop_event.is_set() or self.scheduler.is_playing:
                        return
                    fill(self.senders, value, address)
                    if stop_event.wait(HIGHLIGHT_STEP_SECONDS):
                        return

        LOGGER.info("Blinking lights on universe: %s", universe)
        thread = threading.Thread(target=_worker, daemon=True)
        thread.start()
        return thread

    def describe_config(self) -> Dict[str, Any]:
        return self.config.describe()

    def status(self) -> Dict[str, Any]:
        session = self.scheduler.session
        recording_path = self.recorder.path if self.recorder.is_recording else None
        return {
            "recording": self.recorder.is_recording,
            "recording_file": recording_path.name if recording_path else None,
            "captured": self.recorder.captured,
            "dropped": self.recorder.dropped,
            "playing": self.scheduler.is_playing,
            "passthrough": self.router.enabled,
            "fps": self._fps,
            "session": session.describe() if session is not None and session.playing else None,
        }
