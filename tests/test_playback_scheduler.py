import sys
import threading
import time
from pathlib import Path
from typing import List, Tuple

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from artnet import Address, address_for_universe
from errors import EmptyRecording
from frames import Frame
from playback import PlaybackScheduler
from recording import Packet


class FakeSender:
    def __init__(self, universe: int, name: str = "fake") -> None:
        self.address: Address = address_for_universe(universe)
        self.name = name
        self.sent: List[Tuple[float, bytes]] = []
        self._lock = threading.Lock()

    def send(self, data: bytes) -> None:
        with self._lock:
            self.sent.append((time.monotonic(), bytes(data)))

    def payloads(self) -> List[bytes]:
        with self._lock:
            return [data for _, data in self.sent]


def _frames(values: List[int], universe: int = 1) -> List[Frame]:
    return [
        Frame(packets=(Packet(timestamp=float(index), address=address_for_universe(universe), data=bytes([value] * 4)),))
        for index, value in enumerate(values)
    ]


def _wait_for(predicate, timeout: float = 2.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.005)
    return False


def test_empty_recording_is_rejected() -> None:
    scheduler = PlaybackScheduler([])
    with pytest.raises(EmptyRecording):
        scheduler.start([], [], 35.0)
    assert not scheduler.is_playing


def test_frames_are_sent_in_order_and_loop() -> None:
    sender = FakeSender(1)
    scheduler = PlaybackScheduler([sender])

    session = scheduler.start(_frames([1, 2, 3]), [0.0, 0.01, 0.01], 100.0)
    try:
        assert _wait_for(lambda: len(sender.payloads()) >= 7)
    finally:
        scheduler.stop()

    values = [data[0] for data in sender.payloads()[:7]]
    assert values == [1, 2, 3, 1, 2, 3, 1]
    assert session.loops >= 2


def test_recorded_gaps_are_reproduced() -> None:
    sender = FakeSender(1)
    scheduler = PlaybackScheduler([sender])

    scheduler.start(_frames([1, 2, 3]), [0.0, 0.05, 0.1], 10.0)
    try:
        assert _wait_for(lambda: len(sender.sent) >= 3)
    finally:
        scheduler.stop()

    times = [stamp for stamp, _ in sender.sent[:3]]
    assert times[1] - times[0] == pytest.approx(0.05, abs=0.03)
    assert times[2] - times[1] == pytest.approx(0.1, abs=0.03)


def test_stop_halts_transmission_within_one_frame() -> None:
    sender = FakeSender(1)
    scheduler = PlaybackScheduler([sender])

    scheduler.start(_frames([1, 2]), [0.0, 0.02], 50.0)
    assert _wait_for(lambda: len(sender.sent) >= 3)

    assert scheduler.stop() is True
    count = len(sender.sent)
    time.sleep(0.1)

    assert len(sender.sent) == count
    assert not scheduler.is_playing
    assert scheduler.stop() is False


def test_new_session_blacks_out_before_replacing_old_one() -> None:
    sender = FakeSender(1)
    scheduler = PlaybackScheduler([sender])

    scheduler.start(_frames([10, 11]), [0.0, 0.02], 50.0)
    assert _wait_for(lambda: len(sender.sent) >= 2)

    scheduler.start(_frames([200]), [0.0], 50.0)
    try:
        assert _wait_for(lambda: any(data[0] == 200 for data in sender.payloads()))
    finally:
        scheduler.stop()

    payloads = sender.payloads()
    first_new = next(index for index, data in enumerate(payloads) if data[0] == 200)
    blackout = payloads[first_new - 1]
    assert blackout == bytes(512)
    assert all(data[0] in (10, 11) for data in payloads[: first_new - 1])


def test_frames_fan_out_to_every_matching_sender() -> None:
    first = FakeSender(5, name="node-a")
    second = FakeSender(5, name="node-b")
    other = FakeSender(6, name="node-c")
    scheduler = PlaybackScheduler([first, second, other])

    scheduler.start(_frames([42], universe=5), [0.0], 100.0)
    try:
        assert _wait_for(lambda: first.sent and second.sent)
    finally:
        scheduler.stop()

    assert first.payloads()[0][0] == 42
    assert second.payloads()[0][0] == 42
    assert other.sent == []


def test_single_frame_wrap_uses_nominal_rate() -> None:
    sender = FakeSender(1)
    scheduler = PlaybackScheduler([sender])

    scheduler.start(_frames([1]), [0.0], 20.0)
    try:
        assert _wait_for(lambda: len(sender.sent) >= 3)
    finally:
        scheduler.stop()

    times = [stamp for stamp, _ in sender.sent[:3]]
    assert times[1] - times[0] == pytest.approx(0.05, abs=0.03)


def test_failing_sender_does_not_stop_playback() -> None:
    from errors import TransportError

    class BrokenSender(FakeSender):
        def send(self, data: bytes) -> None:
            raise TransportError("unplugged")

    healthy = FakeSender(1)
    scheduler = PlaybackScheduler([BrokenSender(1, name="broken"), healthy])

    scheduler.start(_frames([1, 2]), [0.0, 0.01], 100.0)
    try:
        assert _wait_for(lambda: len(healthy.sent) >= 4)
    finally:
        scheduler.stop()


def test_finished_callback_runs_after_stop() -> None:
    finished = threading.Event()
    scheduler = PlaybackScheduler([FakeSender(1)], on_finished=lambda session: finished.set())

    scheduler.start(_frames([1]), [0.0], 50.0)
    scheduler.stop()

    assert finished.wait(1.0)


def test_concurrent_starts_leave_a_single_session() -> None:
    sender = FakeSender(1)
    scheduler = PlaybackScheduler([sender])
    scheduler.start(_frames([1]), [0.0], 100.0)
    assert _wait_for(lambda: sender.sent)

    barrier = threading.Barrier(2)

    def _start(value: int) -> None:
        barrier.wait()
        scheduler.start(_frames([value]), [0.0], 100.0)

    workers = [threading.Thread(target=_start, args=(value,)) for value in (2, 3)]
    for worker in workers:
        worker.start()
    for worker in workers:
        worker.join(timeout=5.0)

    assert scheduler.stop() is True
    count = len(sender.sent)
    time.sleep(0.2)

    assert len(sender.sent) == count
    assert not scheduler.is_playing


def test_stop_waits_for_a_start_in_progress() -> None:
    sender = FakeSender(1)
    scheduler = PlaybackScheduler([sender])
    stopped = []

    with scheduler.start_lock:
        stopper = threading.Thread(target=lambda: stopped.append(scheduler.stop()))
        stopper.start()
        time.sleep(0.05)
        assert stopped == []
        scheduler.start(_frames([7]), [0.0], 100.0)
    stopper.join(timeout=2.0)

    assert stopped == [True]
    assert not scheduler.is_playing
