"""Turn a recorded packet stream into timed frames and smooth the loop seam.

Frames are built by cutting the time-sorted packet stream into consecutive
chunks, one chunk per distinct address.  This relies on the console having
sent every active universe round-robin at roughly the same rate; universes
refreshed at different rates end up spread unevenly across frames.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, List, Sequence, Tuple

from artnet import Address
from recording import Packet

LOGGER = logging.getLogger("dmxrec.frames")


@dataclass(frozen=True)
class Frame:
    packets: Tuple[Packet, ...]

    @property
    def addresses(self) -> List[Address]:
        return [packet.address for packet in self.packets]

    def packet_for(self, address: Address) -> Packet:
        for packet in self.packets:
            if packet.address == address:
                return packet
        raise KeyError(address)


def build_frames(packets: Sequence[Packet]) -> Tuple[List[Frame], List[float]]:
    """Group sorted packets into frames and compute the gap before each frame.

    ``delays[0]`` is always 0; ``delays[i]`` is the time between the first
    packet of frame ``i - 1`` and the first packet of frame ``i``, never
    negative.
    """
    if not packets:
        return [], []

    frame_size = len({packet.address for packet in packets})
    frames: List[Frame] = []
    for start in range(0, len(packets), frame_size):
        # The final chunk may be short.
        frames.append(Frame(packets=tuple(packets[start : start + frame_size])))

    delays: List[float] = [0.0]
    for previous, current in zip(frames, frames[1:]):
        gap = current.packets[0].timestamp - previous.packets[0].timestamp
        delays.append(max(0.0, gap))

    LOGGER.debug(
        "Built %s frames of up to %s packets from %s packets",
        len(frames),
        frame_size,
        len(packets),
    )
    return frames, delays


def fade_window_frames(fps: float, seconds: float = 1.0) -> int:
    """Number of frames covering ``seconds`` of playback at ``fps``."""
    if fps <= 0 or seconds <= 0:
        return 0
    return int(round(fps * seconds))


def _interpolate(start: bytes, end: bytes, ratio: float) -> bytes:
    size = max(len(start), len(end))
    start = start.ljust(size, b"\x00")
    end = end.ljust(size, b"\x00")
    # Halves round up; values are never negative here.
    return bytes(
        max(0, min(255, int(a + (b - a) * ratio + 0.5))) for a, b in zip(start, end)
    )


def _blend_frames(tail: Frame, head: Frame, ratio: float) -> Frame:
    head_by_address: Dict[Address, Packet] = {}
    for packet in head.packets:
        head_by_address.setdefault(packet.address, packet)

    blended: List[Packet] = []
    used = set()
    for packet in tail.packets:
        target = head_by_address.get(packet.address)
        if target is None or packet.address in used:
            blended.append(packet)
            continue
        used.add(packet.address)
        blended.append(
            Packet(
                timestamp=packet.timestamp,
                address=packet.address,
                data=_interpolate(packet.data, target.data, ratio),
            )
        )
    # Universes that only appear at the head keep their own values.
    tail_addresses = {packet.address for packet in tail.packets}
    blended.extend(packet for packet in head.packets if packet.address not in tail_addresses)
    return Frame(packets=tuple(blended))


def splice_loop(
    frames: Sequence[Frame], delays: Sequence[float], fade_window: int
) -> Tuple[List[Frame], List[float]]:
    """Cross-fade the end of the sequence into its start.

    ``w = fade_window // 2`` frames are taken from the tail and the head.
    Step ``i`` blends ``tail[i]`` towards ``head[i]`` by ``i / w``.  The first
    half of the blended steps replaces the tail and the second half replaces
    the head, so the returned sequence (``w`` frames shorter) plays the
    recording's end straight into its start when it wraps.
    """
    if len(frames) != len(delays):
        raise ValueError("Each frame needs exactly one delay")

    total = len(frames)
    window = max(0, fade_window // 2)
    if 2 * window > total:
        window = total // 2
    if window == 0:
        return list(frames), list(delays)

    tail_start = total - window
    blended_frames: List[Frame] = []
    blended_delays: List[float] = []
    for step in range(window):
        ratio = step / window
        tail_frame = frames[tail_start + step]
        head_frame = frames[step]
        blended_frames.append(_blend_frames(tail_frame, head_frame, ratio))
        tail_delay = delays[tail_start + step]
        head_delay = delays[step]
        blended_delays.append(max(0.0, tail_delay + (head_delay - tail_delay) * ratio))

    half = window // 2
    spliced_frames = blended_frames[half:] + list(frames[window:tail_start]) + blended_frames[:half]
    spliced_delays = blended_delays[half:] + list(delays[window:tail_start]) + blended_delays[:half]
    LOGGER.debug("Cross-faded %s frames across the loop seam", window)
    return spliced_frames, spliced_delays
