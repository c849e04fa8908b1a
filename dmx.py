"""DMX output helpers shared by playback, passthrough and the operator commands.

An output is anything with an ``address`` and a ``send(data)`` method: the
Art-Net senders from :mod:`artnet` or the USB/serial interface implemented
here with pyserial.  :func:`transmit` fans one universe out to every output
configured for it and keeps going when one of them fails.
"""
from __future__ import annotations

import logging
import os
import threading
import time
from typing import Any, Dict, Iterable, List, Optional, Sequence

import serial
from serial.tools import list_ports

from artnet import Address, ArtNetNode, address_for_universe
from config import OutputConfig
from errors import TransportError

LOGGER = logging.getLogger("dmxrec.dmx")

DEFAULT_CHANNELS = 512
DMX_BREAK_DURATION = float(os.environ.get("DMX_BREAK_DURATION", "0.00012"))
DMX_MARK_AFTER_BREAK = float(os.environ.get("DMX_MARK_AFTER_BREAK", "0.000012"))


def _clamp(value: int, low: int, high: int) -> int:
    return max(low, min(high, value))


def _resolve_serial_port(serial_identifier: str) -> Optional[str]:
    """Find the device path of the DMX interface matching ``serial_identifier``."""

    identifier_normalized = serial_identifier.strip().lower()
    if not identifier_normalized:
        return None

    matches: List[str] = []
    for port in list_ports.comports():
        candidates = [
            getattr(port, "serial_number", None),
            getattr(port, "hwid", None),
            getattr(port, "description", None),
            getattr(port, "device", None),
        ]
        for candidate in candidates:
            if not candidate:
                continue
            if identifier_normalized in str(candidate).strip().lower():
                device = str(getattr(port, "device", ""))
                if device:
                    matches.append(device)
                break

    if not matches:
        LOGGER.error(
            "Unable to locate DMX serial interface matching identifier '%s'",
            serial_identifier,
        )
        return None

    if len(matches) > 1:
        LOGGER.warning(
            "Multiple DMX serial interfaces matched identifier '%s'. Using %s.",
            serial_identifier,
            matches[0],
        )

    LOGGER.info(
        "Resolved DMX serial interface %s using identifier '%s'",
        matches[0],
        serial_identifier,
    )
    return matches[0]


class SerialDMXSender:
    """Drives one universe on a USB DMX interface (break, MAB, start code, data)."""

    def __init__(self, port: str, address: Address, channel_count: int = DEFAULT_CHANNELS) -> None:
        self.port = port
        self.address = address
        self.channel_count = channel_count
        self._serial_config: Dict[str, Any] = {
            "port": port,
            "baudrate": 250000,
            "bytesize": serial.EIGHTBITS,
            "parity": serial.PARITY_NONE,
            "stopbits": serial.STOPBITS_TWO,
            "timeout": 1,
            "write_timeout": 1,
        }
        self._serial: Any = None
        self._lock = threading.Lock()

    @property
    def name(self) -> str:
        return self.port

    def open(self) -> None:
        with self._lock:
            self._open_locked()

    def _open_locked(self) -> Any:
        if self._serial is None or not getattr(self._serial, "is_open", False):
            self._serial = serial.Serial(**self._serial_config)
        return self._serial

    def close(self) -> None:
        with self._lock:
            self._close_locked()

    def _close_locked(self) -> None:
        if self._serial is not None:
            try:
                self._serial.close()
            except Exception:  # pragma: no cover - depends on hardware
                LOGGER.exception("Error while closing DMX serial port %s", self.port)
            finally:
                self._serial = None

    def send(self, data: bytes) -> None:
        frame = bytes([0]) + bytes(data[: self.channel_count])
        with self._lock:
            try:
                ser = self._open_locked()
                ser.break_condition = True
                time.sleep(DMX_BREAK_DURATION)
                ser.break_condition = False
                time.sleep(DMX_MARK_AFTER_BREAK)
                ser.write(frame)
                ser.flush()
            except (OSError, serial.SerialException) as exc:
                self._close_locked()
                raise TransportError(f"Error while sending DMX data over {self.port}: {exc}") from exc


def _open_serial_sender(port: str, address: Address) -> Optional[SerialDMXSender]:
    sender = SerialDMXSender(port, address)
    try:
        sender.open()
    except (OSError, serial.SerialException) as exc:
        LOGGER.error(
            "Unable to open DMX serial port %s (%s). Skipping this output; "
            "verify the adapter path before restarting.",
            port,
            exc,
        )
        return None
    LOGGER.info("Using DMX serial port %s for DMX output", port)
    return sender


def build_senders(outputs: Iterable[OutputConfig], node: Optional[ArtNetNode]) -> List[Any]:
    """Create one sender per (output, universe) pair from the player config."""

    senders: List[Any] = []
    for output in outputs:
        for universe in output.universes:
            address = address_for_universe(universe)
            if output.ip:
                if node is None:
                    raise ValueError(f"Output {output.ip} needs an Art-Net node")
                sender: Any = node.sender(output.ip, address, port=output.port)
            else:
                port = output.serial_port
                if not port and output.serial_number:
                    port = _resolve_serial_port(output.serial_number)
                if not port:
                    continue
                sender = _open_serial_sender(port, address)
                if sender is None:
                    continue
            senders.append(sender)
            LOGGER.info(
                "Sender initialized: %s - UNI %s - SUB %s - NET %s",
                sender.name,
                address.universe,
                address.subnet,
                address.net,
            )
    return senders


def transmit(senders: Sequence[Any], address: Address, data: bytes) -> int:
    """Send ``data`` to every sender for ``address``; returns how many succeeded."""

    delivered = 0
    for sender in senders:
        if sender.address != address:
            continue
        try:
            sender.send(data)
        except TransportError:
            LOGGER.exception("Error transmitting data to %s (%s)", sender.name, address)
            continue
        delivered += 1
    return delivered


def fill(senders: Sequence[Any], value: int, address: Optional[Address] = None) -> int:
    """Set every channel of the matching outputs (all outputs by default) to ``value``."""

    payload = bytes([_clamp(value, 0, 255)]) * DEFAULT_CHANNELS
    delivered = 0
    for sender in senders:
        if address is not None and sender.address != address:
            continue
        try:
            sender.send(payload)
        except TransportError:
            LOGGER.exception("Error transmitting data to %s (%s)", sender.name, sender.address)
            continue
        delivered += 1
    return delivered


def blackout(senders: Sequence[Any]) -> int:
    return fill(senders, 0)


def close_senders(senders: Iterable[Any]) -> None:
    for sender in senders:
        close = getattr(sender, "close", None)
        if close is None:
            continue
        try:
            close()
        except Exception:  # pragma: no cover
            LOGGER.exception("Error while closing sender %s", getattr(sender, "name", sender))
