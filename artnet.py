"""Art-Net transport used to capture and replay DMX universes.

Only the ArtDmx packet is handled.  Inbound datagrams are received on a daemon
listener thread and handed to a single subscriber callback; outbound data is
sent through :class:`ArtNetSender` objects, one per (target, address) pair, so
that a logical universe can be fanned out to several physical nodes.
"""
from __future__ import annotations

import logging
import socket
import struct
import threading
import time
from dataclasses import dataclass
from typing import Callable, Iterable, Optional, Set, Tuple

from errors import TransportError

LOGGER = logging.getLogger("dmxrec.artnet")

ARTNET_PORT = 6454
ARTNET_HEADER = b"Art-Net\x00"
ARTNET_OPCODE_DMX = 0x5000
ARTNET_PROTOCOL_VERSION = 14
ARTNET_HEADER_SIZE = 18
MAX_CHANNELS = 512


@dataclass(frozen=True)
class Address:
    """Art-Net port address split into its net / subnet / universe parts."""

    net: int
    subnet: int
    universe: int

    @property
    def logical_universe(self) -> int:
        return (self.net << 8) | (self.subnet << 4) | self.universe

    def __str__(self) -> str:
        return f"NET {self.net} - SUB {self.subnet} - UNI {self.universe}"


def address_for_universe(universe: int) -> Address:
    """Map a logical universe number onto an Art-Net address.

    The net is always 0, so only logical universes 0-255 fit on the wire.
    """
    if universe < 0:
        raise ValueError(f"Universe must be zero or positive, got {universe}")
    return Address(net=0, subnet=universe // 16, universe=universe % 16)


def encode_artdmx(address: Address, data: bytes, sequence: int = 0, physical: int = 0) -> bytes:
    if not 0 <= address.universe <= 15 or not 0 <= address.subnet <= 15:
        raise ValueError(f"Address {address} does not fit in an Art-Net SubUni byte")
    if not 0 <= address.net <= 127:
        raise ValueError(f"Art-Net net must be between 0 and 127, got {address.net}")
    if len(data) > MAX_CHANNELS:
        raise ValueError(f"DMX payload holds at most {MAX_CHANNELS} channels")

    payload = bytes(data)
    # ArtDmx lengths are even and at least 2.
    if len(payload) % 2:
        payload += b"\x00"
    if len(payload) < 2:
        payload = payload.ljust(2, b"\x00")

    sub_uni = (address.subnet << 4) | address.universe
    return (
        ARTNET_HEADER
        + struct.pack("<H", ARTNET_OPCODE_DMX)
        + struct.pack(">H", ARTNET_PROTOCOL_VERSION)
        + bytes([sequence & 0xFF, physical & 0xFF, sub_uni, address.net])
        + struct.pack(">H", len(payload))
        + payload
    )


def decode_artdmx(datagram: bytes) -> Optional[Tuple[Address, bytes]]:
    """Return the address and channel data of an ArtDmx datagram.

    Datagrams that are not ArtDmx return ``None``.  ArtDmx datagrams whose
    length field is inconsistent raise ``ValueError``.
    """
    if len(datagram) < ARTNET_HEADER_SIZE or datagram[:8] != ARTNET_HEADER:
        return None
    opcode = struct.unpack("<H", datagram[8:10])[0]
    if opcode != ARTNET_OPCODE_DMX:
        return None

    sub_uni = datagram[14]
    net = datagram[15] & 0x7F
    length = struct.unpack(">H", datagram[16:18])[0]
    if length > MAX_CHANNELS:
        raise ValueError(f"ArtDmx length {length} exceeds {MAX_CHANNELS}")
    data = bytes(datagram[ARTNET_HEADER_SIZE : ARTNET_HEADER_SIZE + length])
    if len(data) != length:
        raise ValueError(f"ArtDmx datagram truncated: expected {length} bytes, got {len(data)}")
    return Address(net=net, subnet=sub_uni >> 4, universe=sub_uni & 0x0F), data


@dataclass(frozen=True)
class InboundPacket:
    address: Address
    data: bytes
    arrival: float
    source: Optional[str] = None


InboundCallback = Callable[[InboundPacket], None]


class ArtNetNode:
    """Owns the Art-Net UDP socket and the inbound listener thread."""

    def __init__(
        self,
        short_name: str = "dmxrec",
        long_name: str = "dmxrec - ArtNet Transceiver",
        *,
        bind_ip: str = "0.0.0.0",
        port: int = ARTNET_PORT,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.short_name = short_name
        self.long_name = long_name
        self.bind_ip = bind_ip
        self.port = port
        self._clock = clock
        self._socket: Optional[socket.socket] = None
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self._lock = threading.Lock()
        self._subscribed: Set[Address] = set()
        self._callback: Optional[InboundCallback] = None
        self.malformed = 0

    def open(self) -> None:
        if self._socket is not None:
            return
        sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_BROADCAST, 1)
        sock.bind((self.bind_ip, self.port))
        sock.settimeout(0.5)
        self._socket = sock
        LOGGER.info(
            "Art-Net node '%s' (%s) bound to %s:%s",
            self.short_name,
            self.long_name,
            self.bind_ip,
            self.port,
        )

    def subscribe(self, universes: Iterable[int], callback: InboundCallback) -> None:
        addresses = {address_for_universe(universe) for universe in universes}
        with self._lock:
            self._subscribed = addresses
            self._callback = callback
        LOGGER.info(
            "Listeners initialized: %s",
            ", ".join(str(address.logical_universe) for address in sorted(
                addresses, key=lambda item: item.logical_universe
            )),
        )

    def start(self) -> None:
        self.open()
        if self._thread and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._listen_loop, daemon=True)
        self._thread.start()

    def close(self) -> None:
        self._stop_event.set()
        if self._thread and self._thread.is_alive():
            self._thread.join(timeout=2.0)
        self._thread = None
        if self._socket is not None:
            self._socket.close()
            self._socket = None

    def sender(self, ip: str, address: Address, port: int = ARTNET_PORT) -> "ArtNetSender":
        return ArtNetSender(self, ip, address, port=port)

    def sendto(self, datagram: bytes, target: Tuple[str, int]) -> None:
        if self._socket is None:
            raise TransportError("Art-Net socket is not open")
        try:
            self._socket.sendto(datagram, target)
        except OSError as exc:
            raise TransportError(f"Unable to send to {target[0]}:{target[1]}: {exc}") from exc

    def _listen_loop(self) -> None:
        while not self._stop_event.is_set():
            sock = self._socket
            if sock is None:
                return
            try:
                datagram, peer = sock.recvfrom(1024)
            except socket.timeout:
                continue
            except OSError:
                if not self._stop_event.is_set():
                    LOGGER.exception("Error receiving Art-Net datagram")
                continue
            self.dispatch(datagram, peer[0] if peer else None)

    def dispatch(self, datagram: bytes, source: Optional[str] = None) -> None:
        """Decode one datagram and hand it to the subscriber."""
        arrival = self._clock()
        try:
            decoded = decode_artdmx(datagram)
        except ValueError as exc:
            self.malformed += 1
            LOGGER.debug("Dropping malformed ArtDmx datagram from %s: %s", source, exc)
            return
        if decoded is None:
            return

        address, data = decoded
        with self._lock:
            callback = self._callback
            subscribed = address in self._subscribed
        if callback is None or not subscribed:
            return
        try:
            callback(InboundPacket(address=address, data=data, arrival=arrival, source=source))
        except Exception:
            LOGGER.exception("Error handling inbound packet for %s", address)


class ArtNetSender:
    """Sends ArtDmx frames for one address to one Art-Net node."""

    def __init__(self, node: ArtNetNode, ip: str, address: Address, *, port: int = ARTNET_PORT) -> None:
        self.node = node
        self.ip = ip
        self.port = port
        self.address = address
        self._sequence = 0
        self._lock = threading.Lock()

    @property
    def name(self) -> str:
        return f"{self.ip}:{self.port}"

    def send(self, data: bytes) -> None:
        with self._lock:
            # Sequence 0 disables reordering on the receiver, so wrap 255 -> 1.
            self._sequence = self._sequence % 255 + 1
            datagram = encode_artdmx(self.address, data, sequence=self._sequence)
            self.node.sendto(datagram, (self.ip, self.port))
