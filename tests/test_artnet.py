import struct
import sys
from pathlib import Path
from typing import List, Tuple

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from artnet import (
    ARTNET_HEADER,
    Address,
    ArtNetNode,
    InboundPacket,
    address_for_universe,
    decode_artdmx,
    encode_artdmx,
)
from errors import TransportError


def test_address_for_universe_splits_subnet_and_universe() -> None:
    assert address_for_universe(0) == Address(net=0, subnet=0, universe=0)
    assert address_for_universe(5) == Address(net=0, subnet=0, universe=5)
    assert address_for_universe(33) == Address(net=0, subnet=2, universe=1)
    assert address_for_universe(255) == Address(net=0, subnet=15, universe=15)


def test_address_for_universe_keeps_net_fixed() -> None:
    address = address_for_universe(300)
    assert address.net == 0
    assert address.subnet == 18


def test_address_for_universe_rejects_negative() -> None:
    with pytest.raises(ValueError):
        address_for_universe(-1)


def test_encode_artdmx_layout() -> None:
    datagram = encode_artdmx(address_for_universe(33), bytes([1, 2, 3]), sequence=7)

    assert datagram[:8] == ARTNET_HEADER
    assert struct.unpack("<H", datagram[8:10])[0] == 0x5000
    assert struct.unpack(">H", datagram[10:12])[0] == 14
    assert datagram[12] == 7
    assert datagram[14] == 0x21
    assert datagram[15] == 0
    # Odd payloads are padded to an even length.
    assert struct.unpack(">H", datagram[16:18])[0] == 4
    assert datagram[18:] == bytes([1, 2, 3, 0])


def test_encode_artdmx_rejects_unencodable_subnet() -> None:
    with pytest.raises(ValueError):
        encode_artdmx(address_for_universe(300), bytes(2))


def test_decode_artdmx_reads_address_and_data() -> None:
    datagram = encode_artdmx(Address(net=1, subnet=3, universe=4), bytes(range(10)))

    address, data = decode_artdmx(datagram)

    assert address == Address(net=1, subnet=3, universe=4)
    assert data == bytes(range(10))


def test_decode_ignores_other_opcodes_and_garbage() -> None:
    poll = ARTNET_HEADER + struct.pack("<H", 0x2000) + bytes(12)
    assert decode_artdmx(poll) is None
    assert decode_artdmx(b"hello world, not art-net") is None


def test_decode_rejects_truncated_payload() -> None:
    datagram = encode_artdmx(address_for_universe(1), bytes(100))
    with pytest.raises(ValueError):
        decode_artdmx(datagram[:-10])


def test_dispatch_delivers_only_subscribed_universes() -> None:
    node = ArtNetNode(clock=lambda: 12.5)
    received: List[InboundPacket] = []
    node.subscribe([1, 2], received.append)

    node.dispatch(encode_artdmx(address_for_universe(1), bytes([9, 9])), "10.0.0.5")
    node.dispatch(encode_artdmx(address_for_universe(7), bytes([1, 1])), "10.0.0.5")

    assert len(received) == 1
    assert received[0].address == address_for_universe(1)
    assert received[0].data == bytes([9, 9])
    assert received[0].arrival == 12.5
    assert received[0].source == "10.0.0.5"


def test_dispatch_counts_malformed_datagrams() -> None:
    node = ArtNetNode()
    received: List[InboundPacket] = []
    node.subscribe([1], received.append)

    datagram = encode_artdmx(address_for_universe(1), bytes(64))
    node.dispatch(datagram[:30])

    assert node.malformed == 1
    assert received == []


def test_dispatch_survives_callback_errors() -> None:
    node = ArtNetNode()

    def broken(_: InboundPacket) -> None:
        raise RuntimeError("boom")

    node.subscribe([1], broken)
    node.dispatch(encode_artdmx(address_for_universe(1), bytes(2)))


class RecordingNode(ArtNetNode):
    def __init__(self) -> None:
        super().__init__()
        self.sent: List[Tuple[bytes, Tuple[str, int]]] = []

    def sendto(self, datagram: bytes, target: Tuple[str, int]) -> None:
        self.sent.append((datagram, target))


def test_sender_sequence_wraps_without_zero() -> None:
    node = RecordingNode()
    sender = node.sender("10.0.0.20", address_for_universe(3))

    for _ in range(256):
        sender.send(bytes(2))

    sequences = [datagram[12] for datagram, _ in node.sent]
    assert sequences[0] == 1
    assert sequences[254] == 255
    assert sequences[255] == 1
    assert 0 not in sequences
    assert node.sent[0][1] == ("10.0.0.20", 6454)


def test_send_without_open_socket_raises_transport_error() -> None:
    node = ArtNetNode()
    sender = node.sender("10.0.0.20", address_for_universe(3))
    with pytest.raises(TransportError):
        sender.send(bytes(2))
