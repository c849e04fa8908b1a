"""On-disk recording format.

A recording is a gzip stream of newline-delimited JSON records.  The first
record holds the :class:`RecordingMetadata`, every following record one
captured :class:`Packet`.  The writer sync-flushes the compressor after each
record, so a file cut short by a crash still decompresses up to the last
complete line; the reader drops the trailing partial line and keeps the rest.
"""
from __future__ import annotations

import base64
import binascii
import gzip
import json
import logging
import zlib
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from artnet import MAX_CHANNELS, Address
from errors import CorruptRecording, InvalidRecordingFormat, RecordingNotFound

LOGGER = logging.getLogger("dmxrec.recording")

RECORDING_SUFFIX = ".dmxrec"
RECORDING_FORMAT = "dmxrec"
RECORDING_VERSION = 1
GZIP_MAGIC = b"\x1f\x8b"
READ_CHUNK_SIZE = 64 * 1024

PathLike = Union[str, Path]


@dataclass(frozen=True)
class Packet:
    timestamp: float
    address: Address
    data: bytes

    def to_record(self) -> Dict[str, Any]:
        return {
            "ts": self.timestamp,
            "net": self.address.net,
            "subnet": self.address.subnet,
            "universe": self.address.universe,
            "data": base64.b64encode(self.data).decode("ascii"),
        }

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "Packet":
        for key in ("ts", "net", "subnet", "universe", "data"):
            if key not in record:
                raise ValueError(f"Packet record is missing '{key}'")
        timestamp = record["ts"]
        if isinstance(timestamp, bool) or not isinstance(timestamp, (int, float)):
            raise ValueError("Packet timestamp must be a number")
        address_parts = []
        for key in ("net", "subnet", "universe"):
            value = record[key]
            if isinstance(value, bool) or not isinstance(value, int) or value < 0:
                raise ValueError(f"Packet '{key}' must be a non-negative integer")
            address_parts.append(value)
        try:
            data = base64.b64decode(str(record["data"]), validate=True)
        except (binascii.Error, ValueError) as exc:
            raise ValueError("Packet data is not valid base64") from exc
        if len(data) > MAX_CHANNELS:
            raise ValueError(f"Packet data holds more than {MAX_CHANNELS} channels")
        net, subnet, universe = address_parts
        return cls(
            timestamp=float(timestamp),
            address=Address(net=net, subnet=subnet, universe=universe),
            data=data,
        )


@dataclass(frozen=True)
class RecordingMetadata:
    created_at: datetime
    universes: List[int]
    filename: str = ""

    def to_record(self) -> Dict[str, Any]:
        return {
            "format": RECORDING_FORMAT,
            "version": RECORDING_VERSION,
            "filename": self.filename,
            "createdAt": self.created_at.isoformat(),
            "universes": list(self.universes),
        }

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "RecordingMetadata":
        if record.get("format") != RECORDING_FORMAT:
            raise ValueError("First record is not recording metadata")
        try:
            created_at = datetime.fromisoformat(str(record["createdAt"]))
        except (KeyError, ValueError) as exc:
            raise ValueError("Metadata 'createdAt' is missing or invalid") from exc
        universes = record.get("universes", [])
        if not isinstance(universes, list) or not all(
            isinstance(value, int) and not isinstance(value, bool) for value in universes
        ):
            raise ValueError("Metadata 'universes' must be a list of integers")
        return cls(
            created_at=created_at,
            universes=list(universes),
            filename=str(record.get("filename", "")),
        )


@dataclass
class Recording:
    metadata: RecordingMetadata
    packets: List[Packet] = field(default_factory=list)
    dropped: int = 0
    truncated: bool = False
    path: Optional[Path] = field(default=None, compare=False)


def new_metadata(universes: List[int], filename: str = "") -> RecordingMetadata:
    return RecordingMetadata(
        created_at=datetime.now(timezone.utc),
        universes=list(universes),
        filename=filename,
    )


class RecordingWriter:
    """Append-only writer: metadata once, then any number of packets."""

    def __init__(self, path: PathLike) -> None:
        self.path = Path(path)
        self._stream: Optional[gzip.GzipFile] = None
        self._metadata_written = False
        self.packets_written = 0

    @classmethod
    def open(cls, path: PathLike) -> "RecordingWriter":
        writer = cls(path)
        writer.path.parent.mkdir(parents=True, exist_ok=True)
        writer._stream = gzip.open(writer.path, "wb")
        return writer

    @property
    def closed(self) -> bool:
        return self._stream is None

    def _write_record(self, record: Dict[str, Any]) -> None:
        if self._stream is None:
            raise ValueError(f"Recording {self.path} is not open")
        line = json.dumps(record, separators=(",", ":")) + "\n"
        self._stream.write(line.encode("utf-8"))
        self._stream.flush(zlib.Z_SYNC_FLUSH)

    def append_metadata(self, metadata: RecordingMetadata) -> None:
        if self._metadata_written:
            raise ValueError("Recording metadata has already been written")
        self._write_record(metadata.to_record())
        self._metadata_written = True

    def append_packet(self, packet: Packet) -> None:
        if not self._metadata_written:
            raise ValueError("Recording metadata must be written before packets")
        self._write_record(packet.to_record())
        self.packets_written += 1

    def close(self) -> None:
        if self._stream is None:
            return
        stream = self._stream
        self._stream = None
        stream.close()

    def __enter__(self) -> "RecordingWriter":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


def _decode_line(line: bytes, path: Path) -> Dict[str, Any]:
    try:
        record = json.loads(line.decode("utf-8"))
    except (UnicodeDecodeError, ValueError) as exc:
        raise CorruptRecording(f"Unreadable record in {path.name}: {exc}") from exc
    if not isinstance(record, dict):
        raise CorruptRecording(f"Unreadable record in {path.name}: expected an object")
    return record


def load_recording(path: PathLike) -> Recording:
    """Read a whole recording, returning its packets sorted by timestamp."""

    path = Path(path)
    if not path.is_file():
        raise RecordingNotFound(f"Recording {path} does not exist")
    if path.suffix != RECORDING_SUFFIX:
        raise InvalidRecordingFormat(
            f"{path.name} is not a {RECORDING_SUFFIX} recording"
        )

    metadata: Optional[RecordingMetadata] = None
    packets: List[Packet] = []
    dropped = 0
    pending = b""
    decompressor = zlib.decompressobj(zlib.MAX_WBITS | 16)

    def handle(line: bytes) -> None:
        nonlocal metadata, dropped
        if not line.strip():
            return
        record = _decode_line(line, path)
        if metadata is None:
            try:
                metadata = RecordingMetadata.from_record(record)
            except ValueError as exc:
                raise CorruptRecording(f"{path.name}: {exc}") from exc
            return
        try:
            packets.append(Packet.from_record(record))
        except ValueError as exc:
            dropped += 1
            LOGGER.debug("Dropping malformed packet record in %s: %s", path.name, exc)

    with path.open("rb") as fh:
        if fh.read(len(GZIP_MAGIC)) != GZIP_MAGIC:
            raise InvalidRecordingFormat(f"{path.name} is not a compressed recording")
        fh.seek(0)
        while not decompressor.eof:
            chunk = fh.read(READ_CHUNK_SIZE)
            if not chunk:
                break
            try:
                pending += decompressor.decompress(chunk)
            except zlib.error as exc:
                raise CorruptRecording(f"{path.name} could not be decompressed: {exc}") from exc
            *lines, pending = pending.split(b"\n")
            for line in lines:
                handle(line)

    truncated = not decompressor.eof
    if pending.strip():
        # The last record never got its newline: a partial write.
        truncated = True
        LOGGER.warning("Ignoring incomplete final record in %s", path.name)

    if metadata is None:
        raise CorruptRecording(f"{path.name} does not contain a metadata record")

    packets.sort(key=lambda packet: packet.timestamp)
    if truncated:
        LOGGER.warning("Recording %s was not closed cleanly; loaded the complete records", path.name)
    LOGGER.info(
        "Finished loading %s: %s packets (%s dropped)",
        path.name,
        len(packets),
        dropped,
    )
    return Recording(
        metadata=metadata,
        packets=packets,
        dropped=dropped,
        truncated=truncated,
        path=path,
    )


def list_recordings(directory: PathLike) -> List[str]:
    directory = Path(directory)
    if not directory.is_dir():
        return []
    return sorted(
        entry.name
        for entry in directory.iterdir()
        if entry.is_file() and entry.suffix == RECORDING_SUFFIX
    )
