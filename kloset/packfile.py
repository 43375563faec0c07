"""Packfiles: many blobs concatenated, followed by an index and a footer."""

from __future__ import annotations

import struct
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Protocol

from kloset.objects import MAC_SIZE
from kloset.resources import Version, parse_version

VERSION: Version = parse_version("1.0.0")

_BLOB_RECORD = struct.Struct("<II32sQII")
_FOOTER = struct.Struct("<qIQ32sI")

BLOB_RECORD_SIZE = _BLOB_RECORD.size
FOOTER_SIZE = _FOOTER.size

_UINT32_MASK = 0xFFFFFFFF


class Hasher(Protocol):
    def update(self, data: bytes) -> None: ...

    def digest(self) -> bytes: ...


HasherFactory = Callable[[], Hasher]


@dataclass
class Blob:
    """Index record locating one blob inside a packfile."""

    rtype: int
    version: Version
    mac: bytes
    offset: int
    length: int
    flags: int = 0

    def to_bytes(self) -> bytes:
        return _BLOB_RECORD.pack(
            int(self.rtype),
            self.version,
            bytes(self.mac),
            self.offset,
            self.length,
            self.flags,
        )

    @classmethod
    def _from_record(cls, record: bytes) -> Blob:
        rtype, version, mac, offset, length, flags = _BLOB_RECORD.unpack(record)
        return cls(rtype, version, mac, offset, length, flags)


@dataclass
class Footer:
    """Trailing record of a packfile."""

    version: Version = VERSION
    timestamp: int = 0
    count: int = 0
    index_offset: int = 0
    index_mac: bytes = bytes(MAC_SIZE)
    flags: int = 0

    def to_bytes(self) -> bytes:
        return _FOOTER.pack(
            self.timestamp,
            self.count,
            self.index_offset,
            bytes(self.index_mac),
            self.flags,
        )


@dataclass
class Configuration:
    """Size limits of packfiles."""

    min_size: int = 0
    avg_size: int = 0
    max_size: int = 0


def default_configuration() -> Configuration:
    """Return the default packfile configuration (20 MiB maximum)."""
    return Configuration(max_size=20 << 20)


def footer_from_bytes(version: Version, data: bytes) -> Footer:
    """Decode a footer; raises ValueError when ``data`` is too short."""
    if len(data) < FOOTER_SIZE:
        raise ValueError(
            f"short packfile footer: got {len(data)} bytes, need {FOOTER_SIZE}"
        )
    timestamp, count, index_offset, index_mac, flags = _FOOTER.unpack_from(data)
    return Footer(version, timestamp, count, index_offset, index_mac, flags)


def _iter_records(data: bytes):
    if len(data) % BLOB_RECORD_SIZE:
        raise ValueError("truncated packfile index record")
    for record in _BLOB_RECORD.iter_unpack(data):
        rtype, version, mac, offset, length, flags = record
        yield Blob(rtype, version, mac, offset, length, flags)


def index_from_bytes(version: Version, data: bytes) -> list[Blob]:
    """Decode a serialized index into its blob records."""
    return list(_iter_records(bytes(data)))


def packfile_from_bytes(
    hasher_factory: HasherFactory, version: Version, data: bytes
) -> PackFile:
    """Decode a complete packfile and verify its index MAC."""
    data = bytes(data)
    if len(data) < FOOTER_SIZE:
        raise ValueError("packfile too short to hold a footer")
    footer = footer_from_bytes(version, data[-FOOTER_SIZE:])
    index_end = len(data) - FOOTER_SIZE
    if footer.index_offset > index_end:
        raise ValueError("packfile index offset exceeds packfile size")

    pack = PackFile(hasher_factory)
    pack.footer = footer
    pack.blobs = bytearray(data[: footer.index_offset])

    hasher = hasher_factory()
    for blob in _iter_records(data[footer.index_offset : index_end]):
        if blob.offset + blob.length > footer.index_offset:
            raise ValueError(
                "blob offset + blob length exceeds total length of packfile"
            )
        hasher.update(blob.to_bytes())
        pack.index.append(blob)

    if hasher.digest() != bytes(footer.index_mac):
        raise ValueError("index mac mismatch")
    return pack


class PackFile:
    """An in-memory packfile being built or read back."""

    def __init__(self, hasher_factory: HasherFactory) -> None:
        self._hasher_factory = hasher_factory
        self.blobs = bytearray()
        self.index: list[Blob] = []
        self.footer = Footer(version=VERSION, timestamp=time.time_ns(), count=0)

    def _index_and_mac(self) -> tuple[bytes, bytes]:
        hasher = self._hasher_factory()
        parts = []
        for blob in self.index:
            record = blob.to_bytes()
            parts.append(record)
            hasher.update(record)
        return b"".join(parts), hasher.digest()

    def serialize(self) -> bytes:
        """Return blobs, index and footer as one byte string."""
        index, mac = self._index_and_mac()
        self.footer.index_mac = mac
        return bytes(self.blobs) + index + self.footer.to_bytes()

    def serialize_data(self) -> bytes:
        return bytes(self.blobs)

    def serialize_index(self) -> bytes:
        index, _ = self._index_and_mac()
        return index

    def serialize_footer(self) -> bytes:
        """Recompute the index MAC and return the encoded footer."""
        _, mac = self._index_and_mac()
        self.footer.index_mac = mac
        return self.footer.to_bytes()

    def add_blob(
        self, rtype: int, version: Version, mac: bytes, data: bytes, flags: int
    ) -> None:
        self.index.append(
            Blob(
                rtype=rtype,
                version=version,
                mac=bytes(mac),
                offset=len(self.blobs),
                length=len(data) & _UINT32_MASK,
                flags=flags,
            )
        )
        self.blobs += data
        self.footer.count += 1
        self.footer.index_offset = len(self.blobs)

    def get_blob(self, mac: bytes) -> bytes | None:
        """Return the data of the blob with this MAC, or None if absent."""
        mac = bytes(mac)
        for blob in self.index:
            if blob.mac == mac:
                return bytes(self.blobs[blob.offset : blob.offset + blob.length])
        return None

    def size(self) -> int:
        return len(self.blobs) & _UINT32_MASK