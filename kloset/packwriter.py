"""Streaming packfile writer that hands its output to a consumer as it is written."""

from __future__ import annotations

import struct
import threading
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from typing import Protocol

import msgpack
from msgpack.exceptions import UnpackException

from kloset.objects import MAC_SIZE
from kloset.packfile import Blob, Footer, HasherFactory
from kloset.resources import Version, parse_version

VERSION: Version = parse_version("1.0.0")

_U32 = struct.Struct("<I")
_UINT32_MASK = 0xFFFFFFFF
_PIPE_CAPACITY = 1 << 20

Encoder = Callable[[bytes], bytes]


class IndexStore(Protocol):
    def put_index_blob(self, rtype: int, mac: bytes, data: bytes) -> None: ...

    def get_indexes_blob(self) -> Iterable[bytes]: ...


@dataclass
class IndexBlob:
    """Index record kept in the index store while a pack is written."""

    rtype: int
    version: Version
    mac: bytes
    offset: int
    length: int
    flags: int = 0

    def serialize(self) -> bytes:
        fields = {
            "Type": int(self.rtype),
            "Version": self.version,
            "MAC": bytes(self.mac),
            "Offset": self.offset,
            "Length": self.length,
            "Flags": self.flags,
        }
        return msgpack.packb(fields, use_bin_type=True)


def blob_from_bytes(data: bytes) -> IndexBlob:
    """Decode an index record from its msgpack form."""
    try:
        fields = msgpack.unpackb(data, raw=False)
    except (ValueError, TypeError, UnpackException) as exc:
        raise ValueError(f"invalid index blob: {exc}") from exc
    if not isinstance(fields, dict):
        raise ValueError("invalid index blob: expected a map")
    mac = fields.get("MAC", bytes(MAC_SIZE))
    if not isinstance(mac, (bytes, bytearray)) or len(mac) != MAC_SIZE:
        raise ValueError("invalid index blob: bad MAC")
    try:
        return IndexBlob(
            rtype=int(fields.get("Type", 0)),
            version=int(fields.get("Version", 0)),
            mac=bytes(mac),
            offset=int(fields.get("Offset", 0)),
            length=int(fields.get("Length", 0)),
            flags=int(fields.get("Flags", 0)),
        )
    except (TypeError, ValueError) as exc:
        raise ValueError(f"invalid index blob: {exc}") from exc


class _Pipe:
    """Bounded in-memory pipe between one writer and one reader thread."""

    def __init__(self, capacity: int = _PIPE_CAPACITY) -> None:
        self._capacity = capacity
        self._buffer = bytearray()
        self._cond = threading.Condition()
        self._write_closed = False
        self._read_closed = False
        self._read_error: BaseException | None = None

    def write(self, data: bytes) -> int:
        view = memoryview(bytes(data))
        total = len(view)
        with self._cond:
            while view:
                while (
                    not self._read_closed
                    and not self._write_closed
                    and len(self._buffer) >= self._capacity
                ):
                    self._cond.wait()
                if self._read_closed:
                    raise BrokenPipeError(
                        "write on closed pipe"
                    ) from self._read_error
                if self._write_closed:
                    raise BrokenPipeError("write on closed pipe")
                room = self._capacity - len(self._buffer)
                self._buffer += view[:room]
                view = view[room:]
                self._cond.notify_all()
        return total

    def read(self, size: int | None = -1) -> bytes:
        with self._cond:
            if size is None or size < 0:
                chunks = []
                while True:
                    if self._buffer:
                        chunks.append(bytes(self._buffer))
                        self._buffer.clear()
                        self._cond.notify_all()
                    if self._write_closed or self._read_closed:
                        break
                    self._cond.wait()
                return b"".join(chunks)
            while not self._buffer and not self._write_closed and not self._read_closed:
                self._cond.wait()
            data = bytes(self._buffer[:size])
            del self._buffer[:size]
            self._cond.notify_all()
            return data

    def close_write(self) -> None:
        with self._cond:
            self._write_closed = True
            self._cond.notify_all()

    def close_read(self, error: BaseException | None = None) -> None:
        with self._cond:
            if not self._read_closed:
                self._read_closed = True
                self._read_error = error
            self._cond.notify_all()


class _PipeReader:
    def __init__(self, pipe: _Pipe) -> None:
        self._pipe = pipe

    def read(self, size: int | None = -1) -> bytes:
        return self._pipe.read(size)

    def close(self) -> None:
        self._pipe.close_read()


class PackWriter:
    """Writes blobs, then an index and footer, into a stream read by ``putter``.

    ``putter`` runs in its own thread and receives this writer; it reads the
    packfile bytes from ``reader``.
    """

    def __init__(
        self,
        putter: Callable[[PackWriter], None],
        encoder: Encoder,
        hasher_factory: HasherFactory,
        index: IndexStore,
    ) -> None:
        self._encoder = encoder
        self._hasher_factory = hasher_factory
        self.index = index
        self.footer = Footer(version=VERSION, timestamp=0)
        self._current_offset = 0
        self._error: BaseException | None = None
        self._pipe = _Pipe()
        self.reader = _PipeReader(self._pipe)
        self._open = True
        self._thread = threading.Thread(
            target=self._run_putter, args=(putter,), daemon=True
        )
        self._thread.start()

    def _run_putter(self, putter: Callable[[PackWriter], None]) -> None:
        try:
            putter(self)
        except Exception as exc:
            self._error = exc
            self._pipe.close_read(exc)
        else:
            self._pipe.close_read()

    def _write(self, data: bytes) -> int:
        if not self._open:
            raise ValueError("pack writer is closed")
        return self._pipe.write(data)

    def write_blob(
        self, rtype: int, version: Version, mac: bytes, data: bytes, flags: int
    ) -> None:
        """Encode and append a blob, recording its place in the index store."""
        encoded = bytes(self._encoder(bytes(data)))
        nbytes = self._write(encoded)
        record = IndexBlob(
            rtype=rtype,
            version=version,
            mac=bytes(mac),
            offset=self._current_offset,
            length=nbytes & _UINT32_MASK,
            flags=flags,
        )
        self.index.put_index_blob(rtype, bytes(mac), record.serialize())
        self._current_offset += nbytes
        self.footer.count += 1
        self.footer.index_offset = self._current_offset

    def _serialize_index(self) -> bytes:
        hasher = self._hasher_factory()
        records = []
        for data in self.index.get_indexes_blob():
            blob = blob_from_bytes(data)
            record = Blob(
                blob.rtype, blob.version, blob.mac, blob.offset, blob.length, blob.flags
            ).to_bytes()
            hasher.update(record)
            records.append(record)
        self._write(bytes(self._encoder(b"".join(records))))
        return hasher.digest()

    def _serialize_footer(self, index_mac: bytes) -> None:
        self.footer.index_mac = bytes(index_mac)
        encoded = bytes(self._encoder(self.footer.to_bytes()))
        self._write(encoded)
        self._write(_U32.pack(len(encoded) & _UINT32_MASK))

    def size(self) -> int:
        return self._current_offset

    def _close_and_join(self) -> None:
        if self._open:
            self._pipe.close_write()
            self._open = False
        self._thread.join()

    def finalize(self) -> None:
        """Write index and footer, close the stream and wait for the consumer."""
        try:
            index_mac = self._serialize_index()
            self._serialize_footer(index_mac)
        except BrokenPipeError:
            self._close_and_join()
            if self._error is not None:
                raise self._error from None
            raise
        self._close_and_join()
        if self._error is not None:
            raise self._error

    def abort(self) -> None:
        """Close the stream without writing index or footer."""
        if self._open:
            self._pipe.close_write()
            self._open = False