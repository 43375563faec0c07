"""Packer manager that streams every blob into one single packfile."""

from __future__ import annotations

import logging
import os
import queue
import threading
from collections.abc import Callable, Iterable
from typing import Protocol

from kloset.packer import PackerMessage
from kloset.packfile import HasherFactory
from kloset.packwriter import Encoder, PackWriter
from kloset.resources import CURRENT_VERSIONS, Version

logger = logging.getLogger(__name__)

_STOP = object()

Flusher = Callable[[PackWriter], None]


class PackingCache(Protocol):
    """Storage for the blobs seen so far and the index of the pack being written."""

    def has_blob(self, rtype: int, mac: bytes) -> bool: ...

    def put_blob(self, rtype: int, mac: bytes) -> None: ...

    def put_index_blob(self, rtype: int, mac: bytes, data: bytes) -> None: ...

    def get_indexes_blob(self) -> Iterable[bytes]: ...

    def close(self) -> None: ...


def _current_version(rtype: int) -> Version:
    return CURRENT_VERSIONS.get(rtype, 0)


class PlatarPackerManager:
    """Writes all queued blobs, in order, into a single streamed packfile.

    ``run`` blocks until ``wait`` is called from another thread; ``flush``
    receives the PackWriter and reads the packfile bytes from its reader.
    """

    def __init__(
        self,
        packing_cache: PackingCache,
        encode: Encoder,
        hasher_factory: HasherFactory,
        flush: Flusher,
    ) -> None:
        self._packing_cache = packing_cache
        self._encode = encode
        self._hasher_factory = hasher_factory
        self._flush = flush
        self._messages: queue.Queue = queue.Queue(
            maxsize=(os.cpu_count() or 1) * 2 + 1
        )
        self._done = threading.Event()

    def run(self) -> None:
        """Consume queued blobs until stopped, then finalize the packfile."""
        try:
            writer = PackWriter(
                self._flush, self._encode, self._hasher_factory, self._packing_cache
            )
            self._consume(writer)
            try:
                writer.finalize()
            except Exception as exc:
                raise RuntimeError(f"failed to write packfile: {exc}") from exc
            self._packing_cache.close()
        finally:
            self._done.set()

    def _consume(self, writer: PackWriter) -> None:
        failed = False
        while True:
            message = self._messages.get()
            if message is _STOP:
                return
            if failed:
                continue
            try:
                if not isinstance(message, PackerMessage):
                    raise TypeError("unexpected message type")
                writer.write_blob(
                    message.rtype,
                    message.version,
                    message.mac,
                    message.data,
                    message.flags,
                )
            except Exception as exc:  # keep draining so wait() can finish
                logger.error("worker group error: failed to write blob: %s", exc)
                failed = True

    def wait(self) -> None:
        """Stop accepting blobs and block until the packfile is written."""
        self._messages.put(_STOP)
        self._done.wait()

    def insert_if_not_present(self, rtype: int, mac: bytes) -> bool:
        """Record the blob as seen; True if it already was."""
        mac = bytes(mac)
        if self._packing_cache.has_blob(rtype, mac):
            return True
        self._packing_cache.put_blob(rtype, mac)
        return False

    def put(self, rtype: int, mac: bytes, data: bytes) -> None:
        self._messages.put(
            PackerMessage(
                rtype=rtype,
                version=_current_version(rtype),
                mac=bytes(mac),
                data=bytes(data),
            )
        )

    def exists(self, rtype: int, mac: bytes) -> bool:
        return self._packing_cache.has_blob(rtype, bytes(mac))