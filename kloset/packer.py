"""Background packing of blobs into packfiles."""

from __future__ import annotations

import logging
import os
import queue
import secrets
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone

from kloset.objects import MAC_SIZE
from kloset.packfile import HasherFactory, PackFile
from kloset.resources import CURRENT_VERSIONS, ResourceType, Version, types

logger = logging.getLogger(__name__)

_STOP = object()

Encoder = Callable[[bytes], bytes]
Flusher = Callable[[PackFile], None]


def _current_version(rtype: int) -> Version:
    return CURRENT_VERSIONS.get(rtype, 0)


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class PackerMessage:
    """A blob queued for packing."""

    rtype: int
    version: Version
    mac: bytes
    data: bytes
    flags: int = 0
    timestamp: datetime = field(default_factory=_now)


class Packer:
    """A packfile under construction that refuses duplicate blobs."""

    def __init__(self, hasher_factory: HasherFactory) -> None:
        self.blobs: dict[int, dict[bytes, bytes]] = {rtype: {} for rtype in types()}
        self.packfile = PackFile(hasher_factory)

    def add_blob_if_not_exists(
        self, rtype: int, version: Version, mac: bytes, data: bytes, flags: int
    ) -> bool:
        """Add the blob unless one with the same type and MAC is present."""
        by_type = self.blobs.setdefault(rtype, {})
        mac = bytes(mac)
        if mac in by_type:
            return False
        by_type[mac] = bytes(data)
        self.packfile.add_blob(rtype, version, mac, data, flags)
        return True

    def size(self) -> int:
        return self.packfile.size()

    def types(self) -> list[int]:
        return list(self.blobs)


class PackerManager:
    """Spreads queued blobs over packfiles and hands full ones to ``flush``.

    ``run`` blocks until ``wait`` is called from another thread and every
    pending packfile has been flushed.
    """

    def __init__(
        self,
        min_size: int,
        max_size: int,
        encode: Encoder,
        hasher_factory: HasherFactory,
        flush: Flusher,
    ) -> None:
        self._min_size = min_size
        self._max_size = max_size
        self._encode = encode
        self._hasher_factory = hasher_factory
        self._flush = flush
        self._concurrency = (os.cpu_count() or 1) * 2 + 1
        self._inflight: dict[int, set[bytes]] = {rtype: set() for rtype in types()}
        self._inflight_lock = threading.Lock()
        self._messages: queue.Queue = queue.Queue(maxsize=self._concurrency)
        self._done = threading.Event()

    def _macs(self, rtype: int) -> set[bytes]:
        try:
            return self._inflight[rtype]
        except KeyError:
            raise ValueError(f"unknown resource type: {rtype}") from None

    def run(self) -> None:
        results: queue.Queue = queue.Queue(maxsize=self._concurrency)
        flushers = [
            threading.Thread(target=self._flusher, args=(results,), daemon=True)
            for _ in range(self._concurrency)
        ]
        workers = [
            threading.Thread(target=self._worker, args=(results,), daemon=True)
            for _ in range(self._concurrency)
        ]
        for thread in flushers + workers:
            thread.start()
        for thread in workers:
            thread.join()
        for _ in flushers:
            results.put(_STOP)
        for thread in flushers:
            thread.join()
        self._done.set()

    def _worker(self, results: queue.Queue) -> None:
        pack: PackFile | None = None
        failed = False
        while True:
            message = self._messages.get()
            if message is _STOP:
                break
            if failed:
                continue
            try:
                if pack is None:
                    pack = PackFile(self._hasher_factory)
                    self.add_padding(pack, self._min_size)
                pack.add_blob(
                    message.rtype,
                    message.version,
                    message.mac,
                    message.data,
                    message.flags,
                )
                if pack.size() > self._max_size:
                    results.put(pack)
                    pack = None
            except Exception as exc:  # keep consuming so wait() can finish
                logger.error("worker group error: %s", exc)
                failed = True
        if not failed and pack is not None and pack.size() > 0:
            results.put(pack)

    def _flusher(self, results: queue.Queue) -> None:
        failed = False
        while True:
            pack = results.get()
            if pack is _STOP:
                return
            if failed or pack.size() == 0:
                continue
            try:
                self.add_padding(pack, self._min_size)
            except ValueError as exc:
                logger.warning("could not pad packfile: %s", exc)
            try:
                self._flush(pack)
            except Exception as exc:
                logger.error("flusher group error: failed to flush packer: %s", exc)
                failed = True
                continue
            with self._inflight_lock:
                for blob in pack.index:
                    self._inflight.get(blob.rtype, set()).discard(blob.mac)

    def wait(self) -> None:
        """Stop accepting blobs and block until everything is flushed."""
        for _ in range(self._concurrency):
            self._messages.put(_STOP)
        self._done.wait()

    def insert_if_not_present(self, rtype: int, mac: bytes) -> bool:
        """Mark the blob as in flight; True if it already was."""
        mac = bytes(mac)
        with self._inflight_lock:
            macs = self._macs(rtype)
            if mac in macs:
                return True
            macs.add(mac)
            return False

    def put(self, rtype: int, mac: bytes, data: bytes) -> None:
        encoded = bytes(self._encode(bytes(data)))
        self._messages.put(
            PackerMessage(
                rtype=rtype,
                version=_current_version(rtype),
                mac=bytes(mac),
                data=encoded,
            )
        )

    def exists(self, rtype: int, mac: bytes) -> bool:
        with self._inflight_lock:
            return bytes(mac) in self._macs(rtype)

    def add_padding(self, pack: PackFile, max_size: int) -> None:
        """Add a blob of 1 to ``max_size - 1`` random bytes to ``pack``."""
        if max_size < 0:
            raise ValueError("invalid padding size")
        if max_size == 0:
            return
        padding_size = secrets.randbelow(max_size - 1) + 1
        pack.add_blob(
            ResourceType.RANDOM,
            _current_version(ResourceType.RANDOM),
            secrets.token_bytes(MAC_SIZE),
            secrets.token_bytes(padding_size),
            0,
        )