import hashlib
import hmac
import struct
import threading
import zlib

import msgpack
import pytest

from kloset.packfile import FOOTER_SIZE, footer_from_bytes, index_from_bytes, packfile_from_bytes
from kloset.packwriter import VERSION, IndexBlob, PackWriter, blob_from_bytes
from kloset.resources import ResourceType


def hasher_factory():
    return hmac.new(b"secret", digestmod=hashlib.sha256)


class MemoryIndex:
    def __init__(self):
        self.records = {}

    def put_index_blob(self, rtype, mac, data):
        self.records[(int(rtype), bytes(mac))] = data

    def get_indexes_blob(self):
        return iter(list(self.records.values()))


class Collector:
    def __init__(self):
        self.data = None
        self.done = threading.Event()

    def __call__(self, writer):
        self.data = writer.reader.read()
        self.done.set()


CHUNK1 = b"This is chunk number 1"
CHUNK2 = b"This is chunk number 2"
MAC1 = bytes([1]) + bytes(31)
MAC2 = bytes([2]) + bytes(31)


def write_two(encoder):
    collector = Collector()
    index = MemoryIndex()
    writer = PackWriter(collector, encoder, hasher_factory, index)
    writer.write_blob(ResourceType.CHUNK, 1, MAC1, CHUNK1, 0)
    writer.write_blob(ResourceType.CHUNK, 1, MAC2, CHUNK2, 0)
    writer.finalize()
    return writer, index, collector.data


def test_round_trip_identity_encoder():
    writer, _, data = write_two(lambda b: b)
    (footer_len,) = struct.unpack("<I", data[-4:])
    assert footer_len == FOOTER_SIZE
    pack = packfile_from_bytes(hasher_factory, VERSION, data[:-4])
    assert pack.get_blob(MAC1) == CHUNK1
    assert pack.get_blob(MAC2) == CHUNK2
    assert pack.footer.count == 2
    assert pack.footer.index_offset == len(CHUNK1) + len(CHUNK2)
    assert writer.footer.index_mac == pack.footer.index_mac


def test_index_mac_matches_index_bytes():
    writer, _, data = write_two(lambda b: b)
    body = data[:-4]
    index_bytes = body[writer.footer.index_offset : -FOOTER_SIZE]
    blobs = index_from_bytes(VERSION, index_bytes)
    assert [blob.mac for blob in blobs] == [MAC1, MAC2]
    hasher = hasher_factory()
    hasher.update(index_bytes)
    assert hasher.digest() == writer.footer.index_mac


def test_size_and_index_offsets():
    collector = Collector()
    index = MemoryIndex()
    writer = PackWriter(collector, lambda b: b, hasher_factory, index)
    writer.write_blob(ResourceType.CHUNK, 1, MAC1, CHUNK1, 0)
    writer.write_blob(ResourceType.OBJECT, 1, MAC2, CHUNK2, 5)
    assert writer.size() == len(CHUNK1) + len(CHUNK2)
    records = [blob_from_bytes(data) for data in index.get_indexes_blob()]
    assert [r.offset for r in records] == [0, len(CHUNK1)]
    assert [r.length for r in records] == [len(CHUNK1), len(CHUNK2)]
    assert records[1].flags == 5
    assert records[1].rtype == ResourceType.OBJECT
    writer.finalize()


def test_compressing_encoder_records_encoded_lengths():
    writer, index, data = write_two(zlib.compress)
    records = [blob_from_bytes(d) for d in index.get_indexes_blob()]
    assert records[0].length == len(zlib.compress(CHUNK1))
    assert data[: records[0].length] == zlib.compress(CHUNK1)
    (footer_len,) = struct.unpack("<I", data[-4:])
    footer = footer_from_bytes(VERSION, zlib.decompress(data[-4 - footer_len : -4]))
    assert footer.count == 2
    assert footer.index_offset == writer.size()


def test_blob_serialize_round_trip():
    blob = IndexBlob(ResourceType.CHUNK, 1, MAC1, 10, 22, 3)
    assert blob_from_bytes(blob.serialize()) == blob


def test_blob_wire_keys():
    blob = IndexBlob(ResourceType.CHUNK, 1, MAC1, 10, 22, 3)
    fields = msgpack.unpackb(blob.serialize(), raw=False)
    assert set(fields) == {"Type", "Version", "MAC", "Offset", "Length", "Flags"}
    assert fields["MAC"] == MAC1


def test_blob_from_bytes_rejects_garbage():
    with pytest.raises(ValueError):
        blob_from_bytes(b"\xc1")
    with pytest.raises(ValueError):
        blob_from_bytes(msgpack.packb([1, 2, 3]))


def test_putter_failure_surfaces_in_finalize():
    def failing(writer):
        raise RuntimeError("upload failed")

    writer = PackWriter(failing, lambda b: b, hasher_factory, MemoryIndex())
    with pytest.raises(RuntimeError, match="upload failed"):
        writer.finalize()


def test_abort_ends_stream():
    collector = Collector()
    writer = PackWriter(collector, lambda b: b, hasher_factory, MemoryIndex())
    writer.write_blob(ResourceType.CHUNK, 1, MAC1, CHUNK1, 0)
    writer.abort()
    assert collector.done.wait(timeout=10)
    assert collector.data == CHUNK1


def test_write_after_finalize_raises():
    writer, _, _ = write_two(lambda b: b)
    with pytest.raises(ValueError):
        writer.write_blob(ResourceType.CHUNK, 1, MAC1, CHUNK1, 0)