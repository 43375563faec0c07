import hashlib
import hmac

import pytest

from kloset.packfile import (
    BLOB_RECORD_SIZE,
    FOOTER_SIZE,
    PackFile,
    default_configuration,
    footer_from_bytes,
    index_from_bytes,
    packfile_from_bytes,
)
from kloset.resources import CURRENT_VERSIONS, ResourceType

CHUNK1 = b"This is chunk number 1"
CHUNK2 = b"This is chunk number 2"
MAC1 = bytes([1]) + bytes(31)
MAC2 = bytes([2]) + bytes(31)
CHUNK_VERSION = CURRENT_VERSIONS[ResourceType.CHUNK]
PACKFILE_VERSION = CURRENT_VERSIONS[ResourceType.PACKFILE]


def hasher_factory():
    return hmac.new(b"secret", digestmod=hashlib.sha256)


@pytest.fixture
def pack():
    p = PackFile(hasher_factory)
    p.add_blob(ResourceType.CHUNK, CHUNK_VERSION, MAC1, CHUNK1, 0)
    p.add_blob(ResourceType.CHUNK, CHUNK_VERSION, MAC2, CHUNK2, 0)
    return p


def test_pack_file(pack):
    assert pack.get_blob(MAC1) == CHUNK1
    assert pack.get_blob(MAC2) == CHUNK2
    assert pack.get_blob(bytes([200]) + bytes(31)) is None
    assert pack.footer.count == 2
    assert pack.footer.index_offset == len(pack.blobs)


def test_serialization_round_trip(pack):
    serialized = pack.serialize()
    p2 = packfile_from_bytes(hasher_factory, PACKFILE_VERSION, serialized)
    assert p2.footer.version == pack.footer.version
    assert p2.footer.count == pack.footer.count
    assert p2.footer.index_offset == pack.footer.index_offset
    assert p2.footer.timestamp == pack.footer.timestamp
    assert p2.get_blob(MAC1) == CHUNK1
    assert p2.get_blob(MAC2) == CHUNK2


def test_serialized_layout_length(pack):
    serialized = pack.serialize()
    assert len(serialized) == len(CHUNK1) + len(CHUNK2) + 2 * BLOB_RECORD_SIZE + FOOTER_SIZE
    assert serialized[: len(CHUNK1)] == CHUNK1


def test_serialize_index(pack):
    assert pack.size() == 44
    serialized = pack.serialize_index()
    blobs = index_from_bytes(PACKFILE_VERSION, serialized)
    assert len(blobs) == 2
    blob1, blob2 = blobs
    assert blob1.rtype == ResourceType.CHUNK
    assert blob2.rtype == ResourceType.CHUNK
    assert blob1.version == CHUNK_VERSION
    assert blob2.version == CHUNK_VERSION
    assert blob1.length == len(CHUNK1)
    assert blob2.length == len(CHUNK2)
    assert blob1.mac == MAC1
    assert blob2.mac == MAC2
    assert blob2.offset == len(CHUNK1)


def test_serialize_footer(pack):
    serialized = pack.serialize_footer()
    footer = footer_from_bytes(PACKFILE_VERSION, serialized)
    assert footer.count == 2
    assert footer.index_offset == len(CHUNK1) + len(CHUNK2)


def test_footer_mac_covers_index(pack):
    footer = footer_from_bytes(PACKFILE_VERSION, pack.serialize_footer())
    expected = hmac.new(b"secret", pack.serialize_index(), hashlib.sha256).digest()
    assert footer.index_mac == expected


def test_serialize_data(pack):
    assert pack.serialize_data() == CHUNK1 + CHUNK2


def test_default_configuration():
    c = default_configuration()
    assert c.min_size == 0
    assert c.avg_size == 0
    assert c.max_size == 20971520


def test_tampered_index_is_rejected(pack):
    serialized = bytearray(pack.serialize())
    # flip a byte inside the first MAC of the index
    serialized[len(CHUNK1) + len(CHUNK2) + 8] ^= 0xFF
    with pytest.raises(ValueError, match="index mac mismatch"):
        packfile_from_bytes(hasher_factory, PACKFILE_VERSION, bytes(serialized))


def test_blob_out_of_bounds_is_rejected(pack):
    pack.index[0].length = 1000
    serialized = pack.serialize()
    with pytest.raises(ValueError, match="exceeds"):
        packfile_from_bytes(hasher_factory, PACKFILE_VERSION, serialized)


def test_too_short_packfile():
    with pytest.raises(ValueError):
        packfile_from_bytes(hasher_factory, PACKFILE_VERSION, b"short")


def test_short_footer():
    with pytest.raises(ValueError):
        footer_from_bytes(PACKFILE_VERSION, bytes(FOOTER_SIZE - 1))


def test_truncated_index(pack):
    serialized = pack.serialize_index()
    with pytest.raises(ValueError):
        index_from_bytes(PACKFILE_VERSION, serialized[:-1])


def test_empty_packfile_round_trip():
    p = PackFile(hasher_factory)
    serialized = p.serialize()
    assert len(serialized) == FOOTER_SIZE
    p2 = packfile_from_bytes(hasher_factory, PACKFILE_VERSION, serialized)
    assert p2.index == []
    assert p2.size() == 0