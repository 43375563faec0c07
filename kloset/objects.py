"""Objects and chunks: the content description of stored files."""

from __future__ import annotations

import binascii
import json
import secrets
from dataclasses import dataclass, field

import msgpack
from msgpack.exceptions import UnpackException

from kloset.resources import Version, parse_version

MAC_SIZE = 32
OBJECT_VERSION: Version = parse_version("1.0.0")
CHUNK_VERSION: Version = parse_version("1.0.0")

_ZERO_MAC = bytes(MAC_SIZE)


def mac_to_json(mac: bytes) -> str:
    """Encode a MAC as a JSON string of lowercase hex."""
    return json.dumps(bytes(mac).hex())


def mac_from_json(text: str | bytes) -> bytes:
    """Decode a MAC from its JSON hex string form."""
    value = json.loads(text)
    if not isinstance(value, str):
        raise ValueError("mac must be a JSON string")
    try:
        decoded = binascii.unhexlify(value)
    except binascii.Error as exc:
        raise ValueError(f"invalid mac encoding: {exc}") from exc
    if len(decoded) != MAC_SIZE:
        raise ValueError(f"invalid mac length: {len(decoded)}")
    return decoded


def random_mac() -> bytes:
    """Return a MAC made of random bytes."""
    return secrets.token_bytes(MAC_SIZE)


def _mac_value(value: object) -> bytes:
    if not isinstance(value, (bytes, bytearray)) or len(value) != MAC_SIZE:
        raise ValueError("invalid mac field")
    return bytes(value)


def _unpack_map(data: bytes, what: str) -> dict:
    try:
        value = msgpack.unpackb(data, raw=False)
    except (ValueError, TypeError, UnpackException) as exc:
        raise ValueError(f"invalid {what}: {exc}") from exc
    if not isinstance(value, dict):
        raise ValueError(f"invalid {what}: expected a map")
    return value


@dataclass
class Chunk:
    """One content-defined chunk of an object."""

    version: Version = CHUNK_VERSION
    content_mac: bytes = _ZERO_MAC
    length: int = 0
    entropy: float = 0.0
    flags: int = 0

    def _to_map(self) -> dict:
        return {
            "version": self.version,
            "contentMAC": bytes(self.content_mac),
            "length": self.length,
            "entropy": float(self.entropy),
            "flags": self.flags,
        }

    @classmethod
    def _from_map(cls, fields: dict) -> Chunk:
        if not isinstance(fields, dict):
            raise ValueError("invalid chunk: expected a map")
        return cls(
            version=int(fields.get("version", 0)),
            content_mac=_mac_value(fields.get("contentMAC", _ZERO_MAC)),
            length=int(fields.get("length", 0)),
            entropy=float(fields.get("entropy", 0.0)),
            flags=int(fields.get("flags", 0)),
        )

    def serialize(self) -> bytes:
        return msgpack.packb(self._to_map(), use_bin_type=True)

    def to_json(self) -> str:
        return json.dumps(
            {
                "version": self.version,
                "contentMAC": bytes(self.content_mac).hex(),
                "length": self.length,
                "entropy": self.entropy,
                "flags": self.flags,
            }
        )


def chunk_from_bytes(data: bytes) -> Chunk:
    """Decode a chunk from its msgpack form."""
    return Chunk._from_map(_unpack_map(data, "chunk"))


@dataclass
class Object:
    """A stored file's content: its MAC, chunks and detected properties."""

    version: Version = OBJECT_VERSION
    content_mac: bytes = _ZERO_MAC
    chunks: list[Chunk] = field(default_factory=list)
    content_type: str = ""
    entropy: float = 0.0
    flags: int = 0

    def size(self) -> int:
        return sum(chunk.length for chunk in self.chunks)

    def serialize(self) -> bytes:
        fields: dict = {
            "version": self.version,
            "contentMAC": bytes(self.content_mac),
            "chunks": [chunk._to_map() for chunk in self.chunks] or None,
        }
        if self.content_type:
            fields["content_type"] = self.content_type
        if self.entropy:
            fields["entropy"] = float(self.entropy)
        fields["flags"] = self.flags
        return msgpack.packb(fields, use_bin_type=True)


def object_from_bytes(data: bytes) -> Object:
    """Decode an object from its msgpack form."""
    fields = _unpack_map(data, "object")
    chunks = fields.get("chunks") or []
    if not isinstance(chunks, list):
        raise ValueError("invalid object: chunks must be a list")
    content_type = fields.get("content_type") or ""
    if not isinstance(content_type, str):
        raise ValueError("invalid object: content_type must be a string")
    return Object(
        version=int(fields.get("version", 0)),
        content_mac=_mac_value(fields.get("contentMAC", _ZERO_MAC)),
        chunks=[Chunk._from_map(chunk) for chunk in chunks],
        content_type=content_type,
        entropy=float(fields.get("entropy") or 0.0),
        flags=int(fields.get("flags", 0)),
    )