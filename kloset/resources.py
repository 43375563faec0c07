"""Resource types stored in a repository and their format versions."""

from __future__ import annotations

from enum import IntEnum

Version = int


class ResourceType(IntEnum):
    """Kind of a blob or resource kept in a repository.

    Values stay below 256: version 1 of the state format stores them in one byte.
    """

    CONFIG = 1
    LOCK = 2
    STATE = 3
    PACKFILE = 4
    SNAPSHOT = 5
    SIGNATURE = 6
    OBJECT = 7
    # 8 is retired and must not be reused.
    CHUNK = 9
    VFS_BTREE = 10
    VFS_NODE = 11
    VFS_ENTRY = 12
    ERROR_BTREE = 13
    ERROR_NODE = 14
    ERROR_ENTRY = 15
    XATTR_BTREE = 16
    XATTR_NODE = 17
    XATTR_ENTRY = 18
    BTREE_ROOT = 19
    BTREE_NODE = 20
    RANDOM = 255

    def __str__(self) -> str:
        return self.name.lower().replace("_", " ")


def types() -> list[ResourceType]:
    """Return every resource type, in declaration order."""
    return list(ResourceType)


def parse_version(text: str) -> Version:
    """Parse a ``major.minor.patch`` string into a packed version number."""
    parts = text.split(".")
    if len(parts) != 3 or not all(part.isdigit() for part in parts):
        raise ValueError(f"invalid version: {text!r}")
    major, minor, patch = (int(part) for part in parts)
    if major > 0xFFFF or minor > 0xFF or patch > 0xFF:
        raise ValueError(f"version component out of range: {text!r}")
    return (major << 16) | (minor << 8) | patch


CURRENT_VERSIONS: dict[ResourceType, Version] = {
    ResourceType.LOCK: parse_version("1.0.0"),
    ResourceType.STATE: parse_version("1.0.0"),
    ResourceType.PACKFILE: parse_version("1.0.0"),
    ResourceType.OBJECT: parse_version("1.0.0"),
    ResourceType.CHUNK: parse_version("1.0.0"),
    ResourceType.RANDOM: parse_version("1.0.0"),
}