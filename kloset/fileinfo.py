"""File metadata as recorded in snapshots, with sorting helpers."""

from __future__ import annotations

import math
import os
import stat as stat_module
from dataclasses import dataclass
from datetime import datetime, timezone
from functools import cmp_to_key

MODE_DIR = 1 << 31
MODE_APPEND = 1 << 30
MODE_EXCLUSIVE = 1 << 29
MODE_TEMPORARY = 1 << 28
MODE_SYMLINK = 1 << 27
MODE_DEVICE = 1 << 26
MODE_NAMED_PIPE = 1 << 25
MODE_SOCKET = 1 << 24
MODE_SETUID = 1 << 23
MODE_SETGID = 1 << 22
MODE_CHAR_DEVICE = 1 << 21
MODE_STICKY = 1 << 20
MODE_IRREGULAR = 1 << 19
MODE_TYPE = (
    MODE_DIR
    | MODE_SYMLINK
    | MODE_NAMED_PIPE
    | MODE_SOCKET
    | MODE_DEVICE
    | MODE_CHAR_DEVICE
    | MODE_IRREGULAR
)
MODE_PERM = 0o777

_ZERO_TIME = datetime(1, 1, 1, tzinfo=timezone.utc)
_SIZE_SUFFIXES = ("B", "kB", "MB", "GB", "TB", "PB", "EB")
_UINT64_MASK = (1 << 64) - 1


@dataclass
class FileInfo:
    """Metadata of one filesystem entry.

    ``mode`` uses the portable layout: permission bits in the low nine bits
    and the entry type in the high bits (see the ``MODE_*`` constants).
    """

    name: str
    size: int = 0
    mode: int = 0
    mod_time: datetime = _ZERO_TIME
    dev: int = 0
    ino: int = 0
    uid: int = 0
    gid: int = 0
    nlink: int = 0
    username: str = ""
    groupname: str = ""
    flags: int = 0

    def is_dir(self) -> bool:
        return bool(self.mode & MODE_DIR)

    def _is_regular(self) -> bool:
        return self.mode & MODE_TYPE == 0

    def human_size(self) -> str:
        """Size in decimal units, such as ``300 kB``."""
        return _human_bytes(self.size & _UINT64_MASK)

    def equal_ignore_size(self, other: FileInfo) -> bool:
        return (
            self.name == other.name
            and self.mode == other.mode
            and self.mod_time == other.mod_time
            and self.dev == other.dev
            and self.ino == other.ino
            and self.uid == other.uid
            and self.gid == other.gid
            and self.nlink == other.nlink
        )

    def equal(self, other: FileInfo) -> bool:
        return self.size == other.size and self.equal_ignore_size(other)

    def kind(self) -> str:
        """Entry type name: regular, directory, symlink, device, pipe, socket or file."""
        if self._is_regular():
            return "regular"
        if self.mode & MODE_DIR:
            return "directory"
        if self.mode & MODE_SYMLINK:
            return "symlink"
        if self.mode & MODE_DEVICE:
            return "device"
        if self.mode & MODE_NAMED_PIPE:
            return "pipe"
        if self.mode & MODE_SOCKET:
            return "socket"
        return "file"


def _human_bytes(n: int) -> str:
    if n < 10:
        return f"{n} B"
    exp = int(math.floor(math.log(n) / math.log(1000)))
    exp = min(exp, len(_SIZE_SUFFIXES) - 1)
    val = math.floor(n / math.pow(1000, exp) * 10 + 0.5) / 10
    if val < 10:
        return f"{val:.1f} {_SIZE_SUFFIXES[exp]}"
    return f"{val:.0f} {_SIZE_SUFFIXES[exp]}"


def _mode_from_stat(st_mode: int) -> int:
    mode = st_mode & MODE_PERM
    fmt = stat_module.S_IFMT(st_mode)
    if fmt == stat_module.S_IFBLK:
        mode |= MODE_DEVICE
    elif fmt == stat_module.S_IFCHR:
        mode |= MODE_DEVICE | MODE_CHAR_DEVICE
    elif fmt == stat_module.S_IFDIR:
        mode |= MODE_DIR
    elif fmt == stat_module.S_IFIFO:
        mode |= MODE_NAMED_PIPE
    elif fmt == stat_module.S_IFLNK:
        mode |= MODE_SYMLINK
    elif fmt == stat_module.S_IFSOCK:
        mode |= MODE_SOCKET
    if st_mode & stat_module.S_ISGID:
        mode |= MODE_SETGID
    if st_mode & stat_module.S_ISUID:
        mode |= MODE_SETUID
    if st_mode & stat_module.S_ISVTX:
        mode |= MODE_STICKY
    return mode


def file_info_from_stat(name: str, st: os.stat_result) -> FileInfo:
    """Build a FileInfo from a name and the result of ``os.stat``/``os.lstat``."""
    mod_time = datetime.fromtimestamp(st.st_mtime, tz=timezone.utc)
    info = FileInfo(
        name=name,
        size=st.st_size,
        mode=_mode_from_stat(st.st_mode),
        mod_time=mod_time,
    )
    if os.name == "nt":
        if info.name == "\\":
            info.name = "/"
        return info
    info.dev = st.st_dev & _UINT64_MASK
    info.ino = st.st_ino & _UINT64_MASK
    info.uid = st.st_uid & _UINT64_MASK
    info.gid = st.st_gid & _UINT64_MASK
    info.nlink = st.st_nlink & 0xFFFF
    return info


_SORT_FIELDS = {
    "Name": "name",
    "Size": "size",
    "Mode": "mode",
    "ModTime": "mod_time",
    "Dev": "dev",
    "Ino": "ino",
    "Uid": "uid",
    "Gid": "gid",
    "Nlink": "nlink",
    "Username": "username",
    "Groupname": "groupname",
}

# Fields whose values may be compared when sorting.
_ORDERABLE_FIELDS = frozenset(
    {"name", "username", "groupname", "size", "dev", "ino", "uid", "gid"}
)


def parse_sort_keys(text: str) -> list[str]:
    """Parse a comma separated list of sort keys, each optionally prefixed by ``-``."""
    if text == "":
        return []
    seen: set[str] = set()
    keys: list[str] = []
    for raw in text.split(","):
        key = raw.strip()
        lookup = key[1:] if key.startswith("-") else key
        if lookup not in _SORT_FIELDS:
            raise ValueError(f"invalid sort key: {key}")
        if lookup in seen:
            raise ValueError(f"duplicate sort key: {key}")
        seen.add(lookup)
        keys.append(key)
    return keys


def sort_file_infos(infos: list[FileInfo], sort_keys: list[str]) -> None:
    """Sort ``infos`` in place by the given keys; ``-Key`` sorts descending."""

    def compare(a: FileInfo, b: FileInfo) -> int:
        for key in sort_keys:
            descending = key.startswith("-")
            name = key[1:] if descending else key
            attr = _SORT_FIELDS.get(name)
            if attr is None:
                raise ValueError(f"invalid sort key: {name}")
            if attr not in _ORDERABLE_FIELDS:
                raise ValueError(f"unsupported field type for sorting: {name}")
            left, right = getattr(a, attr), getattr(b, attr)
            if left != right:
                result = -1 if left < right else 1
                return -result if descending else result
        return 0

    infos.sort(key=cmp_to_key(compare))