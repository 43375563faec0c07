# kloset

Building blocks for a deduplicating, content-addressed backup repository.

## Modules

- `kloset.resources` – the `ResourceType` enumeration that tags every blob
  stored in a repository, `types()` listing all of them, and `parse_version`,
  which packs a `"major.minor.patch"` string into one integer.
- `kloset.fileinfo` – the `FileInfo` record kept for each backed-up path
  (with `is_dir`, `kind`, `human_size`, `equal`, `equal_ignore_size`),
  `file_info_from_stat` to build one from `os.stat` / `os.lstat`, and the
  sorting helpers `parse_sort_keys` and `sort_file_infos`.
- `kloset.objects` – `Object` and `Chunk` descriptions of file contents with
  msgpack serialization (`serialize`, `object_from_bytes`,
  `chunk_from_bytes`), plus `mac_to_json`, `mac_from_json` and `random_mac`
  for 32-byte MACs.
- `kloset.packfile` – the in-memory `PackFile` container: concatenated blobs,
  a binary index protected by a MAC, and a fixed-size footer. Read back with
  `packfile_from_bytes`, `index_from_bytes` and `footer_from_bytes`.
- `kloset.packer` – `PackerManager`, which spreads queued blobs over packfiles
  in worker threads, pads each with a random blob, and hands full packfiles to
  a flush callback; also `Packer`, a packfile that refuses duplicate blobs.
- `kloset.packwriter` – `PackWriter`, which streams encoded blobs, then the
  index and footer, to a consumer running in its own thread.
- `kloset.platar` – `PlatarPackerManager`, which writes every queued blob, in
  order, into one single streamed packfile through a `PackWriter`.

## Installation

```
pip install .
```

To run the tests:

```
pip install ".[test]"
pytest
```

## Examples

Building a packfile:

```python
import hashlib
import hmac

from kloset.packfile import PackFile
from kloset.resources import ResourceType, parse_version

pack = PackFile(lambda: hmac.new(b"secret", digestmod=hashlib.sha256))
mac = bytes([1]) + bytes(31)
pack.add_blob(ResourceType.CHUNK, parse_version("1.0.0"), mac, b"hello", 0)

assert pack.get_blob(mac) == b"hello"
assert pack.size() == 5
```

Sorting file metadata:

```python
from kloset.fileinfo import FileInfo, parse_sort_keys, sort_file_infos

infos = [FileInfo(name="b", size=10), FileInfo(name="a", size=10), FileInfo(name="c", size=1)]
sort_file_infos(infos, parse_sort_keys("Size,-Name"))
assert [info.name for info in infos] == ["c", "b", "a"]
```

Packing blobs in the background: `PackerManager.run()` blocks, so start it in
a thread, queue blobs with `insert_if_not_present` and `put`, then call
`wait()` to flush everything that is still pending.

## What this package does not do

It holds the data formats and packing machinery only. It has no repository
state journal, no repository locks, no storage backend, no encryption or
compression (the packers take an `encode` callable for that), and no
command-line tool.