"""NAR serialization of store trees.

A NAR is a deterministic dump of a file, symlink or directory: no
timestamps, no ownership, only the executable bit, and directory entries in
sorted order. Hashing the NAR is how a tree's content hash is defined, for
fetched sources and built outputs alike.

Every token is written as ``uint64_le(len) + bytes + zero pad to 8``:

    "nix-archive-1" "(" "type" "regular" ["executable" ""] "contents" <data> ")"
                        "type" "symlink" "target" <target> ")"
                        "type" "directory" {"entry" "(" "name" <n> "node" <node> ")"} ")"
"""

import hashlib
import os
import stat
import struct
from pathlib import Path

from pinix.hash import ContentHash


def _token(data: str | bytes) -> bytes:
    if isinstance(data, str):
        data = data.encode()
    return struct.pack("<Q", len(data)) + data + b"\0" * (-len(data) % 8)


class _Rewriter:
    def __init__(self, rewrites: dict[bytes, bytes] | None):
        self.rewrites = rewrites or {}

    def __call__(self, data: bytes) -> bytes:
        for old, new in self.rewrites.items():
            data = data.replace(old, new)
        return data


def dump(path: str | Path, write, rewrites: dict[bytes, bytes] | None = None) -> None:
    """Feed the NAR of ``path`` to ``write`` token by token.

    ``rewrites`` replaces byte strings in file contents and symlink targets
    before they are written, which lets a tree built at a scratch path be
    compared with the same tree built at its real path.
    """
    write(_token("nix-archive-1"))
    _dump_node(Path(path), write, _Rewriter(rewrites))


def _dump_node(path: Path, write, rewrite: _Rewriter) -> None:
    write(_token("("))
    if path.is_symlink():
        write(_token("type"))
        write(_token("symlink"))
        write(_token("target"))
        write(_token(rewrite(os.fsencode(os.readlink(path)))))
    elif path.is_file():
        write(_token("type"))
        write(_token("regular"))
        if path.stat().st_mode & stat.S_IXUSR:
            write(_token("executable"))
            write(_token(""))
        write(_token("contents"))
        write(_token(rewrite(path.read_bytes())))
    elif path.is_dir():
        write(_token("type"))
        write(_token("directory"))
        for name in sorted(os.listdir(path)):
            write(_token("entry"))
            write(_token("("))
            write(_token("name"))
            write(_token(name))
            write(_token("node"))
            _dump_node(path / name, write, rewrite)
            write(_token(")"))
    else:
        raise ValueError(f"unsupported file type: {path}")
    write(_token(")"))


def nar_serialize(path: str | Path) -> bytes:
    parts: list[bytes] = []
    dump(path, parts.append)
    return b"".join(parts)


def nar_hash(path: str | Path, rewrites: dict[bytes, bytes] | None = None,
             algo: str = "sha256") -> tuple[ContentHash, int]:
    """Hash of the NAR of ``path`` and the NAR size, without holding the NAR."""
    h = hashlib.new(algo)
    size = 0

    def write(chunk: bytes) -> None:
        nonlocal size
        h.update(chunk)
        size += len(chunk)

    dump(path, write, rewrites)
    return ContentHash(algo, h.digest()), size
