"""Content-addressed store path computation.

A store path is ``<store_dir>/<hash>-<name>`` where ``<hash>`` is 32 nix32
characters (160 bits). It comes from a fingerprint:

    "<type>:sha256:<hex inner hash>:<store_dir>:<name>"

sha256'd and XOR-folded to 20 bytes. ``<type>`` says what kind of object
the path holds:

    "text[:ref...]"    .drv files and other text (inner = sha256 of the text)
    "source[:ref...]"  fetched trees (inner = NAR hash)
    "output:<out>"     derivation outputs (inner = hash_derivation_modulo)

References are appended sorted with ``:`` separators, and there is no
trailing colon when there are none. The store directory is part of the
fingerprint, so the same recipe gets different paths in different stores.
"""

import re

from pinix import base32
from pinix.hash import ContentHash, compress_hash, sha256

STORE_DIR = "/nix/store"
HASH_BYTES = 20
HASH_CHARS = base32.encoded_length(HASH_BYTES)

_NAME_RE = re.compile(r"^[A-Za-z0-9+\-._?=][A-Za-z0-9+\-._?=]*$")


def check_name(name: str) -> str:
    if not name or len(name) > 211 or name.startswith(".") or not _NAME_RE.match(name):
        raise ValueError(f"invalid store path name: {name!r}")
    return name


def make_store_path(type_prefix: str, inner_hash: bytes, name: str, store_dir: str = STORE_DIR) -> str:
    check_name(name)
    fingerprint = f"{type_prefix}:sha256:{inner_hash.hex()}:{store_dir}:{name}"
    folded = compress_hash(sha256(fingerprint.encode()), HASH_BYTES)
    return f"{store_dir}/{base32.encode(folded)}-{name}"


def _with_refs(kind: str, refs: list[str] | None) -> str:
    return ":".join([kind, *sorted(refs or [])])


def make_text_store_path(name: str, content: bytes, references: list[str] | None = None,
                         store_dir: str = STORE_DIR) -> str:
    return make_store_path(_with_refs("text", references), sha256(content), name, store_dir)


def make_source_store_path(name: str, nar_hash: bytes, references: list[str] | None = None,
                           store_dir: str = STORE_DIR) -> str:
    return make_store_path(_with_refs("source", references), nar_hash, name, store_dir)


def make_fixed_output_path(name: str, content_hash: ContentHash, recursive: bool = False,
                           store_dir: str = STORE_DIR) -> str:
    """Path of a fixed-output object (a fetched pin, a fetchurl recipe).

    Depends only on the declared hash, so it is known before any download.
    A recursive sha256 is a plain source path; anything else goes through an
    intermediate ``fixed:out:`` descriptor.
    """
    if recursive and content_hash.algo == "sha256":
        return make_source_store_path(name, content_hash.digest, store_dir=store_dir)
    method = "r:" if recursive else ""
    inner = sha256(f"fixed:out:{method}{content_hash.algo}:{content_hash.hex}:".encode())
    return make_store_path("output:out", inner, name, store_dir)


def make_output_path(drv_hash: bytes, output_name: str, name: str, store_dir: str = STORE_DIR) -> str:
    """Output path of a derivation. Outputs other than "out" get a suffix."""
    path_name = name if output_name == "out" else f"{name}-{output_name}"
    return make_store_path(f"output:{output_name}", drv_hash, path_name, store_dir)


def split_store_path(path: str, store_dir: str = STORE_DIR) -> tuple[str, str]:
    """Return (hash part, name) of a store path; ValueError if it isn't one."""
    prefix = store_dir.rstrip("/") + "/"
    if not path.startswith(prefix):
        raise ValueError(f"{path!r} is not in the store {store_dir!r}")
    base = path[len(prefix):]
    if "/" in base or len(base) < HASH_CHARS + 2 or base[HASH_CHARS] != "-":
        raise ValueError(f"{path!r} is not a store path")
    digest, name = base[:HASH_CHARS], base[HASH_CHARS + 1:]
    if not base32.is_valid(digest):
        raise ValueError(f"{path!r} has an invalid hash part")
    return digest, name
