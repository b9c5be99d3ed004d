"""Content hashes: parsing, rendering and the store-path hash fold.

Hashes appear in three spellings and all of them are accepted wherever a
hash is read from user input:

    sha256-LCa0a2j/xo/5m0U8HTBBNBNCLXBkg7+g+YpeiGJm564=   (SRI)
    sha256:094qif9n4cq4fdg459qzbhg1c6wywawwaaivx0k0x8xhbyx4vwic
    094qif9n4cq4fdg459qzbhg1c6wywawwaaivx0k0x8xhbyx4vwic   (+ algorithm tag)

The bare form needs the algorithm from elsewhere (the ``hash_algo`` field
of a registry entry, say). Digests may be nix32 or hex.
"""

import base64
import binascii
import hashlib
from dataclasses import dataclass

from pinix import base32

DIGEST_SIZES = {"md5": 16, "sha1": 20, "sha256": 32, "sha512": 64}


@dataclass(frozen=True)
class ContentHash:
    algo: str
    digest: bytes

    @property
    def hex(self) -> str:
        return self.digest.hex()

    @property
    def nix32(self) -> str:
        return base32.encode(self.digest)

    @property
    def sri(self) -> str:
        return f"{self.algo}-{base64.b64encode(self.digest).decode()}"

    def __str__(self) -> str:
        return self.sri


def parse_hash(text: str, algo: str | None = None) -> ContentHash:
    """Parse any accepted spelling. Raises ValueError with the reason."""
    text = text.strip()
    if "-" in text and text.split("-", 1)[0] in DIGEST_SIZES:
        prefix, b64 = text.split("-", 1)
        _check_algo(prefix, algo)
        try:
            digest = base64.b64decode(b64, validate=True)
        except binascii.Error as e:
            raise ValueError(f"bad base64 in SRI hash: {e}") from None
        return _sized(prefix, digest)

    if ":" in text:
        prefix, text = text.split(":", 1)
        _check_algo(prefix, algo)
        algo = prefix

    if algo is None:
        raise ValueError("no hash algorithm given")
    if algo not in DIGEST_SIZES:
        raise ValueError(f"unknown hash algorithm {algo!r}")

    size = DIGEST_SIZES[algo]
    if len(text) == size * 2:
        try:
            return _sized(algo, bytes.fromhex(text))
        except ValueError:
            raise ValueError("bad hex digest") from None
    if len(text) == base32.encoded_length(size):
        return _sized(algo, base32.decode(text))
    raise ValueError(f"wrong length {len(text)} for a {algo} digest")


def _check_algo(prefix: str, algo: str | None) -> None:
    if prefix not in DIGEST_SIZES:
        raise ValueError(f"unknown hash algorithm {prefix!r}")
    if algo is not None and algo != prefix:
        raise ValueError(f"hash is {prefix} but {algo} was declared")


def _sized(algo: str, digest: bytes) -> ContentHash:
    if len(digest) != DIGEST_SIZES[algo]:
        raise ValueError(f"{algo} digest must be {DIGEST_SIZES[algo]} bytes, got {len(digest)}")
    return ContentHash(algo, digest)


def hash_bytes(data: bytes, algo: str = "sha256") -> ContentHash:
    return ContentHash(algo, hashlib.new(algo, data).digest())


def hash_file(path, algo: str = "sha256") -> ContentHash:
    """Flat hash of a file's bytes, read in chunks."""
    h = hashlib.new(algo)
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(1 << 16), b""):
            h.update(chunk)
    return ContentHash(algo, h.digest())


def compress_hash(digest: bytes, size: int) -> bytes:
    """XOR-fold ``digest`` down to ``size`` bytes.

    Byte i of the input lands on byte i % size of the output, so every input
    byte contributes (a plain truncation would drop the tail).
    """
    out = bytearray(size)
    for i, b in enumerate(digest):
        out[i % size] ^= b
    return bytes(out)


def sha256(data: bytes) -> bytes:
    return hashlib.sha256(data).digest()
