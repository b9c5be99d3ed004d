"""Nix-flavoured base32, used for store path hashes and pin hashes.

The alphabet drops e, o, t and u, and 5-bit groups are read starting from
the end of the input, so the text is not RFC 4648 base32 in any alphabet.

    20 bytes -> 32 chars (store path hash part)
    32 bytes -> 52 chars (sha256 digest, as written in sources.json)
"""

CHARS = "0123456789abcdfghijklmnpqrsvwxyz"
_VALUES = {c: i for i, c in enumerate(CHARS)}


def encoded_length(n: int) -> int:
    return (n * 8 + 4) // 5


def decoded_length(n: int) -> int:
    return n * 5 // 8


def encode(data: bytes) -> str:
    """Encode bytes, highest 5-bit group first."""
    size = len(data)
    chars = []
    for group in reversed(range(encoded_length(size))):
        bit = group * 5
        byte, shift = divmod(bit, 8)
        value = data[byte] >> shift
        if byte + 1 < size:
            value |= data[byte + 1] << (8 - shift)
        chars.append(CHARS[value & 0x1F])
    return "".join(chars)


def decode(text: str) -> bytes:
    """Inverse of encode(). Raises ValueError on characters outside CHARS."""
    size = decoded_length(len(text))
    out = bytearray(size)
    for group, ch in enumerate(reversed(text)):
        try:
            value = _VALUES[ch]
        except KeyError:
            raise ValueError(f"invalid nix base32 character: {ch!r}") from None
        bit = group * 5
        byte, shift = divmod(bit, 8)
        out[byte] |= (value << shift) & 0xFF
        overflow = value >> (8 - shift)
        if overflow:
            if byte + 1 >= size:
                raise ValueError(f"nix base32 string has trailing bits: {text!r}")
            out[byte + 1] |= overflow
    return bytes(out)


def is_valid(text: str) -> bool:
    return all(ch in _VALUES for ch in text)
