"""Tests for nix base32."""

import pytest

from pinix.base32 import decode, encode, encoded_length, is_valid

# sha256("hello")
HELLO_SHA256 = bytes.fromhex(
    "2cf24dba5fb0a30e26e83b2ac5b9e29e1b161e5c1fa7425e73043362938b9824"
)
# echo -n hello | nix hash file --base32 /dev/stdin
HELLO_NIX32 = "094qif9n4cq4fdg459qzbhg1c6wywawwaaivx0k0x8xhbyx4vwic"


def test_encode_hello_sha256():
    assert encode(HELLO_SHA256) == HELLO_NIX32


def test_decode_hello_sha256():
    assert decode(HELLO_NIX32) == HELLO_SHA256


def test_lengths():
    assert encoded_length(20) == 32
    assert encoded_length(32) == 52
    for n in range(40):
        assert len(encode(bytes(range(n)))) == encoded_length(n)


def test_zero_store_hash():
    assert encode(b"\x00" * 20) == "0" * 32


@pytest.mark.parametrize("data", [b"", b"\x01", b"\xff" * 32, HELLO_SHA256])
def test_decode_inverts_encode(data):
    assert decode(encode(data)) == data


def test_decode_invalid_char():
    with pytest.raises(ValueError, match="invalid nix base32 character"):
        decode("hello!")


def test_excluded_letters_are_invalid():
    assert is_valid(HELLO_NIX32)
    assert not is_valid("e")
    assert not is_valid("u")
