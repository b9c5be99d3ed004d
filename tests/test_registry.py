"""Tests for the source registry."""

import json

import pytest

from pinix.errors import EXIT_RESOLUTION, HashFormatInvalid, MalformedRegistry, UnknownSource
from pinix.hash import parse_hash
from pinix.registry import Registry, parse_entry

NIX32 = "0ndyq2y3ahrmpvqqijxwj1sd2qgcpr6rfdyxdm3xpgfp2nkwdp9c"
REV = "2c7f3c0fb7c08a0814627611d9d7d45ab6d75335"

NIV = {
    "__meta": {"version": 1},
    "nixpkgs": {
        "branch": "nixos-unstable",
        "owner": "NixOS",
        "repo": "nixpkgs",
        "rev": REV,
        "sha256": NIX32,
        "type": "tarball",
        "url": f"https://github.com/NixOS/nixpkgs/archive/{REV}.tar.gz",
        "url_template": "https://github.com/<owner>/<repo>/archive/<rev>.tar.gz",
    },
}


def test_niv_file(tmp_path):
    path = tmp_path / "sources.json"
    path.write_text(json.dumps(NIV))
    registry = Registry.load(path)
    assert registry.names() == ["nixpkgs"]
    assert "__meta" not in registry
    pin = registry.resolve("nixpkgs")
    assert pin.revision == REV
    assert pin.kind == "tarball"
    assert pin.content_hash == parse_hash(NIX32, "sha256")
    assert pin.key == (NIV["nixpkgs"]["url"], REV)


def test_url_from_owner_and_repo():
    pin = parse_entry("hello", {"owner": "o", "repo": "r", "rev": "v1", "sha256": NIX32})
    assert pin.locator == "https://github.com/o/r/archive/v1.tar.gz"


def test_url_template_with_version():
    pin = parse_entry("tool", {
        "url_template": "https://example.org/tool-<version>.tar.gz",
        "version": "1.2", "rev": "1.2", "sha256": NIX32,
    })
    assert pin.locator == "https://example.org/tool-1.2.tar.gz"


def test_sri_hash_and_file_kind():
    pin = parse_entry("blob", {
        "url": "https://example.org/blob", "rev": "1",
        "hash": "sha256-LPJNul+wow4m6DsqxbninhsWHlwfp0JecwQzYpOLmCQ=", "type": "file",
    })
    assert pin.kind == "file"
    assert pin.content_hash.algo == "sha256"


def test_unknown_source_lists_known():
    registry = Registry.from_dict({k: v for k, v in NIV.items()})
    with pytest.raises(UnknownSource) as exc:
        registry.resolve("nixpkgs-unstable")
    assert exc.value.known == ["nixpkgs"]
    assert exc.value.exit_code == EXIT_RESOLUTION


@pytest.mark.parametrize("entry,match", [
    ({"url": "u", "sha256": NIX32}, "revision"),
    ({"rev": "1", "sha256": NIX32}, "locator"),
    ({"url": "u", "rev": "1"}, "content hash"),
    ({"url": "u", "rev": "1", "sha256": NIX32, "type": "git"}, "unsupported type"),
    ({"url_template": "<owner>/x", "rev": "1", "sha256": NIX32}, "owner"),
    ("just a string", "expected an object"),
])
def test_malformed_entries(entry, match):
    with pytest.raises(MalformedRegistry, match=match):
        parse_entry("bad", entry)


def test_bad_hash_names_the_entry():
    with pytest.raises(HashFormatInvalid) as exc:
        parse_entry("broken", {"url": "u", "rev": "1", "sha256": "nope"})
    assert exc.value.key == "broken"
    assert exc.value.value == "nope"


def test_invalid_json(tmp_path):
    path = tmp_path / "sources.json"
    path.write_text("{not json")
    with pytest.raises(MalformedRegistry, match="invalid JSON") as exc:
        Registry.load(path)
    assert exc.value.path == str(path)


def test_file_that_is_not_utf8(tmp_path):
    path = tmp_path / "sources.json"
    path.write_bytes(b"\xff\xfe{}")
    with pytest.raises(MalformedRegistry, match="UTF-8") as exc:
        Registry.load(path)
    assert exc.value.path == str(path)
    assert exc.value.exit_code == EXIT_RESOLUTION


def test_malformed_entry_reports_file(tmp_path):
    path = tmp_path / "sources.json"
    path.write_text(json.dumps({"x": {"url": "u"}}))
    with pytest.raises(MalformedRegistry) as exc:
        Registry.load(path)
    assert exc.value.path == str(path)
    assert exc.value.key == "x"
