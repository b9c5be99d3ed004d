"""Source registry: named, pinned, hash-verified sources.

The registry file is JSON, a superset of niv's ``nix/sources.json``::

    {
      "nixpkgs": {
        "owner": "NixOS",
        "repo": "nixpkgs",
        "branch": "nixos-unstable",
        "rev": "2c7f3c0fb7c08a0814627611d9d7d45ab6d75335",
        "sha256": "0ndyq2y3ahrmpvqqijxwj1sd2qgcpr6rfdyxdm3xpgfp2nkwdp9c",
        "type": "tarball",
        "url": "https://github.com/NixOS/nixpkgs/archive/2c7f3c0fb7c08a0814627611d9d7d45ab6d75335.tar.gz",
        "url_template": "https://github.com/<owner>/<repo>/archive/<rev>.tar.gz"
      }
    }

Accepted field spellings: ``url``/``locator``, ``rev``/``revision``, and
``hash`` (SRI or ``algo:digest``) or ``sha256`` with an optional
``hash_algo`` tag. ``type`` is ``tarball`` (hash of the unpacked tree) or
``file`` (hash of the bytes). Loading does no I/O beyond reading the file.
"""

import json
import logging
from dataclasses import dataclass
from pathlib import Path

from pinix.errors import HashFormatInvalid, MalformedRegistry, UnknownSource
from pinix.hash import ContentHash, parse_hash

logger = logging.getLogger(__name__)

KINDS = ("tarball", "file")
GITHUB_TEMPLATE = "https://github.com/<owner>/<repo>/archive/<rev>.tar.gz"


@dataclass(frozen=True)
class PinEntry:
    name: str
    locator: str
    revision: str
    content_hash: ContentHash
    kind: str = "tarball"

    @property
    def key(self) -> tuple[str, str]:
        return (self.locator, self.revision)


def _expand_template(template: str, entry: dict, key: str) -> str:
    out = template
    for field_name in ("owner", "repo", "rev", "branch", "version"):
        placeholder = f"<{field_name}>"
        if placeholder in out:
            value = entry.get(field_name)
            if field_name == "rev":
                value = entry.get("rev", entry.get("revision"))
            if not isinstance(value, str):
                raise MalformedRegistry(key, f"url_template needs {field_name!r}")
            out = out.replace(placeholder, value)
    return out


def parse_entry(key: str, entry) -> PinEntry:
    if not isinstance(entry, dict):
        raise MalformedRegistry(key, f"expected an object, got {type(entry).__name__}")

    revision = entry.get("rev", entry.get("revision"))
    if not isinstance(revision, str) or not revision:
        raise MalformedRegistry(key, "missing revision ('rev')")

    locator = entry.get("url", entry.get("locator"))
    if locator is None:
        template = entry.get("url_template")
        if template is None and "owner" in entry and "repo" in entry:
            template = GITHUB_TEMPLATE
        if template is not None:
            if not isinstance(template, str):
                raise MalformedRegistry(key, "url_template must be a string")
            locator = _expand_template(template, entry, key)
    if not isinstance(locator, str) or not locator:
        raise MalformedRegistry(key, "missing locator ('url')")

    kind = entry.get("type", "tarball")
    if kind not in KINDS:
        raise MalformedRegistry(key, f"unsupported type {kind!r} (expected one of {', '.join(KINDS)})")

    raw = entry.get("hash", entry.get("sha256"))
    if not isinstance(raw, str):
        raise MalformedRegistry(key, "missing content hash ('sha256' or 'hash')")
    algo = entry.get("hash_algo", entry.get("algo"))
    if algo is None and "hash" not in entry:
        algo = "sha256"
    try:
        content_hash = parse_hash(raw, algo)
    except ValueError as e:
        raise HashFormatInvalid(key, raw, str(e)) from None

    return PinEntry(key, locator, revision, content_hash, kind)


class Registry:
    def __init__(self, entries: dict[str, PinEntry], path: str | None = None):
        self._entries = dict(entries)
        self.path = path

    @classmethod
    def load(cls, path: str | Path) -> "Registry":
        path = str(path)
        try:
            with open(path, encoding="utf-8") as f:
                data = json.load(f)
        except json.JSONDecodeError as e:
            raise MalformedRegistry("<file>", f"invalid JSON: {e}", path) from None
        except UnicodeDecodeError as e:
            raise MalformedRegistry("<file>", f"not UTF-8: {e}", path) from None
        return cls.from_dict(data, path)

    @classmethod
    def from_dict(cls, data, path: str | None = None) -> "Registry":
        if not isinstance(data, dict):
            raise MalformedRegistry("<file>", "top level must be an object", path)
        entries = {}
        for key, entry in data.items():
            if key.startswith("__"):
                continue
            try:
                entries[key] = parse_entry(key, entry)
            except MalformedRegistry as e:
                if path is not None and e.path is None:
                    raise MalformedRegistry(e.key, e.reason, path) from None
                raise
        logger.debug("loaded %d sources from %s", len(entries), path or "<dict>")
        return cls(entries, path)

    def resolve(self, name: str) -> PinEntry:
        try:
            return self._entries[name]
        except KeyError:
            raise UnknownSource(name, list(self._entries)) from None

    def names(self) -> list[str]:
        return sorted(self._entries)

    def __contains__(self, name: str) -> bool:
        return name in self._entries

    def __len__(self) -> int:
        return len(self._entries)
