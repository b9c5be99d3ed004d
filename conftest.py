"""Shared fixtures: a scratch store, recipe repositories and registries."""

import json
import tarfile
import textwrap
from pathlib import Path

import pytest

from pinix.nar import nar_hash
from pinix.store import Store


@pytest.fixture
def store(tmp_path):
    with Store(tmp_path / "pinix") as s:
        yield s


def write_tree(root: Path, files: dict[str, str]) -> Path:
    for rel, content in files.items():
        p = root / rel
        p.parent.mkdir(parents=True, exist_ok=True)
        p.write_text(textwrap.dedent(content))
    return root


def make_tarball(src: Path, dest: Path, top: str = "source-0000") -> Path:
    with tarfile.open(dest, "w:gz") as tar:
        tar.add(src, arcname=top)
    return dest


TOOLCHAIN = """\
systems = ["x86_64-linux", "aarch64-linux"]

[packages.linker]
builder = "/bin/sh"
args = ["-c", "echo ld for @system@ > $out"]
[packages.linker.contribution]
search_paths = { PATH = ["bin"], LIBRARY_PATH = ["lib"] }
variables = { LD = "@out@/bin/ld", TOOLCHAIN = "linker" }

[packages.compiler]
builder = "/bin/sh"
args = ["-c", "echo cc using @linker@ > $out"]
inputs = ["linker"]
[packages.compiler.contribution]
search_paths = { PATH = ["bin"] }
variables = { CC = "@out@/bin/cc", TOOLCHAIN = "compiler" }

[packages.formatter]
builder = "/bin/sh"
args = ["-c", "echo fmt > $out"]
"""


@pytest.fixture
def toolchain_tree(tmp_path):
    return write_tree(tmp_path / "toolchain", {"repository.toml": TOOLCHAIN})


@pytest.fixture
def toolchain_registry(tmp_path, toolchain_tree):
    """A registry pinning the toolchain repository as a local tarball."""
    tarball = make_tarball(toolchain_tree, tmp_path / "toolchain-rev1.tar.gz")
    digest, _ = nar_hash(toolchain_tree)
    path = tmp_path / "sources.json"
    path.write_text(json.dumps({
        "toolchain": {
            "url": str(tarball),
            "rev": "rev1",
            "hash": digest.sri,
            "type": "tarball",
        },
    }))
    return path
