"""Tests for the command line and its exit codes."""

import importlib
import json
import logging
import os

import pytest

from conftest import make_tarball, write_tree
from pinix.log import LOGGER_NAMES
from pinix.main import main
from pinix.nar import nar_hash
from pinix.store import Store


@pytest.fixture(autouse=True)
def isolated(tmp_path, monkeypatch):
    monkeypatch.setenv("PINIX_CONFIG", str(tmp_path / "no-config.toml"))
    yield
    for name in LOGGER_NAMES:
        logger = logging.getLogger(name)
        logger.handlers.clear()
        logger.propagate = True
        logger.setLevel(logging.NOTSET)


@pytest.fixture
def store_args(tmp_path):
    return ["--store", str(tmp_path / "store")]


def _shell(store_args, registry, *rest):
    return main([*store_args, "shell", "-r", str(registry), "-s", "toolchain",
                 "--system", "x86_64-linux", *rest])


def test_no_command_prints_help(capsys):
    assert main([]) == 1
    assert "usage" in capsys.readouterr().out


def test_hash_file(tmp_path, capsys):
    f = tmp_path / "hello"
    f.write_text("hello")
    assert main(["hash-file", str(f), "--base32"]) == 0
    assert capsys.readouterr().out.strip() == "sha256:094qif9n4cq4fdg459qzbhg1c6wywawwaaivx0k0x8xhbyx4vwic"


def test_hash_path_sri(tmp_path, capsys):
    f = tmp_path / "hello"
    f.write_text("hello")
    assert main(["hash-path", str(f), "--sri"]) == 0
    assert capsys.readouterr().out.strip() == "sha256-CkMIecJm+LV/QJKg+TXPP6zUi7zN5XYNR0jKQFFx6Wk="


def test_sources(toolchain_registry, capsys):
    assert main(["sources", "-r", str(toolchain_registry)]) == 0
    name, kind, rev, *_ = capsys.readouterr().out.split("\t")
    assert (name, kind, rev) == ("toolchain", "tarball", "rev1")


def test_missing_registry_file(tmp_path):
    assert main(["sources", "-r", str(tmp_path / "nope.json")]) == 1


def test_fetch_prints_store_path(store_args, toolchain_registry, tmp_path, capsys):
    assert main([*store_args, "fetch", "-r", str(toolchain_registry)]) == 0
    out = capsys.readouterr().out.strip()
    assert out.startswith(str(tmp_path / "store" / "store") + "/")
    assert out.endswith("-toolchain-src")


def test_shell_print_env(store_args, toolchain_registry, capsys):
    assert _shell(store_args, toolchain_registry, "--print-env", "compiler", "linker") == 0
    env = json.loads(capsys.readouterr().out)
    assert len(env["searchPaths"]) == 2
    assert env["searchPaths"][0].endswith("-compiler")
    assert env["variables"]["TOOLCHAIN"] == "compiler"


def test_shell_run_returns_command_status(store_args, toolchain_registry):
    assert _shell(store_args, toolchain_registry, "--run", 'test -n "$CC" && exit 7', "compiler") == 7


def test_unknown_attribute_exit_code(store_args, toolchain_registry):
    assert _shell(store_args, toolchain_registry, "--print-env", "nonexistent") == 3


def test_unknown_source_exit_code(store_args, toolchain_registry):
    assert main([*store_args, "fetch", "-r", str(toolchain_registry), "other"]) == 3


def test_unsupported_system_exit_code(store_args, toolchain_registry):
    code = main([*store_args, "shell", "-r", str(toolchain_registry), "-s", "toolchain",
                 "--system", "riscv64-linux", "--print-env", "linker"])
    assert code == 3


def test_integrity_exit_code(store_args, toolchain_registry, toolchain_tree):
    (toolchain_tree / "repository.toml").write_text("tampered = true\n")
    make_tarball(toolchain_tree, toolchain_registry.parent / "toolchain-rev1.tar.gz")
    assert main([*store_args, "fetch", "-r", str(toolchain_registry)]) == 4


def test_fetch_failure_exit_code(store_args, tmp_path):
    registry = tmp_path / "sources.json"
    registry.write_text(json.dumps({"toolchain": {
        "url": str(tmp_path / "missing.tar.gz"), "rev": "1",
        "sha256": "0ndyq2y3ahrmpvqqijxwj1sd2qgcpr6rfdyxdm3xpgfp2nkwdp9c",
    }}))
    assert main([*store_args, "fetch", "-r", str(registry)]) == 5


def test_build_failure_exit_code(store_args, tmp_path):
    tree = write_tree(tmp_path / "broken", {"repository.toml": """\
        systems = ["x86_64-linux"]
        [packages.broken]
        builder = "/bin/sh"
        args = ["-c", "exit 2"]
        """})
    make_tarball(tree, tmp_path / "broken.tar.gz")
    registry = tmp_path / "sources.json"
    registry.write_text(json.dumps({"toolchain": {
        "url": str(tmp_path / "broken.tar.gz"), "rev": "1", "hash": nar_hash(tree)[0].sri,
    }}))
    assert _shell(store_args, registry, "--print-env", "broken") == 6


def test_gc_keeps_added_root(store_args, toolchain_registry, capsys):
    assert _shell(store_args, toolchain_registry, "--print-env", "--add-root", "dev", "compiler") == 0
    paths = json.loads(capsys.readouterr().out)["searchPaths"]
    assert main([*store_args, "gc"]) == 0
    deleted = capsys.readouterr().out
    assert paths[0] not in deleted
    assert "-toolchain-src" in deleted

    assert main([*store_args, "gc", "--list-roots"]) == 0
    assert capsys.readouterr().out.strip() == f"dev\t{paths[0]}"


def test_shell_packages_survive_gc_while_running(store_args, toolchain_registry, tmp_path, monkeypatch):
    seen = {}

    def fake_spawn(env, argv, pure=True):
        with Store(tmp_path / "store") as other:
            other.collect_garbage()
            seen["alive"] = [os.path.exists(p) for p in env.search_paths]
            seen["roots"] = list(other.roots())
        return 0

    monkeypatch.setattr(importlib.import_module("pinixpkgs.compose"), "spawn", fake_spawn)
    assert _shell(store_args, toolchain_registry, "compiler") == 0
    assert seen["alive"] == [True]
    assert [r.startswith("session-") for r in seen["roots"]] == [True]
    with Store(tmp_path / "store") as store:
        assert store.roots() == {}


def test_keep_failed_flag(store_args, tmp_path):
    tree = write_tree(tmp_path / "broken", {"repository.toml": """\
        systems = ["x86_64-linux"]
        [packages.broken]
        builder = "/bin/sh"
        args = ["-c", "exit 2"]
        """})
    make_tarball(tree, tmp_path / "broken.tar.gz")
    registry = tmp_path / "sources.json"
    registry.write_text(json.dumps({"toolchain": {
        "url": str(tmp_path / "broken.tar.gz"), "rev": "1", "hash": nar_hash(tree)[0].sri,
    }}))
    assert _shell(store_args, registry, "--print-env", "--keep-failed", "broken") == 6
    kept = list((tmp_path / "store" / "var" / "tmp").glob("build-*"))
    assert len(kept) == 1


def test_registry_not_utf8_exit_code(store_args, tmp_path):
    registry = tmp_path / "sources.json"
    registry.write_bytes(b"\xff\xfe{}")
    assert main([*store_args, "fetch", "-r", str(registry)]) == 3
