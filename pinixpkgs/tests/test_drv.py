"""Tests for pinixpkgs.drv: package construction and output paths."""

import pytest

from pinix.derivation import parse
from pinix.hash import hash_bytes
from pinixpkgs.drv import EnvContribution, drv
from pinixpkgs.fetchurl import fetchurl


def test_drv_produces_store_paths():
    """drv() should give an output path and a .drv id in the store."""
    pkg = drv(name="test", builder="/bin/sh", args=["-c", "echo > $out"])
    assert pkg.out.startswith("/nix/store/")
    assert pkg.out.endswith("-test")
    assert pkg.drv_path.endswith("-test.drv")
    assert str(pkg) == pkg.out


def test_drv_deterministic():
    """Same recipe, same paths."""
    a = drv(name="det", builder="/bin/sh", args=["-c", "echo > $out"])
    b = drv(name="det", builder="/bin/sh", args=["-c", "echo > $out"])
    assert a.out == b.out
    assert a.drv_path == b.drv_path


@pytest.mark.parametrize("change", [
    {"name": "other"},
    {"args": ["-c", "echo b > $out"]},
    {"system": "aarch64-linux"},
    {"env": {"CFLAGS": "-O2"}},
    {"store_dir": "/opt/store"},
])
def test_recipe_changes_path(change):
    """Any change to the recipe moves the output."""
    base = dict(name="pkg", builder="/bin/sh", args=["-c", "echo a > $out"])
    assert drv(**base).out != drv(**{**base, **change}).out


def test_dependency_change_moves_dependents():
    """A changed dependency changes the paths of everything above it."""
    dep1 = drv(name="dep", builder="/bin/sh", args=["-c", "echo 1 > $out"])
    dep2 = drv(name="dep", builder="/bin/sh", args=["-c", "echo 2 > $out"])
    top1 = drv(name="top", builder="/bin/sh", args=["-c", "echo > $out"], deps=[dep1])
    top2 = drv(name="top", builder="/bin/sh", args=["-c", "echo > $out"], deps=[dep2])
    assert top1.out != top2.out
    assert top1.drv.input_drvs == {dep1.drv_path: ["out"]}


def test_env_has_standard_vars():
    """The builder env carries name, builder, system and the outputs."""
    pkg = drv(name="test", builder="/bin/sh", output_names=["out", "dev"])
    assert pkg.drv.env["name"] == "test"
    assert pkg.drv.env["system"] == "x86_64-linux"
    assert pkg.drv.env["out"] == pkg.out
    assert pkg.drv.env["dev"] == pkg.outputs["dev"]
    assert pkg.outputs["dev"].endswith("-test-dev")


def test_drv_text_round_trips():
    """The stored text parses back to the same derivation."""
    pkg = drv(name="test", builder="/bin/sh", args=["-c", "echo > $out"])
    assert parse(pkg.drv_text()) == pkg.drv


def test_duplicate_deps_collapse():
    dep = drv(name="dep", builder="/bin/sh")
    pkg = drv(name="top", builder="/bin/sh", deps=[dep, dep])
    assert pkg.deps == (dep,)


def test_contribution_is_outside_the_hash():
    """What a package adds to a shell does not change what it builds."""
    a = drv(name="tool", builder="/bin/sh")
    b = drv(name="tool", builder="/bin/sh",
            contribution=EnvContribution(variables={"TOOL": "@out@/bin/tool"}))
    assert a.out == b.out
    assert a.contribution.search_paths == {"PATH": ("bin",)}


def test_fetchurl_path_depends_on_hash_only():
    """Mirrors of the same content share a path."""
    h = hash_bytes(b"tarball").sri
    a = fetchurl("src.tar.gz", "https://a.example/src.tar.gz", h)
    b = fetchurl("src.tar.gz", "https://b.example/src.tar.gz", h)
    assert a.out == b.out
    assert a.drv_path != b.drv_path
    assert a.drv.is_fixed_output
    assert a.drv.builder == "builtin:fetchurl"


def test_fixed_output_needs_one_output():
    with pytest.raises(ValueError, match="exactly one output"):
        drv(name="x", builder="/bin/sh", output_names=["out", "dev"],
            output_hash=hash_bytes(b"").sri)
