"""Tests for scheduling builds over the derivation graph."""

import dataclasses
import threading
from collections import Counter

import pytest

from pinix.builder import Builder
from pinix.errors import BuildCancelled, BuildFailure, CyclicDependency
from pinix.store import Store, delete_path
from pinixpkgs.drv import drv
from pinixpkgs.graph import DerivationGraph, plan

# keeps a build busy for a moment using shell builtins only
SPIN = "i=0; while [ $i -lt 20000 ]; do i=$((i+1)); done; "


class CountingBuilder(Builder):
    def __init__(self, store, **kw):
        super().__init__(store, **kw)
        self.built = Counter()
        self._count_lock = threading.Lock()

    def build(self, drv_path, drv, resolved_inputs, cancel=None):
        with self._count_lock:
            self.built[drv_path] += 1
        return super().build(drv_path, drv, resolved_inputs, cancel=cancel)


def sh(store, name, script, deps=()):
    return drv(name=name, builder="/bin/sh", args=["-c", script], deps=list(deps),
               store_dir=store.store_dir)


@pytest.fixture
def diamond(store):
    base = sh(store, "base", SPIN + "echo base > $out")
    left = sh(store, "left", f"read b < {base}; echo left $b > $out", [base])
    right = sh(store, "right", f"read b < {base}; echo right $b > $out", [base])
    top = sh(store, "top", f"read l < {left}; read r < {right}; echo $l $r > $out", [left, right])
    return base, left, right, top


def test_plan_orders_dependencies_first(store, diamond):
    base, left, right, top = diamond
    order = [p.name for p in plan([top])]
    assert order[0] == "base"
    assert order[-1] == "top"
    assert sorted(order) == ["base", "left", "right", "top"]


def test_cycle_is_rejected_before_building(store):
    a = sh(store, "a", "echo a > $out")
    b = sh(store, "b", "echo b > $out", [a])
    a_cyclic = dataclasses.replace(a, deps=(b,))
    builder = CountingBuilder(store)
    with DerivationGraph(store, builder) as graph:
        with pytest.raises(CyclicDependency) as exc:
            graph.realize([a_cyclic])
    assert exc.value.cycle == ["a", "b", "a"]
    assert not builder.built
    assert not store.is_valid(a.drv_path)


def test_realize_builds_closure(store, diamond):
    base, left, right, top = diamond
    with DerivationGraph(store, Builder(store)) as graph:
        results = graph.realize([top])
    assert set(results) == {p.drv_path for p in diamond}
    with open(results[top.drv_path].path) as f:
        assert f.read() == "left base right base\n"
    assert store.is_valid(top.drv_path)


def test_shared_dependency_builds_once(store, diamond):
    base, left, right, top = diamond
    builder = CountingBuilder(store)
    errors = []

    def request(roots):
        try:
            graph.realize(roots)
        except Exception as e:
            errors.append(e)

    with DerivationGraph(store, builder, max_jobs=4) as graph:
        threads = [threading.Thread(target=request, args=([r],)) for r in (left, right, top, left)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
    assert errors == []
    assert builder.built[base.drv_path] == 1
    assert all(n == 1 for n in builder.built.values())


def test_built_outputs_are_reused(store, diamond):
    top = diamond[-1]
    with DerivationGraph(store, Builder(store)) as graph:
        graph.realize([top])
    builder = CountingBuilder(store)
    with DerivationGraph(store, builder) as graph:
        graph.realize([top])
    assert not builder.built


def test_failed_dependency_fails_dependents(store):
    bad = sh(store, "bad", "echo no; exit 1")
    top = sh(store, "top", "echo top > $out", [bad])
    builder = CountingBuilder(store)
    with DerivationGraph(store, builder) as graph:
        with pytest.raises(BuildFailure) as exc:
            graph.realize([top])
    assert exc.value.drv_path == bad.drv_path
    assert top.drv_path not in builder.built
    assert not store.is_valid(top.out)


def test_cancel_stops_pending_and_running_builds(store):
    slow = sh(store, "slow", "while :; do :; done")
    top = sh(store, "top", "echo top > $out", [slow])
    cancel = threading.Event()
    threading.Timer(0.2, cancel.set).start()
    builder = CountingBuilder(store)
    with DerivationGraph(store, builder) as graph:
        with pytest.raises(BuildCancelled):
            graph.realize([top], cancel=cancel)
    assert top.drv_path not in builder.built
    assert not store.is_valid(slow.out)


def test_reproducible_across_clean_stores(tmp_path):
    def build_once():
        with Store(tmp_path / "pinix") as store:
            base = sh(store, "base", "echo base > $out")
            top = sh(store, "top", f"read b < {base}; echo $b $out > $out", [base])
            with DerivationGraph(store, Builder(store)) as graph:
                obj = graph.realize([top])[top.drv_path]
        delete_path(tmp_path / "pinix")
        return obj.path, obj.nar_hash

    assert build_once() == build_once()
