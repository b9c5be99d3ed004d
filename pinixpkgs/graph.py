"""Realizing packages: scheduling derivation builds.

``plan()`` orders a dependency closure dependencies-first and rejects
cycles before anything is written or built.

``DerivationGraph.realize()`` builds what a request needs on a bounded
thread pool. Every derivation id gets one node, shared by all requests
running against the same graph:

  * a node whose output is already valid in the store resolves at once;
  * otherwise it is submitted to the pool only when all of its
    dependencies resolved, so independent subtrees build in parallel and
    shared dependencies build once;
  * a failed dependency fails its dependents without building them.

Requests count their interest in each node. When a request is cancelled
it drops its interest; nodes nobody needs any more are cancelled (pending
nodes are never started, running builds are killed). Outputs already
registered stay in the store.
"""

import logging
import threading
from concurrent.futures import FIRST_EXCEPTION, Future, ThreadPoolExecutor, wait
from functools import partial

from pinix.builder import Builder
from pinix.errors import BuildCancelled, CyclicDependency
from pinix.store import Store, StoreObject
from pinixpkgs.drv import Package

logger = logging.getLogger(__name__)

POLL_INTERVAL = 0.05


def plan(roots: list[Package]) -> list[Package]:
    """The closure of ``roots``, each package after all of its dependencies."""
    order: list[Package] = []
    done: set[str] = set()
    active: list[Package] = []

    def visit(pkg: Package) -> None:
        if pkg.drv_path in done:
            return
        for i, p in enumerate(active):
            if p.drv_path == pkg.drv_path:
                raise CyclicDependency([q.name for q in active[i:]] + [pkg.name])
        active.append(pkg)
        for dep in pkg.deps:
            visit(dep)
        active.pop()
        done.add(pkg.drv_path)
        order.append(pkg)

    for root in roots:
        visit(root)
    return order


class _Node:
    def __init__(self, pkg: Package):
        self.pkg = pkg
        self.future: Future = Future()
        self.deps: list[_Node] = []
        self.waiting = 0
        self.interest = 0
        self.submitted = False
        self.cancel = threading.Event()

    @property
    def stale(self) -> bool:
        """Cancelled before finishing; a new request starts over."""
        return self.future.done() and isinstance(self.future.exception(), BuildCancelled)


class DerivationGraph:
    def __init__(self, store: Store, builder: Builder, max_jobs: int = 4):
        self.store = store
        self.builder = builder
        self._executor = ThreadPoolExecutor(max_workers=max_jobs, thread_name_prefix="pinix-build")
        self._nodes: dict[str, _Node] = {}
        self._lock = threading.RLock()

    def close(self) -> None:
        with self._lock:
            for node in self._nodes.values():
                node.cancel.set()
        self._executor.shutdown(wait=True, cancel_futures=True)

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()

    def register_derivations(self, order: list[Package]) -> None:
        """Write each .drv text to the store; its text path must be the package id."""
        for pkg in order:
            obj = self.store.add_text(pkg.name + ".drv", pkg.drv_text(), pkg.drv_references())
            if obj.path != pkg.drv_path:
                raise ValueError(
                    f"{pkg.name}: .drv stored at {obj.path} but its id is {pkg.drv_path} "
                    f"(evaluated for a different store?)"
                )

    def realize(self, roots: list[Package], cancel: threading.Event | None = None) -> dict[str, StoreObject]:
        """Build everything ``roots`` need. Returns {drv path: out object} for the closure."""
        order = plan(roots)
        self.register_derivations(order)

        with self._lock:
            nodes = [self._acquire(pkg) for pkg in order]
        try:
            root_ids = {r.drv_path for r in roots}
            wanted = {n.future for n in nodes if n.pkg.drv_path in root_ids}
            while True:
                finished, pending = wait(wanted, timeout=POLL_INTERVAL, return_when=FIRST_EXCEPTION)
                for f in finished:
                    if f.exception() is not None:
                        raise f.exception()
                if not pending:
                    break
                if cancel is not None and cancel.is_set():
                    raise BuildCancelled(roots[0].drv_path if len(roots) == 1 else
                                         ", ".join(r.drv_path for r in roots))
            return {n.pkg.drv_path: n.future.result() for n in nodes}
        finally:
            with self._lock:
                for node in nodes:
                    self._release(node)

    # --- node bookkeeping, called with self._lock held ---

    def _acquire(self, pkg: Package) -> _Node:
        old = self._nodes.get(pkg.drv_path)
        if old is not None and not old.stale and not old.cancel.is_set():
            old.interest += 1
            return old

        node = _Node(pkg)
        node.interest = 1
        self._nodes[pkg.drv_path] = node

        existing = self.store.query_output(pkg.drv_path)
        if existing is not None and not self.builder.check:
            node.future.set_result(existing)
            return node

        node.deps = [self._nodes[dep.drv_path] for dep in pkg.deps]
        # a cancelled build of the same id may still be running; start after it exits
        draining = old is not None and not old.future.done()
        node.waiting = len(node.deps) + int(draining)
        if node.waiting == 0:
            self._submit(node)
        for dep in node.deps:
            dep.future.add_done_callback(partial(self._dep_done, node))
        if draining:
            old.future.add_done_callback(partial(self._dep_done, node, ignore_errors=True))
        return node

    def _release(self, node: _Node) -> None:
        node.interest -= 1
        if node.interest > 0 or node.future.done():
            return
        node.cancel.set()
        if not node.submitted:
            logger.debug("dropping %s, no request needs it", node.pkg.drv_path)
            node.future.set_exception(BuildCancelled(node.pkg.drv_path))

    def _dep_done(self, node: _Node, dep_future: Future, ignore_errors: bool = False) -> None:
        with self._lock:
            if node.future.done():
                return
            exc = dep_future.exception()
            if exc is not None and not ignore_errors:
                node.future.set_exception(exc)
                return
            node.waiting -= 1
            if node.waiting == 0:
                self._submit(node)

    def _submit(self, node: _Node) -> None:
        if node.interest == 0:
            node.future.set_exception(BuildCancelled(node.pkg.drv_path))
            return
        node.submitted = True
        self._executor.submit(self._build, node)

    # --- worker ---

    def _build(self, node: _Node) -> None:
        if node.future.done():
            return
        pkg = node.pkg
        try:
            if node.cancel.is_set():
                raise BuildCancelled(pkg.drv_path)
            resolved = {dep.pkg.drv_path: dep.future.result() for dep in node.deps}
            obj = self.builder.build(pkg.drv_path, pkg.drv, resolved, cancel=node.cancel)
        except Exception as e:
            with self._lock:
                if not node.future.done():
                    node.future.set_exception(e)
            return
        with self._lock:
            if not node.future.done():
                node.future.set_result(obj)
