"""Lazy package sets.

A package set is a mapping from attribute names to Packages in which
nothing is evaluated until it is asked for. Define attributes as
``@package`` methods and let ``self.call`` inject dependencies by
parameter name (the callPackage pattern):

    class Pkgs(PackageSet):
        @package
        def linker(self):
            return self.mk(name="linker", builder="/bin/sh", args=["-c", "echo ld > $out"])

        @package
        def compiler(self):
            return self.call(lambda linker: self.mk(
                name="compiler", builder="/bin/sh",
                args=["-c", f"echo {linker} > $out"], deps=[linker],
            ))

    Pkgs(system="x86_64-linux")["compiler"]

Each attribute is evaluated at most once per set. While an attribute is
being evaluated it holds a sentinel, so asking for it again from inside its
own evaluation is a dependency cycle and raises CyclicDependency with the
chain of attributes involved. Evaluation takes a per-set re-entrant lock,
so concurrent demand for the same attribute waits for one evaluation.
"""

import inspect
import threading
from collections.abc import Mapping

from pinix.errors import AttributeNotFound, CyclicDependency
from pinix.store_path import STORE_DIR
from pinixpkgs.drv import DEFAULT_SYSTEM, Package, drv

_COMPUTING = object()


class package:
    """Marks a PackageSet method as a lazily evaluated package attribute."""

    def __init__(self, fn):
        self.fn = fn
        self.name = fn.__name__
        self.__doc__ = fn.__doc__

    def __set_name__(self, owner, name):
        self.name = name

    def __get__(self, obj, owner=None):
        if obj is None:
            return self
        return obj.force(self.name)


class PackageSet(Mapping):
    def __init__(self, system: str = DEFAULT_SYSTEM, store_dir: str = STORE_DIR):
        self.system = system
        self.store_dir = store_dir
        self._values: dict[str, object] = {}
        self._evaluating: list[str] = []
        self._lock = threading.RLock()

    @property
    def source(self) -> str:
        return type(self).__name__

    def names(self) -> list[str]:
        out = set()
        for klass in type(self).__mro__:
            out.update(k for k, v in vars(klass).items() if isinstance(v, package))
        return sorted(out)

    def _evaluate(self, name: str) -> Package:
        return getattr(type(self), name).fn(self)

    def force(self, name: str) -> Package:
        with self._lock:
            value = self._values.get(name)
            if value is _COMPUTING:
                start = self._evaluating.index(name)
                raise CyclicDependency(self._evaluating[start:] + [name])
            if value is not None:
                return value
            self._values[name] = _COMPUTING
            self._evaluating.append(name)
            try:
                result = self._evaluate(name)
            except BaseException:
                del self._values[name]
                raise
            finally:
                self._evaluating.pop()
            self._values[name] = result
            return result

    def evaluated(self) -> list[str]:
        """Attributes forced so far."""
        with self._lock:
            return sorted(k for k, v in self._values.items() if v is not _COMPUTING)

    def call(self, fn):
        """Call ``fn`` with each parameter looked up as an attribute of the set.

            self.call(lambda bash, coreutils: drv(...))
            # fn(bash=self.bash, coreutils=self.coreutils)
        """
        names = set(self.names())
        kwargs = {}
        for name in inspect.signature(fn).parameters:
            if name == "self":
                continue
            if name not in names:
                raise AttributeNotFound(name, f"{self.source} (required by {fn.__qualname__})")
            kwargs[name] = self.force(name)
        return fn(**kwargs)

    def mk(self, **kw) -> Package:
        """drv() for this set's system and store."""
        kw.setdefault("system", self.system)
        kw.setdefault("store_dir", self.store_dir)
        return drv(**kw)

    # --- Mapping ---

    def __getitem__(self, name: str) -> Package:
        if name not in self.names():
            raise AttributeNotFound(name, self.source)
        return self.force(name)

    def __contains__(self, name) -> bool:
        return name in self.names()

    def __iter__(self):
        return iter(self.names())

    def __len__(self) -> int:
        return len(self.names())

    def get(self, name, default=None):
        if name not in self:
            return default
        return self.force(name)
