"""Composing built packages into one environment.

``compose()`` is a pure merge over packages that are already built:

  * search paths: each package's output path, in the order given, keeping
    the first occurrence of duplicates;
  * path variables (``PATH`` and friends): ``<out>/<dir>`` for each declared
    directory, deduplicated the same way;
  * variables: the first package to set a variable wins, unless a later
    package is marked ``override``, in which case it replaces the value.

Nothing from the calling environment leaks in unless ``to_environ`` is
asked to inherit it.
"""

import logging
import os
import subprocess
from collections.abc import Mapping
from dataclasses import dataclass, field

from pinix.errors import MissingBuiltOutput
from pinix.store import Store
from pinixpkgs.drv import Package

logger = logging.getLogger(__name__)

# Kept from the caller's environment even in a pure session.
KEEP_VARS = ("HOME", "USER", "LOGNAME", "TERM", "DISPLAY", "TZ", "PAGER", "LANG")


@dataclass
class EnvironmentDescriptor:
    variables: dict[str, str] = field(default_factory=dict)
    search_paths: list[str] = field(default_factory=list)
    path_variables: dict[str, list[str]] = field(default_factory=dict)

    def to_environ(self, base: Mapping[str, str] | None = None, pure: bool = True,
                   keep: tuple[str, ...] = KEEP_VARS) -> dict[str, str]:
        """Render as a process environment.

        A pure environment starts from nothing but ``keep`` taken from
        ``base``; an impure one starts from all of ``base`` and prepends the
        path variables to what is there.
        """
        base = dict(base or {})
        env = dict(base) if not pure else {k: base[k] for k in keep if k in base}
        for var, dirs in self.path_variables.items():
            parts = list(dirs)
            if not pure and env.get(var):
                parts.append(env[var])
            env[var] = os.pathsep.join(parts)
        env.update(self.variables)
        env["IN_PINIX_SHELL"] = "pure" if pure else "impure"
        env["PINIX_PACKAGES"] = " ".join(self.search_paths)
        return env

    def to_dict(self) -> dict:
        return {
            "variables": dict(self.variables),
            "searchPaths": list(self.search_paths),
            "pathVariables": {k: list(v) for k, v in self.path_variables.items()},
        }


def _append_unique(items: list[str], value: str) -> None:
    if value not in items:
        items.append(value)


def compose(selected: list[str], evaluated: Mapping[str, Package], store: Store) -> EnvironmentDescriptor:
    env = EnvironmentDescriptor()
    for attr in selected:
        pkg = evaluated[attr]
        obj = store.query_output(pkg.drv_path)
        if obj is None:
            raise MissingBuiltOutput(attr, pkg.drv_path)

        _append_unique(env.search_paths, obj.path)
        contrib = pkg.contribution
        for var, dirs in contrib.search_paths.items():
            entries = env.path_variables.setdefault(var, [])
            for d in dirs:
                _append_unique(entries, obj.path if d in ("", ".") else f"{obj.path}/{d}")
        for var, value in contrib.variables.items():
            if var in env.variables and not contrib.override:
                logger.debug("%s: keeping earlier %s", attr, var)
                continue
            env.variables[var] = value.replace("@out@", obj.path)
    return env


def spawn(descriptor: EnvironmentDescriptor, argv: list[str], *, pure: bool = True,
          base: Mapping[str, str] | None = None, cwd: str | None = None) -> int:
    """Run ``argv`` inside the composed environment and return its exit status."""
    env = descriptor.to_environ(os.environ if base is None else base, pure=pure)
    logger.debug("spawning %s", argv)
    return subprocess.run(argv, env=env, cwd=cwd).returncode
