"""Evaluating a fetched recipe repository.

A source tree describes its packages in ``repository.toml``::

    systems = ["x86_64-linux", "aarch64-linux"]

    [packages.linker]
    builder = "/bin/sh"
    args = ["-e", "@src@/build-linker.sh"]

    [packages.compiler]
    builder = "/bin/sh"
    args = ["-c", "echo cc linked by @linker@ > $out"]
    inputs = ["linker"]
    env = { CFLAGS = "-O2" }

    [packages.compiler.contribution]
    search_paths = { PATH = ["bin"] }
    variables = { CC = "@out@/bin/cc" }
    override = false

    [packages.compiler.systems.aarch64-linux]
    env = { CFLAGS = "-O2 -mcpu=generic" }

    [packages.sources]
    fetch = { url = "https://example.org/src.tar.gz", hash = "sha256-...", executable = false }

In ``args`` and ``env`` values, ``@<input>@`` is the output path of that
input, ``@src@`` the source tree (which then becomes an input source) and
``@system@`` the architecture. A recipe may restrict itself with
``platforms = [...]``; a ``systems.<system>`` table replaces keys (and
merges ``env``) for that architecture only.

Only the top level is checked when the repository is evaluated; a recipe
is read when its attribute is first asked for.
"""

import logging
import os
import tomllib
from pathlib import Path

from pinix.errors import AttributeNotFound, MalformedRepository, UnsupportedArchitecture
from pinix.store import StoreObject
from pinixpkgs.drv import EnvContribution, Package
from pinixpkgs.fetchurl import fetchurl
from pinixpkgs.package_set import PackageSet

logger = logging.getLogger(__name__)

MANIFEST = "repository.toml"
RECIPE_KEYS = {"builder", "args", "env", "inputs", "outputs", "fetch", "contribution",
               "systems", "platforms", "name"}


def _str_list(value, key: str, field: str) -> list[str]:
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        raise MalformedRepository(key, f"{field!r} must be a list of strings")
    return value


def _str_dict(value, key: str, field: str) -> dict[str, str]:
    if not isinstance(value, dict) or not all(isinstance(v, str) for v in value.values()):
        raise MalformedRepository(key, f"{field!r} must be a table of strings")
    return value


def _contribution(table, key: str) -> EnvContribution:
    if table is None:
        return EnvContribution.default()
    if not isinstance(table, dict):
        raise MalformedRepository(key, "'contribution' must be a table")
    paths = table.get("search_paths", {"PATH": ["bin"]})
    if not isinstance(paths, dict):
        raise MalformedRepository(key, "'search_paths' must be a table")
    override = table.get("override", False)
    if not isinstance(override, bool):
        raise MalformedRepository(key, "'override' must be a boolean")
    return EnvContribution(
        search_paths={var: tuple(_str_list(dirs, key, f"search_paths.{var}"))
                      for var, dirs in paths.items()},
        variables=dict(_str_dict(table.get("variables", {}), key, "variables")),
        override=override,
    )


class Repository(PackageSet):
    """Lazy mapping from attribute name to Package for one system."""

    def __init__(self, root: str | Path, recipes: dict, system: str, store_dir: str, source: str = ""):
        super().__init__(system=system, store_dir=store_dir)
        self.root = str(root)
        self._recipes = recipes
        self._source = source or os.path.basename(self.root)

    @property
    def source(self) -> str:
        return self._source

    def names(self) -> list[str]:
        return sorted(self._recipes)

    def _recipe(self, name: str) -> dict:
        recipe = self._recipes[name]
        if not isinstance(recipe, dict):
            raise MalformedRepository(name, "recipe must be a table")
        unknown = set(recipe) - RECIPE_KEYS
        if unknown:
            raise MalformedRepository(name, f"unknown keys {sorted(unknown)}")

        platforms = recipe.get("platforms")
        if platforms is not None and self.system not in _str_list(platforms, name, "platforms"):
            raise UnsupportedArchitecture(self.system, platforms, f"{self.source}.{name}")

        variants = recipe.get("systems", {})
        if not isinstance(variants, dict):
            raise MalformedRepository(name, "'systems' must be a table")
        variant = variants.get(self.system, {})
        if not isinstance(variant, dict):
            raise MalformedRepository(name, f"'systems.{self.system}' must be a table")
        merged = {k: v for k, v in recipe.items() if k != "systems"}
        for k, v in variant.items():
            if k == "env" and isinstance(v, dict) and isinstance(merged.get("env"), dict):
                merged["env"] = {**merged["env"], **v}
            else:
                merged[k] = v
        return merged

    def _evaluate(self, name: str) -> Package:
        recipe = self._recipe(name)
        pname = recipe.get("name", name)
        contribution = _contribution(recipe.get("contribution"), name)

        if "fetch" in recipe:
            spec = recipe["fetch"]
            if not isinstance(spec, dict) or not isinstance(spec.get("url"), str) \
                    or not isinstance(spec.get("hash"), str):
                raise MalformedRepository(name, "'fetch' needs 'url' and 'hash'")
            try:
                return fetchurl(pname, spec["url"], spec["hash"],
                                recursive=bool(spec.get("recursive", False)),
                                executable=bool(spec.get("executable", False)),
                                contribution=contribution if "contribution" in recipe else None,
                                store_dir=self.store_dir)
            except ValueError as e:
                raise MalformedRepository(name, str(e)) from None

        builder = recipe.get("builder")
        if not isinstance(builder, str):
            raise MalformedRepository(name, "missing 'builder'")

        deps = []
        substitutions = {"@system@": self.system}
        for input_name in _str_list(recipe.get("inputs", []), name, "inputs"):
            if input_name not in self._recipes:
                raise AttributeNotFound(input_name, f"{self.source} (input of {name})")
            dep = self.force(input_name)
            deps.append(dep)
            substitutions[f"@{input_name}@"] = dep.out

        uses_src = False

        def expand(value: str) -> str:
            nonlocal uses_src
            if "@src@" in value:
                uses_src = True
                value = value.replace("@src@", self.root)
            for marker, path in substitutions.items():
                value = value.replace(marker, path)
            return value

        args = [expand(a) for a in _str_list(recipe.get("args", []), name, "args")]
        env = {k: expand(v) for k, v in _str_dict(recipe.get("env", {}), name, "env").items()}
        outputs = _str_list(recipe.get("outputs", ["out"]), name, "outputs")
        builder = expand(builder)

        logger.debug("evaluated %s.%s for %s", self.source, name, self.system)
        try:
            return self.mk(
                name=pname, builder=builder, args=args, env=env, output_names=outputs,
                deps=deps, srcs=[self.root] if uses_src else [], contribution=contribution,
            )
        except ValueError as e:
            raise MalformedRepository(name, str(e)) from None


def evaluate(source_tree: StoreObject | str | Path, system: str,
             store_dir: str | None = None, source: str = "") -> Repository:
    """Open the repository in ``source_tree`` for ``system``.

    No recipe is read here; attributes evaluate on first access.
    """
    root = Path(source_tree.path if isinstance(source_tree, StoreObject) else source_tree)
    if store_dir is None:
        store_dir = str(root.parent)
    manifest = root / MANIFEST
    if not manifest.is_file():
        raise MalformedRepository(MANIFEST, f"no {MANIFEST} in {root}")
    try:
        with open(manifest, "rb") as f:
            data = tomllib.load(f)
    except tomllib.TOMLDecodeError as e:
        raise MalformedRepository(MANIFEST, str(e)) from None

    systems = _str_list(data.get("systems", []), MANIFEST, "systems")
    if system not in systems:
        raise UnsupportedArchitecture(system, systems, source or root.name)
    recipes = data.get("packages", {})
    if not isinstance(recipes, dict):
        raise MalformedRepository(MANIFEST, "'packages' must be a table")
    return Repository(root, recipes, system, store_dir, source)
