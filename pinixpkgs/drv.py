"""High-level derivation constructor.

``drv()`` turns readable arguments into a Package: a Derivation with its
output paths filled in and the store path of its ``.drv`` text, which is
the package's id.

    drv(name="hello", builder="/bin/sh", args=["-c", "echo hi > $out"])

Output paths come from the modular derivation hash, which covers the
recipe and the hashes of the dependencies in order, so the same recipe over
the same inputs always lands on the same paths.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pinix.derivation import Derivation, DerivationOutput, hash_derivation_modulo, serialize
from pinix.hash import parse_hash
from pinix.store_path import STORE_DIR, make_fixed_output_path, make_output_path, make_text_store_path

DEFAULT_SYSTEM = "x86_64-linux"


@dataclass(frozen=True)
class EnvContribution:
    """What a package adds to a composed environment.

    ``search_paths`` maps a variable (``PATH``) to directories relative to
    the package output (``bin``). ``variables`` are plain values, where
    ``@out@`` stands for the output path. Packages marked ``override`` win
    variable conflicts against packages listed before them.
    """

    search_paths: dict[str, tuple[str, ...]] = field(default_factory=dict)
    variables: dict[str, str] = field(default_factory=dict)
    override: bool = False

    @classmethod
    def default(cls) -> EnvContribution:
        return cls(search_paths={"PATH": ("bin",)})


@dataclass(frozen=True)
class Package:
    """A derivation with its output paths and id.

    ``str(pkg)`` is the default output path, so packages can be spliced
    into builder arguments directly.
    """

    name: str
    drv: Derivation
    drv_path: str
    outputs: dict[str, str]
    deps: tuple[Package, ...] = ()
    input_hash: bytes = b""
    contribution: EnvContribution = field(default_factory=EnvContribution.default)

    @property
    def out(self) -> str:
        return self.outputs["out"]

    def __str__(self) -> str:
        return self.out

    def drv_text(self) -> str:
        return serialize(self.drv)

    def drv_references(self) -> list[str]:
        return sorted(self.drv.input_drvs) + sorted(self.drv.input_srcs)


def _unique(deps: list[Package]) -> tuple[Package, ...]:
    seen: dict[str, Package] = {}
    for dep in deps:
        seen.setdefault(dep.drv_path, dep)
    return tuple(seen.values())


def drv(
    name: str,
    builder: str,
    system: str = DEFAULT_SYSTEM,
    args: list[str] | None = None,
    env: dict[str, str] | None = None,
    output_names: list[str] | None = None,
    deps: list[Package] | None = None,
    srcs: list[str] | None = None,
    *,
    output_hash: str | None = None,
    output_hash_algo: str = "sha256",
    output_hash_mode: str = "flat",
    contribution: EnvContribution | None = None,
    store_dir: str = STORE_DIR,
) -> Package:
    """Create a Package.

    Args:
        name:             Store path name of the outputs.
        builder:          Executable that builds the outputs, or ``builtin:fetchurl``.
        system:           Architecture the recipe is for.
        args:             Builder arguments.
        env:              Extra environment variables for the builder.
        output_names:     Outputs (default ``["out"]``).
        deps:             Input packages, in declaration order.
        srcs:             Input store paths that are not derivation outputs.
        output_hash:      Makes this a fixed-output derivation (a fetch).
        output_hash_mode: ``flat`` (hash of the file) or ``recursive`` (NAR hash).
        contribution:     What the package adds to a composed environment.
        store_dir:        Store the paths are computed for.
    """
    args = list(args or [])
    env = dict(env or {})
    output_names = list(output_names or ["out"])
    deps_t = _unique(list(deps or []))
    srcs = sorted(set(srcs or []))

    input_drvs = {dep.drv_path: sorted(dep.outputs) for dep in deps_t}
    d = Derivation(
        outputs={n: DerivationOutput("") for n in output_names},
        input_drvs=input_drvs,
        input_srcs=srcs,
        platform=system,
        builder=builder,
        args=args,
        env=env,
    )
    d.env.setdefault("name", name)
    d.env.setdefault("builder", builder)
    d.env.setdefault("system", system)

    if output_hash is not None:
        if output_names != ["out"]:
            raise ValueError("a fixed-output derivation has exactly one output, 'out'")
        if output_hash_mode not in ("flat", "recursive"):
            raise ValueError(f"unknown output hash mode {output_hash_mode!r}")
        recursive = output_hash_mode == "recursive"
        expected = parse_hash(output_hash, output_hash_algo)
        path = make_fixed_output_path(name, expected, recursive, store_dir)
        algo = ("r:" if recursive else "") + expected.algo
        d.outputs["out"] = DerivationOutput(path, algo, expected.hex)
        d.env["out"] = path
        computed = {"out": path}
    else:
        for n in output_names:
            d.env[n] = ""
        input_hashes = {dep.drv_path: dep.input_hash for dep in deps_t}
        drv_hash = hash_derivation_modulo(d, input_hashes)
        computed = {n: make_output_path(drv_hash, n, name, store_dir) for n in output_names}
        for n, path in computed.items():
            d.outputs[n] = DerivationOutput(path)
            d.env[n] = path

    input_hash = hash_derivation_modulo(
        d, {dep.drv_path: dep.input_hash for dep in deps_t}, mask_outputs=False,
    )
    refs = sorted(input_drvs) + srcs
    drv_path = make_text_store_path(name + ".drv", serialize(d).encode(), refs, store_dir)

    return Package(
        name=name,
        drv=d,
        drv_path=drv_path,
        outputs=computed,
        deps=deps_t,
        input_hash=input_hash,
        contribution=contribution if contribution is not None else EnvContribution.default(),
    )
