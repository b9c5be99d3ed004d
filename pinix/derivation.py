"""Derivations: build recipes in ATerm form.

A derivation is stored as a ``.drv`` text object and its store path is its
id. The text is the canonical serialization:

    Derive(
        [("out","<path>","",""), ...],            outputs (name, path, algo, hash)
        [("<dep>.drv",["out"]), ...],             input derivations
        ["<path>", ...],                          input sources
        "x86_64-linux",                           system
        "/bin/sh",                                builder
        ["-c", "..."],                            args
        [("key","value"), ...]                    environment
    )

Outputs, input derivations, sources and env keys are sorted; args keep
their order. Fixed-output derivations (fetches) carry the expected hash in
their single "out" output, with an "r:" algo prefix for recursive hashes.
"""

from dataclasses import dataclass, field

from pinix.hash import sha256


@dataclass
class DerivationOutput:
    path: str
    hash_algo: str = ""
    hash_value: str = ""


@dataclass
class Derivation:
    outputs: dict[str, DerivationOutput] = field(default_factory=dict)
    input_drvs: dict[str, list[str]] = field(default_factory=dict)
    input_srcs: list[str] = field(default_factory=list)
    platform: str = ""
    builder: str = ""
    args: list[str] = field(default_factory=list)
    env: dict[str, str] = field(default_factory=dict)

    @property
    def is_fixed_output(self) -> bool:
        return list(self.outputs) == ["out"] and self.outputs["out"].hash_algo != ""


# --- parsing ---

_UNESCAPE = {"n": "\n", "r": "\r", "t": "\t"}


class _Reader:
    def __init__(self, text: str):
        self.text = text
        self.pos = 0

    def _fail(self, what: str):
        return ValueError(f"{what} at offset {self.pos} of derivation")

    def peek(self) -> str:
        if self.pos >= len(self.text):
            raise self._fail("unexpected end")
        return self.text[self.pos]

    def literal(self, token: str) -> None:
        if not self.text.startswith(token, self.pos):
            raise self._fail(f"expected {token!r}")
        self.pos += len(token)

    def string(self) -> str:
        self.literal('"')
        out = []
        while True:
            ch = self.peek()
            self.pos += 1
            if ch == '"':
                return "".join(out)
            if ch == "\\":
                esc = self.peek()
                self.pos += 1
                out.append(_UNESCAPE.get(esc, esc))
            else:
                out.append(ch)

    def items(self, item):
        """Parse ``[item,item,...]``."""
        self.literal("[")
        values = []
        while self.peek() != "]":
            if values:
                self.literal(",")
            values.append(item())
        self.literal("]")
        return values

    def pair(self, second):
        self.literal("(")
        a = self.string()
        self.literal(",")
        b = second()
        self.literal(")")
        return a, b

    def output(self) -> tuple[str, DerivationOutput]:
        self.literal("(")
        name = self.string()
        fields = []
        for _ in range(3):
            self.literal(",")
            fields.append(self.string())
        self.literal(")")
        return name, DerivationOutput(*fields)


def parse(text: str) -> Derivation:
    r = _Reader(text)
    r.literal("Derive(")
    outputs = dict(r.items(r.output))
    r.literal(",")
    input_drvs = dict(r.items(lambda: r.pair(lambda: r.items(r.string))))
    r.literal(",")
    input_srcs = r.items(r.string)
    r.literal(",")
    platform = r.string()
    r.literal(",")
    builder = r.string()
    r.literal(",")
    args = r.items(r.string)
    r.literal(",")
    env = dict(r.items(lambda: r.pair(r.string)))
    r.literal(")")
    if r.pos != len(text):
        raise r._fail("trailing data")
    return Derivation(outputs, input_drvs, input_srcs, platform, builder, args, env)


# --- serialization ---

def _q(s: str) -> str:
    s = s.replace("\\", "\\\\").replace('"', '\\"')
    s = s.replace("\n", "\\n").replace("\r", "\\r").replace("\t", "\\t")
    return f'"{s}"'


def _list(parts) -> str:
    return "[" + ",".join(parts) + "]"


def serialize(drv: Derivation) -> str:
    outputs = _list(
        f"({_q(name)},{_q(o.path)},{_q(o.hash_algo)},{_q(o.hash_value)})"
        for name, o in sorted(drv.outputs.items())
    )
    inputs = _list(
        f"({_q(path)},{_list(_q(o) for o in sorted(outs))})"
        for path, outs in sorted(drv.input_drvs.items())
    )
    srcs = _list(_q(s) for s in sorted(drv.input_srcs))
    args = _list(_q(a) for a in drv.args)
    env = _list(f"({_q(k)},{_q(v)})" for k, v in sorted(drv.env.items()))
    return (
        f"Derive({outputs},{inputs},{srcs},{_q(drv.platform)},"
        f"{_q(drv.builder)},{args},{env})"
    )


def hash_derivation_modulo(
    drv: Derivation,
    input_hashes: dict[str, bytes] | None = None,
    mask_outputs: bool = True,
) -> bytes:
    """Hash that output paths are computed from.

    A derivation names its own output paths, so hashing it directly would be
    circular. For a fixed-output derivation only the declared content hash
    matters. Otherwise the output paths are blanked (``mask_outputs``) and
    each input ``.drv`` path is replaced by that input's own modular hash,
    taken from ``input_hashes``; the result is the sha256 of that text.
    Inputs are hashed with their outputs filled in (``mask_outputs=False``).
    """
    if drv.is_fixed_output:
        o = drv.outputs["out"]
        return sha256(f"fixed:out:{o.hash_algo}:{o.hash_value}:{o.path}".encode())

    input_hashes = input_hashes or {}
    replaced: dict[str, list[str]] = {}
    for path, outs in drv.input_drvs.items():
        if path not in input_hashes:
            raise ValueError(f"missing hash for input derivation: {path}")
        replaced[input_hashes[path].hex()] = sorted(outs)

    outputs = drv.outputs
    env = drv.env
    if mask_outputs:
        outputs = {n: DerivationOutput("", o.hash_algo, o.hash_value) for n, o in outputs.items()}
        env = {k: ("" if k in drv.outputs else v) for k, v in env.items()}

    masked = Derivation(
        outputs=outputs,
        input_drvs=replaced,
        input_srcs=list(drv.input_srcs),
        platform=drv.platform,
        builder=drv.builder,
        args=list(drv.args),
        env=env,
    )
    return sha256(serialize(masked).encode())
