"""Building a single derivation.

The builder runs one derivation whose inputs are already in the store:

  * a fresh temporary directory is the working directory and ``TMPDIR``;
  * the environment is the derivation's env plus a few fixed variables,
    nothing is inherited from the caller (``PATH`` is ``/path-not-set``
    unless the recipe sets it);
  * stdin is closed, output goes to the build log, the process gets its own
    process group so a timeout or a cancellation kills everything it spawned;
  * with ``sandbox`` on, the builder also runs in fresh user and network
    namespaces, except fixed-output derivations which need the network.

``builtin:fetchurl`` derivations are handled in-process through the fetch
transport. Whatever the builder wrote to its output paths is hashed and
registered; fixed-output results must match their declared hash.

Failed builds are not retried: the same inputs give the same failure.
"""

import logging
import os
import shutil
import signal
import subprocess
import threading
import time
from collections import deque
from collections.abc import Mapping
from pathlib import Path

from pinix.derivation import Derivation
from pinix.errors import (
    BuildCancelled,
    BuildFailure,
    IntegrityViolation,
    MissingBuiltOutput,
    NonDeterministicBuild,
    PinixError,
)
from pinix.fetch import DefaultTransport, Transport
from pinix.hash import hash_file, parse_hash
from pinix.nar import nar_hash
from pinix.store import Store, StoreObject, delete_path

logger = logging.getLogger(__name__)

FETCHURL = "builtin:fetchurl"
POLL_INTERVAL = 0.05


def tail(path: Path, lines: int) -> str:
    if lines <= 0 or not path.exists():
        return ""
    with open(path, "rb") as f:
        last = deque(f, maxlen=lines)
    return b"".join(last).decode(errors="replace").rstrip("\n")


class Builder:
    def __init__(self, store: Store, *, transport: Transport | None = None,
                 timeout: float = 0.0, log_lines: int = 25, sandbox: bool = False,
                 check: bool = False, keep_failed: bool = False):
        self.store = store
        self.transport = transport or DefaultTransport()
        self.timeout = timeout
        self.log_lines = log_lines
        self.sandbox = sandbox
        self.check = check
        self.keep_failed = keep_failed

    @classmethod
    def from_config(cls, store: Store, config, transport: Transport | None = None) -> "Builder":
        return cls(store, transport=transport, timeout=config.build_timeout,
                   log_lines=config.log_lines, sandbox=config.sandbox, check=config.check,
                   keep_failed=config.keep_failed)

    def build(self, drv_path: str, drv: Derivation, resolved_inputs: Mapping[str, StoreObject],
              cancel: threading.Event | None = None) -> StoreObject:
        """Build ``drv`` (id ``drv_path``) and return its ``out`` object."""
        references = self._references(drv_path, drv, resolved_inputs)
        with self.store.path_lock(drv.outputs["out"].path):
            return self._build_locked(drv_path, drv, references, cancel)

    def _build_locked(self, drv_path, drv, references, cancel):
        out_path = drv.outputs["out"].path
        existing = self.store.query_output(drv_path) or self.store.query(out_path)
        if existing is not None and all(self.store.is_valid(o.path) for o in drv.outputs.values()):
            for name, o in drv.outputs.items():
                self.store.register(o.path, drv_path, references, drv_output=(drv_path, name))
            if self.check and drv.builder != FETCHURL:
                self._check(drv_path, drv, existing, cancel)
            return existing

        for o in drv.outputs.values():
            self.store.delete_invalid(o.path)

        logger.info("building %s", drv_path)
        started = time.monotonic()
        try:
            if drv.builder == FETCHURL:
                self._fetchurl(drv_path, drv)
            else:
                self._run(drv_path, drv, cancel)
            if drv.is_fixed_output:
                self._verify_fixed(drv_path, drv)
            for name, o in drv.outputs.items():
                if not os.path.lexists(o.path):
                    raise BuildFailure(drv_path, 0, tail(self.store.log_path(drv_path), self.log_lines),
                                       reason=f"builder did not produce output {name!r} at {o.path}")
        except PinixError:
            for o in drv.outputs.values():
                self.store.delete_invalid(o.path)
            raise

        result = None
        for name, o in sorted(drv.outputs.items()):
            obj = self.store.register(o.path, drv_path, references, drv_output=(drv_path, name))
            if name == "out":
                result = obj
        logger.info("built %s in %.2fs", out_path, time.monotonic() - started)
        return result

    def _references(self, drv_path: str, drv: Derivation, resolved: Mapping[str, StoreObject]) -> list[str]:
        refs = list(drv.input_srcs)
        for dep, outs in sorted(drv.input_drvs.items()):
            attr = os.path.basename(dep).split("-", 1)[-1].removesuffix(".drv")
            if dep not in resolved:
                raise MissingBuiltOutput(attr, dep)
            refs.append(resolved[dep].path)
            for name in outs:
                if name != "out":
                    other = self.store.query_output(dep, name)
                    if other is None:
                        raise MissingBuiltOutput(f"{attr}!{name}", dep)
                    refs.append(other.path)
        return refs

    # --- running builders ---

    def _environment(self, drv: Derivation, build_dir: Path) -> dict[str, str]:
        env = {
            "PATH": "/path-not-set",
            "HOME": "/homeless-shelter",
            "NIX_STORE": self.store.store_dir,
            "NIX_BUILD_CORES": "1",
        }
        env.update(drv.env)
        for var in ("NIX_BUILD_TOP", "TMPDIR", "TEMPDIR", "TMP", "TEMP", "PWD"):
            env[var] = str(build_dir)
        return env

    def _argv(self, drv: Derivation) -> list[str]:
        argv = [drv.builder, *drv.args]
        if self.sandbox and not drv.is_fixed_output:
            unshare = shutil.which("unshare")
            if unshare is None:
                logger.warning("sandbox requested but unshare(1) is not available")
            else:
                argv = [unshare, "--user", "--map-root-user", "--net", "--", *argv]
        return argv

    def _run(self, drv_path: str, drv: Derivation, cancel: threading.Event | None) -> None:
        build_dir = self.store.temp_dir("build")
        log_path = self.store.log_path(drv_path)
        failed = True
        try:
            with open(log_path, "wb") as log:
                try:
                    proc = subprocess.Popen(
                        self._argv(drv), cwd=build_dir, env=self._environment(drv, build_dir),
                        stdin=subprocess.DEVNULL, stdout=log, stderr=subprocess.STDOUT,
                        start_new_session=True,
                    )
                except OSError as e:
                    raise BuildFailure(drv_path, None, reason=f"cannot run builder {drv.builder}: {e}") from e
                status = self._wait(drv_path, proc, cancel)
            if status != 0:
                reason = (f"builder was killed by signal {-status}" if status < 0
                          else f"builder exited with status {status}")
                raise BuildFailure(drv_path, status, tail(log_path, self.log_lines), reason=reason)
            failed = False
        finally:
            if failed and self.keep_failed:
                logger.info("keeping build directory %s", build_dir)
            else:
                delete_path(build_dir)

    def _wait(self, drv_path: str, proc: subprocess.Popen, cancel: threading.Event | None) -> int:
        deadline = time.monotonic() + self.timeout if self.timeout else None
        while True:
            try:
                return proc.wait(timeout=POLL_INTERVAL)
            except subprocess.TimeoutExpired:
                pass
            if cancel is not None and cancel.is_set():
                _kill(proc)
                raise BuildCancelled(drv_path)
            if deadline is not None and time.monotonic() > deadline:
                _kill(proc)
                raise BuildFailure(drv_path, None, tail(self.store.log_path(drv_path), self.log_lines),
                                   reason=f"timed out after {self.timeout:g}s")

    # --- fixed outputs ---

    def _fetchurl(self, drv_path: str, drv: Derivation) -> None:
        url = drv.env.get("url") or drv.env.get("urls", "").split(" ")[0]
        out = Path(drv.outputs["out"].path)
        if not url:
            raise BuildFailure(drv_path, None, reason="builtin:fetchurl needs a 'url'")
        try:
            self.transport.download(url, out, self.timeout or 60.0)
        except (PinixError, OSError, ValueError) as e:
            delete_path(out)
            raise BuildFailure(drv_path, None, reason=f"downloading {url}: {e}") from e
        if drv.env.get("executable") == "1":
            out.chmod(0o755)

    def _verify_fixed(self, drv_path: str, drv: Derivation) -> None:
        o = drv.outputs["out"]
        recursive = o.hash_algo.startswith("r:")
        algo = o.hash_algo[2:] if recursive else o.hash_algo
        expected = parse_hash(o.hash_value, algo)
        if recursive:
            actual, _ = nar_hash(o.path, algo=algo)
        else:
            actual = hash_file(o.path, algo)
        if actual != expected:
            raise IntegrityViolation(drv_path, expected.sri, actual.sri)

    # --- determinism check ---

    def _check(self, drv_path: str, drv: Derivation, existing: StoreObject,
               cancel: threading.Event | None) -> None:
        """Rebuild at a scratch path and compare with the registered output."""
        out_path = existing.path
        check_path = out_path + ".check"
        swap = {o.path: o.path + ".check" for o in drv.outputs.values()}

        def redirect(s: str) -> str:
            for old, new in swap.items():
                s = s.replace(old, new)
            return s

        rerun = Derivation(
            outputs=drv.outputs, input_drvs=drv.input_drvs, input_srcs=drv.input_srcs,
            platform=drv.platform, builder=drv.builder,
            args=[redirect(a) for a in drv.args],
            env={k: redirect(v) for k, v in drv.env.items()},
        )
        delete_path(Path(check_path))
        logger.info("checking %s for determinism", drv_path)
        try:
            self._run(drv_path, rerun, cancel)
            if not os.path.lexists(check_path):
                raise BuildFailure(drv_path, 0, reason=f"check build did not produce {check_path}")
            actual, _ = nar_hash(check_path, rewrites={check_path.encode(): out_path.encode()})
        finally:
            for scratch in swap.values():
                delete_path(Path(scratch))
        if actual != existing.nar_hash:
            raise NonDeterministicBuild(drv_path, out_path, existing.nar_hash.sri, actual.sri)


def _kill(proc: subprocess.Popen) -> None:
    try:
        os.killpg(proc.pid, signal.SIGKILL)
    except ProcessLookupError:
        pass
    proc.wait()
