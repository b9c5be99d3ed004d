"""Composition requests: from a registry file to an environment.

    registry -> fetch the pinned repository -> evaluate it for the system
             -> build the requested packages -> compose their environment

A Session holds the pieces that are shared between requests (fetcher,
builder, derivation graph), so concurrent requests on one session fetch
each pin once and build each derivation once.
"""

import logging
import platform
import sys
import threading
from dataclasses import dataclass

from pinix.builder import Builder
from pinix.config import Config
from pinix.fetch import Fetcher, Transport
from pinix.registry import Registry
from pinix.store import Store
from pinixpkgs.compose import EnvironmentDescriptor, compose
from pinixpkgs.graph import DerivationGraph
from pinixpkgs.repository import evaluate

logger = logging.getLogger(__name__)

_MACHINES = {"amd64": "x86_64", "x64": "x86_64", "arm64": "aarch64", "i686": "i686", "i386": "i686"}


def host_system() -> str:
    """The running machine as ``<arch>-<os>``, e.g. ``x86_64-linux``."""
    machine = platform.machine().lower()
    arch = _MACHINES.get(machine, machine)
    kernel = "darwin" if sys.platform == "darwin" else sys.platform.rstrip("0123456789")
    return f"{arch}-{kernel}"


@dataclass(frozen=True)
class ShellRequest:
    registry_path: str
    packages: tuple[str, ...]
    source: str = "nixpkgs"
    system: str | None = None


class Session:
    def __init__(self, store: Store, config: Config | None = None, *,
                 transport: Transport | None = None, builder: Builder | None = None):
        self.store = store
        self.config = config or Config()
        self.fetcher = Fetcher.from_config(store, self.config, transport)
        self.builder = builder or Builder.from_config(store, self.config, transport)
        self.graph = DerivationGraph(store, self.builder, self.config.max_jobs)

    def close(self) -> None:
        self.graph.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()

    def request(self, req: ShellRequest, cancel: threading.Event | None = None) -> EnvironmentDescriptor:
        system = req.system or host_system()
        registry = Registry.load(req.registry_path)
        pin = registry.resolve(req.source)
        tree = self.fetcher.fetch(pin)
        repo = evaluate(tree, system, store_dir=self.store.store_dir, source=pin.name)
        selected = [repo[name] for name in req.packages]
        logger.info("realizing %s for %s", ", ".join(req.packages), system)
        self.graph.realize(selected, cancel=cancel)
        return compose(list(req.packages), repo, self.store)


def run_request(req: ShellRequest, store: Store, config: Config | None = None, *,
                transport: Transport | None = None,
                cancel: threading.Event | None = None) -> EnvironmentDescriptor:
    with Session(store, config, transport=transport) as session:
        return session.request(req, cancel)
