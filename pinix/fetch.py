"""Fetching pinned sources into the store.

The fetcher turns a PinEntry into a verified StoreObject:

  1. The store path is computed from the pin's hash alone, so a pin that is
     already valid in the store is returned without any I/O.
  2. Otherwise the transport downloads the locator into scratch space,
     retrying transient failures with exponential backoff.
  3. The bytes (``file`` pins) or the unpacked tree (``tarball`` pins) are
     hashed and compared with the pin. A mismatch raises IntegrityViolation
     and the download is thrown away; it is never retried.
  4. The verified tree is moved to its store path and registered.

Results are memoized per (locator, revision), and concurrent fetches of the
same pin wait on one download.
"""

import http.client
import logging
import os
import re
import shutil
import socket
import tarfile
import threading
import time
import urllib.error
import urllib.parse
import urllib.request
from pathlib import Path

from pinix.errors import FetchFailure, IntegrityViolation, TransientFetchError
from pinix.hash import hash_file
from pinix.nar import nar_hash
from pinix.registry import PinEntry
from pinix.store import FETCHED, Store, StoreObject, delete_path
from pinix.store_path import make_fixed_output_path

logger = logging.getLogger(__name__)

USER_AGENT = "pinix/0.1"


# --- transports ---

class Transport:
    """Copies the content behind a locator to a local path."""

    def handles(self, locator: str) -> bool:
        raise NotImplementedError

    def download(self, locator: str, dest: Path, timeout: float) -> None:
        raise NotImplementedError


class FileTransport(Transport):
    """``file://`` URLs and plain filesystem paths. Directories are copied as trees."""

    def handles(self, locator: str) -> bool:
        return "://" not in locator or locator.startswith("file://")

    def download(self, locator: str, dest: Path, timeout: float) -> None:
        src = urllib.parse.urlparse(locator).path if locator.startswith("file://") else locator
        src = os.path.expanduser(src)
        if os.path.isdir(src):
            shutil.copytree(src, dest, symlinks=True)
        else:
            shutil.copyfile(src, dest)


class UrlTransport(Transport):
    def handles(self, locator: str) -> bool:
        return locator.startswith(("http://", "https://"))

    def download(self, locator: str, dest: Path, timeout: float) -> None:
        req = urllib.request.Request(locator, headers={"User-Agent": USER_AGENT})
        try:
            with urllib.request.urlopen(req, timeout=timeout) as resp, open(dest, "wb") as out:
                shutil.copyfileobj(resp, out)
        except urllib.error.HTTPError as e:
            if e.code >= 500 or e.code == 429:
                raise TransientFetchError(locator, f"HTTP {e.code}") from e
            raise
        except urllib.error.URLError as e:
            if isinstance(e.reason, (socket.timeout, TimeoutError, ConnectionError)):
                raise TransientFetchError(locator, str(e.reason)) from e
            raise
        except http.client.HTTPException as e:
            raise TransientFetchError(locator, f"{type(e).__name__}: {e}") from e
        except (socket.timeout, TimeoutError, ConnectionError) as e:
            raise TransientFetchError(locator, str(e) or type(e).__name__) from e


class DefaultTransport(Transport):
    def __init__(self, transports: list[Transport] | None = None):
        self.transports = transports or [UrlTransport(), FileTransport()]

    def handles(self, locator: str) -> bool:
        return any(t.handles(locator) for t in self.transports)

    def download(self, locator: str, dest: Path, timeout: float) -> None:
        for t in self.transports:
            if t.handles(locator):
                return t.download(locator, dest, timeout)
        raise ValueError(f"no transport for {locator!r}")


# --- fetcher ---

def store_name(pin_name: str) -> str:
    """Store path name for a pin: ``<name>-src`` with unusable characters replaced."""
    name = re.sub(r"[^A-Za-z0-9+\-._?=]", "-", pin_name).lstrip(".")
    return f"{name or 'source'}-src"


def pin_store_path(pin: PinEntry, store_dir: str) -> str:
    return make_fixed_output_path(
        store_name(pin.name), pin.content_hash,
        recursive=pin.kind == "tarball", store_dir=store_dir,
    )


def unpack(archive: Path, dest: Path) -> Path:
    """Unpack a tarball; a single top-level directory becomes the root."""
    dest.mkdir()
    with tarfile.open(archive) as tar:
        tar.extractall(dest, filter="data")
    entries = list(dest.iterdir())
    if len(entries) == 1 and entries[0].is_dir() and not entries[0].is_symlink():
        return entries[0]
    return dest


class Fetcher:
    def __init__(self, store: Store, transport: Transport | None = None, *,
                 timeout: float = 60.0, retries: int = 3, backoff: float = 0.5,
                 sleep=time.sleep):
        self.store = store
        self.transport = transport or DefaultTransport()
        self.timeout = timeout
        self.retries = retries
        self.backoff = backoff
        self._sleep = sleep
        self._cache: dict[tuple[str, str], StoreObject] = {}
        self._locks: dict[tuple[str, str], threading.Lock] = {}
        self._guard = threading.Lock()

    @classmethod
    def from_config(cls, store: Store, config, transport: Transport | None = None) -> "Fetcher":
        return cls(store, transport, timeout=config.fetch_timeout,
                   retries=config.fetch_retries, backoff=config.fetch_backoff)

    def fetch(self, pin: PinEntry) -> StoreObject:
        with self._guard:
            lock = self._locks.setdefault(pin.key, threading.Lock())
        with lock:
            cached = self._cache.get(pin.key)
            if cached is not None:
                return cached
            path = pin_store_path(pin, self.store.store_dir)
            with self.store.path_lock(path):
                obj = self.store.query(path)
                if obj is None:
                    obj = self._fetch_new(pin, path)
                else:
                    logger.debug("%s is already in the store at %s", pin.name, path)
            self._cache[pin.key] = obj
            return obj

    def _fetch_new(self, pin: PinEntry, path: str) -> StoreObject:
        scratch = self.store.temp_dir("fetch")
        try:
            downloaded = self._download(pin, scratch)
            tree = self._verify(pin, downloaded, scratch)
            obj = self.store.add_tree(tree, path, FETCHED)
        finally:
            delete_path(scratch)
        logger.info("fetched %s (%s) into %s", pin.name, pin.revision, path)
        return obj

    def _download(self, pin: PinEntry, scratch: Path) -> Path:
        dest = scratch / "download"
        attempt = 0
        while True:
            attempt += 1
            logger.info("downloading %s from %s (attempt %d)", pin.name, pin.locator, attempt)
            try:
                self.transport.download(pin.locator, dest, self.timeout)
                return dest
            except TransientFetchError as e:
                delete_path(dest)
                if attempt > self.retries:
                    raise FetchFailure(pin.name, pin.locator, pin.revision, attempt, e.reason) from e
                delay = self.backoff * 2 ** (attempt - 1)
                logger.warning("%s; retrying in %.1fs", e, delay)
                self._sleep(delay)
            except (OSError, ValueError, urllib.error.URLError) as e:
                raise FetchFailure(pin.name, pin.locator, pin.revision, attempt, str(e)) from e

    def _verify(self, pin: PinEntry, downloaded: Path, scratch: Path) -> Path:
        expected = pin.content_hash
        if pin.kind == "file":
            tree = downloaded
            actual = hash_file(downloaded, expected.algo)
        else:
            if downloaded.is_dir():
                tree = downloaded
            else:
                try:
                    tree = unpack(downloaded, scratch / "unpacked")
                except (tarfile.TarError, OSError) as e:
                    raise FetchFailure(pin.name, pin.locator, pin.revision, 1,
                                       f"cannot unpack: {e}") from e
            actual, _ = nar_hash(tree, algo=expected.algo)
        if actual != expected:
            raise IntegrityViolation(pin.name, expected.sri, actual.sri, pin.revision)
        return tree
