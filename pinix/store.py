"""The content store.

Layout under the store root:

    store/<hash>-<name>     immutable objects (files or trees)
    var/db.sqlite           index: objects, references, derivation outputs, roots
    var/log/<drv name>      build logs
    var/tmp/                scratch space for fetches and builds
    var/locks/<name>.lock   one lock file per store path being written

An object exists for readers only once it is registered in the index
("valid"). Anything else under ``store/`` is a leftover of an interrupted
write and may be deleted. Registration is append-only and idempotent:
registering a path that is already valid keeps the existing entry.
Writers of one path serialize on ``path_lock``, which holds across threads
and processes, so a path is built or fetched once.

The Store is an explicit handle. Open it once (``with Store(root) as
store``), pass it to every component that needs it, close it at exit.
"""

import fcntl
import logging
import os
import shutil
import sqlite3
import stat
import tempfile
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from pinix.hash import ContentHash, parse_hash
from pinix.nar import nar_hash
from pinix.store_path import make_text_store_path, split_store_path

logger = logging.getLogger(__name__)

FETCHED = "fetched"
TEXT = "text"
SESSION_ROOT = "session-"

SCHEMA = """
CREATE TABLE IF NOT EXISTS objects (
    path TEXT PRIMARY KEY,
    nar_hash TEXT NOT NULL,
    nar_size INTEGER NOT NULL,
    produced_by TEXT NOT NULL,
    registered REAL NOT NULL
);
CREATE TABLE IF NOT EXISTS refs (
    referrer TEXT NOT NULL,
    reference TEXT NOT NULL,
    PRIMARY KEY (referrer, reference)
);
CREATE TABLE IF NOT EXISTS outputs (
    drv_path TEXT NOT NULL,
    output TEXT NOT NULL,
    path TEXT NOT NULL,
    PRIMARY KEY (drv_path, output)
);
CREATE TABLE IF NOT EXISTS roots (
    name TEXT NOT NULL,
    path TEXT NOT NULL,
    PRIMARY KEY (name, path)
);
"""


@dataclass(frozen=True)
class StoreObject:
    path: str
    nar_hash: ContentHash
    nar_size: int
    produced_by: str
    references: tuple[str, ...] = ()

    def __str__(self) -> str:
        return self.path


class Store:
    def __init__(self, root: str | Path):
        self.root = Path(root).absolute()
        self.store_dir = str(self.root / "store")
        self.var_dir = self.root / "var"
        self.log_dir = self.var_dir / "log"
        self.tmp_dir = self.var_dir / "tmp"
        self.lock_dir = self.var_dir / "locks"
        self._path_locks: dict[str, threading.Lock] = {}
        self._db: sqlite3.Connection | None = None
        self._lock = threading.RLock()

    # --- lifecycle ---

    def open(self) -> "Store":
        for d in (Path(self.store_dir), self.log_dir, self.tmp_dir, self.lock_dir):
            d.mkdir(parents=True, exist_ok=True)
        self._db = sqlite3.connect(
            self.var_dir / "db.sqlite", timeout=30, check_same_thread=False,
        )
        self._db.executescript(SCHEMA)
        self._db.commit()
        logger.debug("opened store %s", self.store_dir)
        return self

    def close(self) -> None:
        with self._lock:
            if self._db is not None:
                self._db.commit()
                self._db.close()
                self._db = None

    def __enter__(self):
        return self.open()

    def __exit__(self, *exc):
        self.close()

    @property
    def db(self) -> sqlite3.Connection:
        if self._db is None:
            raise RuntimeError("store is not open")
        return self._db

    # --- scratch space ---

    def temp_dir(self, prefix: str) -> Path:
        return Path(tempfile.mkdtemp(prefix=prefix + "-", dir=self.tmp_dir))

    def log_path(self, drv_path: str) -> Path:
        return self.log_dir / Path(drv_path).name

    @contextmanager
    def path_lock(self, path: str):
        """Hold the write lock of store path ``path``.

        A thread lock per path serializes writers in this process and an
        ``flock`` on ``var/locks/<name>.lock`` serializes other processes.
        Check ``is_valid`` again once the lock is held.
        """
        with self._lock:
            lock = self._path_locks.setdefault(path, threading.Lock())
        with lock, open(self.lock_dir / (Path(path).name + ".lock"), "w") as f:
            fcntl.flock(f, fcntl.LOCK_EX)
            try:
                yield
            finally:
                fcntl.flock(f, fcntl.LOCK_UN)

    # --- queries ---

    def is_valid(self, path: str) -> bool:
        with self._lock:
            row = self.db.execute("SELECT 1 FROM objects WHERE path = ?", (path,)).fetchone()
        return row is not None

    def query(self, path: str) -> StoreObject | None:
        with self._lock:
            row = self.db.execute(
                "SELECT nar_hash, nar_size, produced_by FROM objects WHERE path = ?", (path,),
            ).fetchone()
            if row is None:
                return None
            refs = [r for (r,) in self.db.execute(
                "SELECT reference FROM refs WHERE referrer = ? ORDER BY reference", (path,),
            )]
        return StoreObject(path, parse_hash(row[0]), row[1], row[2], tuple(refs))

    def query_output(self, drv_path: str, output: str = "out") -> StoreObject | None:
        """Look up a built output by derivation id without touching the tree."""
        with self._lock:
            row = self.db.execute(
                "SELECT path FROM outputs WHERE drv_path = ? AND output = ?", (drv_path, output),
            ).fetchone()
        if row is None:
            return None
        return self.query(row[0])

    # --- writes ---

    def register(self, path: str, produced_by: str, references=(), *,
                 drv_output: tuple[str, str] | None = None,
                 expected: ContentHash | None = None) -> StoreObject:
        """Hash the tree at ``path`` and make it valid.

        If ``path`` is already valid the existing entry is returned and the
        tree is left alone. ``expected`` is checked against the NAR hash
        before registering; a mismatch raises ValueError.
        """
        split_store_path(path, self.store_dir)
        existing = self.query(path)
        if existing is not None:
            if drv_output is not None:
                self._record_output(drv_output, path)
            return existing

        digest, size = nar_hash(path)
        if expected is not None and digest != expected:
            raise ValueError(f"{path}: NAR hash {digest} != expected {expected}")
        _make_readonly(Path(path))
        refs = tuple(sorted(set(references) - {path}))
        with self._lock:
            self.db.execute(
                "INSERT OR IGNORE INTO objects VALUES (?, ?, ?, ?, ?)",
                (path, digest.sri, size, produced_by, time.time()),
            )
            self.db.executemany(
                "INSERT OR IGNORE INTO refs VALUES (?, ?)", [(path, r) for r in refs],
            )
            if drv_output is not None:
                self._record_output(drv_output, path)
            self.db.commit()
        logger.debug("registered %s (%s)", path, produced_by)
        return StoreObject(path, digest, size, produced_by, refs)

    def _record_output(self, drv_output: tuple[str, str], path: str) -> None:
        drv_path, output = drv_output
        with self._lock:
            self.db.execute(
                "INSERT OR IGNORE INTO outputs VALUES (?, ?, ?)", (drv_path, output, path),
            )
            self.db.commit()

    def add_tree(self, src: str | Path, path: str, produced_by: str, references=(), *,
                 expected: ContentHash | None = None) -> StoreObject:
        """Move a finished tree from scratch space to ``path`` and register it.

        When ``path`` is already valid the new tree is discarded.
        """
        with self._lock:
            if self.is_valid(path):
                delete_path(Path(src))
                return self.query(path)
            self.delete_invalid(path)
            os.replace(src, path)
            return self.register(path, produced_by, references, expected=expected)

    def add_text(self, name: str, content: str, references=()) -> StoreObject:
        """Store a text object (a .drv file, say) at its text path."""
        refs = sorted(references)
        path = make_text_store_path(name, content.encode(), refs, self.store_dir)
        if self.is_valid(path):
            return self.query(path)
        scratch = self.temp_dir("text")
        tmp = scratch / name
        tmp.write_text(content)
        try:
            return self.add_tree(tmp, path, TEXT, refs)
        finally:
            delete_path(scratch)

    def delete_invalid(self, path: str) -> None:
        """Remove a leftover at ``path`` that was never registered."""
        with self._lock:
            if os.path.lexists(path) and not self.is_valid(path):
                logger.info("removing invalid path %s", path)
                delete_path(Path(path))

    # --- garbage collection ---

    def add_root(self, name: str, paths) -> None:
        with self._lock:
            self.db.execute("DELETE FROM roots WHERE name = ?", (name,))
            self.db.executemany("INSERT INTO roots VALUES (?, ?)", [(name, p) for p in paths])
            self.db.commit()

    def remove_root(self, name: str) -> None:
        with self._lock:
            self.db.execute("DELETE FROM roots WHERE name = ?", (name,))
            self.db.commit()

    def roots(self) -> dict[str, list[str]]:
        out: dict[str, list[str]] = {}
        with self._lock:
            for name, path in self.db.execute("SELECT name, path FROM roots ORDER BY name, path"):
                out.setdefault(name, []).append(path)
        return out

    def closure(self, paths) -> set[str]:
        """All paths reachable from ``paths`` through references."""
        seen: set[str] = set()
        todo = list(paths)
        with self._lock:
            while todo:
                p = todo.pop()
                if p in seen:
                    continue
                seen.add(p)
                todo.extend(r for (r,) in self.db.execute(
                    "SELECT reference FROM refs WHERE referrer = ?", (p,),
                ))
        return seen

    @contextmanager
    def session_root(self, paths):
        """Root ``paths`` while the block runs, e.g. for the life of a shell.

        The root is named after this process, so a collector running after
        the process died without cleaning up drops it.
        """
        name = f"{SESSION_ROOT}{os.getpid()}-{threading.get_ident()}"
        self.add_root(name, paths)
        try:
            yield name
        finally:
            self.remove_root(name)

    def _prune_dead_sessions(self) -> None:
        for name in self.roots():
            if not name.startswith(SESSION_ROOT):
                continue
            pid = name[len(SESSION_ROOT):].split("-", 1)[0]
            if pid.isdigit() and not _alive(int(pid)):
                logger.info("dropping root %s of a dead session", name)
                self.remove_root(name)

    def _being_written(self, path: str) -> bool:
        lock_file = self.lock_dir / (Path(path).name + ".lock")
        if not lock_file.exists():
            return False
        with open(lock_file, "w") as f:
            try:
                fcntl.flock(f, fcntl.LOCK_EX | fcntl.LOCK_NB)
            except BlockingIOError:
                return True
            fcntl.flock(f, fcntl.LOCK_UN)
        return False

    def collect_garbage(self, extra_roots=()) -> list[str]:
        """Delete every object not reachable from a root. Returns what was deleted.

        Paths that a builder or fetcher is writing right now are left alone.
        """
        with self._lock:
            self._prune_dead_sessions()
            rooted = [p for paths in self.roots().values() for p in paths]
            live = self.closure([*rooted, *extra_roots])
            dead = []
            for entry in sorted(os.listdir(self.store_dir)):
                path = os.path.join(self.store_dir, entry)
                if path in live or (not self.is_valid(path) and self._being_written(path)):
                    continue
                delete_path(Path(path))
                self.db.execute("DELETE FROM objects WHERE path = ?", (path,))
                self.db.execute("DELETE FROM refs WHERE referrer = ?", (path,))
                self.db.execute("DELETE FROM outputs WHERE path = ?", (path,))
                dead.append(path)
            self.db.commit()
        logger.info("garbage collector deleted %d store paths", len(dead))
        return dead


def _alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


def _make_readonly(path: Path) -> None:
    if path.is_symlink():
        return
    if path.is_dir():
        for child in path.iterdir():
            _make_readonly(child)
    mode = path.stat().st_mode
    path.chmod(mode & ~(stat.S_IWUSR | stat.S_IWGRP | stat.S_IWOTH))


def delete_path(path: Path) -> None:
    """Delete a file or tree, including read-only store trees."""
    if not os.path.lexists(path):
        return
    if path.is_symlink() or not path.is_dir():
        path.unlink()
        return
    for dirpath, dirnames, _ in os.walk(path):
        os.chmod(dirpath, 0o755)
        for d in dirnames:
            full = os.path.join(dirpath, d)
            if not os.path.islink(full):
                os.chmod(full, 0o755)
    shutil.rmtree(path)
