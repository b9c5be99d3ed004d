"""Configuration.

Settings come from a TOML file (``$PINIX_CONFIG``, else
``~/.config/pinix/config.toml``) and are overridden by ``PINIX_*``
environment variables. A missing file means defaults.

    store_root = "~/.local/share/pinix"
    max_jobs = 4
    fetch_timeout = 60.0
    fetch_retries = 3
    fetch_backoff = 0.5
    build_timeout = 0        # 0 disables the timeout
    log_lines = 25
    sandbox = false
    check = false
    keep_failed = false      # keep the build directory of a failed build
"""

from __future__ import annotations

import logging
import os
import tomllib
from dataclasses import dataclass, fields, replace
from pathlib import Path

logger = logging.getLogger(__name__)

ENV_PREFIX = "PINIX_"


def _default_root() -> str:
    data_home = os.environ.get("XDG_DATA_HOME") or os.path.expanduser("~/.local/share")
    return os.path.join(data_home, "pinix")


@dataclass(frozen=True)
class Config:
    store_root: str = ""
    max_jobs: int = 4
    fetch_timeout: float = 60.0
    fetch_retries: int = 3
    fetch_backoff: float = 0.5
    build_timeout: float = 0.0
    log_lines: int = 25
    sandbox: bool = False
    check: bool = False
    keep_failed: bool = False

    def __post_init__(self):
        if not self.store_root:
            object.__setattr__(self, "store_root", _default_root())
        if self.max_jobs < 1:
            raise ValueError("max_jobs must be at least 1")
        if self.fetch_retries < 0:
            raise ValueError("fetch_retries must not be negative")

    def with_overrides(self, **kw) -> Config:
        return replace(self, **{k: v for k, v in kw.items() if v is not None})


def _coerce(kind, raw, key: str):
    if isinstance(raw, str):
        if kind is bool:
            value = raw.strip().lower()
            if value in ("1", "true", "yes", "on"):
                return True
            if value in ("0", "false", "no", "off", ""):
                return False
            raise ValueError(f"{key}: expected a boolean, got {raw!r}")
        try:
            return kind(raw)
        except ValueError:
            raise ValueError(f"{key}: expected {kind.__name__}, got {raw!r}") from None
    if kind is float and isinstance(raw, int) and not isinstance(raw, bool):
        return float(raw)
    if not isinstance(raw, kind) or (kind is int and isinstance(raw, bool)):
        raise ValueError(f"{key}: expected {kind.__name__}, got {raw!r}")
    return raw


def config_path() -> Path:
    explicit = os.environ.get(ENV_PREFIX + "CONFIG")
    if explicit:
        return Path(explicit)
    config_home = os.environ.get("XDG_CONFIG_HOME") or os.path.expanduser("~/.config")
    return Path(config_home) / "pinix" / "config.toml"


def load_config(path: str | Path | None = None, environ: dict[str, str] | None = None) -> Config:
    """Read the config file, then apply environment overrides."""
    environ = os.environ if environ is None else environ
    path = Path(path) if path is not None else config_path()
    types = {f.name: {"int": int, "float": float, "bool": bool, "str": str}[f.type]
             for f in fields(Config)}

    values: dict = {}
    if path.is_file():
        with open(path, "rb") as f:
            data = tomllib.load(f)
        for key, raw in data.items():
            if key not in types:
                logger.warning("%s: ignoring unknown setting %r", path, key)
                continue
            values[key] = _coerce(types[key], raw, key)
        logger.debug("loaded config from %s", path)

    for key, kind in types.items():
        raw = environ.get(ENV_PREFIX + key.upper())
        if raw is not None:
            values[key] = _coerce(kind, raw, ENV_PREFIX + key.upper())

    if "store_root" in values:
        values["store_root"] = os.path.expanduser(values["store_root"])
    return Config(**values)
