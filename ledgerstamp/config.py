"""
Configuration — defaults, TOML file, environment overrides (in that order).

    ~/.ledgerstamp/config.toml

        network = "testnet-10"
        node_url = "ws://127.0.0.1:17210"
        priority_fee = 0
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Mapping

from ledgerstamp import DEFAULT_AUTO_LOCK_MS, DEFAULT_CHUNK_SIZE

log = logging.getLogger(__name__)

DEFAULT_HOME = Path.home() / ".ledgerstamp"

DEFAULT_CONFIG: dict[str, Any] = {
    "network": "testnet-10",
    "node_url": "ws://127.0.0.1:17210",
    "chunk_size": DEFAULT_CHUNK_SIZE,
    "priority_fee": 0,
    "compression": True,
    "auto_lock_ms": DEFAULT_AUTO_LOCK_MS,
    "request_timeout": 30.0,
    "max_retries": 3,
    "storage_dir": str(DEFAULT_HOME),
}

# env var -> (key, converter)
ENV_OVERRIDES = {
    "LEDGERSTAMP_NETWORK": ("network", str),
    "LEDGERSTAMP_NODE_URL": ("node_url", str),
    "LEDGERSTAMP_PRIORITY_FEE": ("priority_fee", int),
    "LEDGERSTAMP_HOME": ("storage_dir", str),
}


def default_config_path(env: Mapping[str, str] | None = None) -> Path:
    env = os.environ if env is None else env
    home = env.get("LEDGERSTAMP_HOME")
    return (Path(home) if home else DEFAULT_HOME) / "config.toml"


def _read_toml(path: Path) -> dict[str, Any]:
    try:
        import tomllib
    except ImportError:
        try:
            import tomli as tomllib
        except ImportError:
            log.warning("tomllib/tomli not available, using default config")
            return {}

    try:
        with open(path, "rb") as f:
            return tomllib.load(f)
    except (OSError, tomllib.TOMLDecodeError) as e:
        log.warning("Failed to load config from %s: %s", path, e)
        return {}


def load_config(
    config_path: str | Path | None = None,
    env: Mapping[str, str] | None = None,
) -> dict[str, Any]:
    """Merge defaults, the TOML file and environment overrides.

    Unknown keys in the file are ignored with a warning. Bad environment
    values are ignored the same way.
    """
    env = os.environ if env is None else env
    config = dict(DEFAULT_CONFIG)

    path = Path(config_path) if config_path else default_config_path(env)
    if path.is_file():
        for key, value in _read_toml(path).items():
            if key not in DEFAULT_CONFIG:
                log.warning("Unknown config key %r in %s", key, path)
                continue
            config[key] = value
    elif config_path:
        log.warning("Config file %s not found, using defaults", path)

    for var, (key, convert) in ENV_OVERRIDES.items():
        raw = env.get(var)
        if raw is None or raw == "":
            continue
        try:
            config[key] = convert(raw)
        except ValueError:
            log.warning("Ignoring %s=%r: not a valid %s", var, raw, convert.__name__)

    return config
