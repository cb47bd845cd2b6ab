"""
Key/value storage backends for the signing enclave's encrypted blob.

Storage layout (FileStorage):
    ~/.ledgerstamp/wallets.json   — {key: value} map of hex strings

All writes are atomic (temp file + os.replace) for crash safety, and the
file is created with mode 0600.
"""

from __future__ import annotations

import json
import os
import tempfile
from pathlib import Path
from typing import Protocol

_DEFAULT_ROOT = Path.home() / ".ledgerstamp"


class StorageError(Exception):
    """Error reading or writing enclave storage."""


class KeyValueStorage(Protocol):
    def get_item(self, key: str) -> str | None: ...

    def set_item(self, key: str, value: str) -> None: ...

    def remove_item(self, key: str) -> None: ...


class MemoryStorage:
    """Process-local storage, mainly for tests and short-lived wallets."""

    def __init__(self) -> None:
        self._items: dict[str, str] = {}

    def get_item(self, key: str) -> str | None:
        return self._items.get(key)

    def set_item(self, key: str, value: str) -> None:
        self._items[key] = value

    def remove_item(self, key: str) -> None:
        self._items.pop(key, None)

    def __len__(self) -> int:
        return len(self._items)


class FileStorage:
    """JSON-file backed storage.

    Usage:
        storage = FileStorage()
        enclave = SigningEnclave(storage, wallet_id="main")
    """

    def __init__(self, root: str | Path | None = None, filename: str = "wallets.json") -> None:
        self.root = Path(root) if root else _DEFAULT_ROOT
        self.path = self.root / filename

    def _read(self) -> dict[str, str]:
        """Read the JSON map. Returns empty dict if missing."""
        if not self.path.is_file():
            return {}
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, OSError) as e:
            raise StorageError(f"Cannot read {self.path}: {e}") from e
        if not isinstance(data, dict):
            raise StorageError(f"{self.path} does not contain a JSON object")
        return data

    def _write(self, items: dict[str, str]) -> None:
        """Atomically write the JSON map (temp + rename)."""
        self.root.mkdir(parents=True, exist_ok=True)
        data = json.dumps(items, indent=2, sort_keys=True)
        fd, tmp_path = tempfile.mkstemp(
            dir=str(self.root), suffix=".tmp", prefix=".wallets_"
        )
        try:
            os.write(fd, data.encode("utf-8"))
            os.fsync(fd)
            os.close(fd)
            try:
                os.chmod(tmp_path, 0o600)
            except OSError:
                pass  # Windows may not support chmod 600
            os.replace(tmp_path, str(self.path))
        except Exception:
            try:
                os.close(fd)
            except OSError:
                pass
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
            raise

    def get_item(self, key: str) -> str | None:
        value = self._read().get(key)
        return value if isinstance(value, str) else None

    def set_item(self, key: str, value: str) -> None:
        items = self._read()
        items[key] = value
        self._write(items)

    def remove_item(self, key: str) -> None:
        items = self._read()
        if items.pop(key, None) is not None:
            self._write(items)

    def keys(self) -> list[str]:
        return sorted(self._read())
