"""Storage backends that keep serialized engine envelopes under string keys."""

from __future__ import annotations

import json
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Mapping

from loguru import logger

_FILE_KEY_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")


@dataclass(frozen=True)
class StorageResult:
    """Outcome of writing an envelope to a storage backend."""

    success: bool
    key: str
    size: int = 0
    error: str | None = None


class StorageAdapter(ABC):
    """Interface describing how serialized envelopes are persisted."""

    @abstractmethod
    def save(self, key: str, envelope: Mapping[str, Any]) -> StorageResult:
        """Persist ``envelope`` under ``key``, replacing any previous value."""

    @abstractmethod
    def load(self, key: str) -> Dict[str, Any] | None:
        """Return the envelope stored under ``key`` or ``None`` when absent or unreadable."""

    @abstractmethod
    def delete(self, key: str) -> bool:
        """Remove the stored envelope and report whether anything was removed."""

    @abstractmethod
    def list_keys(self) -> List[str]:
        """Return every stored key in sorted order."""

    @abstractmethod
    def exists(self, key: str) -> bool:
        """Return whether ``key`` currently holds an envelope."""

    @abstractmethod
    def get_stats(self) -> Dict[str, Any]:
        """Return at least ``totalSize`` (bytes of serialized JSON) and ``keyCount``."""

    @abstractmethod
    def clear(self) -> bool:
        """Remove every stored envelope."""


class InMemoryStorageAdapter(StorageAdapter):
    """Keep serialized envelopes in local process memory."""

    def __init__(self) -> None:
        self._entries: Dict[str, str] = {}

    def save(self, key: str, envelope: Mapping[str, Any]) -> StorageResult:
        validated = _validate_key(key)
        try:
            encoded = json.dumps(envelope)
        except (TypeError, ValueError) as exc:
            return StorageResult(False, validated, error=f"Envelope is not serializable: {exc}")
        self._entries[validated] = encoded
        return StorageResult(True, validated, size=len(encoded.encode("utf-8")))

    def load(self, key: str) -> Dict[str, Any] | None:
        encoded = self._entries.get(_validate_key(key))
        if encoded is None:
            return None
        return json.loads(encoded)

    def delete(self, key: str) -> bool:
        return self._entries.pop(_validate_key(key), None) is not None

    def list_keys(self) -> List[str]:
        return sorted(self._entries)

    def exists(self, key: str) -> bool:
        return _validate_key(key) in self._entries

    def get_stats(self) -> Dict[str, Any]:
        return {
            "totalSize": sum(len(value.encode("utf-8")) for value in self._entries.values()),
            "keyCount": len(self._entries),
            "backend": "memory",
        }

    def clear(self) -> bool:
        self._entries.clear()
        return True


class FileStorageAdapter(StorageAdapter):
    """Persist envelopes as JSON files on disk, one ``<key>.json`` per key."""

    def __init__(self, storage_dir: Path | str) -> None:
        self.storage_dir = Path(storage_dir)
        self.storage_dir.mkdir(parents=True, exist_ok=True)

    def save(self, key: str, envelope: Mapping[str, Any]) -> StorageResult:
        path = self._entry_path(key)
        try:
            encoded = json.dumps(envelope, indent=2)
        except (TypeError, ValueError) as exc:
            return StorageResult(False, path.stem, error=f"Envelope is not serializable: {exc}")
        try:
            path.write_text(encoded, encoding="utf-8")
        except OSError as exc:
            logger.warning("Failed to write save file {}: {}", path, exc)
            return StorageResult(False, path.stem, error=f"Failed to write '{path}': {exc}")
        return StorageResult(True, path.stem, size=len(encoded.encode("utf-8")))

    def load(self, key: str) -> Dict[str, Any] | None:
        path = self._entry_path(key)
        if not path.exists():
            return None
        try:
            payload = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("Ignoring unreadable save file {}: {}", path, exc)
            return None
        return payload if isinstance(payload, dict) else None

    def delete(self, key: str) -> bool:
        path = self._entry_path(key)
        if not path.exists():
            return False
        path.unlink()
        return True

    def list_keys(self) -> List[str]:
        return sorted(
            entry_path.stem
            for entry_path in self.storage_dir.glob("*.json")
            if entry_path.is_file()
        )

    def exists(self, key: str) -> bool:
        return self._entry_path(key).is_file()

    def get_stats(self) -> Dict[str, Any]:
        files = [path for path in self.storage_dir.glob("*.json") if path.is_file()]
        return {
            "totalSize": sum(path.stat().st_size for path in files),
            "keyCount": len(files),
            "backend": "file",
            "directory": str(self.storage_dir),
        }

    def clear(self) -> bool:
        for path in self.storage_dir.glob("*.json"):
            if path.is_file():
                path.unlink()
        return True

    def _entry_path(self, key: str) -> Path:
        validated = _validate_key(key)
        if not _FILE_KEY_PATTERN.match(validated):
            raise ValueError(
                f"Storage key '{validated}' may only contain letters, digits, '.', '_' and '-'"
            )
        return self.storage_dir / f"{validated}.json"


def _validate_key(key: str) -> str:
    if not isinstance(key, str):
        raise TypeError("storage key must be a string")
    stripped = key.strip()
    if not stripped:
        raise ValueError("storage key must be a non-empty string")
    return stripped


def create_storage_adapter(kind: str = "memory", **options: Any) -> StorageAdapter:
    """Build a storage adapter by name.

    Args:
        kind: ``"memory"`` or ``"file"``.
        **options: ``storage_dir`` for the file backend (defaults to ``./taleweaver_saves``).

    Raises:
        ValueError: If ``kind`` is not a known backend.
    """

    if kind == "memory":
        return InMemoryStorageAdapter()
    if kind == "file":
        return FileStorageAdapter(options.get("storage_dir") or "./taleweaver_saves")
    raise ValueError(f"Unknown storage adapter type: {kind}")


__all__ = [
    "StorageAdapter",
    "StorageResult",
    "InMemoryStorageAdapter",
    "FileStorageAdapter",
    "create_storage_adapter",
]
