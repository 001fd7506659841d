"""Durable key-value slots holding serialized session state."""

from __future__ import annotations

import logging
import os
import re
from pathlib import Path
from typing import Dict, Optional, Protocol

from .errors import PersistenceError

logger = logging.getLogger("gemini_chat.storage")

_KEY_RE = re.compile(r"^[A-Za-z0-9_.-]+$")


class KeyValueSlot(Protocol):
    """Minimal durable storage contract: one text blob per key, absence means empty."""

    def get(self, key: str) -> Optional[str]:
        ...

    def set(self, key: str, value: str) -> None:
        ...

    def delete(self, key: str) -> None:
        ...


class MemorySlot:
    """Process-local slot used for ephemeral runs and tests."""

    def __init__(self) -> None:
        self._data: Dict[str, str] = {}

    def get(self, key: str) -> Optional[str]:
        return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        self._data[key] = value

    def delete(self, key: str) -> None:
        self._data.pop(key, None)


class JsonFileSlot:
    """Store each key as `<key>.json` under a data directory."""

    def __init__(self, data_dir: Path) -> None:
        self._data_dir = data_dir

    def _path_for(self, key: str) -> Path:
        if not _KEY_RE.match(key):
            raise PersistenceError(f"Invalid storage key: {key!r}")
        return self._data_dir / f"{key}.json"

    def get(self, key: str) -> Optional[str]:
        """Purpose: Read the stored blob for a key.
        Inputs/Outputs: Input is the key; output is the text or None when absent.
        Side Effects / State: None.
        Dependencies: Uses Path.read_text.
        Failure Modes: IO and decode errors are wrapped in PersistenceError.
        If Removed: Persisted sessions cannot be restored on startup.
        Testing Notes: Missing file returns None; unreadable file raises.
        """
        # Absence of the file is the canonical empty state.
        path = self._path_for(key)
        if not path.exists():
            return None
        try:
            return path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as exc:
            raise PersistenceError(f"Failed to read {path}: {exc}") from exc

    def set(self, key: str, value: str) -> None:
        """Purpose: Atomically replace the stored blob for a key.
        Inputs/Outputs: Inputs are key and text; no return value.
        Side Effects / State: Creates the data dir, writes a temp file, then renames it.
        Dependencies: Uses os.replace for atomic rename.
        Failure Modes: IO errors are wrapped in PersistenceError; the old blob survives.
        If Removed: Session history is never saved.
        Testing Notes: Verify no temp file is left behind after a successful write.
        """
        # Write beside the target and rename so readers never see a partial file.
        path = self._path_for(key)
        tmp_path = path.with_name(path.name + ".tmp")
        try:
            self._data_dir.mkdir(parents=True, exist_ok=True)
            tmp_path.write_text(value, encoding="utf-8")
            os.replace(tmp_path, path)
        except OSError as exc:
            raise PersistenceError(f"Failed to write {path}: {exc}") from exc
        logger.debug("slot write key=%s bytes=%d", key, len(value))

    def delete(self, key: str) -> None:
        path = self._path_for(key)
        try:
            path.unlink(missing_ok=True)
        except OSError as exc:
            raise PersistenceError(f"Failed to delete {path}: {exc}") from exc
        logger.debug("slot delete key=%s", key)
