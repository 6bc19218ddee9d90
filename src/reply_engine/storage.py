"""Key-value persistence boundary (JSON on disk or plain memory).

Both stores swallow write failures: callers keep their in-memory copy as the
source of truth for the running session and durability catches up on the
next successful write.

Keys used by the engine:
    messages:<conversation_id>    list[dict]
    snapshots:<conversation_id>   list[dict]
    turns:<conversation_id>       int
    settings:summary              dict
"""
from __future__ import annotations

import copy
import hashlib
import json
import logging
import os
import tempfile
import threading
from pathlib import Path
from typing import Any, Dict, Optional
from urllib.parse import quote

logger = logging.getLogger(__name__)


# -----------------------------
# Helpers
# -----------------------------
MAX_STEM = 150


def _safe_key(name: str) -> str:
    """Filesystem-safe file stem; distinct keys get distinct stems.

    Percent-encoding is reversible. Stems past ``MAX_STEM`` keep a readable
    prefix plus a digest of the whole key, which makes them longer than any
    unhashed stem.
    """
    s = quote(name, safe="@-_")
    if len(s) > MAX_STEM:
        digest = hashlib.sha256(name.encode("utf-8")).hexdigest()[:16]
        s = f"{s[:MAX_STEM]}~{digest}"
    return s


def _atomic_write_text(path: Path, text: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with tempfile.NamedTemporaryFile("w", encoding="utf-8", delete=False, dir=str(path.parent)) as tmp:
        tmp.write(text)
        tmp.flush()
        os.fsync(tmp.fileno())
        tmp_name = tmp.name
    os.replace(tmp_name, path)


def messages_key(conversation_id: str) -> str:
    return f"messages:{conversation_id}"


def snapshots_key(conversation_id: str) -> str:
    return f"snapshots:{conversation_id}"


def turns_key(conversation_id: str) -> str:
    return f"turns:{conversation_id}"


SUMMARY_SETTINGS_KEY = "settings:summary"


# -----------------------------
# Stores
# -----------------------------
class InMemoryStore:
    """Dict-backed store; values are deep-copied so callers cannot alias them."""

    def __init__(self) -> None:
        self._data: Dict[str, Any] = {}
        self._lock = threading.RLock()

    def get(self, key: str, default: Any = None) -> Any:
        with self._lock:
            if key not in self._data:
                return default
            return copy.deepcopy(self._data[key])

    def set(self, key: str, value: Any) -> bool:
        try:
            # Same serialisation contract as DiskStore.
            json.dumps(value, ensure_ascii=False)
        except (TypeError, ValueError) as e:
            logger.warning("Refusing unserialisable value for %s: %s", key, e)
            return False
        with self._lock:
            self._data[key] = copy.deepcopy(value)
        return True

    def delete(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)


class DiskStore:
    """One JSON file per key under ``data_dir``.

    Layout:
        data_dir/
          messages%3A<conversation>.json
          snapshots%3A<conversation>.json
          turns%3A<conversation>.json
          settings%3Asummary.json

    Keys are percent-encoded, so two keys never share a file.
    """

    def __init__(self, data_dir: str) -> None:
        self.root = Path(data_dir)
        self.root.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()

    def _path(self, key: str) -> Path:
        return self.root / f"{_safe_key(key)}.json"

    def get(self, key: str, default: Any = None) -> Any:
        path = self._path(key)
        if not path.exists():
            return default
        try:
            with path.open("r", encoding="utf-8") as f:
                return json.load(f)
        except (OSError, ValueError) as e:
            logger.warning("Unreadable store file %s (%s); starting fresh", path, e)
            # Corruption fallback: keep a backup and start fresh.
            with self._lock:
                try:
                    path.rename(path.with_suffix(".corrupt.json"))
                except OSError:
                    pass
            return default

    def set(self, key: str, value: Any) -> bool:
        try:
            text = json.dumps(value, ensure_ascii=False, indent=2)
        except (TypeError, ValueError) as e:
            logger.warning("Could not serialise %s: %s", key, e)
            return False
        with self._lock:
            try:
                _atomic_write_text(self._path(key), text)
            except OSError as e:
                logger.warning("Could not persist %s: %s", key, e)
                return False
        return True

    def delete(self, key: str) -> None:
        with self._lock:
            try:
                self._path(key).unlink(missing_ok=True)
            except OSError as e:
                logger.warning("Could not delete %s: %s", key, e)


def make_store(cfg: Optional[Dict[str, Any]] = None):
    """Create the store described by the ``storage`` config section."""
    st = (cfg or {}).get("storage", {}) or {}
    backend = str(st.get("backend", "disk")).lower()
    if backend == "memory":
        return InMemoryStore()
    return DiskStore(str(st.get("data_dir") or "data"))
