"""Key-value persistence for conversation blobs (thread-safe, atomic)."""
from __future__ import annotations

import hashlib
import os
import re
import tempfile
import threading
from pathlib import Path
from typing import Dict, List, Optional, Protocol


class Store(Protocol):
    """Opaque per-key storage addressed by conversation id."""

    def get(self, key: str) -> Optional[str]: ...

    def put(self, key: str, value: str) -> None: ...

    def delete(self, key: str) -> None: ...


# -----------------------------
# Helpers
# -----------------------------
def _safe_key(key: str) -> str:
    # Readable prefix plus a digest so distinct keys never share a file.
    readable = re.sub(r"[^\w.\-@]+", "_", key.strip())[:64] or "_"
    digest = hashlib.sha256(key.encode("utf-8")).hexdigest()[:12]
    return f"{readable}-{digest}"


def _atomic_write_text(path: Path, text: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with tempfile.NamedTemporaryFile("w", encoding="utf-8", delete=False, dir=str(path.parent)) as tmp:
        tmp.write(text)
        tmp.flush()
        os.fsync(tmp.fileno())
        tmp_name = tmp.name
    os.replace(tmp_name, path)


# -----------------------------
# DiskStore
# -----------------------------
class DiskStore:
    """One JSON file per key under ``data_dir``.

    Layout:
        data_dir/
          <sanitized-key>-<sha256[:12]>.json

    Writes go through a temp file and ``os.replace`` so a crash mid-write
    leaves the previous blob intact. I/O errors are not caught here.
    """

    def __init__(self, data_dir: str) -> None:
        self.root = Path(data_dir)
        self.root.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()

    def _path(self, key: str) -> Path:
        return self.root / f"{_safe_key(key)}.json"

    def get(self, key: str) -> Optional[str]:
        path = self._path(key)
        with self._lock:
            if not path.exists():
                return None
            return path.read_text(encoding="utf-8")

    def put(self, key: str, value: str) -> None:
        with self._lock:
            _atomic_write_text(self._path(key), value)

    def delete(self, key: str) -> None:
        with self._lock:
            self._path(key).unlink(missing_ok=True)

    def keys(self) -> List[str]:
        """Return the file stems of all stored entries."""
        return sorted(p.stem for p in self.root.glob("*.json"))


# -----------------------------
# MemoryStore
# -----------------------------
class MemoryStore:
    """In-process dict store; contents are lost on restart."""

    def __init__(self) -> None:
        self._data: Dict[str, str] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            return self._data.get(key)

    def put(self, key: str, value: str) -> None:
        with self._lock:
            self._data[key] = value

    def delete(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)

    def keys(self) -> List[str]:
        with self._lock:
            return sorted(self._data)


def create_from_config(cfg: Dict) -> Store:
    """Create a store from the ``memory`` section of a config dict."""
    mem_cfg = (cfg or {}).get("memory", {}) if isinstance(cfg, dict) else {}
    backend = str(mem_cfg.get("backend", "disk")).lower()
    if backend == "memory":
        return MemoryStore()
    if backend != "disk":
        raise RuntimeError(f"Unknown memory backend: {backend!r}")
    return DiskStore(str(mem_cfg.get("data_dir") or "data/conversations"))
