"""Content-addressed cache of generation results.

One JSON file per key, ``<root>/<sha256>.json``.  The key covers the *full*
prompt, so any difference in the prompt produces a different file.  Entries
are never mutated; a same-key race simply rewrites identical content.
"""
import hashlib
import json
import math
import os
import tempfile
import time
from pathlib import Path
from typing import Optional

from core.logging import logger

__all__ = ["ResponseCache", "DEFAULT_TTL_SEC"]

DEFAULT_TTL_SEC = 7 * 24 * 60 * 60


class ResponseCache:
    """On-disk TTL cache for (prompt, model) → generated text."""

    def __init__(self, root: Path, ttl_sec: float = DEFAULT_TTL_SEC, namespace: str = "exec") -> None:
        self._root = Path(root)
        self._ttl = ttl_sec
        self._namespace = namespace

    @property
    def root(self) -> Path:
        return self._root

    def key(self, prompt: str, model: str) -> str:
        return hashlib.sha256(f"{self._namespace}:{model}:{prompt}".encode("utf-8")).hexdigest()

    def _path(self, key: str) -> Path:
        return self._root / f"{key}.json"

    # ------------------------------------------------------------------
    def get(self, prompt: str, model: str) -> Optional[str]:
        """Return the cached text, or None when absent, expired or unreadable."""
        path = self._path(self.key(prompt, model))
        try:
            with open(path, "r", encoding="utf-8") as f:
                entry = json.load(f)
        except FileNotFoundError:
            return None
        except (OSError, ValueError) as e:
            logger.warning(f"Ignoring unreadable cache entry {path.name}: {e}")
            return None

        if not isinstance(entry, dict) or not isinstance(entry.get("text"), str):
            return None
        timestamp = entry.get("timestamp")
        if isinstance(timestamp, bool) or not isinstance(timestamp, (int, float)) or not math.isfinite(timestamp):
            logger.warning(f"Ignoring cache entry {path.name} with bad timestamp {timestamp!r}")
            return None
        age_ms = time.time() * 1000 - timestamp
        if age_ms >= self._ttl * 1000:
            # expired entries are ignored, not purged
            return None
        return entry["text"]

    def put(self, prompt: str, model: str, text: str) -> None:
        self._root.mkdir(parents=True, exist_ok=True, mode=0o700)
        key = self.key(prompt, model)
        record = {"text": text, "model": model, "timestamp": int(time.time() * 1000)}

        fd, tmp_path = tempfile.mkstemp(dir=self._root, prefix=f".{key[:16]}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(record, f)
            os.chmod(tmp_path, 0o600)
            os.replace(tmp_path, self._path(key))
        except BaseException:
            Path(tmp_path).unlink(missing_ok=True)
            raise
        logger.debug(f"Cached {len(text)} chars for model '{model}' under {key[:16]}")

    def clear(self) -> int:
        """Delete every entry. Returns the number of files removed."""
        if not self._root.exists():
            return 0
        removed = 0
        for path in self._root.glob("*.json"):
            path.unlink(missing_ok=True)
            removed += 1
        logger.info(f"Cleared {removed} cached generation(s) from {self._root}")
        return removed
