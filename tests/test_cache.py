"""Tests for the on-disk response cache."""
import json
import os
import stat
import sys
import time
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from unittest.mock import patch

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from llm.cache import ResponseCache


@pytest.fixture
def cache(tmp_path):
    return ResponseCache(tmp_path / "llm-cache", ttl_sec=60)


def test_put_then_get(cache):
    cache.put("prompt", "sonnet", "# Doc")

    assert cache.get("prompt", "sonnet") == "# Doc"


def test_key_depends_on_prompt_and_model(cache):
    cache.put("prompt", "sonnet", "# Doc")

    assert cache.get("prompt ", "sonnet") is None
    assert cache.get("prompt", "haiku") is None
    assert cache.key("a", "m") != cache.key("a", "n")
    assert len(cache.key("a", "m")) == 64


def test_entry_layout_and_permissions(cache):
    cache.put("prompt", "sonnet", "# Doc")

    path = cache.root / f"{cache.key('prompt', 'sonnet')}.json"
    entry = json.loads(path.read_text(encoding="utf-8"))
    assert entry["text"] == "# Doc"
    assert entry["model"] == "sonnet"
    assert abs(entry["timestamp"] - time.time() * 1000) < 60_000
    if os.name == "posix":
        assert stat.S_IMODE(path.stat().st_mode) == 0o600
    assert [p.name for p in cache.root.iterdir()] == [path.name]


def test_expired_entries_are_ignored_not_deleted(cache):
    cache.put("prompt", "sonnet", "# Doc")
    later = time.time() + 61

    with patch("llm.cache.time.time", return_value=later):
        assert cache.get("prompt", "sonnet") is None

    assert len(list(cache.root.glob("*.json"))) == 1


def test_zero_ttl_never_hits(tmp_path):
    cache = ResponseCache(tmp_path, ttl_sec=0)
    cache.put("p", "m", "text")

    assert cache.get("p", "m") is None


def test_unreadable_entry_is_a_miss(cache):
    cache.put("prompt", "sonnet", "# Doc")
    path = cache.root / f"{cache.key('prompt', 'sonnet')}.json"
    path.write_text("{not json", encoding="utf-8")

    assert cache.get("prompt", "sonnet") is None

    for timestamp in ("yesterday", None, True, [1]):
        path.write_text(json.dumps({"text": "x", "model": "sonnet", "timestamp": timestamp}), encoding="utf-8")
        assert cache.get("prompt", "sonnet") is None

    path.write_text('{"text": "x", "model": "sonnet", "timestamp": Infinity}', encoding="utf-8")
    assert cache.get("prompt", "sonnet") is None


def test_same_key_concurrent_puts(cache):
    with ThreadPoolExecutor(max_workers=16) as pool:
        list(pool.map(lambda _: cache.put("prompt", "sonnet", "# Doc"), range(64)))

    assert [p.name for p in cache.root.glob("*.json")] == [f"{cache.key('prompt', 'sonnet')}.json"]
    assert list(cache.root.glob("*.tmp")) == []
    assert cache.get("prompt", "sonnet") == "# Doc"


def test_clear(cache):
    assert cache.clear() == 0
    cache.put("a", "m", "1")
    cache.put("b", "m", "2")

    assert cache.clear() == 2
    assert cache.get("a", "m") is None
