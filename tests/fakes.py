"""Fake backends and indexers shared by the tests.

Indexers are referenced by the worker as ``"fakes:<name>"``; the spawned
worker inherits sys.path, so this module is importable there too.
"""
import os
import sys
import time
from pathlib import Path
from typing import List

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from indexing.types import IndexDocument, IndexProgress
from llm.registry import BackendDescriptor, ModelEntry
from llm.streams import StreamGranularity

FAKE_CLI = str(Path(__file__).resolve().parent / "fake_cli.py")

# model id -> fake_cli mode
FAKE_MODELS = {
    "good": "deltas",
    "bad": "fail",
    "bad2": "fail",
    "file": "write-file",
    "nonzero": "nonzero",
    "stray": "stray",
    "length": "length",
    "slow": "sleep",
    "bytes": "bad-bytes",
}


def fake_backend(call_log: Path, backend_id: str = "fake", command: str = sys.executable) -> BackendDescriptor:
    def build_args(mode, scope, reference_dirs):
        return [FAKE_CLI, mode, str(call_log)]

    return BackendDescriptor(
        id=backend_id,
        name="Fake CLI",
        command=command,
        models={model: ModelEntry(mode, model.title()) for model, mode in FAKE_MODELS.items()},
        streaming=StreamGranularity.TOKEN,
        build_args=build_args,
        protocol="claude",
    )


def calls(call_log: Path) -> List[str]:
    if not call_log.exists():
        return []
    return call_log.read_text(encoding="utf-8").split()


# --- Indexers ---

def _log(documents: List[IndexDocument], line: str) -> None:
    log = documents[0].metadata.get("log") if documents else None
    if log:
        with open(log, "a", encoding="utf-8") as f:
            f.write(line + "\n")


def recording_indexer(documents, destination, on_progress):
    name = Path(destination).name
    _log(documents, f"start {name}")
    on_progress(IndexProgress("storing", 0, len(documents)))
    time.sleep(0.05)
    on_progress(IndexProgress("storing", len(documents), len(documents)))
    _log(documents, f"end {name}")


def failing_indexer(documents, destination, on_progress):
    if "bad" in Path(destination).name:
        raise RuntimeError("disk full")
    recording_indexer(documents, destination, on_progress)


def crashing_indexer(documents, destination, on_progress):
    if "crash" in Path(destination).name:
        on_progress(IndexProgress("storing", 0, len(documents)))
        time.sleep(0.2)
        os._exit(3)
    recording_indexer(documents, destination, on_progress)


def slow_indexer(documents, destination, on_progress):
    time.sleep(0.5)
    recording_indexer(documents, destination, on_progress)
