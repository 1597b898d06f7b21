"""Index worker process.

Runs in a child process started by :mod:`indexing.pool`.  It owns nothing but
its end of a pipe and handles one request at a time:

Requests::

    {"type": "index", "id": int, "documents": [...], "destination": str}
    {"type": "shutdown"}

Responses (tagged with the request id)::

    {"type": "progress", "id": int, "phase": str, "current": int, "total": int}
    {"type": "done", "id": int}
    {"type": "error", "id": int, "message": str}
"""
import importlib
from multiprocessing.connection import Connection
from typing import Any, Dict, Optional

from core.logging import logger
from indexing.types import IndexDocument, IndexProgress, Indexer


def resolve_indexer(target: str) -> Indexer:
    """Import ``'package.module:callable'``."""
    module_name, sep, attr = target.partition(":")
    if not sep or not module_name or not attr:
        raise ValueError(f"Indexer must look like 'module:callable', got {target!r}")
    module = importlib.import_module(module_name)
    indexer = getattr(module, attr)
    if not callable(indexer):
        raise TypeError(f"Indexer {target!r} is not callable")
    return indexer


def _run_task(conn: Connection, indexer: Indexer, msg: Dict[str, Any]) -> None:
    task_id = msg["id"]

    def on_progress(progress: IndexProgress) -> None:
        conn.send({
            "type": "progress",
            "id": task_id,
            "phase": progress.phase,
            "current": progress.current,
            "total": progress.total,
        })

    documents = [IndexDocument.coerce(d) for d in msg["documents"]]
    try:
        indexer(documents, msg["destination"], on_progress)
    except Exception as e:
        logger.exception(f"Index task {task_id} failed")
        conn.send({"type": "error", "id": task_id, "message": f"{type(e).__name__}: {e}"})
    else:
        conn.send({"type": "done", "id": task_id})


def worker_main(conn: Connection, indexer_path: str) -> None:
    """Process entry point: serve requests until shutdown or a closed pipe."""
    indexer: Optional[Indexer] = None
    try:
        while True:
            try:
                msg = conn.recv()
            except EOFError:
                break
            if msg.get("type") == "shutdown":
                break
            if msg.get("type") != "index":
                logger.warning(f"Index worker ignoring unknown message type {msg.get('type')!r}")
                continue

            if indexer is None:
                try:
                    indexer = resolve_indexer(indexer_path)
                except (ImportError, AttributeError, TypeError, ValueError) as e:
                    conn.send({"type": "error", "id": msg["id"], "message": f"Cannot load indexer {indexer_path!r}: {e}"})
                    continue
            _run_task(conn, indexer, msg)
    finally:
        conn.close()
