"""Background index worker pool.

Indexing runs in one dedicated child process so that heavy work never blocks
the event loop of the caller.  The pool keeps that process alive between
tasks and feeds it strictly one task at a time::

    await create_index(documents, "/tmp/docs.db", on_progress=print)
    await shutdown_worker()

All state (worker handle, pending tasks and the FIFO queue) is only touched
on the event loop that owns the pool.  A listener thread per worker blocks on
the pipe and hands every message back to that loop with
``call_soon_threadsafe``.
"""
from __future__ import annotations

import asyncio
import itertools
import multiprocessing
import threading
from collections import deque
from dataclasses import asdict, dataclass
from multiprocessing.connection import Connection
from pathlib import Path
from typing import Any, Callable, Deque, Dict, Iterable, Mapping, Optional, Tuple, Union

from core.errors import IndexWorkerError
from core.logging import logger
from indexing.types import IndexDocument, IndexProgress, ProgressCallback
from indexing.worker import resolve_indexer, worker_main

__all__ = ["IndexWorkerPool", "create_index", "shutdown_worker", "index_direct", "get_pool"]

DEFAULT_INDEXER = "indexing.sqlite_index:build_index"
DocumentLike = Union[IndexDocument, Mapping[str, Any]]


@dataclass
class _WorkerHandle:
    process: Any  # multiprocessing.context.SpawnProcess
    conn: Connection
    loop: asyncio.AbstractEventLoop
    listener: Optional[threading.Thread] = None


@dataclass
class _PendingTask:
    id: int
    future: asyncio.Future
    on_progress: Optional[ProgressCallback]
    worker: _WorkerHandle


class IndexWorkerPool:
    """Single worker process, FIFO task queue."""

    def __init__(self, indexer: str = DEFAULT_INDEXER, grace: float = 5.0) -> None:
        self.indexer = indexer
        self.grace = grace
        self._ctx = multiprocessing.get_context("spawn")
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._worker: Optional[_WorkerHandle] = None
        self._pending: Dict[int, _PendingTask] = {}
        self._queue: Deque[Tuple[Callable[[], None], asyncio.Future]] = deque()
        self._running = False
        self._ids = itertools.count(1)

    @property
    def is_alive(self) -> bool:
        return self._worker is not None and self._worker.process.is_alive()

    async def submit(
        self,
        documents: Iterable[DocumentLike],
        destination: Union[str, Path],
        on_progress: Optional[ProgressCallback] = None,
    ) -> None:
        """Index ``documents`` into ``destination``; returns once the task is done."""
        loop = asyncio.get_running_loop()
        self._bind(loop)
        docs = [asdict(IndexDocument.coerce(d)) for d in documents]
        future: asyncio.Future = loop.create_future()

        def start() -> None:
            self._start_task(docs, str(destination), on_progress, future)

        if self._running:
            self._queue.append((start, future))
        else:
            start()
        await future

    async def shutdown(self) -> None:
        """Ask the worker to exit, then terminate it if it overstays ``grace``."""
        worker = self._worker
        self._worker = None
        self._fail_queued(IndexWorkerError("Index worker shut down before the task started"))
        if worker is None:
            return

        try:
            worker.conn.send({"type": "shutdown"})
        except (OSError, ValueError) as e:
            logger.debug(f"Index worker pipe already closed on shutdown: {e}")

        await asyncio.to_thread(worker.process.join, self.grace)
        if worker.process.is_alive():
            logger.warning(f"Index worker did not exit within {self.grace}s, terminating")
            worker.process.terminate()
            await asyncio.to_thread(worker.process.join, 1.0)
            if worker.process.is_alive():
                worker.process.kill()
                await asyncio.to_thread(worker.process.join)

        if worker.listener is not None:
            await asyncio.to_thread(worker.listener.join, 1.0)
        # let the listener's final callbacks run
        await asyncio.sleep(0)
        logger.info("Index worker stopped")

    # ------------------------------------------------------------------

    def _bind(self, loop: asyncio.AbstractEventLoop) -> None:
        if self._loop is loop:
            return
        if self._worker is not None and not self._loop.is_closed():
            raise RuntimeError("IndexWorkerPool is bound to a different event loop")
        if self._worker is not None and self._worker.process.is_alive():
            # the loop it reported to is gone
            self._worker.process.kill()
        self._loop = loop
        self._worker = None
        self._pending.clear()
        self._queue.clear()
        self._running = False

    def _spawn(self) -> _WorkerHandle:
        parent_conn, child_conn = self._ctx.Pipe()
        process = self._ctx.Process(
            target=worker_main,
            args=(child_conn, self.indexer),
            name="docdistill-index-worker",
            daemon=True,
        )
        process.start()
        # the parent's copy must go, or EOF never reaches the listener
        child_conn.close()

        worker = _WorkerHandle(process=process, conn=parent_conn, loop=self._loop)
        worker.listener = threading.Thread(
            target=self._listen, args=(worker,), name="docdistill-index-listener", daemon=True
        )
        worker.listener.start()
        logger.info(f"Started index worker pid={process.pid} indexer={self.indexer}")
        return worker

    def _start_task(
        self,
        documents: list,
        destination: str,
        on_progress: Optional[ProgressCallback],
        future: asyncio.Future,
    ) -> None:
        self._running = True
        try:
            if self._worker is None:
                self._worker = self._spawn()
        except OSError as e:
            self._running = False
            future.set_exception(IndexWorkerError(f"Could not start index worker: {e}"))
            self._next()
            return

        worker = self._worker
        task = _PendingTask(next(self._ids), future, on_progress, worker)
        self._pending[task.id] = task
        try:
            worker.conn.send({
                "type": "index",
                "id": task.id,
                "documents": documents,
                "destination": destination,
            })
        except (OSError, ValueError) as e:
            self._worker_lost(worker, f"pipe broken while sending task {task.id}: {e}")
        except Exception as e:
            # pickling fails before anything is written, so the worker is still usable
            logger.error(f"Could not send index task {task.id}: {type(e).__name__}: {e}")
            self._pending.pop(task.id, None)
            self._running = False
            if not future.done():
                future.set_exception(IndexWorkerError(f"Could not send index task: {type(e).__name__}: {e}"))
            self._next()

    def _listen(self, worker: _WorkerHandle) -> None:
        # Runs in its own thread; never touches pool state directly.
        while True:
            try:
                msg = worker.conn.recv()
            except (EOFError, OSError):
                break
            self._call_on_loop(worker, self._on_message, msg)
        worker.process.join()
        worker.conn.close()
        self._call_on_loop(worker, self._on_exit, worker)

    @staticmethod
    def _call_on_loop(worker: _WorkerHandle, callback: Callable[..., None], *args: Any) -> None:
        try:
            worker.loop.call_soon_threadsafe(callback, *args)
        except RuntimeError:
            logger.debug("Event loop closed, dropping index worker message")

    def _on_message(self, msg: Dict[str, Any]) -> None:
        task = self._pending.get(msg.get("id"))
        if task is None:
            logger.debug(f"Index worker message for unknown task: {msg!r}")
            return

        kind = msg.get("type")
        if kind == "progress":
            if task.on_progress is not None:
                try:
                    task.on_progress(IndexProgress(msg["phase"], msg["current"], msg["total"]))
                except Exception:
                    logger.exception(f"Progress callback for index task {task.id} raised")
        elif kind == "done":
            self._finish(task, None)
        elif kind == "error":
            self._finish(task, IndexWorkerError(msg.get("message") or "Index task failed"))
        else:
            logger.warning(f"Unknown message from index worker: {msg!r}")

    def _on_exit(self, worker: _WorkerHandle) -> None:
        exit_code = worker.process.exitcode
        orphaned = [t for t in self._pending.values() if t.worker is worker]
        if worker is self._worker:
            # crash: nothing asked this worker to stop
            self._worker_lost(worker, f"process exited with code {exit_code}")
        elif orphaned:
            error = IndexWorkerError(f"Index worker shut down (exit code {exit_code}) before the task finished")
            for task in orphaned:
                self._finish(task, error)

    def _worker_lost(self, worker: _WorkerHandle, reason: str) -> None:
        if worker is self._worker:
            self._worker = None
        running = [t for t in self._pending.values() if t.worker is worker]
        queued = len(self._queue)
        logger.error(f"Index worker died ({reason}); failing {len(running)} running and {queued} queued task(s)")

        error = IndexWorkerError(f"Index worker died: {reason}")
        for task in running:
            del self._pending[task.id]
            if not task.future.done():
                task.future.set_exception(error)
        self._fail_queued(error)
        self._running = False
        if worker.process.is_alive():
            worker.process.kill()

    def _finish(self, task: _PendingTask, error: Optional[IndexWorkerError]) -> None:
        self._pending.pop(task.id, None)
        if not task.future.done():
            if error is None:
                task.future.set_result(None)
            else:
                task.future.set_exception(error)
        self._running = False
        self._next()

    def _fail_queued(self, error: IndexWorkerError) -> None:
        while self._queue:
            _, future = self._queue.popleft()
            if not future.done():
                future.set_exception(error)

    def _next(self) -> None:
        while not self._running and self._queue:
            start, future = self._queue.popleft()
            if future.done():
                # submitter gave up while queued
                continue
            start()


async def index_direct(
    documents: Iterable[DocumentLike],
    destination: Union[str, Path],
    on_progress: Optional[ProgressCallback] = None,
    indexer: str = DEFAULT_INDEXER,
) -> None:
    """Run the indexer in this process, on a worker thread.

    ``on_progress`` is called from that thread.
    """
    fn = resolve_indexer(indexer)
    docs = [IndexDocument.coerce(d) for d in documents]
    try:
        await asyncio.to_thread(fn, docs, str(destination), on_progress or (lambda progress: None))
    except Exception as e:
        raise IndexWorkerError(f"{type(e).__name__}: {e}") from e


# --- Global pool ---
_pool: Optional[IndexWorkerPool] = None


def get_pool() -> IndexWorkerPool:
    global _pool
    if _pool is None:
        from core.config import get_settings

        app = get_settings().app
        _pool = IndexWorkerPool(indexer=app.INDEXER, grace=app.WORKER_SHUTDOWN_GRACE_SEC)
    return _pool


async def create_index(
    documents: Iterable[DocumentLike],
    destination: Union[str, Path],
    on_progress: Optional[ProgressCallback] = None,
) -> None:
    await get_pool().submit(documents, destination, on_progress)


async def shutdown_worker() -> None:
    if _pool is not None:
        await _pool.shutdown()
