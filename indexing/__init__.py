"""Background indexing of documentation chunks."""

from .pool import IndexWorkerPool, create_index, get_pool, index_direct, shutdown_worker
from .sqlite_index import build_index, search
from .types import IndexDocument, IndexProgress, SearchSnippet

__all__ = [
    "IndexWorkerPool",
    "create_index",
    "get_pool",
    "index_direct",
    "shutdown_worker",
    "build_index",
    "search",
    "IndexDocument",
    "IndexProgress",
    "SearchSnippet",
]
