"""Default indexer: chunks in a SQLite FTS5 table, ranked with bm25."""
import json
import re
import sqlite3
from contextlib import closing
from pathlib import Path
from typing import List, Union

from core.logging import logger
from indexing.types import IndexDocument, IndexProgress, ProgressCallback, SearchSnippet

__all__ = ["build_index", "search"]

_SCHEMA = """
CREATE VIRTUAL TABLE IF NOT EXISTS chunks USING fts5(
    chunk_id UNINDEXED,
    content,
    metadata UNINDEXED,
    tokenize = 'porter unicode61'
)
"""
_FRONTMATTER = re.compile(r"\A---\r?\n.*?\r?\n---[ \t]*(?:\r?\n|\Z)", re.DOTALL)
_TOKEN = re.compile(r"\w+", re.UNICODE)
_PROGRESS_EVERY = 50


def _connect(destination: Union[str, Path]) -> sqlite3.Connection:
    path = Path(destination)
    path.parent.mkdir(parents=True, exist_ok=True)
    return sqlite3.connect(str(path))


def build_index(documents: List[IndexDocument], destination: str, on_progress: ProgressCallback) -> None:
    """Upsert ``documents`` into the index at ``destination``."""
    total = len(documents)
    with closing(_connect(destination)) as conn:
        with conn:
            conn.execute(_SCHEMA)
            on_progress(IndexProgress("storing", 0, total))
            for i, doc in enumerate(documents, 1):
                conn.execute("DELETE FROM chunks WHERE chunk_id = ?", (doc.id,))
                conn.execute(
                    "INSERT INTO chunks (chunk_id, content, metadata) VALUES (?, ?, ?)",
                    (doc.id, doc.content, json.dumps(doc.metadata)),
                )
                if i % _PROGRESS_EVERY == 0 or i == total:
                    on_progress(IndexProgress("storing", i, total))

        on_progress(IndexProgress("indexing", 0, 1))
        with conn:
            conn.execute("INSERT INTO chunks (chunks) VALUES ('optimize')")
        on_progress(IndexProgress("indexing", 1, 1))
    logger.info(f"Indexed {total} chunk(s) into {destination}")


def _match_expression(query: str) -> str:
    # Quote every term and OR them, a missing term must not empty the result
    terms = [t.replace('"', '""') for t in _TOKEN.findall(query)]
    return " OR ".join(f'"{t}"' for t in terms)


def strip_frontmatter(text: str) -> str:
    return _FRONTMATTER.sub("", text, count=1).lstrip("\n")


def search(query: str, destination: Union[str, Path], limit: int = 10) -> List[SearchSnippet]:
    """Best ``limit`` chunks for ``query``, highest score first."""
    expression = _match_expression(query)
    if not expression or not Path(destination).exists():
        return []

    with closing(sqlite3.connect(str(destination))) as conn:
        try:
            rows = conn.execute(
                "SELECT content, metadata, bm25(chunks) AS score FROM chunks "
                "WHERE chunks MATCH ? ORDER BY score LIMIT ?",
                (expression, limit),
            ).fetchall()
        except sqlite3.OperationalError as e:
            # not an index written by build_index
            logger.warning(f"Search in {destination} failed: {e}")
            return []

    snippets = []
    for content, metadata, rank in rows:
        meta = json.loads(metadata) if metadata else {}
        body = strip_frontmatter(content)
        snippets.append(SearchSnippet(
            package=str(meta.get("package", "")),
            source=str(meta.get("source", "")),
            line_start=int(meta.get("line_start", meta.get("lineStart", 1))),
            line_end=int(meta.get("line_end", meta.get("lineEnd", max(1, content.count("\n") + 1)))),
            content=body,
            # bm25() is lower-is-better
            score=-rank,
        ))
    return snippets
