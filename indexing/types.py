from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Union


@dataclass
class IndexDocument:
    """One pre-chunked document handed to the indexer."""
    id: str
    content: str
    metadata: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def coerce(cls, doc: Union["IndexDocument", Mapping[str, Any]]) -> "IndexDocument":
        if isinstance(doc, cls):
            return doc
        return cls(id=str(doc["id"]), content=doc["content"], metadata=dict(doc.get("metadata") or {}))


@dataclass(frozen=True)
class IndexProgress:
    phase: str
    current: int
    total: int


@dataclass
class SearchSnippet:
    package: str
    source: str
    line_start: int
    line_end: int
    content: str
    score: float


ProgressCallback = Callable[[IndexProgress], None]
# indexer(documents, destination, on_progress)
Indexer = Callable[[List[IndexDocument], str, ProgressCallback], None]
