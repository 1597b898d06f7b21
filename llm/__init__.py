"""Generation layer: CLI backends, stream adapters, caching and fallback.

The public API is intentionally small: build a :class:`GenerationRequest`
and hand it to :func:`optimize_docs` (or a :class:`DocsOptimizer`).
"""

from __future__ import annotations

from .cache import ResponseCache
from .optimizer import DocsOptimizer, get_optimizer, optimize_docs
from .registry import BackendDescriptor, ModelEntry, available_models, register_backend
from .streams import EventKind, StreamEvent, StreamGranularity
from .types import GenerationRequest, GenerationResult, StreamProgress, Usage

__all__ = [
    "ResponseCache",
    "DocsOptimizer",
    "get_optimizer",
    "optimize_docs",
    "BackendDescriptor",
    "ModelEntry",
    "available_models",
    "register_backend",
    "EventKind",
    "StreamEvent",
    "StreamGranularity",
    "GenerationRequest",
    "GenerationResult",
    "StreamProgress",
    "Usage",
]
