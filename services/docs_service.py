#!/usr/bin/env python3
"""Docs Service - optimize package docs with CLI models and index them for search."""
import argparse
import asyncio
import json
import sys
from dataclasses import asdict
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Union

from core.config import Config, get_settings
from core.errors import ConfigError, DocDistillError
from core.logging import logger
from indexing.pool import IndexWorkerPool
from indexing.sqlite_index import search as search_index
from indexing.types import IndexDocument, IndexProgress, SearchSnippet
from llm.optimizer import DocsOptimizer
from llm.registry import BackendRegistry, ModelInfo, get_registry
from llm.types import DEFAULT_SECTIONS, SECTIONS, GenerationRequest, GenerationResult, StreamProgress


class DocsService:
    """Wires configuration, backends, cache, optimizer and the index worker together."""

    def __init__(self, config: Optional[Config] = None, registry: Optional[BackendRegistry] = None):
        self.config = config or get_settings()
        self.optimizer = DocsOptimizer.from_config(self.config, registry or get_registry())
        app = self.config.app
        self.pool = IndexWorkerPool(indexer=app.INDEXER, grace=app.WORKER_SHUTDOWN_GRACE_SEC)

    async def optimize(
        self,
        package_name: str,
        scope: Union[str, Path],
        content: str = "",
        on_progress=None,
        **options: Any,
    ) -> GenerationResult:
        """
        Rewrite the docs of ``package_name`` found under ``scope``.

        Args:
            package_name: Package the docs belong to
            scope: Directory the backend may read; output goes to its work dir
            content: Original docs, returned unchanged when generation fails
            options: Remaining GenerationRequest fields (model, sections, ...)
        """
        scope_path = Path(scope)
        if not scope_path.is_dir():
            raise FileNotFoundError(f"Scope directory not found: {scope_path}")
        request = GenerationRequest(package_name=package_name, scope=scope_path, content=content, **options)
        return await self.optimizer.generate(request, on_progress)

    async def index(
        self,
        documents: Iterable[Union[IndexDocument, Dict[str, Any]]],
        destination: Union[str, Path],
        on_progress=None,
    ) -> None:
        await self.pool.submit(documents, destination, on_progress)

    def search(self, query: str, destination: Union[str, Path], limit: int = 10) -> List[SearchSnippet]:
        return search_index(query, destination, limit)

    def list_models(self) -> List[ModelInfo]:
        return self.optimizer.registry.available_models()

    def clear_cache(self) -> int:
        removed = self.optimizer.cache.clear()
        logger.info(f"Removed {removed} cached generation(s)")
        return removed

    async def close(self) -> None:
        await self.pool.shutdown()


def load_documents(paths: Iterable[str], package: str = "") -> List[IndexDocument]:
    """Read index input: ``.json`` files hold chunk lists, anything else is one chunk per file."""
    documents: List[IndexDocument] = []
    for raw in paths:
        path = Path(raw)
        text = path.read_text(encoding="utf-8")
        if path.suffix == ".json":
            data = json.loads(text)
            if not isinstance(data, list):
                raise ValueError(f"{path}: expected a JSON list of chunks")
            documents.extend(IndexDocument.coerce(item) for item in data)
            continue
        documents.append(IndexDocument(
            id=str(path),
            content=text,
            metadata={
                "package": package,
                "source": str(path),
                "line_start": 1,
                "line_end": max(1, text.count("\n") + 1),
            },
        ))
    return documents


def _print_progress(progress: StreamProgress) -> None:
    if progress.type == "reasoning":
        print(progress.chunk, file=sys.stderr)


def _print_index_progress(progress: IndexProgress) -> None:
    print(f"  {progress.phase}: {progress.current}/{progress.total}", file=sys.stderr)


async def _run(args: argparse.Namespace, service: DocsService) -> int:
    if args.command == "optimize":
        content = Path(args.content).read_text(encoding="utf-8") if args.content else ""
        result = await service.optimize(
            package_name=args.package,
            scope=args.scope,
            content=content,
            on_progress=_print_progress if args.verbose else None,
            model=args.model,
            timeout=args.timeout,
            no_cache=args.no_cache,
            sections=args.sections or list(DEFAULT_SECTIONS),
            custom_instructions=args.custom,
            version=args.version,
        )
        if not result.was_optimized:
            print(f"✗ Backend error: {result.error}", file=sys.stderr)
            return 2
        if args.out:
            Path(args.out).write_text(result.optimized, encoding="utf-8")
            print(f"✓ Optimized docs saved to: {args.out}")
        else:
            print(result.optimized)
        print(f"  Model: {result.model}  Finish: {result.finish_reason}", file=sys.stderr)
        if result.usage:
            print(f"  Tokens: {result.usage.total_tokens}", file=sys.stderr)
        if result.cost is not None:
            print(f"  Cost: ${result.cost:.4f}", file=sys.stderr)
        for warning in result.warnings:
            print(f"  ! {warning}", file=sys.stderr)
        return 0

    if args.command == "index":
        documents = load_documents(args.inputs, package=args.package or "")
        try:
            await service.index(documents, args.db, _print_index_progress if args.verbose else None)
        finally:
            await service.close()
        print(f"✓ Indexed {len(documents)} document(s) into: {args.db}")
        return 0

    if args.command == "search":
        snippets = service.search(args.query, args.db, args.limit)
        if args.json:
            print(json.dumps([asdict(s) for s in snippets], indent=2))
            return 0
        for s in snippets:
            print(f"[{s.score:.2f}] {s.package} {s.source}:{s.line_start}-{s.line_end}")
            print(f"  {s.content.strip().splitlines()[0] if s.content.strip() else ''}")
        if not snippets:
            print("No results.")
        return 0

    if args.command == "models":
        models = service.list_models()
        if not models:
            print("✗ No backend CLI installed", file=sys.stderr)
            return 2
        for m in models:
            star = " (recommended)" if m.recommended else ""
            print(f"{m.id:<22} {m.name:<20} {m.backend_name}{star}")
        return 0

    if args.command == "clear-cache":
        print(f"✓ Removed {service.clear_cache()} cached response(s)")
        return 0

    raise ValueError(f"Unknown command: {args.command}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description='Optimize and index package documentation')
    parser.add_argument('--config', help='Backends YAML config path')
    parser.add_argument('--verbose', action='store_true', help='Show progress and tracebacks')
    sub = parser.add_subparsers(dest='command', required=True)

    opt = sub.add_parser('optimize', help='Rewrite docs with a CLI model')
    opt.add_argument('--package', required=True, help='Package name')
    opt.add_argument('--scope', required=True, help='Directory the model may read')
    opt.add_argument('--content', help='Original docs file, returned on failure')
    opt.add_argument('--model', help='Model id (default from settings)')
    opt.add_argument('--version', help='Package version')
    opt.add_argument('--sections', nargs='+', choices=SECTIONS, help='Sections to generate')
    opt.add_argument('--custom', help='Instructions for the custom section')
    opt.add_argument('--timeout', type=float, help='Timeout in seconds')
    opt.add_argument('--no-cache', action='store_true', help='Bypass the response cache')
    opt.add_argument('--out', help='Output file (default: stdout)')

    idx = sub.add_parser('index', help='Index documents for search')
    idx.add_argument('--db', required=True, help='Index database path')
    idx.add_argument('--package', help='Package name stored with each file')
    idx.add_argument('inputs', nargs='+', help='Markdown files or JSON chunk lists')

    srch = sub.add_parser('search', help='Search an index')
    srch.add_argument('--db', required=True, help='Index database path')
    srch.add_argument('--limit', type=int, default=10, help='Maximum results')
    srch.add_argument('--json', action='store_true', help='Print JSON')
    srch.add_argument('query', help='Search query')

    sub.add_parser('models', help='List models of installed backends')
    sub.add_parser('clear-cache', help='Delete cached generations')
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """CLI entry point for the docs service."""
    args = build_parser().parse_args(argv)

    try:
        if args.config and not Path(args.config).exists():
            raise FileNotFoundError(args.config)
        config = Config(backends_path=Path(args.config)) if args.config else get_settings()
        service = DocsService(config)
        return asyncio.run(_run(args, service))
    except FileNotFoundError as e:
        print(f"✗ File not found: {e}", file=sys.stderr)
        return 1
    except (ValueError, ConfigError) as e:
        print(f"✗ Invalid argument: {e}", file=sys.stderr)
        return 1
    except DocDistillError as e:
        print(f"✗ Backend error: {e}", file=sys.stderr)
        return 2
    except Exception as e:
        print(f"✗ Unexpected error: {e}", file=sys.stderr)
        if args.verbose:
            import traceback
            traceback.print_exc()
        return 3


if __name__ == '__main__':
    sys.exit(main())
