"""Generate-with-fallback over the registered CLI backends.

The optimizer is strictly additive to the docs pipeline: whatever goes wrong,
the caller gets a :class:`GenerationResult`, and on failure ``optimized`` is
the original content.  A failed attempt on the requested model is retried
once on the baseline model.
"""
from pathlib import Path
from typing import Callable, Optional

from core.config import Config, get_settings
from core.errors import BackendUnavailable, EmptyOutput, GenerationError, LaunchFailure
from core.logging import logger
from llm.cache import ResponseCache
from llm.cleanup import (
    OUTPUT_FILENAME,
    WORK_DIR_NAME,
    clean_output,
    extract_output,
    output_path,
    remove_unexpected_files,
    snapshot,
    validate_output,
    work_dir,
)
from llm.launcher import BackendProcess
from llm.prompts import build_prompt
from llm.registry import BackendDescriptor, BackendRegistry, get_registry, is_installed, resolve_reference_dirs
from llm.streams import EventKind, StreamEvent
from llm.types import GenerationRequest, GenerationResult, StreamProgress

__all__ = ["DocsOptimizer", "optimize_docs", "get_optimizer"]

ProgressCallback = Callable[[StreamProgress], None]


def shorten_path(p: str) -> str:
    """/home/.../.docdistill/docs/guide.md → docs/guide.md"""
    marker = f"{WORK_DIR_NAME}/"
    idx = p.find(marker)
    if idx != -1:
        return p[idx + len(marker):]
    parts = p.split("/")
    return f".../{'/'.join(parts[-2:])}" if len(parts) > 2 else p


class _ProgressRelay:
    """Turns stream events into StreamProgress updates for one attempt."""

    def __init__(self, on_progress: Optional[ProgressCallback]) -> None:
        self._on_progress = on_progress
        self._text = ""

    def emit(self, chunk: str, kind: str, reasoning: str = "") -> None:
        if self._on_progress is not None:
            self._on_progress(StreamProgress(chunk=chunk, type=kind, text=self._text, reasoning=reasoning))

    def __call__(self, event: StreamEvent) -> None:
        if event.kind is EventKind.TEXT_DELTA:
            self._text += event.text
            self.emit(event.text, "text")
        elif event.kind is EventKind.FULL_TEXT:
            self._text = event.text
            self.emit(event.text, "text")
        elif event.kind is EventKind.REASONING_DELTA:
            self.emit(event.text, "reasoning", event.text)
        elif event.kind is EventKind.TOOL_INVOCATION:
            label = f"[{event.name}: {shorten_path(event.hint)}]" if event.hint else f"[{event.name}]"
            self.emit(label, "reasoning", label)


class DocsOptimizer:
    """Fallback controller owning the registry lookups and the response cache."""

    def __init__(
        self,
        registry: BackendRegistry,
        cache: ResponseCache,
        default_model: str = "sonnet",
        baseline_model: str = "sonnet",
        default_timeout: float = 180.0,
    ) -> None:
        self.registry = registry
        self.cache = cache
        self.default_model = default_model
        self.baseline_model = baseline_model
        self.default_timeout = default_timeout

    @classmethod
    def from_config(cls, config: Config, registry: Optional[BackendRegistry] = None) -> "DocsOptimizer":
        app = config.app
        registry = registry or get_registry()
        registry.apply_overrides(config.backends.backends)
        return cls(
            registry=registry,
            cache=ResponseCache(app.cache_dir, ttl_sec=app.cache_ttl_sec),
            default_model=app.DEFAULT_MODEL,
            baseline_model=app.BASELINE_MODEL,
            default_timeout=app.GENERATION_TIMEOUT_SEC,
        )

    # ------------------------------------------------------------------
    async def generate(
        self,
        request: GenerationRequest,
        on_progress: Optional[ProgressCallback] = None,
    ) -> GenerationResult:
        model = request.model or self.default_model
        prompt = build_prompt(request)

        if not request.no_cache:
            cached = self.cache.get(prompt, model)
            if cached:
                logger.info(f"Using cached {model} output for {request.package_name}")
                if on_progress is not None:
                    on_progress(StreamProgress(chunk="[cached]", type="text", text=cached))
                return GenerationResult(optimized=cached, was_optimized=True, finish_reason="cached", model=model)

        try:
            backend = self._backend_for(model)
        except BackendUnavailable as e:
            logger.warning(f"Skipping optimization of {request.package_name}: {e}")
            return self._unoptimized(request, str(e))

        try:
            return await self._attempt(request, prompt, model, backend, on_progress)
        except GenerationError as e:
            first_error = e

        if model == self.baseline_model:
            logger.error(f"Optimization of {request.package_name} with {model} failed: {first_error}")
            return self._unoptimized(request, str(first_error))

        logger.warning(f"{model} failed for {request.package_name} ({first_error}), retrying with {self.baseline_model}")
        try:
            baseline = self._backend_for(self.baseline_model)
            return await self._attempt(request, prompt, self.baseline_model, baseline, on_progress)
        except (BackendUnavailable, GenerationError) as e:
            logger.error(f"Optimization of {request.package_name} failed on {model} and {self.baseline_model}: {e}")
            return self._unoptimized(request, f"{model}: {first_error}; {self.baseline_model}: {e}")

    # ------------------------------------------------------------------
    def _backend_for(self, model: str) -> BackendDescriptor:
        resolved = self.registry.resolve_model(model)
        if resolved is None:
            raise BackendUnavailable(f"No CLI mapping for model: {model}")
        backend, _ = resolved
        if not is_installed(backend):
            raise BackendUnavailable(f"{backend.name} CLI '{backend.executable}' is not installed")
        return backend

    async def _attempt(
        self,
        request: GenerationRequest,
        prompt: str,
        model: str,
        backend: BackendDescriptor,
        on_progress: Optional[ProgressCallback],
    ) -> GenerationResult:
        scope = Path(request.scope)
        wd = work_dir(scope)
        out_file = output_path(scope)
        try:
            wd.mkdir(parents=True, exist_ok=True)
            # a leftover from an earlier run must not count as this run's answer
            out_file.unlink(missing_ok=True)
            before = snapshot(wd)
        except OSError as e:
            raise LaunchFailure(f"Could not prepare work dir {wd}: {e}") from e

        args = backend.cli_args(model, scope, resolve_reference_dirs(scope))
        timeout = request.timeout or self.default_timeout
        relay = _ProgressRelay(on_progress)

        logger.info(f"Optimizing {request.package_name} with {backend.id}/{model} (timeout {timeout:.0f}s)")
        relay.emit("[starting...]", "reasoning")
        proc = BackendProcess(backend.executable, args, prompt, backend.parser, timeout, cwd=wd)
        await proc.start()
        try:
            async for event in proc.events():
                relay(event)
            outcome = await proc.wait()
        finally:
            remove_unexpected_files(wd, before, keep=[OUTPUT_FILENAME])

        raw = extract_output(out_file, outcome.write_content, outcome.text)
        optimized = clean_output(raw) if raw else ""
        if not optimized:
            if outcome.finish_reason == "length":
                raise EmptyOutput(f"{model} hit its output limit before producing content")
            if outcome.exit_code != 0:
                raise EmptyOutput(outcome.describe_failure())
            raise EmptyOutput(f"{model} exited cleanly without usable output")

        if outcome.exit_code != 0:
            logger.warning(f"{backend.id} exited with code {outcome.exit_code} but produced output, accepting it")
        if not request.no_cache:
            try:
                self.cache.put(prompt, model, optimized)
            except OSError as e:
                logger.warning(f"Could not cache {model} output for {request.package_name}: {e}")

        logger.info(f"Optimized {request.package_name} with {model}: {len(optimized)} chars in {outcome.duration:.1f}s")
        return GenerationResult(
            optimized=optimized,
            was_optimized=True,
            finish_reason=outcome.finish_reason or ("stop" if outcome.exit_code == 0 else "error"),
            usage=outcome.usage,
            cost=outcome.cost,
            model=model,
            warnings=validate_output(optimized, request.sections),
        )

    @staticmethod
    def _unoptimized(request: GenerationRequest, error: str) -> GenerationResult:
        return GenerationResult(optimized=request.content, was_optimized=False, error=error, finish_reason="error")


# --- Global optimizer ---
_optimizer: Optional[DocsOptimizer] = None


def get_optimizer() -> DocsOptimizer:
    global _optimizer
    if _optimizer is None:
        _optimizer = DocsOptimizer.from_config(get_settings())
    return _optimizer


async def optimize_docs(
    request: GenerationRequest,
    on_progress: Optional[ProgressCallback] = None,
) -> GenerationResult:
    """Optimize ``request`` with the process-wide optimizer."""
    return await get_optimizer().generate(request, on_progress)
