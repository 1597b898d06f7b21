"""Backend registry: which CLI serves which model, and how to invoke it.

Backends are registered once at import time (claude, gemini, codex) and are
read-only afterwards.  Extra backends can be added with
:func:`register_backend`; the first registration of a model id wins.
"""
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple

from core.config import BackendOverride
from core.logging import logger
from llm.cleanup import work_dir
from llm.streams import StreamGranularity, StreamParser, get_parser

__all__ = [
    "BackendDescriptor",
    "ModelEntry",
    "ModelInfo",
    "register_backend",
    "get_backend",
    "list_backends",
    "resolve_model",
    "is_installed",
    "available_models",
    "resolve_reference_dirs",
]

ArgsBuilder = Callable[[str, Path, List[str]], List[str]]


@dataclass(frozen=True)
class ModelEntry:
    """A model as the CLI knows it."""
    cli_model: str
    name: str
    hint: str = ""
    recommended: bool = False


@dataclass(frozen=True)
class ModelInfo:
    id: str
    name: str
    hint: str
    recommended: bool
    backend_id: str
    backend_name: str


@dataclass(frozen=True)
class BackendDescriptor:
    id: str
    name: str
    command: str
    models: Dict[str, ModelEntry]
    streaming: StreamGranularity
    build_args: ArgsBuilder
    # Key into llm.streams.PARSERS, defaults to the backend id
    protocol: Optional[str] = None
    override: BackendOverride = field(default_factory=BackendOverride)

    @property
    def parser(self) -> StreamParser:
        return get_parser(self.protocol or self.id)

    @property
    def executable(self) -> str:
        return self.override.command or self.command

    def with_override(self, override: BackendOverride) -> "BackendDescriptor":
        return BackendDescriptor(
            id=self.id,
            name=self.name,
            command=self.command,
            models=self.models,
            streaming=self.streaming,
            build_args=self.build_args,
            protocol=self.protocol,
            override=override,
        )

    def cli_args(self, model_id: str, scope: Path, reference_dirs: List[str]) -> List[str]:
        entry = self.models[model_id]
        return self.build_args(entry.cli_model, Path(scope), reference_dirs) + list(self.override.extra_args)


# ---------------------------------------------------------------------------
# Built-in CLI backends
# ---------------------------------------------------------------------------


def _claude_args(model: str, scope: Path, reference_dirs: List[str]) -> List[str]:
    read_dirs = [scope.as_posix(), *reference_dirs]
    allowed_tools = " ".join(
        [f"{tool}({d}/**)" for d in read_dirs for tool in ("Read", "Glob", "Grep")]
        + [f"Write({work_dir(scope).as_posix()}/**)"]
    )
    args = [
        "-p",
        "--model", model,
        "--output-format", "stream-json",
        "--verbose",
        "--include-partial-messages",  # token-level streaming
        "--allowedTools", allowed_tools,
        "--add-dir", scope.as_posix(),
    ]
    for d in reference_dirs:
        args += ["--add-dir", d]
    args.append("--no-session-persistence")
    return args


def _gemini_args(model: str, scope: Path, reference_dirs: List[str]) -> List[str]:
    args = [
        "-o", "stream-json",
        "-m", model,
        "--allowed-tools", "read_file,write_file,glob_tool",
        "--include-directories", scope.as_posix(),
    ]
    for d in reference_dirs:
        args += ["--include-directories", d]
    return args


def _codex_args(model: str, scope: Path, reference_dirs: List[str]) -> List[str]:
    args = [
        "exec",
        "--json",
        "--model", model,
        "--full-auto",
        "--add-dir", scope.as_posix(),
    ]
    for d in reference_dirs:
        args += ["--add-dir", d]
    args.append("-")  # prompt on stdin
    return args


CLAUDE = BackendDescriptor(
    id="claude",
    name="Claude Code",
    command="claude",
    models={
        "opus": ModelEntry("opus", "Opus", "Most capable for complex work"),
        "sonnet": ModelEntry("sonnet", "Sonnet", "Best for everyday tasks", recommended=True),
        "haiku": ModelEntry("haiku", "Haiku", "Fastest for quick answers"),
    },
    streaming=StreamGranularity.TOKEN,
    build_args=_claude_args,
)

GEMINI = BackendDescriptor(
    id="gemini",
    name="Gemini CLI",
    command="gemini",
    models={
        "gemini-3-pro": ModelEntry("gemini-3-pro-preview", "Gemini 3 Pro", "Most capable"),
        "gemini-3-flash": ModelEntry("gemini-3-flash-preview", "Gemini 3 Flash", "Balanced", recommended=True),
    },
    streaming=StreamGranularity.TURN,
    build_args=_gemini_args,
)

CODEX = BackendDescriptor(
    id="codex",
    name="Codex CLI",
    command="codex",
    models={
        "gpt-5.2-codex": ModelEntry("gpt-5.2-codex", "GPT-5.2 Codex", "Frontier agentic coding model"),
        "gpt-5.1-codex-max": ModelEntry("gpt-5.1-codex-max", "GPT-5.1 Codex Max", "Codex-optimized flagship"),
        "gpt-5.2": ModelEntry("gpt-5.2", "GPT-5.2", "Latest frontier model"),
        "gpt-5.1-codex-mini": ModelEntry("gpt-5.1-codex-mini", "GPT-5.1 Codex Mini", "Cheaper and faster", recommended=True),
    },
    streaming=StreamGranularity.TURN,
    build_args=_codex_args,
)


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------


class BackendRegistry:
    """Ordered table of backends; earlier registrations take precedence."""

    def __init__(self, backends: Optional[List[BackendDescriptor]] = None) -> None:
        self._backends: Dict[str, BackendDescriptor] = {}
        for backend in backends or []:
            self.register(backend)

    def register(self, backend: BackendDescriptor) -> None:
        if backend.id in self._backends:
            raise ValueError(f"Backend '{backend.id}' is already registered")
        # unknown protocols fail here, not per request
        get_parser(backend.protocol or backend.id)
        self._backends[backend.id] = backend
        logger.debug(f"Registered backend '{backend.id}' with models {', '.join(backend.models)}")

    def get(self, backend_id: str) -> Optional[BackendDescriptor]:
        return self._backends.get(backend_id)

    def list(self) -> List[BackendDescriptor]:
        return list(self._backends.values())

    def apply_overrides(self, overrides: Dict[str, BackendOverride]) -> None:
        for backend_id, override in overrides.items():
            if backend_id not in self._backends:
                logger.warning(f"Ignoring configuration for unknown backend '{backend_id}'")
                continue
            self._backends[backend_id] = self._backends[backend_id].with_override(override)

    def resolve_model(self, model_id: str) -> Optional[Tuple[BackendDescriptor, ModelEntry]]:
        for backend in self._backends.values():
            if backend.override.enabled and model_id in backend.models:
                return backend, backend.models[model_id]
        return None

    def available_models(self) -> List[ModelInfo]:
        models: List[ModelInfo] = []
        seen = set()
        for backend in self._backends.values():
            if not backend.override.enabled or not is_installed(backend):
                continue
            for model_id, entry in backend.models.items():
                # Skip duplicate model IDs (first backend wins)
                if model_id in seen:
                    continue
                seen.add(model_id)
                models.append(ModelInfo(model_id, entry.name, entry.hint, entry.recommended, backend.id, backend.name))
        return models


def is_installed(backend: BackendDescriptor) -> bool:
    return shutil.which(backend.executable) is not None


def resolve_reference_dirs(scope: Path) -> List[str]:
    """Real paths of the symlinked reference directories inside the work dir."""
    refs = work_dir(scope)
    if not refs.is_dir():
        return []
    return sorted(str(entry.resolve()) for entry in refs.iterdir() if entry.is_symlink())


_registry = BackendRegistry([CLAUDE, GEMINI, CODEX])


def get_registry() -> BackendRegistry:
    """Get the global backend registry instance."""
    return _registry


def register_backend(backend: BackendDescriptor) -> None:
    _registry.register(backend)


def get_backend(backend_id: str) -> Optional[BackendDescriptor]:
    return _registry.get(backend_id)


def list_backends() -> List[BackendDescriptor]:
    return _registry.list()


def resolve_model(model_id: str) -> Optional[Tuple[BackendDescriptor, ModelEntry]]:
    return _registry.resolve_model(model_id)


def available_models() -> List[ModelInfo]:
    return _registry.available_models()
