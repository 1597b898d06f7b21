from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

SECTIONS = ("llm-gaps", "best-practices", "api", "custom")
DEFAULT_SECTIONS = ("llm-gaps", "best-practices", "api")


@dataclass
class GenerationRequest:
    """One documentation-optimization call."""
    package_name: str
    scope: Path
    content: str = ""
    model: Optional[str] = None
    timeout: Optional[float] = None
    no_cache: bool = False
    sections: List[str] = field(default_factory=lambda: list(DEFAULT_SECTIONS))
    custom_instructions: Optional[str] = None
    version: Optional[str] = None
    has_releases: bool = False
    has_changelog: Optional[str] = None
    has_issues: bool = False
    doc_files: List[str] = field(default_factory=list)

    def __post_init__(self):
        self.scope = Path(self.scope)
        unknown = [s for s in self.sections if s not in SECTIONS]
        if unknown:
            raise ValueError(f"Unknown section(s): {', '.join(unknown)}")
        if "custom" in self.sections and not self.custom_instructions:
            raise ValueError("Section 'custom' requires custom_instructions")


@dataclass
class Usage:
    input_tokens: int = 0
    output_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens

    def to_dict(self) -> Dict[str, int]:
        return {
            "inputTokens": self.input_tokens,
            "outputTokens": self.output_tokens,
            "totalTokens": self.total_tokens,
        }


@dataclass
class GenerationResult:
    optimized: str
    was_optimized: bool
    error: Optional[str] = None
    finish_reason: Optional[str] = None
    usage: Optional[Usage] = None
    cost: Optional[float] = None
    model: Optional[str] = None
    warnings: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        """Caller-facing shape, optional keys omitted when unset."""
        data: Dict[str, Any] = {"optimized": self.optimized, "wasOptimized": self.was_optimized}
        if self.error is not None:
            data["error"] = self.error
        if self.finish_reason is not None:
            data["finishReason"] = self.finish_reason
        if self.usage is not None:
            data["usage"] = self.usage.to_dict()
        if self.cost is not None:
            data["cost"] = self.cost
        return data


@dataclass
class StreamProgress:
    """Progress update handed to ``on_progress`` callbacks."""
    chunk: str
    type: str  # "text" | "reasoning"
    text: str = ""
    reasoning: str = ""
