"""Pick the authoritative backend answer and strip generation artifacts."""
import re
from pathlib import Path
from typing import Callable, Iterable, List, Optional, Set

from core.logging import logger

WORK_DIR_NAME = ".docdistill"
OUTPUT_FILENAME = "_OUTPUT.md"

_FENCE_OPEN = re.compile(r"^```[^\n`]*\n")
_FENCE_CLOSE = re.compile(r"\n?```\s*$")
_THINK = re.compile(r"<think>.*?</think>", re.DOTALL)
_BEGIN = re.compile(r"<!--\s*BEGIN\s*-->")
_END = re.compile(r"<!--\s*END\s*-->")
_FRONTMATTER = re.compile(r"^---\n.*?\n---[ \t]*\n*", re.DOTALL)

# Answers that describe the document instead of being it
_OUTLINE_PATTERNS = [
    re.compile(r"Would you like me to (?:write|create|generate)", re.IGNORECASE),
    re.compile(r"The document is \*{0,2}\d+ lines\*{0,2}", re.IGNORECASE),
    re.compile(r"^## Key Content\s*$", re.MULTILINE),
]

_CONTENT_START = re.compile(r"^(?:#{1,3} |\*\*|```|⚠️|✅)", re.MULTILINE)
_NARRATION = re.compile(r"Let me|I'll|I will|Now |First,|Looking at|Examining|Perfect!|Here's|I've", re.IGNORECASE)

# Generous limits, only egregious overruns are flagged
SECTION_MAX_LINES = {
    "llm-gaps": 160,
    "best-practices": 300,
    "api": 160,
    "custom": 160,
}


def work_dir(scope: Path) -> Path:
    return Path(scope) / WORK_DIR_NAME


def output_path(scope: Path) -> Path:
    return work_dir(scope) / OUTPUT_FILENAME


def extract_output(out_file: Path, write_content: Optional[str], stream_text: str) -> str:
    """Choose the raw answer: output file, then write-tool content, then the stream."""
    if out_file.is_file():
        try:
            text = out_file.read_text(encoding="utf-8", errors="replace").strip()
        except OSError as e:
            logger.warning(f"Could not read backend output file {out_file}: {e}")
            text = ""
        if text:
            return text
    if write_content and write_content.strip():
        return write_content.strip()
    return stream_text.strip()


def clean_output(text: str) -> str:
    """Strip fences, leaked reasoning and framing from a backend answer, then sanitize it.

    Returns an empty string when the answer is an outline of the document
    rather than the document itself.
    """
    cleaned = text.strip()
    if cleaned.startswith("```") and cleaned.endswith("```"):
        cleaned = _FENCE_CLOSE.sub("", _FENCE_OPEN.sub("", cleaned, count=1), count=1)

    cleaned = _THINK.sub("", cleaned)

    begin = _BEGIN.search(cleaned)
    end_matches = list(_END.finditer(cleaned))
    if begin and end_matches and end_matches[-1].start() > begin.end():
        cleaned = cleaned[begin.end():end_matches[-1].start()].strip()
    elif begin:
        # unterminated, keep everything after the marker
        cleaned = cleaned[begin.end():].strip()
    else:
        cleaned = _FRONTMATTER.sub("", cleaned.lstrip(), count=1)

    for pattern in _OUTLINE_PATTERNS:
        if pattern.search(cleaned):
            logger.warning("Backend returned an outline instead of content")
            return ""

    first = _CONTENT_START.search(cleaned)
    if first and first.start() > 0 and _NARRATION.search(cleaned[:first.start()]):
        cleaned = cleaned[first.start():]

    return sanitize_markdown(cleaned).strip()


# --- Sanitizing ---
# Injection vectors in answers that coding agents will read

_ZERO_WIDTH = re.compile(r"[\u200b\u200c\u200d\u200e\u200f\u061c\u180e\u2060\ufeff\u2028\u2029]")
_HTML_COMMENT = re.compile(r"<!--.*?-->", re.DOTALL)

# Never legitimate, stripped inside code blocks too
AGENT_DIRECTIVE_TAGS = (
    "system", "instructions", "override", "prompt", "context", "role", "user-prompt",
    "assistant", "tool-use", "tool-result", "system-prompt", "human", "admin",
)
# Legitimate in code examples (`<script setup>`), stripped outside code blocks only
DANGEROUS_HTML_TAGS = ("script", "iframe", "style", "meta", "object", "embed", "form")

_CODE_FENCE_OPEN = re.compile(r"^(`{3,}|~{3,})")
_CODE_FENCE_CLOSE = re.compile(r"^(`{3,}|~{3,})\s*$")

_ANGLE_ENTITIES = [
    (re.compile(r"&lt;|&#0*60;|&#x0*3c;", re.IGNORECASE), "<"),
    (re.compile(r"&gt;|&#0*62;|&#x0*3e;", re.IGNORECASE), ">"),
]
_EXTERNAL_IMAGE = re.compile(r"!\[([^\]]*)\]\(https?://[^)]+\)", re.IGNORECASE)
_EXTERNAL_LINK = re.compile(r"\[([^\]]*)\]\((https?://[^)]+)\)", re.IGNORECASE)


def _percent_encodable(word: str) -> str:
    return "".join(f"(?:{c}|%{ord(c):02x}|%{ord(c.upper()):02x})" for c in word)


# raw or percent-encoded javascript:/data:/vbscript:/file: targets
_DANGEROUS_PROTOCOL = re.compile(
    r"!?\[([^\]]*)\]\(\s*(?:"
    + "|".join(_percent_encodable(p) for p in ("javascript", "data", "vbscript", "file"))
    + r")\s*:[^)]*\)",
    re.IGNORECASE,
)
_DIRECTIVE_LINE = re.compile(
    r"^[ \t]*(?:SYSTEM|OVERRIDE|INSTRUCTION|NOTE TO AI|IGNORE PREVIOUS|IGNORE ALL PREVIOUS|DISREGARD"
    r"|FORGET ALL|NEW INSTRUCTIONS?|IMPORTANT SYSTEM|ADMIN OVERRIDE)\s*[:>].*",
    re.IGNORECASE | re.MULTILINE,
)
_BASE64_BLOB = re.compile(r"^[A-Z0-9+/=]{100,}$", re.IGNORECASE | re.MULTILINE)
_UNICODE_ESCAPE_SPAM = re.compile(r"(?:\\u[0-9A-Fa-f]{4}){4,}")


def _strip_tags(text: str, tags: Iterable[str]) -> str:
    group = "|".join(re.escape(t) for t in tags)
    text = re.sub(rf"<({group})(\s[^>]*)?>.*?</\1>", "", text, flags=re.IGNORECASE | re.DOTALL)
    return re.sub(rf"</?({group})(\s[^>]*)?/?>", "", text, flags=re.IGNORECASE)


def outside_code_blocks(content: str, fn: Callable[[str], str]) -> str:
    """Apply ``fn`` to the parts of ``content`` outside fenced code blocks.

    A fence closes on a bare fence line of the same character and at least
    the same length.  An unclosed block is treated as prose.
    """
    result: List[str] = []
    prose: List[str] = []
    code: List[str] = []
    fence = ""
    for line in content.split("\n"):
        stripped = line.lstrip()
        if not fence:
            match = _CODE_FENCE_OPEN.match(stripped)
            if match:
                if prose:
                    result.append(fn("\n".join(prose)))
                    prose = []
                fence = match.group(1)
                code = [line]
            else:
                prose.append(line)
            continue
        match = _CODE_FENCE_CLOSE.match(stripped)
        if match and match.group(1)[0] == fence[0] and len(match.group(1)) >= len(fence):
            result.append("\n".join(code + [line]))
            code = []
            fence = ""
        else:
            code.append(line)

    if prose:
        result.append(fn("\n".join(prose)))
    if fence and code:
        result.append(fn("\n".join(code)))
    return "\n".join(result)


def _sanitize_prose(text: str) -> str:
    for pattern, char in _ANGLE_ENTITIES:
        text = pattern.sub(char, text)
    text = _strip_tags(text, AGENT_DIRECTIVE_TAGS + DANGEROUS_HTML_TAGS)
    text = _EXTERNAL_IMAGE.sub("", text)
    text = _EXTERNAL_LINK.sub(r"\1", text)
    text = _DANGEROUS_PROTOCOL.sub("", text)
    text = _DIRECTIVE_LINE.sub("", text)
    text = _BASE64_BLOB.sub("", text)
    return _UNICODE_ESCAPE_SPAM.sub("", text)


def sanitize_markdown(text: str) -> str:
    """Remove prompt-injection vectors from markdown meant for agents.

    Zero-width characters, HTML comments and agent directive tags
    (``<system>``, ``<instructions>``...) go everywhere.  Dangerous HTML,
    external images, external link targets, ``javascript:``-style links,
    directive lines and encoded payloads go only outside code blocks.
    """
    if not text:
        return text
    text = _ZERO_WIDTH.sub("", text)
    text = _HTML_COMMENT.sub("", text)
    text = _strip_tags(text, AGENT_DIRECTIVE_TAGS)
    return outside_code_blocks(text, _sanitize_prose)


def validate_output(content: str, sections: Iterable[str]) -> List[str]:
    """Heuristic quality warnings for a cleaned answer."""
    warnings = []
    lines = content.count("\n") + 1
    max_lines = sum(SECTION_MAX_LINES.get(s, 160) for s in sections)
    if max_lines and lines > max_lines * 1.5:
        warnings.append(f"Output {lines} lines exceeds {max_lines} max by >50%")
    if lines < 3:
        warnings.append(f"Output only {lines} lines, likely too sparse")
    return warnings


def snapshot(directory: Path) -> Set[str]:
    if not directory.is_dir():
        return set()
    return {entry.name for entry in directory.iterdir()}


def remove_unexpected_files(directory: Path, before: Set[str], keep: Iterable[str]) -> List[str]:
    """Delete files a backend created in ``directory`` that we did not ask for."""
    allowed = set(before) | set(keep)
    removed = []
    for entry in directory.iterdir() if directory.is_dir() else ():
        if entry.name in allowed or not entry.is_file() or entry.is_symlink():
            continue
        try:
            entry.unlink()
        except OSError as e:
            logger.warning(f"Could not remove unexpected file {entry}: {e}")
            continue
        removed.append(entry.name)
    if removed:
        logger.warning(f"Removed unexpected backend files: {', '.join(sorted(removed))}")
    return removed
