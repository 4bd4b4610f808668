"""
Code chunk extraction.

Walks a repository working copy and turns every non-binary, non-vendored file
into chunks. Files in a language with a registered structural extractor are
split at function/class boundaries; everything else falls back to fixed-size
line windows with overlap, so no text file is skipped.

Chunk ids depend only on the file path and line range and content hashes only
on the content, so re-extracting an unchanged tree yields the same chunks.
"""

import hashlib
import logging
import os
import subprocess
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath
from typing import Dict, Iterator, List, Optional

from codewiki.errors import ExtractionError
from .structure import Span, get_extractor, split_lines

logger = logging.getLogger(__name__)


# Directories never indexed, at any depth
SKIP_DIRS = {
    ".git", "node_modules", "vendor", "third_party", "target", "dist", "build",
    ".next", ".venv", "venv", "__pycache__", ".tox", ".mypy_cache",
    ".pytest_cache", "coverage", "bower_components", "Pods", ".gradle",
}

SKIP_FILES = {
    "package-lock.json", "yarn.lock", "pnpm-lock.yaml", "Cargo.lock", "poetry.lock",
}

SKIP_SUFFIXES = (".min.js", ".min.css")

LANGUAGE_BY_EXTENSION = {
    ".py": "python",
    ".pyi": "python",
    ".js": "javascript",
    ".jsx": "javascript",
    ".mjs": "javascript",
    ".cjs": "javascript",
    ".ts": "typescript",
    ".tsx": "tsx",
    ".go": "go",
    ".rs": "rust",
    ".java": "java",
    ".kt": "kotlin",
    ".rb": "ruby",
    ".php": "php",
    ".c": "c",
    ".h": "c",
    ".cpp": "cpp",
    ".cc": "cpp",
    ".hpp": "cpp",
    ".cs": "csharp",
    ".swift": "swift",
    ".scala": "scala",
    ".sh": "shell",
    ".bash": "shell",
    ".sql": "sql",
    ".md": "markdown",
    ".rst": "rst",
    ".json": "json",
    ".yml": "yaml",
    ".yaml": "yaml",
    ".toml": "toml",
    ".html": "html",
    ".css": "css",
}

_SNIFF_BYTES = 8192
_MAX_UNDECODABLE_RATIO = 0.3


@dataclass
class Chunk:
    """
    A contiguous, addressable span of source code.

    Attributes:
        chunk_id: Deterministic id from file path and line range
        file_path: POSIX path relative to the repository root
        language: Detected language ("unknown" if unmapped)
        line_start: 1-indexed first line
        line_end: 1-indexed last line (inclusive)
        symbol_names: Symbols defined in the span, in source order
        content: The code text
        content_hash: SHA256 of the content (embedding dedup key)
    """

    chunk_id: str
    file_path: str
    language: str
    line_start: int
    line_end: int
    content: str
    content_hash: str
    symbol_names: List[str] = field(default_factory=list)

    def __post_init__(self):
        """Validate chunk data after initialization."""
        if self.line_start < 1:
            raise ValueError("line_start must be >= 1")
        if self.line_end < self.line_start:
            raise ValueError("line_end must be >= line_start")
        if not self.content_hash:
            raise ValueError("content_hash must not be empty")

    def metadata(self) -> Dict[str, object]:
        """Chunk record without the content, as persisted per commit."""
        return {
            "chunk_id": self.chunk_id,
            "file_path": self.file_path,
            "language": self.language,
            "line_start": self.line_start,
            "line_end": self.line_end,
            "symbol_names": list(self.symbol_names),
            "content_hash": self.content_hash,
        }


def compute_content_hash(content: str) -> str:
    """Compute SHA256 hash of chunk content."""
    return hashlib.sha256(content.encode("utf-8")).hexdigest()


def compute_chunk_id(file_path: str, line_start: int, line_end: int) -> str:
    key = f"{file_path}:{line_start}-{line_end}"
    return hashlib.sha256(key.encode("utf-8")).hexdigest()[:32]


def detect_language(file_path: str) -> str:
    """Detect programming language from file extension."""
    suffix = PurePosixPath(file_path).suffix.lower()
    return LANGUAGE_BY_EXTENSION.get(suffix, "unknown")


def is_binary(data: bytes) -> bool:
    """Sniff the first bytes of a file for binary content."""
    sample = data[:_SNIFF_BYTES]
    if b"\x00" in sample:
        return True
    if not sample:
        return False
    decoded = sample.decode("utf-8", errors="replace")
    # A multi-byte character cut at the sample boundary yields one replacement
    bad = decoded.count("�")
    return bad / max(1, len(decoded)) > _MAX_UNDECODABLE_RATIO


def is_skipped_path(file_path: str) -> bool:
    """Vendored, generated or lock files that never produce chunks."""
    parts = PurePosixPath(file_path).parts
    if any(part in SKIP_DIRS for part in parts[:-1]):
        return True
    name = parts[-1] if parts else ""
    return name in SKIP_FILES or name.endswith(SKIP_SUFFIXES)


def window_spans(total_lines: int, window_lines: int, overlap_lines: int) -> List[Span]:
    """Fixed-size windows over ``total_lines`` lines, ``overlap_lines`` shared between neighbours."""
    if total_lines <= 0:
        return []
    step = max(1, window_lines - overlap_lines)
    spans = []
    start = 1
    while True:
        end = min(start + window_lines - 1, total_lines)
        spans.append(Span(start, end))
        if end >= total_lines:
            break
        start += step
    return spans


def list_repo_files(root: Path) -> List[str]:
    """
    List the files of a working copy as sorted POSIX paths.

    Uses ``git ls-files`` when the root is a git checkout, otherwise walks the
    tree (pruning skipped directories).
    """
    if (root / ".git").exists():
        try:
            output = subprocess.run(
                ["git", "-C", str(root), "ls-files", "-z"],
                capture_output=True,
                check=True,
            )
            files = [p for p in output.stdout.decode("utf-8", errors="replace").split("\0") if p]
            return sorted(files)
        except (OSError, subprocess.CalledProcessError) as e:
            logger.warning(f"git ls-files failed for {root}: {e}; walking the tree instead")

    files = []
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames[:] = sorted(d for d in dirnames if d not in SKIP_DIRS)
        rel_dir = Path(dirpath).relative_to(root)
        for filename in filenames:
            files.append((rel_dir / filename).as_posix())
    return sorted(files)


class ChunkExtractor:
    """
    Turns a repository tree into an ordered sequence of chunks.

    Usage:
        extractor = ChunkExtractor(window_lines=60, overlap_lines=10)
        for chunk in extractor.extract(Path("repos/acme/widget")):
            print(chunk.file_path, chunk.line_start, chunk.line_end)

        # Per-file failures from the last run
        extractor.errors
    """

    def __init__(
        self,
        window_lines: int = 60,
        overlap_lines: int = 10,
        max_chunk_lines: int = 200,
        max_file_bytes: int = 200_000,
    ):
        if overlap_lines < 0 or overlap_lines >= window_lines:
            raise ValueError("overlap_lines must be >= 0 and smaller than window_lines")
        self.window_lines = window_lines
        self.overlap_lines = overlap_lines
        self.max_chunk_lines = max(max_chunk_lines, window_lines)
        self.max_file_bytes = max_file_bytes
        self.errors: List[ExtractionError] = []
        self.files_seen = 0
        self.files_chunked = 0

    def extract(self, root: Path) -> Iterator[Chunk]:
        """
        Lazily yield chunks for every indexable file under ``root``.

        Each call starts a fresh run and resets ``errors`` and the file counters.
        """
        root = Path(root)
        self.errors = []
        self.files_seen = 0
        self.files_chunked = 0

        for file_path in list_repo_files(root):
            if is_skipped_path(file_path):
                continue
            self.files_seen += 1
            try:
                text = self._read_text(root / file_path)
            except ExtractionError as e:
                e.file_path = file_path
                logger.warning(f"Skipping {file_path}: {e.reason}")
                self.errors.append(e)
                continue
            if text is None:
                continue

            produced = False
            for chunk in self.chunk_file(file_path, text):
                produced = True
                yield chunk
            if produced:
                self.files_chunked += 1

    def _read_text(self, path: Path) -> Optional[str]:
        """File content as text, or None for files that are skipped silently."""
        try:
            if path.is_symlink() or not path.is_file():
                return None
            if path.stat().st_size > self.max_file_bytes:
                logger.debug(f"Skipping large file: {path}")
                return None
            data = path.read_bytes()
        except OSError as e:
            raise ExtractionError(str(path), f"read failed: {e}")

        if not data or is_binary(data):
            return None
        return data.decode("utf-8", errors="replace")

    def chunk_file(self, file_path: str, text: str) -> List[Chunk]:
        """Chunk one file's text. Whitespace-only spans are dropped."""
        lines = split_lines(text)
        if not lines or not text.strip():
            return []

        language = detect_language(file_path)
        spans = self._structural_spans(file_path, language, text)
        if spans is None:
            spans = window_spans(len(lines), self.window_lines, self.overlap_lines)

        chunks: List[Chunk] = []
        for span in spans:
            content = "\n".join(lines[span.line_start - 1 : span.line_end])
            if not content.strip():
                continue
            chunks.append(
                Chunk(
                    chunk_id=compute_chunk_id(file_path, span.line_start, span.line_end),
                    file_path=file_path,
                    language=language,
                    line_start=span.line_start,
                    line_end=span.line_end,
                    content=content,
                    content_hash=compute_content_hash(content),
                    symbol_names=list(span.symbol_names),
                )
            )
        return chunks

    def _structural_spans(self, file_path: str, language: str, text: str) -> Optional[List[Span]]:
        extractor = get_extractor(language)
        if extractor is None:
            return None
        try:
            spans = extractor(text)
        except Exception as e:
            logger.info(f"Structural extraction failed for {file_path}: {e}. Using line windows.")
            return None
        if not spans:
            return None

        # Oversized definitions are windowed, keeping their symbol names
        result: List[Span] = []
        for span in spans:
            length = span.line_end - span.line_start + 1
            if length <= self.max_chunk_lines:
                result.append(span)
                continue
            for window in window_spans(length, self.window_lines, self.overlap_lines):
                offset = span.line_start - 1
                result.append(Span(window.line_start + offset, window.line_end + offset, list(span.symbol_names)))
        return result
