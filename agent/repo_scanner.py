"""Repository scanning: ignore rules, file chunking and chunk reads.

Pure functions operating on the filesystem, no network calls. Every file
is described by one or more FileChunk records of at most CHUNK_SIZE bytes
so large files can be fed to prompts or an index piece by piece.
"""

import dataclasses
import logging
import math
import os
import re
from pathlib import Path
from typing import Any, Iterator

logger = logging.getLogger("docforge.agent.scanner")

CHUNK_SIZE = 800 * 1024


# ---------------------------------------------------------------------------
# Data classes
# ---------------------------------------------------------------------------

@dataclasses.dataclass(frozen=True)
class FileChunk:
    """One contiguous byte range of a file."""
    path: Path
    name: str
    total_size: int
    chunk_index: int
    chunk_count: int
    byte_offset: int
    byte_length: int

    @property
    def is_chunked(self) -> bool:
        return self.chunk_count > 1


def chunk_file(path: Path, size: int, chunk_size: int = CHUNK_SIZE) -> list[FileChunk]:
    """Split a file of *size* bytes into ordered chunks.

    Always yields at least one chunk; an empty file gets a single
    zero-length chunk.
    """
    if chunk_size <= 0:
        raise ValueError(f"chunk_size must be positive, got {chunk_size}")
    count = max(1, math.ceil(size / chunk_size))
    return [
        FileChunk(
            path=path,
            name=path.name,
            total_size=size,
            chunk_index=index,
            chunk_count=count,
            byte_offset=index * chunk_size,
            byte_length=min(chunk_size, size - index * chunk_size),
        )
        for index in range(count)
    ]


# ---------------------------------------------------------------------------
# Ignore rules
# ---------------------------------------------------------------------------

def load_ignore_patterns(root: Path, extra: tuple[str, ...] | list[str] = ()) -> list[str]:
    """Patterns from ``root/.gitignore`` (comments and blanks dropped) plus *extra*."""
    patterns: list[str] = []
    gitignore = root / ".gitignore"
    if gitignore.is_file():
        try:
            lines = gitignore.read_text(encoding="utf-8", errors="replace").splitlines()
        except OSError as e:
            logger.warning("Could not read %s: %s", gitignore, e)
            lines = []
        patterns.extend(line.strip() for line in lines if line.strip() and not line.startswith("#"))
    patterns.extend(extra)
    return patterns


def _matches(name: str, pattern: str) -> bool:
    if "*" in pattern:
        regex = "^" + re.escape(pattern).replace(r"\*", ".*") + "$"
        return re.match(regex, name, re.IGNORECASE) is not None
    return name.lower() == pattern.lower()


def should_ignore_file(name: str, patterns: list[str]) -> bool:
    """True if the file name matches any pattern (case-insensitive, ``*`` globs)."""
    for pattern in patterns:
        if not pattern or not pattern.strip() or pattern.startswith("#"):
            continue
        if _matches(name, pattern.strip()):
            return True
    return False


def should_ignore_directory(name: str, patterns: list[str]) -> bool:
    """Like should_ignore_file; a trailing ``/`` marks a directory-only pattern."""
    for pattern in patterns:
        if not pattern or not pattern.strip() or pattern.startswith("#"):
            continue
        if _matches(name, pattern.strip().rstrip("/")):
            return True
    return False


# ---------------------------------------------------------------------------
# Scanning
# ---------------------------------------------------------------------------

def scan_directory(root: Path, patterns: list[str], chunk_size: int = CHUNK_SIZE) -> list[FileChunk]:
    """Walk *root* and return the chunk list of every non-ignored file.

    Dot-directories are skipped, as are directories that cannot be read.
    Traversal is depth-first with an explicit stack, in name order.
    """
    chunks: list[FileChunk] = []
    stack = [root]
    while stack:
        current = stack.pop()
        try:
            entries = sorted(os.scandir(current), key=lambda e: e.name)
        except OSError as e:
            logger.debug("Skipping unreadable directory %s: %s", current, e)
            continue

        subdirs: list[Path] = []
        for entry in entries:
            try:
                if entry.is_dir(follow_symlinks=False):
                    if entry.name.startswith(".") or should_ignore_directory(entry.name, patterns):
                        continue
                    subdirs.append(Path(entry.path))
                elif entry.is_file():
                    if should_ignore_file(entry.name, patterns):
                        continue
                    chunks.extend(chunk_file(Path(entry.path), entry.stat().st_size, chunk_size))
            except OSError as e:
                logger.debug("Skipping %s: %s", entry.path, e)

        # Reversed so the stack pops subdirectories in name order.
        stack.extend(reversed(subdirs))
    return chunks


def read_chunk_content(chunk: FileChunk) -> str:
    """Return the UTF-8 text of the chunk's byte range, clamped to the file size."""
    length = chunk.byte_length
    if chunk.byte_offset + length > chunk.total_size:
        length = max(0, chunk.total_size - chunk.byte_offset)
    if length <= 0:
        return ""
    with open(chunk.path, "rb") as fh:
        fh.seek(chunk.byte_offset)
        data = fh.read(length)
    return data.decode("utf-8", errors="replace")


# ---------------------------------------------------------------------------
# Prompt and index context
# ---------------------------------------------------------------------------

def relative_path(root: Path, chunk: FileChunk) -> str:
    try:
        return chunk.path.relative_to(root).as_posix()
    except ValueError:
        return chunk.path.as_posix()


def render_catalogue(root: Path, chunks: list[FileChunk]) -> str:
    """Newline-separated relative paths, one per file, dotfiles left out."""
    lines: list[str] = []
    for chunk in chunks:
        if chunk.chunk_index:
            continue
        rel = relative_path(root, chunk)
        if rel.startswith("."):
            continue
        lines.append(rel)
    return "\n".join(lines) + ("\n" if lines else "")


def build_chunk_metadata(chunk: FileChunk, document_id: str) -> dict[str, Any]:
    return {
        "fileSize": chunk.total_size,
        "chunkIndex": chunk.chunk_index,
        "chunkCount": chunk.chunk_count,
        "chunkOffset": chunk.byte_offset,
        "chunkLength": chunk.byte_length,
        "documentId": document_id,
    }


def format_chunk_message(root: Path, chunk: FileChunk, content: str) -> str:
    return f"```{relative_path(root, chunk)}\n{content}\n```"


def iter_chunk_messages(
    root: Path, chunks: list[FileChunk], document_id: str,
) -> Iterator[tuple[str, dict[str, Any]]]:
    """Yield ``(message, metadata)`` for every non-empty chunk, in chunk order per file."""
    for chunk in sorted(chunks, key=lambda c: (str(c.path), c.chunk_index)):
        content = read_chunk_content(chunk)
        if not content.strip():
            logger.warning(
                "Chunk %d/%d of %s is empty, skipping",
                chunk.chunk_index + 1, chunk.chunk_count, chunk.path,
            )
            continue
        metadata = build_chunk_metadata(chunk, document_id)
        metadata.update({"fileName": chunk.name, "filePath": str(chunk.path), "type": "code"})
        yield format_chunk_message(root, chunk, content), metadata
