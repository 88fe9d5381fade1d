"""Mermaid diagram integrity checks and heuristic repair.

Extracts ```mermaid blocks from markdown content and applies two cheap
structural checks per block: the block must declare a known diagram kind,
and its parentheses must balance. The repairer fixes the most common defect
class models produce, parentheses inside ``[label]`` text, which mermaid
reads as shape delimiters.

Both are heuristics, not a parser. Repair never guarantees validity; callers
re-validate afterwards.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from models import Artifact

logger = logging.getLogger("docforge.agent.mermaid")

# Captures the content between the fences (group 1). Not anchored to line
# starts: models often indent fences inside list items.
_MERMAID_BLOCK_RE = re.compile(r"```mermaid\s*(.*?)```", re.DOTALL)

_DIAGRAM_KIND_RE = re.compile(
    r"\b(graph|sequenceDiagram|classDiagram|stateDiagram|erDiagram|journey|gantt|mindmap|timeline)\b"
)

# A bracketed node label, e.g. A[Load config (env)]
_LABEL_RE = re.compile(r"\[[^\]]*\]")
_LABEL_PARENS = str.maketrans("", "", "()（）")

NO_DIAGRAM_ISSUE = "no diagram detected"


@dataclass(frozen=True)
class MermaidError:
    """A single mermaid block that failed an integrity check."""

    block_index: int   # 0-based index among all mermaid blocks in the document
    line_number: int   # 1-based line number where the block starts in the markdown
    source: str        # the raw mermaid source (without fences)
    error: str


def extract_mermaid_blocks(content: str) -> list[tuple[int, str]]:
    """Extract all mermaid blocks from markdown content.

    Returns:
        List of (line_number, source) tuples. line_number is 1-based,
        source is the content between the ``` fences.
    """
    results: list[tuple[int, str]] = []
    for match in _MERMAID_BLOCK_RE.finditer(content):
        line_number = content[:match.start()].count("\n") + 1
        results.append((line_number, match.group(1)))
    return results


def check_blocks(content: str) -> list[MermaidError]:
    """Run the per-block checks over every mermaid block in *content*."""
    errors: list[MermaidError] = []
    for index, (line_number, source) in enumerate(extract_mermaid_blocks(content)):
        if not _DIAGRAM_KIND_RE.search(source):
            errors.append(MermaidError(
                block_index=index,
                line_number=line_number,
                source=source.strip(),
                error=f"unrecognised diagram type in block {index + 1}",
            ))
        if source.count("(") != source.count(")"):
            errors.append(MermaidError(
                block_index=index,
                line_number=line_number,
                source=source.strip(),
                error=f"bracket imbalance in block {index + 1}: "
                      f"{source.count('(')} '(' vs {source.count(')')} ')'",
            ))
    return errors


def find_block_issues(content: str) -> list[str]:
    """Per-block issue messages only (no 'no diagram' issue)."""
    return [err.error for err in check_blocks(content)]


def validate_mermaid_syntax(content: str | None) -> tuple[bool, list[str]]:
    """Validate every mermaid block in *content*.

    Returns:
        (valid, issues). Content without any mermaid block is invalid.
    """
    if content is None or not content.strip():
        return False, ["content empty, cannot validate diagrams"]
    if not _MERMAID_BLOCK_RE.search(content):
        return False, [NO_DIAGRAM_ISSUE]
    issues = find_block_issues(content)
    return not issues, issues


def repair_mermaid(content: str) -> str:
    """Strip parentheses from bracketed labels inside every mermaid block.

    Everything outside ``[...]`` labels is left untouched. Returns *content*
    unchanged if anything goes wrong.
    """
    def _fix_block(match: re.Match) -> str:
        code = match.group(1)
        fixed = _LABEL_RE.sub(lambda m: m.group(0).translate(_LABEL_PARENS), code)
        return f"```mermaid\n{fixed}```"

    try:
        return _MERMAID_BLOCK_RE.sub(_fix_block, content)
    except (TypeError, re.error) as e:
        logger.error("Mermaid repair failed: %s", e)
        return content


def ensure_mermaid_integrity(artifact: "Artifact") -> bool:
    """Validate, repair once if needed, and re-validate *artifact* in place.

    Returns whether the final content passed. Never raises.
    """
    valid, issues = validate_mermaid_syntax(artifact.content)
    if valid:
        return True

    logger.warning("Mermaid check found issues in '%s': %s", artifact.title, "; ".join(issues))
    artifact.content = repair_mermaid(artifact.content)

    valid, remaining = validate_mermaid_syntax(artifact.content)
    if not valid:
        logger.error("Mermaid issues remain after repair in '%s': %s", artifact.title, "; ".join(remaining))
    return valid


def format_errors_for_prompt(errors: list[MermaidError]) -> str:
    """Format integrity errors into a string suitable for an LLM fix prompt."""
    parts: list[str] = []
    for err in errors:
        # Truncate very long sources to keep the prompt focused
        source_preview = err.source[:500]
        if len(err.source) > 500:
            source_preview += "\n... [truncated]"
        parts.append(
            f"### Diagram {err.block_index + 1} (line {err.line_number})\n"
            f"**Error:** {err.error}\n"
            f"**Source:**\n```\n{source_preview}\n```"
        )
    return "\n\n".join(parts)
