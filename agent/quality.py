"""Deterministic content-quality gate for generated documents.

Pure functions over the markdown text: no model calls, no shared state, so
one evaluator can be used from every writer thread at once.
"""

from __future__ import annotations

import dataclasses
import logging
import re

from generation_config import GenerationConfig
from mermaid_validator import find_block_issues

logger = logging.getLogger("docforge.agent.quality")

MIN_HEADINGS = 5
MIN_DIAGRAMS = 3
MIN_CODE_BLOCKS = 2

# Fixed penalties subtracted from a perfect score of 100.
PENALTY_LENGTH_SHORT = 30
PENALTY_LENGTH_BORDERLINE = 10
PENALTY_HEADINGS = 10
PENALTY_DIAGRAMS = 10
PENALTY_CODE_BLOCKS = 5
PENALTY_LINKS = 5
PENALTY_NATIVE_RATIO = 10
PENALTY_PER_ISSUE = 5

# Content between MIN and MIN * this factor still costs a borderline penalty.
BORDERLINE_LENGTH_FACTOR = 1.2

_HEADING_RE = re.compile(r"^#{1,6}\s+", re.MULTILINE)
_DIAGRAM_RE = re.compile(r"```mermaid")
_CODE_BLOCK_RE = re.compile(r"```(?!mermaid)[\s\S]*?```")
_LINK_RE = re.compile(r"\[[^\]]+\]\([^)]+\)")


@dataclasses.dataclass(frozen=True)
class QualityMetrics:
    """Structural measurements of one document. Derived, never hand-set."""
    content_length: int = 0
    heading_count: int = 0
    diagram_count: int = 0
    code_block_count: int = 0
    link_count: int = 0
    native_script_ratio: float = 0.0
    quality_score: float = 0.0

    def to_metadata(self) -> dict[str, str]:
        """Flatten into the string map stored alongside an artifact."""
        return {
            "quality_score": f"{self.quality_score:.2f}",
            "content_length": str(self.content_length),
            "mermaid_count": str(self.diagram_count),
            "heading_count": str(self.heading_count),
            "code_block_count": str(self.code_block_count),
            "link_count": str(self.link_count),
            "native_script_ratio": f"{self.native_script_ratio:.3f}",
        }


@dataclasses.dataclass(frozen=True)
class QualityReport:
    passed: bool
    metrics: QualityMetrics
    issues: list[str]


class QualityEvaluator:
    """Scores generated markdown against the configured thresholds.

    ``passed`` is decided by the issue list being empty. The score is
    reported alongside and only adds an issue of its own when it drops below
    ``config.min_quality_score``.
    """

    def __init__(self, config: GenerationConfig) -> None:
        self._config = config

    def evaluate(self, content: str | None) -> QualityReport:
        if content is None or not content.strip():
            return QualityReport(passed=False, metrics=QualityMetrics(), issues=["content empty"])

        cfg = self._config
        normalized = content.strip()
        length = len(normalized)
        headings = len(_HEADING_RE.findall(normalized))
        diagrams = len(_DIAGRAM_RE.findall(normalized))
        code_blocks = len(_CODE_BLOCK_RE.findall(normalized))
        links = len(_LINK_RE.findall(normalized))
        ratio = native_script_ratio(normalized, cfg.native_script_range)

        issues: list[str] = []
        if length < cfg.min_content_length:
            issues.append(f"content length below minimum: {length}/{cfg.min_content_length}")
        if ratio < cfg.min_native_ratio:
            issues.append(f"native-script ratio too low: {ratio:.0%}")
        if headings < MIN_HEADINGS:
            issues.append(f"too few headings (need at least {MIN_HEADINGS})")
        if diagrams < MIN_DIAGRAMS:
            issues.append(f"too few mermaid diagrams (need at least {MIN_DIAGRAMS})")
        if links == 0:
            issues.append("no references or links")
        if diagrams:
            issues.extend(find_block_issues(normalized))

        score = 100.0
        if length < cfg.min_content_length:
            score -= PENALTY_LENGTH_SHORT
        elif length < cfg.min_content_length * BORDERLINE_LENGTH_FACTOR:
            score -= PENALTY_LENGTH_BORDERLINE
        if headings < MIN_HEADINGS:
            score -= PENALTY_HEADINGS
        if diagrams < MIN_DIAGRAMS:
            score -= PENALTY_DIAGRAMS
        if code_blocks < MIN_CODE_BLOCKS:
            score -= PENALTY_CODE_BLOCKS
        if links == 0:
            score -= PENALTY_LINKS
        if ratio < cfg.min_native_ratio:
            score -= PENALTY_NATIVE_RATIO
        score -= PENALTY_PER_ISSUE * len(issues)
        score = max(score, 0.0)

        # The threshold issue is itself an accumulated issue and costs its penalty too.
        if score < cfg.min_quality_score:
            issues.append(f"quality score below threshold {cfg.min_quality_score:g}")
            score = max(score - PENALTY_PER_ISSUE, 0.0)

        metrics = QualityMetrics(
            content_length=length,
            heading_count=headings,
            diagram_count=diagrams,
            code_block_count=code_blocks,
            link_count=links,
            native_script_ratio=ratio,
            quality_score=score,
        )
        return QualityReport(passed=not issues, metrics=metrics, issues=issues)


def native_script_ratio(text: str, script_range: tuple[int, int]) -> float:
    """Fraction of characters in *text* whose code point lies in *script_range*."""
    if not text:
        return 0.0
    low, high = script_range
    native = sum(1 for ch in text if low <= ord(ch) <= high)
    return native / len(text)
