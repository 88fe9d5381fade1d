"""
Source references for generated documents.

An artifact's source list is the union of the files the model actually
opened through ``docs_read_source_file`` and the repository paths the
document itself cites. Only paths that exist in the checkout are kept.
"""

import logging
import re
from pathlib import Path

logger = logging.getLogger("docforge.agent.provenance")

_TITLED_FENCE_RE = re.compile(r'```\w*\s+title="([^"]+)"')
_INLINE_PATH_RE = re.compile(r"`([^`\s]+\.\w{1,5})`")
_LINK_TARGET_RE = re.compile(r"\]\(([^)\s#]+)(?:#[^)]*)?\)")
_SOURCE_SUFFIXES = (
    ".py", ".ts", ".tsx", ".js", ".go", ".rs", ".cs", ".java", ".kt",
    ".rb", ".php", ".c", ".h", ".cpp", ".md", ".toml", ".json", ".yml", ".yaml",
)


class SourceReferenceCollector:
    """Collects repository files referenced by generated documentation.

    Args:
        repo_path: Repository checkout the document was generated from,
            or None when no checkout is available (no filtering possible).
    """

    def __init__(self, repo_path: Path | None) -> None:
        self.repo_path = repo_path

    def extract(self, content: str) -> list[str]:
        """Return sorted relative paths cited in *content*.

        Looks for titled code fences (```python title="a/b.py"), inline
        code spans that look like paths, and relative Markdown link targets.
        """
        refs: set[str] = set()
        refs.update(_TITLED_FENCE_RE.findall(content))

        for candidate in _INLINE_PATH_RE.findall(content):
            if "/" in candidate or candidate.endswith(_SOURCE_SUFFIXES):
                refs.add(candidate)

        for target in _LINK_TARGET_RE.findall(content):
            if "://" not in target and not target.startswith("mailto:"):
                refs.add(target)

        cleaned = {ref.removeprefix("./").lstrip("/") for ref in refs}
        return sorted(ref for ref in cleaned if ref and self._exists(ref))

    def collect(self, content: str, discovered: list[str] | None = None) -> list[str]:
        """Merge *discovered* (tool reads, in order) with paths cited in *content*."""
        merged = list(dict.fromkeys(discovered or []))
        for ref in self.extract(content):
            if ref not in merged:
                merged.append(ref)
        return merged

    def _exists(self, ref: str) -> bool:
        if self.repo_path is None:
            return False
        try:
            target = (self.repo_path / ref).resolve()
            return target.is_relative_to(self.repo_path.resolve()) and target.is_file()
        except (OSError, ValueError):
            logger.debug("Unresolvable reference: %s", ref)
            return False
