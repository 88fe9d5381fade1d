"""Domain records shared by the generator, the orchestrator and the store."""

from __future__ import annotations

import dataclasses
import uuid
from datetime import datetime, timezone
from typing import Any

from quality import QualityMetrics


def new_id() -> str:
    return uuid.uuid4().hex


@dataclasses.dataclass
class PendingItem:
    """One catalogue entry awaiting generated content.

    Created by the planning phase; the orchestrator flips ``is_completed``
    once its artifact has been persisted. Nothing else is mutated.
    """
    id: str
    name: str                      # machine identifier from the outline
    title: str                     # display title (spaces stripped)
    prompt: str                    # authoring guidance for the writer
    document_id: str = ""          # scope the item belongs to
    parent_id: str | None = None
    url: str = ""                  # parent_title chain, e.g. "Overview_Install"
    order: int = 0                 # position among siblings
    is_completed: bool = False

    def to_dict(self) -> dict[str, Any]:
        return dataclasses.asdict(self)


@dataclasses.dataclass
class Artifact:
    """An accepted generated document plus its metadata."""
    item_id: str
    title: str
    content: str
    summary: str | None = None
    metadata: dict[str, str] = dataclasses.field(default_factory=dict)
    source_files: list[str] = dataclasses.field(default_factory=list)
    id: str = dataclasses.field(default_factory=new_id)
    created_at: datetime = dataclasses.field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def size(self) -> int:
        return len(self.content.encode("utf-8"))

    def to_dict(self) -> dict[str, Any]:
        data = dataclasses.asdict(self)
        data["created_at"] = self.created_at.isoformat()
        data["size"] = self.size
        return data


@dataclasses.dataclass(frozen=True)
class GenerationAttempt:
    """Outcome of one direct generation try. Never persisted."""
    success: bool
    artifact: Artifact | None = None
    metrics: QualityMetrics | None = None
    failure_reason: str | None = None


@dataclasses.dataclass(frozen=True)
class ItemOutcome:
    """What a worker hands back to the orchestrator for one item."""
    item: PendingItem
    artifact: Artifact | None
    source_files: list[str] = dataclasses.field(default_factory=list)
    strategy: str = ""             # "direct" | "fallback"
    attempts: int = 1
