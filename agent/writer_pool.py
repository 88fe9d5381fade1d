"""
Bounded-concurrency orchestration of pending documents.

The orchestrator keeps at most ``K`` items in flight on a
ThreadPoolExecutor, admits new work with a small stagger between
submissions so bursts do not trip provider rate limits, and drains
results in true first-completion order. Each finished item is persisted
through the DocumentStore; a failed item is logged and never blocks the
rest of the batch.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import deque
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from typing import Callable, Protocol

from api_client import DocumentStore
from errors import StoreError
from generation_config import GenerationConfig
from logging_config import current_item_var
from mermaid_validator import repair_mermaid
from models import ItemOutcome, PendingItem

logger = logging.getLogger("docforge.agent.writer_pool")

# Pause between two admissions, in seconds.
ADMISSION_STAGGER_SECONDS = 1.0


class ItemProcessor(Protocol):
    def process_item(self, item: PendingItem, context) -> ItemOutcome | None: ...


@dataclass
class RunReport:
    """What happened to every item of one batch."""
    completed: list[ItemOutcome] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)   # item id -> reason
    max_in_flight: int = 0
    elapsed_seconds: float = 0.0

    @property
    def all_succeeded(self) -> bool:
        return not self.failed

    def summary(self) -> str:
        return (
            f"{len(self.completed)} completed, {len(self.failed)} failed "
            f"(peak concurrency {self.max_in_flight}, {self.elapsed_seconds:.1f}s)"
        )


class TaskOrchestrator:
    """Runs PendingItems through a generator with a concurrency ceiling.

    Responsibilities:
      - Admit backlog items while fewer than ``K`` are in flight
      - Wait for whichever in-flight item finishes first
      - Persist successes (completion flag, artifact, sources)
      - Isolate failures to the item that produced them

    Args:
        generator: Object with ``process_item(item, context)``.
        store: Persistence for completion flags, artifacts and sources.
        config: Supplies ``max_concurrency`` (K).
        stagger_seconds: Delay after each admission.
        sleep: Injected so tests can skip the stagger.
    """

    def __init__(
        self,
        generator: ItemProcessor,
        store: DocumentStore,
        config: GenerationConfig,
        *,
        stagger_seconds: float = ADMISSION_STAGGER_SECONDS,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._generator = generator
        self._store = store
        self._limit = config.max_concurrency
        self._stagger = stagger_seconds
        self._sleep = sleep
        self._lock = threading.Lock()
        self._in_flight = 0
        self._peak = 0

    def run(self, items: list[PendingItem], context) -> RunReport:
        """Process every item; returns once each one is completed or failed."""
        started = time.monotonic()
        self._peak = 0
        report = RunReport()
        backlog: deque[PendingItem] = deque(item for item in items if not item.is_completed)
        running: dict[Future, PendingItem] = {}
        total = len(backlog)
        logger.info("Generating %d documents (max %d parallel)", total, self._limit)

        with ThreadPoolExecutor(max_workers=self._limit, thread_name_prefix="docforge-writer") as executor:
            while backlog or running:
                while backlog and len(running) < self._limit:
                    item = backlog.popleft()
                    future = executor.submit(self._run_one, item, context)
                    running[future] = item
                    logger.debug("Admitted '%s' (%d in flight)", item.name, len(running))
                    self._sleep(self._stagger)

                if not running:
                    break

                done, _ = wait(running, return_when=FIRST_COMPLETED)
                for future in done:
                    item = running.pop(future)
                    self._collect(future, item, report)

        report.max_in_flight = self._peak
        report.elapsed_seconds = time.monotonic() - started
        logger.info("Batch finished: %s", report.summary())
        return report

    def _run_one(self, item: PendingItem, context) -> ItemOutcome | None:
        token = current_item_var.set(item.name)
        with self._lock:
            self._in_flight += 1
            self._peak = max(self._peak, self._in_flight)
        try:
            logger.info("Processing '%s'", item.name)
            return self._generator.process_item(item, context)
        finally:
            with self._lock:
                self._in_flight -= 1
            current_item_var.reset(token)

    def _collect(self, future: Future, item: PendingItem, report: RunReport) -> None:
        try:
            outcome = future.result()
        except Exception as e:
            logger.error("Document '%s' failed: %s", item.name, e)
            report.failed[item.id] = str(e)
            return

        if outcome is None or outcome.artifact is None:
            logger.error("Document '%s' failed: generation returned no content", item.name)
            report.failed[item.id] = "generation returned no content"
            return

        artifact = outcome.artifact
        try:
            artifact.content = repair_mermaid(artifact.content)
            self._store.save_artifact(artifact)
            self._store.add_sources(artifact.id, outcome.source_files)
            # Flag last so a failed save leaves the item pending for the next run.
            self._store.mark_completed(item.id)
            item.is_completed = True
        except StoreError as e:
            logger.error("Persisting '%s' failed: %s", item.name, e)
            report.failed[item.id] = str(e)
            return

        report.completed.append(outcome)
        logger.info(
            "Document '%s' completed and saved (%s, %d attempt(s))",
            item.name, outcome.strategy or "unknown", outcome.attempts,
        )
