"""
Per-item document generation: Direct, then FallbackStreaming, then Refine.

Direct issues a single request that forces one ``docs_generate`` call and
only accepts the result if it passes the quality gate. Any Direct failure
(quality, empty payload, transport) drops into FallbackStreaming, a
multi-turn streamed request where the model drives the tools itself. The
fallback result is accepted even when it fails the quality gate so that a
document always makes progress; the failure is logged and recorded in the
artifact metadata. Refinement is an optional edit pass whose errors never
abort the item.

``process_item`` wraps the whole sequence in the outer retry loop the
orchestrator relies on.
"""

import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable

from completion_client import CompletionClient
from doc_tools import DocumentToolbox
from errors import GenerationFailedError, ProtocolError, QualityGateError
from generation_config import GenerationConfig, resolve_max_tokens
from mermaid_validator import check_blocks, ensure_mermaid_integrity, format_errors_for_prompt
from models import Artifact, GenerationAttempt, ItemOutcome, PendingItem
from prompts import (
    DOCS_GENERATE_REMINDER,
    DOCS_SYSTEM_PROMPT,
    DOCUMENT_REFINE_PROMPT,
    DOCUMENT_REFINE_REMINDER,
    SUMMARY_MAX_TOKENS,
    SUMMARY_SYSTEM_PROMPT,
    build_direct_instruction,
    build_document_prompt,
    build_summary_prompt,
    language_reminder,
)
from provenance import SourceReferenceCollector
from quality import QualityEvaluator, QualityMetrics
from streaming import DOCUMENT_STREAM_POLICY, StreamPolicy, consume_stream

logger = logging.getLogger("docforge.agent.generator")

MAX_OUTER_ATTEMPTS = 5
# Seconds multiplied by the attempt number between outer retries.
ERROR_RETRY_DELAY = 10.0
QUALITY_RETRY_DELAY = 5.0

STRATEGY_DIRECT = "direct"
STRATEGY_FALLBACK = "fallback"


@dataclass(frozen=True)
class GenerationContext:
    """Repository-level inputs shared by every item of one run."""
    catalogue: str                 # directory listing shown to the model
    git_repository: str = ""
    branch: str = ""
    repo_path: Path | None = None  # checkout the model may read files from


class DocumentGenerator:
    """Turns one PendingItem into an Artifact.

    Args:
        client: Completion service.
        config: Thresholds, models and the refine flag.
        sleep: Injected so tests can skip backoff delays.
        stream_policy: Timeout/retry policy for the fallback stream.
        max_attempts: Outer retry budget for ``process_item``.
    """

    def __init__(
        self,
        client: CompletionClient,
        config: GenerationConfig,
        *,
        sleep: Callable[[float], None] = time.sleep,
        stream_policy: StreamPolicy = DOCUMENT_STREAM_POLICY,
        max_attempts: int = MAX_OUTER_ATTEMPTS,
    ) -> None:
        self._client = client
        self._config = config
        self._sleep = sleep
        self._stream_policy = stream_policy
        self._max_attempts = max_attempts
        self._evaluator = QualityEvaluator(config)
        self._model = config.chat_model or None
        self._max_tokens = resolve_max_tokens(config.chat_model) if config.chat_model else None

    # ------------------------------------------------------------------
    # Outer retry
    # ------------------------------------------------------------------

    def process_item(self, item: PendingItem, context: GenerationContext) -> ItemOutcome:
        """Generate *item*, retrying the whole Direct/Fallback sequence.

        Raises:
            GenerationFailedError: every outer attempt failed.
        """
        last_error: Exception | None = None
        for attempt in range(1, self._max_attempts + 1):
            try:
                artifact = self.generate(item, context)
            except Exception as e:
                last_error = e
                logger.error(
                    "Generation of '%s' failed (attempt %d/%d): %s",
                    item.name, attempt, self._max_attempts, e,
                    exc_info=True, extra={"attempt": attempt},
                )
                if attempt >= self._max_attempts:
                    break
                unit = QUALITY_RETRY_DELAY if isinstance(e, QualityGateError) else ERROR_RETRY_DELAY
                delay = unit * attempt
                logger.info(
                    "Retrying '%s' in %.0fs", item.name, delay,
                    extra={"attempt": attempt, "delay_s": delay},
                )
                self._sleep(delay)
                continue
            return ItemOutcome(
                item=item,
                artifact=artifact,
                source_files=list(artifact.source_files),
                strategy=artifact.metadata.get("strategy", ""),
                attempts=attempt,
            )
        raise GenerationFailedError(item.name, self._max_attempts, last_error) from last_error

    def generate(self, item: PendingItem, context: GenerationContext) -> Artifact:
        """One pass of Direct, falling back to streaming, then diagram repair."""
        started = time.monotonic()
        attempt = self.try_direct(item, context)
        if attempt.success and attempt.artifact is not None:
            logger.info(
                "Direct generation accepted '%s' in %dms (score %.1f)",
                item.name, _elapsed_ms(started), attempt.metrics.quality_score if attempt.metrics else 0.0,
                extra={"strategy": STRATEGY_DIRECT, "elapsed_ms": _elapsed_ms(started)},
            )
            artifact = attempt.artifact
        else:
            logger.warning(
                "Direct generation rejected '%s': %s", item.name, attempt.failure_reason or "unknown",
            )
            started = time.monotonic()
            artifact = self.run_fallback(item, context)
            logger.info(
                "Fallback generation finished '%s' in %dms", item.name, _elapsed_ms(started),
                extra={"strategy": STRATEGY_FALLBACK, "elapsed_ms": _elapsed_ms(started)},
            )
        ensure_mermaid_integrity(artifact)
        return artifact

    # ------------------------------------------------------------------
    # Strategies
    # ------------------------------------------------------------------

    def try_direct(self, item: PendingItem, context: GenerationContext) -> GenerationAttempt:
        """Single forced ``docs_generate`` call, gated on quality.

        Never raises; every failure is reported through ``failure_reason``.
        """
        toolbox = DocumentToolbox(context.repo_path)
        instruction = build_direct_instruction(
            title=item.name,
            prompt=item.prompt,
            catalogue=context.catalogue,
            git_repository=context.git_repository,
            branch=context.branch,
            min_content_length=self._config.min_content_length,
        )
        messages = [
            {"role": "system", "content": DOCS_SYSTEM_PROMPT},
            {"role": "user", "content": instruction + language_reminder(self._config.language)},
        ]
        try:
            self._client.complete_with_tool(
                messages, toolbox, "docs_generate", model=self._model, max_tokens=self._max_tokens,
            )
        except Exception as e:
            return GenerationAttempt(success=False, failure_reason=f"model call failed: {e}")

        content = toolbox.content
        if not content or not content.strip():
            return GenerationAttempt(success=False, failure_reason="document content empty")

        report = self._evaluator.evaluate(content)
        if not report.passed:
            logger.warning(
                "Quality gate rejected '%s' (score %.1f): %s",
                item.name, report.metrics.quality_score, "; ".join(report.issues),
                extra={"quality_score": report.metrics.quality_score},
            )
            return GenerationAttempt(
                success=False,
                metrics=report.metrics,
                failure_reason="quality gate failed: " + "; ".join(report.issues),
            )

        summary = toolbox.summary or self.generate_summary(item, content)
        artifact = self.create_artifact(
            item, content, summary, report.metrics,
            self._sources(context, content, toolbox.source_files),
            strategy=STRATEGY_DIRECT,
        )
        return GenerationAttempt(success=True, artifact=artifact, metrics=report.metrics)

    def run_fallback(self, item: PendingItem, context: GenerationContext) -> Artifact:
        """Streamed multi-turn generation with autonomous tool use.

        Raises:
            StreamTimeoutError: every inner attempt hit its deadline.
            ProtocolError: the stream finished without any stored content.
        """
        toolbox = DocumentToolbox(context.repo_path)
        prompt = build_document_prompt(
            title=item.name,
            prompt=item.prompt,
            catalogue=context.catalogue,
            git_repository=context.git_repository,
            branch=context.branch,
        )
        messages = [
            {"role": "system", "content": DOCS_SYSTEM_PROMPT},
            {"role": "user", "content": prompt + DOCS_GENERATE_REMINDER + language_reminder(self._config.language)},
        ]
        result = consume_stream(
            lambda token: self._client.stream(
                messages, toolbox, cancel_token=token, model=self._model, max_tokens=self._max_tokens,
            ),
            self._stream_policy,
            sleep=self._sleep,
            label=f"fallback '{item.name}'",
        )

        if not toolbox.content or not toolbox.content.strip():
            raise ProtocolError(f"Fallback generation produced no content for '{item.name}'")

        if self._config.refine_enabled:
            self.refine(item, messages, toolbox)

        content = toolbox.content
        report = self._evaluator.evaluate(content)
        if not report.passed:
            logger.warning(
                "Fallback output for '%s' has quality issues (score %.1f): %s",
                item.name, report.metrics.quality_score, "; ".join(report.issues),
                extra={"quality_score": report.metrics.quality_score},
            )

        summary = toolbox.summary or self.generate_summary(item, content)
        artifact = self.create_artifact(
            item, content, summary, report.metrics,
            self._sources(context, content, toolbox.source_files),
            strategy=STRATEGY_FALLBACK,
        )
        artifact.metadata["input_tokens"] = str(result.input_tokens)
        artifact.metadata["output_tokens"] = str(result.output_tokens)
        if not report.passed:
            artifact.metadata["quality_issues"] = "; ".join(report.issues)
        return artifact

    def refine(self, item: PendingItem, messages: list[dict], toolbox: DocumentToolbox) -> None:
        """Ask the model to edit the stored document in place. Errors are logged only."""
        prompt = DOCUMENT_REFINE_PROMPT
        diagram_errors = check_blocks(toolbox.content or "")
        if diagram_errors:
            prompt += "\nAlso fix these Mermaid diagrams:\n\n" + format_errors_for_prompt(diagram_errors) + "\n"
        messages.append({
            "role": "user",
            "content": prompt + DOCUMENT_REFINE_REMINDER + language_reminder(self._config.language),
        })
        original = toolbox.content
        try:
            self._client.complete(messages, toolbox, model=self._model, max_tokens=self._max_tokens)
        except Exception as e:
            logger.error("Refinement of '%s' failed, keeping original content: %s", item.name, e)
            toolbox.content = original
            return
        if not toolbox.content or not toolbox.content.strip():
            logger.warning("Refinement of '%s' left no content, keeping original", item.name)
            toolbox.content = original

    def generate_summary(self, item: PendingItem, content: str) -> str | None:
        """Dedicated ``docs_summarize`` call over the start of *content*; None on failure."""
        toolbox = DocumentToolbox()
        messages = [
            {"role": "system", "content": SUMMARY_SYSTEM_PROMPT},
            {"role": "user", "content": build_summary_prompt(content) + language_reminder(self._config.language)},
        ]
        try:
            self._client.complete_with_tool(
                messages, toolbox, "docs_summarize", model=self._model, max_tokens=SUMMARY_MAX_TOKENS,
            )
        except Exception as e:
            logger.warning("Summary generation for '%s' failed: %s", item.name, e)
            return None
        return toolbox.summary

    @staticmethod
    def create_artifact(
        item: PendingItem,
        content: str,
        summary: str | None,
        metrics: QualityMetrics | None,
        source_files: list[str] | None = None,
        *,
        strategy: str = "",
    ) -> Artifact:
        metadata: dict[str, str] = {}
        if summary and summary.strip():
            metadata["summary"] = summary.strip()
        if metrics is not None:
            metadata.update(metrics.to_metadata())
        if strategy:
            metadata["strategy"] = strategy
        return Artifact(
            item_id=item.id,
            title=item.name,
            content=content,
            summary=summary.strip() if summary and summary.strip() else None,
            metadata=metadata,
            source_files=list(source_files or []),
        )

    @staticmethod
    def _sources(context: GenerationContext, content: str, discovered: list[str]) -> list[str]:
        return SourceReferenceCollector(context.repo_path).collect(content, discovered)


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)
