"""Planner: synthesizes the documentation catalogue outline.

One attempt is a single streamed round-trip in which the model is asked to
call ``catalog_generate_catalogue`` exactly once. When that tool payload is
missing or invalid, the JSON is recovered from the raw reply instead. The
top-level loop classifies each failure, decides whether the class is still
worth retrying, and backs off adaptively.
"""

import enum
import json
import logging
import random
import re
import time
from typing import Callable

from catalogue import CatalogueOutline, extract_json_fragment, flatten_outline, try_parse_outline
from completion_client import CompletionClient
from doc_tools import CatalogueToolbox
from document_generator import GenerationContext
from errors import OutlineValidationError, RateLimitedError, TransportError
from generation_config import GenerationConfig, resolve_max_tokens
from models import PendingItem
from prompts import (
    CATALOGUE_REFINE_PROMPT,
    CATALOGUE_SYSTEM_PROMPT,
    CATALOGUE_TOOL_REMINDER,
    RESPONSE_PREVIEW_CHARS,
    build_catalogue_prompt,
    language_reminder,
)
from streaming import CATALOGUE_STREAM_POLICY, StreamPolicy, consume_stream

logger = logging.getLogger("docforge.agent.planner")

MAX_RETRIES = 8
BASE_DELAY_SECONDS = 1.0
MAX_DELAY_SECONDS = 30.0
JITTER_RANGE = 0.3
CONSECUTIVE_FAILURE_PENALTY_SECONDS = 1.0
RESET_PAUSE_SECONDS = 2.0
RESET_AFTER_CONSECUTIVE = 3

# Refinement only runs on the first attempts; later ones take the first valid outline.
REFINE_ATTEMPT_LIMIT = 3

_RATE_LIMIT_RE = re.compile(r"\b(rate|quota)\b", re.IGNORECASE)


class ErrorType(enum.Enum):
    NETWORK = "network"
    JSON_PARSE = "json_parse"
    RATE_LIMIT = "rate_limit"
    MODEL = "model"
    UNKNOWN = "unknown"


def classify_error(error: BaseException) -> ErrorType:
    """Map an attempt failure to the class that drives retry decisions."""
    if isinstance(error, RateLimitedError):
        return ErrorType.RATE_LIMIT
    if isinstance(error, (TransportError, ConnectionError, TimeoutError)):
        return ErrorType.NETWORK
    if isinstance(error, json.JSONDecodeError):
        return ErrorType.JSON_PARSE
    message = str(error)
    if _RATE_LIMIT_RE.search(message):
        return ErrorType.RATE_LIMIT
    if "model" in message.lower():
        return ErrorType.MODEL
    return ErrorType.UNKNOWN


def should_retry(error_type: ErrorType, retry_count: int, consecutive_failures: int) -> bool:
    # The first attempts are always retried whatever the class.
    if retry_count < 3:
        return True
    match error_type:
        case ErrorType.NETWORK | ErrorType.UNKNOWN:
            return retry_count < MAX_RETRIES
        case ErrorType.RATE_LIMIT:
            return retry_count < MAX_RETRIES and consecutive_failures < 5
        case ErrorType.JSON_PARSE:
            return retry_count < 6
        case ErrorType.MODEL:
            return retry_count < 4
    return False


def calculate_delay(retry_count: int, consecutive_failures: int, rng: random.Random | None = None) -> float:
    """Exponential backoff plus a consecutive-failure penalty and jitter, in seconds."""
    rng = rng or random.Random()
    exponential = BASE_DELAY_SECONDS * (2 ** retry_count)
    penalty = consecutive_failures * CONSECUTIVE_FAILURE_PENALTY_SECONDS
    jitter = rng.random() * JITTER_RANGE * exponential
    return min(exponential + penalty + jitter, MAX_DELAY_SECONDS)


class CatalogueSynthesizer:
    """Drives the completion service until it yields a valid outline.

    Args:
        client: Completion service.
        config: Supplies the analysis model, language and refine flag.
        sleep: Injected so tests can skip backoff delays.
        rng: Jitter source.
        stream_policy: Timeout/retry policy for each streamed attempt.
    """

    def __init__(
        self,
        client: CompletionClient,
        config: GenerationConfig,
        *,
        sleep: Callable[[float], None] = time.sleep,
        rng: random.Random | None = None,
        stream_policy: StreamPolicy = CATALOGUE_STREAM_POLICY,
    ) -> None:
        self._client = client
        self._config = config
        self._sleep = sleep
        self._rng = rng or random.Random()
        self._stream_policy = stream_policy
        model = config.catalogue_model
        self._model = model or None
        self._max_tokens = resolve_max_tokens(model) if model else None

    def synthesize(self, context: GenerationContext) -> CatalogueOutline | None:
        """Return a validated outline, or None once the retry budget is spent.

        None is a hard failure for the planning phase; callers must not skip it.
        """
        retry_count = 0
        consecutive_failures = 0
        last_error: BaseException | None = None
        logger.info("Synthesizing catalogue for %s", context.git_repository or context.repo_path or "repository")

        while retry_count < MAX_RETRIES:
            try:
                outline = self.run_attempt(context, retry_count)
                if outline is not None:
                    logger.info(
                        "Catalogue synthesized with %d sections after %d attempt(s)",
                        outline.count(), retry_count + 1,
                    )
                    return outline
                logger.warning("Catalogue attempt %d returned no outline", retry_count + 1)
                consecutive_failures += 1
            except Exception as e:
                last_error = e
                consecutive_failures += 1
                error_type = classify_error(e)
                logger.warning(
                    "Catalogue attempt %d failed (%s): %s", retry_count + 1, error_type.value, e,
                    extra={"attempt": retry_count + 1, "error_type": error_type.value},
                )
                if not should_retry(error_type, retry_count, consecutive_failures):
                    logger.error("Error type %s is not retryable at attempt %d, giving up", error_type.value, retry_count + 1)
                    break

            retry_count += 1
            if retry_count < MAX_RETRIES:
                delay = calculate_delay(retry_count, consecutive_failures, self._rng)
                logger.info("Waiting %.1fs before catalogue attempt %d", delay, retry_count + 1)
                self._sleep(delay)
                if consecutive_failures >= RESET_AFTER_CONSECUTIVE:
                    logger.info("%d consecutive failures, pausing before the next attempt", consecutive_failures)
                    self._sleep(RESET_PAUSE_SECONDS)

        logger.error(
            "Catalogue synthesis failed after %d attempt(s); last error: %s",
            retry_count, last_error or "no outline returned",
        )
        return None

    def run_attempt(self, context: GenerationContext, attempt_number: int) -> CatalogueOutline | None:
        """One streamed round-trip; returns None when nothing usable came back."""
        toolbox = CatalogueToolbox()
        prompt = build_catalogue_prompt(
            catalogue=context.catalogue,
            git_repository=context.git_repository,
            branch=context.branch,
        )
        messages = [
            {"role": "system", "content": CATALOGUE_SYSTEM_PROMPT},
            {
                "role": "user",
                "content": prompt + CATALOGUE_TOOL_REMINDER + language_reminder(self._config.language),
            },
        ]
        result = consume_stream(
            lambda token: self._client.stream(
                messages, toolbox, cancel_token=token, model=self._model, max_tokens=self._max_tokens,
            ),
            self._stream_policy,
            sleep=self._sleep,
            label="catalogue",
        )
        logger.debug(
            "Catalogue stream tokens: input=%d output=%d", result.input_tokens, result.output_tokens,
        )

        outline, tool_error = try_parse_outline(toolbox.content)
        if outline is not None:
            if not self._config.refine_enabled or attempt_number >= REFINE_ATTEMPT_LIMIT:
                return outline
            self.refine(messages, toolbox)
            refined, refine_error = try_parse_outline(toolbox.content)
            if refined is not None:
                return refined
            logger.warning("Refined catalogue no longer parses, keeping the original: %s", refine_error)
            return outline

        if toolbox.content and tool_error:
            logger.error("Catalogue JSON from the tool call could not be parsed: %s", tool_error)

        fragment = extract_json_fragment(result.text)
        fallback_error = None
        if fragment:
            outline, fallback_error = try_parse_outline(fragment, lenient=True)
            if outline is not None:
                logger.info("Recovered catalogue from the model's reply text")
                return outline

        if result.text.strip():
            preview = result.text[:RESPONSE_PREVIEW_CHARS]
            if len(result.text) > RESPONSE_PREVIEW_CHARS:
                preview += "…"
            logger.warning(
                "Could not recover catalogue from reply: %s; reply starts: %s",
                fallback_error or "no JSON object found", preview,
            )
        return None

    def refine(self, messages: list[dict], toolbox: CatalogueToolbox) -> None:
        """Ask for localized edits to the stored outline. Errors are logged only."""
        messages.append({"role": "user", "content": CATALOGUE_REFINE_PROMPT})
        try:
            self._client.complete(messages, toolbox, model=self._model, max_tokens=self._max_tokens)
        except Exception as e:
            logger.warning("Catalogue refinement failed: %s", e)


def plan_pending_items(
    synthesizer: CatalogueSynthesizer,
    store,
    context: GenerationContext,
    document_id: str,
) -> list[PendingItem]:
    """Synthesize the outline and bulk-replace the scope's items in *store*.

    Raises:
        OutlineValidationError: synthesis gave up without an outline.
    """
    outline = synthesizer.synthesize(context)
    if outline is None:
        raise OutlineValidationError("Catalogue synthesis produced no outline")
    items = flatten_outline(outline, document_id)
    store.replace_catalogue(document_id, items)
    logger.info("Planned %d pending documents", len(items), extra={"document_id": document_id})
    return items
