"""Bounded-retry consumption of a streamed completion.

One call to ``consume_stream`` walks an explicit state machine:

  STREAMING -> DONE                    the stream ran to completion
  STREAMING -> TIMED_OUT -> RETRYING   the attempt's deadline expired
  STREAMING -> RETRYING                a retryable transport/unknown error
  RETRYING  -> STREAMING               after the policy's delay

Every attempt gets its own CancellationToken, so cancellation is scoped to
that attempt alone. The only suspension point is pulling the next update
off the stream.
"""

from __future__ import annotations

import enum
import logging
import time
from dataclasses import dataclass
from typing import Callable, Iterator

from completion_client import CancellationToken, StreamUpdate
from errors import StreamCancelled, StreamTimeoutError, TransportError

logger = logging.getLogger("docforge.agent.streaming")


class StreamState(enum.Enum):
    STREAMING = "streaming"
    TIMED_OUT = "timed_out"
    RETRYING = "retrying"
    DONE = "done"


@dataclass(frozen=True)
class StreamPolicy:
    """Timeout and retry tuning for one kind of streamed request.

    Delay functions take the 1-based number of the attempt that just failed
    and return seconds. A ``None`` delay means that error class is not
    retried and propagates immediately.
    """
    timeout_seconds: float
    max_attempts: int
    timeout_delay: Callable[[int], float]
    transport_delay: Callable[[int], float] | None = None
    unknown_delay: Callable[[int], float] | None = None


# Document fallback: 30 min per attempt; timeouts back off exponentially
# (capped at 10 s), transport errors 3 s x attempt, anything else a flat 5 s.
DOCUMENT_STREAM_POLICY = StreamPolicy(
    timeout_seconds=30 * 60,
    max_attempts=3,
    timeout_delay=lambda attempt: float(min(2 ** attempt, 10)),
    transport_delay=lambda attempt: 3.0 * attempt,
    unknown_delay=lambda attempt: 5.0,
)

# Outline synthesis: 20 min per attempt, only timeouts are retried here;
# everything else is left to the synthesizer's own retry loop.
CATALOGUE_STREAM_POLICY = StreamPolicy(
    timeout_seconds=20 * 60,
    max_attempts=3,
    timeout_delay=lambda attempt: 2.0,
)


@dataclass(frozen=True)
class StreamResult:
    text: str                 # streamed assistant text from the final attempt
    input_tokens: int
    output_tokens: int
    attempts: int
    tool_call_fragments: int


def consume_stream(
    open_stream: Callable[[CancellationToken], Iterator[StreamUpdate]],
    policy: StreamPolicy,
    *,
    sleep: Callable[[float], None] = time.sleep,
    label: str = "stream",
    clock: Callable[[], float] = time.monotonic,
) -> StreamResult:
    """Drive *open_stream* to completion under *policy*.

    Raises:
        StreamTimeoutError: every attempt hit its deadline.
        TransportError / Exception: a non-retryable error, or a retryable
            one on the last attempt.
    """
    state = StreamState.STREAMING
    attempt = 0
    input_tokens = output_tokens = 0
    text_parts: list[str] = []
    fragments = 0
    delay = 0.0

    while state is not StreamState.DONE:
        if state is StreamState.STREAMING:
            attempt += 1
            text_parts = []
            token = CancellationToken(policy.timeout_seconds, clock=clock)
            try:
                for update in open_stream(token):
                    token.raise_if_cancelled()
                    match update.kind:
                        case "usage":
                            input_tokens += update.input_tokens
                            output_tokens += update.output_tokens
                        case "tool_call":
                            fragments += 1
                        case "text":
                            text_parts.append(update.text)
                        case other:
                            raise ValueError(f"Unknown stream update kind: {other!r}")
                state = StreamState.DONE
            except StreamCancelled:
                state = StreamState.TIMED_OUT
            except TransportError as e:
                delay = _retry_delay(policy.transport_delay, attempt, policy, e, label)
                state = StreamState.RETRYING
            except Exception as e:
                delay = _retry_delay(policy.unknown_delay, attempt, policy, e, label)
                state = StreamState.RETRYING

        elif state is StreamState.TIMED_OUT:
            if attempt >= policy.max_attempts:
                raise StreamTimeoutError(
                    f"{label}: still timing out after {policy.max_attempts} attempts "
                    f"({policy.timeout_seconds:.0f}s each)"
                )
            delay = policy.timeout_delay(attempt)
            logger.warning(
                "%s timed out (attempt %d/%d), retrying in %.1fs",
                label, attempt, policy.max_attempts, delay,
            )
            state = StreamState.RETRYING

        elif state is StreamState.RETRYING:
            sleep(delay)
            state = StreamState.STREAMING

    logger.debug(
        "%s finished: attempts=%d input_tokens=%d output_tokens=%d",
        label, attempt, input_tokens, output_tokens,
    )
    return StreamResult(
        text="".join(text_parts),
        input_tokens=input_tokens,
        output_tokens=output_tokens,
        attempts=attempt,
        tool_call_fragments=fragments,
    )


def _retry_delay(
    delay_fn: Callable[[int], float] | None,
    attempt: int,
    policy: StreamPolicy,
    error: Exception,
    label: str,
) -> float:
    """Return the delay before retrying *error*, or re-raise it."""
    if delay_fn is None or attempt >= policy.max_attempts:
        raise error
    delay = delay_fn(attempt)
    logger.warning(
        "%s failed (attempt %d/%d): %s: %s, retrying in %.1fs",
        label, attempt, policy.max_attempts, type(error).__name__, error, delay,
    )
    return delay
