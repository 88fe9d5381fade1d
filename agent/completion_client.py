"""Completion service boundary.

The pipeline talks to the language model through three call shapes:

  - ``complete_with_tool``: one request that forces a single named tool
    call; the tool payload is dispatched into the caller's toolbox.
  - ``stream``: a multi-turn request where the model invokes tools on its
    own; yields typed updates until the model stops calling tools.
  - ``complete``: the non-streamed variant of ``stream``.

``LiteLLMCompletionClient`` implements them on top of ``litellm`` so any
OpenAI-compatible endpoint works. Provider errors are translated into the
pipeline's own taxonomy (``TransportError``, ``RateLimitedError``) here and
nowhere else.
"""

from __future__ import annotations

import contextlib
import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Iterator, Literal, Protocol, Union

import litellm

from errors import DocforgeError, RateLimitedError, StreamCancelled, ToolInvocationError, TransportError
from generation_config import GenerationConfig

logger = logging.getLogger("docforge.agent.completion")

# Upper bound on model → tool → model round trips in one autonomous request.
DEFAULT_MAX_TOOL_ROUNDS = 40
REQUEST_TIMEOUT_SECONDS = 900


# ---------------------------------------------------------------------------
# Streamed update variants
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class UsageUpdate:
    input_tokens: int
    output_tokens: int
    kind: Literal["usage"] = "usage"


@dataclass(frozen=True)
class TextUpdate:
    text: str
    kind: Literal["text"] = "text"


@dataclass(frozen=True)
class ToolCallUpdate:
    index: int
    name: str | None
    arguments_delta: str
    kind: Literal["tool_call"] = "tool_call"


StreamUpdate = Union[UsageUpdate, TextUpdate, ToolCallUpdate]


# ---------------------------------------------------------------------------
# Cancellation
# ---------------------------------------------------------------------------

class CancellationToken:
    """Deadline for one streaming attempt.

    Checked at every "next chunk" suspension point; expiry raises
    ``StreamCancelled``. A new token is created for every attempt so a
    timeout never leaks into the retry that follows it.
    """

    def __init__(self, timeout: float | None, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._deadline = None if timeout is None else clock() + timeout
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        if self._event.is_set():
            return True
        if self._deadline is not None and self._clock() >= self._deadline:
            self._event.set()
            return True
        return False

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise StreamCancelled("Streaming attempt cancelled after its deadline")


# ---------------------------------------------------------------------------
# Protocol
# ---------------------------------------------------------------------------

class Toolbox(Protocol):
    def tool_schemas(self, only: str | None = None) -> list[dict[str, Any]]: ...

    def dispatch(self, name: str, arguments: str | dict[str, Any] | None) -> str: ...


class CompletionClient(Protocol):
    def complete_with_tool(
        self, messages: list[dict], toolbox: Toolbox, tool_name: str, *,
        model: str | None = None, max_tokens: int | None = None,
    ) -> str: ...

    def complete(
        self, messages: list[dict], toolbox: Toolbox, *,
        model: str | None = None, max_tokens: int | None = None,
    ) -> str: ...

    def stream(
        self, messages: list[dict], toolbox: Toolbox, *, cancel_token: CancellationToken,
        model: str | None = None, max_tokens: int | None = None,
    ) -> Iterator[StreamUpdate]: ...


# ---------------------------------------------------------------------------
# litellm implementation
# ---------------------------------------------------------------------------

_TRANSPORT_ERRORS: tuple[type[BaseException], ...] = (
    litellm.APIConnectionError,
    litellm.Timeout,
    litellm.ServiceUnavailableError,
    litellm.InternalServerError,
    ConnectionError,
)


@contextlib.contextmanager
def _translate_errors(label: str) -> Iterator[None]:
    try:
        yield
    except DocforgeError:
        raise
    except litellm.RateLimitError as e:
        raise RateLimitedError(f"{label}: rate limit exceeded: {e}") from e
    except _TRANSPORT_ERRORS as e:
        raise TransportError(f"{label}: {type(e).__name__}: {e}") from e


@dataclass
class _PendingToolCall:
    id: str = ""
    name: str = ""
    arguments: str = ""


@dataclass
class _Turn:
    text: list[str] = field(default_factory=list)
    tool_calls: dict[int, _PendingToolCall] = field(default_factory=dict)


class LiteLLMCompletionClient:
    """CompletionClient backed by ``litellm.completion``.

    Args:
        config: Supplies default model, endpoint and credentials.
        max_tool_rounds: Safety net for autonomous tool loops.
    """

    def __init__(
        self,
        config: GenerationConfig,
        max_tool_rounds: int = DEFAULT_MAX_TOOL_ROUNDS,
        request_timeout: int = REQUEST_TIMEOUT_SECONDS,
    ) -> None:
        self._config = config
        self._max_tool_rounds = max_tool_rounds
        self._request_timeout = request_timeout

    def _kwargs(self, model: str | None, max_tokens: int | None) -> dict[str, Any]:
        kwargs: dict[str, Any] = {
            "model": model or self._config.chat_model,
            "timeout": self._request_timeout,
            **self._config.extra_llm_kwargs,
        }
        if self._config.llm_base_url:
            kwargs["api_base"] = self._config.llm_base_url
        if self._config.llm_api_key:
            kwargs["api_key"] = self._config.llm_api_key
        if max_tokens:
            kwargs["max_tokens"] = max_tokens
        return kwargs

    # ----- single forced tool call ------------------------------------

    def complete_with_tool(
        self, messages: list[dict], toolbox: Toolbox, tool_name: str, *,
        model: str | None = None, max_tokens: int | None = None,
    ) -> str:
        with _translate_errors(f"forced tool call {tool_name}"):
            response = litellm.completion(
                messages=messages,
                tools=toolbox.tool_schemas(only=tool_name),
                tool_choice={"type": "function", "function": {"name": tool_name}},
                **self._kwargs(model, max_tokens),
            )
        message = response.choices[0].message
        tool_calls = getattr(message, "tool_calls", None) or []
        if not tool_calls:
            return ""
        call = tool_calls[0]
        return toolbox.dispatch(call.function.name, call.function.arguments)

    # ----- autonomous, non-streamed -----------------------------------

    def complete(
        self, messages: list[dict], toolbox: Toolbox, *,
        model: str | None = None, max_tokens: int | None = None,
    ) -> str:
        for _ in range(self._max_tool_rounds):
            with _translate_errors("completion"):
                response = litellm.completion(
                    messages=messages,
                    tools=toolbox.tool_schemas(),
                    tool_choice="auto",
                    **self._kwargs(model, max_tokens),
                )
            message = response.choices[0].message
            tool_calls = getattr(message, "tool_calls", None) or []
            text = message.content or ""
            if not tool_calls:
                messages.append({"role": "assistant", "content": text})
                return text
            pending = {
                i: _PendingToolCall(id=c.id, name=c.function.name, arguments=c.function.arguments or "")
                for i, c in enumerate(tool_calls)
            }
            self._run_tools(messages, toolbox, text, pending)
        logger.warning("Completion stopped after %d tool rounds", self._max_tool_rounds)
        return ""

    # ----- autonomous, streamed ---------------------------------------

    def stream(
        self, messages: list[dict], toolbox: Toolbox, *, cancel_token: CancellationToken,
        model: str | None = None, max_tokens: int | None = None,
    ) -> Iterator[StreamUpdate]:
        for _ in range(self._max_tool_rounds):
            turn = _Turn()
            with _translate_errors("streaming completion"):
                chunks = litellm.completion(
                    messages=messages,
                    tools=toolbox.tool_schemas(),
                    tool_choice="auto",
                    stream=True,
                    stream_options={"include_usage": True},
                    **self._kwargs(model, max_tokens),
                )
                for chunk in chunks:
                    cancel_token.raise_if_cancelled()
                    yield from self._updates_from_chunk(chunk, turn)
            cancel_token.raise_if_cancelled()

            text = "".join(turn.text)
            if not turn.tool_calls:
                messages.append({"role": "assistant", "content": text})
                return
            self._run_tools(messages, toolbox, text, turn.tool_calls)
        logger.warning("Streaming stopped after %d tool rounds", self._max_tool_rounds)

    @staticmethod
    def _updates_from_chunk(chunk: Any, turn: _Turn) -> Iterator[StreamUpdate]:
        usage = getattr(chunk, "usage", None)
        if usage and getattr(usage, "prompt_tokens", 0):
            yield UsageUpdate(
                input_tokens=usage.prompt_tokens or 0,
                output_tokens=getattr(usage, "completion_tokens", 0) or 0,
            )
        choices = getattr(chunk, "choices", None) or []
        if not choices:
            return
        delta = choices[0].delta
        for tc in getattr(delta, "tool_calls", None) or []:
            index = getattr(tc, "index", 0) or 0
            pending = turn.tool_calls.setdefault(index, _PendingToolCall())
            if tc.id:
                pending.id = tc.id
            fn = tc.function
            name = getattr(fn, "name", None) if fn else None
            fragment = (getattr(fn, "arguments", None) or "") if fn else ""
            if name:
                pending.name = name
            pending.arguments += fragment
            yield ToolCallUpdate(index=index, name=name, arguments_delta=fragment)
        content = getattr(delta, "content", None)
        if content:
            turn.text.append(content)
            yield TextUpdate(text=content)

    @staticmethod
    def _run_tools(
        messages: list[dict], toolbox: Toolbox, text: str, calls: dict[int, _PendingToolCall],
    ) -> None:
        ordered = [calls[i] for i in sorted(calls)]
        messages.append({
            "role": "assistant",
            "content": text or None,
            "tool_calls": [
                {"id": c.id, "type": "function", "function": {"name": c.name, "arguments": c.arguments}}
                for c in ordered
            ],
        })
        for call in ordered:
            try:
                status = toolbox.dispatch(call.name, call.arguments)
            except ToolInvocationError as e:
                status = f"<system-reminder>{e}</system-reminder>"
            logger.debug("Tool %s -> %s", call.name, status[:120])
            messages.append({"role": "tool", "tool_call_id": call.id, "content": status})
