"""Exception taxonomy for the document-generation pipeline.

Recoverable failures (quality gate, protocol, transport) are retried by the
layer that owns the retry budget; terminal failures propagate to the caller.
"""


class DocforgeError(Exception):
    """Base class for all pipeline errors."""


class ConfigError(DocforgeError, ValueError):
    """Configuration values are invalid for this run."""


class QualityGateError(DocforgeError):
    """Generated content was rejected by the quality gate."""

    def __init__(self, message: str, issues: list[str] | None = None):
        super().__init__(message)
        self.issues = list(issues or [])


class ProtocolError(DocforgeError):
    """The model returned an empty or malformed tool payload."""


class TransportError(DocforgeError):
    """Network-level failure talking to the completion service."""


class RateLimitedError(DocforgeError):
    """The provider rejected the request for rate or quota reasons."""


class StreamCancelled(TransportError):
    """A single streaming attempt hit its deadline and was cancelled."""


class StreamTimeoutError(TransportError, TimeoutError):
    """Streaming kept timing out after every inner retry was used."""


class ToolInvocationError(DocforgeError):
    """A once-only tool was invoked a second time in the same session."""


class OutlineValidationError(DocforgeError, ValueError):
    """A catalogue outline violates its structural invariants."""


class GenerationFailedError(DocforgeError):
    """An item exhausted its outer retry budget."""

    def __init__(self, item_name: str, attempts: int, cause: BaseException | None = None):
        self.item_name = item_name
        self.attempts = attempts
        self.cause = cause
        detail = f": {cause}" if cause else ""
        super().__init__(
            f"Generation failed for '{item_name}' after {attempts} attempts{detail}"
        )


class StoreError(DocforgeError):
    """The persistence store returned an unrecoverable error."""

    def __init__(self, message: str, status_code: int = 0):
        super().__init__(message)
        self.status_code = status_code
