# errors.py
# Exception taxonomy shared by the provider, hub, dispatcher and orchestrator.
#
# Anything expressible as conversation content (tool failures, truncation
# notices) never reaches these classes at the Task boundary; it is turned
# into data. What remains invalidates the request itself and halts the loop.


class TaskPilotError(Exception):
    """Base class for every error raised by this package."""


class ConfigurationError(TaskPilotError):
    """Missing credential or unsupported provider. Fatal at construction."""


class ProviderError(TaskPilotError):
    """Unrecoverable failure reported by the LLM stream provider."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        provider: str | None = None,
        model: str | None = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.provider = provider
        self.model = model


class ContextWindowExceededError(ProviderError):
    """The request did not fit the model's context window. Recovered by compaction."""

    def __init__(self, provider: str, model: str) -> None:
        super().__init__(
            f"Context window exceeded for {provider}/{model}",
            status_code=400,
            provider=provider,
            model=model,
        )


class CompactionExhaustedError(ContextWindowExceededError):
    """Compaction retries ran out while the context window kept overflowing."""


class RateLimitedError(ProviderError):
    """Provider capacity error. Surfaced to the caller, no automatic backoff."""

    def __init__(self, provider: str, retry_after: int | None = None) -> None:
        suffix = f", retry after {retry_after}s" if retry_after else ""
        super().__init__(
            f"Rate limit exceeded for {provider}{suffix}",
            status_code=429,
            provider=provider,
        )
        self.retry_after = retry_after


class ToolExecutionError(TaskPilotError):
    """A tool implementation failed. Converted into a failed ToolResult."""


class CapabilityConnectionError(TaskPilotError):
    """A capability connection is absent, disabled or broken."""


class ToolWaitTimeoutError(TaskPilotError):
    """Presented blocks were not fully handled in time. Fatal to the turn."""


class TooManyMistakesError(TaskPilotError):
    """The model kept answering without using a tool."""


class NoActiveTaskError(TaskPilotError):
    """continue_task was called before start_task."""
