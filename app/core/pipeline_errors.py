"""Error taxonomy for the content-generation pipeline.

Every error carries the HTTP status the API layer answers with, so routes can
translate any ``PipelineError`` into ``{"error": message}`` uniformly.
"""


class PipelineError(Exception):
    """Base class for pipeline failures surfaced to callers."""

    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class InvalidStateError(PipelineError):
    """Operation not allowed from the stage's current status."""

    status_code = 409


class DependencyNotReadyError(PipelineError):
    """An upstream stage is not completed; rejected before any external call."""

    status_code = 400


class ConcurrentGenerationError(PipelineError):
    """A generation for the same (project, stage) is already in flight."""

    status_code = 409


class GenerationError(PipelineError):
    """The text-generation provider failed after exhausting retries."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        cause: BaseException | None = None,
    ):
        super().__init__(message)
        self.provider_status = status_code
        self.cause = cause


class NormalizationError(PipelineError):
    """Generated text failed JSON parsing or schema validation.

    The raw text is retained for operator inspection.
    """

    def __init__(self, message: str, raw_text: str):
        super().__init__(message)
        self.raw_text = raw_text


class ValidationError(PipelineError):
    """Operator-supplied input was rejected."""

    status_code = 400


class StorageError(PipelineError):
    """A database or blob-store read/write failed."""


class ProjectNotFoundError(PipelineError):
    """No project row exists for the given id."""

    status_code = 404
