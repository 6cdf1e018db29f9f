"""Custom exception hierarchy."""

class AppError(Exception):
    """Base exception for application errors."""
    def __init__(self, message: str, original_error: Exception = None):
        super().__init__(message)
        self.message = message
        self.original_error = original_error


class APIClientError(AppError):
    """Raised when an external API call fails. Retryable."""
    pass


class APITimeoutError(APIClientError):
    """Raised when an external API call times out. Retryable."""
    pass


class DatabaseError(AppError):
    """Raised when a database operation fails."""
    pass


class ValidationError(AppError):
    """Raised when input validation fails."""
    pass


class InvalidRunStateError(ValidationError):
    """Raised when an operation is not allowed in the run's current status."""
    pass


class ConfigurationError(AppError):
    """Raised when configuration is invalid or missing."""
    pass


class PipelineError(AppError):
    """Base exception for pipeline errors."""
    pass


class StageFailedError(PipelineError):
    """A stage exhausted its retries or hit a fatal error."""

    def __init__(self, stage_name: str, message: str, code: str = "stage_failed", original_error: Exception = None):
        super().__init__(message, original_error=original_error)
        self.stage_name = stage_name
        self.code = code


class AllChunksFailedError(PipelineError):
    """Every chunk of an oversized document failed extraction."""
    pass


class ExtractionOutputError(PipelineError):
    """The model returned output that cannot be used. Not retryable."""
    pass


class RunCancelledError(PipelineError):
    """A cancel signal was observed at a stage boundary."""
    pass


class DocumentNotFoundError(AppError):
    """Raised when a document is not found."""
    pass


class RunNotFoundError(AppError):
    """Raised when a pipeline run is not found."""
    pass


# Error types Temporal must not retry; matched by class name.
NON_RETRYABLE_ERROR_TYPES = [
    "ExtractionOutputError",
    "AllChunksFailedError",
    "ConfigurationError",
    "ValidationError",
    "DocumentNotFoundError",
]
