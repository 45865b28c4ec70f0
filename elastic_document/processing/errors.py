class ProcessingError(Exception):
    """Base error for the job-processing pipeline."""


class ConfigurationError(ProcessingError):
    """Raised when configuration is invalid or incomplete."""


class JobNotFoundError(ProcessingError):
    """Raised when a job does not exist or belongs to another user."""


class ClaimLostError(ProcessingError):
    """Raised when a guarded write finds the claim no longer held by this attempt."""


class EmptyExtractionError(ProcessingError):
    """Raised when no meaningful text could be extracted from any source."""

    user_message = "No content could be extracted from the documents. The file may be empty or unreadable."

    def __init__(self, message: str = user_message):
        super().__init__(message)


class OcrError(ProcessingError):
    """Raised when the OCR collaborator cannot process a file."""


class ScrapeError(ProcessingError):
    """Raised when a URL cannot be fetched or rendered."""


class GenerationError(ProcessingError):
    """Raised when the generation service fails or is misconfigured."""
