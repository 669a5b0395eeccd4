"""Exception taxonomy for the receipt pipeline.

Vision-service failures are deliberately absent: they are recovered by the
heuristic fallback and never reach a caller.
"""


class ReceiptPipelineError(Exception):
    """Base class for all pipeline errors."""


class SubmissionValidationError(ReceiptPipelineError):
    """Malformed request rejected before anything is enqueued."""


class NotFoundError(ReceiptPipelineError):
    """Receipt or batch session missing, or owned by another user."""


class DuplicateReceiptError(ReceiptPipelineError):
    """Manual entry matches an existing receipt inside the duplicate window."""

    def __init__(self, message: str, existing_id: int | None = None) -> None:
        super().__init__(message)
        self.existing_id = existing_id


class ExportBlockedError(ReceiptPipelineError):
    """Batch export requested before payment was recorded."""


class InvalidSignatureError(ReceiptPipelineError):
    """Queued payload failed signature verification."""


class DocumentFetchError(ReceiptPipelineError):
    """Receipt document could not be downloaded or is not an image."""


class QueueUnavailableError(ReceiptPipelineError):
    """The durable task queue refused the job."""
