"""
Exception taxonomy for the PDF Toolkit backend.

Errors fall into three families:
- Request errors (ValidationError, NotFoundError) are raised before any job
  is created or mutated and map directly onto 4xx responses.
- Operation errors (OperationError and subclasses) are raised by tool
  handlers and are recorded on the failed job.
- Infrastructure errors (StorageError) surface as 5xx responses.
"""

from __future__ import annotations


class ToolkitError(Exception):
    """Base exception for all backend errors."""

    status_code = 500


class ValidationError(ToolkitError):
    """Raised when a request is malformed or cannot be accepted."""

    status_code = 400


class UnsupportedToolError(ValidationError):
    """Raised when a tool identifier is not registered."""

    def __init__(self, tool_id: str) -> None:
        super().__init__(f"Unsupported tool: {tool_id}")
        self.tool_id = tool_id


class UploadTooLargeError(ValidationError):
    """Raised when an uploaded stream exceeds the configured size ceiling."""

    status_code = 413


class NotFoundError(ToolkitError):
    """Raised when a file or job identifier cannot be resolved."""

    status_code = 404


class StorageError(ToolkitError):
    """Raised when the blob storage back-end fails to persist or read bytes."""


class OperationError(ToolkitError):
    """Base class for failures raised by operation handlers."""


class UnsupportedInputType(OperationError):
    """The handler cannot process the given input file type."""


class MissingRequiredOption(OperationError):
    """A mandatory tool option was not supplied."""


class InvalidOption(OperationError):
    """A tool option was supplied with a malformed or out-of-range value."""


class CorruptInput(OperationError):
    """The input could not be parsed, or could not be decrypted."""


class BackendConversionFailure(OperationError):
    """The underlying document library failed to produce an output."""


class ProcessingError(ToolkitError):
    """
    Raised by the dispatcher after a job has been marked as failed.

    Attributes:
        job_id: Identifier of the failed job, kept as an audit trail
        cause: The error that caused the failure, usually an OperationError
    """

    def __init__(self, job_id: str, cause: ToolkitError) -> None:
        super().__init__(str(cause))
        self.job_id = job_id
        self.cause = cause
