"""
Error taxonomy for the research video pipeline.

Validation and precondition failures are raised before a stage starts any
work. Upstream failures (and their timeout subclass) are the only ones the
retry combinator retries.
"""

from typing import List, Optional


class PipelineError(Exception):
    """Base exception for all pipeline errors."""

    code = "PIPELINE_ERROR"

    def __init__(self, message: str, project_id: Optional[str] = None, code: Optional[str] = None):
        self.message = message
        self.project_id = project_id
        if code:
            self.code = code
        super().__init__(self.message)


class ValidationError(PipelineError):
    """Request rejected before any work starts (empty topic, no segments)."""

    code = "VALIDATION_ERROR"


class NotFoundError(PipelineError):
    """Project or segment does not exist."""

    code = "NOT_FOUND"


class UpstreamError(PipelineError):
    """External synthesis or language-model call failed."""

    code = "UPSTREAM_ERROR"


class SynthesisTimeoutError(UpstreamError):
    """An external call exceeded its ceiling. Retryable like any upstream failure."""

    code = "UPSTREAM_TIMEOUT"


class BatchIncompleteError(UpstreamError):
    """A batch configured to require full success had failed items."""

    code = "BATCH_INCOMPLETE"

    def __init__(self, message: str, failed: List[int], project_id: Optional[str] = None):
        self.failed = failed
        super().__init__(message, project_id)


class PreconditionError(PipelineError):
    """Stage inputs are incomplete. `indices` lists the offending segment orders."""

    code = "PRECONDITION_FAILED"

    def __init__(self, message: str, indices: Optional[List[int]] = None, project_id: Optional[str] = None):
        self.indices = list(indices or [])
        super().__init__(message, project_id)


class StorageError(PipelineError):
    """Storage upload, download or transcode failure."""

    code = "STORAGE_ERROR"


__all__ = [
    "PipelineError",
    "ValidationError",
    "NotFoundError",
    "UpstreamError",
    "SynthesisTimeoutError",
    "BatchIncompleteError",
    "PreconditionError",
    "StorageError",
]
