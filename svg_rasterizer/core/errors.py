"""Error taxonomy shared by every stage of the rasterize pipeline.

Each stage raises a :class:`ServiceError` subclass; the API layer turns it
into the ``{"error": kind, "message": ...}`` payload with the status code
declared on the class.  Only errors describing the caller's own input
(validation, processing, admission) expose their message verbatim; backend
failures answer with a fixed message and keep the cause for the logs.
"""

from __future__ import annotations

from typing import ClassVar


class ServiceError(Exception):
    """Base class for all errors surfaced at the HTTP boundary."""

    kind: ClassVar[str] = "internal_error"
    status_code: ClassVar[int] = 500
    expose_message: ClassVar[bool] = False
    generic_message: ClassVar[str] = "Internal server error"

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.generic_message
        super().__init__(self.message)

    @property
    def public_message(self) -> str:
        """Message that is safe to return to the caller."""
        return self.message if self.expose_message else self.generic_message


class ValidationError(ServiceError):
    """Bad, oversized or malformed input.  Not retried."""

    kind = "validation_error"
    status_code = 400
    expose_message = True
    generic_message = "Invalid input"


class AdmissionDenied(ServiceError):
    """The admission gate rejected the request.  Caller should back off."""

    kind = "rate_limit_exceeded"
    status_code = 429
    expose_message = True
    generic_message = "Rate limit exceeded"


class UpstreamError(ServiceError):
    """The origin fetch failed.  May be transient."""

    kind = "upstream_error"
    status_code = 502
    generic_message = "Failed to fetch the source document"


class ProcessingError(ServiceError):
    """Sanitize, parse or render failure caused by the document content."""

    kind = "processing_error"
    status_code = 400
    expose_message = True
    generic_message = "Failed to process SVG"


class StoreError(ServiceError):
    """Counter or blob store failure."""

    kind = "store_error"
    status_code = 500
    generic_message = "Storage backend unavailable"


class InternalError(ServiceError):
    """Anything unexpected."""
