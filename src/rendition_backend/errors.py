"""
Error taxonomy shared by the upload API and the rendition worker.

Request-handling code lets these propagate to the HTTP layer, which maps them
to problem-details responses. The worker catches everything at the job
boundary and routes it to the dead-letter queue.
"""

from __future__ import annotations


class RenditionBackendError(Exception):
    """Base class for all domain errors raised by this package."""

    status_code = 500
    title = "Internal Server Error"


class ValidationError(RenditionBackendError):
    """Malformed or out-of-range input. Raised before any side effect."""

    status_code = 400
    title = "Bad Request"


class NotFoundError(RenditionBackendError):
    status_code = 404
    title = "Not Found"


class ConflictError(RenditionBackendError):
    """Operation is not valid for the current upload session state."""

    status_code = 409
    title = "Conflict"

    def __init__(self, message: str, state: str | None = None) -> None:
        super().__init__(message)
        self.state = state


class StorageError(RenditionBackendError):
    """Object store failure, transient or permanent."""

    status_code = 502
    title = "Bad Gateway"


class QueueError(RenditionBackendError):
    status_code = 503
    title = "Service Unavailable"


class RenderError(RenditionBackendError):
    """Corrupt input, unsupported codec or missing external converter."""


class UnsupportedMediaError(RenderError):
    """No renderer handles the version's mime type."""


class PartialTileFailure(RenderError):
    """A single pyramid tile could not be produced. Logged, never fatal."""

    def __init__(self, message: str, zoom: int, x: int, y: int) -> None:
        super().__init__(message)
        self.zoom = zoom
        self.x = x
        self.y = y
