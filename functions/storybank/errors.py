"""
Domain errors raised by the hierarchy repository and the document store.

The app maps these to HTTP status codes; see ``storybank.app``.
"""

from __future__ import annotations


class StorybankError(Exception):
    """Base class for every error the service reports to clients."""

    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(StorybankError):
    """Malformed or missing input. Raised before any write."""

    status_code = 400

    def __init__(self, field: str, message: str | None = None):
        super().__init__(message or f"'{field}' is required.")
        self.field = field


class ConflictError(StorybankError):
    """A story number is already taken within its month."""

    status_code = 400


class NotFoundError(StorybankError):
    status_code = 404

    def __init__(self, entity: str, message: str | None = None):
        super().__init__(message or f"{entity} not found")
        self.entity = entity


class InternalError(StorybankError):
    """The store is unavailable or failed unexpectedly."""

    status_code = 500
