from __future__ import annotations


class ResourceError(Exception):
    """
    Base class for failures raised by the resource layer.

    `status_code` is the HTTP status the REST surface answers with.
    """

    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(ResourceError):
    """Bad filter, sort, pagination or body. Raised before any SQL runs."""

    status_code = 400


class NotFoundError(ResourceError):
    status_code = 404


class StorageError(ResourceError):
    """A database or driver failure; the message is the driver's."""

    status_code = 500
