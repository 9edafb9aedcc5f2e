from __future__ import annotations

from typing import Optional


class StudioError(Exception):
    """Base class for failures reported back to the user at an operation boundary."""

    def __init__(self, message: str, operation: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.operation = operation

    def with_operation(self, operation: str) -> "StudioError":
        if self.operation is None:
            self.operation = operation
        return self

    def __str__(self) -> str:
        if self.operation:
            return f"{self.operation}: {self.message}"
        return self.message


class InputError(StudioError):
    """No image loaded, empty prompt, nothing selected. Raised before any mutation."""


class CoordinateError(InputError):
    pass


class BusyError(InputError):
    pass


class ServiceError(StudioError):
    """The edit service failed, blocked the request or returned unusable output."""


class StaleResultError(ServiceError):
    pass


class DecodeError(StudioError):
    """A raster payload could not be decoded."""
