"""Errors raised by the intake service.

Each carries the HTTP status the boundary maps it to. All of them are raised
before any side effect (nothing persisted, nothing published).
"""

from __future__ import annotations


class IntakeError(Exception):
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(IntakeError):
    """Malformed or empty request, missing fields, non-positive quantity."""

    status_code = 400


class NotFound(IntakeError):
    """Unknown product id."""

    status_code = 400


class AuthError(IntakeError):
    """Missing or invalid credential."""

    status_code = 401
