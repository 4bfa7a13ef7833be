"""
Domain errors raised by the store and the HTTP layer.

Each error carries the HTTP status it maps to; `fairshare.app` renders them
as ``{"detail": message}`` responses.
"""

from __future__ import annotations


class FairShareError(Exception):
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class AuthenticationError(FairShareError):
    status_code = 401


class PermissionDeniedError(FairShareError):
    status_code = 403


class NotFoundError(FairShareError):
    status_code = 404


class InvalidRequestError(FairShareError):
    status_code = 400


class OutstandingBalanceError(InvalidRequestError):
    """Raised when unsettled debts block removing a member or a group."""


class InviteUnavailableError(InvalidRequestError):
    """Raised when an invite link is inactive or expired."""
