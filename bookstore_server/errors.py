"""Errors raised when talking to the bookstore API."""

from typing import Any, Optional


class CartServiceError(Exception):
    """Base exception for bookstore API calls."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        errors: Any = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.errors = errors


class RemoteRejected(CartServiceError):
    """The store refused the request (business rule or error status)."""


class SessionExpired(RemoteRejected):
    """The store answered 401; the saved session is no longer valid."""

    def __init__(self, message: str = "Your session has expired. Please log in again.") -> None:
        super().__init__(message, status_code=401)


class NetworkFailure(CartServiceError):
    """The request did not complete (timeout or connectivity)."""

    def __init__(self, message: str = "Could not reach the store. Please try again.") -> None:
        super().__init__(message)
