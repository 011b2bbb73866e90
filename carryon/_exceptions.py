from __future__ import annotations

import typing as tp

__all__ = (
    "CarryonError",
    "TransportError",
    "StatusError",
    "ResumeValidationError",
    "VerificationError",
    "StoreError",
    "CancellationError",
)


class CarryonError(Exception): ...


class TransportError(CarryonError):
    """
    A connection-level failure.

    `code` is a short classification such as "ECONNRESET" or "ENOTFOUND",
    or None when the failure could not be classified.
    """

    def __init__(self, message: str, code: tp.Optional[str] = None) -> None:
        super().__init__(message)
        self.code = code


class StatusError(CarryonError):
    def __init__(
        self,
        status_code: int,
        headers: tp.Optional[tp.Mapping[str, str]] = None,
        body: tp.Any = None,
        message: tp.Optional[str] = None,
    ) -> None:
        super().__init__(message or f"Response status code {status_code}")
        self.status_code = status_code
        self.headers = dict(headers) if headers is not None else {}
        self.body = body
        self.reason = body.get("reason") if isinstance(body, dict) else None


class ResumeValidationError(CarryonError): ...


class VerificationError(CarryonError):
    """The completed response body does not match its Content-Length or Content-MD5."""

    def __init__(self, message: str, expected: tp.Any, actual: tp.Any) -> None:
        super().__init__(message)
        self.expected = expected
        self.actual = actual


class StoreError(CarryonError, TypeError): ...


class CancellationError(CarryonError):
    def __init__(self, reason: tp.Any = None) -> None:
        super().__init__("The operation was aborted" if reason is None else str(reason))
        self.reason = reason
