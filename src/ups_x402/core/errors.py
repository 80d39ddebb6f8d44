"""
Exception hierarchy shared by every part of the SDK.

All SDK failures derive from :class:`UPSError` and carry a stable ``code`` so
callers can branch on the kind of failure without string matching.
"""

from __future__ import annotations

from typing import Any, Optional

__all__ = [
    "USER_REJECTED_CODE",
    "AuthError",
    "ConfigError",
    "NetworkError",
    "PaymentError",
    "ProviderRpcError",
    "RateLimitError",
    "UPSError",
    "WalletError",
]

# EIP-1193 "User Rejected Request"
USER_REJECTED_CODE = 4001


class UPSError(Exception):
    """Base class for errors raised by the SDK."""

    code = "UPS_ERROR"

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Any = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        self.details = details


class NetworkError(UPSError):
    """
    Transport failure: connectivity, timeout or a non-2xx response.

    ``details`` holds the parsed JSON error body when the server sent one and
    the raw text otherwise. ``body`` is always the raw text, when available.
    """

    code = "NETWORK_ERROR"

    def __init__(
        self,
        message: str,
        details: Any = None,
        status: Optional[int] = None,
        body: Optional[str] = None,
    ) -> None:
        super().__init__(message, details=details)
        self.status = status
        self.body = body


class RateLimitError(NetworkError):
    """Raised once the retry budget is exhausted on HTTP 429 responses."""

    code = "RATE_LIMIT_ERROR"

    def __init__(self, message: str, details: Any = None, body: Optional[str] = None) -> None:
        super().__init__(message, details=details, status=429, body=body)


class AuthError(UPSError):
    """Authentication failed or a session is required but missing."""

    code = "AUTH_ERROR"


class WalletError(UPSError):
    """The wallet rejected or failed a request."""

    code = "WALLET_ERROR"


class PaymentError(UPSError):
    """
    Protocol-level payment failure.

    ``reason`` is the backend-supplied ``invalidReason``/``errorReason``,
    preserved verbatim, when the failure came from the facilitator.
    """

    code = "PAYMENT_ERROR"

    def __init__(
        self,
        message: str,
        details: Any = None,
        reason: Optional[str] = None,
    ) -> None:
        super().__init__(message, details=details)
        self.reason = reason


class ProviderRpcError(Exception):
    """Error raised by a wallet provider, mirroring EIP-1193 ``ProviderRpcError``."""

    def __init__(self, code: int, message: str, data: Any = None) -> None:
        super().__init__(message)
        self.code = code
        self.data = data


class ConfigError(Exception):
    """Raised when the supplied configuration is invalid."""
