"""
Python SDK for the UPS x402 payment platform.

The most useful pieces are re-exported here so integrators can
``from ups_x402 import ...`` without navigating the package.
"""

from .api import UPSClient, create_client, send_payment
from .core import (
    AuthError,
    ClientConfig,
    ConfigError,
    DirectPayment,
    EscrowPayment,
    InvoicePayment,
    LocalAccountProvider,
    NetworkError,
    PaymentError,
    PaymentRequirements,
    RateLimitError,
    SettleResponse,
    TokenDomain,
    UPSError,
    VerifyResponse,
    WalletError,
    decode_payment_header,
    encode_payment_header,
    load_client_config,
)

__all__ = (
    "AuthError",
    "ClientConfig",
    "ConfigError",
    "DirectPayment",
    "EscrowPayment",
    "InvoicePayment",
    "LocalAccountProvider",
    "NetworkError",
    "PaymentError",
    "PaymentRequirements",
    "RateLimitError",
    "SettleResponse",
    "TokenDomain",
    "UPSClient",
    "UPSError",
    "VerifyResponse",
    "WalletError",
    "create_client",
    "decode_payment_header",
    "encode_payment_header",
    "load_client_config",
    "send_payment",
)
