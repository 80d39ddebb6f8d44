"""
Core primitives: transport, session, wallet signing and the x402 payment lifecycle.
"""

from .auth import AuthManager, parse_expiry
from .config import ClientConfig, load_client_config
from .environment import ClientEnvironment, build_environment, load_env_file
from .errors import (
    AuthError,
    ConfigError,
    NetworkError,
    PaymentError,
    ProviderRpcError,
    RateLimitError,
    UPSError,
    WalletError,
)
from .events import EventBus
from .http import NO_CONTENT, HttpClient
from .payloads import (
    build_authorization,
    build_facilitator_request,
    build_typed_data,
    decode_payment_header,
    encode_payment_header,
    parse_chain_id,
)
from .payment import PaymentModule
from .resources import AccountModule, EscrowModule, InvoiceModule, UserModule
from .signer import LocalAccountProvider, Provider, Signer, WalletModule
from .types import (
    AuthState,
    DirectPayment,
    EscrowPayment,
    Invoice,
    InvoicePayment,
    PaymentRequirements,
    PaymentType,
    SettleResponse,
    SignedAuthorization,
    SupportedSchemes,
    TokenDomain,
    VerifyResponse,
)

__all__ = [
    "AccountModule",
    "AuthError",
    "AuthManager",
    "AuthState",
    "ClientConfig",
    "ClientEnvironment",
    "ConfigError",
    "DirectPayment",
    "EscrowModule",
    "EscrowPayment",
    "EventBus",
    "HttpClient",
    "Invoice",
    "InvoiceModule",
    "InvoicePayment",
    "LocalAccountProvider",
    "NO_CONTENT",
    "NetworkError",
    "PaymentError",
    "PaymentModule",
    "PaymentRequirements",
    "PaymentType",
    "Provider",
    "ProviderRpcError",
    "RateLimitError",
    "SettleResponse",
    "SignedAuthorization",
    "Signer",
    "SupportedSchemes",
    "TokenDomain",
    "UPSError",
    "UserModule",
    "VerifyResponse",
    "WalletError",
    "WalletModule",
    "build_authorization",
    "build_environment",
    "build_facilitator_request",
    "build_typed_data",
    "decode_payment_header",
    "encode_payment_header",
    "load_client_config",
    "load_env_file",
    "parse_chain_id",
]
