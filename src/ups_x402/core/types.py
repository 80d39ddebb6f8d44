"""
Data model shared by the payment engine, the session manager and the
backend resource clients.

Wire payloads use camelCase (x402) or snake_case (UPS REST resources); the
dataclasses here use Python names and convert at the edge through
``to_dict``/``from_dict``/``from_response``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Mapping, Optional, Tuple, Union

__all__ = [
    "Account",
    "AuthResult",
    "AuthState",
    "ConnectResult",
    "ConnectedWallet",
    "CreateAccountResponse",
    "DirectPayment",
    "Escrow",
    "EscrowActionResponse",
    "EscrowPayment",
    "Invoice",
    "InvoiceList",
    "InvoicePayment",
    "PaymentAuthorization",
    "PaymentKind",
    "PaymentRequirements",
    "PaymentType",
    "SettleResponse",
    "SignedAuthorization",
    "SupportedScheme",
    "SupportedSchemes",
    "TokenDomain",
    "User",
    "VerifyResponse",
    "WalletState",
]

DEFAULT_TOKEN_NAME = "x402 Payment Token"
DEFAULT_TOKEN_VERSION = "1"


class PaymentType(str, Enum):
    UNSPECIFIED = "UNSPECIFIED"
    DIRECT = "DIRECT"
    ESCROW = "ESCROW"
    INVOICE = "INVOICE"


@dataclass(frozen=True)
class TokenDomain:
    """EIP-712 domain name/version of the token contract."""

    name: str = DEFAULT_TOKEN_NAME
    version: str = DEFAULT_TOKEN_VERSION


@dataclass(frozen=True)
class DirectPayment:
    """Plain transfer to ``payTo``; carries no ``payment_type`` on the wire."""

    def to_extra(self) -> Dict[str, Any]:
        return {}


@dataclass(frozen=True)
class EscrowPayment:
    """Funds held by the backend until released by the payer or ``arbiter``."""

    arbiter: Optional[str] = None
    release_time: Optional[int] = None
    payee: Optional[str] = None

    def to_extra(self) -> Dict[str, Any]:
        extra: Dict[str, Any] = {"payment_type": PaymentType.ESCROW.value}
        if self.arbiter is not None:
            extra["arbiter"] = self.arbiter
        if self.release_time is not None:
            extra["release_time"] = self.release_time
        if self.payee is not None:
            extra["payee"] = self.payee
        return extra


@dataclass(frozen=True)
class InvoicePayment:
    """Payment settling (part of) an invoice."""

    invoice_id: str
    invoice_payment_type: Optional[str] = None

    def to_extra(self) -> Dict[str, Any]:
        extra: Dict[str, Any] = {
            "payment_type": PaymentType.INVOICE.value,
            "invoice_id": self.invoice_id,
        }
        if self.invoice_payment_type is not None:
            extra["invoice_payment_type"] = self.invoice_payment_type
        return extra


PaymentKind = Union[DirectPayment, EscrowPayment, InvoicePayment]


def _kind_from_extra(extra: Mapping[str, Any]) -> Tuple[PaymentKind, FrozenSet[str]]:
    """Return the payment kind and the ``extra`` keys it took over."""
    payment_type = extra.get("payment_type")
    if payment_type == PaymentType.ESCROW.value:
        consumed = {"payment_type", "arbiter", "payee"}
        release_time = extra.get("release_time")
        if isinstance(release_time, int) and not isinstance(release_time, bool):
            consumed.add("release_time")
        else:
            # Left in the passthrough map exactly as received.
            release_time = None
        kind = EscrowPayment(
            arbiter=extra.get("arbiter"),
            release_time=release_time,
            payee=extra.get("payee"),
        )
        return kind, frozenset(consumed)
    if payment_type == PaymentType.INVOICE.value and "invoice_id" in extra:
        kind = InvoicePayment(
            invoice_id=str(extra["invoice_id"]),
            invoice_payment_type=extra.get("invoice_payment_type"),
        )
        return kind, frozenset({"payment_type", "invoice_id", "invoice_payment_type"})
    return DirectPayment(), frozenset()


@dataclass(frozen=True)
class PaymentRequirements:
    """
    What the payer must pay.

    ``max_amount_required`` is a decimal integer string in the asset's atomic
    unit. ``network`` uses the CAIP-2 ``namespace:reference`` form.
    """

    scheme: str
    network: str
    max_amount_required: str
    asset: str
    pay_to: str
    max_timeout_seconds: int
    resource: Optional[str] = None
    description: Optional[str] = None
    mime_type: Optional[str] = None
    token: Optional[TokenDomain] = None
    kind: PaymentKind = field(default_factory=DirectPayment)
    extra_fields: Mapping[str, Any] = field(default_factory=dict)
    from_: Optional[str] = None

    @property
    def token_name(self) -> str:
        return self.token.name if self.token else DEFAULT_TOKEN_NAME

    @property
    def token_version(self) -> str:
        return self.token.version if self.token else DEFAULT_TOKEN_VERSION

    def extra(self) -> Optional[Dict[str, Any]]:
        """Flatten token domain, payment kind and passthrough fields into the wire map."""
        extra: Dict[str, Any] = dict(self.extra_fields)
        if self.token is not None:
            extra["name"] = self.token.name
            extra["version"] = self.token.version
        extra.update(self.kind.to_extra())
        return extra or None

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "scheme": self.scheme,
            "network": self.network,
            "maxAmountRequired": self.max_amount_required,
            "asset": self.asset,
            "payTo": self.pay_to,
            "maxTimeoutSeconds": self.max_timeout_seconds,
        }
        if self.resource is not None:
            payload["resource"] = self.resource
        if self.description is not None:
            payload["description"] = self.description
        if self.mime_type is not None:
            payload["mimeType"] = self.mime_type
        extra = self.extra()
        if extra is not None:
            payload["extra"] = extra
        if self.from_ is not None:
            payload["from"] = self.from_
        return payload

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "PaymentRequirements":
        extra = dict(payload.get("extra") or {})
        token = None
        if "name" in extra or "version" in extra:
            token = TokenDomain(
                name=extra.pop("name", DEFAULT_TOKEN_NAME),
                version=extra.pop("version", DEFAULT_TOKEN_VERSION),
            )
        kind, consumed = _kind_from_extra(extra)
        passthrough = {key: value for key, value in extra.items() if key not in consumed}
        return cls(
            scheme=payload.get("scheme", "exact"),
            network=str(payload["network"]),
            max_amount_required=str(payload["maxAmountRequired"]),
            asset=payload["asset"],
            pay_to=payload["payTo"],
            max_timeout_seconds=int(payload["maxTimeoutSeconds"]),
            resource=payload.get("resource"),
            description=payload.get("description"),
            mime_type=payload.get("mimeType"),
            token=token,
            kind=kind,
            extra_fields=passthrough,
            from_=payload.get("from"),
        )


@dataclass(frozen=True)
class PaymentAuthorization:
    """Single-use ERC-3009 transfer intent. Times are Unix seconds."""

    from_: str
    to: str
    value: str
    valid_after: int
    valid_before: int
    nonce: str


@dataclass(frozen=True)
class SignedAuthorization(PaymentAuthorization):
    signature: str = ""

    @classmethod
    def attach(cls, authorization: PaymentAuthorization, signature: str) -> "SignedAuthorization":
        return cls(
            from_=authorization.from_,
            to=authorization.to,
            value=authorization.value,
            valid_after=authorization.valid_after,
            valid_before=authorization.valid_before,
            nonce=authorization.nonce,
            signature=signature,
        )


@dataclass(frozen=True)
class VerifyResponse:
    is_valid: bool
    invalid_reason: Optional[str]
    payer: Optional[str]
    raw: Dict[str, Any]

    @classmethod
    def from_response(cls, payload: Mapping[str, Any]) -> "VerifyResponse":
        return cls(
            is_valid=payload.get("isValid") is True,
            invalid_reason=payload.get("invalidReason"),
            payer=payload.get("payer"),
            raw=dict(payload),
        )


@dataclass(frozen=True)
class SettleResponse:
    """
    Facilitator settlement result.

    ``success`` is ``None`` when the facilitator omitted the flag.
    """

    success: Optional[bool]
    error_reason: Optional[str]
    transaction: Optional[str]
    network: Optional[str]
    payer: Optional[str]
    raw: Dict[str, Any]

    @classmethod
    def from_response(cls, payload: Mapping[str, Any]) -> "SettleResponse":
        success = payload.get("success")
        return cls(
            success=success if isinstance(success, bool) else None,
            error_reason=payload.get("errorReason"),
            transaction=payload.get("transaction"),
            network=payload.get("network"),
            payer=payload.get("payer"),
            raw=dict(payload),
        )


@dataclass(frozen=True)
class SupportedScheme:
    x402_version: int
    scheme: str
    network: str


@dataclass(frozen=True)
class SupportedSchemes:
    kinds: List[SupportedScheme]
    extensions: List[str]
    signers: Dict[str, List[str]]

    @classmethod
    def from_response(cls, payload: Mapping[str, Any]) -> "SupportedSchemes":
        kinds = [
            SupportedScheme(
                x402_version=int(item.get("x402Version", 1)),
                scheme=item["scheme"],
                network=item["network"],
            )
            for item in payload.get("kinds") or []
        ]
        return cls(
            kinds=kinds,
            extensions=list(payload.get("extensions") or []),
            signers=dict(payload.get("signers") or {}),
        )


@dataclass(frozen=True)
class AuthState:
    """
    Immutable session snapshot.

    ``is_authenticated`` is true exactly when ``token`` is set, and
    ``address`` is set exactly when ``token`` is.
    """

    token: Optional[str] = None
    expires_at: Optional[datetime] = None
    address: Optional[str] = None

    @property
    def is_authenticated(self) -> bool:
        return self.token is not None


@dataclass(frozen=True)
class AuthResult:
    token: str
    expires_at: datetime


@dataclass(frozen=True)
class User:
    id: str
    wallet_address: str
    status: str
    created_at: Optional[str] = None

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "User":
        return cls(
            id=str(payload["id"]),
            wallet_address=payload.get("wallet_address", ""),
            status=payload.get("status", ""),
            created_at=payload.get("created_at"),
        )


@dataclass(frozen=True)
class ConnectResult:
    user: Optional[User]
    token: str
    expires_at: datetime
    is_new_user: bool


@dataclass(frozen=True)
class Account:
    id: str
    owner_address: str
    wallet_address: str
    status: str
    kyc_level: int = 0
    user_id: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "Account":
        return cls(
            id=str(payload["id"]),
            owner_address=payload.get("owner_address", ""),
            wallet_address=payload.get("wallet_address", ""),
            status=payload.get("status", ""),
            kyc_level=int(payload.get("kyc_level") or 0),
            user_id=payload.get("user_id"),
            created_at=payload.get("created_at"),
            updated_at=payload.get("updated_at"),
        )


@dataclass(frozen=True)
class CreateAccountResponse:
    account: Account
    tx_hash: Optional[str]


@dataclass(frozen=True)
class Invoice:
    invoice_id: str
    merchant: str
    payer: Optional[str]
    amount: str
    paid_amount: str
    due_date: int
    created_at: int
    payment_type: str
    status: str
    metadata_uri: str = ""

    @property
    def outstanding_amount(self) -> int:
        return max(int(self.amount) - int(self.paid_amount or "0"), 0)

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "Invoice":
        return cls(
            invoice_id=str(payload["invoice_id"]),
            merchant=payload.get("merchant", ""),
            payer=payload.get("payer") or None,
            amount=str(payload.get("amount", "0")),
            paid_amount=str(payload.get("paid_amount") or "0"),
            due_date=int(payload.get("due_date") or 0),
            created_at=int(payload.get("created_at") or 0),
            payment_type=payload.get("payment_type", PaymentType.DIRECT.value),
            status=payload.get("status", "UNSPECIFIED"),
            metadata_uri=payload.get("metadata_uri", ""),
        )


@dataclass(frozen=True)
class InvoiceList:
    invoices: List[Invoice]
    next_page_token: str = ""


@dataclass(frozen=True)
class Escrow:
    escrow_id: str
    payer: str
    payee: str
    amount: str
    arbiter: str
    release_time: int
    status: str

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "Escrow":
        return cls(
            escrow_id=str(payload["escrowId"]),
            payer=payload.get("payer", ""),
            payee=payload.get("payee", ""),
            amount=str(payload.get("amount", "0")),
            arbiter=payload.get("arbiter", ""),
            release_time=int(payload.get("releaseTime") or 0),
            status=payload.get("status", ""),
        )


@dataclass(frozen=True)
class EscrowActionResponse:
    success: bool
    error_reason: Optional[str]
    transaction: Optional[str]
    network: Optional[str]

    @classmethod
    def from_response(cls, payload: Mapping[str, Any]) -> "EscrowActionResponse":
        return cls(
            success=payload.get("success") is True,
            error_reason=payload.get("errorReason"),
            transaction=payload.get("transaction"),
            network=payload.get("network"),
        )


@dataclass(frozen=True)
class ConnectedWallet:
    address: str
    chain_id: int


@dataclass(frozen=True)
class WalletState:
    address: Optional[str] = None
    chain_id: Optional[int] = None

    @property
    def is_connected(self) -> bool:
        return self.address is not None
