"""
Helpers for constructing, signing inputs for, and encoding x402 payment payloads.
"""

from __future__ import annotations

import base64
import json
import re
import secrets
import time
from typing import Any, Dict, List, Mapping, Optional

from .errors import PaymentError
from .types import PaymentAuthorization, PaymentRequirements, SignedAuthorization

__all__ = [
    "BACKDATE_SECONDS",
    "PAYMENT_HEADER_PREFIX",
    "TRANSFER_WITH_AUTHORIZATION_TYPES",
    "X402_VERSION",
    "build_authorization",
    "build_facilitator_request",
    "build_typed_data",
    "decode_payment_header",
    "domain_type_fields",
    "encode_payment_header",
    "parse_chain_id",
]

X402_VERSION = 1
PAYMENT_HEADER_PREFIX = "x402 "
# validAfter is backdated to tolerate clock skew between client and chain.
BACKDATE_SECONDS = 60

_AMOUNT_PATTERN = re.compile(r"[0-9]+")

TRANSFER_WITH_AUTHORIZATION_TYPES: Dict[str, List[Dict[str, str]]] = {
    "TransferWithAuthorization": [
        {"name": "from", "type": "address"},
        {"name": "to", "type": "address"},
        {"name": "value", "type": "uint256"},
        {"name": "validAfter", "type": "uint256"},
        {"name": "validBefore", "type": "uint256"},
        {"name": "nonce", "type": "bytes32"},
    ],
}

_DOMAIN_FIELD_TYPES = (
    ("name", "string"),
    ("version", "string"),
    ("chainId", "uint256"),
    ("verifyingContract", "address"),
    ("salt", "bytes32"),
)


def parse_chain_id(network: str) -> int:
    """
    Return the numeric chain id of a CAIP-2 ``eip155:<id>`` network.

    Bare numeric strings are accepted too.
    """
    reference = network[len("eip155:"):] if network.startswith("eip155:") else network
    try:
        chain_id = int(reference, 10)
    except (TypeError, ValueError) as exc:
        raise PaymentError("Invalid chain ID", details={"network": network}) from exc
    if chain_id <= 0:
        raise PaymentError("Invalid chain ID", details={"network": network})
    return chain_id


def _parse_amount(raw: str) -> int:
    text = str(raw).strip()
    if not _AMOUNT_PATTERN.fullmatch(text):
        raise PaymentError("Invalid payment amount", details={"maxAmountRequired": raw})
    return int(text)


def domain_type_fields(domain: Mapping[str, Any]) -> List[Dict[str, str]]:
    """``EIP712Domain`` type entries for the fields present in ``domain``."""
    return [
        {"name": name, "type": type_}
        for name, type_ in _DOMAIN_FIELD_TYPES
        if domain.get(name) is not None
    ]


def build_authorization(
    requirements: PaymentRequirements,
    sender: str,
    *,
    now: Optional[int] = None,
    nonce: Optional[bytes] = None,
) -> PaymentAuthorization:
    """
    Build a fresh ERC-3009 ``TransferWithAuthorization`` intent.

    A new random 32-byte nonce is drawn for every call unless one is passed.
    """
    _parse_amount(requirements.max_amount_required)
    now = int(time.time()) if now is None else now
    nonce_bytes = nonce if nonce is not None else secrets.token_bytes(32)
    if len(nonce_bytes) != 32:
        raise PaymentError("Authorization nonce must be 32 bytes")

    return PaymentAuthorization(
        from_=sender,
        to=requirements.pay_to,
        value=requirements.max_amount_required,
        valid_after=now - BACKDATE_SECONDS,
        valid_before=now + requirements.max_timeout_seconds,
        nonce="0x" + nonce_bytes.hex(),
    )


def build_typed_data(
    authorization: PaymentAuthorization,
    requirements: PaymentRequirements,
) -> Dict[str, Any]:
    """
    EIP-712 typed data for ``authorization`` under the token's domain.

    ``uint256`` fields are Python ints so no precision is lost; only the
    ``TransferWithAuthorization`` type is listed, signers derive
    ``EIP712Domain`` from the domain itself.
    """
    return {
        "domain": {
            "name": requirements.token_name,
            "version": requirements.token_version,
            "chainId": parse_chain_id(requirements.network),
            "verifyingContract": requirements.asset,
        },
        "types": {
            name: [dict(entry) for entry in entries]
            for name, entries in TRANSFER_WITH_AUTHORIZATION_TYPES.items()
        },
        "primaryType": "TransferWithAuthorization",
        "message": {
            "from": authorization.from_,
            "to": authorization.to,
            "value": _parse_amount(authorization.value),
            "validAfter": int(authorization.valid_after),
            "validBefore": int(authorization.valid_before),
            "nonce": authorization.nonce,
        },
    }


def _envelope(signed: SignedAuthorization, requirements: PaymentRequirements) -> Dict[str, Any]:
    return {
        "x402Version": X402_VERSION,
        "accepted": {
            "scheme": requirements.scheme,
            "network": requirements.network,
            "amount": requirements.max_amount_required,
            "asset": requirements.asset,
            "payTo": requirements.pay_to,
            "maxTimeoutSeconds": requirements.max_timeout_seconds,
        },
        "payload": {
            "authorization": {
                "from": signed.from_,
                "to": signed.to,
                "value": signed.value,
                "nonce": signed.nonce,
                "validAfter": str(signed.valid_after),
                "validBefore": str(signed.valid_before),
            },
            "signature": signed.signature,
        },
    }


def encode_payment_header(signed: SignedAuthorization, requirements: PaymentRequirements) -> str:
    """Return the ``"x402 <base64(json)>"`` payment header value."""
    canonical = json.dumps(
        _envelope(signed, requirements),
        separators=(",", ":"),
        ensure_ascii=False,
    )
    encoded = base64.b64encode(canonical.encode("utf-8")).decode("ascii")
    return PAYMENT_HEADER_PREFIX + encoded


def decode_payment_header(header: str) -> Dict[str, Any]:
    """Inverse of :func:`encode_payment_header`; returns the JSON envelope."""
    encoded = header[len(PAYMENT_HEADER_PREFIX):] if header.startswith(PAYMENT_HEADER_PREFIX) else header
    try:
        return json.loads(base64.b64decode(encoded, validate=True).decode("utf-8"))
    except ValueError as exc:
        raise PaymentError("Malformed payment header") from exc


def build_facilitator_request(header: str, requirements: PaymentRequirements) -> Dict[str, Any]:
    """Body posted to ``/x402/verify`` and ``/x402/settle``."""
    return {
        "x402Version": X402_VERSION,
        "paymentHeader": header,
        "paymentRequirements": requirements.to_dict(),
    }
