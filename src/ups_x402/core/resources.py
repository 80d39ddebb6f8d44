"""
Clients for the UPS REST resources that sit around the payment flow:
smart accounts, the current user, invoices and escrows.

All of them require an authenticated session.
"""

from __future__ import annotations

from typing import Any, Dict, List, Mapping, Optional, Union
from urllib.parse import quote

from .errors import UPSError
from .http import HttpClient
from .types import (
    Account,
    CreateAccountResponse,
    Escrow,
    EscrowActionResponse,
    EscrowPayment,
    Invoice,
    InvoiceList,
    PaymentRequirements,
    TokenDomain,
    User,
)

__all__ = ["AccountModule", "EscrowModule", "InvoiceModule", "UserModule"]


def _segment(value: str) -> str:
    return quote(str(value), safe="")


def _mapping(payload: Any, key: Optional[str] = None) -> Mapping[str, Any]:
    if key is not None and isinstance(payload, Mapping):
        payload = payload.get(key)
    if not isinstance(payload, Mapping):
        raise UPSError(f"Unexpected response payload: {payload!r}", code="INVALID_RESPONSE")
    return payload


class AccountModule:
    """Smart-account lifecycle (``/accounts``)."""

    def __init__(self, http: HttpClient) -> None:
        self._http = http

    def get(self, account_id: str) -> Account:
        payload = self._http.get(f"/accounts/{_segment(account_id)}")
        return Account.from_payload(_mapping(payload, "account"))

    def list(self) -> List[Account]:
        payload = _mapping(self._http.get("/accounts"))
        return [Account.from_payload(item) for item in payload.get("accounts") or []]

    def get_by_wallet(self, address: str) -> Account:
        for account in self.list():
            if account.wallet_address.lower() == address.lower():
                return account
        raise UPSError(f"Account not found for wallet {address}", code="NOT_FOUND")

    def create(self, owner_address: str, salt: str) -> CreateAccountResponse:
        payload = _mapping(
            self._http.post("/accounts", {"owner_address": owner_address, "salt": salt})
        )
        return CreateAccountResponse(
            account=Account.from_payload(_mapping(payload, "account")),
            tx_hash=payload.get("tx_hash"),
        )

    def predict_address(self, owner_address: str, salt: str) -> str:
        payload = _mapping(
            self._http.post("/accounts/predict", {"owner_address": owner_address, "salt": salt})
        )
        return str(payload["wallet_address"])


class UserModule:
    def __init__(self, http: HttpClient) -> None:
        self._http = http

    def get_current_user(self) -> User:
        return User.from_payload(_mapping(self._http.get("/users/me"), "user"))


class InvoiceModule:
    """Invoice lifecycle (``/invoices``)."""

    def __init__(self, http: HttpClient) -> None:
        self._http = http

    def create(
        self,
        *,
        amount: Union[int, str],
        due_date: int,
        payment_type: str = "DIRECT",
        metadata_uri: str = "",
        merchant: Optional[str] = None,
        payer: Optional[str] = None,
    ) -> Invoice:
        body: Dict[str, Any] = {
            "amount": str(amount),
            "due_date": due_date,
            "payment_type": payment_type,
            "metadata_uri": metadata_uri,
        }
        if merchant is not None:
            body["merchant"] = merchant
        if payer is not None:
            body["payer"] = payer
        return Invoice.from_payload(_mapping(self._http.post("/invoices", body), "invoice"))

    def get(self, invoice_id: str) -> Invoice:
        payload = self._http.get(f"/invoices/{_segment(invoice_id)}")
        return Invoice.from_payload(_mapping(payload, "invoice"))

    def list(
        self,
        *,
        merchant: Optional[str] = None,
        payer: Optional[str] = None,
        page_size: Optional[int] = None,
        page_token: Optional[str] = None,
    ) -> InvoiceList:
        params = {
            key: value
            for key, value in (
                ("merchant", merchant),
                ("payer", payer),
                ("page_size", page_size),
                ("page_token", page_token),
            )
            if value
        }
        payload = _mapping(self._http.get("/invoices", params=params or None))
        return InvoiceList(
            invoices=[Invoice.from_payload(item) for item in payload.get("invoices") or []],
            next_page_token=payload.get("next_page_token") or "",
        )

    def cancel(self, invoice_id: str) -> Invoice:
        payload = self._http.post(f"/invoices/{_segment(invoice_id)}/cancel", {})
        return Invoice.from_payload(_mapping(payload, "invoice"))


class EscrowModule:
    """Escrow lifecycle (``/x402/escrow``)."""

    def __init__(self, http: HttpClient) -> None:
        self._http = http

    def get(self, escrow_id: str) -> Escrow:
        return Escrow.from_payload(_mapping(self._http.get(f"/x402/escrow/{_segment(escrow_id)}")))

    def release(self, escrow_id: str, network: str) -> EscrowActionResponse:
        payload = self._http.post(
            f"/x402/escrow/{_segment(escrow_id)}/release", {"network": network}
        )
        return EscrowActionResponse.from_response(_mapping(payload))

    def refund(self, escrow_id: str, network: str) -> EscrowActionResponse:
        payload = self._http.post(
            f"/x402/escrow/{_segment(escrow_id)}/refund", {"network": network}
        )
        return EscrowActionResponse.from_response(_mapping(payload))

    @staticmethod
    def requirements(
        *,
        network: str,
        amount: Union[int, str],
        asset: str,
        pay_to: str,
        arbiter: Optional[str] = None,
        release_time: Optional[int] = None,
        payee: Optional[str] = None,
        max_timeout_seconds: int = 300,
        token: Optional[TokenDomain] = None,
    ) -> PaymentRequirements:
        """
        Payment requirements that fund a new escrow.

        ``pay_to`` is the escrow holder; ``payee`` is who receives the funds
        on release.
        """
        return PaymentRequirements(
            scheme="exact",
            network=network,
            max_amount_required=str(amount),
            asset=asset,
            pay_to=pay_to,
            max_timeout_seconds=max_timeout_seconds,
            token=token,
            kind=EscrowPayment(arbiter=arbiter, release_time=release_time, payee=payee),
        )
