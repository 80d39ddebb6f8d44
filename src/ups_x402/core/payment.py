"""
x402 payment engine: authorization, signing and the verify/settle exchange.
"""

from __future__ import annotations

import dataclasses
import logging
import time
from typing import Any, Callable, Dict, Mapping, Optional, Tuple, Union

from .errors import PaymentError
from .http import HttpClient
from .payloads import (
    build_authorization,
    build_facilitator_request,
    build_typed_data,
    encode_payment_header,
)
from .signer import Signer
from .types import (
    Invoice,
    InvoicePayment,
    PaymentAuthorization,
    PaymentRequirements,
    SettleResponse,
    SignedAuthorization,
    SupportedSchemes,
    TokenDomain,
    VerifyResponse,
)

__all__ = ["PaymentModule", "CLOSED_INVOICE_STATUSES"]

logger = logging.getLogger(__name__)

VERIFY_PATH = "/x402/verify"
SETTLE_PATH = "/x402/settle"
SUPPORTED_PATH = "/x402/supported"

CLOSED_INVOICE_STATUSES = frozenset({"PAID", "CANCELLED", "EXPIRED"})


class PaymentModule:
    """
    Builds, signs and submits ``exact``-scheme payments.

    The engine holds no per-payment state: every :meth:`pay` call draws its
    own nonce and timing window, so concurrent calls are independent. Verify
    and settle are posted without the session token; the signature is what
    authenticates a payment.
    """

    def __init__(
        self,
        http: HttpClient,
        signer: Signer,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._http = http
        self._signer = signer
        self._clock = clock

    def pay(
        self,
        requirements: PaymentRequirements,
        from_: Optional[str] = None,
    ) -> SettleResponse:
        """
        Sign a fresh authorization for ``requirements``, verify it, then settle it.

        Raises :class:`PaymentError` when no payer address resolves, the
        network has no valid chain id, or the facilitator rejects the payment
        at either step. Settlement is never attempted after a failed verify.
        """
        requirements, signed = self.authorize(requirements, from_)
        sender = requirements.from_
        header = self.encode_payment_header(signed, requirements)

        verification = VerifyResponse.from_response(
            self._submit(VERIFY_PATH, header, requirements)
        )
        if not verification.is_valid:
            reason = verification.invalid_reason or "unknown reason"
            raise PaymentError(
                f"Payment verification failed: {reason}",
                details=verification.raw,
                reason=verification.invalid_reason,
            )
        logger.info("Facilitator accepted payment payload for payer %s", verification.payer or sender)

        settlement = SettleResponse.from_response(
            self._submit(SETTLE_PATH, header, requirements)
        )
        if settlement.success is not True:
            if settlement.error_reason:
                reason = settlement.error_reason
            elif settlement.success is None:
                reason = "facilitator omitted success flag"
            else:
                reason = "unknown reason"
            raise PaymentError(
                f"Payment settlement failed: {reason}",
                details=settlement.raw,
                reason=settlement.error_reason,
            )

        logger.info(
            "Payment settled on %s. Transaction hash: %s",
            settlement.network,
            settlement.transaction,
        )
        return settlement

    def authorize(
        self,
        requirements: PaymentRequirements,
        from_: Optional[str] = None,
    ) -> Tuple[PaymentRequirements, SignedAuthorization]:
        """
        Resolve the payer and sign a fresh authorization without submitting it.

        Returns the requirements stamped with the payer address together with
        the signed authorization.
        """
        sender = from_ or requirements.from_ or self._signer.get_address()
        if not sender:
            raise PaymentError("No sender address provided")

        # The facilitator needs the payer to check smart-account (EIP-1271) signatures.
        requirements = dataclasses.replace(requirements, from_=sender)

        authorization = self.build_authorization(requirements, sender)
        return requirements, self.sign_authorization(authorization, requirements)

    def pay_invoice(
        self,
        invoice: Invoice,
        *,
        amount: Union[int, str],
        asset: str,
        network: str,
        pay_to: Optional[str] = None,
        max_timeout_seconds: int = 300,
        token: Optional[TokenDomain] = None,
        from_: Optional[str] = None,
    ) -> SettleResponse:
        """Pay ``invoice``; see :meth:`invoice_requirements` for the arguments."""
        requirements = self.invoice_requirements(
            invoice,
            amount=amount,
            asset=asset,
            network=network,
            pay_to=pay_to,
            max_timeout_seconds=max_timeout_seconds,
            token=token,
        )
        return self.pay(requirements, from_=from_)

    @staticmethod
    def invoice_requirements(
        invoice: Invoice,
        *,
        amount: Union[int, str],
        asset: str,
        network: str,
        pay_to: Optional[str] = None,
        max_timeout_seconds: int = 300,
        token: Optional[TokenDomain] = None,
    ) -> PaymentRequirements:
        """
        Requirements that settle (part of) ``invoice``.

        ``amount`` is in the asset's atomic unit; the payee defaults to the
        invoice's merchant. Closed invoices are rejected.
        """
        if invoice.status in CLOSED_INVOICE_STATUSES:
            raise PaymentError(
                f"Invoice {invoice.invoice_id} is {invoice.status.lower()}",
                details={"invoice_id": invoice.invoice_id, "status": invoice.status},
            )

        return PaymentRequirements(
            scheme="exact",
            network=network,
            max_amount_required=str(amount),
            asset=asset,
            pay_to=pay_to or invoice.merchant,
            max_timeout_seconds=max_timeout_seconds,
            description=f"Invoice {invoice.invoice_id}",
            token=token,
            kind=InvoicePayment(
                invoice_id=invoice.invoice_id,
                invoice_payment_type=invoice.payment_type,
            ),
        )

    def build_authorization(
        self,
        requirements: PaymentRequirements,
        sender: str,
        *,
        now: Optional[int] = None,
        nonce: Optional[bytes] = None,
    ) -> PaymentAuthorization:
        now = int(self._clock()) if now is None else now
        return build_authorization(requirements, sender, now=now, nonce=nonce)

    def sign_authorization(
        self,
        authorization: PaymentAuthorization,
        requirements: PaymentRequirements,
    ) -> SignedAuthorization:
        typed_data = build_typed_data(authorization, requirements)
        signature = self._signer.sign_typed_data(typed_data)
        if not signature:
            raise PaymentError("Signer returned an empty signature")
        return SignedAuthorization.attach(authorization, signature)

    def encode_payment_header(
        self,
        signed: SignedAuthorization,
        requirements: PaymentRequirements,
    ) -> str:
        return encode_payment_header(signed, requirements)

    def verify(
        self,
        signed: SignedAuthorization,
        requirements: PaymentRequirements,
    ) -> VerifyResponse:
        header = self.encode_payment_header(signed, requirements)
        return VerifyResponse.from_response(self._submit(VERIFY_PATH, header, requirements))

    def settle(
        self,
        signed: SignedAuthorization,
        requirements: PaymentRequirements,
    ) -> SettleResponse:
        header = self.encode_payment_header(signed, requirements)
        return SettleResponse.from_response(self._submit(SETTLE_PATH, header, requirements))

    def get_supported_schemes(self) -> SupportedSchemes:
        payload = self._http.get(SUPPORTED_PATH, skip_auth=True)
        return SupportedSchemes.from_response(payload if isinstance(payload, Mapping) else {})

    def _submit(
        self,
        path: str,
        header: str,
        requirements: PaymentRequirements,
    ) -> Dict[str, Any]:
        step = "verification" if path == VERIFY_PATH else "settlement"
        logger.info("Submitting payment for %s to %s", step, path)
        payload = self._http.post(
            path,
            build_facilitator_request(header, requirements),
            skip_auth=True,
        )
        if not isinstance(payload, Mapping):
            raise PaymentError(
                f"Facilitator returned an empty {step} response",
                details=payload,
            )
        return dict(payload)
