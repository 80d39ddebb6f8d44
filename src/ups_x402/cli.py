"""
Command-line interface for exercising the UPS x402 payment APIs.
"""

from __future__ import annotations

import argparse
import logging
import sys
from typing import Iterable, Optional, Sequence, Tuple

import requests
from eth_utils import is_hex_address, to_checksum_address

from .api import UPSClient, create_client
from .core.config import ClientConfig, load_client_config
from .core.errors import ConfigError, UPSError
from .core.resources import EscrowModule
from .core.types import (
    DirectPayment,
    PaymentRequirements,
    SettleResponse,
    TokenDomain,
)

logger = logging.getLogger(__name__)


def _configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(message)s",
    )


def _env_override(value: str) -> Tuple[str, str]:
    if "=" not in value:
        raise argparse.ArgumentTypeError("Overrides must look like KEY=VALUE")
    key, val = value.split("=", 1)
    key = key.strip()
    if not key:
        raise argparse.ArgumentTypeError("Override key must not be empty")
    return key, val


def _address(value: str) -> str:
    value = value.strip()
    if not value.startswith("0x"):
        value = "0x" + value
    if not is_hex_address(value):
        raise argparse.ArgumentTypeError(f"{value} is not a valid EVM address")
    return to_checksum_address(value)


def _collect_overrides(pairs: Iterable[Tuple[str, str]]) -> dict[str, str]:
    overrides: dict[str, str] = {}
    for key, value in pairs:
        overrides[key] = value
    return overrides


def _add_payment_options(parser: argparse.ArgumentParser, *, amount_required: bool) -> None:
    parser.add_argument(
        "--pay-to",
        type=_address,
        required=amount_required,
        help="Payee address",
    )
    parser.add_argument(
        "--amount",
        required=amount_required,
        help="Amount in the asset's atomic unit (e.g. 1000000 for 1 USDC)",
    )
    parser.add_argument("--asset", type=_address, required=True, help="ERC-3009 token contract address")
    parser.add_argument("--network", help="CAIP-2 network (default: UPS_NETWORK)")
    parser.add_argument(
        "--timeout-seconds",
        type=int,
        default=300,
        help="Authorization validity window in seconds (default: 300)",
    )
    parser.add_argument("--token-name", help="EIP-712 domain name of the token")
    parser.add_argument("--token-version", help="EIP-712 domain version of the token")
    parser.add_argument(
        "--from",
        dest="from_",
        type=_address,
        help="Payer address when it differs from the signer (smart accounts)",
    )
    parser.add_argument(
        "--verify-only",
        action="store_true",
        help="Submit the payment to /x402/verify but skip settlement",
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="ups-x402",
        description="Execute x402 payments against the UPS platform",
    )
    parser.add_argument(
        "--env-file",
        default=".env",
        help="Path to the .env file containing UPS_* settings (default: .env)",
    )
    parser.add_argument(
        "--set",
        action="append",
        type=_env_override,
        metavar="KEY=VALUE",
        default=None,
        help="Override an environment variable without editing the .env file",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        help="Python logging level (default: INFO)",
    )

    commands = parser.add_subparsers(dest="command", required=True)

    commands.add_parser("supported", help="List the schemes and networks the facilitator supports")

    pay = commands.add_parser("pay", help="Sign, verify and settle a payment")
    _add_payment_options(pay, amount_required=True)
    pay.add_argument(
        "--escrow-arbiter",
        type=_address,
        help="Hold the funds in escrow with this arbiter",
    )
    pay.add_argument(
        "--escrow-release-time",
        type=int,
        help="Hold the funds in escrow until this Unix timestamp",
    )

    pay_invoice = commands.add_parser("pay-invoice", help="Pay an existing invoice")
    pay_invoice.add_argument("--invoice-id", required=True, help="Invoice to pay")
    _add_payment_options(pay_invoice, amount_required=False)
    return parser


def _token_domain(args: argparse.Namespace) -> Optional[TokenDomain]:
    if args.token_name is None and args.token_version is None:
        return None
    defaults = TokenDomain()
    return TokenDomain(
        name=args.token_name or defaults.name,
        version=args.token_version or defaults.version,
    )


def _requirements(args: argparse.Namespace, config: ClientConfig) -> PaymentRequirements:
    network = args.network or config.network
    if args.escrow_arbiter is not None or args.escrow_release_time is not None:
        return EscrowModule.requirements(
            network=network,
            amount=args.amount,
            asset=args.asset,
            pay_to=args.pay_to,
            arbiter=args.escrow_arbiter,
            release_time=args.escrow_release_time,
            max_timeout_seconds=args.timeout_seconds,
            token=_token_domain(args),
        )
    return PaymentRequirements(
        scheme="exact",
        network=network,
        max_amount_required=str(args.amount),
        asset=args.asset,
        pay_to=args.pay_to,
        max_timeout_seconds=args.timeout_seconds,
        token=_token_domain(args),
        kind=DirectPayment(),
    )


def _verify_only(client: UPSClient, requirements: PaymentRequirements, from_: Optional[str]) -> int:
    requirements, signed = client.payment.authorize(requirements, from_)
    verification = client.payment.verify(signed, requirements)
    if not verification.is_valid:
        logger.error("Payment rejected: %s", verification.invalid_reason or verification.raw)
        return 1
    logger.info("Facilitator accepted payment payload for payer %s", verification.payer)
    logger.info("Skipping settlement because --verify-only was requested")
    return 0


def _handle_settlement(settlement: SettleResponse) -> int:
    logger.info(
        "Payment settled on %s. Transaction hash: %s",
        settlement.network,
        settlement.transaction,
    )
    print(settlement.transaction or "")
    return 0


def _run_supported(client: UPSClient) -> int:
    supported = client.payment.get_supported_schemes()
    for kind in supported.kinds:
        print(f"{kind.scheme}\t{kind.network}\tx402v{kind.x402_version}")
    return 0


def _run_pay(client: UPSClient, args: argparse.Namespace) -> int:
    requirements = _requirements(args, client.config)
    client.connect()
    if args.verify_only:
        return _verify_only(client, requirements, args.from_)
    return _handle_settlement(client.payment.pay(requirements, from_=args.from_))


def _run_pay_invoice(client: UPSClient, args: argparse.Namespace) -> int:
    client.connect()
    client.authenticate()
    invoice = client.invoice.get(args.invoice_id)
    amount = args.amount
    if amount is None:
        amount = invoice.outstanding_amount
        if amount <= 0:
            logger.error("Invoice %s has nothing outstanding", invoice.invoice_id)
            return 1
    logger.info(
        "Paying invoice %s (%s outstanding of %s)",
        invoice.invoice_id,
        invoice.outstanding_amount,
        invoice.amount,
    )
    requirements = client.payment.invoice_requirements(
        invoice,
        amount=amount,
        asset=args.asset,
        network=args.network or client.config.network,
        pay_to=args.pay_to,
        max_timeout_seconds=args.timeout_seconds,
        token=_token_domain(args),
    )
    if args.verify_only:
        return _verify_only(client, requirements, args.from_)
    return _handle_settlement(client.payment.pay(requirements, from_=args.from_))


def run_cli(
    argv: Sequence[str] | None = None,
    *,
    session: Optional[requests.Session] = None,
) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    _configure_logging(args.log_level)
    overrides = _collect_overrides(args.set or ())

    try:
        config = load_client_config(env_file=args.env_file, overrides=overrides)
    except (KeyError, ConfigError, ValueError) as exc:
        logger.error("Invalid configuration: %s", exc)
        return 1

    client = create_client(config=config, session=session or requests.Session())
    with client:
        try:
            if args.command == "supported":
                return _run_supported(client)
            if args.command == "pay":
                return _run_pay(client, args)
            return _run_pay_invoice(client, args)
        except UPSError as exc:
            logger.error("%s failed: %s", args.command, exc)
            return 1
        except Exception as exc:  # noqa: BLE001
            logger.error("Unexpected error during %s: %s", args.command, exc)
            return 1


def main() -> None:
    sys.exit(run_cli())
