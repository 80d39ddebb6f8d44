from datetime import datetime, timedelta, timezone

import pytest

from conftest import ASSET, PAY_TO, PRIVATE_KEY, StubSession, make_response
from ups_x402.cli import build_parser, run_cli
from ups_x402.core.payloads import decode_payment_header

TX_HASH = "0x" + "ef" * 32


@pytest.fixture
def base_args(tmp_path):
    return [
        "--env-file",
        str(tmp_path / "absent.env"),
        "--set",
        "UPS_API_URL=http://api.test",
        "--set",
        "UPS_NETWORK=eip155:8453",
        "--set",
        f"UPS_PRIVATE_KEY={PRIVATE_KEY}",
        "--set",
        "UPS_RETRY_ATTEMPTS=0",
    ]


def _backend(verify=None, paid_amount="1500000"):
    verify = verify or {"isValid": True, "payer": "0xpayer"}
    expires = (datetime.now(timezone.utc) + timedelta(hours=1)).isoformat()

    def handler(method, path, call):
        if path == "/x402/supported":
            return make_response(
                200,
                {"kinds": [{"x402Version": 1, "scheme": "exact", "network": "eip155:8453"}]},
            )
        if path == "/x402/verify":
            return make_response(200, verify)
        if path == "/x402/settle":
            return make_response(200, {"success": True, "transaction": TX_HASH, "network": "eip155:8453"})
        if path == "/auth/connect":
            return make_response(200, {"token": "tok", "expiresAt": expires})
        if path == "/invoices/inv-1":
            return make_response(
                200,
                {
                    "invoice": {
                        "invoice_id": "inv-1",
                        "merchant": PAY_TO,
                        "amount": "5000000",
                        "paid_amount": paid_amount,
                        "payment_type": "DIRECT",
                        "status": "PARTIALLY_PAID",
                    }
                },
            )
        return make_response(404, {"error": "not found"})

    return StubSession(handler)


def _pay_args(*extra):
    return ["pay", "--pay-to", PAY_TO, "--amount", "1000000", "--asset", ASSET, *extra]


def test_supported_lists_kinds(base_args, capsys):
    session = _backend()

    assert run_cli(base_args + ["supported"], session=session) == 0
    assert "exact\teip155:8453\tx402v1" in capsys.readouterr().out
    assert session.closed


def test_pay_settles_and_prints_transaction(base_args, capsys):
    session = _backend()

    assert run_cli(base_args + _pay_args("--token-name", "USD Coin", "--token-version", "2"), session=session) == 0

    assert session.paths() == ["/x402/verify", "/x402/settle"]
    assert capsys.readouterr().out.strip() == TX_HASH
    wire = session.calls[0]["json"]["paymentRequirements"]
    assert wire["extra"] == {"name": "USD Coin", "version": "2"}
    assert wire["maxTimeoutSeconds"] == 300


def test_pay_verify_only_skips_settlement(base_args):
    session = _backend()

    assert run_cli(base_args + _pay_args("--verify-only"), session=session) == 0
    assert session.paths() == ["/x402/verify"]


def test_pay_rejected_returns_error(base_args, caplog):
    session = _backend(verify={"isValid": False, "invalidReason": "insufficient balance"})

    assert run_cli(base_args + _pay_args(), session=session) == 1
    assert session.paths() == ["/x402/verify"]
    assert "insufficient balance" in caplog.text


def test_pay_into_escrow(base_args):
    session = _backend()

    exit_code = run_cli(
        base_args + _pay_args("--escrow-arbiter", PAY_TO, "--escrow-release-time", "1800000000"),
        session=session,
    )

    assert exit_code == 0
    extra = session.calls[0]["json"]["paymentRequirements"]["extra"]
    assert extra == {"payment_type": "ESCROW", "arbiter": PAY_TO, "release_time": 1_800_000_000}


def test_pay_invoice_defaults_to_outstanding_amount(base_args):
    session = _backend()

    exit_code = run_cli(
        base_args + ["pay-invoice", "--invoice-id", "inv-1", "--asset", ASSET],
        session=session,
    )

    assert exit_code == 0
    assert session.paths() == ["/auth/connect", "/invoices/inv-1", "/x402/verify", "/x402/settle"]
    assert session.calls[1]["headers"]["Authorization"] == "Bearer tok"
    wire = session.calls[2]["json"]["paymentRequirements"]
    assert wire["maxAmountRequired"] == "3500000"
    assert wire["payTo"] == PAY_TO
    assert wire["extra"]["invoice_id"] == "inv-1"
    envelope = decode_payment_header(session.calls[2]["json"]["paymentHeader"])
    assert envelope["payload"]["authorization"]["value"] == "3500000"


def test_pay_invoice_verify_only_keeps_invoice_tag(base_args):
    session = _backend()

    exit_code = run_cli(
        base_args + ["pay-invoice", "--invoice-id", "inv-1", "--asset", ASSET, "--verify-only"],
        session=session,
    )

    assert exit_code == 0
    assert session.paths()[-1] == "/x402/verify"
    assert session.calls[-1]["json"]["paymentRequirements"]["extra"]["payment_type"] == "INVOICE"


def test_pay_invoice_with_nothing_outstanding_is_rejected(base_args, caplog):
    session = _backend(paid_amount="6000000")

    exit_code = run_cli(
        base_args + ["pay-invoice", "--invoice-id", "inv-1", "--asset", ASSET],
        session=session,
    )

    assert exit_code == 1
    assert session.paths() == ["/auth/connect", "/invoices/inv-1"]
    assert "nothing outstanding" in caplog.text


def test_invalid_configuration_returns_error(tmp_path, caplog):
    argv = [
        "--env-file",
        str(tmp_path / "absent.env"),
        "--set",
        "UPS_RETRY_ATTEMPTS=lots",
        "supported",
    ]

    assert run_cli(argv, session=_backend()) == 1
    assert "Invalid configuration" in caplog.text


def test_override_must_be_key_value():
    with pytest.raises(SystemExit):
        build_parser().parse_args(["--set", "NOPE", "supported"])


def test_pay_requires_amount():
    with pytest.raises(SystemExit):
        build_parser().parse_args(["pay", "--pay-to", PAY_TO, "--asset", ASSET])


def test_addresses_are_validated_and_checksummed():
    args = build_parser().parse_args(
        ["pay", "--pay-to", PAY_TO.lower(), "--amount", "1", "--asset", ASSET[2:]]
    )

    assert args.pay_to == PAY_TO
    assert args.asset == ASSET

    with pytest.raises(SystemExit):
        build_parser().parse_args(["pay", "--pay-to", "0x1234", "--amount", "1", "--asset", ASSET])
