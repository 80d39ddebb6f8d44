from datetime import datetime, timezone

import pytest
from eth_account import Account
from eth_account.messages import encode_defunct

from conftest import ASSET, PAY_TO, PRIVATE_KEY, StubSession, make_response
from ups_x402.api import UPSClient, create_client, send_payment
from ups_x402.core.config import ClientConfig
from ups_x402.core.errors import NetworkError, WalletError
from ups_x402.core.types import PaymentRequirements

NOW = 1_700_000_000
EXPIRES = datetime.fromtimestamp(NOW + 3600, tz=timezone.utc).isoformat()


def _client(handler, timers, sleep, **config):
    values = dict(base_url="http://api.test", network="eip155:8453", private_key=PRIVATE_KEY)
    values.update(config)
    session = StubSession(handler)
    client = UPSClient(
        ClientConfig(**values),
        session=session,
        sleep=sleep,
        clock=lambda: NOW,
        timer_factory=timers,
    )
    return client, session


def _requirements():
    return PaymentRequirements(
        scheme="exact",
        network="eip155:8453",
        max_amount_required="250000",
        asset=ASSET,
        pay_to=PAY_TO,
        max_timeout_seconds=120,
    )


def test_connect_uses_configured_private_key(timers, sleep):
    client, _ = _client(lambda method, path, call: None, timers, sleep)

    connected = client.connect()

    assert connected.address == Account.from_key(PRIVATE_KEY).address
    assert connected.chain_id == 8453


def test_connect_without_key_or_provider_fails(timers, sleep):
    client, _ = _client(lambda method, path, call: None, timers, sleep, private_key=None)

    with pytest.raises(WalletError):
        client.connect()


def test_authenticate_signs_connect_message(timers, sleep):
    client, session = _client(
        lambda method, path, call: make_response(200, {"token": "tok", "expiresAt": EXPIRES}),
        timers,
        sleep,
    )
    client.connect()

    result = client.authenticate()

    body = session.calls[0]["json"]
    assert session.paths() == ["/auth/connect"]
    assert body["message"] == "Connect to UPSx402"
    recovered = Account.recover_message(
        encode_defunct(text="Connect to UPSx402"),
        signature=body["signature"],
    )
    assert recovered == body["wallet_address"]
    assert result.token == "tok"
    assert client.is_authenticated()


def test_authenticated_requests_carry_session_token(timers, sleep):
    def handler(method, path, call):
        if path == "/auth/connect":
            return make_response(200, {"token": "tok", "expiresAt": EXPIRES})
        return make_response(200, {"user": {"id": "u1", "wallet_address": "0x", "status": "ACTIVE"}})

    client, session = _client(handler, timers, sleep)
    client.connect()
    client.authenticate()

    client.user.get_current_user()

    assert session.calls[-1]["headers"]["Authorization"] == "Bearer tok"


def test_authenticate_requires_wallet(timers, sleep):
    client, session = _client(lambda method, path, call: None, timers, sleep)

    with pytest.raises(WalletError, match="Wallet not connected"):
        client.authenticate()
    assert session.calls == []


def test_legacy_login_falls_back_to_register(timers, sleep):
    def handler(method, path, call):
        if path == "/auth/login":
            return make_response(404, {"error": "user not found"})
        return make_response(200, {"token": "new-tok"})

    client, session = _client(handler, timers, sleep, retry_attempts=0)
    client.connect()

    result = client.authenticate_legacy()

    assert session.paths() == ["/auth/login", "/auth/register"]
    assert session.calls[0]["json"]["message"] == "Login to UPSx402"
    assert session.calls[1]["json"]["message"] == "Register for UPSx402"
    assert result.token == "new-tok"
    assert client.auth.state.address == Account.from_key(PRIVATE_KEY).address


def test_legacy_login_success_skips_register(timers, sleep):
    client, session = _client(
        lambda method, path, call: make_response(200, {"token": "tok", "expiresAt": EXPIRES}),
        timers,
        sleep,
    )
    client.connect()

    client.authenticate_legacy()

    assert session.paths() == ["/auth/login"]


def test_legacy_login_server_error_is_not_masked(timers, sleep):
    client, session = _client(
        lambda method, path, call: make_response(500, {"error": "database down"}),
        timers,
        sleep,
        retry_attempts=0,
    )
    client.connect()

    with pytest.raises(NetworkError):
        client.authenticate_legacy()
    assert session.paths() == ["/auth/login"]


def test_disconnect_and_close(timers, sleep):
    client, session = _client(
        lambda method, path, call: make_response(200, {"token": "tok", "expiresAt": EXPIRES}),
        timers,
        sleep,
    )
    with client:
        client.connect()
        client.authenticate()
        client.disconnect()

        assert not client.is_authenticated()
        assert not client.wallet.is_connected()
        assert timers.timers[0].cancelled

    assert session.closed


def test_create_client_rejects_mixed_inputs():
    with pytest.raises(ValueError):
        create_client(config=ClientConfig(), base_url="http://other.test")


def test_create_client_from_parameters(tmp_path):
    client = create_client(
        env_file=str(tmp_path / "absent.env"),
        base={},
        base_url="http://api.test",
        retry_attempts=1,
    )

    assert client.http.base_url == "http://api.test"
    assert client.http.retry_attempts == 1


def test_send_payment(provider):
    def handler(method, path, call):
        if path == "/x402/verify":
            return make_response(200, {"isValid": True})
        return make_response(200, {"success": True, "transaction": "0xtx", "network": "eip155:8453"})

    session = StubSession(handler)
    config = ClientConfig(base_url="http://api.test", network="eip155:8453")

    result = send_payment(_requirements(), config=config, session=session, provider=provider)

    assert result.transaction == "0xtx"
    assert session.paths() == ["/x402/verify", "/x402/settle"]
    assert session.closed
