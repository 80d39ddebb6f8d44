from datetime import datetime, timedelta, timezone

import pytest

from conftest import StubSession, make_response
from ups_x402.core.auth import AuthManager, parse_expiry
from ups_x402.core.errors import AuthError, NetworkError
from ups_x402.core.events import AUTH_CHANGED
from ups_x402.core.http import HttpClient

NOW = 1_700_000_000
ADDRESS = "0x19E7E376E7C213B7E7e7e46cc70A5dD086DAff2A"


def _iso(seconds):
    return datetime.fromtimestamp(seconds, tz=timezone.utc).isoformat().replace("+00:00", "Z")


def _manager(handler, events, timers, sleep):
    session = StubSession(handler)
    holder = {}
    http = HttpClient(
        "http://api.test",
        retry_attempts=0,
        get_token=lambda: holder["manager"].get_token(),
        session=session,
        sleep=sleep,
    )
    manager = AuthManager(http, events, clock=lambda: NOW, timer_factory=timers)
    holder["manager"] = manager
    return manager, session


def _token_response(token, expires_in=3600, **extra):
    payload = {"token": token, "expiresAt": _iso(NOW + expires_in)}
    payload.update(extra)
    return make_response(200, payload)


def test_connect_stores_session_and_schedules_refresh(events, timers, sleep):
    changes = []
    events.on(AUTH_CHANGED, changes.append)
    manager, session = _manager(
        lambda method, path, call: _token_response(
            "tok-1",
            user={"id": "u1", "wallet_address": ADDRESS, "status": "ACTIVE"},
            isNewUser=True,
        ),
        events,
        timers,
        sleep,
    )

    result = manager.connect(ADDRESS, "Connect to UPSx402", "0xsig")

    call = session.calls[0]
    assert call["path"] == "/auth/connect"
    assert call["json"] == {
        "wallet_address": ADDRESS,
        "message": "Connect to UPSx402",
        "signature": "0xsig",
    }
    assert "Authorization" not in call["headers"]
    assert result.is_new_user is True
    assert result.user.id == "u1"
    assert manager.is_authenticated()
    assert manager.state.address == ADDRESS
    assert changes == [manager.state]
    assert [timer.delay for timer in timers.timers] == [60.0]
    assert timers.timers[0].daemon is True
    assert timers.timers[0].started


def test_connect_defaults_expiry_to_a_day(events, timers, sleep):
    manager, _ = _manager(
        lambda method, path, call: make_response(200, {"token": "tok"}),
        events,
        timers,
        sleep,
    )

    before = datetime.now(timezone.utc)
    result = manager.connect(ADDRESS, "m", "s")

    assert result.expires_at - before >= timedelta(hours=23, minutes=59)
    assert result.is_new_user is False


def test_connect_rejected_signature(events, timers, sleep):
    manager, _ = _manager(
        lambda method, path, call: make_response(400, {"error": "bad signature"}),
        events,
        timers,
        sleep,
    )

    with pytest.raises(AuthError, match="Wallet signature rejected"):
        manager.connect(ADDRESS, "m", "s")
    assert not manager.is_authenticated()


def test_connect_server_error_stays_network_error(events, timers, sleep):
    manager, _ = _manager(
        lambda method, path, call: make_response(503, {"error": "down"}),
        events,
        timers,
        sleep,
    )

    with pytest.raises(NetworkError):
        manager.connect(ADDRESS, "m", "s")


def test_login_requires_token(events, timers, sleep):
    manager, _ = _manager(
        lambda method, path, call: make_response(200, {"expiresAt": _iso(NOW)}),
        events,
        timers,
        sleep,
    )

    with pytest.raises(AuthError, match="did not include a token"):
        manager.login(ADDRESS, "Login to UPSx402", "0xsig")


def test_token_inside_buffer_refreshes_immediately(events, timers, sleep):
    manager, _ = _manager(
        lambda method, path, call: _token_response("tok", expires_in=120),
        events,
        timers,
        sleep,
    )

    manager.login(ADDRESS, "m", "s")

    assert [timer.delay for timer in timers.timers] == [0.0]


def test_expired_token_gets_no_timer(events, timers, sleep, caplog):
    manager, _ = _manager(
        lambda method, path, call: _token_response("tok", expires_in=-10),
        events,
        timers,
        sleep,
    )

    manager.login(ADDRESS, "m", "s")

    assert timers.timers == []
    assert not manager.has_pending_refresh
    assert "already expired" in caplog.text


def test_refresh_rotates_token(events, timers, sleep):
    tokens = iter(["tok-1", "tok-2"])
    manager, session = _manager(
        lambda method, path, call: _token_response(next(tokens)),
        events,
        timers,
        sleep,
    )
    manager.login(ADDRESS, "m", "s")

    timers.timers[0].fire()

    refresh_call = session.calls[-1]
    assert refresh_call["path"] == "/auth/refresh"
    assert refresh_call["headers"]["Authorization"] == "Bearer tok-1"
    assert manager.get_token() == "tok-2"
    assert manager.state.address == ADDRESS
    assert len(timers.timers) == 2
    assert manager.has_pending_refresh


def test_failed_refresh_logs_out(events, timers, sleep, caplog):
    responses = [_token_response("tok-1"), make_response(500, {"error": "boom"})]
    manager, _ = _manager(lambda method, path, call: responses.pop(0), events, timers, sleep)
    manager.login(ADDRESS, "m", "s")
    changes = []
    events.on(AUTH_CHANGED, changes.append)

    timers.timers[0].fire()

    assert not manager.is_authenticated()
    assert manager.state.address is None
    assert len(changes) == 1 and not changes[0].is_authenticated
    assert "Token refresh failed" in caplog.text
    assert len(timers.timers) == 1


def test_refresh_result_discarded_after_logout_in_flight(events, timers, sleep):
    def handler(method, path, call):
        if path == "/auth/refresh":
            manager.logout()
            return _token_response("tok-2")
        return _token_response("tok-1")

    manager, _ = _manager(handler, events, timers, sleep)
    manager.login(ADDRESS, "m", "s")

    timers.timers[0].fire()

    assert not manager.is_authenticated()
    assert len(timers.timers) == 1


def test_failed_refresh_keeps_newer_session(events, timers, sleep, caplog):
    def handler(method, path, call):
        if path == "/auth/refresh":
            manager.connect(ADDRESS, "m", "s")
            return make_response(401, {"error": "token revoked"})
        if path == "/auth/connect":
            return _token_response("tok-B")
        return _token_response("tok-1")

    manager, _ = _manager(handler, events, timers, sleep)
    manager.login(ADDRESS, "m", "s")

    timers.timers[0].fire()

    assert manager.get_token() == "tok-B"
    assert manager.is_authenticated()
    assert manager.has_pending_refresh
    assert "Token refresh failed" not in caplog.text


@pytest.mark.parametrize(
    ("expires_in", "delay"),
    [(330, 30.0), (300, 0.0)],
)
def test_refresh_delay_tracks_remaining_lifetime(events, timers, sleep, expires_in, delay):
    manager, _ = _manager(
        lambda method, path, call: _token_response("tok", expires_in=expires_in),
        events,
        timers,
        sleep,
    )

    manager.login(ADDRESS, "m", "s")

    assert [timer.delay for timer in timers.timers] == [delay]


def test_rescheduling_cancels_previous_timer(events, timers, sleep):
    manager, session = _manager(
        lambda method, path, call: _token_response("tok"),
        events,
        timers,
        sleep,
    )
    manager.login(ADDRESS, "m", "s")
    manager.schedule_refresh()

    first, second = timers.timers
    assert first.cancelled and not second.cancelled

    first.fire()
    assert session.paths() == ["/auth/login"]


def test_logout_emits_only_when_authenticated(events, timers, sleep):
    manager, _ = _manager(
        lambda method, path, call: _token_response("tok"),
        events,
        timers,
        sleep,
    )
    changes = []
    events.on(AUTH_CHANGED, changes.append)

    manager.logout()
    assert changes == []

    manager.login(ADDRESS, "m", "s")
    manager.logout()

    assert len(changes) == 2
    assert not changes[-1].is_authenticated
    assert timers.timers[0].cancelled
    assert not manager.has_pending_refresh


def test_close_keeps_session(events, timers, sleep):
    manager, _ = _manager(
        lambda method, path, call: _token_response("tok"),
        events,
        timers,
        sleep,
    )
    manager.login(ADDRESS, "m", "s")

    manager.close()

    assert manager.is_authenticated()
    assert timers.timers[0].cancelled


def test_refresh_without_session_is_a_no_op(events, timers, sleep):
    manager, session = _manager(lambda method, path, call: None, events, timers, sleep)

    manager.refresh()

    assert session.calls == []


def test_parse_expiry_formats():
    expected = datetime(2024, 1, 1, tzinfo=timezone.utc)

    assert parse_expiry("2024-01-01T00:00:00Z") == expected
    assert parse_expiry("2024-01-01T00:00:00+00:00") == expected
    assert parse_expiry(int(expected.timestamp())) == expected
    assert parse_expiry(str(int(expected.timestamp()))) == expected
    assert parse_expiry("2024-01-01T00:00:00.123456789Z") == expected.replace(microsecond=123456)


def test_parse_expiry_rejects_garbage():
    with pytest.raises(AuthError):
        parse_expiry("next tuesday")
    with pytest.raises(AuthError):
        parse_expiry(None)
