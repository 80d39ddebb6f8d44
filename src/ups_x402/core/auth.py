"""
Session management: wallet-signature login, token storage and scheduled refresh.
"""

from __future__ import annotations

import logging
import re
import threading
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Mapping, Optional

from .errors import AuthError, NetworkError, UPSError
from .events import AUTH_CHANGED, EventBus
from .http import HttpClient
from .types import AuthResult, AuthState, ConnectResult, User

__all__ = ["AuthManager", "parse_expiry"]

logger = logging.getLogger(__name__)

DEFAULT_SESSION_TTL = timedelta(hours=24)

TimerFactory = Callable[[float, Callable[[], None]], Any]

# fromisoformat accepts at most microsecond precision
_EXCESS_FRACTION = re.compile(r"(\.\d{6})\d+")


def parse_expiry(raw: Any) -> datetime:
    """
    Parse a backend ``expiresAt`` value into an aware UTC datetime.

    Accepts ISO-8601 strings (with ``Z`` or an offset) and Unix timestamps in
    seconds.
    """
    if isinstance(raw, datetime):
        return raw if raw.tzinfo else raw.replace(tzinfo=timezone.utc)
    if isinstance(raw, (int, float)) and not isinstance(raw, bool):
        return datetime.fromtimestamp(raw, tz=timezone.utc)
    if isinstance(raw, str):
        text = raw.strip()
        try:
            return datetime.fromtimestamp(float(text), tz=timezone.utc)
        except ValueError:
            pass
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        text = _EXCESS_FRACTION.sub(r"\1", text)
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError as exc:
            raise AuthError(f"Invalid session expiry: {raw!r}") from exc
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    raise AuthError(f"Invalid session expiry: {raw!r}")


def _auth_result(payload: Any, *, default_ttl: Optional[timedelta] = None) -> AuthResult:
    if not isinstance(payload, Mapping) or not payload.get("token"):
        raise AuthError("Authentication response did not include a token", details=payload)
    raw_expiry = payload.get("expiresAt", payload.get("expires_at"))
    if raw_expiry is None:
        if default_ttl is None:
            raise AuthError("Authentication response did not include expiresAt", details=payload)
        expires_at = datetime.now(timezone.utc) + default_ttl
    else:
        expires_at = parse_expiry(raw_expiry)
    return AuthResult(token=str(payload["token"]), expires_at=expires_at)


class AuthManager:
    """
    Owns the session :class:`AuthState` and keeps its token fresh.

    The state object is immutable and replaced wholesale on every change, so
    concurrent readers always see a consistent token/expiry/address triple.
    At most one refresh timer is pending at any time.
    """

    def __init__(
        self,
        http: HttpClient,
        events: EventBus,
        *,
        refresh_interval: float = 60.0,
        refresh_buffer: float = 300.0,
        clock: Callable[[], float] = time.time,
        timer_factory: TimerFactory = threading.Timer,
    ) -> None:
        self._http = http
        self._events = events
        self.refresh_interval = refresh_interval
        self.refresh_buffer = refresh_buffer
        self._clock = clock
        self._timer_factory = timer_factory
        self._state = AuthState()
        self._timer: Optional[Any] = None
        self._lock = threading.RLock()

    @property
    def state(self) -> AuthState:
        return self._state

    def get_token(self) -> Optional[str]:
        return self._state.token

    def is_authenticated(self) -> bool:
        return self._state.is_authenticated

    @property
    def has_pending_refresh(self) -> bool:
        return self._timer is not None

    def on_state_change(self, callback: Callable[[AuthState], None]) -> Callable[[], None]:
        return self._events.on(AUTH_CHANGED, callback)

    def connect(self, address: str, message: str, signature: str) -> ConnectResult:
        """
        Log in, or register on first use, through the unified ``/auth/connect``.
        """
        body = {"wallet_address": address, "message": message, "signature": signature}
        try:
            payload = self._http.post("/auth/connect", body, skip_auth=True)
        except NetworkError as exc:
            if exc.status is not None and 400 <= exc.status < 500:
                raise AuthError(f"Wallet signature rejected: {exc}", details=exc.details) from exc
            raise

        result = _auth_result(payload, default_ttl=DEFAULT_SESSION_TTL)
        user_payload = payload.get("user")
        user = User.from_payload(user_payload) if isinstance(user_payload, Mapping) else None
        is_new_user = bool(payload.get("isNewUser", payload.get("is_new_user", False)))

        self._handle_auth_success(result, address)
        logger.info("Authenticated %s (new user: %s)", address, is_new_user)
        return ConnectResult(
            user=user,
            token=result.token,
            expires_at=result.expires_at,
            is_new_user=is_new_user,
        )

    def login(self, address: str, message: str, signature: str) -> AuthResult:
        """Legacy login against ``/auth/login``."""
        payload = self._http.post(
            "/auth/login",
            {"wallet_address": address, "message": message, "signature": signature},
            skip_auth=True,
        )
        result = _auth_result(payload)
        self._handle_auth_success(result, address)
        return result

    def register(self, address: str, message: str, signature: str) -> AuthResult:
        """
        Legacy registration against ``/auth/register``.

        The endpoint may omit ``expiresAt``; the session then defaults to 24 hours.
        """
        payload = self._http.post(
            "/auth/register",
            {"wallet_address": address, "message": message, "signature": signature},
            skip_auth=True,
        )
        result = _auth_result(payload, default_ttl=DEFAULT_SESSION_TTL)
        self._handle_auth_success(result, address)
        return result

    def refresh(self) -> None:
        """
        Rotate the session token.

        A failed refresh ends the session: the caller has to sign in again.
        """
        current = self._state
        if current.token is None:
            return

        try:
            payload = self._http.post("/auth/refresh")
            result = _auth_result(payload)
        except UPSError as exc:
            with self._lock:
                if self._state.token != current.token:
                    logger.debug("Ignoring failed refresh of a replaced session: %s", exc)
                    return
                logger.error("Token refresh failed: %s", exc)
                self.logout()
            return

        with self._lock:
            if self._state.token != current.token:
                # Logged out or re-authenticated while the request was in flight.
                return
            self._state = AuthState(
                token=result.token,
                expires_at=result.expires_at,
                address=current.address,
            )
            new_state = self._state
        logger.debug("Session token refreshed, expires at %s", result.expires_at.isoformat())
        self._events.emit(AUTH_CHANGED, new_state)
        self.schedule_refresh()

    def logout(self) -> None:
        with self._lock:
            self._cancel_timer()
            was_authenticated = self._state.is_authenticated
            self._state = AuthState()
            new_state = self._state
        if was_authenticated:
            logger.info("Session ended")
            self._events.emit(AUTH_CHANGED, new_state)

    def close(self) -> None:
        """Cancel any pending refresh without touching the session state."""
        with self._lock:
            self._cancel_timer()

    def schedule_refresh(self) -> None:
        """
        Arm the refresh timer for the current token.

        The delay is ``min(refresh_interval, remaining - refresh_buffer)``. A
        token already inside the buffer is refreshed immediately; an expired
        token gets no timer at all.
        """
        with self._lock:
            self._cancel_timer()
            expires_at = self._state.expires_at
            if self._state.token is None or expires_at is None:
                return

            remaining = expires_at.timestamp() - self._clock()
            if remaining <= 0:
                logger.warning("Session token already expired; re-authentication required")
                return
            if remaining <= self.refresh_buffer:
                delay = 0.0
            else:
                delay = min(self.refresh_interval, remaining - self.refresh_buffer)

            def _fire() -> None:
                self._on_timer(timer)

            timer = self._timer_factory(delay, _fire)
            timer.daemon = True
            self._timer = timer
            timer.start()

    def _on_timer(self, timer: Any) -> None:
        with self._lock:
            if self._timer is not timer:
                return
            self._timer = None
        self.refresh()

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _handle_auth_success(self, result: AuthResult, address: str) -> None:
        with self._lock:
            self._state = AuthState(
                token=result.token,
                expires_at=result.expires_at,
                address=address,
            )
            new_state = self._state
        self._events.emit(AUTH_CHANGED, new_state)
        self.schedule_refresh()
