"""
Public, high-level entry points for the UPS x402 SDK.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Any, Callable, Mapping, Optional

import requests

from .core.auth import AuthManager
from .core.config import ClientConfig, load_client_config
from .core.errors import AuthError, NetworkError, WalletError
from .core.events import EventBus
from .core.http import HttpClient
from .core.payment import PaymentModule
from .core.resources import AccountModule, EscrowModule, InvoiceModule, UserModule
from .core.signer import LocalAccountProvider, Provider, WalletModule
from .core.types import (
    AuthResult,
    ConnectResult,
    ConnectedWallet,
    PaymentRequirements,
    SettleResponse,
)

__all__ = [
    "CONNECT_MESSAGE",
    "LOGIN_MESSAGE",
    "REGISTER_MESSAGE",
    "UPSClient",
    "create_client",
    "send_payment",
]

logger = logging.getLogger(__name__)

CONNECT_MESSAGE = "Connect to UPSx402"
LOGIN_MESSAGE = "Login to UPSx402"
REGISTER_MESSAGE = "Register for UPSx402"

_REGISTER_ON_STATUS = frozenset({400, 401, 404})


def _should_register(exc: Exception) -> bool:
    if isinstance(exc, AuthError):
        return True
    if isinstance(exc, NetworkError) and exc.status in _REGISTER_ON_STATUS:
        return True
    return "not found" in str(exc).lower()


class UPSClient:
    """
    Composition root for one SDK session.

    Owns the event bus, the HTTP transport, the session manager, the wallet
    and the payment and resource modules. Use it as a context manager, or
    call :meth:`close`, so the refresh timer does not outlive the client.
    """

    def __init__(
        self,
        config: Optional[ClientConfig] = None,
        *,
        session: Optional[requests.Session] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.time,
        timer_factory: Callable[..., Any] = threading.Timer,
    ) -> None:
        self.config = config or ClientConfig()
        self.events = EventBus()
        self.http = HttpClient(
            self.config.base_url,
            timeout=self.config.timeout,
            retry_attempts=self.config.retry_attempts,
            get_token=self._current_token,
            session=session,
            sleep=sleep,
        )
        self.auth = AuthManager(
            self.http,
            self.events,
            refresh_interval=self.config.refresh_interval,
            refresh_buffer=self.config.refresh_buffer,
            clock=clock,
            timer_factory=timer_factory,
        )
        self.wallet = WalletModule(self.events)
        self.payment = PaymentModule(self.http, self.wallet, clock=clock)
        self.account = AccountModule(self.http)
        self.user = UserModule(self.http)
        self.invoice = InvoiceModule(self.http)
        self.escrow = EscrowModule(self.http)

    def __enter__(self) -> "UPSClient":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    def _current_token(self) -> Optional[str]:
        return self.auth.get_token()

    def connect(self, provider: Optional[Provider] = None) -> ConnectedWallet:
        """
        Connect a wallet.

        Without ``provider`` the configured private key backs a
        :class:`LocalAccountProvider` on the configured chain.
        """
        if provider is None:
            if not self.config.private_key:
                raise WalletError("No wallet provider or private key configured")
            provider = LocalAccountProvider(
                self.config.private_key,
                chain_id=self.config.chain_id or 1,
            )
        return self.wallet.connect(provider)

    def _require_address(self) -> str:
        address = self.wallet.get_address()
        if not address:
            raise WalletError("Wallet not connected")
        return address

    def authenticate(self) -> ConnectResult:
        """Sign the connect message and open a session through ``/auth/connect``."""
        address = self._require_address()
        signature = self.wallet.sign_message(CONNECT_MESSAGE)
        return self.auth.connect(address, CONNECT_MESSAGE, signature)

    def authenticate_legacy(self) -> AuthResult:
        """
        Log in through ``/auth/login``, registering the wallet when it is unknown.
        """
        address = self._require_address()
        signature = self.wallet.sign_message(LOGIN_MESSAGE)
        try:
            return self.auth.login(address, LOGIN_MESSAGE, signature)
        except (AuthError, NetworkError) as exc:
            if not _should_register(exc):
                raise
            logger.info("Login for %s failed (%s), registering instead", address, exc)

        signature = self.wallet.sign_message(REGISTER_MESSAGE)
        return self.auth.register(address, REGISTER_MESSAGE, signature)

    def is_authenticated(self) -> bool:
        return self.auth.is_authenticated()

    def disconnect(self) -> None:
        """End the session and drop the wallet connection."""
        self.auth.logout()
        self.wallet.disconnect()

    def close(self) -> None:
        self.auth.close()
        self.http.session.close()


def create_client(
    *,
    config: Optional[ClientConfig] = None,
    session: Optional[requests.Session] = None,
    env_file: Optional[str] = ".env",
    overrides: Optional[Mapping[str, str]] = None,
    base: Optional[Mapping[str, str]] = None,
    base_url: Optional[str] = None,
    network: Optional[str] = None,
    chain_id: Optional[int | str] = None,
    timeout: Optional[float | str] = None,
    retry_attempts: Optional[int | str] = None,
    refresh_interval: Optional[float | str] = None,
    refresh_buffer: Optional[float | str] = None,
    private_key: Optional[str] = None,
) -> UPSClient:
    """
    Construct a :class:`UPSClient`.

    Callers can either supply a ready-made :class:`ClientConfig` or let the
    helper assemble one from environment data.
    """
    if config is not None:
        extras = (
            overrides,
            base,
            base_url,
            network,
            chain_id,
            timeout,
            retry_attempts,
            refresh_interval,
            refresh_buffer,
            private_key,
        )
        if any(item is not None and item != {} for item in extras):
            raise ValueError(
                "Provide either a pre-built ClientConfig or individual parameters, not both."
            )
        cfg = config
    else:
        cfg = load_client_config(
            env_file=env_file,
            overrides=overrides,
            base=base,
            base_url=base_url,
            network=network,
            chain_id=chain_id,
            timeout=timeout,
            retry_attempts=retry_attempts,
            refresh_interval=refresh_interval,
            refresh_buffer=refresh_buffer,
            private_key=private_key,
        )
    return UPSClient(cfg, session=session)


def send_payment(
    requirements: PaymentRequirements,
    *,
    config: Optional[ClientConfig] = None,
    session: Optional[requests.Session] = None,
    provider: Optional[Provider] = None,
    env_file: Optional[str] = ".env",
    overrides: Optional[Mapping[str, str]] = None,
    from_: Optional[str] = None,
) -> SettleResponse:
    """
    High-level convenience wrapper: connect the wallet, then verify and settle.
    """
    if config is not None and overrides:
        raise ValueError("Provide either a pre-built ClientConfig or overrides, not both.")
    client = create_client(
        config=config,
        session=session,
        env_file=env_file,
        overrides=overrides,
    )
    with client:
        client.connect(provider)
        return client.payment.pay(requirements, from_=from_)
