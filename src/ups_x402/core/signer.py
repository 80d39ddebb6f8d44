"""
Wallet connection and the signing capability used by the payment engine.

:class:`WalletModule` talks to any object shaped like an EIP-1193 provider
(``request(method, params)`` plus optional ``on``/``remove_listener``) and
exposes the three operations the rest of the SDK needs: the current address,
``personal_sign`` and ``eth_signTypedData_v4``.
"""

from __future__ import annotations

import copy
import json
import logging
from typing import Any, Callable, Dict, List, Mapping, Optional, Protocol, Sequence, Tuple

from eth_account import Account
from eth_account.messages import encode_defunct, encode_typed_data
from eth_utils import to_hex
from hexbytes import HexBytes

from .errors import USER_REJECTED_CODE, ProviderRpcError, WalletError
from .events import (
    WALLET_ACCOUNTS_CHANGED,
    WALLET_CHAIN_CHANGED,
    WALLET_CONNECTED,
    WALLET_DISCONNECTED,
    EventBus,
)
from .payloads import domain_type_fields
from .types import ConnectedWallet, WalletState

__all__ = [
    "LocalAccountProvider",
    "Provider",
    "Signer",
    "WalletModule",
]

logger = logging.getLogger(__name__)


class Signer(Protocol):
    """What the payment engine needs from a wallet."""

    def get_address(self) -> Optional[str]:
        ...

    def sign_message(self, message: str) -> str:
        ...

    def sign_typed_data(self, typed_data: Mapping[str, Any]) -> str:
        ...


class Provider(Protocol):
    """Minimal EIP-1193 provider surface."""

    def request(self, method: str, params: Optional[Sequence[Any]] = None) -> Any:
        ...


def _with_domain_type(typed_data: Mapping[str, Any]) -> Dict[str, Any]:
    full = copy.deepcopy(dict(typed_data))
    types = full.setdefault("types", {})
    if "EIP712Domain" not in types:
        types["EIP712Domain"] = domain_type_fields(full.get("domain") or {})
    return full


def _stringify_ints(value: Any) -> Any:
    # JSON-RPC wallets parse numbers as doubles; uint256 values must travel as strings.
    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        return str(value)
    if isinstance(value, dict):
        return {key: _stringify_ints(item) for key, item in value.items()}
    if isinstance(value, list):
        return [_stringify_ints(item) for item in value]
    return value


def _parse_chain_id(raw: Any) -> int:
    if isinstance(raw, int):
        return raw
    return int(str(raw), 16) if str(raw).startswith("0x") else int(str(raw))


class WalletModule:
    """
    Connection to a wallet provider.

    Implements :class:`Signer`, so the payment engine can use a connected
    wallet directly.
    """

    def __init__(self, events: EventBus) -> None:
        self._events = events
        self._state = WalletState()
        self._provider: Optional[Provider] = None
        self._listeners: List[Tuple[str, Callable[..., None]]] = []

    @property
    def state(self) -> WalletState:
        return self._state

    @property
    def provider(self) -> Optional[Provider]:
        return self._provider

    def connect(self, provider: Provider) -> ConnectedWallet:
        try:
            addresses = provider.request("eth_requestAccounts")
            if not addresses:
                raise WalletError("No accounts found")
            chain_id = _parse_chain_id(provider.request("eth_chainId"))
        except WalletError:
            raise
        except ProviderRpcError as exc:
            if exc.code == USER_REJECTED_CODE:
                raise WalletError("User rejected connection", details=exc) from exc
            raise WalletError(f"Connection failed: {exc}", details=exc) from exc
        except Exception as exc:
            raise WalletError(f"Connection failed: {exc}", details=exc) from exc

        self._remove_listeners()
        self._provider = provider
        self._setup_listeners(provider)

        address = str(addresses[0])
        self._state = WalletState(address=address, chain_id=chain_id)
        logger.info("Wallet %s connected on chain %s", address, chain_id)
        self._events.emit(WALLET_CONNECTED, self._state)
        return ConnectedWallet(address=address, chain_id=chain_id)

    def disconnect(self) -> None:
        self._remove_listeners()
        self._provider = None
        self._state = WalletState()
        self._events.emit(WALLET_DISCONNECTED, None)

    def get_address(self) -> Optional[str]:
        return self._state.address

    def get_chain_id(self) -> Optional[int]:
        return self._state.chain_id

    def is_connected(self) -> bool:
        return self._state.is_connected

    def _call(self, action: str, method: str, params: Sequence[Any]) -> Any:
        if self._provider is None or self._state.address is None:
            raise WalletError("Wallet not connected")
        try:
            return self._provider.request(method, list(params))
        except ProviderRpcError as exc:
            if exc.code == USER_REJECTED_CODE:
                raise WalletError("User rejected signing", details=exc) from exc
            raise WalletError(f"{action} failed: {exc}", details=exc) from exc
        except Exception as exc:
            raise WalletError(f"{action} failed: {exc}", details=exc) from exc

    def sign_message(self, message: str) -> str:
        signature = self._call(
            "Sign message",
            "personal_sign",
            [to_hex(text=message), self._state.address],
        )
        return str(signature)

    def sign_typed_data(self, typed_data: Mapping[str, Any]) -> str:
        payload = json.dumps(_stringify_ints(_with_domain_type(typed_data)))
        signature = self._call(
            "Sign typed data",
            "eth_signTypedData_v4",
            [self._state.address, payload],
        )
        return str(signature)

    def switch_chain(self, chain_id: int) -> None:
        if self._provider is None:
            raise WalletError("Provider not available")
        try:
            self._provider.request("wallet_switchEthereumChain", [{"chainId": hex(chain_id)}])
        except Exception as exc:
            raise WalletError(f"Switch chain failed: {exc}", details=exc) from exc

    def on_state_change(self, callback: Callable[[WalletState], None]) -> Callable[[], None]:
        def _notify(_payload: Any) -> None:
            callback(self._state)

        unsubscribers = [
            self._events.on(event, _notify)
            for event in (
                WALLET_CONNECTED,
                WALLET_DISCONNECTED,
                WALLET_ACCOUNTS_CHANGED,
                WALLET_CHAIN_CHANGED,
            )
        ]

        def _unsubscribe() -> None:
            for unsubscribe in unsubscribers:
                unsubscribe()

        return _unsubscribe

    def _setup_listeners(self, provider: Provider) -> None:
        on = getattr(provider, "on", None)
        if on is None:
            return

        def _accounts_changed(accounts: Sequence[str]) -> None:
            if not accounts:
                self.disconnect()
                return
            self._state = WalletState(address=str(accounts[0]), chain_id=self._state.chain_id)
            self._events.emit(WALLET_ACCOUNTS_CHANGED, list(accounts))

        def _chain_changed(chain_id: Any) -> None:
            parsed = _parse_chain_id(chain_id)
            self._state = WalletState(address=self._state.address, chain_id=parsed)
            self._events.emit(WALLET_CHAIN_CHANGED, parsed)

        def _disconnected(*_args: Any) -> None:
            self.disconnect()

        for event, handler in (
            ("accountsChanged", _accounts_changed),
            ("chainChanged", _chain_changed),
            ("disconnect", _disconnected),
        ):
            on(event, handler)
            self._listeners.append((event, handler))

    def _remove_listeners(self) -> None:
        listeners, self._listeners = self._listeners, []
        remove = getattr(self._provider, "remove_listener", None)
        if remove is None:
            return
        for event, handler in listeners:
            remove(event, handler)


def _coerce_field(type_: str, value: Any) -> Any:
    if type_.startswith(("uint", "int")) and isinstance(value, str):
        return int(value, 0)
    if type_.startswith("bytes") and type_ != "bytes" and isinstance(value, str):
        return HexBytes(value)
    return value


def _coerce_struct(fields: Sequence[Mapping[str, str]], values: Mapping[str, Any]) -> Dict[str, Any]:
    coerced = dict(values)
    for entry in fields:
        name = entry["name"]
        if name in coerced:
            coerced[name] = _coerce_field(entry["type"], coerced[name])
    return coerced


class LocalAccountProvider:
    """
    Provider backed by a local private key.

    Answers the JSON-RPC methods :class:`WalletModule` uses, which makes it a
    drop-in wallet for scripts, the CLI and tests.
    """

    def __init__(self, private_key: str, chain_id: int = 1) -> None:
        self._account = Account.from_key(private_key)
        self.chain_id = chain_id
        self._handlers: Dict[str, List[Callable[..., None]]] = {}

    @property
    def address(self) -> str:
        return self._account.address

    def on(self, event: str, handler: Callable[..., None]) -> None:
        self._handlers.setdefault(event, []).append(handler)

    def remove_listener(self, event: str, handler: Callable[..., None]) -> None:
        handlers = self._handlers.get(event, [])
        if handler in handlers:
            handlers.remove(handler)

    def emit(self, event: str, *args: Any) -> None:
        for handler in list(self._handlers.get(event, [])):
            handler(*args)

    def _check_address(self, address: str) -> None:
        if str(address).lower() != self._account.address.lower():
            raise ProviderRpcError(4100, "Address mismatch")

    def request(self, method: str, params: Optional[Sequence[Any]] = None) -> Any:
        params = list(params or [])
        if method in ("eth_requestAccounts", "eth_accounts"):
            return [self._account.address]
        if method == "eth_chainId":
            return hex(self.chain_id)
        if method == "personal_sign":
            message, address = params[0], params[1]
            self._check_address(address)
            if isinstance(message, str) and message.startswith("0x"):
                signable = encode_defunct(primitive=HexBytes(message))
            else:
                signable = encode_defunct(text=str(message))
            return to_hex(self._account.sign_message(signable).signature)
        if method == "eth_signTypedData_v4":
            address, data = params[0], params[1]
            self._check_address(address)
            typed_data = json.loads(data) if isinstance(data, str) else dict(data)
            return to_hex(self._sign_typed_data(typed_data))
        if method == "wallet_switchEthereumChain":
            self.chain_id = _parse_chain_id(params[0]["chainId"])
            self.emit("chainChanged", hex(self.chain_id))
            return None
        raise ProviderRpcError(4200, f"Method {method} not supported")

    def _sign_typed_data(self, typed_data: Mapping[str, Any]) -> bytes:
        full = _with_domain_type(typed_data)
        types = full["types"]
        full["domain"] = _coerce_struct(types["EIP712Domain"], full["domain"])
        full["message"] = _coerce_struct(types[full["primaryType"]], full["message"])
        signable = encode_typed_data(full_message=full)
        return self._account.sign_message(signable).signature
