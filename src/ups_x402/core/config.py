"""
Configuration objects for the UPS x402 client.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional

from eth_account import Account

from .environment import build_environment
from .errors import ConfigError

__all__ = [
    "ClientConfig",
    "DEFAULT_API_URL",
    "DEFAULT_NETWORK",
    "load_client_config",
]

DEFAULT_API_URL = "http://localhost:8080"
DEFAULT_NETWORK = "eip155:737998412"

_PARAMETER_TO_ENV_KEY = {
    "base_url": "UPS_API_URL",
    "network": "UPS_NETWORK",
    "chain_id": "UPS_CHAIN_ID",
    "timeout": "UPS_TIMEOUT_SECONDS",
    "retry_attempts": "UPS_RETRY_ATTEMPTS",
    "refresh_interval": "UPS_REFRESH_INTERVAL_SECONDS",
    "refresh_buffer": "UPS_REFRESH_BUFFER_SECONDS",
    "private_key": "UPS_PRIVATE_KEY",
}


def _stringify(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _chain_id_from_network(network: str) -> Optional[int]:
    if not network.startswith("eip155:"):
        return None
    try:
        return int(network.split(":", 1)[1])
    except ValueError:
        return None


def _parse_int(values: Mapping[str, str], key: str, default: int, *, minimum: int = 0) -> int:
    raw = values.get(key)
    if raw is None or raw == "":
        return default
    try:
        parsed = int(raw)
    except ValueError as exc:
        raise ConfigError(f"{key} must be an integer, got '{raw}'") from exc
    if parsed < minimum:
        raise ConfigError(f"{key} must be >= {minimum}, got {parsed}")
    return parsed


def _parse_seconds(values: Mapping[str, str], key: str, default: float) -> float:
    raw = values.get(key)
    if raw is None or raw == "":
        return default
    try:
        parsed = float(raw)
    except ValueError as exc:
        raise ConfigError(f"{key} must be a number of seconds, got '{raw}'") from exc
    if parsed <= 0:
        raise ConfigError(f"{key} must be greater than zero")
    return parsed


def _normalize_private_key(raw_key: str) -> str:
    key = raw_key.strip()
    if not key:
        raise ConfigError("UPS_PRIVATE_KEY must not be empty")
    if not key.startswith("0x"):
        key = "0x" + key
    if len(key) != 66:
        raise ConfigError("UPS_PRIVATE_KEY must be 32 bytes (64 hex chars)")
    try:
        Account.from_key(key)
    except (ValueError, TypeError) as exc:
        raise ConfigError("UPS_PRIVATE_KEY is not a valid secp256k1 key") from exc
    return key


@dataclass(frozen=True)
class ClientConfig:
    """
    Settings for :class:`~ups_x402.api.UPSClient`.

    Durations are in seconds. ``retry_attempts`` counts the attempts made
    *after* the first one, so the default of 3 allows four requests in total.
    """

    base_url: str = DEFAULT_API_URL
    network: str = DEFAULT_NETWORK
    chain_id: Optional[int] = None
    timeout: float = 30.0
    retry_attempts: int = 3
    refresh_interval: float = 60.0
    refresh_buffer: float = 300.0
    private_key: Optional[str] = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "base_url", self.base_url.rstrip("/"))
        if self.chain_id is None:
            object.__setattr__(self, "chain_id", _chain_id_from_network(self.network))

    @classmethod
    def from_mapping(cls, values: Mapping[str, str]) -> "ClientConfig":
        base_url = values.get("UPS_API_URL") or DEFAULT_API_URL
        network = values.get("UPS_NETWORK") or DEFAULT_NETWORK

        chain_id: Optional[int] = None
        if values.get("UPS_CHAIN_ID"):
            chain_id = _parse_int(values, "UPS_CHAIN_ID", 0, minimum=1)

        private_key = values.get("UPS_PRIVATE_KEY")
        if private_key is not None:
            private_key = _normalize_private_key(private_key)

        return cls(
            base_url=base_url,
            network=network,
            chain_id=chain_id,
            timeout=_parse_seconds(values, "UPS_TIMEOUT_SECONDS", 30.0),
            retry_attempts=_parse_int(values, "UPS_RETRY_ATTEMPTS", 3),
            refresh_interval=_parse_seconds(values, "UPS_REFRESH_INTERVAL_SECONDS", 60.0),
            refresh_buffer=_parse_seconds(values, "UPS_REFRESH_BUFFER_SECONDS", 300.0),
            private_key=private_key,
        )

    @classmethod
    def from_env(
        cls,
        *,
        env_file: Optional[str] = ".env",
        overrides: Optional[Mapping[str, str]] = None,
        base: Optional[Mapping[str, str]] = None,
        **parameters: Any,
    ) -> "ClientConfig":
        """
        Build a config from the environment, a ``.env`` file and keyword overrides.

        Keyword parameters use the dataclass field names (``base_url``,
        ``network``, ...) and win over every other source.
        """
        merged: Dict[str, str] = dict(overrides or {})
        for name, value in parameters.items():
            if value is None:
                continue
            try:
                env_key = _PARAMETER_TO_ENV_KEY[name]
            except KeyError as exc:
                raise TypeError(f"Unknown client parameter '{name}'") from exc
            merged[env_key] = _stringify(value)

        environment = build_environment(env_file=env_file, base=base, overrides=merged)
        return cls.from_mapping(environment.variables)


def load_client_config(
    *,
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
) -> ClientConfig:
    """
    Convenience wrapper that mirrors :meth:`ClientConfig.from_env`.
    """
    return ClientConfig.from_env(
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
