"""
HTTP transport for the UPS backend and the x402 facilitator.

Every request goes through :meth:`HttpClient.request`, which attaches the
bearer token, enforces a per-attempt timeout and retries transient failures
with exponential backoff.
"""

from __future__ import annotations

import json
import logging
import time
from typing import Any, Callable, Dict, Mapping, Optional

import requests

from .errors import AuthError, NetworkError, RateLimitError, UPSError

__all__ = ["HttpClient", "NO_CONTENT"]

logger = logging.getLogger(__name__)


class _NoContent:
    """Marker returned for responses without a body (HTTP 204)."""

    _instance: Optional["_NoContent"] = None

    def __new__(cls) -> "_NoContent":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self) -> bool:
        return False

    def __repr__(self) -> str:
        return "NO_CONTENT"


NO_CONTENT = _NoContent()


def _retry_after_seconds(response: requests.Response) -> Optional[float]:
    raw = response.headers.get("Retry-After")
    if raw is None:
        return None
    try:
        return max(float(raw.strip()), 0.0)
    except ValueError:
        return None


def _error_details(response: requests.Response) -> Any:
    text = response.text
    try:
        return json.loads(text)
    except ValueError:
        return text


class HttpClient:
    """
    JSON-over-HTTP client with bearer auth and bounded retries.

    ``retry_attempts`` is the number of attempts made after the first one.
    ``get_token`` is called on every attempt so a token rotated by a refresh
    is picked up by the next request.
    """

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = 30.0,
        retry_attempts: int = 3,
        get_token: Optional[Callable[[], Optional[str]]] = None,
        session: Optional[requests.Session] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.retry_attempts = retry_attempts
        self.get_token = get_token
        self.session = session or requests.Session()
        self._sleep = sleep

    def _url(self, path: str) -> str:
        return f"{self.base_url}{path if path.startswith('/') else '/' + path}"

    def _headers(self, skip_auth: bool) -> Dict[str, str]:
        headers = {"Content-Type": "application/json", "Accept": "application/json"}
        if not skip_auth and self.get_token is not None:
            token = self.get_token()
            if token:
                headers["Authorization"] = f"Bearer {token}"
        return headers

    def request(
        self,
        path: str,
        *,
        method: str = "GET",
        body: Any = None,
        skip_auth: bool = False,
        params: Optional[Mapping[str, Any]] = None,
    ) -> Any:
        """
        Perform a request and return the decoded JSON body.

        Returns :data:`NO_CONTENT` for 204 responses. Raises :class:`AuthError`
        on 401 without retrying, :class:`RateLimitError` when every attempt was
        answered with 429 and :class:`NetworkError` for anything else.
        """
        url = self._url(path)
        max_attempts = self.retry_attempts + 1
        last_error: Optional[UPSError] = None

        for attempt in range(max_attempts):
            is_last = attempt == max_attempts - 1
            try:
                response = self.session.request(
                    method,
                    url,
                    json=body,
                    params=params,
                    headers=self._headers(skip_auth),
                    timeout=self.timeout,
                )
            except requests.Timeout as exc:
                last_error = NetworkError("Request timed out", details=exc)
            except requests.RequestException as exc:
                last_error = NetworkError(str(exc) or "Request failed", details=exc)
            else:
                if response.status_code == 429:
                    wait = _retry_after_seconds(response)
                    if wait is None:
                        wait = float(2 ** attempt)
                    last_error = RateLimitError(
                        "Rate limited by server",
                        details=_error_details(response),
                        body=response.text,
                    )
                    if is_last:
                        break
                    logger.warning("%s %s rate limited, retrying in %ss", method, url, wait)
                    self._sleep(wait)
                    continue

                if response.status_code == 401:
                    raise AuthError("Authentication failed", details=_error_details(response))

                if not response.ok:
                    details = _error_details(response)
                    details_str = details if isinstance(details, str) else json.dumps(details)
                    last_error = NetworkError(
                        f"Request failed with status {response.status_code}: {details_str}",
                        details=details,
                        status=response.status_code,
                        body=response.text,
                    )
                elif response.status_code == 204 or not response.content:
                    return NO_CONTENT
                else:
                    try:
                        return response.json()
                    except ValueError as exc:
                        last_error = NetworkError(
                            f"Failed to parse JSON from {url}: {response.text}",
                            details=response.text,
                            status=response.status_code,
                            body=response.text,
                        )
                        last_error.__cause__ = exc

            if is_last:
                break
            wait = float(2 ** attempt)
            logger.debug(
                "%s %s failed (%s), attempt %d/%d, retrying in %ss",
                method,
                url,
                last_error,
                attempt + 1,
                max_attempts,
                wait,
            )
            self._sleep(wait)

        if last_error is None:
            last_error = NetworkError("Request failed after retries")
        raise last_error

    def get(
        self,
        path: str,
        *,
        skip_auth: bool = False,
        params: Optional[Mapping[str, Any]] = None,
    ) -> Any:
        return self.request(path, method="GET", skip_auth=skip_auth, params=params)

    def post(self, path: str, body: Any = None, *, skip_auth: bool = False) -> Any:
        return self.request(path, method="POST", body=body, skip_auth=skip_auth)
