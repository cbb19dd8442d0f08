"""HTTP client for the sync endpoints, plus credential loading.

Pure HTTP and credential logic; no database coupling. Transient failures
(network errors, timeouts, 408, 429 and 5xx) are retried with exponential
backoff. A 401 triggers one forced token refresh when a refresher is
configured.
"""

import json
import logging
import os
import time
from typing import Any, Callable, Dict, List, Optional

import httpx

from klettrack.contract import PROTOCOL_VERSION
from klettrack.core.validation import validate_backend_url
from klettrack.triggers import backoff_delay
from klettrack.types import Mutation, PullPage, PushResult
from klettrack.utils import get_klettrack_home

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 20.0
MAX_RETRY_ATTEMPTS = 4
MAX_RETRY_DELAY = 8.0
RETRYABLE_STATUS_CODES = frozenset({408, 429})

TokenProvider = Callable[[], Optional[str]]


# === Errors ===


class SyncAPIError(Exception):
    """Base class for sync transport and auth failures."""

    category = "unknown"

    def __init__(self, message: str, status_code: Optional[int] = None, code: Optional[str] = None):
        super().__init__(message)
        self.status_code = status_code
        self.code = code


class InsecureEndpointError(SyncAPIError):
    category = "insecure_endpoint"


class UnauthorizedError(SyncAPIError):
    category = "unauthorized"


class ForbiddenError(SyncAPIError):
    category = "forbidden"


class SyncHTTPError(SyncAPIError):
    category = "http"


class InvalidResponseError(SyncAPIError):
    category = "invalid_response"


class SyncNetworkError(SyncAPIError):
    category = "network"


def _is_retryable_status(status_code: int) -> bool:
    return status_code in RETRYABLE_STATUS_CODES or 500 <= status_code <= 599


def _error_code(response: httpx.Response) -> Optional[str]:
    try:
        body = response.json()
    except ValueError:
        return None
    if isinstance(body, dict) and isinstance(body.get("error"), str):
        return body["error"]
    return None


# === Client ===


class SyncAPIClient:
    """Talks to ``POST {base}/sync/push`` and ``POST {base}/sync/pull``.

    Args:
        base_url: Backend root. Must be https (http only for localhost).
        token_provider: Returns the current bearer token.
        refresh_token: Optional; forces a token refresh and returns the new token.
        http_client: Optional preconfigured ``httpx.Client`` (tests pass one
            with a ``MockTransport``).
        sleep: Called with the delay between retries.
    """

    def __init__(
        self,
        base_url: str,
        token_provider: TokenProvider,
        *,
        refresh_token: Optional[TokenProvider] = None,
        http_client: Optional[httpx.Client] = None,
        sync_path: str = "/sync",
        timeout: float = DEFAULT_TIMEOUT,
        max_attempts: int = MAX_RETRY_ATTEMPTS,
        max_retry_delay: float = MAX_RETRY_DELAY,
        sleep: Callable[[float], None] = time.sleep,
        allow_localhost_http: bool = True,
    ):
        validated = validate_backend_url(base_url, allow_localhost_http=allow_localhost_http)
        if validated is None:
            raise InsecureEndpointError(f"Refusing to send credentials to {base_url!r}")
        self.base_url = validated
        self.sync_path = "/" + sync_path.strip("/")
        self._token_provider = token_provider
        self._refresh_token = refresh_token
        self._owns_client = http_client is None
        self._http = http_client or httpx.Client(timeout=timeout)
        self._timeout = timeout
        self._max_attempts = max(1, max_attempts)
        self._max_retry_delay = max(1.0, max_retry_delay)
        self._sleep = sleep

    def close(self) -> None:
        if self._owns_client:
            self._http.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()

    # === Endpoints ===

    def push(
        self, device_id: str, base_cursor: Optional[str], mutations: List[Mutation]
    ) -> PushResult:
        body = {
            "deviceId": device_id,
            "baseCursor": base_cursor,
            "mutations": [m.to_wire() for m in mutations],
        }
        data = self._post("/push", body)
        try:
            return PushResult.from_wire(data)
        except (KeyError, TypeError, ValueError) as e:
            raise InvalidResponseError(f"Malformed push response: {e}") from e

    def pull(self, cursor: Optional[str], limit: Optional[int] = None) -> PullPage:
        body: Dict[str, Any] = {"cursor": cursor}
        if limit is not None:
            body["limit"] = limit
        data = self._post("/pull", body)
        try:
            return PullPage.from_wire(data)
        except (KeyError, TypeError, ValueError) as e:
            raise InvalidResponseError(f"Malformed pull response: {e}") from e

    # === Transport ===

    def _headers(self, token: str) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {token}",
            "Content-Type": "application/json",
            "X-Klettrack-Protocol": str(PROTOCOL_VERSION),
        }

    def _post(self, path: str, body: Dict[str, Any]) -> Dict[str, Any]:
        url = f"{self.base_url}{self.sync_path}{path}"
        token = self._token_provider()
        if not token:
            raise UnauthorizedError("Not signed in")

        refreshed = False
        attempt = 0
        while True:
            attempt += 1
            try:
                response = self._http.post(
                    url, json=body, headers=self._headers(token), timeout=self._timeout
                )
            except httpx.TimeoutException as e:
                error: SyncAPIError = SyncNetworkError(f"Request to {path} timed out: {e}")
            except httpx.TransportError as e:
                error = SyncNetworkError(f"Request to {path} failed: {e}")
            else:
                status = response.status_code
                if status == 401:
                    if self._refresh_token is not None and not refreshed:
                        refreshed = True
                        new_token = self._refresh_token()
                        if new_token:
                            logger.info("Sync request unauthorized; retrying with refreshed token")
                            token = new_token
                            attempt -= 1
                            continue
                    raise UnauthorizedError(
                        "Session expired", status_code=401, code=_error_code(response)
                    )
                if status == 403:
                    raise ForbiddenError(
                        "Request forbidden", status_code=403, code=_error_code(response)
                    )
                if 200 <= status < 300:
                    try:
                        data = response.json()
                    except ValueError as e:
                        raise InvalidResponseError(f"Non-JSON response from {path}") from e
                    if not isinstance(data, dict):
                        raise InvalidResponseError(f"Unexpected response shape from {path}")
                    return data

                error = SyncHTTPError(
                    f"{path} returned status {status}",
                    status_code=status,
                    code=_error_code(response),
                )
                if not _is_retryable_status(status):
                    raise error

            if attempt >= self._max_attempts:
                raise error
            delay = backoff_delay(attempt, self._max_retry_delay)
            logger.warning(f"{error} (attempt {attempt}/{self._max_attempts}); retrying in {delay:.2f}s")
            self._sleep(delay)


# === Credentials ===


def load_credentials() -> Optional[Dict[str, str]]:
    """Load sync credentials.

    Priority:
    1. Environment variables (KLETTRACK_BACKEND_URL, KLETTRACK_AUTH_TOKEN,
       KLETTRACK_USER_ID)
    2. ``$KLETTRACK_HOME/credentials.json``

    Returns:
        Dict with ``backend_url``, ``auth_token`` and (if known) ``user_id``,
        or None if the URL or token is missing or the URL is unsafe.
    """
    backend_url = None
    auth_token = None
    user_id = None

    credentials_path = get_klettrack_home() / "credentials.json"
    if credentials_path.exists():
        try:
            with open(credentials_path) as f:
                creds = json.load(f)
            backend_url = creds.get("backend_url")
            auth_token = creds.get("auth_token") or creds.get("token")
            user_id = creds.get("user_id")
        except (json.JSONDecodeError, OSError) as e:
            logger.warning(f"Ignoring unreadable credentials file: {e}")

    backend_url = os.environ.get("KLETTRACK_BACKEND_URL") or backend_url
    auth_token = os.environ.get("KLETTRACK_AUTH_TOKEN") or auth_token
    user_id = os.environ.get("KLETTRACK_USER_ID") or user_id

    if backend_url:
        backend_url = validate_backend_url(backend_url)
    if not backend_url or not auth_token:
        return None

    creds = {"backend_url": backend_url, "auth_token": auth_token}
    if user_id:
        creds["user_id"] = user_id
    return creds
