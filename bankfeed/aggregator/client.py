"""Bank aggregator (Basiq) HTTP client.

Server-side access: an API key is exchanged for a short-lived bearer
token (POST /token), cached and refreshed 60 seconds before expiry.
Every request carries the bearer token and the basiq-version header.

No retries here: callers decide what a failure means for the sync.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any

import httpx

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://au-api.basiq.io"
DEFAULT_API_VERSION = "3.0"
TOKEN_EXPIRY_MARGIN_SECONDS = 60


class AggregatorError(Exception):
    """Upstream failure. status_code is the HTTP status, 408 for timeouts, None for network errors."""

    def __init__(self, message: str, status_code: int | None = None):
        self.status_code = status_code
        super().__init__(message)


@dataclass
class AggregatorTransaction:
    id: str
    description: str
    amount: float
    direction: str  # "credit" or "debit"
    post_date: str  # YYYY-MM-DD

    @property
    def signed_amount(self) -> float:
        """Positive for credits, negative for debits."""
        amount = abs(self.amount)
        return amount if self.direction == "credit" else -amount


class AggregatorClient:
    """Thread-safe client for the aggregator's server API."""

    def __init__(
        self,
        base_url: str = DEFAULT_BASE_URL,
        api_key: str | None = None,
        api_version: str = DEFAULT_API_VERSION,
        timeout: float = 30.0,
        http_client: httpx.Client | None = None,
        clock=None,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.api_version = api_version
        self._http = http_client or httpx.Client(timeout=timeout)
        self._owns_http = http_client is None
        self._clock = clock or (lambda: datetime.now(timezone.utc))

        self._token_lock = threading.Lock()
        self._access_token: str | None = None
        self._token_expiry: datetime | None = None

    # ── Lifecycle ───────────────────────────────────────────

    def close(self) -> None:
        if self._owns_http and not self._http.is_closed:
            self._http.close()

    def __enter__(self) -> AggregatorClient:
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    # ── Auth ────────────────────────────────────────────────

    def get_access_token(self) -> str:
        """Return a valid bearer token, fetching a new one when the cached one is stale.

        Held under a lock so concurrent callers share one refresh.
        """
        with self._token_lock:
            now = self._clock()
            if (
                self._access_token
                and self._token_expiry is not None
                and self._token_expiry > now
            ):
                return self._access_token

            if not self.api_key:
                raise AggregatorError("BASIQ_API_KEY not configured")

            data = self._send(
                "POST", "/token",
                headers={
                    "Authorization": f"Basic {self.api_key}",
                    "Content-Type": "application/x-www-form-urlencoded",
                    "basiq-version": self.api_version,
                },
                content="scope=SERVER_ACCESS",
            )
            token = data.get("access_token")
            if not token:
                raise AggregatorError("Token response missing access_token")
            expires_in = int(data.get("expires_in", 0))

            self._access_token = token
            self._token_expiry = now + timedelta(
                seconds=expires_in - TOKEN_EXPIRY_MARGIN_SECONDS,
            )
            logger.debug("Fetched aggregator token, valid for %ds", expires_in)
            return token

    # ── Transport ───────────────────────────────────────────

    def _send(self, method: str, path: str, **kwargs) -> dict[str, Any]:
        url = f"{self.base_url}{path}"
        try:
            response = self._http.request(method, url, **kwargs)
        except httpx.TimeoutException as e:
            raise AggregatorError(f"Request to {path} timed out", 408) from e
        except httpx.HTTPError as e:
            raise AggregatorError(f"Request to {path} failed: {e}") from e

        if not response.is_success:
            raise AggregatorError(
                f"Aggregator API error: {response.status_code} {response.text[:200]}",
                response.status_code,
            )
        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError as e:
            raise AggregatorError(
                f"Invalid JSON from {path}", response.status_code,
            ) from e

    def _request(self, method: str, path: str, **kwargs) -> dict[str, Any]:
        token = self.get_access_token()
        headers = {
            "Authorization": f"Bearer {token}",
            "Content-Type": "application/json",
            "basiq-version": self.api_version,
        }
        return self._send(method, path, headers=headers, **kwargs)

    # ── Endpoints ───────────────────────────────────────────

    def refresh_connection(self, connection_id: str) -> dict[str, Any]:
        """Ask the aggregator to pull fresh data from the bank."""
        return self._request("POST", f"/connections/{connection_id}/refresh")

    def get_transactions(
        self,
        user_id: str,
        account_id: str,
        from_date: str | None = None,
    ) -> list[AggregatorTransaction]:
        params = {"filter[account.id]": account_id}
        if from_date:
            params["filter[transaction.postDate][gte]"] = from_date

        data = self._request("GET", f"/users/{user_id}/transactions", params=params)
        txns = []
        for item in data.get("data", []):
            txns.append(AggregatorTransaction(
                id=item["id"],
                description=item.get("description", ""),
                amount=float(item["amount"]),
                direction=item.get("direction", "debit"),
                post_date=(item.get("postDate") or "")[:10],
            ))
        return txns

    def create_auth_link(self, user_id: str) -> str:
        """Create a consent link the user follows to (re)connect their bank."""
        data = self._request("POST", f"/users/{user_id}/auth_link")
        try:
            return data["links"]["public"]
        except (KeyError, TypeError) as e:
            raise AggregatorError("Auth link response missing links.public") from e
