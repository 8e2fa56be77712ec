"""
Remote Store Client -- the two-endpoint cloud contract.

    POST {endpoint}/save            {userId, userEmail, data, timestamp}
    GET  {endpoint}/load?userId=ID  -> {success, data, timestamp, userId}

Both calls carry ``Authorization: Bearer <token>``. The client never
retries; deciding when to try again belongs to the engine.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Optional

import requests
from pydantic import ValidationError

from .errors import AuthExpiredError, RemoteStoreError, TransportError
from .models import LoadResponse, SaveResponse, Snapshot, utcnow

logger = logging.getLogger("checksync.remote")

AUTH_EXPIRED_MESSAGE = "Authentication expired. Please sign out and sign in again."
DEFAULT_TIMEOUT = 15.0
AUTH_STATUSES = (401, 403)


class RemoteStoreClient:
    """HTTP client for the cloud save/load endpoints.

    Args:
        session: requests session to issue calls on. A fresh one is
            created when omitted.
        timeout: Per-request timeout in seconds.
    """

    def __init__(
        self,
        session: Optional[requests.Session] = None,
        timeout: float = DEFAULT_TIMEOUT,
    ) -> None:
        self.session = session or requests.Session()
        self.timeout = timeout

    def _request(
        self,
        method: str,
        url: str,
        access_token: str,
        **kwargs: Any,
    ) -> dict[str, Any]:
        """Issue an authenticated request and return the decoded JSON body.

        Raises:
            AuthExpiredError: On 401/403.
            RemoteStoreError: On any other non-2xx status.
            TransportError: If the endpoint is unreachable or the body
                is not a JSON object.
        """
        headers = {"Authorization": f"Bearer {access_token}"}
        if "json" in kwargs:
            headers["Content-Type"] = "application/json"

        try:
            resp = self.session.request(
                method, url, headers=headers, timeout=self.timeout, **kwargs
            )
        except requests.RequestException as exc:
            logger.warning("%s %s failed: %s", method, url, exc)
            raise TransportError(f"Network error: {exc}") from exc

        if resp.status_code in AUTH_STATUSES:
            logger.warning("%s %s rejected credentials (%d)", method, url, resp.status_code)
            raise AuthExpiredError(AUTH_EXPIRED_MESSAGE, status_code=resp.status_code)
        if not 200 <= resp.status_code < 300:
            raise RemoteStoreError(
                f"HTTP error! status: {resp.status_code}",
                status_code=resp.status_code,
            )

        try:
            body = resp.json()
        except ValueError as exc:
            raise TransportError(f"Invalid JSON from {url}") from exc
        if not isinstance(body, dict):
            raise TransportError(f"Unexpected response type from {url}: {type(body).__name__}")
        return body

    @staticmethod
    def _check_preconditions(endpoint: str, access_token: Optional[str]) -> str:
        if not endpoint:
            raise ValueError("Cloud endpoint is not configured")
        if not access_token:
            raise ValueError("No access token available. Please sign in again.")
        return endpoint.rstrip("/")

    def save(
        self,
        endpoint: str,
        user_id: str,
        user_email: str,
        data: Snapshot,
        access_token: str,
        timestamp: Optional[datetime] = None,
    ) -> SaveResponse:
        """Write ``data`` for ``user_id``, replacing whatever the remote holds.

        Returns:
            The parsed save response.
        """
        base = self._check_preconditions(endpoint, access_token)
        payload = {
            "userId": user_id,
            "userEmail": user_email,
            "data": data,
            "timestamp": (timestamp or utcnow()).isoformat(),
        }
        body = self._request("POST", f"{base}/save", access_token, json=payload)
        try:
            result = SaveResponse.model_validate(body)
        except ValidationError as exc:
            raise TransportError(f"Malformed save response: {exc}") from exc

        logger.info("Saved %d item(s) to %s for %s", len(data), base, user_id)
        return result

    def load(self, endpoint: str, user_id: str, access_token: str) -> Optional[Snapshot]:
        """Fetch the remote snapshot for ``user_id``.

        Returns:
            The snapshot, or None if the user never saved anything.
        """
        base = self._check_preconditions(endpoint, access_token)
        body = self._request(
            "GET", f"{base}/load", access_token, params={"userId": user_id}
        )
        try:
            result = LoadResponse.model_validate(body)
        except ValidationError as exc:
            raise TransportError(f"Malformed load response: {exc}") from exc

        if result.data is None:
            logger.info("No remote data for %s at %s", user_id, base)
        return result.data

    def check_endpoint(self, endpoint: str) -> bool:
        """Check that ``endpoint`` speaks the load contract.

        A dummy bearer is sent, so 401/403 count as reachable.
        """
        base = endpoint.strip().rstrip("/")
        if not base:
            return False
        try:
            resp = self.session.get(
                f"{base}/load",
                params={"userId": "test"},
                headers={"Authorization": "Bearer test_token"},
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            logger.info("Endpoint check failed for %s: %s", base, exc)
            return False
        return resp.ok or resp.status_code in AUTH_STATUSES
