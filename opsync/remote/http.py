"""HTTP client for the sync service (``/api/sync/push|pull|pending``)."""

import logging
import time
from typing import Any, Dict, List, Optional

import httpx

from opsync.errors import AuthenticationError, RemoteUnavailableError, SyncError
from opsync.types import Operation, PullBatch, PushAck

from .base import DEFAULT_PULL_LIMIT

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30.0


class HttpRemoteStore:
    """RemoteStore speaking to a remote sync service.

    Timeouts, connection failures and 5xx answers are retried with
    exponential backoff starting at ``retry_base_delay``. A 401 is never
    retried and raises AuthenticationError.

    Args:
        server_url: Base URL of the service, e.g. ``https://sync.example.com``
        access_token: Shared credential sent as ``X-Access-Token``
        client_id: This device's id, sent as ``X-Client-ID``
        client: Optional pre-built httpx.Client (tests inject a MockTransport)
    """

    def __init__(
        self,
        server_url: str,
        access_token: str,
        client_id: Optional[str] = None,
        timeout: float = DEFAULT_TIMEOUT,
        max_retries: int = 5,
        retry_base_delay: float = 1.0,
        client: Optional[httpx.Client] = None,
        sleep=time.sleep,
    ):
        self.server_url = server_url.rstrip("/")
        self.access_token = access_token
        self.client_id = client_id
        self.timeout = timeout
        self.max_retries = max_retries
        self.retry_base_delay = retry_base_delay
        self._client = client or httpx.Client(timeout=timeout)
        self._sleep = sleep

    def _headers(self) -> Dict[str, str]:
        headers = {
            "X-Access-Token": self.access_token,
            "Content-Type": "application/json",
        }
        if self.client_id:
            headers["X-Client-ID"] = self.client_id
        return headers

    def _request(self, method: str, path: str, **kwargs) -> Dict[str, Any]:
        url = f"{self.server_url}/api/sync/{path}"
        last_error: Optional[str] = None
        for attempt in range(self.max_retries):
            if attempt:
                delay = self.retry_base_delay * (2 ** (attempt - 1))
                logger.debug(f"Retrying {method} {path} in {delay:.1f}s ({last_error})")
                self._sleep(delay)
            try:
                response = self._client.request(
                    method, url, headers=self._headers(), timeout=self.timeout, **kwargs
                )
            except (httpx.TimeoutException, httpx.TransportError) as e:
                last_error = f"{type(e).__name__}: {e}"
                continue

            if response.status_code == 401:
                raise AuthenticationError("Sync server rejected the access token")
            if response.status_code == 429 or response.status_code >= 500:
                last_error = f"HTTP {response.status_code}"
                continue
            if response.status_code >= 400:
                raise SyncError(f"{method} {path} failed: HTTP {response.status_code} {response.text[:200]}")
            return response.json()

        logger.warning(f"{method} {path} failed after {self.max_retries} attempts: {last_error}")
        raise RemoteUnavailableError(f"Sync server unavailable: {last_error}")

    def push(self, ops: List[Operation], client_id: Optional[str] = None) -> PushAck:
        body = {
            "ops": [op.to_dict() for op in ops],
            "clientId": client_id or self.client_id,
        }
        data = self._request("POST", "push", json=body)
        return PushAck(cursor=int(data.get("cursor") or 0), accepted=int(data.get("count") or 0))

    def pull(
        self,
        cursor: int,
        exclude_client_id: Optional[str] = None,
        limit: int = DEFAULT_PULL_LIMIT,
    ) -> PullBatch:
        params: Dict[str, Any] = {"cursor": cursor, "limit": limit}
        if exclude_client_id:
            params["clientId"] = exclude_client_id
        data = self._request("GET", "pull", params=params)
        ops = [Operation.from_dict(item) for item in data.get("ops", [])]
        return PullBatch(ops=ops, next_cursor=int(data.get("cursor", cursor)))

    def count_pending(self, cursor: int, exclude_client_id: Optional[str] = None) -> int:
        params: Dict[str, Any] = {"cursor": cursor}
        if exclude_client_id:
            params["clientId"] = exclude_client_id
        data = self._request("GET", "pending", params=params)
        return int(data.get("count", 0))

    def health(self) -> Dict[str, Any]:
        try:
            response = self._client.get(f"{self.server_url}/health", timeout=self.timeout)
            return response.json()
        except (httpx.HTTPError, ValueError) as e:
            return {"status": "unreachable", "error": str(e)[:100]}

    def close(self):
        self._client.close()
