"""
zkTLS Snapshot - Remote Metadata Client

HTTP client for the service that indexes published snapshot commitments.
Only PublicRecord payloads are ever sent: commitment, scheme, validity window,
status and the optional proof hash. Attributes and randomness never leave
the device.

Every failure surfaces as PublishFailure. Callers treat it as non-fatal: the
snapshot stays valid locally and publishing is retried later with the
already-computed commitment.
"""

import contextlib
import logging
from typing import Any

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from config import metadata_url
from errors import PublishFailure
from models import PublicRecord

logger = logging.getLogger(__name__)

API_PREFIX = "/api/v1/tls-snapshots"
DEFAULT_TIMEOUT = 15
CONNECT_TIMEOUT = 5

# Transport-level retry, kept short: a failed publish is queued, not blocking
MAX_RETRIES = 2
RETRY_BACKOFF_FACTOR = 0.5


class MetadataClient:
    """
    Client for the tls-snapshots metadata API.

    Args:
        base_url: Service base URL (default: ZKTLS_METADATA_URL)
        session: Optional requests session (injected in tests)
        timeout: Read timeout in seconds
    """

    def __init__(self, base_url: str | None = None, session: requests.Session | None = None,
                 timeout: float = DEFAULT_TIMEOUT):
        self.base_url = (base_url or metadata_url()).rstrip("/")
        self.timeout = timeout
        self.session = session or self._build_session()

    @staticmethod
    def _build_session() -> requests.Session:
        session = requests.Session()
        retry_strategy = Retry(
            total=MAX_RETRIES,
            backoff_factor=RETRY_BACKOFF_FACTOR,
            status_forcelist=[429, 500, 502, 503, 504],
            allowed_methods=["GET", "POST"],
        )
        adapter = HTTPAdapter(max_retries=retry_strategy)
        session.mount("http://", adapter)
        session.mount("https://", adapter)
        session.headers.update({
            "Content-Type": "application/json",
            "Accept": "application/json",
        })
        return session

    def _request(
        self,
        method: str,
        path: str,
        signature: str | None = None,
        body: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        headers = {}
        if signature:
            headers["Authorization"] = f"Bearer {signature}"

        url = f"{self.base_url}{path}"
        try:
            response = self.session.request(
                method=method,
                url=url,
                json=body,
                params=params,
                headers=headers,
                timeout=(CONNECT_TIMEOUT, self.timeout),
            )
        except requests.exceptions.Timeout as e:
            raise PublishFailure("Metadata service timed out", cause=e) from e
        except requests.exceptions.RequestException as e:
            raise PublishFailure(f"Network error: {e}", cause=e) from e

        if not response.ok:
            message = response.text[:500] or response.reason
            with contextlib.suppress(ValueError):
                data = response.json()
                if isinstance(data, dict):
                    message = data.get("message") or data.get("error") or message
            raise PublishFailure(
                f"HTTP {response.status_code}: {message}",
                status_code=response.status_code,
                details={"path": path},
            )

        try:
            data = response.json()
        except ValueError as e:
            raise PublishFailure("Metadata service returned invalid JSON",
                                 status_code=response.status_code, cause=e) from e
        if isinstance(data, dict) and data.get("success") is False:
            raise PublishFailure(data.get("error") or "Request rejected",
                                 status_code=response.status_code)
        return data if isinstance(data, dict) else {"data": data}

    def publish(self, record: PublicRecord, signature: str | None = None) -> dict[str, str]:
        """
        Publish a public record.

        Returns:
            ``{"id": remote_id}``

        Raises:
            PublishFailure: On any transport or HTTP failure
        """
        logger.info(f"Publishing snapshot {record.snapshot_id} for provider {record.provider_id}")
        data = self._request("POST", API_PREFIX, signature=signature, body=record.to_payload())
        remote_id = data.get("snapshotId") or data.get("id")
        if not remote_id:
            raise PublishFailure("Metadata service response has no snapshot id")
        return {"id": str(remote_id)}

    def revoke(self, snapshot_id: str, owner: str, reason: str | None = None,
               signature: str | None = None) -> None:
        self._request(
            "POST",
            f"{API_PREFIX}/{snapshot_id}/revoke",
            signature=signature,
            body={"userAddress": owner, "reason": reason or "user_revoked"},
        )

    def list(self, owner: str, signature: str | None = None) -> list[dict[str, Any]]:
        data = self._request("GET", API_PREFIX, signature=signature, params={"userAddress": owner})
        return list(data.get("snapshots") or [])
