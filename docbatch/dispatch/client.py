import hashlib
import hmac
import json
from typing import Any

import httpx

from docbatch.config.settings import Settings
from docbatch.domain.exceptions import PermanentDispatchError, TransientDispatchError

CLIENT_VERSION = "0.1.0"
SIGNATURE_HEADER = "X-Webhook-Signature"
MAX_DETAIL_LENGTH = 500


def compute_signature(payload_bytes: bytes, secret: str) -> str:
    """HMAC-SHA256 of the raw body, formatted as ``sha256=<hex-digest>``."""
    mac = hmac.new(secret.encode("utf-8"), payload_bytes, hashlib.sha256)
    return f"sha256={mac.hexdigest()}"


def verify_signature(payload_bytes: bytes, secret: str, signature: str | None) -> bool:
    if not signature:
        return False
    return hmac.compare_digest(compute_signature(payload_bytes, secret), signature)


def _detail(response: httpx.Response) -> str:
    text = response.text.strip()
    return text[:MAX_DETAIL_LENGTH] if text else "(empty body)"


class WorkerClient:
    """HTTP client for the external processing worker's batch webhook."""

    def __init__(self, settings: Settings, client: httpx.Client | None = None) -> None:
        self._endpoint = settings.worker_endpoint
        self._secret = settings.worker_secret
        self._client = client or httpx.Client(timeout=settings.dispatch_timeout_seconds)

    def post_batch(self, payload: dict[str, Any]) -> httpx.Response:
        """POST one batch payload and return the 2xx response.

        Raises:
            TransientDispatchError: on connection errors, timeouts and 5xx.
            PermanentDispatchError: on 4xx.
        """
        body = json.dumps(payload, default=str).encode("utf-8")
        headers = {
            "Content-Type": "application/json",
            "Accept": "application/json",
            "User-Agent": f"docbatch/{CLIENT_VERSION}",
        }
        if self._secret:
            headers[SIGNATURE_HEADER] = compute_signature(body, self._secret)

        try:
            response = self._client.post(self._endpoint, content=body, headers=headers)
        except httpx.TimeoutException as exc:
            raise TransientDispatchError(f"Worker request timed out: {exc}") from exc
        except httpx.TransportError as exc:
            raise TransientDispatchError(f"Could not reach worker: {exc}") from exc

        if response.status_code >= 500:
            raise TransientDispatchError(
                f"Worker responded {response.status_code} {response.reason_phrase}: "
                f"{_detail(response)}"
            )
        if response.status_code >= 400:
            raise PermanentDispatchError(
                f"Worker responded {response.status_code} {response.reason_phrase}: "
                f"{_detail(response)}"
            )
        return response

    def close(self) -> None:
        self._client.close()
