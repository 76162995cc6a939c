"""Outbound channels that hand request payloads to ABIS."""

import json
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional

import requests

from ..logger import get_logger
from ..retry import exponential_backoff, should_retry_http_status

logger = get_logger()


class AbisDispatcher:
    """
    Fire-and-forget channel to ABIS.

    ``dispatch`` returns once the payload is accepted by the channel;
    delivery confirmation arrives later as a separate event. Any exception
    means the channel rejected the payload.
    """

    def dispatch(self, payload: Dict[str, Any]) -> None:
        raise NotImplementedError


class InMemoryDispatcher(AbisDispatcher):
    """Keeps dispatched payloads in memory; used when embedding and in tests."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.sent: List[Dict[str, Any]] = []
        self.reject_with: Optional[Exception] = None

    def dispatch(self, payload: Dict[str, Any]) -> None:
        if self.reject_with is not None:
            raise self.reject_with
        with self._lock:
            self.sent.append(dict(payload))


class OutboxFileDispatcher(AbisDispatcher):
    """Appends one JSON line per payload to an outbox file read by the queue bridge."""

    def __init__(self, path: Path) -> None:
        self.path = path
        self._lock = threading.Lock()

    def dispatch(self, payload: Dict[str, Any]) -> None:
        line = json.dumps(payload, ensure_ascii=False, sort_keys=True)
        with self._lock:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with self.path.open("a", encoding="utf-8") as f:
                f.write(line + "\n")


class RetryableHttpStatus(Exception):
    """ABIS answered with a status worth retrying (5xx, 429, 408)."""

    def __init__(self, status_code: int):
        super().__init__(f"ABIS endpoint returned {status_code}")
        self.status_code = status_code


@exponential_backoff(
    max_retries=2,
    base_delay=0.5,
    exceptions=(requests.exceptions.Timeout, requests.exceptions.ConnectionError, RetryableHttpStatus),
)
def _post_with_retry(url: str, payload: Dict[str, Any], timeout: float):
    """POST payload with automatic retry on transient errors."""
    resp = requests.post(url, json=payload, timeout=timeout)
    if should_retry_http_status(resp.status_code):
        raise RetryableHttpStatus(resp.status_code)
    return resp


class HttpAbisDispatcher(AbisDispatcher):
    """POSTs request payloads to an ABIS HTTP gateway."""

    def __init__(self, endpoint_url: str, timeout: float = 15.0) -> None:
        self.endpoint_url = endpoint_url
        self.timeout = timeout

    def dispatch(self, payload: Dict[str, Any]) -> None:
        """
        Send a payload to the gateway.

        Raises:
            ValueError: On a non-2xx answer or a request failure
        """
        try:
            resp = _post_with_retry(self.endpoint_url, payload, self.timeout)
            resp.raise_for_status()
        except requests.exceptions.HTTPError as e:
            status = e.response.status_code if e.response is not None else "HTTPError"
            logger.error("ABIS gateway rejected request", url=self.endpoint_url, status=status,
                         request_id=payload.get("requestId"))
            raise ValueError(f"ABIS gateway rejected request ({status})")
        except requests.exceptions.RequestException as e:
            logger.error("ABIS gateway request error", url=self.endpoint_url, error=str(e),
                         request_id=payload.get("requestId"))
            raise ValueError(f"ABIS gateway request error: {e}")
