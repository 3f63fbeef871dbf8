"""
Event assembly and HTTP delivery to the ingestion destinations.

Three deployment shapes, fixed per run:

    DIRECT  + DEVICE   encode, protect locally, POST [{metric, value: {c}, source}] with bearer
    GATEWAY + GATEWAY  encode only, POST {timestamp, metric, value, source}, no bearer
    GATEWAY + DEVICE   same gateway event, but the device supplies its own bearer

The request body is built once per sample; transient failures re-send that
exact body, so a retry never re-protects a plaintext under a fresh nonce.
"""

import random
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Optional, Sequence

import requests

from mpc_ingest.exceptions import FatalDispatchError, TransientDispatchError
from mpc_ingest.logging_utils import METRICS, get_logger

logger = get_logger("mpc_ingest.dispatch")

DEFAULT_METRIC = "ecg_test::json"
DEFAULT_SOURCE = "IoT Device Simulator"

# Statuses worth another attempt; every other non-2xx is a protocol error.
_TRANSIENT_STATUSES = {408, 425, 429, 500, 502, 503, 504}


class DispatchMode(str, Enum):
    DIRECT = "direct"
    GATEWAY = "gateway"


class AuthMode(str, Enum):
    DEVICE = "device"
    GATEWAY = "gateway"


@dataclass(frozen=True)
class Location:
    lat: float
    lng: float


@dataclass(frozen=True)
class EventMetadata:
    metric: str = DEFAULT_METRIC
    source: Optional[str] = DEFAULT_SOURCE
    tags: Optional[Sequence[str]] = None
    location: Optional[Location] = None
    elevation: Optional[float] = None

    def optional_fields(self) -> Dict[str, Any]:
        extra: Dict[str, Any] = {}
        if self.tags is not None:
            extra["tags"] = list(self.tags)
        if self.location is not None:
            extra["location"] = {"lat": self.location.lat, "lng": self.location.lng}
        if self.elevation is not None:
            extra["elevation"] = self.elevation
        return extra


@dataclass(frozen=True)
class DispatchOutcome:
    status: int
    server_date: Optional[str]
    attempts: int = 1
    elapsed_s: float = 0.0


def now_ms() -> int:
    return time.time_ns() // 1_000_000


def build_event(mode: DispatchMode, payload: bytes, metadata: EventMetadata,
                timestamp_ms: Optional[int] = None):
    """Return the JSON body for one sample.

    DIRECT carries ciphertext in a single-element batch; GATEWAY carries the
    plaintext encoding with a device timestamp.
    """
    value = list(bytes(payload))
    if mode is DispatchMode.DIRECT:
        event = {"metric": metadata.metric, "value": {"c": value}, "source": metadata.source}
        event.update(metadata.optional_fields())
        return [event]
    event = {
        "timestamp": now_ms() if timestamp_ms is None else timestamp_ms,
        "metric": metadata.metric,
        "value": value,
        "source": metadata.source,
    }
    event.update(metadata.optional_fields())
    return event


def _parse_retry_after_seconds(headers) -> Optional[float]:
    """Parse Retry-After (seconds only). Returns None if unparseable."""
    ra = headers.get("Retry-After") if headers is not None else None
    if not ra:
        return None
    try:
        return max(0.0, float(str(ra).strip()))
    except ValueError:
        return None


def classify_response(response: requests.Response) -> None:
    """Raise the matching DispatchError for a non-2xx response."""
    status = response.status_code
    if 200 <= status < 300:
        return
    body = (response.text or "")[:200]
    message = f"ingest returned {status}: {body}"
    if status in _TRANSIENT_STATUSES or status >= 500:
        raise TransientDispatchError(message, status=status,
                                     retry_after_s=_parse_retry_after_seconds(response.headers))
    raise FatalDispatchError(message, status=status)


class IngestDispatcher:
    """POSTs sample events to one endpoint with optional bearer auth and bounded retry."""

    def __init__(
        self,
        endpoint: str,
        auth_mode: AuthMode,
        token_provider=None,
        *,
        session: Optional[requests.Session] = None,
        timeout_s: float = 10.0,
        max_retries: int = 2,
        backoff_initial_s: float = 0.5,
        backoff_max_s: float = 8.0,
        sleep: Callable[[float], None] = time.sleep,
    ):
        if auth_mode is AuthMode.DEVICE and token_provider is None:
            raise ValueError("device authentication requires a token provider")
        if max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        self.endpoint = endpoint
        self.auth_mode = auth_mode
        self.token_provider = token_provider
        self.session = session or requests.Session()
        self.timeout_s = timeout_s
        self.max_retries = max_retries
        self.backoff_initial_s = backoff_initial_s
        self.backoff_max_s = backoff_max_s
        self._sleep = sleep

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.auth_mode is AuthMode.DEVICE:
            headers["Authorization"] = f"Bearer {self.token_provider.token()}"
        return headers

    def _backoff(self, attempt: int, retry_after_s: Optional[float]) -> float:
        base = min(self.backoff_max_s, self.backoff_initial_s * (2 ** attempt))
        delay = min(self.backoff_max_s, base * random.uniform(0.8, 1.2))
        # If the server told us when to retry, respect it.
        if retry_after_s is not None:
            delay = max(delay, retry_after_s)
        return delay

    def send(self, body) -> DispatchOutcome:
        """POST an already-built body; retry transient failures and one rejected token."""
        started = time.perf_counter()
        attempt = 0
        reauthenticated = False
        while True:
            try:
                # Fetched per attempt so a refresh during backoff is picked up.
                headers = self._headers()
                try:
                    response = self.session.post(self.endpoint, json=body, headers=headers,
                                                 timeout=self.timeout_s)
                except (requests.ConnectionError, requests.Timeout) as exc:
                    raise TransientDispatchError(f"transport failure: {exc}")
                except requests.RequestException as exc:
                    raise FatalDispatchError(f"request failed: {exc}")
                classify_response(response)
            except FatalDispatchError as exc:
                # One fresh token per payload when the cached one was revoked early.
                if exc.status != 401 or self.auth_mode is not AuthMode.DEVICE or reauthenticated:
                    raise
                reauthenticated = True
                self.token_provider.invalidate()
                METRICS.counter("dispatch_reauth").inc()
                logger.warning("Ingest rejected bearer token; retrying once with a new token")
                continue
            except TransientDispatchError as exc:
                if attempt >= self.max_retries:
                    raise
                delay = self._backoff(attempt, exc.retry_after_s)
                attempt += 1
                METRICS.counter("dispatch_retries").inc()
                logger.warning("Transient ingest failure; retrying same payload",
                               extra={"attempt": attempt, "delay_s": round(delay, 3),
                                      "status": exc.status, "error": str(exc)})
                self._sleep(delay)
                continue

            return DispatchOutcome(
                status=response.status_code,
                server_date=response.headers.get("Date"),
                attempts=attempt + 1 + int(reauthenticated),
                elapsed_s=time.perf_counter() - started,
            )

    def dispatch(self, mode: DispatchMode, payload: bytes, metadata: EventMetadata) -> DispatchOutcome:
        outcome = self.send(build_event(mode, payload, metadata))
        METRICS.counter("samples_dispatched").inc()
        METRICS.gauge("last_status").set(outcome.status)
        return outcome
