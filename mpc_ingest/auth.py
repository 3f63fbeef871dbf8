"""
OAuth2 bearer tokens for device-authenticated ingest.

TokenProvider caches the access token until shortly before it expires, then
refreshes it (refresh_token grant when the server issued one, otherwise a new
client_credentials grant). Any failure surfaces as CredentialError.
"""

import time
from typing import Callable, Dict, Optional

import requests

from mpc_ingest.exceptions import CredentialError
from mpc_ingest.logging_utils import METRICS, get_logger

logger = get_logger("mpc_ingest.auth")

DEFAULT_EXPIRES_IN_S = 300


class TokenProvider:
    def __init__(
        self,
        client_id: str,
        client_secret: str,
        token_endpoint: str,
        auth_endpoint: Optional[str] = None,
        *,
        scope: Optional[str] = None,
        session: Optional[requests.Session] = None,
        timeout_s: float = 10.0,
        leeway_s: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        if not client_id or not token_endpoint:
            raise ValueError("client_id and token_endpoint are required")
        self.client_id = client_id
        self._client_secret = client_secret
        self.token_endpoint = token_endpoint
        # Kept for deployments that advertise an authorization server separately;
        # the client_credentials flow only talks to the token endpoint.
        self.auth_endpoint = auth_endpoint
        self.scope = scope
        self.session = session or requests.Session()
        self.timeout_s = timeout_s
        self.leeway_s = leeway_s
        self._clock = clock

        self._access_token: Optional[str] = None
        self._refresh_token: Optional[str] = None
        self._expires_at = 0.0

    def invalidate(self) -> None:
        """Forget the cached access token so the next call fetches a new one."""
        self._access_token = None
        self._expires_at = 0.0

    def token(self) -> str:
        """Return a currently valid bearer token, refreshing if needed."""
        if self._access_token and self._clock() < self._expires_at:
            return self._access_token

        if self._refresh_token:
            try:
                return self._request({"grant_type": "refresh_token", "refresh_token": self._refresh_token})
            except CredentialError as exc:
                logger.warning("Token refresh failed; requesting a new token", extra={"error": str(exc)})
                self._refresh_token = None

        form = {"grant_type": "client_credentials"}
        if self.scope:
            form["scope"] = self.scope
        return self._request(form)

    def _request(self, form: Dict[str, str]) -> str:
        form = dict(form, client_id=self.client_id, client_secret=self._client_secret)
        try:
            response = self.session.post(self.token_endpoint, data=form, timeout=self.timeout_s)
        except requests.RequestException as exc:
            raise CredentialError(f"token endpoint unreachable: {exc}")

        if not (200 <= response.status_code < 300):
            raise CredentialError(f"token endpoint returned {response.status_code}: {(response.text or '')[:200]}")

        try:
            payload = response.json()
        except ValueError:
            raise CredentialError("token endpoint returned invalid JSON")

        access_token = payload.get("access_token") if isinstance(payload, dict) else None
        if not access_token:
            raise CredentialError("token response missing access_token")

        try:
            expires_in = float(payload.get("expires_in", DEFAULT_EXPIRES_IN_S))
        except (TypeError, ValueError):
            expires_in = DEFAULT_EXPIRES_IN_S

        self._access_token = str(access_token)
        self._refresh_token = payload.get("refresh_token") or self._refresh_token
        self._expires_at = self._clock() + max(0.0, expires_in - self.leeway_s)
        METRICS.counter("tokens_fetched").inc()
        logger.info("Bearer token acquired", extra={"grant": form["grant_type"], "expires_in_s": expires_in})
        return self._access_token
