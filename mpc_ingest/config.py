"""
Configuration for the device-side ingest pipeline.

Defaults live in DEFAULTS; `load_config()` applies typed environment overrides
and validates the result. Endpoint and credential keys are only required for
the dispatch/auth mode actually in use (see `validate_for_mode`).
"""

import os
from typing import Any, Dict, Mapping, Optional, Tuple
from urllib.parse import urlparse

from mpc_ingest.aead import NONCE_LEN, generate_key, generate_nonce_seed, key_length
from mpc_ingest.dispatch import AuthMode, DispatchMode
from mpc_ingest.exceptions import ConfigError
from mpc_ingest.logging_utils import get_logger

logger = get_logger("mpc_ingest.config")


DEFAULTS: Dict[str, Any] = {
    # Ingestion destinations
    "INGEST_ENDPOINT": "",
    "GATEWAY_ENDPOINT": "",

    # OAuth2 client credentials for the device
    "CLIENT_ID": "",
    "CLIENT_SECRET": "",
    "AUTH_ENDPOINT": "",
    "TOKEN_ENDPOINT": "",
    # Identity bound into each ciphertext as AAD; falls back to CLIENT_ID.
    "USER_ID": "",

    # Device key material (hex). Required outside dev.
    "DEVICE_KEY": "",
    "DEVICE_NONCE_SEED": "",
    # Optional file persisting the nonce counter high-water mark across runs.
    "NONCE_STATE_FILE": "",
    "NONCE_RESERVE": 1024,

    # HTTP behaviour
    "HTTP_TIMEOUT_S": 10.0,
    "DISPATCH_MAX_RETRIES": 2,
    "DISPATCH_BACKOFF_INITIAL_S": 0.5,
    "DISPATCH_BACKOFF_MAX_S": 8.0,

    # Event metadata
    "METRIC_NAME": "ecg_test::json",
    "EVENT_SOURCE": "IoT Device Simulator",

    "ENV": "dev",
}

# Expected types for every key
_TYPES = {
    "INGEST_ENDPOINT": str,
    "GATEWAY_ENDPOINT": str,
    "CLIENT_ID": str,
    "CLIENT_SECRET": str,
    "AUTH_ENDPOINT": str,
    "TOKEN_ENDPOINT": str,
    "USER_ID": str,
    "DEVICE_KEY": str,
    "DEVICE_NONCE_SEED": str,
    "NONCE_STATE_FILE": str,
    "NONCE_RESERVE": int,
    "HTTP_TIMEOUT_S": float,
    "DISPATCH_MAX_RETRIES": int,
    "DISPATCH_BACKOFF_INITIAL_S": float,
    "DISPATCH_BACKOFF_MAX_S": float,
    "METRIC_NAME": str,
    "EVENT_SOURCE": str,
    "ENV": str,
}

# Keys that can be overridden by environment variables
_ENV_OVERRIDABLE = set(_TYPES)

_URL_KEYS = ("INGEST_ENDPOINT", "GATEWAY_ENDPOINT", "AUTH_ENDPOINT", "TOKEN_ENDPOINT")


def _parse_bool(value: str) -> bool:
    lowered = str(value).strip().lower()
    if lowered in {"1", "true", "yes", "on"}:
        return True
    if lowered in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"invalid boolean literal: {value}")


def _apply_env_overrides(cfg: Dict[str, Any], environ: Mapping[str, str]) -> Dict[str, Any]:
    """Apply environment variable overrides to config."""
    result = cfg.copy()

    for key in _ENV_OVERRIDABLE:
        if key not in environ:
            continue
        env_value = environ[key]
        expected_type = _TYPES[key]
        try:
            if expected_type == int:
                result[key] = int(env_value)
            elif expected_type == float:
                result[key] = float(env_value)
            elif expected_type == bool:
                result[key] = _parse_bool(env_value)
            else:
                result[key] = str(env_value).strip()
        except ValueError:
            raise ConfigError(f"Invalid {expected_type.__name__} value for {key}: {env_value}")

    return result


def _is_http_url(value: str) -> bool:
    parsed = urlparse(value)
    return parsed.scheme in {"http", "https"} and bool(parsed.netloc)


def validate_config(cfg: Dict[str, Any]) -> None:
    """Ensure all keys exist with correct types/ranges. Raise ConfigError on violation."""
    missing_keys = set(_TYPES) - set(cfg)
    if missing_keys:
        raise ConfigError(f"config missing required keys: {', '.join(sorted(missing_keys))}")

    for key, expected_type in _TYPES.items():
        value = cfg[key]
        if expected_type == float:
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                raise ConfigError(f"config[{key}] must be float, got {type(value).__name__}")
            continue
        if not isinstance(value, expected_type) or (expected_type == int and isinstance(value, bool)):
            raise ConfigError(f"config[{key}] must be {expected_type.__name__}, got {type(value).__name__}")

    for key in _URL_KEYS:
        if cfg[key] and not _is_http_url(cfg[key]):
            raise ConfigError(f"config[{key}] must be an http(s) URL, got {cfg[key]!r}")

    if cfg["HTTP_TIMEOUT_S"] <= 0:
        raise ConfigError(f"config[HTTP_TIMEOUT_S] must be > 0, got {cfg['HTTP_TIMEOUT_S']}")
    if cfg["DISPATCH_MAX_RETRIES"] < 0:
        raise ConfigError("config[DISPATCH_MAX_RETRIES] must be >= 0")
    if cfg["DISPATCH_BACKOFF_INITIAL_S"] < 0 or cfg["DISPATCH_BACKOFF_MAX_S"] < cfg["DISPATCH_BACKOFF_INITIAL_S"]:
        raise ConfigError("config backoff must satisfy 0 <= DISPATCH_BACKOFF_INITIAL_S <= DISPATCH_BACKOFF_MAX_S")
    if cfg["NONCE_RESERVE"] < 1:
        raise ConfigError("config[NONCE_RESERVE] must be >= 1")
    if not cfg["METRIC_NAME"]:
        raise ConfigError("config[METRIC_NAME] must be non-empty")

    for key in ("DEVICE_KEY", "DEVICE_NONCE_SEED"):
        if cfg[key]:
            try:
                bytes.fromhex(cfg[key])
            except ValueError:
                raise ConfigError(f"config[{key}] must be a hex string")

    if cfg["DEVICE_NONCE_SEED"] and len(bytes.fromhex(cfg["DEVICE_NONCE_SEED"])) != NONCE_LEN:
        raise ConfigError(f"config[DEVICE_NONCE_SEED] must decode to {NONCE_LEN} bytes")

    if cfg["ENV"] != "dev":
        for key in ("DEVICE_KEY", "DEVICE_NONCE_SEED"):
            if not cfg[key]:
                raise ConfigError(f"config[{key}] must be provided in non-dev environment")


def validate_for_mode(cfg: Dict[str, Any], dispatch_mode: DispatchMode, auth_mode: AuthMode) -> None:
    """Check that the keys needed by the selected dispatch/auth mode are present."""
    if dispatch_mode is DispatchMode.DIRECT and auth_mode is not AuthMode.DEVICE:
        raise ConfigError("direct ingest requires the device to authenticate")

    required = ["GATEWAY_ENDPOINT" if dispatch_mode is DispatchMode.GATEWAY else "INGEST_ENDPOINT"]
    if auth_mode is AuthMode.DEVICE:
        required += ["CLIENT_ID", "CLIENT_SECRET", "TOKEN_ENDPOINT"]
    if dispatch_mode is DispatchMode.DIRECT and not cfg.get("USER_ID"):
        required.append("CLIENT_ID")

    missing = sorted({key for key in required if not cfg.get(key)})
    if missing:
        raise ConfigError(f"missing configuration for {dispatch_mode.value}/{auth_mode.value}: {', '.join(missing)}")


def endpoint_for(cfg: Dict[str, Any], dispatch_mode: DispatchMode) -> str:
    return cfg["GATEWAY_ENDPOINT"] if dispatch_mode is DispatchMode.GATEWAY else cfg["INGEST_ENDPOINT"]


def context_id(cfg: Dict[str, Any]) -> str:
    return cfg.get("USER_ID") or cfg.get("CLIENT_ID") or ""


def requires_nonce_state(cfg: Dict[str, Any]) -> bool:
    """Configured key material outlives the process, so its nonce counter must too."""
    return bool(cfg["DEVICE_KEY"] or cfg["DEVICE_NONCE_SEED"])


def resolve_device_material(cfg: Dict[str, Any], algorithm) -> Tuple[bytes, bytes]:
    """Return (key, nonce_seed), generating throwaway material in dev."""
    expected = key_length(algorithm)
    if cfg["DEVICE_KEY"]:
        key = bytes.fromhex(cfg["DEVICE_KEY"])
        if len(key) != expected:
            raise ConfigError(f"config[DEVICE_KEY] must decode to {expected} bytes for {algorithm}")
    else:
        logger.warning("DEVICE_KEY not set; generating an ephemeral dev key")
        key = generate_key(algorithm)

    if cfg["DEVICE_NONCE_SEED"]:
        seed = bytes.fromhex(cfg["DEVICE_NONCE_SEED"])
    else:
        logger.warning("DEVICE_NONCE_SEED not set; generating a random dev seed")
        seed = generate_nonce_seed()
    return key, seed


def load_config(environ: Optional[Mapping[str, str]] = None) -> Dict[str, Any]:
    cfg = _apply_env_overrides(DEFAULTS, os.environ if environ is None else environ)
    validate_config(cfg)
    return cfg
