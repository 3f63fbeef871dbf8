"""
AEAD protection for encoded samples.

Provides authenticated encryption (AES-GCM or ChaCha20-Poly1305) with the
device context id bound as AAD and deterministic 96-bit nonces derived from
a per-device seed and a monotonically increasing counter:

    nonce_n = seed XOR be96(n)

The counter is reserved before the primitive runs, so no nonce is ever
handed to the cipher twice for one key. An optional CounterStore persists a
high-water mark ahead of use so the guarantee survives process restarts.

Wire format: nonce(12) || ciphertext || tag(16)
"""

import hashlib
import json
import os
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Dict, Optional

from cryptography.hazmat.primitives.ciphers.aead import AESGCM, ChaCha20Poly1305

from mpc_ingest.exceptions import ConfigError, ProtectionError, SequenceOverflow
from mpc_ingest.logging_utils import get_logger

logger = get_logger("mpc_ingest.aead")

NONCE_LEN = 12
TAG_LEN = 16
# Counter occupies the low 64 bits of the nonce; 2^64 calls exhaust a seed.
MAX_COUNTER = 1 << 64
DEFAULT_RESERVE = 1024


class ProtectionAlgorithm(str, Enum):
    AES_GCM_128 = "aes-gcm-128"
    AES_GCM_256 = "aes-gcm-256"
    CHACHA20_POLY1305 = "chacha20-poly1305"


_KEY_LEN = {
    ProtectionAlgorithm.AES_GCM_128: 16,
    ProtectionAlgorithm.AES_GCM_256: 32,
    ProtectionAlgorithm.CHACHA20_POLY1305: 32,
}

_ALIASES = {
    "aesgcm128": ProtectionAlgorithm.AES_GCM_128,
    "aes128gcm": ProtectionAlgorithm.AES_GCM_128,
    "aesgcm": ProtectionAlgorithm.AES_GCM_256,
    "aesgcm256": ProtectionAlgorithm.AES_GCM_256,
    "chacha20poly1305": ProtectionAlgorithm.CHACHA20_POLY1305,
}


def canonicalize_algorithm(token) -> ProtectionAlgorithm:
    if isinstance(token, ProtectionAlgorithm):
        return token
    candidate = str(token).strip().lower()
    try:
        return ProtectionAlgorithm(candidate)
    except ValueError:
        pass
    squashed = candidate.replace("-", "").replace("_", "")
    if squashed in _ALIASES:
        return _ALIASES[squashed]
    raise ValueError(f"unknown AEAD algorithm: {token}")


def key_length(algorithm) -> int:
    return _KEY_LEN[canonicalize_algorithm(algorithm)]


def _instantiate_aead(algorithm: ProtectionAlgorithm, key: bytes):
    """Return the AEAD primitive for the algorithm, validating key length."""
    expected = _KEY_LEN[algorithm]
    if len(key) != expected:
        raise ProtectionError(f"{algorithm.value} requires {expected}-byte key material, got {len(key)}")
    if algorithm is ProtectionAlgorithm.CHACHA20_POLY1305:
        return ChaCha20Poly1305(key)
    return AESGCM(key)


def derive_nonce(seed: bytes, counter: int) -> bytes:
    if len(seed) != NONCE_LEN:
        raise ValueError(f"nonce seed must be exactly {NONCE_LEN} bytes")
    if not (0 <= counter < MAX_COUNTER):
        raise SequenceOverflow(f"counter {counter} outside nonce space")
    mask = counter.to_bytes(NONCE_LEN, "big")
    return bytes(a ^ b for a, b in zip(seed, mask))


def fingerprint(key: bytes, nonce_seed: bytes) -> str:
    """Identify key material without storing it."""
    return hashlib.sha256(b"mpc-ingest-nonce-store" + key + nonce_seed).hexdigest()[:32]


class CounterStore:
    """
    File-backed nonce counter high-water mark.

    Before a counter at or above the persisted mark is used, the mark is moved
    `reserve` counters ahead and written atomically (temp file, fsync, rename).
    After a crash the state resumes at the mark, skipping at most `reserve`
    unused counters but never reusing one.
    """

    def __init__(self, path, reserve: int = DEFAULT_RESERVE):
        if reserve < 1:
            raise ValueError("reserve must be >= 1")
        self.path = Path(path)
        self.reserve = reserve
        self._fingerprint: Optional[str] = None
        self.high_water = 0

    def bind(self, key_fingerprint: str) -> int:
        """Load the store for the given key material; return its high-water mark."""
        if self._fingerprint is not None:
            raise ConfigError(f"nonce state file {self.path} is already bound to a DeviceState")
        if self.path.is_file():
            try:
                with open(self.path, encoding="utf-8") as fh:
                    data = json.load(fh)
                stored_fp = str(data["fingerprint"])
                high_water = int(data["high_water"])
            except (OSError, ValueError, KeyError, TypeError) as exc:
                raise ConfigError(f"nonce state file {self.path} is unreadable: {exc}")
            if stored_fp != key_fingerprint:
                raise ConfigError(
                    f"nonce state file {self.path} belongs to different key material; "
                    "use a fresh file per key"
                )
            self.high_water = high_water
        else:
            self.high_water = 0
        self._fingerprint = key_fingerprint
        return self.high_water

    def advance(self, counter: int) -> None:
        """Persist a new mark covering `counter` before it is used."""
        if self._fingerprint is None:
            raise RuntimeError("CounterStore.bind() must be called first")
        target = min(counter + self.reserve, MAX_COUNTER)
        self._atomic_write({"fingerprint": self._fingerprint, "high_water": target})
        self.high_water = target
        logger.debug("Nonce counter reservation persisted", extra={"high_water": target})

    def _atomic_write(self, data: Dict[str, object]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        temp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        with open(temp_path, "w", encoding="utf-8") as f:
            json.dump(data, f)
            f.flush()
            os.fsync(f.fileno())
        os.replace(temp_path, self.path)


@dataclass
class DeviceState:
    """
    Per-device key and nonce derivation state.

    Owned by exactly one pipeline driver and mutated by every `protect` call.
    Copying is refused: two copies would derive the same nonces.
    """
    nonce_seed: bytes
    key: bytes = field(repr=False)
    store: Optional[CounterStore] = field(default=None, repr=False)
    _counter: int = field(default=0, init=False, repr=False)

    def __post_init__(self):
        if not isinstance(self.nonce_seed, bytes) or len(self.nonce_seed) != NONCE_LEN:
            raise ValueError(f"nonce_seed must be exactly {NONCE_LEN} bytes")

        if not isinstance(self.key, bytes) or not self.key:
            raise TypeError("key must be non-empty bytes")

        if self.store is not None:
            resumed = self.store.bind(fingerprint(self.key, self.nonce_seed))
            if resumed:
                logger.info("Resuming nonce counter from persisted state",
                            extra={"counter": resumed, "path": str(self.store.path)})
                self._counter = resumed

        self._ciphers: Dict[ProtectionAlgorithm, object] = {}
        self._last_nonce: Optional[bytes] = None

    @property
    def counter(self) -> int:
        """Next counter value to be used."""
        return self._counter

    @property
    def last_nonce(self) -> Optional[bytes]:
        return self._last_nonce

    def next_nonce(self) -> bytes:
        """Reserve the next counter and return its nonce."""
        counter = self._counter
        if counter >= MAX_COUNTER:
            raise SequenceOverflow("nonce space exhausted; provision a fresh seed or key")
        if self.store is not None and counter >= self.store.high_water:
            self.store.advance(counter)
        self._counter = counter + 1
        nonce = derive_nonce(self.nonce_seed, counter)
        self._last_nonce = nonce
        return nonce

    def cipher_for(self, algorithm: ProtectionAlgorithm):
        cipher = self._ciphers.get(algorithm)
        if cipher is None:
            cipher = _instantiate_aead(algorithm, self.key)
            self._ciphers[algorithm] = cipher
        return cipher

    def __copy__(self):
        raise TypeError("DeviceState must not be copied; sharing it risks nonce reuse")

    def __deepcopy__(self, memo):
        raise TypeError("DeviceState must not be copied; sharing it risks nonce reuse")

    def __reduce_ex__(self, protocol):
        raise TypeError("DeviceState must not be serialized; sharing it risks nonce reuse")


def protect(context_id: str, state: DeviceState, algorithm, plaintext: bytes) -> bytes:
    """Encrypt and authenticate `plaintext` bound to `context_id`.

    Returns nonce || ciphertext || tag. The state's counter advances even when
    the primitive fails afterwards.
    """
    if not isinstance(plaintext, (bytes, bytearray)):
        raise TypeError("plaintext must be bytes")
    algo = canonicalize_algorithm(algorithm)

    nonce = state.next_nonce()

    try:
        cipher = state.cipher_for(algo)
        ciphertext = cipher.encrypt(nonce, bytes(plaintext), context_id.encode("utf-8"))
    except ProtectionError:
        raise
    except (ValueError, TypeError, OverflowError) as e:
        raise ProtectionError(f"AEAD encryption failed: {e}")

    return nonce + ciphertext


def generate_key(algorithm=ProtectionAlgorithm.AES_GCM_128) -> bytes:
    return os.urandom(key_length(algorithm))


def generate_nonce_seed() -> bytes:
    return os.urandom(NONCE_LEN)
