"""Project-specific exception types for clearer error semantics."""

class ConfigError(ValueError):
    """Configuration validation errors."""
    pass

class InputFormatError(ValueError):
    """Dataset header lines missing or malformed."""
    pass

class SampleParseError(ValueError):
    """A sample token is not a number (strict parse policy only)."""
    pass

class EncodingOverflow(ValueError):
    """Scaled value does not fit the fixed-point word."""
    pass

class SequenceOverflow(Exception):
    """Nonce counter space exhausted."""
    pass

class AeadError(Exception):
    """AEAD-related errors."""
    pass

class ProtectionError(AeadError):
    """The AEAD primitive rejected key, nonce or plaintext."""
    pass

class CredentialError(Exception):
    """Bearer token acquisition or refresh failed."""
    pass

class DispatchError(Exception):
    """Ingest request failed."""

    retryable = False

    def __init__(self, message: str, status: int | None = None, retry_after_s: float | None = None):
        super().__init__(message)
        self.status = status
        self.retry_after_s = retry_after_s

class TransientDispatchError(DispatchError):
    retryable = True

class FatalDispatchError(DispatchError):
    pass

class SampleFailure(Exception):
    """Fatal error while processing one sample; aborts the run."""

    def __init__(self, index: int, sample: bytes, cause: BaseException):
        super().__init__(f"sample {index} failed: {cause}")
        self.index = index
        self.sample = sample
        self.cause = cause
