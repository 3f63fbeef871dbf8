"""
Fixed-point codec for MPC-compatible sample encoding.

MPC computes in integer arithmetic, so every floating point data point is
scaled by 2^F (F = fractional bits) and floored:

    word = floor(x * 2^F)

The word is a signed integer of 16, 32 or 64 bits, written little-endian so
the least significant byte carries the fractional part. An encoded sample is
the concatenation of its words in input order.
"""

import math
import struct
from dataclasses import dataclass
from enum import Enum
from typing import Iterable, List

from mpc_ingest.exceptions import EncodingOverflow, SampleParseError
from mpc_ingest.logging_utils import METRICS, get_logger

logger = get_logger("mpc_ingest.fixed_point")

_WORD_FORMATS = {16: "h", 32: "i", 64: "q"}

DEFAULT_FRACTIONAL_BITS = 8
DEFAULT_WORD_WIDTH = 64


class OverflowPolicy(str, Enum):
    SATURATE = "saturate"
    REJECT = "reject"


class ParsePolicy(str, Enum):
    SKIP = "skip"
    STRICT = "strict"


@dataclass(frozen=True)
class EncodedSample:
    """Bytes of one encoded sample plus bookkeeping from the parse step."""
    data: bytes
    words: int
    skipped: int = 0

    def __len__(self) -> int:
        return len(self.data)


def _check_layout(fractional_bits: int, word_width: int) -> str:
    fmt = _WORD_FORMATS.get(word_width)
    if fmt is None:
        raise ValueError(f"word_width must be one of {sorted(_WORD_FORMATS)}, got {word_width}")
    if not isinstance(fractional_bits, int) or not (0 <= fractional_bits < word_width):
        raise ValueError(f"fractional_bits must be int in range 0..{word_width - 1}, got {fractional_bits}")
    return fmt


def word_range(word_width: int) -> tuple:
    """Inclusive (min, max) of a signed word of the given width."""
    return -(1 << (word_width - 1)), (1 << (word_width - 1)) - 1


def to_word(value: float, fractional_bits: int, word_width: int,
            overflow: OverflowPolicy = OverflowPolicy.SATURATE) -> int:
    """Scale and floor one value into the signed word range."""
    lo, hi = word_range(word_width)
    if math.isnan(value):
        raise EncodingOverflow("NaN has no fixed-point representation")
    if math.isinf(value):
        if overflow is OverflowPolicy.REJECT:
            raise EncodingOverflow(f"{value} exceeds {word_width}-bit range")
        return hi if value > 0 else lo
    # ldexp is exact for finite doubles; floor of a float returns an exact int
    try:
        word = math.floor(math.ldexp(value, fractional_bits))
    except OverflowError:
        word = hi + 1 if value > 0 else lo - 1
    if lo <= word <= hi:
        return word
    if overflow is OverflowPolicy.REJECT:
        raise EncodingOverflow(
            f"{value} scaled by 2^{fractional_bits} exceeds {word_width}-bit range [{lo}, {hi}]"
        )
    return hi if word > hi else lo


def encode(values: Iterable[float], fractional_bits: int = DEFAULT_FRACTIONAL_BITS,
           word_width: int = DEFAULT_WORD_WIDTH,
           overflow: OverflowPolicy = OverflowPolicy.SATURATE) -> bytes:
    """Encode values as concatenated little-endian fixed-point words."""
    fmt = _check_layout(fractional_bits, word_width)
    words = [to_word(float(v), fractional_bits, word_width, overflow) for v in values]
    return struct.pack(f"<{len(words)}{fmt}", *words)


def decode(data: bytes, fractional_bits: int = DEFAULT_FRACTIONAL_BITS,
           word_width: int = DEFAULT_WORD_WIDTH) -> List[float]:
    """Inverse scaling of `encode`; exact up to the 2^-F quantization step."""
    fmt = _check_layout(fractional_bits, word_width)
    size = word_width // 8
    if len(data) % size:
        raise ValueError(f"data length {len(data)} is not a multiple of {size}")
    words = struct.unpack(f"<{len(data) // size}{fmt}", data)
    return [math.ldexp(w, -fractional_bits) for w in words]


def parse_tokens(line: str, parse: ParsePolicy = ParsePolicy.SKIP) -> tuple:
    """Split a sample line on whitespace; return (values, skipped_count)."""
    values: List[float] = []
    skipped = 0
    for token in line.split():
        try:
            values.append(float(token))
        except ValueError:
            if parse is ParsePolicy.STRICT:
                raise SampleParseError(f"not a number: {token!r}")
            skipped += 1
            logger.debug("Dropped unparseable token", extra={"token": token})
    return values, skipped


def encode_line(line: str, fractional_bits: int = DEFAULT_FRACTIONAL_BITS,
                word_width: int = DEFAULT_WORD_WIDTH,
                overflow: OverflowPolicy = OverflowPolicy.SATURATE,
                parse: ParsePolicy = ParsePolicy.SKIP) -> EncodedSample:
    values, skipped = parse_tokens(line, parse)
    if skipped:
        METRICS.counter("tokens_skipped").inc(skipped)
    data = encode(values, fractional_bits, word_width, overflow)
    return EncodedSample(data=data, words=len(values), skipped=skipped)
