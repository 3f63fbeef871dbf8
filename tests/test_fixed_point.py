"""
Fixed-point codec tests.

Run with: python -m pytest tests/test_fixed_point.py
"""

import math
import sys
import unittest
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from mpc_ingest.exceptions import EncodingOverflow, SampleParseError
from mpc_ingest.fixed_point import (
    OverflowPolicy,
    ParsePolicy,
    decode,
    encode,
    encode_line,
    to_word,
)


class TestEncode(unittest.TestCase):

    def test_concrete_scenario_16_bit(self):
        """1.0 and -0.5 at 8 fractional bits become words 256 and -128."""
        sample = encode_line("1.0 -0.5", fractional_bits=8, word_width=16)
        self.assertEqual(sample.data, bytes([0x00, 0x01, 0x80, 0xFF]))
        self.assertEqual(sample.words, 2)

    def test_64_bit_default_layout(self):
        data = encode([1.0], fractional_bits=8, word_width=64)
        self.assertEqual(data, bytes([0x00, 0x01, 0, 0, 0, 0, 0, 0]))

    def test_32_bit_with_16_fractional_bits(self):
        data = encode([1.5], fractional_bits=16, word_width=32)
        self.assertEqual(data, (0x18000).to_bytes(4, "little", signed=True))

    def test_length_is_words_times_word_size(self):
        for width in (16, 32, 64):
            data = encode([0.1, 0.2, 0.3], fractional_bits=8, word_width=width)
            self.assertEqual(len(data), 3 * width // 8)

    def test_floor_rounds_towards_negative_infinity(self):
        self.assertEqual(to_word(-0.001, 8, 16), -1)
        self.assertEqual(to_word(0.001, 8, 16), 0)
        self.assertEqual(to_word(1.999, 8, 16), 511)

    def test_deterministic(self):
        values = [0.12345, -7.5, 3.25, 1e-9]
        self.assertEqual(encode(values, 8, 32), encode(values, 8, 32))

    def test_round_trip_within_quantization_step(self):
        values = [0.0, 1.0, -1.0, 3.14159, -2.71828, 100.0078125, -0.00390625, 42.4242]
        for width, frac in ((16, 8), (32, 8), (32, 16), (64, 8), (64, 16)):
            decoded = decode(encode(values, frac, width), frac, width)
            step = math.ldexp(1.0, -frac)
            for original, restored in zip(values, decoded):
                self.assertLessEqual(restored, original)
                self.assertLess(original - restored, step, (width, frac, original))

    def test_empty_input_encodes_to_empty_bytes(self):
        self.assertEqual(encode([], 8, 64), b"")
        sample = encode_line("", 8, 64)
        self.assertEqual(sample.data, b"")
        self.assertEqual(sample.words, 0)

    def test_invalid_layouts_rejected(self):
        with self.assertRaises(ValueError):
            encode([1.0], fractional_bits=8, word_width=24)
        with self.assertRaises(ValueError):
            encode([1.0], fractional_bits=16, word_width=16)
        with self.assertRaises(ValueError):
            encode([1.0], fractional_bits=-1, word_width=16)


class TestOverflow(unittest.TestCase):

    def test_saturates_above_range(self):
        # 200 * 256 = 51200 > 32767
        self.assertEqual(encode([200.0], 8, 16), (32767).to_bytes(2, "little", signed=True))

    def test_saturates_below_range(self):
        self.assertEqual(encode([-1000.0], 8, 16), (-32768).to_bytes(2, "little", signed=True))

    def test_saturates_huge_values_in_64_bit(self):
        data = encode([1e308, -1e308], 8, 64)
        self.assertEqual(data[:8], ((1 << 63) - 1).to_bytes(8, "little", signed=True))
        self.assertEqual(data[8:], (-(1 << 63)).to_bytes(8, "little", signed=True))

    def test_infinity_saturates(self):
        self.assertEqual(to_word(float("inf"), 8, 16), 32767)
        self.assertEqual(to_word(float("-inf"), 8, 16), -32768)

    def test_reject_policy_fails_loudly(self):
        with self.assertRaises(EncodingOverflow):
            encode([200.0], 8, 16, overflow=OverflowPolicy.REJECT)
        with self.assertRaises(EncodingOverflow):
            encode([float("inf")], 8, 16, overflow=OverflowPolicy.REJECT)

    def test_boundary_values_are_not_overflow(self):
        # 127.99609375 * 256 = 32767 exactly
        self.assertEqual(to_word(127.99609375, 8, 16, OverflowPolicy.REJECT), 32767)
        self.assertEqual(to_word(-128.0, 8, 16, OverflowPolicy.REJECT), -32768)

    def test_nan_is_never_encodable(self):
        with self.assertRaises(EncodingOverflow):
            encode([float("nan")], 8, 64)


class TestParsePolicy(unittest.TestCase):

    def test_malformed_token_is_dropped(self):
        sample = encode_line("1.5 abc 2.0", fractional_bits=8, word_width=16)
        self.assertEqual(sample.words, 2)
        self.assertEqual(sample.skipped, 1)
        self.assertEqual(sample.data, encode([1.5, 2.0], 8, 16))

    def test_whitespace_variants(self):
        sample = encode_line("  1.0\t2.0   3.0 \n", 8, 16)
        self.assertEqual(sample.words, 3)

    def test_strict_policy_raises(self):
        with self.assertRaises(SampleParseError):
            encode_line("1.5 abc 2.0", 8, 16, parse=ParsePolicy.STRICT)

    def test_scientific_notation_parses(self):
        sample = encode_line("1e-2 -2.5E1", 8, 32)
        self.assertEqual(decode(sample.data, 8, 32), [math.floor(0.01 * 256) / 256, -25.0])


class TestDecode(unittest.TestCase):

    def test_rejects_partial_words(self):
        with self.assertRaises(ValueError):
            decode(b"\x00\x01\x02", 8, 16)

    def test_decodes_concrete_bytes(self):
        self.assertEqual(decode(bytes([0x00, 0x01, 0x80, 0xFF]), 8, 16), [1.0, -0.5])


if __name__ == "__main__":
    unittest.main()
