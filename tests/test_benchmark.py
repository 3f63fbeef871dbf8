"""
Benchmark recorder tests.

Run with: python -m pytest tests/test_benchmark.py
"""

import sys
import tempfile
import unittest
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from mpc_ingest.benchmark import HEADER, BenchmarkRecorder, StageTimer, bench_file_name, compute_stats
from mpc_ingest.dispatch import AuthMode, DispatchMode


class TestBenchFileName(unittest.TestCase):

    def test_direct_ingest_name(self):
        name = bench_file_name(1000, 50, DispatchMode.DIRECT, AuthMode.DEVICE, 1760000000123)
        self.assertEqual(name, "ingest_int-1000ms_c-50_ingest-iot_auth-iot_time-1760000000123.txt")

    def test_gateway_names(self):
        self.assertIn("_ingest-gateway_auth-gateway_",
                      bench_file_name(10, 5, DispatchMode.GATEWAY, AuthMode.GATEWAY, 1))
        self.assertIn("_ingest-gateway_auth-iot_",
                      bench_file_name(10, 5, DispatchMode.GATEWAY, AuthMode.DEVICE, 1))


class TestRecorder(unittest.TestCase):

    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.dir = Path(self._tmp.name)

    def tearDown(self):
        self._tmp.cleanup()

    def test_header_and_rows(self):
        with BenchmarkRecorder.open(self.dir, 1000, 3, DispatchMode.DIRECT, AuthMode.DEVICE,
                                    started_ms=42) as recorder:
            recorder.record(0, 12, 340, 51000)
            recorder.record(1, 8, 310, 47000)
        lines = recorder.path.read_text().splitlines()
        self.assertEqual(lines[0], ",".join(HEADER))
        self.assertEqual(lines[0], "sample_read_micros,sample_encrypt_micros,sample_ingest_micros")
        self.assertEqual(lines[1:], ["12,340,51000", "8,310,47000"])
        self.assertEqual(recorder.rows, 2)
        self.assertTrue(recorder.path.name.endswith("_time-42.txt"))

    def test_rows_visible_before_close(self):
        recorder = BenchmarkRecorder.open(self.dir, 1, 1, DispatchMode.GATEWAY, AuthMode.GATEWAY)
        recorder.record(0, 1, 2, 3)
        self.assertEqual(recorder.path.read_text().splitlines()[-1], "1,2,3")
        recorder.close()

    def test_record_after_close_fails(self):
        recorder = BenchmarkRecorder.open(self.dir, 1, 1, DispatchMode.GATEWAY, AuthMode.GATEWAY)
        recorder.close()
        recorder.close()
        self.assertTrue(recorder.closed)
        with self.assertRaises(ValueError):
            recorder.record(0, 1, 2, 3)

    def test_summary(self):
        with BenchmarkRecorder.open(self.dir, 1, 4, DispatchMode.DIRECT, AuthMode.DEVICE) as recorder:
            for i, ingest in enumerate((100, 200, 300, 400)):
                recorder.record(i, 1, 10, ingest)
        summary = recorder.summary()
        self.assertEqual(set(summary), {"read", "encrypt", "ingest"})
        self.assertEqual(summary["ingest"]["count"], 4)
        self.assertEqual(summary["ingest"]["mean_us"], 250)
        self.assertEqual(summary["ingest"]["max_us"], 400)
        self.assertEqual(summary["read"]["stdev_us"], 0)


class TestStats(unittest.TestCase):

    def test_empty(self):
        self.assertEqual(compute_stats([]).count, 0)

    def test_single_value(self):
        stats = compute_stats([7])
        self.assertEqual((stats.mean_us, stats.p95_us, stats.stdev_us), (7, 7, 0.0))

    def test_timer_laps_are_non_negative(self):
        timer = StageTimer()
        self.assertGreaterEqual(timer.lap(), 0)
        self.assertGreaterEqual(timer.lap(), 0)


if __name__ == "__main__":
    unittest.main()
