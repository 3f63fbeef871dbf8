"""
CLI tests for `python -m mpc_ingest.run_ingest` with HTTP faked out.

Run with: python -m pytest tests/test_run_ingest.py
"""

import json
import os
import sys
import tempfile
import unittest
from pathlib import Path
from unittest import mock

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))
sys.path.insert(0, str(Path(__file__).resolve().parent))

from ingest_fakes import FakeSession, make_response
from mpc_ingest import run_ingest
from mpc_ingest.logging_utils import METRICS

INGEST_URL = "https://ingest.example.test/metrics"
GATEWAY_URL = "http://gateway.local:8080/ingest"
TOKEN_URL = "https://auth.example.test/token"

ENV = {
    "INGEST_ENDPOINT": INGEST_URL,
    "GATEWAY_ENDPOINT": GATEWAY_URL,
    "CLIENT_ID": "device-1",
    "CLIENT_SECRET": "s3cret",
    "TOKEN_ENDPOINT": TOKEN_URL,
    "DEVICE_KEY": "8a47c045167b1ad4494685a520d0d69e",
    "DEVICE_NONCE_SEED": "733f773e1d5fa3df5e056bf5",
    "DISPATCH_MAX_RETRIES": "0",
    "NONCE_STATE_FILE": "nonce_state.json",
}


class TestRunIngest(unittest.TestCase):

    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.dir = Path(self._tmp.name)
        self.dataset = self.dir / "ecg_dataset.txt"
        self.dataset.write_text("4\n3\n0.5 1.0 -2.0\n0.25 0.125 3.5\n1 2 3\n4 5 6\n")
        self.session = FakeSession({TOKEN_URL: [make_response(200, {"access_token": "tok", "expires_in": 600})]})
        METRICS.reset()
        # .env files are looked up in the working directory
        self._cwd = os.getcwd()
        os.chdir(self.dir)

    def tearDown(self):
        os.chdir(self._cwd)
        self._tmp.cleanup()

    def _main(self, *argv, env=ENV):
        args = ["--dataset", str(self.dataset), "--bench-dir", str(self.dir / "bench"),
                "--interval", "0", "--quiet", *argv]
        with mock.patch.dict(os.environ, env, clear=True), \
                mock.patch("requests.Session", return_value=self.session):
            return run_ingest.main(args)

    def _bench_files(self):
        return sorted((self.dir / "bench").glob("ingest_int-*.txt"))

    def test_direct_ingest(self):
        self.assertEqual(self._main("--count", "2"), 0)
        ingests = self.session.calls_to(INGEST_URL)
        self.assertEqual(len(ingests), 2)
        self.assertEqual(ingests[0]["headers"]["Authorization"], "Bearer tok")
        self.assertEqual(len(ingests[0]["json"]), 1)
        self.assertEqual(len(ingests[0]["json"][0]["value"]["c"]), 12 + 3 * 8 + 16)
        self.assertEqual(len(self.session.calls_to(TOKEN_URL)), 1)

        [bench] = self._bench_files()
        self.assertTrue(bench.name.startswith("ingest_int-0ms_c-2_ingest-iot_auth-iot_time-"))
        self.assertEqual(len(bench.read_text().splitlines()), 3)

    def test_gateway_passthrough(self):
        self.assertEqual(self._main("--gateway", "--gateway-authenticate", "--word-width", "16"), 0)
        calls = self.session.calls_to(GATEWAY_URL)
        self.assertEqual(len(calls), 4)
        self.assertNotIn("Authorization", calls[0]["headers"])
        self.assertEqual(calls[0]["json"]["value"], [128, 0, 0, 1, 0, 254])
        self.assertEqual(self.session.calls_to(TOKEN_URL), [])
        self.assertIn("_ingest-gateway_auth-gateway_", self._bench_files()[0].name)

    def test_gateway_with_device_auth(self):
        self.assertEqual(self._main("--gateway", "--count", "1"), 0)
        self.assertEqual(self.session.calls_to(GATEWAY_URL)[0]["headers"]["Authorization"], "Bearer tok")

    def test_nonce_state_file_written(self):
        state_file = self.dir / "state" / "nonce.json"
        self.assertEqual(self._main("--count", "2", "--nonce-state", str(state_file)), 0)
        self.assertGreaterEqual(json.loads(state_file.read_text())["high_water"], 2)

    def test_configured_key_requires_nonce_state(self):
        env = {k: v for k, v in ENV.items() if k != "NONCE_STATE_FILE"}
        env["ENV"] = "prod"
        self.assertEqual(self._main("--count", "1", env=env), 2)
        self.assertEqual(self.session.calls, [])

    def test_restart_continues_nonce_sequence(self):
        self.session.routes[TOKEN_URL] = [make_response(200, {"access_token": "tok", "expires_in": 600})
                                          for _ in range(2)]
        env = dict(ENV, ENV="prod")
        self.assertEqual(self._main("--count", "1", env=env), 0)
        self.assertEqual(self._main("--count", "1", env=env), 0)
        first, second = [bytes(call["json"][0]["value"]["c"][:12]) for call in self.session.calls_to(INGEST_URL)]
        self.assertEqual(first, bytes.fromhex(ENV["DEVICE_NONCE_SEED"]))
        self.assertNotEqual(first, second)
        self.assertTrue((self.dir / "nonce_state.json").is_file())

    def test_ingest_rejection_exits_nonzero(self):
        self.session.routes[INGEST_URL] = [make_response(403, text="forbidden")]
        self.assertEqual(self._main("--count", "2"), 1)
        self.assertEqual(len(self.session.calls_to(INGEST_URL)), 1)

    def test_missing_configuration(self):
        self.assertEqual(self._main(env={}), 2)
        self.assertEqual(self.session.calls, [])

    def test_gateway_authenticate_requires_gateway(self):
        self.assertEqual(self._main("--gateway-authenticate"), 2)

    def test_malformed_dataset(self):
        self.dataset.write_text("four\n3\n")
        self.assertEqual(self._main(), 2)

    def test_undecodable_dataset_exits_with_input_error(self):
        self.dataset.write_bytes(b"3\n1\n" + b"1.0 " * 5000 + b"\n\xff 1.0\n")
        self.assertEqual(self._main("--gateway", "--gateway-authenticate", "--count", "1"), 2)

    def test_env_file_is_loaded(self):
        env_lines = "\n".join(f"{k}={v}" for k, v in ENV.items())
        (self.dir / ".env").write_text(env_lines + "\n")
        self.assertEqual(self._main("--count", "1", env={}), 0)
        self.assertEqual(len(self.session.calls_to(INGEST_URL)), 1)


if __name__ == "__main__":
    unittest.main()
