"""
CLI entrypoint for the device-side sample ingest benchmark.

Reads a sample dataset, encodes each sample to fixed point, optionally
protects it on the device, and ingests it either directly or via a gateway,
writing per-stage timings to a benchmark log.

    python -m mpc_ingest.run_ingest --interval 1000 --count 100
    python -m mpc_ingest.run_ingest --gateway --gateway-authenticate
"""

import argparse
import logging
import sys
from pathlib import Path
from typing import Optional, Sequence

from mpc_ingest.aead import CounterStore, DeviceState, ProtectionAlgorithm, canonicalize_algorithm
from mpc_ingest.auth import TokenProvider
from mpc_ingest.benchmark import BenchmarkRecorder
from mpc_ingest.config import (
    context_id,
    endpoint_for,
    load_config,
    requires_nonce_state,
    resolve_device_material,
    validate_for_mode,
)
from mpc_ingest.dataset import DEFAULT_DATASET, open_dataset
from mpc_ingest.dispatch import AuthMode, DispatchMode, EventMetadata, IngestDispatcher
from mpc_ingest.env_loader import load_env_files
from mpc_ingest.exceptions import ConfigError, InputFormatError, SampleFailure
from mpc_ingest.fixed_point import OverflowPolicy, ParsePolicy
from mpc_ingest.logging_utils import METRICS, configure_file_logger, get_logger
from mpc_ingest.pipeline import PipelineConfig, run_pipeline

logger = get_logger("mpc_ingest")

EXIT_OK = 0
EXIT_FATAL = 1
EXIT_CONFIG = 2


def _positive_int(value: str) -> int:
    parsed = int(value)
    if parsed < 1:
        raise argparse.ArgumentTypeError(f"must be >= 1, got {parsed}")
    return parsed


def _non_negative_int(value: str) -> int:
    parsed = int(value)
    if parsed < 0:
        raise argparse.ArgumentTypeError(f"must be >= 0, got {parsed}")
    return parsed


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Device-side MPC sample ingest benchmark")
    parser.add_argument("-g", "--gateway", action="store_true",
                        help="Send samples through the gateway instead of ingesting directly")
    parser.add_argument("-a", "--gateway-authenticate", action="store_true",
                        help="With --gateway: the gateway authenticates instead of the device")
    parser.add_argument("-i", "--interval", type=_non_negative_int, default=1000,
                        help="Time between ingestion in milliseconds (default: 1000)")
    parser.add_argument("-c", "--count", type=_positive_int, default=1000,
                        help="Limit amount of samples to ingest (default: 1000)")
    parser.add_argument("-d", "--dataset", type=Path, default=Path(DEFAULT_DATASET),
                        help=f"Sample dataset file (default: {DEFAULT_DATASET})")
    parser.add_argument("--fractional-bits", type=int, default=8,
                        help="Fixed-point fractional bits (default: 8)")
    parser.add_argument("--word-width", type=int, choices=(16, 32, 64), default=64,
                        help="Fixed-point word width in bits (default: 64)")
    parser.add_argument("--algorithm", default=ProtectionAlgorithm.AES_GCM_128.value,
                        choices=[a.value for a in ProtectionAlgorithm],
                        help="AEAD used for on-device protection")
    parser.add_argument("--overflow", default=OverflowPolicy.SATURATE.value,
                        choices=[p.value for p in OverflowPolicy],
                        help="Out-of-range values: saturate or reject the sample")
    parser.add_argument("--parse", default=ParsePolicy.SKIP.value,
                        choices=[p.value for p in ParsePolicy],
                        help="Non-numeric tokens: skip them or reject the sample")
    parser.add_argument("--strict-header", action="store_true",
                        help="Fail when a sample's length differs from the dataset header")
    parser.add_argument("--bench-dir", type=Path, default=Path("."),
                        help="Directory for the benchmark log (default: current directory)")
    parser.add_argument("--nonce-state", type=Path, default=None,
                        help="File persisting the nonce counter across runs (overrides NONCE_STATE_FILE)")
    parser.add_argument("--retries", type=_non_negative_int, default=None,
                        help="Retries for transient ingest failures (overrides DISPATCH_MAX_RETRIES)")
    parser.add_argument("--log-file", action="store_true",
                        help="Also write JSON logs under ./logs")
    parser.add_argument("--quiet", action="store_true",
                        help="Only log warnings and errors")
    parser.add_argument("-v", "--verbose", action="store_true",
                        help="Enable debug logging")
    return parser


def _modes(args: argparse.Namespace):
    if not args.gateway:
        if args.gateway_authenticate:
            raise ConfigError("--gateway-authenticate requires --gateway")
        return DispatchMode.DIRECT, AuthMode.DEVICE
    return DispatchMode.GATEWAY, AuthMode.GATEWAY if args.gateway_authenticate else AuthMode.DEVICE


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    if args.quiet:
        logger.setLevel(logging.WARNING)
    elif args.verbose:
        logger.setLevel(logging.DEBUG)
    if args.log_file:
        configure_file_logger("ingest", logger)

    load_env_files()

    try:
        cfg = load_config()
        dispatch_mode, auth_mode = _modes(args)
        validate_for_mode(cfg, dispatch_mode, auth_mode)
        algorithm = canonicalize_algorithm(args.algorithm)
        config = PipelineConfig(
            fractional_bits=args.fractional_bits,
            word_width=args.word_width,
            dispatch_mode=dispatch_mode,
            auth_mode=auth_mode,
            interval_ms=args.interval,
            count=args.count,
            algorithm=algorithm,
            overflow=OverflowPolicy(args.overflow),
            parse=ParsePolicy(args.parse),
            strict_header=args.strict_header,
            metadata=EventMetadata(metric=cfg["METRIC_NAME"], source=cfg["EVENT_SOURCE"] or None),
        )

        state = None
        if config.encrypts_locally:
            key, seed = resolve_device_material(cfg, algorithm)
            state_path = args.nonce_state or (Path(cfg["NONCE_STATE_FILE"]) if cfg["NONCE_STATE_FILE"] else None)
            store = CounterStore(state_path, reserve=cfg["NONCE_RESERVE"]) if state_path else None
            if store is None:
                if requires_nonce_state(cfg):
                    raise ConfigError(
                        "DEVICE_KEY/DEVICE_NONCE_SEED are reused across runs; "
                        "set NONCE_STATE_FILE or --nonce-state"
                    )
                logger.warning("No nonce state file; ephemeral dev key material is valid for this process only")
            state = DeviceState(nonce_seed=seed, key=key, store=store)

        token_provider = None
        if auth_mode is AuthMode.DEVICE:
            token_provider = TokenProvider(
                cfg["CLIENT_ID"],
                cfg["CLIENT_SECRET"],
                cfg["TOKEN_ENDPOINT"],
                cfg["AUTH_ENDPOINT"] or None,
                timeout_s=cfg["HTTP_TIMEOUT_S"],
            )

        dispatcher = IngestDispatcher(
            endpoint_for(cfg, dispatch_mode),
            auth_mode,
            token_provider,
            timeout_s=cfg["HTTP_TIMEOUT_S"],
            max_retries=cfg["DISPATCH_MAX_RETRIES"] if args.retries is None else args.retries,
            backoff_initial_s=cfg["DISPATCH_BACKOFF_INITIAL_S"],
            backoff_max_s=cfg["DISPATCH_BACKOFF_MAX_S"],
        )

        dataset = open_dataset(args.dataset, strict_header=args.strict_header)
    except (ConfigError, InputFormatError, ValueError) as exc:
        logger.error(f"Startup failed: {exc}")
        return EXIT_CONFIG

    logger.info(f"Amount of samples: {dataset.declared_count}.")
    logger.info(f"Sample length: {dataset.declared_length}.")

    with dataset, BenchmarkRecorder.open(args.bench_dir, config.interval_ms, config.count,
                                         dispatch_mode, auth_mode) as recorder:
        try:
            report = run_pipeline(config, dataset, dispatcher, recorder, state,
                                  context_id=context_id(cfg))
        except SampleFailure as exc:
            logger.error(
                f"Sample {exc.index} failed: {exc.cause}",
                extra={"sample": exc.index, "sample_hex": exc.sample.hex(),
                       "error_type": type(exc.cause).__name__},
            )
            return EXIT_FATAL
        except InputFormatError as exc:
            logger.error(f"Dataset rejected: {exc}")
            return EXIT_CONFIG

        logger.info("Run complete", extra={
            "samples": report.samples,
            "skipped_tokens": report.skipped_tokens,
            "retries": report.retries,
            "bench_file": str(recorder.path),
            "stages": recorder.summary(),
            "metrics": METRICS.snapshot(),
        })
    return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
