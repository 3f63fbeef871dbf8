"""
Sequential encode -> protect -> dispatch driver.

A single worker handles samples strictly in file order. DeviceState is
mutated once per protected sample in that same order; any fatal condition
aborts the run with a SampleFailure naming the sample and its bytes.
"""

import time
from dataclasses import dataclass, field
from typing import Callable, Iterable, Optional

from mpc_ingest.aead import DeviceState, ProtectionAlgorithm, protect
from mpc_ingest.benchmark import BenchmarkRecorder, StageTimer
from mpc_ingest.dispatch import (
    AuthMode,
    DispatchMode,
    DispatchOutcome,
    EventMetadata,
    IngestDispatcher,
)
from mpc_ingest.exceptions import (
    AeadError,
    ConfigError,
    CredentialError,
    DispatchError,
    SampleFailure,
    SequenceOverflow,
)
from mpc_ingest.fixed_point import (
    DEFAULT_FRACTIONAL_BITS,
    DEFAULT_WORD_WIDTH,
    OverflowPolicy,
    ParsePolicy,
    encode_line,
)
from mpc_ingest.logging_utils import get_logger

logger = get_logger("mpc_ingest.pipeline")


@dataclass(frozen=True)
class PipelineConfig:
    fractional_bits: int = DEFAULT_FRACTIONAL_BITS
    word_width: int = DEFAULT_WORD_WIDTH
    dispatch_mode: DispatchMode = DispatchMode.DIRECT
    auth_mode: AuthMode = AuthMode.DEVICE
    interval_ms: int = 1000
    count: int = 1000
    algorithm: ProtectionAlgorithm = ProtectionAlgorithm.AES_GCM_128
    overflow: OverflowPolicy = OverflowPolicy.SATURATE
    parse: ParsePolicy = ParsePolicy.SKIP
    strict_header: bool = False
    metadata: EventMetadata = field(default_factory=EventMetadata)

    def __post_init__(self):
        if self.dispatch_mode is DispatchMode.DIRECT and self.auth_mode is not AuthMode.DEVICE:
            raise ConfigError("direct ingest requires the device to authenticate")
        if self.count < 1:
            raise ConfigError(f"count must be >= 1, got {self.count}")
        if self.interval_ms < 0:
            raise ConfigError(f"interval_ms must be >= 0, got {self.interval_ms}")
        if self.word_width not in (16, 32, 64):
            raise ConfigError(f"word_width must be 16, 32 or 64, got {self.word_width}")
        if not (0 <= self.fractional_bits < self.word_width):
            raise ConfigError(f"fractional_bits must be in 0..{self.word_width - 1}")

    @property
    def encrypts_locally(self) -> bool:
        return self.dispatch_mode is DispatchMode.DIRECT

    @property
    def destination_label(self) -> str:
        return "gateway" if self.dispatch_mode is DispatchMode.GATEWAY else "MOZAIK"


@dataclass
class RunReport:
    samples: int = 0
    skipped_tokens: int = 0
    retries: int = 0
    last_outcome: Optional[DispatchOutcome] = None


_SAMPLE_ERRORS = (ValueError, OSError, AeadError, SequenceOverflow, CredentialError, DispatchError)


def run_pipeline(
    config: PipelineConfig,
    samples: Iterable[str],
    dispatcher: IngestDispatcher,
    recorder: BenchmarkRecorder,
    state: Optional[DeviceState] = None,
    context_id: str = "",
    sleep: Callable[[float], None] = time.sleep,
) -> RunReport:
    """Process up to `config.count` sample lines in order."""
    if config.encrypts_locally:
        if state is None:
            raise ConfigError("direct ingest requires device crypto state")
        if not context_id:
            raise ConfigError("direct ingest requires a context id")

    report = RunReport()
    lines = iter(samples)
    timer = StageTimer()

    for index, line in enumerate(lines):
        read_us = timer.lap()
        sample = b""
        try:
            encoded = encode_line(line, config.fractional_bits, config.word_width,
                                  config.overflow, config.parse)
            sample = encoded.data
            report.skipped_tokens += encoded.skipped

            if config.encrypts_locally:
                payload = protect(context_id, state, config.algorithm, sample)
            else:
                payload = sample
            encrypt_us = timer.lap()

            outcome = dispatcher.dispatch(config.dispatch_mode, payload, config.metadata)
            ingest_us = timer.lap()
        except _SAMPLE_ERRORS as exc:
            raise SampleFailure(index, sample, exc) from exc

        recorder.record(index, read_us, encrypt_us, ingest_us)
        report.samples += 1
        report.retries += outcome.attempts - 1
        report.last_outcome = outcome

        logger.info(
            f"Sample {index} ingested at {outcome.server_date}: {outcome.status}, via {config.destination_label}",
            extra={"sample": index, "status": outcome.status, "bytes": len(payload),
                   "read_us": read_us, "encrypt_us": encrypt_us, "ingest_us": ingest_us},
        )

        if index + 1 >= config.count:
            break

        sleep(config.interval_ms / 1000.0)
        timer = StageTimer()

    return report
