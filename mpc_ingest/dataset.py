"""
Sample dataset reader.

Layout:
    line 1   integer X, number of samples
    line 2   integer Y, vector length of each sample
    line 3+  one sample per line, Y whitespace-separated floating point numbers

X and Y are informational; the reader never stops early because of them.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import IO, Iterator, Optional

from mpc_ingest.exceptions import InputFormatError
from mpc_ingest.logging_utils import get_logger

logger = get_logger("mpc_ingest.dataset")

DEFAULT_DATASET = "ecg_dataset.txt"


def _readline(fh: IO[str], where: str) -> str:
    try:
        return fh.readline()
    except UnicodeDecodeError as exc:
        raise InputFormatError(f"Cannot read {where}: not valid text ({exc.reason} at byte {exc.start})")
    except OSError as exc:
        raise InputFormatError(f"Cannot read {where}: {exc}")


def _read_header_int(fh: IO[str], what: str) -> int:
    line = _readline(fh, what)
    if not line:
        raise InputFormatError(f"Cannot read {what}: file ended")
    try:
        value = int(line.strip())
    except ValueError:
        raise InputFormatError(f"Cannot read {what}: {line.strip()!r} is not an integer")
    if value < 0:
        raise InputFormatError(f"Cannot read {what}: negative value {value}")
    return value


@dataclass
class Dataset:
    """Open dataset positioned at the first sample line."""
    declared_count: int
    declared_length: int
    fh: IO[str] = field(repr=False)
    strict_header: bool = False
    path: Optional[Path] = None

    def __post_init__(self):
        self._mismatch_logged = False

    def _check_length(self, index: int, line: str) -> None:
        tokens = len(line.split())
        if tokens == self.declared_length:
            return
        if self.strict_header:
            raise InputFormatError(
                f"sample {index} has {tokens} values, header declares {self.declared_length}"
            )
        if not self._mismatch_logged:
            logger.warning("Sample length differs from header",
                           extra={"sample": index, "values": tokens, "declared": self.declared_length})
            self._mismatch_logged = True

    def __iter__(self) -> Iterator[str]:
        index = 0
        while True:
            raw = _readline(self.fh, f"sample {index}")
            if not raw:
                return
            line = raw.rstrip("\r\n")
            self._check_length(index, line)
            yield line
            index += 1

    def close(self) -> None:
        self.fh.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False


def read_dataset(fh: IO[str], strict_header: bool = False, path: Optional[Path] = None) -> Dataset:
    """Consume the two header lines of an open text stream."""
    count = _read_header_int(fh, "amount of samples")
    length = _read_header_int(fh, "sample length")
    logger.info("Dataset header", extra={"samples": count, "sample_length": length,
                                         "path": str(path) if path else None})
    return Dataset(declared_count=count, declared_length=length, fh=fh,
                   strict_header=strict_header, path=path)


def open_dataset(path, strict_header: bool = False) -> Dataset:
    path = Path(path)
    try:
        fh = open(path, encoding="utf-8")
    except OSError as exc:
        raise InputFormatError(f"Cannot open dataset {path}: {exc}")
    try:
        return read_dataset(fh, strict_header=strict_header, path=path)
    except BaseException:
        fh.close()
        raise
