import json, logging, sys, time
from pathlib import Path

_RESERVED = ("msg", "args", "exc_info", "exc_text", "stack_info", "stack_level", "created",
             "msecs", "relativeCreated", "levelno", "levelname", "pathname", "filename",
             "module", "lineno", "funcName", "thread", "threadName", "processName", "process",
             "taskName", "name", "message")

class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "ts": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime(record.created)),
            "level": record.levelname,
            "name": record.name,
            "msg": record.getMessage(),
        }
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        # Allow extra fields via record.__dict__ (filtered)
        for k, v in record.__dict__.items():
            if k in _RESERVED:
                continue
            try:
                json.dumps({k: v})
                payload[k] = v
            except (TypeError, ValueError):
                payload[k] = str(v)
        return json.dumps(payload)

def get_logger(name: str = "mpc_ingest") -> logging.Logger:
    # Module loggers ("mpc_ingest.x") carry no handlers and propagate to the
    # package logger, so level changes there apply everywhere.
    base = logging.getLogger(name.split(".", 1)[0])
    if not base.handlers:
        base.setLevel(logging.INFO)
        h = logging.StreamHandler(sys.stdout)
        h.setFormatter(JsonFormatter())
        base.addHandler(h)
        base.propagate = False
    return logging.getLogger(name)


def configure_file_logger(role: str, logger: logging.Logger | None = None, logs_dir: Path | None = None) -> Path:
    """Attach a JSON file handler and return log path."""

    active_logger = logger or get_logger()

    # Drop any previous file handlers we attached to avoid duplicate writes during tests.
    for handler in list(active_logger.handlers):
        if getattr(handler, "_ingest_file_handler", False):
            active_logger.removeHandler(handler)
            handler.close()

    logs_dir = Path(logs_dir or "logs")
    logs_dir.mkdir(parents=True, exist_ok=True)
    timestamp = time.strftime("%Y%m%d-%H%M%S", time.gmtime())
    path = logs_dir / f"{role}-{timestamp}.log"

    file_handler = logging.FileHandler(path, encoding="utf-8")
    file_handler.setFormatter(JsonFormatter())
    file_handler._ingest_file_handler = True  # type: ignore[attr-defined]
    active_logger.addHandler(file_handler)

    return path

# Very small metrics hook (no deps)
class Counter:
    def __init__(self): self.value = 0
    def inc(self, n: int = 1): self.value += n

class Gauge:
    def __init__(self): self.value = 0
    def set(self, v: float): self.value = v

class Metrics:
    def __init__(self):
        self.counters = {}
        self.gauges = {}
    def counter(self, name: str) -> Counter:
        self.counters.setdefault(name, Counter()); return self.counters[name]
    def gauge(self, name: str) -> Gauge:
        self.gauges.setdefault(name, Gauge()); return self.gauges[name]
    def snapshot(self) -> dict:
        return {
            "counters": {k: c.value for k, c in self.counters.items()},
            "gauges": {k: g.value for k, g in self.gauges.items()},
        }
    def reset(self) -> None:
        self.counters.clear()
        self.gauges.clear()

METRICS = Metrics()
