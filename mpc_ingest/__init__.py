"""
Device-side MPC sample ingest.

    mpc_ingest/
    ├── fixed_point.py    # float samples -> little-endian fixed-point words
    ├── aead.py           # nonce-safe AEAD protection + persisted counter
    ├── auth.py           # OAuth2 bearer token cache
    ├── dispatch.py       # event shapes + HTTP delivery with bounded retry
    ├── benchmark.py      # per-stage timing log
    ├── dataset.py        # sample dataset reader
    ├── pipeline.py       # sequential encode -> protect -> dispatch driver
    ├── config.py         # defaults, env overrides, validation
    ├── env_loader.py     # .env / .env.local loader
    ├── logging_utils.py  # JSON logging + in-process counters
    └── run_ingest.py     # CLI entrypoint
"""

__version__ = "0.1.0"
