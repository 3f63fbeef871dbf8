"""
Environment file loader for .env / .env.local files.

Reads key=value pairs from env files and populates os.environ
WITHOUT overwriting values that are already set (explicit env wins).
Supports # comments, blank lines, `export` prefixes and optional quoting.
"""

import os
from pathlib import Path
from typing import Optional


def _parse_env_file(path: Path) -> dict[str, str]:
    """Parse a .env-style file into a dict."""
    result: dict[str, str] = {}
    if not path.is_file():
        return result
    with open(path, encoding="utf-8") as fh:
        for line in fh:
            line = line.strip()
            if not line or line.startswith("#"):
                continue
            if line.startswith("export "):
                line = line[len("export "):].lstrip()
            if "=" not in line:
                continue
            key, _, value = line.partition("=")
            key = key.strip()
            value = value.strip()
            # Strip optional surrounding quotes
            if len(value) >= 2 and value[0] == value[-1] and value[0] in ('"', "'"):
                value = value[1:-1]
            result[key] = value
    return result


def load_env_files(base_dir: Optional[Path] = None, environ=None) -> dict[str, str]:
    """
    Load .env and .env.local from `base_dir` (default: working directory).

    - Existing env vars take precedence (never overwritten).
    - .env.local overrides .env (for site config).
    - Returns dict of all loaded key-value pairs (for debugging).
    """
    base_dir = Path(base_dir) if base_dir is not None else Path.cwd()
    target = os.environ if environ is None else environ

    loaded: dict[str, str] = {}
    for env_file in (base_dir / ".env", base_dir / ".env.local"):
        loaded.update(_parse_env_file(env_file))

    for key, value in loaded.items():
        if key not in target:
            target[key] = value

    return loaded
