"""Pytest configuration for test discovery, env, and fixtures.

This file ensures that:
- `src/` is importable
- PostgreSQL integration tests can read connection settings from `conf/secrets.yml`
"""

from __future__ import annotations

import os
import sys
from pathlib import Path

from omegaconf import OmegaConf

# Ensure src directory is in path for imports
repo_root = Path(__file__).parent.parent
src_path = repo_root / "src"
if str(src_path) not in sys.path:
    sys.path.insert(0, str(src_path))

SECRET_KEYS = (
    "PGVECTOR_HOST",
    "PGVECTOR_PORT",
    "PGVECTOR_DATABASE",
    "PGVECTOR_USER",
    "PGVECTOR_PASSWORD",
)


def _load_secrets_into_env() -> None:
    """Load secrets from conf/secrets.yml into environment if not set.

    Only sets variables that are currently unset to avoid overriding user-provided
    environment.
    """
    secrets_path = repo_root / "conf" / "secrets.yml"
    if not secrets_path.exists():
        return

    data = OmegaConf.to_container(OmegaConf.load(secrets_path)) or {}
    for key in SECRET_KEYS:
        if os.environ.get(key):
            continue
        value = data.get(key)
        if value:
            os.environ[key] = str(value)


def pytest_sessionstart(session: object) -> None:
    _load_secrets_into_env()
