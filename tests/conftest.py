"""
Pytest config.

Local imports like `import gatehouse` rely on the repo root being on sys.path. When a
global `pytest` entrypoint is used that doesn't happen reliably during collection, so we
pin it here.
"""

from __future__ import annotations

import sys
from pathlib import Path

import pytest


def _ensure_repo_root_on_syspath() -> None:
    repo_root = Path(__file__).resolve().parents[1]
    repo_root_str = str(repo_root)
    if repo_root_str not in sys.path:
        sys.path.insert(0, repo_root_str)
    tests_dir = str(Path(__file__).resolve().parent)
    if tests_dir not in sys.path:
        sys.path.insert(0, tests_dir)


_ensure_repo_root_on_syspath()


@pytest.fixture(autouse=True)
def _fresh_auth_config():
    """Config is cached process-wide; make sure env changes in one test don't leak."""
    from gatehouse.auth.config import load_auth_config

    load_auth_config.cache_clear()
    yield
    load_auth_config.cache_clear()
