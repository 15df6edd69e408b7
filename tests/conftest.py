"""Global pytest configuration."""

from __future__ import annotations

import os
import tempfile
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parent.parent

# Point config at the repository data dir and keep logs out of the tree.
os.environ["DATA_DIR"] = str(ROOT / "data")
os.environ.setdefault("LOG_DIR", tempfile.mkdtemp(prefix="reach-checker-logs-"))


@pytest.fixture(autouse=True)
def _fresh_stores():
    from config.loader import ConfigStore
    from sources.domain_lists import ListStore
    from sources.snapshot import SnapshotStore

    ConfigStore.reset()
    ListStore.clear()
    SnapshotStore.clear()
    yield
    ConfigStore.reset()
    ListStore.clear()
    SnapshotStore.clear()
