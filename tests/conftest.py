from __future__ import annotations

import sys
from pathlib import Path

import pytest

# Ensure the repo root is on sys.path so `import record_store` works without installing.
ROOT_DIR = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(ROOT_DIR))


@pytest.fixture
def settings():
    from record_store.settings import StoreSettings

    return StoreSettings(table_name="records-test", environment="test")


@pytest.fixture
def backend():
    from record_store.db.memory import InMemoryBackend

    return InMemoryBackend()


@pytest.fixture
def store(backend, settings):
    from record_store.store import RecordStore

    return RecordStore(backend=backend, settings=settings)
