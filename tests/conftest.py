"""Shared fixtures for the macro humanizer tests."""

import os
import random

import pytest

from macro_humanizer.cache import ContentCache, MemoryCacheBackend
from macro_humanizer.command_model import delay, keyboard
from macro_humanizer.database import DatabaseConnector
from macro_humanizer.engine import MacroEngine
from macro_humanizer.exporter import MacroFileStore
from macro_humanizer.job_scheduler import JobScheduler
from macro_humanizer.pattern_storage import PatternStorage
from macro_humanizer.profile_storage import ProfileStorage


@pytest.fixture
def db():
    connector = DatabaseConnector("sqlite://")
    yield connector
    connector.dispose()


@pytest.fixture
def rng():
    return random.Random(1234)


@pytest.fixture
def pattern_storage(db):
    storage = PatternStorage(db)
    storage.initialize_schema()
    return storage


@pytest.fixture
def profile_storage(db):
    storage = ProfileStorage(db)
    storage.initialize_schema()
    return storage


@pytest.fixture
def file_store(tmp_path):
    return MacroFileStore(str(tmp_path / "macros"))


@pytest.fixture
def engine(db, file_store, rng):
    macro_engine = MacroEngine(
        db,
        file_store,
        cache=ContentCache(MemoryCacheBackend()),
        scheduler=JobScheduler(),
        rng=rng,
    )
    macro_engine.initialize()
    return macro_engine


@pytest.fixture
def typing_sequence():
    return [
        keyboard("h"), delay(50), keyboard("h", "keyup"), delay(30),
        keyboard("i"), delay(45), keyboard("i", "keyup"),
    ]


@pytest.fixture
def write_macro(file_store):
    """Write raw macro bytes into the store and return the file id."""
    def _write(name: str, content: bytes) -> str:
        with open(os.path.join(file_store.storage_dir, name), "wb") as f:
            f.write(content)
        return name
    return _write
