# tests/conftest.py
"""Shared test fixtures.

Fixture philosophy: every test gets a fresh in-memory store
(function-scoped), and collaborators are built through the factory
functions in tests.fixtures.doubles so each test controls exactly the
state it needs.

Hypothesis Configuration:
- "ci" profile: Fast tests for CI (100 examples) - default
- "nightly" profile: Thorough tests (1000 examples)
- "debug" profile: Minimal tests with verbose output (10 examples)

Set profile via environment variable:
    HYPOTHESIS_PROFILE=nightly pytest tests/
"""

import os
from collections.abc import Iterator

import pytest
import structlog
from hypothesis import Phase, Verbosity, settings

from telemark.api import Telemetry
from telemark.core.store.database import TelemetryDB
from telemark.core.store.recorder import StoreRecorder
from telemark.diagnostics.channel import DiagnosticChannel
from tests.fixtures.doubles import FixedClock, RecordingExporter, make_telemetry


@pytest.fixture
def db() -> Iterator[TelemetryDB]:
    """Fresh in-memory store per test."""
    database = TelemetryDB.in_memory()
    yield database
    database.close()


@pytest.fixture
def recorder(db: TelemetryDB) -> StoreRecorder:
    return StoreRecorder(db)


@pytest.fixture
def diagnostics(db: TelemetryDB) -> DiagnosticChannel:
    return DiagnosticChannel(db, mirror_to_log=False)


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock()


@pytest.fixture
def exporter() -> RecordingExporter:
    return RecordingExporter()


@pytest.fixture
def telemetry(
    db: TelemetryDB,
    exporter: RecordingExporter,
    diagnostics: DiagnosticChannel,
    clock: FixedClock,
) -> Iterator[Telemetry]:
    """Async-mode Telemetry over the in-memory store with a recording exporter."""
    instance = make_telemetry(db, exporter=exporter, diagnostics=diagnostics, clock=clock)
    yield instance
    instance.close()


@pytest.fixture(autouse=True)
def _clear_structlog_context() -> Iterator[None]:
    """Context store bindings must not leak between tests."""
    structlog.contextvars.clear_contextvars()
    yield
    structlog.contextvars.clear_contextvars()


# =============================================================================
# Hypothesis Configuration
# =============================================================================

settings.register_profile(
    "ci",
    max_examples=100,
    phases=[Phase.explicit, Phase.reuse, Phase.generate, Phase.shrink],
    deadline=None,
)

settings.register_profile(
    "nightly",
    max_examples=1000,
    phases=[Phase.explicit, Phase.reuse, Phase.generate, Phase.shrink],
    deadline=None,
)

settings.register_profile(
    "debug",
    max_examples=10,
    verbosity=Verbosity.verbose,
    phases=[Phase.explicit, Phase.reuse, Phase.generate, Phase.shrink],
    deadline=None,
)

settings.load_profile(os.getenv("HYPOTHESIS_PROFILE", "ci"))
