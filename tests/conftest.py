"""
Shared fixtures for the cellar ledger tests.

Each test gets its own SQLite file under ``tmp_path`` unless DATABASE_URL
points somewhere else, so tests may commit freely.  Time is frozen at
START_TIME through a DeterministicClock.
"""

import json
import logging
import os
from datetime import datetime, timezone
from decimal import Decimal
from io import StringIO
from itertools import count
from uuid import uuid4

import pytest

from cellar_config import get_active_config
from cellar_kernel.db import engine as db_engine
from cellar_kernel.db.immutability import (
    register_immutability_listeners,
    unregister_immutability_listeners,
)
from cellar_kernel.domain.clock import DeterministicClock
from cellar_kernel.domain.composition import BaseFruitSource
from cellar_kernel.logging_config import (
    LogContext,
    StructuredFormatter,
    configure_logging,
    reset_logging,
)
from cellar_services.ledger import CellarLedger
from cellar_services.orchestrator import CellarOrchestrator

START_TIME = datetime(2026, 3, 15, 12, 0, 0, tzinfo=timezone.utc)

_ACTOR = uuid4()


def pytest_configure(config):
    config.addinivalue_line("markers", "postgres: needs DATABASE_URL pointing at PostgreSQL")


@pytest.fixture(scope="session", autouse=True)
def _json_logging():
    reset_logging()
    configure_logging(level=logging.DEBUG)
    yield
    reset_logging()


@pytest.fixture(autouse=True)
def _fresh_log_context():
    LogContext.clear()
    yield
    LogContext.clear()


@pytest.fixture
def captured_logs():
    """Returns a callable giving every cellar_kernel record so far as a dict."""
    buffer = StringIO()
    handler = logging.StreamHandler(buffer)
    handler.setFormatter(StructuredFormatter())
    kernel_logger = logging.getLogger("cellar_kernel")
    kernel_logger.addHandler(handler)

    def records() -> list[dict]:
        return [json.loads(line) for line in buffer.getvalue().splitlines() if line]

    yield records
    kernel_logger.removeHandler(handler)


# -- database ---------------------------------------------------------------


@pytest.fixture
def engine(tmp_path):
    url = os.environ.get("DATABASE_URL") or f"sqlite:///{tmp_path / 'cellar.db'}"
    eng = db_engine.init_engine_from_url(url)
    db_engine.drop_tables()
    db_engine.create_tables()
    register_immutability_listeners()
    yield eng
    unregister_immutability_listeners()
    db_engine.reset_engine()


@pytest.fixture
def session_factory(engine):
    return db_engine.get_session_factory()


@pytest.fixture
def session(session_factory):
    """Service-level session; services only flush, tests decide whether to commit."""
    with session_factory() as sess:
        yield sess
        sess.rollback()


# -- wiring -------------------------------------------------------------------


@pytest.fixture
def deterministic_clock():
    return DeterministicClock(START_TIME)


@pytest.fixture
def settings():
    return get_active_config()


@pytest.fixture
def test_actor_id():
    return _ACTOR


@pytest.fixture
def orchestrator(session, settings, deterministic_clock):
    return CellarOrchestrator(session, settings, deterministic_clock)


@pytest.fixture
def ledger(session_factory, settings, deterministic_clock):
    return CellarLedger(session_factory, _ACTOR, settings, deterministic_clock)


# -- factories ----------------------------------------------------------------


@pytest.fixture
def create_vessel(orchestrator, test_actor_id):
    """register_vessel with defaults; unnamed vessels become "Tank 1", "Tank 2", ..."""
    numbers = count(1)

    def make(capacity="200", unit="L", name=None, max_pressure_psi=None):
        return orchestrator.vessels.register_vessel(
            name or f"Tank {next(numbers)}",
            Decimal(str(capacity)),
            unit,
            test_actor_id,
            max_pressure_psi=max_pressure_psi,
        )

    return make


@pytest.fixture
def create_batch(orchestrator, create_vessel, test_actor_id):
    """Fill a vessel with pressed juice; returns ``(batch, vessel)``."""

    def make(volume="120", vessel=None, capacity="200", press_run="PR-1", **options):
        target = vessel or create_vessel(capacity=capacity)
        batch = orchestrator.batches.create_batch(
            BaseFruitSource(press_run),
            target.id,
            Decimal(str(volume)),
            "L",
            test_actor_id,
            **options,
        )
        return batch, target

    return make
