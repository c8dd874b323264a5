"""
Canopy Test Suite — Shared fixtures and configuration.

Run:  pytest tests/ -v

Engine tests run against in-memory SQLite (single shared connection,
foreign keys on, SAVEPOINT-capable); nothing touches PostgreSQL.
"""

from __future__ import annotations

from typing import Any, Callable, Optional

import pytest

from canopy.db.session import transaction_scope
from canopy.engine.config import CanopyConfig, DatabaseConfig, LimitsConfig, LoggingConfig
from canopy.engine.task import Actor
from canopy.items.models import Item
from canopy.runtime import CanopyRuntime


# ---------------------------------------------------------------------------
# Isolation — reset module-level singletons between tests
# ---------------------------------------------------------------------------

@pytest.fixture(autouse=True)
def _isolate_singletons():
    import canopy.engine.config as cfg_mod
    import canopy.engine.logging as log_mod

    cfg_mod._config = None
    yield
    cfg_mod._config = None
    log_mod.shutdown_audit_log()


# ---------------------------------------------------------------------------
# Actors
# ---------------------------------------------------------------------------

@pytest.fixture
def alice() -> Actor:
    return Actor(id="alice", name="Alice")


@pytest.fixture
def bob() -> Actor:
    return Actor(id="bob", name="Bob")


@pytest.fixture
def carol() -> Actor:
    return Actor(id="carol", name="Carol")


# ---------------------------------------------------------------------------
# Runtime against in-memory SQLite
# ---------------------------------------------------------------------------

@pytest.fixture
def limits() -> LimitsConfig:
    """Default limits; tests needing tighter ones override this fixture."""
    return LimitsConfig()


@pytest.fixture
def runtime(limits):
    config = CanopyConfig(
        environment="test",
        database=DatabaseConfig(url="sqlite://"),
        limits=limits,
        logging=LoggingConfig(audit=False),
    )
    rt = CanopyRuntime(config, create_tables=True)
    rt.startup()
    yield rt
    rt.shutdown()


@pytest.fixture
def runner(runtime):
    return runtime.runner


@pytest.fixture
def query(runtime) -> Callable[[Callable[[Any], Any]], Any]:
    """
    Run ``fn(session)`` in a short transaction of its own.

    The in-memory database has a single connection, so inspection must not
    hold a transaction open while the runner works.
    """

    def _query(fn):
        with transaction_scope(runtime.session_factory) as scope:
            return fn(scope.session)

    return _query


@pytest.fixture
def create_item(runtime) -> Callable[..., Item]:
    """Create an item through the runner: ``create_item(actor, "name", parent=item)``."""

    def _create(actor: Actor, name: str = "item", parent: Optional[Item] = None, **fields: Any) -> Item:
        data = {"name": name, **fields}
        task = runtime.items.create_create_task(actor, data, parent_id=parent.id if parent else None)
        return runtime.runner.run_single(task)

    return _create


@pytest.fixture
def get_item(runtime, query) -> Callable[[str], Optional[Item]]:
    """Load an item straight from the store (no permission check)."""

    def _get(item_id: str) -> Optional[Item]:
        return query(lambda session: runtime.services.items.get(session, item_id))

    return _get
