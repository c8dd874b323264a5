"""
Canopy Runtime — wires config, database, runner and task managers together.

Lifecycle:
    runtime = CanopyRuntime(load_config("canopy.yaml"))
    runtime.startup()    # engine, session factory, runner, audit log
    ...
    runtime.shutdown()   # flush audit log, dispose the pool

The runtime is also a context manager (startup on enter, shutdown on exit).
"""

from __future__ import annotations

import logging
from typing import Any, Optional

from sqlalchemy.orm import sessionmaker

from canopy.db.session import dispose, init_db
from canopy.engine.config import CanopyConfig, get_config
from canopy.engine.logging import AsyncLogQueue, init_audit_log, shutdown_audit_log
from canopy.engine.runner import TaskRunner
from canopy.items.manager import ItemTaskManager
from canopy.memberships.manager import ItemMembershipTaskManager
from canopy.services import Services

logger = logging.getLogger("canopy.runtime")


class CanopyRuntime:
    """
    Single entry point for running tasks against one database.

    Args:
        config:        Validated config; the loaded ``canopy.yaml`` if omitted.
        create_tables: Create the schema on startup (tests, first boot).
    """

    def __init__(self, config: Optional[CanopyConfig] = None, create_tables: bool = False):
        self.config = config or get_config()
        self._create_tables = create_tables

        # Subsystems (initialized in startup())
        self.session_factory: Optional[sessionmaker] = None
        self.services: Optional[Services] = None
        self.runner: Optional[TaskRunner] = None
        self.log_queue: Optional[AsyncLogQueue] = None

        self.items = ItemTaskManager()
        self.memberships = ItemMembershipTaskManager()

        self._started = False

    # -----------------------------------------------------------------------
    # Lifecycle
    # -----------------------------------------------------------------------

    def startup(self) -> None:
        if self._started:
            logger.warning("Runtime already started")
            return

        logger.info(f"Starting {self.config.name} ({self.config.environment})...")
        logging.getLogger("canopy").setLevel(self.config.logging.level)

        # 1. Database
        db = self.config.database
        self.session_factory = init_db(
            db.url,
            create_tables=self._create_tables,
            pool_size=db.pool_size,
            max_overflow=db.max_overflow,
            pool_timeout=db.pool_timeout,
            pool_recycle=db.pool_recycle,
            pool_pre_ping=db.pool_pre_ping,
            echo=db.echo,
        )

        # 2. Runner
        self.services = Services(limits=self.config.limits)
        self.runner = TaskRunner(self.session_factory, services=self.services)

        # 3. Audit log
        if self.config.logging.audit:
            queue = self.config.logging.async_queue
            self.log_queue = init_audit_log(
                log_dir=self.config.logging.directory,
                flush_interval_ms=queue.flush_interval_ms,
                flush_batch_size=queue.flush_batch_size,
                max_queue_size=queue.max_queue_size,
            )

        self._started = True
        logger.info("Canopy runtime started")

    def shutdown(self) -> None:
        if not self._started:
            return

        if self.log_queue is not None:
            shutdown_audit_log()
            self.log_queue = None
        dispose(self.session_factory)

        self._started = False
        logger.info("Canopy runtime shut down")

    @property
    def started(self) -> bool:
        return self._started

    def __enter__(self) -> "CanopyRuntime":
        self.startup()
        return self

    def __exit__(self, *exc: Any) -> None:
        self.shutdown()


# ---------------------------------------------------------------------------
# Module-level singleton
# ---------------------------------------------------------------------------

_runtime: Optional[CanopyRuntime] = None


def get_runtime() -> CanopyRuntime:
    """
    Get the global runtime.

    Raises RuntimeError if ``init_runtime()`` has not been called.
    """
    if _runtime is None:
        raise RuntimeError("Canopy runtime not initialized. Call init_runtime() first.")
    return _runtime


def init_runtime(**kwargs: Any) -> CanopyRuntime:
    """Create (not start) the global runtime; kwargs go to ``CanopyRuntime``."""
    global _runtime
    _runtime = CanopyRuntime(**kwargs)
    return _runtime
