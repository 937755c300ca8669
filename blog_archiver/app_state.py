"""Process-wide application state.

Holds the configuration, the database connection and the import
orchestrator. Created once, on first use, from inside the running event
loop, and torn down by close_app_state().
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional

import aiosqlite

from blog_archiver.config import ServerConfig, get_config
from blog_archiver.models.schemas import SourceKind
from blog_archiver.services.importers import IMPORTERS, BaseImporter, ProgressSink
from blog_archiver.services.orchestrator import ImporterFactory, ImportOrchestrator
from blog_archiver.storage import database

logger = logging.getLogger(__name__)


@dataclass
class AppState:
    config: ServerConfig
    db: aiosqlite.Connection
    orchestrator: ImportOrchestrator


def make_importer_factory(db: aiosqlite.Connection, config: ServerConfig) -> ImporterFactory:
    """Bind importers to the shared connection and configuration."""

    def factory(source: SourceKind, progress: ProgressSink) -> BaseImporter:
        return IMPORTERS[source](db, config, progress)

    return factory


async def create_app_state(
    config: ServerConfig,
    db: aiosqlite.Connection,
) -> AppState:
    orchestrator = ImportOrchestrator(
        make_importer_factory(db, config),
        completed_ttl=config.completed_job_ttl,
        log_cap=config.job_log_cap,
    )
    await orchestrator.init()
    return AppState(config=config, db=db, orchestrator=orchestrator)


_state: Optional[AppState] = None
_state_lock = asyncio.Lock()


async def get_app_state() -> AppState:
    """Return the application state, initialising it on first call."""
    global _state

    async with _state_lock:
        if _state is None:
            config = get_config()
            db = await database.get_database()
            _state = await create_app_state(config, db)
            logger.info(f"Application state initialised (database: {config.db_path})")
    return _state


def set_app_state(state: Optional[AppState]) -> None:
    """Install a prebuilt state (used by tests and embedding applications)."""
    global _state
    _state = state


async def close_app_state() -> None:
    global _state

    if _state is None:
        return
    await _state.orchestrator.close()
    await database.close_database()
    _state = None
