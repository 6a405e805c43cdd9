"""Runtime context shared by the ledger, the sale engine, and the CLI."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from . import data_manager, log
from .constants import EXPECTED_SCHEMA_VERSION


@dataclass(frozen=True)
class RuntimeContext:
    """Container for configuration and database handles used by the BLL."""

    settings: data_manager.ConfigSettings
    engine: Engine
    session_factory: sessionmaker[Session]

    def unit_of_work(self):
        """Open a unit of work bounded by the configured lock timeout."""
        return data_manager.unit_of_work(
            self.session_factory,
            lock_timeout_seconds=self.settings.lock_timeout_seconds,
        )


def build_runtime_context(settings: data_manager.ConfigSettings) -> RuntimeContext:
    """Create the engine and session factory for already parsed settings."""
    engine = data_manager.create_engine_from_settings(settings)
    return RuntimeContext(
        settings=settings,
        engine=engine,
        session_factory=data_manager.create_session_factory(engine),
    )


def load_runtime_context(config_path: Optional[Path] = None) -> RuntimeContext:
    """Load configuration settings and open the database for the BLL.

    Resolves ``config.ini`` (searching upwards from the working directory when
    ``config_path`` is omitted), parses the settings, and builds the engine.
    Relative SQLite paths are anchored to the config file's directory.

    Args:
        config_path (Path | None): Optional override path for the configuration
            file.

    Returns:
        RuntimeContext: Context ready for ledger and sale operations.

    Raises:
        FileNotFoundError: If the configuration file cannot be located.
        KeyError: When mandatory configuration options are missing.
    """
    located_config = data_manager.find_config_file(config_path)
    resolved_config = Path(located_config).expanduser().resolve()
    parser = data_manager.read_config(resolved_config)
    settings = data_manager.parse_settings(parser, base_path=resolved_config.parent)
    context = build_runtime_context(settings)
    log.info("Loaded runtime context for store '%s'", settings.store_name)
    return context


def ensure_schema_version(context: RuntimeContext) -> None:
    """Validate that the configured schema version matches the code.

    Raises:
        RuntimeError: If the configuration declares another schema version.
    """
    if context.settings.schema_version != EXPECTED_SCHEMA_VERSION:
        log.error(
            "Schema mismatch: expected %s, found %s",
            EXPECTED_SCHEMA_VERSION,
            context.settings.schema_version,
        )
        raise RuntimeError(
            "Schema mismatch: expected %s, found %s"
            % (EXPECTED_SCHEMA_VERSION, context.settings.schema_version)
        )

    log.debug("Schema version '%s' validated", context.settings.schema_version)


def dispose_context(context: RuntimeContext) -> None:
    """Release pooled connections held by the context's engine."""
    context.engine.dispose()
