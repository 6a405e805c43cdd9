"""Utility for initializing the stock ledger database.

The module doubles as a script (``stockledger-setup``) and as a library used
by tests or other tooling. Shared helpers keep the schema bootstrap logic
consistent regardless of the execution path.
"""

from __future__ import annotations

import argparse
from pathlib import Path
from typing import Sequence
import sys

from sqlalchemy import inspect
from sqlalchemy.exc import SQLAlchemyError

from . import data_manager, log
from .constants import TableName
from .runtime import RuntimeContext, build_runtime_context, dispose_context, ensure_schema_version

CONFIG_FILE = data_manager.CONFIG_FILE_NAME


def load_settings(config_path: Path) -> data_manager.ConfigSettings:
    """Read ``config.ini`` and produce :class:`~stockledger.data_manager.ConfigSettings`.

    Relative SQLite paths inside the config file are resolved against the
    config file's directory.
    """

    config_path = config_path.expanduser().resolve()
    parser = data_manager.read_config(config_path)
    return data_manager.parse_settings(parser, base_path=config_path.parent)


def existing_tables(context: RuntimeContext) -> list[str]:
    """Return the managed tables already present in the target database."""

    present = set(inspect(context.engine).get_table_names())
    return [table.value for table in TableName if table.value in present]


def create_database(context: RuntimeContext, *, overwrite: bool = False) -> list[str]:
    """Create every table of the stock ledger layout.

    When ``overwrite`` is ``False`` (the default) this function raises
    ``FileExistsError`` if any managed table already exists. With
    ``overwrite`` the existing tables, ledger history included, are dropped
    first.

    Returns:
        list[str]: Names of the managed tables after creation.
    """

    ensure_schema_version(context)
    found = existing_tables(context)
    if found and not overwrite:
        raise FileExistsError(
            f"Refusing to overwrite existing tables: {', '.join(found)}"
        )
    if found:
        data_manager.drop_schema(context.engine)
    data_manager.create_schema(context.engine)
    return existing_tables(context)


def run_from_config(config_path: Path, *, overwrite: bool = False) -> list[str]:
    """Convenience helper mirroring the CLI behavior."""

    settings = load_settings(config_path)
    context = build_runtime_context(settings)
    try:
        return create_database(context, overwrite=overwrite)
    finally:
        dispose_context(context)


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    """Parse CLI arguments for the setup script."""

    parser = argparse.ArgumentParser(
        prog="stockledger-setup",
        description="Initialize the stock ledger database",
    )
    parser.add_argument(
        "--config",
        default=CONFIG_FILE,
        help="Path to configuration file (default: config.ini)",
    )
    parser.add_argument(
        "--force",
        action="store_true",
        help="Drop and recreate the tables if they already exist.",
    )
    return parser.parse_args(argv)


def main(argv: Sequence[str] | None = None) -> int:
    """Entry point for the CLI script."""

    args = parse_args(argv)
    config_path = Path(args.config).expanduser().resolve()

    print("--- Stock Ledger Setup Script ---")
    print(f"Using configuration: {config_path}")

    try:
        tables = run_from_config(config_path, overwrite=args.force)
    except FileNotFoundError as exc:
        print(f"\n[ERROR] {exc}")
        return 1
    except (KeyError, ValueError, RuntimeError) as exc:
        print(f"\n[ERROR] {exc}")
        return 1
    except FileExistsError as exc:
        print(f"\n[ERROR] {exc}")
        print("Run with --force to drop the existing tables if appropriate.")
        return 1
    except SQLAlchemyError as exc:
        log.error("Schema creation failed: %s", exc)
        print(f"\n[ERROR] Unable to create schema: {exc}")
        return 1

    print(f"\n[SUCCESS] Created tables: {', '.join(tables)}.")
    return 0


if __name__ == "__main__":  # pragma: no cover - exercised via manual runs
    sys.exit(main())
