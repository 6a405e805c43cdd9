"""Shared pytest fixtures and utilities for Stock Ledger tests."""

from __future__ import annotations

import argparse
import sys
import uuid
from dataclasses import dataclass
from decimal import Decimal
from pathlib import Path
from typing import Callable, Iterator

import pytest

# Ensure source packages are importable without installation.
PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_DIR = PROJECT_ROOT / "src"

if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from stockledger import catalog, cli, constants, data_manager, runtime  # noqa: E402

DEFAULT_SCHEMA_VERSION = constants.EXPECTED_SCHEMA_VERSION
DATABASE_FILE_NAME = "stockledger.db"
_CONFIG_TEMPLATE = (
    "[System]\n"
    "DatabaseUrl = {database_url}\n"
    "StoreName = {store_name}\n"
    "SchemaVersion = {schema_version}\n\n"
    "[Sales]\n"
    "MaxRetries = {max_retries}\n"
    "RetryBackoffSeconds = {retry_backoff}\n"
    "LockTimeoutSeconds = {lock_timeout}\n"
)


@dataclass(frozen=True)
class ConfigBundle:
    """Container bundling together config metadata for tests."""

    directory: Path
    config_path: Path
    database_path: Path
    schema_version: str
    store_name: str


@pytest.fixture(scope="session", autouse=True)
def _restore_sys_path() -> Iterator[None]:
    """Ensure sys.path modifications are undone after the test session."""

    original = sys.path.copy()
    try:
        yield
    finally:
        sys.path[:] = original


@pytest.fixture
def config_factory(tmp_path: Path) -> Callable[..., ConfigBundle]:
    """Provide a callable that writes config.ini bundles backed by SQLite files."""

    def _create_config(
        *,
        make_relative: bool = False,
        store_name: str = "Test Store",
        schema_version: str = DEFAULT_SCHEMA_VERSION,
        max_retries: int = 3,
        retry_backoff: str = "0.01",
        lock_timeout: str = "10",
    ) -> ConfigBundle:
        bundle_dir = tmp_path / f"bundle_{uuid.uuid4().hex}"
        bundle_dir.mkdir(parents=True, exist_ok=True)
        database_path = bundle_dir / DATABASE_FILE_NAME
        database_entry = DATABASE_FILE_NAME if make_relative else str(database_path)
        config_path = bundle_dir / "config.ini"
        config_path.write_text(
            _CONFIG_TEMPLATE.format(
                database_url=f"sqlite:///{database_entry}",
                store_name=store_name,
                schema_version=schema_version,
                max_retries=max_retries,
                retry_backoff=retry_backoff,
                lock_timeout=lock_timeout,
            )
        )
        return ConfigBundle(
            directory=bundle_dir,
            config_path=config_path,
            database_path=database_path,
            schema_version=schema_version,
            store_name=store_name,
        )

    return _create_config


@pytest.fixture
def config_file(config_factory: Callable[..., ConfigBundle]) -> Path:
    """Convenience fixture returning only the config path."""

    return config_factory().config_path


@pytest.fixture
def runtime_context(config_file: Path) -> Iterator[runtime.RuntimeContext]:
    """Load the runtime context through the public API on a fresh schema."""

    context = runtime.load_runtime_context(config_file)
    runtime.ensure_schema_version(context)
    data_manager.create_schema(context.engine)
    try:
        yield context
    finally:
        runtime.dispose_context(context)


@pytest.fixture
def make_product(runtime_context: runtime.RuntimeContext) -> Callable[..., data_manager.ProductRecord]:
    """Factory registering products with a unique SKU and opening stock."""

    def _make_product(
        *,
        opening_stock: int = 0,
        price: str = "9.99",
        sku: str | None = None,
        name: str = "Widget",
    ) -> data_manager.ProductRecord:
        return catalog.register_product(
            runtime_context,
            sku=sku or f"SKU-{uuid.uuid4().hex[:8]}",
            name=name,
            price=Decimal(price),
            cost_price=Decimal("1.00"),
            opening_stock=opening_stock,
        )

    return _make_product


@pytest.fixture
def user(runtime_context: runtime.RuntimeContext) -> data_manager.UserRecord:
    """Register a staff user that sales can be stamped with."""

    return catalog.register_user(
        runtime_context,
        email=f"clerk-{uuid.uuid4().hex[:8]}@example.com",
        full_name="Store Clerk",
    )


# ---------------------------------------------------------------------------
# CLI layer fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def cli_parser() -> argparse.ArgumentParser:
    """Return a fresh CLI parser instance for tests."""

    return argparse.ArgumentParser(prog="stockledger-cli", description="Stock Ledger CLI")


@pytest.fixture
def subparsers_action(
    cli_parser: argparse.ArgumentParser,
) -> argparse._SubParsersAction[argparse.ArgumentParser]:
    """Return the subparser action used to register commands."""

    return cli_parser.add_subparsers(dest="command")


@pytest.fixture
def command_spec_iterable() -> list[cli.CommandSpec]:
    """Provide a list of command specs for indexing tests."""

    def _make_spec(name: str) -> cli.CommandSpec:
        return cli.CommandSpec(
            name,
            f"{name} help",
            lambda subparsers: subparsers.add_parser(name),
            lambda *_: 0,
        )

    return [_make_spec("alpha"), _make_spec("beta"), _make_spec("gamma")]
