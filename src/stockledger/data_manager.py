"""Data access layer for the stock ledger.

This module provides low-level helpers that read from and write to the
relational store. Business rules belong elsewhere.

The public API is designed around three responsibilities:

1. Configuration handling: finding and parsing ``config.ini``.
2. Database lifecycle: building the engine, creating the schema, and opening
   units of work that commit or roll back as a whole.
3. Row operations: locking and loading rows, appending ledger entries and
   order rows, and converting ORM rows into immutable records.
"""


from __future__ import annotations

import configparser
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import Decimal
from pathlib import Path
from typing import Dict, Iterable, Iterator, Optional, Sequence

from sqlalchemy import create_engine, event, func, select, text
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session, selectinload, sessionmaker

from . import log
from .constants import MONEY_QUANTUM
from .errors import Conflict, ValidationError
from .models import Base, Category, LedgerEntry, Product, SalesOrder, SalesOrderLine, User


CONFIG_FILE_NAME = "config.ini"
DEFAULT_MAX_RETRIES = 3
DEFAULT_RETRY_BACKOFF_SECONDS = 0.05
DEFAULT_LOCK_TIMEOUT_SECONDS = 5.0

# serialization_failure, deadlock_detected, lock_not_available
CONFLICT_SQLSTATES = frozenset({"40001", "40P01", "55P03"})


@dataclass(frozen=True)
class ConfigSettings:
    """Typed representation of the ``config.ini`` settings we care about."""

    database_url: str
    store_name: str
    schema_version: str
    max_retries: int = DEFAULT_MAX_RETRIES
    retry_backoff_seconds: float = DEFAULT_RETRY_BACKOFF_SECONDS
    lock_timeout_seconds: float = DEFAULT_LOCK_TIMEOUT_SECONDS


@dataclass(frozen=True)
class UserRecord:
    user_id: str
    email: str
    full_name: str
    role: str
    active: bool


@dataclass(frozen=True)
class CategoryRecord:
    category_id: str
    name: str
    description: Optional[str]


@dataclass(frozen=True)
class ProductRecord:
    """Point-in-time view of a row from the ``products`` table."""

    product_id: str
    sku: str
    name: str
    price: Decimal
    cost_price: Decimal
    stock_quantity: int
    reorder_level: int
    category_id: Optional[str]


@dataclass(frozen=True)
class LedgerEntryRecord:
    """Immutable view of a row from the ``inventory_transactions`` table."""

    entry_id: str
    product_id: str
    kind: str
    quantity: int
    reference_id: Optional[str]
    notes: Optional[str]
    created_at: datetime


@dataclass(frozen=True)
class OrderLineRecord:
    line_id: str
    order_id: str
    product_id: str
    quantity: int
    unit_price: Decimal
    created_at: datetime

    @property
    def line_total(self) -> Decimal:
        return (self.unit_price * self.quantity).quantize(MONEY_QUANTUM)


@dataclass(frozen=True)
class SalesOrderRecord:
    """Committed sales order together with its lines in request order."""

    order_id: str
    user_id: Optional[str]
    customer_name: Optional[str]
    total_amount: Decimal
    payment_status: str
    status: str
    created_at: datetime
    lines: tuple[OrderLineRecord, ...]


def find_config_file(explicit_path: Optional[Path] = None) -> Path:
    """Locate the configuration file that controls how the data layer behaves.

    If the caller provides ``explicit_path`` the value is returned immediately
    without any verification. Otherwise the function walks up from the current
    working directory toward the filesystem root looking for a file named
    ``CONFIG_FILE_NAME``; the first match is considered authoritative.

    Args:
        explicit_path (Path | None): Optional path to use instead of performing
            the upward search.

    Returns:
        Path: The path provided by the caller or the discovered configuration
            file.

    Raises:
        FileNotFoundError: If no parent directory contains
            ``CONFIG_FILE_NAME``.
    """

    if explicit_path:
        return explicit_path

    current = Path.cwd()
    for p in (current, *current.parents):
        candidate = p / CONFIG_FILE_NAME
        if candidate.exists():
            return candidate

    raise FileNotFoundError(
        f"Configuration file not found: {CONFIG_FILE_NAME}")


def read_config(config_path: Path) -> configparser.ConfigParser:
    """Load ``config.ini`` and return a populated ``ConfigParser`` instance.

    Args:
        config_path (Path): Path to the configuration file, relative or
            absolute. ``~`` is expanded.

    Returns:
        configparser.ConfigParser: Parser containing the raw configuration.
            Required entries are validated by :func:`parse_settings`.

    Raises:
        FileNotFoundError: If ``config_path`` does not exist.
    """

    config_path = config_path.expanduser().resolve()
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    parser = configparser.ConfigParser()
    parser.read(config_path)
    return parser


def parse_settings(parser: configparser.ConfigParser, *, base_path: Optional[Path] = None) -> ConfigSettings:
    """Convert a ``ConfigParser`` into strongly typed :class:`ConfigSettings`.

    ``[System]`` must provide ``DatabaseUrl``, ``StoreName`` and
    ``SchemaVersion``. The ``[Sales]`` section is optional and tunes the
    retry and lock-wait behaviour of the sale engine. Relative SQLite database
    paths are anchored to ``base_path`` (or the current working directory) so
    the same config works regardless of where the process starts.

    Args:
        parser (configparser.ConfigParser): Parsed configuration data.
        base_path (Path | None): Directory used to resolve relative SQLite
            paths. Defaults to :func:`Path.cwd`.

    Returns:
        ConfigSettings: Immutable settings container.

    Raises:
        KeyError: If a required section or option is missing.
        ValueError: If a numeric ``[Sales]`` option is malformed or negative.
    """

    try:
        database_url = parser.get("System", "DatabaseUrl")
        store_name = parser.get("System", "StoreName")
        schema_version = parser.get("System", "SchemaVersion")
    except (configparser.NoSectionError, configparser.NoOptionError) as exc:
        raise KeyError(f"Missing required configuration entry: {exc}") from exc

    max_retries = parser.getint("Sales", "MaxRetries", fallback=DEFAULT_MAX_RETRIES)
    retry_backoff = parser.getfloat("Sales", "RetryBackoffSeconds", fallback=DEFAULT_RETRY_BACKOFF_SECONDS)
    lock_timeout = parser.getfloat("Sales", "LockTimeoutSeconds", fallback=DEFAULT_LOCK_TIMEOUT_SECONDS)
    if max_retries < 0 or retry_backoff < 0 or lock_timeout <= 0:
        raise ValueError("Sales settings must be non-negative and LockTimeoutSeconds positive")

    return ConfigSettings(
        database_url=resolve_database_url(database_url, base_path=base_path),
        store_name=store_name,
        schema_version=schema_version,
        max_retries=max_retries,
        retry_backoff_seconds=retry_backoff,
        lock_timeout_seconds=lock_timeout,
    )


def resolve_database_url(raw_url: str, *, base_path: Optional[Path] = None) -> str:
    """Anchor relative SQLite file paths; other URLs are returned unchanged."""

    url = make_url(raw_url)
    if url.get_backend_name() != "sqlite":
        return raw_url
    database = url.database
    if not database or database == ":memory:" or Path(database).is_absolute():
        return raw_url
    anchor = base_path if base_path is not None else Path.cwd()
    resolved = (anchor / database).resolve()
    return url.set(database=str(resolved)).render_as_string(hide_password=False)


def create_engine_from_settings(settings: ConfigSettings) -> Engine:
    """Build the SQLAlchemy engine for the configured database.

    SQLite has no row locks, so every transaction is opened with
    ``BEGIN IMMEDIATE``: writers then serialize on the database lock and the
    driver's busy timeout bounds how long one waits for another. Other
    backends rely on ``SELECT ... FOR UPDATE`` row locks taken by the ledger.

    Args:
        settings (ConfigSettings): Settings providing the URL and lock timeout.

    Returns:
        Engine: Engine ready to back a session factory.
    """

    url = make_url(settings.database_url)
    if url.get_backend_name() == "sqlite":
        engine = create_engine(
            url,
            connect_args={
                "timeout": settings.lock_timeout_seconds,
                "check_same_thread": False,
            },
        )
        _install_sqlite_transaction_hooks(engine)
    else:
        engine = create_engine(url, pool_pre_ping=True)
    log.debug("Created engine for backend '%s'", url.get_backend_name())
    return engine


def _install_sqlite_transaction_hooks(engine: Engine) -> None:
    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        # Take BEGIN away from pysqlite so the "begin" hook below owns it.
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine, "begin")
    def _on_begin(connection):
        connection.exec_driver_sql("BEGIN IMMEDIATE")


def create_session_factory(engine: Engine) -> sessionmaker[Session]:
    """Return a session factory whose objects stay readable after commit."""

    return sessionmaker(bind=engine, expire_on_commit=False)


def create_schema(engine: Engine) -> None:
    """Create every table of the relational layout that does not exist yet."""

    Base.metadata.create_all(engine)
    log.info("Ensured database schema on '%s'", engine.url.render_as_string(hide_password=True))


def drop_schema(engine: Engine) -> None:
    """Drop every table managed by this package."""

    Base.metadata.drop_all(engine)
    log.warning("Dropped database schema on '%s'", engine.url.render_as_string(hide_password=True))


def is_conflict_error(error: OperationalError) -> bool:
    """Tell whether a driver error means a lock wait, deadlock, or serialization failure.

    PostgreSQL drivers expose the SQLSTATE (``pgcode`` for psycopg2,
    ``sqlstate`` for psycopg 3); SQLite only reports ``database is locked``.
    """

    orig = error.orig
    code = getattr(orig, "pgcode", None) or getattr(orig, "sqlstate", None)
    if code in CONFLICT_SQLSTATES:
        return True
    message = str(orig).lower()
    return "locked" in message or "deadlock" in message


@contextmanager
def unit_of_work(
    session_factory: sessionmaker[Session],
    *,
    lock_timeout_seconds: Optional[float] = None,
) -> Iterator[Session]:
    """Open a session whose work commits on success and rolls back otherwise.

    Every exception, including ``KeyboardInterrupt`` and task cancellation,
    rolls the transaction back before it propagates, so no partial state is
    ever durable. Lock timeouts, deadlocks and serialization failures are
    surfaced as :class:`~stockledger.errors.Conflict`; constraint violations as
    :class:`~stockledger.errors.ValidationError`.

    Args:
        session_factory (sessionmaker): Factory bound to the target engine.
        lock_timeout_seconds (float | None): Upper bound for row-lock waits on
            backends that support ``SET LOCAL lock_timeout``.

    Yields:
        Session: Session inside an open transaction.

    Raises:
        Conflict: When the database reports a concurrency conflict.
        ValidationError: When a constraint rejects the written rows.
    """

    session = session_factory()
    try:
        if lock_timeout_seconds and session.get_bind().dialect.name == "postgresql":
            session.execute(text(f"SET LOCAL lock_timeout = '{int(lock_timeout_seconds * 1000)}ms'"))
        yield session
        session.commit()
    except OperationalError as exc:
        session.rollback()
        if is_conflict_error(exc):
            log.warning("Unit of work aborted by a concurrent transaction: %s", exc.orig)
            raise Conflict(str(exc.orig)) from exc
        raise
    except IntegrityError as exc:
        session.rollback()
        log.error("Unit of work rejected by a database constraint: %s", exc.orig)
        raise ValidationError(f"Constraint violation: {exc.orig}") from exc
    except BaseException:
        session.rollback()
        raise
    finally:
        session.close()


def fetch_product(session: Session, product_id: str, *, for_update: bool = False) -> Optional[Product]:
    """Load a product row, optionally taking a row lock for the transaction.

    ``populate_existing`` forces a refresh of an already loaded instance so
    the value read under the lock is the committed one.
    """

    statement = select(Product).where(Product.id == product_id)
    if for_update:
        statement = statement.with_for_update().execution_options(populate_existing=True)
    return session.scalar(statement)


def lock_products(session: Session, product_ids: Iterable[str]) -> Dict[str, Optional[Product]]:
    """Lock product rows one by one in sorted id order.

    A fixed acquisition order keeps two transactions touching overlapping
    product sets from deadlocking on each other.

    Args:
        session (Session): Session inside the caller's unit of work.
        product_ids (Iterable[str]): Identifiers to lock; duplicates are
            ignored.

    Returns:
        dict[str, Product | None]: Locked rows keyed by id, ``None`` for ids
            that do not exist.
    """

    return {
        product_id: fetch_product(session, product_id, for_update=True)
        for product_id in sorted(set(product_ids))
    }


def fetch_product_by_sku(session: Session, sku: str) -> Optional[Product]:
    return session.scalar(select(Product).where(Product.sku == sku))


def fetch_user(session: Session, user_id: str) -> Optional[User]:
    return session.get(User, user_id)


def fetch_category(session: Session, category_id: str) -> Optional[Category]:
    return session.get(Category, category_id)


def fetch_order(session: Session, order_id: str) -> Optional[SalesOrder]:
    return session.get(SalesOrder, order_id)


def iter_products(session: Session) -> Iterable[Product]:
    return session.scalars(select(Product).order_by(Product.sku))


def iter_orders(session: Session) -> Iterable[SalesOrder]:
    return session.scalars(
        select(SalesOrder).options(selectinload(SalesOrder.lines)).order_by(SalesOrder.created_at)
    )


def iter_ledger_entries(
    session: Session,
    *,
    product_id: Optional[str] = None,
    reference_id: Optional[str] = None,
) -> Iterable[LedgerEntry]:
    """Stream ledger rows in creation order (ties broken by id), optionally filtered."""

    statement = select(LedgerEntry)
    if product_id is not None:
        statement = statement.where(LedgerEntry.product_id == product_id)
    if reference_id is not None:
        statement = statement.where(LedgerEntry.reference_id == reference_id)
    return session.scalars(statement.order_by(LedgerEntry.created_at, LedgerEntry.id))


def sum_ledger(session: Session, product_id: str) -> int:
    total = session.scalar(
        select(func.coalesce(func.sum(LedgerEntry.quantity), 0)).where(LedgerEntry.product_id == product_id)
    )
    return int(total)


def ledger_sums(session: Session) -> Dict[str, int]:
    """Return ``Σ quantity`` per product for every product with ledger rows."""

    rows = session.execute(
        select(LedgerEntry.product_id, func.sum(LedgerEntry.quantity)).group_by(LedgerEntry.product_id)
    )
    return {product_id: int(total) for product_id, total in rows}


def append_ledger_entry(
    session: Session,
    product: Product,
    *,
    delta: int,
    kind: str,
    reference_id: Optional[str],
    notes: Optional[str],
) -> LedgerEntry:
    """Append a ledger row and apply ``delta`` to the product in the same flush."""

    entry = LedgerEntry(
        product_id=product.id,
        transaction_type=kind,
        quantity=delta,
        reference_id=reference_id,
        notes=notes,
    )
    product.stock_quantity = product.stock_quantity + delta
    session.add(entry)
    session.flush()
    return entry


def append_order(session: Session, *, user_id: Optional[str], customer_name: Optional[str]) -> SalesOrder:
    order = SalesOrder(user_id=user_id, customer_name=customer_name, total_amount=Decimal("0.00"))
    session.add(order)
    session.flush()
    return order


def append_order_line(
    session: Session,
    order: SalesOrder,
    *,
    product_id: str,
    position: int,
    quantity: int,
    unit_price: Decimal,
) -> SalesOrderLine:
    line = SalesOrderLine(
        product_id=product_id,
        position=position,
        quantity=quantity,
        unit_price=unit_price,
    )
    order.lines.append(line)
    session.flush()
    return line


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands timestamps back without their offset; every stored value is UTC.
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


def user_record(row: User) -> UserRecord:
    return UserRecord(
        user_id=row.id,
        email=row.email,
        full_name=row.full_name,
        role=row.role,
        active=bool(row.active),
    )


def category_record(row: Category) -> CategoryRecord:
    return CategoryRecord(category_id=row.id, name=row.name, description=row.description)


def product_record(row: Product) -> ProductRecord:
    """Convert a product row into a detached, immutable record."""

    return ProductRecord(
        product_id=row.id,
        sku=row.sku,
        name=row.name,
        price=Decimal(str(row.price)).quantize(MONEY_QUANTUM),
        cost_price=Decimal(str(row.cost_price)).quantize(MONEY_QUANTUM),
        stock_quantity=int(row.stock_quantity),
        reorder_level=int(row.reorder_level),
        category_id=row.category_id,
    )


def ledger_entry_record(row: LedgerEntry) -> LedgerEntryRecord:
    return LedgerEntryRecord(
        entry_id=row.id,
        product_id=row.product_id,
        kind=row.transaction_type,
        quantity=int(row.quantity),
        reference_id=row.reference_id,
        notes=row.notes,
        created_at=_as_utc(row.created_at),
    )


def order_line_record(row: SalesOrderLine) -> OrderLineRecord:
    return OrderLineRecord(
        line_id=row.id,
        order_id=row.sales_order_id,
        product_id=row.product_id,
        quantity=int(row.quantity),
        unit_price=Decimal(str(row.unit_price)).quantize(MONEY_QUANTUM),
        created_at=_as_utc(row.created_at),
    )


def order_record(row: SalesOrder, lines: Optional[Sequence[SalesOrderLine]] = None) -> SalesOrderRecord:
    """Convert an order row and its lines into a :class:`SalesOrderRecord`.

    Args:
        row (SalesOrder): Order row, attached or detached.
        lines (Sequence[SalesOrderLine] | None): Lines to embed; defaults to
            ``row.lines`` which must then be loaded.

    Returns:
        SalesOrderRecord: Immutable order snapshot.
    """

    source_lines = row.lines if lines is None else lines
    return SalesOrderRecord(
        order_id=row.id,
        user_id=row.user_id,
        customer_name=row.customer_name,
        total_amount=Decimal(str(row.total_amount)).quantize(MONEY_QUANTUM),
        payment_status=row.payment_status,
        status=row.status,
        created_at=_as_utc(row.created_at),
        lines=tuple(order_line_record(line) for line in source_lines),
    )
