"""Shared kernel for the Shop Ledger business layer.

This module holds what every ledger module needs: the :class:`RuntimeContext`
passed explicitly into each operation, the error taxonomy, the
:class:`Result` type returned by public ledger operations, per-record locks,
identifier generation, validation helpers and the workbook cache. Ledger
modules never talk to ``openpyxl`` directly; they go through the Data Access
Layer (DAL) under the context's store lock.
"""

from __future__ import annotations

import functools
import threading
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Callable, Dict, Generic, Iterable, Iterator, List, Optional, Tuple, TypeVar

from openpyxl.workbook import Workbook

from . import data_manager, log
from .constants import EXPECTED_SCHEMA_VERSION

T = TypeVar("T")
RowT = TypeVar("RowT")

ZERO = Decimal("0.00")


# ---------------------------------------------------------------------------
# Error taxonomy
# ---------------------------------------------------------------------------


class BusinessRuleViolation(Exception):
    """Raised when a requested operation violates a domain constraint.

    Subclasses describe expected business conditions. Public ledger
    operations convert them into failed :class:`Result` values so callers
    never need ``try`` blocks for ordinary rejections.
    """

    def __init__(self, message: str, *, hint: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        self.hint = hint


class ValidationError(BusinessRuleViolation):
    """Raised when user-supplied values are malformed or out of range."""


class NotFoundError(BusinessRuleViolation):
    """Raised when a product, customer, order, sale or lay-bye is unknown."""


class StateError(BusinessRuleViolation):
    """Raised when a record's current status forbids the requested change."""


class InvalidTransition(StateError):
    """Raised when an order transition is not part of the lifecycle graph."""

    def __init__(self, current: str, requested: str) -> None:
        super().__init__(
            f"Cannot move order from '{current}' to '{requested}'",
            hint=f"Orders in '{current}' status cannot become '{requested}'.",
        )
        self.current = current
        self.requested = requested


class InsufficientStockError(BusinessRuleViolation):
    """Raised when a reservation asks for more units than are on hand."""

    def __init__(self, product_name: str, *, requested: int, available: int) -> None:
        super().__init__(
            f"Not enough {product_name}: requested {requested}, available {available}",
        )
        self.product_name = product_name
        self.requested = requested
        self.available = available


class PersistenceError(Exception):
    """Raised when the workbook store or a lock cannot be used.

    Infrastructure failures are never wrapped in a :class:`Result`; they
    propagate to the command dispatch boundary.
    """


@dataclass(frozen=True)
class Result(Generic[T]):
    """Outcome of a public ledger operation."""

    value: Optional[T] = None
    error: Optional[BusinessRuleViolation] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, value: T) -> "Result[T]":
        return cls(value=value)

    @classmethod
    def failure(cls, error: BusinessRuleViolation) -> "Result[T]":
        return cls(error=error)

    def unwrap(self) -> T:
        """Return the value or raise the captured business error."""

        if self.error is not None:
            raise self.error
        return self.value  # type: ignore[return-value]


def ledger_operation(func: Callable[..., T]) -> Callable[..., Result[T]]:
    """Turn business rule violations raised by ``func`` into failed results.

    Any other exception, including :class:`PersistenceError`, propagates
    unchanged.
    """

    @functools.wraps(func)
    def wrapper(*args: Any, **kwargs: Any) -> Result[T]:
        try:
            return Result.success(func(*args, **kwargs))
        except BusinessRuleViolation as exc:
            log.warning("%s rejected: %s", func.__name__, exc.message)
            return Result.failure(exc)

    return wrapper


# ---------------------------------------------------------------------------
# Runtime context and locking
# ---------------------------------------------------------------------------


class LockRegistry:
    """Hand out one re-entrant lock per logical key.

    Keys are tuples such as ``("product", shop_id, product_id)``. Locks are
    acquired in sorted key order with a timeout so that no caller waits
    forever.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: Dict[Tuple[str, ...], threading.RLock] = {}

    def _lock_for(self, key: Tuple[str, ...]) -> threading.RLock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.RLock()
                self._locks[key] = lock
            return lock

    @contextmanager
    def hold(self, *keys: Tuple[str, ...], timeout: float) -> Iterator[None]:
        acquired: List[threading.RLock] = []
        try:
            for key in sorted(set(keys)):
                lock = self._lock_for(key)
                if not lock.acquire(timeout=timeout):
                    log.error("Timed out after %.1fs waiting for lock %s", timeout, key)
                    raise PersistenceError(f"Timed out waiting for lock {key}")
                acquired.append(lock)
            yield
        finally:
            for lock in reversed(acquired):
                lock.release()


@dataclass(frozen=True)
class RuntimeContext:
    """Container for configuration, workbook, caches and locks used by the ledgers."""

    settings: data_manager.ConfigSettings
    workbook: Workbook
    _cache: Dict[str, Dict[str, Any]] = field(default_factory=dict, repr=False, compare=False)
    locks: LockRegistry = field(default_factory=LockRegistry, repr=False, compare=False)
    store_lock: Any = field(default_factory=threading.RLock, repr=False, compare=False)


@contextmanager
def hold_locks(context: RuntimeContext, *keys: Tuple[str, ...]) -> Iterator[None]:
    """Serialize read-check-write sequences on the given record keys."""

    with context.locks.hold(*keys, timeout=context.settings.lock_timeout_seconds):
        yield


def product_key(shop_id: str, product_id: str) -> Tuple[str, ...]:
    return ("product", shop_id, product_id)


def customer_key(shop_id: str, customer_id: str) -> Tuple[str, ...]:
    return ("customer", shop_id, customer_id)


def record_key(kind: str, shop_id: str, record_id: str) -> Tuple[str, ...]:
    return (kind, shop_id, record_id)


# ---------------------------------------------------------------------------
# Time and identifiers
# ---------------------------------------------------------------------------


def resolve_timestamp(candidate: Optional[datetime]) -> datetime:
    """Resolve optional timestamps into consistent, timezone-aware values.

    Args:
        candidate (datetime | None): Caller-provided timestamp. Naive values
            are interpreted as UTC.

    Returns:
        datetime: ``candidate`` when provided, otherwise the current UTC
            datetime generated via :func:`datetime.now`.
    """

    if candidate is None:
        return datetime.now(UTC)
    if candidate.tzinfo is None:
        return candidate.replace(tzinfo=UTC)
    return candidate


def now_utc() -> datetime:
    """Return the current UTC time through the patchable module clock."""

    return resolve_timestamp(None)


def parse_timestamp(raw: Optional[str]) -> Optional[datetime]:
    """Parse a stored ISO-8601 timestamp into an aware datetime."""

    if not raw:
        return None
    parsed = datetime.fromisoformat(raw)
    return parsed if parsed.tzinfo is not None else parsed.replace(tzinfo=UTC)


def in_window(raw: Optional[str], start: datetime, end: datetime) -> bool:
    """Return ``True`` when the stored timestamp lies inside ``[start, end]``."""

    moment = parse_timestamp(raw)
    return moment is not None and start <= moment <= end


def generate_id(prefix: str, *, when: Optional[datetime] = None) -> str:
    """Generate a sortable record identifier.

    Args:
        prefix (str): Single-letter designator of the record kind.
        when (datetime | None): Timestamp embedded in the identifier. When
            ``None`` the current UTC time is used.

    Returns:
        str: Identifier formed as ``{prefix}{YYYYMMDDHHMMSSffffff}{XXXX}``
            where the four trailing hexadecimal characters are random. The
            timestamp keeps identifiers in creation order; the random tail
            keeps concurrent creations distinct and doubles as the short
            reference users type for orders.
    """

    when = when or resolve_timestamp(None)
    return f"{prefix}{when.strftime('%Y%m%d%H%M%S%f')}{uuid.uuid4().hex[:4].upper()}"


# ---------------------------------------------------------------------------
# Validation helpers
# ---------------------------------------------------------------------------


def parse_money(raw: Any, *, label: str = "Amount") -> Decimal:
    """Convert user input into a cent-quantized decimal.

    Raises:
        ValidationError: If ``raw`` is not a number.
    """

    text = str(raw).strip().lstrip("$") if raw is not None else ""
    try:
        return data_manager.to_money(Decimal(text))
    except (InvalidOperation, ValueError) as exc:
        raise ValidationError(f"{label} must be a number, got '{raw}'") from exc


def parse_quantity(raw: Any, *, label: str = "Quantity") -> int:
    """Convert user input into an integer quantity.

    Raises:
        ValidationError: If ``raw`` is not a whole number.
    """

    try:
        value = Decimal(str(raw).strip())
    except InvalidOperation as exc:
        raise ValidationError(f"{label} must be a whole number, got '{raw}'") from exc
    if not value.is_finite() or value != value.to_integral_value():
        raise ValidationError(f"{label} must be a whole number, got '{raw}'")
    return int(value)


def require_positive_quantity(quantity: int) -> None:
    """Validate that a quantity is strictly positive.

    Raises:
        ValidationError: If ``quantity`` is zero or negative.
    """

    if quantity <= 0:
        raise ValidationError(f"Quantity must be greater than zero, got {quantity}")


def require_nonnegative_quantity(quantity: int, *, label: str = "Quantity") -> None:
    """Validate that a stock count or threshold is zero or positive."""

    if quantity < 0:
        raise ValidationError(f"{label} cannot be negative, got {quantity}")


def require_positive_money(amount: Decimal, *, label: str = "Amount") -> None:
    """Validate that a monetary value is strictly positive.

    Raises:
        ValidationError: If ``amount`` is zero or negative.
    """

    if amount <= ZERO:
        raise ValidationError(f"{label} must be greater than zero, got {amount}")


def require_nonnegative_money(amount: Decimal, *, label: str = "Amount") -> None:
    """Validate that a monetary value is nonnegative.

    Raises:
        ValidationError: If ``amount`` is less than zero.
    """

    if amount < ZERO:
        raise ValidationError(f"{label} must be zero or positive, got {amount}")


def require_text(value: Optional[str], *, label: str) -> str:
    """Return ``value`` stripped, rejecting blank input."""

    text = (value or "").strip()
    if not text:
        raise ValidationError(f"{label} cannot be empty")
    return text


def normalize_phone(raw: str) -> str:
    """Strip everything but digits from a phone number."""

    return "".join(ch for ch in str(raw) if ch.isascii() and ch.isdigit())


# ---------------------------------------------------------------------------
# Workbook cache
# ---------------------------------------------------------------------------


def _get_cache_bucket(context: RuntimeContext, name: str) -> Dict[str, Any]:
    """Return a mutable cache bucket dedicated to the supplied name.

    Buckets are keyed by sheet (products, sales, line items, ...) and store
    the rows read on first use, sparing repeated workbook scans.
    """

    bucket = context._cache.get(name)
    if bucket is None:
        log.debug("Initializing cache bucket '%s'", name)
        bucket = {}
        context._cache[name] = bucket
    return bucket


def _invalidate_cache(context: RuntimeContext, *names: str) -> None:
    """Evict one or more cache buckets after mutating workbook state.

    Args:
        context (RuntimeContext): Active runtime context whose cache should be
            pruned.
        *names (str): Bucket identifiers to remove. Missing buckets are
            ignored.
    """

    if not names:
        return

    log.debug("Invalidating cache buckets: %s", ", ".join(names))

    for name in names:
        context._cache.pop(name, None)


def cached_rows(context: RuntimeContext, name: str, loader: Callable[[Workbook], Iterable[RowT]]) -> List[RowT]:
    """Return every row of one sheet, reading the workbook at most once.

    Population happens under the store lock so that a concurrent write and
    its invalidation can never be overtaken by a stale read.

    Args:
        context (RuntimeContext): Runtime state carrying workbook and cache.
        name (str): Cache bucket name.
        loader (Callable[[Workbook], Iterable]): DAL iterator for the sheet.

    Returns:
        list: Shared cached list; callers must copy before mutating.
    """

    with context.store_lock:
        bucket = _get_cache_bucket(context, name)
        if "all" not in bucket:
            bucket["all"] = list(loader(context.workbook))
            log.debug("Populated '%s' cache with %d rows", name, len(bucket["all"]))
        return bucket["all"]


@contextmanager
def mutating(context: RuntimeContext, *buckets: str) -> Iterator[Workbook]:
    """Yield the workbook for a write and invalidate ``buckets`` afterwards.

    The store lock is held for the whole block. A missing row or column
    reported by the DAL is an integrity failure of the store and surfaces as
    :class:`PersistenceError`.
    """

    with context.store_lock:
        try:
            yield context.workbook
        except KeyError as exc:
            log.exception("Workbook write failed")
            raise PersistenceError(f"Workbook write failed: {exc}") from exc
        finally:
            _invalidate_cache(context, *buckets)


# ---------------------------------------------------------------------------
# Context lifecycle
# ---------------------------------------------------------------------------


def load_runtime_context(config_path: Optional[Path] = None) -> RuntimeContext:
    """Load configuration settings and a live workbook for the ledgers.

    Args:
        config_path (Path | None): Optional override path for the configuration
            file. When omitted the data layer performs its upward search from
            the current working directory.

    Returns:
        RuntimeContext: Fully populated context ready for ledger operations.

    Raises:
        FileNotFoundError: If the configuration file or workbook cannot be
            located.
        KeyError: When mandatory configuration options or sheets are missing.
    """

    located_config = data_manager.find_config_file(config_path)
    resolved_config = Path(located_config).expanduser().resolve()
    parser = data_manager.read_config(resolved_config)
    settings = data_manager.parse_settings(parser, base_path=resolved_config.parent)
    workbook = data_manager.open_workbook(settings.data_file)
    log.info("Loaded runtime context for workbook '%s'", settings.data_file)
    return RuntimeContext(settings=settings, workbook=workbook)


def ensure_schema_version(context: RuntimeContext) -> None:
    """Validate workbook compatibility before mutating state.

    Raises:
        RuntimeError: If the schema version declared in the configuration does
            not match ``EXPECTED_SCHEMA_VERSION``.
    """

    if context.settings.schema_version != EXPECTED_SCHEMA_VERSION:
        log.error(
            "Workbook schema mismatch: expected %s, found %s",
            EXPECTED_SCHEMA_VERSION,
            context.settings.schema_version,
        )
        raise RuntimeError(
            "Workbook schema mismatch: expected %s, found %s"
            % (EXPECTED_SCHEMA_VERSION, context.settings.schema_version)
        )

    log.debug("Schema version '%s' validated", context.settings.schema_version)


def persist_context(context: RuntimeContext) -> None:
    """Persist any in-memory workbook changes to disk.

    Raises:
        PersistenceError: If the workbook cannot be written.
    """

    with context.store_lock:
        try:
            data_manager.save_workbook(context.workbook, destination=context.settings.data_file)
        except OSError as exc:
            log.exception("Could not save workbook '%s'", context.settings.data_file)
            raise PersistenceError(f"Could not save workbook: {exc}") from exc
    log.info("Persisted workbook '%s'", context.settings.data_file)


def refresh_context(context: RuntimeContext) -> RuntimeContext:
    """Reload the workbook to discard unsaved modifications.

    Returns:
        RuntimeContext: Fresh context containing a newly opened workbook, an
            empty cache and fresh locks.

    Raises:
        FileNotFoundError: If the backing workbook cannot be reloaded.
    """

    workbook = data_manager.refresh_workbook(context.settings.data_file)
    log.info("Reloaded workbook '%s'", context.settings.data_file)
    return RuntimeContext(settings=context.settings, workbook=workbook)
