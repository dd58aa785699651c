"""Unit tests verifying the shared business helpers with a mocked data access layer."""

from __future__ import annotations

import threading
from dataclasses import replace
from datetime import UTC, datetime, timedelta, timezone
from decimal import Decimal
from unittest.mock import Mock

import pytest

from shop_ledger import constants, core_logic, data_manager


# ---------------------------------------------------------------------------
# Runtime/context management
# ---------------------------------------------------------------------------


def test_load_runtime_context_returns_context(monkeypatch, tmp_path):
    """load_runtime_context should assemble settings and workbook into a context."""

    config_path = tmp_path / "config.ini"
    parser = Mock(name="parser")
    parsed_settings = data_manager.ConfigSettings(
        data_file=tmp_path / "ledger.xlsx",
        schema_version=constants.EXPECTED_SCHEMA_VERSION,
        report_dir=tmp_path / "reports",
    )
    workbook = Mock(name="workbook")

    find_config_file = Mock(return_value=config_path)
    read_config = Mock(return_value=parser)
    parse_settings = Mock(return_value=parsed_settings)
    open_workbook = Mock(return_value=workbook)

    monkeypatch.setattr(data_manager, "find_config_file", find_config_file)
    monkeypatch.setattr(data_manager, "read_config", read_config)
    monkeypatch.setattr(data_manager, "parse_settings", parse_settings)
    monkeypatch.setattr(data_manager, "open_workbook", open_workbook)

    context = core_logic.load_runtime_context(config_path)

    assert context.settings is parsed_settings
    assert context.workbook is workbook
    find_config_file.assert_called_once_with(config_path)
    read_config.assert_called_once_with(config_path.resolve())
    parse_settings.assert_called_once_with(parser, base_path=config_path.resolve().parent)
    open_workbook.assert_called_once_with(parsed_settings.data_file)


def test_ensure_schema_version_rejects_mismatch(context):
    """Schema mismatches should surface a RuntimeError with clear messaging."""

    bad_settings = replace(context.settings, schema_version="0.9")
    bad_context = core_logic.RuntimeContext(settings=bad_settings, workbook=context.workbook)
    with pytest.raises(RuntimeError, match="schema mismatch"):
        core_logic.ensure_schema_version(bad_context)


def test_ensure_schema_version_accepts_expected(context):
    """The current schema version should pass silently."""

    core_logic.ensure_schema_version(context)


def test_persist_context_writes_to_disk(monkeypatch, context):
    """persist_context should flush workbook changes to disk."""

    save_mock = Mock()
    monkeypatch.setattr(data_manager, "save_workbook", save_mock)

    core_logic.persist_context(context)

    save_mock.assert_called_once_with(context.workbook, destination=context.settings.data_file)


def test_persist_context_wraps_os_errors(monkeypatch, context):
    """A failed save should surface as PersistenceError."""

    monkeypatch.setattr(data_manager, "save_workbook", Mock(side_effect=PermissionError("locked")))

    with pytest.raises(core_logic.PersistenceError, match="locked"):
        core_logic.persist_context(context)


def test_refresh_context_reloads_from_disk(monkeypatch, settings):
    """refresh_context should discard in-memory workbook state and reload."""

    refreshed_workbook = Mock(name="reloaded")
    refresh_mock = Mock(return_value=refreshed_workbook)
    monkeypatch.setattr(data_manager, "refresh_workbook", refresh_mock)

    original = core_logic.RuntimeContext(settings=settings, workbook=Mock())
    original._cache["products"] = {"all": ["stale"]}
    reloaded_context = core_logic.refresh_context(original)

    refresh_mock.assert_called_once_with(settings.data_file)
    assert reloaded_context.workbook is refreshed_workbook
    assert reloaded_context.settings is settings
    assert reloaded_context._cache == {}


# ---------------------------------------------------------------------------
# Results and errors
# ---------------------------------------------------------------------------


def test_ledger_operation_wraps_success():
    """Return values should be carried by a successful Result."""

    @core_logic.ledger_operation
    def double(value):
        return value * 2

    result = double(4)
    assert result.ok
    assert result.value == 8
    assert result.unwrap() == 8


def test_ledger_operation_captures_business_violations():
    """Business rule violations should become failed results instead of exceptions."""

    @core_logic.ledger_operation
    def reject():
        raise core_logic.ValidationError("Price must be positive", hint="Try price bread 2.50")

    result = reject()
    assert not result.ok
    assert result.error.message == "Price must be positive"
    assert result.error.hint == "Try price bread 2.50"
    with pytest.raises(core_logic.ValidationError):
        result.unwrap()


def test_ledger_operation_lets_persistence_errors_propagate():
    """Infrastructure failures must not be disguised as business outcomes."""

    @core_logic.ledger_operation
    def broken():
        raise core_logic.PersistenceError("disk gone")

    with pytest.raises(core_logic.PersistenceError):
        broken()


def test_insufficient_stock_error_carries_quantities():
    """The stock error should name the product and both quantities."""

    error = core_logic.InsufficientStockError("bread", requested=5, available=2)
    assert error.product_name == "bread"
    assert error.requested == 5
    assert error.available == 2
    assert "bread" in error.message


def test_invalid_transition_names_both_states():
    """InvalidTransition should report the current and requested status."""

    error = core_logic.InvalidTransition("pending", "completed")
    assert isinstance(error, core_logic.StateError)
    assert "pending" in error.message and "completed" in error.message


# ---------------------------------------------------------------------------
# Time and identifiers
# ---------------------------------------------------------------------------


def test_generate_id_uses_prefix_and_timestamp():
    """Identifiers should be sortable and include the timestamp."""

    when = datetime(2025, 10, 30, 12, 30, 0, tzinfo=UTC)
    record_id = core_logic.generate_id("S", when=when)
    assert record_id.startswith("S20251030123000")
    assert len(record_id) == 1 + 20 + 4


def test_generate_id_is_unique_for_same_instant():
    """Two records created in the same microsecond should still differ."""

    when = datetime(2025, 10, 30, 12, 30, 0, tzinfo=UTC)
    generated = {core_logic.generate_id("O", when=when) for _ in range(50)}
    assert len(generated) > 1


def test_resolve_timestamp_defaults_to_now(set_fixed_datetime):
    """Missing timestamps should come from the module clock."""

    moment = set_fixed_datetime(datetime(2025, 3, 1, 10, 0, tzinfo=UTC))
    assert core_logic.resolve_timestamp(None) == moment


def test_resolve_timestamp_marks_naive_values_as_utc():
    """Naive datetimes should be interpreted as UTC."""

    resolved = core_logic.resolve_timestamp(datetime(2025, 3, 1, 10, 0))
    assert resolved.tzinfo is UTC


def test_in_window_compares_aware_timestamps():
    """Stored offsets should be honoured when checking a window."""

    start = datetime(2025, 3, 1, tzinfo=UTC)
    end = start + timedelta(days=1)
    later_offset = datetime(2025, 3, 2, 1, 0, tzinfo=timezone(timedelta(hours=2))).isoformat()

    assert core_logic.in_window("2025-03-01T12:00:00+00:00", start, end)
    assert core_logic.in_window(later_offset, start, end)
    assert not core_logic.in_window(None, start, end)
    assert not core_logic.in_window("2025-03-03T00:00:00+00:00", start, end)


# ---------------------------------------------------------------------------
# Validation helpers
# ---------------------------------------------------------------------------


@pytest.mark.parametrize("raw, expected", [("2.5", Decimal("2.50")), ("$10", Decimal("10.00")), (3, Decimal("3.00"))])
def test_parse_money_accepts_numbers(raw, expected):
    """parse_money should produce cent-quantized decimals."""

    assert core_logic.parse_money(raw) == expected


def test_parse_money_rejects_text():
    """Non numeric money should raise ValidationError naming the label."""

    with pytest.raises(core_logic.ValidationError, match="Deposit"):
        core_logic.parse_money("ten", label="Deposit")


def test_parse_quantity_rejects_fractions():
    """Fractional quantities are not whole units."""

    assert core_logic.parse_quantity("3") == 3
    with pytest.raises(core_logic.ValidationError):
        core_logic.parse_quantity("1.5")


def test_require_positive_quantity_rejects_nonpositive():
    """Quantities of zero or less should raise ValidationError."""

    with pytest.raises(core_logic.ValidationError):
        core_logic.require_positive_quantity(0)


def test_require_positive_quantity_accepts_positive():
    """Positive quantities should pass validation."""

    core_logic.require_positive_quantity(1)


def test_require_nonnegative_money_rejects_negative():
    """Negative currency values should raise ValidationError."""

    with pytest.raises(core_logic.ValidationError):
        core_logic.require_nonnegative_money(Decimal("-0.01"))


def test_require_nonnegative_money_accepts_zero():
    """Zero or positive currency values should pass validation."""

    core_logic.require_nonnegative_money(Decimal("0.00"))


def test_require_text_strips_and_rejects_blank():
    """Blank text should be refused with the label in the message."""

    assert core_logic.require_text("  bread ", label="Product name") == "bread"
    with pytest.raises(core_logic.ValidationError, match="Product name"):
        core_logic.require_text("   ", label="Product name")


def test_normalize_phone_keeps_digits_only():
    """Formatting characters should be stripped from phone numbers."""

    assert core_logic.normalize_phone("+263 (77) 123-4567") == "263771234567"


# ---------------------------------------------------------------------------
# Locking and caching
# ---------------------------------------------------------------------------


def test_hold_locks_times_out_with_persistence_error(context):
    """A lock held by another thread should fail the waiter after the timeout."""

    fast_context = replace(context, settings=replace(context.settings, lock_timeout_seconds=0.05))
    key = core_logic.product_key("shop-a", "P1")
    acquired = threading.Event()
    release = threading.Event()

    def _holder():
        with core_logic.hold_locks(fast_context, key):
            acquired.set()
            release.wait(5)

    holder = threading.Thread(target=_holder)
    holder.start()
    try:
        assert acquired.wait(5)
        with pytest.raises(core_logic.PersistenceError, match="Timed out"):
            with core_logic.hold_locks(fast_context, key):
                pass
    finally:
        release.set()
        holder.join()


def test_hold_locks_is_reentrant(context):
    """The same thread may nest locks on one key."""

    key = core_logic.customer_key("shop-a", "C1")
    with core_logic.hold_locks(context, key):
        with core_logic.hold_locks(context, key, core_logic.record_key("sale", "shop-a", "S1")):
            pass


def test_cached_rows_reads_workbook_once(context):
    """cached_rows should populate a bucket on first use and reuse it afterwards."""

    loader = Mock(return_value=iter(["row-1", "row-2"]))

    first = core_logic.cached_rows(context, "products", loader)
    second = core_logic.cached_rows(context, "products", loader)

    assert first == ["row-1", "row-2"]
    assert second is first
    loader.assert_called_once_with(context.workbook)


def test_mutating_invalidates_named_buckets(context):
    """Writes should evict the buckets they touch and leave others alone."""

    core_logic.cached_rows(context, "products", Mock(return_value=iter(["p"])))
    core_logic.cached_rows(context, "sales", Mock(return_value=iter(["s"])))

    with core_logic.mutating(context, "products") as workbook:
        assert workbook is context.workbook

    assert "products" not in context._cache
    assert "sales" in context._cache


def test_mutating_converts_key_errors(context):
    """A missing row or column during a write is a persistence failure."""

    core_logic.cached_rows(context, "sales", Mock(return_value=iter(["s"])))

    with pytest.raises(core_logic.PersistenceError):
        with core_logic.mutating(context, "sales"):
            raise KeyError("Sales row not found: S1")
    assert "sales" not in context._cache
