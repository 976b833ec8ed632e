import random
import sqlite3
from decimal import Decimal
from pathlib import Path

import pytest
from conftest import make_app, seed_stock

from stockledger.domain.errors import (
    ConflictError,
    DuplicateCodeError,
    InsufficientStockError,
    NotFoundError,
    StoreBusyError,
    ValidationError,
    error_category,
)
from stockledger.domain.ledger import LEDGER_SIGNS
from stockledger.repositories.queries import translate_db_error


def _store_and_item(app, code: str = "RICE01"):
    store = app.catalog.add_store("Main")
    item = app.catalog.add_item(code, "Rice", 1.0, 1.5)
    return store, item


def test_stock_is_the_same_whatever_the_insert_order(tmp_path: Path):
    events = [
        ("Opening", "500"),
        ("Selling", "120"),
        ("Buying", "50"),
        ("Wastage", "2.5"),
        ("AdjIn", "0.125"),
        ("TransferOut", "10"),
    ]
    orders = [events, list(reversed(events)), random.Random(7).sample(events, len(events))]

    results = set()
    for n, order in enumerate(orders):
        app = make_app(tmp_path, f"order_{n}.db")
        store, item = _store_and_item(app)
        for tx_type, qty in order:
            app.ledger.record_transaction(store, tx_type, [{"item_id": item, "qty": qty}])
        results.add(app.ledger.current_stock(item, store))

    assert results == {Decimal("417.625")}


def test_every_transaction_type_moves_stock_by_its_sign(tmp_path: Path):
    app = make_app(tmp_path)
    store, item = _store_and_item(app)

    for tx_type, sign in LEDGER_SIGNS.items():
        before = app.ledger.current_stock(item, store)
        app.ledger.record_transaction(store, tx_type.value, [{"item_id": item, "qty": "2"}])
        assert app.ledger.current_stock(item, store) - before == 2 * sign


def test_item_without_ledger_rows_has_zero_stock(tmp_path: Path):
    app = make_app(tmp_path)
    store, item = _store_and_item(app)
    other = app.catalog.add_store("Branch")
    seed_stock(app, store, item, "5")

    assert app.ledger.current_stock(item, other) == 0
    assert app.ledger.current_stock(999, store) == 0


def test_stock_levels_list_every_item_with_activity(tmp_path: Path):
    app = make_app(tmp_path)
    store, rice = _store_and_item(app)
    bran = app.catalog.add_item("BRAN01", "Bran")
    seed_stock(app, store, rice, "10")
    seed_stock(app, store, bran, "4")
    seed_stock(app, store, bran, "1.5", tx_type="Selling")

    levels = {lvl.item_code: lvl.stock for lvl in app.ledger.stock_levels(store)}
    assert levels == {"RICE01": Decimal("10.000"), "BRAN01": Decimal("2.500")}


def test_deactivating_a_transaction_removes_exactly_its_contribution(tmp_path: Path):
    app = make_app(tmp_path)
    store, item = _store_and_item(app)
    seed_stock(app, store, item, "100")
    dropped = seed_stock(app, store, item, "40", tx_type="Buying")
    seed_stock(app, store, item, "15", tx_type="Selling")

    before = app.ledger.current_stock(item, store)
    app.ledger.deactivate_transaction(dropped)
    after = app.ledger.current_stock(item, store)

    assert before == Decimal("125")
    assert before - after == Decimal("40")
    tx = app.ledger.get_transaction(dropped)
    assert tx.active == 0
    assert all(line.active == 0 for line in tx.lines)

    with pytest.raises(ConflictError):
        app.ledger.deactivate_transaction(dropped)


def test_reversal_books_an_opposite_entry_and_keeps_history(tmp_path: Path):
    app = make_app(tmp_path)
    store, item = _store_and_item(app)
    seed_stock(app, store, item, "100")
    bought = seed_stock(app, store, item, "40", tx_type="Buying")

    reversal_id = app.ledger.reverse_transaction(bought, created_by="auditor")

    assert app.ledger.current_stock(item, store) == Decimal("100")
    original = app.ledger.get_transaction(bought)
    reversal = app.ledger.get_transaction(reversal_id)
    assert original.active == 1
    assert reversal.type == "AdjOut"
    assert reversal.reversal_of_id == bought
    assert reversal.lines[0].quantity == Decimal("40")

    with pytest.raises(ConflictError):
        app.ledger.reverse_transaction(bought)
    with pytest.raises(ConflictError):
        app.ledger.reverse_transaction(reversal_id)
    with pytest.raises(ConflictError):
        app.ledger.deactivate_transaction(bought)


def test_invalid_requests_are_rejected_before_any_write(tmp_path: Path):
    app = make_app(tmp_path)
    store, item = _store_and_item(app)

    with pytest.raises(NotFoundError):
        app.ledger.record_transaction(store, "Opening", [{"item_id": item, "qty": 5}, {"item_id": 999, "qty": 1}])
    with pytest.raises(NotFoundError):
        app.ledger.record_transaction(999, "Opening", [{"item_id": item, "qty": 5}])
    with pytest.raises(ValidationError):
        app.ledger.record_transaction(store, "Gift", [{"item_id": item, "qty": 5}])
    with pytest.raises(ValidationError):
        app.ledger.record_transaction(store, "Opening", [{"item_id": item, "qty": "1.2345"}])
    with pytest.raises(ValidationError):
        app.ledger.record_transaction(store, "Opening", [{"item_id": item, "qty": 0}])
    with pytest.raises(ValidationError):
        app.ledger.record_transaction(store, "Opening", [])

    assert app.ledger.list_transactions(store) == []
    assert app.ledger.current_stock(item, store) == 0


def test_duplicate_code_is_rejected(tmp_path: Path):
    app = make_app(tmp_path)
    store, item = _store_and_item(app)
    app.ledger.record_transaction(store, "Opening", [{"item_id": item, "qty": 5}], code="MANUAL-1")

    with pytest.raises(DuplicateCodeError) as exc:
        app.ledger.record_transaction(store, "Opening", [{"item_id": item, "qty": 5}], code="MANUAL-1")

    assert error_category(exc.value) == "conflict"
    assert app.ledger.current_stock(item, store) == Decimal("5")


def test_resent_synced_transaction_is_rejected_not_merged(tmp_path: Path):
    app = make_app(tmp_path)
    store, item = _store_and_item(app)
    lines = [{"item_id": item, "qty": "12.5", "total": 18.75}]

    tx_id = app.ledger.ingest_synced_transaction(store, "Buying", "S1-261001-TX-TILL2-004", lines, created_at="2026-10-01T08:15:00")
    with pytest.raises(DuplicateCodeError):
        app.ledger.ingest_synced_transaction(store, "Buying", "S1-261001-TX-TILL2-004", lines)
    with pytest.raises(ValidationError):
        app.ledger.ingest_synced_transaction(store, "Buying", "  ", lines)

    assert app.ledger.current_stock(item, store) == Decimal("12.5")
    assert app.ledger.get_transaction(tx_id).created_at == "2026-10-01 08:15:00"


def test_generated_transaction_codes_are_unique(tmp_path: Path):
    app = make_app(tmp_path)
    store, item = _store_and_item(app)
    ids = [seed_stock(app, store, item, 1) for _ in range(3)]

    codes = [app.ledger.get_transaction(i).code for i in ids]
    assert len(set(codes)) == 3
    assert all("-TX-POS-" in c for c in codes)


def test_writer_gets_busy_error_while_reads_keep_working(tmp_path: Path):
    app = make_app(tmp_path)
    store, item = _store_and_item(app)
    seed_stock(app, store, item, 7)
    app.repo.busy_timeout = 0.1

    locker = sqlite3.connect(app.repo.db_path, isolation_level=None)
    locker.execute("BEGIN IMMEDIATE")
    try:
        with pytest.raises(StoreBusyError):
            seed_stock(app, store, item, 1)
        assert app.ledger.current_stock(item, store) == Decimal("7")
    finally:
        locker.execute("ROLLBACK")
        locker.close()


def test_error_taxonomy_is_stable():
    assert error_category(ValidationError("x")) == "validation"
    assert error_category(InsufficientStockError("x")) == "validation"
    assert error_category(NotFoundError("x")) == "not_found"
    assert error_category(StoreBusyError("x")) == "conflict"
    assert error_category(ValueError("x")) == "internal"

    assert isinstance(translate_db_error(sqlite3.IntegrityError("UNIQUE constraint failed: items.code")), DuplicateCodeError)
    assert isinstance(translate_db_error(sqlite3.OperationalError("database is locked")), StoreBusyError)
    assert error_category(translate_db_error(sqlite3.OperationalError("disk I/O error"))) == "internal"
