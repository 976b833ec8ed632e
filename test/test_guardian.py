from decimal import Decimal
from pathlib import Path

from conftest import count_rows, make_app, seed_stock

from stockledger.repositories.sqlite_repo import UNIQUE_CODE_TARGETS, SqliteRepository
from stockledger.services.consistency_service import ConsistencyGuardian


def _repo(tmp_path: Path, cls=SqliteRepository) -> SqliteRepository:
    repo = cls(tmp_path / "guard.db")
    repo.init_db()
    return repo


def _raw_tx(repo, store_id: int, code: str, tx_type: str, item_id: int, milli: int, active: int = 1, edited_at: str = "2026-01-01 00:00:00") -> int:
    conn = repo._conn()
    cur = conn.cursor()
    cur.execute(
        """
        INSERT INTO ledger_transactions (store_id, type, code, created_at, edited_at, active)
        VALUES (?, ?, ?, '2026-01-01 00:00:00', ?, ?)
        """,
        (store_id, tx_type, code, edited_at, active),
    )
    tx_id = int(cur.lastrowid)
    cur.execute(
        "INSERT INTO ledger_transaction_lines (transaction_id, item_id, quantity_milli, total, active) VALUES (?, ?, ?, 0, ?)",
        (tx_id, item_id, milli, active),
    )
    conn.commit()
    conn.close()
    return tx_id


def _raw_item(repo, code: str, name: str, active: int = 1, edited_at: str | None = "2026-01-01 00:00:00") -> int:
    conn = repo._conn()
    cur = conn.cursor()
    cur.execute(
        """
        INSERT INTO items (code, name, buying_price, selling_price, active, created_at, edited_at)
        VALUES (?, ?, 1, 1, ?, '2025-12-31 00:00:00', ?)
        """,
        (code, name, active, edited_at),
    )
    item_id = int(cur.lastrowid)
    conn.commit()
    conn.close()
    return item_id


def _snapshot(repo) -> dict:
    conn = repo._conn()
    cur = conn.cursor()
    out = {}
    for table in ("items", "ledger_transactions", "ledger_transaction_lines", "stock_operations", "transfer_requests"):
        cur.execute(f"SELECT * FROM {table} ORDER BY id")
        out[table] = cur.fetchall()
    conn.close()
    return out


def test_duplicate_transactions_keep_the_active_most_recent_row(tmp_path: Path):
    repo = _repo(tmp_path)
    store = repo.add_store("Main")
    item = repo.add_item("RICE01", "Rice", 1.0, 1.5, "2026-01-01 00:00:00")
    code = "S1-260101-TX-POS-001"
    _raw_tx(repo, store, code, "Opening", item, 10_000, edited_at="2026-01-02 00:00:00")
    survivor = _raw_tx(repo, store, code, "Opening", item, 7_000, edited_at="2026-01-05 00:00:00")
    _raw_tx(repo, store, code, "Opening", item, 3_000, active=0, edited_at="2026-01-09 00:00:00")

    report = ConsistencyGuardian(repo).run()

    assert report.removed["ledger_transactions"] == 2
    assert repo.get_transaction_by_code(code).id == survivor
    assert repo.current_stock(item, store) == Decimal("7")
    conn = repo._conn()
    cur = conn.cursor()
    cur.execute("SELECT COUNT(*) FROM ledger_transaction_lines")
    assert cur.fetchone()[0] == 1
    conn.close()
    assert "ux_ledger_transactions_code" in report.installed
    assert repo.has_index("ux_ledger_transactions_code")
    assert report.integrity == "ok"
    assert report.clean


def test_duplicate_items_are_merged_without_losing_stock(tmp_path: Path):
    repo = _repo(tmp_path)
    store = repo.add_store("Main")
    keep = repo.add_item("RICE01", "Rice", 1.0, 1.5, "2026-01-01 00:00:00")
    stale = _raw_item(repo, "RICE01", "Rice (old)", active=0)
    _raw_tx(repo, store, "A-1", "Opening", keep, 10_000)
    _raw_tx(repo, store, "A-2", "Opening", stale, 5_000)

    report = ConsistencyGuardian(repo).run()

    assert report.removed["items"] == 1
    assert repo.get_item_by_id(stale) is None
    assert repo.get_item_by_code("RICE01").id == keep
    assert repo.current_stock(keep, store) == Decimal("15")
    assert repo.has_index("ux_items_code")


def test_unresolved_duplicates_skip_the_constraint_without_failing(tmp_path: Path):
    class StubbornRepo(SqliteRepository):
        def remove_duplicates(self, target, code):
            return 0

    repo = _repo(tmp_path, StubbornRepo)
    store = repo.add_store("Main")
    item = repo.add_item("RICE01", "Rice", 1.0, 1.5, "2026-01-01 00:00:00")
    _raw_tx(repo, store, "DUP-1", "Opening", item, 1_000)
    _raw_tx(repo, store, "DUP-1", "Opening", item, 1_000)

    report = ConsistencyGuardian(repo).run()

    assert report.skipped == ("ux_ledger_transactions_code",)
    assert not repo.has_index("ux_ledger_transactions_code")
    assert set(report.installed) == {t.index_name for t in UNIQUE_CODE_TARGETS} - {"ux_ledger_transactions_code"}
    assert not report.clean


def test_backfills_empty_codes_and_missing_edit_times(tmp_path: Path):
    repo = _repo(tmp_path)
    blank = _raw_item(repo, "", "Nameless", edited_at=None)

    report = ConsistencyGuardian(repo).run()

    item = repo.get_item_by_id(blank)
    assert item.code == f"LEGACY-ITEM-{blank}"
    assert item.edited_at == "2025-12-31 00:00:00"
    assert report.backfilled["items"] == 2


def test_second_run_leaves_clean_data_untouched(tmp_path: Path):
    repo = _repo(tmp_path)
    store = repo.add_store("Main")
    item = repo.add_item("RICE01", "Rice", 1.0, 1.5, "2026-01-01 00:00:00")
    _raw_tx(repo, store, "DUP-1", "Opening", item, 1_000)
    _raw_tx(repo, store, "DUP-1", "Opening", item, 2_000, edited_at="2026-02-01 00:00:00")
    guardian = ConsistencyGuardian(repo)
    first = guardian.run()

    before = _snapshot(repo)
    second = guardian.run()

    assert _snapshot(repo) == before
    assert sum(first.removed.values()) == 1
    assert sum(second.removed.values()) == 0
    assert sum(second.backfilled.values()) == 0
    assert second.installed == first.installed
    assert second.skipped == ()


def test_container_start_installs_every_constraint(tmp_path: Path):
    app = make_app(tmp_path)

    assert app.startup_report.clean
    for target in UNIQUE_CODE_TARGETS:
        assert app.repo.has_index(target.index_name)


def test_duplicate_operations_take_their_ledger_entries_with_them(tmp_path: Path):
    app = make_app(tmp_path)
    store = app.catalog.add_store("Main")
    item = app.catalog.add_item("RICE01", "Rice", 1.0, 1.5)
    seed_stock(app, store, item, 100)
    first = app.operations.apply_operation(2, store, [{"item_id": item, "qty": 10}])
    second = app.operations.apply_operation(2, store, [{"item_id": item, "qty": 10}])

    conn = app.repo._conn()
    cur = conn.cursor()
    cur.execute("DROP INDEX ux_stock_operations_op_code")
    cur.execute("UPDATE stock_operations SET op_code=? WHERE id=?", (first.op_code, second.op_id))
    conn.commit()
    conn.close()

    report = ConsistencyGuardian(app.repo).run()

    assert report.removed["stock_operations"] == 1
    assert app.repo.has_index("ux_stock_operations_op_code")
    remaining = [op for op in (app.repo.get_operation(first.op_id), app.repo.get_operation(second.op_id)) if op]
    assert len(remaining) == 1
    assert app.ledger.current_stock(item, store) == Decimal("90")

    adj_out = [tx for tx in app.ledger.list_transactions(store) if tx.type == "AdjOut"]
    assert [tx.reference_op_id for tx in adj_out] == [remaining[0].id]
    assert count_rows(app.repo, "ledger_transaction_lines") == 2
