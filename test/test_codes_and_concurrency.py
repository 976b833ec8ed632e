import threading
from datetime import date, datetime
from decimal import Decimal
from pathlib import Path

import pytest

from stockledger.domain.errors import ValidationError
from stockledger.domain.ledger import CodeKind
from stockledger.repositories.sqlite_repo import SqliteRepository
from stockledger.services.code_service import CodeGenerator, terminal_tag
from stockledger.services.ledger_service import LedgerService
from stockledger.services.stock_operation_service import StockOperationService

DAY = date(2026, 10, 18)


def _codes(tmp_path: Path, terminal: str = "POS") -> CodeGenerator:
    repo = SqliteRepository(tmp_path / "codes.db")
    repo.init_db()
    return CodeGenerator(repo, terminal_code=terminal)


def test_concurrent_callers_get_distinct_consecutive_codes(tmp_path: Path):
    codes = _codes(tmp_path)
    n = 20
    barrier = threading.Barrier(n)
    issued = []
    lock = threading.Lock()

    def issue():
        barrier.wait()
        code = codes.next_code(CodeKind.OPERATION, 1, day=DAY)
        with lock:
            issued.append(code)

    threads = [threading.Thread(target=issue) for _ in range(n)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len(set(issued)) == n
    assert sorted(int(c.rsplit("-", 1)[1]) for c in issued) == list(range(1, n + 1))


def test_sequence_is_shared_by_terminals_of_a_store(tmp_path: Path):
    codes = _codes(tmp_path)

    assert codes.next_code(CodeKind.OPERATION, 1, day=DAY, terminal="till1") == "S1-261018-CLR-TILL1-001"
    assert codes.next_code(CodeKind.OPERATION, 1, day=DAY, terminal="till2") == "S1-261018-CLR-TILL2-002"
    assert codes.next_code(CodeKind.OPERATION, 2, day=DAY) == "S2-261018-CLR-POS-001"
    assert codes.next_code(CodeKind.OPERATION, 1, day=date(2026, 10, 19)) == "S1-261019-CLR-POS-001"
    assert codes.next_code(CodeKind.SALE_BILL, 1, day=DAY) == "S1-261018-SLO-POS-001"
    assert codes.next_code(CodeKind.LEDGER, 1, day=DAY) == "S1-261018-TX-POS-001"


def test_transfer_codes_are_dated_and_store_independent(tmp_path: Path):
    codes = _codes(tmp_path)

    assert codes.next_code(CodeKind.TRANSFER, day=DAY) == "TR-20261018-0001"
    assert codes.next_code("TR", 5, day=DAY) == "TR-20261018-0002"


def test_code_requests_are_validated(tmp_path: Path):
    codes = _codes(tmp_path)

    with pytest.raises(ValidationError):
        codes.next_code("XYZ", 1, day=DAY)
    with pytest.raises(ValidationError):
        codes.next_code(CodeKind.OPERATION, None, day=DAY)


def test_terminal_tag_is_short_and_upper_case():
    assert terminal_tag("pos 1") == "POS1"
    assert terminal_tag("abcdefgh") == "ABCDE"
    assert terminal_tag(None) == "POS"
    assert terminal_tag("--") == "POS"


def _services(tmp_path: Path):
    repo = SqliteRepository(tmp_path / "skip.db")
    repo.init_db()
    clock = lambda: datetime(2026, 10, 18, 9, 30)
    codes = CodeGenerator(repo, clock=clock)
    ledger = LedgerService(repo, codes, clock=clock)
    ops = StockOperationService(repo, codes, clock=clock)
    store = repo.add_store("Main")
    item = repo.add_item("RICE01", "Rice", 1.0, 1.5, "2026-10-18 09:00:00")
    return repo, ledger, ops, store, item


def test_generated_ledger_codes_skip_numbers_held_by_synced_rows(tmp_path: Path):
    repo, ledger, _ops, store, item = _services(tmp_path)
    ledger.ingest_synced_transaction(store, "Opening", f"S{store}-261018-TX-POS-001", [{"item_id": item, "qty": 50}])

    codes = [ledger.get_transaction(ledger.record_transaction(store, "Buying", [{"item_id": item, "qty": 1}])).code for _ in range(3)]

    assert codes == [f"S{store}-261018-TX-POS-{n:03d}" for n in (2, 3, 4)]
    assert ledger.current_stock(item, store) == Decimal("53")


def test_generated_operation_codes_skip_explicit_codes(tmp_path: Path):
    _repo, ledger, ops, store, item = _services(tmp_path)
    ledger.record_transaction(store, "Opening", [{"item_id": item, "qty": 50}])
    ops.apply_operation(2, store, [{"item_id": item, "qty": 1}], op_code=f"S{store}-261018-CLR-POS-001")

    results = [ops.apply_operation(2, store, [{"item_id": item, "qty": 1}]).op_code for _ in range(3)]

    assert results == [f"S{store}-261018-CLR-POS-{n:03d}" for n in (2, 3, 4)]
    assert ledger.current_stock(item, store) == Decimal("46")


def test_generated_codes_stay_unique_without_the_unique_index(tmp_path: Path):
    repo, ledger, _ops, store, item = _services(tmp_path)
    ledger.ingest_synced_transaction(store, "Opening", f"S{store}-261018-TX-POS-001", [{"item_id": item, "qty": 5}])
    assert not repo.has_index("ux_ledger_transactions_code")

    tx = ledger.get_transaction(ledger.record_transaction(store, "Buying", [{"item_id": item, "qty": 1}]))

    assert tx.code == f"S{store}-261018-TX-POS-002"
    assert len(repo.list_transactions(store)) == 2
