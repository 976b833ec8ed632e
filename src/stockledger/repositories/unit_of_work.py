from __future__ import annotations

import sqlite3
from decimal import Decimal
from typing import Iterable, Optional, Protocol

from stockledger.domain.errors import DuplicateCodeError
from stockledger.domain.ledger import TransferStatus
from stockledger.domain.models import Item, LedgerTransaction, LorryTrip, StockOperation, Store, TransferRequest
from stockledger.domain.quantities import from_milli, to_milli
from stockledger.repositories.queries import (
    ITEM_COLUMNS,
    load_item,
    load_operation,
    load_store,
    load_transaction,
    load_transfer,
    row_to_item,
    select_current_stock,
    translate_db_error,
)


class UnitOfWork(Protocol):
    def __enter__(self) -> "UnitOfWork": ...
    def __exit__(self, exc_type, exc, tb) -> None: ...
    def get_store(self, store_id: int) -> Optional[Store]: ...
    def get_item(self, item_id: int) -> Optional[Item]: ...
    def current_stock(self, item_id: int, store_id: int) -> Decimal: ...
    def next_sequence(self, prefix: str) -> int: ...
    def ledger_code_exists(self, code: str) -> bool: ...
    def operation_code_exists(self, code: str) -> bool: ...
    def transfer_code_exists(self, code: str) -> bool: ...
    def insert_ledger_transaction(self, store_id: int, tx_type: str, code: str, created_at: str, lines: Iterable[tuple[int, Decimal, float]], **kwargs) -> int: ...


class SqliteUnitOfWork:
    """One write transaction against the ledger database.

    ``BEGIN IMMEDIATE`` takes the database write lock on enter, so every
    read made through this object sees a snapshot no other writer can move
    until commit. Commits on clean exit and rolls back on any exception;
    driver errors leave as domain errors.
    """

    def __init__(self, repo):
        self.repo = repo
        self.conn: sqlite3.Connection | None = None
        self.cur: sqlite3.Cursor | None = None

    def __enter__(self) -> "SqliteUnitOfWork":
        conn = self.repo._conn()
        conn.isolation_level = None
        try:
            conn.execute("BEGIN IMMEDIATE")
        except sqlite3.Error as exc:
            conn.close()
            raise translate_db_error(exc) from exc
        self.conn = conn
        self.cur = conn.cursor()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        conn = self.conn
        self.conn = None
        self.cur = None
        try:
            if exc_type is None:
                try:
                    conn.execute("COMMIT")
                except sqlite3.Error as commit_exc:
                    if conn.in_transaction:
                        conn.execute("ROLLBACK")
                    raise translate_db_error(commit_exc) from commit_exc
                return None
            if conn.in_transaction:
                conn.execute("ROLLBACK")
        finally:
            conn.close()
        if isinstance(exc, sqlite3.Error):
            raise translate_db_error(exc) from exc
        return None

    # ---------- Reads under the write lock ----------
    def get_store(self, store_id: int) -> Optional[Store]:
        return load_store(self.cur, store_id)

    def get_item(self, item_id: int) -> Optional[Item]:
        return load_item(self.cur, item_id)

    def get_item_by_code(self, code: str) -> Optional[Item]:
        self.cur.execute(f"SELECT {ITEM_COLUMNS} FROM items WHERE code=? AND active=1", (code,))
        r = self.cur.fetchone()
        return row_to_item(r) if r else None

    def insert_item(self, code: str, name: str, buying_price: float, selling_price: float, edited_at: str) -> int:
        if self._code_exists("items", "code", code):
            raise DuplicateCodeError(f"Item code already exists: {code}")
        self.cur.execute(
            """
            INSERT INTO items (code, name, buying_price, selling_price, edited_at)
            VALUES (?, ?, ?, ?, ?)
            """,
            (code, name, float(buying_price), float(selling_price), edited_at),
        )
        return int(self.cur.lastrowid)

    def current_stock(self, item_id: int, store_id: int) -> Decimal:
        return select_current_stock(self.cur, item_id, store_id)

    def get_transaction(self, tx_id: int) -> Optional[LedgerTransaction]:
        return load_transaction(self.cur, tx_id)

    def get_operation(self, op_id: int) -> Optional[StockOperation]:
        return load_operation(self.cur, op_id)

    def get_transfer(self, transfer_id: int) -> Optional[TransferRequest]:
        return load_transfer(self.cur, transfer_id)

    # ---------- Codes ----------
    def next_sequence(self, prefix: str) -> int:
        self.cur.execute(
            """
            INSERT INTO code_sequences (prefix, last_value) VALUES (?, 1)
            ON CONFLICT(prefix) DO UPDATE SET last_value = last_value + 1
            """,
            (prefix,),
        )
        self.cur.execute("SELECT last_value FROM code_sequences WHERE prefix=?", (prefix,))
        return int(self.cur.fetchone()[0])

    def _code_exists(self, table: str, column: str, code: str) -> bool:
        self.cur.execute(f"SELECT 1 FROM {table} WHERE {column}=? LIMIT 1", (code,))
        return self.cur.fetchone() is not None

    def ledger_code_exists(self, code: str) -> bool:
        return self._code_exists("ledger_transactions", "code", code)

    def operation_code_exists(self, code: str) -> bool:
        return self._code_exists("stock_operations", "op_code", code)

    def transfer_code_exists(self, code: str) -> bool:
        return self._code_exists("transfer_requests", "code", code)

    # ---------- Ledger ----------
    def insert_ledger_transaction(
        self,
        store_id: int,
        tx_type: str,
        code: str,
        created_at: str,
        lines: Iterable[tuple[int, Decimal, float]],
        reference_op_id: int | None = None,
        reversal_of_id: int | None = None,
        comments: str | None = None,
        created_by: str | None = None,
    ) -> int:
        """
        lines: [(item_id, quantity, total)] with unsigned quantities.
        """
        self.cur.execute(
            """
            INSERT INTO ledger_transactions
                (store_id, type, code, reference_op_id, reversal_of_id, comments, created_by, created_at, edited_at, active)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, 1)
            """,
            (int(store_id), str(tx_type), code, reference_op_id, reversal_of_id, comments, created_by, created_at, created_at),
        )
        tx_id = int(self.cur.lastrowid)
        for item_id, qty, total in lines:
            self.cur.execute(
                """
                INSERT INTO ledger_transaction_lines (transaction_id, item_id, quantity_milli, total, active)
                VALUES (?, ?, ?, ?, 1)
                """,
                (tx_id, int(item_id), to_milli(qty), float(total)),
            )
        return tx_id

    def set_transaction_active(self, tx_id: int, active: int, edited_at: str) -> bool:
        self.cur.execute(
            "UPDATE ledger_transactions SET active=?, edited_at=? WHERE id=? AND active<>?",
            (int(active), edited_at, int(tx_id), int(active)),
        )
        changed = self.cur.rowcount > 0
        self.cur.execute(
            "UPDATE ledger_transaction_lines SET active=? WHERE transaction_id=?",
            (int(active), int(tx_id)),
        )
        return bool(changed)

    def has_reversal(self, tx_id: int) -> bool:
        self.cur.execute("SELECT 1 FROM ledger_transactions WHERE reversal_of_id=? LIMIT 1", (int(tx_id),))
        return self.cur.fetchone() is not None

    def active_transactions_for_operation(self, op_id: int) -> list[LedgerTransaction]:
        self.cur.execute(
            "SELECT id FROM ledger_transactions WHERE reference_op_id=? AND active=1 AND reversal_of_id IS NULL ORDER BY id",
            (int(op_id),),
        )
        ids = [int(r[0]) for r in self.cur.fetchall()]
        out = [load_transaction(self.cur, tx_id) for tx_id in ids]
        return [tx for tx in out if tx is not None]

    # ---------- Stock operations ----------
    def insert_operation(
        self,
        op_type: int,
        store_id: int,
        dest_store_id: int | None,
        clearance_type: str | None,
        wastage: Decimal,
        surplus: Decimal,
        op_code: str,
        created_at: str,
        bill_code: str | None = None,
        reference_op_id: int | None = None,
        comments: str | None = None,
        created_by: str | None = None,
        lorry: LorryTrip | None = None,
        return_status: str | None = None,
        returned_item_id: int | None = None,
        returned_quantity: Decimal | None = None,
    ) -> int:
        self.cur.execute(
            """
            INSERT INTO stock_operations
                (op_type, store_id, dest_store_id, clearance_type, wastage_milli, surplus_milli,
                 op_code, bill_code, reference_op_id, comments, created_by, created_at, edited_at,
                 lorry_name, driver_name, destination, trip_id, return_status, returned_item_id, returned_milli, active)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 1)
            """,
            (
                int(op_type),
                int(store_id),
                dest_store_id,
                clearance_type,
                to_milli(wastage),
                to_milli(surplus),
                op_code,
                bill_code,
                reference_op_id,
                comments,
                created_by,
                created_at,
                created_at,
                lorry.lorry_name if lorry else None,
                lorry.driver_name if lorry else None,
                lorry.destination if lorry else None,
                lorry.trip_id if lorry else None,
                return_status,
                returned_item_id,
                to_milli(returned_quantity) if returned_quantity is not None else None,
            ),
        )
        return int(self.cur.lastrowid)

    def insert_operation_line(
        self,
        op_id: int,
        item_id: int,
        store_id: int,
        original_stock: Decimal,
        cleared: Decimal,
        remaining: Decimal,
        sold: Decimal | None = None,
    ) -> int:
        self.cur.execute(
            """
            INSERT INTO stock_operation_lines
                (op_id, item_id, store_id, original_stock_milli, cleared_milli, remaining_milli, sold_milli, active)
            VALUES (?, ?, ?, ?, ?, ?, ?, 1)
            """,
            (
                int(op_id),
                int(item_id),
                int(store_id),
                to_milli(original_stock),
                to_milli(cleared),
                to_milli(remaining),
                to_milli(sold) if sold is not None else 0,
            ),
        )
        return int(self.cur.lastrowid)

    def insert_operation_conversion(self, op_id: int, source_item_id: int, dest_item_id: int, dest_quantity: Decimal) -> int:
        self.cur.execute(
            """
            INSERT INTO operation_conversions (op_id, source_item_id, dest_item_id, dest_qty_milli, active)
            VALUES (?, ?, ?, ?, 1)
            """,
            (int(op_id), int(source_item_id), int(dest_item_id), to_milli(dest_quantity)),
        )
        return int(self.cur.lastrowid)

    def count_active_returns(self, op_id: int) -> int:
        self.cur.execute(
            "SELECT COUNT(*) FROM stock_operations WHERE reference_op_id=? AND op_type=11 AND active=1",
            (int(op_id),),
        )
        return int(self.cur.fetchone()[0])

    def returned_quantity(self, reference_op_id: int, item_id: int) -> Decimal:
        self.cur.execute(
            """
            SELECT COALESCE(SUM(returned_milli), 0) FROM stock_operations
            WHERE reference_op_id=? AND op_type=11 AND active=1 AND returned_item_id=?
            """,
            (int(reference_op_id), int(item_id)),
        )
        return from_milli(self.cur.fetchone()[0])

    # ---------- Lorry returns ----------
    def lorry_return_totals(self, op_id: int, item_id: int | None = None) -> tuple[Decimal, Decimal]:
        """Returned and wasted quantities already booked against a lorry clearance."""
        sql = "SELECT COALESCE(SUM(return_milli), 0), COALESCE(SUM(wastage_milli), 0) FROM lorry_returns WHERE op_id=? AND active=1"
        params: list = [int(op_id)]
        if item_id is not None:
            sql += " AND item_id=?"
            params.append(int(item_id))
        self.cur.execute(sql, params)
        returned, wasted = self.cur.fetchone()
        return from_milli(returned), from_milli(wasted)

    def insert_lorry_return(
        self,
        op_id: int,
        item_id: int,
        original_cleared: Decimal,
        return_quantity: Decimal,
        wastage_quantity: Decimal,
        net_delivered: Decimal,
        transaction_id: int | None,
        created_at: str,
        notes: str | None = None,
        created_by: str | None = None,
    ) -> int:
        self.cur.execute(
            """
            INSERT INTO lorry_returns
                (op_id, item_id, original_cleared_milli, return_milli, wastage_milli, net_delivered_milli,
                 transaction_id, notes, created_by, created_at, active)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 1)
            """,
            (
                int(op_id),
                int(item_id),
                to_milli(original_cleared),
                to_milli(return_quantity),
                to_milli(wastage_quantity),
                to_milli(net_delivered),
                transaction_id,
                notes,
                created_by,
                created_at,
            ),
        )
        return int(self.cur.lastrowid)

    def set_return_status(self, op_id: int, status: str, edited_at: str) -> None:
        self.cur.execute(
            "UPDATE stock_operations SET return_status=?, edited_at=? WHERE id=?",
            (status, edited_at, int(op_id)),
        )

    def deactivate_operation(self, op_id: int, edited_at: str) -> bool:
        self.cur.execute(
            "UPDATE stock_operations SET active=0, edited_at=? WHERE id=? AND active=1",
            (edited_at, int(op_id)),
        )
        changed = self.cur.rowcount > 0
        self.cur.execute("UPDATE stock_operation_lines SET active=0 WHERE op_id=?", (int(op_id),))
        self.cur.execute("UPDATE operation_conversions SET active=0 WHERE op_id=?", (int(op_id),))
        self.cur.execute("UPDATE lorry_returns SET active=0 WHERE op_id=?", (int(op_id),))
        return bool(changed)

    # ---------- Transfers ----------
    def insert_transfer(
        self,
        code: str,
        main_item_id: int,
        quantity: Decimal | None,
        source_store_id: int,
        dest_store_id: int,
        created_at: str,
        requested_by: str | None = None,
        comments: str | None = None,
    ) -> int:
        self.cur.execute(
            """
            INSERT INTO transfer_requests
                (code, main_item_id, quantity_milli, source_store_id, dest_store_id, status,
                 requested_by, comments, created_at, edited_at, active)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 1)
            """,
            (
                code,
                int(main_item_id),
                to_milli(quantity) if quantity is not None else None,
                int(source_store_id),
                int(dest_store_id),
                TransferStatus.PENDING.value,
                requested_by,
                comments,
                created_at,
                created_at,
            ),
        )
        return int(self.cur.lastrowid)

    def insert_transfer_conversion(self, transfer_id: int, source_item_id: int, dest_item_id: int, dest_quantity: Decimal) -> int:
        self.cur.execute(
            """
            INSERT INTO transfer_conversions (transfer_id, source_item_id, dest_item_id, dest_qty_milli)
            VALUES (?, ?, ?, ?)
            """,
            (int(transfer_id), int(source_item_id), int(dest_item_id), to_milli(dest_quantity)),
        )
        return int(self.cur.lastrowid)

    def decide_transfer(
        self,
        transfer_id: int,
        status: str,
        approver: str,
        decided_at: str,
        clearance_type: str | None = None,
        op_id: int | None = None,
        decline_reason: str | None = None,
    ) -> bool:
        """Moves a PENDING request to a terminal status; False when it was not PENDING."""
        self.cur.execute(
            """
            UPDATE transfer_requests
            SET status=?, approver=?, decided_at=?, edited_at=?, clearance_type=?, op_id=?, decline_reason=?
            WHERE id=? AND active=1 AND status=?
            """,
            (
                status,
                approver,
                decided_at,
                decided_at,
                clearance_type,
                op_id,
                decline_reason,
                int(transfer_id),
                TransferStatus.PENDING.value,
            ),
        )
        return self.cur.rowcount > 0


