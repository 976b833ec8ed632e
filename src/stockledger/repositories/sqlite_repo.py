from __future__ import annotations

import sqlite3
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from pathlib import Path
from typing import Optional

from stockledger.domain.ledger import OpType, TransactionType, TransferStatus
from stockledger.domain.models import (
    Item,
    LedgerTransaction,
    LorryReturn,
    StockLevel,
    StockOperation,
    Store,
    TransferRequest,
)
from stockledger.domain.quantities import from_milli
from stockledger.repositories.queries import (
    ITEM_COLUMNS,
    STOCK_LEVELS_SQL,
    load_item,
    load_lorry_returns,
    load_operation,
    load_store,
    load_transaction,
    load_transfer,
    row_to_item,
    row_to_store,
    select_current_stock,
    translate_db_error,
)
from stockledger.repositories.unit_of_work import SqliteUnitOfWork


@dataclass(frozen=True)
class CodeTarget:
    """A header table whose code column must be unique."""

    table: str
    code_column: str
    index_name: str
    survivor_order: str
    legacy_prefix: str
    children: tuple[tuple[str, str], ...] = ()
    owned_ledger_column: Optional[str] = None


ITEM_REFERENCES: tuple[tuple[str, str], ...] = (
    ("ledger_transaction_lines", "item_id"),
    ("stock_operation_lines", "item_id"),
    ("operation_conversions", "source_item_id"),
    ("operation_conversions", "dest_item_id"),
    ("transfer_requests", "main_item_id"),
    ("transfer_conversions", "source_item_id"),
    ("transfer_conversions", "dest_item_id"),
)

UNIQUE_CODE_TARGETS: tuple[CodeTarget, ...] = (
    CodeTarget(
        table="items",
        code_column="code",
        index_name="ux_items_code",
        survivor_order="active DESC, COALESCE(edited_at, created_at) DESC, id DESC",
        legacy_prefix="LEGACY-ITEM",
    ),
    CodeTarget(
        table="ledger_transactions",
        code_column="code",
        index_name="ux_ledger_transactions_code",
        survivor_order="active DESC, COALESCE(edited_at, created_at) DESC, id DESC",
        legacy_prefix="LEGACY-TX",
        children=(("ledger_transaction_lines", "transaction_id"),),
    ),
    CodeTarget(
        table="stock_operations",
        code_column="op_code",
        index_name="ux_stock_operations_op_code",
        survivor_order="active DESC, COALESCE(edited_at, created_at) DESC, id DESC",
        legacy_prefix="LEGACY-OP",
        children=(("stock_operation_lines", "op_id"), ("operation_conversions", "op_id"), ("lorry_returns", "op_id")),
        owned_ledger_column="reference_op_id",
    ),
    CodeTarget(
        table="transfer_requests",
        code_column="code",
        index_name="ux_transfer_requests_code",
        survivor_order="active DESC, COALESCE(edited_at, created_at) DESC, id DESC",
        legacy_prefix="LEGACY-TR",
        children=(("transfer_conversions", "transfer_id"),),
    ),
)


class SqliteRepository:
    def __init__(self, db_path: Path | str, busy_timeout: float = 10.0):
        self.db_path = str(db_path)
        self.busy_timeout = float(busy_timeout)

    def _conn(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, timeout=self.busy_timeout, check_same_thread=False)
        conn.execute("PRAGMA foreign_keys = ON;")
        return conn

    def unit_of_work(self) -> SqliteUnitOfWork:
        return SqliteUnitOfWork(self)

    def init_db(self) -> None:
        self.run_migrations()

    def run_migrations(self) -> None:
        conn = self._conn()
        conn.isolation_level = None
        backup_path = self._create_pre_migration_backup(conn)
        try:
            conn.execute("PRAGMA journal_mode=WAL")
            cur = conn.cursor()
            cur.execute("BEGIN IMMEDIATE")
            cur.execute("CREATE TABLE IF NOT EXISTS schema_migrations (version INTEGER PRIMARY KEY, applied_at TEXT NOT NULL)")
            cur.execute("SELECT COALESCE(MAX(version), 0) FROM schema_migrations")
            current_version = int(cur.fetchone()[0])

            migrations = [
                (1, self._migration_v1_base),
                (2, self._migration_v2_sequences_and_reversals),
                (3, self._migration_v3_lorry_trips),
            ]

            for version, migration in migrations:
                if version <= current_version:
                    continue
                migration(cur)
                cur.execute(
                    "INSERT INTO schema_migrations (version, applied_at) VALUES (?, datetime('now'))",
                    (version,),
                )
            cur.execute("COMMIT")
        except Exception as exc:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            conn.close()
            self._restore_pre_migration_backup(backup_path)
            raise RuntimeError(
                "Database migration failed. Original database restored from automatic backup."
            ) from exc
        conn.close()

    def _create_pre_migration_backup(self, conn: sqlite3.Connection) -> Path | None:
        db_file = Path(self.db_path)
        if not db_file.exists() or db_file.stat().st_size == 0:
            return None
        backup_file = db_file.with_name(f"{db_file.stem}.pre_migration_{datetime.now().strftime('%Y%m%d%H%M%S')}.bak")
        dst = sqlite3.connect(str(backup_file))
        try:
            conn.backup(dst)
        finally:
            dst.close()
        return backup_file

    def _restore_pre_migration_backup(self, backup_path: Path | None) -> None:
        if backup_path is None or not backup_path.exists():
            return
        src = sqlite3.connect(str(backup_path))
        dst = self._conn()
        try:
            src.backup(dst)
        finally:
            src.close()
            dst.close()

    def _migration_v1_base(self, cur: sqlite3.Cursor) -> None:
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS stores (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                name TEXT NOT NULL,
                active INTEGER NOT NULL DEFAULT 1 CHECK(active IN (0,1)),
                created_at TEXT NOT NULL DEFAULT (datetime('now'))
            )
            """
        )

        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS items (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                code TEXT NOT NULL,
                name TEXT NOT NULL,
                buying_price REAL NOT NULL DEFAULT 0 CHECK(buying_price >= 0),
                selling_price REAL NOT NULL DEFAULT 0 CHECK(selling_price >= 0),
                active INTEGER NOT NULL DEFAULT 1 CHECK(active IN (0,1)),
                created_at TEXT NOT NULL DEFAULT (datetime('now')),
                edited_at TEXT
            )
            """
        )

        tx_types = ", ".join(f"'{t.value}'" for t in TransactionType)
        cur.execute(
            f"""
            CREATE TABLE IF NOT EXISTS ledger_transactions (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                store_id INTEGER NOT NULL,
                type TEXT NOT NULL CHECK(type IN ({tx_types})),
                code TEXT NOT NULL,
                reference_op_id INTEGER,
                comments TEXT,
                created_by TEXT,
                created_at TEXT NOT NULL,
                edited_at TEXT,
                active INTEGER NOT NULL DEFAULT 1 CHECK(active IN (0,1)),
                FOREIGN KEY(store_id) REFERENCES stores(id),
                FOREIGN KEY(reference_op_id) REFERENCES stock_operations(id) ON DELETE SET NULL
            )
            """
        )

        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS ledger_transaction_lines (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                transaction_id INTEGER NOT NULL,
                item_id INTEGER NOT NULL,
                quantity_milli INTEGER NOT NULL CHECK(quantity_milli >= 0),
                total REAL NOT NULL DEFAULT 0,
                active INTEGER NOT NULL DEFAULT 1 CHECK(active IN (0,1)),
                FOREIGN KEY(transaction_id) REFERENCES ledger_transactions(id) ON DELETE CASCADE,
                FOREIGN KEY(item_id) REFERENCES items(id)
            )
            """
        )

        op_types = ", ".join(str(int(t)) for t in OpType)
        cur.execute(
            f"""
            CREATE TABLE IF NOT EXISTS stock_operations (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                op_type INTEGER NOT NULL CHECK(op_type IN ({op_types})),
                store_id INTEGER NOT NULL,
                dest_store_id INTEGER,
                clearance_type TEXT CHECK(clearance_type IS NULL OR clearance_type IN ('FULL','PARTIAL')),
                wastage_milli INTEGER NOT NULL DEFAULT 0 CHECK(wastage_milli >= 0),
                surplus_milli INTEGER NOT NULL DEFAULT 0 CHECK(surplus_milli >= 0),
                op_code TEXT NOT NULL,
                reference_op_id INTEGER,
                comments TEXT,
                created_by TEXT,
                created_at TEXT NOT NULL,
                edited_at TEXT,
                active INTEGER NOT NULL DEFAULT 1 CHECK(active IN (0,1)),
                CHECK(NOT (wastage_milli > 0 AND surplus_milli > 0)),
                FOREIGN KEY(store_id) REFERENCES stores(id),
                FOREIGN KEY(dest_store_id) REFERENCES stores(id),
                FOREIGN KEY(reference_op_id) REFERENCES stock_operations(id) ON DELETE SET NULL
            )
            """
        )

        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS stock_operation_lines (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                op_id INTEGER NOT NULL,
                item_id INTEGER NOT NULL,
                store_id INTEGER NOT NULL,
                original_stock_milli INTEGER NOT NULL,
                cleared_milli INTEGER NOT NULL,
                remaining_milli INTEGER NOT NULL,
                sold_milli INTEGER NOT NULL DEFAULT 0 CHECK(sold_milli >= 0),
                active INTEGER NOT NULL DEFAULT 1 CHECK(active IN (0,1)),
                FOREIGN KEY(op_id) REFERENCES stock_operations(id) ON DELETE CASCADE,
                FOREIGN KEY(item_id) REFERENCES items(id),
                FOREIGN KEY(store_id) REFERENCES stores(id)
            )
            """
        )

        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS operation_conversions (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                op_id INTEGER NOT NULL,
                source_item_id INTEGER NOT NULL,
                dest_item_id INTEGER NOT NULL,
                dest_qty_milli INTEGER NOT NULL CHECK(dest_qty_milli > 0),
                active INTEGER NOT NULL DEFAULT 1 CHECK(active IN (0,1)),
                FOREIGN KEY(op_id) REFERENCES stock_operations(id) ON DELETE CASCADE,
                FOREIGN KEY(source_item_id) REFERENCES items(id),
                FOREIGN KEY(dest_item_id) REFERENCES items(id)
            )
            """
        )

        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS transfer_requests (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                code TEXT NOT NULL,
                main_item_id INTEGER NOT NULL,
                quantity_milli INTEGER CHECK(quantity_milli IS NULL OR quantity_milli > 0),
                source_store_id INTEGER NOT NULL,
                dest_store_id INTEGER NOT NULL,
                status TEXT NOT NULL DEFAULT 'PENDING' CHECK(status IN ('PENDING','APPROVED','DECLINED')),
                requested_by TEXT,
                approver TEXT,
                clearance_type TEXT CHECK(clearance_type IS NULL OR clearance_type IN ('FULL','PARTIAL')),
                op_id INTEGER,
                comments TEXT,
                decline_reason TEXT,
                created_at TEXT NOT NULL,
                decided_at TEXT,
                edited_at TEXT,
                active INTEGER NOT NULL DEFAULT 1 CHECK(active IN (0,1)),
                CHECK(source_store_id <> dest_store_id),
                FOREIGN KEY(main_item_id) REFERENCES items(id),
                FOREIGN KEY(source_store_id) REFERENCES stores(id),
                FOREIGN KEY(dest_store_id) REFERENCES stores(id),
                FOREIGN KEY(op_id) REFERENCES stock_operations(id) ON DELETE SET NULL
            )
            """
        )

        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS transfer_conversions (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                transfer_id INTEGER NOT NULL,
                source_item_id INTEGER NOT NULL,
                dest_item_id INTEGER NOT NULL,
                dest_qty_milli INTEGER NOT NULL CHECK(dest_qty_milli > 0),
                FOREIGN KEY(transfer_id) REFERENCES transfer_requests(id) ON DELETE CASCADE,
                FOREIGN KEY(source_item_id) REFERENCES items(id),
                FOREIGN KEY(dest_item_id) REFERENCES items(id)
            )
            """
        )

    def _migration_v2_sequences_and_reversals(self, cur: sqlite3.Cursor) -> None:
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS code_sequences (
                prefix TEXT PRIMARY KEY,
                last_value INTEGER NOT NULL CHECK(last_value > 0)
            )
            """
        )

        self._add_column_if_missing(cur, "ledger_transactions", "reversal_of_id", "INTEGER REFERENCES ledger_transactions(id)")
        self._add_column_if_missing(cur, "stock_operations", "bill_code", "TEXT")

        # one compensating entry per reversed transaction
        cur.execute(
            """
            CREATE UNIQUE INDEX IF NOT EXISTS ux_ledger_transactions_reversal
            ON ledger_transactions(reversal_of_id) WHERE reversal_of_id IS NOT NULL
            """
        )
        cur.execute("CREATE INDEX IF NOT EXISTS ix_ledger_lines_item ON ledger_transaction_lines(item_id, transaction_id)")
        cur.execute("CREATE INDEX IF NOT EXISTS ix_ledger_transactions_store ON ledger_transactions(store_id, active)")
        cur.execute("CREATE INDEX IF NOT EXISTS ix_ledger_transactions_op ON ledger_transactions(reference_op_id)")
        cur.execute("CREATE INDEX IF NOT EXISTS ix_stock_operations_store ON stock_operations(store_id, op_type)")
        cur.execute("CREATE INDEX IF NOT EXISTS ix_transfer_requests_status ON transfer_requests(status)")

    def _migration_v3_lorry_trips(self, cur: sqlite3.Cursor) -> None:
        for column in ("lorry_name", "driver_name", "destination", "trip_id"):
            self._add_column_if_missing(cur, "stock_operations", column, "TEXT")
        self._add_column_if_missing(
            cur,
            "stock_operations",
            "return_status",
            "TEXT CHECK(return_status IS NULL OR return_status IN ('PENDING','PARTIAL_RETURN','FULLY_RETURNED'))",
        )
        # stock returns (op 11) record which source item they give back
        self._add_column_if_missing(cur, "stock_operations", "returned_item_id", "INTEGER REFERENCES items(id)")
        self._add_column_if_missing(cur, "stock_operations", "returned_milli", "INTEGER")

        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS lorry_returns (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                op_id INTEGER NOT NULL,
                item_id INTEGER NOT NULL,
                original_cleared_milli INTEGER NOT NULL,
                return_milli INTEGER NOT NULL CHECK(return_milli >= 0),
                wastage_milli INTEGER NOT NULL DEFAULT 0 CHECK(wastage_milli >= 0),
                net_delivered_milli INTEGER NOT NULL CHECK(net_delivered_milli >= 0),
                transaction_id INTEGER,
                notes TEXT,
                created_by TEXT,
                created_at TEXT NOT NULL,
                active INTEGER NOT NULL DEFAULT 1 CHECK(active IN (0,1)),
                CHECK(return_milli + wastage_milli > 0),
                FOREIGN KEY(op_id) REFERENCES stock_operations(id) ON DELETE CASCADE,
                FOREIGN KEY(item_id) REFERENCES items(id),
                FOREIGN KEY(transaction_id) REFERENCES ledger_transactions(id) ON DELETE SET NULL
            )
            """
        )
        cur.execute("CREATE INDEX IF NOT EXISTS ix_lorry_returns_op ON lorry_returns(op_id, item_id)")
        cur.execute("CREATE INDEX IF NOT EXISTS ix_stock_operations_reference ON stock_operations(reference_op_id, op_type)")

    def _add_column_if_missing(self, cur: sqlite3.Cursor, table: str, column: str, definition: str) -> None:
        cur.execute(f"PRAGMA table_info({table})")
        cols = {str(r[1]) for r in cur.fetchall()}
        if column in cols:
            return
        cur.execute(f"ALTER TABLE {table} ADD COLUMN {column} {definition}")

    # ---------- Stores ----------
    def add_store(self, name: str) -> int:
        conn = self._conn()
        cur = conn.cursor()
        cur.execute("INSERT INTO stores (name) VALUES (?)", (name,))
        sid = int(cur.lastrowid)
        conn.commit()
        conn.close()
        return sid

    def get_store(self, store_id: int) -> Optional[Store]:
        conn = self._conn()
        store = load_store(conn.cursor(), store_id)
        conn.close()
        return store

    def list_stores(self) -> list[Store]:
        conn = self._conn()
        cur = conn.cursor()
        cur.execute("SELECT id, name, active FROM stores WHERE active=1 ORDER BY id")
        rows = cur.fetchall()
        conn.close()
        return [row_to_store(r) for r in rows]

    # ---------- Items ----------
    def add_item(self, code: str, name: str, buying_price: float, selling_price: float, edited_at: str) -> int:
        with self.unit_of_work() as uow:
            return uow.insert_item(code, name, buying_price, selling_price, edited_at)

    def get_item_by_id(self, item_id: int) -> Optional[Item]:
        conn = self._conn()
        item = load_item(conn.cursor(), item_id)
        conn.close()
        return item

    def get_item_by_code(self, code: str, active_only: bool = True) -> Optional[Item]:
        conn = self._conn()
        cur = conn.cursor()
        sql = f"SELECT {ITEM_COLUMNS} FROM items WHERE code=?"
        if active_only:
            sql += " AND active=1"
        cur.execute(sql, (code,))
        r = cur.fetchone()
        conn.close()
        return row_to_item(r) if r else None

    def list_items(self) -> list[Item]:
        conn = self._conn()
        cur = conn.cursor()
        cur.execute(f"SELECT {ITEM_COLUMNS} FROM items WHERE active=1 ORDER BY name")
        rows = cur.fetchall()
        conn.close()
        return [row_to_item(r) for r in rows]

    def deactivate_item(self, item_id: int, edited_at: str) -> bool:
        conn = self._conn()
        cur = conn.cursor()
        cur.execute(
            "UPDATE items SET active=0, edited_at=? WHERE id=? AND active=1",
            (edited_at, int(item_id)),
        )
        changed = cur.rowcount > 0
        conn.commit()
        conn.close()
        return bool(changed)

    def upsert_item_if_newer(
        self,
        code: str,
        name: str,
        buying_price: float,
        selling_price: float,
        active: int,
        edited_at: str,
    ) -> bool:
        """Last-writer-wins on ``edited_at``; returns whether the row changed."""
        conn = self._conn()
        cur = conn.cursor()
        try:
            cur.execute(
                "SELECT id, COALESCE(edited_at, created_at) FROM items WHERE code=? ORDER BY active DESC, id DESC LIMIT 1",
                (code,),
            )
            row = cur.fetchone()
            if row is None:
                cur.execute(
                    """
                    INSERT INTO items (code, name, buying_price, selling_price, active, edited_at)
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    (code, name, float(buying_price), float(selling_price), int(active), edited_at),
                )
                conn.commit()
                return True
            if str(row[1]) >= edited_at:
                return False
            cur.execute(
                """
                UPDATE items
                SET name=?, buying_price=?, selling_price=?, active=?, edited_at=?
                WHERE id=?
                """,
                (name, float(buying_price), float(selling_price), int(active), edited_at, int(row[0])),
            )
            conn.commit()
            return True
        except sqlite3.Error as exc:
            conn.rollback()
            raise translate_db_error(exc) from exc
        finally:
            conn.close()

    # ---------- Ledger ----------
    def current_stock(self, item_id: int, store_id: int) -> Decimal:
        conn = self._conn()
        try:
            return select_current_stock(conn.cursor(), item_id, store_id)
        finally:
            conn.close()

    def stock_levels(self, store_id: int) -> list[StockLevel]:
        conn = self._conn()
        cur = conn.cursor()
        cur.execute(STOCK_LEVELS_SQL, (int(store_id),))
        rows = cur.fetchall()
        conn.close()
        return [StockLevel(item_id=int(r[0]), item_code=str(r[1]), item_name=str(r[2]), stock=from_milli(r[3])) for r in rows]

    def get_transaction(self, tx_id: int) -> Optional[LedgerTransaction]:
        conn = self._conn()
        tx = load_transaction(conn.cursor(), tx_id)
        conn.close()
        return tx

    def get_transaction_by_code(self, code: str) -> Optional[LedgerTransaction]:
        conn = self._conn()
        cur = conn.cursor()
        cur.execute("SELECT id FROM ledger_transactions WHERE code=? ORDER BY active DESC, id DESC LIMIT 1", (code,))
        row = cur.fetchone()
        tx = load_transaction(cur, int(row[0])) if row else None
        conn.close()
        return tx

    def list_transactions(self, store_id: int, item_id: int | None = None, limit: int = 100) -> list[LedgerTransaction]:
        conn = self._conn()
        cur = conn.cursor()
        if item_id is None:
            cur.execute(
                """
                SELECT id FROM ledger_transactions
                WHERE store_id=?
                ORDER BY created_at DESC, id DESC
                LIMIT ?
                """,
                (int(store_id), int(limit)),
            )
        else:
            cur.execute(
                """
                SELECT DISTINCT lt.id, lt.created_at
                FROM ledger_transactions lt
                JOIN ledger_transaction_lines ll ON ll.transaction_id = lt.id
                WHERE lt.store_id=? AND ll.item_id=?
                ORDER BY lt.created_at DESC, lt.id DESC
                LIMIT ?
                """,
                (int(store_id), int(item_id), int(limit)),
            )
        ids = [int(r[0]) for r in cur.fetchall()]
        out = [load_transaction(cur, tx_id) for tx_id in ids]
        conn.close()
        return [tx for tx in out if tx is not None]

    def transactions_for_operation(self, op_id: int) -> list[LedgerTransaction]:
        conn = self._conn()
        cur = conn.cursor()
        cur.execute("SELECT id FROM ledger_transactions WHERE reference_op_id=? ORDER BY id", (int(op_id),))
        ids = [int(r[0]) for r in cur.fetchall()]
        out = [load_transaction(cur, tx_id) for tx_id in ids]
        conn.close()
        return [tx for tx in out if tx is not None]

    # ---------- Stock operations ----------
    def get_operation(self, op_id: int) -> Optional[StockOperation]:
        conn = self._conn()
        op = load_operation(conn.cursor(), op_id)
        conn.close()
        return op

    def list_operations(self, store_id: int, op_type: int | None = None, limit: int = 100) -> list[StockOperation]:
        conn = self._conn()
        cur = conn.cursor()
        sql = "SELECT id FROM stock_operations WHERE active=1 AND store_id=?"
        params: list = [int(store_id)]
        if op_type is not None:
            sql += " AND op_type=?"
            params.append(int(op_type))
        sql += " ORDER BY created_at DESC, id DESC LIMIT ?"
        params.append(int(limit))
        cur.execute(sql, params)
        ids = [int(r[0]) for r in cur.fetchall()]
        out = [load_operation(cur, op_id) for op_id in ids]
        conn.close()
        return [op for op in out if op is not None]

    def list_lorry_operations(self, statuses: tuple[str, ...], store_id: int | None = None, limit: int = 50) -> list[StockOperation]:
        conn = self._conn()
        cur = conn.cursor()
        marks = ",".join("?" for _ in statuses)
        sql = f"""
            SELECT id FROM stock_operations
            WHERE active=1 AND op_type IN (?, ?) AND return_status IN ({marks})
        """
        params: list = [int(OpType.PARTIAL_CLEAR_WITH_LORRY), int(OpType.FULL_CLEAR_WITH_LORRY), *statuses]
        if store_id is not None:
            sql += " AND store_id=?"
            params.append(int(store_id))
        sql += " ORDER BY created_at DESC, id DESC LIMIT ?"
        params.append(int(limit))
        cur.execute(sql, params)
        ids = [int(r[0]) for r in cur.fetchall()]
        out = [load_operation(cur, op_id) for op_id in ids]
        conn.close()
        return [op for op in out if op is not None]

    def list_lorry_returns(self, op_id: int) -> list[LorryReturn]:
        conn = self._conn()
        returns = load_lorry_returns(conn.cursor(), op_id)
        conn.close()
        return returns

    # ---------- Transfers ----------
    def get_transfer(self, transfer_id: int) -> Optional[TransferRequest]:
        conn = self._conn()
        tr = load_transfer(conn.cursor(), transfer_id)
        conn.close()
        return tr

    def list_transfers(self, status: str = TransferStatus.PENDING.value, limit: int = 25) -> list[TransferRequest]:
        conn = self._conn()
        cur = conn.cursor()
        cur.execute(
            """
            SELECT id FROM transfer_requests
            WHERE active=1 AND status=?
            ORDER BY created_at DESC, id DESC
            LIMIT ?
            """,
            (status, int(limit)),
        )
        ids = [int(r[0]) for r in cur.fetchall()]
        out = [load_transfer(cur, tid) for tid in ids]
        conn.close()
        return [tr for tr in out if tr is not None]

    # ---------- Consistency repair ----------
    def integrity_check(self) -> str:
        conn = self._conn()
        cur = conn.cursor()
        cur.execute("PRAGMA integrity_check")
        row = cur.fetchone()
        conn.close()
        return str(row[0]) if row else "unknown"

    def duplicate_codes(self, target: CodeTarget) -> list[str]:
        conn = self._conn()
        cur = conn.cursor()
        cur.execute(
            f"""
            SELECT {target.code_column}
            FROM {target.table}
            WHERE {target.code_column} IS NOT NULL AND {target.code_column} <> ''
            GROUP BY {target.code_column}
            HAVING COUNT(*) > 1
            ORDER BY {target.code_column}
            """
        )
        rows = cur.fetchall()
        conn.close()
        return [str(r[0]) for r in rows]

    def remove_duplicates(self, target: CodeTarget, code: str) -> int:
        """Keep one survivor for ``code``; delete the rest, their children and the ledger entries they wrote."""
        with self.unit_of_work() as uow:
            cur = uow.cur
            cur.execute(
                f"SELECT id FROM {target.table} WHERE {target.code_column}=? ORDER BY {target.survivor_order}",
                (code,),
            )
            ids = [int(r[0]) for r in cur.fetchall()]
            if len(ids) <= 1:
                return 0
            survivor, losers = ids[0], ids[1:]
            marks = ",".join("?" for _ in losers)

            if target.table == "items":
                for table, column in ITEM_REFERENCES:
                    cur.execute(f"UPDATE {table} SET {column}=? WHERE {column} IN ({marks})", (survivor, *losers))

            for child_table, fk_column in target.children:
                cur.execute(f"DELETE FROM {child_table} WHERE {fk_column} IN ({marks})", losers)
            if target.owned_ledger_column:
                # ledger rows written by a deleted header go with it
                cur.execute(
                    f"SELECT id FROM ledger_transactions WHERE {target.owned_ledger_column} IN ({marks})",
                    losers,
                )
                owned = [int(r[0]) for r in cur.fetchall()]
                if owned:
                    tx_marks = ",".join("?" for _ in owned)
                    cur.execute(f"DELETE FROM ledger_transaction_lines WHERE transaction_id IN ({tx_marks})", owned)
                    cur.execute(f"DELETE FROM ledger_transactions WHERE id IN ({tx_marks})", owned)
            cur.execute(f"DELETE FROM {target.table} WHERE id IN ({marks})", losers)
            return len(losers)

    def backfill_empty_codes(self, target: CodeTarget) -> int:
        with self.unit_of_work() as uow:
            uow.cur.execute(
                f"""
                UPDATE {target.table}
                SET {target.code_column} = ? || '-' || id
                WHERE {target.code_column} IS NULL OR TRIM({target.code_column}) = ''
                """,
                (target.legacy_prefix,),
            )
            return int(uow.cur.rowcount)

    def backfill_edited_at(self, table: str) -> int:
        with self.unit_of_work() as uow:
            uow.cur.execute(f"UPDATE {table} SET edited_at = created_at WHERE edited_at IS NULL")
            return int(uow.cur.rowcount)

    def install_unique_index(self, target: CodeTarget) -> None:
        with self.unit_of_work() as uow:
            uow.cur.execute(
                f"CREATE UNIQUE INDEX IF NOT EXISTS {target.index_name} ON {target.table}({target.code_column})"
            )

    def has_index(self, index_name: str) -> bool:
        conn = self._conn()
        cur = conn.cursor()
        cur.execute("SELECT 1 FROM sqlite_master WHERE type='index' AND name=?", (index_name,))
        found = cur.fetchone() is not None
        conn.close()
        return found
