from __future__ import annotations

import sqlite3
from decimal import Decimal
from typing import Optional

from stockledger.domain.errors import AppError, DuplicateCodeError, InternalError, StoreBusyError, ValidationError
from stockledger.domain.ledger import LEDGER_SIGNS
from stockledger.domain.models import (
    Item,
    LedgerLine,
    LedgerTransaction,
    LorryReturn,
    LorryTrip,
    OperationConversion,
    StockOperation,
    StockOperationLine,
    Store,
    TransferConversion,
    TransferRequest,
)
from stockledger.domain.quantities import from_milli


def signed_quantity_sql(type_col: str = "lt.type", qty_col: str = "ll.quantity_milli") -> str:
    whens = " ".join(f"WHEN '{t.value}' THEN {sign}" for t, sign in LEDGER_SIGNS.items())
    return f"(CASE {type_col} {whens} ELSE 0 END) * {qty_col}"


STOCK_SQL = f"""
    SELECT COALESCE(SUM({signed_quantity_sql()}), 0)
    FROM ledger_transaction_lines ll
    JOIN ledger_transactions lt ON lt.id = ll.transaction_id
    WHERE ll.item_id = ?
      AND lt.store_id = ?
      AND ll.active = 1
      AND lt.active = 1
"""

STOCK_LEVELS_SQL = f"""
    SELECT i.id, i.code, i.name, COALESCE(SUM({signed_quantity_sql()}), 0)
    FROM ledger_transaction_lines ll
    JOIN ledger_transactions lt ON lt.id = ll.transaction_id
    JOIN items i ON i.id = ll.item_id
    WHERE lt.store_id = ?
      AND ll.active = 1
      AND lt.active = 1
    GROUP BY i.id
    ORDER BY i.name
"""


def translate_db_error(exc: sqlite3.Error) -> AppError:
    """Driver errors never leave the persistence layer as-is."""
    message = str(exc).lower()
    if isinstance(exc, sqlite3.IntegrityError):
        if "unique" in message:
            return DuplicateCodeError("A record with the same code already exists.")
        return ValidationError("Record violates a data constraint.")
    if isinstance(exc, sqlite3.OperationalError) and ("locked" in message or "busy" in message):
        return StoreBusyError("The store is busy with another write. Refetch and retry.")
    return InternalError("Storage failure.")


def select_current_stock(cur: sqlite3.Cursor, item_id: int, store_id: int) -> Decimal:
    cur.execute(STOCK_SQL, (int(item_id), int(store_id)))
    return from_milli(cur.fetchone()[0])


def row_to_store(r) -> Store:
    return Store(id=int(r[0]), name=str(r[1]), active=int(r[2]))


ITEM_COLUMNS = "id, code, name, buying_price, selling_price, active, edited_at"


def row_to_item(r) -> Item:
    return Item(
        id=int(r[0]),
        code=str(r[1]),
        name=str(r[2]),
        buying_price=float(r[3]),
        selling_price=float(r[4]),
        active=int(r[5]),
        edited_at=(str(r[6]) if r[6] is not None else None),
    )


def load_item(cur: sqlite3.Cursor, item_id: int, active_only: bool = True) -> Optional[Item]:
    sql = f"SELECT {ITEM_COLUMNS} FROM items WHERE id=?"
    if active_only:
        sql += " AND active=1"
    cur.execute(sql, (int(item_id),))
    r = cur.fetchone()
    return row_to_item(r) if r else None


def load_store(cur: sqlite3.Cursor, store_id: int) -> Optional[Store]:
    cur.execute("SELECT id, name, active FROM stores WHERE id=? AND active=1", (int(store_id),))
    r = cur.fetchone()
    return row_to_store(r) if r else None


TX_COLUMNS = "id, store_id, type, code, created_at, active, reference_op_id, reversal_of_id, comments, created_by"


def load_transaction(cur: sqlite3.Cursor, tx_id: int) -> Optional[LedgerTransaction]:
    cur.execute(f"SELECT {TX_COLUMNS} FROM ledger_transactions WHERE id=?", (int(tx_id),))
    r = cur.fetchone()
    if not r:
        return None
    cur.execute(
        """
        SELECT id, transaction_id, item_id, quantity_milli, total, active
        FROM ledger_transaction_lines
        WHERE transaction_id=?
        ORDER BY id
        """,
        (int(tx_id),),
    )
    lines = tuple(
        LedgerLine(
            id=int(l[0]),
            transaction_id=int(l[1]),
            item_id=int(l[2]),
            quantity=from_milli(l[3]),
            total=float(l[4]),
            active=int(l[5]),
        )
        for l in cur.fetchall()
    )
    return LedgerTransaction(
        id=int(r[0]),
        store_id=int(r[1]),
        type=str(r[2]),
        code=str(r[3]),
        created_at=str(r[4]),
        active=int(r[5]),
        reference_op_id=(int(r[6]) if r[6] is not None else None),
        reversal_of_id=(int(r[7]) if r[7] is not None else None),
        comments=r[8],
        created_by=r[9],
        lines=lines,
    )


OP_COLUMNS = """
    id, op_type, store_id, dest_store_id, clearance_type, wastage_milli, surplus_milli,
    op_code, bill_code, reference_op_id, created_at, created_by, comments, active,
    lorry_name, driver_name, destination, trip_id, return_status
"""


def load_operation(cur: sqlite3.Cursor, op_id: int) -> Optional[StockOperation]:
    cur.execute(f"SELECT {OP_COLUMNS} FROM stock_operations WHERE id=?", (int(op_id),))
    r = cur.fetchone()
    if not r:
        return None
    cur.execute(
        """
        SELECT item_id, store_id, original_stock_milli, cleared_milli, remaining_milli, sold_milli, active
        FROM stock_operation_lines
        WHERE op_id=?
        ORDER BY id
        """,
        (int(op_id),),
    )
    lines = tuple(
        StockOperationLine(
            item_id=int(l[0]),
            store_id=int(l[1]),
            original_stock=from_milli(l[2]),
            cleared_quantity=from_milli(l[3]),
            remaining_stock=from_milli(l[4]),
            sold_quantity=from_milli(l[5]),
            active=int(l[6]),
        )
        for l in cur.fetchall()
    )
    cur.execute(
        """
        SELECT source_item_id, dest_item_id, dest_qty_milli, active
        FROM operation_conversions
        WHERE op_id=?
        ORDER BY id
        """,
        (int(op_id),),
    )
    conversions = tuple(
        OperationConversion(
            source_item_id=int(c[0]),
            dest_item_id=int(c[1]),
            dest_quantity=from_milli(c[2]),
            active=int(c[3]),
        )
        for c in cur.fetchall()
    )
    return StockOperation(
        id=int(r[0]),
        op_type=int(r[1]),
        store_id=int(r[2]),
        dest_store_id=(int(r[3]) if r[3] is not None else None),
        clearance_type=r[4],
        wastage=from_milli(r[5]),
        surplus=from_milli(r[6]),
        op_code=str(r[7]),
        bill_code=r[8],
        reference_op_id=(int(r[9]) if r[9] is not None else None),
        created_at=str(r[10]),
        created_by=r[11],
        comments=r[12],
        active=int(r[13]),
        lines=lines,
        conversions=conversions,
        lorry=(LorryTrip(lorry_name=str(r[14]), driver_name=r[15], destination=r[16], trip_id=r[17]) if r[14] is not None else None),
        return_status=r[18],
    )


LORRY_RETURN_COLUMNS = """
    id, op_id, item_id, original_cleared_milli, return_milli, wastage_milli, net_delivered_milli,
    transaction_id, notes, created_by, created_at, active
"""


def row_to_lorry_return(r) -> LorryReturn:
    return LorryReturn(
        id=int(r[0]),
        op_id=int(r[1]),
        item_id=int(r[2]),
        original_cleared=from_milli(r[3]),
        return_quantity=from_milli(r[4]),
        wastage_quantity=from_milli(r[5]),
        net_delivered=from_milli(r[6]),
        transaction_id=(int(r[7]) if r[7] is not None else None),
        notes=r[8],
        created_by=r[9],
        created_at=str(r[10]),
        active=int(r[11]),
    )


def load_lorry_returns(cur: sqlite3.Cursor, op_id: int) -> list[LorryReturn]:
    cur.execute(
        f"SELECT {LORRY_RETURN_COLUMNS} FROM lorry_returns WHERE op_id=? AND active=1 ORDER BY id",
        (int(op_id),),
    )
    return [row_to_lorry_return(r) for r in cur.fetchall()]


TRANSFER_COLUMNS = """
    id, code, main_item_id, quantity_milli, source_store_id, dest_store_id, status,
    requested_by, approver, clearance_type, op_id, comments, decline_reason, created_at, decided_at
"""


def load_transfer(cur: sqlite3.Cursor, transfer_id: int) -> Optional[TransferRequest]:
    cur.execute(
        f"SELECT {TRANSFER_COLUMNS} FROM transfer_requests WHERE id=? AND active=1",
        (int(transfer_id),),
    )
    r = cur.fetchone()
    if not r:
        return None
    cur.execute(
        """
        SELECT source_item_id, dest_item_id, dest_qty_milli
        FROM transfer_conversions
        WHERE transfer_id=?
        ORDER BY id
        """,
        (int(transfer_id),),
    )
    conversions = tuple(
        TransferConversion(source_item_id=int(c[0]), dest_item_id=int(c[1]), dest_quantity=from_milli(c[2]))
        for c in cur.fetchall()
    )
    return TransferRequest(
        id=int(r[0]),
        code=str(r[1]),
        main_item_id=int(r[2]),
        quantity=(from_milli(r[3]) if r[3] is not None else None),
        source_store_id=int(r[4]),
        dest_store_id=int(r[5]),
        status=str(r[6]),
        requested_by=r[7],
        approver=r[8],
        clearance_type=r[9],
        op_id=(int(r[10]) if r[10] is not None else None),
        comments=r[11],
        decline_reason=r[12],
        created_at=str(r[13]),
        decided_at=r[14],
        conversions=conversions,
    )
