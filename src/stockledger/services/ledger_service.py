from __future__ import annotations

import logging
from datetime import datetime
from decimal import Decimal
from typing import Callable, Iterable, Optional

from stockledger.domain.errors import ConflictError, DuplicateCodeError, NotFoundError, ValidationError
from stockledger.domain.ledger import CodeKind, TransactionType, reversal_type
from stockledger.domain.models import LedgerTransaction, StockLevel
from stockledger.domain.quantities import parse_positive_qty
from stockledger.repositories.unit_of_work import UnitOfWork
from stockledger.services.catalog_service import normalize_timestamp
from stockledger.services.code_service import CodeGenerator

log = logging.getLogger("stockledger.ledger")


def parse_transaction_type(value: object) -> TransactionType:
    try:
        return TransactionType(value)
    except ValueError as e:
        raise ValidationError(f"Unknown transaction type: {value!r}") from e


def parse_lines(lines: Iterable[dict]) -> list[tuple[int, Decimal, float]]:
    """
    lines: [{item_id, qty, total?}]
    """
    out: list[tuple[int, Decimal, float]] = []
    for it in lines:
        if "item_id" not in it or it["item_id"] is None:
            raise ValidationError("item_id is required.")
        qty = parse_positive_qty(it.get("qty"), "qty")
        try:
            total = float(it.get("total") or 0)
        except (TypeError, ValueError) as e:
            raise ValidationError("total must be a number.") from e
        out.append((int(it["item_id"]), qty, total))
    if not out:
        raise ValidationError("A transaction needs at least one line.")
    return out


class LedgerService:
    def __init__(
        self,
        repo,
        codes: CodeGenerator,
        broadcaster=None,
        uow_factory: Callable[[], UnitOfWork] | None = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.repo = repo
        self.codes = codes
        self.broadcaster = broadcaster
        self.uow_factory = uow_factory or repo.unit_of_work
        self.clock = clock

    def _publish(self, event: str, payload: dict) -> None:
        if self.broadcaster is not None:
            self.broadcaster.publish(event, payload)

    def _insert(
        self,
        uow,
        store_id: int,
        tx_type: TransactionType,
        lines: list[tuple[int, Decimal, float]],
        code: Optional[str],
        created_at: str,
        comments: Optional[str],
        created_by: Optional[str],
    ) -> tuple[int, str]:
        if not uow.get_store(store_id):
            raise NotFoundError("Store not found.")
        for item_id, _qty, _total in lines:
            if not uow.get_item(item_id):
                raise NotFoundError(f"Item not found: {item_id}")

        if code is None:
            code = self.codes.next_code(CodeKind.LEDGER, store_id, uow=uow)
        elif uow.ledger_code_exists(code):
            raise DuplicateCodeError(f"Transaction code already exists: {code}")

        tx_id = uow.insert_ledger_transaction(
            store_id,
            tx_type.value,
            code,
            created_at,
            lines,
            comments=comments,
            created_by=created_by,
        )
        return tx_id, code

    def record_in(
        self,
        uow,
        store_id: int,
        tx_type: str,
        lines: Iterable[dict],
        code: Optional[str] = None,
        comments: Optional[str] = None,
        created_by: Optional[str] = None,
    ) -> tuple[int, str]:
        """Books a transaction inside an open unit of work (the caller commits)."""
        kind = parse_transaction_type(tx_type)
        parsed = parse_lines(lines)
        code = (code or "").strip() or None
        return self._insert(uow, int(store_id), kind, parsed, code, normalize_timestamp(self.clock()), comments, created_by)

    def record_transaction(
        self,
        store_id: int,
        tx_type: str,
        lines: Iterable[dict],
        code: Optional[str] = None,
        comments: Optional[str] = None,
        created_by: Optional[str] = None,
    ) -> int:
        """
        lines: [{item_id, qty, total?}] with unsigned quantities; the type gives the sign.
        """
        kind = parse_transaction_type(tx_type)
        parsed = parse_lines(lines)
        code = (code or "").strip() or None

        with self.uow_factory() as uow:
            tx_id, code = self._insert(
                uow, int(store_id), kind, parsed, code, normalize_timestamp(self.clock()), comments, created_by
            )

        log.info("transaction_recorded tx_id=%s code=%s type=%s store=%s lines=%s", tx_id, code, kind.value, store_id, len(parsed))
        self._publish("ledger.recorded", {"tx_id": tx_id, "code": code, "store_id": int(store_id)})
        return tx_id

    def ingest_synced_transaction(
        self,
        store_id: int,
        tx_type: str,
        code: str,
        lines: Iterable[dict],
        created_at: object = None,
        comments: Optional[str] = None,
        created_by: Optional[str] = None,
    ) -> int:
        """Accepts a ledger row produced offline; an already-known code is rejected."""
        code = (code or "").strip()
        if not code:
            raise ValidationError("Synced transactions must carry their code.")
        kind = parse_transaction_type(tx_type)
        parsed = parse_lines(lines)
        stamp = normalize_timestamp(created_at) if created_at is not None else normalize_timestamp(self.clock())

        try:
            with self.uow_factory() as uow:
                tx_id, _ = self._insert(uow, int(store_id), kind, parsed, code, stamp, comments, created_by)
        except DuplicateCodeError:
            log.warning("sync_duplicate_rejected code=%s store=%s", code, store_id)
            raise

        log.info("transaction_synced tx_id=%s code=%s type=%s store=%s", tx_id, code, kind.value, store_id)
        self._publish("ledger.recorded", {"tx_id": tx_id, "code": code, "store_id": int(store_id)})
        return tx_id

    def current_stock(self, item_id: int, store_id: int) -> Decimal:
        return self.repo.current_stock(int(item_id), int(store_id))

    def stock_levels(self, store_id: int) -> list[StockLevel]:
        return self.repo.stock_levels(int(store_id))

    def get_transaction(self, tx_id: int) -> LedgerTransaction:
        tx = self.repo.get_transaction(int(tx_id))
        if not tx:
            raise NotFoundError("Transaction not found.")
        return tx

    def list_transactions(self, store_id: int, item_id: int | None = None, limit: int = 100) -> list[LedgerTransaction]:
        return self.repo.list_transactions(int(store_id), item_id=item_id, limit=limit)

    def deactivate_transaction(self, tx_id: int) -> None:
        with self.uow_factory() as uow:
            tx = uow.get_transaction(int(tx_id))
            if not tx:
                raise NotFoundError("Transaction not found.")
            if not tx.active:
                raise ConflictError("Transaction is already inactive.")
            if tx.reversal_of_id is not None:
                raise ConflictError("Reversal entries cannot be deactivated.")
            if tx.reference_op_id is not None:
                raise ConflictError("Transaction belongs to a stock operation; void the operation instead.")
            if uow.has_reversal(tx.id):
                raise ConflictError("Transaction has already been reversed.")
            uow.set_transaction_active(tx.id, 0, normalize_timestamp(self.clock()))

        log.info("transaction_deactivated tx_id=%s code=%s store=%s", tx.id, tx.code, tx.store_id)
        self._publish("ledger.deactivated", {"tx_id": tx.id, "code": tx.code, "store_id": tx.store_id})

    def reverse_transaction(self, tx_id: int, created_by: Optional[str] = None) -> int:
        """Books a compensating transaction with the opposite sign."""
        with self.uow_factory() as uow:
            tx = uow.get_transaction(int(tx_id))
            if not tx:
                raise NotFoundError("Transaction not found.")
            if not tx.active:
                raise ConflictError("Inactive transactions cannot be reversed.")
            if tx.reversal_of_id is not None:
                raise ConflictError("A reversal cannot itself be reversed.")
            if tx.reference_op_id is not None:
                raise ConflictError("Transaction belongs to a stock operation; void the operation instead.")
            if uow.has_reversal(tx.id):
                raise ConflictError("Transaction has already been reversed.")

            lines = [(l.item_id, l.quantity, l.total) for l in tx.lines if l.active]
            code = self.codes.next_code(CodeKind.LEDGER, tx.store_id, uow=uow)
            reversal_id = uow.insert_ledger_transaction(
                tx.store_id,
                reversal_type(tx.type).value,
                code,
                normalize_timestamp(self.clock()),
                lines,
                reversal_of_id=tx.id,
                comments=f"Reversal of {tx.code}",
                created_by=created_by,
            )

        log.info("transaction_reversed tx_id=%s reversal_id=%s code=%s", tx.id, reversal_id, code)
        self._publish("ledger.recorded", {"tx_id": reversal_id, "code": code, "store_id": tx.store_id})
        return reversal_id
