from __future__ import annotations

import itertools
import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Callable, Iterable, Optional

from stockledger.domain.errors import (
    ConflictError,
    DuplicateCodeError,
    InsufficientStockError,
    NotFoundError,
    StaleSnapshotError,
    ValidationError,
)
from stockledger.domain.ledger import (
    RETURNABLE_OPS,
    SALES_OPS,
    TRANSFER_OPS,
    LORRY_OPS,
    ClearanceType,
    CodeKind,
    OpType,
    ReturnStatus,
    TransactionType,
    clearance_for,
    reversal_type,
)
from stockledger.domain.models import (
    Item,
    LorryReturnResult,
    LorryTrip,
    OperationResult,
    PendingLorryReturn,
    StockOperation,
)
from stockledger.domain.quantities import ZERO, parse_positive_qty, parse_qty
from stockledger.repositories.unit_of_work import UnitOfWork
from stockledger.services.catalog_service import normalize_timestamp
from stockledger.services.code_service import CodeGenerator

log = logging.getLogger("stockledger.operations")


@dataclass
class _Source:
    item_id: int
    qty: Optional[Decimal] = None
    sold: Decimal = ZERO
    expected: Optional[Decimal] = None
    original: Decimal = ZERO
    removed: Decimal = ZERO
    output: Decimal = ZERO
    moved: Decimal = ZERO


def _money(qty: Decimal, price: float) -> float:
    return round(float(qty) * float(price), 2)


def parse_conversions(conversions: Iterable[dict], default_source: int | None = None) -> list[tuple[int, int, Decimal]]:
    """
    conversions: [{source_item_id, dest_item_id, dest_qty}]
    """
    out: list[tuple[int, int, Decimal]] = []
    for c in conversions:
        source = c.get("source_item_id", default_source)
        dest = c.get("dest_item_id")
        if source is None or dest is None:
            raise ValidationError("Conversions need source_item_id and dest_item_id.")
        out.append((int(source), int(dest), parse_positive_qty(c.get("dest_qty"), "dest_qty")))
    return out


def parse_lorry_trip(value: LorryTrip | dict | None) -> LorryTrip | None:
    """
    value: LorryTrip or {lorry_name, driver_name?, destination?, trip_id?}
    """
    if value is None or isinstance(value, LorryTrip):
        trip = value
    else:
        trip = LorryTrip(
            lorry_name=str(value.get("lorry_name") or "").strip(),
            driver_name=value.get("driver_name") or None,
            destination=value.get("destination") or None,
            trip_id=value.get("trip_id") or None,
        )
    if trip is not None and not trip.lorry_name.strip():
        raise ValidationError("lorry_name is required.")
    return trip


def _cleared_by(op: StockOperation, item_id: int | None = None) -> Decimal:
    """Quantity an operation took out of its own store, for one item or all of them."""
    return sum(
        (
            -l.cleared_quantity
            for l in op.lines
            if l.store_id == op.store_id and l.cleared_quantity < 0 and (item_id is None or l.item_id == item_id)
        ),
        ZERO,
    )


def parse_op_type(value: object) -> OpType:
    try:
        return OpType(int(value))
    except (TypeError, ValueError) as e:
        raise ValidationError(f"Unknown operation type: {value!r}") from e


class StockOperationService:
    """Applies clearances, transfers, conversions and returns against the ledger.

    Every operation runs inside one unit of work: the stock snapshot, the
    operation rows and the ledger entries commit together or not at all.
    """

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

    def _resolve_clearance(self, op: OpType, clearance_type: object) -> ClearanceType:
        requested = None
        if clearance_type is not None:
            try:
                requested = ClearanceType(str(clearance_type).upper())
            except ValueError as e:
                raise ValidationError(f"Unknown clearance type: {clearance_type!r}") from e
        if op == OpType.ITEM_CONVERSION:
            return clearance_for(op, full_conversion=requested == ClearanceType.FULL)
        fixed = clearance_for(op)
        if requested is not None and requested != fixed:
            raise ValidationError(f"Operation type {int(op)} is a {fixed.value} clearance.")
        return fixed

    def _parse_sources(self, items: Iterable[dict], conversions: list[tuple[int, int, Decimal]]) -> dict[int, _Source]:
        """
        items: [{item_id, qty?, sold_qty?, expected_stock?}]
        """
        sources: dict[int, _Source] = {}
        for it in items:
            if it.get("item_id") is None:
                raise ValidationError("item_id is required.")
            item_id = int(it["item_id"])
            if item_id in sources:
                raise ValidationError(f"Item {item_id} is listed twice.")
            sold = parse_qty(it["sold_qty"], "sold_qty") if it.get("sold_qty") is not None else ZERO
            if sold < 0:
                raise ValidationError("sold_qty must be >= 0.")
            sources[item_id] = _Source(
                item_id=item_id,
                qty=parse_positive_qty(it["qty"], "qty") if it.get("qty") is not None else None,
                sold=sold,
                expected=parse_qty(it["expected_stock"], "expected_stock") if it.get("expected_stock") is not None else None,
            )
        for source_id, _dest_id, _qty in conversions:
            sources.setdefault(source_id, _Source(item_id=source_id))
        if not sources:
            raise ValidationError("An operation needs at least one item.")
        return sources

    def _load_items(self, uow, ids: Iterable[int]) -> dict[int, Item]:
        found: dict[int, Item] = {}
        for item_id in ids:
            if item_id in found:
                continue
            item = uow.get_item(item_id)
            if not item:
                raise NotFoundError(f"Item not found: {item_id}")
            found[item_id] = item
        return found

    def _claim_op_code(self, uow, store_id: int, op_code: Optional[str]) -> str:
        op_code = (op_code or "").strip()
        if not op_code:
            return self.codes.next_code(CodeKind.OPERATION, store_id, uow=uow)
        if uow.operation_code_exists(op_code):
            raise DuplicateCodeError(f"Operation code already exists: {op_code}")
        return op_code

    def _book(self, uow, counter, op_code: str, op_id: int, store_id: int, tx_type: TransactionType, lines, now: str, created_by, code: str | None = None) -> int:
        code = code or f"{op_code}-L{next(counter):02d}"
        if uow.ledger_code_exists(code):
            raise DuplicateCodeError(f"Transaction code already exists: {code}")
        return uow.insert_ledger_transaction(
            store_id,
            tx_type.value,
            code,
            now,
            lines,
            reference_op_id=op_id,
            comments=f"{tx_type.value} for {op_code}",
            created_by=created_by,
        )

    def execute_in(
        self,
        uow,
        op_type: int,
        store_id: int,
        items: Iterable[dict],
        conversions: Iterable[dict] = (),
        clearance_type: str | None = None,
        dest_store_id: int | None = None,
        op_code: str | None = None,
        comments: str | None = None,
        created_by: str | None = None,
        lorry: LorryTrip | dict | None = None,
    ) -> OperationResult:
        """Runs one operation inside an open unit of work (the caller commits)."""
        op = parse_op_type(op_type)
        if op == OpType.STOCK_RETURN:
            raise ValidationError("Stock returns are booked with create_return.")
        clearance = self._resolve_clearance(op, clearance_type)
        trip = parse_lorry_trip(lorry)
        if op in LORRY_OPS and trip is None:
            raise ValidationError("Lorry clearances need the lorry details.")
        if op not in LORRY_OPS and trip is not None:
            raise ValidationError(f"Operation type {int(op)} does not carry lorry details.")

        store_id = int(store_id)
        if op in TRANSFER_OPS:
            if dest_store_id is None:
                raise ValidationError("Transfers need a destination store.")
            dest_id = int(dest_store_id)
            if dest_id == store_id:
                raise ValidationError("Source and destination stores must differ.")
        else:
            if dest_store_id is not None and int(dest_store_id) != store_id:
                raise ValidationError("Only transfers move stock to another store.")
            dest_id = store_id

        convs = parse_conversions(conversions)
        sources = self._parse_sources(items, convs)
        if op not in SALES_OPS and any(s.sold > 0 for s in sources.values()):
            raise ValidationError(f"Operation type {int(op)} does not record sales.")

        if not uow.get_store(store_id):
            raise NotFoundError("Store not found.")
        if dest_id != store_id and not uow.get_store(dest_id):
            raise NotFoundError("Destination store not found.")
        catalog = self._load_items(uow, list(sources) + [d for _s, d, _q in convs])

        # snapshot under the write lock
        for src in sources.values():
            src.original = uow.current_stock(src.item_id, store_id)
            if src.expected is not None and src.expected != src.original:
                raise StaleSnapshotError(
                    f"Stock of {catalog[src.item_id].code} changed: expected {src.expected}, found {src.original}. Refetch and retry."
                )

        converted: dict[int, Decimal] = {}
        for source_id, _dest_id, qty in convs:
            converted[source_id] = converted.get(source_id, ZERO) + qty

        for src in sources.values():
            has_conv = src.item_id in converted
            if clearance == ClearanceType.FULL:
                src.removed = src.original - src.sold
                if has_conv:
                    declared = converted[src.item_id]
                elif src.qty is not None:
                    declared = src.qty
                else:
                    declared = max(src.original - src.sold, ZERO)
                src.output = declared + src.sold
                src.moved = ZERO if has_conv else declared
            else:
                base = src.qty or ZERO
                if has_conv:
                    base = max(base, converted[src.item_id])
                if base <= 0 and src.sold <= 0:
                    raise ValidationError(f"A quantity is required for {catalog[src.item_id].code}.")
                if base + src.sold > src.original:
                    raise InsufficientStockError(
                        f"Not enough stock for {catalog[src.item_id].code}. Available: {src.original}"
                    )
                src.removed = base
                src.output = base + src.sold
                src.moved = ZERO if has_conv else base

        wastage = surplus = ZERO
        if clearance == ClearanceType.FULL:
            diff = sum((s.original for s in sources.values()), ZERO) - sum((s.output for s in sources.values()), ZERO)
            wastage = max(ZERO, diff)
            surplus = max(ZERO, -diff)

        outputs: dict[int, Decimal] = {}
        for _source_id, dest_item_id, qty in convs:
            outputs[dest_item_id] = outputs.get(dest_item_id, ZERO) + qty
        if op in TRANSFER_OPS:
            for src in sources.values():
                if src.moved > 0:
                    outputs[src.item_id] = outputs.get(src.item_id, ZERO) + src.moved

        op_code = self._claim_op_code(uow, store_id, op_code)
        bill_code = None
        if any(s.sold > 0 for s in sources.values()):
            bill_code = self.codes.next_code(CodeKind.SALE_BILL, store_id, uow=uow)

        now = normalize_timestamp(self.clock())
        op_id = uow.insert_operation(
            int(op),
            store_id,
            dest_id if dest_id != store_id else None,
            clearance.value,
            wastage,
            surplus,
            op_code,
            now,
            bill_code=bill_code,
            comments=comments,
            created_by=created_by,
            lorry=trip,
            return_status=ReturnStatus.PENDING.value if op in LORRY_OPS else None,
        )

        for src in sources.values():
            taken = src.removed + src.sold
            uow.insert_operation_line(op_id, src.item_id, store_id, src.original, -taken, src.original - taken, sold=src.sold)
        for dest_item_id, qty in outputs.items():
            before = uow.current_stock(dest_item_id, dest_id)
            uow.insert_operation_line(op_id, dest_item_id, dest_id, before, qty, before + qty)
        for source_id, dest_item_id, qty in convs:
            uow.insert_operation_conversion(op_id, source_id, dest_item_id, qty)

        counter = itertools.count(1)
        sold_lines = [(s.item_id, s.sold, _money(s.sold, catalog[s.item_id].selling_price)) for s in sources.values() if s.sold > 0]
        out_lines = [(s.item_id, s.removed, _money(s.removed, catalog[s.item_id].buying_price)) for s in sources.values() if s.removed > 0]
        back_lines = [(s.item_id, -s.removed, _money(-s.removed, catalog[s.item_id].buying_price)) for s in sources.values() if s.removed < 0]
        in_lines = [(i, q, _money(q, catalog[i].buying_price)) for i, q in outputs.items()]

        if sold_lines:
            self._book(uow, counter, op_code, op_id, store_id, TransactionType.SELLING, sold_lines, now, created_by, code=bill_code)
        if out_lines:
            self._book(uow, counter, op_code, op_id, store_id, TransactionType.ADJ_OUT, out_lines, now, created_by)
        if back_lines:
            self._book(uow, counter, op_code, op_id, store_id, TransactionType.ADJ_IN, back_lines, now, created_by)
        if in_lines:
            self._book(uow, counter, op_code, op_id, dest_id, TransactionType.ADJ_IN, in_lines, now, created_by)

        return OperationResult(
            op_id=op_id,
            op_code=op_code,
            clearance_type=clearance.value,
            wastage=wastage,
            surplus=surplus,
            bill_code=bill_code,
        )

    def apply_operation(
        self,
        op_type: int,
        store_id: int,
        items: Iterable[dict],
        conversions: Iterable[dict] = (),
        clearance_type: str | None = None,
        dest_store_id: int | None = None,
        op_code: str | None = None,
        comments: str | None = None,
        created_by: str | None = None,
        lorry: LorryTrip | dict | None = None,
    ) -> OperationResult:
        """
        items: [{item_id, qty?, sold_qty?, expected_stock?}]
        conversions: [{source_item_id, dest_item_id, dest_qty}]
        lorry: {lorry_name, driver_name?, destination?, trip_id?} for lorry clearances (7, 8)

        ``qty`` is the quantity to remove for PARTIAL clearances and the
        declared output for FULL ones. ``expected_stock`` is the stock the
        caller saw; a different value under the lock rejects the operation.
        """
        items = list(items)
        conversions = list(conversions)
        with self.uow_factory() as uow:
            result = self.execute_in(
                uow,
                op_type,
                store_id,
                items,
                conversions,
                clearance_type=clearance_type,
                dest_store_id=dest_store_id,
                op_code=op_code,
                comments=comments,
                created_by=created_by,
                lorry=lorry,
            )

        log.info(
            "operation_applied op_id=%s op_code=%s type=%s store=%s clearance=%s wastage=%s surplus=%s",
            result.op_id,
            result.op_code,
            op_type,
            store_id,
            result.clearance_type,
            result.wastage,
            result.surplus,
        )
        self._publish("operation.applied", {"op_id": result.op_id, "op_code": result.op_code, "store_id": int(store_id)})
        return result

    def create_return(
        self,
        reference_op_id: int,
        item_id: int,
        qty: object,
        conversions: Iterable[dict] = (),
        op_code: str | None = None,
        comments: str | None = None,
        created_by: str | None = None,
    ) -> OperationResult:
        """Puts cleared stock back, either as the item itself or as converted outputs.

        conversions: [{dest_item_id, dest_qty}] (source defaults to ``item_id``)
        """
        item_id = int(item_id)
        qty = parse_positive_qty(qty, "qty")
        convs = parse_conversions(conversions, default_source=item_id)
        if any(source_id != item_id for source_id, _d, _q in convs):
            raise ValidationError("Return conversions must start from the returned item.")

        with self.uow_factory() as uow:
            ref = uow.get_operation(int(reference_op_id))
            if not ref:
                raise NotFoundError("Operation not found.")
            if not ref.active:
                raise ConflictError("Operation has been voided.")
            if ref.op_type not in RETURNABLE_OPS:
                raise ValidationError(f"Operation type {ref.op_type} does not accept returns.")
            cleared = _cleared_by(ref, item_id)
            if cleared <= 0:
                raise ValidationError("Item was not cleared by this operation.")
            open_qty = cleared - uow.returned_quantity(ref.id, item_id)
            if qty > open_qty:
                raise ValidationError(f"Return exceeds the quantity still out ({open_qty} of {cleared}).")

            catalog = self._load_items(uow, [item_id] + [d for _s, d, _q in convs])
            store_id = ref.store_id
            op_code = self._claim_op_code(uow, store_id, op_code)
            now = normalize_timestamp(self.clock())
            op_id = uow.insert_operation(
                int(OpType.STOCK_RETURN),
                store_id,
                None,
                None,
                ZERO,
                ZERO,
                op_code,
                now,
                reference_op_id=ref.id,
                comments=comments,
                created_by=created_by,
                returned_item_id=item_id,
                returned_quantity=qty,
            )

            outputs: dict[int, Decimal] = {}
            if convs:
                for _source_id, dest_item_id, dest_qty in convs:
                    outputs[dest_item_id] = outputs.get(dest_item_id, ZERO) + dest_qty
            else:
                outputs[item_id] = qty

            for out_id, out_qty in outputs.items():
                before = uow.current_stock(out_id, store_id)
                uow.insert_operation_line(op_id, out_id, store_id, before, out_qty, before + out_qty)
            for source_id, dest_item_id, dest_qty in convs:
                uow.insert_operation_conversion(op_id, source_id, dest_item_id, dest_qty)

            lines = [(i, q, _money(q, catalog[i].buying_price)) for i, q in outputs.items()]
            self._book(uow, itertools.count(1), op_code, op_id, store_id, TransactionType.ADJ_IN, lines, now, created_by)

        log.info("operation_return op_id=%s op_code=%s reference_op_id=%s item_id=%s qty=%s", op_id, op_code, ref.id, item_id, qty)
        self._publish("operation.applied", {"op_id": op_id, "op_code": op_code, "store_id": store_id})
        return OperationResult(op_id=op_id, op_code=op_code, clearance_type=None, wastage=ZERO, surplus=ZERO)

    def record_lorry_return(
        self,
        op_id: int,
        item_id: int,
        return_qty: object,
        wastage_qty: object = None,
        notes: str | None = None,
        created_by: str | None = None,
    ) -> LorryReturnResult:
        """Books what a lorry brought back from a clearance trip.

        The returned quantity goes back into the operation's store; wastage
        from the trip is recorded but moves no stock. Everything returned or
        wasted so far may not exceed what the trip took out for the item.
        """
        item_id = int(item_id)
        returned = parse_qty(return_qty, "return_qty") if return_qty is not None else ZERO
        wasted = parse_qty(wastage_qty, "wastage_qty") if wastage_qty is not None else ZERO
        if returned < 0 or wasted < 0:
            raise ValidationError("Returned and wasted quantities must be >= 0.")
        if returned + wasted <= 0:
            raise ValidationError("A lorry return needs a returned or wasted quantity.")

        with self.uow_factory() as uow:
            op = uow.get_operation(int(op_id))
            if not op or op.op_type not in LORRY_OPS:
                raise NotFoundError("Lorry operation not found.")
            if not op.active:
                raise ConflictError("Operation has been voided.")
            cleared = _cleared_by(op, item_id)
            if cleared <= 0:
                raise ValidationError("Item was not loaded on this lorry.")
            item = self._load_items(uow, [item_id])[item_id]

            prev_returned, prev_wasted = uow.lorry_return_totals(op.id, item_id)
            net_delivered = cleared - prev_returned - prev_wasted - returned - wasted
            if net_delivered < 0:
                raise ValidationError(
                    f"Return exceeds the quantity still on the lorry ({cleared - prev_returned - prev_wasted} of {cleared})."
                )

            now = normalize_timestamp(self.clock())
            tx_id = None
            if returned > 0:
                tx_id = self._book(
                    uow,
                    itertools.count(1),
                    op.op_code,
                    op.id,
                    op.store_id,
                    TransactionType.ADJ_IN,
                    [(item_id, returned, _money(returned, item.buying_price))],
                    now,
                    created_by,
                    code=self.codes.next_code(CodeKind.LEDGER, op.store_id, uow=uow),
                )
            return_id = uow.insert_lorry_return(
                op.id, item_id, cleared, returned, wasted, net_delivered, tx_id, now, notes=notes, created_by=created_by
            )

            total_returned, total_wasted = uow.lorry_return_totals(op.id)
            if total_returned + total_wasted >= _cleared_by(op):
                status = ReturnStatus.FULLY_RETURNED
            else:
                status = ReturnStatus.PARTIAL_RETURN
            uow.set_return_status(op.id, status.value, now)

        log.info(
            "lorry_return op_id=%s item_id=%s returned=%s wasted=%s net_delivered=%s status=%s",
            op.id,
            item_id,
            returned,
            wasted,
            net_delivered,
            status.value,
        )
        self._publish("operation.lorry_return", {"op_id": op.id, "return_id": return_id, "store_id": op.store_id})
        return LorryReturnResult(
            return_id=return_id,
            op_id=op.id,
            transaction_id=tx_id,
            return_status=status.value,
            net_delivered=net_delivered,
        )

    def pending_lorry_returns(self, store_id: int | None = None, limit: int = 50) -> list[PendingLorryReturn]:
        """Lorry clearances still waiting for (more of) their load to come back."""
        statuses = (ReturnStatus.PENDING.value, ReturnStatus.PARTIAL_RETURN.value)
        out: list[PendingLorryReturn] = []
        for op in self.repo.list_lorry_operations(statuses, store_id=store_id, limit=limit):
            returns = tuple(self.repo.list_lorry_returns(op.id))
            out.append(
                PendingLorryReturn(
                    operation=op,
                    total_cleared=_cleared_by(op),
                    total_returned=sum((r.return_quantity for r in returns), ZERO),
                    total_wastage=sum((r.wastage_quantity for r in returns), ZERO),
                    returns=returns,
                )
            )
        return out

    def void_operation(self, op_id: int, created_by: str | None = None) -> int:
        """Reverses every ledger entry the operation wrote; returns how many."""
        reversed_count = 0
        with self.uow_factory() as uow:
            op = uow.get_operation(int(op_id))
            if not op:
                raise NotFoundError("Operation not found.")
            if not op.active:
                raise ConflictError("Operation has already been voided.")
            if uow.count_active_returns(op.id):
                raise ConflictError("Void the returns booked against this operation first.")

            now = normalize_timestamp(self.clock())
            for tx in uow.active_transactions_for_operation(op.id):
                if uow.has_reversal(tx.id):
                    continue
                lines = [(l.item_id, l.quantity, l.total) for l in tx.lines if l.active]
                uow.insert_ledger_transaction(
                    tx.store_id,
                    reversal_type(tx.type).value,
                    self.codes.next_code(CodeKind.LEDGER, tx.store_id, uow=uow),
                    now,
                    lines,
                    reference_op_id=op.id,
                    reversal_of_id=tx.id,
                    comments=f"Void of {op.op_code}",
                    created_by=created_by,
                )
                reversed_count += 1
            uow.deactivate_operation(op.id, now)

        log.info("operation_voided op_id=%s op_code=%s reversals=%s", op.id, op.op_code, reversed_count)
        self._publish("operation.voided", {"op_id": op.id, "op_code": op.op_code, "store_id": op.store_id})
        return reversed_count

    def get_operation(self, op_id: int) -> StockOperation:
        op = self.repo.get_operation(int(op_id))
        if not op:
            raise NotFoundError("Operation not found.")
        return op

    def list_operations(self, store_id: int, op_type: int | None = None, limit: int = 100) -> list[StockOperation]:
        if op_type is not None:
            op_type = int(parse_op_type(op_type))
        return self.repo.list_operations(int(store_id), op_type=op_type, limit=limit)
