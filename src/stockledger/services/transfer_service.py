from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable, Iterable, Optional

from stockledger.domain.errors import AppError, DuplicateCodeError, InvalidTransitionError, NotFoundError, ValidationError
from stockledger.domain.ledger import ClearanceType, CodeKind, OpType, TransferStatus
from stockledger.domain.models import OperationResult, TransferRequest, TransferSubmission
from stockledger.domain.quantities import parse_positive_qty
from stockledger.repositories.unit_of_work import UnitOfWork
from stockledger.services.catalog_service import normalize_timestamp
from stockledger.services.code_service import CodeGenerator
from stockledger.services.stock_operation_service import StockOperationService, parse_conversions

log = logging.getLogger("stockledger.transfers")


def parse_clearance(value: object) -> ClearanceType:
    try:
        return ClearanceType(str(value or "").upper())
    except ValueError as e:
        raise ValidationError(f"Unknown clearance type: {value!r}") from e


class TransferService:
    """Cross-store transfer requests: PENDING, then APPROVED or DECLINED exactly once."""

    def __init__(
        self,
        repo,
        codes: CodeGenerator,
        operations: StockOperationService,
        broadcaster=None,
        uow_factory: Callable[[], UnitOfWork] | None = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.repo = repo
        self.codes = codes
        self.operations = operations
        self.broadcaster = broadcaster
        self.uow_factory = uow_factory or repo.unit_of_work
        self.clock = clock

    def _publish(self, event: str, payload: dict) -> None:
        if self.broadcaster is not None:
            self.broadcaster.publish(event, payload)

    def submit_request(
        self,
        main_item_id: int,
        source_store_id: int,
        dest_store_id: int,
        quantity: object = None,
        conversions: Iterable[dict] = (),
        requested_by: Optional[str] = None,
        comments: Optional[str] = None,
        code: Optional[str] = None,
        auto_approve: bool = False,
        approver: Optional[str] = None,
        clearance_type: str = ClearanceType.PARTIAL.value,
    ) -> TransferSubmission:
        """
        conversions: [{source_item_id?, dest_item_id, dest_qty}]

        With ``auto_approve`` the request is approved right after it is
        stored; if approval fails it stays PENDING for a manual decision.
        """
        main_item_id = int(main_item_id)
        source_store_id = int(source_store_id)
        dest_store_id = int(dest_store_id)
        if source_store_id == dest_store_id:
            raise ValidationError("Source and destination stores must differ.")
        qty = parse_positive_qty(quantity, "quantity") if quantity is not None else None
        convs = parse_conversions(conversions, default_source=main_item_id)
        code = (code or "").strip() or None

        with self.uow_factory() as uow:
            for store_id in (source_store_id, dest_store_id):
                if not uow.get_store(store_id):
                    raise NotFoundError(f"Store not found: {store_id}")
            for item_id in {main_item_id, *(s for s, _d, _q in convs), *(d for _s, d, _q in convs)}:
                if not uow.get_item(item_id):
                    raise NotFoundError(f"Item not found: {item_id}")

            if code is None:
                code = self.codes.next_code(CodeKind.TRANSFER, uow=uow)
            elif uow.transfer_code_exists(code):
                raise DuplicateCodeError(f"Transfer code already exists: {code}")

            transfer_id = uow.insert_transfer(
                code,
                main_item_id,
                qty,
                source_store_id,
                dest_store_id,
                normalize_timestamp(self.clock()),
                requested_by=requested_by,
                comments=comments,
            )
            for source_id, dest_item_id, dest_qty in convs:
                uow.insert_transfer_conversion(transfer_id, source_id, dest_item_id, dest_qty)

        log.info(
            "transfer_requested transfer_id=%s code=%s item_id=%s source=%s dest=%s qty=%s",
            transfer_id,
            code,
            main_item_id,
            source_store_id,
            dest_store_id,
            qty,
        )
        self._publish("transfer.requested", {"transfer_id": transfer_id, "code": code})

        if not auto_approve:
            return TransferSubmission(transfer_id=transfer_id, code=code, status=TransferStatus.PENDING.value, auto_approved=False)

        try:
            result = self.approve(transfer_id, approver or requested_by or "auto", clearance_type)
        except AppError as exc:
            log.warning("transfer_auto_approve_failed transfer_id=%s code=%s error=%s", transfer_id, code, exc)
            return TransferSubmission(transfer_id=transfer_id, code=code, status=TransferStatus.PENDING.value, auto_approved=False)

        return TransferSubmission(
            transfer_id=transfer_id,
            code=code,
            status=TransferStatus.APPROVED.value,
            auto_approved=True,
            operation=result,
        )

    def approve(self, transfer_id: int, approver: str, clearance_type: str) -> OperationResult:
        """FULL clears the whole source stock (op 6); PARTIAL moves the requested quantity (op 5)."""
        approver = (approver or "").strip()
        if not approver:
            raise ValidationError("Approver is required.")
        clearance = parse_clearance(clearance_type)
        op_type = OpType.TRANSFER_FULL_CLEARANCE if clearance == ClearanceType.FULL else OpType.TRANSFER

        with self.uow_factory() as uow:
            tr = uow.get_transfer(int(transfer_id))
            if not tr:
                raise NotFoundError("Transfer request not found.")
            if tr.status != TransferStatus.PENDING.value:
                raise InvalidTransitionError(f"Transfer request {tr.code} is already {tr.status}.")
            if clearance == ClearanceType.PARTIAL and tr.quantity is None and not tr.conversions:
                raise ValidationError("A PARTIAL transfer needs a quantity or conversions.")

            result = self.operations.execute_in(
                uow,
                int(op_type),
                tr.source_store_id,
                [{"item_id": tr.main_item_id, "qty": tr.quantity}],
                [
                    {"source_item_id": c.source_item_id, "dest_item_id": c.dest_item_id, "dest_qty": c.dest_quantity}
                    for c in tr.conversions
                ],
                dest_store_id=tr.dest_store_id,
                comments=f"Transfer {tr.code}",
                created_by=approver,
            )
            decided = uow.decide_transfer(
                tr.id,
                TransferStatus.APPROVED.value,
                approver,
                normalize_timestamp(self.clock()),
                clearance_type=clearance.value,
                op_id=result.op_id,
            )
            if not decided:
                raise InvalidTransitionError(f"Transfer request {tr.code} is no longer PENDING.")

        log.info(
            "transfer_approved transfer_id=%s code=%s op_code=%s clearance=%s wastage=%s surplus=%s approver=%s",
            tr.id,
            tr.code,
            result.op_code,
            clearance.value,
            result.wastage,
            result.surplus,
            approver,
        )
        self._publish("transfer.approved", {"transfer_id": tr.id, "code": tr.code, "op_code": result.op_code})
        return result

    def decline(self, transfer_id: int, approver: str, reason: Optional[str] = None) -> None:
        approver = (approver or "").strip()
        if not approver:
            raise ValidationError("Approver is required.")

        with self.uow_factory() as uow:
            tr = uow.get_transfer(int(transfer_id))
            if not tr:
                raise NotFoundError("Transfer request not found.")
            if tr.status != TransferStatus.PENDING.value:
                raise InvalidTransitionError(f"Transfer request {tr.code} is already {tr.status}.")
            decided = uow.decide_transfer(
                tr.id,
                TransferStatus.DECLINED.value,
                approver,
                normalize_timestamp(self.clock()),
                decline_reason=(reason or "").strip() or None,
            )
            if not decided:
                raise InvalidTransitionError(f"Transfer request {tr.code} is no longer PENDING.")

        log.info("transfer_declined transfer_id=%s code=%s approver=%s", tr.id, tr.code, approver)
        self._publish("transfer.declined", {"transfer_id": tr.id, "code": tr.code})

    def get_request(self, transfer_id: int) -> TransferRequest:
        tr = self.repo.get_transfer(int(transfer_id))
        if not tr:
            raise NotFoundError("Transfer request not found.")
        return tr

    def list_pending(self, limit: int = 25) -> list[TransferRequest]:
        return self.repo.list_transfers(TransferStatus.PENDING.value, limit=limit)
