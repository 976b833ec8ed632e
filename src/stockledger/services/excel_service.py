from __future__ import annotations

import logging
from decimal import Decimal

from openpyxl import load_workbook

from stockledger.domain.errors import AppError, ValidationError
from stockledger.domain.ledger import TransactionType
from stockledger.domain.quantities import parse_qty

log = logging.getLogger(__name__)


def opening_code(store_id: int, item_code: str) -> str:
    return f"OPEN-{int(store_id)}-{item_code}"


class ExcelService:
    def __init__(self, repo, catalog_service, ledger_service):
        self.repo = repo
        self.catalog = catalog_service
        self.ledger = ledger_service

    def import_opening_stock(self, path: str, store_id: int) -> tuple[int, int]:
        """
        Opening balances for one store, booked as ``Opening`` ledger entries.
        Headers:
          code | name | buying_price | selling_price | opening_qty
        """
        self.catalog.get_store(store_id)

        wb = load_workbook(path, read_only=True, data_only=True)
        try:
            ws = wb.active
            rows = ws.iter_rows(values_only=True)
            header_row = next(rows, None)
            if header_row is None:
                raise ValidationError("The sheet is empty.")

            headers = {}
            for idx, v in enumerate(header_row):
                if isinstance(v, str):
                    headers[v.strip().lower()] = idx

            required = ["code", "name", "buying_price", "selling_price", "opening_qty"]
            for r in required:
                if r not in headers:
                    raise ValidationError(f"Missing column header: {r}")

            ok = 0
            skipped = 0

            for row_no, values in enumerate(rows, start=2):
                def cell(name: str):
                    i = headers[name]
                    return values[i] if i < len(values) else None

                try:
                    code = cell("code")
                    name = cell("name")
                    if not code or not name:
                        skipped += 1
                        continue

                    code = str(code).strip()
                    qty = parse_qty(cell("opening_qty") if cell("opening_qty") is not None else 0, "opening_qty")
                    if qty < 0:
                        skipped += 1
                        continue

                    # one opening entry per store and item; a re-import is rejected row by row
                    with self.repo.unit_of_work() as uow:
                        existing = uow.get_item_by_code(code)
                        if existing:
                            item_id, buying = existing.id, existing.buying_price
                        else:
                            buying = float(cell("buying_price") or 0)
                            item_id = self.catalog.add_item_in(
                                uow, code, str(name), buying, float(cell("selling_price") or 0)
                            )
                        if qty > 0:
                            self.ledger.record_in(
                                uow,
                                store_id,
                                TransactionType.OPENING.value,
                                [{"item_id": item_id, "qty": qty, "total": round(float(qty * Decimal(str(buying))), 2)}],
                                code=opening_code(store_id, code),
                                comments="Opening stock from Excel",
                                created_by="EXCEL_IMPORT",
                            )
                    ok += 1
                except (AppError, TypeError, ValueError) as e:
                    log.warning("excel_row_skipped row=%s error=%s", row_no, e)
                    skipped += 1
        finally:
            wb.close()

        log.info("excel_import_finished store=%s ok=%s skipped=%s", store_id, ok, skipped)
        return ok, skipped
