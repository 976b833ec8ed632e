from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable

from stockledger.domain.errors import NotFoundError, ValidationError
from stockledger.domain.models import Item, Store

log = logging.getLogger("stockledger.catalog")


def normalize_timestamp(value: object) -> str:
    """Accepts datetimes or ISO strings; returns ``YYYY-MM-DD HH:MM:SS``."""
    if isinstance(value, datetime):
        dt = value
    else:
        text = str(value or "").strip()
        if not text:
            raise ValidationError("A timestamp is required.")
        try:
            dt = datetime.fromisoformat(text.replace("Z", "+00:00"))
        except ValueError as e:
            raise ValidationError(f"Invalid timestamp: {value!r}") from e
    if dt.tzinfo is not None:
        dt = dt.astimezone().replace(tzinfo=None)
    return dt.replace(microsecond=0).isoformat(sep=" ")


class CatalogService:
    def __init__(self, repo, clock: Callable[[], datetime] = datetime.now):
        self.repo = repo
        self.clock = clock

    def _now(self) -> str:
        return normalize_timestamp(self.clock())

    # ---------- Stores ----------
    def add_store(self, name: str) -> int:
        name = (name or "").strip()
        if not name:
            raise ValidationError("Store name is required.")
        return self.repo.add_store(name)

    def get_store(self, store_id: int) -> Store:
        store = self.repo.get_store(int(store_id))
        if not store:
            raise NotFoundError("Store not found.")
        return store

    def list_stores(self) -> list[Store]:
        return self.repo.list_stores()

    # ---------- Items ----------
    def _validate_item(self, code: str, name: str, buying_price: float, selling_price: float) -> tuple[str, str, float, float]:
        code = (code or "").strip()
        name = (name or "").strip()
        if not code or not name:
            raise ValidationError("Code and Name are required.")
        try:
            buying = float(buying_price)
            selling = float(selling_price)
        except (TypeError, ValueError) as e:
            raise ValidationError("Prices must be numbers.") from e
        if buying < 0 or selling < 0:
            raise ValidationError("Prices must be >= 0.")
        return code, name, buying, selling

    def add_item(self, code: str, name: str, buying_price: float = 0.0, selling_price: float = 0.0) -> int:
        code, name, buying, selling = self._validate_item(code, name, buying_price, selling_price)
        item_id = self.repo.add_item(code, name, buying, selling, self._now())
        log.info("item_created item_id=%s code=%s", item_id, code)
        return item_id

    def add_item_in(self, uow, code: str, name: str, buying_price: float = 0.0, selling_price: float = 0.0) -> int:
        """Creates an item inside an open unit of work (the caller commits)."""
        code, name, buying, selling = self._validate_item(code, name, buying_price, selling_price)
        return uow.insert_item(code, name, buying, selling, self._now())

    def get_item(self, item_id: int) -> Item:
        item = self.repo.get_item_by_id(int(item_id))
        if not item:
            raise NotFoundError("Item not found.")
        return item

    def get_item_by_code(self, code: str) -> Item:
        item = self.repo.get_item_by_code((code or "").strip())
        if not item:
            raise NotFoundError("Item not found.")
        return item

    def list_items(self) -> list[Item]:
        return self.repo.list_items()

    def delete_item(self, item_id: int) -> None:
        removed = self.repo.deactivate_item(int(item_id), self._now())
        if not removed:
            raise NotFoundError("Item not found.")
        log.info("item_deactivated item_id=%s", item_id)

    def merge_synced_item(
        self,
        code: str,
        name: str,
        buying_price: float,
        selling_price: float,
        edited_at: object,
        active: bool = True,
    ) -> bool:
        """Applies an item edited on another terminal if it is newer than ours."""
        code, name, buying, selling = self._validate_item(code, name, buying_price, selling_price)
        stamp = normalize_timestamp(edited_at)
        applied = self.repo.upsert_item_if_newer(code, name, buying, selling, 1 if active else 0, stamp)
        log.info("item_sync code=%s edited_at=%s applied=%s", code, stamp, applied)
        return applied
