from __future__ import annotations

import logging
import re
from datetime import date, datetime
from typing import Callable

from stockledger.domain.errors import ValidationError
from stockledger.domain.ledger import CodeKind
from stockledger.repositories.unit_of_work import UnitOfWork

log = logging.getLogger("stockledger.ledger")

_TERMINAL_STRIP = re.compile(r"[^A-Z0-9]")


def terminal_tag(terminal: str | None) -> str:
    tag = _TERMINAL_STRIP.sub("", (terminal or "").upper())[:5]
    return tag or "POS"


def sequence_key(kind: CodeKind, store_id: int | None, day: date) -> str:
    """Counter key shared by every terminal of a store on one day."""
    if kind == CodeKind.TRANSFER:
        return f"TR-{day:%Y%m%d}"
    if store_id is None:
        raise ValidationError(f"A store is required for {kind.value} codes.")
    return f"S{int(store_id)}-{day:%y%m%d}-{kind.value}"


_CODE_TAKEN = {
    CodeKind.OPERATION: "operation_code_exists",
    CodeKind.SALE_BILL: "ledger_code_exists",
    CodeKind.LEDGER: "ledger_code_exists",
    CodeKind.TRANSFER: "transfer_code_exists",
}


def format_code(kind: CodeKind, key: str, seq: int, terminal: str | None = None) -> str:
    if kind == CodeKind.TRANSFER:
        return f"{key}-{seq:04d}"
    return f"{key}-{terminal_tag(terminal)}-{seq:03d}"


class CodeGenerator:
    """Issues human-readable codes from an atomic per-key counter.

    Codes are drawn inside the caller's write transaction, so a rolled-back
    operation also gives its sequence number back. Numbers already held by a
    stored code (synced from another terminal or supplied explicitly) are
    skipped, and the counter moves past them.
    """

    def __init__(self, repo, terminal_code: str = "POS", clock: Callable[[], datetime] = datetime.now):
        self.repo = repo
        self.terminal_code = terminal_tag(terminal_code)
        self.clock = clock

    def next_code(
        self,
        kind: CodeKind | str,
        store_id: int | None = None,
        day: date | None = None,
        terminal: str | None = None,
        uow: UnitOfWork | None = None,
    ) -> str:
        try:
            kind = CodeKind(kind)
        except ValueError as e:
            raise ValidationError(f"Unknown code kind: {kind!r}") from e
        day = day or self.clock().date()
        key = sequence_key(kind, store_id, day)

        terminal = terminal or self.terminal_code
        if uow is None:
            with self.repo.unit_of_work() as own:
                code = self._draw(own, kind, key, terminal)
        else:
            code = self._draw(uow, kind, key, terminal)
        log.debug("code_issued code=%s", code)
        return code

    def _draw(self, uow: UnitOfWork, kind: CodeKind, key: str, terminal: str) -> str:
        taken = getattr(uow, _CODE_TAKEN[kind])
        while True:
            code = format_code(kind, key, uow.next_sequence(key), terminal)
            if not taken(code):
                return code
            log.warning("code_skipped code=%s reason=already_stored", code)
