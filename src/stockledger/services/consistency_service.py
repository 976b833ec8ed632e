from __future__ import annotations

import logging
from dataclasses import dataclass, field

from stockledger.domain.errors import AppError
from stockledger.repositories.sqlite_repo import UNIQUE_CODE_TARGETS, CodeTarget

log = logging.getLogger("stockledger.guardian")


@dataclass(frozen=True)
class GuardianReport:
    removed: dict[str, int] = field(default_factory=dict)
    backfilled: dict[str, int] = field(default_factory=dict)
    installed: tuple[str, ...] = ()
    skipped: tuple[str, ...] = ()
    integrity: str = "ok"

    @property
    def clean(self) -> bool:
        return not self.skipped and self.integrity == "ok"


class ConsistencyGuardian:
    """Startup repair pass over the code columns that must be unique.

    Safe to run on every start: clean tables come out untouched. A
    constraint that still cannot be installed is logged and skipped.
    """

    def __init__(self, repo, targets: tuple[CodeTarget, ...] = UNIQUE_CODE_TARGETS):
        self.repo = repo
        self.targets = targets

    def _dedupe(self, target: CodeTarget) -> int:
        removed = 0
        for code in self.repo.duplicate_codes(target):
            try:
                n = self.repo.remove_duplicates(target, code)
            except AppError as exc:
                log.warning("dedupe_failed table=%s code=%s error=%s", target.table, code, exc)
                continue
            if n:
                log.info("duplicates_removed table=%s code=%s rows=%s", target.table, code, n)
            removed += n
        return removed

    def run(self) -> GuardianReport:
        removed: dict[str, int] = {}
        backfilled: dict[str, int] = {}
        installed: list[str] = []
        skipped: list[str] = []

        for target in self.targets:
            filled = self.repo.backfill_empty_codes(target) + self.repo.backfill_edited_at(target.table)
            if filled:
                log.info("backfill table=%s rows=%s", target.table, filled)
            backfilled[target.table] = filled
            removed[target.table] = self._dedupe(target)

            try:
                self.repo.install_unique_index(target)
            except AppError as exc:
                log.warning("unique_index_skipped table=%s index=%s error=%s", target.table, target.index_name, exc)
                skipped.append(target.index_name)
                continue
            installed.append(target.index_name)

        integrity = self.repo.integrity_check()
        if integrity != "ok":
            log.error("integrity_check_failed result=%s", integrity)

        report = GuardianReport(
            removed=removed,
            backfilled=backfilled,
            installed=tuple(installed),
            skipped=tuple(skipped),
            integrity=integrity,
        )
        log.info(
            "guardian_finished removed=%s installed=%s skipped=%s integrity=%s",
            sum(removed.values()),
            len(installed),
            len(skipped),
            integrity,
        )
        return report
