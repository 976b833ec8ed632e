from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from stockledger.config import Settings
from stockledger.repositories.sqlite_repo import SqliteRepository
from stockledger.services.broadcast_service import BroadcastService
from stockledger.services.catalog_service import CatalogService
from stockledger.services.code_service import CodeGenerator
from stockledger.services.consistency_service import ConsistencyGuardian, GuardianReport
from stockledger.services.excel_service import ExcelService
from stockledger.services.ledger_service import LedgerService
from stockledger.services.stock_operation_service import StockOperationService
from stockledger.services.transfer_service import TransferService


@dataclass(frozen=True)
class AppContainer:
    repo: SqliteRepository
    codes: CodeGenerator
    broadcaster: BroadcastService
    catalog: CatalogService
    ledger: LedgerService
    operations: StockOperationService
    transfers: TransferService
    excel: ExcelService
    guardian: ConsistencyGuardian
    startup_report: GuardianReport


def build_container(db_path: Path | str, settings: Settings | None = None) -> AppContainer:
    terminal = settings.terminal_code if settings else "POS"
    busy_timeout = settings.busy_timeout if settings else 10.0
    broadcast_url = settings.broadcast_url if settings else None

    repo = SqliteRepository(db_path, busy_timeout=busy_timeout)
    repo.init_db()

    guardian = ConsistencyGuardian(repo)
    startup_report = guardian.run()

    codes = CodeGenerator(repo, terminal_code=terminal)
    broadcaster = BroadcastService(broadcast_url)
    catalog = CatalogService(repo)
    ledger = LedgerService(repo, codes, broadcaster)
    operations = StockOperationService(repo, codes, broadcaster)
    transfers = TransferService(repo, codes, operations, broadcaster)
    excel = ExcelService(repo, catalog, ledger)

    return AppContainer(
        repo=repo,
        codes=codes,
        broadcaster=broadcaster,
        catalog=catalog,
        ledger=ledger,
        operations=operations,
        transfers=transfers,
        excel=excel,
        guardian=guardian,
        startup_report=startup_report,
    )
