from .broadcast_service import BroadcastService
from .catalog_service import CatalogService
from .code_service import CodeGenerator
from .consistency_service import ConsistencyGuardian, GuardianReport
from .excel_service import ExcelService
from .ledger_service import LedgerService
from .stock_operation_service import StockOperationService
from .transfer_service import TransferService

__all__ = [
    "BroadcastService",
    "CatalogService",
    "CodeGenerator",
    "ConsistencyGuardian",
    "GuardianReport",
    "ExcelService",
    "LedgerService",
    "StockOperationService",
    "TransferService",
]
