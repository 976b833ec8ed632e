from .models import (
    Store,
    Item,
    LedgerLine,
    LedgerTransaction,
    StockLevel,
    StockOperation,
    StockOperationLine,
    OperationConversion,
    OperationResult,
    LorryTrip,
    LorryReturn,
    LorryReturnResult,
    PendingLorryReturn,
    TransferRequest,
    TransferConversion,
    TransferSubmission,
)
from .errors import (
    AppError,
    ValidationError,
    NotFoundError,
    InsufficientStockError,
    ConflictError,
    DuplicateCodeError,
    InvalidTransitionError,
    StaleSnapshotError,
    StoreBusyError,
    InternalError,
    error_category,
)
from .ledger import TransactionType, OpType, ClearanceType, TransferStatus, ReturnStatus, CodeKind, LEDGER_SIGNS

__all__ = [
    "Store",
    "Item",
    "LedgerLine",
    "LedgerTransaction",
    "StockLevel",
    "StockOperation",
    "StockOperationLine",
    "OperationConversion",
    "OperationResult",
    "LorryTrip",
    "LorryReturn",
    "LorryReturnResult",
    "PendingLorryReturn",
    "TransferRequest",
    "TransferConversion",
    "TransferSubmission",
    "AppError",
    "ValidationError",
    "NotFoundError",
    "InsufficientStockError",
    "ConflictError",
    "DuplicateCodeError",
    "InvalidTransitionError",
    "StaleSnapshotError",
    "StoreBusyError",
    "InternalError",
    "error_category",
    "TransactionType",
    "OpType",
    "ClearanceType",
    "TransferStatus",
    "ReturnStatus",
    "CodeKind",
    "LEDGER_SIGNS",
]
