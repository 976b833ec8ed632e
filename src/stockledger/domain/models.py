from __future__ import annotations
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Optional


@dataclass(frozen=True)
class Store:
    id: int
    name: str
    active: int = 1


@dataclass(frozen=True)
class Item:
    id: int
    code: str
    name: str
    buying_price: float
    selling_price: float
    active: int = 1
    edited_at: Optional[str] = None


@dataclass(frozen=True)
class LedgerLine:
    id: int
    transaction_id: int
    item_id: int
    quantity: Decimal
    total: float
    active: int = 1


@dataclass(frozen=True)
class LedgerTransaction:
    id: int
    store_id: int
    type: str
    code: str
    created_at: str
    active: int
    reference_op_id: Optional[int]
    reversal_of_id: Optional[int]
    comments: Optional[str]
    created_by: Optional[str]
    lines: tuple[LedgerLine, ...] = ()


@dataclass(frozen=True)
class StockLevel:
    item_id: int
    item_code: str
    item_name: str
    stock: Decimal


@dataclass(frozen=True)
class StockOperationLine:
    item_id: int
    store_id: int
    original_stock: Decimal
    cleared_quantity: Decimal
    remaining_stock: Decimal
    sold_quantity: Decimal = Decimal("0.000")
    active: int = 1


@dataclass(frozen=True)
class OperationConversion:
    source_item_id: int
    dest_item_id: int
    dest_quantity: Decimal
    active: int = 1


@dataclass(frozen=True)
class LorryTrip:
    lorry_name: str
    driver_name: Optional[str] = None
    destination: Optional[str] = None
    trip_id: Optional[str] = None


@dataclass(frozen=True)
class StockOperation:
    id: int
    op_type: int
    store_id: int
    dest_store_id: Optional[int]
    clearance_type: Optional[str]
    wastage: Decimal
    surplus: Decimal
    op_code: str
    bill_code: Optional[str]
    reference_op_id: Optional[int]
    created_at: str
    created_by: Optional[str]
    comments: Optional[str]
    active: int = 1
    lines: tuple[StockOperationLine, ...] = ()
    conversions: tuple[OperationConversion, ...] = ()
    lorry: Optional[LorryTrip] = None
    return_status: Optional[str] = None


@dataclass(frozen=True)
class OperationResult:
    op_id: int
    op_code: str
    clearance_type: Optional[str]
    wastage: Decimal
    surplus: Decimal
    bill_code: Optional[str] = None


@dataclass(frozen=True)
class LorryReturn:
    id: int
    op_id: int
    item_id: int
    original_cleared: Decimal
    return_quantity: Decimal
    wastage_quantity: Decimal
    net_delivered: Decimal
    transaction_id: Optional[int]
    notes: Optional[str]
    created_by: Optional[str]
    created_at: str
    active: int = 1


@dataclass(frozen=True)
class LorryReturnResult:
    return_id: int
    op_id: int
    transaction_id: Optional[int]
    return_status: str
    net_delivered: Decimal


@dataclass(frozen=True)
class PendingLorryReturn:
    operation: StockOperation
    total_cleared: Decimal
    total_returned: Decimal
    total_wastage: Decimal
    returns: tuple[LorryReturn, ...] = ()


@dataclass(frozen=True)
class TransferConversion:
    source_item_id: int
    dest_item_id: int
    dest_quantity: Decimal


@dataclass(frozen=True)
class TransferRequest:
    id: int
    code: str
    main_item_id: int
    quantity: Optional[Decimal]
    source_store_id: int
    dest_store_id: int
    status: str
    requested_by: Optional[str]
    approver: Optional[str]
    clearance_type: Optional[str]
    op_id: Optional[int]
    comments: Optional[str]
    decline_reason: Optional[str]
    created_at: str
    decided_at: Optional[str]
    conversions: tuple[TransferConversion, ...] = field(default=())


@dataclass(frozen=True)
class TransferSubmission:
    transfer_id: int
    code: str
    status: str
    auto_approved: bool
    operation: Optional[OperationResult] = None
