"""Closed vocabularies of the stock ledger.

Every place that needs the sign of a ledger quantity reads ``LEDGER_SIGNS``;
the SQL aggregate is generated from it as well.
"""
from __future__ import annotations

from enum import Enum, IntEnum


class TransactionType(str, Enum):
    OPENING = "Opening"
    BUYING = "Buying"
    ADJ_IN = "AdjIn"
    TRANSFER_IN = "TransferIn"
    STOCK_TAKE = "StockTake"
    SELLING = "Selling"
    STOCK_CLEAR = "StockClear"
    ADJ_OUT = "AdjOut"
    TRANSFER_OUT = "TransferOut"
    WASTAGE = "Wastage"


LEDGER_SIGNS: dict[TransactionType, int] = {
    TransactionType.OPENING: 1,
    TransactionType.BUYING: 1,
    TransactionType.ADJ_IN: 1,
    TransactionType.TRANSFER_IN: 1,
    TransactionType.STOCK_TAKE: 1,
    TransactionType.SELLING: -1,
    TransactionType.STOCK_CLEAR: -1,
    TransactionType.ADJ_OUT: -1,
    TransactionType.TRANSFER_OUT: -1,
    TransactionType.WASTAGE: -1,
}


def sign_of(tx_type: TransactionType | str) -> int:
    return LEDGER_SIGNS[TransactionType(tx_type)]


def reversal_type(tx_type: TransactionType | str) -> TransactionType:
    return TransactionType.ADJ_OUT if sign_of(tx_type) > 0 else TransactionType.ADJ_IN


class ClearanceType(str, Enum):
    FULL = "FULL"
    PARTIAL = "PARTIAL"


class OpType(IntEnum):
    FULL_CLEAR = 1
    PARTIAL_CLEAR = 2
    FULL_CLEAR_WITH_SALES = 3
    PARTIAL_CLEAR_WITH_SALES = 4
    TRANSFER = 5
    TRANSFER_FULL_CLEARANCE = 6
    PARTIAL_CLEAR_WITH_LORRY = 7
    FULL_CLEAR_WITH_LORRY = 8
    ITEM_CONVERSION = 9
    STOCK_RETURN = 11


FULL_CLEARANCE_OPS = frozenset({OpType.FULL_CLEAR, OpType.FULL_CLEAR_WITH_SALES, OpType.TRANSFER_FULL_CLEARANCE, OpType.FULL_CLEAR_WITH_LORRY})
PARTIAL_CLEARANCE_OPS = frozenset({OpType.PARTIAL_CLEAR, OpType.PARTIAL_CLEAR_WITH_SALES, OpType.TRANSFER, OpType.PARTIAL_CLEAR_WITH_LORRY})
SALES_OPS = frozenset({OpType.FULL_CLEAR_WITH_SALES, OpType.PARTIAL_CLEAR_WITH_SALES})
TRANSFER_OPS = frozenset({OpType.TRANSFER, OpType.TRANSFER_FULL_CLEARANCE})
RETURNABLE_OPS = frozenset({OpType.FULL_CLEAR, OpType.PARTIAL_CLEAR, OpType.FULL_CLEAR_WITH_SALES, OpType.PARTIAL_CLEAR_WITH_SALES})
LORRY_OPS = frozenset({OpType.PARTIAL_CLEAR_WITH_LORRY, OpType.FULL_CLEAR_WITH_LORRY})


def clearance_for(op_type: OpType, full_conversion: bool = False) -> ClearanceType | None:
    if op_type == OpType.ITEM_CONVERSION:
        return ClearanceType.FULL if full_conversion else ClearanceType.PARTIAL
    if op_type in FULL_CLEARANCE_OPS:
        return ClearanceType.FULL
    if op_type in PARTIAL_CLEARANCE_OPS:
        return ClearanceType.PARTIAL
    return None


class ReturnStatus(str, Enum):
    PENDING = "PENDING"
    PARTIAL_RETURN = "PARTIAL_RETURN"
    FULLY_RETURNED = "FULLY_RETURNED"


class TransferStatus(str, Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    DECLINED = "DECLINED"


class CodeKind(str, Enum):
    OPERATION = "CLR"
    SALE_BILL = "SLO"
    LEDGER = "TX"
    TRANSFER = "TR"
