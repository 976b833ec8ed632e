from __future__ import annotations

from decimal import Decimal, InvalidOperation

from .errors import ValidationError

SCALE = 1000
QUANTUM = Decimal("0.001")
ZERO = Decimal("0.000")


def parse_qty(value: object, field: str = "quantity") -> Decimal:
    if value is None or isinstance(value, bool):
        raise ValidationError(f"{field} is required.")
    try:
        qty = value if isinstance(value, Decimal) else Decimal(str(value).strip())
    except (InvalidOperation, ValueError) as exc:
        raise ValidationError(f"{field} must be a number. Received: {value!r}") from exc
    if not qty.is_finite():
        raise ValidationError(f"{field} must be a finite number.")
    quantized = qty.quantize(QUANTUM)
    if quantized != qty:
        raise ValidationError(f"{field} supports at most 3 decimal places. Received: {value!r}")
    return quantized


def parse_positive_qty(value: object, field: str = "quantity") -> Decimal:
    qty = parse_qty(value, field)
    if qty <= 0:
        raise ValidationError(f"{field} must be > 0.")
    return qty


def to_milli(qty: Decimal) -> int:
    return int((qty * SCALE).to_integral_value())


def from_milli(units: int | None) -> Decimal:
    return (Decimal(int(units or 0)) / SCALE).quantize(QUANTUM)
