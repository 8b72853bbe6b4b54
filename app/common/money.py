"""
Helpers de aritmética monetaria (punto fijo, 2 decimales)
"""
from decimal import Decimal, ROUND_HALF_UP, InvalidOperation
from typing import Iterable, Optional, Union

CENT = Decimal("0.01")
ZERO = Decimal("0.00")

MoneyLike = Union[Decimal, int, str]


def to_decimal(value: Optional[MoneyLike]) -> Decimal:
    """Convierte a Decimal sin redondear. Los float se rechazan."""
    if value is None:
        return ZERO
    if isinstance(value, float):
        raise TypeError("Los montos deben ser Decimal, int o str, nunca float")
    if isinstance(value, Decimal):
        return value
    try:
        return Decimal(str(value))
    except InvalidOperation as exc:
        raise ValueError(f"Monto inválido: {value!r}") from exc


def quantize(value: Optional[MoneyLike]) -> Decimal:
    """Redondea a centavos (ROUND_HALF_UP) al momento de persistir."""
    return to_decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def percent_of(amount: Decimal, percent: Optional[MoneyLike]) -> Decimal:
    if not percent:
        return ZERO
    return to_decimal(amount) * to_decimal(percent) / Decimal("100")


def money_sum(values: Iterable[MoneyLike]) -> Decimal:
    total = ZERO
    for value in values:
        total += to_decimal(value)
    return total
