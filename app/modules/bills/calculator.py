"""
Cálculo de totales de factura.

Cada línea se redondea a centavos antes de sumarse, así los totales de la
factura son la suma exacta de lo que queda persistido en sus líneas.
"""

from dataclasses import dataclass, field
from decimal import Decimal
from typing import List, Optional, Sequence

from app.common.exceptions import ValidationError
from app.common.money import ZERO, quantize, percent_of, to_decimal


@dataclass
class LineTotals:
    subtotal: Decimal
    discount_amount: Decimal
    tax_amount: Decimal
    total: Decimal


@dataclass
class BillTotals:
    subtotal: Decimal = ZERO
    discount_amount: Decimal = ZERO
    tax_amount: Decimal = ZERO
    shipping_cost: Decimal = ZERO
    adjustment_amount: Decimal = ZERO
    round_off_amount: Decimal = ZERO
    total_amount: Decimal = ZERO
    lines: List[LineTotals] = field(default_factory=list)


def compute_line(item, index: int = 0) -> LineTotals:
    """
    Totales de una línea:

    bruto = cantidad * tarifa
    descuento = monto explícito o porcentaje sobre el bruto
    impuesto = monto explícito o porcentaje sobre (bruto - descuento)
    total = bruto - descuento + impuesto
    """
    quantity = to_decimal(item.quantity)
    rate = to_decimal(item.rate)
    if quantity <= 0:
        raise ValidationError("La cantidad debe ser mayor a cero", field=f"items[{index}].quantity")
    if rate < 0:
        raise ValidationError("La tarifa no puede ser negativa", field=f"items[{index}].rate")

    gross = quantize(quantity * rate)

    if item.discount_amount is not None:
        discount = quantize(item.discount_amount)
    else:
        discount = quantize(percent_of(gross, item.discount_percent))

    if item.tax_amount is not None:
        tax = quantize(item.tax_amount)
    else:
        tax = quantize(percent_of(gross - discount, item.tax_percent))

    if discount < 0 or tax < 0:
        raise ValidationError("Descuento e impuesto no pueden ser negativos", field=f"items[{index}]")

    total = gross - discount + tax
    if total < 0:
        raise ValidationError("El total de la línea no puede ser negativo", field=f"items[{index}].total")

    return LineTotals(subtotal=gross, discount_amount=discount, tax_amount=tax, total=total)


def compute_bill_totals(
    items: Sequence,
    discount_amount: Optional[Decimal] = None,
    discount_percent: Optional[Decimal] = None,
    shipping_cost: Optional[Decimal] = None,
    adjustment_amount: Optional[Decimal] = None,
    round_off_amount: Optional[Decimal] = None,
) -> BillTotals:
    """
    Totales de la factura a partir de sus líneas y cargos globales.

    El descuento global (monto o porcentaje sobre el neto de líneas) se suma
    a los descuentos por línea. Ajuste y redondeo pueden ser negativos.
    """
    if not items:
        raise ValidationError("La factura debe tener al menos una línea", field="items")

    lines = [compute_line(item, index) for index, item in enumerate(items)]
    subtotal = sum((line.subtotal for line in lines), ZERO)
    line_discounts = sum((line.discount_amount for line in lines), ZERO)
    tax = sum((line.tax_amount for line in lines), ZERO)

    if discount_amount is not None:
        global_discount = quantize(discount_amount)
    else:
        global_discount = quantize(percent_of(subtotal - line_discounts, discount_percent))
    if global_discount < 0:
        raise ValidationError("El descuento no puede ser negativo", field="discount_amount")

    shipping = quantize(shipping_cost)
    if shipping < 0:
        raise ValidationError("El costo de envío no puede ser negativo", field="shipping_cost")
    adjustment = quantize(adjustment_amount)
    round_off = quantize(round_off_amount)

    discount = line_discounts + global_discount
    total = subtotal - discount + tax + shipping + adjustment + round_off
    if total < 0:
        raise ValidationError("El total de la factura no puede ser negativo", field="total_amount")

    return BillTotals(
        subtotal=subtotal,
        discount_amount=discount,
        tax_amount=tax,
        shipping_cost=shipping,
        adjustment_amount=adjustment,
        round_off_amount=round_off,
        total_amount=total,
        lines=lines,
    )
