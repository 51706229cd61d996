"""
Exact decimal arithmetic for invoice positions and totals.

All monetary values are ``decimal.Decimal``. Sums and tax amounts are kept
exact; rounding to cents happens per line (``quantity × net price``) and when
values are written to a document.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP

from errors import ValidationError

CENT = Decimal('0.01')
HUNDRED = Decimal('100')
ZERO = Decimal('0')


def to_decimal(value, field_name: str | None = None, *, default: Decimal | None = None) -> Decimal:
    """Parse user input into a Decimal.

    Accepts Decimal, int and str. A comma is read as decimal separator
    ("1,5" == "1.5"). Floats are refused because they are already inexact.
    Empty input returns *default* when given, otherwise it is an error.
    """
    if isinstance(value, Decimal):
        if not value.is_finite():
            raise ValidationError('Ungültige Zahl.', field=field_name)
        return value
    if isinstance(value, bool) or isinstance(value, float):
        raise ValidationError('Ungültige Zahl.', field=field_name)
    if isinstance(value, int):
        return Decimal(value)
    if value is None:
        text = ''
    elif isinstance(value, str):
        text = value.strip()
    else:
        raise ValidationError('Ungültige Zahl.', field=field_name)
    if not text:
        if default is not None:
            return default
        raise ValidationError('Wert fehlt.', field=field_name)
    try:
        result = Decimal(text.replace(',', '.'))
    except InvalidOperation:
        raise ValidationError(f'"{text}" ist keine gültige Zahl.', field=field_name)
    if not result.is_finite():
        raise ValidationError(f'"{text}" ist keine gültige Zahl.', field=field_name)
    return result


def round_money(value: Decimal) -> Decimal:
    """Round to cents, half away from zero."""
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def compute_line_total(quantity: Decimal, net_price: Decimal) -> Decimal:
    return round_money(quantity * net_price)


def reconcile_line_total(quantity: Decimal, net_price: Decimal, supplied=None,
                         field_name: str = 'line_total') -> Decimal:
    """Return the line total, checking a client-supplied value if present.

    The supplied total may deviate from ``round2(quantity × net_price)`` by at
    most one cent; anything beyond that is rejected.
    """
    computed = compute_line_total(quantity, net_price)
    if supplied is None or (isinstance(supplied, str) and not supplied.strip()):
        return computed
    given = to_decimal(supplied, field_name)
    if abs(given - computed) > CENT:
        raise ValidationError(
            f'Zeilensumme {fmt_decimal(given)} passt nicht zu Menge × Preis '
            f'({fmt_decimal(computed)}).',
            field=field_name,
        )
    return computed


def gross_price(net_price: Decimal, tax_rate: Decimal) -> Decimal:
    return net_price * (1 + tax_rate / HUNDRED)


@dataclass(frozen=True)
class TaxAmount:
    """Tax due for one distinct rate."""
    rate: Decimal
    basis: Decimal
    amount: Decimal


@dataclass(frozen=True)
class Totals:
    net_total: Decimal = ZERO
    gross_total: Decimal = ZERO
    tax_amounts: tuple[TaxAmount, ...] = field(default_factory=tuple)

    @property
    def tax_total(self) -> Decimal:
        return sum((t.amount for t in self.tax_amounts), ZERO)

    @property
    def rounded_tax_total(self) -> Decimal:
        """Sum of the per-rate tax amounts, each rounded to cents."""
        return sum((round_money(t.amount) for t in self.tax_amounts), ZERO)

    @property
    def payable_total(self) -> Decimal:
        """Grand total as printed: rounded net plus the rounded per-rate taxes."""
        return round_money(self.net_total) + self.rounded_tax_total


def compute_totals(positions) -> Totals:
    """Aggregate positions into net, gross and the per-rate tax breakdown.

    *positions* is any iterable of objects with ``line_total`` and
    ``tax_rate`` attributes. The result does not depend on position order,
    and rates come out sorted ascending.
    """
    bases: dict[Decimal, Decimal] = {}
    net = ZERO
    for pos in positions:
        rate = pos.tax_rate if pos.tax_rate is not None else ZERO
        line = pos.line_total if pos.line_total is not None else ZERO
        # Decimal('19') and Decimal('19.00') hash equal, so they share a bucket
        bases[rate] = bases.get(rate, ZERO) + line
        net += line

    tax_amounts = tuple(
        TaxAmount(rate=rate, basis=bases[rate], amount=bases[rate] * rate / HUNDRED)
        for rate in sorted(bases)
    )
    gross = net + sum((t.amount for t in tax_amounts), ZERO)
    return Totals(net_total=net, gross_total=gross, tax_amounts=tax_amounts)


def fmt_decimal(value: Decimal | None, places: int = 2) -> str:
    """Fixed-point string without grouping, independent of locale."""
    if value is None:
        value = ZERO
    quant = Decimal(1).scaleb(-places)
    return str(value.quantize(quant, rounding=ROUND_HALF_UP))


def fmt_quantity(value: Decimal | None) -> str:
    """Up to four decimals, trailing zeros stripped."""
    text = fmt_decimal(value, 4)
    if '.' in text:
        text = text.rstrip('0').rstrip('.')
    return text
