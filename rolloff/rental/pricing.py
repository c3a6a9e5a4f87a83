"""Quote pricing for dumpster rentals.

Everything in this module is pure: a pricing rule and a pair of dates go in,
an itemized :class:`PricingResult` comes out. Money is always integer cents
and rates are :class:`~decimal.Decimal`; floats never take part in a price.

Tax treatment: base rental, delivery, haul and extended service days are all
taxable, as are tonnage overages billed after pickup. The card processing fee
is charged on ``subtotal + tax`` and is itself never taxed.
"""

from __future__ import annotations

import datetime as dt
from dataclasses import asdict, dataclass, field
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from enum import Enum
from typing import Any

from .errors import InvalidRangeError, ValidationError


class LineItemType(str, Enum):
    """Kinds of line item carried by quotes and invoices."""

    BASE = "base"
    DELIVERY = "delivery"
    HAUL = "haul"
    EXTRA_DAY = "extra_day"
    OVERAGE = "overage"
    TAX = "tax"
    FEE = "fee"


@dataclass(frozen=True)
class PricingRule:
    waste_type: str
    dumpster_size: int
    base_price_cents: int
    delivery_fee_cents: int = 0
    haul_fee_cents: int = 0
    included_days: int = 0
    extra_day_fee_cents: int = 0
    included_tons: Decimal = Decimal("0")
    overage_per_ton_cents: int = 0
    public_notes: str | None = None

    @classmethod
    def from_row(cls, row: dict) -> "PricingRule":
        return cls(
            waste_type=row["waste_type"],
            dumpster_size=int(row["dumpster_size"]),
            base_price_cents=int(row["base_price_cents"]),
            delivery_fee_cents=int(row["delivery_fee_cents"]),
            haul_fee_cents=int(row["haul_fee_cents"]),
            included_days=int(row["included_days"]),
            extra_day_fee_cents=int(row["extra_day_fee_cents"]),
            included_tons=Decimal(str(row["included_tons"])),
            overage_per_ton_cents=int(row["overage_per_ton_cents"]),
            public_notes=row.get("public_notes"),
        )


@dataclass(frozen=True)
class PricingOptions:
    tax_rate: Decimal = Decimal("0.07")
    processing_fee_percentage: Decimal = Decimal("0.029")
    processing_fee_fixed_cents: int = 30
    include_processing_fee: bool = True
    tax_exempt: bool = False

    @classmethod
    def from_settings(cls, settings: Any, *, tax_exempt: bool = False) -> "PricingOptions":
        return cls(
            tax_rate=Decimal(str(settings.TAX_RATE)),
            processing_fee_percentage=Decimal(str(settings.PROCESSING_FEE_PERCENTAGE)),
            processing_fee_fixed_cents=int(settings.PROCESSING_FEE_FIXED_CENTS),
            include_processing_fee=bool(settings.INCLUDE_PROCESSING_FEE),
            tax_exempt=tax_exempt,
        )


@dataclass(frozen=True)
class LineItem:
    label: str
    amount_cents: int
    type: str
    sort_order: int
    taxable: bool = False

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class PriceSnapshot:
    """Immutable record of how a quote was priced."""

    base_price_cents: int
    delivery_fee_cents: int
    haul_fee_cents: int
    rental_days: int
    included_days: int
    extra_days: int
    extra_day_fee_cents: int
    extended_service_fee_cents: int
    included_tons: Decimal
    overage_per_ton_cents: int
    subtotal_cents: int
    taxable_amount_cents: int
    tax_rate: Decimal
    tax_amount_cents: int
    processing_fee_cents: int
    total_cents: int
    dumpster_size: int
    waste_type: str
    tax_exempt: bool
    notes: str | None = None

    def to_dict(self) -> dict:
        data = asdict(self)
        data["included_tons"] = str(self.included_tons)
        data["tax_rate"] = str(self.tax_rate)
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "PriceSnapshot":
        values = dict(data)
        values["included_tons"] = Decimal(str(values["included_tons"]))
        values["tax_rate"] = Decimal(str(values["tax_rate"]))
        return cls(**values)


@dataclass(frozen=True)
class PricingResult:
    snapshot: PriceSnapshot
    line_items: tuple[LineItem, ...] = field(default_factory=tuple)

    def to_dict(self) -> dict:
        return {
            "snapshot": self.snapshot.to_dict(),
            "line_items": [item.to_dict() for item in self.line_items],
        }


@dataclass(frozen=True)
class OverageCharge:
    overage_tons: Decimal
    amount_cents: int
    tax_amount_cents: int
    processing_fee_cents: int
    total_cents: int
    line_items: tuple[LineItem, ...] = field(default_factory=tuple)


def round_half_up(value: Decimal) -> int:
    """Round a Decimal amount of cents to the nearest whole cent, halves up."""

    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def _as_date(value: dt.date) -> dt.date:
    if isinstance(value, dt.datetime):
        return value.date()
    return value


def calculate_rental_days(dropoff_date: dt.date, pickup_date: dt.date) -> int:
    """Return the number of billable days between dropoff and pickup.

    Days are counted as calendar-day differences; a same-day pickup still
    bills one day.
    """

    dropoff = _as_date(dropoff_date)
    pickup = _as_date(pickup_date)
    if pickup < dropoff:
        raise InvalidRangeError("Pickup date must be on or after dropoff date")
    return max(1, (pickup - dropoff).days)


def calculate_processing_fee(amount_cents: int, options: PricingOptions) -> int:
    """Card processing fee owed on ``amount_cents``."""

    if not options.include_processing_fee or amount_cents <= 0:
        return 0
    return (
        round_half_up(Decimal(amount_cents) * options.processing_fee_percentage)
        + options.processing_fee_fixed_cents
    )


def _percent(rate: Decimal) -> str:
    return f"{(rate * 100).normalize():f}%"


def calculate_pricing(
    rule: PricingRule,
    dropoff_date: dt.date,
    pickup_date: dt.date,
    options: PricingOptions | None = None,
) -> PricingResult:
    """Price a rental of ``rule`` from ``dropoff_date`` to ``pickup_date``."""

    options = options or PricingOptions()
    rental_days = calculate_rental_days(dropoff_date, pickup_date)
    extra_days = max(0, rental_days - rule.included_days)
    extended_service_fee = extra_days * rule.extra_day_fee_cents

    charges = [
        LineItem(
            label=f"{rule.dumpster_size} Yard Dumpster Rental ({rule.included_days} days included)",
            amount_cents=rule.base_price_cents,
            type=LineItemType.BASE.value,
            sort_order=0,
            taxable=True,
        ),
        LineItem(
            label="Delivery Fee",
            amount_cents=rule.delivery_fee_cents,
            type=LineItemType.DELIVERY.value,
            sort_order=1,
            taxable=True,
        ),
        LineItem(
            label="Disposal Fee",
            amount_cents=rule.haul_fee_cents,
            type=LineItemType.HAUL.value,
            sort_order=2,
            taxable=True,
        ),
    ]
    if extra_days > 0:
        plural = "s" if extra_days > 1 else ""
        charges.append(
            LineItem(
                label=(
                    f"Extended Service Days ({extra_days} day{plural} @ "
                    f"{format_cents(rule.extra_day_fee_cents)})"
                ),
                amount_cents=extended_service_fee,
                type=LineItemType.EXTRA_DAY.value,
                sort_order=3,
                taxable=True,
            )
        )

    subtotal = sum(item.amount_cents for item in charges)
    taxable_amount = sum(item.amount_cents for item in charges if item.taxable)
    tax_rate = Decimal("0") if options.tax_exempt else options.tax_rate
    tax_amount = round_half_up(Decimal(taxable_amount) * tax_rate)
    processing_fee = calculate_processing_fee(subtotal + tax_amount, options)
    total = subtotal + tax_amount + processing_fee

    line_items = list(charges)
    sort_order = len(line_items)
    if tax_amount > 0:
        line_items.append(
            LineItem(
                label=f"Sales Tax ({_percent(tax_rate)} on {format_cents(taxable_amount)})",
                amount_cents=tax_amount,
                type=LineItemType.TAX.value,
                sort_order=sort_order,
            )
        )
        sort_order += 1
    if processing_fee > 0:
        line_items.append(
            LineItem(
                label="Card Processing Fee",
                amount_cents=processing_fee,
                type=LineItemType.FEE.value,
                sort_order=sort_order,
            )
        )

    snapshot = PriceSnapshot(
        base_price_cents=rule.base_price_cents,
        delivery_fee_cents=rule.delivery_fee_cents,
        haul_fee_cents=rule.haul_fee_cents,
        rental_days=rental_days,
        included_days=rule.included_days,
        extra_days=extra_days,
        extra_day_fee_cents=rule.extra_day_fee_cents,
        extended_service_fee_cents=extended_service_fee,
        included_tons=rule.included_tons,
        overage_per_ton_cents=rule.overage_per_ton_cents,
        subtotal_cents=subtotal,
        taxable_amount_cents=taxable_amount,
        tax_rate=tax_rate,
        tax_amount_cents=tax_amount,
        processing_fee_cents=processing_fee,
        total_cents=total,
        dumpster_size=rule.dumpster_size,
        waste_type=rule.waste_type,
        tax_exempt=options.tax_exempt,
        notes=rule.public_notes,
    )
    return PricingResult(snapshot=snapshot, line_items=tuple(line_items))


def calculate_overage(
    snapshot: PriceSnapshot,
    actual_tons: Decimal,
    options: PricingOptions | None = None,
) -> OverageCharge:
    """Charge for tonnage hauled beyond what the snapshot included.

    Tax uses the rate frozen in the snapshot, so an exempt booking stays
    exempt.
    """

    options = options or PricingOptions()
    overage_tons = max(Decimal("0"), Decimal(actual_tons) - snapshot.included_tons)
    overage_tons = overage_tons.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
    amount = round_half_up(overage_tons * snapshot.overage_per_ton_cents)
    if amount <= 0:
        return OverageCharge(
            overage_tons=overage_tons,
            amount_cents=0,
            tax_amount_cents=0,
            processing_fee_cents=0,
            total_cents=0,
        )

    tax_amount = 0 if snapshot.tax_exempt else round_half_up(Decimal(amount) * snapshot.tax_rate)
    processing_fee = calculate_processing_fee(amount + tax_amount, options)
    line_items = [
        LineItem(
            label=(
                f"Tonnage Overage ({overage_tons} tons @ "
                f"{format_cents(snapshot.overage_per_ton_cents)}/ton)"
            ),
            amount_cents=amount,
            type=LineItemType.OVERAGE.value,
            sort_order=0,
            taxable=True,
        )
    ]
    if tax_amount > 0:
        line_items.append(
            LineItem(
                label=f"Sales Tax ({_percent(snapshot.tax_rate)} on {format_cents(amount)})",
                amount_cents=tax_amount,
                type=LineItemType.TAX.value,
                sort_order=1,
            )
        )
    if processing_fee > 0:
        line_items.append(
            LineItem(
                label="Card Processing Fee",
                amount_cents=processing_fee,
                type=LineItemType.FEE.value,
                sort_order=len(line_items),
            )
        )
    return OverageCharge(
        overage_tons=overage_tons,
        amount_cents=amount,
        tax_amount_cents=tax_amount,
        processing_fee_cents=processing_fee,
        total_cents=amount + tax_amount + processing_fee,
        line_items=tuple(line_items),
    )


def format_cents(cents: int) -> str:
    """Format integer cents as a US dollar string, e.g. ``$1,234.50``."""

    sign = "-" if cents < 0 else ""
    dollars, remainder = divmod(abs(cents), 100)
    return f"{sign}${dollars:,}.{remainder:02d}"


def parse_date(value: str | dt.date) -> dt.date:
    """Parse a ``YYYY-MM-DD`` string into a date."""

    if isinstance(value, dt.date):
        return _as_date(value)
    try:
        return dt.date.fromisoformat(value)
    except (TypeError, ValueError) as exc:
        raise ValidationError(f"Invalid date: {value!r}") from exc


def parse_tons(value: Any) -> Decimal:
    """Parse a tonnage figure without passing through float."""

    try:
        tons = Decimal(str(value))
    except (InvalidOperation, ValueError) as exc:
        raise ValidationError(f"Invalid tonnage: {value!r}") from exc
    if not tons.is_finite() or tons < 0:
        raise ValidationError(f"Invalid tonnage: {value!r}")
    return tons
