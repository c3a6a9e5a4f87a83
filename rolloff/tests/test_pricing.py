import datetime as dt
import json
import unittest
from decimal import Decimal

from rolloff.rental.errors import InvalidRangeError, ValidationError
from rolloff.rental.pricing import (
    PriceSnapshot,
    PricingOptions,
    PricingRule,
    calculate_overage,
    calculate_pricing,
    calculate_processing_fee,
    calculate_rental_days,
    format_cents,
    parse_date,
    parse_tons,
    round_half_up,
)


class PricingEngineTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self.rule = PricingRule(
            waste_type="construction",
            dumpster_size=20,
            base_price_cents=39900,
            delivery_fee_cents=0,
            haul_fee_cents=0,
            included_days=7,
            extra_day_fee_cents=2500,
            included_tons=Decimal("2"),
            overage_per_ton_cents=5000,
        )
        self.options = PricingOptions(tax_rate=Decimal("0.07"))

    def test_reference_rental_prices_exactly(self) -> None:
        result = calculate_pricing(
            self.rule, dt.date(2025, 6, 1), dt.date(2025, 6, 10), self.options
        )
        snapshot = result.snapshot
        self.assertEqual(snapshot.rental_days, 9)
        self.assertEqual(snapshot.extra_days, 2)
        self.assertEqual(snapshot.extended_service_fee_cents, 5000)
        self.assertEqual(snapshot.subtotal_cents, 44900)
        self.assertEqual(snapshot.taxable_amount_cents, 44900)
        self.assertEqual(snapshot.tax_amount_cents, 3143)
        self.assertEqual(snapshot.processing_fee_cents, 1423)
        self.assertEqual(snapshot.total_cents, 49466)

        types = [item.type for item in result.line_items]
        self.assertEqual(types, ["base", "delivery", "haul", "extra_day", "tax", "fee"])
        self.assertEqual([item.sort_order for item in result.line_items], list(range(6)))
        self.assertEqual(
            result.line_items[0].label, "20 Yard Dumpster Rental (7 days included)"
        )
        self.assertEqual(
            result.line_items[3].label, "Extended Service Days (2 days @ $25.00)"
        )
        self.assertEqual(result.line_items[4].label, "Sales Tax (7% on $449.00)")
        self.assertTrue(all(item.taxable for item in result.line_items[:4]))
        self.assertFalse(any(item.taxable for item in result.line_items[4:]))

    def test_totals_are_consistent_with_line_items(self) -> None:
        rule = PricingRule(
            waste_type="household",
            dumpster_size=10,
            base_price_cents=29900,
            delivery_fee_cents=4500,
            haul_fee_cents=3333,
            included_days=3,
            extra_day_fee_cents=1999,
        )
        result = calculate_pricing(rule, dt.date(2025, 1, 30), dt.date(2025, 2, 14), self.options)
        snapshot = result.snapshot
        charges = [item for item in result.line_items if item.type not in ("tax", "fee")]
        self.assertEqual(snapshot.subtotal_cents, sum(item.amount_cents for item in charges))
        self.assertEqual(
            snapshot.total_cents,
            snapshot.subtotal_cents + snapshot.tax_amount_cents + snapshot.processing_fee_cents,
        )
        self.assertEqual(sum(item.amount_cents for item in result.line_items), snapshot.total_cents)

    def test_pricing_is_deterministic(self) -> None:
        first = calculate_pricing(self.rule, dt.date(2025, 6, 1), dt.date(2025, 6, 10), self.options)
        second = calculate_pricing(self.rule, dt.date(2025, 6, 1), dt.date(2025, 6, 10), self.options)
        self.assertEqual(first, second)
        self.assertEqual(
            json.dumps(first.to_dict(), sort_keys=True),
            json.dumps(second.to_dict(), sort_keys=True),
        )

    def test_same_day_rental_bills_one_day(self) -> None:
        self.assertEqual(calculate_rental_days(dt.date(2025, 6, 1), dt.date(2025, 6, 1)), 1)
        result = calculate_pricing(self.rule, dt.date(2025, 6, 1), dt.date(2025, 6, 1), self.options)
        self.assertEqual(result.snapshot.rental_days, 1)
        self.assertEqual(result.snapshot.extra_days, 0)
        self.assertNotIn("extra_day", [item.type for item in result.line_items])

    def test_pickup_before_dropoff_is_rejected(self) -> None:
        with self.assertRaises(InvalidRangeError):
            calculate_pricing(self.rule, dt.date(2025, 6, 10), dt.date(2025, 6, 1), self.options)
        self.assertTrue(issubclass(InvalidRangeError, ValidationError))

    def test_tax_exempt_customer_pays_no_tax(self) -> None:
        options = PricingOptions(tax_rate=Decimal("0.07"), tax_exempt=True)
        result = calculate_pricing(self.rule, dt.date(2025, 6, 1), dt.date(2025, 6, 10), options)
        snapshot = result.snapshot
        self.assertEqual(snapshot.tax_amount_cents, 0)
        self.assertEqual(snapshot.tax_rate, Decimal("0"))
        self.assertEqual(snapshot.processing_fee_cents, 1332)
        self.assertEqual(snapshot.total_cents, 46232)
        self.assertNotIn("tax", [item.type for item in result.line_items])

    def test_processing_fee_can_be_disabled(self) -> None:
        options = PricingOptions(include_processing_fee=False)
        result = calculate_pricing(self.rule, dt.date(2025, 6, 1), dt.date(2025, 6, 10), options)
        self.assertEqual(result.snapshot.processing_fee_cents, 0)
        self.assertEqual(result.snapshot.total_cents, 44900 + 3143)
        self.assertNotIn("fee", [item.type for item in result.line_items])
        self.assertEqual(calculate_processing_fee(0, PricingOptions()), 0)

    def test_snapshot_survives_json(self) -> None:
        result = calculate_pricing(self.rule, dt.date(2025, 6, 1), dt.date(2025, 6, 10), self.options)
        stored = json.dumps(result.snapshot.to_dict(), sort_keys=True)
        self.assertEqual(PriceSnapshot.from_dict(json.loads(stored)), result.snapshot)

    def test_overage_is_taxed_and_carries_a_fee(self) -> None:
        snapshot = calculate_pricing(
            self.rule, dt.date(2025, 6, 1), dt.date(2025, 6, 10), self.options
        ).snapshot
        charge = calculate_overage(snapshot, Decimal("3.456"), self.options)
        self.assertEqual(charge.overage_tons, Decimal("1.46"))
        self.assertEqual(charge.amount_cents, 7300)
        self.assertEqual(charge.tax_amount_cents, 511)
        self.assertEqual(charge.processing_fee_cents, 257)
        self.assertEqual(charge.total_cents, 8068)
        self.assertEqual(charge.line_items[0].type, "overage")
        self.assertTrue(charge.line_items[0].taxable)

    def test_no_overage_within_included_tons(self) -> None:
        snapshot = calculate_pricing(
            self.rule, dt.date(2025, 6, 1), dt.date(2025, 6, 10), self.options
        ).snapshot
        charge = calculate_overage(snapshot, Decimal("1.9"), self.options)
        self.assertEqual(charge.total_cents, 0)
        self.assertEqual(charge.line_items, ())

    def test_helpers(self) -> None:
        self.assertEqual(round_half_up(Decimal("2.5")), 3)
        self.assertEqual(round_half_up(Decimal("1393.247")), 1393)
        self.assertEqual(format_cents(123456), "$1,234.56")
        self.assertEqual(format_cents(-5), "-$0.05")
        self.assertEqual(parse_date("2025-06-01"), dt.date(2025, 6, 1))
        with self.assertRaises(ValidationError):
            parse_date("06/01/2025")
        self.assertEqual(parse_tons("1.25"), Decimal("1.25"))
        with self.assertRaises(ValidationError):
            parse_tons("-1")


if __name__ == "__main__":
    unittest.main()
