import itertools
import unittest

from rolloff.rental.config import Settings
from rolloff.rental.errors import (
    InvalidStateError,
    InvalidTransitionError,
    ResourceUnavailableError,
    SizeMismatchError,
    ValidationError,
)
from rolloff.rental.lifecycle import (
    BOOKING_TRANSITIONS,
    BookingEffect,
    BookingStatus,
    allowed_booking_targets,
    booking_transition_effects,
)
from rolloff.rental.system import RentalSystem


class TransitionTableTestCase(unittest.TestCase):
    def test_only_listed_edges_are_allowed(self) -> None:
        allowed = {
            ("confirmed", "scheduled"),
            ("confirmed", "cancelled"),
            ("scheduled", "dropped"),
            ("scheduled", "cancelled"),
            ("dropped", "picked_up"),
            ("picked_up", "completed"),
        }
        for current, target in itertools.product(BookingStatus, repeat=2):
            if (current.value, target.value) in allowed:
                booking_transition_effects(current, target)
            else:
                with self.assertRaises(InvalidTransitionError):
                    booking_transition_effects(current, target)
        self.assertEqual(len(BOOKING_TRANSITIONS), len(allowed))

    def test_effects_per_edge(self) -> None:
        self.assertEqual(
            booking_transition_effects("scheduled", "dropped"),
            (BookingEffect.STAMP_DROPPED_AT, BookingEffect.MARK_DUMPSTER_DROPPED),
        )
        self.assertEqual(
            booking_transition_effects("dropped", "picked_up"), (BookingEffect.STAMP_PICKED_UP_AT,)
        )
        for current, target in (
            ("confirmed", "cancelled"),
            ("scheduled", "cancelled"),
            ("picked_up", "completed"),
        ):
            self.assertEqual(
                booking_transition_effects(current, target), (BookingEffect.RELEASE_DUMPSTER,)
            )
        self.assertEqual(allowed_booking_targets("completed"), [])
        with self.assertRaises(InvalidTransitionError):
            booking_transition_effects("confirmed", "teleported")


class BookingLifecycleTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self.system = RentalSystem(settings=Settings(BUSINESS_ID="acme"))
        self.system.create_pricing_rule(
            waste_type="construction",
            dumpster_size=20,
            base_price_cents=39900,
            included_days=7,
            extra_day_fee_cents=2500,
            included_tons="2",
            overage_per_ton_cents=5000,
        )
        self.customer = self.system.register_customer(name="Pat Builder", email="pat@example.com")
        self.address = self.system.add_address(
            customer_id=self.customer["id"], full_address="10 Main St"
        )
        self.unit_a = self.system.create_dumpster(unit_number="R20-01", size=20)
        self.unit_b = self.system.create_dumpster(unit_number="R20-02", size=20)
        self.small = self.system.create_dumpster(unit_number="R10-01", size=10)
        self._payments = itertools.count(1)

    def tearDown(self) -> None:
        self.system.close()

    def _paid_booking(self) -> dict:
        quote = self.system.start_quote(
            customer_id=self.customer["id"], address_id=self.address["id"]
        )
        self.system.configure_quote(
            quote["id"],
            waste_type="construction",
            dumpster_size=20,
            dropoff_date="2025-06-01",
            pickup_date="2025-06-10",
        )
        request = self.system.submit_booking_request(quote["id"])
        invoice = self.system.approve_booking_request(request["id"])["invoice"]
        result = self.system.reconcile_payment(
            invoice["id"],
            payment_id=f"pay_{next(self._payments)}",
            amount_cents=invoice["total_cents"],
            source="client",
        )
        return result["booking"]

    def _dumpster_status(self, dumpster: dict) -> str:
        return self.system.get_dumpster(dumpster["id"])["status"]

    def test_full_lifecycle_with_side_effects(self) -> None:
        booking = self._paid_booking()
        booking = self.system.assign_dumpster(booking["id"], self.unit_a["id"])
        self.assertEqual(booking["dumpster_id"], self.unit_a["id"])
        self.assertEqual(self._dumpster_status(self.unit_a), "reserved")

        booking = self.system.transition_booking(booking["id"], "scheduled")
        self.assertIsNone(booking["dropped_at"])

        booking = self.system.transition_booking(booking["id"], "dropped")
        self.assertIsNotNone(booking["dropped_at"])
        self.assertEqual(self._dumpster_status(self.unit_a), "dropped")

        booking = self.system.transition_booking(booking["id"], "picked_up")
        self.assertIsNotNone(booking["picked_up_at"])
        self.assertEqual(self._dumpster_status(self.unit_a), "dropped")

        booking = self.system.transition_booking(booking["id"], "completed")
        self.assertEqual(booking["status"], "completed")
        self.assertEqual(self._dumpster_status(self.unit_a), "available")

        for target in ("scheduled", "cancelled", "completed"):
            with self.assertRaises(InvalidTransitionError):
                self.system.transition_booking(booking["id"], target)

    def test_cancellation_releases_dumpster(self) -> None:
        for path in (["cancelled"], ["scheduled", "cancelled"]):
            booking = self._paid_booking()
            self.system.assign_dumpster(booking["id"], self.unit_a["id"])
            for target in path:
                booking = self.system.transition_booking(booking["id"], target)
            self.assertEqual(booking["status"], "cancelled")
            self.assertEqual(self._dumpster_status(self.unit_a), "available")

    def test_invalid_transitions_leave_booking_untouched(self) -> None:
        booking = self._paid_booking()
        with self.assertRaises(InvalidTransitionError):
            self.system.transition_booking(booking["id"], "confirmed")
        with self.assertRaises(InvalidTransitionError):
            self.system.transition_booking(booking["id"], "dropped")
        self.system.transition_booking(booking["id"], "scheduled")
        self.system.transition_booking(booking["id"], "dropped")
        with self.assertRaises(InvalidTransitionError):
            self.system.transition_booking(booking["id"], "cancelled")
        self.assertEqual(self.system.get_booking(booking["id"])["status"], "dropped")

    def test_assignment_failures_change_nothing(self) -> None:
        first = self._paid_booking()
        second = self._paid_booking()
        self.system.assign_dumpster(first["id"], self.unit_a["id"])
        self.system.assign_dumpster(second["id"], self.unit_b["id"])

        with self.assertRaises(ResourceUnavailableError):
            self.system.assign_dumpster(second["id"], self.unit_a["id"])
        with self.assertRaises(SizeMismatchError):
            self.system.assign_dumpster(second["id"], self.small["id"])
        self.system.set_dumpster_status(self.small["id"], "maintenance")
        with self.assertRaises(ResourceUnavailableError):
            self.system.assign_dumpster(second["id"], self.small["id"])

        self.assertEqual(self.system.get_booking(second["id"])["dumpster_id"], self.unit_b["id"])
        self.assertEqual(self._dumpster_status(self.unit_a), "reserved")
        self.assertEqual(self._dumpster_status(self.unit_b), "reserved")

        self.system.transition_booking(first["id"], "cancelled")
        spare = self.system.create_dumpster(unit_number="R20-03", size=20)
        with self.assertRaises(InvalidStateError):
            self.system.assign_dumpster(first["id"], spare["id"])
        self.assertEqual(self._dumpster_status(spare), "available")

    def test_reassignment_releases_previous_dumpster(self) -> None:
        booking = self._paid_booking()
        self.system.assign_dumpster(booking["id"], self.unit_a["id"])
        booking = self.system.assign_dumpster(booking["id"], self.unit_b["id"])
        self.assertEqual(booking["dumpster_id"], self.unit_b["id"])
        self.assertEqual(self._dumpster_status(self.unit_a), "available")
        self.assertEqual(self._dumpster_status(self.unit_b), "reserved")

    def test_assigning_the_held_unit_again_is_rejected(self) -> None:
        booking = self._paid_booking()
        self.system.assign_dumpster(booking["id"], self.unit_a["id"])
        with self.assertRaises(ResourceUnavailableError):
            self.system.assign_dumpster(booking["id"], self.unit_a["id"])
        self.assertEqual(self.system.get_booking(booking["id"])["dumpster_id"], self.unit_a["id"])
        self.assertEqual(self._dumpster_status(self.unit_a), "reserved")

    def test_swap_while_dropped_keeps_new_unit_dropped(self) -> None:
        booking = self._paid_booking()
        self.system.assign_dumpster(booking["id"], self.unit_a["id"])
        self.system.transition_booking(booking["id"], "scheduled")
        self.system.transition_booking(booking["id"], "dropped")
        self.system.assign_dumpster(booking["id"], self.unit_b["id"])
        self.assertEqual(self._dumpster_status(self.unit_a), "available")
        self.assertEqual(self._dumpster_status(self.unit_b), "dropped")

    def test_repair_orphaned_reservations(self) -> None:
        booking = self._paid_booking()
        self.system.assign_dumpster(booking["id"], self.unit_a["id"])
        self.system.conn.execute(
            "UPDATE dumpsters SET status = 'reserved' WHERE id = ?", (self.unit_b["id"],)
        )
        with self.assertLogs("rolloff.rental.system", level="WARNING") as logs:
            repaired = self.system.repair_orphaned_reservations()
        self.assertEqual([row["id"] for row in repaired], [self.unit_b["id"]])
        self.assertIn("R20-02", logs.output[0])
        self.assertEqual(self._dumpster_status(self.unit_a), "reserved")
        self.assertEqual(self._dumpster_status(self.unit_b), "available")
        self.assertEqual(self.system.repair_orphaned_reservations(), [])

    def test_fleet_management(self) -> None:
        booking = self._paid_booking()
        self.system.assign_dumpster(booking["id"], self.unit_a["id"])
        with self.assertRaises(InvalidStateError):
            self.system.set_dumpster_status(self.unit_a["id"], "maintenance")
        with self.assertRaises(ValidationError):
            self.system.set_dumpster_status(self.unit_b["id"], "reserved")
        with self.assertRaises(ValidationError):
            self.system.create_dumpster(unit_number="R20-01", size=20)
        retired = self.system.set_dumpster_status(self.unit_b["id"], "retired")
        self.assertEqual(retired["status"], "retired")
        available = self.system.list_dumpsters(status="available", size=20)
        self.assertEqual(available, [])
        self.assertEqual(
            [row["unit_number"] for row in self.system.list_dumpsters(size=10)], ["R10-01"]
        )

    def test_tonnage_overage_from_dump_tickets(self) -> None:
        booking = self._paid_booking()
        with self.assertRaises(ValidationError):
            self.system.assess_tonnage_overage(booking["id"])
        self.system.record_dump_ticket(
            booking["id"], facility="County Landfill", ticket_number="T-1", net_tons="2.000"
        )
        self.system.record_dump_ticket(
            booking["id"], facility="County Landfill", ticket_number="T-2", net_tons="1.456"
        )
        self.assertEqual(len(self.system.list_dump_tickets(booking["id"])), 2)

        adjustment = self.system.assess_tonnage_overage(booking["id"])
        self.assertEqual(adjustment["kind"], "tonnage_overage")
        self.assertEqual(adjustment["status"], "pending")
        self.assertEqual(adjustment["amount_cents"], 8068)
        self.assertEqual(adjustment["customer_id"], self.customer["id"])
        with self.assertRaises(InvalidStateError):
            self.system.assess_tonnage_overage(booking["id"])

    def test_load_within_included_tons_has_no_overage(self) -> None:
        booking = self._paid_booking()
        self.system.record_dump_ticket(
            booking["id"], facility="Transfer Station", ticket_number="T-9", net_tons="1.5"
        )
        self.assertIsNone(self.system.assess_tonnage_overage(booking["id"]))
        self.assertEqual(self.system.list_adjustments(booking_id=booking["id"]), [])

    def test_manual_adjustments(self) -> None:
        booking = self._paid_booking()
        late = self.system.create_adjustment(
            booking["id"], kind="late_fee", amount_cents=2500, notes="Two days late"
        )
        self.assertEqual(late["status"], "pending")
        with self.assertRaises(ValidationError):
            self.system.create_adjustment(booking["id"], kind="refund", amount_cents=100)
        with self.assertRaises(ValidationError):
            self.system.create_adjustment(booking["id"], kind="other", amount_cents=0)
        self.assertEqual(
            [row["id"] for row in self.system.list_adjustments(status="pending")], [late["id"]]
        )


if __name__ == "__main__":
    unittest.main()
