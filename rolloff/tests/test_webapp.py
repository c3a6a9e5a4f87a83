import json
import os
import tempfile
import unittest

from rolloff.rental.config import Settings
from rolloff.rental.payments import PaymentGateway
from rolloff.webapp import SIGNATURE_HEADER, create_app


class WebAppTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self.tmp = tempfile.TemporaryDirectory()
        self.settings = Settings(
            BUSINESS_ID="acme",
            PAYMENT_WEBHOOK_SECRET="whsec_web",
            SITE_URL="https://rent.example",
        )
        self.app = create_app(os.path.join(self.tmp.name, "web.db"), settings=self.settings)
        self.app.config["TESTING"] = True
        self.client = self.app.test_client()
        self.gateway = PaymentGateway("whsec_web", "https://rent.example")

    def tearDown(self) -> None:
        self.tmp.cleanup()

    def _post(self, url: str, payload: dict | None = None):
        return self.client.post(url, json=payload or {})

    def _approved_invoice(self) -> dict:
        self._post(
            "/api/pricing-rules",
            {
                "waste_type": "construction",
                "dumpster_size": 20,
                "base_price_cents": 39900,
                "included_days": 7,
                "extra_day_fee_cents": 2500,
            },
        )
        customer = self._post("/api/customers", {"name": "Pat", "email": "pat@example.com"}).get_json()
        quote = self._post("/api/quotes", {"customer_id": customer["customer"]["id"]}).get_json()
        quote_id = quote["quote"]["id"]
        configured = self._post(
            f"/api/quotes/{quote_id}/configure",
            {
                "waste_type": "construction",
                "dumpster_size": 20,
                "dropoff_date": "2025-06-01",
                "pickup_date": "2025-06-10",
            },
        )
        self.assertEqual(configured.status_code, 200)
        request = self._post("/api/booking-requests", {"quote_id": quote_id}).get_json()
        approved = self._post(f"/admin/requests/{request['request']['id']}/approve")
        self.assertEqual(approved.status_code, 200)
        return approved.get_json()["invoice"]

    def test_pricing_preview(self) -> None:
        self._post(
            "/api/pricing-rules",
            {"waste_type": "yard", "dumpster_size": 10, "base_price_cents": 20000, "included_days": 3},
        )
        response = self._post(
            "/api/pricing/preview",
            {"waste_type": "yard", "dumpster_size": 10, "dropoff_date": "2025-06-01", "pickup_date": "2025-06-02"},
        )
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.get_json()["snapshot"]["subtotal_cents"], 20000)

    def test_signed_webhook_pays_invoice(self) -> None:
        invoice = self._approved_invoice()
        self.assertEqual(invoice["total_cents"], 49466)
        body = json.dumps(
            {
                "type": "checkout.session.completed",
                "data": {"invoice_id": invoice["id"], "payment_id": "pay_web", "amount_cents": 49466},
            }
        ).encode()
        response = self.client.post(
            "/api/payments/webhook",
            data=body,
            content_type="application/json",
            headers={SIGNATURE_HEADER: self.gateway.sign_callback(body)},
        )
        self.assertEqual(response.status_code, 200)
        payload = response.get_json()
        self.assertFalse(payload["already_paid"])
        self.assertEqual(payload["invoice"]["status"], "paid")

        replay = self.client.post(
            "/api/payments/webhook",
            data=body,
            content_type="application/json",
            headers={SIGNATURE_HEADER: self.gateway.sign_callback(body)},
        )
        self.assertTrue(replay.get_json()["already_paid"])

        booking_id = payload["booking"]["id"]
        bad = self._post(f"/admin/bookings/{booking_id}/status", {"status": "completed"})
        self.assertEqual(bad.status_code, 409)
        self.assertEqual(bad.get_json()["kind"], "invalid_transition")
        good = self._post(f"/admin/bookings/{booking_id}/status", {"status": "scheduled"})
        self.assertEqual(good.get_json()["booking"]["status"], "scheduled")

    def test_unsigned_webhook_is_rejected(self) -> None:
        invoice = self._approved_invoice()
        body = json.dumps(
            {
                "type": "checkout.session.completed",
                "data": {"invoice_id": invoice["id"], "payment_id": "pay_web", "amount_cents": 1},
            }
        ).encode()
        response = self.client.post(
            "/api/payments/webhook",
            data=body,
            content_type="application/json",
            headers={SIGNATURE_HEADER: "t=1,v1=deadbeef"},
        )
        self.assertEqual(response.status_code, 400)
        self.assertFalse(response.get_json()["ok"])
        self.assertEqual(response.get_json()["kind"], "signature")
        status = self.client.get(f"/api/invoices/{invoice['id']}").get_json()["invoice"]["status"]
        self.assertEqual(status, "unpaid")

    def test_malformed_optional_amounts_are_bad_requests(self) -> None:
        for field in ("delivery_fee_cents", "haul_fee_cents", "extra_day_fee_cents", "overage_per_ton_cents"):
            response = self._post(
                "/api/pricing-rules",
                {
                    "waste_type": "construction",
                    "dumpster_size": 20,
                    "base_price_cents": 39900,
                    "included_days": 7,
                    field: "twenty dollars",
                },
            )
            self.assertEqual(response.status_code, 400)
            self.assertEqual(response.get_json()["kind"], "validation")
            self.assertIn(field, response.get_json()["error"])
        self.assertEqual(self.client.get("/api/pricing-rules").get_json()["rules"], [])

        blank = self._post(
            "/api/pricing-rules",
            {
                "waste_type": "construction",
                "dumpster_size": 20,
                "base_price_cents": 39900,
                "included_days": 7,
                "haul_fee_cents": "",
                "delivery_fee_cents": "1500",
            },
        )
        self.assertEqual(blank.status_code, 201)
        self.assertEqual(blank.get_json()["rule"]["haul_fee_cents"], 0)
        self.assertEqual(blank.get_json()["rule"]["delivery_fee_cents"], 1500)

    def test_deactivate_pricing_rule(self) -> None:
        rule = self._post(
            "/api/pricing-rules",
            {"waste_type": "yard", "dumpster_size": 10, "base_price_cents": 20000, "included_days": 3},
        ).get_json()["rule"]
        response = self._post(f"/api/pricing-rules/{rule['id']}/deactivate")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.get_json()["rule"]["active"], 0)
        self.assertEqual(self.client.get("/api/pricing-rules").get_json()["rules"], [])
        self.assertEqual(len(self.client.get("/api/pricing-rules?all=1").get_json()["rules"]), 1)

        preview = self._post(
            "/api/pricing/preview",
            {"waste_type": "yard", "dumpster_size": 10, "dropoff_date": "2025-06-01", "pickup_date": "2025-06-02"},
        )
        self.assertEqual(preview.status_code, 404)
        self.assertEqual(preview.get_json()["kind"], "rule_not_found")
        self.assertEqual(self._post("/api/pricing-rules/999/deactivate").status_code, 404)

    def test_cart_checkout_flow(self) -> None:
        self._post(
            "/api/pricing-rules",
            {"waste_type": "construction", "dumpster_size": 20, "base_price_cents": 39900, "included_days": 7},
        )
        customer = self._post("/api/customers", {"name": "Pat", "email": "pat@example.com"}).get_json()
        customer_id = customer["customer"]["id"]
        added = self._post(
            "/api/booking/complete",
            {
                "customer_id": customer_id,
                "address": {"full_address": "10 Main St"},
                "waste_type": "construction",
                "dumpster_size": 20,
                "dropoff_date": "2025-06-01",
                "pickup_date": "2025-06-05",
            },
        )
        self.assertEqual(added.status_code, 201)
        quote_id = added.get_json()["quote_id"]

        cart = self.client.get(f"/api/cart?customer_id={customer_id}").get_json()
        self.assertEqual([item["quote_id"] for item in cart["items"]], [quote_id])
        self.assertEqual(self.client.get("/api/cart").status_code, 400)

        checkout = self._post(
            "/api/cart/checkout", {"customer_id": customer_id, "contact": {"phone": "555-0199"}}
        )
        self.assertEqual(checkout.status_code, 201)
        self.assertEqual(checkout.get_json()["cart"]["status"], "converted")
        self.assertEqual(checkout.get_json()["requests"][0]["quote_id"], quote_id)

        again = self._post("/api/cart/add", {"customer_id": customer_id, "quote_id": quote_id})
        self.assertEqual(again.status_code, 409)
        missing = self._post("/api/cart/remove", {"customer_id": customer_id, "item_id": 1})
        self.assertEqual(missing.status_code, 404)

    def test_invoice_stats_and_export(self) -> None:
        invoice = self._approved_invoice()
        today = invoice["issued_at"][:10]
        stats = self.client.get(f"/admin/invoices/stats?start_date={today}&end_date={today}")
        self.assertEqual(stats.status_code, 200)
        self.assertEqual(stats.get_json()["stats"]["counts"]["unpaid"], 1)
        self.assertEqual(stats.get_json()["stats"]["paid_revenue_cents"], 0)
        self.assertEqual(self.client.get("/admin/invoices/stats?start_date=2025-01-01").status_code, 400)

        export = self.client.get(f"/admin/invoices/export?start_date={today}&end_date={today}")
        self.assertEqual(export.status_code, 200)
        self.assertTrue(export.content_type.startswith("text/csv"))
        self.assertIn(f"invoices_{today}_to_{today}.csv", export.headers["Content-Disposition"])
        lines = export.get_data(as_text=True).splitlines()
        self.assertTrue(lines[0].startswith("Invoice #,Status"))
        self.assertTrue(lines[1].startswith(f"{invoice['invoice_number']},UNPAID"))

        reversed_range = self.client.get("/admin/invoices/export?start_date=2025-02-01&end_date=2025-01-01")
        self.assertEqual(reversed_range.status_code, 400)
        self.assertEqual(reversed_range.get_json()["kind"], "invalid_range")

    def test_error_mapping(self) -> None:
        missing = self.client.get("/api/invoices/404")
        self.assertEqual(missing.status_code, 404)
        self.assertEqual(missing.get_json()["kind"], "not_found")

        invalid = self._post("/api/quotes/1/configure", {"waste_type": "construction"})
        self.assertEqual(invalid.status_code, 400)
        self.assertFalse(invalid.get_json()["ok"])

        created = self._post("/admin/dumpsters", {"unit_number": "R20-01", "size": 20})
        self.assertEqual(created.status_code, 201)
        duplicate = self._post("/admin/dumpsters", {"unit_number": "R20-01", "size": 20})
        self.assertEqual(duplicate.status_code, 400)
        listed = self.client.get("/admin/dumpsters?size=20").get_json()["dumpsters"]
        self.assertEqual([row["unit_number"] for row in listed], ["R20-01"])


if __name__ == "__main__":
    unittest.main()
