"""Flask application exposing the rental system as a JSON API."""

from __future__ import annotations

import logging
from typing import Any

from flask import Flask, Response, g, jsonify, request

from rolloff.rental.config import Settings, get_settings
from rolloff.rental.errors import (
    DataIntegrityError,
    ExternalServiceError,
    InvalidStateError,
    NotFoundError,
    RentalError,
    ResourceUnavailableError,
    SizeMismatchError,
    ValidationError,
)
from rolloff.rental.system import RentalSystem


logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "Payment-Signature"

ERROR_STATUS: list[tuple[type[RentalError], int]] = [
    (ValidationError, 400),
    (InvalidStateError, 409),
    (NotFoundError, 404),
    (ResourceUnavailableError, 409),
    (SizeMismatchError, 409),
    (DataIntegrityError, 500),
    (ExternalServiceError, 502),
]


def status_for(error: RentalError) -> int:
    for error_cls, status in ERROR_STATUS:
        if isinstance(error, error_cls):
            return status
    return 500


def _payload() -> dict:
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


def _require(data: dict, *fields: str) -> None:
    missing = [name for name in fields if data.get(name) in (None, "")]
    if missing:
        raise ValidationError(f"Missing required fields: {', '.join(missing)}")


def _as_int(data: dict, name: str) -> int:
    try:
        return int(data[name])
    except (TypeError, ValueError) as exc:
        raise ValidationError(f"{name} must be an integer") from exc


def _optional_int(data: dict, name: str, default: int = 0) -> int:
    if data.get(name) in (None, ""):
        return default
    return _as_int(data, name)


def create_app(database_path: str | None = None, settings: Settings | None = None) -> Flask:
    """Create and configure the Flask application.

    Each request opens its own :class:`RentalSystem` (and SQLite connection)
    on ``database_path`` so concurrent requests are serialised by the
    database's write lock, not by shared Python state.
    """

    settings = settings or get_settings()
    database_path = database_path or settings.DATABASE_PATH

    app = Flask(__name__)
    app.config["SECRET_KEY"] = settings.SECRET_KEY
    app.config["DATABASE_PATH"] = database_path

    RentalSystem(database_path, settings=settings).close()

    def system() -> RentalSystem:
        if "system" not in g:
            g.system = RentalSystem(app.config["DATABASE_PATH"], settings=settings)
        return g.system

    @app.teardown_appcontext
    def close_system(exc: BaseException | None) -> None:
        current = g.pop("system", None)
        if current is not None:
            current.close()

    @app.errorhandler(RentalError)
    def handle_rental_error(error: RentalError) -> Any:
        status = status_for(error)
        if status >= 500:
            logger.error("%s: %s", type(error).__name__, error)
        return jsonify({"ok": False, "error": str(error), "kind": error.kind}), status

    # ------------------------------------------------------------------
    # Pricing
    # ------------------------------------------------------------------
    @app.get("/api/pricing-rules")
    def pricing_rules() -> Any:
        active_only = request.args.get("all") is None
        return jsonify({"ok": True, "rules": system().list_pricing_rules(active_only=active_only)})

    @app.post("/api/pricing-rules")
    def create_pricing_rule() -> Any:
        data = _payload()
        _require(data, "waste_type", "dumpster_size", "base_price_cents", "included_days")
        rule = system().create_pricing_rule(
            waste_type=data["waste_type"],
            dumpster_size=_as_int(data, "dumpster_size"),
            base_price_cents=_as_int(data, "base_price_cents"),
            included_days=_as_int(data, "included_days"),
            delivery_fee_cents=_optional_int(data, "delivery_fee_cents"),
            haul_fee_cents=_optional_int(data, "haul_fee_cents"),
            extra_day_fee_cents=_optional_int(data, "extra_day_fee_cents"),
            included_tons=str(data.get("included_tons") or "0"),
            overage_per_ton_cents=_optional_int(data, "overage_per_ton_cents"),
            public_notes=data.get("public_notes"),
        )
        return jsonify({"ok": True, "rule": rule}), 201

    @app.post("/api/pricing-rules/<int:rule_id>/deactivate")
    def deactivate_pricing_rule(rule_id: int) -> Any:
        return jsonify({"ok": True, "rule": system().deactivate_pricing_rule(rule_id)})

    @app.post("/api/pricing/preview")
    def pricing_preview() -> Any:
        data = _payload()
        _require(data, "waste_type", "dumpster_size", "dropoff_date", "pickup_date")
        result = system().price_rental(
            waste_type=data["waste_type"],
            dumpster_size=_as_int(data, "dumpster_size"),
            dropoff_date=data["dropoff_date"],
            pickup_date=data["pickup_date"],
        )
        return jsonify({"ok": True, **result.to_dict()})

    # ------------------------------------------------------------------
    # Customers & quotes
    # ------------------------------------------------------------------
    @app.post("/api/customers")
    def create_customer() -> Any:
        data = _payload()
        _require(data, "name", "email")
        customer = system().register_customer(
            name=data["name"],
            email=data["email"],
            phone=data.get("phone"),
            tax_exempt=bool(data.get("tax_exempt")),
        )
        return jsonify({"ok": True, "customer": customer}), 201

    @app.post("/api/addresses")
    def create_address() -> Any:
        data = _payload()
        _require(data, "full_address")
        address = system().add_address(
            full_address=data["full_address"],
            customer_id=data.get("customer_id"),
            street=data.get("street"),
            city=data.get("city"),
            state=data.get("state"),
            zip_code=data.get("zip"),
            lat=data.get("lat"),
            lng=data.get("lng"),
        )
        return jsonify({"ok": True, "address": address}), 201

    @app.post("/api/quotes")
    def start_quote() -> Any:
        data = _payload()
        quote = system().start_quote(
            customer_id=data.get("customer_id"), address_id=data.get("address_id")
        )
        return jsonify({"ok": True, "quote": quote}), 201

    @app.get("/api/quotes/<int:quote_id>")
    def quote_detail(quote_id: int) -> Any:
        return jsonify({"ok": True, "quote": system().get_quote(quote_id)})

    @app.post("/api/quotes/<int:quote_id>/configure")
    def configure_quote(quote_id: int) -> Any:
        data = _payload()
        _require(data, "waste_type", "dumpster_size", "dropoff_date", "pickup_date")
        quote = system().configure_quote(
            quote_id,
            waste_type=data["waste_type"],
            dumpster_size=_as_int(data, "dumpster_size"),
            dropoff_date=data["dropoff_date"],
            pickup_date=data["pickup_date"],
        )
        return jsonify({"ok": True, "quote": quote})

    # ------------------------------------------------------------------
    # Cart
    # ------------------------------------------------------------------
    @app.get("/api/cart")
    def cart() -> Any:
        customer_id = request.args.get("customer_id", type=int)
        if customer_id is None:
            raise ValidationError("customer_id must be an integer")
        return jsonify({"ok": True, **system().get_cart(customer_id)})

    @app.post("/api/cart/add")
    def add_to_cart() -> Any:
        data = _payload()
        _require(data, "customer_id", "quote_id")
        result = system().add_to_cart(_as_int(data, "customer_id"), _as_int(data, "quote_id"))
        return jsonify({"ok": True, **result})

    @app.post("/api/cart/remove")
    def remove_from_cart() -> Any:
        data = _payload()
        _require(data, "customer_id", "item_id")
        result = system().remove_from_cart(_as_int(data, "customer_id"), _as_int(data, "item_id"))
        return jsonify({"ok": True, **result})

    @app.post("/api/cart/checkout")
    def checkout_cart() -> Any:
        data = _payload()
        _require(data, "customer_id")
        result = system().checkout_cart(
            _as_int(data, "customer_id"), contact_info=data.get("contact") or {}
        )
        return jsonify({"ok": True, **result}), 201

    @app.post("/api/booking/complete")
    def add_rental_to_cart() -> Any:
        data = _payload()
        _require(data, "customer_id", "address", "waste_type", "dumpster_size", "dropoff_date", "pickup_date")
        if not isinstance(data["address"], dict):
            raise ValidationError("Invalid address data")
        result = system().add_rental_to_cart(
            _as_int(data, "customer_id"),
            address=data["address"],
            waste_type=data["waste_type"],
            dumpster_size=_as_int(data, "dumpster_size"),
            dropoff_date=data["dropoff_date"],
            pickup_date=data["pickup_date"],
        )
        return jsonify({"ok": True, **result}), 201

    # ------------------------------------------------------------------
    # Booking requests
    # ------------------------------------------------------------------
    @app.post("/api/booking-requests")
    def submit_booking_request() -> Any:
        data = _payload()
        _require(data, "quote_id")
        booking_request = system().submit_booking_request(
            _as_int(data, "quote_id"),
            customer_id=data.get("customer_id"),
            contact_info=data.get("contact") or {},
        )
        return jsonify({"ok": True, "request": booking_request}), 201

    @app.get("/admin/requests")
    def booking_requests() -> Any:
        requests = system().list_booking_requests(status=request.args.get("status"))
        return jsonify({"ok": True, "requests": requests})

    @app.post("/admin/requests/<int:request_id>/approve")
    def approve_request(request_id: int) -> Any:
        result = system().approve_booking_request(request_id)
        return jsonify({"ok": True, **result})

    @app.post("/admin/requests/<int:request_id>/decline")
    def decline_request(request_id: int) -> Any:
        data = _payload()
        booking_request = system().decline_booking_request(request_id, reason=data.get("reason"))
        return jsonify({"ok": True, "request": booking_request})

    @app.post("/admin/bookings/create")
    def create_admin_booking() -> Any:
        data = _payload()
        _require(data, "customer", "address", "waste_type", "dumpster_size", "dropoff_date", "pickup_date")
        result = system().create_admin_booking(
            customer=data["customer"],
            address=data["address"],
            waste_type=data["waste_type"],
            dumpster_size=_as_int(data, "dumpster_size"),
            dropoff_date=data["dropoff_date"],
            pickup_date=data["pickup_date"],
            notes=data.get("notes"),
        )
        return jsonify({"ok": True, **result}), 201

    # ------------------------------------------------------------------
    # Invoices & payments
    # ------------------------------------------------------------------
    @app.get("/api/invoices/<int:invoice_id>")
    def invoice_detail(invoice_id: int) -> Any:
        return jsonify({"ok": True, "invoice": system().get_invoice(invoice_id)})

    @app.post("/api/invoices/<int:invoice_id>/checkout")
    def checkout(invoice_id: int) -> Any:
        return jsonify({"ok": True, "session": system().create_payment_session(invoice_id)})

    @app.get("/admin/invoices/stats")
    def invoice_stats() -> Any:
        _require(request.args, "start_date", "end_date")
        stats = system().invoice_stats(
            start_date=request.args["start_date"],
            end_date=request.args["end_date"],
            status=request.args.get("status"),
        )
        return jsonify({"ok": True, "stats": stats})

    @app.get("/admin/invoices/export")
    def export_invoices() -> Any:
        _require(request.args, "start_date", "end_date")
        start_date, end_date = request.args["start_date"], request.args["end_date"]
        content = system().export_invoices_csv(
            start_date=start_date, end_date=end_date, status=request.args.get("status")
        )
        filename = f"invoices_{start_date}_to_{end_date}.csv"
        return Response(
            content,
            mimetype="text/csv",
            headers={"Content-Disposition": f'attachment; filename="{filename}"'},
        )

    @app.post("/admin/invoices/<int:invoice_id>/void")
    def void_invoice(invoice_id: int) -> Any:
        return jsonify({"ok": True, "invoice": system().void_invoice(invoice_id)})

    @app.post("/api/payments/confirm")
    def confirm_payment() -> Any:
        data = _payload()
        _require(data, "invoice_id", "session_id", "token", "payment_id", "amount_cents")
        result = system().confirm_checkout(
            _as_int(data, "invoice_id"),
            session_id=data["session_id"],
            token=data["token"],
            payment_id=data["payment_id"],
            amount_cents=_as_int(data, "amount_cents"),
        )
        return jsonify({"ok": True, **result})

    @app.post("/api/payments/webhook")
    def payment_webhook() -> Any:
        result = system().handle_payment_callback(
            request.get_data(), request.headers.get(SIGNATURE_HEADER)
        )
        return jsonify({"ok": True, "received": True, **result})

    # ------------------------------------------------------------------
    # Bookings
    # ------------------------------------------------------------------
    @app.get("/admin/bookings")
    def bookings() -> Any:
        return jsonify({"ok": True, "bookings": system().list_bookings(status=request.args.get("status"))})

    @app.get("/admin/bookings/<int:booking_id>")
    def booking_detail(booking_id: int) -> Any:
        return jsonify({"ok": True, "booking": system().get_booking(booking_id)})

    @app.post("/admin/bookings/<int:booking_id>/status")
    def booking_status(booking_id: int) -> Any:
        data = _payload()
        _require(data, "status")
        booking = system().transition_booking(booking_id, data["status"])
        return jsonify({"ok": True, "booking": booking})

    @app.post("/admin/bookings/<int:booking_id>/assign-dumpster")
    def assign_dumpster(booking_id: int) -> Any:
        data = _payload()
        _require(data, "dumpster_id")
        booking = system().assign_dumpster(booking_id, _as_int(data, "dumpster_id"))
        return jsonify({"ok": True, "booking": booking})

    @app.route("/admin/bookings/<int:booking_id>/dump-tickets", methods=["GET", "POST"])
    def dump_tickets(booking_id: int) -> Any:
        if request.method == "POST":
            data = _payload()
            _require(data, "facility", "ticket_number", "net_tons")
            ticket = system().record_dump_ticket(
                booking_id,
                facility=data["facility"],
                ticket_number=data["ticket_number"],
                net_tons=str(data["net_tons"]),
                ticket_datetime=data.get("ticket_datetime"),
            )
            return jsonify({"ok": True, "ticket": ticket}), 201
        return jsonify({"ok": True, "tickets": system().list_dump_tickets(booking_id)})

    @app.post("/admin/bookings/<int:booking_id>/overage")
    def assess_overage(booking_id: int) -> Any:
        adjustment = system().assess_tonnage_overage(booking_id)
        return jsonify({"ok": True, "adjustment": adjustment})

    # ------------------------------------------------------------------
    # Fleet & adjustments
    # ------------------------------------------------------------------
    @app.route("/admin/dumpsters", methods=["GET", "POST"])
    def dumpsters() -> Any:
        if request.method == "POST":
            data = _payload()
            _require(data, "unit_number", "size")
            dumpster = system().create_dumpster(
                unit_number=data["unit_number"],
                size=_as_int(data, "size"),
                notes=data.get("notes"),
            )
            return jsonify({"ok": True, "dumpster": dumpster}), 201
        return jsonify(
            {
                "ok": True,
                "dumpsters": system().list_dumpsters(
                    status=request.args.get("status"), size=request.args.get("size", type=int)
                ),
            }
        )

    @app.post("/admin/dumpsters/<int:dumpster_id>/status")
    def dumpster_status(dumpster_id: int) -> Any:
        data = _payload()
        _require(data, "status")
        return jsonify({"ok": True, "dumpster": system().set_dumpster_status(dumpster_id, data["status"])})

    @app.post("/admin/dumpsters/repair")
    def repair_dumpsters() -> Any:
        return jsonify({"ok": True, "repaired": system().repair_orphaned_reservations()})

    @app.route("/admin/adjustments", methods=["GET", "POST"])
    def adjustments() -> Any:
        if request.method == "POST":
            data = _payload()
            _require(data, "booking_id", "kind", "amount_cents")
            adjustment = system().create_adjustment(
                _as_int(data, "booking_id"),
                kind=data["kind"],
                amount_cents=_as_int(data, "amount_cents"),
                notes=data.get("notes"),
                status=data.get("status") or "pending",
            )
            return jsonify({"ok": True, "adjustment": adjustment}), 201
        return jsonify(
            {
                "ok": True,
                "adjustments": system().list_adjustments(
                    booking_id=request.args.get("booking_id", type=int),
                    status=request.args.get("status"),
                ),
            }
        )

    return app
