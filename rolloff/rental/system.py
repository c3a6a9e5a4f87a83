"""Core orchestration logic for the roll-off rental platform."""

from __future__ import annotations

import csv
import datetime as dt
import io
import json
import logging
import sqlite3
from decimal import Decimal
from typing import Any, Callable

from .config import Settings, get_settings
from .database import get_connection, initialize_database, transaction
from .documents import invoice_document_fields, render_invoice_document
from .effects import (
    Attachment,
    EffectDispatcher,
    OutboxNotifier,
    SendEmail,
    booking_approved_email,
    booking_declined_email,
    booking_request_confirmation_email,
    booking_request_received_email,
    payment_confirmation_email,
)
from .errors import (
    DataIntegrityError,
    EmptyQuoteError,
    ExternalServiceError,
    InvalidRangeError,
    InvalidStateError,
    InvalidTransitionError,
    NotFoundError,
    ResourceUnavailableError,
    RuleNotFoundError,
    SizeMismatchError,
    ValidationError,
)
from .lifecycle import (
    HELD_DUMPSTER_STATUSES,
    TERMINAL_BOOKING_STATUSES,
    AdjustmentKind,
    BookingEffect,
    BookingStatus,
    CartStatus,
    DumpsterStatus,
    InvoiceStatus,
    QuoteStatus,
    RequestStatus,
    booking_transition_effects,
    check_request_transition,
    is_terminal_booking,
)
from .payments import PaymentGateway
from .pricing import (
    PriceSnapshot,
    PricingOptions,
    PricingResult,
    PricingRule,
    calculate_overage,
    calculate_pricing,
    parse_date,
    parse_tons,
)


logger = logging.getLogger(__name__)

ADJUSTMENT_STATUSES = ("pending", "charged", "waived")
PAYMENT_SOURCES = ("client", "callback", "admin")
MANUAL_DUMPSTER_STATUSES = frozenset(
    {DumpsterStatus.AVAILABLE, DumpsterStatus.MAINTENANCE, DumpsterStatus.RETIRED}
)
INVOICE_EXPORT_COLUMNS = (
    "Invoice #",
    "Status",
    "Customer Name",
    "Customer Email",
    "Customer Phone",
    "Service Address",
    "Dumpster Size",
    "Waste Type",
    "Issued Date",
    "Subtotal",
    "Tax",
    "Processing Fee",
    "Total",
    "Paid Date",
)

_HELD = tuple(status.value for status in HELD_DUMPSTER_STATUSES)
_TERMINAL = tuple(status.value for status in TERMINAL_BOOKING_STATUSES)


def _now() -> str:
    return dt.datetime.now(dt.timezone.utc).isoformat(timespec="seconds")


def _placeholders(values: tuple) -> str:
    return ", ".join("?" for _ in values)


def _dollars(cents: int) -> str:
    return f"{Decimal(cents) / 100:.2f}"


class RentalSystem:
    """High level façade over quoting, invoicing, payments and bookings.

    Every query is scoped to ``business_id``. Mutating operations run inside
    :func:`~rolloff.rental.database.transaction`; notifications are collected
    while the transaction is open and dispatched only after it commits.
    """

    def __init__(
        self,
        db_path: str = ":memory:",
        *,
        business_id: str | None = None,
        settings: Settings | None = None,
        notifier: Any = None,
        gateway: PaymentGateway | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.business_id = business_id or self.settings.BUSINESS_ID
        self.conn = get_connection(db_path)
        initialize_database(self.conn)
        self.notifier = notifier or OutboxNotifier(self.conn, self.business_id)
        self.gateway = gateway or PaymentGateway(
            self.settings.PAYMENT_WEBHOOK_SECRET,
            self.settings.SITE_URL,
            tolerance_seconds=self.settings.PAYMENT_WEBHOOK_TOLERANCE_SECONDS,
        )
        self.dispatcher = EffectDispatcher(self.notifier, self._render_invoice_attachment)

    def close(self) -> None:
        self.conn.close()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _get_row(self, table: str, row_id: int, label: str) -> dict:
        row = self.conn.execute(
            f"SELECT * FROM {table} WHERE id = ? AND business_id = ?",
            (row_id, self.business_id),
        ).fetchone()
        if not row:
            raise NotFoundError(f"{label} not found")
        return row

    def _require_related(self, table: str, row_id: int | None, label: str, owner: str) -> dict:
        """Load a row another record points at; a dangling reference is an integrity failure."""

        row = None
        if row_id is not None:
            row = self.conn.execute(
                f"SELECT * FROM {table} WHERE id = ? AND business_id = ?",
                (row_id, self.business_id),
            ).fetchone()
        if not row:
            logger.error("%s %s referenced by %s is missing", label, row_id, owner)
            raise DataIntegrityError(f"{label} referenced by {owner} is missing")
        return row

    def _load_snapshot(self, raw: str | None, owner: str) -> PriceSnapshot:
        try:
            return PriceSnapshot.from_dict(json.loads(raw))
        except (TypeError, ValueError, KeyError) as exc:
            logger.error("Pricing snapshot of %s is unreadable: %s", owner, exc)
            raise DataIntegrityError(f"Pricing snapshot of {owner} is unreadable") from exc

    def _pricing_options(self, *, tax_exempt: bool = False) -> PricingOptions:
        return PricingOptions.from_settings(self.settings, tax_exempt=tax_exempt)

    def _dispatch(self, effects: list[SendEmail]) -> list[dict]:
        if not effects:
            return []
        return self.dispatcher.run(effects)

    def _render_invoice_attachment(self, invoice_id: int) -> Attachment:
        invoice = self.get_invoice(invoice_id)
        snapshot = None
        if invoice["booking_id"] is not None:
            booking = self.get_booking(invoice["booking_id"])
            snapshot = self._load_snapshot(booking["pricing_snapshot"], f"booking {booking['id']}")
        fields = invoice_document_fields(
            invoice, snapshot, business_name=self.settings.BUSINESS_NAME
        )
        return Attachment(
            filename=f"invoice-{invoice['invoice_number']}.txt",
            content_type="text/plain",
            content=render_invoice_document(fields),
        )

    # ------------------------------------------------------------------
    # Customers & addresses
    # ------------------------------------------------------------------
    def register_customer(
        self,
        *,
        name: str,
        email: str,
        phone: str | None = None,
        tax_exempt: bool = False,
    ) -> dict:
        if not name or not email:
            raise ValidationError("Customer name and email are required")
        cur = self.conn.execute(
            """
            INSERT INTO customers(business_id, name, email, phone, tax_exempt)
            VALUES (?, ?, ?, ?, ?)
            """,
            (self.business_id, name.strip(), email.strip().lower(), phone, int(tax_exempt)),
        )
        return self.get_customer(cur.lastrowid)

    def get_customer(self, customer_id: int) -> dict:
        return self._get_row("customers", customer_id, "Customer")

    def find_customer_by_email(self, email: str) -> dict | None:
        return self.conn.execute(
            "SELECT * FROM customers WHERE business_id = ? AND email = ? ORDER BY id LIMIT 1",
            (self.business_id, email.strip().lower()),
        ).fetchone()

    def add_address(
        self,
        *,
        full_address: str,
        customer_id: int | None = None,
        street: str | None = None,
        city: str | None = None,
        state: str | None = None,
        zip_code: str | None = None,
        lat: float | None = None,
        lng: float | None = None,
    ) -> dict:
        if not full_address:
            raise ValidationError("An address is required")
        if customer_id is not None:
            self.get_customer(customer_id)
        cur = self.conn.execute(
            """
            INSERT INTO addresses(business_id, customer_id, full_address, street, city, state, zip, lat, lng)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (self.business_id, customer_id, full_address, street, city, state, zip_code, lat, lng),
        )
        return self._get_row("addresses", cur.lastrowid, "Address")

    # ------------------------------------------------------------------
    # Pricing rules
    # ------------------------------------------------------------------
    def create_pricing_rule(
        self,
        *,
        waste_type: str,
        dumpster_size: int,
        base_price_cents: int,
        included_days: int,
        delivery_fee_cents: int = 0,
        haul_fee_cents: int = 0,
        extra_day_fee_cents: int = 0,
        included_tons: Decimal | str | int = "0",
        overage_per_ton_cents: int = 0,
        public_notes: str | None = None,
    ) -> dict:
        """Create the active rule for a waste type and size.

        Any rule currently active for the same pair is deactivated in the same
        transaction so at most one stays active.
        """

        if not waste_type:
            raise ValidationError("Waste type is required")
        if dumpster_size <= 0:
            raise ValidationError("Dumpster size must be positive")
        amounts = (
            base_price_cents,
            delivery_fee_cents,
            haul_fee_cents,
            extra_day_fee_cents,
            overage_per_ton_cents,
            included_days,
        )
        if any(int(value) != value or value < 0 for value in amounts):
            raise ValidationError("Prices and included days must be non-negative integers")
        tons = parse_tons(included_tons)
        with transaction(self.conn):
            self.conn.execute(
                """
                UPDATE pricing_rules SET active = 0
                WHERE business_id = ? AND waste_type = ? AND dumpster_size = ? AND active = 1
                """,
                (self.business_id, waste_type, dumpster_size),
            )
            cur = self.conn.execute(
                """
                INSERT INTO pricing_rules(
                    business_id, waste_type, dumpster_size, base_price_cents, delivery_fee_cents,
                    haul_fee_cents, included_days, extra_day_fee_cents, included_tons,
                    overage_per_ton_cents, public_notes, active
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 1)
                """,
                (
                    self.business_id,
                    waste_type,
                    dumpster_size,
                    base_price_cents,
                    delivery_fee_cents,
                    haul_fee_cents,
                    included_days,
                    extra_day_fee_cents,
                    str(tons),
                    overage_per_ton_cents,
                    public_notes,
                ),
            )
        return self._get_row("pricing_rules", cur.lastrowid, "Pricing rule")

    def find_active_rule(self, waste_type: str, dumpster_size: int) -> dict:
        row = self.conn.execute(
            """
            SELECT * FROM pricing_rules
            WHERE business_id = ? AND waste_type = ? AND dumpster_size = ? AND active = 1
            """,
            (self.business_id, waste_type, dumpster_size),
        ).fetchone()
        if not row:
            raise RuleNotFoundError(
                f"No active pricing for a {dumpster_size} yard dumpster ({waste_type})"
            )
        return row

    def list_pricing_rules(self, *, active_only: bool = True) -> list[dict]:
        query = "SELECT * FROM pricing_rules WHERE business_id = ?"
        if active_only:
            query += " AND active = 1"
        return self.conn.execute(
            query + " ORDER BY waste_type, dumpster_size, id", (self.business_id,)
        ).fetchall()

    def deactivate_pricing_rule(self, rule_id: int) -> dict:
        self._get_row("pricing_rules", rule_id, "Pricing rule")
        self.conn.execute(
            "UPDATE pricing_rules SET active = 0 WHERE id = ? AND business_id = ?",
            (rule_id, self.business_id),
        )
        return self._get_row("pricing_rules", rule_id, "Pricing rule")

    def price_rental(
        self,
        *,
        waste_type: str,
        dumpster_size: int,
        dropoff_date: str | dt.date,
        pickup_date: str | dt.date,
        tax_exempt: bool = False,
    ) -> PricingResult:
        """Price a rental against the active rule without storing anything."""

        rule = PricingRule.from_row(self.find_active_rule(waste_type, dumpster_size))
        return calculate_pricing(
            rule,
            parse_date(dropoff_date),
            parse_date(pickup_date),
            self._pricing_options(tax_exempt=tax_exempt),
        )

    # ------------------------------------------------------------------
    # Quotes
    # ------------------------------------------------------------------
    def start_quote(self, *, customer_id: int | None = None, address_id: int | None = None) -> dict:
        if customer_id is not None:
            self.get_customer(customer_id)
        if address_id is not None:
            self._get_row("addresses", address_id, "Address")
        cur = self.conn.execute(
            "INSERT INTO quotes(business_id, customer_id, address_id, status) VALUES (?, ?, ?, ?)",
            (self.business_id, customer_id, address_id, QuoteStatus.DRAFT.value),
        )
        return self.get_quote(cur.lastrowid)

    def get_quote(self, quote_id: int) -> dict:
        quote = self._get_row("quotes", quote_id, "Quote")
        quote["line_items"] = self.conn.execute(
            "SELECT * FROM quote_line_items WHERE quote_id = ? ORDER BY sort_order",
            (quote_id,),
        ).fetchall()
        return quote

    def _insert_quote_line_items(self, quote_id: int, result: PricingResult) -> None:
        self.conn.executemany(
            """
            INSERT INTO quote_line_items(quote_id, label, amount_cents, line_type, sort_order, taxable)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            [
                (quote_id, item.label, item.amount_cents, item.type, item.sort_order, int(item.taxable))
                for item in result.line_items
            ],
        )

    def configure_quote(
        self,
        quote_id: int,
        *,
        waste_type: str,
        dumpster_size: int,
        dropoff_date: str | dt.date,
        pickup_date: str | dt.date,
    ) -> dict:
        """Price a draft quote, replacing any previous snapshot and line items."""

        dropoff = parse_date(dropoff_date)
        pickup = parse_date(pickup_date)
        with transaction(self.conn):
            quote = self._get_row("quotes", quote_id, "Quote")
            if quote["status"] != QuoteStatus.DRAFT.value:
                raise InvalidStateError(f"Cannot configure a quote with status: {quote['status']}")
            tax_exempt = False
            if quote["customer_id"] is not None:
                customer = self._require_related(
                    "customers", quote["customer_id"], "Customer", f"quote {quote_id}"
                )
                tax_exempt = bool(customer["tax_exempt"])
            rule = PricingRule.from_row(self.find_active_rule(waste_type, dumpster_size))
            result = calculate_pricing(
                rule, dropoff, pickup, self._pricing_options(tax_exempt=tax_exempt)
            )
            cur = self.conn.execute(
                """
                UPDATE quotes
                SET waste_type = ?, dumpster_size = ?, dropoff_date = ?, pickup_date = ?,
                    pricing_snapshot = ?, updated_at = ?
                WHERE id = ? AND business_id = ? AND status = ?
                """,
                (
                    waste_type,
                    dumpster_size,
                    dropoff.isoformat(),
                    pickup.isoformat(),
                    json.dumps(result.snapshot.to_dict(), sort_keys=True),
                    _now(),
                    quote_id,
                    self.business_id,
                    QuoteStatus.DRAFT.value,
                ),
            )
            if cur.rowcount == 0:
                raise InvalidStateError("Quote is no longer a draft")
            self.conn.execute("DELETE FROM quote_line_items WHERE quote_id = ?", (quote_id,))
            self._insert_quote_line_items(quote_id, result)
        return self.get_quote(quote_id)

    # ------------------------------------------------------------------
    # Cart
    # ------------------------------------------------------------------
    def _active_cart(self, customer_id: int) -> dict | None:
        return self.conn.execute(
            "SELECT * FROM carts WHERE business_id = ? AND customer_id = ? AND status = ?",
            (self.business_id, customer_id, CartStatus.ACTIVE.value),
        ).fetchone()

    def _cart_for(self, customer_id: int) -> int:
        cart = self._active_cart(customer_id)
        if cart:
            return cart["id"]
        cur = self.conn.execute(
            "INSERT INTO carts(business_id, customer_id, status) VALUES (?, ?, ?)",
            (self.business_id, customer_id, CartStatus.ACTIVE.value),
        )
        return cur.lastrowid

    def _check_cartable(self, quote: dict, customer_id: int) -> None:
        if not quote["pricing_snapshot"]:
            raise EmptyQuoteError("Quote has no pricing configured")
        if quote["status"] != QuoteStatus.DRAFT.value:
            raise InvalidStateError(f"Cannot add a quote with status: {quote['status']}")
        if quote["customer_id"] not in (None, customer_id):
            raise ValidationError("Quote belongs to another customer")

    def add_to_cart(self, customer_id: int, quote_id: int) -> dict:
        """Put a priced draft quote in the customer's active cart.

        The cart is created on first use. Adding a quote that is already in
        the cart changes nothing.
        """

        with transaction(self.conn):
            self.get_customer(customer_id)
            self._check_cartable(self._get_row("quotes", quote_id, "Quote"), customer_id)
            self.conn.execute(
                "INSERT OR IGNORE INTO cart_items(cart_id, quote_id) VALUES (?, ?)",
                (self._cart_for(customer_id), quote_id),
            )
        return self.get_cart(customer_id)

    def add_rental_to_cart(
        self,
        customer_id: int,
        *,
        address: dict,
        waste_type: str,
        dumpster_size: int,
        dropoff_date: str | dt.date,
        pickup_date: str | dt.date,
    ) -> dict:
        """Save an address, price a new draft quote and add it to the cart in one step."""

        if not address.get("full_address"):
            raise ValidationError("Invalid address data")
        dropoff = parse_date(dropoff_date)
        pickup = parse_date(pickup_date)
        with transaction(self.conn):
            customer = self.get_customer(customer_id)
            address_id = self.add_address(
                customer_id=customer_id,
                full_address=address["full_address"],
                street=address.get("street"),
                city=address.get("city"),
                state=address.get("state"),
                zip_code=address.get("zip"),
                lat=address.get("lat"),
                lng=address.get("lng"),
            )["id"]
            rule = PricingRule.from_row(self.find_active_rule(waste_type, dumpster_size))
            result = calculate_pricing(
                rule,
                dropoff,
                pickup,
                self._pricing_options(tax_exempt=bool(customer["tax_exempt"])),
            )
            cur = self.conn.execute(
                """
                INSERT INTO quotes(
                    business_id, customer_id, address_id, waste_type, dumpster_size,
                    dropoff_date, pickup_date, status, pricing_snapshot
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    self.business_id,
                    customer_id,
                    address_id,
                    waste_type,
                    dumpster_size,
                    dropoff.isoformat(),
                    pickup.isoformat(),
                    QuoteStatus.DRAFT.value,
                    json.dumps(result.snapshot.to_dict(), sort_keys=True),
                ),
            )
            quote_id = cur.lastrowid
            self._insert_quote_line_items(quote_id, result)
            self.conn.execute(
                "INSERT INTO cart_items(cart_id, quote_id) VALUES (?, ?)",
                (self._cart_for(customer_id), quote_id),
            )
        cart = self.get_cart(customer_id)
        cart["quote_id"] = quote_id
        return cart

    def get_cart(self, customer_id: int) -> dict:
        cart = self._active_cart(customer_id)
        if not cart:
            return {"cart": None, "items": [], "total_cents": 0}
        rows = self.conn.execute(
            """
            SELECT ci.id, ci.quote_id, q.waste_type, q.dumpster_size, q.dropoff_date,
                   q.pickup_date, q.pricing_snapshot, a.full_address
            FROM cart_items ci
            JOIN quotes q ON q.id = ci.quote_id
            LEFT JOIN addresses a ON a.id = q.address_id
            WHERE ci.cart_id = ?
            ORDER BY ci.id
            """,
            (cart["id"],),
        ).fetchall()
        items = []
        for row in rows:
            snapshot = self._load_snapshot(row.pop("pricing_snapshot"), f"quote {row['quote_id']}")
            row["total_cents"] = snapshot.total_cents
            row["full_address"] = row["full_address"] or ""
            items.append(row)
        return {
            "cart": cart,
            "items": items,
            "total_cents": sum(item["total_cents"] for item in items),
        }

    def remove_from_cart(self, customer_id: int, item_id: int) -> dict:
        cart = self._active_cart(customer_id)
        if not cart:
            raise NotFoundError("Cart not found")
        cur = self.conn.execute(
            "DELETE FROM cart_items WHERE id = ? AND cart_id = ?", (item_id, cart["id"])
        )
        if cur.rowcount == 0:
            raise NotFoundError("Cart item not found")
        return self.get_cart(customer_id)

    def checkout_cart(self, customer_id: int, *, contact_info: dict | None = None) -> dict:
        """Turn every quote in the active cart into a pending booking request.

        All or nothing: each quote is consumed with the same draft-conditional
        update as :meth:`submit_booking_request`, and the cart is marked
        converted in the same transaction.
        """

        contact = dict(contact_info or {})
        with transaction(self.conn):
            cart = self._active_cart(customer_id)
            if not cart:
                raise NotFoundError("Cart not found")
            items = self.conn.execute(
                "SELECT * FROM cart_items WHERE cart_id = ? ORDER BY id", (cart["id"],)
            ).fetchall()
            if not items:
                raise EmptyQuoteError("Cart is empty")
            opened = [
                self._open_booking_request(item["quote_id"], customer_id=customer_id, contact=contact)
                for item in items
            ]
            cur = self.conn.execute(
                "UPDATE carts SET status = ?, updated_at = ? WHERE id = ? AND status = ?",
                (CartStatus.CONVERTED.value, _now(), cart["id"], CartStatus.ACTIVE.value),
            )
            if cur.rowcount == 0:
                raise InvalidStateError("Cart is no longer active")

        requests = []
        for request_id, quote, customer, snapshot in opened:
            request = self.get_booking_request(request_id)
            request["notifications"] = self._dispatch(
                self._request_received_effects(request_id, quote, customer, snapshot, contact)
            )
            requests.append(request)
        return {"cart": self._get_row("carts", cart["id"], "Cart"), "requests": requests}

    # ------------------------------------------------------------------
    # Booking requests
    # ------------------------------------------------------------------
    def submit_booking_request(
        self,
        quote_id: int,
        *,
        customer_id: int | None = None,
        contact_info: dict | None = None,
    ) -> dict:
        contact = dict(contact_info or {})
        with transaction(self.conn):
            request_id, quote, customer, snapshot = self._open_booking_request(
                quote_id, customer_id=customer_id, contact=contact
            )
        request = self.get_booking_request(request_id)
        request["notifications"] = self._dispatch(
            self._request_received_effects(request_id, quote, customer, snapshot, contact)
        )
        return request

    def _open_booking_request(
        self, quote_id: int, *, customer_id: int | None, contact: dict
    ) -> tuple[int, dict, dict, PriceSnapshot]:
        """Insert a pending request and convert its draft quote.

        Must run inside an open transaction. The quote is consumed by a
        draft-conditional update, so a quote can back at most one request.
        """

        quote = self._get_row("quotes", quote_id, "Quote")
        if not quote["pricing_snapshot"]:
            raise EmptyQuoteError("Quote has not been priced yet")
        if quote["status"] != QuoteStatus.DRAFT.value:
            raise InvalidStateError(f"Cannot submit a quote with status: {quote['status']}")
        customer_id = customer_id or quote["customer_id"]
        if customer_id is None:
            raise ValidationError("A customer is required to request a booking")
        customer = self.get_customer(customer_id)
        snapshot = self._load_snapshot(quote["pricing_snapshot"], f"quote {quote_id}")
        try:
            cur = self.conn.execute(
                """
                INSERT INTO booking_requests(business_id, customer_id, quote_id, status, customer_inputs)
                VALUES (?, ?, ?, ?, ?)
                """,
                (
                    self.business_id,
                    customer_id,
                    quote_id,
                    RequestStatus.PENDING.value,
                    json.dumps(contact, sort_keys=True),
                ),
            )
        except sqlite3.IntegrityError as exc:
            raise InvalidStateError("Quote already has a booking request") from exc
        converted = self.conn.execute(
            """
            UPDATE quotes SET status = ?, customer_id = ?, updated_at = ?
            WHERE id = ? AND business_id = ? AND status = ?
            """,
            (
                QuoteStatus.CONVERTED.value,
                customer_id,
                _now(),
                quote_id,
                self.business_id,
                QuoteStatus.DRAFT.value,
            ),
        )
        if converted.rowcount == 0:
            raise InvalidStateError("Quote is no longer a draft")
        return cur.lastrowid, quote, customer, snapshot

    def _request_received_effects(
        self,
        request_id: int,
        quote: dict,
        customer: dict,
        snapshot: PriceSnapshot,
        contact: dict,
    ) -> list[SendEmail]:
        name = contact.get("name") or customer["name"]
        email = contact.get("email") or customer["email"]
        return [
            booking_request_received_email(
                business_email=self.settings.BUSINESS_EMAIL,
                customer_name=name,
                customer_email=email,
                customer_phone=contact.get("phone") or customer["phone"] or "",
                quote=quote,
                total_cents=snapshot.total_cents,
                request_id=request_id,
                site_url=self.settings.SITE_URL,
            ),
            booking_request_confirmation_email(
                customer_name=name,
                customer_email=email,
                quote=quote,
                total_cents=snapshot.total_cents,
            ),
        ]

    def get_booking_request(self, request_id: int) -> dict:
        return self._get_row("booking_requests", request_id, "Booking request")

    def list_booking_requests(self, *, status: str | None = None) -> list[dict]:
        query = "SELECT * FROM booking_requests WHERE business_id = ?"
        params: list[Any] = [self.business_id]
        if status:
            query += " AND status = ?"
            params.append(status)
        return self.conn.execute(query + " ORDER BY created_at DESC, id DESC", params).fetchall()

    def _next_invoice_number(self) -> str:
        row = self.conn.execute(
            "SELECT MAX(CAST(invoice_number AS INTEGER)) AS last FROM invoices WHERE business_id = ?",
            (self.business_id,),
        ).fetchone()
        start = self.settings.INVOICE_NUMBER_START
        if row["last"] is None:
            return str(start)
        return str(max(int(row["last"]) + 1, start))

    def _issue_invoice(self, *, request_id: int, quote: dict, customer_id: int) -> int:
        snapshot = self._load_snapshot(quote["pricing_snapshot"], f"quote {quote['id']}")
        line_items = self.conn.execute(
            "SELECT * FROM quote_line_items WHERE quote_id = ? ORDER BY sort_order",
            (quote["id"],),
        ).fetchall()
        if not line_items:
            logger.error("Quote %s has a snapshot but no line items", quote["id"])
            raise DataIntegrityError(f"Quote {quote['id']} has no line items")
        cur = self.conn.execute(
            """
            INSERT INTO invoices(
                business_id, invoice_number, customer_id, booking_request_id,
                subtotal_cents, total_cents, status, issued_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                self.business_id,
                self._next_invoice_number(),
                customer_id,
                request_id,
                snapshot.subtotal_cents,
                snapshot.total_cents,
                InvoiceStatus.UNPAID.value,
                _now(),
            ),
        )
        invoice_id = cur.lastrowid
        self.conn.executemany(
            """
            INSERT INTO invoice_line_items(
                invoice_id, label, quantity, unit_price_cents, amount_cents, line_type, sort_order, taxable
            ) VALUES (?, ?, 1, ?, ?, ?, ?, ?)
            """,
            [
                (
                    invoice_id,
                    item["label"],
                    item["amount_cents"],
                    item["amount_cents"],
                    item["line_type"],
                    item["sort_order"],
                    item["taxable"],
                )
                for item in line_items
            ],
        )
        return invoice_id

    def _with_invoice_number(self, work: Callable[[], Any]) -> Any:
        """Run ``work`` in a write transaction, retrying on invoice-number collisions."""

        attempts = max(1, self.settings.INVOICE_NUMBER_RETRIES)
        for attempt in range(1, attempts + 1):
            try:
                with transaction(self.conn):
                    return work()
            except sqlite3.IntegrityError as exc:
                if "invoices.invoice_number" not in str(exc):
                    logger.error("Integrity failure while issuing an invoice: %s", exc)
                    raise DataIntegrityError(str(exc)) from exc
                if attempt == attempts:
                    raise DataIntegrityError("Could not allocate a unique invoice number") from exc
                logger.warning(
                    "Invoice number collision (attempt %s of %s), retrying", attempt, attempts
                )
        raise DataIntegrityError("Could not allocate a unique invoice number")

    def approve_booking_request(self, request_id: int) -> dict:
        """Approve a pending request and issue its invoice."""

        def approve() -> tuple[int, dict, dict]:
            request = self.get_booking_request(request_id)
            check_request_transition(request["status"], RequestStatus.APPROVED)
            owner = f"booking request {request_id}"
            quote = self._require_related("quotes", request["quote_id"], "Quote", owner)
            customer = self._require_related("customers", request["customer_id"], "Customer", owner)
            invoice_id = self._issue_invoice(
                request_id=request_id, quote=quote, customer_id=customer["id"]
            )
            cur = self.conn.execute(
                """
                UPDATE booking_requests SET status = ?, updated_at = ?
                WHERE id = ? AND business_id = ? AND status = ?
                """,
                (
                    RequestStatus.APPROVED.value,
                    _now(),
                    request_id,
                    self.business_id,
                    RequestStatus.PENDING.value,
                ),
            )
            if cur.rowcount == 0:
                raise InvalidStateError("Booking request is no longer pending")
            self.conn.execute(
                "UPDATE quotes SET status = ?, updated_at = ? WHERE id = ?",
                (QuoteStatus.CONVERTED.value, _now(), quote["id"]),
            )
            return invoice_id, quote, customer

        invoice_id, quote, customer = self._with_invoice_number(approve)
        contact = json.loads(self.get_booking_request(request_id)["customer_inputs"] or "{}")
        return self._after_invoice_issued(
            invoice_id,
            quote=quote,
            customer_name=contact.get("name") or customer["name"],
            customer_email=contact.get("email") or customer["email"],
        )

    def _after_invoice_issued(
        self, invoice_id: int, *, quote: dict, customer_name: str, customer_email: str
    ) -> dict:
        try:
            session = self.create_payment_session(invoice_id)
        except ExternalServiceError:
            logger.exception("Could not open a payment session for invoice %s", invoice_id)
            session = None
        invoice = self.get_invoice(invoice_id)
        effects = []
        if session is not None:
            effects.append(
                booking_approved_email(
                    customer_name=customer_name,
                    customer_email=customer_email,
                    invoice_number=invoice["invoice_number"],
                    quote=quote,
                    total_cents=invoice["total_cents"],
                    payment_url=session["url"],
                )
            )
        return {
            "invoice": invoice,
            "payment_url": session["url"] if session else None,
            "notifications": self._dispatch(effects),
        }

    def decline_booking_request(self, request_id: int, *, reason: str | None = None) -> dict:
        with transaction(self.conn):
            request = self.get_booking_request(request_id)
            check_request_transition(request["status"], RequestStatus.DECLINED)
            owner = f"booking request {request_id}"
            quote = self._require_related("quotes", request["quote_id"], "Quote", owner)
            customer = self._require_related("customers", request["customer_id"], "Customer", owner)
            cur = self.conn.execute(
                """
                UPDATE booking_requests SET status = ?, decline_reason = ?, updated_at = ?
                WHERE id = ? AND business_id = ? AND status = ?
                """,
                (
                    RequestStatus.DECLINED.value,
                    reason,
                    _now(),
                    request_id,
                    self.business_id,
                    RequestStatus.PENDING.value,
                ),
            )
            if cur.rowcount == 0:
                raise InvalidStateError("Booking request is no longer pending")
            self.conn.execute(
                "UPDATE quotes SET status = ?, updated_at = ? WHERE id = ?",
                (QuoteStatus.EXPIRED.value, _now(), quote["id"]),
            )
        contact = json.loads(request["customer_inputs"] or "{}")
        request = self.get_booking_request(request_id)
        request["notifications"] = self._dispatch(
            [
                booking_declined_email(
                    customer_name=contact.get("name") or customer["name"],
                    customer_email=contact.get("email") or customer["email"],
                    quote=quote,
                    reason=reason,
                )
            ]
        )
        return request

    def create_admin_booking(
        self,
        *,
        customer: dict,
        address: dict,
        waste_type: str,
        dumpster_size: int,
        dropoff_date: str | dt.date,
        pickup_date: str | dt.date,
        notes: str | None = None,
    ) -> dict:
        """Back-office booking: price, request and approve in one step.

        The customer is matched by email (or created) and the resulting
        invoice is left unpaid with a payment link emailed to the customer.
        """

        email = (customer.get("email") or "").strip().lower()
        if not email or not address.get("full_address"):
            raise ValidationError("Missing required fields")
        dropoff = parse_date(dropoff_date)
        pickup = parse_date(pickup_date)

        def create() -> tuple[int, dict, dict]:
            existing = self.find_customer_by_email(email)
            if existing:
                self.conn.execute(
                    "UPDATE customers SET name = ?, phone = ? WHERE id = ?",
                    (
                        customer.get("name") or existing["name"],
                        customer.get("phone") or existing["phone"],
                        existing["id"],
                    ),
                )
                customer_id = existing["id"]
            else:
                customer_id = self.register_customer(
                    name=customer.get("name") or email,
                    email=email,
                    phone=customer.get("phone"),
                )["id"]
            customer_row = self.get_customer(customer_id)
            address_id = self.add_address(
                customer_id=customer_id,
                full_address=address["full_address"],
                street=address.get("street"),
                city=address.get("city"),
                state=address.get("state"),
                zip_code=address.get("zip"),
                lat=address.get("lat"),
                lng=address.get("lng"),
            )["id"]
            rule = PricingRule.from_row(self.find_active_rule(waste_type, dumpster_size))
            result = calculate_pricing(
                rule,
                dropoff,
                pickup,
                self._pricing_options(tax_exempt=bool(customer_row["tax_exempt"])),
            )
            quote_cur = self.conn.execute(
                """
                INSERT INTO quotes(
                    business_id, customer_id, address_id, waste_type, dumpster_size,
                    dropoff_date, pickup_date, status, pricing_snapshot
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    self.business_id,
                    customer_id,
                    address_id,
                    waste_type,
                    dumpster_size,
                    dropoff.isoformat(),
                    pickup.isoformat(),
                    QuoteStatus.CONVERTED.value,
                    json.dumps(result.snapshot.to_dict(), sort_keys=True),
                ),
            )
            quote_id = quote_cur.lastrowid
            self._insert_quote_line_items(quote_id, result)
            request_cur = self.conn.execute(
                """
                INSERT INTO booking_requests(business_id, customer_id, quote_id, status, customer_inputs)
                VALUES (?, ?, ?, ?, ?)
                """,
                (
                    self.business_id,
                    customer_id,
                    quote_id,
                    RequestStatus.APPROVED.value,
                    json.dumps({"notes": notes, "created_by_admin": True}, sort_keys=True),
                ),
            )
            quote = self._get_row("quotes", quote_id, "Quote")
            invoice_id = self._issue_invoice(
                request_id=request_cur.lastrowid, quote=quote, customer_id=customer_id
            )
            return invoice_id, quote, customer_row

        invoice_id, quote, customer_row = self._with_invoice_number(create)
        return self._after_invoice_issued(
            invoice_id,
            quote=quote,
            customer_name=customer_row["name"],
            customer_email=customer_row["email"],
        )

    # ------------------------------------------------------------------
    # Invoices
    # ------------------------------------------------------------------
    def get_invoice(self, invoice_id: int) -> dict:
        invoice = self._get_row("invoices", invoice_id, "Invoice")
        invoice["line_items"] = self.conn.execute(
            "SELECT * FROM invoice_line_items WHERE invoice_id = ? ORDER BY sort_order",
            (invoice_id,),
        ).fetchall()
        invoice["payments"] = self.conn.execute(
            "SELECT * FROM payments WHERE invoice_id = ? ORDER BY id", (invoice_id,)
        ).fetchall()
        return invoice

    def list_invoices(self, *, status: str | None = None) -> list[dict]:
        query = "SELECT * FROM invoices WHERE business_id = ?"
        params: list[Any] = [self.business_id]
        if status:
            query += " AND status = ?"
            params.append(status)
        return self.conn.execute(
            query + " ORDER BY CAST(invoice_number AS INTEGER) DESC", params
        ).fetchall()

    def _invoices_issued_between(
        self, start_date: str | dt.date, end_date: str | dt.date, status: str | None
    ) -> tuple[dt.date, dt.date, list[dict]]:
        start = parse_date(start_date)
        end = parse_date(end_date)
        if end < start:
            raise InvalidRangeError("End date must not fall before start date")
        query = """
            SELECT i.*, c.name AS customer_name, c.email AS customer_email,
                   c.phone AS customer_phone, a.full_address, q.pricing_snapshot
            FROM invoices i
            LEFT JOIN customers c ON c.id = i.customer_id
            LEFT JOIN booking_requests r ON r.id = i.booking_request_id
            LEFT JOIN quotes q ON q.id = r.quote_id
            LEFT JOIN addresses a ON a.id = q.address_id
            WHERE i.business_id = ? AND date(i.issued_at) BETWEEN ? AND ?
        """
        params: list[Any] = [self.business_id, start.isoformat(), end.isoformat()]
        if status and status != "all":
            try:
                params.append(InvoiceStatus(status).value)
            except ValueError as exc:
                raise ValidationError(f"Unknown invoice status: {status}") from exc
            query += " AND i.status = ?"
        rows = self.conn.execute(query + " ORDER BY i.issued_at DESC, i.id DESC", params).fetchall()
        return start, end, rows

    def invoice_stats(
        self,
        *,
        start_date: str | dt.date,
        end_date: str | dt.date,
        status: str | None = None,
    ) -> dict:
        """Count invoices issued in a date range and total the paid revenue.

        Both dates are inclusive. ``status`` of ``None`` or ``"all"`` counts
        every status.
        """

        start, end, invoices = self._invoices_issued_between(start_date, end_date, status)
        counts = {member.value: 0 for member in InvoiceStatus}
        for invoice in invoices:
            counts[invoice["status"]] = counts.get(invoice["status"], 0) + 1
        return {
            "start_date": start.isoformat(),
            "end_date": end.isoformat(),
            "status": status or "all",
            "total_invoices": len(invoices),
            "paid_revenue_cents": sum(
                invoice["total_cents"]
                for invoice in invoices
                if invoice["status"] == InvoiceStatus.PAID.value
            ),
            "counts": counts,
        }

    def export_invoices_csv(
        self,
        *,
        start_date: str | dt.date,
        end_date: str | dt.date,
        status: str | None = None,
    ) -> str:
        """Render the invoices issued in a date range as CSV, newest first."""

        _, _, invoices = self._invoices_issued_between(start_date, end_date, status)
        buffer = io.StringIO()
        writer = csv.writer(buffer)
        writer.writerow(INVOICE_EXPORT_COLUMNS)
        for invoice in invoices:
            snapshot = None
            if invoice["pricing_snapshot"]:
                snapshot = self._load_snapshot(invoice["pricing_snapshot"], f"invoice {invoice['id']}")
            writer.writerow(
                [
                    invoice["invoice_number"],
                    invoice["status"].upper(),
                    invoice["customer_name"] or "",
                    invoice["customer_email"] or "",
                    invoice["customer_phone"] or "",
                    invoice["full_address"] or "",
                    f"{snapshot.dumpster_size} Yard" if snapshot else "",
                    snapshot.waste_type.replace("_", " ").upper() if snapshot else "",
                    invoice["issued_at"][:10],
                    _dollars(invoice["subtotal_cents"]),
                    _dollars(snapshot.tax_amount_cents if snapshot else 0),
                    _dollars(snapshot.processing_fee_cents if snapshot else 0),
                    _dollars(invoice["total_cents"]),
                    (invoice["paid_at"] or "")[:10],
                ]
            )
        return buffer.getvalue()

    def void_invoice(self, invoice_id: int) -> dict:
        cur = self.conn.execute(
            "UPDATE invoices SET status = ? WHERE id = ? AND business_id = ? AND status = ?",
            (InvoiceStatus.VOID.value, invoice_id, self.business_id, InvoiceStatus.UNPAID.value),
        )
        invoice = self.get_invoice(invoice_id)
        if cur.rowcount == 0 and invoice["status"] != InvoiceStatus.VOID.value:
            raise InvalidStateError(f"Cannot void an invoice with status: {invoice['status']}")
        return invoice

    def create_payment_session(self, invoice_id: int) -> dict:
        invoice = self._get_row("invoices", invoice_id, "Invoice")
        if invoice["status"] != InvoiceStatus.UNPAID.value:
            raise InvalidStateError(f"Cannot pay an invoice with status: {invoice['status']}")
        try:
            session = self.gateway.create_payment_session(invoice)
        except Exception as exc:
            raise ExternalServiceError("Payment provider could not create a session") from exc
        self.conn.execute(
            "UPDATE invoices SET payment_session_id = ? WHERE id = ?",
            (session.session_id, invoice_id),
        )
        return {"invoice_id": invoice_id, "session_id": session.session_id, "url": session.url}

    # ------------------------------------------------------------------
    # Payment reconciliation
    # ------------------------------------------------------------------
    def reconcile_payment(
        self,
        invoice_id: int,
        *,
        payment_id: str,
        amount_cents: int,
        source: str,
    ) -> dict:
        """Mark an invoice paid and create its booking exactly once.

        Safe to call any number of times, from any entry point, for the same
        invoice: only the call whose conditional update flips the invoice
        from unpaid to paid records the payment and creates the booking.
        Later calls report ``already_paid`` and have no side effects.
        """

        if not payment_id:
            raise ValidationError("A provider payment id is required")
        if source not in PAYMENT_SOURCES:
            raise ValidationError(f"Unknown payment source: {source}")
        if isinstance(amount_cents, bool) or not isinstance(amount_cents, int) or amount_cents <= 0:
            raise ValidationError("Payment amount must be a positive number of cents")

        already_paid = False
        try:
            with transaction(self.conn):
                paid_at = _now()
                cur = self.conn.execute(
                    """
                    UPDATE invoices SET status = ?, paid_at = ?, payment_provider_payment_id = ?
                    WHERE id = ? AND business_id = ? AND status = ?
                    """,
                    (
                        InvoiceStatus.PAID.value,
                        paid_at,
                        payment_id,
                        invoice_id,
                        self.business_id,
                        InvoiceStatus.UNPAID.value,
                    ),
                )
                invoice = self._get_row("invoices", invoice_id, "Invoice")
                if cur.rowcount == 0:
                    if invoice["status"] != InvoiceStatus.PAID.value:
                        raise InvalidStateError(
                            f"Cannot pay an invoice with status: {invoice['status']}"
                        )
                    already_paid = True
                else:
                    booking_id, quote, customer = self._record_payment_and_booking(
                        invoice, payment_id=payment_id, amount_cents=amount_cents, source=source
                    )
        except sqlite3.IntegrityError as exc:
            logger.error("Payment %s for invoice %s violated a constraint: %s", payment_id, invoice_id, exc)
            raise DataIntegrityError(f"Payment {payment_id} could not be recorded") from exc

        if already_paid:
            logger.info(
                "Invoice %s already paid; ignoring duplicate %s confirmation %s",
                invoice_id,
                source,
                payment_id,
            )
            return {
                "invoice": self.get_invoice(invoice_id),
                "booking": self.get_booking(invoice["booking_id"]),
                "already_paid": True,
                "notifications": [],
            }

        logger.info("Invoice %s paid via %s; booking %s created", invoice_id, source, booking_id)
        invoice = self.get_invoice(invoice_id)
        contact = json.loads(
            self.get_booking_request(invoice["booking_request_id"])["customer_inputs"] or "{}"
        )
        notifications = self._dispatch(
            [
                payment_confirmation_email(
                    customer_name=contact.get("name") or customer["name"],
                    customer_email=contact.get("email") or customer["email"],
                    invoice=invoice,
                    quote=quote,
                )
            ]
        )
        return {
            "invoice": invoice,
            "booking": self.get_booking(booking_id),
            "already_paid": False,
            "notifications": notifications,
        }

    def _record_payment_and_booking(
        self, invoice: dict, *, payment_id: str, amount_cents: int, source: str
    ) -> tuple[int, dict, dict]:
        owner = f"invoice {invoice['id']}"
        request = self._require_related(
            "booking_requests", invoice["booking_request_id"], "Booking request", owner
        )
        quote = self._require_related("quotes", request["quote_id"], "Quote", owner)
        customer = self._require_related("customers", invoice["customer_id"], "Customer", owner)
        if not quote["pricing_snapshot"]:
            logger.error("Quote %s for %s has no pricing snapshot", quote["id"], owner)
            raise DataIntegrityError(f"Quote for {owner} has no pricing snapshot")
        if amount_cents < invoice["total_cents"]:
            logger.warning(
                "Payment %s of %s cents is below invoice %s total of %s cents",
                payment_id,
                amount_cents,
                invoice["id"],
                invoice["total_cents"],
            )

        self.conn.execute(
            """
            INSERT INTO payments(invoice_id, provider_payment_id, amount_cents, status, source)
            VALUES (?, ?, ?, ?, ?)
            """,
            (invoice["id"], payment_id, amount_cents, "succeeded", source),
        )
        cur = self.conn.execute(
            """
            INSERT INTO bookings(
                business_id, booking_request_id, invoice_id, customer_id, address_id, status,
                dropoff_scheduled_on, pickup_due_on, pricing_snapshot
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                self.business_id,
                request["id"],
                invoice["id"],
                customer["id"],
                quote["address_id"],
                BookingStatus.CONFIRMED.value,
                quote["dropoff_date"],
                quote["pickup_date"],
                quote["pricing_snapshot"],
            ),
        )
        booking_id = cur.lastrowid
        self.conn.execute(
            "UPDATE invoices SET booking_id = ? WHERE id = ?", (booking_id, invoice["id"])
        )
        return booking_id, quote, customer

    def confirm_checkout(
        self,
        invoice_id: int,
        *,
        session_id: str,
        token: str,
        payment_id: str,
        amount_cents: int,
    ) -> dict:
        """Synchronous confirmation from the customer's browser after checkout.

        The session token only verifies for the amount it was issued for.
        """

        self.gateway.verify_session_token(invoice_id, session_id, token, amount_cents)
        return self.reconcile_payment(
            invoice_id, payment_id=payment_id, amount_cents=amount_cents, source="client"
        )

    def handle_payment_callback(self, body: bytes, signature_header: str | None) -> dict:
        """Asynchronous, signed confirmation from the payment provider."""

        confirmation = self.gateway.parse_callback(body, signature_header)
        if confirmation is None:
            return {"ignored": True}
        result = self.reconcile_payment(
            confirmation.invoice_id,
            payment_id=confirmation.payment_id,
            amount_cents=confirmation.amount_cents,
            source="callback",
        )
        result["ignored"] = False
        return result

    # ------------------------------------------------------------------
    # Bookings
    # ------------------------------------------------------------------
    def get_booking(self, booking_id: int) -> dict:
        return self._get_row("bookings", booking_id, "Booking")

    def list_bookings(self, *, status: str | None = None) -> list[dict]:
        query = "SELECT * FROM bookings WHERE business_id = ?"
        params: list[Any] = [self.business_id]
        if status:
            query += " AND status = ?"
            params.append(status)
        return self.conn.execute(query + " ORDER BY dropoff_scheduled_on, id", params).fetchall()

    def transition_booking(self, booking_id: int, status: str) -> dict:
        with transaction(self.conn):
            booking = self.get_booking(booking_id)
            effects = booking_transition_effects(booking["status"], status)
            now = _now()
            assignments = ["status = ?", "updated_at = ?"]
            params: list[Any] = [BookingStatus(status).value, now]
            if BookingEffect.STAMP_DROPPED_AT in effects:
                assignments.append("dropped_at = ?")
                params.append(now)
            if BookingEffect.STAMP_PICKED_UP_AT in effects:
                assignments.append("picked_up_at = ?")
                params.append(now)
            cur = self.conn.execute(
                "UPDATE bookings SET "
                + ", ".join(assignments)
                + " WHERE id = ? AND business_id = ? AND status = ?",
                params + [booking_id, self.business_id, booking["status"]],
            )
            if cur.rowcount == 0:
                raise InvalidTransitionError("Booking status changed concurrently")

            dumpster_id = booking["dumpster_id"]
            if dumpster_id is not None:
                if BookingEffect.MARK_DUMPSTER_DROPPED in effects:
                    self._move_held_dumpster(dumpster_id, DumpsterStatus.DROPPED)
                if BookingEffect.RELEASE_DUMPSTER in effects:
                    self._move_held_dumpster(dumpster_id, DumpsterStatus.AVAILABLE)
        return self.get_booking(booking_id)

    def _move_held_dumpster(self, dumpster_id: int, status: DumpsterStatus) -> None:
        self.conn.execute(
            f"UPDATE dumpsters SET status = ? WHERE id = ? AND status IN ({_placeholders(_HELD)})",
            (status.value, dumpster_id, *_HELD),
        )

    def assign_dumpster(self, booking_id: int, dumpster_id: int) -> dict:
        """Point a booking at a dumpster, releasing any previous one.

        All checks and writes share one transaction, so a failed assignment
        leaves both the booking and every dumpster untouched.
        """

        with transaction(self.conn):
            booking = self.get_booking(booking_id)
            if is_terminal_booking(booking["status"]):
                raise InvalidStateError(
                    f"Cannot assign a dumpster to a booking with status: {booking['status']}"
                )
            dumpster = self.get_dumpster(dumpster_id)
            if dumpster["status"] != DumpsterStatus.AVAILABLE.value:
                raise ResourceUnavailableError(
                    f"Dumpster {dumpster['unit_number']} is {dumpster['status']}"
                )
            snapshot = self._load_snapshot(booking["pricing_snapshot"], f"booking {booking_id}")
            if dumpster["size"] != snapshot.dumpster_size:
                raise SizeMismatchError(
                    f"Booking needs a {snapshot.dumpster_size} yard dumpster; "
                    f"{dumpster['unit_number']} is {dumpster['size']} yards"
                )

            if booking["dumpster_id"] is not None:
                self._move_held_dumpster(booking["dumpster_id"], DumpsterStatus.AVAILABLE)
            held_as = (
                DumpsterStatus.DROPPED
                if booking["status"] == BookingStatus.DROPPED.value
                else DumpsterStatus.RESERVED
            )
            cur = self.conn.execute(
                "UPDATE dumpsters SET status = ? WHERE id = ? AND business_id = ? AND status = ?",
                (held_as.value, dumpster_id, self.business_id, DumpsterStatus.AVAILABLE.value),
            )
            if cur.rowcount == 0:
                raise ResourceUnavailableError(f"Dumpster {dumpster['unit_number']} was just taken")
            self.conn.execute(
                "UPDATE bookings SET dumpster_id = ?, updated_at = ? WHERE id = ?",
                (dumpster_id, _now(), booking_id),
            )
        return self.get_booking(booking_id)

    # ------------------------------------------------------------------
    # Dumpster fleet
    # ------------------------------------------------------------------
    def create_dumpster(self, *, unit_number: str, size: int, notes: str | None = None) -> dict:
        if not unit_number:
            raise ValidationError("Unit number is required")
        if size <= 0:
            raise ValidationError("Dumpster size must be positive")
        try:
            cur = self.conn.execute(
                "INSERT INTO dumpsters(business_id, unit_number, size, status, notes) VALUES (?, ?, ?, ?, ?)",
                (self.business_id, unit_number, size, DumpsterStatus.AVAILABLE.value, notes),
            )
        except sqlite3.IntegrityError as exc:
            raise ValidationError(f"Unit number {unit_number} already exists") from exc
        return self.get_dumpster(cur.lastrowid)

    def get_dumpster(self, dumpster_id: int) -> dict:
        return self._get_row("dumpsters", dumpster_id, "Dumpster")

    def list_dumpsters(self, *, status: str | None = None, size: int | None = None) -> list[dict]:
        query = "SELECT * FROM dumpsters WHERE business_id = ?"
        params: list[Any] = [self.business_id]
        if status:
            query += " AND status = ?"
            params.append(status)
        if size is not None:
            query += " AND size = ?"
            params.append(size)
        return self.conn.execute(query + " ORDER BY size, unit_number", params).fetchall()

    def _live_booking_for(self, dumpster_id: int) -> dict | None:
        return self.conn.execute(
            f"""
            SELECT * FROM bookings
            WHERE dumpster_id = ? AND business_id = ? AND status NOT IN ({_placeholders(_TERMINAL)})
            """,
            (dumpster_id, self.business_id, *_TERMINAL),
        ).fetchone()

    def set_dumpster_status(self, dumpster_id: int, status: str) -> dict:
        try:
            target = DumpsterStatus(status)
        except ValueError as exc:
            raise ValidationError(f"Unknown dumpster status: {status}") from exc
        if target not in MANUAL_DUMPSTER_STATUSES:
            raise ValidationError("Reserved and dropped are set by booking operations only")
        with transaction(self.conn):
            self.get_dumpster(dumpster_id)
            booking = self._live_booking_for(dumpster_id)
            if booking:
                raise InvalidStateError(
                    f"Dumpster is assigned to booking {booking['id']} ({booking['status']})"
                )
            self.conn.execute(
                "UPDATE dumpsters SET status = ? WHERE id = ?", (target.value, dumpster_id)
            )
        return self.get_dumpster(dumpster_id)

    def repair_orphaned_reservations(self) -> list[dict]:
        """Return held dumpsters that no live booking references to the available pool."""

        with transaction(self.conn):
            orphans = self.conn.execute(
                f"""
                SELECT d.* FROM dumpsters d
                WHERE d.business_id = ? AND d.status IN ({_placeholders(_HELD)})
                  AND NOT EXISTS (
                    SELECT 1 FROM bookings b
                    WHERE b.dumpster_id = d.id AND b.status NOT IN ({_placeholders(_TERMINAL)})
                  )
                ORDER BY d.id
                """,
                (self.business_id, *_HELD, *_TERMINAL),
            ).fetchall()
            for dumpster in orphans:
                logger.warning(
                    "Dumpster %s is %s with no live booking; releasing it",
                    dumpster["unit_number"],
                    dumpster["status"],
                )
                self.conn.execute(
                    "UPDATE dumpsters SET status = ? WHERE id = ?",
                    (DumpsterStatus.AVAILABLE.value, dumpster["id"]),
                )
        return [self.get_dumpster(dumpster["id"]) for dumpster in orphans]

    # ------------------------------------------------------------------
    # Dump tickets & adjustments
    # ------------------------------------------------------------------
    def record_dump_ticket(
        self,
        booking_id: int,
        *,
        facility: str,
        ticket_number: str,
        net_tons: Decimal | str | float,
        ticket_datetime: str | None = None,
    ) -> dict:
        if not facility or not ticket_number:
            raise ValidationError("Facility and ticket number are required")
        tons = parse_tons(net_tons)
        booking = self.get_booking(booking_id)
        if booking["status"] == BookingStatus.CANCELLED.value:
            raise InvalidStateError("Cannot record a dump ticket for a cancelled booking")
        cur = self.conn.execute(
            """
            INSERT INTO dump_tickets(booking_id, facility, ticket_number, net_tons, ticket_datetime)
            VALUES (?, ?, ?, ?, ?)
            """,
            (booking_id, facility, ticket_number, str(tons), ticket_datetime or _now()),
        )
        return self.conn.execute(
            "SELECT * FROM dump_tickets WHERE id = ?", (cur.lastrowid,)
        ).fetchone()

    def list_dump_tickets(self, booking_id: int) -> list[dict]:
        self.get_booking(booking_id)
        return self.conn.execute(
            "SELECT * FROM dump_tickets WHERE booking_id = ? ORDER BY ticket_datetime, id",
            (booking_id,),
        ).fetchall()

    def create_adjustment(
        self,
        booking_id: int,
        *,
        kind: str,
        amount_cents: int,
        notes: str | None = None,
        metadata: dict | None = None,
        status: str = "pending",
    ) -> dict:
        try:
            kind = AdjustmentKind(kind).value
        except ValueError as exc:
            raise ValidationError(f"Unknown adjustment kind: {kind}") from exc
        if status not in ADJUSTMENT_STATUSES:
            raise ValidationError(f"Unknown adjustment status: {status}")
        if int(amount_cents) != amount_cents or amount_cents <= 0:
            raise ValidationError("Adjustment amount must be a positive number of cents")
        booking = self.get_booking(booking_id)
        cur = self.conn.execute(
            """
            INSERT INTO adjustments(business_id, booking_id, customer_id, kind, amount_cents, status, notes, metadata)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                self.business_id,
                booking_id,
                booking["customer_id"],
                kind,
                amount_cents,
                status,
                notes,
                json.dumps(metadata or {}, sort_keys=True),
            ),
        )
        return self._get_row("adjustments", cur.lastrowid, "Adjustment")

    def list_adjustments(
        self, *, booking_id: int | None = None, status: str | None = None
    ) -> list[dict]:
        query = "SELECT * FROM adjustments WHERE business_id = ?"
        params: list[Any] = [self.business_id]
        if booking_id is not None:
            query += " AND booking_id = ?"
            params.append(booking_id)
        if status:
            query += " AND status = ?"
            params.append(status)
        return self.conn.execute(query + " ORDER BY id", params).fetchall()

    def assess_tonnage_overage(self, booking_id: int) -> dict | None:
        """Bill tonnage recorded on dump tickets beyond the booking's included tons.

        Returns the new pending adjustment, or ``None`` when the load stayed
        within the included weight.
        """

        booking = self.get_booking(booking_id)
        tickets = self.list_dump_tickets(booking_id)
        if not tickets:
            raise ValidationError("No dump tickets recorded for this booking")
        existing = [
            row
            for row in self.list_adjustments(booking_id=booking_id)
            if row["kind"] == AdjustmentKind.TONNAGE_OVERAGE.value and row["status"] != "waived"
        ]
        if existing:
            raise InvalidStateError("Tonnage overage already assessed for this booking")

        snapshot = self._load_snapshot(booking["pricing_snapshot"], f"booking {booking_id}")
        actual_tons = sum((Decimal(ticket["net_tons"]) for ticket in tickets), Decimal("0"))
        charge = calculate_overage(
            snapshot, actual_tons, self._pricing_options(tax_exempt=snapshot.tax_exempt)
        )
        if charge.amount_cents <= 0:
            return None
        return self.create_adjustment(
            booking_id,
            kind=AdjustmentKind.TONNAGE_OVERAGE.value,
            amount_cents=charge.total_cents,
            notes=f"{charge.overage_tons} tons over the {snapshot.included_tons} included",
            metadata={
                "actual_tons": str(actual_tons),
                "overage_tons": str(charge.overage_tons),
                "line_items": [item.to_dict() for item in charge.line_items],
            },
        )

    # ------------------------------------------------------------------
    # Notifications
    # ------------------------------------------------------------------
    def list_notifications(self, *, recipient: str | None = None) -> list[dict]:
        query = "SELECT * FROM notifications WHERE business_id = ?"
        params: list[Any] = [self.business_id]
        if recipient:
            query += " AND recipient = ?"
            params.append(recipient)
        return self.conn.execute(query + " ORDER BY id", params).fetchall()
