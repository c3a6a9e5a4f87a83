"""Deferred side effects (emails, documents) produced by core operations.

Core operations never send anything themselves. They return a list of effect
values which :class:`EffectDispatcher` executes after the owning transaction
has committed. A failing effect is logged and reported, never raised.
"""

from __future__ import annotations

import json
import logging
import sqlite3
from dataclasses import dataclass
from typing import Callable, Iterable, Sequence

from .pricing import format_cents


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SendEmail:
    to: str
    subject: str
    body: str
    attach_invoice_id: int | None = None


@dataclass(frozen=True)
class Attachment:
    filename: str
    content_type: str
    content: bytes


class OutboxNotifier:
    """Notification sender that records outgoing mail in the ``notifications`` table."""

    def __init__(self, conn: sqlite3.Connection, business_id: str) -> None:
        self.conn = conn
        self.business_id = business_id

    def send(
        self,
        to: str,
        subject: str,
        body: str,
        attachments: Sequence[Attachment] = (),
    ) -> dict:
        cur = self.conn.execute(
            """
            INSERT INTO notifications(business_id, recipient, subject, content, attachments, status)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (
                self.business_id,
                to,
                subject,
                body,
                json.dumps(
                    [
                        {
                            "filename": item.filename,
                            "content_type": item.content_type,
                            "size": len(item.content),
                        }
                        for item in attachments
                    ]
                ),
                "sent",
            ),
        )
        return self.conn.execute(
            "SELECT * FROM notifications WHERE id = ?", (cur.lastrowid,)
        ).fetchone()


class EffectDispatcher:
    """Run effects one by one; a failure is logged and the rest still run."""

    def __init__(
        self,
        notifier,
        render_attachment: Callable[[int], Attachment] | None = None,
    ) -> None:
        self.notifier = notifier
        self.render_attachment = render_attachment

    def run(self, effects: Iterable[SendEmail]) -> list[dict]:
        results: list[dict] = []
        for effect in effects:
            try:
                attachments: list[Attachment] = []
                if effect.attach_invoice_id is not None and self.render_attachment:
                    attachments.append(self.render_attachment(effect.attach_invoice_id))
                self.notifier.send(effect.to, effect.subject, effect.body, attachments)
            except Exception as exc:
                logger.exception("Failed to send %r to %s", effect.subject, effect.to)
                results.append(
                    {"to": effect.to, "subject": effect.subject, "ok": False, "error": str(exc)}
                )
            else:
                results.append({"to": effect.to, "subject": effect.subject, "ok": True, "error": None})
        return results


# ----------------------------------------------------------------------
# Email templates
# ----------------------------------------------------------------------
def booking_request_received_email(
    *,
    business_email: str,
    customer_name: str,
    customer_email: str,
    customer_phone: str,
    quote: dict,
    total_cents: int,
    request_id: int,
    site_url: str,
) -> SendEmail:
    return SendEmail(
        to=business_email,
        subject=f"New Booking Request - {quote['dumpster_size']} Yard Dumpster",
        body=(
            f"{customer_name} ({customer_email}, {customer_phone}) requested a "
            f"{quote['dumpster_size']} yard dumpster for {quote['waste_type']}.\n"
            f"Dropoff: {quote['dropoff_date']}\nPickup: {quote['pickup_date']}\n"
            f"Quoted total: {format_cents(total_cents)}\n"
            f"Review: {site_url}/admin/requests/{request_id}\n"
        ),
    )


def booking_request_confirmation_email(
    *, customer_name: str, customer_email: str, quote: dict, total_cents: int
) -> SendEmail:
    return SendEmail(
        to=customer_email,
        subject="We Received Your Dumpster Rental Request",
        body=(
            f"Hi {customer_name},\n\nThanks for your request for a "
            f"{quote['dumpster_size']} yard dumpster from {quote['dropoff_date']} "
            f"to {quote['pickup_date']}. Your quoted total is "
            f"{format_cents(total_cents)}. We will email you once it is reviewed.\n"
        ),
    )


def booking_approved_email(
    *,
    customer_name: str,
    customer_email: str,
    invoice_number: str,
    quote: dict,
    total_cents: int,
    payment_url: str,
) -> SendEmail:
    return SendEmail(
        to=customer_email,
        subject=f"Your Dumpster Rental is Approved - Invoice #{invoice_number}",
        body=(
            f"Hi {customer_name},\n\nYour {quote['dumpster_size']} yard dumpster "
            f"rental from {quote['dropoff_date']} to {quote['pickup_date']} is "
            f"approved. Invoice #{invoice_number} totals {format_cents(total_cents)}.\n"
            f"Pay here to confirm your booking: {payment_url}\n"
        ),
    )


def booking_declined_email(
    *, customer_name: str, customer_email: str, quote: dict, reason: str | None
) -> SendEmail:
    body = (
        f"Hi {customer_name},\n\nUnfortunately we cannot fulfil your request for a "
        f"{quote['dumpster_size']} yard dumpster on {quote['dropoff_date']}.\n"
    )
    if reason:
        body += f"Reason: {reason}\n"
    return SendEmail(
        to=customer_email,
        subject="Update on Your Dumpster Rental Request",
        body=body,
    )


def payment_confirmation_email(
    *,
    customer_name: str,
    customer_email: str,
    invoice: dict,
    quote: dict,
) -> SendEmail:
    return SendEmail(
        to=customer_email,
        subject=f"Payment Confirmed - Invoice #{invoice['invoice_number']}",
        body=(
            f"Hi {customer_name},\n\nWe received your payment of "
            f"{format_cents(invoice['total_cents'])}. Your {quote['dumpster_size']} "
            f"yard dumpster is booked for {quote['dropoff_date']} with pickup on "
            f"{quote['pickup_date']}.\n"
        ),
        attach_invoice_id=invoice["id"],
    )
