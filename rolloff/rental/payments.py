"""Payment gateway adapter: checkout sessions and signed provider callbacks."""

from __future__ import annotations

import hashlib
import hmac
import json
import logging
import secrets
import time
from dataclasses import dataclass
from typing import Callable
from urllib.parse import urlencode

from .errors import SignatureVerificationError, ValidationError


logger = logging.getLogger(__name__)

PAYMENT_SUCCEEDED_EVENTS = frozenset({"checkout.session.completed"})


@dataclass(frozen=True)
class PaymentSession:
    session_id: str
    url: str
    token: str


@dataclass(frozen=True)
class PaymentConfirmation:
    invoice_id: int
    payment_id: str
    amount_cents: int
    event_type: str


class PaymentGateway:
    """Hosted-checkout gateway with HMAC-SHA256 signed callbacks.

    Callback requests carry a header of the form ``t=<unix time>,v1=<hex>``
    where the digest is computed over ``"<t>.<raw body>"`` with the shared
    webhook secret.
    """

    def __init__(
        self,
        secret: str,
        site_url: str,
        *,
        tolerance_seconds: int = 300,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if not secret:
            raise ValueError("A webhook secret is required")
        self.secret = secret.encode()
        self.site_url = site_url.rstrip("/")
        self.tolerance_seconds = tolerance_seconds
        self.clock = clock

    def _digest(self, message: bytes) -> str:
        return hmac.new(self.secret, message, hashlib.sha256).hexdigest()

    # ------------------------------------------------------------------
    # Outbound: checkout sessions
    # ------------------------------------------------------------------
    def _session_token(self, invoice_id: int, session_id: str, amount_cents: int) -> str:
        return self._digest(f"{invoice_id}.{session_id}.{amount_cents}".encode())

    def create_payment_session(self, invoice: dict) -> PaymentSession:
        """Open a checkout session for the invoice's full total.

        The token in the URL signs the invoice id, the session id and the
        amount due, so a confirmation claiming any other amount fails.
        """

        session_id = f"cs_{secrets.token_hex(12)}"
        token = self._session_token(invoice["id"], session_id, invoice["total_cents"])
        query = urlencode({"invoice": invoice["id"], "session": session_id, "token": token})
        return PaymentSession(session_id=session_id, url=f"{self.site_url}/pay?{query}", token=token)

    def verify_session_token(
        self, invoice_id: int, session_id: str, token: str, amount_cents: int
    ) -> None:
        expected = self._session_token(invoice_id, session_id, amount_cents)
        if not isinstance(token, str) or not hmac.compare_digest(expected.encode(), token.encode()):
            raise SignatureVerificationError("Checkout session token is not valid")

    # ------------------------------------------------------------------
    # Inbound: provider callbacks
    # ------------------------------------------------------------------
    def sign_callback(self, body: bytes, timestamp: int | None = None) -> str:
        timestamp = int(self.clock()) if timestamp is None else timestamp
        return f"t={timestamp},v1={self._digest(str(timestamp).encode() + b'.' + body)}"

    def verify_callback(self, body: bytes, signature_header: str | None) -> None:
        if not signature_header:
            raise SignatureVerificationError("Missing signature header")
        parts: dict[str, list[str]] = {}
        for element in signature_header.split(","):
            key, _, value = element.strip().partition("=")
            parts.setdefault(key, []).append(value)
        try:
            timestamp = int(parts["t"][0])
        except (KeyError, IndexError, ValueError):
            raise SignatureVerificationError("Signature header has no timestamp") from None
        if abs(self.clock() - timestamp) > self.tolerance_seconds:
            raise SignatureVerificationError("Signature timestamp outside tolerance")
        expected = self._digest(str(timestamp).encode() + b"." + body)
        if not any(hmac.compare_digest(expected, candidate) for candidate in parts.get("v1", [])):
            raise SignatureVerificationError("No matching signature found")

    def parse_callback(self, body: bytes, signature_header: str | None) -> PaymentConfirmation | None:
        """Verify and decode a callback.

        Returns ``None`` for authentic events that do not confirm a payment.
        """

        self.verify_callback(body, signature_header)
        try:
            event = json.loads(body)
            event_type = event["type"]
            data = event.get("data") or {}
        except (ValueError, KeyError, TypeError) as exc:
            raise ValidationError("Malformed payment callback") from exc
        if event_type not in PAYMENT_SUCCEEDED_EVENTS:
            logger.info("Ignoring payment callback of type %s", event_type)
            return None
        try:
            return PaymentConfirmation(
                invoice_id=int(data["invoice_id"]),
                payment_id=str(data["payment_id"]),
                amount_cents=int(data["amount_cents"]),
                event_type=event_type,
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise ValidationError("Payment callback is missing invoice or payment fields") from exc
