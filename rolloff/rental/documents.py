"""Invoice documents attached to payment confirmations."""

from __future__ import annotations

from .pricing import PriceSnapshot, format_cents


def invoice_document_fields(
    invoice: dict, snapshot: PriceSnapshot | None, *, business_name: str
) -> dict:
    """Collect the fields an invoice document needs from stored records."""

    fields = {
        "business_name": business_name,
        "invoice_number": invoice["invoice_number"],
        "issued_at": invoice["issued_at"],
        "status": invoice["status"],
        "line_items": [
            {"label": item["label"], "amount_cents": item["amount_cents"]}
            for item in sorted(invoice.get("line_items", []), key=lambda row: row["sort_order"])
        ],
        "subtotal_cents": invoice["subtotal_cents"],
        "total_cents": invoice["total_cents"],
        "tax_amount_cents": 0,
        "processing_fee_cents": 0,
        "dumpster_size": None,
        "rental_days": None,
    }
    if snapshot is not None:
        fields.update(
            tax_amount_cents=snapshot.tax_amount_cents,
            processing_fee_cents=snapshot.processing_fee_cents,
            dumpster_size=snapshot.dumpster_size,
            rental_days=snapshot.rental_days,
        )
    return fields


def render_invoice_document(fields: dict) -> bytes:
    """Render invoice fields as a plain-text document."""

    width = 56
    lines = [
        fields["business_name"],
        f"Invoice #{fields['invoice_number']}",
        f"Issued: {fields['issued_at']}",
        f"Status: {fields['status'].upper()}",
        "",
    ]
    if fields.get("dumpster_size"):
        lines.append(
            f"{fields['dumpster_size']} yard dumpster, {fields['rental_days']} rental day(s)"
        )
        lines.append("")
    for item in fields["line_items"]:
        amount = format_cents(item["amount_cents"])
        lines.append(f"{item['label'][: width - len(amount) - 1]:<{width - len(amount)}}{amount}")
    lines.append("-" * width)
    total = format_cents(fields["total_cents"])
    lines.append(f"{'Total':<{width - len(total)}}{total}")
    return ("\n".join(lines) + "\n").encode("utf-8")
