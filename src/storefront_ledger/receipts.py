"""Plain-text bills and share links for recorded sales."""

from __future__ import annotations

import re
from datetime import datetime, tzinfo
from decimal import Decimal
from typing import Any, Mapping, Optional
from urllib.parse import quote

from . import log
from .analytics import effective_total
from .constants import PaymentMethod
from .data_manager import SaleRow, to_decimal

RULE = "-" * 30
ITEM_WIDTH = 10
QTY_WIDTH = 4
PRICE_WIDTH = 6
TOTAL_WIDTH = 7

# Characters encodeURIComponent leaves alone.
_URI_SAFE = "-_.!~*'()"

_PAYMENT_DISPLAY = {
    PaymentMethod.PAID: ("Cash", "Paid"),
    PaymentMethod.UPI: ("UPI", "Paid"),
    PaymentMethod.UNPAID: ("Not Paid", "Unpaid"),
}


def format_money(value: Any) -> str:
    amount = to_decimal(value)
    if amount == amount.to_integral_value():
        return str(int(amount))
    return f"{amount.quantize(Decimal('0.01'))}"


def generate_bill_text(
    sale: SaleRow,
    business_info: Optional[Mapping[str, Any]] = None,
    *,
    now: Optional[datetime] = None,
    tz: Optional[tzinfo] = None,
) -> str:
    """Render a sale as a monospace bill suitable for chat apps.

    Business details may sit at the top level of ``business_info`` or under a
    ``businessDetails`` key. A sale without a timestamp is dated ``now``.
    Dates are printed in ``tz`` when given, otherwise in the local zone so a
    bill shows the same calendar day the dashboard counts it under.
    """

    info = business_info or {}
    details = info.get("businessDetails") if isinstance(info.get("businessDetails"), Mapping) else info
    business_name = details.get("businessName") or "Business Name"
    contact_number = details.get("phone") or details.get("contactNumber") or "Business Number"

    moment = (sale.timestamp or now or datetime.now()).astimezone(tz)
    date_str = moment.strftime("%d-%m-%Y")
    time_str = moment.strftime("%H:%M")

    buyer_name = sale.buyer_name or "Buyer Name"
    buyer_number = sale.buyer_number or "Buyer Number: N/A"

    parts = [
        "```",
        business_name,
        contact_number,
        RULE,
        "",
        f"Bill_Id: {sale.sale_id or 'N/A'}",
        f"Date: {date_str}  Time: {time_str}",
        RULE,
        "",
        f"Buyer: {buyer_name}",
        f"Mobile: {buyer_number}",
        RULE,
        "",
        f"{'Item'.ljust(ITEM_WIDTH)} {'Qty'.rjust(QTY_WIDTH)} {'Price'.rjust(PRICE_WIDTH)} {'Total'.rjust(TOTAL_WIDTH)}",
        RULE,
    ]
    for line in sale.lines:
        line_total = to_decimal(line.line_total) or line.quantity * to_decimal(line.unit_price)
        parts.append(
            f"{(line.item_name or 'Item')[:ITEM_WIDTH].ljust(ITEM_WIDTH)} "
            f"{str(line.quantity).rjust(QTY_WIDTH)} "
            f"{format_money(line.unit_price).rjust(PRICE_WIDTH)} "
            f"{format_money(line_total).rjust(TOTAL_WIDTH)}"
        )

    method_display, status_display = _PAYMENT_DISPLAY[sale.payment_method]
    parts.extend(
        [
            RULE,
            f"{'Grand Total:'.ljust(25)} ₹{format_money(effective_total(sale))}",
            "",
            f"Payment: {method_display}",
            f"Status: {status_display}",
            RULE,
            "",
            "Thank you for shopping.",
            "```",
        ]
    )
    return "\n".join(parts)


def build_whatsapp_url(bill_text: str, phone_number: Optional[str]) -> str:
    """Build a ``whatsapp://send`` link carrying ``bill_text``.

    Non-digits are stripped from the number and ten-digit numbers get the
    ``91`` country prefix.

    Raises:
        ValueError: If no digits remain in ``phone_number``.
    """

    digits = re.sub(r"\D", "", phone_number or "")
    if not digits:
        log.warning("Share link requested without a buyer number")
        raise ValueError("No WhatsApp number available for this buyer")
    if len(digits) == 10:
        digits = "91" + digits
    return f"whatsapp://send?phone={digits}&text={quote(bill_text, safe=_URI_SAFE)}"
