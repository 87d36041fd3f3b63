from __future__ import annotations

import csv
import io
import random
import re
import time
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from config_constants import STATUS_COLORS, PAYMENT_STATUS_COLORS, DEFAULT_STATUS_COLOR
from services.utils import as_float, as_int

_PRICE_STRIP_RE = re.compile(r"[^\d.]")

ORDER_CSV_HEADERS = [
    "Order Number",
    "Customer Name",
    "Customer Phone",
    "Customer Email",
    "Customer Address",
    "Location",
    "Services",
    "Total Amount",
    "Pick & Drop Amount",
    "Discount",
    "Payment Status",
    "Order Status",
    "Pickup Date",
    "Pickup Time",
    "Notes",
    "Created Date",
    "Updated Date",
    "Promo Code",
    "Promo Discount",
]


def parse_price(raw) -> float:
    """
    Service prices are free text ("From Ksh 5,000", "300/kg").
    Everything but digits and dots is dropped; unparseable text is 0.
    """
    if isinstance(raw, (int, float)):
        return float(raw)
    cleaned = _PRICE_STRIP_RE.sub("", str(raw or ""))
    try:
        return float(cleaned)
    except ValueError:
        # "1.200.50" and friends: keep the leading number
        m = re.match(r"\d+(\.\d+)?", cleaned)
        return float(m.group(0)) if m else 0.0


def cart_subtotal(items: Iterable[Dict[str, Any]]) -> float:
    return sum(parse_price(i.get("price")) * as_int(i.get("quantity"), 1) for i in items)


def final_total(subtotal: float, pick_drop: float = 0, discount: float = 0, promo_discount: float = 0) -> float:
    pick_drop = pick_drop if pick_drop and pick_drop > 0 else 0
    discount = discount if discount and discount > 0 else 0
    promo_discount = promo_discount if promo_discount and promo_discount > 0 else 0
    return max(0.0, subtotal + pick_drop - discount - promo_discount)


def remaining_after_partial(total: float, partial_amount: float) -> float:
    return max(0.0, total - (partial_amount or 0))


def build_quote(
    items: List[Dict[str, Any]],
    pick_drop: float = 0,
    discount: float = 0,
    promo_discount: float = 0,
    payment_status: str = "unpaid",
    partial_amount: float = 0,
) -> Dict[str, Any]:
    subtotal = cart_subtotal(items)
    total = final_total(subtotal, pick_drop, discount, promo_discount)
    quote = {
        "subtotal": subtotal,
        "pickDropAmount": pick_drop if pick_drop > 0 else 0,
        "discount": discount if discount > 0 else 0,
        "promoDiscount": promo_discount if promo_discount > 0 else 0,
        "finalTotal": total,
        "paymentStatus": payment_status,
        "partialAmount": 0,
        "remainingAmount": 0,
    }
    if payment_status == "partial":
        quote["partialAmount"] = partial_amount
        quote["remainingAmount"] = remaining_after_partial(total, partial_amount)
    return quote


def generate_order_number(now_ms: Optional[int] = None) -> str:
    ms = now_ms if now_ms is not None else int(time.time() * 1000)
    return f"ORD-{str(ms)[-6:]}-{random.randint(0, 999):03d}"


def status_color(status: Optional[str]) -> str:
    return STATUS_COLORS.get(status or "", DEFAULT_STATUS_COLOR)


def payment_status_color(status: Optional[str]) -> str:
    return PAYMENT_STATUS_COLORS.get(status or "unpaid", DEFAULT_STATUS_COLOR)


def _fmt_date(value) -> str:
    if isinstance(value, datetime):
        return value.strftime("%Y-%m-%d")
    return str(value or "")


def _fmt_number(value) -> str:
    num = as_float(value)
    return str(int(num)) if num == int(num) else str(num)


def services_summary(services: Iterable[Dict[str, Any]]) -> str:
    return "; ".join(
        f"{s.get('serviceName', '')} ({as_int(s.get('quantity'), 1)}x Ksh{s.get('price', '')})"
        for s in services or []
    )


def order_csv_row(order: Dict[str, Any]) -> List[str]:
    customer = order.get("customer") or {}
    promo_discount = as_float(order.get("promoDiscount"))
    return [
        order.get("orderNumber", ""),
        customer.get("name", ""),
        customer.get("phone", ""),
        customer.get("email") or "",
        customer.get("address") or "",
        order.get("location", ""),
        services_summary(order.get("services")),
        _fmt_number(order.get("totalAmount")),
        _fmt_number(order.get("pickDropAmount")),
        _fmt_number(order.get("discount")),
        order.get("paymentStatus") or "unpaid",
        order.get("status", ""),
        _fmt_date(order.get("pickupDate")),
        order.get("pickupTime") or "",
        order.get("notes") or "",
        _fmt_date(order.get("createdAt")),
        _fmt_date(order.get("updatedAt")),
        order.get("promoCode") or "-",
        f"Ksh {_fmt_number(promo_discount)}" if promo_discount else "-",
    ]


def orders_to_csv(orders: Iterable[Dict[str, Any]]) -> bytes:
    buf = io.StringIO()
    writer = csv.writer(buf, quoting=csv.QUOTE_ALL)
    writer.writerow(ORDER_CSV_HEADERS)
    for order in orders:
        writer.writerow(order_csv_row(order))
    return buf.getvalue().encode("utf-8")
