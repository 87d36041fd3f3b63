from __future__ import annotations

import io
from datetime import datetime
from typing import Any, Dict, List

from reportlab.lib import colors
from reportlab.lib.pagesizes import A4
from reportlab.lib.styles import getSampleStyleSheet
from reportlab.platypus import Paragraph, SimpleDocTemplate, Spacer, Table, TableStyle

from config_constants import BUSINESS_NAME, CUSTOMER_CARE_PHONE
from services.order_pricing import parse_price
from services.utils import as_float, as_int


def _ksh(value) -> str:
    return f"Ksh {as_float(value):,.2f}"


def build_receipt_pdf(order: Dict[str, Any]) -> bytes:
    """A4 receipt for one order: customer block, service lines, totals, payment state."""
    buf = io.BytesIO()
    doc = SimpleDocTemplate(buf, pagesize=A4, leftMargin=36, rightMargin=36, topMargin=50, bottomMargin=40)
    styles = getSampleStyleSheet()
    elements: List[Any] = []

    customer = order.get("customer") or {}
    created = order.get("createdAt")
    created_txt = created.strftime("%Y-%m-%d %H:%M") if isinstance(created, datetime) else str(created or "")

    elements.append(Paragraph(f"{BUSINESS_NAME} - Receipt", styles["Title"]))
    elements.append(Paragraph(f"Order #{order.get('orderNumber', '')}", styles["Heading2"]))
    elements.append(Paragraph(f"Date: {created_txt}", styles["Normal"]))
    elements.append(Spacer(1, 8))
    elements.append(Paragraph(f"Customer: {customer.get('name') or '-'}", styles["Normal"]))
    elements.append(Paragraph(f"Phone: {customer.get('phone') or '-'}", styles["Normal"]))
    if customer.get("address"):
        elements.append(Paragraph(f"Address: {customer['address']}", styles["Normal"]))
    elements.append(Spacer(1, 12))

    header = ["#", "Service", "Qty", "Unit Price", "Line Total"]
    data: List[List[Any]] = [header]
    for i, s in enumerate(order.get("services") or [], start=1):
        qty = as_int(s.get("quantity"), 1)
        price = parse_price(s.get("price"))
        data.append([i, s.get("serviceName") or "-", qty, _ksh(price), _ksh(price * qty)])
    if len(data) == 1:
        data.append(["", "No services", "", "", ""])

    lines = Table(data, colWidths=[25, 230, 40, 110, 110], repeatRows=1)
    lines.setStyle(TableStyle([
        ("GRID", (0, 0), (-1, -1), 0.3, colors.grey),
        ("FONTSIZE", (0, 0), (-1, -1), 9),
        ("VALIGN", (0, 0), (-1, -1), "MIDDLE"),
        ("BACKGROUND", (0, 0), (-1, 0), colors.HexColor("#e5ecff")),
        ("FONTNAME", (0, 0), (-1, 0), "Helvetica-Bold"),
        ("ALIGN", (2, 1), (-1, -1), "RIGHT"),
    ]))
    elements.append(lines)
    elements.append(Spacer(1, 12))

    total = as_float(order.get("totalAmount"))
    remaining = order.get("remainingBalance")
    balance = as_float(remaining) if remaining is not None else total
    paid = as_float(order.get("amountPaid")) or max(0.0, total - balance)
    totals = [
        ["Pick & Drop", _ksh(order.get("pickDropAmount"))],
        ["Discount", _ksh(order.get("discount"))],
        [f"Promo Discount ({order.get('promoCode') or '-'})", _ksh(order.get("promoDiscount"))],
        ["Total", _ksh(total)],
        ["Amount Paid", _ksh(paid)],
        ["Balance", _ksh(balance)],
        ["Payment Status", (order.get("paymentStatus") or "unpaid").upper()],
    ]
    summary = Table(totals, colWidths=[335, 180])
    summary.setStyle(TableStyle([
        ("FONTSIZE", (0, 0), (-1, -1), 9),
        ("ALIGN", (1, 0), (1, -1), "RIGHT"),
        ("LINEABOVE", (0, 3), (-1, 3), 0.5, colors.black),
        ("FONTNAME", (0, 3), (-1, 3), "Helvetica-Bold"),
        ("BACKGROUND", (0, 6), (-1, 6), colors.whitesmoke),
    ]))
    elements.append(summary)
    elements.append(Spacer(1, 18))
    elements.append(Paragraph(f"Thank you for choosing {BUSINESS_NAME}. Customer care: {CUSTOMER_CARE_PHONE}", styles["Italic"]))

    def _footer(canvas, doc_obj):
        canvas.saveState()
        pw, _ = doc_obj.pagesize
        canvas.setFont("Helvetica", 8)
        canvas.drawRightString(pw - 36, 20, "Generated: " + datetime.now().strftime("%Y-%m-%d %H:%M"))
        canvas.restoreState()

    doc.build(elements, onFirstPage=_footer, onLaterPages=_footer)
    pdf_bytes = buf.getvalue()
    buf.close()
    return pdf_bytes
