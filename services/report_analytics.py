"""
Business reports for the admin dashboard.

Everything is computed in Python over the documents fetched for the selected
window; nothing is pre-aggregated or cached.
"""
from __future__ import annotations

import csv
import io
import math
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional, Tuple

from dateutil.relativedelta import relativedelta

from config_constants import DEFAULT_REPORT_RANGE, REPORT_RANGES
from db import db
from services.order_pricing import parse_price
from services.utils import as_float, as_int, serialize

orders_col = db["orders"]
customers_col = db["customers"]
expenses_col = db["expenses"]
promotions_col = db["promotions"]
mpesa_txn_col = db["mpesa_transactions"]


def resolve_range(raw) -> int:
    days = as_int(raw, DEFAULT_REPORT_RANGE)
    return days if days in REPORT_RANGES else DEFAULT_REPORT_RANGE


def _sum(rows: Iterable[Dict[str, Any]], field: str) -> float:
    return sum(as_float(r.get(field)) for r in rows)


def _avg(total: float, count: int) -> float:
    return total / count if count else 0.0


def _pct(part: float, whole: float) -> float:
    return part / whole * 100 if whole else 0.0


def last_month_labels(now: datetime, count: int = 6) -> List[str]:
    """`Mon YYYY` labels for the last `count` calendar months, oldest first."""
    first = now.replace(day=1)
    return [(first - relativedelta(months=i)).strftime("%b %Y") for i in range(count - 1, -1, -1)]


def _month_label(dt: Optional[datetime]) -> Optional[str]:
    return dt.strftime("%b %Y") if isinstance(dt, datetime) else None


def week_of_month_key(dt: datetime) -> str:
    # weeks start on Sunday; week 1 holds the 1st of the month
    first_weekday = (dt.replace(day=1).weekday() + 1) % 7
    return f"{dt.year}-W{math.ceil((dt.day + first_weekday) / 7)}"


def _txn_date(txn: Dict[str, Any]) -> Optional[datetime]:
    return txn.get("transactionDate") or txn.get("createdAt")


def _days_since(dt: Optional[datetime], now: datetime) -> int:
    return int((now - dt).total_seconds() // 86400) if isinstance(dt, datetime) else 0


# ---------------------------
# Fetch
# ---------------------------
def fetch_window(start: datetime, end: datetime) -> Dict[str, List[Dict[str, Any]]]:
    window = {"$gte": start, "$lte": end}
    return {
        "orders": list(orders_col.find({"createdAt": window})),
        "customers": list(customers_col.find({})),
        "expenses": list(expenses_col.find({"date": window})),
        "promotions": list(promotions_col.find({"createdAt": window})),
        "transactions": list(mpesa_txn_col.find({"$or": [
            {"transactionDate": window},
            {"transactionDate": None, "createdAt": window},
        ]})),
    }


# ---------------------------
# Sections
# ---------------------------
def sales_report(orders: List[Dict[str, Any]], months: List[str]) -> Dict[str, Any]:
    total_revenue = _sum(orders, "totalAmount")
    pick_drop = _sum(orders, "pickDropAmount")
    discounts = _sum(orders, "discount")

    revenue_by_month = []
    for month in months:
        rows = [o for o in orders if _month_label(o.get("createdAt")) == month]
        revenue_by_month.append({
            "month": month,
            "revenue": _sum(rows, "totalAmount"),
            "orders": len(rows),
            "pickDrop": _sum(rows, "pickDropAmount"),
            "discounts": _sum(rows, "discount"),
        })

    by_status: Dict[str, List[float]] = {}
    for o in orders:
        stats = by_status.setdefault(o.get("status") or "pending", [0, 0.0])
        stats[0] += 1
        stats[1] += as_float(o.get("totalAmount"))

    return {
        "totalRevenue": total_revenue,
        "totalOrders": len(orders),
        "averageOrderValue": _avg(total_revenue, len(orders)),
        "grossRevenue": total_revenue + discounts - pick_drop,
        "totalPickDropAmount": pick_drop,
        "totalDiscounts": discounts,
        "revenueByMonth": revenue_by_month,
        "ordersByStatus": [
            {"status": s, "count": c, "revenue": r, "averageValue": _avg(r, c)}
            for s, (c, r) in by_status.items()
        ],
    }


def customer_report(orders: List[Dict[str, Any]], customers: List[Dict[str, Any]], now: datetime) -> Dict[str, Any]:
    stats: Dict[str, Dict[str, Any]] = {}
    for o in orders:
        customer = o.get("customer") or {}
        phone = customer.get("phone")
        if not phone:
            continue
        created = o.get("createdAt") or now
        row = stats.setdefault(phone, {
            "name": customer.get("name") or "Unknown",
            "email": customer.get("email") or "",
            "phone": phone,
            "totalSpent": 0.0,
            "orderCount": 0,
            "firstOrderDate": created,
            "lastOrderDate": created,
        })
        row["totalSpent"] += as_float(o.get("totalAmount"))
        row["orderCount"] += 1
        row["firstOrderDate"] = min(row["firstOrderDate"], created)
        row["lastOrderDate"] = max(row["lastOrderDate"], created)
    for row in stats.values():
        row["averageOrderValue"] = _avg(row["totalSpent"], row["orderCount"])

    total = len(stats)
    week_ago = now - timedelta(days=7)
    status_by_phone = {c.get("phone"): c.get("status") or "active" for c in customers}
    status_counts: Dict[str, int] = {}
    for phone in stats:
        status = status_by_phone.get(phone, "active")
        status_counts[status] = status_counts.get(status, 0) + 1
    repeat = sum(1 for r in stats.values() if r["orderCount"] > 1)

    return {
        "totalCustomers": total,
        "newCustomers": sum(1 for r in stats.values() if r["firstOrderDate"] >= week_ago),
        "topCustomers": sorted(stats.values(), key=lambda r: r["totalSpent"], reverse=True)[:10],
        "customerStatus": [{"status": s, "count": c} for s, c in status_counts.items()],
        "customerRetentionRate": _pct(repeat, total),
        "repeatCustomers": repeat,
    }


def expense_report(expenses: List[Dict[str, Any]], months: List[str]) -> Dict[str, Any]:
    by_category: Dict[str, List[float]] = {}
    for e in expenses:
        row = by_category.setdefault(e.get("category") or "other", [0.0, 0])
        row[0] += as_float(e.get("amount"))
        row[1] += 1

    monthly = []
    for month in months:
        rows = [e for e in expenses if _month_label(e.get("date")) == month]
        amount = _sum(rows, "amount")
        monthly.append({"month": month, "amount": amount, "count": len(rows), "averageAmount": _avg(amount, len(rows))})

    return {
        "totalExpenses": _sum(expenses, "amount"),
        "expensesByCategory": [
            {"category": c, "amount": a, "count": n, "averageAmount": _avg(a, n)}
            for c, (a, n) in by_category.items()
        ],
        "monthlyExpenses": monthly,
    }


def service_report(orders: List[Dict[str, Any]], total_revenue: float) -> Dict[str, Any]:
    stats: Dict[str, Dict[str, Any]] = {}
    for o in orders:
        for s in o.get("services") or []:
            name = s.get("serviceName") or "Unknown"
            qty = as_int(s.get("quantity"))
            row = stats.setdefault(name, {"name": name, "revenue": 0.0, "orderCount": 0, "quantity": 0})
            row["revenue"] += parse_price(s.get("price")) * qty
            row["orderCount"] += 1
            row["quantity"] += qty
    for row in stats.values():
        row["averagePrice"] = _avg(row["revenue"], row["quantity"])

    ranked = sorted(stats.values(), key=lambda r: r["revenue"], reverse=True)
    return {
        "topServices": ranked[:15],
        "servicePerformance": [{**r, "percentage": _pct(r["revenue"], total_revenue)} for r in ranked],
    }


def payment_status_breakdown(orders: List[Dict[str, Any]]) -> Dict[str, Any]:
    details: Dict[str, Dict[str, Any]] = {}
    for o in orders:
        status = o.get("paymentStatus") or "unpaid"
        row = details.setdefault(status, {"count": 0, "amount": 0.0, "averageAmount": 0.0, "orders": []})
        row["count"] += 1
        row["amount"] += as_float(o.get("totalAmount"))
        row["orders"].append({
            "orderNumber": o.get("orderNumber"),
            "amount": as_float(o.get("totalAmount")),
            "customerName": (o.get("customer") or {}).get("name") or "Unknown",
            "createdAt": o.get("createdAt"),
        })
    for row in details.values():
        row["averageAmount"] = _avg(row["amount"], row["count"])
    return {
        "paymentStatusPie": [{"status": s, "count": d["count"]} for s, d in details.items()],
        "paymentStatusAmountPie": [{"status": s, "amount": d["amount"]} for s, d in details.items()],
        "paymentStatusDetails": details,
    }


def order_trends(orders: List[Dict[str, Any]]) -> Dict[str, Dict[str, int]]:
    daily: Dict[str, int] = {}
    weekly: Dict[str, int] = {}
    monthly: Dict[str, int] = {}
    for o in orders:
        dt = o.get("createdAt")
        if not isinstance(dt, datetime):
            continue
        for bucket, key in (
            (daily, dt.strftime("%Y-%m-%d")),
            (weekly, week_of_month_key(dt)),
            (monthly, dt.strftime("%Y-%m")),
        ):
            bucket[key] = bucket.get(key, 0) + 1
    return {"dailyOrders": daily, "weeklyOrders": weekly, "monthlyOrders": monthly}


def promotion_report(promotions: List[Dict[str, Any]]) -> Dict[str, Any]:
    by_type: Dict[str, int] = {}
    for p in promotions:
        t = p.get("discountType") or "general"
        by_type[t] = by_type.get(t, 0) + 1
    return {
        "totalPromotions": len(promotions),
        "activePromotions": sum(1 for p in promotions if p.get("status") == "active"),
        "promotionsByType": by_type,
        "totalUsage": sum(as_int(p.get("usageCount")) for p in promotions),
        "promotions": [
            {
                "title": p.get("title"),
                "promoCode": p.get("promoCode"),
                "discount": as_float(p.get("discount")),
                "discountType": p.get("discountType"),
                "status": p.get("status"),
                "usageCount": as_int(p.get("usageCount")),
                "startDate": p.get("startDate"),
                "endDate": p.get("endDate"),
                "createdAt": p.get("createdAt"),
            }
            for p in promotions
        ],
    }


def classify_transactions(
    transactions: List[Dict[str, Any]], orders: List[Dict[str, Any]]
) -> Tuple[List[Dict[str, Any]], List[Dict[str, Any]], List[Dict[str, Any]]]:
    """(fully paid, partial, unpaid). Partial is a subset of fully paid."""
    order_status = {o["_id"]: o.get("paymentStatus") for o in orders}
    fully_paid = [t for t in transactions if t.get("isConnectedToOrder") and t.get("confirmationStatus") == "confirmed"]
    partial = [t for t in fully_paid if t.get("connectedOrderId") and order_status.get(t["connectedOrderId"]) == "partial"]
    unpaid = [
        t for t in transactions
        if not t.get("isConnectedToOrder") or t.get("confirmationStatus") in ("pending", "rejected")
    ]
    return fully_paid, partial, unpaid


def mpesa_report(transactions: List[Dict[str, Any]], orders: List[Dict[str, Any]], months: List[str]) -> Dict[str, Any]:
    fully_paid, partial, unpaid = classify_transactions(transactions, orders)
    total_amount = _sum(transactions, "amountPaid")
    amounts = {
        "fully_paid": _sum(fully_paid, "amountPaid"),
        "partial": _sum(partial, "amountPaid"),
        "unpaid": _sum(unpaid, "amountPaid"),
    }
    counts = {"fully_paid": len(fully_paid), "partial": len(partial), "unpaid": len(unpaid)}

    monthly = []
    for month in months:
        rows = [t for t in transactions if _month_label(_txn_date(t)) == month]
        amount = _sum(rows, "amountPaid")
        monthly.append({"month": month, "amount": amount, "count": len(rows), "averageAmount": _avg(amount, len(rows))})

    confirmation: Dict[str, int] = {}
    for t in transactions:
        s = t.get("confirmationStatus") or "pending"
        confirmation[s] = confirmation.get(s, 0) + 1

    return {
        "totalTransactions": len(transactions),
        "totalAmount": total_amount,
        "averageTransactionAmount": _avg(total_amount, len(transactions)),
        "fullyPaidCount": counts["fully_paid"],
        "partialCount": counts["partial"],
        "unpaidCount": counts["unpaid"],
        "fullyPaidAmount": amounts["fully_paid"],
        "partialAmount": amounts["partial"],
        "unpaidAmount": amounts["unpaid"],
        "monthlyTransactions": monthly,
        "statusDistribution": [{"status": s, "count": c} for s, c in counts.items()],
        "statusAmountDistribution": [{"status": s, "amount": a} for s, a in amounts.items()],
        "confirmationStatusBreakdown": [{"status": s, "count": c} for s, c in confirmation.items()],
        "connectedTransactionsRate": _pct(len(fully_paid), len(transactions)),
    }


def _service_names(order: Dict[str, Any]) -> str:
    return ", ".join(s.get("serviceName") or "" for s in order.get("services") or []) or "No services"


def _order_row(o: Dict[str, Any]) -> Dict[str, Any]:
    customer = o.get("customer") or {}
    total = as_float(o.get("totalAmount"))
    discount = as_float(o.get("discount"))
    return {
        "id": str(o["_id"]),
        "orderNumber": o.get("orderNumber") or "N/A",
        "customerName": customer.get("name") or "Unknown Customer",
        "customerEmail": customer.get("email") or "N/A",
        "customerPhone": customer.get("phone") or "N/A",
        "status": o.get("status") or "pending",
        "paymentStatus": o.get("paymentStatus") or "unpaid",
        "totalAmount": total,
        "pickDropAmount": as_float(o.get("pickDropAmount")),
        "discount": discount,
        "netAmount": total - discount,
        "servicesCount": len(o.get("services") or []),
        "servicesNames": _service_names(o),
        "createdAt": o.get("createdAt"),
        "updatedAt": o.get("updatedAt"),
    }


def _unpaid_row(o: Dict[str, Any], now: datetime) -> Dict[str, Any]:
    customer = o.get("customer") or {}
    total = as_float(o.get("totalAmount"))
    paid = as_float(o.get("amountPaid"))
    return {
        "id": str(o["_id"]),
        "orderNumber": o.get("orderNumber") or "N/A",
        "customerName": customer.get("name") or "Unknown Customer",
        "customerPhone": customer.get("phone") or "N/A",
        "status": o.get("status") or "pending",
        "paymentStatus": o.get("paymentStatus") or "unpaid",
        "totalAmount": total,
        "amountPaid": paid,
        "amountDue": total - paid,
        "servicesNames": _service_names(o),
        "daysPending": _days_since(o.get("createdAt"), now),
        "createdAt": o.get("createdAt"),
    }


def _txn_row(t: Dict[str, Any], now: datetime) -> Dict[str, Any]:
    when = _txn_date(t)
    return {
        "id": str(t["_id"]),
        "transactionId": t.get("transactionId") or "",
        "mpesaReceiptNumber": t.get("mpesaReceiptNumber") or "",
        "customerName": t.get("customerName") or "",
        "phoneNumber": t.get("phoneNumber") or "",
        "amountPaid": as_float(t.get("amountPaid")),
        "transactionType": t.get("transactionType") or "",
        "billRefNumber": t.get("billRefNumber") or "",
        "isConnectedToOrder": bool(t.get("isConnectedToOrder")),
        "connectedOrderId": str(t["connectedOrderId"]) if t.get("connectedOrderId") else "",
        "confirmationStatus": t.get("confirmationStatus") or "pending",
        "pendingOrderId": str(t["pendingOrderId"]) if t.get("pendingOrderId") else "",
        "confirmedCustomerName": t.get("confirmedCustomerName") or "",
        "confirmationNotes": t.get("confirmationNotes") or "",
        "transactionDate": when,
        "daysPending": _days_since(when, now),
    }


def _newest_first(rows: List[Dict[str, Any]], key: str) -> List[Dict[str, Any]]:
    return sorted(rows, key=lambda r: r.get(key) or datetime.min, reverse=True)


def detailed_data(data: Dict[str, List[Dict[str, Any]]], now: datetime) -> Dict[str, Any]:
    orders = data["orders"]
    transactions = data["transactions"]
    fully_paid, partial, unpaid = classify_transactions(transactions, orders)

    unpaid_orders = sorted(
        (_unpaid_row(o, now) for o in orders if o.get("paymentStatus") in ("unpaid", "partial")),
        key=lambda r: r["daysPending"],
        reverse=True,
    )
    expenses = [
        {
            "id": str(e["_id"]),
            "title": e.get("title") or "",
            "description": e.get("description") or "No description",
            "category": e.get("category"),
            "amount": as_float(e.get("amount")),
            "date": e.get("date"),
            "createdAt": e.get("createdAt"),
        }
        for e in data["expenses"]
    ]
    return {
        "expensesList": _newest_first(expenses, "date"),
        "ordersList": _newest_first([_order_row(o) for o in orders], "createdAt"),
        "unpaidOrdersList": unpaid_orders,
        "totalUnpaidAmount": sum(r["amountDue"] for r in unpaid_orders),
        "unpaidOrdersCount": len(unpaid_orders),
        "mpesaTransactionsList": _newest_first([_txn_row(t, now) for t in transactions], "transactionDate"),
        "fullyPaidMpesaList": _newest_first([_txn_row(t, now) for t in fully_paid], "transactionDate"),
        "partialMpesaList": _newest_first([_txn_row(t, now) for t in partial], "transactionDate"),
        "unpaidMpesaList": _newest_first([_txn_row(t, now) for t in unpaid], "transactionDate"),
        "totalMpesaAmount": _sum(transactions, "amountPaid"),
        "totalMpesaTransactions": len(transactions),
    }


def build_report(range_days=DEFAULT_REPORT_RANGE, now: Optional[datetime] = None, serialized: bool = True) -> Dict[str, Any]:
    now = now or datetime.utcnow()
    days = resolve_range(range_days)
    start = now - timedelta(days=days)
    data = fetch_window(start, now)
    months = last_month_labels(now)

    sales = sales_report(data["orders"], months)
    customers = customer_report(data["orders"], data["customers"], now)
    expenses = expense_report(data["expenses"], months)
    total_revenue = sales["totalRevenue"]
    total_expenses = expenses["totalExpenses"]

    report = {
        "range": days,
        "startDate": start,
        "endDate": now,
        "salesReport": sales,
        "customerReport": customers,
        "expenseReport": expenses,
        "serviceReport": service_report(data["orders"], total_revenue),
        **payment_status_breakdown(data["orders"]),
        "orderTrends": order_trends(data["orders"]),
        "financialMetrics": {
            "grossRevenue": sales["grossRevenue"],
            "totalRevenue": total_revenue,
            "totalExpenses": total_expenses,
            "netProfit": total_revenue - total_expenses,
            "profitMargin": _pct(total_revenue - total_expenses, total_revenue),
            "expenseRatio": _pct(total_expenses, total_revenue),
            "totalPickDropAmount": sales["totalPickDropAmount"],
            "totalDiscounts": sales["totalDiscounts"],
            "averageOrderValue": sales["averageOrderValue"],
            "customerRetentionRate": customers["customerRetentionRate"],
            "repeatCustomers": customers["repeatCustomers"],
            "totalCustomers": customers["totalCustomers"],
        },
        "promotionReport": promotion_report(data["promotions"]),
        "mpesaReport": mpesa_report(data["transactions"], data["orders"], months),
        "detailedData": detailed_data(data, now),
    }
    return serialize(report) if serialized else report


# ---------------------------
# CSV
# ---------------------------
REPORT_CSV_SECTIONS = {
    "orders": (
        "ordersList",
        ["Order Number", "Customer Name", "Customer Phone", "Status", "Payment Status",
         "Total Amount", "Pick & Drop", "Discount", "Net Amount", "Services", "Created"],
        ["orderNumber", "customerName", "customerPhone", "status", "paymentStatus",
         "totalAmount", "pickDropAmount", "discount", "netAmount", "servicesNames", "createdAt"],
    ),
    "unpaid": (
        "unpaidOrdersList",
        ["Order Number", "Customer Name", "Customer Phone", "Payment Status", "Total Amount",
         "Amount Paid", "Amount Due", "Days Pending", "Services", "Created"],
        ["orderNumber", "customerName", "customerPhone", "paymentStatus", "totalAmount",
         "amountPaid", "amountDue", "daysPending", "servicesNames", "createdAt"],
    ),
    "mpesa": (
        "mpesaTransactionsList",
        ["Transaction ID", "Receipt", "Customer Name", "Phone", "Amount", "Type", "Bill Ref",
         "Connected", "Confirmation Status", "Transaction Date"],
        ["transactionId", "mpesaReceiptNumber", "customerName", "phoneNumber", "amountPaid",
         "transactionType", "billRefNumber", "isConnectedToOrder", "confirmationStatus", "transactionDate"],
    ),
}


def _csv_cell(value) -> str:
    if isinstance(value, datetime):
        return value.strftime("%Y-%m-%d %H:%M")
    if isinstance(value, bool):
        return "Yes" if value else "No"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return "" if value is None else str(value)


def report_section_csv(section: str, range_days=DEFAULT_REPORT_RANGE, now: Optional[datetime] = None) -> bytes:
    if section not in REPORT_CSV_SECTIONS:
        raise ValueError(f"Unknown report section: {section}")
    key, headers, fields = REPORT_CSV_SECTIONS[section]
    rows = build_report(range_days, now=now, serialized=False)["detailedData"][key]

    buf = io.StringIO()
    writer = csv.writer(buf)
    writer.writerow(headers)
    for row in rows:
        writer.writerow([_csv_cell(row.get(f)) for f in fields])
    return buf.getvalue().encode("utf-8")
