import csv
import io
from datetime import datetime

from services.order_pricing import (
    ORDER_CSV_HEADERS,
    build_quote,
    cart_subtotal,
    final_total,
    generate_order_number,
    orders_to_csv,
    parse_price,
    payment_status_color,
    status_color,
)


class TestParsePrice:
    def test_plain_numbers_pass_through(self):
        assert parse_price(250) == 250.0
        assert parse_price("300") == 300.0

    def test_free_text_prices(self):
        """Currency labels, commas and units are stripped."""
        assert parse_price("From Ksh 5,000") == 5000.0
        assert parse_price("150/kg") == 150.0

    def test_unparseable_is_zero(self):
        assert parse_price("Call for quote") == 0.0
        assert parse_price(None) == 0.0


class TestTotals:
    def test_cart_subtotal_uses_quantity(self):
        items = [{"price": "200", "quantity": 3}, {"price": "Ksh 1,000", "quantity": 1}]
        assert cart_subtotal(items) == 1600.0

    def test_final_total_ignores_negative_adjustments(self):
        assert final_total(1000, pick_drop=-50, discount=-20, promo_discount=-5) == 1000.0

    def test_final_total_never_negative(self):
        assert final_total(500, discount=400, promo_discount=300) == 0.0

    def test_quote_for_partial_payment(self):
        q = build_quote(
            [{"price": "500", "quantity": 2}],
            pick_drop=200,
            discount=100,
            promo_discount=100,
            payment_status="partial",
            partial_amount=300,
        )
        assert q["subtotal"] == 1000.0
        assert q["finalTotal"] == 1000.0
        assert q["partialAmount"] == 300
        assert q["remainingAmount"] == 700.0

    def test_quote_unpaid_has_no_partial_fields(self):
        q = build_quote([{"price": "500", "quantity": 1}], partial_amount=200)
        assert q["partialAmount"] == 0
        assert q["remainingAmount"] == 0


class TestOrderNumber:
    def test_format(self):
        number = generate_order_number(now_ms=1718000123456)
        prefix, ms, suffix = number.split("-")
        assert prefix == "ORD"
        assert ms == "123456"
        assert len(suffix) == 3 and suffix.isdigit()


class TestColors:
    def test_known_and_unknown_statuses(self):
        assert status_color("pending") != status_color("no-such-status")
        assert payment_status_color(None) == payment_status_color("unpaid")


class TestOrdersCsv:
    def test_header_and_row(self):
        order = {
            "orderNumber": "ORD-123456-001",
            "customer": {"name": "Jane", "phone": "0712345678"},
            "location": "main-branch",
            "services": [{"serviceName": "Duvet", "quantity": 2, "price": "800"}],
            "totalAmount": 1600.0,
            "pickDropAmount": 0,
            "discount": 0,
            "paymentStatus": "paid",
            "status": "delivered",
            "createdAt": datetime(2024, 5, 1, 10, 0),
            "updatedAt": datetime(2024, 5, 2, 10, 0),
            "promoCode": "SAVE10",
            "promoDiscount": 160,
        }
        rows = list(csv.reader(io.StringIO(orders_to_csv([order]).decode("utf-8"))))
        assert rows[0] == ORDER_CSV_HEADERS
        row = dict(zip(rows[0], rows[1]))
        assert row["Services"] == "Duvet (2x Ksh800)"
        assert row["Total Amount"] == "1600"
        assert row["Created Date"] == "2024-05-01"
        assert row["Promo Discount"] == "Ksh 160"

    def test_missing_promo_is_dash(self):
        rows = list(csv.reader(io.StringIO(orders_to_csv([{"customer": {}}]).decode("utf-8"))))
        row = dict(zip(rows[0], rows[1]))
        assert row["Promo Code"] == "-"
        assert row["Promo Discount"] == "-"
        assert row["Payment Status"] == "unpaid"
