from __future__ import annotations

import logging
import re
from typing import Any, Dict, Optional, Tuple

import requests

from config_constants import (
    SMS_API_URL,
    SMS_USER_ID,
    SMS_PASSWORD,
    SMS_SENDER_ID,
    BUSINESS_NAME,
    CUSTOMER_CARE_PHONE,
    ADMIN_NOTIFY_PHONE,
)
from services.utils import as_float

logger = logging.getLogger(__name__)

STATUS_SYMBOLS = {
    "processing": ">>",
    "in-progress": ">>",
    "ready-for-delivery": ">>",
    "completed": "✓",
    "delivered": "✓",
    "cancelled": "X",
}


class SMSError(Exception):
    pass


def _ksh(value) -> str:
    return f"{as_float(value):,.0f}"


class SMSService:
    """Zettatel bulk SMS client plus the customer message templates."""

    def __init__(
        self,
        user_id: str = SMS_USER_ID,
        password: str = SMS_PASSWORD,
        sender_id: str = SMS_SENDER_ID,
        api_url: str = SMS_API_URL,
        timeout: int = 15,
    ):
        self.user_id = user_id
        self.password = password
        self.sender_id = sender_id
        self.api_url = api_url
        self.timeout = timeout

    @property
    def is_configured(self) -> bool:
        return bool(self.user_id and self.password)

    def config_summary(self) -> Dict[str, str]:
        return {
            "userId": "Configured" if self.user_id else "Not configured",
            "password": "Configured" if self.password else "Not configured",
            "senderId": self.sender_id,
            "apiUrl": self.api_url,
        }

    @staticmethod
    def format_phone(phone: str) -> str:
        """Normalise to +254XXXXXXXXX; a leading + is kept as given."""
        raw = (phone or "").strip()
        plus = raw.startswith("+")
        digits = re.sub(r"\D", "", raw)
        if plus:
            return f"+{digits}"
        if digits.startswith("254"):
            return f"+{digits}"
        if digits.startswith("0"):
            return f"+254{digits[1:]}"
        return f"+254{digits}"

    def send_sms(self, mobile: str, message: str) -> Dict[str, Any]:
        phone = self.format_phone(mobile)
        payload = {
            "userid": self.user_id,
            "password": self.password,
            "sendMethod": "quick",
            "mobile": phone,
            "msg": message,
            "senderid": self.sender_id,
            "msgType": "text",
            "duplicatecheck": "true",
            "output": "json",
        }
        try:
            resp = requests.post(
                self.api_url,
                data=payload,
                headers={"Cache-Control": "no-cache"},
                timeout=self.timeout,
            )
            resp.raise_for_status()
        except requests.RequestException as e:
            raise SMSError(f"SMS gateway error: {e}") from e
        try:
            return resp.json()
        except ValueError:
            return {"status": "unknown", "raw": resp.text}

    # ---------------------------
    # Templates
    # ---------------------------
    def booking_confirmation_text(self, order: Dict[str, Any]) -> str:
        services = ", ".join(s.get("serviceName", "") for s in order.get("services") or [])
        payment_status = (order.get("paymentStatus") or "unpaid").upper()
        return (
            f"*** Welcome to {BUSINESS_NAME}! ***\n\n"
            f"Your order #{order.get('orderNumber')} has been confirmed!\n\n"
            f"Services: {services}\n"
            f"Total Amount: Ksh {_ksh(order.get('totalAmount'))}\n"
            f"Payment Status: {payment_status}\n\n"
            f"Thank you for choosing {BUSINESS_NAME}!\n\n"
            f"Need help? Call us: {CUSTOMER_CARE_PHONE}"
        )

    def status_update_text(self, order: Dict[str, Any], status: str) -> str:
        symbol = STATUS_SYMBOLS.get(status, ">>")
        return (
            f"{symbol} Order Update - {BUSINESS_NAME} {symbol}\n\n"
            f"Your order #{order.get('orderNumber')} is now: {status.upper()}\n\n"
            f"Thank you for trusting {BUSINESS_NAME}!\n\n"
            f"Customer care: {CUSTOMER_CARE_PHONE}"
        )

    def pickup_reminder_text(self, order: Dict[str, Any]) -> str:
        return (
            f"*** Pickup Reminder - {BUSINESS_NAME} ***\n\n"
            f"Your laundry pickup is scheduled for:\n"
            f"Date: {order.get('pickupDate') or '-'} at {order.get('pickupTime') or '-'}\n\n"
            f"Order: #{order.get('orderNumber')}\n\n"
            f"Please ensure someone is available for pickup.\n\n"
            f"Need to reschedule? Call us: {CUSTOMER_CARE_PHONE}"
        )

    def delivery_notification_text(self, order: Dict[str, Any]) -> str:
        return (
            f"*** Great News! - {BUSINESS_NAME} ***\n\n"
            f"Your order #{order.get('orderNumber')} is ready for delivery!\n\n"
            f"We'll contact you shortly to arrange delivery.\n\n"
            f"Customer care: {CUSTOMER_CARE_PHONE}"
        )

    def welcome_text(self, customer: Dict[str, Any]) -> str:
        name = (customer.get("name") or "").split(" ")[0] or "there"
        return (
            f"*** Welcome to {BUSINESS_NAME}! ***\n\n"
            f"Hi {name}, thank you for joining our family of satisfied customers!\n\n"
            f"Premium laundry care with convenient pickup & delivery.\n\n"
            f"Customer care: {CUSTOMER_CARE_PHONE}"
        )

    def special_offer_text(self, offer: str) -> str:
        return (
            f"*** Special Offer - {BUSINESS_NAME} ***\n\n"
            f"{offer}\n\n"
            f"Limited time only! Book now.\n\n"
            f"Customer care: {CUSTOMER_CARE_PHONE}"
        )

    def admin_new_order_text(self, order: Dict[str, Any]) -> str:
        customer = order.get("customer") or {}
        return (
            f"New order received!\n"
            f"Name: {customer.get('name') or 'N/A'}\n"
            f"Phone: {customer.get('phone')}\n"
            f"Order #: {order.get('orderNumber')}\n"
            f"Amount: Ksh {_ksh(order.get('totalAmount'))}\n"
            f"Status: {(order.get('paymentStatus') or 'unpaid').upper()}"
        )

    def payment_confirmation_text(self, order: Dict[str, Any], amount_paid: float, fully_paid: bool, receipt: str) -> str:
        customer = order.get("customer") or {}
        head = "Payment Confirmation" if fully_paid else "Payment Received"
        lines = [
            f"*** {head} - {BUSINESS_NAME} ***",
            "",
            f"Dear {customer.get('name') or 'Customer'},",
            "",
            f"Order #{order.get('orderNumber')}",
            f"Amount Paid: Ksh {_ksh(amount_paid)}",
            f"M-Pesa Receipt: {receipt or 'N/A'}",
        ]
        if fully_paid:
            lines.append("Payment Status: PAID")
        else:
            lines.append(f"Remaining Balance: Ksh {_ksh(order.get('remainingBalance'))}")
        lines += ["", f"Thank you for choosing {BUSINESS_NAME}!", f"Need help? Call us at {CUSTOMER_CARE_PHONE}"]
        return "\n".join(lines)

    # ---------------------------
    # Senders
    # ---------------------------
    def send_booking_confirmation(self, order: Dict[str, Any]) -> Dict[str, Any]:
        return self.send_sms((order.get("customer") or {}).get("phone", ""), self.booking_confirmation_text(order))

    def send_order_status_update(self, order: Dict[str, Any], status: str) -> Dict[str, Any]:
        return self.send_sms((order.get("customer") or {}).get("phone", ""), self.status_update_text(order, status))

    def send_pickup_reminder(self, order: Dict[str, Any]) -> Dict[str, Any]:
        return self.send_sms((order.get("customer") or {}).get("phone", ""), self.pickup_reminder_text(order))

    def send_delivery_notification(self, order: Dict[str, Any]) -> Dict[str, Any]:
        return self.send_sms((order.get("customer") or {}).get("phone", ""), self.delivery_notification_text(order))

    def send_welcome_message(self, customer: Dict[str, Any]) -> Dict[str, Any]:
        return self.send_sms(customer.get("phone", ""), self.welcome_text(customer))

    def send_special_offer(self, customer: Dict[str, Any], offer: str) -> Dict[str, Any]:
        return self.send_sms(customer.get("phone", ""), self.special_offer_text(offer))

    def send_admin_new_order_notification(self, order: Dict[str, Any]) -> Dict[str, Any]:
        return self.send_sms(ADMIN_NOTIFY_PHONE, self.admin_new_order_text(order))

    def send_payment_confirmation(self, order: Dict[str, Any], amount_paid: float, fully_paid: bool, receipt: str) -> Dict[str, Any]:
        return self.send_sms(
            (order.get("customer") or {}).get("phone", ""),
            self.payment_confirmation_text(order, amount_paid, fully_paid, receipt),
        )


sms_service = SMSService()


def notify(send, *args, label: str = "sms") -> Tuple[bool, str]:
    """
    Fire a notification without letting gateway problems fail the caller.
    Returns (ok, status_text) where status_text is sent|failed|error:<reason>.
    """
    try:
        data = send(*args)
    except SMSError as e:
        logger.warning("%s not sent: %s", label, e)
        return False, f"error:{e}"
    except Exception:
        logger.exception("%s failed unexpectedly", label)
        return False, "error:unexpected"
    ok = str((data or {}).get("status", "")).lower() not in ("error", "failed")
    return ok, ("sent" if ok else "failed")


def notify_payment(order: Dict[str, Any], amount_paid: float, fully_paid: bool, receipt: Optional[str]) -> Tuple[bool, str]:
    if not (order.get("customer") or {}).get("phone"):
        logger.info("No phone on order %s; payment SMS skipped", order.get("orderNumber"))
        return False, "skipped"
    return notify(
        sms_service.send_payment_confirmation, order, amount_paid, fully_paid, receipt or "",
        label="payment confirmation SMS",
    )
