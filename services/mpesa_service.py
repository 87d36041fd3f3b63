from __future__ import annotations

import base64
import logging
import re
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

import requests

import config_constants as cfg

logger = logging.getLogger(__name__)

# Daraja timestamps are East Africa Time
EAT_OFFSET = timedelta(hours=3)
PROCESSING_ERROR_CODE = "500.001.1001"
PROCESSING_ERROR_MESSAGE = "The transaction is being processed"


class MpesaError(Exception):
    pass


def _error_message(resp: Optional[requests.Response], fallback: str) -> str:
    if resp is None:
        return fallback
    try:
        data = resp.json()
    except ValueError:
        data = {}
    return (
        data.get("errorMessage")
        or data.get("ResponseDescription")
        or data.get("error_description")
        or data.get("message")
        or f"HTTP {resp.status_code}: {resp.reason or fallback}"
    )


class MpesaService:
    """Thin client over the Safaricom Daraja API (STK push, STK query, C2B URL registration)."""

    def __init__(
        self,
        consumer_key: str = cfg.MPESA_CONSUMER_KEY,
        consumer_secret: str = cfg.MPESA_CONSUMER_SECRET,
        passkey: str = cfg.MPESA_PASSKEY,
        short_code: str = cfg.MPESA_SHORT_CODE,
        till_number: str = cfg.MPESA_TILL_NUMBER,
        environment: str = cfg.MPESA_ENVIRONMENT,
    ):
        self.consumer_key = consumer_key
        self.consumer_secret = consumer_secret
        self.passkey = passkey
        self.short_code = short_code
        self.till_number = till_number
        self.environment = environment
        self.config_errors = self.validate_configuration()

    def validate_configuration(self) -> List[str]:
        errors = []
        if len(self.consumer_key or "") < 10:
            errors.append("Invalid MPESA_CONSUMER_KEY")
        if len(self.consumer_secret or "") < 10:
            errors.append("Invalid MPESA_CONSUMER_SECRET")
        if len(self.passkey or "") < 10:
            errors.append("Invalid MPESA_PASSKEY")
        if len(self.short_code or "") < 5:
            errors.append("Invalid MPESA_SHORT_CODE")
        if self.environment not in ("sandbox", "production"):
            errors.append("Invalid MPESA_ENVIRONMENT (must be sandbox or production)")
        if errors:
            logger.warning(
                "M-Pesa configuration issues: %s (environment=%s, shortCode=%s)",
                ", ".join(errors), self.environment, self.short_code,
            )
        return errors

    @property
    def base_url(self) -> str:
        return cfg.MPESA_PRODUCTION_URL if self.environment == "production" else cfg.MPESA_SANDBOX_URL

    @staticmethod
    def generate_timestamp(now: Optional[datetime] = None) -> str:
        now = now or (datetime.utcnow() + EAT_OFFSET)
        return now.strftime("%Y%m%d%H%M%S")

    def generate_password(self, timestamp: str) -> str:
        raw = f"{self.short_code}{self.passkey}{timestamp}"
        return base64.b64encode(raw.encode("utf-8")).decode("ascii")

    @staticmethod
    def format_phone(phone: str) -> str:
        digits = re.sub(r"\D", "", phone or "")
        if digits.startswith("0"):
            return "254" + digits[1:]
        if len(digits) == 9:
            return "254" + digits
        return digits

    def get_access_token(self) -> str:
        if not self.consumer_key or not self.consumer_secret:
            raise MpesaError("M-Pesa consumer key or secret is missing")
        url = f"{self.base_url}/oauth/v1/generate?grant_type=client_credentials"
        try:
            resp = requests.get(url, auth=(self.consumer_key, self.consumer_secret), timeout=30)
        except requests.RequestException as e:
            raise MpesaError(f"Failed to generate M-Pesa access token: {e}") from e
        if resp.status_code >= 400:
            raise MpesaError(f"Failed to generate M-Pesa access token: {_error_message(resp, 'token request failed')}")
        try:
            token = (resp.json() or {}).get("access_token")
        except ValueError:
            token = None
        if not token:
            raise MpesaError("M-Pesa API did not return a valid access token")
        return token

    def _post(self, path: str, payload: Dict[str, Any], token: str, timeout: int = 30) -> requests.Response:
        return requests.post(
            f"{self.base_url}{path}",
            json=payload,
            headers={"Authorization": f"Bearer {token}"},
            timeout=timeout,
        )

    def initiate_stk_push(self, phone_number: str, amount: float, order_id: str, callback_url: str) -> Dict[str, Any]:
        try:
            token = self.get_access_token()
        except MpesaError as e:
            logger.error("STK push aborted: %s", e)
            return {"success": False, "error": str(e)}

        timestamp = self.generate_timestamp()
        phone = self.format_phone(phone_number)
        payload = {
            "BusinessShortCode": self.short_code,
            "Password": self.generate_password(timestamp),
            "Timestamp": timestamp,
            "TransactionType": "CustomerPayBillOnline",
            "Amount": int(round(amount)),
            "PartyA": phone,
            "PartyB": self.short_code,
            "PhoneNumber": phone,
            "CallBackURL": callback_url,
            "AccountReference": order_id,
            "TransactionDesc": f"Payment for Order {order_id}",
        }
        try:
            resp = self._post("/mpesa/stkpush/v1/processrequest", payload, token, timeout=60)
        except requests.RequestException as e:
            logger.error("STK push request failed for order %s: %s", order_id, e)
            return {"success": False, "error": str(e) or "STK Push request failed"}

        if resp.status_code >= 400:
            logger.error("STK push rejected for order %s: HTTP %s", order_id, resp.status_code)
            return {"success": False, "error": _error_message(resp, "STK Push request failed")}

        try:
            data = resp.json() or {}
        except ValueError:
            logger.error("STK push for order %s returned a non-JSON body", order_id)
            return {"success": False, "error": "Invalid response from M-Pesa"}
        if str(data.get("ResponseCode")) == "0":
            logger.info("STK push sent for order %s (%s)", order_id, data.get("CheckoutRequestID"))
            return {
                "success": True,
                "checkoutRequestId": data.get("CheckoutRequestID"),
                "merchantRequestId": data.get("MerchantRequestID"),
                "responseCode": data.get("ResponseCode"),
                "responseDescription": data.get("ResponseDescription"),
                "customerMessage": data.get("CustomerMessage"),
            }
        return {
            "success": False,
            "responseCode": data.get("ResponseCode"),
            "responseDescription": data.get("ResponseDescription"),
            "error": data.get("errorMessage") or data.get("ResponseDescription") or "STK Push failed",
        }

    def query_stk_status(self, checkout_request_id: str) -> Dict[str, Any]:
        """
        Returns the raw Daraja body on success. A "still processing" 500 is
        mapped to {success: True, isPending: True, resultCode: "1032"}.
        """
        try:
            token = self.get_access_token()
        except MpesaError as e:
            return {"success": False, "error": str(e), "resultCode": "ERROR", "resultDesc": "Query failed"}

        timestamp = self.generate_timestamp()
        payload = {
            "BusinessShortCode": self.short_code,
            "Password": self.generate_password(timestamp),
            "Timestamp": timestamp,
            "CheckoutRequestID": checkout_request_id,
        }
        try:
            resp = self._post("/mpesa/stkpushquery/v1/query", payload, token)
        except requests.RequestException as e:
            return {"success": False, "error": str(e), "resultCode": "ERROR", "resultDesc": "Query failed"}

        if resp.status_code < 400:
            try:
                return resp.json()
            except ValueError:
                logger.error("STK query %s returned a non-JSON body", checkout_request_id)
                return {"success": False, "error": "Invalid response from M-Pesa", "resultCode": "ERROR", "resultDesc": "Query failed"}

        try:
            data = resp.json() or {}
        except ValueError:
            data = {}
        if (
            resp.status_code == 500
            and data.get("errorCode") == PROCESSING_ERROR_CODE
            and data.get("errorMessage") == PROCESSING_ERROR_MESSAGE
        ):
            logger.info("STK %s still being processed by Safaricom", checkout_request_id)
            return {
                "success": True,
                "isPending": True,
                "resultCode": "1032",
                "resultDesc": "Transaction is being processed",
                "requestId": data.get("requestId"),
            }
        logger.warning("STK status query failed for %s: HTTP %s", checkout_request_id, resp.status_code)
        return {
            "success": False,
            "error": _error_message(resp, "STK status query failed"),
            "resultCode": str(data.get("ResultCode") or "ERROR"),
            "resultDesc": data.get("ResultDesc") or "Query failed",
        }

    def register_c2b_urls(
        self,
        confirmation_url: str = cfg.MPESA_C2B_CONFIRMATION_URL,
        validation_url: str = cfg.MPESA_C2B_VALIDATION_URL,
        response_type: str = cfg.MPESA_C2B_RESPONSE_TYPE,
    ) -> Dict[str, Any]:
        if not self.consumer_key or not self.consumer_secret:
            return {"success": False, "error": "M-Pesa credentials are not configured"}
        if not self.short_code:
            return {"success": False, "error": "M-Pesa short code is not configured"}
        if not validation_url or not confirmation_url:
            return {
                "success": False,
                "error": "MPESA_C2B_VALIDATION_URL and MPESA_C2B_CONFIRMATION_URL must be configured",
            }
        try:
            token = self.get_access_token()
        except MpesaError as e:
            return {
                "success": False,
                "error": str(e),
                "responseCode": "401",
                "responseDescription": "Access token generation failed",
            }

        payload = {
            "ShortCode": self.short_code,
            "ResponseType": response_type or "Completed",
            "ConfirmationURL": confirmation_url,
            "ValidationURL": validation_url,
        }
        try:
            resp = self._post("/mpesa/c2b/v2/registerurl", payload, token)
        except requests.RequestException as e:
            return {"success": False, "error": str(e) or "C2B URL registration failed"}

        try:
            data = resp.json() or {}
        except ValueError:
            data = {}
        if resp.status_code in (401, 403):
            return {
                "success": False,
                "responseCode": str(resp.status_code),
                "responseDescription": data.get("ResponseDescription") or data.get("errorMessage") or "Authentication failed",
                "error": data.get("errorMessage") or f"HTTP {resp.status_code}: Invalid access token or credentials",
                "details": data,
            }
        if resp.status_code >= 400:
            return {
                "success": False,
                "responseCode": str(resp.status_code),
                "responseDescription": data.get("ResponseDescription") or f"HTTP {resp.status_code} error",
                "error": _error_message(resp, "C2B URL registration failed"),
                "details": data,
            }
        if str(data.get("ResponseCode")) == "0":
            logger.info("C2B URLs registered for short code %s", self.short_code)
            return {
                "success": True,
                "originatorConversationId": data.get("OriginatorCoversationID") or data.get("OriginatorConversationID"),
                "responseCode": "0",
                "responseDescription": data.get("ResponseDescription") or "Success",
            }
        return {
            "success": False,
            "responseCode": str(data.get("ResponseCode") or "Unknown"),
            "responseDescription": data.get("ResponseDescription") or "C2B URL registration failed",
            "error": data.get("ResponseDescription") or data.get("errorMessage") or "C2B URL registration failed",
            "details": data,
        }


mpesa_service = MpesaService()
