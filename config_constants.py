import os

# === App ===
SECRET_KEY = os.environ.get("SECRET_KEY", "dev-laundry-admin-secret")
LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

# === MongoDB ===
MONGODB_URI = os.environ.get("MONGODB_URI", "mongodb://localhost:27017")
MONGODB_DB = os.environ.get("MONGODB_DB", "laundry_admin")

# === Business ===
BUSINESS_NAME = os.environ.get("BUSINESS_NAME", "Econuru Services")
CUSTOMER_CARE_PHONE = os.environ.get("CUSTOMER_CARE_PHONE", "+254757883799")
ADMIN_NOTIFY_PHONE = os.environ.get("ADMIN_NOTIFY_PHONE", "+254757883799")
DEFAULT_LOCATION = "main-branch"
DEFAULT_SERVICE_IMAGE = "/placeholder.svg"

# === M-Pesa (Daraja) ===
MPESA_CONSUMER_KEY = os.environ.get("MPESA_CONSUMER_KEY", "")
MPESA_CONSUMER_SECRET = os.environ.get("MPESA_CONSUMER_SECRET", "")
MPESA_PASSKEY = os.environ.get("MPESA_PASSKEY", "")
MPESA_SHORT_CODE = os.environ.get("MPESA_SHORT_CODE", "")
MPESA_TILL_NUMBER = os.environ.get("MPESA_TILL_NUMBER", "")
MPESA_ENVIRONMENT = os.environ.get("MPESA_ENVIRONMENT", "sandbox")
MPESA_CALLBACK_URL = os.environ.get("MPESA_CALLBACK_URL", "")
MPESA_C2B_VALIDATION_URL = os.environ.get("MPESA_C2B_VALIDATION_URL", "")
MPESA_C2B_CONFIRMATION_URL = os.environ.get("MPESA_C2B_CONFIRMATION_URL", "")
MPESA_C2B_RESPONSE_TYPE = os.environ.get("MPESA_C2B_RESPONSE_TYPE", "Completed")

MPESA_SANDBOX_URL = "https://sandbox.safaricom.co.ke"
MPESA_PRODUCTION_URL = "https://api.safaricom.co.ke"

# === SMS (Zettatel) ===
SMS_API_URL = os.environ.get("SMS_API_URL", "https://portal.zettatel.com/SMSApi/send")
SMS_USER_ID = os.environ.get("SMS_USER_ID", "")
SMS_PASSWORD = os.environ.get("SMS_PASSWORD", "")
SMS_SENDER_ID = os.environ.get("SMS_SENDER_ID", "LUXURY")

# === Roles ===
ADMIN_ROLES = ("admin", "superadmin", "manager")
RECONCILE_ROLES = ("admin", "superadmin")

# === Order enums ===
PAYMENT_STATUSES = ["unpaid", "paid", "partial", "pending", "failed"]
LAUNDRY_STATUSES = ["to-be-picked", "picked", "in-progress", "ready", "delivered"]
ORDER_STATUSES = ["pending", "confirmed", "in-progress", "ready", "delivered", "cancelled"]
PAYMENT_METHODS = ["mpesa_stk", "mpesa_c2b", "cash", "bank_transfer"]
CUSTOMER_STATUSES = ["active", "inactive", "vip", "premium", "new"]

# Badge colors for the admin screens
STATUS_COLORS = {
    "pending": "amber",
    "confirmed": "blue",
    "in-progress": "orange",
    "ready": "emerald",
    "delivered": "purple",
    "cancelled": "red",
}
PAYMENT_STATUS_COLORS = {
    "paid": "green",
    "partial": "orange",
    "pending": "amber",
    "failed": "red",
    "unpaid": "gray",
}
DEFAULT_STATUS_COLOR = "gray"

# STK query result codes that mean the customer will not complete the payment
STK_DEFINITIVE_FAILURE_CODES = {"1037", "1034", "1035", "1036"} | {str(c) for c in range(2001, 2011)}
STK_PENDING_CODE = "1032"
STK_RECENT_MINUTES = 3

C2B_MIN_AMOUNT = 10
C2B_SMART_MATCH_HOURS = 2

REPORT_RANGES = (7, 30, 90, 365)
DEFAULT_REPORT_RANGE = 30
