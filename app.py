import logging
import os
from datetime import timedelta

from flask import Flask, jsonify, request
from flask_login import LoginManager
from werkzeug.exceptions import HTTPException

from config_constants import LOG_LEVEL, SECRET_KEY
from db import ping_database
from user_model import get_user_by_id

logging.basicConfig(
    level=getattr(logging, str(LOG_LEVEL).upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

# ---------------- Blueprints ----------------
from login import login_bp
from services.activity_audit import ensure_activity_log_indexes, audit_request
from services.payment_audit import ensure_payment_audit_indexes
from services.reconciliation import ensure_transaction_indexes
from services.promotion_service import ensure_promotion_indexes
from services.order_service import ensure_order_indexes
from routes.clients import clients_bp
from routes.orders import orders_bp, admin_orders_bp
from routes.pos import pos_bp
from routes.catalog import catalog_bp, ensure_catalog_indexes
from routes.mpesa import mpesa_bp
from routes.payments import payments_bp
from routes.sms import sms_bp
from routes.reports import reports_bp
from routes.promotions import promotions_bp
from routes.expenses import expenses_bp, ensure_expense_indexes

logger = logging.getLogger(__name__)

# ---------------- App & Auth Setup ----------------
app = Flask(__name__)
app.secret_key = SECRET_KEY
app.config["PERMANENT_SESSION_LIFETIME"] = timedelta(days=30)
app.config["SESSION_COOKIE_HTTPONLY"] = True
app.config["SESSION_COOKIE_SAMESITE"] = "Lax"
app.config["REMEMBER_COOKIE_DURATION"] = timedelta(days=30)
app.config["REMEMBER_COOKIE_HTTPONLY"] = True
app.config["REMEMBER_COOKIE_SAMESITE"] = "Lax"
is_prod = os.environ.get("FLASK_ENV", os.environ.get("APP_ENV", "")) == "production"
app.config["SESSION_COOKIE_SECURE"] = is_prod
app.config["REMEMBER_COOKIE_SECURE"] = is_prod

ensure_activity_log_indexes()
ensure_payment_audit_indexes()
ensure_transaction_indexes()
ensure_promotion_indexes()
ensure_order_indexes()
ensure_catalog_indexes()
ensure_expense_indexes()

login_manager = LoginManager()
login_manager.init_app(app)


@login_manager.user_loader
def load_user(user_id):
    return get_user_by_id(user_id)


@login_manager.unauthorized_handler
def unauthorized():
    return jsonify(ok=False, message="Unauthorized"), 401


app.register_blueprint(login_bp)
app.register_blueprint(clients_bp)
app.register_blueprint(orders_bp)
app.register_blueprint(admin_orders_bp)
app.register_blueprint(pos_bp)
app.register_blueprint(catalog_bp)
app.register_blueprint(mpesa_bp)
app.register_blueprint(payments_bp)
app.register_blueprint(sms_bp)
app.register_blueprint(reports_bp)
app.register_blueprint(promotions_bp)
app.register_blueprint(expenses_bp)


@app.route("/")
def root():
    return jsonify(ok=True, service="laundry-admin")


@app.errorhandler(HTTPException)
def handle_http_error(e):
    return jsonify(ok=False, message=e.description), e.code


@app.errorhandler(Exception)
def handle_unexpected_error(e):
    logger.exception("Unhandled error on %s %s", request.method, request.path)
    return jsonify(ok=False, message="Internal server error"), 500


@app.after_request
def audit_mutations(response):
    audit_request(request, response)
    return response


if __name__ == "__main__":
    ping_database()
    app.run(debug=not is_prod)
