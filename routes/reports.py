from __future__ import annotations

import logging
from datetime import datetime

from flask import Blueprint, Response, jsonify, request

from login import admin_required
from services.report_analytics import REPORT_CSV_SECTIONS, build_report, report_section_csv, resolve_range

logger = logging.getLogger(__name__)

reports_bp = Blueprint("reports", __name__, url_prefix="/api/admin/reports")


@reports_bp.route("", methods=["GET"])
@admin_required
def reports():
    report = build_report(request.args.get("range"))
    return jsonify(ok=True, **report)


@reports_bp.route("/export.csv", methods=["GET"])
@admin_required
def export_report_csv():
    section = request.args.get("section") or "orders"
    if section not in REPORT_CSV_SECTIONS:
        return jsonify(ok=False, message=f"section must be one of: {', '.join(REPORT_CSV_SECTIONS)}"), 400
    days = resolve_range(request.args.get("range"))
    body = report_section_csv(section, days)
    filename = f"report_{section}_{days}d_{datetime.utcnow().strftime('%Y-%m-%d')}.csv"
    return Response(body, mimetype="text/csv", headers={"Content-Disposition": f"attachment; filename={filename}"})
