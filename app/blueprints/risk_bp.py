"""
Risk Analytics Blueprint.

Endpoints:
    GET    /api/v1/projects/<pid>/risk-summary
    POST   /api/v1/projects/<pid>/risk-analytics/recompute        Body: { "analysis_date" }
    GET    /api/v1/projects/<pid>/risk-analytics/trend            ?days=30
    GET    /api/v1/projects/<pid>/risk-analytics/process-breakdown
    GET    /api/v1/projects/<pid>/risk-analytics/control-effectiveness
"""

import logging

from flask import Blueprint, jsonify, request

from app.core.exceptions import ValidationError
from app.services.risk_analytics import RiskAnalyticsService
from app.utils.errors import register_error_handlers
from app.utils.helpers import parse_date

logger = logging.getLogger(__name__)

risk_bp = Blueprint("risk_bp", __name__, url_prefix="/api/v1")
register_error_handlers(risk_bp)


@risk_bp.route("/projects/<int:pid>/risk-summary", methods=["GET"])
def risk_summary(pid):
    return jsonify(RiskAnalyticsService.get_risk_summary(pid))


@risk_bp.route("/projects/<int:pid>/risk-analytics/recompute", methods=["POST"])
def recompute(pid):
    data = request.get_json(silent=True) or {}
    analysis_date = None
    if data.get("analysis_date"):
        analysis_date = parse_date(data["analysis_date"])
        if analysis_date is None:
            raise ValidationError("Invalid analysis_date", details={"analysis_date": "YYYY-MM-DD expected"})
    return jsonify(RiskAnalyticsService.recompute(pid, analysis_date).to_dict())


@risk_bp.route("/projects/<int:pid>/risk-analytics/trend", methods=["GET"])
def risk_trend(pid):
    days = request.args.get("days", 30, type=int)
    points = RiskAnalyticsService.get_risk_trend(pid, days)
    return jsonify({"project_id": pid, "days": days, "items": points})


@risk_bp.route("/projects/<int:pid>/risk-analytics/process-breakdown", methods=["GET"])
def process_breakdown(pid):
    rows = RiskAnalyticsService.get_process_risk_breakdown(pid)
    return jsonify({"project_id": pid, "items": rows})


@risk_bp.route("/projects/<int:pid>/risk-analytics/control-effectiveness", methods=["GET"])
def control_effectiveness(pid):
    return jsonify(RiskAnalyticsService.get_control_effectiveness(pid))
