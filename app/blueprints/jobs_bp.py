"""
Scheduled Jobs Blueprint.

Endpoints:
    GET    /api/v1/jobs                   registered jobs with run history
    POST   /api/v1/jobs/<name>/run        run a job now
    PATCH  /api/v1/jobs/<name>/toggle     Body: { "enabled": bool }
"""

import logging

from flask import Blueprint, jsonify, request

from app.core.exceptions import ValidationError
from app.services.scheduler_service import SchedulerService
from app.utils.errors import register_error_handlers

logger = logging.getLogger(__name__)

jobs_bp = Blueprint("jobs_bp", __name__, url_prefix="/api/v1")
register_error_handlers(jobs_bp)


@jobs_bp.route("/jobs", methods=["GET"])
def list_jobs():
    SchedulerService.ensure_jobs_registered()
    jobs = SchedulerService.list_jobs()
    return jsonify({"items": jobs, "total": len(jobs)})


@jobs_bp.route("/jobs/<job_name>/run", methods=["POST"])
def run_job(job_name):
    result = SchedulerService.run_job(job_name)
    return jsonify(result), 500 if result["status"] == "failed" else 200


@jobs_bp.route("/jobs/<job_name>/toggle", methods=["PATCH"])
def toggle_job(job_name):
    data = request.get_json(silent=True) or {}
    if not isinstance(data.get("enabled"), bool):
        raise ValidationError("'enabled' (boolean) is required")
    SchedulerService.ensure_jobs_registered()
    return jsonify(SchedulerService.toggle_job(job_name, data["enabled"]))
