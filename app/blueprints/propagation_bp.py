"""
Propagation Blueprint.

Endpoints:
    GET    /api/v1/propagation-rules                       ?project_id=&include_inactive=
    POST   /api/v1/propagation-rules                       create rule
    GET    /api/v1/propagation-rules/<rid>                 one rule
    PUT    /api/v1/propagation-rules/<rid>                 update rule
    DELETE /api/v1/propagation-rules/<rid>                 deactivate rule

    POST   /api/v1/projects/<pid>/control-plans/generate   items for unlinked FMEA controls
           Body: { "control_plan_id" (optional) }

    GET    /api/v1/projects/<pid>/review-flags             ?status=OPEN|RESOLVED
    POST   /api/v1/review-flags/<id>/resolve
"""

import logging

from flask import Blueprint, jsonify, request

from app.services.control_plan_generation import generate_control_plan_items
from app.services.propagation import PropagationEngine
from app.utils.errors import register_error_handlers
from app.utils.helpers import current_actor

logger = logging.getLogger(__name__)

propagation_bp = Blueprint("propagation_bp", __name__, url_prefix="/api/v1")
register_error_handlers(propagation_bp)


# ── Rules ────────────────────────────────────────────────────────────────────

@propagation_bp.route("/propagation-rules", methods=["GET"])
def list_rules():
    include_inactive = request.args.get("include_inactive", "").lower() in ("1", "true")
    rules = PropagationEngine.list_rules(request.args.get("project_id", type=int),
                                         include_inactive=include_inactive)
    return jsonify({"items": [r.to_dict() for r in rules], "total": len(rules)})


@propagation_bp.route("/propagation-rules", methods=["POST"])
def create_rule():
    data = request.get_json(silent=True) or {}
    rule = PropagationEngine.create_rule(data, actor_id=current_actor(data))
    return jsonify(rule.to_dict()), 201


@propagation_bp.route("/propagation-rules/<int:rid>", methods=["GET"])
def get_rule(rid):
    return jsonify(PropagationEngine.get_rule(rid).to_dict())


@propagation_bp.route("/propagation-rules/<int:rid>", methods=["PUT"])
def update_rule(rid):
    data = request.get_json(silent=True) or {}
    return jsonify(PropagationEngine.update_rule(rid, data).to_dict())


@propagation_bp.route("/propagation-rules/<int:rid>", methods=["DELETE"])
def delete_rule(rid):
    return jsonify(PropagationEngine.delete_rule(rid).to_dict())


# ── Control plan generation ──────────────────────────────────────────────────

@propagation_bp.route("/projects/<int:pid>/control-plans/generate", methods=["POST"])
def generate_control_plan(pid):
    data = request.get_json(silent=True) or {}
    result = generate_control_plan_items(pid, control_plan_id=data.get("control_plan_id"),
                                         actor_id=current_actor(data))
    return jsonify(result.to_dict()), 201 if result.items else 200


# ── Review flags ─────────────────────────────────────────────────────────────

@propagation_bp.route("/projects/<int:pid>/review-flags", methods=["GET"])
def list_review_flags(pid):
    flags = PropagationEngine.list_review_flags(pid, request.args.get("status"))
    return jsonify({"items": [f.to_dict() for f in flags], "total": len(flags)})


@propagation_bp.route("/review-flags/<int:flag_id>/resolve", methods=["POST"])
def resolve_review_flag(flag_id):
    data = request.get_json(silent=True) or {}
    return jsonify(PropagationEngine.resolve_review_flag(flag_id, current_actor(data)).to_dict())
