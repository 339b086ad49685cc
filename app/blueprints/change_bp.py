"""
Change Event, Approval and Notification Blueprint.

Endpoints:
    Change events
        POST   /api/v1/projects/<pid>/change-events        record a mutation
        GET    /api/v1/projects/<pid>/change-events        list (filters + paging)
        GET    /api/v1/change-events/<id>                   one event with analysis and steps
        GET    /api/v1/change-events/<id>/impact            impact analysis
        POST   /api/v1/change-events/<id>/impact/retry      re-run a failed analysis

    Approvals
        POST   /api/v1/change-events/<id>/approve           approve current step
        POST   /api/v1/change-events/<id>/reject            reject current step
        POST   /api/v1/change-events/<id>/bypass            emergency bypass
        GET    /api/v1/change-events/<id>/approvals         step history
        POST   /api/v1/approval-steps/<sid>/decide          decide a specific step
        PUT    /api/v1/approval-steps/<sid>/due-date        override the due date
        GET    /api/v1/approvals/pending                    ?role=&user_id=&project_id=

    Workflows
        GET/POST        /api/v1/projects/<pid>/approval-workflows
        GET/PUT/DELETE  /api/v1/approval-workflows/<wid>

    Notifications
        GET    /api/v1/projects/<pid>/notifications         ?status=&type=
        POST   /api/v1/notifications/<id>/delivered
"""

import logging

from flask import Blueprint, jsonify, request

from app.core.exceptions import ValidationError
from app.services import change_log
from app.services.approval_workflow import ApprovalWorkflowService
from app.services.impact_analysis import ImpactAnalysisService
from app.services.notification import NotificationService
from app.utils.errors import register_error_handlers
from app.utils.helpers import current_actor, pagination_args, parse_datetime

logger = logging.getLogger(__name__)

change_bp = Blueprint("change_bp", __name__, url_prefix="/api/v1")
register_error_handlers(change_bp)


def _event_detail(event):
    d = event.to_dict(include_analysis=True)
    d["approval_steps"] = [s.to_dict() for s in sorted(event.approval_steps, key=lambda s: s.step_number)]
    return d


# ═════════════════════════════════════════════════════════════════════════════
# Change events
# ═════════════════════════════════════════════════════════════════════════════

@change_bp.route("/projects/<int:pid>/change-events", methods=["POST"])
def record_change_event(pid):
    data = request.get_json(silent=True) or {}
    missing = [k for k in ("entity_type", "entity_id", "change_type") if data.get(k) in (None, "")]
    if missing:
        raise ValidationError("Missing required fields", details={k: "required" for k in missing})
    try:
        entity_id = int(data["entity_id"])
    except (TypeError, ValueError) as exc:
        raise ValidationError("entity_id must be an integer") from exc

    event = change_log.record_change(
        entity_type=data["entity_type"],
        entity_id=entity_id,
        change_type=data["change_type"],
        old_values=data.get("old_values"),
        new_values=data.get("new_values"),
        actor_id=current_actor(data),
        project_id=pid,
        batch_id=data.get("batch_id"),
    )
    return jsonify(_event_detail(event)), 201


@change_bp.route("/projects/<int:pid>/change-events", methods=["GET"])
def list_change_events(pid):
    limit, offset = pagination_args()
    filters = {k: request.args.get(k) for k in
               ("entity_type", "change_type", "approval_status", "impact_level", "batch_id")}
    filters["entity_id"] = request.args.get("entity_id", type=int)
    if request.args.get("since"):
        filters["since"] = parse_datetime(request.args["since"], "since")
    if request.args.get("until"):
        filters["until"] = parse_datetime(request.args["until"], "until")

    events, total = change_log.list_change_events(pid, filters, limit=limit, offset=offset)
    return jsonify({
        "items": [e.to_dict() for e in events],
        "total": total,
        "limit": limit,
        "offset": offset,
    })


@change_bp.route("/change-events/<int:event_id>", methods=["GET"])
def get_change_event(event_id):
    return jsonify(_event_detail(change_log.get_change_event(event_id)))


@change_bp.route("/change-events/<int:event_id>/impact", methods=["GET"])
def get_impact(event_id):
    return jsonify(ImpactAnalysisService.get(event_id).to_dict())


@change_bp.route("/change-events/<int:event_id>/impact/retry", methods=["POST"])
def retry_impact(event_id):
    return jsonify(ImpactAnalysisService.retry(event_id).to_dict())


# ═════════════════════════════════════════════════════════════════════════════
# Approvals
# ═════════════════════════════════════════════════════════════════════════════

@change_bp.route("/change-events/<int:event_id>/approve", methods=["POST"])
def approve_change_event(event_id):
    data = request.get_json(silent=True) or {}
    event = ApprovalWorkflowService.approve_change_event(event_id, current_actor(data), data.get("comments"))
    return jsonify(_event_detail(event))


@change_bp.route("/change-events/<int:event_id>/reject", methods=["POST"])
def reject_change_event(event_id):
    data = request.get_json(silent=True) or {}
    event = ApprovalWorkflowService.reject_change_event(event_id, current_actor(data), data.get("comments"))
    return jsonify(_event_detail(event))


@change_bp.route("/change-events/<int:event_id>/bypass", methods=["POST"])
def bypass_approvals(event_id):
    """Body: { "role", "reason" }; role must be an emergency-bypass role."""
    data = request.get_json(silent=True) or {}
    role = data.get("role") or request.headers.get("X-Role", "")
    event = ApprovalWorkflowService.bypass(event_id, current_actor(data), role, data.get("reason", ""))
    return jsonify(_event_detail(event))


@change_bp.route("/change-events/<int:event_id>/approvals", methods=["GET"])
def approval_history(event_id):
    steps = ApprovalWorkflowService.get_approval_history(event_id)
    return jsonify({"items": [s.to_dict() for s in steps], "total": len(steps)})


@change_bp.route("/approval-steps/<int:step_id>/decide", methods=["POST"])
def decide_step(step_id):
    data = request.get_json(silent=True) or {}
    decision = (data.get("decision") or "").upper()
    step = ApprovalWorkflowService.decide_step(step_id, decision, current_actor(data), data.get("comments"))
    return jsonify(step.to_dict())


@change_bp.route("/approval-steps/<int:step_id>/due-date", methods=["PUT"])
def override_due_date(step_id):
    data = request.get_json(silent=True) or {}
    if not data.get("due_date"):
        raise ValidationError("due_date is required")
    step = ApprovalWorkflowService.override_due_date(step_id, parse_datetime(data["due_date"], "due_date"))
    return jsonify(step.to_dict())


@change_bp.route("/approvals/pending", methods=["GET"])
def pending_approvals():
    steps = ApprovalWorkflowService.get_pending_approvals(
        role=request.args.get("role"),
        user_id=request.args.get("user_id"),
        project_id=request.args.get("project_id", type=int),
    )
    return jsonify({"items": [s.to_dict() for s in steps], "total": len(steps)})


# ═════════════════════════════════════════════════════════════════════════════
# Workflows
# ═════════════════════════════════════════════════════════════════════════════

@change_bp.route("/projects/<int:pid>/approval-workflows", methods=["GET"])
def list_workflows(pid):
    include_inactive = request.args.get("include_inactive", "").lower() in ("1", "true")
    workflows = ApprovalWorkflowService.list_workflows(pid, include_inactive=include_inactive)
    return jsonify({"items": [w.to_dict() for w in workflows], "total": len(workflows)})


@change_bp.route("/projects/<int:pid>/approval-workflows", methods=["POST"])
def create_workflow(pid):
    data = request.get_json(silent=True) or {}
    wf = ApprovalWorkflowService.create_workflow(pid, data, actor_id=current_actor(data))
    return jsonify(wf.to_dict()), 201


@change_bp.route("/approval-workflows/<int:wid>", methods=["GET"])
def get_workflow(wid):
    return jsonify(ApprovalWorkflowService.get_workflow(wid).to_dict())


@change_bp.route("/approval-workflows/<int:wid>", methods=["PUT"])
def update_workflow(wid):
    data = request.get_json(silent=True) or {}
    return jsonify(ApprovalWorkflowService.update_workflow(wid, data).to_dict())


@change_bp.route("/approval-workflows/<int:wid>", methods=["DELETE"])
def deactivate_workflow(wid):
    return jsonify(ApprovalWorkflowService.deactivate_workflow(wid).to_dict())


# ═════════════════════════════════════════════════════════════════════════════
# Notifications
# ═════════════════════════════════════════════════════════════════════════════

@change_bp.route("/projects/<int:pid>/notifications", methods=["GET"])
def list_notifications(pid):
    limit, offset = pagination_args()
    items, total = NotificationService.list_for_project(
        pid,
        status=request.args.get("status"),
        notification_type=request.args.get("type"),
        limit=limit,
        offset=offset,
    )
    return jsonify({
        "items": [n.to_dict() for n in items],
        "total": total,
        "limit": limit,
        "offset": offset,
    })


@change_bp.route("/notifications/<int:nid>/delivered", methods=["POST"])
def mark_notification_delivered(nid):
    return jsonify(NotificationService.mark_delivered(nid).to_dict())
