"""
Approval Workflow Engine.

Step states:   PENDING → APPROVED | REJECTED | ESCALATED | BYPASSED
               ESCALATED → APPROVED | REJECTED | BYPASSED
Event states:  PENDING → APPROVED | REJECTED   (AUTO_APPROVED never enters the workflow)

Selection runs once per event: the first active workflow of the project
whose trigger conditions match the event's entity type, change type and
impact level. No match ⇒ AUTO_APPROVED, unless a requires-approval rule
matched, in which case the event waits on a manual gate.

Escalation is evaluated whenever steps are read: a PENDING step past its
due date becomes ESCALATED and is reassigned to the step's escalation
roles, the workflow's escalation roles, or ``ESCALATION_FALLBACK_ROLE``.
The scheduled sweep only makes this happen sooner.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from flask import current_app

from app.core.exceptions import ConflictError, NotFoundError, ValidationError
from app.models import db
from app.models.approval import OPEN_STEP_STATUSES, ApprovalStepInstance, ApprovalWorkflow
from app.models.change import CHANGE_TYPES, ENTITY_TYPES, IMPACT_LEVELS, ChangeEvent
from app.models.project import Project
from app.services.notification import NotificationService
from app.utils.helpers import as_utc, utcnow

logger = logging.getLogger(__name__)


# ═════════════════════════════════════════════════════════════════════════════
# Typed workflow configuration
# ═════════════════════════════════════════════════════════════════════════════

def _string_list(raw, name: str) -> tuple[str, ...]:
    if raw is None:
        return ()
    if not isinstance(raw, list) or not all(isinstance(v, str) and v for v in raw):
        raise ValidationError(f"{name} must be a list of non-empty strings")
    return tuple(raw)


@dataclass(frozen=True)
class Conditions:
    """Event filter; an empty tuple matches anything."""
    entity_types: tuple[str, ...] = ()
    impact_levels: tuple[str, ...] = ()
    change_types: tuple[str, ...] = ()

    @classmethod
    def from_json(cls, raw, name: str = "trigger_conditions") -> "Conditions":
        raw = raw or {}
        if not isinstance(raw, dict):
            raise ValidationError(f"{name} must be an object")
        unknown = set(raw) - {"entity_types", "impact_levels", "change_types"}
        if unknown:
            raise ValidationError(f"Unknown keys in {name}", details={"keys": sorted(unknown)})
        cond = cls(
            entity_types=_string_list(raw.get("entity_types"), f"{name}.entity_types"),
            impact_levels=_string_list(raw.get("impact_levels"), f"{name}.impact_levels"),
            change_types=_string_list(raw.get("change_types"), f"{name}.change_types"),
        )
        for values, allowed, label in (
            (cond.entity_types, ENTITY_TYPES, "entity_types"),
            (cond.impact_levels, IMPACT_LEVELS, "impact_levels"),
            (cond.change_types, CHANGE_TYPES, "change_types"),
        ):
            bad = [v for v in values if v not in allowed]
            if bad:
                raise ValidationError(f"Unknown {label} in {name}", details={label: bad})
        return cond

    def matches(self, event: ChangeEvent) -> bool:
        return (
            (not self.entity_types or event.entity_type in self.entity_types)
            and (not self.impact_levels or event.impact_level in self.impact_levels)
            and (not self.change_types or event.change_type in self.change_types)
        )


@dataclass(frozen=True)
class StepTemplate:
    step_number: int
    step_name: str
    approver_role: str
    approver_user_id: str | None = None
    timeout_hours: int | None = None
    escalation_roles: tuple[str, ...] = field(default_factory=tuple)
    is_optional: bool = False

    @classmethod
    def from_json(cls, raw, index: int) -> "StepTemplate":
        where = f"approval_steps[{index}]"
        if not isinstance(raw, dict):
            raise ValidationError(f"{where} must be an object")
        number = raw.get("step_number")
        if not isinstance(number, int) or isinstance(number, bool) or number < 1:
            raise ValidationError(f"{where}.step_number must be a positive integer")
        if not raw.get("step_name") or not raw.get("approver_role"):
            raise ValidationError(f"{where} needs step_name and approver_role")
        timeout = raw.get("timeout_hours")
        if timeout is not None and (not isinstance(timeout, int) or isinstance(timeout, bool) or timeout < 1):
            raise ValidationError(f"{where}.timeout_hours must be a positive integer")
        return cls(
            step_number=number,
            step_name=str(raw["step_name"]),
            approver_role=str(raw["approver_role"]),
            approver_user_id=raw.get("approver_user_id"),
            timeout_hours=timeout,
            escalation_roles=_string_list(raw.get("escalation_roles"), f"{where}.escalation_roles"),
            is_optional=bool(raw.get("is_optional", False)),
        )


def parse_steps(raw) -> tuple[StepTemplate, ...]:
    """Step templates ordered by step number; rejects empty lists and duplicate numbers."""
    if not isinstance(raw, list) or not raw:
        raise ValidationError("approval_steps must be a non-empty list")
    steps = sorted((StepTemplate.from_json(s, i) for i, s in enumerate(raw)), key=lambda t: t.step_number)
    numbers = [t.step_number for t in steps]
    if len(numbers) != len(set(numbers)):
        raise ValidationError("approval_steps step_number values must be unique")
    if all(t.is_optional for t in steps):
        raise ValidationError("approval_steps needs at least one required step")
    return tuple(steps)


# ═════════════════════════════════════════════════════════════════════════════
# Service
# ═════════════════════════════════════════════════════════════════════════════

class ApprovalWorkflowService:
    """Workflow selection, step decisions, escalation and workflow administration."""

    # ── Selection / start ─────────────────────────────────────────────────

    @staticmethod
    def select_workflow(event: ChangeEvent) -> ApprovalWorkflow | None:
        workflows = (
            ApprovalWorkflow.query
            .filter_by(project_id=event.project_id, is_active=True)
            .order_by(ApprovalWorkflow.id)
            .all()
        )
        for wf in workflows:
            if Conditions.from_json(wf.trigger_conditions).matches(event):
                return wf
        return None

    @staticmethod
    def start(event: ChangeEvent, *, gated: bool = False) -> None:
        """Bind the event to a workflow (once) and open its first step(s). Flushes only."""
        if event.workflow_id is not None or event.approval_steps:
            return

        wf = ApprovalWorkflowService.select_workflow(event)
        if wf is None:
            if gated:
                event.approval_required = True
                event.approval_status = "PENDING"
                NotificationService.enqueue(
                    project_id=event.project_id,
                    change_event_id=event.id,
                    notification_type="APPROVAL_REQUIRED",
                    priority="HIGH" if event.impact_level in ("HIGH", "CRITICAL") else "MEDIUM",
                    title=f"Approval required: {event.change_action} #{event.entity_id}",
                    message="A propagation rule requires approval before its actions are applied.",
                    roles=[current_app.config["ESCALATION_FALLBACK_ROLE"]],
                    action_required=True,
                )
            else:
                event.approval_required = False
                event.approval_status = "AUTO_APPROVED"
            db.session.flush()
            return

        event.workflow_id = wf.id
        if wf.auto_approve_conditions:
            auto = Conditions.from_json(wf.auto_approve_conditions, "auto_approve_conditions")
            if auto.matches(event):
                event.approval_required = False
                event.approval_status = "AUTO_APPROVED"
                db.session.flush()
                logger.info("Event %s auto-approved by workflow %s", event.id, wf.id,
                            extra={"change_event_id": event.id, "project_id": event.project_id})
                return

        event.approval_required = True
        event.approval_status = "PENDING"
        templates = parse_steps(wf.approval_steps)
        for template in (templates if wf.parallel_approval else templates[:1]):
            ApprovalWorkflowService._assign(event, wf, template)
        db.session.flush()
        logger.info("Event %s entered workflow %s (%s)", event.id, wf.id,
                    "parallel" if wf.parallel_approval else "sequential",
                    extra={"change_event_id": event.id, "project_id": event.project_id})

    @staticmethod
    def _assign(event: ChangeEvent, wf: ApprovalWorkflow, template: StepTemplate) -> ApprovalStepInstance:
        now = utcnow()
        hours = (template.timeout_hours or wf.default_timeout_hours
                 or current_app.config["APPROVAL_DEFAULT_TIMEOUT_HOURS"])
        step = ApprovalStepInstance(
            change_event=event,
            workflow=wf,
            step_number=template.step_number,
            step_name=template.step_name,
            approver_role=template.approver_role,
            approver_user_id=template.approver_user_id,
            is_optional=template.is_optional,
            status="PENDING",
            assigned_at=now,
            due_date=now + timedelta(hours=hours),
        )
        db.session.add(step)
        NotificationService.enqueue(
            project_id=event.project_id,
            change_event_id=event.id,
            notification_type="APPROVAL_REQUIRED",
            priority="HIGH" if event.impact_level in ("HIGH", "CRITICAL") else "MEDIUM",
            title=f"{template.step_name}: {event.change_action} #{event.entity_id}",
            message=f"Step {template.step_number} of workflow '{wf.name}' awaits your decision.",
            roles=[template.approver_role],
            user_ids=[template.approver_user_id] if template.approver_user_id else [],
            action_required=True,
            action_deadline=step.due_date,
        )
        return step

    # ── Escalation ────────────────────────────────────────────────────────

    @staticmethod
    def _escalation_roles(step: ApprovalStepInstance) -> list[str]:
        wf = step.workflow
        if wf is not None:
            try:
                templates = parse_steps(wf.approval_steps)
            except ValidationError:
                templates = ()
            for t in templates:
                if t.step_number == step.step_number and t.escalation_roles:
                    return list(t.escalation_roles)
            if wf.escalation_roles:
                return list(wf.escalation_roles)
        return [current_app.config["ESCALATION_FALLBACK_ROLE"]]

    @staticmethod
    def refresh_escalations(steps, now: datetime | None = None) -> bool:
        """Escalate overdue PENDING steps in place; returns True when anything changed."""
        now = now or utcnow()
        changed = False
        for step in steps:
            if step.status != "PENDING" or step.due_date is None:
                continue
            if step.change_event.approval_status != "PENDING":
                continue
            if as_utc(step.due_date) >= now:
                continue
            roles = ApprovalWorkflowService._escalation_roles(step)
            step.status = "ESCALATED"
            step.escalated_at = now
            step.escalated_to_role = roles[0]
            event = step.change_event
            NotificationService.enqueue(
                project_id=event.project_id,
                change_event_id=event.id,
                notification_type="APPROVAL_ESCALATED",
                priority="URGENT",
                title=f"Overdue approval escalated: {step.step_name}",
                message=f"Step {step.step_number} for {event.change_action} #{event.entity_id} "
                        f"passed its due date and was reassigned to {roles[0]}.",
                roles=roles,
                action_required=True,
            )
            logger.info("Escalated step %s of event %s to %s", step.id, event.id, roles[0],
                        extra={"step_id": step.id, "change_event_id": event.id})
            changed = True
        return changed

    @staticmethod
    def escalate_overdue(now: datetime | None = None) -> int:
        """Sweep all open steps of pending events; returns the number escalated."""
        steps = (
            ApprovalStepInstance.query
            .join(ChangeEvent, ApprovalStepInstance.change_event_id == ChangeEvent.id)
            .filter(ApprovalStepInstance.status == "PENDING", ChangeEvent.approval_status == "PENDING")
            .order_by(ApprovalStepInstance.id)
            .all()
        )
        ApprovalWorkflowService.refresh_escalations(steps, now)
        escalated = sum(1 for s in steps if s.status == "ESCALATED")
        db.session.commit()
        return escalated

    # ── Decisions ─────────────────────────────────────────────────────────

    @staticmethod
    def _get_event(event_id: int) -> ChangeEvent:
        event = db.session.get(ChangeEvent, event_id)
        if event is None:
            raise NotFoundError("ChangeEvent", event_id)
        return event

    @staticmethod
    def _require_pending(event: ChangeEvent) -> None:
        if event.approval_status != "PENDING":
            raise ConflictError("ChangeEvent", "approval_status", event.approval_status,
                                message=f"ChangeEvent {event.id} is {event.approval_status}, not PENDING")

    @staticmethod
    def _open_steps(event: ChangeEvent) -> list[ApprovalStepInstance]:
        steps = [s for s in event.approval_steps if s.status in OPEN_STEP_STATUSES]
        return sorted(steps, key=lambda s: s.step_number)

    @staticmethod
    def _complete(event: ChangeEvent, actor_id: str) -> None:
        now = utcnow()
        for step in ApprovalWorkflowService._open_steps(event):
            step.status = "BYPASSED"
            step.decided_by = actor_id
            step.decision_date = now
            step.comments = step.comments or "Not required for completion"
        event.approval_status = "APPROVED"
        event.approved_by = actor_id
        event.approved_at = now
        event.completed_at = now
        logger.info("Event %s approved", event.id,
                    extra={"change_event_id": event.id, "project_id": event.project_id})

    @staticmethod
    def _reject(event: ChangeEvent, actor_id: str, comments: str | None) -> None:
        from app.services.propagation import PropagationEngine

        event.approval_status = "REJECTED"
        event.completed_at = utcnow()
        cancelled = PropagationEngine.cancel_queued(event)
        NotificationService.enqueue(
            project_id=event.project_id,
            change_event_id=event.id,
            notification_type="CHANGE_REJECTED",
            priority="HIGH",
            title=f"Change rejected: {event.change_action} #{event.entity_id}",
            message=comments or f"Rejected by {actor_id}",
            user_ids=[event.triggered_by],
        )
        logger.info("Event %s rejected by %s (%d gated action(s) cancelled)", event.id, actor_id, cancelled,
                    extra={"change_event_id": event.id, "project_id": event.project_id})

    @staticmethod
    def _advance(event: ChangeEvent, decided: ApprovalStepInstance, actor_id: str) -> None:
        wf = decided.workflow
        open_required = [s for s in ApprovalWorkflowService._open_steps(event) if not s.is_optional]
        if wf.parallel_approval:
            if not open_required:
                ApprovalWorkflowService._complete(event, actor_id)
            return

        remaining = [t for t in parse_steps(wf.approval_steps) if t.step_number > decided.step_number]
        if not open_required and not any(not t.is_optional for t in remaining):
            ApprovalWorkflowService._complete(event, actor_id)
        elif remaining:
            ApprovalWorkflowService._assign(event, wf, remaining[0])

    @staticmethod
    def decide_step(step_id: int, decision: str, actor_id: str, comments: str | None = None) -> ApprovalStepInstance:
        """Approve or reject a single step; escalated steps stay decidable."""
        from app.services.propagation import PropagationEngine

        if decision not in ("APPROVED", "REJECTED"):
            raise ValidationError("decision must be APPROVED or REJECTED")
        if not actor_id:
            raise ValidationError("actor_id is required")
        step = db.session.get(ApprovalStepInstance, step_id)
        if step is None:
            raise NotFoundError("ApprovalStep", step_id)
        event = step.change_event
        ApprovalWorkflowService.refresh_escalations([step])
        ApprovalWorkflowService._require_pending(event)
        if step.status not in OPEN_STEP_STATUSES:
            raise ConflictError("ApprovalStep", "status", step.status,
                                message=f"Approval step {step_id} is already {step.status}")

        step.status = decision
        step.decided_by = actor_id
        step.decision_date = utcnow()
        step.comments = comments
        db.session.flush()

        if decision == "REJECTED":
            ApprovalWorkflowService._reject(event, actor_id, comments)
        else:
            ApprovalWorkflowService._advance(event, step, actor_id)
        db.session.commit()
        logger.info("Step %s of event %s %s by %s", step.id, event.id, decision.lower(), actor_id,
                    extra={"step_id": step.id, "change_event_id": event.id})

        if event.approval_status == "APPROVED":
            PropagationEngine.release_queued(event.id)
        return step

    @staticmethod
    def _current_step(event: ChangeEvent) -> ApprovalStepInstance | None:
        open_steps = ApprovalWorkflowService._open_steps(event)
        return open_steps[0] if open_steps else None

    @staticmethod
    def approve_change_event(event_id: int, actor_id: str, comments: str | None = None) -> ChangeEvent:
        """Approve the event's current step (or its manual gate)."""
        from app.services.propagation import PropagationEngine

        event = ApprovalWorkflowService._get_event(event_id)
        ApprovalWorkflowService.refresh_escalations(event.approval_steps)
        ApprovalWorkflowService._require_pending(event)
        step = ApprovalWorkflowService._current_step(event)
        if step is not None:
            ApprovalWorkflowService.decide_step(step.id, "APPROVED", actor_id, comments)
            return event
        if not actor_id:
            raise ValidationError("actor_id is required")
        ApprovalWorkflowService._complete(event, actor_id)
        db.session.commit()
        PropagationEngine.release_queued(event.id)
        return event

    @staticmethod
    def reject_change_event(event_id: int, actor_id: str, comments: str | None = None) -> ChangeEvent:
        event = ApprovalWorkflowService._get_event(event_id)
        ApprovalWorkflowService.refresh_escalations(event.approval_steps)
        ApprovalWorkflowService._require_pending(event)
        step = ApprovalWorkflowService._current_step(event)
        if step is not None:
            ApprovalWorkflowService.decide_step(step.id, "REJECTED", actor_id, comments)
            return event
        if not actor_id:
            raise ValidationError("actor_id is required")
        ApprovalWorkflowService._reject(event, actor_id, comments)
        db.session.commit()
        return event

    @staticmethod
    def bypass(event_id: int, actor_id: str, actor_role: str, reason: str) -> ChangeEvent:
        """Emergency approval: every open step BYPASSED and the event APPROVED."""
        from app.services.propagation import PropagationEngine

        event = ApprovalWorkflowService._get_event(event_id)
        ApprovalWorkflowService._require_pending(event)
        if not reason:
            raise ValidationError("A bypass reason is required")
        wf = db.session.get(ApprovalWorkflow, event.workflow_id) if event.workflow_id else None
        allowed = (wf.emergency_bypass_roles if wf is not None and wf.emergency_bypass_roles
                   else current_app.config["EMERGENCY_BYPASS_DEFAULT_ROLES"])
        if actor_role not in allowed:
            raise ValidationError(f"Role {actor_role!r} may not bypass approvals",
                                  details={"allowed_roles": list(allowed)})

        now = utcnow()
        for step in ApprovalWorkflowService._open_steps(event):
            step.status = "BYPASSED"
            step.decided_by = actor_id
            step.decision_date = now
            step.comments = reason
        ApprovalWorkflowService._complete(event, actor_id)
        db.session.commit()
        logger.warning("Event %s approvals bypassed by %s (%s): %s", event.id, actor_id, actor_role, reason,
                       extra={"change_event_id": event.id, "project_id": event.project_id})
        PropagationEngine.release_queued(event.id)
        return event

    @staticmethod
    def override_due_date(step_id: int, due_date: datetime) -> ApprovalStepInstance:
        step = db.session.get(ApprovalStepInstance, step_id)
        if step is None:
            raise NotFoundError("ApprovalStep", step_id)
        if step.status not in OPEN_STEP_STATUSES:
            raise ConflictError("ApprovalStep", "status", step.status,
                                message=f"Approval step {step_id} is already {step.status}")
        step.due_date = as_utc(due_date)
        db.session.commit()
        return step

    # ── Queries ───────────────────────────────────────────────────────────

    @staticmethod
    def get_pending_approvals(role: str | None = None, user_id: str | None = None,
                              project_id: int | None = None) -> list[ApprovalStepInstance]:
        q = (
            ApprovalStepInstance.query
            .join(ChangeEvent, ApprovalStepInstance.change_event_id == ChangeEvent.id)
            .filter(ApprovalStepInstance.status.in_(OPEN_STEP_STATUSES),
                    ChangeEvent.approval_status == "PENDING")
        )
        if project_id is not None:
            q = q.filter(ChangeEvent.project_id == project_id)
        steps = q.order_by(ApprovalStepInstance.due_date, ApprovalStepInstance.id).all()
        if ApprovalWorkflowService.refresh_escalations(steps):
            db.session.commit()
        if role:
            steps = [s for s in steps if role in (s.approver_role, s.escalated_to_role)]
        if user_id:
            steps = [s for s in steps if s.approver_user_id == user_id]
        return steps

    @staticmethod
    def get_approval_history(event_id: int) -> list[ApprovalStepInstance]:
        event = ApprovalWorkflowService._get_event(event_id)
        if ApprovalWorkflowService.refresh_escalations(event.approval_steps):
            db.session.commit()
        return list(event.approval_steps)

    # ── Workflow administration ───────────────────────────────────────────

    _WORKFLOW_FIELDS = (
        "name", "description", "trigger_conditions", "approval_steps", "parallel_approval",
        "auto_approve_conditions", "default_timeout_hours", "escalation_roles",
        "emergency_bypass_roles", "is_active",
    )

    @staticmethod
    def _validate_workflow(wf: ApprovalWorkflow) -> None:
        if not wf.name:
            raise ValidationError("name is required", details={"name": "required"})
        Conditions.from_json(wf.trigger_conditions)
        if wf.auto_approve_conditions:
            Conditions.from_json(wf.auto_approve_conditions, "auto_approve_conditions")
        parse_steps(wf.approval_steps)
        timeout = wf.default_timeout_hours
        if not isinstance(timeout, int) or isinstance(timeout, bool) or timeout < 1:
            raise ValidationError("default_timeout_hours must be a positive integer")
        _string_list(wf.escalation_roles, "escalation_roles")
        _string_list(wf.emergency_bypass_roles, "emergency_bypass_roles")

    @staticmethod
    def create_workflow(project_id: int, data: dict, actor_id: str = "system") -> ApprovalWorkflow:
        if db.session.get(Project, project_id) is None:
            raise NotFoundError("Project", project_id)
        wf = ApprovalWorkflow(
            project_id=project_id,
            trigger_conditions={},
            parallel_approval=False,
            default_timeout_hours=current_app.config["APPROVAL_DEFAULT_TIMEOUT_HOURS"],
            escalation_roles=[],
            emergency_bypass_roles=[],
            is_active=True,
            created_by=actor_id,
        )
        for key in ApprovalWorkflowService._WORKFLOW_FIELDS:
            if key in data:
                setattr(wf, key, data[key])
        ApprovalWorkflowService._validate_workflow(wf)
        db.session.add(wf)
        db.session.commit()
        logger.info("Created approval workflow %s for project %s", wf.id, project_id,
                    extra={"project_id": project_id})
        return wf

    @staticmethod
    def get_workflow(workflow_id: int) -> ApprovalWorkflow:
        wf = db.session.get(ApprovalWorkflow, workflow_id)
        if wf is None:
            raise NotFoundError("ApprovalWorkflow", workflow_id)
        return wf

    @staticmethod
    def update_workflow(workflow_id: int, data: dict) -> ApprovalWorkflow:
        """Edits apply to future selections; bound events keep their open steps."""
        wf = ApprovalWorkflowService.get_workflow(workflow_id)
        with db.session.no_autoflush:
            for key in ApprovalWorkflowService._WORKFLOW_FIELDS:
                if key in data:
                    setattr(wf, key, data[key])
            try:
                ApprovalWorkflowService._validate_workflow(wf)
            except ValidationError:
                db.session.rollback()
                raise
        db.session.commit()
        return wf

    @staticmethod
    def deactivate_workflow(workflow_id: int) -> ApprovalWorkflow:
        wf = ApprovalWorkflowService.get_workflow(workflow_id)
        wf.is_active = False
        db.session.commit()
        return wf

    @staticmethod
    def list_workflows(project_id: int, *, include_inactive: bool = False) -> list[ApprovalWorkflow]:
        if db.session.get(Project, project_id) is None:
            raise NotFoundError("Project", project_id)
        q = ApprovalWorkflow.query.filter_by(project_id=project_id)
        if not include_inactive:
            q = q.filter_by(is_active=True)
        return q.order_by(ApprovalWorkflow.id).all()
