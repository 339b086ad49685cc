"""
Control plan generation from FMEA controls.

Every FMEA control without a control-plan item linked to it in the target
plan yields one new item. Items are built by an iterator over the
unlinked controls and inserted as one batch.

Usage:
    result = generate_control_plan_items(project_id, actor_id="jdoe")
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from typing import Iterator

from sqlalchemy import func

from app.core.exceptions import NotFoundError, ValidationError
from app.models import db
from app.models.control_plan import ControlPlan, ControlPlanItem
from app.models.fmea import FailureCause, FailureControl, FailureMode, Fmea
from app.models.process_flow import ProcessStep
from app.models.project import Project
from app.services.project_lock import ensure_unlocked
from app.services.snapshot_records import ItemRecord, scalar_fields

logger = logging.getLogger(__name__)

_RELATIONSHIPS = {"PREVENTION": "PREVENTS", "DETECTION": "DETECTS"}


@dataclass(frozen=True)
class ControlLink:
    """Which FMEA rows a generated control-plan item stands for."""
    failure_mode_id: int
    failure_cause_id: int
    failure_control_id: int
    relationship: str

    def to_dict(self) -> dict:
        return {
            "failure_mode_id": self.failure_mode_id,
            "failure_cause_id": self.failure_cause_id,
            "failure_control_id": self.failure_control_id,
            "relationship": self.relationship,
        }


@dataclass
class GenerationResult:
    control_plan_id: int
    batch_id: str | None = None
    items: list = field(default_factory=list)
    links: list = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "control_plan_id": self.control_plan_id,
            "batch_id": self.batch_id,
            "created_count": len(self.items),
            "items": [i.to_dict() for i in self.items],
            "links": [link.to_dict() for link in self.links],
        }


def item_values(item: ControlPlanItem) -> dict:
    values = {name: getattr(item, name) for name in scalar_fields(ItemRecord)}
    values["control_plan_id"] = item.control_plan_id
    return values


def resolve_control_plan(project_id: int, control_plan_id: int | None = None) -> ControlPlan | None:
    """The plan to generate into: the given one, else the project's first plan."""
    if control_plan_id is not None:
        plan = db.session.get(ControlPlan, control_plan_id)
        if plan is None:
            raise NotFoundError("ControlPlan", control_plan_id)
        if plan.project_id != project_id:
            raise ValidationError(f"Control plan {control_plan_id} does not belong to project {project_id}")
        return plan
    return ControlPlan.query.filter_by(project_id=project_id).order_by(ControlPlan.id).first()


def iter_unlinked_controls(plan: ControlPlan, control_ids=None) -> Iterator[tuple]:
    """Yield ``(control, cause, mode)`` for FMEA controls not yet linked in ``plan``."""
    linked = (
        db.session.query(ControlPlanItem.linked_failure_control_id)
        .filter(ControlPlanItem.control_plan_id == plan.id,
                ControlPlanItem.linked_failure_control_id.isnot(None))
    )
    q = (
        db.session.query(FailureControl, FailureCause, FailureMode)
        .join(FailureCause, FailureControl.failure_cause_id == FailureCause.id)
        .join(FailureMode, FailureCause.failure_mode_id == FailureMode.id)
        .join(Fmea, FailureMode.fmea_id == Fmea.id)
        .filter(Fmea.project_id == plan.project_id)
        .filter(FailureControl.id.notin_(linked))
    )
    if plan.fmea_id is not None:
        q = q.filter(Fmea.id == plan.fmea_id)
    if control_ids is not None:
        q = q.filter(FailureControl.id.in_(list(control_ids) or [-1]))
    yield from q.order_by(FailureControl.id).all()


def plan_items(plan: ControlPlan, control_ids=None, overrides: dict | None = None):
    """Yield ``(ControlPlanItem, ControlLink)`` pairs, numbered after the plan's last item."""
    seq = (
        db.session.query(func.max(ControlPlanItem.sequence_number))
        .filter(ControlPlanItem.control_plan_id == plan.id)
        .scalar()
    ) or 0
    for control, cause, mode in iter_unlinked_controls(plan, control_ids):
        seq += 1
        step_id = control.process_step_id or mode.primary_process_step_id
        step = db.session.get(ProcessStep, step_id) if step_id is not None else None
        operation = f"Step {step.step_number}: {step.name}" if step is not None else mode.item_function
        item = ControlPlanItem(
            control_plan_id=plan.id,
            sequence_number=seq,
            process_step_id=step.id if step is not None else None,
            operation_description=operation,
            characteristic=mode.item_function,
            control_method=control.control_description,
            control_type=control.control_type,
            sample_size_frequency="TBD",
            special_characteristic=bool(mode.special_characteristic),
            verification_status="PENDING",
            linked_failure_mode_id=mode.id,
            linked_failure_cause_id=cause.id,
            linked_failure_control_id=control.id,
        )
        for name, value in (overrides or {}).items():
            setattr(item, name, value)
        link = ControlLink(mode.id, cause.id, control.id,
                           _RELATIONSHIPS.get(control.control_type, "ADDRESSES"))
        yield item, link


def generate_control_plan_items(project_id: int, *, control_plan_id: int | None = None,
                                actor_id: str = "system") -> GenerationResult:
    """Create items for all unlinked FMEA controls; each item gets a CREATE event."""
    from app.services.change_log import append_event, process_event

    if db.session.get(Project, project_id) is None:
        raise NotFoundError("Project", project_id)
    ensure_unlocked(project_id)
    plan = resolve_control_plan(project_id, control_plan_id)
    if plan is None:
        raise ValidationError(f"Project {project_id} has no control plan to generate into")

    pairs = list(plan_items(plan))
    result = GenerationResult(control_plan_id=plan.id)
    if not pairs:
        return result

    result.items = [item for item, _ in pairs]
    result.links = [link for _, link in pairs]
    result.batch_id = f"cpgen-{uuid.uuid4().hex[:12]}"
    db.session.add_all(result.items)
    db.session.flush()

    event_ids = [
        append_event(
            entity_type="CONTROL_ITEM", entity_id=item.id, change_type="CREATE",
            old_values=None, new_values=item_values(item), actor_id=actor_id,
            project_id=project_id, batch_id=result.batch_id,
        ).id
        for item in result.items
    ]
    db.session.commit()
    logger.info("Generated %d control plan items into plan %s", len(result.items), plan.id,
                extra={"project_id": project_id})

    for event_id in event_ids:
        process_event(event_id)
    return result


def generate_for_event(event, rule, overrides: dict | None = None) -> list:
    """Rule-driven generation inside the caller's transaction; returns created items."""
    from app.services.change_log import append_event, process_chained_event

    if event.entity_type == "FAILURE_CONTROL":
        control_ids = [event.entity_id]
    else:
        control_ids = [
            cid for (cid,) in db.session.query(FailureControl.id)
            .join(FailureCause, FailureControl.failure_cause_id == FailureCause.id)
            .filter(FailureCause.failure_mode_id == event.entity_id)
        ]
    plan = resolve_control_plan(event.project_id)
    if plan is None:
        logger.warning("Rule %s: project %s has no control plan, nothing generated",
                       rule.id, event.project_id,
                       extra={"rule_id": rule.id, "change_event_id": event.id})
        return []

    items = [item for item, _ in plan_items(plan, control_ids, overrides)]
    db.session.add_all(items)
    db.session.flush()
    for item in items:
        chained = append_event(
            entity_type="CONTROL_ITEM", entity_id=item.id, change_type="CREATE",
            old_values=None, new_values=item_values(item), actor_id=event.triggered_by,
            project_id=event.project_id, parent=event, origin_rule_id=rule.id,
        )
        process_chained_event(chained)
    return items
