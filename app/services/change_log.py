"""
Change Event Log.

Append-only ledger of mutations to tracked engineering records. The CRUD
layer calls ``record_change`` for every create/update/delete with the full
before/after values; that single call drives the rest of the pipeline:

    1. append + commit the ChangeEvent (commits the caller's write with it)
    2. impact analysis            → ImpactAnalysis, event.impact_level
    3. approval workflow selection → AUTO_APPROVED or PENDING + steps
    4. propagation                 → non-gated rule actions applied, gated ones queued

Steps 2-4 run after the event is durable; their failures are recorded on
the event and never undo the originating write.

Usage:
    from app.services.change_log import record_change, list_change_events
    event = record_change("PROCESS_STEP", step.id, "UPDATE", old, new,
                          actor_id="jdoe", project_id=project.id)
"""

from __future__ import annotations

import json
import logging
from datetime import datetime

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError

from app.core.exceptions import ConflictError, NotFoundError, ValidationError
from app.models import db
from app.models.change import CHANGE_TYPES, ENTITY_TYPES, IMPACT_LEVELS, APPROVAL_STATUSES, ChangeEvent
from app.models.project import Project
from app.services.dependency_graph import dependent_refs, related_entities
from app.services.project_lock import ensure_unlocked

logger = logging.getLogger(__name__)

_MODULES_BY_ENTITY = {
    "PROCESS_FLOW": ["process_flow", "fmea", "control_plan"],
    "PROCESS_STEP": ["process_flow", "fmea", "control_plan"],
    "STEP_CONNECTION": ["process_flow"],
    "FMEA": ["fmea", "control_plan"],
    "FAILURE_MODE": ["fmea", "control_plan"],
    "FAILURE_EFFECT": ["fmea"],
    "FAILURE_CAUSE": ["fmea", "control_plan"],
    "FAILURE_CONTROL": ["fmea", "control_plan"],
    "CONTROL_PLAN": ["control_plan"],
    "CONTROL_ITEM": ["control_plan"],
    "PROJECT": ["process_flow", "fmea", "control_plan"],
}

_ACTION_VERBS = {"CREATE": "Created", "UPDATE": "Updated", "DELETE": "Deleted", "RESTORE": "Restored"}


# ── Pure helpers ─────────────────────────────────────────────────────────────

def _canonical(value) -> str:
    return json.dumps(value, sort_keys=True, default=str)


def compute_changed_fields(change_type: str, old_values: dict | None, new_values: dict | None) -> list[str]:
    """Field names touched by a change.

    CREATE lists every new key, DELETE every old key. Otherwise a field
    counts when it exists on only one side or its values differ.
    """
    old_values = old_values or {}
    new_values = new_values or {}
    if change_type == "CREATE":
        return sorted(new_values)
    if change_type == "DELETE":
        return sorted(old_values)
    changed = set(old_values.keys() ^ new_values.keys())
    for key in old_values.keys() & new_values.keys():
        if _canonical(old_values[key]) != _canonical(new_values[key]):
            changed.add(key)
    return sorted(changed)


def affected_modules(entity_type: str) -> list[str]:
    return list(_MODULES_BY_ENTITY.get(entity_type, []))


def describe_action(change_type: str, entity_type: str) -> str:
    return f"{_ACTION_VERBS.get(change_type, change_type)} {entity_type.replace('_', ' ').lower()}"


def _next_entity_sequence(entity_type: str, entity_id: int) -> int:
    current = (
        db.session.query(func.max(ChangeEvent.entity_sequence))
        .filter(ChangeEvent.entity_type == entity_type, ChangeEvent.entity_id == entity_id)
        .scalar()
    )
    return (current or 0) + 1


# ── Append ───────────────────────────────────────────────────────────────────

def append_event(
    *,
    entity_type: str,
    entity_id: int,
    change_type: str,
    old_values: dict | None,
    new_values: dict | None,
    actor_id: str,
    project_id: int,
    batch_id: str | None = None,
    impact_level: str = "MEDIUM",
    parent: ChangeEvent | None = None,
    origin_rule_id: int | None = None,
    restored_version_id: int | None = None,
    refs: dict | None = None,
) -> ChangeEvent:
    """Add a ChangeEvent to the session and flush; the caller owns the transaction.

    A concurrent writer taking the same entity sequence surfaces as
    ConflictError after the session is rolled back.
    """
    if entity_type not in ENTITY_TYPES:
        raise ValidationError(f"Unknown entity_type {entity_type!r}",
                              details={"entity_type": sorted(ENTITY_TYPES)})
    if change_type not in CHANGE_TYPES:
        raise ValidationError(f"Unknown change_type {change_type!r}",
                              details={"change_type": sorted(CHANGE_TYPES)})
    if not actor_id:
        raise ValidationError("actor_id is required")

    rule_chain = []
    hop_count = 0
    if parent is not None:
        rule_chain = list(parent.rule_chain or [])
        if origin_rule_id is not None:
            rule_chain.append(origin_rule_id)
        hop_count = (parent.hop_count or 0) + 1
        batch_id = batch_id or parent.batch_id or f"evt-{parent.id}"

    event = ChangeEvent(
        project_id=project_id,
        entity_type=entity_type,
        entity_id=entity_id,
        entity_sequence=_next_entity_sequence(entity_type, entity_id),
        change_type=change_type,
        change_action=describe_action(change_type, entity_type),
        old_values=old_values,
        new_values=new_values,
        changed_fields=compute_changed_fields(change_type, old_values, new_values),
        impact_level=impact_level,
        affected_modules=affected_modules(entity_type),
        approval_status="AUTO_APPROVED",
        triggered_by=actor_id,
        batch_id=batch_id,
        origin_rule_id=origin_rule_id,
        rule_chain=rule_chain,
        hop_count=hop_count,
        parent_event_id=parent.id if parent is not None else None,
        restored_version_id=restored_version_id,
        dependent_refs=refs,
    )
    db.session.add(event)
    try:
        db.session.flush()
    except IntegrityError as exc:
        db.session.rollback()
        raise ConflictError(
            "ChangeEvent", "entity_sequence", event.entity_sequence,
            message=f"Concurrent change to {entity_type}#{entity_id}; retry the request",
        ) from exc
    return event


# ── Pipeline ─────────────────────────────────────────────────────────────────

def process_event(event_id: int) -> ChangeEvent:
    """Run analysis, workflow selection and propagation for a committed event."""
    from app.services.approval_workflow import ApprovalWorkflowService
    from app.services.impact_analysis import ImpactAnalysisService
    from app.services.propagation import PropagationEngine

    event = db.session.get(ChangeEvent, event_id)
    ImpactAnalysisService.analyze(event)

    gated = PropagationEngine.requires_gate(event)
    ApprovalWorkflowService.start(event, gated=gated)
    db.session.commit()

    PropagationEngine.propagate(event_id)
    return db.session.get(ChangeEvent, event_id)


def process_chained_event(event: ChangeEvent) -> None:
    """Same pipeline for a rule-induced event, inside the caller's transaction."""
    from app.services.approval_workflow import ApprovalWorkflowService
    from app.services.impact_analysis import ImpactAnalysisService
    from app.services.propagation import PropagationEngine

    ImpactAnalysisService.analyze(event, commit=False)
    ApprovalWorkflowService.start(event, gated=PropagationEngine.requires_gate(event))
    PropagationEngine.propagate_chained(event)


def record_change(
    entity_type: str,
    entity_id: int,
    change_type: str,
    old_values: dict | None,
    new_values: dict | None,
    actor_id: str,
    project_id: int,
    batch_id: str | None = None,
) -> ChangeEvent:
    """Record one mutation and drive it through the change pipeline.

    Commits the current session (including the caller's pending write)
    before analysis and propagation run. Dependents are resolved before
    anything is flushed, so a delete that is still pending in the session
    keeps the children it had.
    """
    with db.session.no_autoflush:
        if db.session.get(Project, project_id) is None:
            raise NotFoundError("Project", project_id)
        ensure_unlocked(project_id)
        values = {**(old_values or {}), **(new_values or {})}
        refs = dependent_refs(related_entities(entity_type, entity_id, values))

    event = append_event(
        entity_type=entity_type,
        entity_id=entity_id,
        change_type=change_type,
        old_values=old_values,
        new_values=new_values,
        actor_id=actor_id,
        project_id=project_id,
        batch_id=batch_id,
        refs=refs,
    )
    db.session.commit()
    logger.info("Recorded %s %s#%s (event %s, seq %s)",
                change_type, entity_type, entity_id, event.id, event.entity_sequence,
                extra={"project_id": project_id, "change_event_id": event.id})
    return process_event(event.id)


# ── Query ────────────────────────────────────────────────────────────────────

_FILTERS = ("entity_type", "entity_id", "change_type", "approval_status", "impact_level", "batch_id")


def list_change_events(project_id: int, filters: dict | None = None, *, limit: int = 50, offset: int = 0):
    """Return (events, total) newest first.

    Filters: entity_type, entity_id, change_type, approval_status,
    impact_level, batch_id, since, until (datetimes on triggered_at).
    """
    if db.session.get(Project, project_id) is None:
        raise NotFoundError("Project", project_id)
    filters = filters or {}

    if filters.get("change_type") and filters["change_type"] not in CHANGE_TYPES:
        raise ValidationError(f"Unknown change_type {filters['change_type']!r}")
    if filters.get("approval_status") and filters["approval_status"] not in APPROVAL_STATUSES:
        raise ValidationError(f"Unknown approval_status {filters['approval_status']!r}")
    if filters.get("impact_level") and filters["impact_level"] not in IMPACT_LEVELS:
        raise ValidationError(f"Unknown impact_level {filters['impact_level']!r}")

    q = ChangeEvent.query.filter_by(project_id=project_id)
    for key in _FILTERS:
        value = filters.get(key)
        if value is not None and value != "":
            q = q.filter(getattr(ChangeEvent, key) == value)
    since: datetime | None = filters.get("since")
    until: datetime | None = filters.get("until")
    if since is not None:
        q = q.filter(ChangeEvent.triggered_at >= since)
    if until is not None:
        q = q.filter(ChangeEvent.triggered_at <= until)

    total = q.count()
    events = q.order_by(ChangeEvent.id.desc()).offset(offset).limit(limit).all()
    return events, total


def get_change_event(event_id: int) -> ChangeEvent:
    """Fetch one event; overdue approval steps are escalated as part of the read."""
    from app.services.approval_workflow import ApprovalWorkflowService

    event = db.session.get(ChangeEvent, event_id)
    if event is None:
        raise NotFoundError("ChangeEvent", event_id)
    if ApprovalWorkflowService.refresh_escalations(event.approval_steps):
        db.session.commit()
    return event
