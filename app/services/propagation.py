"""
Propagation Rule Engine.

A PropagationRule maps a change on one entity type to an action on a
dependent entity type. Rules are parsed into a closed set of action
variants before anything runs:

    ValidateAction  → ReviewFlag rows on dependent entities (no data change)
    UpdateAction    → mapped fields copied onto dependents, chained UPDATE events
    CreateAction    → control-plan items generated from FMEA controls, chained CREATE events
    NotifyAction    → ChangeNotification enqueued

Matching: active project-or-global rules for (entity type, change type)
whose field patterns full-match at least one changed field (no patterns
⇒ always), lowest ``priority`` first.

Loop guards: a rule never fires for an event whose ``rule_chain`` already
contains it, and chains stop at ``PROPAGATION_MAX_HOPS``.

Rules with ``requires_approval`` queue their action as a QueuedRuleAction
while the event's approval is PENDING; the approval engine releases or
cancels them.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Union

from flask import current_app
from sqlalchemy import or_

from app.core.exceptions import ConflictError, NotFoundError, ValidationError
from app.models import db
from app.models.change import (
    CHANGE_TYPES,
    ENTITY_TYPES,
    REVIEW_FLAG_STATUSES,
    TARGET_ACTIONS,
    ChangeEvent,
    PropagationRule,
    QueuedRuleAction,
    ReviewFlag,
)
from app.models.notification import NOTIFICATION_PRIORITIES, NOTIFICATION_TYPES
from app.models.project import Project
from app.services.dependency_graph import display_snapshot, related_for_event
from app.services.notification import NotificationService
from app.utils.helpers import utcnow

logger = logging.getLogger(__name__)

# Target entity types reachable through the dependency lookups.
LINKED_TARGETS = ("PROCESS_STEP", "FAILURE_MODE", "CONTROL_ITEM")

UPDATABLE_FIELDS = {
    "PROCESS_STEP": {"name", "description", "step_type", "quality_requirements", "safety_requirements"},
    "FAILURE_MODE": {"item_function", "failure_mode", "severity_rating", "special_characteristic"},
    "CONTROL_ITEM": {
        "operation_description", "characteristic", "control_method", "sample_size_frequency",
        "control_type", "reaction_plan", "special_characteristic", "customer_required",
        "regulatory_requirement", "safety_characteristic", "verification_status",
    },
}

CREATE_SOURCES = ("FAILURE_CONTROL", "FAILURE_MODE")


# ═════════════════════════════════════════════════════════════════════════════
# Action variants
# ═════════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class FieldMapping:
    """Copy ``source`` from the event's new values, or set a constant ``value``."""
    target: str
    source: str | None = None
    value: Any = None

    def resolve(self, values: dict) -> tuple[bool, Any]:
        if self.source is None:
            return True, self.value
        if self.source in values:
            return True, values[self.source]
        return False, None


@dataclass(frozen=True)
class ValidateAction:
    rule_id: int
    target_entity_type: str
    reason: str


@dataclass(frozen=True)
class UpdateAction:
    rule_id: int
    target_entity_type: str
    mappings: tuple[FieldMapping, ...]


@dataclass(frozen=True)
class CreateAction:
    rule_id: int
    target_entity_type: str
    mappings: tuple[FieldMapping, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class NotifyAction:
    rule_id: int
    notification_type: str
    priority: str
    recipient_roles: tuple[str, ...]
    title: str


RuleAction = Union[ValidateAction, UpdateAction, CreateAction, NotifyAction]


def _compile_patterns(patterns) -> list[re.Pattern]:
    if patterns is None:
        return []
    if not isinstance(patterns, list) or not all(isinstance(p, str) for p in patterns):
        raise ValidationError("source_field_patterns must be a list of strings")
    try:
        return [re.compile(p) for p in patterns]
    except re.error as exc:
        raise ValidationError(f"Invalid field pattern: {exc}") from exc


def _parse_mappings(raw, target_entity_type: str, *, restrict: set | None) -> tuple[FieldMapping, ...]:
    if raw is None:
        return ()
    if not isinstance(raw, list):
        raise ValidationError("target_field_mappings must be a list")
    mappings = []
    for i, m in enumerate(raw):
        if not isinstance(m, dict) or not isinstance(m.get("target"), str) or not m["target"]:
            raise ValidationError(f"target_field_mappings[{i}] needs a 'target' field name")
        if ("source" in m) == ("value" in m):
            raise ValidationError(f"target_field_mappings[{i}] needs exactly one of 'source' or 'value'")
        if "source" in m and not isinstance(m["source"], str):
            raise ValidationError(f"target_field_mappings[{i}].source must be a field name")
        if restrict is not None and m["target"] not in restrict:
            raise ValidationError(
                f"Field {m['target']!r} cannot be set on {target_entity_type}",
                details={"allowed": sorted(restrict)},
            )
        mappings.append(FieldMapping(target=m["target"], source=m.get("source"), value=m.get("value")))
    return tuple(mappings)


def parse_action(rule: PropagationRule) -> RuleAction:
    """Validate a rule and return its action variant; raises ValidationError."""
    if rule.source_entity_type not in ENTITY_TYPES:
        raise ValidationError(f"Unknown source_entity_type {rule.source_entity_type!r}")
    if rule.target_entity_type not in ENTITY_TYPES:
        raise ValidationError(f"Unknown target_entity_type {rule.target_entity_type!r}")
    if rule.source_change_type not in CHANGE_TYPES:
        raise ValidationError(f"Unknown source_change_type {rule.source_change_type!r}")
    _compile_patterns(rule.source_field_patterns)

    action = rule.target_action
    if action == "VALIDATE":
        if rule.target_entity_type not in LINKED_TARGETS:
            raise ValidationError(f"VALIDATE targets must be one of {LINKED_TARGETS}")
        reason = (rule.action_config or {}).get("reason") or rule.rule_name
        return ValidateAction(rule.id, rule.target_entity_type, reason)

    if action == "UPDATE":
        if rule.target_entity_type not in UPDATABLE_FIELDS:
            raise ValidationError(f"UPDATE targets must be one of {sorted(UPDATABLE_FIELDS)}")
        mappings = _parse_mappings(rule.target_field_mappings, rule.target_entity_type,
                                   restrict=UPDATABLE_FIELDS[rule.target_entity_type])
        if not mappings:
            raise ValidationError("UPDATE rules need at least one field mapping")
        return UpdateAction(rule.id, rule.target_entity_type, mappings)

    if action == "CREATE":
        if rule.target_entity_type != "CONTROL_ITEM" or rule.source_entity_type not in CREATE_SOURCES:
            raise ValidationError("CREATE rules generate CONTROL_ITEM rows from FAILURE_CONTROL or FAILURE_MODE")
        mappings = _parse_mappings(rule.target_field_mappings, rule.target_entity_type,
                                   restrict=UPDATABLE_FIELDS["CONTROL_ITEM"])
        return CreateAction(rule.id, rule.target_entity_type, mappings)

    if action == "NOTIFY":
        cfg = rule.action_config or {}
        ntype = cfg.get("notification_type", "RULE_TRIGGERED")
        priority = cfg.get("priority", "MEDIUM")
        roles = cfg.get("recipient_roles", [])
        if ntype not in NOTIFICATION_TYPES:
            raise ValidationError(f"Unknown notification_type {ntype!r}")
        if priority not in NOTIFICATION_PRIORITIES:
            raise ValidationError(f"Unknown priority {priority!r}")
        if not isinstance(roles, list):
            raise ValidationError("recipient_roles must be a list")
        return NotifyAction(rule.id, ntype, priority, tuple(roles), cfg.get("title") or rule.rule_name)

    raise ValidationError(f"Unknown target_action {action!r}", details={"allowed": sorted(TARGET_ACTIONS)})


def _matches_fields(rule: PropagationRule, changed_fields) -> bool:
    try:
        patterns = _compile_patterns(rule.source_field_patterns)
    except ValidationError:
        # Let dispatch fail loudly on the malformed rule.
        return True
    if not patterns:
        return True
    return any(p.fullmatch(f) for p in patterns for f in changed_fields or [])


# ═════════════════════════════════════════════════════════════════════════════
# Engine
# ═════════════════════════════════════════════════════════════════════════════

class PropagationEngine:
    """Rule matching, dispatch and rule administration."""

    # ── Matching ──────────────────────────────────────────────────────────

    @staticmethod
    def matching_rules(event: ChangeEvent) -> list[PropagationRule]:
        candidates = (
            PropagationRule.query
            .filter(PropagationRule.is_active.is_(True),
                    PropagationRule.source_entity_type == event.entity_type,
                    PropagationRule.source_change_type == event.change_type,
                    or_(PropagationRule.project_id == event.project_id,
                        PropagationRule.project_id.is_(None)))
            .order_by(PropagationRule.priority, PropagationRule.id)
            .all()
        )
        chain = set(event.rule_chain or [])
        rules = [r for r in candidates if r.id not in chain and _matches_fields(r, event.changed_fields)]

        max_hops = current_app.config["PROPAGATION_MAX_HOPS"]
        if rules and (event.hop_count or 0) >= max_hops:
            logger.warning("Event %s reached the propagation hop ceiling (%d); %d rule(s) not applied",
                           event.id, max_hops, len(rules),
                           extra={"change_event_id": event.id, "project_id": event.project_id})
            return []
        return rules

    @staticmethod
    def requires_gate(event: ChangeEvent) -> bool:
        return any(r.requires_approval for r in PropagationEngine.matching_rules(event))

    # ── Propagation ───────────────────────────────────────────────────────

    @staticmethod
    def propagate(event_id: int) -> ChangeEvent:
        """Apply matching rules for a committed event in one transaction.

        A failure rolls the whole chain back and is recorded on the event.
        """
        event = db.session.get(ChangeEvent, event_id)
        if event is None:
            raise NotFoundError("ChangeEvent", event_id)
        try:
            PropagationEngine._run(event)
            db.session.commit()
        except Exception as exc:
            db.session.rollback()
            logger.exception("Propagation failed for event %s", event_id,
                             extra={"change_event_id": event_id})
            PropagationEngine._record_failure(event_id, exc)
        return db.session.get(ChangeEvent, event_id)

    @staticmethod
    def propagate_chained(event: ChangeEvent) -> None:
        """Propagate a rule-induced event inside the caller's transaction."""
        PropagationEngine._run(event)

    @staticmethod
    def _run(event: ChangeEvent) -> None:
        rules = PropagationEngine.matching_rules(event)
        if not rules:
            event.propagation_required = False
            event.propagation_status = "NOT_REQUIRED"
            return

        event.propagation_required = True
        queued = 0
        for rule in rules:
            action = parse_action(rule)
            if rule.requires_approval and event.approval_status == "PENDING":
                db.session.add(QueuedRuleAction(change_event_id=event.id, rule_id=rule.id, status="QUEUED"))
                queued += 1
                continue
            PropagationEngine.apply(event, rule, action)
        db.session.flush()
        event.propagation_status = "PENDING" if queued else "COMPLETED"
        if not queued and event.approval_status in ("AUTO_APPROVED", "APPROVED"):
            event.completed_at = event.completed_at or utcnow()
        logger.info("Propagated event %s: %d rule(s) applied, %d queued",
                    event.id, len(rules) - queued, queued,
                    extra={"change_event_id": event.id, "project_id": event.project_id})

    @staticmethod
    def _record_failure(event_id: int, exc: Exception) -> None:
        event = db.session.get(ChangeEvent, event_id)
        event.propagation_status = "FAILED"
        event.propagation_error = str(exc)[:2000]
        NotificationService.enqueue(
            project_id=event.project_id,
            change_event_id=event.id,
            notification_type="PROPAGATION_FAILED",
            priority="HIGH",
            title=f"Propagation failed: {event.change_action} #{event.entity_id}",
            message=event.propagation_error,
            roles=[current_app.config["ESCALATION_FALLBACK_ROLE"]],
            action_required=True,
        )
        db.session.commit()

    # ── Gated actions ─────────────────────────────────────────────────────

    @staticmethod
    def _queued(event_id: int) -> list[QueuedRuleAction]:
        return (
            QueuedRuleAction.query
            .join(PropagationRule, QueuedRuleAction.rule_id == PropagationRule.id)
            .filter(QueuedRuleAction.change_event_id == event_id, QueuedRuleAction.status == "QUEUED")
            .order_by(PropagationRule.priority, PropagationRule.id)
            .all()
        )

    @staticmethod
    def release_queued(event_id: int) -> ChangeEvent:
        """Apply the event's queued actions now that it is APPROVED."""
        event = db.session.get(ChangeEvent, event_id)
        if event is None:
            raise NotFoundError("ChangeEvent", event_id)
        try:
            released = 0
            for qa in PropagationEngine._queued(event_id):
                qa.resolved_at = utcnow()
                if not qa.rule.is_active:
                    qa.status = "CANCELLED"
                    continue
                PropagationEngine.apply(event, qa.rule, parse_action(qa.rule))
                qa.status = "RELEASED"
                released += 1
            if event.propagation_status in ("PENDING", "NOT_REQUIRED"):
                event.propagation_status = "COMPLETED" if event.propagation_required else "NOT_REQUIRED"
            db.session.commit()
            if released:
                logger.info("Released %d gated action(s) for event %s", released, event_id,
                            extra={"change_event_id": event_id, "project_id": event.project_id})
        except Exception as exc:
            db.session.rollback()
            logger.exception("Releasing gated actions failed for event %s", event_id,
                             extra={"change_event_id": event_id})
            PropagationEngine._record_failure(event_id, exc)
        return db.session.get(ChangeEvent, event_id)

    @staticmethod
    def cancel_queued(event: ChangeEvent) -> int:
        """Cancel gated actions of a rejected event; caller commits."""
        queued = PropagationEngine._queued(event.id)
        for qa in queued:
            qa.status = "CANCELLED"
            qa.resolved_at = utcnow()
        if queued and event.propagation_status == "PENDING":
            event.propagation_status = "COMPLETED"
        return len(queued)

    # ── Dispatch ──────────────────────────────────────────────────────────

    @staticmethod
    def apply(event: ChangeEvent, rule: PropagationRule, action: RuleAction) -> None:
        if isinstance(action, ValidateAction):
            PropagationEngine._apply_validate(event, rule, action)
        elif isinstance(action, UpdateAction):
            PropagationEngine._apply_update(event, rule, action)
        elif isinstance(action, CreateAction):
            PropagationEngine._apply_create(event, rule, action)
        elif isinstance(action, NotifyAction):
            PropagationEngine._apply_notify(event, rule, action)
        else:
            raise ValidationError(f"Unsupported action {type(action).__name__}")

    @staticmethod
    def _targets(event: ChangeEvent, target_entity_type: str) -> list:
        return related_for_event(event).of_type(target_entity_type)

    @staticmethod
    def _apply_validate(event, rule, action: ValidateAction) -> None:
        fields = ", ".join(event.changed_fields or []) or "record"
        for target in PropagationEngine._targets(event, action.target_entity_type):
            snap = display_snapshot(action.target_entity_type, target)
            db.session.add(ReviewFlag(
                project_id=event.project_id,
                entity_type=action.target_entity_type,
                entity_id=target.id,
                display_name=snap["name"][:500],
                reason=f"{action.reason}: {event.change_action} #{event.entity_id} ({fields})",
                rule_id=rule.id,
                change_event_id=event.id,
            ))

    @staticmethod
    def _apply_update(event, rule, action: UpdateAction) -> None:
        from app.services.change_log import append_event, process_chained_event

        source_values = event.new_values or {}
        for target in PropagationEngine._targets(event, action.target_entity_type):
            old, new = {}, {}
            for mapping in action.mappings:
                present, value = mapping.resolve(source_values)
                current = getattr(target, mapping.target)
                if present and current != value:
                    old[mapping.target] = current
                    new[mapping.target] = value
            if not new:
                continue
            for name, value in new.items():
                setattr(target, name, value)
            db.session.flush()
            chained = append_event(
                entity_type=action.target_entity_type, entity_id=target.id, change_type="UPDATE",
                old_values=old, new_values=new, actor_id=event.triggered_by,
                project_id=event.project_id, parent=event, origin_rule_id=rule.id,
            )
            process_chained_event(chained)

    @staticmethod
    def _apply_create(event, rule, action: CreateAction) -> None:
        from app.services.control_plan_generation import generate_for_event

        overrides = {}
        for mapping in action.mappings:
            present, value = mapping.resolve(event.new_values or {})
            if present:
                overrides[mapping.target] = value
        generate_for_event(event, rule, overrides)

    @staticmethod
    def _apply_notify(event, rule, action: NotifyAction) -> None:
        NotificationService.enqueue(
            project_id=event.project_id,
            change_event_id=event.id,
            notification_type=action.notification_type,
            priority=action.priority,
            title=action.title,
            message=f"{event.change_action} #{event.entity_id}: "
                    f"{', '.join(event.changed_fields or []) or 'no field changes'}",
            roles=action.recipient_roles,
        )

    # ── Rule administration ───────────────────────────────────────────────

    _RULE_FIELDS = (
        "project_id", "rule_name", "description", "source_entity_type", "source_change_type",
        "source_field_patterns", "target_entity_type", "target_action", "target_field_mappings",
        "action_config", "priority", "is_active", "requires_approval",
    )
    _REQUIRED = ("rule_name", "source_entity_type", "source_change_type", "target_entity_type", "target_action")

    @staticmethod
    def _apply_fields(rule: PropagationRule, data: dict) -> None:
        for key in PropagationEngine._RULE_FIELDS:
            if key in data:
                setattr(rule, key, data[key])
        if rule.priority is None or not isinstance(rule.priority, int) or isinstance(rule.priority, bool):
            raise ValidationError("priority must be an integer")
        if rule.project_id is not None and db.session.get(Project, rule.project_id) is None:
            raise NotFoundError("Project", rule.project_id)
        parse_action(rule)

    @staticmethod
    def create_rule(data: dict, actor_id: str = "system") -> PropagationRule:
        missing = [k for k in PropagationEngine._REQUIRED if not data.get(k)]
        if missing:
            raise ValidationError("Missing required fields", details={k: "required" for k in missing})
        rule = PropagationRule(priority=100, is_active=True, requires_approval=False,
                               source_field_patterns=[], target_field_mappings=[], action_config={},
                               created_by=actor_id)
        with db.session.no_autoflush:
            PropagationEngine._apply_fields(rule, data)
        db.session.add(rule)
        db.session.commit()
        logger.info("Created propagation rule %s (%s)", rule.id, rule.rule_name, extra={"rule_id": rule.id})
        return rule

    @staticmethod
    def get_rule(rule_id: int) -> PropagationRule:
        rule = db.session.get(PropagationRule, rule_id)
        if rule is None:
            raise NotFoundError("PropagationRule", rule_id)
        return rule

    @staticmethod
    def update_rule(rule_id: int, data: dict) -> PropagationRule:
        rule = PropagationEngine.get_rule(rule_id)
        try:
            with db.session.no_autoflush:
                PropagationEngine._apply_fields(rule, data)
        except (ValidationError, NotFoundError):
            db.session.rollback()
            raise
        db.session.commit()
        return rule

    @staticmethod
    def delete_rule(rule_id: int) -> PropagationRule:
        """Soft delete; queued actions of a deactivated rule are cancelled on release."""
        rule = PropagationEngine.get_rule(rule_id)
        rule.is_active = False
        db.session.commit()
        logger.info("Deactivated propagation rule %s", rule_id, extra={"rule_id": rule_id})
        return rule

    @staticmethod
    def list_rules(project_id: int | None = None, *, include_inactive: bool = False) -> list[PropagationRule]:
        q = PropagationRule.query
        if project_id is not None:
            q = q.filter(or_(PropagationRule.project_id == project_id, PropagationRule.project_id.is_(None)))
        if not include_inactive:
            q = q.filter(PropagationRule.is_active.is_(True))
        return q.order_by(PropagationRule.priority, PropagationRule.id).all()

    # ── Review flags ──────────────────────────────────────────────────────

    @staticmethod
    def list_review_flags(project_id: int, status: str | None = None) -> list[ReviewFlag]:
        if db.session.get(Project, project_id) is None:
            raise NotFoundError("Project", project_id)
        q = ReviewFlag.query.filter_by(project_id=project_id)
        if status:
            if status not in REVIEW_FLAG_STATUSES:
                raise ValidationError(f"Unknown review flag status {status!r}")
            q = q.filter_by(status=status)
        return q.order_by(ReviewFlag.id.desc()).all()

    @staticmethod
    def resolve_review_flag(flag_id: int, actor_id: str) -> ReviewFlag:
        flag = db.session.get(ReviewFlag, flag_id)
        if flag is None:
            raise NotFoundError("ReviewFlag", flag_id)
        if flag.status == "RESOLVED":
            raise ConflictError("ReviewFlag", "status", flag.status,
                                message=f"Review flag {flag_id} is already resolved")
        flag.status = "RESOLVED"
        flag.resolved_by = actor_id
        flag.resolved_at = utcnow()
        db.session.commit()
        return flag


# ═════════════════════════════════════════════════════════════════════════════
# Default rule set
# ═════════════════════════════════════════════════════════════════════════════

DEFAULT_RULES = [
    {
        "rule_name": "Process step deleted: review failure modes",
        "source_entity_type": "PROCESS_STEP", "source_change_type": "DELETE",
        "target_entity_type": "FAILURE_MODE", "target_action": "VALIDATE",
        "priority": 5,
    },
    {
        "rule_name": "Process step changed: review failure modes",
        "source_entity_type": "PROCESS_STEP", "source_change_type": "UPDATE",
        "source_field_patterns": ["name", "description", "step_type", ".*_requirements"],
        "target_entity_type": "FAILURE_MODE", "target_action": "VALIDATE",
        "priority": 10,
    },
    {
        "rule_name": "FMEA control changed: sync control plan items",
        "source_entity_type": "FAILURE_CONTROL", "source_change_type": "UPDATE",
        "source_field_patterns": ["control_description", "control_type"],
        "target_entity_type": "CONTROL_ITEM", "target_action": "UPDATE",
        "target_field_mappings": [
            {"source": "control_description", "target": "control_method"},
            {"source": "control_type", "target": "control_type"},
            {"value": "REQUIRES_UPDATE", "target": "verification_status"},
        ],
        "priority": 20,
    },
    {
        "rule_name": "Severity changed: notify quality",
        "source_entity_type": "FAILURE_MODE", "source_change_type": "UPDATE",
        "source_field_patterns": ["severity_rating"],
        "target_entity_type": "FAILURE_MODE", "target_action": "NOTIFY",
        "action_config": {"notification_type": "RULE_TRIGGERED", "priority": "HIGH",
                          "recipient_roles": ["QUALITY_ENGINEER", "QUALITY_MANAGER"]},
        "priority": 30,
    },
    {
        "rule_name": "FMEA control created: generate control plan item",
        "source_entity_type": "FAILURE_CONTROL", "source_change_type": "CREATE",
        "target_entity_type": "CONTROL_ITEM", "target_action": "CREATE",
        "priority": 40,
    },
]


def seed_default_rules(actor_id: str = "system") -> int:
    """Insert the global default rules that are not present yet; returns the count added."""
    existing = {
        name for (name,) in db.session.query(PropagationRule.rule_name)
        .filter(PropagationRule.project_id.is_(None))
    }
    created = 0
    for data in DEFAULT_RULES:
        if data["rule_name"] in existing:
            continue
        PropagationEngine.create_rule(dict(data), actor_id=actor_id)
        created += 1
    return created
