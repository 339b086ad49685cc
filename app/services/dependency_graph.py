"""
Dependency lookups across the engineering graph.

Shared by the propagation engine (which targets to act on) and impact
analysis (what a change touches). Chains followed:

    process step  → failure modes (primary step) → control items (linked mode)
    process step  → control items (process step)
    failure mode  → its primary step, control items linked to it
    failure cause → parent failure mode, control items linked to it
    failure ctrl  → parent cause's mode, its step, control items linked to it
    control item  → its step, its linked failure mode

Parent ids are read from the event's values first, so a row that was
already deleted still resolves its context. Children of a deleted row
cannot be found that way once the delete is flushed (``ON DELETE SET
NULL`` detaches them), so ``record_change`` stores the dependents it
resolved before the commit as ``ChangeEvent.dependent_refs`` and
``related_for_event`` reads those back.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from sqlalchemy import or_

from app.models import db
from app.models.control_plan import ControlPlan, ControlPlanItem
from app.models.fmea import FailureCause, FailureControl, FailureEffect, FailureMode, Fmea
from app.models.process_flow import ProcessFlow, ProcessStep, StepConnection

ENTITY_MODELS = {
    "PROCESS_FLOW": ProcessFlow,
    "PROCESS_STEP": ProcessStep,
    "STEP_CONNECTION": StepConnection,
    "FMEA": Fmea,
    "FAILURE_MODE": FailureMode,
    "FAILURE_EFFECT": FailureEffect,
    "FAILURE_CAUSE": FailureCause,
    "FAILURE_CONTROL": FailureControl,
    "CONTROL_PLAN": ControlPlan,
    "CONTROL_ITEM": ControlPlanItem,
}

_DISPLAY_ATTR = {
    "PROCESS_FLOW": "name",
    "PROCESS_STEP": "name",
    "STEP_CONNECTION": "label",
    "FMEA": "title",
    "FAILURE_MODE": "failure_mode",
    "FAILURE_EFFECT": "effect_description",
    "FAILURE_CAUSE": "cause_description",
    "FAILURE_CONTROL": "control_description",
    "CONTROL_PLAN": "title",
    "CONTROL_ITEM": "operation_description",
}


def load_entity(entity_type: str, entity_id: int | None):
    model = ENTITY_MODELS.get(entity_type)
    if model is None or entity_id is None:
        return None
    return db.session.get(model, entity_id)


def display_snapshot(entity_type: str, obj) -> dict:
    """Lightweight id + name copy that stays valid after the row is deleted."""
    name = getattr(obj, _DISPLAY_ATTR.get(entity_type, "id"), None)
    return {"id": obj.id, "name": str(name) if name is not None else f"{entity_type}#{obj.id}"}


@dataclass
class RelatedEntities:
    """Rows related to a changed entity, excluding the entity itself."""
    process_steps: list = field(default_factory=list)
    failure_modes: list = field(default_factory=list)
    control_items: list = field(default_factory=list)

    def of_type(self, entity_type: str) -> list:
        return {
            "PROCESS_STEP": self.process_steps,
            "FAILURE_MODE": self.failure_modes,
            "CONTROL_ITEM": self.control_items,
        }.get(entity_type, [])

    @property
    def count(self) -> int:
        return len(self.process_steps) + len(self.failure_modes) + len(self.control_items)


def _add(bucket: list, obj):
    if obj is None:
        return
    if all(o.id != obj.id for o in bucket):
        bucket.append(obj)


def _items_for_modes(mode_ids: list[int]) -> list:
    if not mode_ids:
        return []
    return ControlPlanItem.query.filter(ControlPlanItem.linked_failure_mode_id.in_(mode_ids)).all()


def _value(values: dict, name: str, obj=None):
    if name in values and values[name] is not None:
        return values[name]
    return getattr(obj, name, None) if obj is not None else None


def related_entities(entity_type: str, entity_id: int, values: dict | None = None) -> RelatedEntities:
    """Resolve steps / failure modes / control items touched by a change."""
    values = values or {}
    obj = load_entity(entity_type, entity_id)
    rel = RelatedEntities()

    if entity_type == "PROCESS_STEP":
        modes = FailureMode.query.filter_by(primary_process_step_id=entity_id).order_by(FailureMode.id).all()
        for m in modes:
            _add(rel.failure_modes, m)
        items = ControlPlanItem.query.filter(or_(
            ControlPlanItem.process_step_id == entity_id,
            ControlPlanItem.linked_failure_mode_id.in_([m.id for m in modes] or [-1]),
        )).order_by(ControlPlanItem.id).all()
        for i in items:
            _add(rel.control_items, i)

    elif entity_type == "PROCESS_FLOW":
        steps = ProcessStep.query.filter_by(process_flow_id=entity_id).order_by(ProcessStep.id).all()
        for s in steps:
            _add(rel.process_steps, s)
            nested = related_entities("PROCESS_STEP", s.id)
            for m in nested.failure_modes:
                _add(rel.failure_modes, m)
            for i in nested.control_items:
                _add(rel.control_items, i)

    elif entity_type == "FAILURE_MODE":
        _add(rel.process_steps, load_entity("PROCESS_STEP", _value(values, "primary_process_step_id", obj)))
        for i in _items_for_modes([entity_id]):
            _add(rel.control_items, i)

    elif entity_type == "FMEA":
        modes = FailureMode.query.filter_by(fmea_id=entity_id).order_by(FailureMode.id).all()
        for m in modes:
            _add(rel.failure_modes, m)
        for i in _items_for_modes([m.id for m in modes]):
            _add(rel.control_items, i)

    elif entity_type in ("FAILURE_CAUSE", "FAILURE_EFFECT"):
        mode = load_entity("FAILURE_MODE", _value(values, "failure_mode_id", obj))
        _add(rel.failure_modes, mode)
        if entity_type == "FAILURE_CAUSE":
            for i in ControlPlanItem.query.filter_by(linked_failure_cause_id=entity_id).all():
                _add(rel.control_items, i)

    elif entity_type == "FAILURE_CONTROL":
        cause = load_entity("FAILURE_CAUSE", _value(values, "failure_cause_id", obj))
        if cause is not None:
            _add(rel.failure_modes, cause.mode)
        _add(rel.process_steps, load_entity("PROCESS_STEP", _value(values, "process_step_id", obj)))
        for i in ControlPlanItem.query.filter_by(linked_failure_control_id=entity_id).all():
            _add(rel.control_items, i)

    elif entity_type == "CONTROL_ITEM":
        _add(rel.process_steps, load_entity("PROCESS_STEP", _value(values, "process_step_id", obj)))
        _add(rel.failure_modes, load_entity("FAILURE_MODE", _value(values, "linked_failure_mode_id", obj)))

    elif entity_type == "CONTROL_PLAN":
        for i in ControlPlanItem.query.filter_by(control_plan_id=entity_id).order_by(ControlPlanItem.id).all():
            _add(rel.control_items, i)

    return rel


def dependent_refs(rel: RelatedEntities) -> dict:
    """Ids per entity type, the form stored on ``ChangeEvent.dependent_refs``."""
    return {
        "PROCESS_STEP": [s.id for s in rel.process_steps],
        "FAILURE_MODE": [m.id for m in rel.failure_modes],
        "CONTROL_ITEM": [i.id for i in rel.control_items],
    }


def related_for_event(event) -> RelatedEntities:
    """Dependents of an event: the ids stored when it was recorded, else a live lookup."""
    refs = event.dependent_refs
    if refs is None:
        values = {**(event.old_values or {}), **(event.new_values or {})}
        return related_entities(event.entity_type, event.entity_id, values)

    rel = RelatedEntities()
    for entity_type in ("PROCESS_STEP", "FAILURE_MODE", "CONTROL_ITEM"):
        for entity_id in refs.get(entity_type, []):
            _add(rel.of_type(entity_type), load_entity(entity_type, entity_id))
    return rel
