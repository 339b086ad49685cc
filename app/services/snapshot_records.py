"""
Versioned snapshot record types.

Each project subtree is serialised as a tree of frozen dataclasses:

    process_flow:  FlowRecord → StepRecord / ConnectionRecord
    fmea:          FmeaRecord → ModeRecord → EffectRecord / CauseRecord → ControlRecord
    control_plan:  PlanRecord → ItemRecord

A stored blob is ``{"schema_version": N, "kind": "...", "records": [...]}``.
Decoding checks the schema tag and every record's shape, so a blob written
by an incompatible release (or damaged in storage) surfaces as
``SnapshotCorruptedError`` instead of a half-restored project.

Usage:
    records = records_from_models(FlowRecord, flows)
    blob = encode_subtree("process_flow", records)
    records = decode_subtree(blob, "process_flow", version_id=7)
    diff = diff_subtrees("process_flow", old_records, new_records)
"""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass, field
from typing import Any, ClassVar

from app.core.exceptions import SnapshotCorruptedError

SCHEMA_VERSION = 1
SUPPORTED_SCHEMA_VERSIONS = frozenset({1})


# ═════════════════════════════════════════════════════════════════════════════
# Record types
# ═════════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class StepRecord:
    ENTITY_TYPE: ClassVar[str] = "PROCESS_STEP"
    DISPLAY_FIELD: ClassVar[str] = "name"
    CHILDREN: ClassVar[dict] = {}

    id: int
    step_number: int
    name: str
    description: str | None = None
    step_type: str | None = None
    quality_requirements: str | None = None
    safety_requirements: str | None = None
    position_x: float | None = None
    position_y: float | None = None


@dataclass(frozen=True)
class ConnectionRecord:
    ENTITY_TYPE: ClassVar[str] = "STEP_CONNECTION"
    DISPLAY_FIELD: ClassVar[str] = "label"
    CHILDREN: ClassVar[dict] = {}

    id: int
    source_step_id: int
    target_step_id: int
    connection_type: str | None = None
    label: str | None = None


@dataclass(frozen=True)
class FlowRecord:
    ENTITY_TYPE: ClassVar[str] = "PROCESS_FLOW"
    DISPLAY_FIELD: ClassVar[str] = "name"
    CHILDREN: ClassVar[dict] = {"steps": StepRecord, "connections": ConnectionRecord}

    id: int
    name: str
    description: str | None = None
    version: str | None = None
    status: str | None = None
    steps: tuple = field(default_factory=tuple)
    connections: tuple = field(default_factory=tuple)


@dataclass(frozen=True)
class ControlRecord:
    ENTITY_TYPE: ClassVar[str] = "FAILURE_CONTROL"
    DISPLAY_FIELD: ClassVar[str] = "control_description"
    CHILDREN: ClassVar[dict] = {}

    id: int
    control_description: str
    control_type: str
    detection_rating: int
    process_step_id: int | None = None


@dataclass(frozen=True)
class CauseRecord:
    ENTITY_TYPE: ClassVar[str] = "FAILURE_CAUSE"
    DISPLAY_FIELD: ClassVar[str] = "cause_description"
    CHILDREN: ClassVar[dict] = {"controls": ControlRecord}

    id: int
    cause_description: str
    occurrence_rating: int
    controls: tuple = field(default_factory=tuple)


@dataclass(frozen=True)
class EffectRecord:
    ENTITY_TYPE: ClassVar[str] = "FAILURE_EFFECT"
    DISPLAY_FIELD: ClassVar[str] = "effect_description"
    CHILDREN: ClassVar[dict] = {}

    id: int
    effect_description: str
    effect_type: str | None = None
    safety_impact: bool | None = None
    regulatory_impact: bool | None = None


@dataclass(frozen=True)
class ModeRecord:
    ENTITY_TYPE: ClassVar[str] = "FAILURE_MODE"
    DISPLAY_FIELD: ClassVar[str] = "failure_mode"
    CHILDREN: ClassVar[dict] = {"effects": EffectRecord, "causes": CauseRecord}

    id: int
    item_function: str
    failure_mode: str
    severity_rating: int
    primary_process_step_id: int | None = None
    special_characteristic: bool | None = None
    effects: tuple = field(default_factory=tuple)
    causes: tuple = field(default_factory=tuple)


@dataclass(frozen=True)
class FmeaRecord:
    ENTITY_TYPE: ClassVar[str] = "FMEA"
    DISPLAY_FIELD: ClassVar[str] = "title"
    CHILDREN: ClassVar[dict] = {"failure_modes": ModeRecord}

    id: int
    fmea_number: str
    title: str
    fmea_type: str | None = None
    rpn_threshold: int | None = None
    severity_threshold: int | None = None
    status: str | None = None
    failure_modes: tuple = field(default_factory=tuple)


@dataclass(frozen=True)
class ItemRecord:
    ENTITY_TYPE: ClassVar[str] = "CONTROL_ITEM"
    DISPLAY_FIELD: ClassVar[str] = "operation_description"
    CHILDREN: ClassVar[dict] = {}

    id: int
    sequence_number: int
    operation_description: str
    process_step_id: int | None = None
    characteristic: str | None = None
    control_method: str | None = None
    sample_size_frequency: str | None = None
    control_type: str | None = None
    reaction_plan: str | None = None
    special_characteristic: bool | None = None
    customer_required: bool | None = None
    regulatory_requirement: bool | None = None
    safety_characteristic: bool | None = None
    verification_status: str | None = None
    linked_failure_mode_id: int | None = None
    linked_failure_cause_id: int | None = None
    linked_failure_control_id: int | None = None


@dataclass(frozen=True)
class PlanRecord:
    ENTITY_TYPE: ClassVar[str] = "CONTROL_PLAN"
    DISPLAY_FIELD: ClassVar[str] = "title"
    CHILDREN: ClassVar[dict] = {"items": ItemRecord}

    id: int
    control_plan_number: str
    title: str
    fmea_id: int | None = None
    plan_type: str | None = None
    status: str | None = None
    items: tuple = field(default_factory=tuple)


SUBTREE_ROOTS = {
    "process_flow": FlowRecord,
    "fmea": FmeaRecord,
    "control_plan": PlanRecord,
}


# ═════════════════════════════════════════════════════════════════════════════
# Field helpers
# ═════════════════════════════════════════════════════════════════════════════

def scalar_fields(record_cls) -> list[str]:
    """Dataclass fields that hold column values (not child collections)."""
    return [f.name for f in dataclasses.fields(record_cls) if f.name not in record_cls.CHILDREN]


def _required_fields(record_cls) -> set[str]:
    return {
        f.name for f in dataclasses.fields(record_cls)
        if f.default is dataclasses.MISSING and f.default_factory is dataclasses.MISSING
    }


def display_name(record) -> str:
    value = getattr(record, record.DISPLAY_FIELD, None)
    return str(value) if value is not None else f"{record.ENTITY_TYPE}#{record.id}"


# ═════════════════════════════════════════════════════════════════════════════
# ORM → records
# ═════════════════════════════════════════════════════════════════════════════

def record_from_model(record_cls, obj):
    """Build a record (recursively) from an ORM row with matching attribute names."""
    values = {name: getattr(obj, name) for name in scalar_fields(record_cls)}
    for child_attr, child_cls in record_cls.CHILDREN.items():
        values[child_attr] = tuple(record_from_model(child_cls, c) for c in getattr(obj, child_attr))
    return record_cls(**values)


def records_from_models(record_cls, objs) -> tuple:
    return tuple(record_from_model(record_cls, o) for o in objs)


def iter_records(records):
    """Depth-first walk yielding ``(record, parent_record)`` pairs."""
    stack = [(r, None) for r in reversed(list(records))]
    while stack:
        record, parent = stack.pop()
        yield record, parent
        children = []
        for child_attr in record.CHILDREN:
            children.extend(getattr(record, child_attr))
        stack.extend((c, record) for c in reversed(children))


# ═════════════════════════════════════════════════════════════════════════════
# Encode / decode
# ═════════════════════════════════════════════════════════════════════════════

def _record_to_json(record) -> dict:
    data = {name: getattr(record, name) for name in scalar_fields(type(record))}
    for child_attr in record.CHILDREN:
        data[child_attr] = [_record_to_json(c) for c in getattr(record, child_attr)]
    return data


def encode_subtree(kind: str, records) -> dict:
    if kind not in SUBTREE_ROOTS:
        raise ValueError(f"Unknown subtree kind: {kind}")
    return {
        "schema_version": SCHEMA_VERSION,
        "kind": kind,
        "records": [_record_to_json(r) for r in records],
    }


def _record_from_json(record_cls, data: Any, path: str):
    if not isinstance(data, dict):
        raise ValueError(f"{path}: expected object, got {type(data).__name__}")
    missing = _required_fields(record_cls) - set(data)
    if missing:
        raise ValueError(f"{path}: missing fields {sorted(missing)}")
    if not isinstance(data["id"], int):
        raise ValueError(f"{path}: id must be an integer")
    values = {name: data.get(name) for name in scalar_fields(record_cls)}
    for child_attr, child_cls in record_cls.CHILDREN.items():
        children = data.get(child_attr, [])
        if not isinstance(children, list):
            raise ValueError(f"{path}.{child_attr}: expected list")
        values[child_attr] = tuple(
            _record_from_json(child_cls, c, f"{path}.{child_attr}[{i}]")
            for i, c in enumerate(children)
        )
    return record_cls(**values)


def decode_subtree(blob: Any, kind: str, *, version_id: int | None = None) -> tuple:
    """Decode a stored blob into records, or raise SnapshotCorruptedError."""
    if not isinstance(blob, dict):
        raise SnapshotCorruptedError(version_id, f"{kind} snapshot is not an object")
    schema = blob.get("schema_version")
    if schema not in SUPPORTED_SCHEMA_VERSIONS:
        raise SnapshotCorruptedError(version_id, f"unsupported schema_version {schema!r} for {kind}")
    if blob.get("kind") != kind:
        raise SnapshotCorruptedError(version_id, f"expected kind {kind!r}, found {blob.get('kind')!r}")
    raw = blob.get("records")
    if not isinstance(raw, list):
        raise SnapshotCorruptedError(version_id, f"{kind} records missing")
    root_cls = SUBTREE_ROOTS[kind]
    try:
        return tuple(_record_from_json(root_cls, r, f"{kind}[{i}]") for i, r in enumerate(raw))
    except (ValueError, TypeError) as exc:
        raise SnapshotCorruptedError(version_id, str(exc)) from exc


# ═════════════════════════════════════════════════════════════════════════════
# Structural diff
# ═════════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class EntityChange:
    entity_type: str
    entity_id: int
    display_name: str
    fields: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "display_name": self.display_name,
            "fields": self.fields,
        }


@dataclass
class SubtreeDiff:
    kind: str
    added: list[EntityChange] = field(default_factory=list)
    removed: list[EntityChange] = field(default_factory=list)
    modified: list[EntityChange] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.added) + len(self.removed) + len(self.modified)

    def to_dict(self) -> dict:
        return {
            "kind": self.kind,
            "added": [c.to_dict() for c in self.added],
            "removed": [c.to_dict() for c in self.removed],
            "modified": [c.to_dict() for c in self.modified],
            "total_changes": self.total,
        }


def _flatten(records) -> dict:
    """(entity_type, id) → (record, scalar values incl. parent id)."""
    flat = {}
    for record, parent in iter_records(records):
        values = {name: getattr(record, name) for name in scalar_fields(type(record))}
        values["parent_id"] = parent.id if parent is not None else None
        flat[(record.ENTITY_TYPE, record.id)] = (record, values)
    return flat


def diff_subtrees(kind: str, old_records, new_records) -> SubtreeDiff:
    """Typed structural diff keyed by (entity type, id)."""
    old_flat = _flatten(old_records)
    new_flat = _flatten(new_records)
    result = SubtreeDiff(kind=kind)

    for key in sorted(new_flat.keys() - old_flat.keys()):
        record, values = new_flat[key]
        result.added.append(EntityChange(key[0], key[1], display_name(record),
                                         {k: {"old": None, "new": v} for k, v in values.items()}))
    for key in sorted(old_flat.keys() - new_flat.keys()):
        record, values = old_flat[key]
        result.removed.append(EntityChange(key[0], key[1], display_name(record),
                                           {k: {"old": v, "new": None} for k, v in values.items()}))
    for key in sorted(old_flat.keys() & new_flat.keys()):
        old_record, old_values = old_flat[key]
        new_record, new_values = new_flat[key]
        changed = {
            name: {"old": old_values[name], "new": new_values[name]}
            for name in old_values
            if old_values[name] != new_values.get(name)
        }
        if changed:
            result.modified.append(EntityChange(key[0], key[1], display_name(new_record), changed))
    return result
