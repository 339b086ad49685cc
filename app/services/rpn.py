"""
RPN (Risk Priority Number) rules.

RPN = severity × occurrence × detection. A failure mode has one severity,
each of its causes has an occurrence rating, and each cause may carry any
number of controls. The rules below decide which (cause, control) pair
represents the failure mode:

  - A cause is paired only with the DETECTION controls attached to that
    same cause. Prevention controls lower occurrence, they do not detect.
  - A cause with no detection control is paired with
    ``UNCONTROLLED_DETECTION`` (10, "no detection").
  - The failure mode's RPN is the worst case over all pairs; ties are
    broken by ``worst_case_key``.
  - A failure mode without causes has no RPN and no bucket.

Functions accept ORM rows and snapshot records alike: anything exposing
``severity_rating`` / ``causes[].occurrence_rating`` /
``causes[].controls[].control_type|detection_rating``.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable

UNCONTROLLED_DETECTION = 10

DEFAULT_BUCKETS = {"LOW": 1, "MEDIUM": 50, "HIGH": 100, "CRITICAL": 300}
HIGH_RISK_LEVELS = frozenset({"HIGH", "CRITICAL"})


@dataclass(frozen=True)
class RpnPairing:
    """One candidate (cause, control) pairing for a failure mode."""
    cause_id: int | None
    control_id: int | None
    severity: int
    occurrence: int
    detection: int

    @property
    def rpn(self) -> int:
        return self.severity * self.occurrence * self.detection

    def to_dict(self) -> dict:
        return {
            "cause_id": self.cause_id,
            "control_id": self.control_id,
            "severity": self.severity,
            "occurrence": self.occurrence,
            "detection": self.detection,
            "rpn": self.rpn,
        }


def candidate_pairings(mode) -> list[RpnPairing]:
    """Every (cause, detection-control) pairing of a failure mode."""
    severity = int(mode.severity_rating or 0)
    pairings = []
    for cause in mode.causes or ():
        occurrence = int(cause.occurrence_rating or 0)
        detection_controls = [
            c for c in (cause.controls or ()) if c.control_type == "DETECTION"
        ]
        if not detection_controls:
            pairings.append(RpnPairing(cause.id, None, severity, occurrence, UNCONTROLLED_DETECTION))
            continue
        for control in detection_controls:
            pairings.append(RpnPairing(
                cause.id, control.id, severity, occurrence, int(control.detection_rating or 0),
            ))
    return pairings


def worst_case_key(pairing: RpnPairing) -> tuple:
    """Ordering for the worst-case selection.

    Highest RPN wins. Equal RPNs prefer the weaker detection, then the more
    frequent cause, then the lowest cause id and control id so the choice
    never depends on query order.
    """
    return (
        pairing.rpn,
        pairing.detection,
        pairing.occurrence,
        -(pairing.cause_id or 0),
        -(pairing.control_id or 0),
    )


def worst_case_pairing(pairings: Iterable[RpnPairing]) -> RpnPairing | None:
    """Select the pairing that represents the failure mode, or None if there is none."""
    pairings = list(pairings)
    if not pairings:
        return None
    return max(pairings, key=worst_case_key)


def failure_mode_rpn(mode) -> RpnPairing | None:
    return worst_case_pairing(candidate_pairings(mode))


def rpn_bucket(rpn: int | None, buckets: dict | None = None) -> str | None:
    """Map an RPN onto LOW/MEDIUM/HIGH/CRITICAL using lower-bound cut points."""
    if rpn is None or rpn < 1:
        return None
    buckets = buckets or DEFAULT_BUCKETS
    level = None
    for name, lower in sorted(buckets.items(), key=lambda kv: kv[1]):
        if rpn >= lower:
            level = name
    return level
