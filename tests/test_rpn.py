"""
RPN pairing and bucket rules.

Covers:
  - Cause × detection-control pairing, prevention controls ignored
  - Uncontrolled causes rated at detection 10
  - Worst-case selection and its tie-break
  - Bucketing with lower-bound cut points
"""
from types import SimpleNamespace

from app.services.rpn import (
    UNCONTROLLED_DETECTION,
    RpnPairing,
    candidate_pairings,
    failure_mode_rpn,
    rpn_bucket,
    worst_case_pairing,
)


def _control(cid, control_type, detection):
    return SimpleNamespace(id=cid, control_type=control_type, detection_rating=detection)


def _cause(cid, occurrence, controls=()):
    return SimpleNamespace(id=cid, occurrence_rating=occurrence, controls=list(controls))


def _mode(severity, causes=()):
    return SimpleNamespace(severity_rating=severity, causes=list(causes))


class TestPairing:
    def test_prevention_controls_do_not_detect(self):
        mode = _mode(8, [_cause(1, 3, [_control(10, "PREVENTION", 2), _control(11, "DETECTION", 4)])])
        pairings = candidate_pairings(mode)
        assert [(p.cause_id, p.control_id) for p in pairings] == [(1, 11)]
        assert pairings[0].rpn == 96

    def test_cause_without_detection_uses_uncontrolled_rating(self):
        mode = _mode(5, [_cause(1, 2, [_control(10, "PREVENTION", 3)])])
        pairing = failure_mode_rpn(mode)
        assert pairing.control_id is None
        assert pairing.detection == UNCONTROLLED_DETECTION
        assert pairing.rpn == 100

    def test_controls_pair_only_with_their_own_cause(self):
        mode = _mode(6, [
            _cause(1, 2, [_control(10, "DETECTION", 2)]),
            _cause(2, 4, [_control(20, "DETECTION", 5)]),
        ])
        pairs = {(p.cause_id, p.control_id) for p in candidate_pairings(mode)}
        assert pairs == {(1, 10), (2, 20)}

    def test_mode_without_causes_has_no_rpn(self):
        assert failure_mode_rpn(_mode(9)) is None


class TestWorstCase:
    def test_highest_rpn_wins(self):
        mode = _mode(7, [
            _cause(1, 2, [_control(10, "DETECTION", 3)]),
            _cause(2, 5, [_control(20, "DETECTION", 6)]),
        ])
        assert failure_mode_rpn(mode).rpn == 7 * 5 * 6

    def test_tie_prefers_weaker_detection(self):
        a = RpnPairing(cause_id=1, control_id=10, severity=5, occurrence=4, detection=3)
        b = RpnPairing(cause_id=2, control_id=20, severity=5, occurrence=2, detection=6)
        assert a.rpn == b.rpn
        assert worst_case_pairing([a, b]) is b

    def test_full_tie_prefers_lowest_ids(self):
        a = RpnPairing(cause_id=2, control_id=20, severity=5, occurrence=2, detection=3)
        b = RpnPairing(cause_id=1, control_id=10, severity=5, occurrence=2, detection=3)
        assert worst_case_pairing([a, b]) is b
        assert worst_case_pairing([b, a]) is b

    def test_empty_is_none(self):
        assert worst_case_pairing([]) is None

    def test_orm_rows(self, graph):
        assert failure_mode_rpn(graph.m1).rpn == 96
        assert failure_mode_rpn(graph.m2).rpn == 30


class TestBuckets:
    def test_lower_bounds(self):
        assert rpn_bucket(1) == "LOW"
        assert rpn_bucket(49) == "LOW"
        assert rpn_bucket(50) == "MEDIUM"
        assert rpn_bucket(99) == "MEDIUM"
        assert rpn_bucket(100) == "HIGH"
        assert rpn_bucket(300) == "CRITICAL"
        assert rpn_bucket(1000) == "CRITICAL"

    def test_unrated(self):
        assert rpn_bucket(None) is None
        assert rpn_bucket(0) is None

    def test_custom_buckets(self):
        buckets = {"LOW": 1, "MEDIUM": 20, "HIGH": 40, "CRITICAL": 80}
        assert rpn_bucket(30, buckets) == "MEDIUM"
        assert rpn_bucket(96, buckets) == "CRITICAL"
