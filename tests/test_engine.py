"""Tests for the oblivious intersection engine."""

import pytest

from app import engine
from app.engine import compute_intersection, ct_eq, ct_is_zero, ct_select
from pcd.fingerprint import MAX_CONTACTS, build_contact_set, fingerprint

BIG = (1 << 128) - 1


def _slots(contacts):
    return build_contact_set(contacts).slots


class TestPrimitives:
    @pytest.mark.parametrize("x,expected", [(0, 1), (1, 0), (BIG, 0), (1 << 127, 0)])
    def test_ct_is_zero(self, x, expected):
        assert ct_is_zero(x) == expected

    def test_ct_eq(self):
        assert ct_eq(BIG, BIG) == 1
        assert ct_eq(BIG, BIG - 1) == 0
        assert ct_eq(0, 0) == 1

    def test_ct_select(self):
        assert ct_select(1, BIG, 5) == BIG
        assert ct_select(0, BIG, 5) == 5
        assert ct_select(1, 0, BIG) == 0


class TestIntersection:
    def test_disjoint(self):
        result = compute_intersection(_slots(["a@x.com", "b@x.com"]), _slots(["c@x.com"]))
        assert result.match_count == 0
        assert result.first_matches == (0,) * MAX_CONTACTS
        assert result.second_matches == (0,) * MAX_CONTACTS

    def test_full_overlap(self):
        contacts = [f"user{i}@x.com" for i in range(32)]
        first = _slots(contacts)
        second = _slots(list(reversed(contacts)))
        result = compute_intersection(first, second)
        assert result.match_count == 32
        assert result.first_matches == first
        assert result.second_matches == second

    def test_partial_overlap_keeps_slot_positions(self):
        first = _slots(["a@x.com", "shared1@x.com", "b@x.com", "shared2@x.com"])
        second = _slots(["shared2@x.com", "c@x.com", "shared1@x.com"])
        result = compute_intersection(first, second)

        assert result.match_count == 2
        assert result.first_matches[:4] == (
            0,
            fingerprint("shared1@x.com"),
            0,
            fingerprint("shared2@x.com"),
        )
        assert result.second_matches[:3] == (
            fingerprint("shared2@x.com"),
            0,
            fingerprint("shared1@x.com"),
        )

    def test_empty_slots_never_match(self):
        result = compute_intersection(_slots([]), _slots([]))
        assert result.match_count == 0

    def test_can_proceed_zero_records_nothing(self):
        slots = _slots(["a@x.com"])
        result = compute_intersection(slots, slots, can_proceed=0)
        assert result.match_count == 0
        assert result.first_matches == (0,) * MAX_CONTACTS
        assert result.comparisons == 1024

    def test_rejects_wrong_slot_count(self):
        with pytest.raises(ValueError):
            compute_intersection([0] * 31, [0] * 32)

    def test_rerun_gives_same_result(self):
        first, second = _slots(["a@x.com", "b@x.com"]), _slots(["b@x.com"])
        assert compute_intersection(first, second) == compute_intersection(first, second)


class TestFixedCost:
    @pytest.mark.parametrize(
        "first,second",
        [
            ([], []),
            (["a@x.com"], []),
            ([f"u{i}@x.com" for i in range(32)], [f"u{i}@x.com" for i in range(32)]),
            ([f"u{i}@x.com" for i in range(5)], [f"v{i}@x.com" for i in range(17)]),
        ],
    )
    def test_always_1024_equality_checks(self, monkeypatch, first, second):
        calls = []
        real = engine.ct_eq

        def counting_eq(a, b):
            calls.append(1)
            return real(a, b)

        monkeypatch.setattr(engine, "ct_eq", counting_eq)
        result = compute_intersection(_slots(first), _slots(second))
        assert len(calls) == 1024
        assert result.comparisons == 1024
