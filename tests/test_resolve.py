"""Tests for mapping match results back to contacts."""

from pcd.fingerprint import MAX_CONTACTS, build_contact_set, fingerprint
from pcd.resolve import resolve_matches
from pcd.results import MatchResult


def _result(contacts):
    matches = build_contact_set(contacts).slots
    return MatchResult(matches=matches, match_count=len([m for m in matches if m]))


def test_returns_matching_originals_in_input_order():
    original = ["zed@x.com", "(555) 123-4567", "amy@x.com", "bo@x.com"]
    result = _result(["amy@x.com", "+15551234567"])
    assert resolve_matches(original, result) == ["(555) 123-4567", "amy@x.com"]


def test_no_matches():
    assert resolve_matches(["a@x.com"], MatchResult.empty()) == []


def test_every_spelling_of_a_match_is_returned():
    original = ["Amy@X.com", "amy@x.com ", "other@x.com"]
    assert resolve_matches(original, _result(["amy@x.com"])) == ["Amy@X.com", "amy@x.com "]


def test_zero_slots_are_ignored():
    matches = (0,) * (MAX_CONTACTS - 1) + (fingerprint("a@x.com"),)
    result = MatchResult(matches=matches, match_count=1)
    assert resolve_matches(["a@x.com", "b@x.com"], result) == ["a@x.com"]


def test_country_code_applies_to_originals():
    result = _result(["+445551234"])
    assert resolve_matches(["555 1234"], result, default_country_code="44") == ["555 1234"]


def test_match_result_values_round_trip():
    result = _result(["a@x.com", "b@x.com"])
    assert MatchResult.from_values(result.to_values()) == result


def test_partial_overlap_between_two_lists():
    first = ["alice@example.com", "+15551234567", "carol@example.com"]
    second = ["bob@example.com", "+15551234567", "dave@example.com"]
    shared = set(build_contact_set(first).fingerprints()) & set(
        build_contact_set(second).fingerprints()
    )
    result = _result(["+15551234567"])
    assert result.fingerprints() == shared
    assert resolve_matches(first, result) == ["+15551234567"]
    assert resolve_matches(second, result) == ["+15551234567"]
