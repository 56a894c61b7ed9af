"""Oblivious intersection engine.

Compares every slot of the first party's set against every slot of the
second party's set: a fixed 32 x 32 = 1024 evaluations regardless of how
many slots are populated. Each evaluation computes both outcomes and
writes through a mask-based select; there is no branch on fingerprint
values anywhere in the loop.

Fingerprints are non-negative integers below 2**128. Flags are 0 or 1.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass

from pcd.fingerprint import MAX_CONTACTS

WORD_BITS = 128


def ct_is_zero(x: int) -> int:
    """1 if x == 0 else 0, for 0 <= x < 2**128."""
    return ((x - 1) >> WORD_BITS) & 1


def ct_eq(a: int, b: int) -> int:
    """1 if a == b else 0."""
    return ct_is_zero(a ^ b)


def ct_select(flag: int, if_true: int, if_false: int) -> int:
    """if_true when flag == 1, if_false when flag == 0."""
    mask = -flag
    return (if_true & mask) | (if_false & ~mask)


@dataclass(frozen=True)
class IntersectionResult:
    first_matches: tuple[int, ...]
    second_matches: tuple[int, ...]
    match_count: int
    comparisons: int


def compute_intersection(
    first: Sequence[int],
    second: Sequence[int],
    can_proceed: int = 1,
) -> IntersectionResult:
    """Compute both parties' views of the intersection.

    Args:
        first: 32 fingerprint slots of the first party (zero = empty)
        second: 32 fingerprint slots of the second party
        can_proceed: 1 to record matches, 0 to run the same loop with no effect

    Returns:
        IntersectionResult; match_count counts matching pairs, which equals
        the number of shared contacts for deduplicated sets
    """
    if len(first) != MAX_CONTACTS or len(second) != MAX_CONTACTS:
        raise ValueError(f"Both sets must have exactly {MAX_CONTACTS} slots")

    first_matches = [0] * MAX_CONTACTS
    second_matches = [0] * MAX_CONTACTS
    match_count = 0
    comparisons = 0

    for i in range(MAX_CONTACTS):
        a = first[i]
        a_valid = 1 ^ ct_is_zero(a)

        for j in range(MAX_CONTACTS):
            b = second[j]
            b_valid = 1 ^ ct_is_zero(b)

            is_match = a_valid & b_valid & ct_eq(a, b) & can_proceed

            first_matches[i] = ct_select(is_match, a, first_matches[i])
            second_matches[j] = ct_select(is_match, b, second_matches[j])
            match_count = ct_select(is_match, match_count + 1, match_count)
            comparisons += 1

    return IntersectionResult(
        first_matches=tuple(first_matches),
        second_matches=tuple(second_matches),
        match_count=match_count,
        comparisons=comparisons,
    )
