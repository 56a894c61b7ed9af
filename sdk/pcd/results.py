"""Result types returned by the compute boundary to a party."""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass

from .errors import InputError
from .fingerprint import EMPTY_SLOT, MAX_CONTACTS


@dataclass(frozen=True)
class MatchResult:
    """One party's view of the intersection.

    matches[i] is a fingerprint the party submitted that the other party
    also holds, or zero.
    """

    matches: tuple[int, ...]
    match_count: int

    def __post_init__(self):
        if len(self.matches) != MAX_CONTACTS:
            raise InputError(f"Match result must have {MAX_CONTACTS} slots")

    @classmethod
    def empty(cls) -> MatchResult:
        return cls(matches=(EMPTY_SLOT,) * MAX_CONTACTS, match_count=0)

    def fingerprints(self) -> set[int]:
        return {m for m in self.matches if m != EMPTY_SLOT}

    def to_values(self) -> list[int]:
        """Flatten to 33 values (32 slots, then the count) for encryption."""
        return list(self.matches) + [self.match_count]

    @classmethod
    def from_values(cls, values: Sequence[int]) -> MatchResult:
        if len(values) != MAX_CONTACTS + 1:
            raise InputError(f"Expected {MAX_CONTACTS + 1} values, got {len(values)}")
        return cls(matches=tuple(values[:MAX_CONTACTS]), match_count=values[MAX_CONTACTS])


@dataclass(frozen=True)
class SubmitConfirmation:
    """Returned to the first party after its contacts are stored."""

    accepted: int
    party: int

    def to_values(self) -> list[int]:
        return [self.accepted, self.party]

    @classmethod
    def from_values(cls, values: Sequence[int]) -> SubmitConfirmation:
        if len(values) != 2:
            raise InputError(f"Expected 2 values, got {len(values)}")
        return cls(accepted=values[0], party=values[1])
