"""Map decrypted match results back to human-readable contacts."""

from __future__ import annotations

from collections.abc import Sequence

from .fingerprint import DEFAULT_COUNTRY_CODE, fingerprint
from .results import MatchResult


def resolve_matches(
    original_contacts: Sequence[str],
    result: MatchResult,
    default_country_code: str = DEFAULT_COUNTRY_CODE,
) -> list[str]:
    """Given the original contact list and a match result, return the contacts that matched.

    Only fingerprints ever reach the compute boundary, so the party's own
    list is the only way back to readable contacts.
    """
    matched = result.fingerprints()
    if not matched:
        return []
    return [
        contact
        for contact in original_contacts
        if fingerprint(contact, default_country_code) in matched
    ]
