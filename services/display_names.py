"""
Display-name resolution for conversation counterparts.

Names come from an ordered list of sources: the live profile, then the copy
denormalized onto the message at send time. A candidate is usable only if it
is non-blank and not one of the placeholders written by older code paths
(or the raw user id itself).
"""
from typing import Callable, Optional, Sequence

UNKNOWN_USER = "Unknown User"
UNKNOWN_RECIPIENT = "Unknown Recipient"

KNOWN_PLACEHOLDERS = frozenset({
    UNKNOWN_RECIPIENT,
    UNKNOWN_USER,
    "Anonymous",
    "Anonymous User",
    "Unrecognised User",
    "Error Fetching Name",
})

NameSource = Callable[[], Optional[str]]


def is_usable_name(name: Optional[str], *, user_id: Optional[str] = None) -> bool:
    if not name or not name.strip():
        return False
    if name in KNOWN_PLACEHOLDERS:
        return False
    if user_id is not None and name == user_id:
        return False
    return True


def first_usable_name(
    sources: Sequence[NameSource],
    *,
    user_id: Optional[str] = None,
    default: str = UNKNOWN_USER,
) -> str:
    """Evaluate ``sources`` in order and return the first usable name."""
    for source in sources:
        candidate = source()
        if is_usable_name(candidate, user_id=user_id):
            return candidate.strip()
    return default


def resolve_display_name(
    user_id: str,
    *,
    profile_name: Optional[str] = None,
    denormalized_name: Optional[str] = None,
) -> str:
    """profile lookup -> denormalized field -> "Unknown User". Never empty."""
    return first_usable_name(
        (lambda: profile_name, lambda: denormalized_name),
        user_id=user_id,
    )
