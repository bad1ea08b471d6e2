"""
Conversation id derivation.

A conversation between two users is never stored as its own record; both
parties compute the same id from the pair of user ids.
"""
from typing import Optional

SEPARATOR = "_"


def derive_conversation_id(user_a: str, user_b: str) -> str:
    """
    Canonical, order-independent id for the pair.

    derive_conversation_id(a, b) == derive_conversation_id(b, a).
    Does not reject a == b; callers decide whether self-conversations are allowed.
    """
    first, second = sorted((str(user_a), str(user_b)))
    return f"{first}{SEPARATOR}{second}"


def counterpart_from_conversation_id(conversation_id: str, user_id: str) -> Optional[str]:
    """
    The other participant encoded in ``conversation_id``, or None when
    ``user_id`` is not one of its participants.

    User ids may themselves contain the separator, so the id is matched from
    either end and confirmed by re-deriving it.
    """
    user_id = str(user_id)
    candidates = []
    if conversation_id.startswith(user_id + SEPARATOR):
        candidates.append(conversation_id[len(user_id) + len(SEPARATOR):])
    if conversation_id.endswith(SEPARATOR + user_id):
        candidates.append(conversation_id[: -(len(user_id) + len(SEPARATOR))])

    for other in candidates:
        if other and derive_conversation_id(user_id, other) == conversation_id:
            return other
    return None
