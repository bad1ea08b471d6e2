"""
Inbox assembly: turn a user's flat message list into conversation summaries.

Recomputed from scratch on every load. Input is whatever
``messaging.fetch_messages_for_user`` returned plus a profile map for the
counterparts; output is ordered most-recent conversation first.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, Mapping, Optional

from models import Message
from services.conversation_keys import derive_conversation_id
from services.display_names import resolve_display_name
from services.messaging import as_utc
from services.user_directory import ProfileSummary


@dataclass
class ConversationSummary:
    conversation_id: str
    other_party_id: str
    other_party_name: str
    other_party_avatar: Optional[str]
    last_message_content: str
    last_message_timestamp: datetime
    unread_count: int = 0


def counterpart_id(message: Message, user_id: str) -> Optional[str]:
    if message.sender_id == user_id:
        return message.recipient_id
    if message.recipient_id == user_id:
        return message.sender_id
    return None


def counterpart_ids(messages: Iterable[Message], user_id: str) -> list[str]:
    """Distinct counterparts in first-seen order (input for the profile batch lookup)."""
    seen: dict[str, None] = {}
    for msg in messages:
        other = counterpart_id(msg, user_id)
        if other:
            seen.setdefault(other, None)
    return list(seen)


def assemble_conversations(
    user_id: str,
    messages: Iterable[Message],
    profiles: Optional[Mapping[str, Optional[ProfileSummary]]] = None,
) -> list[ConversationSummary]:
    profiles = profiles or {}
    # Chronological; id breaks timestamp ties so the result is deterministic.
    chronological = sorted(messages, key=lambda m: (as_utc(m.timestamp), m.id))

    groups: dict[str, ConversationSummary] = {}
    for msg in chronological:
        other = counterpart_id(msg, user_id)
        if not other:
            continue

        conversation_id = derive_conversation_id(user_id, other)
        profile = profiles.get(other)
        denormalized = msg.recipient_name if msg.sender_id == user_id else msg.sender_name

        summary = groups.get(conversation_id)
        if summary is None:
            summary = ConversationSummary(
                conversation_id=conversation_id,
                other_party_id=other,
                other_party_name="",
                other_party_avatar=None,
                last_message_content="",
                last_message_timestamp=as_utc(msg.timestamp),
            )
            groups[conversation_id] = summary

        # Later messages overwrite: the group ends up describing its latest message.
        summary.other_party_name = resolve_display_name(
            other,
            profile_name=profile.name if profile else None,
            denormalized_name=denormalized,
        )
        summary.other_party_avatar = profile.profile_image_url if profile else None
        summary.last_message_content = msg.content
        summary.last_message_timestamp = as_utc(msg.timestamp)

        if msg.recipient_id == user_id and not msg.read:
            summary.unread_count += 1

    # Stable sort keeps first-seen order for equal timestamps.
    return sorted(groups.values(), key=lambda s: s.last_message_timestamp, reverse=True)
