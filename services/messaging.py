"""
Message store access.

Messages are appended once and afterwards only their ``read`` flag changes.
All queries are single-table equality filters with a timestamp sort, so the
same code runs against Postgres and SQLite.
"""
from __future__ import annotations

from datetime import datetime, timezone
import logging
from typing import Iterable, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from core.config import settings
from models import Message, User
from services.conversation_keys import derive_conversation_id
from services.display_names import UNKNOWN_RECIPIENT, UNKNOWN_USER, first_usable_name

logger = logging.getLogger(__name__)


class SelfConversationError(ValueError):
    """Raised when a user tries to message themselves."""


def send_message(
    db: Session,
    *,
    sender_id: str,
    recipient_id: str,
    content: str,
    recipient_name: Optional[str] = None,
    timestamp: Optional[datetime] = None,
) -> Message:
    """
    Persist a new message from ``sender_id`` to ``recipient_id``.

    Display names are copied onto the record: the sender's profile name, and
    for the recipient the caller-supplied name, then their profile name.
    The write is committed before returning; failures propagate.
    The timestamp is assigned by the database unless ``timestamp`` is given.
    """
    if sender_id == recipient_id:
        raise SelfConversationError("Cannot send a message to yourself.")

    sender = db.get(User, sender_id)
    recipient = db.get(User, recipient_id)

    sender_name = first_usable_name(
        (lambda: sender.name if sender else None,),
        user_id=sender_id,
        default=UNKNOWN_USER,
    )
    resolved_recipient_name = first_usable_name(
        (lambda: recipient_name, lambda: recipient.name if recipient else None),
        user_id=recipient_id,
        default=UNKNOWN_RECIPIENT,
    )

    message = Message(
        sender_id=sender_id,
        recipient_id=recipient_id,
        content=content,
        sender_name=sender_name,
        recipient_name=resolved_recipient_name,
        read=False,
        conversation_id=derive_conversation_id(sender_id, recipient_id),
    )
    if timestamp is not None:
        message.timestamp = timestamp
    db.add(message)
    db.commit()
    db.refresh(message)

    logger.info(
        f"Message {message.id} stored",
        extra={"extra_fields": {
            "message_id": message.id,
            "conversation_id": message.conversation_id,
            "sender_id": sender_id,
            "recipient_id": recipient_id,
        }},
    )
    return message


def fetch_messages_for_user(db: Session, user_id: str, *, limit: Optional[int] = None) -> list[Message]:
    """
    Newest ``limit`` messages sent by the user plus newest ``limit`` received,
    merged and ordered newest first.
    """
    per_direction = limit or settings.MESSAGE_FETCH_LIMIT

    sent = (
        db.query(Message)
        .filter(Message.sender_id == user_id)
        .order_by(Message.timestamp.desc(), Message.id.desc())
        .limit(per_direction)
        .all()
    )
    received = (
        db.query(Message)
        .filter(Message.recipient_id == user_id)
        .order_by(Message.timestamp.desc(), Message.id.desc())
        .limit(per_direction)
        .all()
    )

    merged: dict[str, Message] = {}
    for msg in sent + received:
        merged.setdefault(msg.id, msg)
    return sorted(merged.values(), key=lambda m: (as_utc(m.timestamp), m.id), reverse=True)


def fetch_conversation_messages(db: Session, conversation_id: str, viewer_id: str) -> list[Message]:
    """Chronological thread, restricted to messages the viewer sent or received."""
    return (
        db.query(Message)
        .filter(Message.conversation_id == conversation_id)
        .filter((Message.sender_id == viewer_id) | (Message.recipient_id == viewer_id))
        .order_by(Message.timestamp.asc(), Message.id.asc())
        .all()
    )


def count_unread(db: Session, user_id: str) -> int:
    """Messages addressed to ``user_id`` that are still unread (point-in-time)."""
    return int(
        db.query(func.count(Message.id))
        .filter(Message.recipient_id == user_id, Message.read.is_(False))
        .scalar()
        or 0
    )


def mark_messages_read(db: Session, message_ids: Iterable[str], viewer_id: str) -> int:
    """
    Flip ``read`` to True for the given ids where the viewer is the recipient.

    Ids that belong to someone else, are unknown, or are already read are
    skipped, so repeating the call is harmless. All flips commit together.
    Returns the number of messages changed.
    """
    ids = list(dict.fromkeys(str(i) for i in message_ids if i))
    if not ids:
        return 0

    rows = (
        db.query(Message)
        .filter(Message.id.in_(ids))
        .filter(Message.recipient_id == viewer_id)
        .filter(Message.read.is_(False))
        .all()
    )
    for row in rows:
        row.read = True
        db.add(row)
    if rows:
        db.commit()
        logger.info(
            f"Marked {len(rows)} messages read",
            extra={"extra_fields": {"viewer_id": viewer_id, "requested": len(ids), "marked": len(rows)}},
        )
    return len(rows)


def as_utc(ts: Optional[datetime]) -> datetime:
    """SQLite hands back naive datetimes; treat them as UTC so they compare with aware ones."""
    if ts is None:
        return datetime.min.replace(tzinfo=timezone.utc)
    if ts.tzinfo is None:
        return ts.replace(tzinfo=timezone.utc)
    return ts
