"""
Direct messaging endpoints.

No push channel exists: clients re-fetch the inbox and unread badge on
navigation and after marking messages read.
"""
from fastapi import APIRouter, Depends, status
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
import logging

from core.auth import get_current_user
from core.database import get_db
from core.exceptions import BadRequestError, ForbiddenError, InternalError
from models import User
from schemas import (
    ConversationListResponse,
    ConversationSummaryResponse,
    ConversationThreadResponse,
    MarkReadRequest,
    MarkReadResponse,
    MessageResponse,
    OtherParty,
    SendMessageRequest,
    SendMessageResponse,
    UnreadCountResponse,
)
from services import messaging
from services.conversation_keys import counterpart_from_conversation_id
from services.conversation_threads import assemble_conversations, counterpart_ids
from services.display_names import resolve_display_name
from services.user_directory import get_profile, get_profiles_by_ids

logger = logging.getLogger(__name__)

router = APIRouter(tags=["messages"])


@router.post("/api/send-message", response_model=SendMessageResponse, status_code=status.HTTP_201_CREATED)
def send_message(
    request: SendMessageRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """Store a message from the authenticated user to ``recipientId``."""
    if not request.recipient_id or not (request.content or "").strip():
        raise BadRequestError("Missing required fields: recipientId and content are required.")

    try:
        message = messaging.send_message(
            db,
            sender_id=current_user.id,
            recipient_id=request.recipient_id,
            content=request.content,
            recipient_name=request.recipient_name,
        )
    except messaging.SelfConversationError as e:
        raise BadRequestError(str(e), field="recipientId")
    except SQLAlchemyError:
        db.rollback()
        logger.error(f"Failed to store message from {current_user.id}", exc_info=True)
        raise InternalError("Failed to send message")

    return SendMessageResponse(message_id=message.id)


@router.get("/api/messages/unread-count", response_model=UnreadCountResponse)
def unread_count(current_user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    """Navigation badge count."""
    return UnreadCountResponse(unread_count=messaging.count_unread(db, current_user.id))


@router.get("/dashboard/messages", response_model=ConversationListResponse)
def list_conversations(current_user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    """
    Inbox: one summary per counterpart, most recent conversation first.

    Counterpart names come from a batched profile lookup, falling back to the
    names stored on the messages.
    """
    messages = messaging.fetch_messages_for_user(db, current_user.id)
    profiles = get_profiles_by_ids(db, counterpart_ids(messages, current_user.id))
    summaries = assemble_conversations(current_user.id, messages, profiles)

    return ConversationListResponse(
        conversations=[
            ConversationSummaryResponse(
                conversation_id=s.conversation_id,
                other_party_id=s.other_party_id,
                other_party_name=s.other_party_name,
                other_party_avatar=s.other_party_avatar,
                last_message_content=s.last_message_content,
                last_message_timestamp=s.last_message_timestamp,
                unread_count=s.unread_count,
            )
            for s in summaries
        ],
        unread_count=messaging.count_unread(db, current_user.id),
    )


@router.get("/dashboard/messages/{conversation_id}", response_model=ConversationThreadResponse)
def conversation_thread(
    conversation_id: str,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """
    Open a thread. Unread messages addressed to the viewer are marked read,
    then the thread is re-fetched so the response reflects the new flags.
    """
    other_id = counterpart_from_conversation_id(conversation_id, current_user.id)
    if other_id is None:
        raise ForbiddenError("You are not a participant in this conversation")

    thread = messaging.fetch_conversation_messages(db, conversation_id, current_user.id)
    unread_ids = [m.id for m in thread if m.recipient_id == current_user.id and not m.read]
    marked = 0
    if unread_ids:
        marked = messaging.mark_messages_read(db, unread_ids, current_user.id)
        thread = messaging.fetch_conversation_messages(db, conversation_id, current_user.id)

    profile = get_profile(db, other_id)
    latest_from_other = next((m for m in reversed(thread) if m.sender_id == other_id), None)
    latest_to_other = next((m for m in reversed(thread) if m.recipient_id == other_id), None)
    denormalized = (
        latest_from_other.sender_name if latest_from_other
        else latest_to_other.recipient_name if latest_to_other
        else None
    )

    return ConversationThreadResponse(
        conversation_id=conversation_id,
        other_party=OtherParty(
            id=other_id,
            name=resolve_display_name(
                other_id,
                profile_name=profile.name if profile else None,
                denormalized_name=denormalized,
            ),
            profile_image_url=profile.profile_image_url if profile else None,
        ),
        messages=[MessageResponse.model_validate(m) for m in thread],
        marked_read=marked,
    )


@router.post("/dashboard/messages/read", response_model=MarkReadResponse)
def mark_read(
    request: MarkReadRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """Mark the given messages read. Ids not addressed to the caller are ignored."""
    marked = messaging.mark_messages_read(db, request.message_ids, current_user.id)
    return MarkReadResponse(marked=marked, unread_count=messaging.count_unread(db, current_user.id))
