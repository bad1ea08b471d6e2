from sqlalchemy import Column, Integer, Boolean, DateTime, Text, Index
from sqlalchemy.sql import func
from core.database import Base
import uuid


def _new_id() -> str:
    return uuid.uuid4().hex


class User(Base):
    """
    One row per authenticated identity: profile plus subscription state.

    subscription_tier / subscription_status are written only by the billing
    reconciler (services.stripe_service), never by profile updates.
    """

    __tablename__ = "users"

    ROLES = ("user", "coach", "admin")
    SELF_SERVE_ROLES = ("user", "coach")

    id = Column(Text, primary_key=True, default=_new_id)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    email = Column(Text, unique=True, nullable=True)
    password_hash = Column(Text, nullable=True)
    role = Column(Text, default="user", nullable=False)  # 'user', 'coach', 'admin'

    name = Column(Text, nullable=True)
    bio = Column(Text, nullable=True)
    profile_image_url = Column(Text, nullable=True)

    # --- SUBSCRIPTION (reconciler-owned) ---
    subscription_tier = Column(Text, default="free", nullable=False)  # free | premium
    subscription_status = Column(Text, nullable=True)  # active | cancelled | pending
    stripe_customer_id = Column(Text, nullable=True, index=True)
    stripe_subscription_id = Column(Text, nullable=True, index=True)

    @property
    def is_premium_active(self) -> bool:
        return self.subscription_tier == "premium" and self.subscription_status == "active"


class Message(Base):
    """
    Append-only direct message.

    conversation_id is stored redundantly (derived from the two participant ids)
    so a thread can be read with one equality query. Only ``read`` ever changes.
    """

    __tablename__ = "messages"

    id = Column(Text, primary_key=True, default=_new_id)
    conversation_id = Column(Text, nullable=False, index=True)

    sender_id = Column(Text, nullable=False, index=True)
    recipient_id = Column(Text, nullable=False, index=True)
    content = Column(Text, nullable=False)

    # Denormalized display copies taken at send time; may go stale.
    sender_name = Column(Text, nullable=True)
    recipient_name = Column(Text, nullable=True)

    # Set by the database on insert (store clock, not the API host clock).
    timestamp = Column(DateTime(timezone=True), server_default=func.now(), nullable=False, index=True)
    read = Column(Boolean, default=False, nullable=False)

    __table_args__ = (
        Index("ix_messages_recipient_read", "recipient_id", "read"),
    )


class StripeEvent(Base):
    """
    Processed Stripe events (idempotency guard).

    Stripe retries webhook deliveries; a row is written in the same transaction
    as the state transition it caused.
    """

    __tablename__ = "stripe_events"

    event_id = Column(Text, primary_key=True)  # evt_*
    event_type = Column(Text, nullable=False, index=True)
    stripe_created = Column(Integer, nullable=True)

    received_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
