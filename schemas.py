from pydantic import BaseModel, ConfigDict, EmailStr, Field
from datetime import datetime
from typing import Any, List, Optional


class CamelModel(BaseModel):
    """Wire format is camelCase; Python attributes stay snake_case."""
    model_config = ConfigDict(populate_by_name=True, from_attributes=True)


# --- Auth ---

class UserRegister(BaseModel):
    email: EmailStr
    password: str
    name: Optional[str] = None
    role: str = "user"


class UserLogin(BaseModel):
    email: EmailStr
    password: str


class UserResponse(CamelModel):
    id: str
    email: Optional[str] = None
    name: Optional[str] = None
    role: str
    profile_image_url: Optional[str] = Field(default=None, alias="profileImageUrl")
    subscription_tier: str = Field(alias="subscriptionTier")
    subscription_status: Optional[str] = Field(default=None, alias="subscriptionStatus")


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    expires_in: int
    user: UserResponse


# --- Profiles ---

class ProfilesRequest(CamelModel):
    # Validated by hand so bad input is a 400 with a specific message.
    user_ids: Any = Field(default=None, alias="userIds")


class UserProfileUpdate(CamelModel):
    """Self-service profile fields. Anything else in the body is ignored."""
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    name: Optional[str] = None
    bio: Optional[str] = None
    profile_image_url: Optional[str] = Field(default=None, alias="profileImageUrl")


# --- Messaging ---

class SendMessageRequest(CamelModel):
    recipient_id: Optional[str] = Field(default=None, alias="recipientId")
    content: Optional[str] = None
    recipient_name: Optional[str] = Field(default=None, alias="recipientName")


class SendMessageResponse(CamelModel):
    message: str = "Message sent successfully"
    message_id: str = Field(alias="messageId")


class MessageResponse(CamelModel):
    id: str
    conversation_id: str = Field(alias="conversationId")
    sender_id: str = Field(alias="senderId")
    recipient_id: str = Field(alias="recipientId")
    sender_name: Optional[str] = Field(default=None, alias="senderName")
    recipient_name: Optional[str] = Field(default=None, alias="recipientName")
    content: str
    timestamp: datetime
    read: bool


class ConversationSummaryResponse(CamelModel):
    conversation_id: str = Field(alias="conversationId")
    other_party_id: str = Field(alias="otherPartyId")
    other_party_name: str = Field(alias="otherPartyName")
    other_party_avatar: Optional[str] = Field(default=None, alias="otherPartyAvatar")
    last_message_content: str = Field(alias="lastMessageContent")
    last_message_timestamp: datetime = Field(alias="lastMessageTimestamp")
    unread_count: int = Field(alias="unreadCount")


class ConversationListResponse(CamelModel):
    conversations: List[ConversationSummaryResponse]
    unread_count: int = Field(alias="unreadCount")


class OtherParty(CamelModel):
    id: str
    name: str
    profile_image_url: Optional[str] = Field(default=None, alias="profileImageUrl")


class ConversationThreadResponse(CamelModel):
    conversation_id: str = Field(alias="conversationId")
    other_party: OtherParty = Field(alias="otherParty")
    messages: List[MessageResponse]
    marked_read: int = Field(alias="markedRead")


class MarkReadRequest(CamelModel):
    message_ids: List[str] = Field(default_factory=list, alias="messageIds")


class MarkReadResponse(CamelModel):
    marked: int
    unread_count: int = Field(alias="unreadCount")


class UnreadCountResponse(CamelModel):
    unread_count: int = Field(alias="unreadCount")


# --- Billing ---

class PaymentSuccessRequest(CamelModel):
    session_id: Optional[str] = Field(default=None, alias="sessionId")


class CheckoutSessionResponse(CamelModel):
    url: str
    session_id: str = Field(alias="sessionId")
