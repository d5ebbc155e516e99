"""Request and response schemas for the console API."""

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field, field_validator

from inbox.models.user import UserRole

MAX_MESSAGE_LENGTH = 2000  # Send API text limit


# ============================================================================
# Auth
# ============================================================================

class LoginRequest(BaseModel):
    username: str = Field(min_length=1, max_length=100)
    password: str = Field(min_length=1)


class PushTokenRequest(BaseModel):
    """Device token for push notifications; null clears it."""
    fcm_token: str | None = Field(default=None, alias="fcmToken", max_length=4096)

    model_config = ConfigDict(populate_by_name=True)


class UserResponse(BaseModel):
    """Public view of a console user."""
    id: int
    username: str
    role: UserRole

    model_config = ConfigDict(from_attributes=True)


# ============================================================================
# Messages
# ============================================================================

class ReplyRequest(BaseModel):
    """Agent reply; an image takes precedence over text when both are set."""
    message: str | None = Field(default=None, max_length=MAX_MESSAGE_LENGTH)
    image_url: str | None = Field(default=None, alias="imageUrl")

    model_config = ConfigDict(populate_by_name=True)


class RenameRequest(BaseModel):
    name: str = Field(max_length=255)

    @field_validator("name")
    @classmethod
    def name_not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("Name is required")
        return v.strip()


class ConversationResponse(BaseModel):
    """Conversation row as shown in the inbox sidebar."""
    id: int
    user_id: str
    page_id: str
    page_name: str | None = None
    user_name: str | None = None
    last_message_text: str | None = None
    last_message_time: datetime | None = None
    unread_count: int = 0


# ============================================================================
# Admin
# ============================================================================

class PageUpsertRequest(BaseModel):
    """Register a page or update its name and token."""
    id: str = Field(min_length=1, max_length=64)
    name: str = Field(min_length=1, max_length=255)
    access_token: str = Field(min_length=1)


class UserCreateRequest(BaseModel):
    username: str = Field(min_length=1, max_length=100)
    password: str = Field(min_length=6)
    role: UserRole = UserRole.AGENT


class AssignPagesRequest(BaseModel):
    """Replaces every page assignment of the user."""
    user_id: int = Field(alias="userId")
    page_ids: list[str] = Field(alias="pageIds")

    model_config = ConfigDict(populate_by_name=True)


# ============================================================================
# Notes
# ============================================================================

class NoteRequest(BaseModel):
    content: str
