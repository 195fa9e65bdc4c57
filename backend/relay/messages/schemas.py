"""Pydantic schemas for stored chat messages.

These schemas are used by:
    - GET /messages and POST /messages
    - The WebSocket new_message broadcast
    - MessageStore: DuckDB storage layer
"""
from datetime import datetime
from typing import Any, Optional, Tuple

from pydantic import BaseModel, Field

from relay.errors import ValidationError

# Display name used when a sender does not supply one
DEFAULT_USER = "Anonymous"


class ChatMessage(BaseModel):
    """A persisted chat message.

    Messages are immutable once stored; updatedAt always equals createdAt.

    Attributes:
        id: Opaque unique identifier assigned by the store.
        user: Sender display name.
        text: Trimmed message text.
        createdAt: When the store accepted the message (UTC). Ordering key.
        updatedAt: Same as createdAt.
    """
    id: str = Field(..., description="Unique message ID")
    user: str = Field(..., min_length=1, description="Sender display name")
    text: str = Field(..., min_length=1, description="Message text")
    createdAt: datetime = Field(..., description="Creation time (UTC)")
    updatedAt: datetime = Field(..., description="Last update time (UTC)")


class MessageCreate(BaseModel):
    """Input schema for posting a chat message.

    Both fields are optional at the schema level so that a missing text is
    reported as a 400 by the ingestion pipeline rather than a 422.
    """
    user: Optional[str] = Field(None, description="Sender display name")
    text: Optional[str] = Field(None, description="Message text")


def normalize_message(
    user: Any,
    text: Any,
    default_user: str = DEFAULT_USER,
) -> Tuple[str, str]:
    """Trim input and fill in the default user.

    Args:
        user: Raw user value; anything other than a non-blank string
            becomes *default_user*.
        text: Raw text value.
        default_user: Sentinel display name.

    Returns:
        Tuple of (user, text) ready to persist.

    Raises:
        ValidationError: If text is missing, not a string, or blank.
    """
    if not isinstance(text, str) or not text.strip():
        raise ValidationError()
    if isinstance(user, str) and user.strip():
        user = user.strip()
    else:
        user = default_user
    return user, text.strip()
