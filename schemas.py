"""
Pydantic schemas for the inbox.
"""
import re
from datetime import datetime
from typing import List, Optional
from pydantic import BaseModel, ConfigDict, Field, field_validator

from models import Sender

HHMM = re.compile(r"^([0-1]?[0-9]|2[0-3]):[0-5][0-9]$")


# =============================================================================
# MESSAGES
# =============================================================================

class Attachment(BaseModel):
    url: str
    file_name: str
    mime_type: str


class MessageRecord(BaseModel):
    """Normalized message, independent of where it came from."""
    model_config = ConfigDict(from_attributes=True)

    id: str
    text: str = ""
    sender: Sender
    agent_id: Optional[str] = None
    timestamp: datetime
    attachment: Optional[Attachment] = None


# =============================================================================
# APP SETTINGS (singleton, edited from the dashboard)
# =============================================================================

class AwayMessage(BaseModel):
    enabled: bool = False
    text: str = ""


class BusinessHours(BaseModel):
    start: str = "09:00"
    end: str = "17:00"
    timezone: str = "UTC"
    days: List[int] = Field(default_factory=lambda: [1, 2, 3, 4, 5])  # 0 = Sunday

    @field_validator("start", "end")
    @classmethod
    def check_hhmm(cls, v: str) -> str:
        if not HHMM.match(v):
            raise ValueError("Invalid time format (HH:MM)")
        return v

    @field_validator("days")
    @classmethod
    def check_days(cls, v: List[int]) -> List[int]:
        if any(d < 0 or d > 6 for d in v):
            raise ValueError("Weekdays must be between 0 (Sunday) and 6 (Saturday)")
        return v

    @property
    def start_hour(self) -> int:
        return int(self.start.split(":")[0])

    @property
    def end_hour(self) -> int:
        return int(self.end.split(":")[0])


class QuickReplyButton(BaseModel):
    id: str
    title: str = Field(max_length=20)


class WelcomeTemplate(BaseModel):
    name: str
    language: str = "en_US"


class WelcomeMessage(BaseModel):
    enabled: bool = False
    text: str = ""
    buttons: List[QuickReplyButton] = Field(default_factory=list, max_length=3)
    template: Optional[WelcomeTemplate] = None

    @field_validator("buttons", mode="before")
    @classmethod
    def coerce_plain_titles(cls, v):
        # The dashboard may store bare titles
        if isinstance(v, list):
            return [
                {"id": f"welcome_{i}", "title": b} if isinstance(b, str) else b
                for i, b in enumerate(v, 1)
            ]
        return v


class AppSettings(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    away_message: AwayMessage = Field(default_factory=AwayMessage, alias="awayMessage")
    business_hours: BusinessHours = Field(default_factory=BusinessHours, alias="businessHours")
    welcome_message: WelcomeMessage = Field(default_factory=WelcomeMessage, alias="welcomeMessage")


# =============================================================================
# AGENT API
# =============================================================================

class BlockRequest(BaseModel):
    phone: str = Field(min_length=1)
    is_blocked: bool


class SendRequest(BaseModel):
    conversation_id: str
    agent_id: str
    text: str = ""
    attachment_url: Optional[str] = None
    mime_type: Optional[str] = None
    file_name: Optional[str] = None


class StartConversationRequest(BaseModel):
    phone: str = Field(min_length=10)
    text: str = Field(min_length=1)
    agent_id: str


class ClaimRequest(BaseModel):
    agent_id: str


class NotesRequest(BaseModel):
    internal_notes: str


class ConversationOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    customer_id: str
    agent_id: Optional[str] = None
    status: str
    last_message_preview: Optional[str] = None
    unread_count: int
    internal_notes: Optional[str] = None
    created_at: datetime
    updated_at: datetime
