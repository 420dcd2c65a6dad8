"""
Pydantic Models for Business Plan AI Chat
Conversation messages and the pending changes they originate
"""

import json
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field, field_validator


class MessageRole(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"


class ChangeType(str, Enum):
    ADD_CHAPTER = "add_chapter"
    UPDATE_CHAPTER = "update_chapter"
    DELETE_CHAPTER = "delete_chapter"
    ADD_SECTION = "add_section"
    UPDATE_SECTION = "update_section"
    DELETE_SECTION = "delete_section"
    REORDER_CHAPTERS = "reorder_chapters"
    REORDER_SECTIONS = "reorder_sections"
    ADD_TASK = "add_task"
    UPDATE_TASK = "update_task"
    DELETE_TASK = "delete_task"

    @property
    def requires_target(self) -> bool:
        return self.value.startswith(("update_", "delete_"))


class ChangeStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


# Older rows stored approval as "accepted"
_LEGACY_STATUS_ALIASES = {"accepted": ChangeStatus.APPROVED}


def normalize_change_status(value: Any) -> ChangeStatus:
    """
    Map any stored spelling of a change status to its canonical value

    Raises:
        ValueError: unknown status
    """
    if isinstance(value, ChangeStatus):
        return value
    raw = str(value).strip().lower()
    if raw in _LEGACY_STATUS_ALIASES:
        return _LEGACY_STATUS_ALIASES[raw]
    return ChangeStatus(raw)


class ChatMessage(BaseModel):
    """Immutable chat message"""

    model_config = {"frozen": True}

    id: str
    conversation_id: str
    role: MessageRole
    content: str
    metadata: Optional[Dict[str, Any]] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)


class PendingChange(BaseModel):
    """Staged mutation proposed by an assistant message"""

    id: str
    message_id: str
    change_type: ChangeType
    target_id: Optional[str] = None
    proposed_data: Dict[str, Any] = Field(
        default_factory=dict,
        description="Type-erased payload, validated against change_type at accept time",
    )
    status: ChangeStatus = ChangeStatus.PENDING
    last_error: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
    resolved_at: Optional[datetime] = None

    @field_validator("status", mode="before")
    @classmethod
    def _normalize_status(cls, v):
        return normalize_change_status(v)

    @property
    def is_pending(self) -> bool:
        return self.status == ChangeStatus.PENDING


class ChangeDraft(BaseModel):
    """One discrete mutation proposed by the drafting collaborator"""

    change_type: ChangeType
    target_id: Optional[str] = None
    proposed_data: Dict[str, Any] = Field(default_factory=dict)

    def signature(self) -> str:
        """Identity used to collapse duplicate drafts within one message"""
        payload = json.dumps(self.proposed_data, sort_keys=True, default=str)
        return f"{self.change_type.value}::{self.target_id or 'null'}::{payload}"


class ChangeProposal(BaseModel):
    """Result of one drafting call"""

    message_content: str
    changes: List[ChangeDraft] = Field(default_factory=list)


class PendingChangeView(PendingChange):
    """Pending change with the display text shown on its review card"""

    label: str = ""
    summary: str = ""
    target_label: str = ""


class ThreadEntry(BaseModel):
    """A message with the pending changes it originated"""

    message: ChatMessage
    pending_changes: List[PendingChangeView] = Field(default_factory=list)


# ============ REQUEST / RESPONSE MODELS ============


class ChatRequest(BaseModel):
    message: str = Field(..., min_length=1, description="User chat message")
    selected_chapter_id: Optional[str] = None
    selected_task_id: Optional[str] = None


class ChatTurnResult(BaseModel):
    user_message: ChatMessage
    assistant_message: ChatMessage
    pending_changes: List[PendingChangeView] = Field(default_factory=list)


class PendingChangeAction(BaseModel):
    action: Literal["accept", "reject"]


class PendingChangeResolution(BaseModel):
    success: bool = True
    action: Literal["approved", "rejected"]
    pending_change: PendingChange
    result: Optional[Dict[str, Any]] = None
