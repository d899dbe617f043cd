"""Audit-trail entries appended to a deal's activity log."""

from datetime import datetime, timezone
from enum import Enum
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, Field


class ActivityType(str, Enum):
    DEAL_CREATED = 'DealCreated'
    DEAL_UPDATED = 'DealUpdated'
    DATA_SAVED = 'DataSaved'
    DEAL_MARKED_READY = 'DealMarkedReady'
    DEAL_REVERTED_TO_DRAFT = 'DealRevertedToDraft'
    FIELD_UPDATED = 'FieldUpdated'
    FIELD_OVERWRITTEN = 'FieldOverwritten'
    FIELD_UPDATED_BY_EXTERNAL = 'FieldUpdatedByExternal'
    PARTICIPANT_INVITED = 'ParticipantInvited'
    PARTICIPANT_REMOVED = 'ParticipantRemoved'
    PARTICIPANT_COMPLETED = 'ParticipantCompleted'
    MAGIC_LINK_ACCESSED = 'MagicLinkAccessed'
    ACCESS_REVOKED = 'AccessRevoked'
    ACCESS_EXPIRED = 'AccessExpired'
    PARTICIPANT_STATUS_RESET = 'ParticipantStatusReset'
    EXTERNAL_DATA_REVIEWED = 'ExternalDataReviewed'
    DOCUMENT_GENERATED = 'DocumentGenerated'
    DOCUMENT_REGENERATED = 'DocumentRegenerated'


class ActivityRecord(BaseModel):
    """Immutable audit entry."""

    id: str = Field(default_factory=lambda: str(uuid4()))
    deal_id: str
    action_type: ActivityType
    action_details: dict[str, Any] = Field(default_factory=dict)
    actor_user_id: str | None = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
