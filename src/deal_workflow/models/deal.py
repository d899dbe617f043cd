"""
Deal and deal-status transition models.

Status only advances by explicit staff action (draft -> ready -> generated)
and only retreats automatically, back to draft, when a required field is
edited after sign-off.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Literal

from pydantic import BaseModel, Field


class DealStatus(str, Enum):
    DRAFT = 'draft'
    READY = 'ready'
    GENERATED = 'generated'


SEALED_STATUSES = frozenset({DealStatus.READY, DealStatus.GENERATED})


class StatusTrigger(str, Enum):
    """What prompted a status evaluation."""

    MARK_READY = 'mark_ready'
    MARK_GENERATED = 'mark_generated'
    FIELD_EDITED = 'field_edited'


class Deal(BaseModel):
    """A deal bound to exactly one packet for its lifetime."""

    id: str
    packet_id: str | None = None
    status: DealStatus = DealStatus.DRAFT
    deal_number: str | None = None
    created_by: str | None = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class StatusTransition(BaseModel):
    """Result of evaluating a status trigger against the current deal state."""

    previous_status: DealStatus
    new_status: DealStatus
    reverted: bool = False
    documents_were_generated: bool = Field(
        default=False, description='True when a revert discarded generated documents'
    )
    changed_required_fields: list[str] = Field(default_factory=list)
    reason: str | None = None

    @property
    def changed(self) -> bool:
        return self.previous_status != self.new_status

    @property
    def severity(self) -> Literal['info', 'warning']:
        """Revert messages escalate once documents had already been generated."""
        return 'warning' if self.documents_were_generated else 'info'
