"""
Deal participant, viewer identity and orchestration state models.

A deal's roster decides its collaboration mode: if every participant has a
null sequence_order the deal is parallel, otherwise it is sequential and
participants take turns in ascending sequence_order.

The viewer is always passed in explicitly as a ViewerIdentity; nothing in
the core reads an ambient login or magic-link session.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Literal, Protocol

from pydantic import BaseModel, Field


class ParticipantRole(str, Enum):
    """Application roles. admin and csr are internal staff."""

    ADMIN = 'admin'
    CSR = 'csr'
    BORROWER = 'borrower'
    BROKER = 'broker'
    LENDER = 'lender'


INTERNAL_ROLES = frozenset({ParticipantRole.ADMIN, ParticipantRole.CSR})
EXTERNAL_ROLES = frozenset({
    ParticipantRole.BORROWER,
    ParticipantRole.BROKER,
    ParticipantRole.LENDER,
})


def _as_role(role: ParticipantRole | str | None) -> ParticipantRole | None:
    if role is None:
        return None
    try:
        return ParticipantRole(role)
    except ValueError:
        return None


def is_internal_role(role: ParticipantRole | str | None) -> bool:
    return _as_role(role) in INTERNAL_ROLES


def is_external_role(role: ParticipantRole | str | None) -> bool:
    return _as_role(role) in EXTERNAL_ROLES


class ParticipantStatus(str, Enum):
    """
    Participant lifecycle: invited -> in_progress -> completed.

    expired marks a lapsed invitation; for gating it is still an open
    (not completed) participant.
    """

    INVITED = 'invited'
    IN_PROGRESS = 'in_progress'
    COMPLETED = 'completed'
    EXPIRED = 'expired'


class AccessMethod(str, Enum):
    LOGIN = 'login'
    MAGIC_LINK = 'magic_link'


class EntryMode(str, Enum):
    PARALLEL = 'parallel'
    SEQUENTIAL = 'sequential'


class DealParticipant(BaseModel):
    """A party invited to enter data on a deal."""

    id: str
    deal_id: str
    role: ParticipantRole
    user_id: str | None = None
    email: str | None = None
    access_method: AccessMethod = AccessMethod.LOGIN
    sequence_order: int | None = Field(
        default=None, description='Turn order in sequential mode; None in parallel mode'
    )
    status: ParticipantStatus = ParticipantStatus.INVITED
    invited_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    completed_at: datetime | None = None

    @property
    def is_completed(self) -> bool:
        return self.status == ParticipantStatus.COMPLETED


class ViewerIdentity(BaseModel):
    """
    Who is looking at the deal.

    Logged-in users carry user_id; magic-link users carry the participant_id
    bound to their link session.
    """

    role: ParticipantRole
    user_id: str | None = None
    participant_id: str | None = None

    @property
    def is_internal(self) -> bool:
        return is_internal_role(self.role)

    @property
    def is_external(self) -> bool:
        return is_external_role(self.role)


class OrchestrationState(BaseModel):
    """Edit gating for one viewer on one deal, recomputed on every refresh."""

    mode: EntryMode = EntryMode.PARALLEL
    can_edit: bool = True
    is_waiting: bool = False
    blocking_participant: DealParticipant | None = None
    has_completed: bool = False
    current_participant: DealParticipant | None = None
    active_participant: DealParticipant | None = None
    participants: list[DealParticipant] = Field(default_factory=list)


class CompletionResult(BaseModel):
    """Outcome of completing a participant's section."""

    success: bool
    participant: DealParticipant
    next_participant: DealParticipant | None = None


class RosterChanged(BaseModel):
    """Push notification that a deal's participant roster changed."""

    deal_id: str
    event: Literal['insert', 'update', 'delete'] = 'update'
    participant_id: str | None = None
    received_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class RosterSubscription(Protocol):
    """Open subscription to RosterChanged events; close it with aclose()."""

    def __aiter__(self) -> 'RosterSubscription': ...

    async def __anext__(self) -> RosterChanged: ...

    async def aclose(self) -> None: ...
