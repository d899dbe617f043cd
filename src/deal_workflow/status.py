"""
Deal status state machine.

    draft --mark_ready--> ready --mark_generated--> generated
      ^                     |                          |
      +------- field_edited (required field, dirty) ---+

Forward edges are explicit staff actions with preconditions; the reverse
edge is automatic and unconditional once a required field is written while
the deal is sealed. evaluate_status_transition() is the pure rule;
DealStatusMachine persists the result and writes the audit entry.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping

import structlog

from .errors import NotAllowedError, NotFoundError
from .models.activity import ActivityType
from .models.deal import SEALED_STATUSES, Deal, DealStatus, StatusTransition, StatusTrigger
from .models.field import ResolvedFieldSet
from .models.participant import ParticipantRole, is_internal_role
from .repository import DealDataSource, record_activity
from .resolver import get_missing_required_fields

logger = structlog.get_logger(__name__)


def _require_staff(actor_role: ParticipantRole | str | None, action: str) -> None:
    # None means the caller has already authorized the actor
    if actor_role is not None and not is_internal_role(actor_role):
        raise NotAllowedError(
            f'Only staff can {action}',
            context={'actor_role': str(getattr(actor_role, 'value', actor_role))},
        )


def evaluate_status_transition(
    current_status: DealStatus,
    resolved: ResolvedFieldSet,
    values: Mapping[str, str | None],
    trigger: StatusTrigger,
    *,
    changed_field_keys: Iterable[str] = (),
    is_dirty: bool = True,
    actor_role: ParticipantRole | str | None = None,
) -> StatusTransition:
    """
    Decide the next deal status for a trigger.

    Args:
        current_status: Status before the trigger
        resolved: The deal packet's resolved field set
        values: Current field values (after the edit, for field_edited)
        trigger: What happened
        changed_field_keys: Keys written by the edit (field_edited only)
        is_dirty: False when values were merely reloaded, not edited
        actor_role: Role performing an explicit action

    Raises:
        NotAllowedError: mark_ready/mark_generated from the wrong status, by a
            non-staff actor, or mark_ready with required fields missing
    """
    current_status = DealStatus(current_status)
    trigger = StatusTrigger(trigger)

    if trigger == StatusTrigger.MARK_READY:
        if current_status == DealStatus.READY:
            raise NotAllowedError('Deal is already ready', context={'status': current_status.value})
        if current_status == DealStatus.GENERATED:
            raise NotAllowedError(
                'Documents were already generated for this deal',
                context={'status': current_status.value},
            )
        _require_staff(actor_role, 'mark a deal ready')
        missing = get_missing_required_fields(resolved, values)
        if missing:
            raise NotAllowedError(
                f'{len(missing)} required field(s) still missing',
                context={'missing_fields': [f.field_key for f in missing]},
            )
        return StatusTransition(
            previous_status=current_status,
            new_status=DealStatus.READY,
            reason='marked_ready',
        )

    if trigger == StatusTrigger.MARK_GENERATED:
        if current_status != DealStatus.READY:
            raise NotAllowedError(
                'Documents can only be generated for a ready deal',
                context={'status': current_status.value},
            )
        _require_staff(actor_role, 'generate documents')
        return StatusTransition(
            previous_status=current_status,
            new_status=DealStatus.GENERATED,
            reason='documents_generated',
        )

    # field_edited
    required = set(resolved.required_field_keys)
    changed_required = [key for key in dict.fromkeys(changed_field_keys) if key in required]
    if current_status in SEALED_STATUSES and changed_required and is_dirty:
        return StatusTransition(
            previous_status=current_status,
            new_status=DealStatus.DRAFT,
            reverted=True,
            documents_were_generated=current_status == DealStatus.GENERATED,
            changed_required_fields=changed_required,
            reason='required_field_edited',
        )
    return StatusTransition(previous_status=current_status, new_status=current_status)


class DealStatusMachine:
    """Applies status transitions to stored deals and records the audit trail."""

    def __init__(self, source: DealDataSource):
        self.source = source

    async def _load_deal(self, deal_id: str) -> Deal:
        deal = await self.source.load_deal(deal_id)
        if deal is None:
            raise NotFoundError('Deal not found', context={'deal_id': deal_id})
        return deal

    async def mark_ready(
        self,
        deal_id: str,
        resolved: ResolvedFieldSet,
        values: Mapping[str, str | None],
        actor_role: ParticipantRole | str,
        actor_user_id: str | None = None,
    ) -> StatusTransition:
        """draft -> ready. The stored status is untouched when the precondition fails."""
        deal = await self._load_deal(deal_id)
        transition = evaluate_status_transition(
            deal.status, resolved, values, StatusTrigger.MARK_READY, actor_role=actor_role
        )
        await self.source.update_deal_status(deal_id, transition.new_status)
        await record_activity(
            self.source,
            deal_id,
            ActivityType.DEAL_MARKED_READY,
            {'previous_status': transition.previous_status.value},
            actor_user_id=actor_user_id,
        )
        logger.info('status.marked_ready', deal_id=deal_id)
        return transition

    async def mark_generated(
        self,
        deal_id: str,
        actor_role: ParticipantRole | str,
        actor_user_id: str | None = None,
    ) -> StatusTransition:
        """ready -> generated."""
        deal = await self._load_deal(deal_id)
        transition = evaluate_status_transition(
            deal.status,
            ResolvedFieldSet.empty(),
            {},
            StatusTrigger.MARK_GENERATED,
            actor_role=actor_role,
        )
        await self.source.update_deal_status(deal_id, transition.new_status)
        await record_activity(
            self.source,
            deal_id,
            ActivityType.DOCUMENT_GENERATED,
            {'previous_status': transition.previous_status.value},
            actor_user_id=actor_user_id,
        )
        logger.info('status.documents_generated', deal_id=deal_id)
        return transition

    async def apply_field_edit(
        self,
        deal_id: str,
        resolved: ResolvedFieldSet,
        values: Mapping[str, str | None],
        changed_keys: Iterable[str],
        is_dirty: bool = True,
        actor_user_id: str | None = None,
    ) -> StatusTransition:
        """Revert a sealed deal to draft when a required field was edited."""
        deal = await self._load_deal(deal_id)
        transition = evaluate_status_transition(
            deal.status,
            resolved,
            values,
            StatusTrigger.FIELD_EDITED,
            changed_field_keys=changed_keys,
            is_dirty=is_dirty,
        )
        if not transition.reverted:
            return transition

        await self.source.update_deal_status(deal_id, transition.new_status)
        await record_activity(
            self.source,
            deal_id,
            ActivityType.DEAL_REVERTED_TO_DRAFT,
            {
                'previous_status': transition.previous_status.value,
                'documents_were_generated': transition.documents_were_generated,
                'fields_changed': transition.changed_required_fields,
            },
            actor_user_id=actor_user_id,
        )
        log = logger.warning if transition.severity == 'warning' else logger.info
        log(
            'status.reverted_to_draft',
            deal_id=deal_id,
            previous_status=transition.previous_status.value,
            fields_changed=transition.changed_required_fields,
        )
        return transition
