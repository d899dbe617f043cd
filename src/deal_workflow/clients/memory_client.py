"""
In-memory DealDataSource.

Holds packets, templates, the field dictionary, deals, values, rosters and
the activity log in plain dicts. Roster changes are fanned out to every
subscriber of the deal through per-subscriber asyncio queues, so the
at-least-once push contract holds within one process.

Used by the test suite and by the API when USE_MEMORY_STORE is set.
"""

from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Any

from ..models.activity import ActivityRecord, ActivityType
from ..models.deal import Deal, DealStatus
from ..models.field import FieldDefinition, FieldValue, TemplateFieldMap
from ..models.participant import DealParticipant, ParticipantStatus, RosterChanged


class InMemoryDealSource:
    """Dict-backed implementation of the DealDataSource protocol."""

    def __init__(self) -> None:
        self.packet_templates: dict[str, list[str]] = {}
        self.field_maps: list[TemplateFieldMap] = []
        self.dictionary: dict[str, FieldDefinition] = {}
        self.deals: dict[str, Deal] = {}
        self.values: dict[str, dict[str, FieldValue]] = {}
        self.participants: dict[str, DealParticipant] = {}
        self.activity: list[ActivityRecord] = []
        self._subscribers: dict[str, list[asyncio.Queue[RosterChanged]]] = {}

    # =========================================================================
    # Seeding
    # =========================================================================

    def add_field(self, definition: FieldDefinition) -> None:
        self.dictionary[definition.field_key] = definition

    def add_packet(self, packet_id: str, template_ids: list[str]) -> None:
        self.packet_templates[packet_id] = list(template_ids)

    def add_field_map(
        self,
        template_id: str,
        field_key: str,
        required: bool = False,
        transform_rule: str | None = None,
    ) -> None:
        self.field_maps.append(
            TemplateFieldMap(
                template_id=template_id,
                field_key=field_key,
                required_flag=required,
                transform_rule=transform_rule,
            )
        )

    def add_deal(self, deal: Deal) -> None:
        self.deals[deal.id] = deal
        self.values.setdefault(deal.id, {})

    def add_participant(self, participant: DealParticipant) -> None:
        self.participants[participant.id] = participant
        self._publish(
            RosterChanged(deal_id=participant.deal_id, event='insert', participant_id=participant.id)
        )

    def remove_participant(self, participant_id: str) -> None:
        participant = self.participants.pop(participant_id, None)
        if participant is not None:
            self._publish(
                RosterChanged(deal_id=participant.deal_id, event='delete', participant_id=participant_id)
            )

    def set_values(self, deal_id: str, values: dict[str, str], updated_by: str | None = None) -> None:
        """Store plain string values using each field's data type."""
        stored = self.values.setdefault(deal_id, {})
        for key, value in values.items():
            definition = self.dictionary.get(key)
            data_type = definition.data_type if definition else 'text'
            stored[key] = FieldValue.from_string(deal_id, key, value, data_type, updated_by)

    # =========================================================================
    # DealDataSource
    # =========================================================================

    async def load_packet_templates(self, packet_id: str) -> list[str]:
        return list(self.packet_templates.get(packet_id, []))

    async def load_template_field_maps(self, template_ids: list[str]) -> list[TemplateFieldMap]:
        wanted = set(template_ids)
        return [fm for fm in self.field_maps if fm.template_id in wanted]

    async def load_field_dictionary(self, keys: list[str]) -> list[FieldDefinition]:
        return [self.dictionary[key] for key in keys if key in self.dictionary]

    async def load_deal(self, deal_id: str) -> Deal | None:
        deal = self.deals.get(deal_id)
        return deal.model_copy() if deal else None

    async def update_deal_status(self, deal_id: str, status: DealStatus) -> None:
        deal = self.deals[deal_id]
        self.deals[deal_id] = deal.model_copy(update={'status': status})

    async def load_field_values(self, deal_id: str) -> list[FieldValue]:
        return [value.model_copy() for value in self.values.get(deal_id, {}).values()]

    async def upsert_field_values(self, deal_id: str, values: list[FieldValue]) -> None:
        stored = self.values.setdefault(deal_id, {})
        for value in values:
            stored[value.field_key] = value.model_copy()

    async def load_participants(self, deal_id: str) -> list[DealParticipant]:
        roster = [p.model_copy() for p in self.participants.values() if p.deal_id == deal_id]
        roster.sort(key=lambda p: (p.sequence_order is None, p.sequence_order or 0))
        return roster

    async def update_participant_status(
        self, participant_id: str, status: ParticipantStatus
    ) -> None:
        participant = self.participants[participant_id]
        self.participants[participant_id] = participant.model_copy(update={'status': status})
        self._publish(RosterChanged(deal_id=participant.deal_id, participant_id=participant_id))

    async def mark_participant_completed(
        self, participant_id: str, completed_at: datetime
    ) -> bool:
        participant = self.participants.get(participant_id)
        if participant is None or participant.is_completed:
            return False
        self.participants[participant_id] = participant.model_copy(
            update={'status': ParticipantStatus.COMPLETED, 'completed_at': completed_at}
        )
        self._publish(RosterChanged(deal_id=participant.deal_id, participant_id=participant_id))
        return True

    async def subscribe_participant_changes(self, deal_id: str) -> QueueSubscription:
        """Register a subscriber; events published from now on are delivered."""
        queue: asyncio.Queue[RosterChanged] = asyncio.Queue()
        self._subscribers.setdefault(deal_id, []).append(queue)
        return QueueSubscription(self._subscribers[deal_id], queue)

    async def append_activity(
        self,
        deal_id: str,
        action_type: ActivityType,
        details: dict[str, Any],
        actor_user_id: str | None = None,
    ) -> ActivityRecord:
        record = ActivityRecord(
            deal_id=deal_id,
            action_type=action_type,
            action_details=dict(details),
            actor_user_id=actor_user_id,
        )
        self.activity.append(record)
        return record

    # =========================================================================
    # Helpers
    # =========================================================================

    def activity_for(self, deal_id: str, action_type: ActivityType | None = None) -> list[ActivityRecord]:
        return [
            record
            for record in self.activity
            if record.deal_id == deal_id
            and (action_type is None or record.action_type == action_type)
        ]

    def subscriber_count(self, deal_id: str) -> int:
        return len(self._subscribers.get(deal_id, []))

    def _publish(self, event: RosterChanged) -> None:
        for queue in self._subscribers.get(event.deal_id, []):
            queue.put_nowait(event)


class QueueSubscription:
    """One subscriber's queue; aclose() detaches it from the fan-out list."""

    def __init__(self, subscribers: list[asyncio.Queue[RosterChanged]], queue: asyncio.Queue[RosterChanged]):
        self._subscribers = subscribers
        self._queue = queue
        self._closed = False

    def __aiter__(self) -> QueueSubscription:
        return self

    async def __anext__(self) -> RosterChanged:
        if self._closed:
            raise StopAsyncIteration
        return await self._queue.get()

    async def aclose(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._subscribers.remove(self._queue)
