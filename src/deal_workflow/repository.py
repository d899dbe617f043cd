"""
Data-source boundary for the deal workflow core.

DealDataSource is the set of reads/writes the core consumes; the core never
talks to a database directly. Two implementations exist:

- DealRepository (this module): Postgres tables through PostgresClient
- InMemoryDealSource (clients/memory_client.py): dict-backed, for tests
  and local runs

Key design decisions:
- upsert_field_values is last-write-wins on (deal_id, field_key); the core
  only gates who may attempt a write, it does not arbitrate races.
- mark_participant_completed is a compare-and-set so that a participant
  transitions to completed at most once even across processes.
- append_activity is an audit sink; callers go through record_activity(),
  which logs and swallows sink failures so they never abort the action.
"""

from __future__ import annotations

import json
from datetime import date, datetime, timezone
from typing import Any, Protocol

import structlog

from .clients.postgres_client import NotificationStream, PostgresClient
from .config import config
from .errors import DataSourceError
from .models.activity import ActivityRecord, ActivityType
from .models.deal import Deal, DealStatus
from .models.field import FieldDefinition, FieldValue, TemplateFieldMap
from .models.participant import (
    DealParticipant,
    ParticipantStatus,
    RosterChanged,
    RosterSubscription,
)

logger = structlog.get_logger(__name__)


class DealDataSource(Protocol):
    """Reads and writes the core depends on."""

    async def load_packet_templates(self, packet_id: str) -> list[str]: ...

    async def load_template_field_maps(self, template_ids: list[str]) -> list[TemplateFieldMap]: ...

    async def load_field_dictionary(self, keys: list[str]) -> list[FieldDefinition]: ...

    async def load_deal(self, deal_id: str) -> Deal | None: ...

    async def update_deal_status(self, deal_id: str, status: DealStatus) -> None: ...

    async def load_field_values(self, deal_id: str) -> list[FieldValue]: ...

    async def upsert_field_values(self, deal_id: str, values: list[FieldValue]) -> None: ...

    async def load_participants(self, deal_id: str) -> list[DealParticipant]: ...

    async def update_participant_status(
        self, participant_id: str, status: ParticipantStatus
    ) -> None: ...

    async def mark_participant_completed(
        self, participant_id: str, completed_at: datetime
    ) -> bool: ...

    async def subscribe_participant_changes(self, deal_id: str) -> RosterSubscription: ...

    async def append_activity(
        self,
        deal_id: str,
        action_type: ActivityType,
        details: dict[str, Any],
        actor_user_id: str | None = None,
    ) -> ActivityRecord: ...


async def record_activity(
    source: DealDataSource,
    deal_id: str,
    action_type: ActivityType,
    details: dict[str, Any] | None = None,
    actor_user_id: str | None = None,
) -> ActivityRecord | None:
    """Append an audit entry; a failing sink is logged, never raised."""
    try:
        return await source.append_activity(deal_id, action_type, details or {}, actor_user_id)
    except Exception as e:
        logger.warning(
            'activity.append_failed',
            deal_id=deal_id,
            action_type=action_type.value,
            error=str(e),
            error_type=type(e).__name__,
        )
        return None


def _to_iso_date(val: date | str | None) -> str | None:
    """asyncpg returns DATE columns as date objects; the models keep strings."""
    if val is None:
        return None
    if isinstance(val, date):
        return val.isoformat()
    return val


class RosterChangeStream:
    """Parses roster NOTIFY payloads into RosterChanged events for one deal."""

    def __init__(self, deal_id: str, notifications: NotificationStream):
        self.deal_id = deal_id
        self._notifications = notifications

    def __aiter__(self) -> RosterChangeStream:
        return self

    async def __anext__(self) -> RosterChanged:
        async for payload in self._notifications:
            try:
                data = json.loads(payload)
            except json.JSONDecodeError:
                logger.warning('repository.bad_roster_payload', payload=payload)
                continue
            if data.get('deal_id') != self.deal_id:
                continue
            op = str(data.get('op', 'update')).lower()
            return RosterChanged(
                deal_id=self.deal_id,
                event=op if op in ('insert', 'update', 'delete') else 'update',
                participant_id=data.get('participant_id'),
            )
        raise StopAsyncIteration

    async def aclose(self) -> None:
        await self._notifications.aclose()


class DealRepository:
    """
    Postgres-backed DealDataSource.

    Tables: packet_templates, template_field_maps, field_dictionary, deals,
    deal_field_values, deal_participants, activity_log.
    """

    def __init__(self, client: PostgresClient, roster_channel: str | None = None):
        self.client = client
        self.roster_channel = roster_channel or config.ROSTER_CHANNEL

    # =========================================================================
    # Packet / Dictionary Reads
    # =========================================================================

    async def load_packet_templates(self, packet_id: str) -> list[str]:
        rows = await self.client.fetch_all(
            """
            SELECT template_id::text AS template_id
            FROM packet_templates
            WHERE packet_id = CAST(:packet_id AS uuid)
            ORDER BY display_order NULLS LAST, template_id
            """,
            {'packet_id': packet_id},
        )
        return [row['template_id'] for row in rows]

    async def load_template_field_maps(self, template_ids: list[str]) -> list[TemplateFieldMap]:
        if not template_ids:
            return []
        rows = await self.client.fetch_all(
            """
            SELECT tfm.template_id::text AS template_id,
                   fd.field_key,
                   tfm.required_flag,
                   tfm.transform_rule
            FROM template_field_maps tfm
            JOIN field_dictionary fd ON fd.id = tfm.field_dictionary_id
            WHERE tfm.template_id = ANY(CAST(:template_ids AS uuid[]))
            ORDER BY tfm.template_id, tfm.created_at, tfm.id
            """,
            {'template_ids': template_ids},
        )
        return [TemplateFieldMap(**row) for row in rows]

    async def load_field_dictionary(self, keys: list[str]) -> list[FieldDefinition]:
        if not keys:
            return []
        rows = await self.client.fetch_all(
            """
            SELECT id::text AS id, field_key, label, section, data_type,
                   description, default_value, is_calculated, is_repeatable,
                   calculation_formula, calculation_dependencies,
                   validation_rule, allowed_roles, read_only_roles
            FROM field_dictionary
            WHERE field_key = ANY(:keys)
            """,
            {'keys': keys},
        )
        return [self._row_to_definition(row) for row in rows]

    @staticmethod
    def _row_to_definition(row: dict[str, Any]) -> FieldDefinition:
        data = dict(row)
        data['calculation_dependencies'] = data.get('calculation_dependencies') or []
        if data.get('allowed_roles') is None:
            data.pop('allowed_roles', None)
        data['read_only_roles'] = data.get('read_only_roles') or []
        return FieldDefinition(**data)

    # =========================================================================
    # Deal Operations
    # =========================================================================

    async def load_deal(self, deal_id: str) -> Deal | None:
        row = await self.client.fetch_one(
            """
            SELECT id::text AS id, packet_id::text AS packet_id, status,
                   deal_number, created_by::text AS created_by, created_at
            FROM deals
            WHERE id = CAST(:deal_id AS uuid)
            """,
            {'deal_id': deal_id},
        )
        return Deal(**row) if row else None

    async def update_deal_status(self, deal_id: str, status: DealStatus) -> None:
        await self.client.execute(
            """
            UPDATE deals SET status = :status, updated_at = now()
            WHERE id = CAST(:deal_id AS uuid)
            """,
            {'deal_id': deal_id, 'status': status.value},
        )

    # =========================================================================
    # Field Values
    # =========================================================================

    async def load_field_values(self, deal_id: str) -> list[FieldValue]:
        rows = await self.client.fetch_all(
            """
            SELECT deal_id::text AS deal_id, field_key, value_text, value_number,
                   value_date, value_json, updated_by::text AS updated_by, updated_at
            FROM deal_field_values
            WHERE deal_id = CAST(:deal_id AS uuid)
            """,
            {'deal_id': deal_id},
        )
        values = []
        for row in rows:
            row['value_date'] = _to_iso_date(row.get('value_date'))
            if row.get('value_number') is not None:
                row['value_number'] = float(row['value_number'])
            values.append(FieldValue(**row))
        return values

    async def upsert_field_values(self, deal_id: str, values: list[FieldValue]) -> None:
        """UPSERT on (deal_id, field_key); the later write wins."""
        params = [
            {
                'deal_id': deal_id,
                'field_key': value.field_key,
                'value_text': value.value_text,
                'value_number': value.value_number,
                'value_date': value.value_date,
                'value_json': json.dumps(value.value_json) if value.value_json is not None else None,
                'updated_by': value.updated_by,
                'updated_at': value.updated_at,
            }
            for value in values
        ]
        await self.client.execute_many(
            """
            INSERT INTO deal_field_values (
                deal_id, field_key, value_text, value_number, value_date,
                value_json, updated_by, updated_at
            ) VALUES (
                CAST(:deal_id AS uuid), :field_key, :value_text, :value_number,
                CAST(:value_date AS date), CAST(:value_json AS jsonb),
                CAST(:updated_by AS uuid), :updated_at
            )
            ON CONFLICT (deal_id, field_key) DO UPDATE SET
                value_text = EXCLUDED.value_text,
                value_number = EXCLUDED.value_number,
                value_date = EXCLUDED.value_date,
                value_json = EXCLUDED.value_json,
                updated_by = EXCLUDED.updated_by,
                updated_at = EXCLUDED.updated_at
            """,
            params,
        )
        logger.debug('repository.upsert_field_values', deal_id=deal_id, count=len(params))

    # =========================================================================
    # Participants
    # =========================================================================

    async def load_participants(self, deal_id: str) -> list[DealParticipant]:
        rows = await self.client.fetch_all(
            """
            SELECT id::text AS id, deal_id::text AS deal_id, role,
                   user_id::text AS user_id, email, access_method,
                   sequence_order, status, invited_at, completed_at
            FROM deal_participants
            WHERE deal_id = CAST(:deal_id AS uuid)
            ORDER BY sequence_order ASC NULLS LAST, invited_at
            """,
            {'deal_id': deal_id},
        )
        return [DealParticipant(**row) for row in rows]

    async def update_participant_status(
        self, participant_id: str, status: ParticipantStatus
    ) -> None:
        await self.client.execute(
            """
            UPDATE deal_participants SET status = :status
            WHERE id = CAST(:participant_id AS uuid)
            """,
            {'participant_id': participant_id, 'status': status.value},
        )

    async def mark_participant_completed(
        self, participant_id: str, completed_at: datetime
    ) -> bool:
        """Set completed only if not already completed; True when this call won."""
        affected = await self.client.execute(
            """
            UPDATE deal_participants
            SET status = 'completed', completed_at = :completed_at
            WHERE id = CAST(:participant_id AS uuid) AND status <> 'completed'
            """,
            {'participant_id': participant_id, 'completed_at': completed_at},
        )
        return affected == 1

    async def subscribe_participant_changes(self, deal_id: str) -> RosterChangeStream:
        """
        LISTEN for changes to this deal's roster.

        The listener is registered before this returns. The deal_participants
        trigger publishes JSON payloads of the form
        {"deal_id": ..., "op": "INSERT|UPDATE|DELETE", "participant_id": ...}.
        """
        notifications = await self.client.listen(self.roster_channel)
        return RosterChangeStream(deal_id, notifications)

    # =========================================================================
    # Activity Log
    # =========================================================================

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
            action_details=details,
            actor_user_id=actor_user_id,
            created_at=datetime.now(timezone.utc),
        )
        try:
            await self.client.execute(
                """
                INSERT INTO activity_log (
                    id, deal_id, actor_user_id, action_type, action_details, created_at
                ) VALUES (
                    CAST(:id AS uuid), CAST(:deal_id AS uuid), CAST(:actor_user_id AS uuid),
                    :action_type, CAST(:action_details AS jsonb), :created_at
                )
                """,
                {
                    'id': record.id,
                    'deal_id': deal_id,
                    'actor_user_id': actor_user_id,
                    'action_type': action_type.value,
                    'action_details': json.dumps(details, default=str),
                    'created_at': record.created_at,
                },
            )
        except DataSourceError:
            logger.warning('repository.activity_insert_failed', deal_id=deal_id)
            raise
        return record
