"""
Deal evaluation service.

The read-evaluate-write caller around the pure core:

evaluate:          load deal -> resolve packet -> load values -> apply defaults
                   -> compute calculated fields -> orchestration state
                   -> missing required fields
apply_field_edits: gate (orchestration + field permissions) -> upsert edits
                   and recomputed values -> audit -> status revert check

Concurrent writes to the same field are last-write-wins, delegated to the
data source's upsert; this layer only decides who may attempt a write.
"""

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

import structlog

from .calculation import compute_calculated_fields, get_calculation_errors, merge_calculated_values
from .errors import NotAllowedError, NotFoundError, ValidationError
from .logging import EvaluationTimer, logging_context
from .models.activity import ActivityType
from .models.calculation import CalculationResult
from .models.deal import Deal, StatusTransition
from .models.field import FieldValue, ResolvedField, ResolvedFieldSet, format_number, section_name
from .models.participant import CompletionResult, OrchestrationState, ViewerIdentity
from .orchestration import EntryOrchestrator
from .permissions import can_edit_field
from .repository import DealDataSource, record_activity
from .resolver import (
    calculated_fields,
    get_missing_required_fields,
    is_blank,
    resolve_packet_fields,
)
from .status import DealStatusMachine
from .transforms import apply_transforms, parse_to_canonical

logger = structlog.get_logger(__name__)


# =============================================================================
# Result Models
# =============================================================================


@dataclass
class EvaluationResult:
    """
    Everything a data-entry screen needs for one viewer on one deal.

    values already contains dictionary defaults and successfully computed
    calculated fields.
    """

    deal: Deal
    resolved: ResolvedFieldSet
    values: dict[str, str]
    calculation_results: dict[str, CalculationResult]
    orchestration: OrchestrationState
    missing_required_fields: list[str] = field(default_factory=list)

    # Timing
    processing_time_ms: float | None = None
    stage_timings: dict[str, float] = field(default_factory=dict)

    @property
    def is_complete(self) -> bool:
        return not self.missing_required_fields

    @property
    def calculation_errors(self) -> dict[str, str]:
        return dict(get_calculation_errors(self.calculation_results))

    def to_dict(self) -> dict[str, Any]:
        """Serialize for logging / API responses."""
        return {
            'deal_id': self.deal.id,
            'status': self.deal.status.value,
            'packet_id': self.deal.packet_id,
            'sections': [section_name(section) for section in self.resolved.sections],
            'visible_field_keys': self.resolved.visible_field_keys,
            'required_field_keys': self.resolved.required_field_keys,
            'values': self.values,
            'calculation_results': {
                key: result.model_dump() for key, result in self.calculation_results.items()
            },
            'calculation_errors': self.calculation_errors,
            'missing_required_fields': self.missing_required_fields,
            'is_complete': self.is_complete,
            'orchestration': self.orchestration.model_dump(mode='json'),
            'processing_time_ms': self.processing_time_ms,
            'stage_timings': self.stage_timings,
        }


@dataclass
class FieldEditResult:
    """Outcome of saving a batch of field edits."""

    deal_id: str
    saved_field_keys: list[str] = field(default_factory=list)
    calculated_field_keys: list[str] = field(default_factory=list)
    calculation_errors: dict[str, str] = field(default_factory=dict)
    transition: StatusTransition | None = None

    @property
    def reverted(self) -> bool:
        return self.transition is not None and self.transition.reverted

    def to_dict(self) -> dict[str, Any]:
        return {
            'deal_id': self.deal_id,
            'saved_field_keys': self.saved_field_keys,
            'calculated_field_keys': self.calculated_field_keys,
            'calculation_errors': self.calculation_errors,
            'reverted': self.reverted,
            'transition': self.transition.model_dump(mode='json') if self.transition else None,
            'severity': self.transition.severity if self.reverted else None,
        }


# =============================================================================
# Value Helpers
# =============================================================================


def value_to_string(value: FieldValue, resolved_field: ResolvedField | None) -> str:
    """String form of a stored value; without a definition the first populated column wins."""
    if resolved_field is not None:
        return value.to_string(resolved_field.data_type)
    if value.value_text is not None:
        return value.value_text
    if value.value_number is not None:
        return format_number(value.value_number)
    return value.value_date or ''


def values_by_key(values: Iterable[FieldValue], resolved: ResolvedFieldSet) -> dict[str, str]:
    return {value.field_key: value_to_string(value, resolved.get(value.field_key)) for value in values}


def _as_utc(moment: datetime) -> datetime:
    # Naive timestamps from the database are UTC
    return moment if moment.tzinfo is not None else moment.replace(tzinfo=timezone.utc)


def apply_default_values(resolved: ResolvedFieldSet, values: Mapping[str, str]) -> dict[str, str]:
    """Fill blank fields that have a dictionary default; stored values win."""
    filled = dict(values)
    for resolved_field in resolved.fields:
        if resolved_field.default_value is not None and is_blank(filled.get(resolved_field.field_key)):
            filled[resolved_field.field_key] = resolved_field.default_value
    return filled


# =============================================================================
# Service
# =============================================================================


class DealEvaluationService:
    """
    Coordinates the resolver, calculation engine, orchestrator and status
    machine over one DealDataSource.
    """

    def __init__(self, source: DealDataSource):
        self.source = source
        self.orchestrator = EntryOrchestrator(source)
        self.status_machine = DealStatusMachine(source)

    async def _load_deal(self, deal_id: str) -> Deal:
        deal = await self.source.load_deal(deal_id)
        if deal is None:
            raise NotFoundError('Deal not found', context={'deal_id': deal_id})
        return deal

    async def _resolve(self, deal: Deal) -> ResolvedFieldSet:
        if not deal.packet_id:
            return ResolvedFieldSet.empty()
        return await resolve_packet_fields(self.source, deal.packet_id)

    async def _load_values(self, deal_id: str, resolved: ResolvedFieldSet) -> dict[str, str]:
        return values_by_key(await self.source.load_field_values(deal_id), resolved)

    async def evaluate(self, deal_id: str, viewer: ViewerIdentity) -> EvaluationResult:
        """
        Evaluate a deal snapshot for a viewer.

        Safe to re-run on the same snapshot: nothing is written.
        """
        timer = EvaluationTimer()
        with logging_context(deal_id=deal_id, participant_id=viewer.participant_id):
            with timer.stage('load_deal'):
                deal = await self._load_deal(deal_id)

            with timer.stage('resolve'):
                resolved = await self._resolve(deal)

            with timer.stage('load_values'):
                values = apply_default_values(resolved, await self._load_values(deal_id, resolved))

            with timer.stage('calculate'):
                results = compute_calculated_fields(calculated_fields(resolved), values)
                values = merge_calculated_values(values, results)

            with timer.stage('orchestrate'):
                orchestration = await self.orchestrator.get_orchestration_state(deal_id, viewer)

            missing = [f.field_key for f in get_missing_required_fields(resolved, values)]

            summary = timer.summary()
            logger.info(
                'service.evaluated',
                status=deal.status.value,
                visible_count=len(resolved.visible_field_keys),
                missing_count=len(missing),
                can_edit=orchestration.can_edit,
                **summary,
            )

            return EvaluationResult(
                deal=deal,
                resolved=resolved,
                values=values,
                calculation_results=results,
                orchestration=orchestration,
                missing_required_fields=missing,
                processing_time_ms=summary['total_ms'],
                stage_timings=summary['stages'],
            )

    async def apply_field_edits(
        self,
        deal_id: str,
        edits: Mapping[str, str],
        viewer: ViewerIdentity,
        *,
        is_dirty: bool = True,
    ) -> FieldEditResult:
        """
        Save field edits for a viewer.

        Raises:
            NotFoundError: unknown deal
            NotAllowedError: viewer may not write now, or may not write a field
            ValidationError: a field is not part of the deal's packet
        """
        with logging_context(deal_id=deal_id, participant_id=viewer.participant_id):
            deal = await self._load_deal(deal_id)
            resolved = await self._resolve(deal)

            state = await self.orchestrator.get_orchestration_state(deal_id, viewer)
            if not state.can_edit:
                raise NotAllowedError(
                    'Viewer cannot edit this deal right now',
                    context={
                        'is_waiting': state.is_waiting,
                        'has_completed': state.has_completed,
                        'blocking_participant_id': (
                            state.blocking_participant.id if state.blocking_participant else None
                        ),
                    },
                )

            canonical: dict[str, str] = {}
            for key, raw in edits.items():
                resolved_field = resolved.get(key)
                if resolved_field is None:
                    raise ValidationError(
                        'Field is not part of this deal packet', context={'field_key': key}
                    )
                if resolved_field.is_calculated:
                    raise NotAllowedError('Calculated fields are read-only', context={'field_key': key})
                if not can_edit_field(viewer.role, resolved_field):
                    raise NotAllowedError(
                        'Role cannot edit this field',
                        context={'field_key': key, 'role': viewer.role.value},
                    )
                canonical[key] = parse_to_canonical(raw, resolved_field.data_type.value)

            # Calculations see the same defaulted values the form displays
            current = apply_default_values(resolved, await self._load_values(deal_id, resolved))
            updated = {**current, **canonical}
            results = compute_calculated_fields(calculated_fields(resolved), updated)
            merged = merge_calculated_values(updated, results)

            recalculated = [
                key for key, result in results.items()
                if result.computed and result.value != current.get(key)
            ]
            changed = [key for key, value in canonical.items() if value != current.get(key)]

            records = [
                FieldValue.from_string(
                    deal_id, key, merged[key], resolved.get(key).data_type, viewer.user_id
                )
                for key in [*canonical, *recalculated]
            ]
            await self.source.upsert_field_values(deal_id, records)

            await record_activity(
                self.source,
                deal_id,
                ActivityType.FIELD_UPDATED_BY_EXTERNAL if viewer.is_external else ActivityType.FIELD_UPDATED,
                {
                    'fields': list(canonical),
                    'calculated_fields': recalculated,
                    'participant_id': viewer.participant_id,
                },
                actor_user_id=viewer.user_id,
            )

            transition = await self.status_machine.apply_field_edit(
                deal_id,
                resolved,
                merged,
                [*changed, *recalculated],
                is_dirty=is_dirty,
                actor_user_id=viewer.user_id,
            )

            logger.info(
                'service.fields_saved',
                saved_count=len(canonical),
                recalculated_count=len(recalculated),
                reverted=transition.reverted,
            )
            return FieldEditResult(
                deal_id=deal_id,
                saved_field_keys=list(canonical),
                calculated_field_keys=recalculated,
                calculation_errors=dict(get_calculation_errors(results)),
                transition=transition,
            )

    async def complete_section(self, deal_id: str, participant_id: str, viewer: ViewerIdentity) -> CompletionResult:
        """Complete a participant's section; external viewers may only complete their own."""
        if viewer.is_external:
            state = await self.orchestrator.get_orchestration_state(deal_id, viewer)
            current = state.current_participant
            if current is None or current.id != participant_id:
                raise NotAllowedError(
                    'Participants can only complete their own section',
                    context={'participant_id': participant_id},
                )
        return await self.orchestrator.complete_section(participant_id, deal_id, viewer.user_id)

    async def mark_ready(self, deal_id: str, viewer: ViewerIdentity) -> StatusTransition:
        """Mark a deal ready after checking required fields against stored values."""
        deal = await self._load_deal(deal_id)
        resolved = await self._resolve(deal)
        values = apply_default_values(resolved, await self._load_values(deal_id, resolved))
        results = compute_calculated_fields(calculated_fields(resolved), values)
        values = merge_calculated_values(values, results)
        return await self.status_machine.mark_ready(
            deal_id, resolved, values, viewer.role, actor_user_id=viewer.user_id
        )

    async def mark_generated(self, deal_id: str, viewer: ViewerIdentity) -> StatusTransition:
        return await self.status_machine.mark_generated(
            deal_id, viewer.role, actor_user_id=viewer.user_id
        )

    def detect_external_modifications(
        self,
        values: Iterable[FieldValue],
        reviewed_at: datetime | None,
        external_user_ids: Iterable[str],
    ) -> list[FieldValue]:
        """Values written by external users since staff last reviewed external data."""
        external = set(external_user_ids)
        if reviewed_at is not None:
            reviewed_at = _as_utc(reviewed_at)
        modified = []
        for value in values:
            if value.updated_by not in external:
                continue
            if reviewed_at is None or _as_utc(value.updated_at) > reviewed_at:
                modified.append(value)
        return modified

    def export_values(self, resolved: ResolvedFieldSet, values: Mapping[str, str]) -> dict[str, str]:
        """Apply each field's transform rules to produce document merge values."""
        exported = {}
        for resolved_field in resolved.fields:
            value = values.get(resolved_field.field_key)
            if is_blank(value):
                continue
            exported[resolved_field.field_key] = apply_transforms(value, resolved_field.transform_rules)
        return exported
