"""
Data models for the deal workflow core.

Field dictionary and packet resolution models, calculation results,
participant/orchestration state, deal status transitions and the
activity log.
"""

from .activity import ActivityRecord, ActivityType
from .calculation import CalculatedField, CalculationResult
from .deal import Deal, DealStatus, StatusTransition, StatusTrigger
from .field import (
    FieldDataType,
    FieldDefinition,
    FieldSection,
    FieldValue,
    ResolvedField,
    ResolvedFieldSet,
    SectionKey,
    TemplateFieldMap,
)
from .participant import (
    AccessMethod,
    CompletionResult,
    DealParticipant,
    EntryMode,
    OrchestrationState,
    ParticipantRole,
    ParticipantStatus,
    RosterChanged,
    RosterSubscription,
    ViewerIdentity,
)

__all__ = [
    'ActivityRecord',
    'ActivityType',
    'CalculatedField',
    'CalculationResult',
    'Deal',
    'DealStatus',
    'StatusTransition',
    'StatusTrigger',
    'FieldDataType',
    'FieldDefinition',
    'FieldSection',
    'FieldValue',
    'ResolvedField',
    'ResolvedFieldSet',
    'SectionKey',
    'TemplateFieldMap',
    'AccessMethod',
    'CompletionResult',
    'DealParticipant',
    'EntryMode',
    'OrchestrationState',
    'ParticipantRole',
    'ParticipantStatus',
    'RosterChanged',
    'RosterSubscription',
    'ViewerIdentity',
]
