"""
Packet field resolver.

Computes, for one packet, which dictionary fields are visible and which are
required, by aggregating the field maps of every template in the packet:

1. Load the packet's templates (none -> empty result; empty packets are legal)
2. Load every TemplateFieldMap row for those templates
3. A field is required if ANY template requires it (OR aggregation; there is
   no "optional overrides required")
4. Transform rules are unioned per field, deduplicated, insertion-ordered
5. Join the field dictionary, sort by the section ordering table then label,
   and group by section

Resolution is a pure function of (dictionary, template maps, packet
templates): re-running it on the same snapshot yields an equal result.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from typing import TYPE_CHECKING

import structlog

from .models.calculation import CalculatedField
from .models.field import (
    FieldDefinition,
    FieldSection,
    ResolvedField,
    ResolvedFieldSet,
    SectionKey,
    TemplateFieldMap,
)

if TYPE_CHECKING:
    from .repository import DealDataSource

logger = structlog.get_logger(__name__)

# Section display order for the data entry tabs. Sections not listed here
# sort after these, grouped in the order they first appear.
SECTION_ORDER: list[FieldSection] = [
    FieldSection.BORROWER,
    FieldSection.CO_BORROWER,
    FieldSection.PROPERTY,
    FieldSection.LOAN_TERMS,
    FieldSection.SELLER,
    FieldSection.TITLE,
    FieldSection.ESCROW,
    FieldSection.OTHER,
]

_SECTION_RANK: dict[SectionKey, int] = {section: rank for rank, section in enumerate(SECTION_ORDER)}


def _section_ranks(fields: Iterable[ResolvedField]) -> dict[SectionKey, int]:
    """Rank every section present; unlisted sections rank last, first-seen first."""
    ranks = dict(_SECTION_RANK)
    next_rank = len(SECTION_ORDER)
    for resolved in fields:
        if resolved.section not in ranks:
            ranks[resolved.section] = next_rank
            next_rank += 1
    return ranks


def build_resolved_field_set(
    template_ids: list[str],
    field_maps: list[TemplateFieldMap],
    definitions: list[FieldDefinition],
) -> ResolvedFieldSet:
    """
    Aggregate template field maps into a ResolvedFieldSet.

    Maps referring to a template outside template_ids, or to a field key with
    no dictionary entry, are ignored.

    Args:
        template_ids: Templates belonging to the packet
        field_maps: TemplateFieldMap rows for those templates
        definitions: Field dictionary entries for the mapped keys

    Returns:
        The resolved set (empty when nothing is mapped)
    """
    if not template_ids:
        return ResolvedFieldSet.empty()

    packet_templates = set(template_ids)
    dictionary = {definition.field_key: definition for definition in definitions}

    visible_keys: list[str] = []
    seen: set[str] = set()
    required: set[str] = set()
    transform_rules: dict[str, list[str]] = {}

    for field_map in field_maps:
        if field_map.template_id not in packet_templates:
            continue
        key = field_map.field_key
        if key not in dictionary:
            continue

        if key not in seen:
            seen.add(key)
            visible_keys.append(key)

        if field_map.required_flag:
            required.add(key)

        if field_map.transform_rule:
            rules = transform_rules.setdefault(key, [])
            if field_map.transform_rule not in rules:
                rules.append(field_map.transform_rule)

    if not visible_keys:
        return ResolvedFieldSet.empty()

    fields = [
        ResolvedField(
            **dictionary[key].model_dump(),
            is_required=key in required,
            transform_rules=transform_rules.get(key, []),
        )
        for key in visible_keys
    ]

    ranks = _section_ranks(fields)
    fields.sort(key=lambda f: (ranks[f.section], f.label))

    fields_by_section: dict[SectionKey, list[ResolvedField]] = {}
    for resolved in fields:
        fields_by_section.setdefault(resolved.section, []).append(resolved)

    sections = sorted(fields_by_section, key=lambda s: ranks[s])

    return ResolvedFieldSet(
        visible_field_keys=[f.field_key for f in fields],
        required_field_keys=[f.field_key for f in fields if f.is_required],
        fields=fields,
        fields_by_section=fields_by_section,
        sections=sections,
    )


async def resolve_packet_fields(source: DealDataSource, packet_id: str) -> ResolvedFieldSet:
    """
    Resolve the visible/required field set for a packet.

    An unknown or empty packet resolves to the empty set rather than raising.
    Persistence failures propagate as DataSourceError.
    """
    log = logger.bind(packet_id=packet_id)

    template_ids = await source.load_packet_templates(packet_id)
    if not template_ids:
        log.info('resolver.empty_packet')
        return ResolvedFieldSet.empty()

    field_maps = await source.load_template_field_maps(template_ids)
    keys = list(dict.fromkeys(fm.field_key for fm in field_maps))
    if not keys:
        log.info('resolver.no_field_maps', template_count=len(template_ids))
        return ResolvedFieldSet.empty()

    definitions = await source.load_field_dictionary(keys)
    resolved = build_resolved_field_set(template_ids, field_maps, definitions)

    missing_definitions = len(keys) - len(resolved.visible_field_keys)
    if missing_definitions:
        log.warning('resolver.unknown_field_keys', count=missing_definitions)

    log.info(
        'resolver.resolved',
        template_count=len(template_ids),
        visible_count=len(resolved.visible_field_keys),
        required_count=len(resolved.required_field_keys),
    )
    return resolved


# =============================================================================
# Completeness Queries
# =============================================================================


def is_blank(value: str | None) -> bool:
    return value is None or value.strip() == ''


def is_field_required(resolved: ResolvedFieldSet, field_key: str) -> bool:
    return field_key in resolved.required_field_keys


def is_field_visible(resolved: ResolvedFieldSet, field_key: str) -> bool:
    return field_key in resolved.visible_field_keys


def get_missing_required_fields(
    resolved: ResolvedFieldSet,
    values: Mapping[str, str | None],
    section: SectionKey | None = None,
) -> list[ResolvedField]:
    """Required fields (optionally within one section) whose value is blank."""
    return [
        field
        for field in resolved.fields
        if field.is_required
        and (section is None or field.section == section)
        and is_blank(values.get(field.field_key))
    ]


def is_section_complete(
    resolved: ResolvedFieldSet,
    values: Mapping[str, str | None],
    section: SectionKey,
) -> bool:
    return not get_missing_required_fields(resolved, values, section)


def is_packet_complete(resolved: ResolvedFieldSet, values: Mapping[str, str | None]) -> bool:
    return not get_missing_required_fields(resolved, values)


def get_validation_errors(
    resolved: ResolvedFieldSet,
    values: Mapping[str, str | None],
    section: SectionKey | None = None,
) -> list[str]:
    """User-facing messages for each missing required field."""
    return [
        f'{field.label} is required'
        for field in get_missing_required_fields(resolved, values, section)
    ]


def calculated_fields(resolved: ResolvedFieldSet) -> list[CalculatedField]:
    """Calculated-field definitions for every resolved field that has a formula."""
    return [
        CalculatedField(
            field_key=field.field_key,
            calculation_formula=field.calculation_formula,
            calculation_dependencies=list(field.calculation_dependencies),
            data_type=field.data_type.value,
        )
        for field in resolved.fields
        if field.is_calculated and field.calculation_formula
    ]
