"""
Field dictionary, template mapping and resolved-field models.

FieldDefinition is read-only reference data from the field dictionary.
TemplateFieldMap ties a template's merge tags to field keys with a
per-template required flag. ResolvedField / ResolvedFieldSet are derived,
never persisted: they are recomputed from the source tables whenever the
packet composition is needed.

FieldValue mirrors the typed-column storage of deal data (value_text,
value_number, value_date, value_json) and converts to and from the plain
string form the engine works with.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any

from pydantic import BaseModel, ConfigDict, Field


class FieldSection(str, Enum):
    """UI grouping bucket for a field."""

    BORROWER = 'borrower'
    CO_BORROWER = 'co_borrower'
    PROPERTY = 'property'
    LOAN_TERMS = 'loan_terms'
    BROKER = 'broker'
    CHARGES = 'charges'
    DATES = 'dates'
    ESCROW = 'escrow'
    PARTICIPANTS = 'participants'
    NOTES = 'notes'
    SELLER = 'seller'
    TITLE = 'title'
    OTHER = 'other'
    SYSTEM = 'system'


# Known sections validate to FieldSection; any other dictionary value is kept
# as a plain string and sorts after the ordering table.
SectionKey = Annotated[FieldSection | str, Field(union_mode='left_to_right')]


def section_name(section: SectionKey) -> str:
    return section.value if isinstance(section, FieldSection) else section


class FieldDataType(str, Enum):
    """Value type of a field; decides which storage column holds it."""

    TEXT = 'text'
    NUMBER = 'number'
    CURRENCY = 'currency'
    DATE = 'date'
    PERCENTAGE = 'percentage'
    BOOLEAN = 'boolean'
    PHONE = 'phone'
    EMAIL = 'email'
    SSN = 'ssn'
    SECTION = 'section'
    LABEL = 'label'
    TEMPLATE = 'template'
    ACTION = 'action'
    FILE = 'file'


NUMERIC_DATA_TYPES = frozenset({
    FieldDataType.NUMBER,
    FieldDataType.CURRENCY,
    FieldDataType.PERCENTAGE,
})


class FieldDefinition(BaseModel):
    """One entry of the field dictionary."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(..., description='Field dictionary row ID')
    field_key: str = Field(
        ..., description='Stable dotted path, e.g. borrower.authorized_party.first_name'
    )
    label: str = Field(..., description='Human-readable label')
    section: SectionKey = FieldSection.OTHER
    data_type: FieldDataType = Field(default=FieldDataType.TEXT)
    description: str | None = None
    default_value: str | None = None
    is_calculated: bool = False
    is_repeatable: bool = False
    calculation_formula: str | None = None
    calculation_dependencies: list[str] = Field(default_factory=list)
    validation_rule: str | None = None
    allowed_roles: list[str] = Field(
        default_factory=lambda: ['admin', 'csr'],
        description='Roles that may view and edit the field',
    )
    read_only_roles: list[str] = Field(
        default_factory=list,
        description='Roles that may view but not edit the field',
    )


class TemplateFieldMap(BaseModel):
    """Association of a template merge tag to a field key."""

    model_config = ConfigDict(frozen=True)

    template_id: str
    field_key: str
    required_flag: bool = False
    transform_rule: str | None = None


class ResolvedField(FieldDefinition):
    """A FieldDefinition annotated for one packet."""

    is_required: bool = Field(
        default=False, description='True if any template in the packet requires it'
    )
    transform_rules: list[str] = Field(
        default_factory=list,
        description='Deduplicated union of every template transform rule, insertion-ordered',
    )


class ResolvedFieldSet(BaseModel):
    """
    Deduplicated, required-annotated view of every field a packet uses.

    Invariants:
    - required_field_keys is a subset of visible_field_keys
    - fields is sorted by the section ordering table, then by label
    - sections only lists sections with at least one field
    """

    model_config = ConfigDict(frozen=True)

    visible_field_keys: list[str] = Field(default_factory=list)
    required_field_keys: list[str] = Field(default_factory=list)
    fields: list[ResolvedField] = Field(default_factory=list)
    fields_by_section: dict[SectionKey, list[ResolvedField]] = Field(default_factory=dict)
    sections: list[SectionKey] = Field(default_factory=list)

    @classmethod
    def empty(cls) -> 'ResolvedFieldSet':
        return cls()

    @property
    def is_empty(self) -> bool:
        return not self.fields

    def get(self, field_key: str) -> ResolvedField | None:
        """Look up a resolved field by key."""
        for resolved in self.fields:
            if resolved.field_key == field_key:
                return resolved
        return None


def format_number(value: float | int) -> str:
    """Render a stored number the way it was typed: 150000, not 150000.0."""
    number = float(value)
    if number.is_integer():
        return str(int(number))
    return repr(number)


class FieldValue(BaseModel):
    """
    One (deal_id, field_key) fact with provenance.

    Only one of the typed columns is populated, chosen by the field's
    data type. Overwrite semantics: a later upsert replaces the row.
    """

    deal_id: str
    field_key: str
    value_text: str | None = None
    value_number: float | None = None
    value_date: str | None = None
    value_json: Any | None = None
    updated_by: str | None = None
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    def to_string(self, data_type: FieldDataType | str = FieldDataType.TEXT) -> str:
        """Convert the typed column for this data type to the engine's string form."""
        data_type = FieldDataType(data_type)
        if data_type in NUMERIC_DATA_TYPES:
            return format_number(self.value_number) if self.value_number is not None else ''
        if data_type == FieldDataType.DATE:
            return self.value_date or ''
        return self.value_text or ''

    @classmethod
    def from_string(
        cls,
        deal_id: str,
        field_key: str,
        value: str,
        data_type: FieldDataType | str = FieldDataType.TEXT,
        updated_by: str | None = None,
    ) -> 'FieldValue':
        """Build a typed record from a string value; unparsable numbers store NULL."""
        data_type = FieldDataType(data_type)
        record = cls(deal_id=deal_id, field_key=field_key, updated_by=updated_by)
        if data_type in NUMERIC_DATA_TYPES:
            try:
                number = float(value)
            except (TypeError, ValueError):
                number = None
            if number is not None and number != number:  # NaN
                number = None
            record.value_number = number
        elif data_type == FieldDataType.DATE:
            record.value_date = value or None
        else:
            record.value_text = value
        return record
