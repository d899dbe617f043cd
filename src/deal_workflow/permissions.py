"""
Per-field view/edit permissions.

Driven by the field dictionary's allowed_roles and read_only_roles columns:

- Internal roles view every field
- admin configures the system but never edits deal data
- csr edits every non-calculated field
- External roles view a field listed in allowed_roles or read_only_roles and
  edit it only when listed in allowed_roles and it is not calculated

These rules are independent of turn-taking; the entry orchestrator decides
*whether* a participant may write at all, this module decides *which*
fields.
"""

from .models.field import FieldDefinition
from .models.participant import ParticipantRole, is_internal_role


def _role_value(role: ParticipantRole | str) -> str:
    return role.value if isinstance(role, ParticipantRole) else str(role)


def can_view_field(role: ParticipantRole | str | None, field: FieldDefinition | None) -> bool:
    if role is None:
        return False
    if is_internal_role(role):
        return True
    if field is None:
        return False
    name = _role_value(role)
    return name in field.allowed_roles or name in field.read_only_roles


def can_edit_field(role: ParticipantRole | str | None, field: FieldDefinition | None) -> bool:
    if role is None:
        return False
    name = _role_value(role)
    if name == ParticipantRole.ADMIN.value:
        return False
    if name == ParticipantRole.CSR.value:
        return field is None or not field.is_calculated
    if field is None or field.is_calculated:
        return False
    return name in field.allowed_roles


def visible_fields(role: ParticipantRole | str | None, fields: list[FieldDefinition]) -> list[FieldDefinition]:
    """Subset of fields the role may see, order preserved."""
    return [field for field in fields if can_view_field(role, field)]
