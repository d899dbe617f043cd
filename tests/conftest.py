"""
Pytest configuration and shared fixtures.

Key fixtures:
- memory_source: empty InMemoryDealSource
- seeded_source: dictionary, a two-template packet and a draft deal
- make_participant: factory for DealParticipant rows
- staff_viewer / admin_viewer: internal ViewerIdentity values

The seeded packet ("packet-1") is composed of a note template and a deed
template that overlap on some fields, so required-flag aggregation and
transform-rule unions are exercised by the same data.
"""

import sys
from pathlib import Path

import pytest

# Add src to path for imports
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

# Load environment variables
from dotenv import load_dotenv

env_file = Path(__file__).parent.parent / ".env"
if env_file.exists():
    load_dotenv(env_file)

from deal_workflow.clients.memory_client import InMemoryDealSource
from deal_workflow.models.deal import Deal, DealStatus
from deal_workflow.models.field import FieldDataType, FieldDefinition, FieldSection
from deal_workflow.models.participant import (
    DealParticipant,
    ParticipantRole,
    ParticipantStatus,
    ViewerIdentity,
)

DEAL_ID = "deal-1"
PACKET_ID = "packet-1"
NOTE_TEMPLATE = "tpl-note"
DEED_TEMPLATE = "tpl-deed"

MATURITY_FORMULA = "{loan_terms.first_payment_date} + {loan_terms.term_months} months"


def _definition(field_key: str, label: str, section: FieldSection, **kwargs) -> FieldDefinition:
    return FieldDefinition(
        id=f"fd-{field_key}",
        field_key=field_key,
        label=label,
        section=section,
        **kwargs,
    )


DICTIONARY = [
    _definition(
        "borrower.first_name", "First Name", FieldSection.BORROWER,
        allowed_roles=["admin", "csr", "borrower"],
    ),
    _definition(
        "borrower.last_name", "Last Name", FieldSection.BORROWER,
        allowed_roles=["admin", "csr", "borrower"],
    ),
    _definition(
        "property.address", "Address", FieldSection.PROPERTY,
        allowed_roles=["admin", "csr", "broker"],
        read_only_roles=["borrower"],
    ),
    _definition(
        "loan_terms.amount", "Loan Amount", FieldSection.LOAN_TERMS,
        data_type=FieldDataType.CURRENCY,
        allowed_roles=["admin", "csr", "broker"],
    ),
    _definition(
        "loan_terms.first_payment_date", "First Payment Date", FieldSection.LOAN_TERMS,
        data_type=FieldDataType.DATE,
        allowed_roles=["admin", "csr", "broker"],
    ),
    _definition(
        "loan_terms.term_months", "Term (Months)", FieldSection.LOAN_TERMS,
        data_type=FieldDataType.NUMBER,
        allowed_roles=["admin", "csr", "broker"],
    ),
    _definition(
        "loan_terms.maturity_date", "Maturity Date", FieldSection.LOAN_TERMS,
        data_type=FieldDataType.DATE,
        is_calculated=True,
        calculation_formula=MATURITY_FORMULA,
        calculation_dependencies=["loan_terms.first_payment_date", "loan_terms.term_months"],
        allowed_roles=["admin", "csr", "broker"],
    ),
    _definition(
        "loan_terms.late_charge_days", "Late Charge Days", FieldSection.LOAN_TERMS,
        data_type=FieldDataType.NUMBER,
        default_value="10",
    ),
    _definition("notes.internal_memo", "Internal Memo", FieldSection.NOTES),
]


def seed_packet(source: InMemoryDealSource) -> InMemoryDealSource:
    for definition in DICTIONARY:
        source.add_field(definition)

    source.add_packet(PACKET_ID, [NOTE_TEMPLATE, DEED_TEMPLATE])

    source.add_field_map(NOTE_TEMPLATE, "borrower.first_name", required=True)
    source.add_field_map(NOTE_TEMPLATE, "borrower.last_name")
    source.add_field_map(NOTE_TEMPLATE, "loan_terms.amount", required=True, transform_rule="currency")
    source.add_field_map(
        NOTE_TEMPLATE, "loan_terms.first_payment_date", required=True, transform_rule="date_long"
    )
    source.add_field_map(NOTE_TEMPLATE, "loan_terms.term_months", required=True)
    source.add_field_map(NOTE_TEMPLATE, "loan_terms.maturity_date", transform_rule="date_mmddyyyy")
    source.add_field_map(NOTE_TEMPLATE, "loan_terms.late_charge_days")

    source.add_field_map(DEED_TEMPLATE, "borrower.last_name", required=True)
    source.add_field_map(DEED_TEMPLATE, "property.address", required=True, transform_rule="uppercase")
    source.add_field_map(DEED_TEMPLATE, "loan_terms.amount", transform_rule="currency")
    source.add_field_map(DEED_TEMPLATE, "loan_terms.amount", transform_rule="currency_words")
    source.add_field_map(DEED_TEMPLATE, "notes.internal_memo")
    source.add_field_map(DEED_TEMPLATE, "ghost.unmapped_key", required=True)

    source.add_deal(Deal(id=DEAL_ID, packet_id=PACKET_ID, status=DealStatus.DRAFT))
    return source


COMPLETE_VALUES = {
    "borrower.first_name": "Ada",
    "borrower.last_name": "Lovelace",
    "property.address": "12 Analytical Way",
    "loan_terms.amount": "150000",
    "loan_terms.first_payment_date": "2024-01-31",
    "loan_terms.term_months": "1",
}


@pytest.fixture
def memory_source() -> InMemoryDealSource:
    return InMemoryDealSource()


@pytest.fixture
def seeded_source() -> InMemoryDealSource:
    return seed_packet(InMemoryDealSource())


@pytest.fixture
def complete_values() -> dict[str, str]:
    return dict(COMPLETE_VALUES)


@pytest.fixture
def make_participant():
    """Factory for roster rows on DEAL_ID."""

    def _make(
        participant_id: str,
        role: ParticipantRole = ParticipantRole.BORROWER,
        sequence_order: int | None = None,
        status: ParticipantStatus = ParticipantStatus.INVITED,
        **kwargs,
    ) -> DealParticipant:
        return DealParticipant(
            id=participant_id,
            deal_id=kwargs.pop("deal_id", DEAL_ID),
            role=role,
            user_id=kwargs.pop("user_id", f"user-{participant_id}"),
            sequence_order=sequence_order,
            status=status,
            **kwargs,
        )

    return _make


@pytest.fixture
def staff_viewer() -> ViewerIdentity:
    return ViewerIdentity(role=ParticipantRole.CSR, user_id="user-csr")


@pytest.fixture
def admin_viewer() -> ViewerIdentity:
    return ViewerIdentity(role=ParticipantRole.ADMIN, user_id="user-admin")
