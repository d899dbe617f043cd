"""Deal data-entry endpoints: packet fields, evaluation, edits, completion, status."""

import structlog
from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field

from deal_workflow.models.participant import ViewerIdentity
from deal_workflow.resolver import resolve_packet_fields
from deal_workflow.service import DealEvaluationService

from ..auth import verify_api_token

logger = structlog.get_logger(__name__)

router = APIRouter(dependencies=[Depends(verify_api_token)])


class ViewerRequest(BaseModel):
    viewer: ViewerIdentity


class FieldEditRequest(BaseModel):
    viewer: ViewerIdentity
    values: dict[str, str] = Field(..., description="Raw edited values keyed by field_key")
    is_dirty: bool = Field(default=True, description="False when re-saving reloaded values")


def _service(request: Request) -> DealEvaluationService:
    return request.app.state.service


@router.get("/packets/{packet_id}/fields")
async def get_packet_fields(packet_id: str, request: Request):
    """Resolved visible/required fields for a packet."""
    resolved = await resolve_packet_fields(request.app.state.source, packet_id)
    return resolved.model_dump(mode="json")


@router.post("/deals/{deal_id}/evaluate")
async def evaluate_deal(deal_id: str, body: ViewerRequest, request: Request):
    """Values, calculation results, missing fields and gating for the viewer."""
    result = await _service(request).evaluate(deal_id, body.viewer)
    return result.to_dict()


@router.post("/deals/{deal_id}/fields")
async def save_fields(deal_id: str, body: FieldEditRequest, request: Request):
    """Gate, save and recompute; may revert a sealed deal to draft."""
    result = await _service(request).apply_field_edits(
        deal_id, body.values, body.viewer, is_dirty=body.is_dirty
    )
    logger.info("deals.fields_saved", deal_id=deal_id, reverted=result.reverted)
    return result.to_dict()


@router.post("/deals/{deal_id}/participants/{participant_id}/start")
async def start_participant(deal_id: str, participant_id: str, request: Request):
    """Record a participant's first access."""
    participant = await _service(request).orchestrator.start_participant(participant_id, deal_id)
    return participant.model_dump(mode="json")


@router.post("/deals/{deal_id}/participants/{participant_id}/complete")
async def complete_participant(deal_id: str, participant_id: str, body: ViewerRequest, request: Request):
    """Complete a participant's section; 409 when already completed."""
    result = await _service(request).complete_section(deal_id, participant_id, body.viewer)
    return result.model_dump(mode="json")


@router.post("/deals/{deal_id}/status/ready")
async def mark_ready(deal_id: str, body: ViewerRequest, request: Request):
    """draft -> ready; 409 listing missing required fields when incomplete."""
    transition = await _service(request).mark_ready(deal_id, body.viewer)
    return transition.model_dump(mode="json")


@router.post("/deals/{deal_id}/status/generated")
async def mark_generated(deal_id: str, body: ViewerRequest, request: Request):
    """ready -> generated."""
    transition = await _service(request).mark_generated(deal_id, body.viewer)
    return transition.model_dump(mode="json")
