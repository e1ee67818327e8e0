"""Guardrail endpoints for a session's project."""

from typing import Optional

from fastapi import APIRouter, Request
from pydantic import BaseModel, Field

from ...exceptions import RalphError
from ...models import Guardrail
from ..dependencies import get_manager, http_error

router = APIRouter()


class GuardrailRequest(BaseModel):
    """Request body for adding a guardrail."""
    text: str = Field(..., min_length=1, description="Lesson for future iterations")
    title: Optional[str] = None


class GuardrailListResponse(BaseModel):
    """Guardrails in insertion order."""
    guardrails: list[Guardrail]
    total: int


@router.get("/sessions/{session_id}/guardrails", response_model=GuardrailListResponse)
async def get_guardrails(request: Request, session_id: str) -> GuardrailListResponse:
    """Get all guardrails recorded for the session's project."""
    try:
        guardrails = get_manager(request).get_guardrails(session_id)
    except RalphError as e:
        raise http_error(e) from e
    return GuardrailListResponse(guardrails=guardrails, total=len(guardrails))


@router.post("/sessions/{session_id}/guardrails", response_model=Guardrail, status_code=201)
async def add_guardrail(request: Request, session_id: str, body: GuardrailRequest) -> Guardrail:
    """Record a guardrail by hand."""
    try:
        return get_manager(request).add_guardrail(session_id, body.text, body.title)
    except RalphError as e:
        raise http_error(e) from e
