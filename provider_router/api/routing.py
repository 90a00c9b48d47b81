"""Routing and credit endpoints."""

from typing import Optional
from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel
from sqlalchemy.orm import Session

from provider_router.api.deps import get_credit_gate, get_organization_id, get_task_router
from provider_router.database.database import get_db
from provider_router.services.credit_gate import CREDIT_TYPES, CreditGate
from provider_router.services.exceptions import NoProviderAvailable, ValidationError
from provider_router.services.router_service import TaskRouter, classify_request

router = APIRouter(prefix="/api", tags=["routing"])


class SelectRequest(BaseModel):
    """Either an explicit tier or the inbound request type to classify."""

    task_type: Optional[str] = None
    request_type: Optional[str] = None


class SelectionResponse(BaseModel):
    """Routing decision without credentials."""

    provider_id: Optional[str] = None
    provider_name: Optional[str] = None
    provider_type: Optional[str] = None
    base_url: Optional[str] = None
    model: str
    task_type: str
    is_legacy: bool


class CreditsResponse(BaseModel):
    credit_type: str
    allowed: bool
    remaining: int


@router.post("/routing/select", response_model=SelectionResponse)
async def select_provider(
    request: SelectRequest,
    organization_id: str = Depends(get_organization_id),
    db: Session = Depends(get_db),
    task_router: TaskRouter = Depends(get_task_router),
):
    """Preview which provider and model would serve the next task.

    The round-robin cursor is not advanced, so previews do not skew the rotation.
    """
    task_type = request.task_type or classify_request(request.request_type)
    try:
        selection = task_router.select(db, task_type, organization_id, advance=False)
        return SelectionResponse(**selection.describe())
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except NoProviderAvailable as e:
        raise HTTPException(status_code=503, detail=e.user_message)
    except Exception as e:
        raise HTTPException(status_code=500, detail=f"Failed to select provider: {str(e)}")


@router.get("/credits", response_model=CreditsResponse)
async def check_credits(
    type: str = Query(default="ai_images"),
    organization_id: str = Depends(get_organization_id),
    gate: CreditGate = Depends(get_credit_gate),
):
    """Remaining allowance for a billable AI task class."""
    if type not in CREDIT_TYPES:
        raise HTTPException(
            status_code=400,
            detail=f"Invalid credit type: {type}. Valid types: {', '.join(CREDIT_TYPES)}",
        )
    result = gate.check_credits(organization_id, type)
    return CreditsResponse(credit_type=type, allowed=result.allowed, remaining=result.remaining)
