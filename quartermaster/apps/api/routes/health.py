from __future__ import annotations

from fastapi import APIRouter, Request
from pydantic import BaseModel

from quartermaster.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from quartermaster.apps.api.response import SuccessEnvelope, success_response

router = APIRouter(tags=["health"], responses=DEFAULT_ERROR_RESPONSES)


class HealthResponse(BaseModel):
    status: str


# Public liveness check; no tenant header or credential required.
@router.get("/health", response_model=SuccessEnvelope[HealthResponse] | HealthResponse)
async def health(request: Request):
    return success_response(request=request, data=HealthResponse(status="ok"))
