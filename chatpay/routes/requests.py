"""Service request routes."""

import uuid
from typing import Literal

from fastapi import APIRouter

from chatpay.dependencies import CurrentUserId, ServicesDep
from chatpay.models import ServiceRequestStatus
from chatpay.schemas import (
    CreateServiceRequest,
    RequestStats,
    RespondResponse,
    RespondToRequest,
    ServiceRequestResponse,
    ServiceSessionResponse,
)

router = APIRouter(prefix="/requests", tags=["requests"])


@router.post("", response_model=ServiceRequestResponse)
async def create_request(
    request: CreateServiceRequest,
    user_id: CurrentUserId,
    services: ServicesDep,
) -> ServiceRequestResponse:
    """Ask a provider for a service. The price is locked until they answer."""
    created = await services.escrow.create_request(
        user_id,
        request.provider_id,
        request.service_type,
        request.duration,
        request.message,
    )
    return ServiceRequestResponse.model_validate(created)


@router.get("/received", response_model=list[ServiceRequestResponse])
async def received(user_id: CurrentUserId, services: ServicesDep) -> list[ServiceRequestResponse]:
    found = await services.escrow.pending_received(user_id)
    return [ServiceRequestResponse.model_validate(request) for request in found]


@router.get("/sent", response_model=list[ServiceRequestResponse])
async def sent(
    user_id: CurrentUserId,
    services: ServicesDep,
    status: ServiceRequestStatus | None = None,
) -> list[ServiceRequestResponse]:
    found = await services.escrow.sent_requests(user_id, status=status)
    return [ServiceRequestResponse.model_validate(request) for request in found]


@router.get("/stats", response_model=RequestStats)
async def stats(
    user_id: CurrentUserId,
    services: ServicesDep,
    role: Literal["requester", "provider"] = "requester",
) -> RequestStats:
    return await services.escrow.request_stats(user_id, role)


@router.get("/{request_id}", response_model=ServiceRequestResponse)
async def get_request(request_id: uuid.UUID, user_id: CurrentUserId, services: ServicesDep) -> ServiceRequestResponse:
    found = await services.escrow.get_request(request_id, user_id)
    return ServiceRequestResponse.model_validate(found)


@router.post("/{request_id}/respond", response_model=RespondResponse)
async def respond(
    request_id: uuid.UUID,
    answer: RespondToRequest,
    user_id: CurrentUserId,
    services: ServicesDep,
) -> RespondResponse:
    request, session = await services.escrow.respond(request_id, user_id, answer.accept, answer.reason)
    return RespondResponse(
        request=ServiceRequestResponse.model_validate(request),
        session=ServiceSessionResponse.model_validate(session) if session is not None else None,
    )


@router.post("/{request_id}/cancel", response_model=ServiceRequestResponse)
async def cancel(request_id: uuid.UUID, user_id: CurrentUserId, services: ServicesDep) -> ServiceRequestResponse:
    cancelled = await services.escrow.cancel_request(request_id, user_id)
    return ServiceRequestResponse.model_validate(cancelled)
