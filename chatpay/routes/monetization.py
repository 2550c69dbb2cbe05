"""Monetization settings routes."""

from fastapi import APIRouter

from chatpay.dependencies import CurrentUserId, ServicesDep
from chatpay.errors import PricingNotConfigured
from chatpay.schemas import (
    AccessCheckRequest,
    ContentAuthorization,
    MonetizationInfo,
    MonetizationSettingsResponse,
    MonetizationSettingsUpdate,
)

router = APIRouter(prefix="/monetization", tags=["monetization"])


@router.put("/settings", response_model=MonetizationSettingsResponse)
async def set_settings(
    update: MonetizationSettingsUpdate,
    user_id: CurrentUserId,
    services: ServicesDep,
) -> MonetizationSettingsResponse:
    found = await services.pricing.set_settings(user_id, update)
    return MonetizationSettingsResponse.model_validate(found)


@router.get("/settings", response_model=MonetizationSettingsResponse)
async def get_settings(user_id: CurrentUserId, services: ServicesDep) -> MonetizationSettingsResponse:
    found = await services.pricing.load(user_id)
    if found is None:
        raise PricingNotConfigured("Monetization settings not found", user_id=user_id)
    return MonetizationSettingsResponse.model_validate(found)


@router.delete("/settings", response_model=MonetizationSettingsResponse)
async def disable(user_id: CurrentUserId, services: ServicesDep) -> MonetizationSettingsResponse:
    """Stop charging. Existing sessions keep their remaining time."""
    found = await services.pricing.disable(user_id)
    return MonetizationSettingsResponse.model_validate(found)


@router.get("/users/{target_user_id}", response_model=MonetizationInfo)
async def get_info(target_user_id: str, user_id: CurrentUserId, services: ServicesDep) -> MonetizationInfo:
    """What messaging another user costs."""
    return await services.pricing.public_info(target_user_id)


@router.post("/check-access", response_model=ContentAuthorization)
async def check_access(
    request: AccessCheckRequest,
    user_id: CurrentUserId,
    services: ServicesDep,
) -> ContentAuthorization:
    return await services.content.authorize(
        user_id,
        request.recipient_id,
        request.content_type,
        request.duration_seconds,
    )
