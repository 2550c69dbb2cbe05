"""Chat session routes."""

import uuid

from fastapi import APIRouter

from chatpay.dependencies import CurrentUserId, ServicesDep
from chatpay.errors import SessionNotFound, Unauthorized
from chatpay.schemas import CancelSessionResponse, ChatSessionInfo, EarningStats, PurchaseChatTimeRequest

router = APIRouter(prefix="/sessions", tags=["sessions"])


@router.post("", response_model=ChatSessionInfo)
async def purchase(request: PurchaseChatTimeRequest, user_id: CurrentUserId, services: ServicesDep) -> ChatSessionInfo:
    """Buy a chat time tier from a seller. The session starts paused."""
    session = await services.sessions.purchase(user_id, request.seller_id, request.duration_minutes)
    return services.sessions.info(session)


@router.get("", response_model=list[ChatSessionInfo])
async def list_sessions(
    user_id: CurrentUserId,
    services: ServicesDep,
    active: bool | None = None,
) -> list[ChatSessionInfo]:
    sessions = await services.sessions.list_sessions(user_id, active=active)
    return [services.sessions.info(session) for session in sessions]


@router.get("/active/{other_user_id}", response_model=ChatSessionInfo)
async def get_active(other_user_id: str, user_id: CurrentUserId, services: ServicesDep) -> ChatSessionInfo:
    """The live session between the caller and another user."""
    session = await services.sessions.active_session_between(user_id, other_user_id)
    if session is None:
        raise SessionNotFound("No active session", user_id=user_id, other_user_id=other_user_id)
    return services.sessions.info(session)


@router.get("/earnings", response_model=EarningStats)
async def get_earnings(user_id: CurrentUserId, services: ServicesDep) -> EarningStats:
    return await services.sessions.earning_stats(user_id)


@router.get("/{session_id}", response_model=ChatSessionInfo)
async def get_session(session_id: uuid.UUID, user_id: CurrentUserId, services: ServicesDep) -> ChatSessionInfo:
    session = await services.sessions.get_session(session_id)
    if not session.is_participant(user_id):
        raise Unauthorized("You are not part of this chat session", session_id=str(session_id))
    return services.sessions.info(session)


@router.post("/{session_id}/activate", response_model=ChatSessionInfo)
async def activate(session_id: uuid.UUID, user_id: CurrentUserId, services: ServicesDep) -> ChatSessionInfo:
    session = await services.sessions.activate(session_id, caller_id=user_id)
    return services.sessions.info(session)


@router.post("/{session_id}/activity", response_model=ChatSessionInfo)
async def touch_activity(session_id: uuid.UUID, user_id: CurrentUserId, services: ServicesDep) -> ChatSessionInfo:
    """Record a message in the session, resuming it if paused."""
    session = await services.sessions.get_session(session_id)
    if not session.is_participant(user_id):
        raise Unauthorized("You are not part of this chat session", session_id=str(session_id))
    session = await services.sessions.touch_activity(session_id)
    return services.sessions.info(session)


@router.post("/{session_id}/pause", response_model=ChatSessionInfo)
async def pause(session_id: uuid.UUID, user_id: CurrentUserId, services: ServicesDep) -> ChatSessionInfo:
    session = await services.sessions.pause(session_id, user_id)
    return services.sessions.info(session)


@router.post("/{session_id}/cancel", response_model=CancelSessionResponse)
async def cancel(session_id: uuid.UUID, user_id: CurrentUserId, services: ServicesDep) -> CancelSessionResponse:
    """End the session early; the buyer gets the unused share back."""
    outcome = await services.sessions.cancel(session_id, user_id)
    return CancelSessionResponse(
        refund_amount=outcome.refund_amount,
        used_minutes=round(outcome.session.used_minutes, 2),
        remaining_minutes=round(outcome.remaining_minutes, 2),
        session=services.sessions.info(outcome.session),
    )
