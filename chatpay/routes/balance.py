"""Balance routes."""

from fastapi import APIRouter, Query

from chatpay.dependencies import CurrentUserId, ServicesDep
from chatpay.schemas import (
    BalanceResponse,
    HoldResponse,
    LedgerEntryResponse,
    LedgerHistoryResponse,
    Pagination,
    PendingBalanceResponse,
)

router = APIRouter(prefix="/balance", tags=["balance"])


@router.get("", response_model=BalanceResponse)
async def get_balance(user_id: CurrentUserId, services: ServicesDep) -> BalanceResponse:
    """Get the current user's balance."""
    balance = await services.ledger.get_balance(user_id)
    return BalanceResponse.model_validate(balance)


@router.get("/history", response_model=LedgerHistoryResponse)
async def get_history(
    user_id: CurrentUserId,
    services: ServicesDep,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
) -> LedgerHistoryResponse:
    entries, total = await services.ledger.history(user_id, page=page, limit=limit)
    return LedgerHistoryResponse(
        entries=[LedgerEntryResponse.model_validate(entry) for entry in entries],
        pagination=Pagination.of(page, limit, total),
    )


@router.get("/pending", response_model=PendingBalanceResponse)
async def get_pending(user_id: CurrentUserId, services: ServicesDep) -> PendingBalanceResponse:
    """Funds locked in escrow for the user's open service requests."""
    holds = await services.ledger.locked_holds(user_id)
    return PendingBalanceResponse(
        total_locked=sum(hold.amount for hold in holds),
        item_count=len(holds),
        items=[HoldResponse.model_validate(hold) for hold in holds],
    )
