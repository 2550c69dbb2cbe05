"""Payment gateway routes.

The gateway confirms deposits here after the money has actually arrived.
Deliveries may repeat; the gateway reference makes crediting idempotent.
"""

from fastapi import APIRouter

from chatpay.dependencies import ServicesDep
from chatpay.schemas import BalanceResponse, DepositConfirmation, DepositResponse

router = APIRouter(prefix="/payments", tags=["payments"])


@router.post("/deposits", response_model=DepositResponse)
async def confirm_deposit(confirmation: DepositConfirmation, services: ServicesDep) -> DepositResponse:
    # TODO: verify the gateway's callback signature before crediting
    credited = await services.ledger.credit_deposit(
        confirmation.user_id,
        confirmation.amount,
        confirmation.reference,
    )
    balance = await services.ledger.get_balance(confirmation.user_id)
    return DepositResponse(credited=credited, balance=BalanceResponse.model_validate(balance))
