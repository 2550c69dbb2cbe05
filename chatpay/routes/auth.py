"""Authentication routes.

Identity lives with another service; in debug builds this router can mint a
token for any user id so the API can be driven by hand.
"""

from fastapi import APIRouter, HTTPException, status

from chatpay.auth import create_access_token
from chatpay.config import settings
from chatpay.schemas import AuthResponse, DevTokenRequest

router = APIRouter(prefix="/auth", tags=["auth"])


@router.post("/dev-token", response_model=AuthResponse)
async def dev_token(request: DevTokenRequest) -> AuthResponse:
    """Issue a bearer token for a user id (debug only)."""
    if not settings.debug:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Not Found")

    return AuthResponse(token=create_access_token(request.user_id), user_id=request.user_id)
