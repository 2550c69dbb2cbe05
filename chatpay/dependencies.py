"""FastAPI dependencies for auth and services."""

from typing import Annotated

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from chatpay.auth import verify_token
from chatpay.container import Services

# HTTP Bearer token scheme
bearer_scheme = HTTPBearer()


async def get_current_user_id(
    credentials: Annotated[HTTPAuthorizationCredentials, Depends(bearer_scheme)],
) -> str:
    """Dependency to get the authenticated user's id from the bearer token."""
    user_id = verify_token(credentials.credentials)
    if user_id is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid authentication credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return user_id


def get_services(request: Request) -> Services:
    return request.app.state.services


# Type aliases for dependency injection
CurrentUserId = Annotated[str, Depends(get_current_user_id)]
ServicesDep = Annotated[Services, Depends(get_services)]
