"""Authentication utilities for JWT handling."""

from datetime import datetime, timedelta, timezone

from jose import JWTError, jwt

from chatpay.config import settings


def create_access_token(user_id: str) -> str:
    """Create a JWT access token for a user."""
    expire = datetime.now(timezone.utc) + timedelta(minutes=settings.jwt_expire_minutes)
    return jwt.encode(
        {"sub": user_id, "exp": expire},
        settings.jwt_secret,
        algorithm=settings.jwt_algorithm,
    )


def verify_token(token: str) -> str | None:
    """Verify a JWT token and return the user id if valid."""
    try:
        payload = jwt.decode(
            token,
            settings.jwt_secret,
            algorithms=[settings.jwt_algorithm],
        )
    except JWTError:
        return None

    user_id: str | None = payload.get("sub")
    return user_id or None
