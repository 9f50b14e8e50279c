"""FastAPI dependency: get_current_user.

The escrow engine trusts only the user id carried by a verified token; a
caller-supplied buyer/seller id in a request body is never used for
authorization checks.

Usage in any protected router:
    from src.mp_gateway.auth.dependencies import CurrentUser, get_current_user

    @router.get("/protected")
    async def protected(user: CurrentUser = Depends(get_current_user)):
        ...
"""

from dataclasses import dataclass

from fastapi import Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer

from src.mp_common.errors import InvalidCredentialsError
from src.mp_gateway.auth.jwt_handler import decode_access_token

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/v1/auth/login", auto_error=False)

# Reusable 401 exception with WWW-Authenticate header (OAuth2 standard)
_CREDENTIALS_EXCEPTION = HTTPException(
    status_code=status.HTTP_401_UNAUTHORIZED,
    detail="Invalid or expired token",
    headers={"WWW-Authenticate": "Bearer"},
)


@dataclass(frozen=True)
class CurrentUser:
    id: str
    email: str | None = None


async def get_current_user(token: str | None = Depends(oauth2_scheme)) -> CurrentUser:
    """Validate the Bearer token and return the verified caller.

    Raises HTTP 401 if the token is missing, invalid, or expired.
    """
    if not token:
        raise _CREDENTIALS_EXCEPTION
    try:
        payload = decode_access_token(token)
    except InvalidCredentialsError:
        raise _CREDENTIALS_EXCEPTION from None
    return CurrentUser(id=str(payload["sub"]), email=payload.get("email"))
