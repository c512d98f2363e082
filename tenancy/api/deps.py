"""FastAPI dependencies: caller identity and operator access."""
import hmac
from uuid import UUID

from fastapi import Depends, Header, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession

from tenancy.core.config import get_settings
from tenancy.core.database import get_db
from tenancy.core.security import decode_token
from tenancy.models.user import User

bearer_scheme = HTTPBearer()


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


async def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(bearer_scheme),
    db: AsyncSession = Depends(get_db),
) -> User:
    """Resolve the caller from the bearer token issued by the identity service.

    Tokens are trusted as-is; the ``sub`` claim must name a known user.

    Raises:
        HTTPException: 401 if the token is invalid or the user is unknown
    """
    payload = decode_token(credentials.credentials)
    if not payload:
        raise _unauthorized("Invalid or expired token")

    try:
        user_id = UUID(str(payload.get("sub")))
    except ValueError:
        raise _unauthorized("Invalid token payload") from None

    user = await db.get(User, user_id)
    if user is None:
        raise _unauthorized("User not found")
    return user


async def require_admin_token(
    x_admin_token: str | None = Header(default=None, alias="X-Admin-Token"),
) -> None:
    """Guard operator endpoints (manual sweeps, global stats) with ``X-Admin-Token``.

    Raises:
        HTTPException: 404 when no admin token is configured, 403 on mismatch
    """
    expected = get_settings().admin_token
    if not expected:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Not found")
    if not x_admin_token or not hmac.compare_digest(x_admin_token, expected):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Forbidden")


def client_ip(request: Request) -> str | None:
    return request.client.host if request.client else None
