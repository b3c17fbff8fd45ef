"""Authentication dependencies for API user scoping."""

from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from config import settings
from services.session_token import decode_session_token


auth_scheme = HTTPBearer(auto_error=False)


@dataclass
class AuthContext:
    user_id: int
    email: Optional[str] = None
    is_admin: bool = False


def ensure_user_scope(auth_user_id: int, supplied_user_id: Optional[int]) -> int:
    """Return authenticated user_id and reject cross-user attempts."""
    if supplied_user_id is not None and supplied_user_id != auth_user_id:
        raise HTTPException(status_code=403, detail="user_id does not match authenticated session.")
    return auth_user_id


async def get_auth_context(
    credentials: HTTPAuthorizationCredentials = Depends(auth_scheme),
) -> AuthContext:
    """Resolve authenticated user from Bearer session token."""
    if not credentials or credentials.scheme.lower() != "bearer":
        raise HTTPException(status_code=401, detail="Missing Bearer session token.")

    try:
        payload = decode_session_token(credentials.credentials)
    except ValueError as exc:
        raise HTTPException(status_code=401, detail=str(exc)) from exc

    user_id = int(payload["sub"])
    return AuthContext(
        user_id=user_id,
        email=str(payload.get("email", "")) or None,
        is_admin=payload.get("role") == "admin" or user_id in settings.ADMIN_USER_IDS,
    )


async def require_admin(auth: AuthContext = Depends(get_auth_context)) -> AuthContext:
    """Allow only admin sessions (role claim or ADMIN_USER_IDS)."""
    if not auth.is_admin:
        raise HTTPException(status_code=403, detail="Admin privileges required.")
    return auth
