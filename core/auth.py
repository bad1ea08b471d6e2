"""
Authentication and authorization dependencies.

Provides FastAPI dependencies for:
- Resolving the bearer token into the current user (id + role)
- Optional authentication for endpoints that also serve anonymous callers
- Role-based access control
"""
from fastapi import Depends
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.orm import Session
from typing import Optional

from core.database import get_db
from core.exceptions import ForbiddenError, UnauthorizedError
from core.security import decode_access_token
from models import User

# auto_error=False so a missing header is a 401 (HTTPBearer would send 403).
security = HTTPBearer(auto_error=False)


def _resolve_user(token: str, db: Session) -> Optional[User]:
    payload = decode_access_token(token)
    if not payload:
        return None
    user_id = payload.get("sub")
    if not user_id:
        return None
    return db.get(User, str(user_id))


def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    db: Session = Depends(get_db)
) -> User:
    """
    Get the current authenticated user from the bearer token.

    The sender/owner of every write is taken from here, never from the body.
    """
    if not credentials:
        raise UnauthorizedError("Unauthorized: Missing or malformed token")

    user = _resolve_user(credentials.credentials, db)
    if not user:
        raise UnauthorizedError("Unauthorized: Invalid token")
    return user


def get_current_user_optional(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    db: Session = Depends(get_db)
) -> Optional[User]:
    """Current user when a valid token is supplied, otherwise None."""
    if not credentials:
        return None
    return _resolve_user(credentials.credentials, db)


def require_role(allowed_roles: list[str]):
    """
    Dependency factory for role-based access control.

    Usage:
        @router.get("/admin-only")
        def admin_endpoint(user: User = Depends(require_role(["admin"]))):
            ...
    """
    def role_checker(current_user: User = Depends(get_current_user)) -> User:
        if current_user.role not in allowed_roles:
            raise ForbiddenError(f"Access denied. Required roles: {allowed_roles}")
        return current_user

    return role_checker
