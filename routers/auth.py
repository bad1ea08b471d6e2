"""
Authentication API endpoints.

Provides:
- User/coach registration
- Login (JWT token generation)
- Current user lookup
"""
from fastapi import APIRouter, Depends, status
from sqlalchemy.orm import Session
import logging

from core.auth import get_current_user
from core.database import get_db
from core.exceptions import BadRequestError, UnauthorizedError
from core.security import (
    ACCESS_TOKEN_EXPIRE_MINUTES,
    create_access_token,
    get_password_hash,
    verify_password,
)
from models import User
from schemas import TokenResponse, UserLogin, UserRegister, UserResponse

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/auth", tags=["auth"])

MIN_PASSWORD_LENGTH = 8


def _token_response(user: User) -> TokenResponse:
    access_token = create_access_token(data={"sub": user.id, "role": user.role})
    return TokenResponse(
        access_token=access_token,
        expires_in=ACCESS_TOKEN_EXPIRE_MINUTES * 60,
        user=UserResponse.model_validate(user),
    )


@router.post("/register", response_model=TokenResponse, status_code=status.HTTP_201_CREATED)
def register(user_data: UserRegister, db: Session = Depends(get_db)):
    """
    Register a new account.

    Admin accounts are never self-served; a token is issued immediately so
    the client can continue without a second login call.
    """
    email = user_data.email.strip().lower()

    if user_data.role not in User.SELF_SERVE_ROLES:
        raise BadRequestError(f"Role must be one of {list(User.SELF_SERVE_ROLES)}", field="role")

    if len(user_data.password) < MIN_PASSWORD_LENGTH:
        raise BadRequestError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters", field="password")

    if db.query(User).filter(User.email == email).first():
        raise BadRequestError("Email already registered", field="email")

    user = User(
        email=email,
        password_hash=get_password_hash(user_data.password),
        name=user_data.name or email.split("@")[0],
        role=user_data.role,
        subscription_tier="free",
    )
    db.add(user)
    db.commit()
    db.refresh(user)

    logger.info(f"Registered {user.role} {user.id}")
    return _token_response(user)


@router.post("/login", response_model=TokenResponse)
def login(credentials: UserLogin, db: Session = Depends(get_db)):
    """Authenticate and return a bearer token."""
    email = credentials.email.strip().lower()
    user = db.query(User).filter(User.email == email).first()

    if not user or not user.password_hash or not verify_password(credentials.password, user.password_hash):
        raise UnauthorizedError("Invalid email or password")

    return _token_response(user)


@router.get("/me", response_model=UserResponse)
def me(current_user: User = Depends(get_current_user)):
    return UserResponse.model_validate(current_user)
