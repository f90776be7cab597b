"""
Authentication API routes.
"""
from datetime import datetime, timezone
from typing import Optional
from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, EmailStr, Field
from sqlalchemy.orm import Session
from sqlalchemy import func

from app.db.session import get_db
from app.db.models import User
from app.core.config import settings
from app.core.errors import AuthenticationError, NotFoundError
from app.core.logging import get_logger
from app.core.security import create_access_token, get_current_user_id, get_role_value, verify_password

router = APIRouter(prefix="/api/auth", tags=["Authentication"])
logger = get_logger(__name__)


# ============= SCHEMAS =============

class LoginRequest(BaseModel):
    email: EmailStr
    password: str = Field(..., max_length=128)


class UserResponse(BaseModel):
    id: int
    email: str
    full_name: Optional[str]
    role: str

    model_config = {"from_attributes": True}


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    expires_in: int
    user: UserResponse


def _user_response(user: User) -> UserResponse:
    return UserResponse(
        id=user.id,
        email=user.email,
        full_name=user.full_name,
        role=get_role_value(user.role),
    )


# ============= ROUTES =============

@router.post("/login", response_model=TokenResponse)
async def login(
    request: Request,
    login_data: LoginRequest,
    db: Session = Depends(get_db)
):
    """Exchange workshop staff credentials for a bearer token."""
    user = db.query(User).filter(func.lower(User.email) == login_data.email.lower()).first()

    if not user or not verify_password(login_data.password, user.hashed_password):
        logger.warning(
            f"Failed login for {login_data.email} from {request.client.host if request.client else 'unknown'}",
            extra={"action": "auth.login_failed"},
        )
        raise AuthenticationError("Invalid email or password")

    if not user.is_active:
        logger.warning(f"Disabled account {user.id} tried to log in", extra={"action": "auth.login_failed", "user_id": user.id})
        raise AuthenticationError("Account is disabled")

    user.last_login = datetime.now(timezone.utc)
    db.commit()

    role = get_role_value(user.role)
    access_token = create_access_token({"sub": str(user.id), "email": user.email, "role": role})
    logger.info(f"User {user.id} logged in as {role}", extra={"action": "auth.login", "user_id": user.id})

    return TokenResponse(
        access_token=access_token,
        expires_in=settings.ACCESS_TOKEN_EXPIRE_MINUTES * 60,
        user=_user_response(user),
    )


@router.get("/me", response_model=UserResponse)
async def get_current_user(
    user_id: int = Depends(get_current_user_id),
    db: Session = Depends(get_db)
):
    user = db.get(User, user_id)
    if not user:
        raise NotFoundError("User", user_id)
    return _user_response(user)
