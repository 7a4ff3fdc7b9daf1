"""Authentication API endpoints."""
import logging

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from access_portal.api.dependencies.auth import create_access_token, get_current_user
from access_portal.api.schemas import (
    ApiResponse,
    LoginRequest,
    MeResponse,
    TokenResponse,
    UserResponse,
)
from access_portal.db.database import get_db
from access_portal.db.models import User
from access_portal.services import roles, users

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/auth/login", response_model=ApiResponse[TokenResponse])
async def login(
    body: LoginRequest,
    db: AsyncSession = Depends(get_db),
):
    """Issue an access token for a known email address.

    Password verification happens at the identity provider in front of the
    portal. A soft-deleted account that logs in again is restored.
    """
    user = await users.find_by_email(db, body.email, include_deleted=True)
    if not user:
        logger.warning(f"Login attempt for unknown email {body.email}")
        raise HTTPException(status_code=401, detail="Invalid credentials")

    user = await users.restore_user(db, user)
    access_token, expires_in = create_access_token(user)
    logger.info(f"User {user.email} logged in")

    return ApiResponse(
        data=TokenResponse(access_token=access_token, expires_in=expires_in),
        message="Login successful",
    )


@router.get("/auth/me", response_model=ApiResponse[MeResponse])
async def get_current_user_info(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Get current authenticated user info with effective roles."""
    return ApiResponse(
        data=MeResponse(
            user=UserResponse.model_validate(user),
            roles=await roles.effective_roles(db, user.id),
        )
    )
