"""Authentication and authorization dependencies."""
from datetime import datetime, timedelta, timezone
from typing import Callable

import jwt
from fastapi import Depends, HTTPException, Request
from sqlalchemy.ext.asyncio import AsyncSession

from access_portal.config import settings
from access_portal.db.database import get_db
from access_portal.db.models import User
from access_portal.services import roles, users


def create_access_token(user: User) -> tuple[str, int]:
    """Create a JWT access token carrying the user's email."""
    now = datetime.now(timezone.utc)
    expires_in = settings.auth.access_token_expiry_minutes * 60
    payload = {
        "sub": user.id,
        "email": user.email,
        "exp": now + timedelta(seconds=expires_in),
        "iat": now,
    }
    token = jwt.encode(
        payload, settings.auth.secret_key, algorithm=settings.auth.algorithm
    )
    return token, expires_in


def verify_access_token(token: str) -> dict | None:
    """Verify and decode a JWT access token."""
    try:
        return jwt.decode(
            token, settings.auth.secret_key, algorithms=[settings.auth.algorithm]
        )
    except jwt.ExpiredSignatureError:
        return None
    except jwt.InvalidTokenError:
        return None


async def get_current_user(
    request: Request,
    db: AsyncSession = Depends(get_db),
) -> User:
    """Get the current authenticated user from the Authorization header."""
    auth_header = request.headers.get("Authorization")
    if not auth_header or not auth_header.startswith("Bearer "):
        raise HTTPException(status_code=401, detail="Not authenticated")

    payload = verify_access_token(auth_header[7:])
    if not payload or not payload.get("email"):
        raise HTTPException(status_code=401, detail="Invalid or expired token")

    user = await users.find_by_email(db, payload["email"])
    if not user:
        raise HTTPException(status_code=401, detail="User not found")

    return user


def require_role(*required: str) -> Callable:
    """Dependency factory to require one of the stored roles."""
    async def check_role(
        user: User = Depends(get_current_user),
        db: AsyncSession = Depends(get_db),
    ) -> User:
        for role in required:
            if await roles.has_role(db, user.id, role):
                return user
        raise HTTPException(status_code=403, detail="Insufficient permissions")

    return check_role


require_admin = require_role("admin")
