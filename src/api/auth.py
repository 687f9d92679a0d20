"""
Authentication
- Web: NextAuth JWT validation (Bearer token carrying the user's email)
"""

from typing import Any, Dict

from fastapi import HTTPException, Header, Depends
from sqlalchemy.ext.asyncio import AsyncSession
from jose import JWTError, jwt
from loguru import logger

from src.database.crud import get_user_by_email
from src.database.models import User
from src.database.engine import get_session
from config.config import NEXTAUTH_SECRET

NEXTAUTH_ALGORITHM = "HS256"


def decode_nextauth_jwt(token: str) -> Dict[str, Any]:
    """
    Decode and validate NextAuth JWT token.

    Args:
        token: JWT token from NextAuth

    Returns:
        dict: Decoded JWT payload with user data

    Raises:
        HTTPException: If token is invalid or expired
    """
    try:
        payload = jwt.decode(
            token,
            NEXTAUTH_SECRET,
            algorithms=[NEXTAUTH_ALGORITHM]
        )
    except JWTError as e:
        raise HTTPException(
            status_code=401,
            detail=f"Invalid JWT token: {str(e)}"
        )

    if not payload.get('email'):
        raise HTTPException(
            status_code=401,
            detail="Missing email in JWT payload"
        )

    return payload


async def get_current_user(
    authorization: str = Header(...),
    session: AsyncSession = Depends(get_session)
) -> User:
    """
    FastAPI dependency resolving the current user.

    Args:
        authorization: "Bearer <jwt_token>"
        session: Database session

    Returns:
        User: Authenticated user from database

    Raises:
        HTTPException: If authentication fails

    Usage:
        @router.get("/unlocks/mine")
        async def my_unlocks(user: User = Depends(get_current_user)):
            return {"user_id": user.id}
    """
    if not authorization.startswith('Bearer '):
        raise HTTPException(
            status_code=401,
            detail="Invalid authorization header. Expected: 'Bearer <token>'"
        )

    payload = decode_nextauth_jwt(authorization[7:])
    email = payload['email']

    user = await get_user_by_email(session, email)
    if not user:
        logger.warning(f"Authenticated email has no user record: {email}")
        raise HTTPException(
            status_code=404,
            detail="User not found"
        )

    if user.is_banned:
        raise HTTPException(
            status_code=403,
            detail="Your account has been suspended"
        )

    return user
