"""
Authentication utilities

Bearer tokens are HS256 JWTs whose ``sub`` claim is the profile id.
Admin privilege is never taken from token claims; it is looked up on the
profile (role == 'admin') for every request that needs it.
"""
from fastapi import Depends
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from typing import Optional
import jwt
import logging
from pymongo.errors import PyMongoError
from datetime import datetime, timezone, timedelta
import os

from database import get_db
from token_allowance.authorization import authorize, ADMIN_MANAGE
from token_allowance.config import PROFILES_COLLECTION
from token_allowance.errors import AuthenticationError, AuthorizationError, PlanRegistryError

logger = logging.getLogger(__name__)

security = HTTPBearer(auto_error=False)
JWT_SECRET = os.environ.get('JWT_SECRET', 'token-allowance-secret-key-change-in-production')
JWT_ALGORITHM = "HS256"
JWT_EXPIRE_DAYS = int(os.environ.get('JWT_EXPIRE_DAYS', '7'))


def create_token(user_id: str, email: Optional[str] = None, expires_in: Optional[timedelta] = None) -> str:
    payload = {
        "sub": user_id,
        "email": email,
        "exp": datetime.now(timezone.utc) + (expires_in or timedelta(days=JWT_EXPIRE_DAYS))
    }
    return jwt.encode(payload, JWT_SECRET, algorithm=JWT_ALGORITHM)


def decode_token(token: str) -> str:
    """Return the user id carried by a bearer token"""
    try:
        payload = jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALGORITHM])
    except jwt.ExpiredSignatureError:
        raise AuthenticationError("Token expired")
    except jwt.InvalidTokenError:
        raise AuthenticationError("Invalid token")

    user_id = payload.get("sub")
    if not user_id:
        raise AuthenticationError("Invalid token")
    return user_id


async def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    db=Depends(get_db)
):
    """Verify JWT token and return the caller's profile"""
    if credentials is None:
        raise AuthenticationError("No authorization header provided")

    user_id = decode_token(credentials.credentials)

    try:
        user = await db[PROFILES_COLLECTION].find_one({"id": user_id}, {"_id": 0})
    except PyMongoError as e:
        logger.error(f"Profile lookup failed for {user_id}: {e}")
        raise PlanRegistryError(f"Failed to load user profile: {e}")

    if not user:
        raise AuthenticationError("User not found")

    return user


async def get_admin_user(user: dict = Depends(get_current_user), db=Depends(get_db)):
    """Check if user is admin"""
    if not await authorize(db, user["id"], ADMIN_MANAGE):
        raise AuthorizationError("Admin access required")
    return user
