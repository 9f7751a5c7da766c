"""JWT authentication for the HTTP API and the realtime gateway."""
from fastapi import Depends, Request
from jose import jwt, JWTError
from jose.exceptions import ExpiredSignatureError
from pydantic import BaseModel
from sqlmodel import Session
from datetime import datetime, timedelta
from typing import Any, Dict, Optional
import logging
import os

from app.core.errors import AuthenticationError
from app.db.config import get_session
from app.models.user import User

logger = logging.getLogger(__name__)

# Load environment
JWT_SECRET = os.environ.get("JWT_SECRET", "default-jwt-secret-change-in-production")
JWT_ALGORITHM = os.environ.get("JWT_ALGORITHM", "HS256")
ACCESS_TOKEN_EXPIRE_DAYS = int(os.environ.get("ACCESS_TOKEN_EXPIRE_DAYS", "7"))


class CurrentUser(BaseModel):
    """User information resolved from a bearer credential."""
    user_id: str
    email: Optional[str] = None
    is_active: bool = True


def create_access_token(user_id: str, email: Optional[str] = None,
                        expires_delta: Optional[timedelta] = None) -> str:
    """Issue an access token; session issuance proper lives in the identity service."""
    expire = datetime.utcnow() + (expires_delta or timedelta(days=ACCESS_TOKEN_EXPIRE_DAYS))
    payload = {
        "sub": user_id,
        "email": email,
        "exp": expire,
        "iat": datetime.utcnow(),
    }
    return jwt.encode(payload, JWT_SECRET, algorithm=JWT_ALGORITHM)


def decode_token(token: str) -> Dict[str, Any]:
    """
    Decode and verify a JWT.

    Raises:
        AuthenticationError: If the token is expired, malformed or a refresh token
    """
    if token.startswith("Bearer "):
        token = token[7:]
    try:
        payload = jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALGORITHM])
    except ExpiredSignatureError:
        raise AuthenticationError("Token has expired")
    except JWTError as e:
        logger.warning(f"JWT decode error: {str(e)}")
        raise AuthenticationError("Invalid token")

    if payload.get("type") == "refresh":
        raise AuthenticationError("Invalid token type")
    if not payload.get("sub"):
        raise AuthenticationError("Invalid token: missing user ID")
    return payload


class IdentityService:
    """Resolves a bearer credential to an active user."""

    def __init__(self, db: Session):
        self.db = db

    def resolve(self, token: Optional[str]) -> CurrentUser:
        if not token:
            raise AuthenticationError("No token provided")

        payload = decode_token(token)
        user = self.db.get(User, payload["sub"])
        if user is None:
            raise AuthenticationError("User not found")
        if not user.is_active:
            raise AuthenticationError("Account has been deactivated")

        return CurrentUser(user_id=user.id, email=user.email, is_active=user.is_active)


async def get_current_user(
    request: Request,
    db: Session = Depends(get_session),
) -> CurrentUser:
    """
    Validate the bearer token from the Authorization header.

    Raises:
        AuthenticationError: If the header is missing, malformed or the token is invalid
    """
    auth_header = request.headers.get("authorization")
    if not auth_header:
        raise AuthenticationError("Access denied. No token provided.")
    if not auth_header.startswith("Bearer "):
        raise AuthenticationError("Access denied. Invalid token format.")

    return IdentityService(db).resolve(auth_header[7:])
