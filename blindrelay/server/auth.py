"""
Session token management for the relay.

Tokens are HS256 JWTs carrying the account id (sub), the relay session id
(sid) and the handle. A token is only honoured while its session row is live,
so logout and account deletion take effect immediately.
"""

import os
from datetime import datetime, timedelta, timezone
from typing import Optional
from jose import JWTError, jwt
from pydantic import BaseModel


# Override in production via environment
SECRET_KEY = os.environ.get("BLINDRELAY_SECRET_KEY", "change-this-secret-in-production")
ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.environ.get("BLINDRELAY_TOKEN_EXPIRE_MINUTES", 60 * 24))  # 24 hours


class TokenData(BaseModel):
    """Token payload data"""
    user_id: int
    session_id: str
    handle: str


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None) -> str:
    """
    Create a JWT access token.

    Args:
        data: Claims to encode (sub, sid, handle)
        expires_delta: Token lifetime

    Returns:
        Encoded JWT token
    """
    to_encode = data.copy()
    if expires_delta is None:
        expires_delta = timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES)
    to_encode.update({"exp": datetime.now(timezone.utc) + expires_delta})
    return jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)


def verify_token(token: Optional[str]) -> Optional[TokenData]:
    """
    Verify a JWT token and extract its claims.

    Args:
        token: JWT token to verify

    Returns:
        TokenData if the signature and expiry are valid, None otherwise
    """
    if not token:
        return None
    try:
        payload = jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
    except JWTError:
        return None

    sub = payload.get("sub")
    sid = payload.get("sid")
    handle = payload.get("handle")
    if not sub or not sid or not handle:
        return None
    try:
        return TokenData(user_id=int(sub), session_id=sid, handle=handle)
    except ValueError:
        return None
