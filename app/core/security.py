import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from jose import ExpiredSignatureError, JWTError, jwt
from fastapi import Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer
from sqlalchemy.orm import Session

from app.config import settings
from app.core.errors import AuthenticationError
from app.db.session import get_db
from app.db.models.user import User

logger = logging.getLogger(__name__)

# Used to extract token from Authorization header
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/auth/login")


@dataclass(frozen=True)
class TokenIdentity:
    """Identity bound to a connection once its credential has been verified."""

    user_id: str
    email: Optional[str] = None


# 🔐 Create JWT Access Token
def create_access_token(data: dict, expires_delta: Optional[timedelta] = None) -> str:
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + (
        expires_delta or timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES)
    )
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, settings.SECRET_KEY, algorithm=settings.ALGORITHM)


def authenticate_token(token: Optional[str]) -> TokenIdentity:
    """
    Verify a signed credential and return the identity it carries.

    Pure check against the signing secret and the ``exp`` claim; no database or
    network access. Raises AuthenticationError on any failure.
    """
    if not token:
        raise AuthenticationError("no token supplied", public_message="Authentication required")

    try:
        payload = jwt.decode(
            token,
            settings.SECRET_KEY,
            algorithms=[settings.ALGORITHM],
            options={"require_exp": True},
        )
    except ExpiredSignatureError as e:
        raise AuthenticationError(f"token expired: {e}", public_message="Token expired") from e
    except JWTError as e:
        raise AuthenticationError(f"JWT decode failed: {e}") from e

    user_id = payload.get("sub")
    if not user_id:
        raise AuthenticationError("JWT token missing 'sub' claim")

    return TokenIdentity(user_id=str(user_id), email=payload.get("email"))


def token_from_headers(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, credentials = authorization.partition(" ")
    if scheme.lower() != "bearer" or not credentials:
        return None
    return credentials.strip()


# 👤 Extract User from Token
def get_current_user(token: str = Depends(oauth2_scheme), db: Session = Depends(get_db)) -> User:
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )

    try:
        identity = authenticate_token(token)
    except AuthenticationError as e:
        logger.warning("Rejected bearer token: %s", e)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=e.public_message,
            headers={"WWW-Authenticate": "Bearer"},
        )

    user = db.query(User).filter(User.id == identity.user_id).first()
    if user is None or not user.is_active:
        logger.warning("No active user for token subject: %s", identity.user_id)
        raise credentials_exception

    return user
