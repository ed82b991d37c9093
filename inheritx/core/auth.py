"""
Authentication for the InheritX engine.

Bearer JWTs signed with SECRET_KEY. Owner tokens carry the wallet address as
the subject and are issued by the wallet sign-in service; admin tokens are
issued here in exchange for the admin password.
"""

from datetime import datetime, timedelta, timezone
from typing import Optional
import hashlib
import hmac
import secrets

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from jose import jwt, JWTError
from pydantic import BaseModel

from inheritx.core.config import settings


ALGORITHM = "HS256"
ROLE_OWNER = "owner"
ROLE_ADMIN = "admin"

# auto_error=False so a missing header is a 401 rather than FastAPI's 403
security = HTTPBearer(auto_error=False)


class LoginRequest(BaseModel):
    """Admin login request body."""
    password: str


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    expires_in: int  # seconds


class TokenClaims(BaseModel):
    """Validated claims of a bearer token."""
    sub: str
    role: str = ROLE_OWNER
    exp: Optional[int] = None

    @property
    def is_admin(self) -> bool:
        return self.role == ROLE_ADMIN


class AuthError(HTTPException):
    """401 with the Bearer challenge header."""
    def __init__(self, detail: str = "Authentication required"):
        super().__init__(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=detail,
            headers={"WWW-Authenticate": "Bearer"},
        )


def _password_digest(password: str) -> bytes:
    return hmac.new(settings.SECRET_KEY.encode(), password.encode(), hashlib.sha256).digest()


def verify_admin_password(password: str) -> bool:
    if not settings.ADMIN_PASSWORD:
        # No admin password configured: admin login is disabled
        return False
    return hmac.compare_digest(_password_digest(password), _password_digest(settings.ADMIN_PASSWORD))


def create_access_token(subject: str, role: str = ROLE_OWNER, expires_delta: Optional[timedelta] = None) -> str:
    """Sign a token for subject (a wallet address, or "admin")."""
    if expires_delta is None:
        expires_delta = timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES)

    issued_at = datetime.now(timezone.utc)
    payload = {
        "sub": subject,
        "role": role,
        "exp": issued_at + expires_delta,
        "iat": issued_at,
        "jti": secrets.token_hex(16),
    }
    return jwt.encode(payload, settings.SECRET_KEY, algorithm=ALGORITHM)


def decode_token(token: str) -> TokenClaims:
    try:
        payload = jwt.decode(token, settings.SECRET_KEY, algorithms=[ALGORITHM])
    except JWTError as e:
        if "expired" in str(e).lower():
            raise AuthError("Token has expired")
        raise AuthError("Invalid token")
    if not payload.get("sub") or payload.get("role", ROLE_OWNER) not in (ROLE_OWNER, ROLE_ADMIN):
        raise AuthError("Invalid token")
    return TokenClaims(sub=payload["sub"], role=payload.get("role", ROLE_OWNER), exp=payload.get("exp"))


async def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> TokenClaims:
    """Dependency: claims of the bearer token, or 401."""
    if credentials is None:
        raise AuthError("Authentication required")
    return decode_token(credentials.credentials)


async def get_current_owner(user: TokenClaims = Depends(get_current_user)) -> str:
    """Wallet address of the authenticated plan owner."""
    if user.is_admin:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Owner token required")
    return user.sub


async def require_admin(user: TokenClaims = Depends(get_current_user)) -> TokenClaims:
    if not user.is_admin:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin access required")
    return user


def authenticate_admin(password: str) -> TokenResponse:
    """Exchange the admin password for an admin token."""
    if not verify_admin_password(password):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid password",
        )

    expires_delta = timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES)
    return TokenResponse(
        access_token=create_access_token("admin", role=ROLE_ADMIN, expires_delta=expires_delta),
        expires_in=int(expires_delta.total_seconds()),
    )
