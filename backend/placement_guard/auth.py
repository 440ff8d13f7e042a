"""
Placement Guard - Authentication Utilities
Operator JWT tokens, internal key check and attribution dependencies
"""
from datetime import datetime, timedelta
from typing import Optional

from fastapi import Depends, Header, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from jose import JWTError, jwt

from .config import INTERNAL_API_KEY, JWT_ALGORITHM, JWT_SECRET_KEY, OPERATOR_ROLES
from .models.monitoring import OperatorContext

ACCESS_TOKEN_EXPIRE_HOURS = 24

# Bearer token security
security = HTTPBearer()


def create_access_token(user_id: str, email: str, role: str = "operator", expire_hours: int = ACCESS_TOKEN_EXPIRE_HOURS) -> str:
    """Create a JWT access token with role claim."""
    expire = datetime.utcnow() + timedelta(hours=expire_hours)
    to_encode = {
        "sub": user_id,
        "email": email,
        "role": role,
        "exp": expire
    }
    return jwt.encode(to_encode, JWT_SECRET_KEY, algorithm=JWT_ALGORITHM)


def decode_token(token: str) -> Optional[dict]:
    """Decode and validate a JWT token."""
    try:
        payload = jwt.decode(token, JWT_SECRET_KEY, algorithms=[JWT_ALGORITHM])
        return payload
    except JWTError:
        return None


async def require_operator(
    credentials: HTTPAuthorizationCredentials = Depends(security),
) -> OperatorContext:
    """
    Dependency for admin routes.
    Validates the bearer token and returns who is acting, for attribution.
    """
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )

    payload = decode_token(credentials.credentials)
    if payload is None:
        raise credentials_exception

    user_id: str = payload.get("sub")
    if user_id is None:
        raise credentials_exception

    if payload.get("role") not in OPERATOR_ROLES:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Operator access required"
        )

    return OperatorContext(actor_id=user_id, email=payload.get("email"))


async def verify_internal_key(x_internal_key: str = Header(...)):
    """Verify internal API key for scheduler and platform hook endpoints."""
    if x_internal_key != INTERNAL_API_KEY:
        raise HTTPException(status_code=403, detail="Invalid internal API key")
    return True
