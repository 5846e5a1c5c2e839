from datetime import datetime, timedelta
from typing import Optional
from jose import JWTError, jwt
from sqlalchemy.orm import Session
from models.user import User, UserRole
from schemas.user import TokenData
from core.config import settings
import logging

logger = logging.getLogger(__name__)


def create_access_token(user_id: str, role: UserRole, expires_delta: Optional[timedelta] = None) -> str:
    """Issue a signed access token for a user.

    Login and registration live in the identity service; this is used by it
    and by operational tooling.
    """
    expire = datetime.utcnow() + (expires_delta or timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES))
    to_encode = {
        "sub": user_id,
        "role": role.value if isinstance(role, UserRole) else role,
        "exp": expire,
        "iat": datetime.utcnow(),
        "iss": settings.TOKEN_ISSUER,
        "type": "access",
    }
    return jwt.encode(to_encode, settings.SECRET_KEY, algorithm=settings.JWT_ALGORITHM)


def verify_token(token: str) -> Optional[TokenData]:
    """Decode a token; None when it is invalid, expired or missing claims."""
    try:
        payload = jwt.decode(
            token, settings.SECRET_KEY,
            algorithms=[settings.JWT_ALGORITHM],
            issuer=settings.TOKEN_ISSUER
        )
    except JWTError as e:
        logger.warning(f"JWT verification failed: {str(e)}")
        return None

    user_id = payload.get("sub")
    role = payload.get("role")
    if user_id is None or role is None:
        logger.warning("Token missing required claims")
        return None

    try:
        return TokenData(user_id=user_id, role=UserRole(role))
    except ValueError:
        logger.warning(f"Token carries unknown role '{role}'")
        return None


def get_user(db: Session, user_id: str) -> Optional[User]:
    return db.query(User).filter(User.id == user_id).first()
