from fastapi import Depends
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.orm import Session
from typing import Optional
import logging

from database.connection import get_db
from core.exceptions import AuthenticationError, AuthorizationError
from models.user import UserRole
from models.partner import Partner
from schemas.user import CurrentUser
from services.auth import verify_token, get_user
from services.partner import get_partner_for_user

logger = logging.getLogger(__name__)

security = HTTPBearer(auto_error=False)


def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    db: Session = Depends(get_db)
) -> CurrentUser:
    """Resolve the bearer token to an active user."""
    if not credentials or not credentials.credentials:
        raise AuthenticationError("Authentication credentials required")

    token_data = verify_token(credentials.credentials)
    if token_data is None:
        raise AuthenticationError("Could not validate credentials")

    user = get_user(db, token_data.user_id)
    if user is None:
        logger.warning(f"Token valid but user not found: {token_data.user_id}")
        raise AuthenticationError("User not found")

    if not user.is_active:
        logger.warning(f"Token valid but user inactive: {token_data.user_id}")
        raise AuthorizationError("Account is inactive")

    return CurrentUser.from_orm(user)


def require_role(*roles: UserRole):
    """Dependency factory restricting an endpoint to the given roles."""
    def checker(current_user: CurrentUser = Depends(get_current_user)) -> CurrentUser:
        if current_user.role not in roles:
            raise AuthorizationError(
                "You do not have permission to perform this action",
                details={"role": current_user.role.value, "allowed": [r.value for r in roles]}
            )
        return current_user
    return checker


get_admin_user = require_role(UserRole.ADMIN)


def get_current_partner(
    current_user: CurrentUser = Depends(require_role(UserRole.PARTNER)),
    db: Session = Depends(get_db)
) -> Partner:
    return get_partner_for_user(db, current_user.id)
