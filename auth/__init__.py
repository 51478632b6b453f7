"""Identity and authorization.

This module provides:
1. Identity providers answering "who is the current user"
2. Session tokens (JWT) carrying the user id in the ``sub`` claim
3. The authorization policy deciding who holds the admin capability
"""

import logging
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import Iterable, Optional

from jose import jwt

logger = logging.getLogger(__name__)

SESSION_EXPIRY_DAYS = 30

class AuthError(Exception):
    """Base exception for authentication errors."""
    pass

class SessionExpiredError(AuthError):
    """Raised when a session token has expired."""
    pass

class IdentityProvider(ABC):
    """Source of the current user's identity."""

    @abstractmethod
    async def get_current_user_id(self) -> Optional[str]:
        """Return the signed-in user's id, or None when signed out."""

class StaticIdentityProvider(IdentityProvider):
    """Identity provider returning a fixed (switchable) user id."""

    def __init__(self, user_id: Optional[str] = None):
        self.user_id = user_id

    def sign_in(self, user_id: str) -> None:
        self.user_id = user_id

    def sign_out(self) -> None:
        self.user_id = None

    async def get_current_user_id(self) -> Optional[str]:
        return self.user_id

def _jwt_settings(secret: Optional[str], algorithm: Optional[str]):
    from config import settings_conf

    secret = secret or settings_conf.get('jwt_secret')
    if not secret:
        raise AuthError("No JWT secret configured")
    return secret, algorithm or settings_conf.get('jwt_algorithm', 'HS256')

def issue_token(user_id: str, secret: Optional[str] = None, algorithm: Optional[str] = None,
                expires_in: timedelta = timedelta(days=SESSION_EXPIRY_DAYS)) -> str:
    """Create a signed session token for a user.

    Args:
        user_id: User id stored in the ``sub`` claim
        secret: Signing secret, defaults to settings ``jwt_secret``
        algorithm: Signing algorithm, defaults to settings ``jwt_algorithm``
        expires_in: Token lifetime

    Returns:
        Encoded JWT
    """
    secret, algorithm = _jwt_settings(secret, algorithm)
    expires_at = datetime.now(timezone.utc) + expires_in
    return jwt.encode({'sub': user_id, 'exp': expires_at}, secret, algorithm=algorithm)

def verify_token(token: str, secret: Optional[str] = None, algorithm: Optional[str] = None) -> str:
    """Verify a session token and return its user id.

    Raises:
        SessionExpiredError: If the token has expired
        AuthError: If the token is invalid or has no subject
    """
    secret, algorithm = _jwt_settings(secret, algorithm)
    try:
        payload = jwt.decode(token, secret, algorithms=[algorithm])
    except jwt.ExpiredSignatureError:
        raise SessionExpiredError("Session has expired")
    except jwt.JWTError as e:
        raise AuthError(f"Invalid token: {str(e)}")

    user_id = payload.get('sub')
    if not user_id:
        raise AuthError("Token has no subject")
    return user_id

class TokenIdentityProvider(IdentityProvider):
    """Identity provider resolving the user from a session token.

    An invalid or expired token means nobody is signed in.
    """

    def __init__(self, token: Optional[str] = None, secret: Optional[str] = None,
                 algorithm: Optional[str] = None):
        self.token = token
        self.secret = secret
        self.algorithm = algorithm

    def set_token(self, token: Optional[str]) -> None:
        self.token = token

    async def get_current_user_id(self) -> Optional[str]:
        if not self.token:
            return None
        try:
            return verify_token(self.token, self.secret, self.algorithm)
        except AuthError as e:
            logger.warning(f"Rejected session token: {e}")
            return None

class AuthorizationPolicy:
    """Decides which identities hold the admin capability."""

    def __init__(self, admin_ids: Optional[Iterable[str]] = None):
        """Initialize the policy.

        Args:
            admin_ids: Admin user ids, defaults to settings ``admin_ids``
        """
        if admin_ids is None:
            from config import settings_conf
            admin_ids = settings_conf.get('admin_ids', ())
        self.admin_ids = frozenset(admin_ids)

    def is_admin(self, user_id: Optional[str]) -> bool:
        return bool(user_id) and user_id in self.admin_ids

    def can_modify(self, user_id: Optional[str], owner_id: Optional[str]) -> bool:
        """Owner or admin."""
        if not user_id:
            return False
        return user_id == owner_id or self.is_admin(user_id)

__all__ = [
    'IdentityProvider',
    'StaticIdentityProvider',
    'TokenIdentityProvider',
    'AuthorizationPolicy',
    'issue_token',
    'verify_token',
    'AuthError',
    'SessionExpiredError'
]
