import logging
from datetime import datetime, timedelta, timezone
from typing import Iterable, Optional

from argon2 import PasswordHasher
from argon2.exceptions import InvalidHashError, VerificationError
from fastapi import Depends, Header
from jose import JWTError, jwt
from sqlalchemy.orm import Session

from marketplace import settings
from marketplace.database import get_db
from marketplace.errors import Forbidden, Unauthenticated
from marketplace.models import Role, User

logger = logging.getLogger(__name__)

_hasher = PasswordHasher()

BUYERS = frozenset({Role.BUYER})
STAFF = frozenset({Role.SELLER, Role.SUPERUSER})
SUPERUSERS = frozenset({Role.SUPERUSER})
EVERYONE = frozenset(Role)

# Roles allowed per guarded operation. No role implies another.
CAPABILITIES = {
    "catalog.write": SUPERUSERS,
    "orders.create": BUYERS,
    "orders.read": EVERYONE,
    "orders.update_status": STAFF,
    "orders.submit_proof": BUYERS,
    "payments.create": BUYERS,
    "payments.read": EVERYONE,
    "admin": SUPERUSERS,
}


def hash_password(password: str) -> str:
    return _hasher.hash(password)


def verify_password(password: str, hashed: str) -> bool:
    try:
        return _hasher.verify(hashed, password)
    except (VerificationError, InvalidHashError):
        return False


def issue_token(user_id: int, role) -> str:
    expires = datetime.now(timezone.utc) + timedelta(days=settings.TOKEN_TTL_DAYS)
    claims = {"sub": str(user_id), "role": Role(role).value, "exp": expires}
    return jwt.encode(claims, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)


def authenticate(db: Session, token: Optional[str]) -> User:
    """Resolve a bearer token to an active user."""
    if not token:
        raise Unauthenticated("Access denied: token not provided")
    try:
        claims = jwt.decode(token, settings.JWT_SECRET, algorithms=[settings.JWT_ALGORITHM])
        user_id = int(claims["sub"])
    except (JWTError, KeyError, TypeError, ValueError):
        raise Unauthenticated("Invalid or expired token")

    user = db.query(User).filter_by(id=user_id, is_active=True).first()
    if not user:
        raise Unauthenticated("User not found or inactive")
    return user


def authorize(user: User, allowed_roles: Iterable[Role]) -> None:
    if Role(user.role) not in frozenset(allowed_roles):
        raise Forbidden("You do not have permission to perform this action")


def _bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    parts = authorization.split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        raise Unauthenticated("Invalid or missing token")
    return parts[1]


def get_current_user(
    authorization: Optional[str] = Header(None),
    db: Session = Depends(get_db),
) -> User:
    return authenticate(db, _bearer_token(authorization))


def require(capability: str):
    allowed = CAPABILITIES[capability]

    def dependency(user: User = Depends(get_current_user)) -> User:
        authorize(user, allowed)
        return user

    return dependency
