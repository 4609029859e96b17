"""Buyer registration, login and superuser management of seller accounts."""
import logging
from typing import Optional, Tuple

from sqlalchemy.orm import Session

from marketplace.auth import CAPABILITIES, authorize, hash_password, issue_token, verify_password
from marketplace.database import atomic, execute
from marketplace.errors import NotFound, Unauthenticated, ValidationError
from marketplace.models import Role, User

logger = logging.getLogger(__name__)


def _normalize_email(email: Optional[str]) -> str:
    return (email or "").strip().lower()


def _create_user(db: Session, role: Role, email: str, password: str,
                 username: Optional[str] = None, binance_wallet: Optional[str] = None) -> User:
    email = _normalize_email(email)
    if not email or not password:
        raise ValidationError("Email and password are required")
    if db.query(User).filter_by(email=email).first():
        raise ValidationError("This email is already registered")

    user = User(
        email=email,
        username=username,
        password=hash_password(password),
        role=role.value,
        binance_wallet=binance_wallet or None,
        earnings=0,
        is_active=True,
    )
    # A concurrent registration of the same email surfaces as ConstraintViolation
    with atomic(db):
        db.add(user)
    db.refresh(user)
    logger.info("Created %s account %s", role.value, user.id)
    return user


def register_buyer(db: Session, email: str, password: str, username: Optional[str] = None,
                   binance_wallet: Optional[str] = None) -> Tuple[str, User]:
    """Self-registration is open to buyers only."""
    user = _create_user(db, Role.BUYER, email, password, username, binance_wallet)
    return issue_token(user.id, user.role), user


def login(db: Session, email: str, password: str) -> Tuple[str, User]:
    user = db.query(User).filter_by(email=_normalize_email(email), is_active=True).first()
    if not user or not verify_password(password or "", user.password):
        raise Unauthenticated("Invalid credentials")
    return issue_token(user.id, user.role), user


def get_seller(db: Session, seller_id: int) -> User:
    seller = db.query(User).filter_by(id=seller_id, role=Role.SELLER.value).first()
    if not seller:
        raise NotFound("Seller not found")
    return seller


def create_seller(db: Session, actor: User, email: str, password: str, username: Optional[str] = None,
                  binance_wallet: Optional[str] = None) -> User:
    authorize(actor, CAPABILITIES["admin"])
    return _create_user(db, Role.SELLER, email, password, username, binance_wallet)


def update_seller(db: Session, actor: User, seller_id: int, email: Optional[str] = None,
                  password: Optional[str] = None, username: Optional[str] = None,
                  binance_wallet: Optional[str] = None, is_active: Optional[bool] = None) -> User:
    authorize(actor, CAPABILITIES["admin"])
    seller = get_seller(db, seller_id)

    if email is not None:
        email = _normalize_email(email)
        if not email:
            raise ValidationError("Email cannot be empty")
        taken = db.query(User).filter(User.email == email, User.id != seller.id).first()
        if taken:
            raise ValidationError("This email is already registered")
        seller.email = email
    if password:
        seller.password = hash_password(password)
    if username is not None:
        seller.username = username
    if binance_wallet is not None:
        seller.binance_wallet = binance_wallet or None
    if is_active is not None:
        seller.is_active = is_active

    with atomic(db):
        db.add(seller)
    db.refresh(seller)
    logger.info("Updated seller %s", seller.id)
    return seller


def deactivate_seller(db: Session, actor: User, seller_id: int) -> None:
    """Soft-deactivate a seller; the row and its history stay in place."""
    authorize(actor, CAPABILITIES["admin"])
    get_seller(db, seller_id)
    execute(
        db,
        "UPDATE users SET is_active = :inactive, updated_at = CURRENT_TIMESTAMP "
        "WHERE id = :id AND role = :role",
        {"inactive": False, "id": seller_id, "role": Role.SELLER.value},
    )
    logger.info("Deactivated seller %s", seller_id)
