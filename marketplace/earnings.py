"""Seller earnings ledger and marketplace analytics.

``seller_earnings`` is append-only and is the provenance of every change to
``users.earnings``: sale assignments and manual adjustments both write a
ledger row in the same transaction as the balance update.
"""
import logging
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List

from sqlalchemy import func, update
from sqlalchemy.orm import Session

from marketplace.accounts import get_seller
from marketplace.auth import CAPABILITIES, authorize
from marketplace.database import atomic, query_all, query_one
from marketplace.errors import NotFound, ValidationError
from marketplace.models import Order, OrderStatus, Role, SellerEarning, User, money

logger = logging.getLogger(__name__)

OPERATIONS = ("add", "set")


def _amount(value) -> Decimal:
    try:
        return money(value)
    except (InvalidOperation, TypeError, ValueError):
        raise ValidationError("Amount must be a number")


def _rounded(expression):
    # SQLite keeps NUMERIC as REAL, so balance arithmetic is rounded to cents in SQL
    return func.round(expression, 2)


def ledger_total(db: Session, seller_id: int) -> Decimal:
    total = (
        db.query(func.coalesce(func.sum(SellerEarning.amount), 0))
        .filter(SellerEarning.seller_id == seller_id)
        .scalar()
    )
    return money(total)


def assign_sale(db: Session, actor: User, seller_id: int, order_id: int, amount) -> SellerEarning:
    """Credit a seller for an order: ledger row and balance move together."""
    authorize(actor, CAPABILITIES["admin"])
    if amount is None or order_id is None:
        raise ValidationError("Order id and amount are required")
    amount = _amount(amount)
    if amount <= 0:
        raise ValidationError("Amount must be positive")
    seller = get_seller(db, seller_id)
    if not db.get(Order, order_id):
        raise NotFound("Order not found")

    with atomic(db):
        entry = SellerEarning(seller_id=seller.id, order_id=order_id, amount=amount)
        db.add(entry)
        db.execute(
            update(User)
            .where(User.id == seller.id)
            .values(earnings=_rounded(User.earnings + amount), updated_at=func.now())
            .execution_options(synchronize_session=False)
        )
    db.refresh(entry)
    logger.info("Assigned sale of order %s to seller %s for %s", order_id, seller.id, amount)
    return entry


def set_or_add_earnings(db: Session, actor: User, seller_id: int, amount, operation: str) -> Decimal:
    """Manually correct a seller's balance.

    ``add`` shifts the balance by ``amount`` (which may be negative as long as
    the result stays non-negative); ``set`` replaces it. Either way the change
    is written to the ledger as an adjustment row without an order, so the
    ledger sum keeps matching the balance.
    """
    authorize(actor, CAPABILITIES["admin"])
    if amount is None or not operation:
        raise ValidationError("Amount and operation are required")
    if operation not in OPERATIONS:
        raise ValidationError('Invalid operation, use "add" or "set"')
    amount = _amount(amount)
    seller = get_seller(db, seller_id)

    with atomic(db):
        if operation == "add":
            moved = db.execute(
                update(User)
                .where(User.id == seller.id, _rounded(User.earnings + amount) >= 0)
                .values(earnings=_rounded(User.earnings + amount), updated_at=func.now())
                .execution_options(synchronize_session=False)
            )
            if moved.rowcount != 1:
                raise ValidationError("Earnings cannot become negative")
            adjustment = amount
        else:
            if amount < 0:
                raise ValidationError("Earnings cannot become negative")
            # The balance write locks the seller row before the ledger is read
            db.execute(
                update(User)
                .where(User.id == seller.id)
                .values(earnings=amount, updated_at=func.now())
                .execution_options(synchronize_session=False)
            )
            adjustment = amount - ledger_total(db, seller.id)
        if adjustment:
            db.add(SellerEarning(seller_id=seller.id, order_id=None, amount=adjustment))

    db.expire_all()
    new_earnings = money(db.get(User, seller.id).earnings)
    logger.info("Earnings of seller %s adjusted (%s %s), now %s", seller.id, operation, amount, new_earnings)
    return new_earnings


def list_sellers(db: Session, actor: User) -> List[Dict[str, Any]]:
    authorize(actor, CAPABILITIES["admin"])
    sellers = (
        db.query(User)
        .filter(User.role == Role.SELLER.value)
        .order_by(User.created_at.desc(), User.id.desc())
        .all()
    )
    stats = {
        row.seller_id: row
        for row in db.query(
            Order.seller_id,
            func.count(Order.id).label("order_count"),
            func.coalesce(func.sum(Order.total_amount), 0).label("total_sales"),
        )
        .filter(Order.status == OrderStatus.COMPLETED.value, Order.seller_id.isnot(None))
        .group_by(Order.seller_id)
    }

    result = []
    for seller in sellers:
        row = stats.get(seller.id)
        result.append({
            "id": seller.id,
            "email": seller.email,
            "username": seller.username,
            "binance_wallet": seller.binance_wallet,
            "earnings": money(seller.earnings),
            "ledger_total": ledger_total(db, seller.id),
            "created_at": seller.created_at,
            "is_active": seller.is_active,
            "order_count": row.order_count if row else 0,
            "total_sales": money(row.total_sales) if row else money(0),
        })
    return result


def analytics(db: Session, actor: User) -> Dict[str, Any]:
    """Marketplace-wide snapshot. Each aggregate is read independently."""
    authorize(actor, CAPABILITIES["admin"])
    users = query_all(
        db,
        "SELECT role, COUNT(*) AS count FROM users WHERE is_active = :active GROUP BY role ORDER BY role",
        {"active": True},
    )
    orders = query_one(
        db,
        """
        SELECT
            COUNT(*) AS total_orders,
            COALESCE(SUM(CASE WHEN status = 'pending' THEN 1 ELSE 0 END), 0) AS pending_orders,
            COALESCE(SUM(CASE WHEN status = 'processing' THEN 1 ELSE 0 END), 0) AS processing_orders,
            COALESCE(SUM(CASE WHEN status = 'completed' THEN 1 ELSE 0 END), 0) AS completed_orders,
            COALESCE(SUM(CASE WHEN status = 'cancelled' THEN 1 ELSE 0 END), 0) AS cancelled_orders,
            COALESCE(SUM(CASE WHEN status = 'completed' THEN total_amount ELSE 0 END), 0) AS total_revenue
        FROM orders
        """,
    )
    products = query_one(
        db,
        "SELECT COUNT(*) AS total_products, COALESCE(SUM(stock), 0) AS total_stock "
        "FROM products WHERE is_active = :active",
        {"active": True},
    )
    top_sellers = query_all(
        db,
        """
        SELECT u.id, u.email, u.earnings, COUNT(o.id) AS completed_orders
        FROM users u
        LEFT JOIN orders o ON u.id = o.seller_id AND o.status = 'completed'
        WHERE u.role = 'seller' AND u.is_active = :active
        GROUP BY u.id, u.email, u.earnings
        ORDER BY u.earnings DESC, u.id
        LIMIT 5
        """,
        {"active": True},
    )
    orders["total_revenue"] = money(orders["total_revenue"])
    for seller in top_sellers:
        seller["earnings"] = money(seller["earnings"])
    return {
        "users": users,
        "orders": orders,
        "products": products,
        "top_sellers": top_sellers,
    }
