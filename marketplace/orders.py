"""Order engine: creation with stock reservation, the status state machine and
payment-proof intake.

Every multi-row write runs inside one ``atomic`` unit, and every
read-then-write decision is re-checked by a conditional UPDATE so that
concurrent requests cannot oversell stock or double-claim an order.
"""
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Iterable, List, Optional

from sqlalchemy import and_, func, or_, update
from sqlalchemy.orm import Session, selectinload

from marketplace.auth import CAPABILITIES, authorize
from marketplace.database import atomic
from marketplace.errors import (
    Conflict,
    Forbidden,
    InsufficientStock,
    InvalidProduct,
    InvalidTransition,
    NotFound,
    ValidationError,
)
from marketplace.models import (
    Order,
    OrderItem,
    OrderStatus,
    Product,
    Role,
    Transaction,
    TransactionStatus,
    User,
)

logger = logging.getLogger(__name__)

# Allowed moves of the order state machine; completed and cancelled are terminal.
TRANSITIONS = {
    OrderStatus.PENDING: frozenset({OrderStatus.PROCESSING, OrderStatus.CANCELLED}),
    OrderStatus.PROCESSING: frozenset({OrderStatus.COMPLETED, OrderStatus.CANCELLED}),
    OrderStatus.COMPLETED: frozenset(),
    OrderStatus.CANCELLED: frozenset(),
}

CLAIMABLE = (OrderStatus.PENDING.value, OrderStatus.PROCESSING.value)


@dataclass
class LineItem:
    product_id: int
    quantity: int


@dataclass
class Contact:
    name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    info: Optional[str] = None


def _with_items(query):
    return query.options(
        selectinload(Order.items).selectinload(OrderItem.product),
        selectinload(Order.buyer),
        selectinload(Order.seller),
    )


def create_order(db: Session, buyer: User, items: Iterable[LineItem], contact: Contact) -> Order:
    """Create a pending order and reserve stock for each line item.

    Prices are captured when stock is checked; the order row, its items and
    the stock decrements commit together or not at all.
    """
    authorize(buyer, CAPABILITIES["orders.create"])
    items = list(items)
    if not items:
        raise ValidationError("Add at least one product to the order")
    if not (contact.name or "").strip() or not (contact.email or "").strip():
        raise ValidationError("Contact name and email are required")

    lines = []
    total = Decimal("0")
    for item in items:
        if item.quantity is None or item.quantity <= 0:
            raise ValidationError(f"Quantity for product {item.product_id} must be positive")
        product = db.query(Product).filter_by(id=item.product_id, is_active=True).first()
        if not product:
            raise InvalidProduct(item.product_id)
        if product.stock < item.quantity:
            raise InsufficientStock(product.id, product.stock, item.quantity)
        lines.append((product.id, item.quantity, product.price))
        total += product.price * item.quantity

    with atomic(db):
        order = Order(
            buyer_id=buyer.id,
            seller_id=None,
            status=OrderStatus.PENDING.value,
            total_amount=total,
            contact_name=contact.name.strip(),
            contact_email=contact.email.strip(),
            contact_phone=contact.phone or None,
            contact_info=contact.info or None,
        )
        db.add(order)
        db.flush()

        for product_id, quantity, price in lines:
            db.add(OrderItem(order_id=order.id, product_id=product_id, quantity=quantity, price=price))
            reserved = db.execute(
                update(Product)
                .where(
                    Product.id == product_id,
                    Product.is_active.is_(True),
                    Product.stock >= quantity,
                )
                .values(stock=Product.stock - quantity)
                .execution_options(synchronize_session=False)
            )
            if reserved.rowcount != 1:
                available = db.query(Product.stock).filter_by(id=product_id).scalar()
                raise InsufficientStock(product_id, available or 0, quantity)

    logger.info("Order %s created by buyer %s for %s", order.id, buyer.id, total)
    return order


def _visible_to(user: User, order: Order) -> bool:
    role = Role(user.role)
    if role is Role.SUPERUSER:
        return True
    if role is Role.BUYER:
        return order.buyer_id == user.id
    return order.seller_id == user.id or (order.seller_id is None and order.status in CLAIMABLE)


def list_orders(db: Session, actor: User) -> List[Order]:
    authorize(actor, CAPABILITIES["orders.read"])
    query = _with_items(db.query(Order))
    role = Role(actor.role)
    if role is Role.BUYER:
        query = query.filter(Order.buyer_id == actor.id)
    elif role is Role.SELLER:
        query = query.filter(or_(
            Order.seller_id == actor.id,
            and_(Order.seller_id.is_(None), Order.status.in_(CLAIMABLE)),
        ))
    return query.order_by(Order.created_at.desc(), Order.id.desc()).all()


def get_order(db: Session, actor: User, order_id: int) -> Order:
    authorize(actor, CAPABILITIES["orders.read"])
    order = _with_items(db.query(Order)).filter(Order.id == order_id).first()
    if not order:
        raise NotFound("Order not found")
    if not _visible_to(actor, order):
        raise Forbidden("You do not have permission to view this order")
    return order


def _parse_status(status: str) -> OrderStatus:
    try:
        return OrderStatus(status)
    except ValueError:
        raise ValidationError("Invalid status")


def _claimant(db: Session, actor: User, seller_id: Optional[int]) -> int:
    if seller_id is None or seller_id == actor.id:
        return actor.id
    if Role(actor.role) is not Role.SUPERUSER:
        raise Forbidden("Sellers can only claim orders for themselves")
    seller = db.query(User).filter_by(id=seller_id, role=Role.SELLER.value, is_active=True).first()
    if not seller:
        raise ValidationError("Seller does not exist or is inactive")
    return seller.id


def update_status(db: Session, actor: User, order_id: int, status: str,
                  seller_id: Optional[int] = None) -> Order:
    """Move an order through the state machine.

    Moving an unassigned order to ``processing`` claims it. The claim and
    every other transition are conditional on the state that was read, so of
    two racing requests exactly one wins and the other gets ``Conflict``.
    """
    authorize(actor, CAPABILITIES["orders.update_status"])
    target = _parse_status(status)

    order = db.get(Order, order_id)
    if not order:
        raise NotFound("Order not found")
    current = OrderStatus(order.status)
    is_superuser = Role(actor.role) is Role.SUPERUSER

    if target is OrderStatus.PROCESSING and order.seller_id is None and current.value in CLAIMABLE:
        assignee = _claimant(db, actor, seller_id)
        with atomic(db):
            claimed = db.execute(
                update(Order)
                .where(
                    Order.id == order_id,
                    Order.seller_id.is_(None),
                    Order.status.in_(CLAIMABLE),
                )
                .values(status=target.value, seller_id=assignee, updated_at=func.now())
                .execution_options(synchronize_session=False)
            )
            if claimed.rowcount != 1:
                raise Conflict("Order was already claimed by another seller")
        logger.info("Order %s claimed by seller %s", order_id, assignee)
        db.expire_all()
        return db.get(Order, order_id)

    if target is OrderStatus.PROCESSING and current.value in CLAIMABLE:
        if current is OrderStatus.PROCESSING and order.seller_id == actor.id:
            return order
        raise Conflict("Order was already claimed by another seller")
    if target not in TRANSITIONS[current]:
        raise InvalidTransition(current.value, target.value)
    if not is_superuser and order.seller_id != actor.id:
        raise Forbidden("This order is assigned to another seller")

    with atomic(db):
        moved = db.execute(
            update(Order)
            .where(Order.id == order_id, Order.status == current.value)
            .values(status=target.value, updated_at=func.now())
            .execution_options(synchronize_session=False)
        )
        if moved.rowcount != 1:
            raise Conflict("Order status changed concurrently, reload and retry")
    logger.info("Order %s moved from %s to %s by user %s", order_id, current.value, target.value, actor.id)
    db.expire_all()
    return db.get(Order, order_id)


def submit_payment_proof(db: Session, buyer: User, order_id: int, payment_proof: Optional[str],
                         binance_txid: Optional[str]) -> Transaction:
    """Attach off-band payment evidence and open a pending transaction for it."""
    authorize(buyer, CAPABILITIES["orders.submit_proof"])
    order = db.query(Order).filter_by(id=order_id, buyer_id=buyer.id).first()
    if not order:
        raise NotFound("Order not found")

    with atomic(db):
        order.payment_proof = payment_proof
        order.binance_txid = binance_txid
        transaction = Transaction(
            order_id=order.id,
            user_id=buyer.id,
            amount=order.total_amount,
            binance_txid=binance_txid,
            payment_proof_url=payment_proof,
            status=TransactionStatus.PENDING.value,
        )
        db.add(transaction)
    db.refresh(transaction)
    logger.info("Payment proof recorded for order %s (transaction %s)", order_id, transaction.id)
    return transaction
