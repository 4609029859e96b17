"""Local bookkeeping around Binance Pay: checkout creation, webhook
reconciliation into the order engine and payment status lookups."""
import json
import logging
import re
from typing import Any, Dict, Optional

from sqlalchemy import func, update
from sqlalchemy.orm import Session

from marketplace import binance_service, settings
from marketplace.auth import CAPABILITIES, authorize
from marketplace.database import atomic
from marketplace.errors import NotFound, ValidationError
from marketplace.models import Order, OrderStatus, Transaction, TransactionStatus, User, money
from marketplace.orders import get_order

logger = logging.getLogger(__name__)

TRADE_NO_PATTERN = re.compile(r"ORDER_([0-9]+)_([0-9]+)")

PAY_SUCCESS = "PAY_SUCCESS"
PAY_CLOSED = "PAY_CLOSED"


def parse_trade_no(trade_no) -> int:
    """Extract the order id from ``ORDER_<id>_<timestamp>``; anything else is rejected."""
    match = TRADE_NO_PATTERN.fullmatch(trade_no) if isinstance(trade_no, str) else None
    if not match:
        raise ValidationError("Malformed merchant trade number")
    return int(match.group(1))


def create_payment_order(db: Session, buyer: User, order_id: int, amount=None, currency: str = "USDT",
                         origin: Optional[str] = None) -> Dict[str, Any]:
    authorize(buyer, CAPABILITIES["payments.create"])
    if not order_id:
        raise ValidationError("Order id is required")
    order = db.query(Order).filter_by(id=order_id, buyer_id=buyer.id).first()
    if not order:
        raise NotFound("Order not found")
    if order.status in (OrderStatus.COMPLETED.value, OrderStatus.CANCELLED.value):
        raise ValidationError(f"Order is already {order.status}")

    total = money(order.total_amount)
    if amount is not None and money(amount) != total:
        raise ValidationError("Amount does not match the order total")

    return_url = f"{origin or settings.FRONTEND_URL}/orders/{order.id}"
    checkout = binance_service.create_order(order.id, total, currency, return_url)

    with atomic(db):
        order.binance_txid = checkout["prepayId"]
    logger.info("Payment order %s created for order %s", checkout["prepayId"], order_id)
    return checkout


def _event_data(payload: Dict[str, Any]) -> Dict[str, Any]:
    data = payload.get("data")
    if isinstance(data, str):
        try:
            data = json.loads(data)
        except ValueError:
            raise ValidationError("Invalid webhook payload")
    if not isinstance(data, dict):
        raise ValidationError("Invalid webhook payload")
    return data


def _latest_transaction(db: Session, order_id: int) -> Optional[Transaction]:
    return (
        db.query(Transaction)
        .filter_by(order_id=order_id)
        .order_by(Transaction.created_at.desc(), Transaction.id.desc())
        .first()
    )


def handle_webhook(db: Session, payload: Dict[str, Any]) -> Optional[int]:
    """Apply a verified Binance Pay notification.

    The signature must already have been checked. Returns the affected order
    id, or None when the event type needs no bookkeeping.
    """
    if not isinstance(payload, dict):
        raise ValidationError("Invalid webhook payload")
    biz_status = payload.get("bizStatus")
    if biz_status not in (PAY_SUCCESS, PAY_CLOSED):
        logger.info("Ignoring Binance Pay event %s", biz_status)
        return None

    data = _event_data(payload)
    order_id = parse_trade_no(data.get("merchantTradeNo"))
    order = db.get(Order, order_id)
    if not order:
        raise NotFound("Order not found")

    with atomic(db):
        latest = _latest_transaction(db, order_id)
        if biz_status == PAY_SUCCESS:
            db.execute(
                update(Order)
                .where(Order.id == order_id, Order.status == OrderStatus.PENDING.value)
                .values(status=OrderStatus.PROCESSING.value, updated_at=func.now())
                .execution_options(synchronize_session=False)
            )
            if latest is None:
                db.add(Transaction(
                    order_id=order_id,
                    user_id=order.buyer_id,
                    amount=order.total_amount,
                    binance_txid=data.get("transactionId") or order.binance_txid,
                    status=TransactionStatus.VERIFIED.value,
                ))
            else:
                latest.status = TransactionStatus.VERIFIED.value
        elif latest is not None and latest.status == TransactionStatus.PENDING.value:
            latest.status = TransactionStatus.FAILED.value

    logger.info("Binance Pay %s applied to order %s", biz_status, order_id)
    return order_id


def payment_status(db: Session, actor: User, order_id: int) -> Transaction:
    authorize(actor, CAPABILITIES["payments.read"])
    get_order(db, actor, order_id)
    transaction = _latest_transaction(db, order_id)
    if not transaction:
        raise NotFound("Transaction not found")
    return transaction
