import logging
from decimal import Decimal, InvalidOperation
from typing import List, Optional

from sqlalchemy.orm import Session

from marketplace.auth import CAPABILITIES, authorize
from marketplace.database import atomic
from marketplace.errors import NotFound, ValidationError
from marketplace.models import Category, Product, User, money

logger = logging.getLogger(__name__)


def list_categories(db: Session) -> List[Category]:
    return db.query(Category).order_by(Category.name).all()


def list_products(db: Session, category_id: Optional[int] = None) -> List[Product]:
    """Active products, newest first, optionally restricted to one category."""
    query = db.query(Product).filter(Product.is_active.is_(True))
    if category_id is not None:
        query = query.filter(Product.category_id == category_id)
    return query.order_by(Product.created_at.desc(), Product.id.desc()).all()


def get_product(db: Session, product_id: int) -> Product:
    product = db.query(Product).filter_by(id=product_id, is_active=True).first()
    if not product:
        raise NotFound("Product not found")
    return product


def _validated_price(price) -> Decimal:
    try:
        value = money(price)
    except (InvalidOperation, TypeError, ValueError):
        raise ValidationError("Price must be a number")
    if value <= 0:
        raise ValidationError("Price must be positive")
    return value


def _validated_stock(stock) -> int:
    if stock is None:
        return 0
    if int(stock) < 0:
        raise ValidationError("Stock cannot be negative")
    return int(stock)


def _validated_category(db: Session, category_id) -> int:
    if category_id is None or not db.get(Category, category_id):
        raise ValidationError("Category does not exist")
    return category_id


def create_product(db: Session, actor: User, name: str, price, category_id: int,
                   description: Optional[str] = None, stock: int = 0,
                   image_url: Optional[str] = None) -> Product:
    authorize(actor, CAPABILITIES["catalog.write"])
    if not name or not name.strip():
        raise ValidationError("Name, price and category are required")

    product = Product(
        name=name.strip(),
        description=description,
        price=_validated_price(price),
        stock=_validated_stock(stock),
        category_id=_validated_category(db, category_id),
        image_url=image_url,
        is_active=True,
    )
    with atomic(db):
        db.add(product)
    db.refresh(product)
    logger.info("Created product %s", product.id)
    return product


def update_product(db: Session, actor: User, product_id: int, **changes) -> Product:
    """Apply a partial update. Inactive products can be edited and re-activated."""
    authorize(actor, CAPABILITIES["catalog.write"])
    product = db.get(Product, product_id)
    if not product:
        raise NotFound("Product not found")

    if changes.get("name") is not None:
        if not changes["name"].strip():
            raise ValidationError("Name cannot be empty")
        product.name = changes["name"].strip()
    if changes.get("price") is not None:
        product.price = _validated_price(changes["price"])
    if changes.get("stock") is not None:
        product.stock = _validated_stock(changes["stock"])
    if changes.get("category_id") is not None:
        product.category_id = _validated_category(db, changes["category_id"])
    for field in ("description", "image_url", "is_active"):
        if changes.get(field) is not None:
            setattr(product, field, changes[field])

    with atomic(db):
        db.add(product)
    db.refresh(product)
    logger.info("Updated product %s", product.id)
    return product


def delete_product(db: Session, actor: User, product_id: int) -> None:
    """Soft delete: historical order items keep pointing at the row."""
    authorize(actor, CAPABILITIES["catalog.write"])
    product = db.get(Product, product_id)
    if not product or not product.is_active:
        raise NotFound("Product not found")
    with atomic(db):
        product.is_active = False
    logger.info("Deactivated product %s", product_id)
