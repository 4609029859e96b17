import enum
from decimal import Decimal

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    func,
)
from sqlalchemy.orm import relationship

from marketplace.database import Base

Money = Numeric(12, 2)


def money(value) -> Decimal:
    return Decimal(str(value)).quantize(Decimal("0.01"))


class Role(str, enum.Enum):
    BUYER = "buyer"
    SELLER = "seller"
    SUPERUSER = "superuser"


class OrderStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class TransactionStatus(str, enum.Enum):
    PENDING = "pending"
    VERIFIED = "verified"
    FAILED = "failed"


def _check_in(column: str, enum_cls) -> CheckConstraint:
    values = ", ".join(f"'{member.value}'" for member in enum_cls)
    return CheckConstraint(f"{column} IN ({values})", name=f"ck_{column}_valid")


class User(Base):
    __tablename__ = "users"
    __table_args__ = (
        _check_in("role", Role),
        CheckConstraint("earnings >= 0", name="ck_earnings_non_negative"),
    )

    id = Column(Integer, primary_key=True)
    email = Column(String, unique=True, nullable=False, index=True)
    username = Column(String)
    password = Column(String, nullable=False)              # argon2 hash
    role = Column(String, nullable=False, index=True)
    binance_wallet = Column(String)                        # payout address
    earnings = Column(Money, nullable=False, default=0)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())
    is_active = Column(Boolean, nullable=False, default=True)


class Category(Base):
    __tablename__ = "categories"

    id = Column(Integer, primary_key=True)
    name = Column(String, unique=True, nullable=False)
    description = Column(Text)
    created_at = Column(DateTime, server_default=func.now())


class Product(Base):
    __tablename__ = "products"
    __table_args__ = (
        CheckConstraint("price > 0", name="ck_price_positive"),
        CheckConstraint("stock >= 0", name="ck_stock_non_negative"),
    )

    id = Column(Integer, primary_key=True)
    name = Column(String, nullable=False)
    description = Column(Text)
    price = Column(Money, nullable=False)
    stock = Column(Integer, nullable=False, default=0)
    category_id = Column(Integer, ForeignKey("categories.id"), nullable=False, index=True)
    image_url = Column(String)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    category = relationship("Category", lazy="joined")

    @property
    def category_name(self):
        return self.category.name if self.category else None


class Order(Base):
    __tablename__ = "orders"
    __table_args__ = (_check_in("status", OrderStatus),)

    id = Column(Integer, primary_key=True)
    buyer_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    seller_id = Column(Integer, ForeignKey("users.id"), index=True)    # set on claim
    status = Column(String, nullable=False, default=OrderStatus.PENDING.value, index=True)
    total_amount = Column(Money, nullable=False)                       # fixed at creation
    contact_name = Column(String)
    contact_email = Column(String)
    contact_phone = Column(String)
    contact_info = Column(Text)
    payment_proof = Column(Text)
    binance_txid = Column(String)                                      # txid or prepay id
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    buyer = relationship("User", foreign_keys=[buyer_id])
    seller = relationship("User", foreign_keys=[seller_id])
    items = relationship(
        "OrderItem",
        back_populates="order",
        cascade="all, delete-orphan",
        order_by="OrderItem.id",
    )

    @property
    def buyer_email(self):
        return self.buyer.email if self.buyer else None

    @property
    def seller_email(self):
        return self.seller.email if self.seller else None


class OrderItem(Base):
    __tablename__ = "order_items"
    __table_args__ = (CheckConstraint("quantity > 0", name="ck_quantity_positive"),)

    id = Column(Integer, primary_key=True)
    order_id = Column(Integer, ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True)
    product_id = Column(Integer, ForeignKey("products.id"), nullable=False)
    quantity = Column(Integer, nullable=False)
    price = Column(Money, nullable=False)                              # unit price at order time

    order = relationship("Order", back_populates="items")
    product = relationship("Product")

    @property
    def product_name(self):
        return self.product.name if self.product else None


class Transaction(Base):
    __tablename__ = "transactions"
    __table_args__ = (_check_in("status", TransactionStatus),)

    id = Column(Integer, primary_key=True)
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=False, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    amount = Column(Money, nullable=False)
    binance_txid = Column(String)
    payment_proof_url = Column(Text)
    status = Column(String, nullable=False, default=TransactionStatus.PENDING.value)
    created_at = Column(DateTime, server_default=func.now())


class SellerEarning(Base):
    __tablename__ = "seller_earnings"

    id = Column(Integer, primary_key=True)
    seller_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    order_id = Column(Integer, ForeignKey("orders.id"))                # NULL for manual adjustments
    amount = Column(Money, nullable=False)
    created_at = Column(DateTime, server_default=func.now())
