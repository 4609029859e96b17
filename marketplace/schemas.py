from datetime import datetime
from decimal import Decimal
from typing import Annotated, List, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field, PlainSerializer

# Money is exact in Python and plain numbers on the wire
Amount = Annotated[Decimal, PlainSerializer(float, return_type=float, when_used="json")]


class ORMModel(BaseModel):
    model_config = ConfigDict(from_attributes=True)


# ----------------------- Auth -----------------------
class RegisterRequest(BaseModel):
    email: EmailStr
    password: str = Field(min_length=1)
    username: Optional[str] = None
    binance_wallet: Optional[str] = None


class LoginRequest(BaseModel):
    email: str
    password: str


class UserOut(ORMModel):
    id: int
    email: str
    username: Optional[str] = None
    role: str
    binance_wallet: Optional[str] = None
    earnings: Amount
    is_active: bool


# ----------------------- Catalog -----------------------
class CategoryOut(ORMModel):
    id: int
    name: str
    description: Optional[str] = None


class ProductCreate(BaseModel):
    name: str
    description: Optional[str] = None
    price: Decimal
    stock: int = 0
    category_id: int
    image_url: Optional[str] = None


class ProductUpdate(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    price: Optional[Decimal] = None
    stock: Optional[int] = None
    category_id: Optional[int] = None
    image_url: Optional[str] = None
    is_active: Optional[bool] = None


class ProductOut(ORMModel):
    id: int
    name: str
    description: Optional[str] = None
    price: Amount
    stock: int
    category_id: int
    category_name: Optional[str] = None
    image_url: Optional[str] = None
    is_active: bool
    created_at: Optional[datetime] = None


# ----------------------- Orders -----------------------
class OrderItemIn(BaseModel):
    product_id: int
    quantity: int


class OrderCreate(BaseModel):
    items: List[OrderItemIn] = []
    contact_name: Optional[str] = None
    contact_email: Optional[EmailStr] = None
    contact_phone: Optional[str] = None
    contact_info: Optional[str] = None


class OrderItemOut(ORMModel):
    id: int
    product_id: int
    product_name: Optional[str] = None
    quantity: int
    price: Amount


class OrderOut(ORMModel):
    id: int
    buyer_id: int
    buyer_email: Optional[str] = None
    seller_id: Optional[int] = None
    seller_email: Optional[str] = None
    status: str
    total_amount: Amount
    contact_name: Optional[str] = None
    contact_email: Optional[str] = None
    contact_phone: Optional[str] = None
    contact_info: Optional[str] = None
    payment_proof: Optional[str] = None
    binance_txid: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    items: List[OrderItemOut] = []


class StatusUpdate(BaseModel):
    status: str
    seller_id: Optional[int] = None


class PaymentProof(BaseModel):
    payment_proof: Optional[str] = None
    binance_txid: Optional[str] = None


# ----------------------- Payments -----------------------
class PaymentRequest(BaseModel):
    order_id: int
    amount: Optional[Decimal] = None
    currency: str = "USDT"


class TransactionOut(ORMModel):
    id: int
    order_id: int
    user_id: int
    amount: Amount
    binance_txid: Optional[str] = None
    payment_proof_url: Optional[str] = None
    status: str
    created_at: Optional[datetime] = None


# ----------------------- Admin -----------------------
class SellerCreate(BaseModel):
    email: EmailStr
    password: str = Field(min_length=1)
    username: Optional[str] = None
    binance_wallet: Optional[str] = None


class SellerUpdate(BaseModel):
    email: Optional[EmailStr] = None
    password: Optional[str] = None
    username: Optional[str] = None
    binance_wallet: Optional[str] = None
    is_active: Optional[bool] = None


class EarningsUpdate(BaseModel):
    amount: Decimal
    operation: str


class SaleAssignment(BaseModel):
    order_id: int
    amount: Decimal
