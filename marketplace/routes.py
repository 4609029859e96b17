from typing import Optional

from fastapi import APIRouter, Depends, Header
from sqlalchemy.orm import Session

from marketplace import accounts, catalog, earnings, orders, payments
from marketplace.auth import get_current_user, require
from marketplace.database import get_db
from marketplace.models import User, money
from marketplace.schemas import (
    CategoryOut,
    EarningsUpdate,
    LoginRequest,
    OrderCreate,
    OrderOut,
    PaymentProof,
    PaymentRequest,
    ProductCreate,
    ProductOut,
    ProductUpdate,
    RegisterRequest,
    SaleAssignment,
    SellerCreate,
    SellerUpdate,
    StatusUpdate,
    TransactionOut,
    UserOut,
)

auth_router = APIRouter(prefix="/auth", tags=["auth"])
products_router = APIRouter(prefix="/products", tags=["products"])
orders_router = APIRouter(prefix="/orders", tags=["orders"])
payments_router = APIRouter(prefix="/payments", tags=["payments"])
admin_router = APIRouter(prefix="/admin", tags=["admin"])


# ----------------------- Auth -----------------------
@auth_router.post("/register", status_code=201)
def register(request: RegisterRequest, db: Session = Depends(get_db)):
    token, user = accounts.register_buyer(
        db, request.email, request.password, request.username, request.binance_wallet
    )
    return {"message": "User registered", "token": token, "user": UserOut.model_validate(user)}


@auth_router.post("/login")
def login(request: LoginRequest, db: Session = Depends(get_db)):
    token, user = accounts.login(db, request.email, request.password)
    return {"message": "Login successful", "token": token, "user": UserOut.model_validate(user)}


@auth_router.get("/me")
def me(user: User = Depends(get_current_user)):
    return {"user": UserOut.model_validate(user)}


# ----------------------- Products -----------------------
@products_router.get("")
def list_products(category: Optional[int] = None, db: Session = Depends(get_db)):
    products = catalog.list_products(db, category)
    return {"products": [ProductOut.model_validate(p) for p in products]}


@products_router.get("/categories/all")
def list_categories(db: Session = Depends(get_db)):
    return {"categories": [CategoryOut.model_validate(c) for c in catalog.list_categories(db)]}


@products_router.get("/{product_id}")
def get_product(product_id: int, db: Session = Depends(get_db)):
    return {"product": ProductOut.model_validate(catalog.get_product(db, product_id))}


@products_router.post("", status_code=201)
def create_product(request: ProductCreate, user: User = Depends(require("catalog.write")),
                   db: Session = Depends(get_db)):
    product = catalog.create_product(db, user, **request.model_dump())
    return {"message": "Product created", "product": ProductOut.model_validate(product)}


@products_router.put("/{product_id}")
def update_product(product_id: int, request: ProductUpdate, user: User = Depends(require("catalog.write")),
                   db: Session = Depends(get_db)):
    product = catalog.update_product(db, user, product_id, **request.model_dump(exclude_unset=True))
    return {"message": "Product updated", "product": ProductOut.model_validate(product)}


@products_router.delete("/{product_id}")
def delete_product(product_id: int, user: User = Depends(require("catalog.write")),
                   db: Session = Depends(get_db)):
    catalog.delete_product(db, user, product_id)
    return {"message": "Product deleted"}


# ----------------------- Orders -----------------------
@orders_router.post("", status_code=201)
def create_order(request: OrderCreate, user: User = Depends(require("orders.create")),
                 db: Session = Depends(get_db)):
    order = orders.create_order(
        db,
        user,
        [orders.LineItem(item.product_id, item.quantity) for item in request.items],
        orders.Contact(
            name=request.contact_name,
            email=request.contact_email,
            phone=request.contact_phone,
            info=request.contact_info,
        ),
    )
    return {
        "message": "Order created, please complete the payment",
        "order_id": order.id,
        "total_amount": money(order.total_amount),
    }


@orders_router.get("")
def list_orders(user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    return {"orders": [OrderOut.model_validate(o) for o in orders.list_orders(db, user)]}


@orders_router.get("/{order_id}")
def get_order(order_id: int, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    return {"order": OrderOut.model_validate(orders.get_order(db, user, order_id))}


@orders_router.put("/{order_id}/status")
def update_order_status(order_id: int, request: StatusUpdate,
                        user: User = Depends(require("orders.update_status")),
                        db: Session = Depends(get_db)):
    order = orders.update_status(db, user, order_id, request.status, request.seller_id)
    return {
        "message": "Order status updated",
        "order_id": order.id,
        "status": order.status,
        "seller_id": order.seller_id,
    }


@orders_router.post("/{order_id}/payment-proof")
def submit_payment_proof(order_id: int, request: PaymentProof,
                         user: User = Depends(require("orders.submit_proof")),
                         db: Session = Depends(get_db)):
    transaction = orders.submit_payment_proof(db, user, order_id, request.payment_proof, request.binance_txid)
    return {"message": "Payment proof submitted", "transaction": TransactionOut.model_validate(transaction)}


# ----------------------- Payments -----------------------
@payments_router.post("/create")
def create_payment(request: PaymentRequest, origin: Optional[str] = Header(None),
                   user: User = Depends(require("payments.create")), db: Session = Depends(get_db)):
    checkout = payments.create_payment_order(
        db, user, request.order_id, request.amount, request.currency, origin
    )
    return {"message": "Payment order created", "payment": checkout}


@payments_router.get("/{order_id}/status")
def payment_status(order_id: int, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    transaction = payments.payment_status(db, user, order_id)
    return {"transaction": TransactionOut.model_validate(transaction)}


# ----------------------- Admin -----------------------
@admin_router.get("/sellers")
def list_sellers(user: User = Depends(require("admin")), db: Session = Depends(get_db)):
    return {"sellers": earnings.list_sellers(db, user)}


@admin_router.post("/sellers", status_code=201)
def create_seller(request: SellerCreate, user: User = Depends(require("admin")), db: Session = Depends(get_db)):
    seller = accounts.create_seller(
        db, user, request.email, request.password, request.username, request.binance_wallet
    )
    return {"message": "Seller created", "seller": UserOut.model_validate(seller)}


@admin_router.put("/sellers/{seller_id}")
def update_seller(seller_id: int, request: SellerUpdate, user: User = Depends(require("admin")),
                  db: Session = Depends(get_db)):
    seller = accounts.update_seller(db, user, seller_id, **request.model_dump(exclude_unset=True))
    return {"message": "Seller updated", "seller": UserOut.model_validate(seller)}


@admin_router.delete("/sellers/{seller_id}")
def deactivate_seller(seller_id: int, user: User = Depends(require("admin")), db: Session = Depends(get_db)):
    accounts.deactivate_seller(db, user, seller_id)
    return {"message": "Seller deactivated"}


@admin_router.put("/sellers/{seller_id}/earnings")
def update_earnings(seller_id: int, request: EarningsUpdate, user: User = Depends(require("admin")),
                    db: Session = Depends(get_db)):
    new_earnings = earnings.set_or_add_earnings(db, user, seller_id, request.amount, request.operation)
    return {"message": "Earnings updated", "new_earnings": new_earnings}


@admin_router.post("/sellers/{seller_id}/sales")
def assign_sale(seller_id: int, request: SaleAssignment, user: User = Depends(require("admin")),
                db: Session = Depends(get_db)):
    entry = earnings.assign_sale(db, user, seller_id, request.order_id, request.amount)
    return {"message": "Sale assigned", "earning_id": entry.id, "amount": money(entry.amount)}


@admin_router.get("/analytics")
def get_analytics(user: User = Depends(require("admin")), db: Session = Depends(get_db)):
    return earnings.analytics(db, user)


routers = [auth_router, products_router, orders_router, payments_router, admin_router]
