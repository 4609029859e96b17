from decimal import Decimal

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from marketplace import settings
from marketplace.auth import hash_password, issue_token
from marketplace.database import Base, get_db
from marketplace.main import app as fastapi_app
from marketplace.models import Category, Product, Role, User

# Setup test database
SQLALCHEMY_DATABASE_URL = "sqlite:///./test_temp.db"
engine = create_engine(SQLALCHEMY_DATABASE_URL, connect_args={
                       "check_same_thread": False, "timeout": 30})
TestingSessionLocal = sessionmaker(
    autocommit=False, autoflush=False, bind=engine)

PASSWORD = "s3cret-pass"


@pytest.fixture(autouse=True)
def setup_db():
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


def override_get_db():
    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture
def db():
    session = TestingSessionLocal()
    yield session
    session.close()


@pytest.fixture
def client(monkeypatch):
    # Startup creates tables and seeds through these, point them at the test database
    monkeypatch.setattr("marketplace.main.engine", engine)
    monkeypatch.setattr("marketplace.main.SessionLocal", TestingSessionLocal)
    monkeypatch.setattr(settings, "SEED_SAMPLE_PRODUCTS", False)
    fastapi_app.dependency_overrides[get_db] = override_get_db
    with TestClient(fastapi_app) as c:
        yield c
    fastapi_app.dependency_overrides.clear()


def make_user(db, role, email, earnings=0):
    user = User(
        email=email,
        password=hash_password(PASSWORD),
        role=role.value,
        earnings=earnings,
        is_active=True,
    )
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


def auth_header(user):
    return {"Authorization": f"Bearer {issue_token(user.id, user.role)}"}


@pytest.fixture
def buyer(db):
    return make_user(db, Role.BUYER, "buyer@marketplace.io")


@pytest.fixture
def other_buyer(db):
    return make_user(db, Role.BUYER, "other.buyer@marketplace.io")


@pytest.fixture
def seller(db):
    return make_user(db, Role.SELLER, "seller.a@marketplace.io")


@pytest.fixture
def other_seller(db):
    return make_user(db, Role.SELLER, "seller.b@marketplace.io")


@pytest.fixture
def superuser(db):
    return make_user(db, Role.SUPERUSER, "root@marketplace.io")


@pytest.fixture
def category(db):
    category = Category(name="Test Goods", description="Goods used by the test suite")
    db.add(category)
    db.commit()
    db.refresh(category)
    return category


@pytest.fixture
def make_product(db, category):
    def factory(name="Steam Card", price="10.00", stock=5, is_active=True):
        product = Product(
            name=name,
            description=f"{name} description",
            price=Decimal(price),
            stock=stock,
            category_id=category.id,
            is_active=is_active,
        )
        db.add(product)
        db.commit()
        db.refresh(product)
        return product
    return factory
