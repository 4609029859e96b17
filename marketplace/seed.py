import logging

from sqlalchemy.orm import Session

from marketplace import settings
from marketplace.auth import hash_password
from marketplace.database import atomic, execute, query_one
from marketplace.models import Category, Product, Role, User, money

logger = logging.getLogger(__name__)

CATEGORIES = [
    ("Gift Cards", "Prepaid gift cards for online stores"),
    ("Game Currency", "In-game coins and credits"),
    ("Courses", "Online courses and learning material"),
    ("eBooks", "Digital books and document bundles"),
    ("Software Licenses", "License keys for desktop and mobile software"),
]

SAMPLE_PRODUCTS = [
    ("Amazon Gift Card $50", "Amazon gift card worth $50 USD", "55.00", 20, "Gift Cards"),
    ("Netflix Gift Card 1 month", "One month of Netflix", "15.00", 50, "Gift Cards"),
    ("Steam Gift Card $25", "Steam gift card worth $25 USD", "27.50", 30, "Gift Cards"),
    ("Poker Chips 1M", "One million chips for online poker", "10.00", 100, "Game Currency"),
    ("FIFA Coins 100K", "100,000 FIFA Ultimate Team coins", "20.00", 75, "Game Currency"),
    ("Complete JavaScript Course", "JavaScript from scratch to advanced", "45.00", 999, "Courses"),
    ("Programming eBook Pack", "A collection of 50 programming books", "25.00", 999, "eBooks"),
]


def seed_database(db: Session) -> None:
    """Create the superuser, reference categories and demo products if missing."""
    if not db.query(User).filter_by(role=Role.SUPERUSER.value).first():
        with atomic(db):
            db.add(User(
                email=settings.SUPERUSER_EMAIL.lower(),
                password=hash_password(settings.SUPERUSER_PASSWORD),
                role=Role.SUPERUSER.value,
                earnings=0,
                is_active=True,
            ))
        logger.info("Superuser %s created", settings.SUPERUSER_EMAIL)

    for name, description in CATEGORIES:
        if not query_one(db, "SELECT id FROM categories WHERE name = :name", {"name": name}):
            execute(
                db,
                "INSERT INTO categories (name, description) VALUES (:name, :description)",
                {"name": name, "description": description},
            )
    logger.info("Categories seeded")

    if settings.SEED_SAMPLE_PRODUCTS and not db.query(Product).count():
        categories = {category.name: category.id for category in db.query(Category)}
        with atomic(db):
            for name, description, price, stock, category in SAMPLE_PRODUCTS:
                db.add(Product(
                    name=name,
                    description=description,
                    price=money(price),
                    stock=stock,
                    category_id=categories[category],
                    is_active=True,
                ))
        logger.info("Sample products seeded")
