import logging
import random

from sqlalchemy.orm import Session

from services.inventory_service.models import Product
from services.inventory_service.repository import InventoryLedger

logger = logging.getLogger(__name__)

# Sample catalogue for local development
SAMPLE_PRODUCTS = [
    ("Ankara Wrap Dress", "Hand-printed cotton wrap dress", 18500.0),
    ("Linen Kaftan", "Relaxed-fit linen kaftan", 22000.0),
    ("Leather Sandals", "Hand-stitched leather sandals", 12500.0),
    ("Denim Jacket", "Washed denim jacket", 27000.0),
    ("Silk Headwrap", "Printed silk headwrap", 6500.0),
    ("Canvas Tote", "Heavy canvas tote bag", 8000.0),
    ("Chino Trousers", "Slim-fit cotton chinos", 15000.0),
    ("Polo Shirt", "Pique cotton polo shirt", 9500.0),
]


def seed_products(db: Session) -> None:
    """Seed database with sample products, skipping names that already exist."""
    logger.info("Seeding products...")
    ledger = InventoryLedger(db)
    created = 0

    for name, description, price in SAMPLE_PRODUCTS:
        if db.query(Product).filter(Product.name == name).first():
            logger.info(f"Product {name} already exists, skipping")
            continue

        ledger.create_product(name, price, random.randint(10, 100), description=description)
        created += 1

    db.commit()
    logger.info(f"Seeded {created} products")
