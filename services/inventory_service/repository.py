"""
repository.py - Inventory Ledger

The ledger is the only code that writes Product.count_in_stock and
Product.reserved_quantity. Each operation is a single conditional UPDATE whose WHERE
clause carries the guard (enough stock, enough held units), so two sessions racing for
the last unit can never both succeed: the database evaluates the guard against the row
it is about to change, not against a value read earlier. A zero row count is turned
into the right error by a follow-up read.

    reserve(p, q)           count_in_stock -= q, reserved_quantity += q   guard: count_in_stock >= q
    release(p, q)           count_in_stock += q, reserved_quantity -= q   guard: reserved_quantity >= q
    confirm(p, q)           reserved_quantity -= q                        guard: reserved_quantity >= q
    direct_decrement(p, q)  count_in_stock -= q                           guard: count_in_stock >= q

All four bump Product.version.
"""

import logging
from typing import Optional

from sqlalchemy import and_
from sqlalchemy.orm import Session

from services.inventory_service.models import Product
from shared.errors import ConflictError, InsufficientStock, NotFoundError, ValidationError

logger = logging.getLogger(__name__)


class InventoryLedger:
    """Atomic stock operations on products."""

    def __init__(self, db: Session):
        """Initialize with the caller's transactional session."""
        self.db = db

    def create_product(
        self,
        name: str,
        price: float,
        count_in_stock: int,
        description: Optional[str] = None,
        image: Optional[str] = None,
    ) -> Product:
        """Create a new product."""
        if count_in_stock < 0:
            raise ValidationError("count_in_stock must be non-negative")
        product = Product(
            name=name,
            description=description,
            image=image,
            price=price,
            count_in_stock=count_in_stock,
            reserved_quantity=0,
            version=0,
        )
        self.db.add(product)
        self.db.flush()
        logger.info(f"Created product {product.id}: {name}, stock: {count_in_stock}")
        return product

    def get_product(self, product_id: str) -> Optional[Product]:
        """Get product by ID."""
        return self.db.query(Product).filter(Product.id == product_id).first()

    def require_product(self, product_id: str) -> Product:
        product = self.get_product(product_id)
        if not product:
            raise NotFoundError(f"Product {product_id} not found")
        return product

    def get_stock_level(self, product_id: str) -> Optional[int]:
        """Get current available stock for a product, read fresh from the database."""
        product = (
            self.db.query(Product)
            .filter(Product.id == product_id)
            .populate_existing()
            .first()
        )
        return product.count_in_stock if product else None

    def reserve(self, product_id: str, quantity: int) -> None:
        """Move quantity from available stock into the reserved count."""
        if not self._check_quantity(quantity):
            return
        updated = self._conditional_update(
            product_id,
            Product.count_in_stock >= quantity,
            {
                Product.count_in_stock: Product.count_in_stock - quantity,
                Product.reserved_quantity: Product.reserved_quantity + quantity,
            },
        )
        if not updated:
            self._raise_insufficient(product_id, quantity)
        logger.info(f"Reserved {quantity} units of {product_id}")

    def release(self, product_id: str, quantity: int) -> None:
        """Return held units to available stock."""
        if not self._check_quantity(quantity):
            return
        updated = self._conditional_update(
            product_id,
            Product.reserved_quantity >= quantity,
            {
                Product.count_in_stock: Product.count_in_stock + quantity,
                Product.reserved_quantity: Product.reserved_quantity - quantity,
            },
        )
        if not updated:
            self._raise_hold_mismatch(product_id, quantity, "release")
        logger.info(f"Released {quantity} units of {product_id}")

    def confirm(self, product_id: str, quantity: int) -> None:
        """Drop held units permanently; the sale is final."""
        if not self._check_quantity(quantity):
            return
        updated = self._conditional_update(
            product_id,
            Product.reserved_quantity >= quantity,
            {Product.reserved_quantity: Product.reserved_quantity - quantity},
        )
        if not updated:
            self._raise_hold_mismatch(product_id, quantity, "confirm")
        logger.info(f"Confirmed sale of {quantity} held units of {product_id}")

    def direct_decrement(self, product_id: str, quantity: int) -> None:
        """Take units straight from available stock, for lines that never held any."""
        if not self._check_quantity(quantity):
            return
        updated = self._conditional_update(
            product_id,
            Product.count_in_stock >= quantity,
            {Product.count_in_stock: Product.count_in_stock - quantity},
        )
        if not updated:
            self._raise_insufficient(product_id, quantity)
        logger.info(f"Decremented {quantity} units of {product_id} without a hold")

    def _check_quantity(self, quantity: int) -> bool:
        """Reject bad quantities; False means there is nothing to do."""
        if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity < 0:
            raise ValidationError(f"Quantity must be a non-negative integer, got {quantity!r}")
        return quantity > 0

    def _conditional_update(self, product_id: str, guard, values: dict) -> bool:
        values = dict(values)
        values[Product.version] = Product.version + 1
        updated = (
            self.db.query(Product)
            .filter(and_(Product.id == product_id, guard))
            .update(values, synchronize_session="fetch")
        )
        return updated == 1

    def _raise_insufficient(self, product_id: str, quantity: int) -> None:
        product = self.db.query(Product).filter(Product.id == product_id).populate_existing().first()
        if not product:
            raise NotFoundError(f"Product {product_id} not found")
        logger.warning(
            f"Insufficient stock for product {product_id}: need {quantity}, have {product.count_in_stock}"
        )
        raise InsufficientStock(product.id, product.name, quantity, product.count_in_stock)

    def _raise_hold_mismatch(self, product_id: str, quantity: int, operation: str) -> None:
        product = self.db.query(Product).filter(Product.id == product_id).populate_existing().first()
        if not product:
            raise NotFoundError(f"Product {product_id} not found")
        logger.error(
            f"Cannot {operation} {quantity} units of {product_id}: only {product.reserved_quantity} reserved"
        )
        raise ConflictError(
            f"Cannot {operation} {quantity} units of {product.name}: only {product.reserved_quantity} held"
        )
