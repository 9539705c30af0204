from sqlalchemy import CheckConstraint, Column, DateTime, Float, Integer, String, func

from shared.database import Base, new_id


class Product(Base):
    """Product with ledger-managed stock counts and an optimistic version counter."""

    __tablename__ = "products"
    __table_args__ = (
        CheckConstraint("count_in_stock >= 0", name="ck_products_count_in_stock_non_negative"),
        CheckConstraint("reserved_quantity >= 0", name="ck_products_reserved_quantity_non_negative"),
    )

    id = Column(String(36), primary_key=True, default=new_id)
    name = Column(String(255), nullable=False, index=True)
    description = Column(String(1000), nullable=True)
    image = Column(String(500), nullable=True)
    price = Column(Float, nullable=False)
    count_in_stock = Column(Integer, nullable=False, default=0)  # Available units
    reserved_quantity = Column(Integer, nullable=False, default=0)  # Units held by carts and checkouts
    version = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, server_default=func.now(), nullable=False)
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now(), nullable=False)
