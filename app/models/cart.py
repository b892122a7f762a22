"""
Shopping cart model
Only what settlement needs to clear purchased lines
"""

from sqlalchemy import Column, String, Integer, Numeric, Index, Uuid, CheckConstraint

from .base import BaseModel

class CartItem(BaseModel):
    """Shopping cart items"""

    __tablename__ = "cart_items"

    user_id = Column(Uuid, nullable=False)
    product_id = Column(String(64), nullable=False)
    option_id = Column(String(64), nullable=True)

    # Quantity and price
    quantity = Column(Integer, nullable=False, default=1)
    price = Column(Numeric(12, 2), nullable=False)  # Price at time of adding

    # Constraints
    __table_args__ = (
        CheckConstraint("quantity > 0", name="check_positive_cart_quantity"),
        Index("idx_cart_items_user_product", "user_id", "product_id"),
    )
