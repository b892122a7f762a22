"""
Cart service for clearing purchased lines after settlement
"""

from typing import Dict, Iterable, Optional
import logging
import uuid

from sqlalchemy import delete, and_
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.cart import CartItem

logger = logging.getLogger(__name__)

class CartService:
    """
    Service for managing cart operations
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    async def remove_items(
        self,
        user_id: uuid.UUID,
        items: Iterable[Dict[str, Optional[str]]],
    ) -> int:
        """
        Remove purchased (product, option) lines from a user's cart

        Args:
            user_id: Cart owner
            items: Dicts with product_id and optional option_id

        Returns:
            Number of cart rows deleted
        """
        removed = 0
        for item in items:
            product_id = item.get("product_id")
            if not product_id:
                continue
            option_id = item.get("option_id")

            conditions = [CartItem.user_id == user_id, CartItem.product_id == str(product_id)]
            if option_id:
                conditions.append(CartItem.option_id == str(option_id))
            else:
                conditions.append(CartItem.option_id.is_(None))

            result = await self.db.execute(delete(CartItem).where(and_(*conditions)))
            removed += result.rowcount or 0

        await self.db.commit()
        logger.info(f"Removed {removed} cart lines for user {user_id}")
        return removed
