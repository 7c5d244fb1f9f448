from typing import Any, Dict, List

import structlog
from bson import ObjectId
from fastapi import HTTPException
from pymongo import ReturnDocument

from database import create_document, oid, utcnow

logger = structlog.get_logger(__name__)

MIN_QUANTITY = 1
MAX_QUANTITY = 999


def validate_quantity(quantity: Any) -> int:
    if isinstance(quantity, bool) or not isinstance(quantity, int) or not MIN_QUANTITY <= quantity <= MAX_QUANTITY:
        raise HTTPException(status_code=400, detail=f"Quantity must be between {MIN_QUANTITY} and {MAX_QUANTITY}")
    return quantity


def total_price(items: List[Dict[str, Any]]) -> float:
    return round(sum(float(i.get("price") or 0) * int(i["quantity"]) for i in items), 2)


class CartService:
    """One cart per user, created on first access."""

    def __init__(self, db, cache=None, cache_ttl: int = 300):
        self.db = db
        self.cache = cache
        self.cache_ttl = cache_ttl

    def find_one(self, user_id: str, role: str = "user") -> dict:
        user_oid = oid(user_id, "user ID")
        cache_key = f"cart:{user_oid}"
        if self.cache is not None:
            cached = self.cache.get(cache_key)
            if cached is not None:
                return cached

        cart = self.db["cart"].find_one({"user_id": user_oid})
        if cart is None:
            cart = {"user_id": user_oid, "role": role or "user", "items": [], "total_price": 0.0}
            create_document(self.db, "cart", cart)
            logger.info("cart_created", user_id=str(user_id), role=role)
        elif not cart.get("role"):
            self.db["cart"].update_one({"_id": cart["_id"]}, {"$set": {"role": role or "user"}})
            cart["role"] = role or "user"

        if self.cache is not None:
            self.cache.set(cache_key, cart, self.cache_ttl)
        return cart

    def add(self, user_id: str, role: str, product_id: str, quantity: int) -> dict:
        product_oid = oid(product_id, "product ID")
        validate_quantity(quantity)
        cart = self.find_one(user_id, role)
        items = cart["items"]

        existing = next((i for i in items if i["product_id"] == product_oid), None)
        if existing is not None:
            existing["quantity"] = validate_quantity(existing["quantity"] + quantity)
            logger.debug("cart_item_quantity_updated", product_id=product_id)
        else:
            product = self.db["product"].find_one({"_id": product_oid}, {"price": 1, "discount_price": 1})
            if not product:
                raise HTTPException(status_code=404, detail="Product not found")
            items.append({
                "_id": ObjectId(),
                "product_id": product_oid,
                "quantity": quantity,
                "price": float(product.get("discount_price") or product.get("price", 0)),
            })
            logger.debug("cart_item_added", product_id=product_id)
        return self._save(cart, user_id)

    def update(self, user_id: str, role: str, item_id: str, quantity: int) -> dict:
        validate_quantity(quantity)
        cart = self.find_one(user_id, role)
        item = next((i for i in cart["items"] if str(i.get("_id")) == str(item_id)), None)
        if item is None:
            raise HTTPException(status_code=404, detail="Item not found in cart")
        item["quantity"] = quantity
        logger.info("cart_item_updated", item_id=item_id, user_id=str(user_id))
        return self._save(cart, user_id)

    def remove(self, user_id: str, role: str, item_id: str) -> dict:
        cart = self.find_one(user_id, role)
        remaining = [i for i in cart["items"] if str(i.get("_id")) != str(item_id)]
        if len(remaining) == len(cart["items"]):
            raise HTTPException(status_code=404, detail="Item not found in cart")
        cart["items"] = remaining
        logger.info("cart_item_removed", item_id=item_id, user_id=str(user_id))
        return self._save(cart, user_id)

    def clear(self, user_id: str) -> None:
        res = self.db["cart"].delete_one({"user_id": oid(user_id, "user ID")})
        if res.deleted_count == 0:
            raise HTTPException(status_code=404, detail="Cart not found")
        self.invalidate_cache(user_id)
        logger.info("cart_cleared", user_id=str(user_id))

    def _save(self, cart: dict, user_id: str) -> dict:
        cart["total_price"] = total_price(cart["items"])
        saved = self.db["cart"].find_one_and_update(
            {"_id": cart["_id"]},
            {"$set": {"items": cart["items"], "total_price": cart["total_price"], "updated_at": utcnow()}},
            return_document=ReturnDocument.AFTER,
        )
        self.invalidate_cache(user_id)
        return saved

    def invalidate_cache(self, user_id: str) -> None:
        if self.cache is None:
            return
        try:
            self.cache.delete(f"cart:{user_id}")
        except Exception as e:
            logger.warning("cache_invalidate_failed", key=f"cart:{user_id}", error=str(e))
