import uuid
from typing import List, Optional

import structlog
from fastapi import HTTPException
from pymongo import ReturnDocument

from database import create_document, oid, utcnow
from schemas import Wishlist

logger = structlog.get_logger(__name__)

DEFAULT_NAME = "My Wishlist"


class WishlistService:
    """Named wishlists per user. Public lists can be opened by their share token."""

    def __init__(self, db):
        self.db = db

    def _populate(self, wishlist: dict) -> dict:
        ids = [i["product_id"] for i in wishlist.get("items", [])]
        products = {p["_id"]: p for p in self.db["product"].find({"_id": {"$in": ids}})}
        for item in wishlist.get("items", []):
            item["product"] = products.get(item["product_id"])
        return wishlist

    def _owned(self, wishlist_id: str, user_id: str) -> dict:
        return {"_id": oid(wishlist_id, "wishlist ID"), "user_id": oid(user_id, "user ID")}

    def find_all(self, user_id: str) -> List[dict]:
        cursor = self.db["wishlist"].find({"user_id": oid(user_id, "user ID")}).sort("created_at", 1)
        return [self._populate(w) for w in cursor]

    def create(self, user_id: str, name: str = DEFAULT_NAME) -> dict:
        doc = Wishlist(user_id=str(user_id), name=(name or DEFAULT_NAME).strip(), share_token=str(uuid.uuid4())).model_dump()
        doc["user_id"] = oid(user_id, "user ID")
        create_document(self.db, "wishlist", doc)
        logger.info("wishlist_created", user_id=str(user_id), wishlist_id=str(doc["_id"]))
        return doc

    def find_one(self, wishlist_id: str, user_id: str) -> dict:
        wishlist = self.db["wishlist"].find_one(self._owned(wishlist_id, user_id))
        if not wishlist:
            raise HTTPException(status_code=404, detail="Wishlist not found")
        return self._populate(wishlist)

    def find_by_token(self, token: str) -> dict:
        wishlist = self.db["wishlist"].find_one({"share_token": token, "privacy": "public"})
        if not wishlist:
            raise HTTPException(status_code=404, detail="Wishlist not found or is private")
        return self._populate(wishlist)

    def add(self, user_id: str, product_id: str, wishlist_id: Optional[str] = None) -> dict:
        product_oid = oid(product_id, "product ID")
        if not self.db["product"].find_one({"_id": product_oid}, {"_id": 1}):
            raise HTTPException(status_code=404, detail="Product not found")

        if wishlist_id:
            wishlist = self.db["wishlist"].find_one(self._owned(wishlist_id, user_id))
            if not wishlist:
                raise HTTPException(status_code=404, detail="Wishlist not found")
        else:
            wishlist = self.db["wishlist"].find_one({"user_id": oid(user_id, "user ID")}, sort=[("created_at", 1)])
            if wishlist is None:
                wishlist = self.create(user_id, DEFAULT_NAME)

        if any(i["product_id"] == product_oid for i in wishlist.get("items", [])):
            return self._populate(wishlist)

        updated = self.db["wishlist"].find_one_and_update(
            {"_id": wishlist["_id"], "items.product_id": {"$ne": product_oid}},
            {
                "$push": {"items": {"product_id": product_oid, "is_bought": False, "bought_by": None, "added_at": utcnow()}},
                "$set": {"updated_at": utcnow()},
            },
            return_document=ReturnDocument.AFTER,
        )
        if updated is None:
            # added concurrently
            updated = self.db["wishlist"].find_one({"_id": wishlist["_id"]})
        logger.info("wishlist_item_added", wishlist_id=str(wishlist["_id"]), product_id=product_id)
        return self._populate(updated)

    def remove(self, user_id: str, product_id: str, wishlist_id: Optional[str] = None) -> dict:
        flt = {"user_id": oid(user_id, "user ID")}
        if wishlist_id:
            flt["_id"] = oid(wishlist_id, "wishlist ID")
        else:
            flt["items.product_id"] = oid(product_id, "product ID")
        updated = self.db["wishlist"].find_one_and_update(
            flt,
            {"$pull": {"items": {"product_id": oid(product_id, "product ID")}}, "$set": {"updated_at": utcnow()}},
            return_document=ReturnDocument.AFTER,
        )
        if not updated:
            raise HTTPException(status_code=404, detail="Wishlist not found")
        return self._populate(updated)

    def rename(self, wishlist_id: str, user_id: str, name: str) -> dict:
        name = (name or "").strip()
        if not name:
            raise HTTPException(status_code=400, detail="Wishlist name cannot be empty")
        return self._update(wishlist_id, user_id, {"name": name})

    def update_privacy(self, wishlist_id: str, user_id: str, privacy: str) -> dict:
        if privacy not in ("private", "public"):
            raise HTTPException(status_code=400, detail="Privacy must be private or public")
        return self._update(wishlist_id, user_id, {"privacy": privacy})

    def _update(self, wishlist_id: str, user_id: str, fields: dict) -> dict:
        updated = self.db["wishlist"].find_one_and_update(
            self._owned(wishlist_id, user_id),
            {"$set": {**fields, "updated_at": utcnow()}},
            return_document=ReturnDocument.AFTER,
        )
        if not updated:
            raise HTTPException(status_code=404, detail="Wishlist not found")
        return updated

    def delete(self, wishlist_id: str, user_id: str) -> dict:
        deleted = self.db["wishlist"].find_one_and_delete(self._owned(wishlist_id, user_id))
        if not deleted:
            raise HTTPException(status_code=404, detail="Wishlist not found")
        logger.info("wishlist_deleted", wishlist_id=wishlist_id)
        return deleted

    def toggle_bought(self, token: str, product_id: str, bought_by: Optional[str]) -> dict:
        wishlist = self.db["wishlist"].find_one({"share_token": token, "privacy": "public"})
        if not wishlist:
            raise HTTPException(status_code=404, detail="Wishlist not found or not public")

        product_oid = oid(product_id, "product ID")
        item = next((i for i in wishlist.get("items", []) if i["product_id"] == product_oid), None)
        if item is None:
            raise HTTPException(status_code=404, detail="Product not found in wishlist")

        bought = not item.get("is_bought", False)
        updated = self.db["wishlist"].find_one_and_update(
            {"_id": wishlist["_id"], "items.product_id": product_oid},
            {"$set": {
                "items.$.is_bought": bought,
                "items.$.bought_by": bought_by if bought else None,
                "updated_at": utcnow(),
            }},
            return_document=ReturnDocument.AFTER,
        )
        return self._populate(updated)
