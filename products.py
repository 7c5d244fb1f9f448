import base64
import json
import math
import random
import re
import string
from typing import Any, Dict, List, Optional

import structlog
from fastapi import HTTPException
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from database import create_document, oid, utcnow
from schemas import Product

logger = structlog.get_logger(__name__)

SORT_FIELDS = {"price", "rating", "sold_count", "created_at", "title"}
SKU_ATTEMPTS = 5
CACHE_PATTERNS = ("products:*", "featured_products:*")


def split_tags(value) -> List[str]:
    if value is None:
        return []
    if isinstance(value, list):
        value = ",".join(value)
    return [t.strip() for t in value.split(",") if t.strip()]


def generate_sku(title: str) -> str:
    prefix = "".join(w[0].upper() for w in title.split()[:2] if w)
    digits = "".join(random.choices(string.digits, k=6))
    return f"{prefix}-{digits}"


class ProductsService:
    def __init__(self, db, cache=None, cache_ttl: int = 300):
        self.db = db
        self.cache = cache
        self.cache_ttl = cache_ttl

    def create(self, data: Dict[str, Any], seller_id: Optional[str] = None) -> dict:
        category_id = (data.get("category_id") or "").strip()
        if not category_id:
            raise HTTPException(status_code=400, detail="Category is required.")
        data = {**data, "category_id": category_id, "tags": split_tags(data.get("tags"))}
        if not data.get("stock_status"):
            data["stock_status"] = "in-stock" if data.get("stock", 0) > 0 else "out-of-stock"
        if not data.get("sku"):
            data["sku"] = generate_sku(data["title"])

        doc = Product(**data).model_dump()
        doc["category_id"] = oid(category_id, "category ID")
        doc["seller_id"] = oid(seller_id, "seller ID") if seller_id else None

        for attempt in range(1, SKU_ATTEMPTS + 1):
            if not self.db["product"].find_one({"sku": doc["sku"]}, {"_id": 1}):
                try:
                    create_document(self.db, "product", doc)
                    break
                except DuplicateKeyError:
                    pass
            logger.warning("duplicate_sku", sku=doc["sku"], attempt=attempt)
            doc["sku"] = f"{generate_sku(doc['title'])}-{''.join(random.choices(string.ascii_lowercase + string.digits, k=5))}"
            doc.pop("_id", None)
        else:
            raise HTTPException(status_code=400, detail="Duplicate value for field(s): sku")

        self.invalidate_cache()
        logger.info("product_created", product_id=str(doc["_id"]), seller_id=seller_id)
        return doc

    def ensure_can_edit(self, product_id: str, user: Dict[str, Any]) -> dict:
        product = self.db["product"].find_one({"_id": oid(product_id, "product ID")}, {"seller_id": 1})
        if not product:
            raise HTTPException(status_code=404, detail="Product not found")
        if user.get("role") != "admin" and str(product.get("seller_id")) != str(user.get("id")):
            raise HTTPException(status_code=403, detail="You can only modify your own products")
        return product

    def update(self, product_id: str, data: Dict[str, Any]) -> dict:
        updates = {k: v for k, v in data.items() if v is not None}
        if "category_id" in updates:
            category_id = updates["category_id"].strip()
            if not category_id:
                raise HTTPException(status_code=400, detail="Category cannot be empty.")
            updates["category_id"] = oid(category_id, "category ID")
        if "tags" in updates:
            updates["tags"] = split_tags(updates["tags"])
        if "stock" in updates and "stock_status" not in updates:
            updates["stock_status"] = "in-stock" if updates["stock"] > 0 else "out-of-stock"
        updates["updated_at"] = utcnow()

        product = self.db["product"].find_one_and_update(
            {"_id": oid(product_id, "product ID")},
            {"$set": updates},
            return_document=ReturnDocument.AFTER,
        )
        if not product:
            raise HTTPException(status_code=404, detail="Product not found")
        self.invalidate_cache()
        return product

    def remove(self, product_id: str) -> str:
        res = self.db["product"].delete_one({"_id": oid(product_id, "product ID")})
        if res.deleted_count == 0:
            raise HTTPException(status_code=404, detail="Product not found")
        self.invalidate_cache()
        return product_id

    def find_all(self, query: Dict[str, Any]) -> Dict[str, Any]:
        query = {k: v for k, v in query.items() if v is not None}
        page = max(1, int(query.get("page", 1)))
        limit = max(1, int(query.get("limit", 10)))
        sort_by = query.get("sort_by", "created_at")
        if sort_by not in SORT_FIELDS:
            raise HTTPException(status_code=400, detail=f"sort_by must be one of: {', '.join(sorted(SORT_FIELDS))}")
        direction = 1 if query.get("sort_order") == "asc" else -1

        cache_key = self._cache_key(query)
        if self.cache is not None:
            cached = self.cache.get(cache_key)
            if cached is not None:
                return cached

        flt = self.build_filter(query)
        products = list(
            self.db["product"].find(flt).sort(sort_by, direction).skip((page - 1) * limit).limit(limit)
        )
        total = self.db["product"].count_documents(flt)
        result = {
            "products": products,
            "total": total,
            "page": page,
            "total_pages": math.ceil(total / limit),
        }
        if self.cache is not None:
            self.cache.set(cache_key, result, self.cache_ttl)
        return result

    @staticmethod
    def build_filter(params: Dict[str, Any]) -> Dict[str, Any]:
        flt: Dict[str, Any] = {"category_id": {"$exists": True, "$ne": None}}
        if params.get("category"):
            flt["category_id"] = oid(params["category"], "category ID")
        if params.get("search"):
            pattern = {"$regex": re.escape(params["search"]), "$options": "i"}
            flt["$or"] = [{"title": pattern}, {"description": pattern}, {"tags": pattern}]
        if params.get("brand"):
            flt["brand"] = {"$regex": f"^{re.escape(params['brand'])}$", "$options": "i"}
        price = {}
        if params.get("min_price") is not None:
            price["$gte"] = params["min_price"]
        if params.get("max_price") is not None:
            price["$lte"] = params["max_price"]
        if price:
            flt["price"] = price
        if params.get("min_rating") is not None:
            flt["rating"] = {"$gte": params["min_rating"]}
        if params.get("is_featured") is not None:
            flt["is_featured"] = params["is_featured"]
        flt["is_active"] = params.get("is_active", True)
        if params.get("tags"):
            flt["tags"] = {"$in": split_tags(params["tags"])}
        return flt

    def find_one(self, product_id: str) -> dict:
        product = self.db["product"].find_one_and_update(
            {"_id": oid(product_id, "product ID")},
            {"$inc": {"view_count": 1}},
            return_document=ReturnDocument.AFTER,
        )
        if not product:
            raise HTTPException(status_code=404, detail="Product not found")
        return product

    def find_many(self, product_ids) -> Dict[str, dict]:
        ids = [oid(p) for p in product_ids]
        return {str(p["_id"]): p for p in self.db["product"].find({"_id": {"$in": ids}})}

    def featured(self, limit: int = 8) -> List[dict]:
        cache_key = f"featured_products:{limit}"
        if self.cache is not None:
            cached = self.cache.get(cache_key)
            if cached is not None:
                return cached
        products = list(
            self.db["product"]
            .find({"is_featured": True, "is_active": True})
            .sort([("sold_count", -1), ("rating", -1)])
            .limit(limit)
        )
        if self.cache is not None:
            self.cache.set(cache_key, products, self.cache_ttl)
        return products

    def related(self, product_id: str, limit: int = 4) -> List[dict]:
        product = self.db["product"].find_one({"_id": oid(product_id, "product ID")})
        if not product:
            raise HTTPException(status_code=404, detail="Product not found")
        return list(
            self.db["product"]
            .find({"_id": {"$ne": product["_id"]}, "category_id": product.get("category_id"), "is_active": True})
            .sort("rating", -1)
            .limit(limit)
        )

    def _cache_key(self, params: Dict[str, Any]) -> str:
        raw = json.dumps(params, sort_keys=True, default=str).encode()
        return f"products:{base64.urlsafe_b64encode(raw).decode()}"

    def invalidate_cache(self) -> None:
        if self.cache is None:
            return
        removed = 0
        for pattern in CACHE_PATTERNS:
            try:
                removed += self.cache.delete_pattern(pattern)
            except Exception as e:
                logger.warning("cache_invalidate_failed", pattern=pattern, error=str(e))
        logger.debug("product_cache_invalidated", keys=removed)
