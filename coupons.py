"""
Coupons: CRUD, the validation rule chain and usage accounting.

Validation runs its checks in a fixed order and reports the first failing
rule: active and within dates, global usage limit, per-user limit, minimum
purchase, category/product/user allow-lists, then the discount itself.
"""

from typing import Any, Dict, Iterable, List, Optional

import structlog
from fastapi import HTTPException
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from database import create_document, naive_utc, oid, utcnow
from schemas import Coupon

logger = structlog.get_logger(__name__)

APPLY_RETRIES = 3


def compute_discount(coupon: dict, cart_total: float) -> float:
    discount_type = coupon.get("discount_type")
    value = float(coupon.get("discount_value", 0))
    if discount_type == "percentage":
        discount = cart_total * value / 100
        cap = coupon.get("max_discount_amount")
        if cap and discount > cap:
            discount = float(cap)
    elif discount_type == "fixed":
        discount = min(value, cart_total)
    else:
        # free_shipping is applied to shipping cost at checkout; bogo depends on line items
        discount = 0.0
    return round(discount, 2)


def _ids(values: Optional[Iterable[Any]]) -> List:
    return [oid(v) for v in values or []]


def _contains(stored: Iterable[Any], wanted: Iterable[str]) -> bool:
    stored = {str(s) for s in stored}
    return any(str(w) in stored for w in wanted)


class CouponsService:
    def __init__(self, db, notifications=None, users=None):
        self.db = db
        self.notifications = notifications
        self.users = users

    def create(self, data: Dict[str, Any], user_id: str) -> dict:
        code = data["code"].strip().upper()
        if self.db["coupon"].find_one({"code": code}):
            raise HTTPException(status_code=409, detail="Coupon code already exists")

        valid_from = naive_utc(data["valid_from"])
        valid_until = naive_utc(data["valid_until"])
        if valid_from >= valid_until:
            raise HTTPException(status_code=400, detail="Valid from date must be before valid until date")
        if data["discount_type"] == "percentage" and data["discount_value"] > 100:
            raise HTTPException(status_code=400, detail="Percentage discount cannot exceed 100%")

        coupon = Coupon(**{**data, "code": code, "valid_from": valid_from, "valid_until": valid_until})
        doc = coupon.model_dump()
        doc["created_by"] = oid(user_id, "user ID")
        doc["applicable_categories"] = _ids(coupon.applicable_categories)
        doc["applicable_products"] = _ids(coupon.applicable_products)
        doc["applicable_users"] = _ids(coupon.applicable_users)
        doc["used_by"] = []
        try:
            create_document(self.db, "coupon", doc)
        except DuplicateKeyError:
            raise HTTPException(status_code=409, detail="Coupon code already exists")
        logger.info("coupon_created", code=code)

        self._announce(doc)
        return doc

    def _announce(self, coupon: dict) -> None:
        if self.notifications is None or self.users is None:
            return
        try:
            value = coupon["discount_value"]
            discount_text = f"{value:g}%" if coupon["discount_type"] == "percentage" else f"${value:g}"
            message = (
                f"🎉 New Coupon Alert! Use code {coupon['code']} to get {discount_text} OFF! "
                f"Valid until {coupon['valid_until']:%Y-%m-%d}."
            )
            recipients = [str(u["_id"]) for u in self.users.find_all()]
            self.notifications.notify_many(recipients, message, "promotion")
        except Exception as e:
            logger.warning("coupon_announce_failed", code=coupon.get("code"), error=str(e))

    def find_all(self, status: Optional[str] = None, is_active: Optional[bool] = None, discount_type: Optional[str] = None) -> List[dict]:
        flt: Dict[str, Any] = {}
        if status:
            flt["status"] = status
        if is_active is not None:
            flt["is_active"] = is_active
        if discount_type:
            flt["discount_type"] = discount_type
        return list(self.db["coupon"].find(flt).sort("created_at", -1))

    def find_one(self, coupon_id: str) -> dict:
        coupon = self.db["coupon"].find_one({"_id": oid(coupon_id, "coupon ID")})
        if not coupon:
            raise HTTPException(status_code=404, detail="Coupon not found")
        return coupon

    def find_by_code(self, code: str) -> dict:
        coupon = self.db["coupon"].find_one({"code": code.strip().upper()})
        if not coupon:
            raise HTTPException(status_code=404, detail="Coupon not found")
        return coupon

    def update(self, coupon_id: str, data: Dict[str, Any]) -> dict:
        updates = {k: v for k, v in data.items() if v is not None}
        for key in ("valid_from", "valid_until"):
            if key in updates:
                updates[key] = naive_utc(updates[key])
        if "valid_from" in updates and "valid_until" in updates:
            if updates["valid_from"] >= updates["valid_until"]:
                raise HTTPException(status_code=400, detail="Valid from date must be before valid until date")
        if "code" in updates:
            updates["code"] = updates["code"].strip().upper()
        for key in ("applicable_categories", "applicable_products", "applicable_users"):
            if key in updates:
                updates[key] = _ids(updates[key])
        updates["updated_at"] = utcnow()

        try:
            coupon = self.db["coupon"].find_one_and_update(
                {"_id": oid(coupon_id, "coupon ID")},
                {"$set": updates},
                return_document=ReturnDocument.AFTER,
            )
        except DuplicateKeyError:
            raise HTTPException(status_code=409, detail="Coupon code already exists")
        if not coupon:
            raise HTTPException(status_code=404, detail="Coupon not found")
        return coupon

    def remove(self, coupon_id: str) -> None:
        res = self.db["coupon"].delete_one({"_id": oid(coupon_id, "coupon ID")})
        if res.deleted_count == 0:
            raise HTTPException(status_code=404, detail="Coupon not found")

    def validate(self, code: str, cart_total: float, user_id: str,
                 product_ids: Optional[List[str]] = None,
                 category_ids: Optional[List[str]] = None) -> Dict[str, Any]:
        coupon = self.find_by_code(code)

        if not coupon.get("is_active") or coupon.get("status") != "active":
            return {"valid": False, "message": "This coupon is not active"}

        now = utcnow()
        if now < coupon["valid_from"]:
            return {"valid": False, "message": "This coupon is not yet valid"}
        if now > coupon["valid_until"]:
            self.db["coupon"].update_one({"_id": coupon["_id"]}, {"$set": {"status": "expired"}})
            return {"valid": False, "message": "This coupon has expired"}

        usage_limit = coupon.get("usage_limit", 0)
        if usage_limit > 0 and coupon.get("used_count", 0) >= usage_limit:
            return {"valid": False, "message": "This coupon has reached its usage limit"}

        user_uses = sum(1 for u in coupon.get("used_by", []) if str(u) == str(user_id))
        if user_uses >= coupon.get("usage_limit_per_user", 1):
            return {"valid": False, "message": "You have already used this coupon the maximum number of times"}

        min_purchase = coupon.get("min_purchase_amount", 0)
        if min_purchase > 0 and cart_total < min_purchase:
            return {"valid": False, "message": f"Minimum purchase amount of ${min_purchase:g} required"}

        if coupon.get("applicable_categories") and category_ids is not None:
            if not _contains(coupon["applicable_categories"], category_ids):
                return {"valid": False, "message": "This coupon is not applicable to items in your cart"}

        if coupon.get("applicable_products") and product_ids is not None:
            if not _contains(coupon["applicable_products"], product_ids):
                return {"valid": False, "message": "This coupon is not applicable to items in your cart"}

        if coupon.get("applicable_users"):
            if not _contains(coupon["applicable_users"], [user_id]):
                return {"valid": False, "message": "This coupon is not available for your account"}

        return {
            "valid": True,
            "message": "Coupon applied successfully",
            "discount": compute_discount(coupon, cart_total),
            "coupon": coupon,
        }

    def apply(self, coupon_id: str, user_id: str) -> dict:
        """Record one use of the coupon by the user.

        The increment is conditional on the usage counter the limits were
        checked against, so concurrent applies cannot push used_count past
        usage_limit.
        """
        user_oid = oid(user_id, "user ID")
        for _ in range(APPLY_RETRIES):
            coupon = self.find_one(coupon_id)
            usage_limit = coupon.get("usage_limit", 0)
            used_count = coupon.get("used_count", 0)
            if usage_limit > 0 and used_count >= usage_limit:
                raise HTTPException(status_code=400, detail="This coupon has reached its usage limit")
            user_uses = sum(1 for u in coupon.get("used_by", []) if str(u) == str(user_id))
            if user_uses >= coupon.get("usage_limit_per_user", 1):
                raise HTTPException(status_code=400, detail="You have already used this coupon the maximum number of times")

            updated = self.db["coupon"].find_one_and_update(
                {"_id": coupon["_id"], "used_count": used_count},
                {"$inc": {"used_count": 1}, "$push": {"used_by": user_oid}, "$set": {"updated_at": utcnow()}},
                return_document=ReturnDocument.AFTER,
            )
            if updated:
                logger.info("coupon_applied", code=updated["code"], user_id=str(user_id))
                return updated
        raise HTTPException(status_code=409, detail="Coupon is being used concurrently, please retry")

    def active(self) -> List[dict]:
        now = utcnow()
        cursor = self.db["coupon"].find(
            {
                "is_active": True,
                "status": "active",
                "valid_from": {"$lte": now},
                "valid_until": {"$gte": now},
            },
            {"used_by": 0, "created_by": 0},
        ).sort("created_at", -1)
        return [c for c in cursor if c.get("usage_limit", 0) == 0 or c.get("used_count", 0) < c["usage_limit"]]

    def my_coupons(self, user_id: str) -> List[dict]:
        cursor = self.db["coupon"].find({
            "applicable_users": oid(user_id, "user ID"),
            "valid_until": {"$gte": utcnow()},
            "status": {"$ne": "expired"},
        }).sort("created_at", -1)
        return [c for c in cursor if c.get("used_count", 0) < c.get("usage_limit", 0)]

    def stats(self, coupon_id: str) -> Dict[str, Any]:
        coupon = self.find_one(coupon_id)
        usage_limit = coupon.get("usage_limit", 0)
        used_count = coupon.get("used_count", 0)
        return {
            "total_usage": used_count,
            "unique_users": len({str(u) for u in coupon.get("used_by", [])}),
            "remaining_uses": max(0, usage_limit - used_count) if usage_limit > 0 else -1,
            # needs order data
            "conversion_rate": 0,
        }
