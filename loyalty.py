"""
Loyalty points and tiers.

Earned points are multiplied by the member's tier (Bronze x1, Silver x1.2,
Gold x1.5) and floored. The tier follows lifetime points: 500 for Silver,
2000 for Gold. Spending points never lowers the tier.
"""

import random
import string
from typing import Any, Dict, Optional

import structlog
from fastapi import HTTPException
from pymongo import ReturnDocument

from database import create_document, oid, utcnow
from users import PRIVATE_FIELDS

logger = structlog.get_logger(__name__)

BRONZE, SILVER, GOLD = "Bronze", "Silver", "Gold"
TIER_MULTIPLIERS = {BRONZE: 1.0, SILVER: 1.2, GOLD: 1.5}
SILVER_THRESHOLD = 500
GOLD_THRESHOLD = 2000


def calculate_points(amount: float, tier: str) -> int:
    return int(amount * TIER_MULTIPLIERS.get(tier, 1.0))


def tier_for(total_points_earned: int) -> str:
    if total_points_earned >= GOLD_THRESHOLD:
        return GOLD
    if total_points_earned >= SILVER_THRESHOLD:
        return SILVER
    return BRONZE


class LoyaltyService:
    def __init__(self, db, notifications=None):
        self.db = db
        self.notifications = notifications

    def _get_user(self, user_id: str) -> dict:
        user = self.db["user"].find_one({"_id": oid(user_id, "user ID")}, PRIVATE_FIELDS)
        if not user:
            raise HTTPException(status_code=404, detail="User not found")
        return user

    def _notify(self, user_id: str, message: str) -> None:
        if self.notifications is None:
            return
        try:
            self.notifications.create(user_id, message, "system")
        except Exception as e:
            logger.warning("loyalty_notification_failed", user_id=str(user_id), error=str(e))

    def _credit(self, user: dict, points: int) -> dict:
        user_id = str(user["_id"])
        updated = self.db["user"].find_one_and_update(
            {"_id": user["_id"]},
            {"$inc": {"loyalty_points": points, "total_points_earned": points},
             "$set": {"updated_at": utcnow()}},
            projection=PRIVATE_FIELDS,
            return_document=ReturnDocument.AFTER,
        )
        if not updated:
            raise HTTPException(status_code=404, detail="User not found")
        total = int(updated.get("total_points_earned", 0))
        previous_tier = tier_for(total - points)
        new_tier = tier_for(total)

        if updated.get("loyalty_tier") != new_tier:
            # only while no later credit has raised the total
            self.db["user"].update_one(
                {"_id": user["_id"], "total_points_earned": {"$lte": total}},
                {"$set": {"loyalty_tier": new_tier}},
            )
        if new_tier != previous_tier:
            logger.info("loyalty_tier_changed", user_id=user_id, tier=new_tier)
            bonus = "1.5x" if new_tier == GOLD else "1.2x" if new_tier == SILVER else "1x"
            self._notify(
                user_id,
                f"Congratulations! You've been upgraded to {new_tier} Tier! Enjoy {bonus} points on future purchases.",
            )
        return self._get_user(user_id)

    def award_points(self, user_id: str, amount: float) -> dict:
        """Points for a purchase of `amount`, scaled by the member's current tier."""
        user = self._get_user(user_id)
        points = calculate_points(amount, user.get("loyalty_tier", BRONZE))
        logger.info("loyalty_points_awarded", user_id=str(user_id), points=points)
        return self._credit(user, points)

    def add_points(self, user_id: str, amount: int, reason: Optional[str] = None) -> dict:
        user = self._get_user(user_id)
        updated = self._credit(user, int(amount))

        try:
            self.db["gamificationprofile"].update_one(
                {"user_id": user["_id"]},
                {"$inc": {"points": int(amount), "lifetime_points": int(amount)}},
                upsert=True,
            )
        except Exception as e:
            logger.warning("gamification_sync_failed", user_id=str(user_id), error=str(e))

        if reason:
            self._notify(str(user_id), f"You earned {amount} points: {reason}")
        return updated

    def status(self, user_id: str) -> Dict[str, Any]:
        user = self._get_user(user_id)
        tier = user.get("loyalty_tier", BRONZE)
        earned = int(user.get("total_points_earned", 0))
        if tier == BRONZE:
            next_tier, to_next = SILVER, SILVER_THRESHOLD - earned
        elif tier == SILVER:
            next_tier, to_next = GOLD, GOLD_THRESHOLD - earned
        else:
            next_tier, to_next = "Max Tier", 0
        return {
            "points": int(user.get("loyalty_points", 0)),
            "tier": tier,
            "total_earned": earned,
            "next_tier": next_tier,
            "points_to_next_tier": max(0, to_next),
        }

    def redeem(self, user_id: str, coupon_id: str) -> Dict[str, Any]:
        user = self._get_user(user_id)
        coupon = self.db["coupon"].find_one({"_id": oid(coupon_id, "coupon ID")})
        if not coupon:
            raise HTTPException(status_code=404, detail="Coupon not found")

        cost = int(coupon.get("cost_in_points") or 0)
        if cost <= 0:
            raise HTTPException(status_code=400, detail="This coupon is not redeemable with points")

        res = self.db["user"].update_one(
            {"_id": user["_id"], "loyalty_points": {"$gte": cost}},
            {"$inc": {"loyalty_points": -cost}, "$set": {"updated_at": utcnow()}},
        )
        if res.modified_count == 0:
            raise HTTPException(status_code=400, detail="Insufficient points")

        try:
            self.db["gamificationprofile"].update_one({"user_id": user["_id"]}, {"$inc": {"points": -cost}})
        except Exception as e:
            logger.warning("gamification_sync_failed", user_id=str(user_id), error=str(e))

        suffix = "".join(random.choices(string.ascii_uppercase + string.digits, k=4))
        new_code = f"{coupon['code']}-{str(user_id)[-4:].upper()}{suffix}"
        personal = {
            "code": new_code,
            "description": coupon.get("description"),
            "discount_type": coupon.get("discount_type"),
            "discount_value": coupon.get("discount_value"),
            "cost_in_points": 0,
            "min_purchase_amount": coupon.get("min_purchase_amount", 0),
            "max_discount_amount": coupon.get("max_discount_amount"),
            "valid_from": utcnow(),
            "valid_until": coupon.get("valid_until"),
            "usage_limit": 1,
            "usage_limit_per_user": 1,
            "used_count": 0,
            "used_by": [],
            "status": "active",
            "is_active": True,
            "applicable_users": [user["_id"]],
            "applicable_categories": coupon.get("applicable_categories", []),
            "applicable_products": coupon.get("applicable_products", []),
            "first_time_user_only": False,
            "created_by": coupon.get("created_by"),
            "notes": f"Redeemed with points from {coupon['code']}",
        }
        create_document(self.db, "coupon", personal)
        logger.info("loyalty_points_redeemed", user_id=str(user_id), cost=cost, code=new_code)

        self._notify(str(user_id), f"You redeemed {coupon.get('description')}! Your code is {new_code}")
        return {"user": self._get_user(user_id), "coupon": personal}
