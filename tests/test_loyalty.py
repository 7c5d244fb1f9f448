from datetime import timedelta

import pytest
from bson import ObjectId
from fastapi import HTTPException

from database import utcnow
from loyalty import BRONZE, GOLD, SILVER, calculate_points, tier_for


def test_calculate_points_floors_by_tier():
    assert calculate_points(99.9, BRONZE) == 99
    assert calculate_points(100, SILVER) == 120
    assert calculate_points(101, GOLD) == 151
    assert calculate_points(10, "Unknown") == 10


def test_tier_thresholds():
    assert tier_for(0) == BRONZE
    assert tier_for(499) == BRONZE
    assert tier_for(500) == SILVER
    assert tier_for(1999) == SILVER
    assert tier_for(2000) == GOLD


def test_award_points_upgrades_tier_and_notifies(services, make_user):
    user_id, _ = make_user()
    user = services.loyalty.award_points(user_id, 450)
    assert user["loyalty_points"] == 450
    assert user["loyalty_tier"] == BRONZE

    user = services.loyalty.award_points(user_id, 60)
    assert user["total_points_earned"] == 510
    assert user["loyalty_tier"] == SILVER
    messages = [n["message"] for n in services.notifications.find_all(user_id)]
    assert "Congratulations! You've been upgraded to Silver Tier! Enjoy 1.2x points on future purchases." in messages

    # silver multiplier applies from now on
    user = services.loyalty.award_points(user_id, 100)
    assert user["loyalty_points"] == 630


def test_credit_tier_follows_stored_total(services, make_user):
    user_id, _ = make_user()
    stale = services.loyalty._get_user(user_id)
    services.loyalty._credit(stale, 450)

    user = services.loyalty._credit(stale, 100)
    assert user["total_points_earned"] == 550
    assert user["loyalty_tier"] == SILVER
    messages = [n["message"] for n in services.notifications.find_all(user_id)]
    assert len([m for m in messages if "upgraded to Silver" in m]) == 1


def test_status(services, make_user):
    user_id, _ = make_user()
    services.loyalty.add_points(user_id, 600, "Welcome bonus")
    status = services.loyalty.status(user_id)
    assert status == {
        "points": 600,
        "tier": SILVER,
        "total_earned": 600,
        "next_tier": GOLD,
        "points_to_next_tier": 1400,
    }
    profile = services.db["gamificationprofile"].find_one({"user_id": ObjectId(user_id)})
    assert profile["points"] == 600
    assert profile["lifetime_points"] == 600


def _points_coupon(services, admin_id, cost):
    now = utcnow()
    return services.coupons.create({
        "code": "POINTS5",
        "description": "$5 off",
        "discount_type": "fixed",
        "discount_value": 5,
        "cost_in_points": cost,
        "valid_from": now - timedelta(days=1),
        "valid_until": now + timedelta(days=30),
    }, admin_id)


def test_redeem_requires_points(services, make_user):
    admin_id, _ = make_user("admin")
    user_id, _ = make_user()
    coupon = _points_coupon(services, admin_id, 100)

    with pytest.raises(HTTPException) as exc:
        services.loyalty.redeem(user_id, str(coupon["_id"]))
    assert exc.value.detail == "Insufficient points"

    free = services.coupons.create({
        "code": "FREE",
        "description": "not redeemable",
        "discount_type": "fixed",
        "discount_value": 5,
        "valid_from": utcnow() - timedelta(days=1),
        "valid_until": utcnow() + timedelta(days=1),
    }, admin_id)
    with pytest.raises(HTTPException) as exc:
        services.loyalty.redeem(user_id, str(free["_id"]))
    assert exc.value.detail == "This coupon is not redeemable with points"


def test_redeem_issues_personal_coupon(client, services, make_user):
    admin_id, _ = make_user("admin")
    user_id, headers = make_user()
    coupon = _points_coupon(services, admin_id, 100)
    services.loyalty.add_points(user_id, 150)

    r = client.post(f"/api/loyalty/redeem/{coupon['_id']}", headers=headers)
    assert r.status_code == 200
    personal = r.json()["coupon"]
    assert personal["code"].startswith(f"POINTS5-{user_id[-4:].upper()}")
    assert personal["usage_limit"] == 1
    assert personal["applicable_users"] == [user_id]
    assert r.json()["user"]["loyalty_points"] == 50

    # tier progress is not reduced by spending
    status = client.get("/api/loyalty/status", headers=headers).json()
    assert status["total_earned"] == 150

    mine = client.get("/api/coupons/my-coupons", headers=headers).json()
    assert [c["code"] for c in mine] == [personal["code"]]
    assert services.coupons.validate(personal["code"], 20, user_id)["valid"] is True
