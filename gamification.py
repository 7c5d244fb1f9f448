"""
Daily engagement games: check-in streaks, spin wheel and scratch card.

Each game can be played once per UTC calendar day. Points are credited
through LoyaltyService.add_points, which keeps the loyalty balance and the
gamification profile in step.
"""

import random
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

import structlog
from fastapi import HTTPException

from database import create_document, oid, utcnow
from schemas import GamificationActivity, GamificationProfile

logger = structlog.get_logger(__name__)

CHECK_IN_POINTS = 10
STREAK_BONUS = 5
MAX_CHECK_IN_POINTS = 100

SPIN_REWARDS = [
    {"label": "50 Points", "value": 50, "prob": 0.1},
    {"label": "20 Points", "value": 20, "prob": 0.2},
    {"label": "10 Points", "value": 10, "prob": 0.3},
    {"label": "5 Points", "value": 5, "prob": 0.3},
    {"label": "Try Again", "value": 0, "prob": 0.1},
]

SCRATCH_REWARDS = [
    {"label": "100 Points", "value": 100, "prob": 0.05},
    {"label": "50 Points", "value": 50, "prob": 0.1},
    {"label": "20 Points", "value": 20, "prob": 0.2},
    {"label": "10 Points", "value": 10, "prob": 0.3},
    {"label": "Better luck next time", "value": 0, "prob": 0.35},
]


def pick_reward(rewards: List[Dict[str, Any]], roll: float) -> Dict[str, Any]:
    cumulative = 0.0
    for reward in rewards:
        cumulative += reward["prob"]
        if roll <= cumulative:
            return reward
    return rewards[-1]


def check_in_points(streak: int) -> int:
    if streak <= 1:
        return CHECK_IN_POINTS
    return min(CHECK_IN_POINTS + streak * STREAK_BONUS, MAX_CHECK_IN_POINTS)


def short_name(name: Optional[str]) -> str:
    if not name:
        return "Unknown"
    parts = name.split()
    if len(parts) > 1:
        return f"{parts[0]} {parts[1][0]}."
    return parts[0]


class GamificationService:
    def __init__(self, db, loyalty, rng: Optional[random.Random] = None, clock: Callable[[], datetime] = utcnow):
        self.db = db
        self.loyalty = loyalty
        self.rng = rng or random.Random()
        self.clock = clock

    def get_profile(self, user_id: str) -> dict:
        user_oid = oid(user_id, "user ID")
        profile = self.db["gamificationprofile"].find_one({"user_id": user_oid})
        if profile is None:
            doc = GamificationProfile(user_id=str(user_oid)).model_dump()
            doc["user_id"] = user_oid
            create_document(self.db, "gamificationprofile", doc)
            profile = doc
        return profile

    def check_in(self, user_id: str) -> Dict[str, Any]:
        profile = self.get_profile(user_id)
        now = self.clock()
        last = profile.get("last_check_in")

        if last is not None and last.date() == now.date():
            return {"profile": profile, "points_awarded": 0, "message": "Already checked in today."}

        streak = int(profile.get("current_streak", 0))
        if last is not None and (now.date() - last.date()).days == 1:
            streak += 1
        else:
            streak = 1
        points = check_in_points(streak)

        res = self.db["gamificationprofile"].update_one(
            {"_id": profile["_id"], "last_check_in": last},
            {"$set": {
                "current_streak": streak,
                "highest_streak": max(streak, int(profile.get("highest_streak", 0))),
                "last_check_in": now,
                "updated_at": utcnow(),
            }},
        )
        if res.modified_count == 0:
            return {"profile": self.get_profile(user_id), "points_awarded": 0, "message": "Already checked in today."}

        self.loyalty.add_points(user_id, points, f"Daily Check-In (Streak: {streak})")
        self.log_activity(user_id, "reached", f"{points} Points (Streak {streak})", "CHECKIN")
        logger.info("check_in", user_id=str(user_id), streak=streak, points=points)
        return {"profile": self.get_profile(user_id), "points_awarded": points, "message": f"You earned {points} points!"}

    def spin_wheel(self, user_id: str) -> Dict[str, Any]:
        return self._play(user_id, "last_spin_date", SPIN_REWARDS, "Already spin today!", "won", "SPIN", "Spin Wheel Reward")

    def scratch_card(self, user_id: str) -> Dict[str, Any]:
        return self._play(
            user_id, "last_scratch_date", SCRATCH_REWARDS, "Already scratched today!", "scratched", "SCRATCH", "Scratch Card Reward"
        )

    def _play(self, user_id: str, date_field: str, rewards, played_message: str, action: str, kind: str, reason: str) -> Dict[str, Any]:
        profile = self.get_profile(user_id)
        now = self.clock()
        last = profile.get(date_field)
        if last is not None and last.date() == now.date():
            raise HTTPException(status_code=400, detail=played_message)

        res = self.db["gamificationprofile"].update_one(
            {"_id": profile["_id"], date_field: last},
            {"$set": {date_field: now, "updated_at": utcnow()}},
        )
        if res.modified_count == 0:
            raise HTTPException(status_code=400, detail=played_message)

        reward = pick_reward(rewards, self.rng.random())
        if reward["value"] > 0:
            self.loyalty.add_points(user_id, reward["value"], reason)
            self.log_activity(user_id, action, f"{reward['value']} Points", kind)
        logger.info("game_played", user_id=str(user_id), game=kind, reward=reward["value"])
        return {"result": reward, "profile": self.get_profile(user_id)}

    def leaderboard(self, limit: int = 10) -> List[dict]:
        profiles = list(self.db["gamificationprofile"].find().sort("lifetime_points", -1).limit(limit))
        users = {
            u["_id"]: u
            for u in self.db["user"].find({"_id": {"$in": [p["user_id"] for p in profiles]}}, {"name": 1, "avatar": 1})
        }
        for p in profiles:
            p["user"] = users.get(p["user_id"])
        return profiles

    def log_activity(self, user_id: str, action: str, details: str, type: str) -> None:
        try:
            doc = GamificationActivity(user_id=str(user_id), action=action, details=details, type=type).model_dump()
            doc["user_id"] = oid(user_id, "user ID")
            create_document(self.db, "gamificationactivity", doc)
        except Exception as e:
            logger.warning("activity_log_failed", user_id=str(user_id), error=str(e))

    def recent_activities(self, limit: int = 20) -> List[Dict[str, Any]]:
        activities = list(self.db["gamificationactivity"].find().sort("created_at", -1).limit(limit))
        names = {
            u["_id"]: u.get("name")
            for u in self.db["user"].find({"_id": {"$in": [a["user_id"] for a in activities]}}, {"name": 1})
        }
        return [
            {
                "user": short_name(names.get(a["user_id"])),
                "action": a["action"],
                "reward": a["details"],
                "time": a["created_at"],
            }
            for a in activities
        ]
