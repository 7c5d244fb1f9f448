from datetime import datetime

import pytest
from fastapi import HTTPException

from gamification import SCRATCH_REWARDS, SPIN_REWARDS, check_in_points, pick_reward, short_name


class FixedRoll:
    def __init__(self, *rolls):
        self.rolls = list(rolls)

    def random(self):
        return self.rolls.pop(0)


class Clock:
    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now


@pytest.fixture
def clock(services):
    c = Clock(datetime(2024, 3, 1, 10, 0, 0))
    services.gamification.clock = c
    return c


def test_pick_reward():
    assert pick_reward(SPIN_REWARDS, 0.05)["value"] == 50
    assert pick_reward(SPIN_REWARDS, 0.25)["value"] == 20
    assert pick_reward(SPIN_REWARDS, 0.99)["label"] == "Try Again"
    assert pick_reward(SCRATCH_REWARDS, 0.01)["value"] == 100


def test_check_in_points():
    assert check_in_points(1) == 10
    assert check_in_points(2) == 20
    assert check_in_points(5) == 35
    assert check_in_points(40) == 100


def test_short_name():
    assert short_name("Ada Lovelace") == "Ada L."
    assert short_name("Plato") == "Plato"
    assert short_name(None) == "Unknown"


def test_check_in_streaks(services, make_user, clock):
    user_id, _ = make_user()
    game = services.gamification

    first = game.check_in(user_id)
    assert first["points_awarded"] == 10
    assert first["message"] == "You earned 10 points!"
    assert first["profile"]["current_streak"] == 1

    again = game.check_in(user_id)
    assert again["points_awarded"] == 0
    assert again["message"] == "Already checked in today."

    clock.now = datetime(2024, 3, 2, 9, 0, 0)
    second = game.check_in(user_id)
    assert second["points_awarded"] == 20
    assert second["profile"]["current_streak"] == 2
    assert second["profile"]["highest_streak"] == 2

    clock.now = datetime(2024, 3, 5, 9, 0, 0)
    broken = game.check_in(user_id)
    assert broken["points_awarded"] == 10
    assert broken["profile"]["current_streak"] == 1
    assert broken["profile"]["highest_streak"] == 2

    assert broken["profile"]["points"] == 40
    assert services.loyalty.status(user_id)["points"] == 40
    messages = [n["message"] for n in services.notifications.find_all(user_id)]
    assert "You earned 20 points: Daily Check-In (Streak: 2)" in messages


def test_spin_once_per_day(services, make_user, clock):
    user_id, _ = make_user()
    game = services.gamification
    game.rng = FixedRoll(0.05, 0.99)

    result = game.spin_wheel(user_id)
    assert result["result"]["value"] == 50
    assert result["profile"]["points"] == 50

    with pytest.raises(HTTPException) as exc:
        game.spin_wheel(user_id)
    assert exc.value.status_code == 400
    assert exc.value.detail == "Already spin today!"

    clock.now = datetime(2024, 3, 2, 10, 0, 0)
    result = game.spin_wheel(user_id)
    assert result["result"]["label"] == "Try Again"
    assert result["profile"]["points"] == 50
    assert services.loyalty.status(user_id)["total_earned"] == 50


def test_scratch_card(services, make_user, clock):
    user_id, _ = make_user()
    services.gamification.rng = FixedRoll(0.01)

    result = services.gamification.scratch_card(user_id)
    assert result["result"]["value"] == 100
    with pytest.raises(HTTPException) as exc:
        services.gamification.scratch_card(user_id)
    assert exc.value.detail == "Already scratched today!"

    # the spin wheel is tracked separately
    services.gamification.rng = FixedRoll(0.5)
    assert services.gamification.spin_wheel(user_id)["result"]["value"] == 10


def test_leaderboard_and_activities(client, services, make_user, clock):
    leader_id, _ = make_user(name="Grace Hopper")
    runner_id, _ = make_user(name="Alan Turing")
    services.gamification.rng = FixedRoll(0.01)
    services.gamification.scratch_card(leader_id)
    services.gamification.check_in(runner_id)

    board = client.get("/api/gamification/leaderboard").json()
    assert [p["user"]["name"] for p in board] == ["Grace Hopper", "Alan Turing"]
    assert board[0]["lifetime_points"] == 100

    activities = client.get("/api/gamification/activities").json()
    assert {a["user"] for a in activities} == {"Grace H.", "Alan T."}
    scratch = next(a for a in activities if a["user"] == "Grace H.")
    assert scratch["action"] == "scratched"
    assert scratch["reward"] == "100 Points"


def test_routes(client, make_user):
    _, headers = make_user()
    assert client.get("/api/gamification/profile", headers=headers).json()["points"] == 0
    r = client.post("/api/gamification/check-in", headers=headers)
    assert r.json()["points_awarded"] == 10
    assert client.post("/api/gamification/check-in", headers=headers).json()["points_awarded"] == 0
    assert client.get("/api/gamification/profile").status_code == 401
