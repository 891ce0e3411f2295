from datetime import datetime

import pytest

from conftest import at
from gamification import (
    ACHIEVEMENTS_DEFINITIONS, UserStats, achievement_leaderboard, achievement_progress,
    achievements_overview, check_and_unlock_achievements, compute_user_stats,
    evaluate_unlocks, qualifying_achievements, seed_achievements
)
from models import Achievement, UserAchievement
from challenges import start_challenge
from tasks import toggle_task


def _achievement(achievement_id, requirement_type, value):
    return Achievement(id=achievement_id, code=f"{requirement_type}_{value}", name="x", description="x",
                       requirement_type=requirement_type, requirement_value=value, points=10)


def test_seed_is_idempotent(db):
    seed_achievements(db)
    seed_achievements(db)
    assert db.query(Achievement).count() == len(ACHIEVEMENTS_DEFINITIONS)


def test_qualifying_achievements_skip_already_unlocked():
    catalog = [_achievement(1, "streak", 3), _achievement(2, "streak", 7), _achievement(3, "points", 100)]
    stats = UserStats(longest_streak=7, total_points=50)

    assert [a.id for a in qualifying_achievements(stats, catalog, set())] == [1, 2]
    assert [a.id for a in qualifying_achievements(stats, catalog, {1})] == [2]


def test_progress_is_clamped():
    streak_7 = _achievement(1, "streak", 7)

    assert achievement_progress(streak_7, UserStats(longest_streak=0)) == 0
    assert achievement_progress(streak_7, UserStats(longest_streak=2)) == 28.6
    assert achievement_progress(streak_7, UserStats(longest_streak=30)) == 100


def test_unlock_happens_once(db, store, make_user):
    user = make_user()
    stats = UserStats(total_tasks=1)

    first = check_and_unlock_achievements(store, user.id, stats)
    second = check_and_unlock_achievements(store, user.id, stats)

    assert [a.code for a in first] == ["first_task"]
    assert second == []
    assert db.query(UserAchievement).filter(UserAchievement.user_id == user.id).count() == 1


def test_racing_unlock_is_not_announced_twice(db, store, make_user):
    """Otra petición ya lo insertó: la lista en memoria estaba desfasada"""
    user = make_user()
    stats = UserStats(total_tasks=50)
    catalog = store.get_achievement_catalog()
    first_task = next(a for a in catalog if a.code == "first_task")
    store.insert_unlocked_achievement(user.id, first_task.id)

    unlocked = evaluate_unlocks(store, user.id, stats, catalog, already_unlocked_ids=set())

    assert [a.code for a in unlocked] == ["tasks_50"]


def test_user_stats_are_recomputed_from_tasks(db, store, make_user, make_templates):
    user = make_user()
    make_templates([10, 15])
    challenge = start_challenge(db, user.id, at(1), total_days=5)
    for task in store.get_task_instances(challenge.id, 1):
        toggle_task(store, task.id, True, at(1))

    stats = compute_user_stats(store, user.id, at(1))

    assert stats == UserStats(longest_streak=1, total_points=25, total_tasks=2,
                              completed_challenges=0, current_streak=1)


def test_overview_marks_unlocked(db, store, make_user):
    user = make_user()
    stats = UserStats(total_tasks=1, longest_streak=2)
    check_and_unlock_achievements(store, user.id, stats)

    overview = {a["code"]: a for a in achievements_overview(store, user.id, stats)}

    assert overview["first_task"]["unlocked"]
    assert overview["first_task"]["progress"] == 100
    assert not overview["streak_3"]["unlocked"]
    assert overview["streak_3"]["progress"] == 66.7
    assert overview["streak_3"]["current"] == 2


def test_unlock_times_come_from_the_store(db, store, make_user):
    user = make_user()
    moment = datetime(2025, 3, 1, 12)
    check_and_unlock_achievements(store, user.id, UserStats(total_tasks=1, longest_streak=3), now=moment)

    times = store.get_unlock_times(user.id)

    assert set(times) == store.get_unlocked_achievement_ids(user.id)
    assert len(times) == 2
    assert all(unlocked_at == moment for unlocked_at in times.values())
    assert store.get_unlock_times(make_user("Luis").id) == {}


def test_leaderboard_orders_by_count_then_points(db, store, make_user):
    ana = make_user("Ana")
    luis = make_user("Luis")
    check_and_unlock_achievements(store, ana.id, UserStats(total_tasks=1), now=datetime(2025, 3, 1, 12))
    check_and_unlock_achievements(store, luis.id, UserStats(total_tasks=1, longest_streak=3),
                                  now=datetime(2025, 3, 1, 12))

    board = achievement_leaderboard(db, "all_time", datetime(2025, 3, 2, 12))

    assert [(e["rank"], e["display_name"], e["achievement_count"]) for e in board] == [
        (1, "Luis", 2), (2, "Ana", 1)
    ]
    assert board[0]["total_points"] == 15


def test_weekly_leaderboard_ignores_old_unlocks(db, store, make_user):
    ana = make_user("Ana")
    check_and_unlock_achievements(store, ana.id, UserStats(total_tasks=1), now=datetime(2025, 1, 1, 12))

    assert achievement_leaderboard(db, "weekly", datetime(2025, 3, 1, 12)) == []
    assert len(achievement_leaderboard(db, "all_time", datetime(2025, 3, 1, 12))) == 1


def test_leaderboard_rejects_unknown_period(db):
    with pytest.raises(ValueError):
        achievement_leaderboard(db, "yearly", datetime(2025, 3, 1))
