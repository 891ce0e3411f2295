import scheduler
from conftest import at
from challenges import abandon_challenge, start_challenge
from models import TaskInstance


def test_materialize_today_creates_current_day(db, session_factory, make_user, make_templates):
    user = make_user()
    make_templates([10, 15])
    challenge = start_challenge(db, user.id, at(1), total_days=10)

    summary = scheduler.materialize_today(session_factory, now=at(3))

    assert summary == {"challenges": 1, "tasks": 2, "failed": 0}
    days = {t.day_number for t in db.query(TaskInstance).filter(TaskInstance.challenge_id == challenge.id)}
    assert days == {1, 3}


def test_materialize_today_is_idempotent(db, session_factory, make_user, make_templates):
    user = make_user()
    make_templates([10])
    start_challenge(db, user.id, at(1), total_days=10)

    scheduler.materialize_today(session_factory, now=at(2))
    scheduler.materialize_today(session_factory, now=at(2))

    assert db.query(TaskInstance).count() == 2


def test_materialize_today_skips_inactive_challenges(db, session_factory, make_user, make_templates):
    user = make_user()
    make_templates([10])
    challenge = start_challenge(db, user.id, at(1), total_days=10)
    abandon_challenge(db, challenge)

    summary = scheduler.materialize_today(session_factory, now=at(2))

    assert summary["challenges"] == 0
    assert db.query(TaskInstance).count() == 1


def test_failing_challenge_does_not_stop_the_others(db, session_factory, make_user, make_templates, monkeypatch):
    ana = make_user("Ana")
    luis = make_user("Luis")
    make_templates([10])
    broken = start_challenge(db, ana.id, at(1), total_days=10)
    start_challenge(db, luis.id, at(1), total_days=10)
    real_ensure_day = scheduler.ensure_day

    def flaky_ensure_day(store, challenge, day_number):
        if challenge.id == broken.id:
            raise RuntimeError("fallo puntual")
        return real_ensure_day(store, challenge, day_number)

    monkeypatch.setattr(scheduler, "ensure_day", flaky_ensure_day)
    summary = scheduler.materialize_today(session_factory, now=at(2))

    assert summary == {"challenges": 1, "tasks": 1, "failed": 1}


def test_create_scheduler_registers_daily_job():
    created = scheduler.create_scheduler()
    job = created.get_job("materialize_today")

    assert job is not None
    assert job.func is scheduler.materialize_today
