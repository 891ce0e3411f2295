from datetime import timedelta

from auth import create_access_token
from store import StoreError


def test_health(client):
    response = client.get("/")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"


def test_requires_token(client):
    assert client.get("/challenges/active").status_code in (401, 403)


def test_rejects_bad_token(client):
    response = client.get("/challenges/active", headers={"Authorization": "Bearer no-es-un-jwt"})
    assert response.status_code == 401


def test_rejects_expired_token(client, make_user):
    user = make_user()
    token = create_access_token(user.id, expires_in=timedelta(minutes=-1))
    response = client.get("/challenges/active", headers={"Authorization": f"Bearer {token}"})
    assert response.status_code == 401


def test_start_challenge_and_open_today(client, make_user, make_templates, auth_headers):
    user = make_user()
    make_templates([10, 15])
    headers = auth_headers(user)

    created = client.post("/challenges", json={"total_days": 75}, headers=headers)
    assert created.status_code == 201
    challenge = created.json()
    assert challenge["current_day"] == 1

    today = client.get(f"/challenges/{challenge['id']}/today", headers=headers)
    assert today.status_code == 200
    body = today.json()
    assert body["day_number"] == 1
    assert [t["weight"] for t in body["tasks"]] == [10, 15]
    assert body["progress"] == 0

    active = client.get("/challenges/active", headers=headers)
    assert active.json()["id"] == challenge["id"]


def test_second_challenge_conflicts(client, make_user, make_templates, auth_headers):
    user = make_user()
    make_templates([10])
    headers = auth_headers(user)

    assert client.post("/challenges", json={}, headers=headers).status_code == 201
    assert client.post("/challenges", json={}, headers=headers).status_code == 409


def test_invalid_challenge_length(client, make_user, auth_headers):
    response = client.post("/challenges", json={"total_days": 0}, headers=auth_headers(make_user()))
    assert response.status_code == 422


def test_unknown_group_is_404(client, make_user, auth_headers):
    response = client.post("/challenges", json={"group_id": 77}, headers=auth_headers(make_user()))
    assert response.status_code == 404


def test_toggle_task(client, make_user, make_templates, auth_headers):
    user = make_user()
    make_templates([10])
    headers = auth_headers(user)
    challenge = client.post("/challenges", json={"total_days": 5}, headers=headers).json()
    task = client.get(f"/challenges/{challenge['id']}/today", headers=headers).json()["tasks"][0]

    response = client.patch(f"/tasks/{task['id']}", json={"completed": True}, headers=headers)

    assert response.status_code == 200
    body = response.json()
    assert body["task"]["completed"]
    assert body["day_complete"]
    assert body["streaks"] == {"current": 1, "longest": 1}
    assert [a["code"] for a in body["new_achievements"]] == ["first_task"]
    assert body["completion"] is None


def test_one_day_challenge_shows_completion_once(client, make_user, make_templates, auth_headers):
    user = make_user()
    make_templates([10])
    headers = auth_headers(user)
    challenge = client.post("/challenges", json={"total_days": 1}, headers=headers).json()
    task = client.get(f"/challenges/{challenge['id']}/today", headers=headers).json()["tasks"][0]

    first = client.patch(f"/tasks/{task['id']}", json={"completed": True}, headers=headers).json()
    client.patch(f"/tasks/{task['id']}", json={"completed": False}, headers=headers)
    second = client.patch(f"/tasks/{task['id']}", json={"completed": True}, headers=headers).json()

    assert first["completion"] == {
        "total_days": 1, "total_points": 10, "longest_streak": 1, "total_tasks_completed": 1
    }
    assert second["completion"] is None


def test_other_users_challenge_is_404(client, make_user, make_templates, auth_headers):
    ana = make_user("Ana")
    luis = make_user("Luis")
    make_templates([10])
    challenge = client.post("/challenges", json={}, headers=auth_headers(ana)).json()

    assert client.get(f"/challenges/{challenge['id']}/today", headers=auth_headers(luis)).status_code == 404
    assert client.post(f"/challenges/{challenge['id']}/abandon", headers=auth_headers(luis)).status_code == 404


def test_future_day_is_rejected(client, make_user, make_templates, auth_headers):
    user = make_user()
    make_templates([10])
    headers = auth_headers(user)
    challenge = client.post("/challenges", json={}, headers=headers).json()

    assert client.get(f"/challenges/{challenge['id']}/days/1", headers=headers).status_code == 200
    assert client.get(f"/challenges/{challenge['id']}/days/2", headers=headers).status_code == 400


def test_abandon_and_restart(client, make_user, make_templates, auth_headers):
    user = make_user()
    make_templates([10])
    headers = auth_headers(user)
    challenge = client.post("/challenges", json={"total_days": 30}, headers=headers).json()

    restarted = client.post(f"/challenges/{challenge['id']}/restart", headers=headers)
    assert restarted.status_code == 201
    assert restarted.json()["id"] != challenge["id"]
    assert restarted.json()["total_days"] == 30

    history = client.get("/challenges/history", headers=headers).json()
    assert [h["is_active"] for h in history] == [True, False]

    abandoned = client.post(f"/challenges/{restarted.json()['id']}/abandon", headers=headers)
    assert abandoned.json()["is_active"] is False
    assert client.get("/challenges/active", headers=headers).json() is None


def test_store_error_is_retryable(client, make_user, make_templates, auth_headers, monkeypatch):
    import main

    def failing_toggle(*args, **kwargs):
        raise StoreError("base de datos no disponible")

    monkeypatch.setattr(main, "process_task_toggle", failing_toggle)
    response = client.patch("/tasks/1", json={"completed": True}, headers=auth_headers(make_user()))

    assert response.status_code == 503
    assert response.json()["retryable"] is True


def test_saved_toggle_is_200_even_if_the_latch_fails(client, make_user, make_templates, auth_headers, monkeypatch):
    from store import ChallengeStore

    user = make_user()
    make_templates([10])
    headers = auth_headers(user)
    challenge = client.post("/challenges", json={"total_days": 1}, headers=headers).json()
    task = client.get(f"/challenges/{challenge['id']}/today", headers=headers).json()["tasks"][0]

    def broken_latch(self, challenge_id):
        raise StoreError("base de datos no disponible")

    monkeypatch.setattr(ChallengeStore, "set_challenge_completion_shown", broken_latch)
    response = client.patch(f"/tasks/{task['id']}", json={"completed": True}, headers=headers)

    assert response.status_code == 200
    assert response.json()["task"]["completed"]
    assert response.json()["completion"] is None


def test_abandoned_challenge_still_shows_its_existing_day(client, make_user, make_templates, auth_headers):
    user = make_user()
    make_templates([10])
    headers = auth_headers(user)
    challenge = client.post("/challenges", json={"total_days": 30}, headers=headers).json()
    client.post(f"/challenges/{challenge['id']}/abandon", headers=headers)

    today = client.get(f"/challenges/{challenge['id']}/today", headers=headers)

    assert today.status_code == 200
    assert len(today.json()["tasks"]) == 1


def test_put_templates(client, make_user, auth_headers):
    user = make_user()
    response = client.put(
        "/templates",
        json={"tasks": [{"name": "Leer 10 páginas", "weight": 5}, {"name": "Entrenar", "weight": 20}]},
        headers=auth_headers(user),
    )
    assert response.status_code == 200
    assert [t["name"] for t in response.json()] == ["Leer 10 páginas", "Entrenar"]

    empty = client.put("/templates", json={"tasks": []}, headers=auth_headers(user))
    assert empty.status_code == 422


def test_group_templates_need_the_group_owner(client, make_user, make_group, auth_headers):
    owner = make_user("Ana")
    other = make_user("Luis")
    group = make_group(created_by=owner.id)
    payload = {"tasks": [{"name": "Meditar", "weight": 10}]}

    assert client.put(f"/groups/{group.id}/templates", json=payload, headers=auth_headers(other)).status_code == 403
    assert client.put(f"/groups/{group.id}/templates", json=payload, headers=auth_headers(owner)).status_code == 200
    assert client.put("/groups/999/templates", json=payload, headers=auth_headers(owner)).status_code == 404


def test_achievements_and_leaderboard(client, make_user, make_templates, auth_headers):
    user = make_user()
    make_templates([10])
    headers = auth_headers(user)
    challenge = client.post("/challenges", json={}, headers=headers).json()
    task = client.get(f"/challenges/{challenge['id']}/today", headers=headers).json()["tasks"][0]
    client.patch(f"/tasks/{task['id']}", json={"completed": True}, headers=headers)

    achievements = {a["code"]: a for a in client.get("/achievements", headers=headers).json()}
    assert achievements["first_task"]["unlocked"]
    assert achievements["tasks_50"]["progress"] == 2.0

    board = client.get("/achievements/leaderboard?period=weekly", headers=headers).json()
    assert board[0]["user_id"] == user.id
    assert client.get("/achievements/leaderboard?period=yearly", headers=headers).status_code == 400


def test_friend_streaks_include_caller(client, make_user, auth_headers):
    ana = make_user("Ana")
    luis = make_user("Luis")

    response = client.get(f"/streaks/friends?user_ids={luis.id}", headers=auth_headers(ana))

    assert sorted(r["user_id"] for r in response.json()) == [ana.id, luis.id]


def test_group_leaderboard_endpoint(client, make_user, make_group, auth_headers):
    user = make_user()
    group = make_group()
    assert client.get(f"/groups/{group.id}/leaderboard", headers=auth_headers(user)).json() == []
    assert client.get("/groups/999/leaderboard", headers=auth_headers(user)).status_code == 404
