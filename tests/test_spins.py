import random
from datetime import datetime, timedelta

import pytest
from fastapi import HTTPException

from conftest import auth_headers, gate_first_call, run_in_threads

BET_10_TIERS = {0, 3, 5, 7, 8, 10, 15, 20, 50, 80, 100}


class FixedRandom(random.Random):
    def __init__(self, value):
        super().__init__(0)
        self.value = value

    def random(self):
        return self.value


def _spins(app_module):
    import arena.spins as spins
    return spins


def test_health(client):
    resp = client.get("/health")
    assert resp.status_code == 200
    assert resp.json() == {"status": "ok"}


def test_spin_applies_delta_and_records_spin(client, app_module, make_user, fetch_user):
    _, database, models = app_module
    user_id = make_user(points=1000)

    resp = client.post("/spins", json={"bet": 10}, headers=auth_headers(user_id))
    assert resp.status_code == 200
    body = resp.json()
    assert body["bet"] == 10
    assert body["outcome"] in BET_10_TIERS
    assert body["delta"] == body["outcome"] - 10
    assert body["newPoints"] == 1000 + body["outcome"] - 10
    assert sum(body["percents"].values()) == pytest.approx(100.0, abs=1e-6)
    assert body["tiers"] == sorted(BET_10_TIERS)
    assert len(body["weights"]) == len(body["tiers"])
    assert body["strategy"] == "template:10"
    assert body["spinsToday"] == 1
    assert body["spinsRemaining"] == 4

    assert fetch_user(user_id).points == body["newPoints"]
    with database.SessionLocal() as db:
        records = db.query(models.Spin).filter_by(user_id=user_id).all()
        assert len(records) == 1
        assert records[0].id == body["spinId"]
        assert records[0].outcome - records[0].bet == body["delta"]
        events = [r.event_type for r in db.query(models.NotificationOutbox).all()]
        assert "spin:created" in events
        assert "spin:status" in events


def test_spin_balance_is_exact_across_many_spins(app_module, session, make_user, fetch_user):
    spins = _spins(app_module)
    user_id = make_user(points=500)
    rng = random.Random(99)
    now = datetime(2026, 3, 1, 8, 0)
    expected = 500
    for minute in range(5):
        result = spins.play_spin(session, user_id, 37, now=now + timedelta(minutes=minute), rng=rng)
        expected += result["delta"]
        assert result["newPoints"] == expected
    assert fetch_user(user_id).points == expected


def test_daily_quota_blocks_sixth_spin_without_side_effects(client, app_module, make_user, fetch_user):
    _, database, models = app_module
    user_id = make_user(points=10_000)
    for _ in range(5):
        assert client.post("/spins", json={"bet": 10}, headers=auth_headers(user_id)).status_code == 200
    points_before = fetch_user(user_id).points

    resp = client.post("/spins", json={"bet": 10}, headers=auth_headers(user_id))
    assert resp.status_code == 429
    detail = resp.json()["detail"]
    assert detail["code"] == "daily_limit_reached"
    assert detail["spinsToday"] == 5
    assert detail["dailyLimit"] == 5
    assert detail["resetsAt"].endswith("T00:00:00Z")

    assert fetch_user(user_id).points == points_before
    with database.SessionLocal() as db:
        assert db.query(models.Spin).filter_by(user_id=user_id).count() == 5


def test_quota_resets_at_utc_midnight(app_module, session, make_user):
    spins = _spins(app_module)
    user_id = make_user(points=10_000)
    late = datetime(2026, 3, 1, 23, 0)
    for i in range(5):
        spins.play_spin(session, user_id, 10, now=late + timedelta(minutes=i), rng=random.Random(i))
    with pytest.raises(HTTPException) as exc:
        spins.play_spin(session, user_id, 10, now=late + timedelta(minutes=30))
    assert exc.value.status_code == 429

    next_day = datetime(2026, 3, 2, 0, 1)
    result = spins.play_spin(session, user_id, 10, now=next_day, rng=random.Random(5))
    assert result["spinsToday"] == 1
    assert spins.spin_status(session, user_id, now=next_day)["spinsRemaining"] == 4


@pytest.mark.parametrize("bet", [5, 9.99, 101, 1000, "abc", None, True, "inf", "nan"])
def test_invalid_bets_are_rejected(client, make_user, fetch_user, bet):
    user_id = make_user(points=1000)
    resp = client.post("/spins", json={"bet": bet}, headers=auth_headers(user_id))
    assert resp.status_code == 400
    detail = resp.json()["detail"]
    assert detail["code"] == "invalid_bet"
    assert detail["minBet"] == 10
    assert detail["maxBet"] == 100
    assert fetch_user(user_id).points == 1000


def test_fractional_bet_is_floored(client, make_user):
    user_id = make_user(points=1000)
    resp = client.post("/spins", json={"bet": 10.7}, headers=auth_headers(user_id))
    assert resp.status_code == 200
    assert resp.json()["bet"] == 10


def test_insufficient_points(client, app_module, make_user, fetch_user):
    _, database, models = app_module
    user_id = make_user(points=9)
    resp = client.post("/spins", json={"bet": 10}, headers=auth_headers(user_id))
    assert resp.status_code == 400
    assert resp.json()["detail"]["code"] == "insufficient_points"
    assert fetch_user(user_id).points == 9
    with database.SessionLocal() as db:
        assert db.query(models.Spin).count() == 0


def test_unknown_user_is_not_found(client):
    resp = client.post("/spins", json={"bet": 10}, headers=auth_headers(999))
    assert resp.status_code == 404
    assert resp.json()["detail"]["code"] == "user_not_found"


def test_kill_switch_blocks_spins_before_validating_the_bet(client, make_user):
    user_id = make_user(points=1000)
    admin_id = make_user()

    resp = client.post(
        "/spins/control",
        json={"disabled": True, "reason": "maintenance"},
        headers=auth_headers(admin_id, role="admin"),
    )
    assert resp.status_code == 200
    assert resp.json()["disabled"] is True
    assert resp.json()["updatedBy"] == admin_id

    state = client.get("/spins/control", headers=auth_headers(user_id)).json()
    assert state["disabled"] is True
    assert state["reason"] == "maintenance"

    for bet in (10, "abc"):
        resp = client.post("/spins", json={"bet": bet}, headers=auth_headers(user_id))
        assert resp.status_code == 403
        assert resp.json()["detail"]["code"] == "spins_disabled"
        assert resp.json()["detail"]["reason"] == "maintenance"

    client.post("/spins/control", json={"disabled": False}, headers=auth_headers(admin_id, role="admin"))
    assert client.post("/spins", json={"bet": 10}, headers=auth_headers(user_id)).status_code == 200


def test_spin_control_is_a_single_row(client, app_module, make_user):
    _, database, models = app_module
    admin_id = make_user()
    for reason in ("a", "b", "c"):
        client.post("/spins/control", json={"disabled": True, "reason": reason}, headers=auth_headers(admin_id, role="admin"))
    with database.SessionLocal() as db:
        rows = db.query(models.SpinControl).all()
        assert len(rows) == 1
        assert rows[0].reason == "c"


def test_spin_control_requires_admin(client, make_user):
    user_id = make_user()
    resp = client.post("/spins/control", json={"disabled": True}, headers=auth_headers(user_id))
    assert resp.status_code == 403
    assert resp.json()["detail"]["code"] == "admin_required"


def test_status_and_history(client, make_user):
    user_id = make_user(points=1000)
    for _ in range(2):
        client.post("/spins", json={"bet": 20}, headers=auth_headers(user_id))

    status = client.get("/spins/status", headers=auth_headers(user_id)).json()
    assert status["spinsToday"] == 2
    assert status["spinsRemaining"] == 3
    assert status["dailyLimit"] == 5

    history = client.get("/spins", params={"limit": 1}, headers=auth_headers(user_id)).json()["spins"]
    assert len(history) == 1
    assert history[0]["bet"] == 20
    full = client.get("/spins", headers=auth_headers(user_id)).json()["spins"]
    assert [s["id"] for s in full] == sorted((s["id"] for s in full), reverse=True)


def test_big_win_is_broadcast(app_module, session, make_user, monkeypatch):
    spins = _spins(app_module)
    _, _, models = app_module
    monkeypatch.setattr(spins.settings, "big_win_floor", 100)
    user_id = make_user(points=100)

    result = spins.play_spin(session, user_id, 10, rng=FixedRandom(0.9999999))
    assert result["outcome"] == 100
    assert result["newPoints"] == 190
    events = [r.event_type for r in session.query(models.NotificationOutbox).all()]
    assert events.count("spin:big") == 1


def test_idempotent_spin_replays_stored_response(client, app_module, make_user, fetch_user):
    _, database, models = app_module
    user_id = make_user(points=1000)
    headers = auth_headers(user_id, **{"Idempotency-Key": "spin-1"})

    first = client.post("/spins", json={"bet": 10}, headers=headers)
    second = client.post("/spins", json={"bet": 10}, headers=headers)
    assert first.status_code == 200
    assert second.json() == first.json()
    assert fetch_user(user_id).points == first.json()["newPoints"]
    with database.SessionLocal() as db:
        assert db.query(models.Spin).count() == 1

    conflict = client.post("/spins", json={"bet": 20}, headers=headers)
    assert conflict.status_code == 409
    assert conflict.json()["detail"]["code"] == "idempotency_conflict"


def test_requests_without_gateway_token_are_rejected(client, make_user):
    user_id = make_user(points=1000)
    headers = auth_headers(user_id)
    headers.pop("Authorization")
    resp = client.get("/spins/status", headers=headers)
    assert resp.status_code == 401


def test_signed_identity_is_verified(client, make_user):
    import time
    import arena.security as security

    user_id = make_user(points=1000)
    timestamp = str(int(time.time()))
    good = security.compute_signature({"userId": user_id, "role": "user"}, timestamp)
    ok = client.get("/spins/status", headers=auth_headers(user_id, **{"X-Signature": good, "X-Timestamp": timestamp}))
    assert ok.status_code == 200

    forged = client.get(
        "/spins/status",
        headers=auth_headers(user_id, role="admin", **{"X-Signature": good, "X-Timestamp": timestamp}),
    )
    assert forged.status_code == 401
    assert forged.json()["detail"]["code"] == "invalid_signature"


def test_concurrent_spins_respect_the_last_quota_slot(app_module, monkeypatch, make_user, fetch_user):
    import threading

    spins = _spins(app_module)
    _, database, models = app_module
    user_id = make_user(points=10_000)
    now = datetime(2026, 3, 1, 9, 0)
    with database.SessionLocal() as db:
        for i in range(4):
            spins.play_spin(db, user_id, 10, now=now + timedelta(minutes=i), rng=random.Random(i))

    later = now + timedelta(hours=1)
    gate_first_call(monkeypatch, spins, "count_spins_today", threading.Barrier(2))
    results = run_in_threads(
        database,
        lambda db: spins.play_spin(db, user_id, 10, now=later, rng=random.Random(10)),
        lambda db: spins.play_spin(db, user_id, 10, now=later, rng=random.Random(11)),
    )

    played = [r for r in results if isinstance(r, dict)]
    refused = [r for r in results if isinstance(r, HTTPException)]
    assert len(played) == 1
    assert len(refused) == 1
    assert refused[0].status_code == 429
    assert refused[0].detail["code"] == "daily_limit_reached"

    with database.SessionLocal() as db:
        records = db.query(models.Spin).filter_by(user_id=user_id).all()
    assert len(records) == 5
    assert fetch_user(user_id).points == 10_000 + sum(r.delta for r in records)


def test_spin_reports_conflict_when_balance_moves_under_it(app_module, session, monkeypatch, make_user, fetch_user):
    spins = _spins(app_module)
    _, database, models = app_module
    user_id = make_user(points=1000)
    original = spins.lock_user
    calls = {"count": 0}

    def set_points(value):
        with database.SessionLocal() as other:
            other.get(models.User, user_id).points = value
            other.commit()

    def drained_then_restored(db, uid):
        calls["count"] += 1
        if calls["count"] == 1:
            user = original(db, uid)
            set_points(0)
            return user
        set_points(1000)
        return original(db, uid)

    monkeypatch.setattr(spins, "lock_user", drained_then_restored)
    with pytest.raises(HTTPException) as exc:
        spins.play_spin(session, user_id, 10, rng=random.Random(3))
    assert exc.value.status_code == 409
    assert exc.value.detail["code"] == "concurrent_update"
    assert fetch_user(user_id).points == 1000
    assert session.query(models.Spin).count() == 0
