import os
import random
import sys
import threading
from importlib import reload
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

TOKEN = "testtoken"


@pytest.fixture(scope="function")
def app_module(tmp_path_factory):
    """
    Reload the app with a disposable SQLite DB and the outbox worker disabled.
    """
    db_path = tmp_path_factory.mktemp("data") / "test.db"
    new_env = {
        "DB_URL": f"sqlite:///{db_path}",
        "BEARER_TOKEN": TOKEN,
        "NOTIFY_URL": "http://broadcast.local/events",
        "OUTBOX_WORKER_ENABLED": "false",
        "TIMESTAMP_SKEW_SECONDS": "5",
    }
    old_env = {k: os.environ.get(k) for k in new_env}
    os.environ.update(new_env)

    try:
        import arena.config as config
        import arena.database as database
        import arena.models as models
        import arena.logging_config as logging_config
        import arena.helpers as helpers
        import arena.db as db
        import arena.security as security
        import arena.notifications as notifications
        import arena.outcomes as outcomes
        import arena.spins as spins
        import arena.withdrawals as withdrawals
        import arena.conversion as conversion
        import arena.main as main

        for module in (
            config, database, models, logging_config, helpers, db, security,
            notifications, outcomes, spins, withdrawals, conversion, main,
        ):
            reload(module)

        models.Base.metadata.drop_all(bind=database.engine)
        models.Base.metadata.create_all(bind=database.engine)
        return main, database, models
    finally:
        for key, value in old_env.items():
            if value is None:
                os.environ.pop(key, None)
            else:
                os.environ[key] = value


@pytest.fixture
def client(app_module):
    main, _, _ = app_module
    with TestClient(main.app) as client:
        yield client


@pytest.fixture
def session(app_module):
    _, database, _ = app_module
    with database.SessionLocal() as db:
        yield db


@pytest.fixture
def make_user(app_module):
    _, database, models = app_module

    def _make_user(points=0, balance_micros=0, username=None):
        with database.SessionLocal() as db:
            user = models.User(points=points, balance_micros=balance_micros, username=username)
            db.add(user)
            db.commit()
            return user.id

    return _make_user


@pytest.fixture
def fetch_user(app_module):
    _, database, models = app_module

    def _fetch_user(user_id):
        with database.SessionLocal() as db:
            user = db.get(models.User, user_id)
            db.expunge(user)
            return user

    return _fetch_user


@pytest.fixture
def seeded_rng():
    return random.Random(1234)


def auth_headers(user_id, role="user", **extra):
    headers = {
        "Authorization": f"Bearer {TOKEN}",
        "X-User-Id": str(user_id),
        "X-User-Role": role,
    }
    headers.update(extra)
    return headers


def gate_first_call(monkeypatch, module, name, barrier):
    """
    Make every thread's first call to ``module.name`` wait at ``barrier``
    after it returns, so competing operations all read before any writes.
    """
    original = getattr(module, name)
    seen = threading.local()

    def gated(*args, **kwargs):
        result = original(*args, **kwargs)
        if not getattr(seen, "done", False):
            seen.done = True
            barrier.wait(timeout=10)
        return result

    monkeypatch.setattr(module, name, gated)


def run_in_threads(database, *jobs):
    """Run each ``job(db)`` in its own thread and session; return results or raised exceptions."""
    results = [None] * len(jobs)

    def worker(index, job):
        with database.SessionLocal() as db:
            try:
                results[index] = job(db)
            except Exception as exc:  # noqa: BLE001
                results[index] = exc

    threads = [threading.Thread(target=worker, args=(i, job)) for i, job in enumerate(jobs)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=30)
    return results
