import random

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from pharmalingo.common.clock import FixedClock
from pharmalingo.progress.controllers import create_app, router
from pharmalingo.progress.engine import ProgressEngine
from pharmalingo.progress.repository import MemoryProgressStore
from pharmalingo.tests.conftest import START, make_config

CORRECT = {"is_correct": True, "drug_id": "atorvastatin"}
WRONG = {"is_correct": False, "drug_id": "atorvastatin"}


@pytest.fixture
def api_store():
    return MemoryProgressStore()


@pytest.fixture
def client(api_store, catalog):
    engine = ProgressEngine(
        api_store,
        config=make_config(),
        clock=FixedClock(START, tz="UTC"),
        catalog=catalog,
        rng=random.Random(7),
    )
    with TestClient(create_app(engine, user_id="learner-1")) as client:
        yield client


def test_summary(client):
    response = client.get("/progress/summary")
    assert response.status_code == 200
    body = response.json()
    assert body["hearts"] == 5
    assert body["coins"] == 50
    assert body["streak"] == 0
    assert body["streak_state"] == "none"
    assert body["league_tier"] == "Bronze"


def test_full_progress_document(client):
    body = client.get("/progress").json()
    assert body["schema_version"] == 2
    assert body["stats"]["last_active_date"] == ""


def test_complete_lesson(client):
    response = client.post("/progress/lessons/mod-1-p1/complete", json={"answers": [CORRECT] * 4 + [WRONG]})
    assert response.status_code == 200
    body = response.json()
    assert body["xp_earned"] == 24
    assert body["score"] == 80
    assert body["stars"] == 1

    summary = client.get("/progress/summary").json()
    assert summary["streak"] == 1
    assert summary["accuracy"] == 80
    review = client.get("/progress/review").json()
    assert review["recent_mistakes"] == ["atorvastatin"]


def test_score_override_is_validated(client):
    response = client.post("/progress/lessons/mod-1-p1/complete", json={"answers": [], "score": 140})
    assert response.status_code == 422


def test_out_of_hearts_is_a_conflict(client):
    for expected in (4, 3, 2, 1, 0):
        assert client.post("/progress/hearts/consume").json() == {"hearts": expected}
    response = client.post("/progress/hearts/consume")
    assert response.status_code == 409
    assert response.json()["detail"]["code"] == "insufficient_hearts"

    notifications = client.get("/progress/notifications").json()
    assert notifications["hearts"] == 0


def test_shop(client):
    client.post("/progress/hearts/consume")
    response = client.post("/progress/shop/heart")
    assert response.json() == {"coins": 20, "hearts": 5, "streak_saves": 0}

    response = client.post("/progress/shop/hat")
    assert response.status_code == 404
    assert response.json()["detail"]["code"] == "unknown_item"


def test_quests(client):
    quests = client.get("/progress/quests").json()
    assert [q["id"] for q in quests] == [1, 2, 3]

    response = client.post("/progress/quests/1/claim")
    assert response.status_code == 409
    assert response.json()["detail"]["code"] == "quest_not_completed"
    assert client.post("/progress/quests/9/claim").status_code == 404

    client.post("/progress/practice/complete", json={"answers": [CORRECT] * 5})
    assert client.post("/progress/quests/3/claim").json()["reward"] == 15
    assert client.post("/progress/quests/3/claim").json()["detail"]["code"] == "already_claimed"


def test_streak_endpoints_without_pending_break(client):
    response = client.post("/progress/streak/accept-break")
    assert response.status_code == 409
    assert response.json()["detail"]["code"] == "streak_not_pending"
    assert client.post("/progress/streak/save").json()["detail"]["code"] == "no_streak_save_available"


def test_loot_once(client):
    assert client.post("/progress/loot").status_code == 200
    assert client.post("/progress/loot").status_code == 409


def test_league_result(client):
    assert client.get("/progress/league/result").json() is None
    assert client.delete("/progress/league/result").json() == {"status": "dismissed"}


def test_preferences(client):
    assert client.put("/progress/reminders", json={"enabled": True}).json() == {"reminders_enabled": True}
    response = client.put("/progress/school", json={"school_id": "uni-7", "school_name": "Pharmacy School"})
    assert response.json() == {"school_id": "uni-7", "school_name": "Pharmacy School"}


def test_review_window_is_bounded(client):
    assert client.get("/progress/review", params={"days": 0}).status_code == 422


def test_shutdown_flushes(api_store, catalog):
    engine = ProgressEngine(api_store, config=make_config(), clock=FixedClock(START, tz="UTC"), catalog=catalog)
    with TestClient(create_app(engine, user_id="learner-1")) as client:
        client.post("/progress/practice/complete", json={"answers": [CORRECT] * 2})
    assert not engine.initialized
    assert "learner-1" in api_store


def test_without_engine():
    app = FastAPI()
    app.include_router(router)
    with TestClient(app) as client:
        assert client.get("/progress/summary").status_code == 503
