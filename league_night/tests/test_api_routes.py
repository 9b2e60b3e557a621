"""
API route tests: response envelope, auth, status codes and end-to-end flows
through the HTTP layer against the test database.
"""

from datetime import timedelta

import pytest
import pytest_asyncio
from fastapi.testclient import TestClient
from httpx import ASGITransport, AsyncClient
from starlette.websockets import WebSocketDisconnect

from league_night.api.main import app
from league_night.database.models import InstanceStatus
from league_night.services import auth_service
from league_night.utils.background_tasks import wait_for_background_tasks


def _token_user_id(token):
    prefix = "user-"
    if token.startswith(prefix) and token[len(prefix):].isdigit():
        return {"user_id": int(token[len(prefix):])}
    return None


@pytest.fixture
def fake_tokens(monkeypatch):
    """Bearer token "user-<id>" authenticates as <id>; anything else is rejected."""
    monkeypatch.setattr(auth_service, "verify_token", _token_user_id, raising=True)


def auth(user_id):
    return {"Authorization": f"Bearer user-{user_id}"}


@pytest_asyncio.fixture
async def client(test_engine, push_transport, fake_tokens):
    """HTTP client bound to the app; sessions come from the test database."""
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as http_client:
        yield http_client
    await wait_for_background_tasks(timeout=5)


def night_url(league, instance, suffix=""):
    return f"/api/leagues/{league['league_id']}/nights/{instance.id}{suffix}"


# ──────────────────────────────────────────────────────────────
# Envelope and auth
# ──────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_health(client):
    response = await client.get("/api/health")
    assert response.status_code == 200
    assert response.json() == {"success": True, "data": {"status": "ok"}}


@pytest.mark.asyncio
async def test_requires_bearer_token(client, league, make_instance):
    instance = await make_instance()

    response = await client.get(night_url(league, instance))
    assert response.status_code == 401
    assert response.json()["success"] is False

    response = await client.get(night_url(league, instance), headers={"Authorization": "Bearer forged"})
    assert response.status_code == 401
    assert response.json() == {"success": False, "error": "Invalid or expired token"}


@pytest.mark.asyncio
async def test_get_night_summary(client, league, make_instance):
    instance = await make_instance()

    response = await client.get(night_url(league, instance), headers=auth(league["players"][0]))

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["data"]["id"] == instance.id
    assert body["data"]["status"] == InstanceStatus.SCHEDULED.value
    assert body["data"]["court_labels"] == ["Court A", "Court B"]
    assert body["data"]["checked_in_count"] == 0


@pytest.mark.asyncio
async def test_symbolic_slot_creates_instance(client, league):
    headers = auth(league["players"][0])

    first = await client.get(f"/api/leagues/{league['league_id']}/nights/night-0", headers=headers)
    second = await client.get(f"/api/leagues/{league['league_id']}/nights/night-0", headers=headers)

    assert first.status_code == 200
    assert first.json()["data"]["id"] == second.json()["data"]["id"]
    assert first.json()["data"]["start_time"] == "18:00"


@pytest.mark.asyncio
async def test_unknown_night_and_bad_reference(client, league):
    headers = auth(league["players"][0])

    missing = await client.get(f"/api/leagues/{league['league_id']}/nights/9999", headers=headers)
    assert missing.status_code == 404
    assert missing.json()["success"] is False

    bogus = await client.get(f"/api/leagues/{league['league_id']}/nights/tonight", headers=headers)
    assert bogus.status_code == 400

    out_of_range = await client.get(f"/api/leagues/{league['league_id']}/nights/night-7", headers=headers)
    assert out_of_range.status_code == 400


# ──────────────────────────────────────────────────────────────
# Check-ins and partnerships
# ──────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_check_in_flow(client, league, make_instance):
    instance = await make_instance()
    alice, bob = league["players"][:2]

    response = await client.post(night_url(league, instance, "/checkin"), headers=auth(alice))
    assert response.status_code == 200
    assert response.json()["data"]["user_id"] == alice
    assert response.json()["data"]["is_active"] is True

    again = await client.post(night_url(league, instance, "/checkin"), headers=auth(alice))
    assert again.status_code == 409
    assert again.json() == {"success": False, "error": "Already checked in to this league night"}

    await client.post(night_url(league, instance, "/checkin"), headers=auth(bob))
    listing = await client.get(night_url(league, instance, "/checkins"), headers=auth(alice))
    assert [entry["user_id"] for entry in listing.json()["data"]] == [alice, bob]

    left = await client.delete(night_url(league, instance, "/checkin"), headers=auth(alice))
    assert left.status_code == 200
    assert left.json()["data"]["checkin"]["is_active"] is False

    not_checked_in = await client.delete(night_url(league, instance, "/checkin"), headers=auth(alice))
    assert not_checked_in.status_code == 404


@pytest.mark.asyncio
async def test_partnership_flow(client, league, make_instance):
    instance = await make_instance()
    alice, bob, carol = league["players"][:3]
    for player in (alice, bob, carol):
        await client.post(night_url(league, instance, "/checkin"), headers=auth(player))

    created = await client.post(
        night_url(league, instance, "/partnership-request"),
        json={"requested_id": bob},
        headers=auth(alice),
    )
    assert created.status_code == 200
    request_id = created.json()["data"]["id"]

    pending = await client.get(night_url(league, instance, "/partnership-requests"), headers=auth(bob))
    assert [r["id"] for r in pending.json()["data"]["incoming"]] == [request_id]
    assert pending.json()["data"]["my_partnership"] is None

    # Only the requested player may accept
    wrong_user = await client.post(
        night_url(league, instance, "/partnership-accept"),
        json={"request_id": request_id},
        headers=auth(carol),
    )
    assert wrong_user.status_code == 404

    accepted = await client.post(
        night_url(league, instance, "/partnership-accept"),
        json={"request_id": request_id},
        headers=auth(bob),
    )
    assert accepted.status_code == 200
    partnership = accepted.json()["data"]
    assert {partnership["player1_id"], partnership["player2_id"]} == {alice, bob}

    taken = await client.post(
        night_url(league, instance, "/partnership-request"),
        json={"requested_id": alice},
        headers=auth(carol),
    )
    assert taken.status_code == 409

    removed = await client.request(
        "DELETE",
        night_url(league, instance, "/partnership"),
        json={"partnership_id": partnership["id"]},
        headers=auth(alice),
    )
    assert removed.status_code == 200
    assert removed.json()["data"]["is_active"] is False


@pytest.mark.asyncio
async def test_partnership_actions_are_scoped_to_the_night(client, league, make_instance):
    """A request or partnership id from another night is not found under this night's path."""
    tonight = await make_instance()
    next_week = await make_instance(night_date=tonight.date + timedelta(days=7))
    alice, bob = league["players"][:2]
    for player in (alice, bob):
        await client.post(night_url(league, tonight, "/checkin"), headers=auth(player))

    created = await client.post(
        night_url(league, tonight, "/partnership-request"),
        json={"requested_id": bob},
        headers=auth(alice),
    )
    request_id = created.json()["data"]["id"]

    for action, user_id in (("accept", bob), ("reject", bob), ("cancel", alice)):
        response = await client.post(
            night_url(league, next_week, f"/partnership-{action}"),
            json={"request_id": request_id},
            headers=auth(user_id),
        )
        assert response.status_code == 404, action

    accepted = await client.post(
        night_url(league, tonight, "/partnership-accept"),
        json={"request_id": request_id},
        headers=auth(bob),
    )
    partnership_id = accepted.json()["data"]["id"]

    wrong_night = await client.request(
        "DELETE",
        night_url(league, next_week, "/partnership"),
        json={"partnership_id": partnership_id},
        headers=auth(alice),
    )
    assert wrong_night.status_code == 404

    still_active = await client.get(night_url(league, tonight, "/partnership-requests"), headers=auth(alice))
    assert still_active.json()["data"]["my_partnership"]["id"] == partnership_id


@pytest.mark.asyncio
async def test_request_body_validation_is_400(client, league, make_instance):
    instance = await make_instance()

    response = await client.post(
        night_url(league, instance, "/partnership-request"),
        json={"requested_id": "not-a-number"},
        headers=auth(league["players"][0]),
    )

    assert response.status_code == 400
    assert response.json()["success"] is False
    assert "requested_id" in response.json()["error"]


# ──────────────────────────────────────────────────────────────
# Matches and scores
# ──────────────────────────────────────────────────────────────


async def _two_partnerships(client, league, instance):
    p1, p2, p3, p4 = league["players"][:4]
    for player in (p1, p2, p3, p4):
        await client.post(night_url(league, instance, "/checkin"), headers=auth(player))
    for requester, requested in ((p1, p2), (p3, p4)):
        created = await client.post(
            night_url(league, instance, "/partnership-request"),
            json={"requested_id": requested},
            headers=auth(requester),
        )
        await client.post(
            night_url(league, instance, "/partnership-accept"),
            json={"request_id": created.json()["data"]["id"]},
            headers=auth(requested),
        )


@pytest.mark.asyncio
async def test_match_and_score_flow(client, league, make_instance):
    instance = await make_instance()
    p1, p2, p3, p4 = league["players"][:4]
    await _two_partnerships(client, league, instance)

    queue = await client.get(night_url(league, instance, "/queue"), headers=auth(p1))
    assert queue.json()["data"]["possible_matches"] == 1

    created = await client.post(night_url(league, instance, "/create-matches"), headers=auth(p1))
    assert created.status_code == 200
    match = created.json()["data"]["matches"][0]
    assert match["court_number"] == 1
    assert match["court_label"] == "Court A"
    assert match["status"] == "queued"

    started = await client.post(night_url(league, instance, f"/matches/{match['id']}/start"), headers=auth(p1))
    assert started.json()["data"]["status"] == "in_progress"

    bad_score = await client.post(
        night_url(league, instance, "/submit-score"),
        json={"match_id": match["id"], "team1_score": 11, "team2_score": 10},
        headers=auth(p1),
    )
    assert bad_score.status_code == 400

    submitted = await client.post(
        night_url(league, instance, "/submit-score"),
        json={"match_id": match["id"], "team1_score": 11, "team2_score": 7},
        headers=auth(p1),
    )
    assert submitted.status_code == 200
    assert submitted.json()["data"]["status"] == "pending"

    own_team = await client.post(
        night_url(league, instance, f"/matches/{match['id']}/confirm-score"), headers=auth(p2)
    )
    assert own_team.status_code == 400

    confirmed = await client.post(
        night_url(league, instance, f"/matches/{match['id']}/confirm-score"), headers=auth(p3)
    )
    assert confirmed.status_code == 200
    assert confirmed.json()["data"]["status"] == "completed"
    assert confirmed.json()["data"]["winner"] == 1

    completed = await client.get(night_url(league, instance, "/matches?status=completed"), headers=auth(p4))
    assert [m["id"] for m in completed.json()["data"]] == [match["id"]]


@pytest.mark.asyncio
async def test_dispute_without_body(client, league, make_instance):
    instance = await make_instance()
    p1, _, p3, _ = league["players"][:4]
    await _two_partnerships(client, league, instance)
    created = await client.post(night_url(league, instance, "/create-matches"), headers=auth(p1))
    match_id = created.json()["data"]["matches"][0]["id"]
    await client.post(night_url(league, instance, f"/matches/{match_id}/start"), headers=auth(p1))
    await client.post(
        night_url(league, instance, "/submit-score"),
        json={"match_id": match_id, "team1_score": 11, "team2_score": 4},
        headers=auth(p1),
    )

    disputed = await client.post(night_url(league, instance, f"/matches/{match_id}/dispute-score"), headers=auth(p3))

    assert disputed.status_code == 200
    assert disputed.json()["data"]["status"] == "disputed"


@pytest.mark.asyncio
async def test_create_matches_needs_two_partnerships(client, league, make_instance):
    instance = await make_instance()

    response = await client.post(night_url(league, instance, "/create-matches"), headers=auth(league["players"][0]))

    assert response.status_code == 400
    assert response.json()["success"] is False


@pytest.mark.asyncio
async def test_match_from_another_night_is_not_found(client, league, make_instance):
    instance = await make_instance()
    other = await make_instance(night_date=instance.date + timedelta(days=7))
    await _two_partnerships(client, league, instance)
    created = await client.post(night_url(league, instance, "/create-matches"), headers=auth(league["players"][0]))
    match_id = created.json()["data"]["matches"][0]["id"]

    response = await client.post(
        night_url(league, other, f"/matches/{match_id}/start"), headers=auth(league["players"][0])
    )
    assert response.status_code == 404


# ──────────────────────────────────────────────────────────────
# Admin controls
# ──────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_admin_controls_require_role(client, league, make_instance):
    instance = await make_instance()

    denied = await client.post(night_url(league, instance, "/start-league"), headers=auth(league["players"][0]))
    assert denied.status_code == 403

    started = await client.post(night_url(league, instance, "/start-league"), headers=auth(league["admin_id"]))
    assert started.status_code == 200
    assert started.json()["data"]["instance"]["status"] == InstanceStatus.IN_PROGRESS.value

    twice = await client.post(night_url(league, instance, "/start-league"), headers=auth(league["admin_id"]))
    assert twice.status_code == 409

    ended = await client.post(night_url(league, instance, "/end-league"), headers=auth(league["admin_id"]))
    assert ended.json()["data"]["instance"]["status"] == InstanceStatus.COMPLETED.value


@pytest.mark.asyncio
async def test_update_courts_and_toggle(client, league, make_instance):
    instance = await make_instance()

    courts = await client.post(
        night_url(league, instance, "/update-courts"),
        json={"court_labels": ["North", "South", "East"]},
        headers=auth(league["admin_id"]),
    )
    assert courts.status_code == 200
    assert courts.json()["data"]["instance"]["courts_available"] == 3

    empty = await client.post(
        night_url(league, instance, "/update-courts"),
        json={"court_labels": []},
        headers=auth(league["admin_id"]),
    )
    assert empty.status_code == 400

    toggled = await client.post(
        night_url(league, instance, "/toggle-auto-assignment"),
        json={"enabled": False},
        headers=auth(league["organizer_id"]),
    )
    assert toggled.status_code == 200
    assert toggled.json()["data"]["auto_assignment_enabled"] is False


# ──────────────────────────────────────────────────────────────
# Push subscriptions
# ──────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_vapid_public_key(client, monkeypatch):
    monkeypatch.delenv("VAPID_PUBLIC_KEY", raising=False)
    missing = await client.get("/api/push/vapid-public-key")
    assert missing.status_code == 503

    monkeypatch.setenv("VAPID_PUBLIC_KEY", "BPublicKey")
    configured = await client.get("/api/push/vapid-public-key")
    assert configured.json() == {"success": True, "data": {"public_key": "BPublicKey"}}


@pytest.mark.asyncio
async def test_push_subscription_routes(client, league, push_transport):
    alice = league["players"][0]
    body = {
        "subscription": {
            "endpoint": "https://push.example/alice",
            "keys": {"p256dh": "key", "auth": "secret"},
        },
        "deviceInfo": {"platform": "Android"},
    }

    subscribed = await client.post("/api/push/subscribe", json=body, headers=auth(alice))
    assert subscribed.status_code == 200
    assert subscribed.json()["data"]["device_info"] == {"platform": "Android"}

    listed = await client.get("/api/push/subscriptions", headers=auth(alice))
    assert [s["endpoint"] for s in listed.json()["data"]] == ["https://push.example/alice"]

    tested = await client.post("/api/push/test", headers=auth(alice))
    assert tested.json()["data"] == {"delivered": 1, "failed": 0}

    unsubscribed = await client.post(
        "/api/push/unsubscribe", json={"endpoint": "https://push.example/alice"}, headers=auth(alice)
    )
    assert unsubscribed.json()["data"] == {"deactivated": 1}

    malformed = await client.post(
        "/api/push/subscribe", json={"subscription": {"endpoint": "x"}}, headers=auth(alice)
    )
    assert malformed.status_code == 400


# ──────────────────────────────────────────────────────────────
# WebSocket
# ──────────────────────────────────────────────────────────────


def test_websocket_requires_token():
    """Connections without a token are closed with a policy violation."""
    test_client = TestClient(app)
    with pytest.raises(WebSocketDisconnect) as exc_info:
        with test_client.websocket_connect("/api/leagues/1/nights/1/ws") as websocket:
            websocket.receive_text()
    assert exc_info.value.code == 1008
