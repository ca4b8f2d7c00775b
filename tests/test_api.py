"""End-to-end tests for the HTTP command surface."""

import json

import pytest
from fastapi.testclient import TestClient
from conftest import make_room
from tellr.api import create_app, event_stream
from tellr.config import load_config
from tellr.notifier import DEFAULT_QUEUE_SIZE


@pytest.fixture
def client(tmp_project):
    app = create_app(load_config(tmp_project))
    with TestClient(app) as c:
        yield c


def auth(creds):
    return {"Authorization": f"Bearer {creds['token']}"}


def create(client, **overrides):
    body = {"name": "Club AGM", "tellerName": "Tess", **overrides}
    resp = client.post("/api/elections", json=body)
    assert resp.status_code == 200, resp.text
    return resp.json()


def join(client, code, name):
    resp = client.post("/api/elections/join", json={"code": code, "name": name})
    assert resp.status_code == 200, resp.text
    return resp.json()


# --- provisioning ---

def test_create_and_join(client):
    teller = create(client, bodySize=9)
    assert len(teller["code"]) == 6
    voter = join(client, teller["code"].lower(), "Alice")
    assert voter["code"] == teller["code"]

    state = client.get(f"/api/elections/{teller['code']}/state", headers=auth(voter)).json()
    assert state["election"]["bodySize"] == 9
    assert state["currentParticipantId"] == voter["participantId"]
    assert state["isTeller"] is False
    assert [p["name"] for p in state["participants"]] == ["Tess", "Alice"]


def test_rejoin(client):
    teller = create(client)
    resp = client.post(f"/api/elections/{teller['code']}/rejoin", headers=auth(teller))
    assert resp.json() == {"valid": True, "participantId": teller["participantId"]}


def test_join_unknown_code(client):
    resp = client.post("/api/elections/join", json={"code": "ZZZZZZ", "name": "Alice"})
    assert resp.status_code == 404
    assert resp.json()["error"] == "not_found"


# --- error mapping ---

def test_missing_token_401(client):
    teller = create(client)
    resp = client.get(f"/api/elections/{teller['code']}/state")
    assert resp.status_code == 401
    assert resp.json()["error"] == "unauthorized"


def test_token_from_other_election_401(client):
    first = create(client)
    second = create(client, name="Other")
    resp = client.get(f"/api/elections/{second['code']}/state", headers=auth(first))
    assert resp.status_code == 401


def test_voter_cannot_start_round_403(client):
    teller = create(client)
    voter = join(client, teller["code"], "Alice")
    resp = client.post(
        f"/api/elections/{teller['code']}/rounds", json={"office": "Chair"}, headers=auth(voter)
    )
    assert resp.status_code == 403
    assert resp.json()["error"] == "forbidden"


def test_second_active_round_409(client):
    teller = create(client)
    code = teller["code"]
    assert client.post(f"/api/elections/{code}/rounds", json={"office": "Chair"}, headers=auth(teller)).status_code == 200
    resp = client.post(f"/api/elections/{code}/rounds", json={"office": "Secretary"}, headers=auth(teller))
    assert resp.status_code == 409
    assert resp.json()["error"] == "conflict"


def test_malformed_body_422(client):
    resp = client.post("/api/elections", json={"name": "", "tellerName": "Tess"})
    assert resp.status_code == 422
    assert resp.json()["error"] == "validation"
    assert "name" in resp.json()["message"]

    teller = create(client)
    resp = client.put(
        f"/api/elections/{teller['code']}/body-size", json={"bodySize": 0}, headers=auth(teller)
    )
    assert resp.status_code == 422


def test_vote_requires_candidate_field(client):
    teller = create(client)
    code = teller["code"]
    rnd = client.post(f"/api/elections/{code}/rounds", json={"office": "Chair"}, headers=auth(teller)).json()
    resp = client.post(f"/api/elections/{code}/rounds/{rnd['id']}/votes", json={}, headers=auth(teller))
    assert resp.status_code == 422


def test_unknown_disclosure_level_422(client):
    teller = create(client)
    code = teller["code"]
    rnd = client.post(f"/api/elections/{code}/rounds", json={"office": "Chair"}, headers=auth(teller)).json()
    client.post(f"/api/elections/{code}/rounds/{rnd['id']}/close", headers=auth(teller))
    resp = client.post(
        f"/api/elections/{code}/rounds/{rnd['id']}/end",
        json={"disclosureLevel": "everything"},
        headers=auth(teller),
    )
    assert resp.status_code == 422


# --- full round ---

def test_full_round_flow(client):
    teller = create(client, bodySize=9)
    code = teller["code"]
    alice = join(client, code, "Alice")
    bob = join(client, code, "Bob")

    rnd = client.post(
        f"/api/elections/{code}/rounds",
        json={"office": "Chair", "description": "Two-year term"},
        headers=auth(teller),
    ).json()
    assert rnd["status"] == "voting"

    for who, candidate in ((teller, alice), (alice, alice), (bob, None)):
        resp = client.post(
            f"/api/elections/{code}/rounds/{rnd['id']}/votes",
            json={"candidateId": candidate["participantId"] if candidate else None},
            headers=auth(who),
        )
        assert resp.json() == {"success": True}

    again = client.post(
        f"/api/elections/{code}/rounds/{rnd['id']}/votes",
        json={"candidateId": None},
        headers=auth(bob),
    )
    assert again.status_code == 409

    verdict = client.post(f"/api/elections/{code}/rounds/{rnd['id']}/close", headers=auth(teller)).json()
    assert verdict["totalVotes"] == 3
    assert verdict["majorityThreshold"] == 5
    assert verdict["hasMajority"] is False

    # 2 of a 9-member body is not a majority
    resp = client.post(
        f"/api/elections/{code}/rounds/{rnd['id']}/end",
        json={"disclosureLevel": "top_no_count"},
        headers=auth(teller),
    )
    assert resp.status_code == 409
    assert "9-member body" in resp.json()["message"]

    resp = client.post(
        f"/api/elections/{code}/rounds/{rnd['id']}/end",
        json={"disclosureLevel": "top"},
        headers=auth(teller),
    )
    assert resp.status_code == 200

    state = client.get(f"/api/elections/{code}/state", headers=auth(bob)).json()
    assert state["currentRound"] is None
    assert state["result"]["tallies"] == [
        {"candidateId": alice["participantId"], "candidateName": "Alice", "count": 2}
    ]
    assert state["roundLog"][0]["round"]["disclosureLevel"] == "top"
    assert "voterStatus" not in state


def test_cancel_round(client):
    teller = create(client)
    code = teller["code"]
    rnd = client.post(f"/api/elections/{code}/rounds", json={"office": "Chair"}, headers=auth(teller)).json()
    assert client.post(f"/api/elections/{code}/rounds/{rnd['id']}/cancel", headers=auth(teller)).status_code == 200
    resp = client.post(f"/api/elections/{code}/rounds/{rnd['id']}/cancel", headers=auth(teller))
    assert resp.status_code == 404


def test_roster_commands(client):
    teller = create(client)
    code = teller["code"]
    alice = join(client, code, "Alice")

    assert client.post(f"/api/elections/{code}/tellers/step-down", headers=auth(teller)).status_code == 409
    resp = client.post(
        f"/api/elections/{code}/tellers",
        json={"participantId": alice["participantId"]},
        headers=auth(teller),
    )
    assert resp.status_code == 200
    assert client.post(f"/api/elections/{code}/tellers/step-down", headers=auth(teller)).status_code == 200
    assert client.post(f"/api/elections/{code}/name", json={"name": "Ali"}, headers=auth(alice)).status_code == 200

    state = client.get(f"/api/elections/{code}/state", headers=auth(alice)).json()
    assert state["isTeller"] is True
    assert {p["name"]: p["role"] for p in state["participants"]} == {"Tess": "voter", "Ali": "teller"}


def test_event_stream_requires_token(client):
    teller = create(client)
    resp = client.get(f"/events/{teller['code']}")
    assert resp.status_code == 401


# --- event stream liveness ---

@pytest.mark.asyncio
async def test_stream_connected_then_events_in_commit_order(elections, rounds, notifier):
    room = await make_room(elections, voter_names=("Alice",))
    alice = room.voters[0]
    sub = notifier.subscribe(room.election_id, alice.id)
    stream = event_stream(notifier, sub, heartbeat_sec=5)
    try:
        first = await stream.__anext__()
        assert first["event"] == "connected"
        assert json.loads(first["data"]) == {"participantId": alice.id}

        rnd = await rounds.start_round(room.teller, "Chair")
        await rounds.cast_vote(alice, rnd.id, None)
        await rounds.close_voting(room.teller, rnd.id)

        frames = [await stream.__anext__() for _ in range(3)]
    finally:
        await stream.aclose()

    assert [f["event"] for f in frames] == ["round_started", "vote_status", "voting_closed"]
    ids = [int(f["id"]) for f in frames]
    assert ids == sorted(ids)
    assert json.loads(frames[1]["data"]) == {"roundId": rnd.id, "votedCount": 1, "totalParticipants": 2}


@pytest.mark.asyncio
async def test_stream_keepalive_when_idle(notifier):
    sub = notifier.subscribe("e1", "p1")
    stream = event_stream(notifier, sub, heartbeat_sec=0.05)
    try:
        await stream.__anext__()  # connected
        assert await stream.__anext__() == {"comment": "keepalive"}
        notifier.publish("e1", "all_voted", {"roundId": "r1"})
        assert (await stream.__anext__())["event"] == "all_voted"
    finally:
        await stream.aclose()


@pytest.mark.asyncio
async def test_stream_disconnect_unsubscribes(notifier):
    sub = notifier.subscribe("e1", "p1")
    stream = event_stream(notifier, sub, heartbeat_sec=5)
    await stream.__anext__()
    assert notifier.subscriber_count("e1") == 1
    await stream.aclose()
    assert notifier.subscriber_count("e1") == 0


@pytest.mark.asyncio
async def test_stream_ends_for_overflowed_subscriber(notifier):
    sub = notifier.subscribe("e1", "p1")
    stream = event_stream(notifier, sub, heartbeat_sec=5)
    await stream.__anext__()
    for i in range(DEFAULT_QUEUE_SIZE + 1):
        notifier.publish("e1", "vote_status", {"votedCount": i})
    with pytest.raises(StopAsyncIteration):
        await stream.__anext__()
    assert notifier.subscriber_count("e1") == 0
