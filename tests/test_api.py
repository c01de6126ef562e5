"""Tests for the Hearsay HTTP API using FastAPI TestClient.

Covers: registration, rumors, votes, vote-to-see, finalization, deletion,
comments, reputation lookup, audit log, admin auth, health, error envelope.
"""

import json
import time
from collections import deque

import pytest
from fastapi.testclient import TestClient

import api
import services
from identity import PROBATION_SEC

client = TestClient(api.app)


@pytest.fixture(autouse=True)
def api_services(hs):
    """Route every request to the per-test store and fake clock."""
    services.set_services(hs)
    api._RATE_BUCKETS.clear()
    yield hs
    services.set_services(None)


@pytest.fixture
def users(actor, clock):
    """Factory: register N identities over HTTP and skip probation."""

    def make(n=1):
        out = []
        for _ in range(n):
            a = actor()
            r = client.post("/api/register", json={"public_key": a.public_key})
            assert r.status_code == 200, r.text
            out.append(a)
        clock.advance(PROBATION_SEC + 1)
        return out if n > 1 else out[0]

    return make


def _submit(creator, content="Free coffee in the lobby", deadline=None):
    body = {"content": content, "creator_public_key": creator.public_key,
            "signature": creator.sign_submit(content)}
    if deadline is not None:
        body["deadline"] = deadline
    return client.post("/api/rumors", json=body)


def _vote(voter, rumor_id, value):
    return client.post("/api/vote", json={
        "rumor_id": rumor_id, "voter_public_key": voter.public_key,
        "vote_value": value, "signature": voter.sign_vote(rumor_id, value),
    })


# ── Registration ──────────────────────────────────────────────────────


class TestRegister:

    def test_register(self, actor, clock):
        a = actor()
        r = client.post("/api/register", json={"public_key": a.public_key})
        assert r.status_code == 200
        data = r.json()
        assert data["ok"] is True
        assert data["probation_ends_at"] == clock() + PROBATION_SEC

    def test_duplicate_is_conflict(self, actor):
        a = actor()
        client.post("/api/register", json={"public_key": a.public_key})
        r = client.post("/api/register", json={"public_key": a.public_key})
        assert r.status_code == 409
        assert r.json() == {"ok": False, "error": {
            "code": "conflict", "message": "Already registered", "retryable": False}}

    def test_invalid_key(self):
        r = client.post("/api/register", json={"public_key": "nope"})
        assert r.status_code == 400
        assert r.json()["error"]["code"] == "validation_error"

    def test_missing_body_field(self):
        r = client.post("/api/register", json={})
        assert r.status_code == 422
        assert r.json()["ok"] is False


# ── Rumors & votes ────────────────────────────────────────────────────


class TestRumorsAndVotes:

    def test_submit_get_list(self, users):
        creator = users()
        r = _submit(creator)
        assert r.status_code == 200
        rumor_id = r.json()["rumor"]["id"]
        assert client.get(f"/api/rumors/{rumor_id}").json()["rumor"]["vote_count"] == 0
        listed = client.get("/api/rumors").json()["rumors"]
        assert [x["id"] for x in listed] == [rumor_id]

    def test_unknown_rumor_404(self):
        r = client.get("/api/rumors/999")
        assert r.status_code == 404
        assert r.json()["error"]["code"] == "not_found"

    def test_nan_deadline_400(self, users):
        creator = users()
        body = {"content": "x", "creator_public_key": creator.public_key,
                "signature": creator.sign_submit("x"), "deadline": float("nan")}
        r = client.post("/api/rumors", content=json.dumps(body),
                        headers={"Content-Type": "application/json"})
        assert r.status_code == 400
        assert r.json()["error"]["code"] == "validation_error"
        assert client.get("/api/rumors").json()["rumors"] == []

    def test_bad_signature_401(self, users):
        creator = users()
        r = client.post("/api/rumors", json={
            "content": "x", "creator_public_key": creator.public_key,
            "signature": creator.sign_submit("y")})
        assert r.status_code == 401

    def test_vote_flow(self, users):
        creator, voter = users(2)
        rumor_id = _submit(creator).json()["rumor"]["id"]
        r = _vote(voter, rumor_id, True)
        assert r.status_code == 200
        assert r.json()["vote"]["vote_value"] is True
        assert _vote(voter, rumor_id, True).status_code == 409

    def test_vote_value_must_be_boolean(self, users):
        creator, voter = users(2)
        rumor_id = _submit(creator).json()["rumor"]["id"]
        r = client.post("/api/vote", json={
            "rumor_id": rumor_id, "voter_public_key": voter.public_key,
            "vote_value": "yes", "signature": voter.sign_vote(rumor_id, True)})
        assert r.status_code == 422

    def test_probation_403(self, users, actor):
        creator = users()
        rumor_id = _submit(creator).json()["rumor"]["id"]
        fresh = actor()
        client.post("/api/register", json={"public_key": fresh.public_key})
        r = _vote(fresh, rumor_id, True)
        assert r.status_code == 403
        err = r.json()["error"]
        assert err["code"] == "probation"
        assert err["details"]["seconds_remaining"] > 0

    def test_late_vote_403(self, users, clock):
        creator, voter = users(2)
        rumor_id = _submit(creator, deadline=clock() + 60).json()["rumor"]["id"]
        clock.advance(60)
        r = _vote(voter, rumor_id, True)
        assert r.status_code == 403
        assert r.json()["error"]["code"] == "voting_closed"


class TestTrustScore:

    def test_vote_to_see(self, users):
        creator, voter, lurker = users(3)
        rumor_id = _submit(creator).json()["rumor"]["id"]
        _vote(voter, rumor_id, False)

        r = client.get(f"/api/rumors/{rumor_id}/score",
                       params={"voter_public_key": lurker.public_key})
        assert r.status_code == 403
        assert r.json()["error"]["details"] == {"can_view": False}

        r = client.get(f"/api/rumors/{rumor_id}/score",
                       params={"voter_public_key": voter.public_key})
        assert r.status_code == 200
        assert r.json()["score"]["trust_score"] == 0.0
        assert r.json()["score"]["finalized"] is False

    def test_finalized_score_visible_to_all(self, users, clock):
        creator, voter, lurker = users(3)
        rumor_id = _submit(creator, deadline=clock() + 60).json()["rumor"]["id"]
        _vote(voter, rumor_id, True)
        clock.advance(61)
        sweep = client.post("/api/admin/finalize").json()["sweep"]
        assert sweep["finalized"][0]["rumor_id"] == rumor_id

        r = client.get(f"/api/rumors/{rumor_id}/score",
                       params={"voter_public_key": lurker.public_key})
        assert r.status_code == 200
        score = r.json()["score"]
        assert score["finalized"] is True
        assert score["trust_score"] == 100.0
        assert score["outcome"] is True


# ── Deletion ──────────────────────────────────────────────────────────


class TestDelete:

    def test_creator_deletes(self, users):
        creator, voter = users(2)
        rumor_id = _submit(creator).json()["rumor"]["id"]
        _vote(voter, rumor_id, True)
        r = client.request("DELETE", f"/api/rumors/{rumor_id}", json={
            "creator_public_key": creator.public_key,
            "signature": creator.sign_delete(rumor_id)})
        assert r.status_code == 200
        assert r.json()["affected_voters"] == 1
        assert client.get(f"/api/rumors/{rumor_id}").status_code == 404

    def test_other_user_forbidden(self, users):
        creator, other = users(2)
        rumor_id = _submit(creator).json()["rumor"]["id"]
        r = client.request("DELETE", f"/api/rumors/{rumor_id}", json={
            "creator_public_key": other.public_key,
            "signature": other.sign_delete(rumor_id)})
        assert r.status_code == 403

    def test_debunked_deletion_keeps_penalty(self, users, clock):
        creator, voter = users(2)
        rumor_id = _submit(creator, deadline=clock() + 60).json()["rumor"]["id"]
        _vote(voter, rumor_id, False)
        clock.advance(61)
        client.post("/api/admin/finalize")
        r = client.request("DELETE", f"/api/rumors/{rumor_id}", json={
            "creator_public_key": creator.public_key,
            "signature": creator.sign_delete(rumor_id)})
        assert r.json()["penalty_applied"] is True

        rep = client.get(f"/api/user/{creator.public_key}/reputation").json()
        assert rep["reputation"]["reputation"] == -0.2
        assert rep["penalties"][0]["penalty"] == -0.2


# ── Comments ──────────────────────────────────────────────────────────


class TestComments:

    def test_post_and_list(self, users):
        creator, commenter = users(2)
        rumor_id = _submit(creator).json()["rumor"]["id"]
        r = client.post(f"/api/rumors/{rumor_id}/comments", json={
            "commenter_public_key": commenter.public_key, "content": "citation needed",
            "signature": commenter.sign_comment(rumor_id, "citation needed")})
        assert r.status_code == 200
        comments = client.get(f"/api/rumors/{rumor_id}/comments").json()["comments"]
        assert [c["content"] for c in comments] == ["citation needed"]


# ── Reputation, audit, admin, health ─────────────────────────────────


class TestReputationEndpoint:

    def test_unknown_user_404(self, actor):
        r = client.get(f"/api/user/{actor().public_key}/reputation")
        assert r.status_code == 404

    def test_new_user_zero(self, users):
        a = users()
        data = client.get(f"/api/user/{a.public_key}/reputation").json()
        assert data["reputation"]["reputation"] == 0.0
        assert data["reputation"]["weight"] == 1


class TestAudit:

    def test_log_and_verify(self, users):
        creator = users()
        _submit(creator)
        log = client.get("/api/audit/log").json()
        assert [e["action_type"] for e in log["entries"]] == ["SUBMIT", "REGISTER"]
        assert client.get("/api/audit/verify").json()["chain"]["valid"] is True

    def test_bad_action_filter(self):
        r = client.get("/api/audit/log", params={"action": "nonsense"})
        assert r.status_code == 400


class TestAdmin:

    def test_token_required_when_set(self, monkeypatch):
        monkeypatch.setenv("HEARSAY_ADMIN_TOKEN", "s3cret")
        assert client.post("/api/admin/finalize").status_code == 401
        r = client.post("/api/admin/finalize", headers={"Authorization": "Bearer wrong"})
        assert r.status_code == 401
        r = client.post("/api/admin/finalize", headers={"Authorization": "Bearer s3cret"})
        assert r.status_code == 200
        assert r.json()["sweep"]["candidates"] == 0


class TestHealth:

    def test_healthz(self):
        assert client.get("/healthz").json()["status"] == "healthy"

    def test_readyz(self):
        data = client.get("/readyz").json()
        assert data["status"] == "ready"
        assert data["storage"]["backend"] == "sqlite"

    def test_root(self):
        assert client.get("/").json()["name"] == "Hearsay"


class TestRateLimit:

    def test_429_after_limit(self, monkeypatch):
        monkeypatch.setattr(api, "RATE_LIMIT_REQUESTS", 2)
        assert client.get("/api/rumors").status_code == 200
        assert client.get("/api/rumors").status_code == 200
        r = client.get("/api/rumors")
        assert r.status_code == 429
        assert r.json()["error"]["code"] == "rate_limited"

    def test_idle_clients_are_pruned(self, monkeypatch):
        monkeypatch.setattr(api, "_rate_pruned_at", 0.0)
        api._RATE_BUCKETS["10.0.0.1"] = deque([time.time() - 3600])
        api._RATE_BUCKETS["10.0.0.2"] = deque()
        assert client.get("/api/rumors").status_code == 200
        assert "10.0.0.1" not in api._RATE_BUCKETS
        assert "10.0.0.2" not in api._RATE_BUCKETS
        assert len(api._RATE_BUCKETS) == 1
