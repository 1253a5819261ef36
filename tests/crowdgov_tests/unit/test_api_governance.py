"""
Tests for the governance HTTP API.
"""

import pytest

from crowdgov.api.governance_api import create_app
from crowdgov.core.config import GovernanceConfig

DAO = "dao.alpha"


def _headers(account):
    return {"X-Account": account}


@pytest.fixture
def app(engine):
    return create_app(engine=engine)


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def proposal(client, engine):
    """dao.alpha with ACTIVE proposal p1 over [0, 10); bob holds 30 token power"""
    client.post("/governance/daos", json={"dao_id": DAO, "name": "Alpha"}, headers=_headers("alice"))
    engine.update_token_power("alice", DAO, "bob", 30)
    client.post(
        "/governance/proposals",
        json={
            "organization": DAO,
            "title": "Upgrade",
            "voting_start": 0,
            "voting_end": 10,
            "min_approval_percentage": 51,
            "proposal_id": "p1",
        },
        headers=_headers("alice"),
    )
    client.post("/governance/proposals/p1/activate", headers=_headers("alice"))
    return "p1"


class TestGovernanceAPI:
    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.get_json()["status"] == "ok"

    def test_missing_account_header(self, client):
        response = client.post("/governance/daos", json={"dao_id": DAO, "name": "Alpha"})
        assert response.status_code == 400
        body = response.get_json()
        assert body == {
            "success": False,
            "error": "InvalidInput",
            "field": "caller",
            "message": "Missing X-Account header",
        }

    def test_create_and_list_daos(self, client):
        response = client.post(
            "/governance/daos", json={"dao_id": DAO, "name": "Alpha"}, headers=_headers("alice")
        )
        assert response.status_code == 201
        listing = client.get("/governance/daos").get_json()
        assert listing["count"] == 1
        assert listing["daos"][0]["owner"] == "alice"

    def test_duplicate_dao_conflict(self, client):
        client.post("/governance/daos", json={"dao_id": DAO, "name": "Alpha"}, headers=_headers("alice"))
        response = client.post(
            "/governance/daos", json={"dao_id": DAO, "name": "Alpha"}, headers=_headers("bob")
        )
        assert response.status_code == 409
        assert response.get_json()["error"] == "AlreadyExists"

    def test_vote_and_tally(self, client, proposal):
        response = client.post(
            f"/governance/proposals/{proposal}/vote", json={"kind": "yes"}, headers=_headers("bob")
        )
        assert response.status_code == 200
        body = response.get_json()
        assert body["vote"]["power"] == 30
        assert body["tally"]["yes"] == 30

        details = client.get(f"/governance/proposals/{proposal}").get_json()
        assert details["proposal"]["status"] == "active"
        assert details["tally"]["approval_percentage"] == 100

    def test_double_vote_conflict(self, client, proposal):
        client.post(f"/governance/proposals/{proposal}/vote", json={"kind": "yes"}, headers=_headers("bob"))
        response = client.post(
            f"/governance/proposals/{proposal}/vote", json={"kind": "no"}, headers=_headers("bob")
        )
        assert response.status_code == 409

    def test_unauthorized_cancel(self, client, proposal):
        response = client.post(f"/governance/proposals/{proposal}/cancel", headers=_headers("mallory"))
        assert response.status_code == 403
        assert response.get_json()["field"] == "caller"

    def test_unknown_proposal(self, client):
        response = client.get("/governance/proposals/missing")
        assert response.status_code == 404
        assert response.get_json()["error"] == "NotFound"

    def test_finalize_through_clock(self, client, proposal):
        client.post(f"/governance/proposals/{proposal}/vote", json={"kind": "yes"}, headers=_headers("bob"))
        assert client.post("/governance/clock", json={"epoch": 10}).get_json()["epoch"] == 10

        response = client.post(f"/governance/proposals/{proposal}/finalize", headers=_headers("anyone"))
        assert response.status_code == 200
        assert response.get_json()["result"]["status"] == "passed"

    def test_clock_cannot_go_back(self, client):
        client.post("/governance/clock", json={"epoch": 5})
        response = client.post("/governance/clock", json={"epoch": 4})
        assert response.status_code == 400

    def test_clock_override_disabled(self, engine):
        config = GovernanceConfig(metrics_enabled=False, allow_clock_override=False)
        client = create_app(engine=engine, config=config).test_client()
        response = client.post("/governance/clock", json={"epoch": 5})
        assert response.status_code == 403
        assert engine.clock.now == 0

    def test_delegation_endpoints(self, client, proposal, engine):
        engine.update_token_power("alice", DAO, "carol", 5)
        response = client.post(f"/governance/delegations/{DAO}", json={"delegate": "carol"}, headers=_headers("bob"))
        assert response.status_code == 201
        assert response.get_json()["delegation"]["amount"] == 30

        power = client.get(f"/governance/power/{DAO}/carol").get_json()
        assert power["effective_power"] == 35

        response = client.delete(f"/governance/delegations/{DAO}", headers=_headers("bob"))
        assert response.get_json()["reclaimed"] == 30

    def test_funding_flow(self, client, proposal, assets):
        response = client.post(
            f"/governance/funding/{proposal}",
            json={"window_start": 0, "window_end": 10, "min_goal": 50, "target_goal": 100},
            headers=_headers("alice"),
        )
        assert response.status_code == 201

        assets.mint("fan", 80)
        client.post(f"/governance/funding/{proposal}/contribute", json={"amount": 60}, headers=_headers("fan"))
        client.post("/governance/clock", json={"epoch": 10})

        response = client.post(
            f"/governance/funding/{proposal}/withdraw", json={"amount": 60}, headers=_headers(DAO)
        )
        assert response.status_code == 200
        summary = client.get(f"/governance/funding/{proposal}").get_json()["funding"]
        assert summary["available_balance"] == 0
        assert summary["withdrawals"]["withdrawn_amount"] == 60
        assert summary["native_asset"] == "STX"

    def test_list_contributions(self, client, proposal, assets):
        client.post(
            f"/governance/funding/{proposal}",
            json={"window_start": 0, "window_end": 10, "min_goal": 50, "target_goal": 100},
            headers=_headers("alice"),
        )
        for funder, amount in (("fan", 20), ("critic", 5), ("fan", 10)):
            assets.mint(funder, amount)
            client.post(
                f"/governance/funding/{proposal}/contribute", json={"amount": amount}, headers=_headers(funder)
            )

        body = client.get(f"/governance/funding/{proposal}/contributions").get_json()
        assert body["count"] == 2
        by_funder = {c["funder"]: c for c in body["contributions"]}
        assert by_funder["fan"]["stx_amount"] == 30
        assert by_funder["fan"]["contribution_count"] == 2
        assert by_funder["critic"]["stx_amount"] == 5

        missing = client.get("/governance/funding/nope/contributions")
        assert missing.status_code == 404

    def test_transfer_failure_maps_to_bad_gateway(self, client, proposal):
        client.post(
            f"/governance/funding/{proposal}",
            json={"window_start": 0, "window_end": 10, "min_goal": 50, "target_goal": 100},
            headers=_headers("alice"),
        )
        response = client.post(
            f"/governance/funding/{proposal}/contribute", json={"amount": 5}, headers=_headers("pauper")
        )
        assert response.status_code == 502
        assert response.get_json()["error"] == "TransferFailed"

    def test_events_feed(self, client, proposal):
        events = client.get("/governance/events", query_string={"kind": "proposal_activated"}).get_json()
        assert events["count"] == 1
        assert events["events"][0]["subject"]["proposal_id"] == proposal

    def test_events_negative_limit(self, client, proposal):
        everything = client.get("/governance/events").get_json()
        assert everything["count"] > 0
        clamped = client.get("/governance/events", query_string={"limit": -1}).get_json()
        assert clamped["count"] == 0

    def test_metrics_endpoint(self, client):
        response = client.get("/metrics")
        assert response.status_code == 200
