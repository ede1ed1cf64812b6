import pytest

# async views need Flask's async extra
pytest.importorskip("asgiref")

from eligibility_relayer.accumulator import compute_root
from eligibility_relayer.commitments import to_hex
from eligibility_relayer.config import RelayerConfig
from eligibility_relayer.server import create_app


@pytest.fixture
def app(tmp_path, registry, ledger, participation):
    config = RelayerConfig(participation_path=tmp_path / "participation.jsonl")
    return create_app(config, registry=registry, ledger=ledger, participation=participation)


@pytest.fixture
def client(app):
    return app.test_client()


def _body(voter):
    return {"identityKey": voter.identity_key, "biometricEvidence": voter.evidence}


def test_merkle_root(client, voters):
    rv = client.get("/merkle-root")
    assert rv.status_code == 200
    data = rv.get_json()
    assert data["count"] == 2
    assert data["root"] == to_hex(compute_root([voters["D1"].leaf, voters["D2"].leaf]))


def test_merkle_proof(client, voters):
    rv = client.get(f"/merkle-proof/{to_hex(voters['D2'].leaf)}")
    assert rv.status_code == 200
    assert len(rv.get_json()["proof"]) == 1

    rv = client.get(f"/merkle-proof/{to_hex(voters['D3'].leaf)}")
    assert rv.status_code == 403
    assert rv.get_json()["reason"] == "NotEligible"

    rv = client.get("/merkle-proof/0x1234")
    assert rv.status_code == 400


def test_full_flow_vote_duplicate_and_participation(client, voters):
    rv = client.post("/vote/2", json=_body(voters["D1"]))
    assert rv.status_code == 200
    tx_ref = rv.get_json()["txRef"]

    rv = client.post("/vote/2", json=_body(voters["D1"]))
    assert rv.status_code == 409
    data = rv.get_json()
    assert data["reason"] == "DuplicateVote"
    assert data["error"]

    rv = client.get(f"/tx/{tx_ref}")
    assert rv.get_json() == {"txRef": tx_ref, "status": "confirmed"}

    rv = client.get("/participation")
    assert [p["txRef"] for p in rv.get_json()] == [tx_ref]


def test_vote_alias_uses_body_candidate(client, ledger, voters):
    body = dict(_body(voters["D2"]), candidateId=1)
    rv = client.post("/vote", json=body)
    assert rv.status_code == 200
    assert ledger.votes[0]["candidate"] == 1


def test_authentication_failure(client, ledger, voters):
    body = {"identityKey": voters["D1"].identity_key, "biometricEvidence": "bad"}
    rv = client.post("/vote/2", json=body)
    assert rv.status_code == 401
    assert rv.get_json()["reason"] == "AuthenticationFailure"
    assert ledger.calls == []


@pytest.mark.parametrize(
    "path,body",
    [("/vote/abc", None), ("/vote/%C2%B2", None), ("/vote/1", {}), ("/vote", {"identityKey": "1"})],
)
def test_input_validation(client, voters, path, body):
    rv = client.post(path, json=body if body is not None else _body(voters["D1"]))
    assert rv.status_code == 400
    assert rv.get_json()["reason"] == "InputValidation"


def test_root_mismatch_then_sync_root(client, registry, voters):
    registry.enable(voters["D3"])
    rv = client.post("/vote/2", json=_body(voters["D3"]))
    assert rv.status_code == 409
    assert rv.get_json()["reason"] == "StateInconsistency"
    assert rv.get_json()["code"] == "RootMismatch"

    rv = client.post("/admin/sync-root")
    assert rv.status_code == 200
    data = rv.get_json()
    assert data["changed"] is True and data["txRef"]

    rv = client.post("/admin/sync-root")
    assert rv.get_json()["changed"] is False
    assert rv.get_json()["txRef"] is None

    rv = client.post("/vote/2", json=_body(voters["D3"]))
    assert rv.status_code == 200


def test_sync_root_without_active_election(client, ledger):
    ledger.election_id = 0
    rv = client.post("/admin/sync-root")
    assert rv.status_code == 400
    assert rv.get_json()["reason"] == "StateInconsistency"


def test_sync_root_admin_token(tmp_path, registry, ledger, participation):
    config = RelayerConfig(participation_path=tmp_path / "p.json", admin_token="s3cret")
    client = create_app(config, registry=registry, ledger=ledger, participation=participation).test_client()
    assert client.post("/admin/sync-root").status_code == 401
    assert client.post("/admin/sync-root", headers={"X-Admin-Token": "wrong"}).status_code == 401
    assert client.post("/admin/sync-root", headers={"X-Admin-Token": "s3cret"}).status_code == 200


def test_registry_down_is_upstream_failure(client, registry, voters):
    registry.available = False
    rv = client.get("/merkle-root")
    assert rv.status_code == 502
    assert rv.get_json()["reason"] == "RegistryUnavailable"


def test_health_info_candidates(client):
    assert client.get("/health").get_json() == {"ok": True}

    info = client.get("/info").get_json()
    assert info["currentElectionId"] == 1
    assert info["capabilities"]["vote_submit"] == "submitVote(bytes32,uint256,bytes32[],bytes32)"

    names = [c["name"] for c in client.get("/candidates").get_json()]
    assert names == ["Ana", "Bruno"]


def test_unknown_tx(client):
    rv = client.get("/tx/0x" + "00" * 32)
    assert rv.get_json()["status"] == "unknown"


def test_unknown_route_is_plain_404(client):
    assert client.get("/nope").status_code == 404
