from __future__ import annotations

import json
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from adsaudit import auth as auth_mod
from adsaudit.auth import AuthService
from adsaudit.config import Settings
from adsaudit.db import AdsDB
from adsaudit.repo import Repo
from adsaudit.schemas import CreateUserBody
from adsaudit.signing import sign_request
from adsaudit.util import now_utc_iso
from adsaudit.web.app import create_app

ADMIN_EMAIL = "admin@example.com"
ADMIN_PASSWORD = "admin-pass1"


@pytest.fixture(autouse=True)
def _fast_bcrypt(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(auth_mod, "BCRYPT_ROUNDS", 4)


def _settings_for_db(db_path: Path) -> Settings:
    return Settings(db_path=db_path, timezone="Europe/Rome", web_host="127.0.0.1", web_port=0)


def _client(tmp_path: Path) -> tuple[TestClient, Repo, dict[str, str]]:
    db_path = tmp_path / "audit.sqlite3"
    AdsDB(db_path).init()
    repo = Repo(db_path)
    AuthService(repo).create_user(CreateUserBody(email=ADMIN_EMAIL, password=ADMIN_PASSWORD, role="admin"))
    client = TestClient(create_app(_settings_for_db(db_path)))
    return client, repo, _login(client, ADMIN_EMAIL, ADMIN_PASSWORD)


def _login(client: TestClient, email: str, password: str) -> dict[str, str]:
    resp = client.post("/api/auth/login", json={"email": email, "password": password})
    assert resp.status_code == 200, resp.text
    return {"Authorization": f"Bearer {resp.json()['accessToken']}"}


def _signed(secret: str, customer_id: str, body: bytes = b"") -> dict[str, str]:
    ts = now_utc_iso()
    return {
        "X-Timestamp": ts,
        "X-Signature": sign_request(secret, ts, body),
        "X-Account-Id": customer_id,
        "Content-Type": "application/json",
    }


def _create_account(client: TestClient, headers: dict[str, str], customer_id: str = "123-456-7890") -> tuple[dict, str]:
    resp = client.post(
        "/api/audit/accounts",
        json={"customerId": customer_id, "customerName": "Acme"},
        headers=headers,
    )
    assert resp.status_code == 201, resp.text
    account = resp.json()
    assert "sharedSecret" not in account
    secret = client.post(
        f"/api/audit/accounts/{account['id']}/reveal-secret",
        json={"password": ADMIN_PASSWORD},
        headers=headers,
    ).json()["sharedSecret"]
    return account, secret


# ------------------------------------------------------------------ #
# Basics / auth                                                        #
# ------------------------------------------------------------------ #


def test_health_echoes_request_id(tmp_path: Path) -> None:
    client, _repo, _headers = _client(tmp_path)
    resp = client.get("/health", headers={"X-Request-Id": "req-123"})
    assert resp.status_code == 200
    assert resp.json() == {"ok": True}
    assert resp.headers["X-Request-Id"] == "req-123"
    assert client.get("/health").headers["X-Request-Id"]


def test_auth_flow_and_roles(tmp_path: Path) -> None:
    client, _repo, admin = _client(tmp_path)

    resp = client.get("/api/audit/accounts")
    assert resp.status_code == 401
    assert resp.json() == {"ok": False, "error": "Missing bearer token"}

    resp = client.post("/api/auth/login", json={"email": ADMIN_EMAIL, "password": "wrong-pass1"})
    assert resp.status_code == 401
    assert resp.json()["error"] == "Invalid credentials"

    assert client.get("/api/auth/me", headers=admin).json()["email"] == ADMIN_EMAIL

    resp = client.post(
        "/api/users",
        json={"email": "alice@example.com", "password": "alice-pass1", "name": "Alice"},
        headers=admin,
    )
    assert resp.status_code == 201
    assert resp.json()["role"] == "user"

    alice = _login(client, "alice@example.com", "alice-pass1")
    resp = client.post("/api/audit/accounts", json={"customerId": "1", "customerName": "X"}, headers=alice)
    assert resp.status_code == 403
    assert resp.json()["error"] == "Admin role required"
    assert client.get("/api/users", headers=alice).status_code == 403
    assert {u["email"] for u in client.get("/api/users", headers=admin).json()} == {ADMIN_EMAIL, "alice@example.com"}

    assert client.post("/api/auth/logout", headers=alice).json() == {"ok": True}
    assert client.get("/api/auth/me", headers=alice).status_code == 401

    actions = [entry["action"] for entry in client.get("/api/audit-logs", headers=admin).json()]
    assert "LOGIN_FAILED" in actions
    assert "USER_CREATED" in actions


def test_validation_errors_use_error_envelope(tmp_path: Path) -> None:
    client, _repo, admin = _client(tmp_path)
    resp = client.post("/api/modifications", json={"entityType": "keyword"}, headers=admin)
    assert resp.status_code == 400
    body = resp.json()
    assert body["ok"] is False
    assert "accountId" in body["error"] or "account_id" in body["error"]


# ------------------------------------------------------------------ #
# Script ingest + dashboard                                            #
# ------------------------------------------------------------------ #


def test_signed_ingest_completes_run_and_audits(tmp_path: Path) -> None:
    client, _repo, admin = _client(tmp_path)
    account, secret = _create_account(client, admin)

    payload = {
        "metadata": {
            "runId": "run-1",
            "datasetName": "campaigns",
            "chunkIndex": 0,
            "chunkTotal": 1,
            "rowCount": 1,
            "datasetsExpected": 1,
        },
        "data": [{"campaignId": "1", "campaignName": "Brand", "status": "ENABLED", "costMicros": 150_000_000}],
    }
    body = json.dumps(payload).encode("utf-8")

    bad = _signed(secret, "123-456-7890", body)
    bad["X-Signature"] = "0" * 64
    resp = client.post("/api/integrations/google-ads/ingest", content=body, headers=bad)
    assert resp.status_code == 401
    assert resp.json() == {"ok": False, "error": "Invalid signature"}

    resp = client.post("/api/integrations/google-ads/ingest", content=body, headers=_signed(secret, "1234567890", body))
    assert resp.status_code == 200, resp.text
    out = resp.json()
    assert out["runCompleted"] is True
    assert out["issuesFound"] == 1

    incomplete = json.dumps({"data": []}).encode("utf-8")
    resp = client.post(
        "/api/integrations/google-ads/ingest", content=incomplete, headers=_signed(secret, "1234567890", incomplete)
    )
    assert resp.status_code == 400
    assert "metadata" in resp.json()["error"]

    base = f"/api/audit/accounts/{account['id']}"
    assert client.get(f"{base}/runs/latest", headers=admin).json()["run"]["runId"] == "run-1"

    campaigns = client.get(f"{base}/campaigns", headers=admin).json()
    assert campaigns["meta"]["total"] == 1
    assert campaigns["data"][0]["campaignName"] == "Brand"

    kpis = client.get(f"{base}/kpis", headers=admin).json()
    assert kpis["performance"]["cost"] == 150.0
    assert kpis["overview"]["activeCampaigns"] == 1

    assert client.get(f"{base}/conversions", headers=admin).json() == []

    issues = client.get(f"{base}/issues", params={"severity": "critical,high"}, headers=admin).json()
    assert issues["meta"]["total"] == 1
    assert client.get(f"{base}/issues", params={"severity": "low"}, headers=admin).json()["meta"]["total"] == 0

    issue_id = issues["data"][0]["id"]
    resp = client.patch(f"{base}/issues/{issue_id}", json={"status": "acknowledged"}, headers=admin)
    assert resp.json()["status"] == "acknowledged"
    assert resp.json()["acknowledgedAt"]

    summary = client.get(f"{base}/issues/summary", headers=admin).json()
    assert summary["bySeverity"]["critical"] == 1
    assert summary["potentialSavings"] == 150.0

    assert client.post(f"{base}/analyze", headers=admin).json() == {"runId": "run-1", "issuesFound": 1}


# ------------------------------------------------------------------ #
# Approval queue + script loop                                         #
# ------------------------------------------------------------------ #


def test_modification_approval_and_script_loop(tmp_path: Path) -> None:
    client, repo, admin = _client(tmp_path)
    account, secret = _create_account(client, admin)
    client.post("/api/users", json={"email": "alice@example.com", "password": "alice-pass1"}, headers=admin)
    alice = _login(client, "alice@example.com", "alice-pass1")

    resp = client.post(
        "/api/modifications",
        json={
            "accountId": account["id"],
            "entityType": "keyword",
            "entityId": "10~20",
            "entityName": "shoes",
            "modificationType": "keyword.status",
            "afterValue": {"status": "PAUSED"},
        },
        headers=alice,
    )
    assert resp.status_code == 201
    mod_id = resp.json()["id"]

    resp = client.post(f"/api/modifications/{mod_id}/approve", headers=alice)
    assert resp.status_code == 403
    assert client.post(f"/api/modifications/{mod_id}/approve", headers=admin).json()["status"] == "approved"

    pending = client.get(
        "/api/integrations/google-ads/modifications/pending", headers=_signed(secret, "123-456-7890")
    ).json()["modifications"]
    assert [m["id"] for m in pending] == [mod_id]
    assert pending[0]["afterValue"] == {"status": "PAUSED"}

    other = repo.create_account(customer_id="5555555555", customer_name="Other")
    other_secret = repo.require_account_row(other["id"])["shared_secret"]
    resp = client.post(
        f"/api/integrations/google-ads/modifications/{mod_id}/start", headers=_signed(other_secret, "5555555555")
    )
    assert resp.status_code == 404

    resp = client.post(
        f"/api/integrations/google-ads/modifications/{mod_id}/start", headers=_signed(secret, "1234567890")
    )
    assert resp.json() == {"success": True, "id": mod_id, "status": "processing"}

    body = json.dumps({"success": True, "message": "Paused 1 keyword"}).encode("utf-8")
    resp = client.post(
        f"/api/integrations/google-ads/modifications/{mod_id}/result",
        content=body,
        headers=_signed(secret, "1234567890", body),
    )
    assert resp.json() == {"success": True, "id": mod_id, "status": "applied"}

    mod = client.get(f"/api/modifications/{mod_id}", headers=alice).json()
    assert mod["resultMessage"] == "Paused 1 keyword"
    assert client.get(
        "/api/integrations/google-ads/modifications/pending", headers=_signed(secret, "1234567890")
    ).json() == {"modifications": []}

    summary = client.get("/api/modifications/summary", params={"accountId": account["id"]}, headers=alice).json()
    assert summary["byStatus"] == {"applied": 1}


# ------------------------------------------------------------------ #
# Decisions + export                                                   #
# ------------------------------------------------------------------ #


def test_change_set_download(tmp_path: Path) -> None:
    client, _repo, admin = _client(tmp_path)
    account, _secret = _create_account(client, admin)

    decision = client.post(
        "/api/decisions",
        json={
            "accountId": account["id"],
            "moduleId": 22,
            "entityType": "NEGATIVE_KEYWORD_CAMPAIGN",
            "entityId": "neg-1",
            "entityName": "free",
            "actionType": "ADD",
            "afterValue": {"match_type": "PHRASE"},
            "evidence": {"campaign_name": "Brand"},
        },
        headers=admin,
    )
    assert decision.status_code == 201
    decision_id = decision.json()["id"]

    cs = client.post(
        "/api/export/change-sets",
        json={"accountId": account["id"], "name": "Negatives", "decisionIds": [decision_id]},
        headers=admin,
    ).json()
    assert client.post(f"/api/export/change-sets/{cs['id']}/approve", headers=admin).json()["status"] == "approved"
    exported = client.post(f"/api/export/change-sets/{cs['id']}/export", headers=admin).json()
    assert exported["exportFiles"] == [{"filename": "negative_keywords_campaign.csv", "rows": 1}]

    resp = client.get(f"/api/export/change-sets/{cs['id']}/download", headers=admin)
    assert resp.status_code == 200
    assert resp.headers["content-type"] == "application/zip"
    assert 'filename="export_Negatives_' in resp.headers["content-disposition"]
    assert resp.content[:2] == b"PK"

    listed = client.get("/api/export/change-sets", params={"accountId": account["id"]}, headers=admin).json()
    assert listed["data"][0]["decisionsCount"] == 1
    assert client.get("/api/decisions", params={"accountId": account["id"]}, headers=admin).json()["data"][0][
        "status"
    ] == "exported"
