from __future__ import annotations

from pathlib import Path

import pytest

from adsaudit.db import AdsDB
from adsaudit.decisions import DecisionService
from adsaudit.errors import BadRequestError, NotFoundError
from adsaudit.repo import Repo
from adsaudit.schemas import DecisionCreate, DecisionUpdate

USER = {"id": "usr_alice", "role": "user"}


def _service(tmp_path: Path) -> tuple[DecisionService, dict]:
    db_path = tmp_path / "audit.sqlite3"
    AdsDB(db_path).init()
    repo = Repo(db_path)
    account = repo.create_account(customer_id="1234567890", customer_name="Acme")
    return DecisionService(repo), account


def _create(svc: DecisionService, account_id: str, **overrides) -> dict:
    values = {
        "account_id": account_id,
        "module_id": 19,
        "entity_type": "KEYWORD",
        "entity_id": "kw1",
        "entity_name": "running shoes",
        "action_type": "UPDATE_BID",
        "before_value": {"cpcBid": 1.0},
        "after_value": {"cpcBid": 1.4},
        "rationale": "Converts below target CPA",
        "evidence": {"cpa": 12.5},
    }
    values.update(overrides)
    return svc.create(DecisionCreate(**values), USER)


def test_create_starts_a_draft_group(tmp_path: Path) -> None:
    svc, account = _service(tmp_path)
    d = _create(svc, account["id"])
    assert d["version"] == 1
    assert d["isCurrent"] is True
    assert d["status"] == "draft"
    assert d["decisionGroupId"].startswith("dgr_")
    assert d["afterValue"] == {"cpcBid": 1.4}
    assert d["evidence"] == {"cpa": 12.5}
    assert d["createdBy"] == USER["id"]

    with pytest.raises(NotFoundError):
        _create(svc, "acc_missing")


def test_update_writes_new_version_and_keeps_history(tmp_path: Path) -> None:
    svc, account = _service(tmp_path)
    v1 = _create(svc, account["id"])
    v2 = svc.update(v1["id"], DecisionUpdate(after_value={"cpcBid": 1.6}), USER)

    assert v2["version"] == 2
    assert v2["decisionGroupId"] == v1["decisionGroupId"]
    assert v2["afterValue"] == {"cpcBid": 1.6}
    # Untouched fields are carried over.
    assert v2["beforeValue"] == {"cpcBid": 1.0}
    assert v2["rationale"] == "Converts below target CPA"

    old = svc.find_one(v1["id"])
    assert old["isCurrent"] is False
    assert old["supersededBy"] == v2["id"]

    history = svc.history(v1["decisionGroupId"])
    assert [h["version"] for h in history] == [2, 1]

    with pytest.raises(BadRequestError, match="non-current"):
        svc.update(v1["id"], DecisionUpdate(rationale="again"), USER)
    with pytest.raises(NotFoundError):
        svc.history("dgr_missing")


def test_rollback_swaps_values(tmp_path: Path) -> None:
    svc, account = _service(tmp_path)
    v1 = _create(svc, account["id"])
    rb = svc.rollback(v1["id"], USER)

    assert rb["actionType"] == "ROLLBACK"
    assert rb["status"] == "rolled_back"
    assert rb["version"] == 2
    assert rb["beforeValue"] == {"cpcBid": 1.4}
    assert rb["afterValue"] == {"cpcBid": 1.0}
    assert rb["rationale"] == "Rollback of version 1"

    with pytest.raises(BadRequestError, match="current version"):
        svc.rollback(v1["id"], USER)


def test_approve_and_bulk_approve(tmp_path: Path) -> None:
    svc, account = _service(tmp_path)
    a = _create(svc, account["id"])
    b = _create(svc, account["id"], entity_id="kw2")

    assert svc.approve(a["id"])["status"] == "approved"
    with pytest.raises(BadRequestError, match="status approved"):
        svc.approve(a["id"])

    results = svc.bulk_approve([a["id"], b["id"], "dec_missing"])
    assert "error" in results[0]
    assert results[1]["status"] == "approved"
    assert "not found" in results[2]["error"]


def test_delete_refuses_exported(tmp_path: Path) -> None:
    svc, account = _service(tmp_path)
    d = _create(svc, account["id"])
    with svc.repo.connect() as conn:
        conn.execute("UPDATE decisions SET status='exported' WHERE id=?", (d["id"],))
    with pytest.raises(BadRequestError, match="exported"):
        svc.delete(d["id"])
    with pytest.raises(BadRequestError, match="exported"):
        svc.update(d["id"], DecisionUpdate(rationale="x"), USER)

    other = _create(svc, account["id"], entity_id="kw2")
    svc.delete(other["id"])
    with pytest.raises(NotFoundError):
        svc.find_one(other["id"])


def test_find_all_and_summary(tmp_path: Path) -> None:
    svc, account = _service(tmp_path)
    first = _create(svc, account["id"])
    _create(svc, account["id"], module_id=22, entity_type="NEGATIVE_KEYWORD", action_type="ADD", entity_id="neg")
    svc.update(first["id"], DecisionUpdate(rationale="revised"), USER)

    current = svc.find_all(account["id"])
    assert current["meta"]["total"] == 2
    everything = svc.find_all(account["id"], current_only=False)
    assert everything["meta"]["total"] == 3

    only_22 = svc.find_all(account["id"], module_id=22)
    assert [d["entityId"] for d in only_22["data"]] == ["neg"]

    summary = svc.summary(account["id"])
    assert summary["total"] == 2
    assert summary["byStatus"] == {"draft": 2}
    assert summary["byModule"] == {"19": 1, "22": 1}
    assert summary["byActionType"] == {"UPDATE_BID": 1, "ADD": 1}
