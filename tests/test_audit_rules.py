from __future__ import annotations

import json
import sqlite3
from pathlib import Path
from typing import Any

from adsaudit.audit_rules import run_all_rules
from adsaudit.db import AdsDB
from adsaudit.importers.google_ads_script import ingest_chunk
from adsaudit.repo import Repo
from adsaudit.schemas import IngestMetadata

RUN = "run-audit"
M = 1_000_000


def _setup(tmp_path: Path) -> tuple[Path, Repo, dict]:
    db_path = tmp_path / "audit.sqlite3"
    AdsDB(db_path).init()
    repo = Repo(db_path)
    repo.create_account(customer_id="1234567890", customer_name="Acme")
    account = repo.find_active_by_customer_id("1234567890")
    assert account is not None
    return db_path, repo, account


def _load(repo: Repo, account: dict, dataset: str, rows: list[dict[str, Any]]) -> None:
    metadata = IngestMetadata(
        run_id=RUN,
        dataset_name=dataset,
        chunk_index=0,
        chunk_total=1,
        row_count=len(rows),
        datasets_expected=10,
    )
    ingest_chunk(repo, account=account, metadata=metadata, rows=rows)


def _issues(db_path: Path) -> dict[str, list[dict[str, Any]]]:
    out: dict[str, list[dict[str, Any]]] = {}
    with sqlite3.connect(db_path) as conn:
        conn.row_factory = sqlite3.Row
        for r in conn.execute("SELECT * FROM audit_issues WHERE run_id=?", (RUN,)).fetchall():
            out.setdefault(r["rule_id"], []).append(dict(r))
    return out


def test_campaign_rules(tmp_path: Path) -> None:
    db_path, repo, account = _setup(tmp_path)
    _load(
        repo,
        account,
        "campaigns",
        [
            {
                "campaignId": "1",
                "campaignName": "Brand",
                "status": "ENABLED",
                "impressions": 5000,
                "clicks": 25,
                "ctr": 0.5,
                "costMicros": 150 * M,
                "conversions": 0,
                "searchImpressionShareLostBudget": 0.6,
                "searchImpressionShareLostRank": 10,
            },
            {"campaignId": "2", "campaignName": "Old", "status": "PAUSED", "costMicros": M, "conversions": 1},
        ],
    )

    found = run_all_rules(repo, account_id=account["id"], run_id=RUN)
    issues = _issues(db_path)
    assert found == 4
    assert set(issues) == {"CAMP_NO_CONV_HIGH_SPEND", "CAMP_LOW_CTR", "CAMP_IS_LOST_BUDGET", "CAMP_PAUSED_WITH_DATA"}

    no_conv = issues["CAMP_NO_CONV_HIGH_SPEND"][0]
    assert no_conv["severity"] == "critical"
    assert no_conv["status"] == "open"
    assert no_conv["entity_id"] == "1"
    assert no_conv["potential_savings"] == 150.0
    assert "€150.00" in no_conv["description"]
    assert len(json.loads(no_conv["action_steps_json"])) == 3

    lost = issues["CAMP_IS_LOST_BUDGET"][0]
    assert lost["severity"] == "high"
    assert lost["affected_impressions"] == 3000
    assert issues["CAMP_PAUSED_WITH_DATA"][0]["severity"] == "info"


def test_keyword_and_search_term_rules(tmp_path: Path) -> None:
    db_path, repo, account = _setup(tmp_path)
    _load(
        repo,
        account,
        "keywords",
        [
            {"keywordId": "k1", "keywordText": "cheap", "qualityScore": 3, "costMicros": 20 * M, "status": "ENABLED"},
            {
                "keywordId": "k2",
                "keywordText": "shoes",
                "matchType": "BROAD",
                "costMicros": 120 * M,
                "clicks": 40,
                "conversions": 0,
                "status": "ENABLED",
            },
        ],
    )
    terms = [{"searchTerm": f"term {i}", "costMicros": 30 * M, "clicks": 10, "conversions": 0} for i in range(5)]
    terms.append({"searchTerm": "expensive term", "costMicros": 60 * M, "clicks": 12, "conversions": 0})
    terms.append({"searchTerm": "good term", "costMicros": 90 * M, "clicks": 30, "conversions": 3})
    _load(repo, account, "search_terms", terms)

    run_all_rules(repo, account_id=account["id"], run_id=RUN)
    issues = _issues(db_path)

    low_qs = issues["KW_LOW_QS"][0]
    assert low_qs["severity"] == "high"
    assert json.loads(low_qs["metadata_json"])["qualityScore"] == 3
    assert issues["KW_NO_CONV_HIGH_SPEND"][0]["entity_id"] == "k2"
    assert issues["KW_BROAD_HIGH_SPEND"][0]["severity"] == "medium"
    assert "KW_MANY_LOW_QS" not in issues

    single = issues["ST_NO_CONV_HIGH_SPEND"]
    assert [i["entity_name"] for i in single] == ["expensive term"]
    many = issues["ST_MANY_WASTEFUL"][0]
    meta = json.loads(many["metadata_json"])
    assert meta["wastefulCount"] == 6
    assert meta["topTerms"][0]["term"] == "expensive term"
    assert many["affected_cost"] == 210.0


def test_structure_rules(tmp_path: Path) -> None:
    db_path, repo, account = _setup(tmp_path)
    _load(
        repo,
        account,
        "ad_groups",
        [
            {"adGroupId": "ag1", "adGroupName": "No ads", "status": "ENABLED"},
            {"adGroupId": "ag2", "adGroupName": "No keywords", "status": "ENABLED"},
            {"adGroupId": "ag3", "adGroupName": "Paused", "status": "PAUSED"},
        ],
    )
    _load(
        repo,
        account,
        "ads",
        [
            {
                "adId": "a1",
                "adGroupId": "ag2",
                "adGroupName": "No keywords",
                "adType": "RESPONSIVE_SEARCH_AD",
                "status": "ENABLED",
                "headlines": ["One", "Two", "Three"],
            }
        ],
    )
    _load(repo, account, "keywords", [{"keywordId": "k1", "adGroupId": "ag1", "status": "ENABLED"}])

    run_all_rules(repo, account_id=account["id"], run_id=RUN)
    issues = _issues(db_path)

    assert [i["entity_id"] for i in issues["STRUCT_AG_NO_ADS"]] == ["ag1"]
    assert [i["entity_id"] for i in issues["STRUCT_AG_NO_KW"]] == ["ag2"]
    few = issues["AD_FEW_HEADLINES"][0]
    assert json.loads(few["metadata_json"]) == {"headlineCount": 3}
    assert "STRUCT_FEW_NEGATIVES" not in issues


def test_rerun_replaces_issues_of_the_run(tmp_path: Path) -> None:
    db_path, repo, account = _setup(tmp_path)
    _load(
        repo,
        account,
        "campaigns",
        [{"campaignId": "1", "campaignName": "Old", "status": "PAUSED", "costMicros": M}],
    )
    assert run_all_rules(repo, account_id=account["id"], run_id=RUN) == 1
    assert run_all_rules(repo, account_id=account["id"], run_id=RUN) == 1
    assert sum(len(v) for v in _issues(db_path).values()) == 1
