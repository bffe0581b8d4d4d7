from __future__ import annotations

import json
import sqlite3
from pathlib import Path
from unittest.mock import patch

import pytest

from adsaudit.db import AdsDB
from adsaudit.errors import BadRequestError
from adsaudit.importers import google_ads_script
from adsaudit.importers.google_ads_script import DATASETS, ingest_chunk, normalize_row
from adsaudit.repo import Repo
from adsaudit.schemas import IngestMetadata


def _setup(tmp_path: Path) -> tuple[Path, Repo, dict]:
    db_path = tmp_path / "audit.sqlite3"
    AdsDB(db_path).init()
    repo = Repo(db_path)
    repo.create_account(customer_id="1234567890", customer_name="Acme")
    account = repo.find_active_by_customer_id("1234567890")
    assert account is not None
    return db_path, repo, account


def _meta(**overrides) -> IngestMetadata:
    values = {
        "run_id": "run-1",
        "dataset_name": "campaigns",
        "chunk_index": 0,
        "chunk_total": 1,
        "row_count": 1,
        "datasets_expected": 2,
    }
    values.update(overrides)
    return IngestMetadata(**values)


def _campaign(cid: str, **extra) -> dict:
    row = {
        "campaignId": cid,
        "campaignName": f"Campaign {cid}",
        "status": "ENABLED",
        "impressions": 1200,
        "clicks": 30,
        "costMicros": 45_000_000,
        "conversions": "2.5",
    }
    row.update(extra)
    return row


def test_normalize_row_accepts_camel_and_snake_case() -> None:
    spec = DATASETS["keywords"]
    camel = normalize_row(spec, {"keywordId": "k1", "keywordText": "shoes", "qualityScore": "7", "costMicros": "null"})
    snake = normalize_row(spec, {"keyword_id": "k1", "keyword_text": "shoes", "quality_score": 7, "cost_micros": None})
    assert camel == snake
    assert camel["quality_score"] == 7
    assert camel["cost_micros"] == 0


def test_normalize_row_nullable_numerics() -> None:
    spec = DATASETS["campaigns"]
    out = normalize_row(spec, _campaign("1", targetRoas="", targetCpaMicros="n/a", searchImpressionShare="--"))
    assert out["target_roas"] is None
    assert out["target_cpa_micros"] is None
    assert out["search_impression_share"] is None


def test_normalize_row_ads_lists_are_json() -> None:
    spec = DATASETS["ads"]
    out = normalize_row(spec, {"adId": "a1", "headlines": ["H1", "H2"], "descriptions": "D1 | D2", "finalUrls": None})
    assert json.loads(out["headlines_json"]) == ["H1", "H2"]
    assert json.loads(out["descriptions_json"]) == ["D1", "D2"]
    assert json.loads(out["final_urls_json"]) == []


def test_normalize_row_requires_identifier() -> None:
    with pytest.raises(BadRequestError, match="campaign_id"):
        normalize_row(DATASETS["campaigns"], {"campaignName": "No id"})


def test_ingest_creates_run_and_completes_after_all_datasets(tmp_path: Path) -> None:
    db_path, repo, account = _setup(tmp_path)

    res = ingest_chunk(
        repo,
        account=account,
        metadata=_meta(row_count=2, date_range_start="2026-02-01", date_range_end="2026-02-28"),
        rows=[_campaign("1"), _campaign("2")],
    )
    assert res["success"] is True
    assert res["message"] == "Chunk processed successfully"
    assert res["rowsProcessed"] == 2
    assert res["runStatus"] == "in_progress"
    assert res["runCompleted"] is False

    run = repo.get_run("run-1")
    assert run is not None
    assert run["datasets_expected"] == 2
    assert run["datasets_received"] == 1
    assert run["total_rows"] == 2
    assert json.loads(run["metadata_json"])["dateRangeStart"] == "2026-02-01"

    # Second dataset in two chunks; completion happens on the last one.
    res = ingest_chunk(
        repo,
        account=account,
        metadata=_meta(dataset_name="ad_groups", chunk_total=2, chunk_index=0),
        rows=[{"adGroupId": "10", "campaignId": "1", "status": "ENABLED"}],
    )
    assert res["runStatus"] == "in_progress"
    res = ingest_chunk(
        repo,
        account=account,
        metadata=_meta(dataset_name="ad_groups", chunk_total=2, chunk_index=1),
        rows=[{"adGroupId": "11", "campaignId": "1", "status": "PAUSED"}],
    )
    assert res["runStatus"] == "completed"
    assert res["runCompleted"] is True

    latest = repo.get_latest_run(account["id"])
    assert latest is not None and latest["run_id"] == "run-1"
    assert latest["completed_at"]

    with sqlite3.connect(db_path) as conn:
        assert conn.execute("SELECT COUNT(*) FROM campaigns").fetchone()[0] == 2
        assert conn.execute("SELECT COUNT(*) FROM ad_groups").fetchone()[0] == 2
        conv = conn.execute("SELECT conversions, cost_micros FROM campaigns WHERE campaign_id='1'").fetchone()
        assert conv == (2.5, 45_000_000)


def test_ingest_duplicate_chunk_is_idempotent(tmp_path: Path) -> None:
    db_path, repo, account = _setup(tmp_path)
    first = ingest_chunk(repo, account=account, metadata=_meta(), rows=[_campaign("1")])
    again = ingest_chunk(repo, account=account, metadata=_meta(), rows=[_campaign("1"), _campaign("2")])

    assert again == {
        "success": True,
        "message": "Chunk already processed (idempotent)",
        "chunkId": first["chunkId"],
    }
    run = repo.get_run("run-1")
    assert run is not None and run["total_rows"] == 1
    with sqlite3.connect(db_path) as conn:
        assert conn.execute("SELECT COUNT(*) FROM campaigns").fetchone()[0] == 1


def test_ingest_upserts_keyed_rows_and_appends_search_terms(tmp_path: Path) -> None:
    db_path, repo, account = _setup(tmp_path)
    ingest_chunk(repo, account=account, metadata=_meta(chunk_total=2), rows=[_campaign("1")])
    ingest_chunk(
        repo,
        account=account,
        metadata=_meta(chunk_total=2, chunk_index=1),
        rows=[_campaign("1", campaignName="Renamed")],
    )
    terms = [{"searchTerm": "red shoes", "clicks": 3}, {"searchTerm": "red shoes", "clicks": 4}]
    ingest_chunk(
        repo,
        account=account,
        metadata=_meta(dataset_name="search_terms", row_count=2),
        rows=terms,
    )
    with sqlite3.connect(db_path) as conn:
        assert conn.execute("SELECT campaign_name FROM campaigns").fetchall() == [("Renamed",)]
        assert conn.execute("SELECT COUNT(*) FROM search_terms").fetchone()[0] == 2


def test_ingest_unknown_dataset(tmp_path: Path) -> None:
    _db_path, repo, account = _setup(tmp_path)
    with pytest.raises(BadRequestError, match="Invalid dataset name: videos"):
        ingest_chunk(repo, account=account, metadata=_meta(dataset_name="videos"), rows=[])
    assert repo.get_run("run-1") is None


def test_ingest_run_of_other_account_is_rejected(tmp_path: Path) -> None:
    _db_path, repo, account = _setup(tmp_path)
    repo.create_account(customer_id="5555555555", customer_name="Other")
    other = repo.find_active_by_customer_id("5555555555")
    assert other is not None

    ingest_chunk(repo, account=account, metadata=_meta(), rows=[_campaign("1")])
    with pytest.raises(BadRequestError, match="different account"):
        ingest_chunk(repo, account=other, metadata=_meta(dataset_name="ads"), rows=[])


def test_ingest_bad_row_rolls_back_and_fails_run(tmp_path: Path) -> None:
    db_path, repo, account = _setup(tmp_path)
    ingest_chunk(repo, account=account, metadata=_meta(), rows=[_campaign("1")])

    with pytest.raises(BadRequestError):
        ingest_chunk(
            repo,
            account=account,
            metadata=_meta(dataset_name="keywords", row_count=2),
            rows=[{"keywordId": "k1"}, {"keywordText": "missing id"}],
        )

    run = repo.get_run("run-1")
    assert run is not None
    assert run["status"] == "failed"
    assert "keyword_id" in run["error_message"]
    with sqlite3.connect(db_path) as conn:
        assert conn.execute("SELECT COUNT(*) FROM keywords").fetchone()[0] == 0
        assert conn.execute("SELECT COUNT(*) FROM import_chunks WHERE dataset_name='keywords'").fetchone()[0] == 0


def test_ingest_stamps_metadata_date_range_on_rows(tmp_path: Path) -> None:
    db_path, repo, account = _setup(tmp_path)
    window = {"date_range_start": "2026-09-01", "date_range_end": "2026-09-30"}
    ingest_chunk(repo, account=account, metadata=_meta(**window), rows=[_campaign("1")])
    ingest_chunk(
        repo,
        account=account,
        metadata=_meta(dataset_name="keywords", **window),
        rows=[{"keywordId": "k1", "keywordText": "shoes"}],
    )
    ingest_chunk(
        repo,
        account=account,
        metadata=_meta(dataset_name="negative_keywords", **window),
        rows=[{"keywordText": "free"}],
    )

    with sqlite3.connect(db_path) as conn:
        for table in ("campaigns", "keywords"):
            dates = conn.execute(f"SELECT data_date_start, data_date_end FROM {table}").fetchall()
            assert dates == [("2026-09-01", "2026-09-30")]
        assert conn.execute("SELECT COUNT(*) FROM negative_keywords").fetchone()[0] == 1


def test_concurrent_duplicate_chunk_does_not_fail_the_run(tmp_path: Path) -> None:
    db_path, repo, account = _setup(tmp_path)
    first = ingest_chunk(repo, account=account, metadata=_meta(chunk_total=2), rows=[_campaign("1")])

    real_find = google_ads_script._find_chunk
    calls: list[int] = []

    def racing_find(conn, metadata):
        # The pre-check runs before the other request commits, so it misses.
        calls.append(metadata.chunk_index)
        return None if len(calls) == 1 else real_find(conn, metadata)

    with patch.object(google_ads_script, "_find_chunk", side_effect=racing_find):
        again = ingest_chunk(repo, account=account, metadata=_meta(chunk_total=2), rows=[_campaign("2")])

    assert again == {
        "success": True,
        "message": "Chunk already processed (idempotent)",
        "chunkId": first["chunkId"],
    }
    assert len(calls) == 2
    run = repo.get_run("run-1")
    assert run is not None
    assert run["status"] == "in_progress"
    assert run["total_rows"] == 1
    with sqlite3.connect(db_path) as conn:
        assert conn.execute("SELECT campaign_id FROM campaigns").fetchall() == [("1",)]
