from __future__ import annotations

from datetime import datetime, timedelta, timezone
from pathlib import Path
from unittest.mock import patch

from adsaudit.ai.analysis import AIAnalysisService
from adsaudit.config import Settings
from adsaudit.db import AdsDB
from adsaudit.modifications import ModificationService
from adsaudit.repo import Repo
from adsaudit.worker import is_due, run_tick

# Monday, 09:00 in Europe/Rome.
NOW = datetime(2026, 3, 2, 8, 0, 0, tzinfo=timezone.utc)


def _settings_for_db(db_path: Path) -> Settings:
    return Settings(db_path=db_path, timezone="Europe/Rome", web_host="127.0.0.1", web_port=0)


def _account(**overrides) -> dict:
    row = {
        "id": "acc_1",
        "customer_id": "1234567890",
        "time_zone": "Europe/Rome",
        "schedule_enabled": 1,
        "schedule_days_json": "[0, 3]",
        "schedule_time": "07:00",
        "schedule_frequency": "weekly",
        "last_scheduled_run_at": None,
    }
    row.update(overrides)
    return row


def _iso(dt: datetime) -> str:
    return dt.isoformat()


# ------------------------------------------------------------------ #
# is_due                                                               #
# ------------------------------------------------------------------ #


def test_is_due_checks_day_and_time_in_account_zone() -> None:
    assert is_due(_account(), NOW)
    assert not is_due(_account(schedule_enabled=0), NOW)
    assert not is_due(_account(schedule_days_json="[1, 2]"), NOW)
    assert not is_due(_account(schedule_time="09:30"), NOW)
    # 03:00 in New York, before the scheduled time.
    assert not is_due(_account(time_zone="America/New_York"), NOW)
    # Unknown zone falls back to the default one.
    assert is_due(_account(time_zone="Mars/Olympus"), NOW)


def test_is_due_respects_frequency_gap() -> None:
    assert not is_due(_account(last_scheduled_run_at=_iso(NOW - timedelta(hours=1))), NOW)
    assert is_due(_account(last_scheduled_run_at=_iso(NOW - timedelta(days=7))), NOW)
    assert not is_due(_account(last_scheduled_run_at=_iso(NOW - timedelta(days=4))), NOW)
    assert not is_due(
        _account(schedule_frequency="biweekly", last_scheduled_run_at=_iso(NOW - timedelta(days=7))),
        NOW,
    )
    assert is_due(
        _account(schedule_frequency="monthly", last_scheduled_run_at=_iso(NOW - timedelta(days=28))),
        NOW,
    )


# ------------------------------------------------------------------ #
# run_tick                                                             #
# ------------------------------------------------------------------ #


def _scheduled_account(tmp_path: Path) -> tuple[Settings, Repo, dict]:
    db_path = tmp_path / "audit.sqlite3"
    AdsDB(db_path).init()
    repo = Repo(db_path)
    account = repo.create_account(customer_id="1234567890", customer_name="Acme", time_zone="Europe/Rome")
    repo.update_schedule(account["id"], enabled=True, days=list(range(7)), time="00:00")
    return _settings_for_db(db_path), repo, account


def test_run_tick_queues_recommendations_once_per_day(tmp_path: Path) -> None:
    settings, repo, account = _scheduled_account(tmp_path)
    outcome = {
        "log": {"id": "ail_1", "modulesAnalyzed": 1},
        "results": [
            {
                "moduleId": 22,
                "recommendations": [
                    {
                        "id": "rec_1",
                        "priority": "high",
                        "entityType": "search_term",
                        "entityName": "free shoes",
                        "action": "add_negative_campaign",
                        "campaignId": "c1",
                    },
                    {"id": "rec_2", "action": "teleport"},
                ],
            }
        ],
    }

    with patch.object(AIAnalysisService, "analyze_all_modules", return_value=outcome) as analyze:
        results = run_tick(settings)
        assert run_tick(settings) == []

    analyze.assert_called_once_with(account["id"], user_id=None, trigger="scheduled")
    assert results == [
        {
            "accountId": account["id"],
            "logId": "ail_1",
            "modulesAnalyzed": 1,
            "modificationsCreated": 1,
            "skipped": 1,
            "errors": 0,
        }
    ]
    assert repo.require_account_row(account["id"])["last_scheduled_run_at"]

    queued = ModificationService(repo).find_all(account["id"])
    assert queued["meta"]["total"] == 1
    assert queued["data"][0]["modificationType"] == "negative_keyword.add"
    assert queued["data"][0]["createdBy"] is None


def test_run_tick_records_errors_and_keeps_going(tmp_path: Path) -> None:
    settings, repo, account = _scheduled_account(tmp_path)
    other = repo.create_account(customer_id="5555555555", customer_name="Beta", time_zone="Europe/Rome")
    repo.update_schedule(other["id"], enabled=True, days=list(range(7)), time="00:00")

    # No import run yet for either account.
    results = run_tick(settings)
    assert [r["accountId"] for r in results] == [account["id"], other["id"]]
    assert all(r["error"] == "No data available for this account" for r in results)
    assert repo.require_account_row(account["id"])["last_scheduled_run_at"] is None

    with patch.object(AIAnalysisService, "analyze_all_modules", side_effect=RuntimeError("boom")):
        results = run_tick(settings)
    assert results[0]["error"] == "RuntimeError: boom"
    assert results[1]["error"] == "RuntimeError: boom"
    assert repo.require_account_row(account["id"])["last_scheduled_run_at"]
    assert repo.require_account_row(other["id"])["last_scheduled_run_at"]

    # The failed attempt counts for today: the next tick leaves both accounts alone.
    with patch.object(AIAnalysisService, "analyze_all_modules", side_effect=RuntimeError("boom")) as analyze:
        assert run_tick(settings) == []
    analyze.assert_not_called()
