from __future__ import annotations

import asyncio
from datetime import datetime, timedelta
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from adsaudit.ai.analysis import AIAnalysisService
from adsaudit.config import Settings
from adsaudit.db import AdsDB
from adsaudit.errors import AuditError
from adsaudit.log import get_logger
from adsaudit.modifications import ModificationService
from adsaudit.recommendations import create_from_ai
from adsaudit.repo import Repo, schedule_days
from adsaudit.util import now_utc, now_utc_iso, parse_iso

logger = get_logger(__name__)

# Minimum days between two scheduled runs.
FREQUENCY_GAP_DAYS = {"weekly": 6, "biweekly": 13, "monthly": 27}


def _zone(name: str | None, default: str) -> ZoneInfo:
    try:
        return ZoneInfo(name or default)
    except (ZoneInfoNotFoundError, ValueError):
        return ZoneInfo(default)


def is_due(account: dict[str, Any], now: datetime, *, default_timezone: str = "Europe/Rome") -> bool:
    if not account.get("schedule_enabled"):
        return False
    tz = _zone(account.get("time_zone"), default_timezone)
    local = now.astimezone(tz)
    if local.weekday() not in schedule_days(account):
        return False
    if local.strftime("%H:%M") < (account.get("schedule_time") or "07:00"):
        return False

    last = parse_iso(account.get("last_scheduled_run_at"))
    if last is None:
        return True
    if last.astimezone(tz).date() == local.date():
        return False
    gap = FREQUENCY_GAP_DAYS.get(account.get("schedule_frequency") or "weekly", 6)
    return now - last >= timedelta(days=gap)


def run_scheduled_analysis(repo: Repo, settings: Settings, account: dict[str, Any]) -> dict[str, Any]:
    """Analyze every module for one account and queue the recommendations as modifications."""
    analysis = AIAnalysisService(repo, settings)
    modifications = ModificationService(repo)
    outcome = analysis.analyze_all_modules(account["id"], user_id=None, trigger="scheduled")

    created = skipped = errors = 0
    for result in outcome["results"]:
        if not result["recommendations"]:
            continue
        mapped = create_from_ai(
            modifications,
            account_id=account["id"],
            module_id=result["moduleId"],
            recommendations=result["recommendations"],
            user=None,
        )
        created += mapped["totalCreated"]
        skipped += mapped["totalSkipped"]
        errors += mapped["totalErrors"]

    repo.mark_scheduled_run(account["id"], now_utc_iso())
    log = outcome["log"] or {}
    return {
        "accountId": account["id"],
        "logId": log.get("id"),
        "modulesAnalyzed": log.get("modulesAnalyzed", 0),
        "modificationsCreated": created,
        "skipped": skipped,
        "errors": errors,
    }


async def _tick(settings: Settings, *, now: datetime | None = None) -> list[dict[str, Any]]:
    AdsDB(settings.db_path).init()
    repo = Repo(settings.db_path)
    now = now or now_utc()

    results: list[dict[str, Any]] = []
    for account in repo.list_account_rows():
        if not is_due(account, now, default_timezone=settings.timezone):
            continue
        try:
            summary = await asyncio.to_thread(run_scheduled_analysis, repo, settings, account)
        except AuditError as e:
            # No data or no AI config yet. Retried on the next tick.
            logger.warning("scheduled analysis skipped for %s: %s", account["customer_id"], e)
            results.append({"accountId": account["id"], "error": str(e)})
            continue
        except Exception as e:  # noqa: BLE001
            logger.exception("scheduled analysis failed for %s", account["customer_id"])
            # Count the attempt so a crashing analysis runs once per scheduled day.
            repo.mark_scheduled_run(account["id"], now_utc_iso())
            results.append({"accountId": account["id"], "error": f"{type(e).__name__}: {e}"})
            continue
        logger.info(
            "scheduled analysis %s: modules=%s created=%s skipped=%s errors=%s",
            account["customer_id"],
            summary["modulesAnalyzed"],
            summary["modificationsCreated"],
            summary["skipped"],
            summary["errors"],
        )
        results.append(summary)
    return results


def run_tick(settings: Settings) -> list[dict[str, Any]]:
    return asyncio.run(_tick(settings))


async def _run_forever(settings: Settings) -> None:
    while True:
        try:
            await _tick(settings)
        except Exception:  # noqa: BLE001
            logger.exception("worker tick failed")
        await asyncio.sleep(settings.worker_interval_seconds)


def run_worker(settings: Settings) -> None:
    logger.info("worker started, interval=%ss", settings.worker_interval_seconds)
    asyncio.run(_run_forever(settings))
