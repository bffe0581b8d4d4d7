from __future__ import annotations

import json
import sqlite3
import time
from typing import Any

from adsaudit.ai.client import LLMClient, LLMError
from adsaudit.ai.prompts import SUPPORTED_MODULES, get_module_prompt, render
from adsaudit.config import Settings
from adsaudit.errors import AuditError, BadRequestError
from adsaudit.log import get_logger
from adsaudit.repo import Repo
from adsaudit.util import camelize, json_dumps, micros_to_units, new_id, now_utc_iso

logger = get_logger(__name__)

SETTING_API_KEY = "openai_api_key"
SETTING_MODEL = "openai_model"

DEFAULT_TARGET_CPA = "20.00"

# How many rows of each kind go into a prompt.
PROMPT_LIMITS = {
    "campaigns": 50,
    "ad_groups": 100,
    "keywords": 200,
    "ads": 100,
    "assets": 100,
    "search_terms": 200,
    "geo": 50,
    "negatives": 100,
}

_CAMPAIGN_MODULES = {3, 4, 9, 10}
_AD_GROUP_MODULES = {7, 12, 13}
_AD_MODULES = {15, 16}
_EXTENSION_MODULES = {17, 18}
_KEYWORD_MODULES = {19, 20, 21}


def _fmt(value: float | None, digits: int = 2) -> str:
    if value is None:
        return "N/A"
    return f"{value:.{digits}f}"


def _ratio(num: float, den: float, scale: float = 1.0) -> float | None:
    return num / den * scale if den else None


def _money(row: dict[str, Any], *cols: str) -> dict[str, Any]:
    out = dict(row)
    for col in cols:
        if col in out:
            value = out.pop(col)
            out[col.replace("_micros", "")] = _fmt(micros_to_units(value)) if value is not None else None
    return out


def _prompt_row(row: dict[str, Any]) -> dict[str, Any]:
    drop = {"id", "account_id", "run_id", "created_at"}
    slim = {k: v for k, v in row.items() if k not in drop}
    return camelize(_money(slim, "cost_micros", "average_cpc_micros", "cpc_bid_micros", "target_cpa_micros", "budget_micros"))


def _metric_totals(rows: list[dict[str, Any]]) -> dict[str, float]:
    return {
        "cost": sum(micros_to_units(r.get("cost_micros")) for r in rows),
        "conversions": sum(float(r.get("conversions") or 0) for r in rows),
        "value": sum(float(r.get("conversions_value") or 0) for r in rows),
        "clicks": sum(float(r.get("clicks") or 0) for r in rows),
        "impressions": sum(float(r.get("impressions") or 0) for r in rows),
    }


class AIAnalysisService:
    def __init__(self, repo: Repo, settings: Settings):
        self.repo = repo
        self.settings = settings

    # ------------------------------------------------------------------ #
    # Settings
    # ------------------------------------------------------------------ #

    def _api_key(self) -> str | None:
        return self.repo.get_setting(SETTING_API_KEY) or self.settings.openai_api_key

    def _model(self) -> str:
        return self.repo.get_setting(SETTING_MODEL) or self.settings.openai_model

    def get_ai_settings(self) -> dict[str, Any]:
        key = self._api_key()
        return {
            "hasApiKey": bool(key),
            "apiKeyLast4": f"****{key[-4:]}" if key else None,
            "model": self._model(),
        }

    def update_ai_settings(self, *, openai_api_key: str | None = None, openai_model: str | None = None) -> dict[str, Any]:
        if openai_api_key is not None:
            self.repo.set_setting(SETTING_API_KEY, openai_api_key.strip())
        if openai_model is not None:
            self.repo.set_setting(SETTING_MODEL, openai_model.strip())
        return self.get_ai_settings()

    def client(self) -> LLMClient:
        key = self._api_key()
        if not key:
            raise BadRequestError("OpenAI API key not configured")
        return LLMClient(
            api_key=key,
            model=self._model(),
            base_url=self.settings.openai_base_url,
            max_tokens=self.settings.ai_max_tokens,
            timeout=self.settings.ai_timeout_seconds,
        )

    # ------------------------------------------------------------------ #
    # Data per module
    # ------------------------------------------------------------------ #

    def fetch_module_data(self, conn: sqlite3.Connection, module_id: int, account_id: str, run_id: str) -> dict[str, Any]:
        """Rows and aggregates the prompt of a module needs."""
        p = (account_id, run_id)

        def rows(sql: str) -> list[dict[str, Any]]:
            return [dict(r) for r in conn.execute(sql, p).fetchall()]

        data: dict[str, Any] = {"items": [], "aggregates": {}}

        if module_id in (1, 2):
            items = rows("SELECT * FROM conversion_actions WHERE account_id=? AND run_id=? ORDER BY name")
            data["items"] = items
            data["aggregates"] = {
                "totalGoals": str(len(items)),
                "activeGoals": str(sum(1 for c in items if c["status"] == "ENABLED")),
                "goalsWithValue": str(sum(1 for c in items if (c["default_value"] or 0) > 0)),
                "primaryGoals": str(sum(1 for c in items if c["primary_for_goal"])),
            }
            return data

        if module_id in _CAMPAIGN_MODULES or module_id in _EXTENSION_MODULES:
            items = rows(
                "SELECT * FROM campaigns WHERE account_id=? AND run_id=? AND status='ENABLED' ORDER BY cost_micros DESC"
            )
            t = _metric_totals(items)
            data["items"] = items[: PROMPT_LIMITS["campaigns"]]
            data["total"] = len(items)
            agg = {
                "totalCost": _fmt(t["cost"]),
                "totalConversions": _fmt(t["conversions"]),
                "avgCpa": _fmt(_ratio(t["cost"], t["conversions"])),
                "avgRoas": _fmt(_ratio(t["value"], t["cost"])),
                "avgCtr": _fmt(_ratio(t["clicks"], t["impressions"], 100)),
                "avgConvRate": _fmt(_ratio(t["conversions"], t["clicks"], 100)),
            }
            if module_id == 9:
                agg["totalCalls"] = str(sum(int(c["phone_calls"] or 0) for c in items))
                agg["totalChats"] = str(sum(int(c["message_chats"] or 0) for c in items))
                agg["totalValue"] = _fmt(t["value"])
            if module_id in _EXTENSION_MODULES:
                calls = sum(int(c["phone_calls"] or 0) for c in items)
                phone_impr = sum(int(c["phone_impressions"] or 0) for c in items)
                agg["totalCalls"] = str(calls)
                agg["phoneImpressions"] = str(phone_impr)
                agg["phoneRate"] = _fmt(_ratio(calls, phone_impr, 100))
                agg["totalChats"] = str(sum(int(c["message_chats"] or 0) for c in items))
                agg["messageImpressions"] = str(sum(int(c["message_impressions"] or 0) for c in items))
                data["assets"] = rows(
                    "SELECT * FROM assets WHERE account_id=? AND run_id=? ORDER BY cost_micros DESC"
                )[: PROMPT_LIMITS["assets"]]
            data["aggregates"] = agg
            return data

        if module_id in _AD_GROUP_MODULES:
            items = rows(
                "SELECT * FROM ad_groups WHERE account_id=? AND run_id=? AND status='ENABLED' ORDER BY cost_micros DESC"
            )
            t = _metric_totals(items)
            data["items"] = items[: PROMPT_LIMITS["ad_groups"]]
            data["total"] = len(items)
            data["aggregates"] = {
                "avgCpa": _fmt(_ratio(t["cost"], t["conversions"])),
                "avgCtr": _fmt(_ratio(t["clicks"], t["impressions"], 100)),
                "avgConvRate": _fmt(_ratio(t["conversions"], t["clicks"], 100)),
                "targetCpa": DEFAULT_TARGET_CPA,
            }
            return data

        if module_id == 11:
            geo = rows("SELECT * FROM geo_performance WHERE account_id=? AND run_id=? ORDER BY cost_micros DESC")
            device = rows("SELECT * FROM device_performance WHERE account_id=? AND run_id=? ORDER BY cost_micros DESC")
            t = _metric_totals(geo)
            data["geo"] = geo[: PROMPT_LIMITS["geo"]]
            data["device"] = device
            data["total"] = len(geo) + len(device)
            data["aggregates"] = {
                "avgCpa": _fmt(_ratio(t["cost"], t["conversions"])),
                "avgConvRate": _fmt(_ratio(t["conversions"], t["clicks"], 100)),
            }
            return data

        if module_id == 14:
            items = rows("SELECT * FROM assets WHERE account_id=? AND run_id=? ORDER BY cost_micros DESC")
            data["items"] = items[: PROMPT_LIMITS["assets"]]
            data["total"] = len(items)
            return data

        if module_id in _AD_MODULES:
            items = rows("SELECT * FROM ads WHERE account_id=? AND run_id=? AND status='ENABLED' ORDER BY cost_micros DESC")
            t = _metric_totals(items)
            data["items"] = items[: PROMPT_LIMITS["ads"]]
            data["total"] = len(items)
            data["aggregates"] = {
                "avgCtr": _fmt(_ratio(t["clicks"], t["impressions"], 100)),
                "avgCpa": _fmt(_ratio(t["cost"], t["conversions"])),
                "targetCpa": DEFAULT_TARGET_CPA,
            }
            return data

        if module_id in _KEYWORD_MODULES:
            all_keywords = rows("SELECT * FROM keywords WHERE account_id=? AND run_id=? ORDER BY cost_micros DESC")
            items = [k for k in all_keywords if k["status"] == "ENABLED"]
            t = _metric_totals(items)
            scores = [k["quality_score"] for k in items if k["quality_score"] is not None]
            data["items"] = items[: PROMPT_LIMITS["keywords"]]
            data["total"] = len(items)
            data["aggregates"] = {
                "totalKeywords": str(len(all_keywords)),
                "activeKeywords": str(len(items)),
                "avgQualityScore": _fmt(sum(scores) / len(scores), 1) if scores else "N/A",
                "avgCpa": _fmt(_ratio(t["cost"], t["conversions"])),
                "targetCpa": DEFAULT_TARGET_CPA,
            }
            if module_id == 21:
                data["ads"] = rows(
                    "SELECT * FROM ads WHERE account_id=? AND run_id=? AND status='ENABLED' ORDER BY cost_micros DESC"
                )[: PROMPT_LIMITS["ads"]]
            return data

        if module_id == 22:
            items = rows("SELECT * FROM search_terms WHERE account_id=? AND run_id=? ORDER BY cost_micros DESC LIMIT 500")
            t = _metric_totals(items)
            data["items"] = items[: PROMPT_LIMITS["search_terms"]]
            data["total"] = len(items)
            data["aggregates"] = {
                "targetCpa": DEFAULT_TARGET_CPA,
                "avgCpa": _fmt(_ratio(t["cost"], t["conversions"])),
            }
            return data

        if module_id == 23:
            negatives = rows("SELECT * FROM negative_keywords WHERE account_id=? AND run_id=? ORDER BY keyword_text")
            terms = rows("SELECT * FROM search_terms WHERE account_id=? AND run_id=? ORDER BY cost_micros DESC LIMIT 200")
            data["negatives"] = negatives[: PROMPT_LIMITS["negatives"]]
            data["searchTerms"] = terms
            data["total"] = len(negatives) + len(terms)
            return data

        raise BadRequestError(f"Module {module_id} is not supported")

    @staticmethod
    def prompt_values(module_id: int, data: dict[str, Any]) -> dict[str, str]:
        def dump(rows: list[dict[str, Any]]) -> str:
            return json.dumps([_prompt_row(r) for r in rows], ensure_ascii=False, default=str)

        values = dict(data.get("aggregates") or {})
        if module_id == 11:
            values["geoData"] = dump(data.get("geo", []))
            values["deviceData"] = dump(data.get("device", []))
        elif module_id == 23:
            values["negativeData"] = dump(data.get("negatives", []))
            values["searchTermsData"] = dump(data.get("searchTerms", []))
        elif module_id in _EXTENSION_MODULES:
            values["data"] = json.dumps(
                {
                    "campaigns": [_prompt_row(r) for r in data.get("items", [])],
                    "assets": [_prompt_row(r) for r in data.get("assets", [])],
                },
                ensure_ascii=False,
                default=str,
            )
        elif module_id == 21:
            values["data"] = json.dumps(
                {
                    "keywords": [_prompt_row(r) for r in data.get("items", [])],
                    "ads": [_prompt_row(r) for r in data.get("ads", [])],
                },
                ensure_ascii=False,
                default=str,
            )
        else:
            values["data"] = dump(data.get("items", []))
        return values

    @staticmethod
    def normalize_recommendations(raw: Any) -> list[dict[str, Any]]:
        if not isinstance(raw, list):
            return []
        out: list[dict[str, Any]] = []
        for i, rec in enumerate(raw):
            if not isinstance(rec, dict):
                continue
            item = {
                "id": str(rec.get("id") or f"rec_{i + 1}"),
                "priority": str(rec.get("priority") or "medium"),
                "entityType": str(rec.get("entityType") or "unknown"),
                "entityId": str(rec.get("entityId") or ""),
                "entityName": str(rec.get("entityName") or ""),
                "action": str(rec.get("action") or ""),
                "currentValue": rec.get("currentValue"),
                "suggestedValue": rec.get("suggestedValue"),
                "rationale": str(rec.get("rationale") or ""),
                "expectedImpact": str(rec.get("expectedImpact") or ""),
            }
            for key in ("campaignId", "adGroupId"):
                if rec.get(key):
                    item[key] = str(rec[key])
            out.append(item)
        return out

    # ------------------------------------------------------------------ #
    # Analysis
    # ------------------------------------------------------------------ #

    def analyze_module(self, account_id: str, module_id: int) -> dict[str, Any]:
        prompt = get_module_prompt(module_id)
        if prompt is None:
            raise BadRequestError(f"Module {module_id} is not supported for AI analysis")
        self.repo.require_account_row(account_id)
        run = self.repo.get_latest_run(account_id)
        if not run:
            raise BadRequestError("No data available for this account")
        client = self.client()

        with self.repo.connect() as conn:
            data = self.fetch_module_data(conn, module_id, account_id, run["run_id"])

        user_prompt = render(prompt.user_prompt_template, self.prompt_values(module_id, data))
        started = time.monotonic()
        try:
            parsed = client.complete_json(prompt.system_prompt, user_prompt)
        except LLMError as e:
            logger.warning("ai analysis failed account=%s module=%s: %s", account_id, module_id, e)
            raise BadRequestError(f"AI analysis failed: {e}") from e

        recommendations = self.normalize_recommendations(parsed.get("recommendations"))
        items = data.get("items", [])
        total = int(data.get("total", len(items)))
        analyzed = len(items) if items else total
        logger.info(
            "ai analysis module=%s account=%s recs=%s in %.1fs",
            module_id,
            account_id,
            len(recommendations),
            time.monotonic() - started,
        )
        return {
            "moduleId": module_id,
            "moduleName": prompt.name,
            "summary": str(parsed.get("summary") or "Analysis completed"),
            "recommendations": recommendations,
            "analyzedAt": now_utc_iso(),
            "dataStats": {"totalRecords": total, "analyzedRecords": analyzed},
        }

    def analyze_all_modules(
        self,
        account_id: str,
        *,
        user_id: str | None = None,
        trigger: str = "manual",
        modules: tuple[int, ...] | None = None,
    ) -> dict[str, Any]:
        """
        Run every supported module for one account and keep an analysis log.

        A failing module is recorded and does not stop the others; the log is
        failed only when no module succeeded.
        """
        self.repo.require_account_row(account_id)
        if not self.repo.get_latest_run(account_id):
            raise BadRequestError("No data available for this account")
        self.client()

        log_id = new_id("ail")
        started_iso = now_utc_iso()
        started = time.monotonic()
        with self.repo.connect() as conn:
            conn.execute(
                """
                INSERT INTO ai_analysis_logs(id, account_id, triggered_by, trigger_type, status, started_at)
                VALUES(?,?,?,?,'running',?)
                """,
                (log_id, account_id, user_id, trigger, started_iso),
            )

        results: list[dict[str, Any]] = []
        module_logs: list[dict[str, Any]] = []
        try:
            for module_id in modules or SUPPORTED_MODULES:
                try:
                    result = self.analyze_module(account_id, module_id)
                except AuditError as e:
                    module_logs.append({"moduleId": module_id, "status": "failed", "error": str(e)})
                    continue
                except Exception as e:  # noqa: BLE001
                    logger.exception("ai analysis crashed account=%s module=%s", account_id, module_id)
                    module_logs.append(
                        {"moduleId": module_id, "status": "failed", "error": f"{type(e).__name__}: {e}"}
                    )
                    continue
                results.append(result)
                module_logs.append(
                    {
                        "moduleId": module_id,
                        "moduleName": result["moduleName"],
                        "status": "completed",
                        "recommendations": len(result["recommendations"]),
                    }
                )
        finally:
            self._finish_log(log_id, results, module_logs, started)

        failures = [m for m in module_logs if m["status"] == "failed"]
        logger.info(
            "ai analysis %s account=%s modules=%s failed=%s recs=%s",
            trigger,
            account_id,
            len(results),
            len(failures),
            sum(len(r["recommendations"]) for r in results),
        )
        return {"log": self.get_log(log_id), "results": results}

    def _finish_log(
        self,
        log_id: str,
        results: list[dict[str, Any]],
        module_logs: list[dict[str, Any]],
        started: float,
    ) -> None:
        total_recs = sum(len(r["recommendations"]) for r in results)
        failures = [m for m in module_logs if m["status"] == "failed"]
        status = "completed" if results else "failed"
        error = None
        if failures:
            error = "; ".join(f"module {m['moduleId']}: {m['error']}" for m in failures)[:2000]
        elif not results:
            error = "Analysis stopped before any module finished"
        duration_ms = int((time.monotonic() - started) * 1000)
        with self.repo.connect() as conn:
            conn.execute(
                """
                UPDATE ai_analysis_logs
                SET status=?, modules_analyzed=?, total_recommendations=?, module_results_json=?,
                    error=?, completed_at=?, duration_ms=?
                WHERE id=?
                """,
                (status, len(results), total_recs, json_dumps(module_logs), error, now_utc_iso(), duration_ms, log_id),
            )

    def get_log(self, log_id: str) -> dict[str, Any] | None:
        with self.repo.connect() as conn:
            row = conn.execute("SELECT * FROM ai_analysis_logs WHERE id=?", (log_id,)).fetchone()
        return camelize(dict(row)) if row else None

    def list_analysis_logs(self, account_id: str, *, limit: int = 20) -> list[dict[str, Any]]:
        with self.repo.connect() as conn:
            rows = conn.execute(
                "SELECT * FROM ai_analysis_logs WHERE account_id=? ORDER BY started_at DESC LIMIT ?",
                (account_id, min(max(limit, 1), 100)),
            ).fetchall()
        return [camelize(dict(r)) for r in rows]
