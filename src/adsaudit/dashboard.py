from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from adsaudit.audit_rules import CATEGORIES, SEVERITIES
from adsaudit.errors import BadRequestError, NotFoundError
from adsaudit.repo import Repo, clamp_page, page_meta, paginate
from adsaudit.util import camelize, micros_to_units, now_utc_iso


@dataclass(frozen=True)
class ListingSpec:
    table: str
    search_column: str
    sortable: tuple[str, ...]
    filters: tuple[str, ...] = ("status", "campaign_id", "ad_group_id")
    default_sort: str = "cost_micros"


_COMMON_SORTS = ("impressions", "clicks", "cost_micros", "conversions", "conversions_value", "ctr", "average_cpc_micros")

LISTINGS: dict[str, ListingSpec] = {
    "campaigns": ListingSpec("campaigns", "campaign_name", ("campaign_name", "status", *_COMMON_SORTS)),
    "ad_groups": ListingSpec("ad_groups", "ad_group_name", ("ad_group_name", "campaign_name", "status", *_COMMON_SORTS)),
    "ads": ListingSpec("ads", "ad_group_name", ("ad_group_name", "campaign_name", "ad_strength", "status", *_COMMON_SORTS)),
    "keywords": ListingSpec(
        "keywords", "keyword_text", ("keyword_text", "match_type", "quality_score", "status", *_COMMON_SORTS),
        filters=("status", "campaign_id", "ad_group_id", "match_type"),
    ),
    "search_terms": ListingSpec(
        "search_terms", "search_term", ("search_term", "campaign_name", *_COMMON_SORTS), filters=("campaign_id", "ad_group_id")
    ),
    "negative_keywords": ListingSpec(
        "negative_keywords", "keyword_text", ("keyword_text", "match_type", "level"),
        filters=("campaign_id", "ad_group_id", "match_type"),
        default_sort="keyword_text",
    ),
    "assets": ListingSpec(
        "assets", "asset_text", ("asset_type", "status", "impressions", "clicks", "cost_micros", "conversions", "ctr")
    ),
}

_FILTER_COLUMNS = {
    "status": "status",
    "campaign_id": "campaign_id",
    "ad_group_id": "ad_group_id",
    "match_type": "match_type",
}

_SEVERITY_ORDER_SQL = (
    "CASE severity WHEN 'critical' THEN 0 WHEN 'high' THEN 1 WHEN 'medium' THEN 2 "
    "WHEN 'low' THEN 3 ELSE 4 END"
)

_ISSUE_SORTS = {
    "title": "title",
    "category": "category",
    "status": "status",
    "createdAt": "created_at",
    "created_at": "created_at",
    "potentialSavings": "potential_savings",
    "potential_savings": "potential_savings",
}


def _rate(num: float, den: float, scale: float = 1.0) -> float:
    return round(num / den * scale, 4) if den else 0.0


class Dashboard:
    def __init__(self, repo: Repo):
        self.repo = repo

    def get_kpis(self, account_id: str, run_id: str | None = None) -> dict[str, Any] | None:
        self.repo.require_account_row(account_id)
        run_id = self.repo.resolve_run_id(account_id, run_id)
        if not run_id:
            return None
        p = (account_id, run_id)
        with self.repo.connect() as conn:

            def count(table: str, extra: str = "") -> int:
                sql = f"SELECT COUNT(*) AS c FROM {table} WHERE account_id=? AND run_id=? {extra}"
                return int(conn.execute(sql, p).fetchone()["c"])

            perf = conn.execute(
                """
                SELECT COALESCE(SUM(impressions),0) AS impressions, COALESCE(SUM(clicks),0) AS clicks,
                       COALESCE(SUM(cost_micros),0) AS cost_micros, COALESCE(SUM(conversions),0) AS conversions,
                       COALESCE(SUM(conversions_value),0) AS conversions_value
                FROM campaigns WHERE account_id=? AND run_id=?
                """,
                p,
            ).fetchone()
            qs = conn.execute(
                """
                SELECT AVG(quality_score) AS avg_qs,
                       SUM(CASE WHEN quality_score IS NOT NULL AND quality_score < 5 THEN 1 ELSE 0 END) AS low_qs
                FROM keywords WHERE account_id=? AND run_id=? AND quality_score IS NOT NULL
                """,
                p,
            ).fetchone()
            strength = {
                r["ad_strength"]: int(r["c"])
                for r in conn.execute(
                    "SELECT ad_strength, COUNT(*) AS c FROM ads WHERE account_id=? AND run_id=? GROUP BY ad_strength",
                    p,
                ).fetchall()
            }

            overview = {
                "totalCampaigns": count("campaigns"),
                "activeCampaigns": count("campaigns", "AND status='ENABLED'"),
                "totalAdGroups": count("ad_groups"),
                "activeAdGroups": count("ad_groups", "AND status='ENABLED'"),
                "totalKeywords": count("keywords"),
                "activeKeywords": count("keywords", "AND status='ENABLED'"),
                "totalAds": count("ads"),
                "activeAds": count("ads", "AND status='ENABLED'"),
                "totalSearchTerms": count("search_terms"),
                "totalNegativeKeywords": count("negative_keywords"),
            }

        cost = micros_to_units(perf["cost_micros"])
        clicks = float(perf["clicks"])
        conversions = float(perf["conversions"])
        value = float(perf["conversions_value"])
        return {
            "runId": run_id,
            "overview": overview,
            "performance": {
                "impressions": int(perf["impressions"]),
                "clicks": int(perf["clicks"]),
                "cost": round(cost, 2),
                "conversions": round(conversions, 2),
                "conversionsValue": round(value, 2),
                "ctr": _rate(clicks, float(perf["impressions"]), 100),
                "avgCpc": _rate(cost, clicks),
                "cpa": _rate(cost, conversions),
                "roas": _rate(value, cost),
                "conversionRate": _rate(conversions, clicks, 100),
            },
            "quality": {
                "avgQualityScore": round(qs["avg_qs"], 1) if qs["avg_qs"] is not None else None,
                "lowQualityKeywords": int(qs["low_qs"] or 0),
                "excellentAds": strength.get("EXCELLENT", 0),
                "goodAds": strength.get("GOOD", 0),
                "poorAds": strength.get("POOR", 0) + strength.get("AVERAGE", 0),
            },
        }

    def list_entities(
        self,
        dataset: str,
        account_id: str,
        *,
        run_id: str | None = None,
        search: str | None = None,
        status: str | None = None,
        campaign_id: str | None = None,
        ad_group_id: str | None = None,
        match_type: str | None = None,
        min_cost: float | None = None,
        sort_by: str | None = None,
        sort_order: str | None = None,
        page: int | None = None,
        limit: int | None = None,
    ) -> dict[str, Any]:
        spec = LISTINGS.get(dataset)
        if spec is None:
            raise NotFoundError(f"Unknown dataset {dataset}")
        self.repo.require_account_row(account_id)
        page, limit = clamp_page(page, limit)
        run_id = self.repo.resolve_run_id(account_id, run_id)
        if not run_id:
            return {"data": [], "meta": page_meta(0, page, limit)}

        where = ["account_id=?", "run_id=?"]
        params: list[Any] = [account_id, run_id]
        if search:
            where.append(f"{spec.search_column} LIKE ?")
            params.append(f"%{search}%")
        filters = {"status": status, "campaign_id": campaign_id, "ad_group_id": ad_group_id, "match_type": match_type}
        for key, value in filters.items():
            if value and key in spec.filters:
                where.append(f"{_FILTER_COLUMNS[key]}=?")
                params.append(value)
        if min_cost is not None and "cost_micros" in spec.sortable:
            where.append("cost_micros >= ?")
            params.append(int(min_cost * 1_000_000))

        sort_col = sort_by if sort_by in spec.sortable else spec.default_sort
        direction = "ASC" if (sort_order or "").upper() == "ASC" else "DESC"
        with self.repo.connect() as conn:
            rows, meta = paginate(
                conn,
                select_sql=f"SELECT * FROM {spec.table}",
                where_sql="WHERE " + " AND ".join(where),
                params=params,
                order_sql=f"ORDER BY {sort_col} {direction}, id ASC",
                page=page,
                limit=limit,
            )
        return {"data": [camelize(r) for r in rows], "meta": meta}

    def list_all(self, table: str, account_id: str, run_id: str | None = None) -> list[dict[str, Any]]:
        """Unpaginated listing for the small datasets (conversions, geo, device)."""
        if table not in ("conversion_actions", "geo_performance", "device_performance"):
            raise NotFoundError(f"Unknown dataset {table}")
        self.repo.require_account_row(account_id)
        run_id = self.repo.resolve_run_id(account_id, run_id)
        if not run_id:
            return []
        order = "name ASC" if table == "conversion_actions" else "cost_micros DESC"
        with self.repo.connect() as conn:
            rows = conn.execute(
                f"SELECT * FROM {table} WHERE account_id=? AND run_id=? ORDER BY {order}",
                (account_id, run_id),
            ).fetchall()
        return [camelize(dict(r)) for r in rows]

    def data_status(self, account_id: str) -> dict[str, Any]:
        self.repo.require_account_row(account_id)
        run = self.repo.get_latest_run(account_id)
        if not run:
            return {"run": None, "counts": {}}
        tables = (
            *LISTINGS,
            "conversion_actions",
            "geo_performance",
            "device_performance",
        )
        with self.repo.connect() as conn:
            counts = {
                t: int(
                    conn.execute(
                        f"SELECT COUNT(*) AS c FROM {t} WHERE account_id=? AND run_id=?",
                        (account_id, run["run_id"]),
                    ).fetchone()["c"]
                )
                for t in tables
            }
        return {"run": camelize(run), "counts": counts}

    # ------------------------------------------------------------------ #
    # Issues
    # ------------------------------------------------------------------ #

    def list_issues(
        self,
        account_id: str,
        *,
        run_id: str | None = None,
        severity: list[str] | None = None,
        category: list[str] | None = None,
        status: list[str] | None = None,
        entity_type: str | None = None,
        sort_by: str | None = None,
        sort_order: str | None = None,
        page: int | None = None,
        limit: int | None = None,
    ) -> dict[str, Any]:
        self.repo.require_account_row(account_id)
        page, limit = clamp_page(page, limit)
        run_id = self.repo.resolve_run_id(account_id, run_id)
        if not run_id:
            return {"data": [], "meta": page_meta(0, page, limit)}
        where = ["account_id=?", "run_id=?"]
        params: list[Any] = [account_id, run_id]
        for col, values in (("severity", severity), ("category", category), ("status", status)):
            if values:
                where.append(f"{col} IN ({','.join('?' for _ in values)})")
                params.extend(values)
        if entity_type:
            where.append("entity_type=?")
            params.append(entity_type)

        direction = "ASC" if (sort_order or "").upper() == "ASC" else "DESC"
        if not sort_by or sort_by == "severity":
            # Severity order reads critical first by default.
            sev_dir = "DESC" if (sort_order or "").upper() == "DESC" and sort_by == "severity" else "ASC"
            order = f"ORDER BY {_SEVERITY_ORDER_SQL} {sev_dir}, potential_savings DESC, created_at DESC"
        else:
            order = f"ORDER BY {_ISSUE_SORTS.get(sort_by, 'created_at')} {direction}"
        with self.repo.connect() as conn:
            rows, meta = paginate(
                conn,
                select_sql="SELECT * FROM audit_issues",
                where_sql="WHERE " + " AND ".join(where),
                params=params,
                order_sql=order,
                page=page,
                limit=limit,
            )
        return {"data": [camelize(r) for r in rows], "meta": meta}

    def issue_summary(self, account_id: str, run_id: str | None = None) -> dict[str, Any]:
        run_id = self.repo.resolve_run_id(account_id, run_id)
        by_severity = {s: 0 for s in SEVERITIES}
        by_category = {c: 0 for c in CATEGORIES}
        savings = 0.0
        total = 0
        if run_id:
            with self.repo.connect() as conn:
                rows = conn.execute(
                    "SELECT severity, category, potential_savings FROM audit_issues WHERE account_id=? AND run_id=?",
                    (account_id, run_id),
                ).fetchall()
            for r in rows:
                total += 1
                by_severity[r["severity"]] = by_severity.get(r["severity"], 0) + 1
                by_category[r["category"]] = by_category.get(r["category"], 0) + 1
                savings += float(r["potential_savings"] or 0)
        return {
            "total": total,
            "bySeverity": by_severity,
            "byCategory": by_category,
            "potentialSavings": round(savings, 2),
        }

    def update_issue_status(self, account_id: str, issue_id: str, status: str) -> dict[str, Any]:
        if status not in ("acknowledged", "resolved", "ignored"):
            raise BadRequestError(f"Invalid issue status: {status}")
        now = now_utc_iso()
        with self.repo.connect() as conn:
            row = conn.execute(
                "SELECT * FROM audit_issues WHERE id=? AND account_id=?", (issue_id, account_id)
            ).fetchone()
            if not row:
                raise NotFoundError(f"Issue {issue_id} not found")
            fields: dict[str, Any] = {"status": status}
            if status == "acknowledged":
                fields["acknowledged_at"] = now
            if status == "resolved":
                fields["resolved_at"] = now
            cols = ", ".join(f"{k}=?" for k in fields)
            conn.execute(f"UPDATE audit_issues SET {cols} WHERE id=?", (*fields.values(), issue_id))
            updated = conn.execute("SELECT * FROM audit_issues WHERE id=?", (issue_id,)).fetchone()
        return camelize(dict(updated))
