from __future__ import annotations

import sqlite3
from dataclasses import dataclass, field
from typing import Any, Callable

from adsaudit.log import get_logger
from adsaudit.repo import Repo
from adsaudit.util import json_dumps, json_loads, micros_to_units, new_id, now_utc_iso

logger = get_logger(__name__)

SEVERITIES = ("critical", "high", "medium", "low", "info")
CATEGORIES = ("performance", "quality", "structure", "budget", "targeting", "conversion", "opportunity")

M = 1_000_000


@dataclass
class Issue:
    rule_id: str
    title: str
    description: str
    severity: str
    category: str
    entity_type: str | None = None
    entity_id: str | None = None
    entity_name: str | None = None
    potential_savings: float | None = None
    potential_gain: float | None = None
    affected_impressions: int | None = None
    affected_clicks: int | None = None
    affected_cost: float | None = None
    recommendation: str | None = None
    action_steps: list[str] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class RuleContext:
    conn: sqlite3.Connection
    account_id: str
    run_id: str

    def rows(self, table: str, where: str = "", params: tuple[Any, ...] = ()) -> list[dict[str, Any]]:
        sql = f"SELECT * FROM {table} WHERE account_id=? AND run_id=?"
        if where:
            sql += f" AND {where}"
        return [dict(r) for r in self.conn.execute(sql, (self.account_id, self.run_id, *params)).fetchall()]

    def count(self, table: str) -> int:
        row = self.conn.execute(
            f"SELECT COUNT(*) AS c FROM {table} WHERE account_id=? AND run_id=?",
            (self.account_id, self.run_id),
        ).fetchone()
        return int(row["c"])


def _eur(micros: Any) -> str:
    return f"€{micros_to_units(micros):.2f}"


def _percent(value: float | None) -> float | None:
    """Impression share arrives either as 0-1 fraction or as 0-100 percentage."""
    if value is None:
        return None
    return value if value > 1 else value * 100


def campaign_rules(ctx: RuleContext) -> list[Issue]:
    issues: list[Issue] = []
    for c in ctx.rows("campaigns"):
        cost = c["cost_micros"] or 0
        name = c["campaign_name"]
        base = {"entity_type": "campaign", "entity_id": c["campaign_id"], "entity_name": name}

        if cost > 100 * M and (c["conversions"] or 0) == 0:
            issues.append(
                Issue(
                    rule_id="CAMP_NO_CONV_HIGH_SPEND",
                    title="Campaign spending without conversions",
                    description=f'Campaign "{name}" spent {_eur(cost)} without a single conversion.',
                    severity="critical",
                    category="performance",
                    affected_cost=micros_to_units(cost),
                    potential_savings=micros_to_units(cost),
                    recommendation="Check conversion tracking, targeting and bids, or pause the campaign.",
                    action_steps=[
                        "Verify conversion tracking is firing",
                        "Review search terms and add negatives",
                        "Lower bids or pause the campaign",
                    ],
                    **base,
                )
            )

        if (c["impressions"] or 0) > 1000 and (c["ctr"] or 0) < 1:
            issues.append(
                Issue(
                    rule_id="CAMP_LOW_CTR",
                    title="Low campaign CTR",
                    description=f'Campaign "{name}" has a CTR of {c["ctr"]:.2f}% over {c["impressions"]} impressions.',
                    severity="high",
                    category="performance",
                    affected_impressions=c["impressions"],
                    affected_clicks=c["clicks"],
                    recommendation="Improve ad copy relevance and tighten keyword targeting.",
                    **base,
                )
            )

        lost_budget = _percent(c["search_impression_share_lost_budget"])
        if lost_budget is not None and lost_budget > 20:
            issues.append(
                Issue(
                    rule_id="CAMP_IS_LOST_BUDGET",
                    title="Impression share lost to budget",
                    description=f'Campaign "{name}" loses {lost_budget:.1f}% of impression share due to budget.',
                    severity="high" if lost_budget > 50 else "medium",
                    category="budget",
                    affected_impressions=round((c["impressions"] or 0) * lost_budget / 100),
                    recommendation="Raise the daily budget or narrow targeting to the best converting segments.",
                    metadata={"impressionShareLostBudget": lost_budget},
                    **base,
                )
            )

        lost_rank = _percent(c["search_impression_share_lost_rank"])
        if lost_rank is not None and lost_rank > 30:
            issues.append(
                Issue(
                    rule_id="CAMP_IS_LOST_RANK",
                    title="Impression share lost to ad rank",
                    description=f'Campaign "{name}" loses {lost_rank:.1f}% of impression share due to ad rank.',
                    severity="high" if lost_rank > 50 else "medium",
                    category="quality",
                    recommendation="Improve quality score and review bids.",
                    metadata={"impressionShareLostRank": lost_rank},
                    **base,
                )
            )

        if c["status"] == "PAUSED" and cost > 0:
            issues.append(
                Issue(
                    rule_id="CAMP_PAUSED_WITH_DATA",
                    title="Paused campaign with spend in period",
                    description=f'Campaign "{name}" is paused but spent {_eur(cost)} in the analysed period.',
                    severity="info",
                    category="structure",
                    affected_cost=micros_to_units(cost),
                    **base,
                )
            )
    return issues


def ad_group_rules(ctx: RuleContext) -> list[Issue]:
    issues: list[Issue] = []
    for ag in ctx.rows("ad_groups"):
        cost = ag["cost_micros"] or 0
        name = ag["ad_group_name"]
        base = {"entity_type": "adGroup", "entity_id": ag["ad_group_id"], "entity_name": name}

        if cost > 0 and (ag["impressions"] or 0) == 0:
            issues.append(
                Issue(
                    rule_id="AG_SPEND_NO_IMPR",
                    title="Ad group with cost but no impressions",
                    description=f'Ad group "{name}" reports {_eur(cost)} of cost with zero impressions.',
                    severity="low",
                    category="structure",
                    **base,
                )
            )

        if cost > 50 * M and (ag["conversions"] or 0) < 1:
            issues.append(
                Issue(
                    rule_id="AG_HIGH_SPEND_LOW_CONV",
                    title="Ad group spending without conversions",
                    description=f'Ad group "{name}" spent {_eur(cost)} with fewer than one conversion.',
                    severity="high",
                    category="performance",
                    affected_cost=micros_to_units(cost),
                    potential_savings=micros_to_units(cost) * 0.5,
                    recommendation="Review keywords and ads of this ad group, lower bids or pause it.",
                    **base,
                )
            )
    return issues


def keyword_rules(ctx: RuleContext) -> list[Issue]:
    issues: list[Issue] = []
    low_qs_count = 0
    low_qs_cost = 0
    for k in ctx.rows("keywords"):
        cost = k["cost_micros"] or 0
        text = k["keyword_text"]
        qs = k["quality_score"]
        base = {"entity_type": "keyword", "entity_id": k["keyword_id"], "entity_name": text}

        if qs is not None and qs < 5 and cost > 10 * M:
            low_qs_count += 1
            low_qs_cost += cost
            issues.append(
                Issue(
                    rule_id="KW_LOW_QS",
                    title="Keyword with low quality score",
                    description=f'Keyword "{text}" has quality score {qs} and spent {_eur(cost)}.',
                    severity="high" if qs <= 3 else "medium",
                    category="quality",
                    affected_cost=micros_to_units(cost),
                    potential_savings=micros_to_units(cost) * 0.3,
                    recommendation="Improve ad relevance and landing page experience for this keyword.",
                    metadata={
                        "qualityScore": qs,
                        "creativeRelevance": k["creative_relevance"],
                        "landingPageExperience": k["landing_page_experience"],
                        "expectedCtr": k["expected_ctr"],
                    },
                    **base,
                )
            )

        if cost > 50 * M and (k["conversions"] or 0) == 0 and (k["clicks"] or 0) > 10:
            issues.append(
                Issue(
                    rule_id="KW_NO_CONV_HIGH_SPEND",
                    title="Keyword spending without conversions",
                    description=f'Keyword "{text}" spent {_eur(cost)} over {k["clicks"]} clicks without converting.',
                    severity="critical",
                    category="performance",
                    affected_cost=micros_to_units(cost),
                    affected_clicks=k["clicks"],
                    potential_savings=micros_to_units(cost),
                    recommendation="Pause the keyword or lower its bid.",
                    **base,
                )
            )

        if k["match_type"] == "BROAD" and cost > 100 * M:
            issues.append(
                Issue(
                    rule_id="KW_BROAD_HIGH_SPEND",
                    title="High spend broad match keyword",
                    description=f'Broad match keyword "{text}" spent {_eur(cost)}.',
                    severity="medium",
                    category="targeting",
                    affected_cost=micros_to_units(cost),
                    recommendation="Check the search terms it triggers and consider phrase or exact match.",
                    **base,
                )
            )

    if low_qs_count > 10:
        issues.append(
            Issue(
                rule_id="KW_MANY_LOW_QS",
                title="Many keywords with low quality score",
                description=f"{low_qs_count} keywords with spend have a quality score below 5.",
                severity="high",
                category="quality",
                affected_cost=micros_to_units(low_qs_cost),
                potential_savings=micros_to_units(low_qs_cost) * 0.2,
                recommendation="Restructure ad groups around tighter themes and align ads with keywords.",
                metadata={"lowQsKeywordCount": low_qs_count, "totalCost": micros_to_units(low_qs_cost)},
            )
        )
    return issues


def ad_rules(ctx: RuleContext) -> list[Issue]:
    issues: list[Issue] = []
    poor_count = 0
    for ad in ctx.rows("ads"):
        headlines = json_loads(ad["headlines_json"], []) or []
        name = ad["ad_group_name"]
        base = {"entity_type": "ad", "entity_id": ad["ad_id"], "entity_name": name}

        if ad["ad_strength"] == "POOR":
            poor_count += 1
            if (ad["impressions"] or 0) > 100:
                issues.append(
                    Issue(
                        rule_id="AD_POOR_STRENGTH",
                        title="Ad with poor ad strength",
                        description=f'An ad in ad group "{name}" has POOR ad strength.',
                        severity="medium",
                        category="quality",
                        affected_impressions=ad["impressions"],
                        recommendation="Add more unique headlines and descriptions.",
                        metadata={"adStrength": ad["ad_strength"], "headlineCount": len(headlines)},
                        **base,
                    )
                )

        if ad["approval_status"] == "DISAPPROVED":
            issues.append(
                Issue(
                    rule_id="AD_DISAPPROVED",
                    title="Disapproved ad",
                    description=f'An ad in ad group "{name}" is disapproved.',
                    severity="high",
                    category="structure",
                    recommendation="Fix the policy violation and resubmit the ad.",
                    **base,
                )
            )

        if ad["ad_type"] == "RESPONSIVE_SEARCH_AD" and len(headlines) < 8:
            issues.append(
                Issue(
                    rule_id="AD_FEW_HEADLINES",
                    title="Responsive search ad with few headlines",
                    description=f"Responsive search ad has only {len(headlines)} headlines.",
                    severity="low",
                    category="quality",
                    recommendation="Use at least 8 headlines, ideally 15.",
                    metadata={"headlineCount": len(headlines)},
                    **base,
                )
            )

    if poor_count > 5:
        issues.append(
            Issue(
                rule_id="AD_MANY_POOR",
                title="Many ads with poor ad strength",
                description=f"{poor_count} ads have POOR ad strength.",
                severity="high",
                category="quality",
                recommendation="Review the creative assets of the account.",
                metadata={"poorAdsCount": poor_count},
            )
        )
    return issues


def _wasteful(term: dict[str, Any]) -> bool:
    return (term["cost_micros"] or 0) > 20 * M and (term["conversions"] or 0) == 0 and (term["clicks"] or 0) > 5


def search_term_rules(ctx: RuleContext) -> list[Issue]:
    issues: list[Issue] = []
    wasteful = [t for t in ctx.rows("search_terms") if _wasteful(t)]
    for t in wasteful:
        cost = t["cost_micros"]
        if cost > 50 * M:
            issues.append(
                Issue(
                    rule_id="ST_NO_CONV_HIGH_SPEND",
                    title="Search term spending without conversions",
                    description=f'Search term "{t["search_term"]}" spent {_eur(cost)} without converting.',
                    severity="high",
                    category="targeting",
                    entity_type="searchTerm",
                    entity_id=t["search_term"],
                    entity_name=t["search_term"],
                    affected_cost=micros_to_units(cost),
                    potential_savings=micros_to_units(cost),
                    recommendation="Add it as a negative keyword if it is not relevant.",
                )
            )

    if len(wasteful) > 5:
        total = sum(t["cost_micros"] for t in wasteful)
        top = sorted(wasteful, key=lambda t: t["cost_micros"], reverse=True)[:10]
        issues.append(
            Issue(
                rule_id="ST_MANY_WASTEFUL",
                title="Many wasteful search terms",
                description=f"{len(wasteful)} search terms spent {_eur(total)} without converting.",
                severity="high",
                category="targeting",
                affected_cost=micros_to_units(total),
                potential_savings=micros_to_units(total),
                recommendation="Review the search terms report and add negatives.",
                metadata={
                    "wastefulCount": len(wasteful),
                    "topTerms": [
                        {"term": t["search_term"], "cost": micros_to_units(t["cost_micros"]), "clicks": t["clicks"]}
                        for t in top
                    ],
                },
            )
        )
    return issues


def structure_rules(ctx: RuleContext) -> list[Issue]:
    issues: list[Issue] = []
    no_ads = ctx.rows(
        "ad_groups ag",
        "ag.status='ENABLED' AND NOT EXISTS ("
        "SELECT 1 FROM ads a WHERE a.ad_group_id = ag.ad_group_id AND a.run_id = ag.run_id AND a.status='ENABLED')",
    )
    for ag in no_ads:
        issues.append(
            Issue(
                rule_id="STRUCT_AG_NO_ADS",
                title="Active ad group without active ads",
                description=f'Ad group "{ag["ad_group_name"]}" is enabled but has no enabled ads.',
                severity="high",
                category="structure",
                entity_type="adGroup",
                entity_id=ag["ad_group_id"],
                entity_name=ag["ad_group_name"],
                recommendation="Add at least one active ad to this ad group.",
            )
        )

    no_keywords = ctx.rows(
        "ad_groups ag",
        "ag.status='ENABLED' AND NOT EXISTS ("
        "SELECT 1 FROM keywords k WHERE k.ad_group_id = ag.ad_group_id AND k.run_id = ag.run_id "
        "AND k.status='ENABLED')",
    )
    # A large count usually means non-search campaigns (no keywords at all).
    if 0 < len(no_keywords) < 20:
        for ag in no_keywords:
            issues.append(
                Issue(
                    rule_id="STRUCT_AG_NO_KW",
                    title="Active ad group without active keywords",
                    description=f'Ad group "{ag["ad_group_name"]}" is enabled but has no enabled keywords.',
                    severity="medium",
                    category="structure",
                    entity_type="adGroup",
                    entity_id=ag["ad_group_id"],
                    entity_name=ag["ad_group_name"],
                    recommendation="Add keywords to this ad group or pause it.",
                )
            )

    negatives = ctx.count("negative_keywords")
    terms = ctx.count("search_terms")
    if terms > 100 and negatives < 20:
        issues.append(
            Issue(
                rule_id="STRUCT_FEW_NEGATIVES",
                title="Few negative keywords",
                description=f"The account has {terms} search terms but only {negatives} negative keywords.",
                severity="medium",
                category="targeting",
                recommendation="Analyse search terms and add relevant negative keywords.",
                action_steps=[
                    "Review the worst performing search terms",
                    "Identify irrelevant terms",
                    "Create shared negative keyword lists",
                ],
                metadata={"searchTermCount": terms, "negativeKeywordCount": negatives},
            )
        )
    return issues


RULES: tuple[Callable[[RuleContext], list[Issue]], ...] = (
    campaign_rules,
    ad_group_rules,
    keyword_rules,
    ad_rules,
    search_term_rules,
    structure_rules,
)


def run_all_rules(repo: Repo, *, account_id: str, run_id: str) -> int:
    """Replace the issues of a run with a fresh evaluation. Returns the issue count."""
    now = now_utc_iso()
    with repo.connect() as conn:
        ctx = RuleContext(conn=conn, account_id=account_id, run_id=run_id)
        issues: list[Issue] = []
        for rule in RULES:
            issues.extend(rule(ctx))

        conn.execute("DELETE FROM audit_issues WHERE account_id=? AND run_id=?", (account_id, run_id))
        for issue in issues:
            conn.execute(
                """
                INSERT INTO audit_issues(id, account_id, run_id, rule_id, title, description, severity, category,
                                         status, entity_type, entity_id, entity_name, potential_savings,
                                         potential_gain, affected_impressions, affected_clicks, affected_cost,
                                         recommendation, action_steps_json, metadata_json, created_at)
                VALUES(?,?,?,?,?,?,?,?,'open',?,?,?,?,?,?,?,?,?,?,?,?)
                """,
                (
                    new_id("iss"),
                    account_id,
                    run_id,
                    issue.rule_id,
                    issue.title,
                    issue.description,
                    issue.severity,
                    issue.category,
                    issue.entity_type,
                    issue.entity_id,
                    issue.entity_name,
                    issue.potential_savings,
                    issue.potential_gain,
                    issue.affected_impressions,
                    issue.affected_clicks,
                    issue.affected_cost,
                    issue.recommendation,
                    json_dumps(issue.action_steps),
                    json_dumps(issue.metadata),
                    now,
                ),
            )
    logger.info("audit rules run=%s account=%s issues=%s", run_id, account_id, len(issues))
    return len(issues)
