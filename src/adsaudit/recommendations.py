"""
Turn AI analysis recommendations into pending modifications.

Only a subset of actions maps onto something the apply script can execute
(bids, budgets, negatives...). The rest are queued as "manual" status
suggestions so they still show up in the approval queue; unknown actions
are skipped.
"""
from __future__ import annotations

import re
from typing import Any

from adsaudit.errors import AuditError
from adsaudit.log import get_logger
from adsaudit.modifications import ModificationService
from adsaudit.schemas import ModificationCreate

logger = get_logger(__name__)

SOURCE = "ai_recommendation"

_ENTITY_TYPE_MAP = {
    "campaign": "campaign",
    "ad_group": "ad_group",
    "adgroup": "ad_group",
    "ad": "ad",
    "keyword": "keyword",
    "search_term": "keyword",
    "negative_keyword": "negative_keyword",
    "conversion_action": "conversion_action",
    "conversion": "conversion_action",
    "extension": "campaign",
    "landing_page": "campaign",
}

_STATUS_TYPE_MAP = {
    "campaign": "campaign.status",
    "ad_group": "ad_group.status",
    "ad": "ad.status",
    "keyword": "keyword.status",
    "negative_keyword": "negative_keyword.add",
    "conversion_action": "conversion.primary",
}

_NEGATIVE_LEVELS = {
    "add_negative_campaign": "CAMPAIGN",
    "add_negative_adgroup": "AD_GROUP",
    "add_negative_account": "ACCOUNT",
}

_GENERIC_ACTIONS = {
    "scale",
    "restructure",
    "merge",
    "optimize",
    "improve_ctr",
    "improve_conversion_rate",
    "optimize_quality",
    "improve_quality",
    "improve_quality_score",
    "add_keyword_to_headline",
    "restructure_ad_group",
    "optimize_landing_page",
    "consolidate_urls",
}

_CAMPAIGN_SETUP_ACTIONS = {
    "add_call_extension",
    "add_message_extension",
    "optimize_schedule",
    "enable_tracking",
    "check_tracking",
    "optimize_for_calls",
    "optimize_for_leads",
    "enable_consent_mode",
    "verify_tags",
    "check_implementation",
    "exclude",
    "set_bid_modifier",
    "add_schedule",
}

_LANDING_ACTIONS = {"improve_landing_page", "set_keyword_url", "create_specific_landing"}

_NUMERIC_RE = re.compile(r"[^0-9.,]")


def parse_to_micros(value: Any) -> int | None:
    if value is None:
        return None
    cleaned = _NUMERIC_RE.sub("", str(value)).replace(",", ".", 1)
    if not cleaned:
        return None
    try:
        return round(float(cleaned) * 1_000_000)
    except ValueError:
        return None


def normalize_match_type(value: Any) -> str:
    s = str(value or "").strip().upper()
    if s in ("EXACT", "PHRASE", "BROAD"):
        return s
    for candidate in ("EXACT", "PHRASE", "BROAD"):
        if candidate in s:
            return candidate
    return "EXACT"


def infer_entity_type(value: Any) -> str:
    return _ENTITY_TYPE_MAP.get(str(value or "").strip().lower(), "campaign")


def infer_status_modification_type(entity_type: str) -> str:
    return _STATUS_TYPE_MAP.get(entity_type, "campaign.status")


def build_notes(rec: dict[str, Any], prefix: str = "") -> str:
    parts = [
        f"[AI - Priority: {rec.get('priority') or 'medium'}]",
        str(rec.get("rationale") or "").strip(),
    ]
    impact = str(rec.get("expectedImpact") or "").strip()
    if impact:
        parts.append(f"Expected impact: {impact}")
    return prefix + " | ".join(p for p in parts if p)


def _before(rec: dict[str, Any]) -> dict[str, Any] | None:
    current = rec.get("currentValue")
    if current is None or current == "":
        return None
    return {"value": current}


def map_recommendation(account_id: str, rec: dict[str, Any]) -> ModificationCreate | None:
    """Return the modification for one recommendation, or None when unmappable."""
    action = str(rec.get("action") or "").strip().lower()
    raw_entity_type = str(rec.get("entityType") or "").strip().lower()
    entity_type = infer_entity_type(raw_entity_type)
    entity_id = str(rec.get("entityId") or "")
    entity_name = str(rec.get("entityName") or "")
    campaign_id = rec.get("campaignId") or None
    ad_group_id = rec.get("adGroupId") or None
    suggested = rec.get("suggestedValue")
    notes = build_notes(rec)

    if raw_entity_type == "keyword" and entity_id and "~" not in entity_id and ad_group_id:
        entity_id = f"{ad_group_id}~{entity_id}"

    def make(
        etype: str,
        mtype: str,
        after: dict[str, Any],
        *,
        eid: str | None = None,
        before: dict[str, Any] | None = None,
        note: str | None = None,
    ) -> ModificationCreate:
        return ModificationCreate(
            account_id=account_id,
            entity_type=etype,
            entity_id=(eid if eid is not None else entity_id)[:50] or "unknown",
            entity_name=entity_name[:500] or None,
            modification_type=mtype,
            # A new negative has no prior state.
            before_value=before if before is not None or mtype == "negative_keyword.add" else _before(rec),
            after_value={**after, "source": SOURCE},
            notes=note if note is not None else notes,
        )

    def manual(action_name: str, etype: str = entity_type, note: str | None = None) -> ModificationCreate:
        return make(
            etype,
            infer_status_modification_type(etype),
            {"action": action_name, "suggestedValue": suggested},
            note=note,
        )

    if action in _NEGATIVE_LEVELS or action == "add_negative":
        level = _NEGATIVE_LEVELS.get(action) or ("AD_GROUP" if ad_group_id else "CAMPAIGN")
        if level == "AD_GROUP":
            target = ad_group_id or entity_id
        elif level == "CAMPAIGN":
            target = campaign_id or entity_id
        else:
            target = entity_id or "account"
        return make(
            "negative_keyword",
            "negative_keyword.add",
            {
                "text": entity_name or str(suggested or ""),
                "matchType": normalize_match_type(suggested),
                "level": level,
                "campaignId": campaign_id,
                "adGroupId": ad_group_id,
            },
            eid=str(target or ""),
        )

    if action == "remove_negative":
        return make(
            "negative_keyword",
            "negative_keyword.remove",
            {"text": entity_name, "removed": True},
            before={"text": entity_name},
        )

    if action in ("change_level", "change_match_type"):
        return make(
            "negative_keyword",
            "negative_keyword.add",
            {
                "text": entity_name,
                "matchType": normalize_match_type(suggested),
                "action": action,
                "campaignId": campaign_id,
                "adGroupId": ad_group_id,
            },
        )

    if action == "promote_to_keyword":
        return make(
            "keyword",
            "keyword.add",
            {
                "keyword": entity_name,
                "matchType": normalize_match_type(suggested),
                "campaignId": campaign_id,
                "adGroupId": ad_group_id,
            },
            eid=str(campaign_id or entity_id),
        )

    if action == "change_bidding_strategy":
        return make("campaign", "campaign.status", {"biddingStrategy": suggested})
    if action == "adjust_target_cpa":
        return make("campaign", "campaign.target_cpa", {"targetCpa": suggested})
    if action == "adjust_target_roas":
        return make("campaign", "campaign.target_roas", {"targetRoas": suggested})
    if action == "increase_budget":
        return make("campaign", "campaign.budget", {"budget": suggested})
    if action == "increase_campaign_budget":
        return make("campaign", "campaign.budget", {"budget": suggested, "budgetMicros": parse_to_micros(suggested)})

    if action == "pause":
        current = rec.get("currentValue")
        before = {"value": current} if current not in (None, "") else {"status": "ENABLED"}
        return make(entity_type, infer_status_modification_type(entity_type), {"status": "PAUSED"}, before=before)

    if action in ("increase_bid", "decrease_bid", "reduce_bid"):
        bid_action = "decrease_bid" if action == "reduce_bid" else action
        if action == "reduce_bid":
            entity_type = "keyword"
        micros = parse_to_micros(suggested)
        if micros is None:
            return manual(bid_action, etype=entity_type, note=build_notes(rec, prefix="[Non-numeric bid] "))
        payload = {"cpcBid": suggested, "cpcBidMicros": micros, "action": bid_action}
        if entity_type == "keyword":
            return make("keyword", "keyword.cpc_bid", payload)
        if entity_type == "ad_group":
            return make("ad_group", "ad_group.cpc_bid", payload)
        return None

    if action == "add_headlines":
        return make("ad", "ad.headlines", {"headlines": suggested})
    if action == "add_descriptions":
        return make("ad", "ad.descriptions", {"descriptions": suggested})
    if action in ("rewrite", "unpin"):
        return make("ad", "ad.headlines", {"action": action, "suggestedValue": suggested})

    if action in _LANDING_ACTIONS:
        if isinstance(suggested, str) and suggested.strip().lower().startswith("http"):
            return make("keyword", "keyword.final_url", {"finalUrl": suggested.strip(), "action": action})
        return manual(action)

    if action == "improve_ad_relevance":
        return manual("improve_relevance")

    if action in ("set_primary", "disable") and raw_entity_type in ("conversion_action", "conversion"):
        if action == "set_primary":
            return make("conversion_action", "conversion.primary", {"primaryForGoal": True})
        return make("conversion_action", "conversion.default_value", {"action": "disable", "suggestedValue": suggested})

    if action in _GENERIC_ACTIONS or action in ("remove", "replace", "add_new"):
        return manual(action)

    if action in _CAMPAIGN_SETUP_ACTIONS:
        return make("campaign", "campaign.status", {"action": action, "suggestedValue": suggested})

    if action == "create_variant":
        return make("ad", "ad.status", {"action": action, "suggestedValue": suggested})

    if action == "set_value":
        return make("conversion_action", "conversion.default_value", {"value": suggested})

    return None


def create_from_ai(
    service: ModificationService,
    *,
    account_id: str,
    module_id: int,
    recommendations: list[dict[str, Any]],
    user: dict[str, Any] | None,
) -> dict[str, Any]:
    service.repo.require_account_row(account_id)
    results: list[dict[str, Any]] = []
    for i, rec in enumerate(recommendations):
        rec_id = str(rec.get("id") or f"rec_{i + 1}")
        try:
            dto = map_recommendation(account_id, rec)
        except ValueError as e:
            # pydantic ValidationError is a ValueError
            results.append({"recommendationId": rec_id, "status": "error", "error": str(e)})
            continue
        if dto is None:
            results.append(
                {
                    "recommendationId": rec_id,
                    "status": "skipped",
                    "error": f'Action "{rec.get("action")}" cannot be mapped to a modification',
                }
            )
            continue
        try:
            created = service.create(dto, user)
        except AuditError as e:
            results.append({"recommendationId": rec_id, "status": "error", "error": str(e)})
            continue
        results.append({"recommendationId": rec_id, "modificationId": created["id"], "status": "created"})

    summary = {
        "results": results,
        "totalCreated": sum(1 for r in results if r["status"] == "created"),
        "totalSkipped": sum(1 for r in results if r["status"] == "skipped"),
        "totalErrors": sum(1 for r in results if r["status"] == "error"),
    }
    logger.info(
        "ai recommendations mapped account=%s module=%s created=%s skipped=%s errors=%s",
        account_id,
        module_id,
        summary["totalCreated"],
        summary["totalSkipped"],
        summary["totalErrors"],
    )
    return summary
