"""Google Ads Editor CSV bundles built from approved decisions."""

from __future__ import annotations

import csv
import io
from dataclasses import dataclass
from typing import Any, Callable

from adsaudit.util import now_utc_iso

_STATUS_MAP = {"ENABLED": "enabled", "PAUSED": "paused", "REMOVED": "removed"}
_MATCH_MAP = {"EXACT": "Exact", "PHRASE": "Phrase", "BROAD": "Broad"}


@dataclass(frozen=True)
class GeneratedFile:
    filename: str
    content: str
    rows: int


def format_micros(micros: Any) -> str:
    if not micros:
        return ""
    try:
        return f"{float(micros) / 1_000_000:.2f}"
    except (TypeError, ValueError):
        return ""


def map_status(status: Any) -> str:
    if not status:
        return ""
    s = str(status)
    return _STATUS_MAP.get(s.upper(), s.lower())


def map_match_type(match_type: Any) -> str:
    if not match_type:
        return ""
    s = str(match_type)
    return _MATCH_MAP.get(s.upper(), s)


def _text_items(values: Any) -> list[str]:
    if not isinstance(values, list):
        return []
    out: list[str] = []
    for v in values:
        if isinstance(v, dict):
            out.append(str(v.get("text") or ""))
        elif v is not None:
            out.append(str(v))
    return out


def to_csv(headers: list[str], rows: list[dict[str, Any]]) -> str:
    buf = io.StringIO()
    writer = csv.writer(buf, quoting=csv.QUOTE_MINIMAL, lineterminator="\n")
    writer.writerow(headers)
    for row in rows:
        writer.writerow(["" if row.get(h) is None else row.get(h) for h in headers])
    return buf.getvalue().rstrip("\n")


def _campaign_row(d: dict[str, Any], after: dict[str, Any], ev: dict[str, Any]) -> dict[str, Any]:
    return {
        "Campaign": d.get("entity_name") or "",
        "Campaign state": map_status(after.get("status")),
        "Budget": format_micros(after.get("budget_micros")),
        "Bid Strategy Type": after.get("bidding_strategy_type") or "",
        "Target CPA": format_micros(after.get("target_cpa_micros")),
        "Target ROAS": after.get("target_roas") or "",
    }


def _ad_group_row(d: dict[str, Any], after: dict[str, Any], ev: dict[str, Any]) -> dict[str, Any]:
    return {
        "Campaign": ev.get("campaign_name") or "",
        "Ad Group": d.get("entity_name") or "",
        "Ad Group state": map_status(after.get("status")),
        "Max CPC": format_micros(after.get("cpc_bid_micros")),
        "Target CPA": format_micros(after.get("target_cpa_micros")),
    }


def _keyword_row(d: dict[str, Any], after: dict[str, Any], ev: dict[str, Any]) -> dict[str, Any]:
    return {
        "Campaign": ev.get("campaign_name") or "",
        "Ad Group": ev.get("ad_group_name") or "",
        "Keyword": d.get("entity_name") or after.get("keyword_text") or "",
        "Match type": map_match_type(after.get("match_type")),
        "Max CPC": format_micros(after.get("cpc_bid_micros")),
        "Final URL": after.get("final_url") or "",
        "Status": map_status(after.get("status")),
    }


def _negative_campaign_row(d: dict[str, Any], after: dict[str, Any], ev: dict[str, Any]) -> dict[str, Any]:
    return {
        "Campaign": ev.get("campaign_name") or "",
        "Negative keyword": d.get("entity_name") or after.get("keyword_text") or "",
        "Match type": map_match_type(after.get("match_type")),
    }


def _negative_ad_group_row(d: dict[str, Any], after: dict[str, Any], ev: dict[str, Any]) -> dict[str, Any]:
    return {
        "Campaign": ev.get("campaign_name") or "",
        "Ad Group": ev.get("ad_group_name") or "",
        "Negative keyword": d.get("entity_name") or after.get("keyword_text") or "",
        "Match type": map_match_type(after.get("match_type")),
    }


def _ad_row(d: dict[str, Any], after: dict[str, Any], ev: dict[str, Any]) -> dict[str, Any]:
    urls = after.get("final_urls") or []
    row: dict[str, Any] = {
        "Campaign": ev.get("campaign_name") or "",
        "Ad Group": ev.get("ad_group_name") or "",
        "Final URL": urls[0] if isinstance(urls, list) and urls else "",
        "Path 1": after.get("path1") or "",
        "Path 2": after.get("path2") or "",
        "Status": map_status(after.get("status")),
    }
    headlines = _text_items(after.get("headlines"))
    descriptions = _text_items(after.get("descriptions"))
    for i in range(15):
        row[f"Headline {i + 1}"] = headlines[i] if i < len(headlines) else ""
    for i in range(4):
        row[f"Description {i + 1}"] = descriptions[i] if i < len(descriptions) else ""
    return row


def _sitelink_row(d: dict[str, Any], after: dict[str, Any], ev: dict[str, Any]) -> dict[str, Any]:
    return {
        "Campaign": ev.get("campaign_name") or "",
        "Sitelink text": after.get("asset_text") or "",
        "Description line 1": after.get("description1") or "",
        "Description line 2": after.get("description2") or "",
        "Final URL": after.get("final_url") or "",
        "Status": map_status(after.get("status")),
    }


def _call_row(d: dict[str, Any], after: dict[str, Any], ev: dict[str, Any]) -> dict[str, Any]:
    return {
        "Campaign": ev.get("campaign_name") or "",
        "Phone number": after.get("phone_number") or "",
        "Country code": after.get("country_code") or "IT",
        "Status": map_status(after.get("status")),
    }


_AD_HEADERS = [
    "Campaign",
    "Ad Group",
    *(f"Headline {i}" for i in range(1, 16)),
    *(f"Description {i}" for i in range(1, 5)),
    "Final URL",
    "Path 1",
    "Path 2",
    "Status",
]

RowBuilder = Callable[[dict[str, Any], dict[str, Any], dict[str, Any]], dict[str, Any]]

# entity type -> (filename, headers, row builder); order is the file order in a bundle.
FILE_LAYOUTS: dict[str, tuple[str, list[str], RowBuilder]] = {
    "campaign": (
        "campaigns.csv",
        ["Campaign", "Campaign state", "Budget", "Bid Strategy Type", "Target CPA", "Target ROAS"],
        _campaign_row,
    ),
    "ad_group": ("ad_groups.csv", ["Campaign", "Ad Group", "Ad Group state", "Max CPC", "Target CPA"], _ad_group_row),
    "keyword": (
        "keywords.csv",
        ["Campaign", "Ad Group", "Keyword", "Match type", "Max CPC", "Final URL", "Status"],
        _keyword_row,
    ),
    "negative_keyword_campaign": (
        "negative_keywords_campaign.csv",
        ["Campaign", "Negative keyword", "Match type"],
        _negative_campaign_row,
    ),
    "negative_keyword_adgroup": (
        "negative_keywords_adgroup.csv",
        ["Campaign", "Ad Group", "Negative keyword", "Match type"],
        _negative_ad_group_row,
    ),
    "ad": ("ads.csv", _AD_HEADERS, _ad_row),
    "sitelink": (
        "sitelinks.csv",
        ["Campaign", "Sitelink text", "Description line 1", "Description line 2", "Final URL", "Status"],
        _sitelink_row,
    ),
    "call_extension": ("call_extensions.csv", ["Campaign", "Phone number", "Country code", "Status"], _call_row),
}


def generate_csv_files(decisions: list[dict[str, Any]]) -> list[GeneratedFile]:
    """
    Build one CSV per supported entity type.

    `decisions` are camelized decision dicts (afterValue/evidence already
    decoded). Entity types without a layout are ignored.
    """
    grouped: dict[str, list[dict[str, Any]]] = {}
    for d in decisions:
        grouped.setdefault(str(d.get("entityType") or "").lower(), []).append(d)

    files: list[GeneratedFile] = []
    for entity_type, (filename, headers, build) in FILE_LAYOUTS.items():
        items = grouped.get(entity_type)
        if not items:
            continue
        rows = [
            build({"entity_name": d.get("entityName")}, d.get("afterValue") or {}, d.get("evidence") or {})
            for d in items
        ]
        files.append(GeneratedFile(filename=filename, content=to_csv(headers, rows), rows=len(rows)))
    return files


def generate_readme(files: list[GeneratedFile], change_set_name: str, account_name: str) -> str:
    lines = [
        "# Google Ads Editor Export",
        "",
        f"**Change Set:** {change_set_name}",
        f"**Account:** {account_name}",
        f"**Generated:** {now_utc_iso()}",
        "",
        "## Files Included",
        "",
    ]
    lines += [f"- **{f.filename}** - {f.rows} rows" for f in files]
    lines += [
        "",
        "## Import Instructions",
        "",
        "1. Open Google Ads Editor",
        f"2. Select your account: {account_name}",
        "3. Go to **Account** > **Import**",
        "4. Choose **From file**",
        "5. Select the CSV files one at a time",
        "6. Review the proposed changes",
        "7. Click **Post changes** when ready",
        "",
        "## Important Notes",
        "",
        "- Always review changes before posting",
        "- Make a backup of your account before applying changes",
        "",
    ]
    return "\n".join(lines)
