from __future__ import annotations

from dataclasses import dataclass

_SYSTEM_SUFFIX = "\n\nReply ONLY with a JSON object using the structure given in the request."

_RESPONSE_FORMAT = """Return your recommendations as JSON:
{{
  "summary": "Short summary of the situation",
  "recommendations": [
    {{
      "id": "rec_1",
      "priority": "high|medium|low",
      "entityType": "{entity_type}",
      "entityId": "ID of the entity",
      "entityName": "Name of the entity",
      "campaignId": "Campaign ID when known",
      "adGroupId": "Ad group ID when known",
      "action": "{actions}",
      "currentValue": "current value if applicable",
      "suggestedValue": "suggested value if applicable",
      "rationale": "Why this change is needed",
      "expectedImpact": "Expected impact"
    }}
  ]
}}"""


@dataclass(frozen=True)
class ModulePrompt:
    module_id: int
    name: str
    entity_type: str
    action_types: tuple[str, ...]
    rules: tuple[str, ...]
    # Body of the user message before the response format; uses {{placeholders}}.
    body: str

    @property
    def system_prompt(self) -> str:
        lines = "\n".join(f"- {r}" for r in self.rules)
        return (
            f"You are a senior Google Ads specialist running the '{self.name}' audit module.\n"
            f"Identify problems and propose concrete corrective actions.\n\nAnalysis rules:\n{lines}"
            + _SYSTEM_SUFFIX
        )

    @property
    def user_prompt_template(self) -> str:
        fmt = _RESPONSE_FORMAT.format(entity_type=self.entity_type, actions="|".join(self.action_types))
        return f"{self.body.strip()}\n\n{fmt}"


_CAMPAIGN_METRICS = """ACCOUNT METRICS:
- Total cost: {{totalCost}}
- Total conversions: {{totalConversions}}
- Average CPA: {{avgCpa}}
- Average ROAS: {{avgRoas}}
- Average CTR: {{avgCtr}}%
- Average conversion rate: {{avgConvRate}}%"""

MODULE_PROMPTS: dict[int, ModulePrompt] = {
    1: ModulePrompt(
        module_id=1,
        name="Conversion Goals",
        entity_type="conversion_action",
        action_types=("disable", "set_value", "set_primary", "remove_duplicate"),
        rules=(
            "ENABLED goals not used by any campaign are waste",
            "Goals without a value make ROAS impossible to compute",
            "Duplicate goals (same name or type) create confusion",
            "PRIMARY goals should be the ones that matter most to the business",
            "ONE_CONVERSION counting suits leads, MANY_PER_CLICK suits e-commerce",
        ),
        body="""Analyse the conversion goals of this Google Ads account:

GOALS:
{{data}}

ACCOUNT METRICS:
- Total goals: {{totalGoals}}
- Active goals: {{activeGoals}}
- Goals with value: {{goalsWithValue}}
- Primary goals: {{primaryGoals}}""",
    ),
    2: ModulePrompt(
        module_id=2,
        name="Consent Mode",
        entity_type="consent_mode",
        action_types=("enable_consent_mode", "verify_tags", "check_implementation"),
        rules=(
            "Consent Mode is required for GDPR compliance",
            "A share of modelled conversions above 30% hints at consent problems",
            "Unverified tags need immediate attention",
        ),
        body="""Analyse the Consent Mode setup using the conversion actions below:

DATA:
{{data}}

- Total goals: {{totalGoals}}
- Active goals: {{activeGoals}}""",
    ),
    3: ModulePrompt(
        module_id=3,
        name="Auto-Apply Recommendations",
        entity_type="campaign",
        action_types=("disable", "review", "keep"),
        rules=(
            "Auto-applied budget and bidding recommendations can change spend without review",
            "Broad match and keyword auto-apply often lowers traffic quality",
            "Campaigns with automated bidding need stable conversion data",
        ),
        body="""Review which campaigns are exposed to auto-applied recommendations:

CAMPAIGNS:
{{data}}

""" + _CAMPAIGN_METRICS,
    ),
    4: ModulePrompt(
        module_id=4,
        name="Bidding Strategy",
        entity_type="campaign",
        action_types=("change_bidding_strategy", "adjust_target_cpa", "adjust_target_roas", "increase_budget", "pause"),
        rules=(
            "Smart bidding needs at least 30 conversions in 30 days",
            "Target CPA far below the actual CPA throttles delivery",
            "Manual CPC on campaigns with steady conversions wastes automation potential",
            "Campaigns limited by budget with good CPA deserve more budget",
        ),
        body="""Analyse the bidding strategies of these campaigns:

CAMPAIGNS:
{{data}}

""" + _CAMPAIGN_METRICS,
    ),
    7: ModulePrompt(
        module_id=7,
        name="Ad Groups Structure",
        entity_type="ad_group",
        action_types=("pause", "restructure", "increase_bid", "decrease_bid", "merge"),
        rules=(
            "Ad groups should be tightly themed",
            "Ad groups with high spend and no conversions should be paused or restructured",
            "Very small ad groups with the same theme should be merged",
        ),
        body="""Analyse the structure of these ad groups:

AD GROUPS:
{{data}}

ACCOUNT METRICS:
- Average CPA: {{avgCpa}}
- Average CTR: {{avgCtr}}%
- Average conversion rate: {{avgConvRate}}%""",
    ),
    9: ModulePrompt(
        module_id=9,
        name="Conversion Breakdown",
        entity_type="campaign",
        action_types=("add_call_extension", "check_tracking", "optimize_for_calls", "optimize_for_leads"),
        rules=(
            "Compare calls, chats and form conversions per campaign",
            "Campaigns with phone impressions but no calls may have tracking gaps",
            "Conversion value should reflect the relative worth of each conversion type",
        ),
        body="""Break down the conversions of these campaigns:

CAMPAIGNS:
{{data}}

TOTALS:
- Total conversions: {{totalConversions}}
- Calls: {{totalCalls}}
- Chats: {{totalChats}}
- Conversion value: {{totalValue}}""",
    ),
    10: ModulePrompt(
        module_id=10,
        name="KPI Analysis",
        entity_type="campaign",
        action_types=("improve_ctr", "improve_conversion_rate", "increase_budget", "optimize_quality"),
        rules=(
            "Compare each campaign's KPIs to the account averages",
            "CTR below 2% on search is weak",
            "High CPA with low conversion rate points to landing page problems",
        ),
        body="""Evaluate the main KPIs of the account:

CAMPAIGNS:
{{data}}

""" + _CAMPAIGN_METRICS,
    ),
    11: ModulePrompt(
        module_id=11,
        name="Targeting Settings",
        entity_type="campaign",
        action_types=("exclude", "set_bid_modifier", "add_schedule"),
        rules=(
            "Locations with spend and no conversions are candidates for exclusion",
            "Devices with a CPA far above average need negative bid modifiers",
            "Presence-or-interest targeting often wastes budget on local businesses",
        ),
        body="""Analyse geographic and device targeting:

GEO PERFORMANCE:
{{geoData}}

DEVICE PERFORMANCE:
{{deviceData}}

- Average CPA: {{avgCpa}}
- Average conversion rate: {{avgConvRate}}%""",
    ),
    12: ModulePrompt(
        module_id=12,
        name="Ad Group CPA",
        entity_type="ad_group",
        action_types=("pause", "reduce_bid", "increase_bid", "scale"),
        rules=(
            "Ad groups with CPA above twice the target should have bids reduced or be paused",
            "Ad groups with CPA well below target and lost impression share should scale",
        ),
        body="""Compare ad group CPA with the target:

AD GROUPS:
{{data}}

TARGET CPA: {{targetCpa}}
ACCOUNT AVERAGE CPA: {{avgCpa}}""",
    ),
    13: ModulePrompt(
        module_id=13,
        name="Ad Group Impression Share",
        entity_type="ad_group",
        action_types=("increase_bid", "increase_budget", "improve_quality", "restructure"),
        rules=(
            "Impression share lost to rank is fixed with bids or quality",
            "Impression share lost to budget is fixed with budget",
            "Only invest in ad groups that convert profitably",
        ),
        body="""Analyse the impression share of these ad groups:

AD GROUPS:
{{data}}

- Average CPA: {{avgCpa}}""",
    ),
    14: ModulePrompt(
        module_id=14,
        name="Assets Performance",
        entity_type="asset",
        action_types=("remove", "replace", "add_new", "optimize"),
        rules=(
            "LOW performance assets should be replaced",
            "Every campaign should have sitelinks, callouts and structured snippets",
            "Disapproved assets must be fixed or removed",
        ),
        body="""Analyse the performance of these assets:

ASSETS:
{{data}}""",
    ),
    15: ModulePrompt(
        module_id=15,
        name="Ad Effectiveness",
        entity_type="ad",
        action_types=("add_headlines", "add_descriptions", "unpin", "pause", "rewrite"),
        rules=(
            "Responsive search ads should use 15 headlines and 4 descriptions",
            "POOR or AVERAGE ad strength needs more unique assets",
            "Too many pinned headlines reduce ad strength",
        ),
        body="""Analyse the effectiveness of these ads:

ADS:
{{data}}

- Average CTR: {{avgCtr}}%""",
    ),
    16: ModulePrompt(
        module_id=16,
        name="Ad Conversions",
        entity_type="ad",
        action_types=("pause", "optimize", "scale", "create_variant"),
        rules=(
            "Compare ads inside the same ad group",
            "Ads with spend and no conversions while siblings convert should be paused",
            "Winning ads deserve a new variant to keep testing",
        ),
        body="""Analyse the conversion performance of these ads:

ADS:
{{data}}

TARGET CPA: {{targetCpa}}
AVERAGE CPA: {{avgCpa}}""",
    ),
    17: ModulePrompt(
        module_id=17,
        name="Call Extensions",
        entity_type="campaign",
        action_types=("add_call_extension", "remove", "optimize_schedule", "enable_tracking"),
        rules=(
            "Campaigns for local services should have call assets",
            "Call assets should only show during business hours",
            "Call conversion tracking must be enabled",
        ),
        body="""Analyse the call extensions:

CAMPAIGNS AND ASSETS:
{{data}}

- Total calls: {{totalCalls}}
- Phone impressions: {{phoneImpressions}}
- Phone through rate: {{phoneRate}}%""",
    ),
    18: ModulePrompt(
        module_id=18,
        name="Message Extensions",
        entity_type="campaign",
        action_types=("add_message_extension", "remove", "optimize"),
        rules=(
            "Message assets help mobile users that prefer chat",
            "Message assets without replies within hours hurt the brand",
        ),
        body="""Analyse the message extensions:

CAMPAIGNS AND ASSETS:
{{data}}

- Total chats: {{totalChats}}
- Message impressions: {{messageImpressions}}""",
    ),
    19: ModulePrompt(
        module_id=19,
        name="Keyword Performance",
        entity_type="keyword",
        action_types=(
            "pause",
            "change_match_type",
            "increase_bid",
            "decrease_bid",
            "improve_landing_page",
            "improve_ad_relevance",
        ),
        rules=(
            "Keywords with spend above twice the target CPA and no conversions should be paused",
            "Quality score below 5 needs relevance or landing page work",
            "Broad match keywords with poor search terms should move to phrase or exact",
            "Suggested bids must be numeric amounts in account currency",
        ),
        body="""Analyse the performance of these keywords:

KEYWORDS:
{{data}}

ACCOUNT METRICS:
- Total keywords: {{totalKeywords}}
- Active keywords: {{activeKeywords}}
- Average QS: {{avgQualityScore}}
- Target CPA: {{targetCpa}}
- Average CPA: {{avgCpa}}""",
    ),
    20: ModulePrompt(
        module_id=20,
        name="Keyword Impression Share",
        entity_type="keyword",
        action_types=("increase_bid", "increase_campaign_budget", "improve_quality_score"),
        rules=(
            "Converting keywords losing share to rank deserve higher bids",
            "Converting keywords losing share to budget need more campaign budget",
        ),
        body="""Analyse the impression share of these keywords:

KEYWORDS:
{{data}}

- Average QS: {{avgQualityScore}}
- Average CPA: {{avgCpa}}""",
    ),
    21: ModulePrompt(
        module_id=21,
        name="Keyword-Ad-Landing Coherence",
        entity_type="keyword",
        action_types=("set_keyword_url", "create_specific_landing", "add_keyword_to_headline", "restructure_ad_group"),
        rules=(
            "The keyword should appear in at least one headline of its ad group",
            "Keywords should lead to the most specific landing page available",
            "A below-average landing page experience needs a dedicated page",
            "Suggested URLs must be absolute (http/https)",
        ),
        body="""Check the coherence between keywords, ads and landing pages:

KEYWORDS AND ADS:
{{data}}

- Average QS: {{avgQualityScore}}""",
    ),
    22: ModulePrompt(
        module_id=22,
        name="Search Terms Analysis",
        entity_type="search_term",
        action_types=("promote_to_keyword", "add_negative_campaign", "add_negative_adgroup", "add_negative_account"),
        rules=(
            "Irrelevant search terms with spend should become negatives",
            "Converting search terms that are not keywords should be promoted",
            "Use the narrowest negative level that solves the problem",
            "Put the suggested match type (EXACT, PHRASE or BROAD) in suggestedValue",
        ),
        body="""Analyse these search terms:

SEARCH TERMS:
{{data}}

- Target CPA: {{targetCpa}}
- Average CPA: {{avgCpa}}""",
    ),
    23: ModulePrompt(
        module_id=23,
        name="Negative Keywords",
        entity_type="negative_keyword",
        action_types=("add_negative", "remove_negative", "change_level", "change_match_type"),
        rules=(
            "Negatives that block converting search terms must be removed",
            "Recurring waste across campaigns belongs in a shared list",
            "Exact negatives are safer than broad negatives",
        ),
        body="""Review the negative keyword coverage:

CURRENT NEGATIVE KEYWORDS:
{{negativeData}}

TOP SEARCH TERMS:
{{searchTermsData}}""",
    ),
}

SUPPORTED_MODULES = tuple(sorted(MODULE_PROMPTS))


def get_module_prompt(module_id: int) -> ModulePrompt | None:
    return MODULE_PROMPTS.get(module_id)


def render(template: str, values: dict[str, str]) -> str:
    out = template
    for key, value in values.items():
        out = out.replace("{{" + key + "}}", value)
    return out
