from __future__ import annotations

import json
from pathlib import Path
from unittest.mock import MagicMock, patch

import httpx
import pytest

from adsaudit.ai.analysis import AIAnalysisService
from adsaudit.ai.client import LLMClient, LLMError
from adsaudit.config import Settings
from adsaudit.db import AdsDB
from adsaudit.errors import BadRequestError
from adsaudit.importers.google_ads_script import ingest_chunk
from adsaudit.repo import Repo
from adsaudit.schemas import IngestMetadata


def _settings_for_db(db_path: Path, **overrides) -> Settings:
    values = {
        "db_path": db_path,
        "timezone": "Europe/Rome",
        "web_host": "127.0.0.1",
        "web_port": 0,
        "openai_api_key": "sk-test-abcd",
    }
    values.update(overrides)
    return Settings(**values)


def _setup(tmp_path: Path, **overrides) -> tuple[AIAnalysisService, dict]:
    db_path = tmp_path / "audit.sqlite3"
    AdsDB(db_path).init()
    repo = Repo(db_path)
    repo.create_account(customer_id="1234567890", customer_name="Acme")
    account = repo.find_active_by_customer_id("1234567890")
    assert account is not None
    return AIAnalysisService(repo, _settings_for_db(db_path, **overrides)), account


def _load_search_terms(service: AIAnalysisService, account: dict) -> None:
    rows = [
        {"searchTerm": "free shoes", "costMicros": 40_000_000, "clicks": 20, "conversions": 0},
        {"searchTerm": "buy running shoes", "costMicros": 15_000_000, "clicks": 8, "conversions": 3},
    ]
    metadata = IngestMetadata(
        run_id="run-ai",
        dataset_name="search_terms",
        chunk_index=0,
        chunk_total=1,
        row_count=len(rows),
        datasets_expected=1,
    )
    ingest_chunk(service.repo, account=account, metadata=metadata, rows=rows)


LLM_REPLY = {
    "summary": "One wasteful term",
    "recommendations": [
        {
            "priority": "high",
            "entityType": "search_term",
            "entityName": "free shoes",
            "action": "add_negative_campaign",
            "suggestedValue": "PHRASE",
            "campaignId": 42,
        },
        "not a recommendation",
    ],
}


# ------------------------------------------------------------------ #
# LLM client                                                           #
# ------------------------------------------------------------------ #


def test_build_request_uses_json_mode_and_token_param() -> None:
    req = LLMClient(api_key="k", model="gpt-4o", max_tokens=1000).build_request("sys", "user")
    assert req["response_format"] == {"type": "json_object"}
    assert req["max_tokens"] == 1000
    assert [m["role"] for m in req["messages"]] == ["system", "user"]

    req = LLMClient(api_key="k", model="gpt-5-mini").build_request("sys", "user")
    assert "max_tokens" not in req
    assert req["max_completion_tokens"] == 4096


def test_complete_json_parses_message_content() -> None:
    client = LLMClient(api_key="k", model="gpt-4o", base_url="https://llm.test/v1/")
    response = httpx.Response(
        200,
        json={"choices": [{"message": {"content": '{"summary": "ok"}'}}]},
        request=httpx.Request("POST", "https://llm.test/v1/chat/completions"),
    )
    with patch("adsaudit.ai.client.httpx.post", return_value=response) as post:
        assert client.complete_json("sys", "user") == {"summary": "ok"}
    assert post.call_args.args[0] == "https://llm.test/v1/chat/completions"
    assert post.call_args.kwargs["headers"] == {"Authorization": "Bearer k"}


def test_complete_json_errors() -> None:
    client = LLMClient(api_key="k", model="gpt-4o")
    request = httpx.Request("POST", "https://api.openai.com/v1/chat/completions")

    rejected = httpx.Response(429, text="rate limited", request=request)
    with patch("adsaudit.ai.client.httpx.post", return_value=rejected):
        with pytest.raises(LLMError, match="429"):
            client.complete_json("sys", "user")

    not_json = httpx.Response(200, json={"choices": [{"message": {"content": "sorry"}}]}, request=request)
    with patch("adsaudit.ai.client.httpx.post", return_value=not_json):
        with pytest.raises(LLMError, match="not valid JSON"):
            client.complete_json("sys", "user")

    shapeless = httpx.Response(200, json={"choices": ["garbage"]}, request=request)
    with patch("adsaudit.ai.client.httpx.post", return_value=shapeless):
        with pytest.raises(LLMError, match="Unexpected response shape"):
            client.complete_json("sys", "user")

    empty = httpx.Response(200, json={"choices": []}, request=request)
    with patch("adsaudit.ai.client.httpx.post", return_value=empty):
        with pytest.raises(LLMError, match="Empty response"):
            client.complete_json("sys", "user")

    with patch("adsaudit.ai.client.httpx.post", side_effect=httpx.ConnectError("boom")):
        with pytest.raises(LLMError, match="request failed"):
            client.complete_json("sys", "user")


# ------------------------------------------------------------------ #
# Settings                                                             #
# ------------------------------------------------------------------ #


def test_ai_settings_mask_key_and_prefer_stored_values(tmp_path: Path) -> None:
    service, _account = _setup(tmp_path)
    assert service.get_ai_settings() == {"hasApiKey": True, "apiKeyLast4": "****abcd", "model": "gpt-4o"}

    out = service.update_ai_settings(openai_api_key=" sk-stored-wxyz ", openai_model="gpt-4o-mini")
    assert out == {"hasApiKey": True, "apiKeyLast4": "****wxyz", "model": "gpt-4o-mini"}
    assert service.client().api_key == "sk-stored-wxyz"


def test_client_requires_api_key(tmp_path: Path) -> None:
    service, _account = _setup(tmp_path, openai_api_key=None)
    assert service.get_ai_settings()["hasApiKey"] is False
    with pytest.raises(BadRequestError, match="OpenAI API key not configured"):
        service.client()


# ------------------------------------------------------------------ #
# Analysis                                                             #
# ------------------------------------------------------------------ #


def test_analyze_module_requires_data_and_known_module(tmp_path: Path) -> None:
    service, account = _setup(tmp_path)
    with pytest.raises(BadRequestError, match="not supported"):
        service.analyze_module(account["id"], 5)
    with pytest.raises(BadRequestError, match="No data available"):
        service.analyze_module(account["id"], 22)


def test_analyze_module_renders_prompt_and_normalizes(tmp_path: Path) -> None:
    service, account = _setup(tmp_path)
    _load_search_terms(service, account)

    with patch.object(LLMClient, "complete_json", return_value=LLM_REPLY) as complete:
        res = service.analyze_module(account["id"], 22)

    system_prompt, user_prompt = complete.call_args.args
    assert "Search Terms Analysis" in system_prompt
    assert "{{" not in user_prompt
    assert "free shoes" in user_prompt
    assert "Target CPA: 20.00" in user_prompt
    # Costs are rendered in currency units, not micros.
    data_line = next(line for line in user_prompt.splitlines() if line.startswith("[{"))
    first = json.loads(data_line)[0]
    assert first["searchTerm"] == "free shoes"
    assert first["cost"] == "40.00"

    assert res["moduleId"] == 22
    assert res["summary"] == "One wasteful term"
    assert res["dataStats"] == {"totalRecords": 2, "analyzedRecords": 2}
    assert res["recommendations"] == [
        {
            "id": "rec_1",
            "priority": "high",
            "entityType": "search_term",
            "entityId": "",
            "entityName": "free shoes",
            "action": "add_negative_campaign",
            "currentValue": None,
            "suggestedValue": "PHRASE",
            "rationale": "",
            "expectedImpact": "",
            "campaignId": "42",
        }
    ]


def test_analyze_module_wraps_llm_errors(tmp_path: Path) -> None:
    service, account = _setup(tmp_path)
    _load_search_terms(service, account)
    with patch.object(LLMClient, "complete_json", side_effect=LLMError("OpenAI API returned 500")):
        with pytest.raises(BadRequestError, match="AI analysis failed: OpenAI API returned 500"):
            service.analyze_module(account["id"], 22)


def test_analyze_all_modules_logs_partial_failures(tmp_path: Path) -> None:
    service, account = _setup(tmp_path)
    _load_search_terms(service, account)

    complete = MagicMock(side_effect=[LLM_REPLY, LLMError("timeout")])
    with patch.object(LLMClient, "complete_json", complete):
        out = service.analyze_all_modules(account["id"], user_id="usr_1", modules=(22, 23))

    log = out["log"]
    assert log["status"] == "completed"
    assert log["triggerType"] == "manual"
    assert log["triggeredBy"] == "usr_1"
    assert log["modulesAnalyzed"] == 1
    assert log["totalRecommendations"] == 1
    assert "module 23" in log["error"]
    assert [m["status"] for m in log["moduleResults"]] == ["completed", "failed"]
    assert [r["moduleId"] for r in out["results"]] == [22]

    assert [entry["id"] for entry in service.list_analysis_logs(account["id"])] == [log["id"]]


def test_analyze_all_modules_fails_when_nothing_succeeds(tmp_path: Path) -> None:
    service, account = _setup(tmp_path)
    _load_search_terms(service, account)
    with patch.object(LLMClient, "complete_json", side_effect=LLMError("down")):
        out = service.analyze_all_modules(account["id"], trigger="scheduled", modules=(22,))
    assert out["log"]["status"] == "failed"
    assert out["log"]["triggerType"] == "scheduled"
    assert out["results"] == []


def test_malformed_reply_is_a_module_failure(tmp_path: Path) -> None:
    service, account = _setup(tmp_path)
    _load_search_terms(service, account)
    request = httpx.Request("POST", "https://api.openai.com/v1/chat/completions")
    garbage = httpx.Response(200, json={"choices": ["garbage"]}, request=request)

    with patch("adsaudit.ai.client.httpx.post", return_value=garbage):
        with pytest.raises(BadRequestError, match="AI analysis failed: Unexpected response shape"):
            service.analyze_module(account["id"], 22)
        out = service.analyze_all_modules(account["id"], modules=(22,))

    assert out["log"]["status"] == "failed"
    assert "Unexpected response shape" in out["log"]["error"]
    assert out["log"]["completedAt"]


def test_unexpected_module_crash_does_not_stop_the_rest(tmp_path: Path) -> None:
    service, account = _setup(tmp_path)
    _load_search_terms(service, account)

    complete = MagicMock(side_effect=[RuntimeError("boom"), LLM_REPLY])
    with patch.object(LLMClient, "complete_json", complete):
        out = service.analyze_all_modules(account["id"], modules=(22, 23))

    log = out["log"]
    assert log["status"] == "completed"
    assert [m["status"] for m in log["moduleResults"]] == ["failed", "completed"]
    assert log["moduleResults"][0]["error"] == "RuntimeError: boom"
    assert [r["moduleId"] for r in out["results"]] == [23]
