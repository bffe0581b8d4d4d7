from __future__ import annotations

import uuid
from typing import Any, Callable, TypeVar

from fastapi import Depends, FastAPI, Header, Query, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import Response
from pydantic import BaseModel, ValidationError
import uvicorn

from adsaudit.ai.analysis import AIAnalysisService
from adsaudit.ai.prompts import MODULE_PROMPTS
from adsaudit.audit_rules import run_all_rules
from adsaudit.auth import AuthService, require_admin
from adsaudit.config import Settings
from adsaudit.dashboard import Dashboard
from adsaudit.db import AdsDB
from adsaudit.decisions import DecisionService
from adsaudit.errors import BadRequestError, UnauthorizedError, register_exception_handlers
from adsaudit.export.change_sets import ChangeSetService
from adsaudit.importers.google_ads_script import ingest_chunk
from adsaudit.log import configure_logging, get_logger, reset_request_id, set_request_id
from adsaudit.modifications import ModificationService
from adsaudit.recommendations import create_from_ai
from adsaudit.repo import Repo
from adsaudit.schemas import (
    AISettingsBody,
    AnalyzeModuleBody,
    BulkIdsBody,
    BulkRejectBody,
    ChangePasswordBody,
    ChangeSetCreate,
    ChangeSetUpdate,
    CreateAccountBody,
    CreateFromAIBody,
    CreateUserBody,
    DecisionCreate,
    DecisionIdsBody,
    DecisionUpdate,
    IngestPayload,
    IssueStatusBody,
    LoginBody,
    ModificationCreate,
    ModificationResultBody,
    RejectBody,
    RevealSecretBody,
    ScheduleBody,
    UpdateUserBody,
)
from adsaudit.signing import verify_request
from adsaudit.util import camelize

logger = get_logger(__name__)

M = TypeVar("M", bound=BaseModel)

# URL segment -> dataset listed by Dashboard.list_entities
ENTITY_LISTINGS = {
    "campaigns": "campaigns",
    "ad-groups": "ad_groups",
    "ads": "ads",
    "keywords": "keywords",
    "search-terms": "search_terms",
    "negative-keywords": "negative_keywords",
    "assets": "assets",
}

# URL segment -> small dataset returned unpaginated
SMALL_LISTINGS = {
    "conversions": "conversion_actions",
    "geo-performance": "geo_performance",
    "device-performance": "device_performance",
}


def _bearer_token(authorization: str | None) -> str | None:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def _csv_param(value: str | None) -> list[str] | None:
    if not value:
        return None
    items = [v.strip() for v in value.split(",") if v.strip()]
    return items or None


def _parse_body(model: type[M], raw: bytes) -> M:
    try:
        return model.model_validate_json(raw or b"{}")
    except ValidationError as e:
        raise RequestValidationError(e.errors()) from e


def _client_meta(request: Request) -> tuple[str | None, str | None]:
    ip = request.client.host if request.client else None
    return ip, request.headers.get("user-agent")


def create_app(settings: Settings) -> FastAPI:
    configure_logging(settings.log_level)
    AdsDB(settings.db_path).init()
    repo = Repo(settings.db_path)
    auth = AuthService(repo, session_ttl_hours=settings.session_ttl_hours)
    dashboard = Dashboard(repo)
    modifications = ModificationService(repo)
    decisions = DecisionService(repo)
    change_sets = ChangeSetService(repo)
    ai = AIAnalysisService(repo, settings)

    app = FastAPI(title="Ads Audit")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(settings.cors_origins),
        allow_methods=["*"],
        allow_headers=["*"],
    )
    register_exception_handlers(app, logger_name=__name__)

    @app.middleware("http")
    async def request_id_middleware(request: Request, call_next):
        request_id = request.headers.get("x-request-id") or uuid.uuid4().hex
        token = set_request_id(request_id)
        try:
            response = await call_next(request)
        finally:
            reset_request_id(token)
        response.headers["X-Request-Id"] = request_id
        return response

    def current_user(authorization: str | None = Header(default=None)) -> dict[str, Any]:
        return auth.authenticate(_bearer_token(authorization))

    def admin_user(user: dict[str, Any] = Depends(current_user)) -> dict[str, Any]:
        require_admin(user)
        return user

    async def signed_account(request: Request) -> dict[str, Any]:
        body = await request.body()
        return await run_in_threadpool(
            verify_request,
            repo,
            headers=request.headers,
            body=body,
            max_skew_seconds=settings.hmac_max_skew_seconds,
        )

    @app.get("/health")
    def health():
        return {"ok": True}

    # ------------------------------------------------------------------ #
    # Auth / users
    # ------------------------------------------------------------------ #

    @app.post("/api/auth/login")
    def login(body: LoginBody, request: Request):
        ip, user_agent = _client_meta(request)
        return auth.login(body.email, body.password, ip=ip, user_agent=user_agent)

    @app.post("/api/auth/logout")
    def logout(authorization: str | None = Header(default=None)):
        token = _bearer_token(authorization)
        if not token:
            raise UnauthorizedError("Missing bearer token")
        auth.logout(token)
        return {"ok": True}

    @app.get("/api/auth/me")
    def me(user: dict[str, Any] = Depends(current_user)):
        return user

    @app.post("/api/auth/change-password")
    def change_password(body: ChangePasswordBody, user: dict[str, Any] = Depends(current_user)):
        auth.change_password(user, body.current_password, body.new_password)
        return {"ok": True}

    @app.get("/api/users")
    def list_users(_admin: dict[str, Any] = Depends(admin_user)):
        return repo.list_users()

    @app.post("/api/users", status_code=201)
    def create_user(body: CreateUserBody, admin: dict[str, Any] = Depends(admin_user)):
        return auth.create_user(body, admin)

    @app.patch("/api/users/{user_id}")
    def update_user(user_id: str, body: UpdateUserBody, admin: dict[str, Any] = Depends(admin_user)):
        return auth.update_user(user_id, body, admin)

    @app.get("/api/audit-logs")
    def audit_logs(limit: int = Query(default=100, ge=1, le=500), _admin: dict[str, Any] = Depends(admin_user)):
        return repo.list_audit_logs(limit=limit)

    # ------------------------------------------------------------------ #
    # Accounts / dashboard reads
    # ------------------------------------------------------------------ #

    @app.get("/api/audit/accounts")
    def list_accounts(_user: dict[str, Any] = Depends(current_user)):
        return repo.list_accounts()

    @app.get("/api/audit/accounts/stats")
    def list_accounts_with_stats(_user: dict[str, Any] = Depends(current_user)):
        return repo.list_accounts_with_stats()

    @app.post("/api/audit/accounts", status_code=201)
    def create_account(body: CreateAccountBody, admin: dict[str, Any] = Depends(admin_user)):
        account = repo.create_account(
            customer_id=body.customer_id,
            customer_name=body.customer_name,
            currency_code=body.currency_code,
            time_zone=body.time_zone,
        )
        repo.add_audit_log(user_id=admin["id"], action="ACCOUNT_CREATED", entity_type="account", entity_id=account["id"])
        return account

    @app.get("/api/audit/accounts/{account_id}")
    def get_account(account_id: str, _user: dict[str, Any] = Depends(current_user)):
        return repo.get_account(account_id)

    @app.post("/api/audit/accounts/{account_id}/reveal-secret")
    def reveal_secret(account_id: str, body: RevealSecretBody, user: dict[str, Any] = Depends(current_user)):
        return auth.reveal_secret(account_id, user, body.password)

    @app.put("/api/audit/accounts/{account_id}/schedule")
    def update_schedule(account_id: str, body: ScheduleBody, _user: dict[str, Any] = Depends(current_user)):
        return repo.update_schedule(
            account_id, enabled=body.enabled, days=body.days, time=body.time, frequency=body.frequency
        )

    @app.get("/api/audit/accounts/{account_id}/runs")
    def list_runs(account_id: str, _user: dict[str, Any] = Depends(current_user)):
        repo.require_account_row(account_id)
        return repo.list_import_runs(account_id)

    @app.get("/api/audit/accounts/{account_id}/runs/latest")
    def latest_run(account_id: str, _user: dict[str, Any] = Depends(current_user)):
        repo.require_account_row(account_id)
        run = repo.get_latest_run(account_id)
        return {"run": camelize(run) if run else None}

    @app.get("/api/audit/accounts/{account_id}/kpis")
    def kpis(
        account_id: str,
        run_id: str | None = Query(default=None, alias="runId"),
        _user: dict[str, Any] = Depends(current_user),
    ):
        repo.require_account_row(account_id)
        return dashboard.get_kpis(account_id, run_id)

    @app.get("/api/audit/accounts/{account_id}/data-status")
    def data_status(account_id: str, _user: dict[str, Any] = Depends(current_user)):
        return dashboard.data_status(account_id)

    @app.get("/api/audit/accounts/{account_id}/issues/summary")
    def issue_summary(
        account_id: str,
        run_id: str | None = Query(default=None, alias="runId"),
        _user: dict[str, Any] = Depends(current_user),
    ):
        repo.require_account_row(account_id)
        return dashboard.issue_summary(account_id, run_id)

    @app.get("/api/audit/accounts/{account_id}/issues")
    def list_issues(
        account_id: str,
        run_id: str | None = Query(default=None, alias="runId"),
        severity: str | None = None,
        category: str | None = None,
        status: str | None = None,
        entity_type: str | None = Query(default=None, alias="entityType"),
        sort_by: str | None = Query(default=None, alias="sortBy"),
        sort_order: str | None = Query(default=None, alias="sortOrder"),
        page: int | None = None,
        limit: int | None = None,
        _user: dict[str, Any] = Depends(current_user),
    ):
        return dashboard.list_issues(
            account_id,
            run_id=run_id,
            severity=_csv_param(severity),
            category=_csv_param(category),
            status=_csv_param(status),
            entity_type=entity_type,
            sort_by=sort_by,
            sort_order=sort_order,
            page=page,
            limit=limit,
        )

    @app.patch("/api/audit/accounts/{account_id}/issues/{issue_id}")
    def update_issue(
        account_id: str, issue_id: str, body: IssueStatusBody, _user: dict[str, Any] = Depends(current_user)
    ):
        return dashboard.update_issue_status(account_id, issue_id, body.status)

    @app.post("/api/audit/accounts/{account_id}/analyze")
    def run_audit(account_id: str, _user: dict[str, Any] = Depends(current_user)):
        repo.require_account_row(account_id)
        run = repo.get_latest_run(account_id)
        if not run:
            raise BadRequestError("No completed import run for this account")
        found = run_all_rules(repo, account_id=account_id, run_id=run["run_id"])
        return {"runId": run["run_id"], "issuesFound": found}

    def _entity_listing(dataset: str) -> Callable[..., Any]:
        def endpoint(
            account_id: str,
            run_id: str | None = Query(default=None, alias="runId"),
            search: str | None = None,
            status: str | None = None,
            campaign_id: str | None = Query(default=None, alias="campaignId"),
            ad_group_id: str | None = Query(default=None, alias="adGroupId"),
            match_type: str | None = Query(default=None, alias="matchType"),
            min_cost: float | None = Query(default=None, alias="minCost"),
            sort_by: str | None = Query(default=None, alias="sortBy"),
            sort_order: str | None = Query(default=None, alias="sortOrder"),
            page: int | None = None,
            limit: int | None = None,
            _user: dict[str, Any] = Depends(current_user),
        ):
            return dashboard.list_entities(
                dataset,
                account_id,
                run_id=run_id,
                search=search,
                status=status,
                campaign_id=campaign_id,
                ad_group_id=ad_group_id,
                match_type=match_type,
                min_cost=min_cost,
                sort_by=sort_by,
                sort_order=sort_order,
                page=page,
                limit=limit,
            )

        return endpoint

    def _small_listing(table: str) -> Callable[..., Any]:
        def endpoint(
            account_id: str,
            run_id: str | None = Query(default=None, alias="runId"),
            _user: dict[str, Any] = Depends(current_user),
        ):
            return dashboard.list_all(table, account_id, run_id)

        return endpoint

    for segment, dataset in ENTITY_LISTINGS.items():
        app.add_api_route(f"/api/audit/accounts/{{account_id}}/{segment}", _entity_listing(dataset), methods=["GET"])
    for segment, table in SMALL_LISTINGS.items():
        app.add_api_route(f"/api/audit/accounts/{{account_id}}/{segment}", _small_listing(table), methods=["GET"])

    # ------------------------------------------------------------------ #
    # Modifications
    # ------------------------------------------------------------------ #

    @app.get("/api/modifications")
    def list_modifications(
        account_id: str = Query(alias="accountId"),
        entity_type: str | None = Query(default=None, alias="entityType"),
        modification_type: str | None = Query(default=None, alias="modificationType"),
        status: str | None = None,
        sort_by: str | None = Query(default=None, alias="sortBy"),
        sort_order: str | None = Query(default=None, alias="sortOrder"),
        page: int | None = None,
        limit: int | None = None,
        _user: dict[str, Any] = Depends(current_user),
    ):
        return modifications.find_all(
            account_id,
            entity_type=entity_type,
            modification_type=modification_type,
            status=status,
            sort_by=sort_by,
            sort_order=sort_order,
            page=page,
            limit=limit,
        )

    @app.get("/api/modifications/summary")
    def modification_summary(account_id: str = Query(alias="accountId"), _user: dict[str, Any] = Depends(current_user)):
        repo.require_account_row(account_id)
        return modifications.get_summary(account_id)

    @app.get("/api/modifications/pending-summary")
    def pending_summary(_user: dict[str, Any] = Depends(current_user)):
        return modifications.pending_summary()

    @app.get("/api/modifications/recent-activity")
    def recent_activity(limit: int = 20, _user: dict[str, Any] = Depends(current_user)):
        return modifications.recent_activity(limit=limit)

    @app.post("/api/modifications", status_code=201)
    def create_modification(body: ModificationCreate, user: dict[str, Any] = Depends(current_user)):
        return modifications.create(body, user)

    @app.post("/api/modifications/from-ai")
    def create_modifications_from_ai(body: CreateFromAIBody, user: dict[str, Any] = Depends(current_user)):
        return create_from_ai(
            modifications,
            account_id=body.account_id,
            module_id=body.module_id,
            recommendations=body.recommendations,
            user=user,
        )

    @app.post("/api/modifications/bulk/approve")
    def bulk_approve_modifications(body: BulkIdsBody, user: dict[str, Any] = Depends(current_user)):
        return modifications.bulk_approve(body.ids, user)

    @app.post("/api/modifications/bulk/reject")
    def bulk_reject_modifications(body: BulkRejectBody, user: dict[str, Any] = Depends(current_user)):
        return modifications.bulk_reject(body.ids, user, body.reason)

    @app.get("/api/modifications/{modification_id}")
    def get_modification(modification_id: str, _user: dict[str, Any] = Depends(current_user)):
        return modifications.find_one(modification_id)

    @app.post("/api/modifications/{modification_id}/approve")
    def approve_modification(modification_id: str, user: dict[str, Any] = Depends(current_user)):
        return modifications.approve(modification_id, user)

    @app.post("/api/modifications/{modification_id}/reject")
    def reject_modification(modification_id: str, body: RejectBody, user: dict[str, Any] = Depends(current_user)):
        return modifications.reject(modification_id, user, body.reason)

    @app.post("/api/modifications/{modification_id}/cancel")
    def cancel_modification(modification_id: str, user: dict[str, Any] = Depends(current_user)):
        return modifications.cancel(modification_id, user)

    # ------------------------------------------------------------------ #
    # AI analysis
    # ------------------------------------------------------------------ #

    @app.get("/api/ai/settings")
    def get_ai_settings(_user: dict[str, Any] = Depends(current_user)):
        return ai.get_ai_settings()

    @app.put("/api/ai/settings")
    def update_ai_settings(body: AISettingsBody, admin: dict[str, Any] = Depends(admin_user)):
        out = ai.update_ai_settings(openai_api_key=body.openai_api_key, openai_model=body.openai_model)
        repo.add_audit_log(user_id=admin["id"], action="AI_SETTINGS_UPDATED", entity_type="system_settings")
        return out

    @app.get("/api/ai/modules")
    def list_ai_modules(_user: dict[str, Any] = Depends(current_user)):
        return [{"moduleId": p.module_id, "name": p.name} for p in MODULE_PROMPTS.values()]

    @app.post("/api/ai/accounts/{account_id}/analyze")
    def analyze_module(account_id: str, body: AnalyzeModuleBody, _user: dict[str, Any] = Depends(current_user)):
        return ai.analyze_module(account_id, body.module_id)

    @app.post("/api/ai/accounts/{account_id}/analyze-all")
    def analyze_all(account_id: str, user: dict[str, Any] = Depends(current_user)):
        return ai.analyze_all_modules(account_id, user_id=user["id"], trigger="manual")

    @app.get("/api/ai/accounts/{account_id}/logs")
    def list_ai_logs(account_id: str, limit: int = 20, _user: dict[str, Any] = Depends(current_user)):
        repo.require_account_row(account_id)
        return ai.list_analysis_logs(account_id, limit=limit)

    # ------------------------------------------------------------------ #
    # Decisions
    # ------------------------------------------------------------------ #

    @app.get("/api/decisions")
    def list_decisions(
        account_id: str = Query(alias="accountId"),
        module_id: int | None = Query(default=None, alias="moduleId"),
        entity_type: str | None = Query(default=None, alias="entityType"),
        action_type: str | None = Query(default=None, alias="actionType"),
        status: str | None = None,
        current_only: bool = Query(default=True, alias="currentOnly"),
        sort_by: str | None = Query(default=None, alias="sortBy"),
        sort_order: str | None = Query(default=None, alias="sortOrder"),
        page: int | None = None,
        limit: int | None = None,
        _user: dict[str, Any] = Depends(current_user),
    ):
        return decisions.find_all(
            account_id,
            module_id=module_id,
            entity_type=entity_type,
            action_type=action_type,
            status=status,
            current_only=current_only,
            sort_by=sort_by,
            sort_order=sort_order,
            page=page,
            limit=limit,
        )

    @app.get("/api/decisions/summary")
    def decision_summary(account_id: str = Query(alias="accountId"), _user: dict[str, Any] = Depends(current_user)):
        repo.require_account_row(account_id)
        return decisions.summary(account_id)

    @app.get("/api/decisions/history/{group_id}")
    def decision_history(group_id: str, _user: dict[str, Any] = Depends(current_user)):
        return decisions.history(group_id)

    @app.post("/api/decisions/bulk-approve")
    def bulk_approve_decisions(body: DecisionIdsBody, _user: dict[str, Any] = Depends(current_user)):
        return decisions.bulk_approve(body.decision_ids)

    @app.post("/api/decisions", status_code=201)
    def create_decision(body: DecisionCreate, user: dict[str, Any] = Depends(current_user)):
        return decisions.create(body, user)

    @app.get("/api/decisions/{decision_id}")
    def get_decision(decision_id: str, _user: dict[str, Any] = Depends(current_user)):
        return decisions.find_one(decision_id)

    @app.put("/api/decisions/{decision_id}")
    def update_decision(decision_id: str, body: DecisionUpdate, user: dict[str, Any] = Depends(current_user)):
        return decisions.update(decision_id, body, user)

    @app.post("/api/decisions/{decision_id}/rollback")
    def rollback_decision(decision_id: str, user: dict[str, Any] = Depends(current_user)):
        return decisions.rollback(decision_id, user)

    @app.post("/api/decisions/{decision_id}/approve")
    def approve_decision(decision_id: str, _user: dict[str, Any] = Depends(current_user)):
        return decisions.approve(decision_id)

    @app.delete("/api/decisions/{decision_id}")
    def delete_decision(decision_id: str, _user: dict[str, Any] = Depends(current_user)):
        decisions.delete(decision_id)
        return {"ok": True}

    # ------------------------------------------------------------------ #
    # Export (change sets)
    # ------------------------------------------------------------------ #

    @app.get("/api/export/change-sets")
    def list_change_sets(
        account_id: str = Query(alias="accountId"),
        status: str | None = None,
        sort_by: str | None = Query(default=None, alias="sortBy"),
        sort_order: str | None = Query(default=None, alias="sortOrder"),
        page: int | None = None,
        limit: int | None = None,
        _user: dict[str, Any] = Depends(current_user),
    ):
        return change_sets.find_all(
            account_id, status=status, sort_by=sort_by, sort_order=sort_order, page=page, limit=limit
        )

    @app.get("/api/export/exportable-decisions")
    def exportable_decisions(account_id: str = Query(alias="accountId"), _user: dict[str, Any] = Depends(current_user)):
        return change_sets.exportable_decisions(account_id)

    @app.post("/api/export/change-sets", status_code=201)
    def create_change_set(body: ChangeSetCreate, user: dict[str, Any] = Depends(current_user)):
        return change_sets.create(body, user)

    @app.get("/api/export/change-sets/{change_set_id}")
    def get_change_set(change_set_id: str, _user: dict[str, Any] = Depends(current_user)):
        return change_sets.find_one(change_set_id)

    @app.put("/api/export/change-sets/{change_set_id}")
    def update_change_set(change_set_id: str, body: ChangeSetUpdate, _user: dict[str, Any] = Depends(current_user)):
        return change_sets.update(change_set_id, body)

    @app.post("/api/export/change-sets/{change_set_id}/decisions")
    def add_change_set_decisions(
        change_set_id: str, body: DecisionIdsBody, _user: dict[str, Any] = Depends(current_user)
    ):
        return change_sets.add_decisions(change_set_id, body.decision_ids)

    @app.delete("/api/export/change-sets/{change_set_id}/decisions/{decision_id}")
    def remove_change_set_decision(change_set_id: str, decision_id: str, _user: dict[str, Any] = Depends(current_user)):
        return change_sets.remove_decision(change_set_id, decision_id)

    @app.post("/api/export/change-sets/{change_set_id}/approve")
    def approve_change_set(change_set_id: str, _user: dict[str, Any] = Depends(current_user)):
        return change_sets.approve(change_set_id)

    @app.post("/api/export/change-sets/{change_set_id}/export")
    def export_change_set(change_set_id: str, _user: dict[str, Any] = Depends(current_user)):
        return change_sets.export(change_set_id)

    @app.get("/api/export/change-sets/{change_set_id}/preview")
    def preview_change_set(change_set_id: str, _user: dict[str, Any] = Depends(current_user)):
        return change_sets.preview(change_set_id)

    @app.get("/api/export/change-sets/{change_set_id}/download")
    def download_change_set(change_set_id: str, _user: dict[str, Any] = Depends(current_user)):
        filename, content = change_sets.download(change_set_id)
        return Response(
            content=content,
            media_type="application/zip",
            headers={"Content-Disposition": f'attachment; filename="{filename}"'},
        )

    @app.post("/api/export/change-sets/{change_set_id}/apply")
    def apply_change_set(change_set_id: str, _user: dict[str, Any] = Depends(current_user)):
        return change_sets.mark_as_applied(change_set_id)

    @app.delete("/api/export/change-sets/{change_set_id}")
    def delete_change_set(change_set_id: str, _user: dict[str, Any] = Depends(current_user)):
        change_sets.delete(change_set_id)
        return {"ok": True}

    # ------------------------------------------------------------------ #
    # Google Ads Scripts (HMAC)
    # ------------------------------------------------------------------ #

    @app.post("/api/integrations/google-ads/ingest")
    async def ingest(request: Request, account: dict[str, Any] = Depends(signed_account)):
        payload = _parse_body(IngestPayload, await request.body())
        result = await run_in_threadpool(
            ingest_chunk, repo, account=account, metadata=payload.metadata, rows=payload.data
        )
        if result.get("runCompleted") and settings.auto_audit_on_complete:
            found = await run_in_threadpool(
                run_all_rules, repo, account_id=account["id"], run_id=payload.metadata.run_id
            )
            logger.info("run %s completed, %s issues found", payload.metadata.run_id, found)
            result["issuesFound"] = found
        return result

    @app.get("/api/integrations/google-ads/modifications/pending")
    async def script_pending(account: dict[str, Any] = Depends(signed_account)):
        rows = await run_in_threadpool(modifications.get_pending_for_account, account["customer_id"])
        return {"modifications": rows}

    @app.get("/api/integrations/google-ads/modifications/failed")
    async def script_failed(account: dict[str, Any] = Depends(signed_account)):
        rows = await run_in_threadpool(modifications.get_failed_for_account, account["customer_id"])
        return {"modifications": rows}

    @app.delete("/api/integrations/google-ads/modifications/failed")
    async def script_delete_failed(account: dict[str, Any] = Depends(signed_account)):
        return await run_in_threadpool(modifications.delete_failed_for_account, account["customer_id"])

    @app.post("/api/integrations/google-ads/modifications/{modification_id}/start")
    async def script_start(modification_id: str, account: dict[str, Any] = Depends(signed_account)):
        def _start() -> dict[str, Any]:
            modifications.require_owned(modification_id, account["id"])
            return modifications.mark_as_processing(modification_id)

        row = await run_in_threadpool(_start)
        return {"success": True, "id": modification_id, "status": row["status"]}

    @app.post("/api/integrations/google-ads/modifications/{modification_id}/result")
    async def script_result(
        modification_id: str, request: Request, account: dict[str, Any] = Depends(signed_account)
    ):
        body = _parse_body(ModificationResultBody, await request.body())

        def _result() -> dict[str, Any]:
            modifications.require_owned(modification_id, account["id"])
            return modifications.update_result(
                modification_id, success=body.success, message=body.message, details=body.details
            )

        row = await run_in_threadpool(_result)
        return {"success": True, "id": modification_id, "status": row["status"]}

    return app


def run_web(settings: Settings) -> None:
    app = create_app(settings)
    uvicorn.run(app, host=settings.web_host, port=settings.web_port, log_level=settings.log_level.lower())
