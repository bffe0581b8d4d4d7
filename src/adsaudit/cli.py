from __future__ import annotations

import json
from pathlib import Path

import typer

from adsaudit.ai.analysis import AIAnalysisService
from adsaudit.audit_rules import run_all_rules
from adsaudit.auth import AuthService
from adsaudit.config import Settings
from adsaudit.db import AdsDB
from adsaudit.errors import AuditError
from adsaudit.importers.google_ads_script import VALID_DATASETS, ingest_chunk
from adsaudit.log import configure_logging
from adsaudit.repo import Repo
from adsaudit.schemas import CreateUserBody, IngestMetadata
from adsaudit.util import new_id
from adsaudit.web.app import run_web
from adsaudit.worker import run_tick, run_worker

app = typer.Typer(no_args_is_help=True)
account_app = typer.Typer(no_args_is_help=True)
user_app = typer.Typer(no_args_is_help=True)
import_app = typer.Typer(no_args_is_help=True)
app.add_typer(account_app, name="account")
app.add_typer(user_app, name="user")
app.add_typer(import_app, name="import")


def _setup() -> tuple[Settings, Repo]:
    settings = Settings.load()
    configure_logging(settings.log_level)
    AdsDB(settings.db_path).init()
    return settings, Repo(settings.db_path)


def _fail(e: AuditError) -> None:
    typer.echo(f"ERROR: {e}")
    raise typer.Exit(code=2)


def json_dumps(obj) -> str:
    return json.dumps(obj, ensure_ascii=True, indent=2)


@app.command("db")
def db_cmd(
    action: str = typer.Argument(..., help="init"),
) -> None:
    settings = Settings.load()
    db = AdsDB(settings.db_path)
    if action == "init":
        db.init()
        typer.echo(f"OK db init: {settings.db_path}")
        return
    raise typer.BadParameter("action must be one of: init")


@app.command("web")
def web_cmd() -> None:
    settings = Settings.load()
    run_web(settings)


@app.command("worker")
def worker_cmd() -> None:
    settings = Settings.load()
    configure_logging(settings.log_level)
    run_worker(settings)


@app.command("tick")
def tick_cmd() -> None:
    settings, _repo = _setup()
    typer.echo(json_dumps(run_tick(settings)))


@account_app.command("create")
def account_create_cmd(
    customer_id: str = typer.Option(..., help="Google Ads customer id (dashes allowed)"),
    name: str = typer.Option(..., help="Display name"),
    currency: str = typer.Option("EUR", help="Currency code"),
    time_zone: str | None = typer.Option(None, help="IANA time zone, defaults to ADS_TIMEZONE"),
) -> None:
    settings, repo = _setup()
    try:
        account = repo.create_account(
            customer_id=customer_id,
            customer_name=name,
            currency_code=currency,
            time_zone=time_zone or settings.timezone,
        )
    except AuditError as e:
        _fail(e)
        return
    secret = repo.require_account_row(account["id"])["shared_secret"]
    typer.echo(json_dumps(account))
    typer.echo(f"Shared secret (configure it in the Google Ads Script): {secret}")


@account_app.command("list")
def account_list_cmd() -> None:
    _settings, repo = _setup()
    for a in repo.list_accounts():
        typer.echo(f"{a['id']}\t{a['customerId']}\t{a['customerName']}")


@user_app.command("create")
def user_create_cmd(
    email: str = typer.Option(...),
    password: str = typer.Option(..., prompt=True, hide_input=True),
    name: str = typer.Option(""),
    role: str = typer.Option("user", help="admin|user"),
) -> None:
    settings, repo = _setup()
    if role not in {"admin", "user"}:
        raise typer.BadParameter("role must be one of: admin, user")
    auth = AuthService(repo, session_ttl_hours=settings.session_ttl_hours)
    try:
        user = auth.create_user(CreateUserBody(email=email, name=name, password=password, role=role))
    except AuditError as e:
        _fail(e)
        return
    typer.echo(f"OK user created: {user['email']} ({user['role']})")


@app.command("audit")
def audit_cmd(
    account_id: str = typer.Option(..., help="Internal account id"),
    run_id: str | None = typer.Option(None, help="Import run, defaults to the latest completed one"),
) -> None:
    _settings, repo = _setup()
    try:
        resolved = repo.resolve_run_id(account_id, run_id)
    except AuditError as e:
        _fail(e)
        return
    if not resolved:
        typer.echo("ERROR: no completed import run for this account")
        raise typer.Exit(code=2)
    found = run_all_rules(repo, account_id=account_id, run_id=resolved)
    typer.echo(json_dumps({"runId": resolved, "issuesFound": found}))


@app.command("analyze")
def analyze_cmd(
    account_id: str = typer.Option(..., help="Internal account id"),
    module: int | None = typer.Option(None, help="Single module id; all modules when omitted"),
) -> None:
    settings, repo = _setup()
    service = AIAnalysisService(repo, settings)
    try:
        if module is not None:
            res = service.analyze_module(account_id, module)
        else:
            res = service.analyze_all_modules(account_id, trigger="manual")
    except AuditError as e:
        _fail(e)
        return
    typer.echo(json_dumps(res))


@import_app.command("dataset")
def import_dataset_cmd(
    file: Path = typer.Option(..., exists=True, dir_okay=False, help="JSON array of rows"),
    customer_id: str = typer.Option(..., help="Google Ads customer id of the account"),
    dataset: str = typer.Option(..., help=f"one of: {', '.join(VALID_DATASETS)}"),
    run_id: str | None = typer.Option(None, help="Import run id; a new one is generated if omitted"),
    datasets_expected: int = typer.Option(1, help="Datasets that complete the run"),
) -> None:
    """Ingest a local JSON export as a single chunk, same path as the script upload."""
    settings, repo = _setup()
    account = repo.find_active_by_customer_id(customer_id)
    if not account:
        typer.echo(f"ERROR: no active account with customer id {customer_id}")
        raise typer.Exit(code=2)
    rows = json.loads(file.read_text(encoding="utf-8"))
    if not isinstance(rows, list):
        typer.echo("ERROR: file must contain a JSON array of rows")
        raise typer.Exit(code=2)

    metadata = IngestMetadata(
        run_id=run_id or new_id("run"),
        dataset_name=dataset,
        chunk_index=0,
        chunk_total=1,
        row_count=len(rows),
        datasets_expected=datasets_expected,
    )
    try:
        res = ingest_chunk(repo, account=account, metadata=metadata, rows=rows)
    except AuditError as e:
        _fail(e)
        return
    if res.get("runCompleted") and settings.auto_audit_on_complete:
        res["issuesFound"] = run_all_rules(repo, account_id=account["id"], run_id=metadata.run_id)
    typer.echo(json_dumps(res))
