from __future__ import annotations

import math
import secrets
import sqlite3
from pathlib import Path
from typing import Any, Iterable

from adsaudit.errors import BadRequestError, ConflictError, NotFoundError
from adsaudit.util import camelize, json_dumps, json_loads, new_id, now_utc_iso, strip_dashes

SCHEDULE_FREQUENCIES = ("weekly", "biweekly", "monthly")


def clamp_page(page: int | None, limit: int | None, *, default_limit: int = 50, max_limit: int = 100) -> tuple[int, int]:
    p = page if page and page > 0 else 1
    lim = limit if limit and limit > 0 else default_limit
    return p, min(lim, max_limit)


def page_meta(total: int, page: int, limit: int) -> dict[str, int]:
    return {
        "total": total,
        "page": page,
        "limit": limit,
        "totalPages": math.ceil(total / limit) if limit else 0,
    }


def paginate(
    conn: sqlite3.Connection,
    *,
    select_sql: str,
    where_sql: str,
    params: Iterable[Any],
    order_sql: str,
    page: int,
    limit: int,
) -> tuple[list[dict[str, Any]], dict[str, int]]:
    params = list(params)
    total = conn.execute(f"SELECT COUNT(*) AS c FROM ({select_sql} {where_sql})", params).fetchone()["c"]
    rows = conn.execute(
        f"{select_sql} {where_sql} {order_sql} LIMIT ? OFFSET ?",
        [*params, limit, (page - 1) * limit],
    ).fetchall()
    return [dict(r) for r in rows], page_meta(int(total), page, limit)


def account_out(row: dict[str, Any]) -> dict[str, Any]:
    out = camelize({k: v for k, v in row.items() if k != "shared_secret"})
    out["isActive"] = bool(out.get("isActive"))
    out["scheduleEnabled"] = bool(out.get("scheduleEnabled"))
    return out


def user_out(row: dict[str, Any]) -> dict[str, Any]:
    out = camelize({k: v for k, v in row.items() if k != "password_hash"})
    out["isActive"] = bool(out.get("isActive"))
    return out


class Repo:
    """
    Central DB access for web/worker/cli.

    Domain services (modifications, decisions, audit rules...) borrow
    `connect()` from here so every connection gets the same pragmas.
    """

    def __init__(self, db_path: Path):
        self.db_path = db_path

    def connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON;")
        conn.execute("PRAGMA journal_mode = WAL;")
        return conn

    # ------------------------------------------------------------------ #
    # Accounts
    # ------------------------------------------------------------------ #

    def create_account(
        self,
        *,
        customer_id: str,
        customer_name: str,
        currency_code: str | None = None,
        time_zone: str | None = None,
    ) -> dict[str, Any]:
        cid = strip_dashes(customer_id)
        if not cid.isdigit():
            raise BadRequestError("customerId must contain only digits and dashes")
        name = (customer_name or "").strip()
        if not name:
            raise BadRequestError("customerName is required")
        now = now_utc_iso()
        account_id = new_id("acc")
        with self.connect() as conn:
            existing = conn.execute("SELECT id FROM accounts WHERE customer_id=?", (cid,)).fetchone()
            if existing:
                raise ConflictError(f"Account with customer ID {cid} already exists")
            conn.execute(
                """
                INSERT INTO accounts(id, customer_id, customer_name, currency_code, time_zone,
                                     shared_secret, is_active, created_at, updated_at)
                VALUES(?,?,?,?,?,?,1,?,?)
                """,
                (
                    account_id,
                    cid,
                    name,
                    (currency_code or "EUR").upper(),
                    time_zone or "Europe/Rome",
                    secrets.token_hex(32),
                    now,
                    now,
                ),
            )
        return self.get_account(account_id)

    def get_account_row(self, account_id: str, *, include_inactive: bool = False) -> dict[str, Any] | None:
        with self.connect() as conn:
            row = conn.execute("SELECT * FROM accounts WHERE id=?", (account_id,)).fetchone()
        if not row:
            return None
        if not include_inactive and not row["is_active"]:
            return None
        return dict(row)

    def require_account_row(self, account_id: str) -> dict[str, Any]:
        row = self.get_account_row(account_id)
        if not row:
            raise NotFoundError(f"Account {account_id} not found")
        return row

    def get_account(self, account_id: str) -> dict[str, Any]:
        return account_out(self.require_account_row(account_id))

    def find_active_by_customer_id(self, customer_id: str) -> dict[str, Any] | None:
        with self.connect() as conn:
            row = conn.execute(
                "SELECT * FROM accounts WHERE customer_id=? AND is_active=1",
                (strip_dashes(customer_id),),
            ).fetchone()
        return dict(row) if row else None

    def list_accounts(self) -> list[dict[str, Any]]:
        with self.connect() as conn:
            rows = conn.execute(
                "SELECT * FROM accounts WHERE is_active=1 ORDER BY customer_name ASC"
            ).fetchall()
        return [account_out(dict(r)) for r in rows]

    def list_account_rows(self) -> list[dict[str, Any]]:
        with self.connect() as conn:
            rows = conn.execute("SELECT * FROM accounts WHERE is_active=1 ORDER BY customer_name ASC").fetchall()
        return [dict(r) for r in rows]

    def list_accounts_with_stats(self) -> list[dict[str, Any]]:
        out: list[dict[str, Any]] = []
        with self.connect() as conn:
            accounts = conn.execute(
                "SELECT * FROM accounts WHERE is_active=1 ORDER BY customer_name ASC"
            ).fetchall()
            for acc in accounts:
                item = account_out(dict(acc))
                run = self._latest_run(conn, acc["id"])
                item["lastRun"] = camelize(run) if run else None
                issues = 0
                if run:
                    issues = conn.execute(
                        "SELECT COUNT(*) AS c FROM audit_issues WHERE account_id=? AND run_id=? AND status='open'",
                        (acc["id"], run["run_id"]),
                    ).fetchone()["c"]
                item["openIssues"] = int(issues)
                counts = conn.execute(
                    """
                    SELECT status, COUNT(*) AS c FROM modifications
                    WHERE account_id=? AND status IN ('pending', 'approved')
                    GROUP BY status
                    """,
                    (acc["id"],),
                ).fetchall()
                by_status = {r["status"]: int(r["c"]) for r in counts}
                item["pendingModifications"] = by_status.get("pending", 0)
                item["approvedModifications"] = by_status.get("approved", 0)
                out.append(item)
        return out

    def update_schedule(
        self,
        account_id: str,
        *,
        enabled: bool | None = None,
        days: list[int] | None = None,
        time: str | None = None,
        frequency: str | None = None,
    ) -> dict[str, Any]:
        self.require_account_row(account_id)
        sets: list[str] = []
        params: list[Any] = []
        if enabled is not None:
            sets.append("schedule_enabled=?")
            params.append(1 if enabled else 0)
        if days is not None:
            if any(not isinstance(d, int) or d < 0 or d > 6 for d in days):
                raise BadRequestError("scheduleDays must be weekday numbers 0-6")
            sets.append("schedule_days_json=?")
            params.append(json_dumps(sorted(set(days))))
        if time is not None:
            if not _valid_hhmm(time):
                raise BadRequestError("scheduleTime must be HH:MM")
            sets.append("schedule_time=?")
            params.append(time)
        if frequency is not None:
            if frequency not in SCHEDULE_FREQUENCIES:
                raise BadRequestError(f"scheduleFrequency must be one of: {', '.join(SCHEDULE_FREQUENCIES)}")
            sets.append("schedule_frequency=?")
            params.append(frequency)
        if sets:
            sets.append("updated_at=?")
            params.append(now_utc_iso())
            with self.connect() as conn:
                conn.execute(f"UPDATE accounts SET {', '.join(sets)} WHERE id=?", (*params, account_id))
        return self.get_account(account_id)

    def mark_scheduled_run(self, account_id: str, at_iso: str) -> None:
        with self.connect() as conn:
            conn.execute(
                "UPDATE accounts SET last_scheduled_run_at=?, updated_at=? WHERE id=?",
                (at_iso, now_utc_iso(), account_id),
            )

    # ------------------------------------------------------------------ #
    # Import runs
    # ------------------------------------------------------------------ #

    def _latest_run(self, conn: sqlite3.Connection, account_id: str) -> dict[str, Any] | None:
        row = conn.execute(
            """
            SELECT * FROM import_runs
            WHERE account_id=? AND status='completed'
            ORDER BY completed_at DESC, started_at DESC
            LIMIT 1
            """,
            (account_id,),
        ).fetchone()
        return dict(row) if row else None

    def get_latest_run(self, account_id: str) -> dict[str, Any] | None:
        with self.connect() as conn:
            return self._latest_run(conn, account_id)

    def get_run(self, run_id: str) -> dict[str, Any] | None:
        with self.connect() as conn:
            row = conn.execute("SELECT * FROM import_runs WHERE run_id=?", (run_id,)).fetchone()
        return dict(row) if row else None

    def resolve_run_id(self, account_id: str, run_id: str | None = None) -> str | None:
        """Explicit run (must belong to the account) or the latest completed one."""
        if run_id:
            run = self.get_run(run_id)
            if not run or run["account_id"] != account_id:
                raise NotFoundError(f"Import run {run_id} not found")
            return run_id
        latest = self.get_latest_run(account_id)
        return latest["run_id"] if latest else None

    def list_import_runs(self, account_id: str, *, limit: int = 20) -> list[dict[str, Any]]:
        with self.connect() as conn:
            rows = conn.execute(
                "SELECT * FROM import_runs WHERE account_id=? ORDER BY started_at DESC LIMIT ?",
                (account_id, limit),
            ).fetchall()
        return [camelize(dict(r)) for r in rows]

    # ------------------------------------------------------------------ #
    # System settings
    # ------------------------------------------------------------------ #

    def get_setting(self, key: str) -> str | None:
        with self.connect() as conn:
            row = conn.execute("SELECT value FROM system_settings WHERE key=?", (key,)).fetchone()
        return row["value"] if row else None

    def set_setting(self, key: str, value: str | None) -> None:
        with self.connect() as conn:
            if value is None or value == "":
                conn.execute("DELETE FROM system_settings WHERE key=?", (key,))
                return
            conn.execute(
                """
                INSERT INTO system_settings(key, value, updated_at) VALUES(?,?,?)
                ON CONFLICT(key) DO UPDATE SET value=excluded.value, updated_at=excluded.updated_at
                """,
                (key, value, now_utc_iso()),
            )

    # ------------------------------------------------------------------ #
    # Users / sessions / audit log
    # ------------------------------------------------------------------ #

    def get_user_row(self, user_id: str) -> dict[str, Any] | None:
        with self.connect() as conn:
            row = conn.execute("SELECT * FROM users WHERE id=?", (user_id,)).fetchone()
        return dict(row) if row else None

    def get_user_by_email(self, email: str) -> dict[str, Any] | None:
        with self.connect() as conn:
            row = conn.execute("SELECT * FROM users WHERE email=?", ((email or "").strip().lower(),)).fetchone()
        return dict(row) if row else None

    def list_users(self) -> list[dict[str, Any]]:
        with self.connect() as conn:
            rows = conn.execute("SELECT * FROM users ORDER BY created_at ASC").fetchall()
        return [user_out(dict(r)) for r in rows]

    def insert_user(self, *, email: str, name: str, role: str, password_hash: str) -> dict[str, Any]:
        now = now_utc_iso()
        user_id = new_id("usr")
        with self.connect() as conn:
            if conn.execute("SELECT 1 FROM users WHERE email=?", (email,)).fetchone():
                raise ConflictError(f"User {email} already exists")
            conn.execute(
                """
                INSERT INTO users(id, email, name, role, password_hash, is_active, created_at, updated_at)
                VALUES(?,?,?,?,?,1,?,?)
                """,
                (user_id, email, name, role, password_hash, now, now),
            )
        row = self.get_user_row(user_id)
        assert row is not None
        return row

    def update_user_fields(self, user_id: str, **fields: Any) -> None:
        if not fields:
            return
        fields["updated_at"] = now_utc_iso()
        cols = ", ".join(f"{k}=?" for k in fields)
        with self.connect() as conn:
            conn.execute(f"UPDATE users SET {cols} WHERE id=?", (*fields.values(), user_id))

    def insert_session(
        self, *, token_hash: str, user_id: str, expires_at: str, ip: str | None, user_agent: str | None
    ) -> None:
        with self.connect() as conn:
            conn.execute(
                """
                INSERT INTO sessions(token_hash, user_id, expires_at, ip_address, user_agent, created_at)
                VALUES(?,?,?,?,?,?)
                """,
                (token_hash, user_id, expires_at, ip, user_agent, now_utc_iso()),
            )

    def get_session(self, token_hash: str) -> dict[str, Any] | None:
        with self.connect() as conn:
            row = conn.execute("SELECT * FROM sessions WHERE token_hash=?", (token_hash,)).fetchone()
        return dict(row) if row else None

    def delete_session(self, token_hash: str) -> None:
        with self.connect() as conn:
            conn.execute("DELETE FROM sessions WHERE token_hash=?", (token_hash,))

    def add_audit_log(
        self,
        *,
        user_id: str | None,
        action: str,
        entity_type: str | None = None,
        entity_id: str | None = None,
        details: dict[str, Any] | None = None,
        ip: str | None = None,
        user_agent: str | None = None,
    ) -> None:
        with self.connect() as conn:
            conn.execute(
                """
                INSERT INTO audit_logs(user_id, action, entity_type, entity_id, details_json,
                                       ip_address, user_agent, created_at)
                VALUES(?,?,?,?,?,?,?,?)
                """,
                (user_id, action, entity_type, entity_id, json_dumps(details or {}), ip, user_agent, now_utc_iso()),
            )

    def list_audit_logs(self, *, limit: int = 100) -> list[dict[str, Any]]:
        with self.connect() as conn:
            rows = conn.execute("SELECT * FROM audit_logs ORDER BY id DESC LIMIT ?", (limit,)).fetchall()
        return [camelize(dict(r)) for r in rows]


def _valid_hhmm(value: str) -> bool:
    parts = (value or "").split(":")
    if len(parts) != 2 or not all(p.isdigit() and len(p) == 2 for p in parts):
        return False
    return 0 <= int(parts[0]) <= 23 and 0 <= int(parts[1]) <= 59


def schedule_days(account_row: dict[str, Any]) -> list[int]:
    days = json_loads(account_row.get("schedule_days_json"), [])
    return [int(d) for d in days if isinstance(d, int)]
