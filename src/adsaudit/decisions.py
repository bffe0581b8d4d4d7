from __future__ import annotations

import sqlite3
from typing import Any

from adsaudit.errors import AuditError, BadRequestError, NotFoundError
from adsaudit.log import get_logger
from adsaudit.repo import Repo, clamp_page, paginate
from adsaudit.schemas import DecisionCreate, DecisionUpdate
from adsaudit.util import camelize, json_dumps, new_id, now_utc_iso

logger = get_logger(__name__)

STATUSES = ("draft", "approved", "exported", "applied", "rolled_back")

_SORT_COLUMNS = {
    "createdAt": "created_at",
    "moduleId": "module_id",
    "entityType": "entity_type",
    "actionType": "action_type",
    "status": "status",
    "entityName": "entity_name",
}

_LOCKED = ("exported", "applied")


def decision_out(row: dict[str, Any]) -> dict[str, Any]:
    out = camelize(row)
    out["isCurrent"] = bool(out.get("isCurrent"))
    return out


def _json_or_none(value: dict[str, Any] | None) -> str | None:
    return json_dumps(value) if value is not None else None


class DecisionService:
    def __init__(self, repo: Repo):
        self.repo = repo

    def _get_row(self, conn: sqlite3.Connection, decision_id: str) -> dict[str, Any]:
        row = conn.execute("SELECT * FROM decisions WHERE id=?", (decision_id,)).fetchone()
        if not row:
            raise NotFoundError(f"Decision {decision_id} not found")
        return dict(row)

    def find_one(self, decision_id: str) -> dict[str, Any]:
        with self.repo.connect() as conn:
            return decision_out(self._get_row(conn, decision_id))

    def find_all(
        self,
        account_id: str,
        *,
        module_id: int | None = None,
        entity_type: str | None = None,
        action_type: str | None = None,
        status: str | None = None,
        current_only: bool = True,
        sort_by: str | None = None,
        sort_order: str | None = None,
        page: int | None = None,
        limit: int | None = None,
    ) -> dict[str, Any]:
        self.repo.require_account_row(account_id)
        page, limit = clamp_page(page, limit)
        where = ["account_id=?"]
        params: list[Any] = [account_id]
        if current_only:
            where.append("is_current=1")
        for col, value in (
            ("module_id", module_id),
            ("entity_type", entity_type),
            ("action_type", action_type),
            ("status", status),
        ):
            if value is not None and value != "":
                where.append(f"{col}=?")
                params.append(value)
        col = _SORT_COLUMNS.get(sort_by or "", "created_at")
        direction = "ASC" if (sort_order or "").upper() == "ASC" else "DESC"
        with self.repo.connect() as conn:
            rows, meta = paginate(
                conn,
                select_sql="SELECT * FROM decisions",
                where_sql="WHERE " + " AND ".join(where),
                params=params,
                order_sql=f"ORDER BY {col} {direction}, version DESC",
                page=page,
                limit=limit,
            )
        return {"data": [decision_out(r) for r in rows], "meta": meta}

    def _insert(
        self,
        conn: sqlite3.Connection,
        *,
        account_id: str,
        group_id: str,
        version: int,
        module_id: int,
        entity_type: str,
        entity_id: str,
        entity_name: str | None,
        action_type: str,
        before_json: str | None,
        after_json: str | None,
        rationale: str | None,
        evidence_json: str | None,
        status: str,
        change_set_id: str | None,
        created_by: str | None,
    ) -> str:
        decision_id = new_id("dec")
        conn.execute(
            """
            INSERT INTO decisions(id, account_id, decision_group_id, version, is_current, module_id, entity_type,
                                  entity_id, entity_name, action_type, before_value_json, after_value_json,
                                  rationale, evidence_json, status, change_set_id, created_by, created_at)
            VALUES(?,?,?,?,1,?,?,?,?,?,?,?,?,?,?,?,?,?)
            """,
            (
                decision_id,
                account_id,
                group_id,
                version,
                module_id,
                entity_type,
                entity_id,
                entity_name,
                action_type,
                before_json,
                after_json,
                rationale,
                evidence_json,
                status,
                change_set_id,
                created_by,
                now_utc_iso(),
            ),
        )
        return decision_id

    def create(self, dto: DecisionCreate, user: dict[str, Any] | None) -> dict[str, Any]:
        self.repo.require_account_row(dto.account_id)
        with self.repo.connect() as conn:
            decision_id = self._insert(
                conn,
                account_id=dto.account_id,
                group_id=new_id("dgr"),
                version=1,
                module_id=dto.module_id,
                entity_type=dto.entity_type,
                entity_id=dto.entity_id,
                entity_name=dto.entity_name,
                action_type=dto.action_type,
                before_json=_json_or_none(dto.before_value),
                after_json=_json_or_none(dto.after_value),
                rationale=dto.rationale,
                evidence_json=_json_or_none(dto.evidence),
                status="draft",
                change_set_id=None,
                created_by=user["id"] if user else None,
            )
        return self.find_one(decision_id)

    def _supersede(self, conn: sqlite3.Connection, old: dict[str, Any], new_id_: str) -> None:
        conn.execute(
            "UPDATE decisions SET is_current=0, superseded_by=?, change_set_id=NULL WHERE id=?",
            (new_id_, old["id"]),
        )

    def update(self, decision_id: str, dto: DecisionUpdate, user: dict[str, Any] | None) -> dict[str, Any]:
        """Write a new draft version carrying the changes; the old row stays as history."""
        with self.repo.connect() as conn:
            old = self._get_row(conn, decision_id)
            if not old["is_current"]:
                raise BadRequestError("Cannot update a non-current decision version")
            if old["status"] in _LOCKED:
                raise BadRequestError(f"Cannot update a decision with status {old['status']}")
            fields = dto.model_dump(exclude_unset=True)
            new_decision = self._insert(
                conn,
                account_id=old["account_id"],
                group_id=old["decision_group_id"],
                version=old["version"] + 1,
                module_id=old["module_id"],
                entity_type=old["entity_type"],
                entity_id=old["entity_id"],
                entity_name=old["entity_name"],
                action_type=fields.get("action_type") or old["action_type"],
                before_json=_json_or_none(fields["before_value"]) if "before_value" in fields else old["before_value_json"],
                after_json=_json_or_none(fields["after_value"]) if "after_value" in fields else old["after_value_json"],
                rationale=fields["rationale"] if "rationale" in fields else old["rationale"],
                evidence_json=_json_or_none(fields["evidence"]) if "evidence" in fields else old["evidence_json"],
                status="draft",
                change_set_id=old["change_set_id"],
                created_by=user["id"] if user else None,
            )
            self._supersede(conn, old, new_decision)
        logger.info("decision %s updated -> %s (v%s)", decision_id, new_decision, old["version"] + 1)
        return self.find_one(new_decision)

    def history(self, group_id: str) -> list[dict[str, Any]]:
        with self.repo.connect() as conn:
            rows = conn.execute(
                "SELECT * FROM decisions WHERE decision_group_id=? ORDER BY version DESC",
                (group_id,),
            ).fetchall()
        if not rows:
            raise NotFoundError(f"Decision group {group_id} not found")
        return [decision_out(dict(r)) for r in rows]

    def rollback(self, decision_id: str, user: dict[str, Any] | None) -> dict[str, Any]:
        with self.repo.connect() as conn:
            old = self._get_row(conn, decision_id)
            if not old["is_current"]:
                raise BadRequestError("Can only roll back the current version")
            if old["status"] == "applied":
                raise BadRequestError("Cannot roll back an applied decision")
            new_decision = self._insert(
                conn,
                account_id=old["account_id"],
                group_id=old["decision_group_id"],
                version=old["version"] + 1,
                module_id=old["module_id"],
                entity_type=old["entity_type"],
                entity_id=old["entity_id"],
                entity_name=old["entity_name"],
                action_type="ROLLBACK",
                before_json=old["after_value_json"],
                after_json=old["before_value_json"],
                rationale=f"Rollback of version {old['version']}",
                evidence_json=old["evidence_json"],
                status="rolled_back",
                change_set_id=None,
                created_by=user["id"] if user else None,
            )
            self._supersede(conn, old, new_decision)
        return self.find_one(new_decision)

    def approve(self, decision_id: str) -> dict[str, Any]:
        with self.repo.connect() as conn:
            row = self._get_row(conn, decision_id)
            if not row["is_current"]:
                raise BadRequestError("Can only approve the current version")
            if row["status"] != "draft":
                raise BadRequestError(f"Cannot approve a decision with status {row['status']}")
            conn.execute("UPDATE decisions SET status='approved' WHERE id=?", (decision_id,))
        return self.find_one(decision_id)

    def bulk_approve(self, ids: list[str]) -> list[dict[str, Any]]:
        results: list[dict[str, Any]] = []
        for decision_id in ids:
            try:
                results.append(self.approve(decision_id))
            except AuditError as e:
                results.append({"id": decision_id, "error": str(e)})
        return results

    def delete(self, decision_id: str) -> None:
        with self.repo.connect() as conn:
            row = self._get_row(conn, decision_id)
            if row["status"] in _LOCKED:
                raise BadRequestError(f"Cannot delete a decision with status {row['status']}")
            conn.execute("DELETE FROM decisions WHERE id=?", (decision_id,))

    def summary(self, account_id: str) -> dict[str, Any]:
        with self.repo.connect() as conn:
            rows = conn.execute(
                "SELECT status, module_id, entity_type, action_type FROM decisions WHERE account_id=? AND is_current=1",
                (account_id,),
            ).fetchall()
        out: dict[str, Any] = {"total": len(rows), "byStatus": {}, "byModule": {}, "byEntityType": {}, "byActionType": {}}
        for r in rows:
            for key, value in (
                ("byStatus", r["status"]),
                ("byModule", str(r["module_id"])),
                ("byEntityType", r["entity_type"]),
                ("byActionType", r["action_type"]),
            ):
                out[key][value] = out[key].get(value, 0) + 1
        return out
