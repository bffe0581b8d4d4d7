from __future__ import annotations

import io
import re
import sqlite3
import time
import zipfile
from typing import Any

from adsaudit.decisions import decision_out
from adsaudit.errors import BadRequestError, NotFoundError
from adsaudit.export.csv_generator import GeneratedFile, generate_csv_files, generate_readme
from adsaudit.log import get_logger
from adsaudit.repo import Repo, clamp_page, paginate
from adsaudit.schemas import ChangeSetCreate, ChangeSetUpdate
from adsaudit.util import camelize, json_dumps, new_id, now_utc_iso, sha256_hex

logger = get_logger(__name__)

STATUSES = ("draft", "approved", "exported", "applied")

_SORT_COLUMNS = {
    "createdAt": "cs.created_at",
    "name": "cs.name",
    "status": "cs.status",
    "exportedAt": "cs.exported_at",
}

PREVIEW_LINES = 6


def change_set_out(row: dict[str, Any]) -> dict[str, Any]:
    return camelize(row)


class ChangeSetService:
    def __init__(self, repo: Repo):
        self.repo = repo

    def _get_row(self, conn: sqlite3.Connection, change_set_id: str) -> dict[str, Any]:
        row = conn.execute("SELECT * FROM change_sets WHERE id=?", (change_set_id,)).fetchone()
        if not row:
            raise NotFoundError(f"Change set {change_set_id} not found")
        return dict(row)

    def _decision_rows(self, conn: sqlite3.Connection, change_set_id: str) -> list[dict[str, Any]]:
        rows = conn.execute(
            """
            SELECT * FROM decisions WHERE change_set_id=? AND is_current=1
            ORDER BY module_id ASC, entity_type ASC, created_at ASC
            """,
            (change_set_id,),
        ).fetchall()
        return [dict(r) for r in rows]

    def find_all(
        self,
        account_id: str,
        *,
        status: str | None = None,
        sort_by: str | None = None,
        sort_order: str | None = None,
        page: int | None = None,
        limit: int | None = None,
    ) -> dict[str, Any]:
        self.repo.require_account_row(account_id)
        page, limit = clamp_page(page, limit, default_limit=20)
        where = ["cs.account_id=?"]
        params: list[Any] = [account_id]
        if status:
            where.append("cs.status=?")
            params.append(status)
        col = _SORT_COLUMNS.get(sort_by or "", "cs.created_at")
        direction = "ASC" if (sort_order or "").upper() == "ASC" else "DESC"
        with self.repo.connect() as conn:
            rows, meta = paginate(
                conn,
                select_sql=(
                    "SELECT cs.*, (SELECT COUNT(*) FROM decisions d "
                    "WHERE d.change_set_id=cs.id AND d.is_current=1) AS decisions_count "
                    "FROM change_sets cs"
                ),
                where_sql="WHERE " + " AND ".join(where),
                params=params,
                order_sql=f"ORDER BY {col} {direction}",
                page=page,
                limit=limit,
            )
        return {"data": [change_set_out(r) for r in rows], "meta": meta}

    def find_one(self, change_set_id: str) -> dict[str, Any]:
        with self.repo.connect() as conn:
            row = self._get_row(conn, change_set_id)
            decisions = self._decision_rows(conn, change_set_id)
        out = change_set_out(row)
        out["decisions"] = [decision_out(d) for d in decisions]
        out["decisionsCount"] = len(decisions)
        return out

    def _attach(self, conn: sqlite3.Connection, change_set: dict[str, Any], decision_ids: list[str]) -> None:
        for decision_id in decision_ids:
            row = conn.execute("SELECT * FROM decisions WHERE id=?", (decision_id,)).fetchone()
            if not row or row["account_id"] != change_set["account_id"] or not row["is_current"]:
                raise BadRequestError(f"Decision {decision_id} is not a current decision of this account")
            if row["status"] in ("exported", "applied"):
                raise BadRequestError(f"Decision {decision_id} is already {row['status']}")
        conn.executemany(
            "UPDATE decisions SET change_set_id=? WHERE id=?",
            [(change_set["id"], d) for d in decision_ids],
        )

    def create(self, dto: ChangeSetCreate, user: dict[str, Any] | None) -> dict[str, Any]:
        self.repo.require_account_row(dto.account_id)
        now = now_utc_iso()
        change_set_id = new_id("cs")
        with self.repo.connect() as conn:
            conn.execute(
                """
                INSERT INTO change_sets(id, account_id, name, description, status, created_by, created_at, updated_at)
                VALUES(?,?,?,?, 'draft', ?,?,?)
                """,
                (change_set_id, dto.account_id, dto.name, dto.description, user["id"] if user else None, now, now),
            )
            if dto.decision_ids:
                self._attach(conn, self._get_row(conn, change_set_id), dto.decision_ids)
        return self.find_one(change_set_id)

    def update(self, change_set_id: str, dto: ChangeSetUpdate) -> dict[str, Any]:
        with self.repo.connect() as conn:
            row = self._get_row(conn, change_set_id)
            if row["status"] in ("exported", "applied"):
                raise BadRequestError("Cannot update an exported change set")
            fields = dto.model_dump(exclude_unset=True)
            updates: dict[str, Any] = {}
            if fields.get("name"):
                updates["name"] = fields["name"]
            if "description" in fields:
                updates["description"] = fields["description"]
            updates["updated_at"] = now_utc_iso()
            cols = ", ".join(f"{k}=?" for k in updates)
            conn.execute(f"UPDATE change_sets SET {cols} WHERE id=?", (*updates.values(), change_set_id))
            if fields.get("decision_ids") is not None:
                conn.execute("UPDATE decisions SET change_set_id=NULL WHERE change_set_id=?", (change_set_id,))
                self._attach(conn, row, fields["decision_ids"])
        return self.find_one(change_set_id)

    def add_decisions(self, change_set_id: str, decision_ids: list[str]) -> dict[str, Any]:
        with self.repo.connect() as conn:
            row = self._get_row(conn, change_set_id)
            if row["status"] != "draft":
                raise BadRequestError("Decisions can only be added to a draft change set")
            self._attach(conn, row, decision_ids)
            conn.execute("UPDATE change_sets SET updated_at=? WHERE id=?", (now_utc_iso(), change_set_id))
        return self.find_one(change_set_id)

    def remove_decision(self, change_set_id: str, decision_id: str) -> dict[str, Any]:
        with self.repo.connect() as conn:
            row = self._get_row(conn, change_set_id)
            if row["status"] != "draft":
                raise BadRequestError("Decisions can only be removed from a draft change set")
            cur = conn.execute(
                "UPDATE decisions SET change_set_id=NULL WHERE id=? AND change_set_id=?",
                (decision_id, change_set_id),
            )
            if cur.rowcount == 0:
                raise NotFoundError(f"Decision {decision_id} is not in change set {change_set_id}")
        return self.find_one(change_set_id)

    def approve(self, change_set_id: str) -> dict[str, Any]:
        now = now_utc_iso()
        with self.repo.connect() as conn:
            row = self._get_row(conn, change_set_id)
            if row["status"] != "draft":
                raise BadRequestError(f"Cannot approve a change set with status {row['status']}")
            if not self._decision_rows(conn, change_set_id):
                raise BadRequestError("Cannot approve an empty change set")
            conn.execute(
                "UPDATE decisions SET status='approved' WHERE change_set_id=? AND status='draft'",
                (change_set_id,),
            )
            conn.execute(
                "UPDATE change_sets SET status='approved', approved_at=?, updated_at=? WHERE id=?",
                (now, now, change_set_id),
            )
        return self.find_one(change_set_id)

    def _generate(self, change_set_id: str) -> tuple[dict[str, Any], list[GeneratedFile]]:
        with self.repo.connect() as conn:
            row = self._get_row(conn, change_set_id)
            decisions = [decision_out(d) for d in self._decision_rows(conn, change_set_id)]
        return row, generate_csv_files(decisions)

    def export(self, change_set_id: str) -> dict[str, Any]:
        with self.repo.connect() as conn:
            row = self._get_row(conn, change_set_id)
            if row["status"] in ("draft", "exported", "applied"):
                raise BadRequestError(f"Cannot export a change set with status {row['status']}")
            if not self._decision_rows(conn, change_set_id):
                raise BadRequestError("Cannot export an empty change set")

        _, files = self._generate(change_set_id)
        export_hash = sha256_hex("".join(f.content for f in files))
        now = now_utc_iso()
        with self.repo.connect() as conn:
            conn.execute(
                """
                UPDATE change_sets
                SET status='exported', exported_at=?, export_files_json=?, export_hash=?, updated_at=?
                WHERE id=?
                """,
                (now, json_dumps([{"filename": f.filename, "rows": f.rows} for f in files]), export_hash, now, change_set_id),
            )
            conn.execute("UPDATE decisions SET status='exported' WHERE change_set_id=?", (change_set_id,))
        logger.info("change set %s exported: %s files hash=%s", change_set_id, len(files), export_hash[:12])
        return self.find_one(change_set_id)

    def download(self, change_set_id: str) -> tuple[str, bytes]:
        """Return `(filename, zip bytes)` for an exported change set."""
        row, files = self._generate(change_set_id)
        if row["status"] != "exported":
            raise BadRequestError("Change set must be exported before download")
        account = self.repo.get_account_row(row["account_id"], include_inactive=True) or {}
        account_name = account.get("customer_name") or row["account_id"]

        buf = io.BytesIO()
        with zipfile.ZipFile(buf, "w", compression=zipfile.ZIP_DEFLATED) as zf:
            zf.writestr("README.md", generate_readme(files, row["name"], account_name))
            for f in files:
                zf.writestr(f.filename, f.content)

        safe = re.sub(r"[^a-zA-Z0-9]", "_", row["name"])
        return f"export_{safe}_{int(time.time() * 1000)}.zip", buf.getvalue()

    def mark_as_applied(self, change_set_id: str) -> dict[str, Any]:
        with self.repo.connect() as conn:
            row = self._get_row(conn, change_set_id)
            if row["status"] != "exported":
                raise BadRequestError("Only exported change sets can be marked as applied")
            conn.execute(
                "UPDATE change_sets SET status='applied', updated_at=? WHERE id=?",
                (now_utc_iso(), change_set_id),
            )
            conn.execute("UPDATE decisions SET status='applied' WHERE change_set_id=?", (change_set_id,))
        return self.find_one(change_set_id)

    def delete(self, change_set_id: str) -> None:
        with self.repo.connect() as conn:
            row = self._get_row(conn, change_set_id)
            if row["status"] == "applied":
                raise BadRequestError("Cannot delete an applied change set")
            conn.execute("UPDATE decisions SET change_set_id=NULL WHERE change_set_id=?", (change_set_id,))
            conn.execute("DELETE FROM change_sets WHERE id=?", (change_set_id,))

    def exportable_decisions(self, account_id: str) -> list[dict[str, Any]]:
        self.repo.require_account_row(account_id)
        with self.repo.connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM decisions
                WHERE account_id=? AND is_current=1 AND status IN ('draft','approved') AND change_set_id IS NULL
                ORDER BY module_id ASC, entity_type ASC
                """,
                (account_id,),
            ).fetchall()
        return [decision_out(dict(r)) for r in rows]

    def preview(self, change_set_id: str) -> list[dict[str, Any]]:
        _, files = self._generate(change_set_id)
        return [
            {
                "filename": f.filename,
                "rows": f.rows,
                "preview": "\n".join(f.content.split("\n")[:PREVIEW_LINES]),
            }
            for f in files
        ]
