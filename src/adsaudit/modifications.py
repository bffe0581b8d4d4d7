from __future__ import annotations

from typing import Any

from adsaudit.errors import AuditError, BadRequestError, ForbiddenError, NotFoundError
from adsaudit.log import get_logger
from adsaudit.repo import Repo, clamp_page, paginate
from adsaudit.schemas import ModificationCreate
from adsaudit.util import camelize, json_dumps, new_id, now_utc_iso, strip_dashes

logger = get_logger(__name__)

STATUSES = ("pending", "approved", "rejected", "processing", "applied", "failed", "cancelled")

ENTITY_TYPES = ("campaign", "ad_group", "ad", "keyword", "negative_keyword", "conversion_action")

MODIFICATION_TYPES = (
    "campaign.budget",
    "campaign.status",
    "campaign.target_cpa",
    "campaign.target_roas",
    "ad_group.status",
    "ad_group.cpc_bid",
    "ad.status",
    "ad.headlines",
    "ad.descriptions",
    "ad.final_url",
    "keyword.status",
    "keyword.cpc_bid",
    "keyword.final_url",
    "keyword.add",
    "negative_keyword.add",
    "negative_keyword.remove",
    "conversion.primary",
    "conversion.default_value",
)

_SORT_COLUMNS = {
    "createdAt": "created_at",
    "entityType": "entity_type",
    "modificationType": "modification_type",
    "status": "status",
    "entityName": "entity_name",
    "appliedAt": "applied_at",
}


def modification_out(row: dict[str, Any]) -> dict[str, Any]:
    return camelize(row)


def script_view(row: dict[str, Any]) -> dict[str, Any]:
    """Shape handed to the Google Ads Script that applies the change."""
    m = camelize(row)
    return {
        "id": m["id"],
        "entityType": m["entityType"],
        "entityId": m["entityId"],
        "entityName": m.get("entityName"),
        "modificationType": m["modificationType"],
        "beforeValue": m.get("beforeValue"),
        "afterValue": m.get("afterValue"),
        "createdAt": m["createdAt"],
    }


def _is_admin(user: dict[str, Any] | None) -> bool:
    return bool(user) and user.get("role") == "admin"


class ModificationService:
    def __init__(self, repo: Repo):
        self.repo = repo

    # ------------------------------------------------------------------ #
    # Reads
    # ------------------------------------------------------------------ #

    def find_all(
        self,
        account_id: str,
        *,
        entity_type: str | None = None,
        modification_type: str | None = None,
        status: str | None = None,
        sort_by: str | None = None,
        sort_order: str | None = None,
        page: int | None = None,
        limit: int | None = None,
    ) -> dict[str, Any]:
        self.repo.require_account_row(account_id)
        page, limit = clamp_page(page, limit)
        where = ["account_id=?"]
        params: list[Any] = [account_id]
        if entity_type:
            where.append("entity_type=?")
            params.append(entity_type)
        if modification_type:
            where.append("modification_type=?")
            params.append(modification_type)
        if status:
            where.append("status=?")
            params.append(status)
        col = _SORT_COLUMNS.get(sort_by or "", "created_at")
        direction = "ASC" if (sort_order or "").upper() == "ASC" else "DESC"
        with self.repo.connect() as conn:
            rows, meta = paginate(
                conn,
                select_sql="SELECT * FROM modifications",
                where_sql="WHERE " + " AND ".join(where),
                params=params,
                order_sql=f"ORDER BY {col} {direction}, id ASC",
                page=page,
                limit=limit,
            )
        return {"data": [modification_out(r) for r in rows], "meta": meta}

    def _get_row(self, modification_id: str) -> dict[str, Any]:
        with self.repo.connect() as conn:
            row = conn.execute("SELECT * FROM modifications WHERE id=?", (modification_id,)).fetchone()
        if not row:
            raise NotFoundError(f"Modification {modification_id} not found")
        return dict(row)

    def find_one(self, modification_id: str) -> dict[str, Any]:
        return modification_out(self._get_row(modification_id))

    def get_summary(self, account_id: str) -> dict[str, Any]:
        with self.repo.connect() as conn:
            by_status = conn.execute(
                "SELECT status, COUNT(*) AS c FROM modifications WHERE account_id=? GROUP BY status",
                (account_id,),
            ).fetchall()
            by_entity = conn.execute(
                "SELECT entity_type, COUNT(*) AS c FROM modifications WHERE account_id=? GROUP BY entity_type",
                (account_id,),
            ).fetchall()
        status_counts = {r["status"]: int(r["c"]) for r in by_status}
        return {
            "total": sum(status_counts.values()),
            "byStatus": status_counts,
            "byEntityType": {r["entity_type"]: int(r["c"]) for r in by_entity},
        }

    def pending_summary(self) -> list[dict[str, Any]]:
        with self.repo.connect() as conn:
            rows = conn.execute(
                """
                SELECT a.id AS account_id, a.customer_id, a.customer_name,
                       SUM(CASE WHEN m.status='pending' THEN 1 ELSE 0 END) AS pending,
                       SUM(CASE WHEN m.status='approved' THEN 1 ELSE 0 END) AS approved,
                       SUM(CASE WHEN m.status='failed' THEN 1 ELSE 0 END) AS failed
                FROM accounts a
                JOIN modifications m ON m.account_id = a.id
                WHERE a.is_active=1 AND m.status IN ('pending', 'approved', 'failed')
                GROUP BY a.id
                ORDER BY a.customer_name ASC
                """
            ).fetchall()
        return [camelize(dict(r)) for r in rows]

    def recent_activity(self, *, limit: int = 20) -> list[dict[str, Any]]:
        with self.repo.connect() as conn:
            rows = conn.execute(
                """
                SELECT m.*, a.customer_name AS account_name
                FROM modifications m JOIN accounts a ON a.id = m.account_id
                ORDER BY m.updated_at DESC
                LIMIT ?
                """,
                (min(max(limit, 1), 100),),
            ).fetchall()
        return [modification_out(dict(r)) for r in rows]

    # ------------------------------------------------------------------ #
    # Writes (dashboard)
    # ------------------------------------------------------------------ #

    def create(self, dto: ModificationCreate, user: dict[str, Any] | None) -> dict[str, Any]:
        self.repo.require_account_row(dto.account_id)
        if dto.entity_type not in ENTITY_TYPES:
            raise BadRequestError(f"Invalid entityType: {dto.entity_type}")
        if dto.modification_type not in MODIFICATION_TYPES:
            raise BadRequestError(f"Invalid modificationType: {dto.modification_type}")
        now = now_utc_iso()
        modification_id = new_id("mod")
        with self.repo.connect() as conn:
            conn.execute(
                """
                INSERT INTO modifications(id, account_id, entity_type, entity_id, entity_name, modification_type,
                                          before_value_json, after_value_json, notes, status, created_by,
                                          created_at, updated_at)
                VALUES(?,?,?,?,?,?,?,?,?,'pending',?,?,?)
                """,
                (
                    modification_id,
                    dto.account_id,
                    dto.entity_type,
                    dto.entity_id,
                    dto.entity_name,
                    dto.modification_type,
                    json_dumps(dto.before_value) if dto.before_value is not None else None,
                    json_dumps(dto.after_value),
                    dto.notes,
                    user["id"] if user else None,
                    now,
                    now,
                ),
            )
        logger.info("modification created id=%s type=%s entity=%s", modification_id, dto.modification_type, dto.entity_id)
        return self.find_one(modification_id)

    def _update(self, modification_id: str, **fields: Any) -> dict[str, Any]:
        fields["updated_at"] = now_utc_iso()
        cols = ", ".join(f"{k}=?" for k in fields)
        with self.repo.connect() as conn:
            conn.execute(f"UPDATE modifications SET {cols} WHERE id=?", (*fields.values(), modification_id))
        return self.find_one(modification_id)

    def approve(self, modification_id: str, user: dict[str, Any]) -> dict[str, Any]:
        if not _is_admin(user):
            raise ForbiddenError("Only admins can approve modifications")
        row = self._get_row(modification_id)
        if row["status"] != "pending":
            raise BadRequestError(f"Cannot approve modification with status {row['status']}")
        logger.info("modification approved id=%s by=%s", modification_id, user["id"])
        return self._update(modification_id, status="approved", approved_by=user["id"], approved_at=now_utc_iso())

    def reject(self, modification_id: str, user: dict[str, Any], reason: str) -> dict[str, Any]:
        if not _is_admin(user):
            raise ForbiddenError("Only admins can reject modifications")
        row = self._get_row(modification_id)
        if row["status"] != "pending":
            raise BadRequestError(f"Cannot reject modification with status {row['status']}")
        logger.info("modification rejected id=%s by=%s", modification_id, user["id"])
        return self._update(
            modification_id,
            status="rejected",
            rejection_reason=reason,
            approved_by=user["id"],
            approved_at=now_utc_iso(),
        )

    def cancel(self, modification_id: str, user: dict[str, Any]) -> dict[str, Any]:
        row = self._get_row(modification_id)
        if row["created_by"] != user["id"] and not _is_admin(user):
            raise ForbiddenError("You can only cancel your own modifications")
        if row["status"] in ("applied", "processing"):
            raise BadRequestError(f"Cannot cancel modification with status {row['status']}")
        return self._update(modification_id, status="cancelled")

    def bulk_approve(self, ids: list[str], user: dict[str, Any]) -> list[dict[str, Any]]:
        results: list[dict[str, Any]] = []
        for modification_id in ids:
            try:
                results.append(self.approve(modification_id, user))
            except AuditError as e:
                results.append({"id": modification_id, "error": str(e)})
        return results

    def bulk_reject(self, ids: list[str], user: dict[str, Any], reason: str) -> list[dict[str, Any]]:
        results: list[dict[str, Any]] = []
        for modification_id in ids:
            try:
                results.append(self.reject(modification_id, user, reason))
            except AuditError as e:
                results.append({"id": modification_id, "error": str(e)})
        return results

    # ------------------------------------------------------------------ #
    # Script side
    # ------------------------------------------------------------------ #

    def _account_id_for_customer(self, customer_id: str) -> str | None:
        account = self.repo.find_active_by_customer_id(strip_dashes(customer_id))
        return account["id"] if account else None

    def get_pending_for_account(self, customer_id: str) -> list[dict[str, Any]]:
        account_id = self._account_id_for_customer(customer_id)
        if not account_id:
            return []
        with self.repo.connect() as conn:
            rows = conn.execute(
                "SELECT * FROM modifications WHERE account_id=? AND status='approved' ORDER BY created_at ASC, id ASC",
                (account_id,),
            ).fetchall()
        return [script_view(dict(r)) for r in rows]

    def get_failed_for_account(self, customer_id: str) -> list[dict[str, Any]]:
        account_id = self._account_id_for_customer(customer_id)
        if not account_id:
            return []
        with self.repo.connect() as conn:
            rows = conn.execute(
                "SELECT * FROM modifications WHERE account_id=? AND status='failed' ORDER BY updated_at DESC",
                (account_id,),
            ).fetchall()
        return [modification_out(dict(r)) for r in rows]

    def delete_failed_for_account(self, customer_id: str) -> dict[str, int]:
        account_id = self._account_id_for_customer(customer_id)
        if not account_id:
            return {"deleted": 0}
        with self.repo.connect() as conn:
            cur = conn.execute("DELETE FROM modifications WHERE account_id=? AND status='failed'", (account_id,))
        return {"deleted": int(cur.rowcount)}

    def require_owned(self, modification_id: str, account_id: str) -> dict[str, Any]:
        row = self._get_row(modification_id)
        if row["account_id"] != account_id:
            raise NotFoundError(f"Modification {modification_id} not found")
        return row

    def mark_as_processing(self, modification_id: str) -> dict[str, Any]:
        row = self._get_row(modification_id)
        if row["status"] != "approved":
            raise BadRequestError(f"Cannot start modification with status {row['status']}")
        return self._update(modification_id, status="processing")

    def update_result(
        self,
        modification_id: str,
        *,
        success: bool,
        message: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        row = self._get_row(modification_id)
        if row["status"] not in ("processing", "approved"):
            raise BadRequestError(f"Cannot update result for modification with status {row['status']}")
        status = "applied" if success else "failed"
        if success:
            logger.info("modification applied id=%s", modification_id)
        else:
            logger.warning("modification failed id=%s: %s", modification_id, message)
        return self._update(
            modification_id,
            status=status,
            applied_at=now_utc_iso(),
            result_message=message or "",
            result_details_json=json_dumps(details or {}),
        )
