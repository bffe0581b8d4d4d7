from __future__ import annotations

import math
import sqlite3
from dataclasses import dataclass, field
from typing import Any, Callable

from adsaudit.errors import BadRequestError
from adsaudit.log import get_logger
from adsaudit.repo import Repo
from adsaudit.schemas import IngestMetadata
from adsaudit.util import json_dumps, new_id, now_utc_iso, snake_to_camel

logger = get_logger(__name__)

DEFAULT_DATASETS_EXPECTED = 10


def _parse_float(v: Any) -> float | None:
    if v is None or isinstance(v, bool):
        return None
    if isinstance(v, (int, float)):
        f = float(v)
    else:
        s = str(v).strip()
        if s == "" or s.lower() in {"null", "none", "nan", "--"}:
            return None
        s = s.replace(",", "").rstrip("%")
        try:
            f = float(s)
        except ValueError:
            return None
    if math.isnan(f) or math.isinf(f):
        return None
    return f


def _parse_int(v: Any) -> int | None:
    f = _parse_float(v)
    if f is None:
        return None
    return int(round(f))


def _text(v: Any) -> str:
    if v is None:
        return ""
    return str(v).strip()


def _opt_text(v: Any) -> str | None:
    s = _text(v)
    return s or None


def _int(v: Any) -> int:
    return _parse_int(v) or 0


def _float(v: Any) -> float:
    return _parse_float(v) or 0.0


def _bool(v: Any) -> int:
    if isinstance(v, bool):
        return 1 if v else 0
    if isinstance(v, (int, float)):
        return 1 if v else 0
    return 1 if _text(v).lower() in {"1", "true", "yes", "y", "on"} else 0


def _json_list(v: Any) -> str:
    if v is None or v == "":
        return "[]"
    if isinstance(v, (list, tuple)):
        return json_dumps(list(v))
    if isinstance(v, str):
        # Scripts sometimes flatten lists into pipe separated strings.
        return json_dumps([p.strip() for p in v.split("|") if p.strip()])
    return json_dumps([v])


Coercer = Callable[[Any], Any]

_METRICS: tuple[tuple[str, Coercer], ...] = (
    ("impressions", _int),
    ("clicks", _int),
    ("cost_micros", _int),
    ("conversions", _float),
    ("conversions_value", _float),
    ("ctr", _float),
    ("average_cpc_micros", _int),
)

_SMALL_METRICS: tuple[tuple[str, Coercer], ...] = (
    ("impressions", _int),
    ("clicks", _int),
    ("cost_micros", _int),
    ("conversions", _float),
)


@dataclass(frozen=True)
class DatasetSpec:
    table: str
    columns: tuple[tuple[str, Coercer], ...]
    # Conflict key (besides account_id/run_id). Empty means append-only.
    key: tuple[str, ...] = ()
    required: tuple[str, ...] = ()
    aliases: dict[str, tuple[str, ...]] = field(default_factory=dict)
    # Rows carry the run's metadata date range in data_date_start/data_date_end.
    dated: bool = True


DATASETS: dict[str, DatasetSpec] = {
    "campaigns": DatasetSpec(
        table="campaigns",
        key=("campaign_id",),
        required=("campaign_id",),
        aliases={"campaign_id": ("id",), "campaign_name": ("name",)},
        columns=(
            ("campaign_id", _text),
            ("campaign_name", _text),
            ("status", _text),
            ("advertising_channel_type", _text),
            ("bidding_strategy_type", _text),
            ("target_cpa_micros", _parse_int),
            ("target_roas", _parse_float),
            ("budget_micros", _parse_int),
            *_METRICS,
            ("search_impression_share", _parse_float),
            ("search_impression_share_lost_rank", _parse_float),
            ("search_impression_share_lost_budget", _parse_float),
            ("search_top_impression_share", _parse_float),
            ("search_absolute_top_impression_share", _parse_float),
            ("top_impression_percentage", _parse_float),
            ("absolute_top_impression_percentage", _parse_float),
            ("phone_calls", _int),
            ("phone_impressions", _int),
            ("message_chats", _int),
            ("message_impressions", _int),
        ),
    ),
    "ad_groups": DatasetSpec(
        table="ad_groups",
        key=("ad_group_id",),
        required=("ad_group_id",),
        columns=(
            ("ad_group_id", _text),
            ("ad_group_name", _text),
            ("campaign_id", _text),
            ("campaign_name", _text),
            ("status", _text),
            ("type", _text),
            ("cpc_bid_micros", _parse_int),
            ("target_cpa_micros", _parse_int),
            *_METRICS,
            ("search_impression_share", _parse_float),
            ("search_impression_share_lost_rank", _parse_float),
            ("search_impression_share_lost_budget", _parse_float),
            ("phone_calls", _int),
            ("message_chats", _int),
        ),
    ),
    "ads": DatasetSpec(
        table="ads",
        key=("ad_id",),
        required=("ad_id",),
        aliases={"ad_type": ("type",)},
        columns=(
            ("ad_id", _text),
            ("ad_group_id", _text),
            ("ad_group_name", _text),
            ("campaign_id", _text),
            ("campaign_name", _text),
            ("ad_type", _text),
            ("status", _text),
            ("approval_status", _text),
            ("ad_strength", _text),
            ("headlines", _json_list),
            ("descriptions", _json_list),
            ("final_urls", _json_list),
            ("path1", _opt_text),
            ("path2", _opt_text),
            *_METRICS,
            ("phone_calls", _int),
            ("message_chats", _int),
        ),
    ),
    "keywords": DatasetSpec(
        table="keywords",
        key=("keyword_id",),
        required=("keyword_id",),
        aliases={"keyword_text": ("text", "keyword")},
        columns=(
            ("keyword_id", _text),
            ("keyword_text", _text),
            ("match_type", _text),
            ("ad_group_id", _text),
            ("ad_group_name", _text),
            ("campaign_id", _text),
            ("campaign_name", _text),
            ("status", _text),
            ("approval_status", _text),
            ("cpc_bid_micros", _parse_int),
            ("final_url", _opt_text),
            ("quality_score", _parse_int),
            ("creative_relevance", _opt_text),
            ("landing_page_experience", _opt_text),
            ("expected_ctr", _opt_text),
            *_METRICS,
            ("search_impression_share", _parse_float),
            ("search_impression_share_lost_rank", _parse_float),
            ("search_impression_share_lost_budget", _parse_float),
            ("phone_calls", _int),
        ),
    ),
    "search_terms": DatasetSpec(
        table="search_terms",
        required=("search_term",),
        aliases={"search_term": ("query",)},
        columns=(
            ("search_term", _text),
            ("keyword_id", _opt_text),
            ("keyword_text", _opt_text),
            ("match_type_triggered", _opt_text),
            ("ad_group_id", _text),
            ("ad_group_name", _text),
            ("campaign_id", _text),
            ("campaign_name", _text),
            *_METRICS,
        ),
    ),
    "negative_keywords": DatasetSpec(
        table="negative_keywords",
        dated=False,
        required=("keyword_text",),
        aliases={"keyword_text": ("text", "keyword")},
        columns=(
            ("negative_keyword_id", _opt_text),
            ("keyword_text", _text),
            ("match_type", _text),
            ("level", _text),
            ("campaign_id", _opt_text),
            ("campaign_name", _opt_text),
            ("ad_group_id", _opt_text),
            ("ad_group_name", _opt_text),
            ("shared_set_id", _opt_text),
            ("shared_set_name", _opt_text),
        ),
    ),
    "assets": DatasetSpec(
        table="assets",
        key=("asset_id",),
        required=("asset_id",),
        columns=(
            ("asset_id", _text),
            ("asset_type", _text),
            ("asset_text", _opt_text),
            ("description1", _opt_text),
            ("description2", _opt_text),
            ("final_url", _opt_text),
            ("phone_number", _opt_text),
            ("status", _text),
            ("performance_label", _opt_text),
            ("source", _opt_text),
            ("linked_level", _opt_text),
            ("campaign_id", _opt_text),
            ("ad_group_id", _opt_text),
            ("impressions", _int),
            ("clicks", _int),
            ("cost_micros", _int),
            ("conversions", _float),
            ("ctr", _float),
        ),
    ),
    "conversion_actions": DatasetSpec(
        table="conversion_actions",
        dated=False,
        key=("conversion_action_id",),
        required=("conversion_action_id",),
        columns=(
            ("conversion_action_id", _text),
            ("name", _text),
            ("status", _text),
            ("type", _text),
            ("category", _text),
            ("origin", _opt_text),
            ("counting_type", _opt_text),
            ("default_value", _parse_float),
            ("always_use_default_value", _bool),
            ("primary_for_goal", _bool),
            ("campaigns_using_count", _int),
        ),
    ),
    "geo_performance": DatasetSpec(
        table="geo_performance",
        key=("campaign_id", "location_id"),
        required=("campaign_id", "location_id"),
        columns=(
            ("campaign_id", _text),
            ("campaign_name", _text),
            ("location_id", _text),
            ("location_name", _opt_text),
            ("location_type", _opt_text),
            ("is_targeted", _bool),
            ("bid_modifier", _parse_float),
            *_SMALL_METRICS,
        ),
    ),
    "device_performance": DatasetSpec(
        table="device_performance",
        key=("campaign_id", "device"),
        required=("campaign_id", "device"),
        columns=(
            ("campaign_id", _text),
            ("campaign_name", _text),
            ("device", _text),
            ("bid_modifier", _parse_float),
            *_SMALL_METRICS,
        ),
    ),
}

VALID_DATASETS = tuple(DATASETS)


def _json_column(spec: DatasetSpec, col: str) -> bool:
    return spec.table == "ads" and col in {"headlines", "descriptions", "final_urls"}


def _db_column(spec: DatasetSpec, col: str) -> str:
    return f"{col}_json" if _json_column(spec, col) else col


def _lookup(row: dict[str, Any], col: str, aliases: tuple[str, ...]) -> Any:
    for k in (col, snake_to_camel(col), *aliases):
        if k in row:
            return row[k]
    return None


def normalize_row(spec: DatasetSpec, row: dict[str, Any]) -> dict[str, Any]:
    """Map one script row (snake_case or camelCase keys) onto table columns."""
    out: dict[str, Any] = {}
    for col, coerce in spec.columns:
        out[_db_column(spec, col)] = coerce(_lookup(row, col, spec.aliases.get(col, ())))
    for col in spec.required:
        if not out.get(col):
            raise BadRequestError(f"Row in dataset {spec.table} is missing required field {col}")
    return out


def _build_insert_sql(spec: DatasetSpec) -> str:
    data_cols = [_db_column(spec, c) for c, _ in spec.columns]
    if spec.dated:
        data_cols += ["data_date_start", "data_date_end"]
    cols = ["account_id", "run_id", *data_cols]
    if not spec.key:
        cols.append("created_at")
    placeholders = ",".join("?" for _ in cols)
    sql = f"INSERT INTO {spec.table}({', '.join(cols)}) VALUES({placeholders})"
    if spec.key:
        conflict = ", ".join(["account_id", "run_id", *spec.key])
        updates = ", ".join(f"{c}=excluded.{c}" for c in data_cols if c not in spec.key)
        sql += f" ON CONFLICT({conflict}) DO UPDATE SET {updates}"
    return sql


def _write_rows(
    conn: sqlite3.Connection,
    spec: DatasetSpec,
    *,
    account_id: str,
    run_id: str,
    rows: list[dict[str, Any]],
    date_range: tuple[str | None, str | None] = (None, None),
) -> int:
    sql = _build_insert_sql(spec)
    now = now_utc_iso()
    written = 0
    for raw in rows:
        if not isinstance(raw, dict):
            raise BadRequestError(f"Rows of dataset {spec.table} must be JSON objects")
        values = list(normalize_row(spec, raw).values())
        params = [account_id, run_id, *values]
        if spec.dated:
            params.extend(date_range)
        if not spec.key:
            params.append(now)
        conn.execute(sql, params)
        written += 1
    return written


def ingest_chunk(
    repo: Repo,
    *,
    account: dict[str, Any],
    metadata: IngestMetadata,
    rows: list[dict[str, Any]],
) -> dict[str, Any]:
    """
    Store one chunk of one dataset of an import run.

    Chunks are idempotent on (run, dataset, index). Run bookkeeping, the
    chunk marker and the dataset rows are written in a single transaction;
    on failure the run is marked failed and the error propagates.
    """
    spec = DATASETS.get(metadata.dataset_name)
    if spec is None:
        raise BadRequestError(
            f"Invalid dataset name: {metadata.dataset_name}. Valid datasets: {', '.join(VALID_DATASETS)}"
        )
    if metadata.chunk_index >= metadata.chunk_total:
        raise BadRequestError("chunkIndex must be lower than chunkTotal")

    account_id = account["id"]
    existing_run = repo.get_run(metadata.run_id)
    if existing_run and existing_run["account_id"] != account_id:
        raise BadRequestError(f"Run {metadata.run_id} belongs to a different account")

    conn = repo.connect()
    try:
        with conn:
            dup = _find_chunk(conn, metadata)
            if dup:
                return _duplicate_chunk(metadata, dup["id"])

            now = now_utc_iso()
            if not existing_run:
                run_meta = {
                    "dateRangeStart": metadata.date_range_start,
                    "dateRangeEnd": metadata.date_range_end,
                }
                conn.execute(
                    """
                    INSERT OR IGNORE INTO import_runs(run_id, account_id, status, datasets_expected, datasets_received,
                                            total_rows, metadata_json, started_at)
                    VALUES(?,?,'in_progress',?,0,0,?,?)
                    """,
                    (
                        metadata.run_id,
                        account_id,
                        metadata.datasets_expected or DEFAULT_DATASETS_EXPECTED,
                        json_dumps(run_meta),
                        now,
                    ),
                )

            chunk_id = new_id("chk")
            try:
                conn.execute(
                    """
                    INSERT INTO import_chunks(id, run_id, dataset_name, chunk_index, chunk_total, row_count,
                                              created_at)
                    VALUES(?,?,?,?,?,?,?)
                    """,
                    (
                        chunk_id,
                        metadata.run_id,
                        metadata.dataset_name,
                        metadata.chunk_index,
                        metadata.chunk_total,
                        metadata.row_count,
                        now,
                    ),
                )
            except sqlite3.IntegrityError:
                # A concurrent retry stored the same chunk first.
                conn.rollback()
                dup = _find_chunk(conn, metadata)
                if not dup:
                    raise
                return _duplicate_chunk(metadata, dup["id"])

            written = _write_rows(
                conn,
                spec,
                account_id=account_id,
                run_id=metadata.run_id,
                rows=rows,
                date_range=(metadata.date_range_start, metadata.date_range_end),
            )

            conn.execute(
                "UPDATE import_runs SET total_rows = total_rows + ? WHERE run_id=?",
                (metadata.row_count, metadata.run_id),
            )

            received = conn.execute(
                "SELECT COUNT(*) AS c FROM import_chunks WHERE run_id=? AND dataset_name=?",
                (metadata.run_id, metadata.dataset_name),
            ).fetchone()["c"]
            completed_now = False
            if int(received) == metadata.chunk_total:
                conn.execute(
                    "UPDATE import_runs SET datasets_received = datasets_received + 1 WHERE run_id=?",
                    (metadata.run_id,),
                )
                run = conn.execute(
                    "SELECT datasets_received, datasets_expected, status FROM import_runs WHERE run_id=?",
                    (metadata.run_id,),
                ).fetchone()
                if run["status"] != "completed" and run["datasets_received"] >= run["datasets_expected"]:
                    conn.execute(
                        "UPDATE import_runs SET status='completed', completed_at=? WHERE run_id=?",
                        (now, metadata.run_id),
                    )
                    completed_now = True

            status = conn.execute(
                "SELECT status FROM import_runs WHERE run_id=?", (metadata.run_id,)
            ).fetchone()["status"]
    except Exception as e:
        logger.error(
            "chunk failed run=%s dataset=%s index=%s: %s",
            metadata.run_id,
            metadata.dataset_name,
            metadata.chunk_index,
            e,
        )
        _mark_run_failed(repo, metadata.run_id, str(e))
        raise
    finally:
        conn.close()

    logger.info(
        "chunk stored run=%s dataset=%s index=%s/%s rows=%s status=%s",
        metadata.run_id,
        metadata.dataset_name,
        metadata.chunk_index + 1,
        metadata.chunk_total,
        written,
        status,
    )
    return {
        "success": True,
        "message": "Chunk processed successfully",
        "chunkId": chunk_id,
        "runId": metadata.run_id,
        "datasetName": metadata.dataset_name,
        "rowsProcessed": written,
        "runStatus": status,
        "runCompleted": completed_now,
    }


def _find_chunk(conn: sqlite3.Connection, metadata: IngestMetadata) -> sqlite3.Row | None:
    return conn.execute(
        "SELECT id FROM import_chunks WHERE run_id=? AND dataset_name=? AND chunk_index=?",
        (metadata.run_id, metadata.dataset_name, metadata.chunk_index),
    ).fetchone()


def _duplicate_chunk(metadata: IngestMetadata, chunk_id: str) -> dict[str, Any]:
    logger.info(
        "duplicate chunk run=%s dataset=%s index=%s",
        metadata.run_id,
        metadata.dataset_name,
        metadata.chunk_index,
    )
    return {"success": True, "message": "Chunk already processed (idempotent)", "chunkId": chunk_id}


def _mark_run_failed(repo: Repo, run_id: str, message: str) -> None:
    with repo.connect() as conn:
        conn.execute(
            "UPDATE import_runs SET status='failed', error_message=? WHERE run_id=?",
            (message[:2000], run_id),
        )
