from __future__ import annotations

import sqlite3
from pathlib import Path

from adsaudit.log import get_logger
from adsaudit.util import now_utc_iso

logger = get_logger(__name__)

SCHEMA_VERSION = 2

# Tables stamped with the import run's reporting window (added in v2).
_DATED_TABLES = (
    "ad_groups",
    "ads",
    "keywords",
    "search_terms",
    "assets",
    "geo_performance",
    "device_performance",
)

# Per-run performance tables share the same metric columns.
_METRICS = """
                  impressions INTEGER NOT NULL DEFAULT 0,
                  clicks INTEGER NOT NULL DEFAULT 0,
                  cost_micros INTEGER NOT NULL DEFAULT 0,
                  conversions REAL NOT NULL DEFAULT 0,
                  conversions_value REAL NOT NULL DEFAULT 0,
                  ctr REAL NOT NULL DEFAULT 0,
                  average_cpc_micros INTEGER NOT NULL DEFAULT 0,
"""


class AdsDB:
    def __init__(self, db_path: Path):
        self.db_path = db_path

    def _connect(self) -> sqlite3.Connection:
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON;")
        conn.execute("PRAGMA journal_mode = WAL;")
        return conn

    def init(self) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS meta (
                  key TEXT PRIMARY KEY,
                  value TEXT NOT NULL
                );
                """
            )
            current_version = self._get_schema_version(conn)

            conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS accounts (
                  id TEXT PRIMARY KEY,
                  customer_id TEXT NOT NULL UNIQUE,
                  customer_name TEXT NOT NULL,
                  currency_code TEXT NOT NULL DEFAULT 'EUR',
                  time_zone TEXT NOT NULL DEFAULT 'Europe/Rome',
                  shared_secret TEXT NOT NULL,
                  is_active INTEGER NOT NULL DEFAULT 1,
                  schedule_enabled INTEGER NOT NULL DEFAULT 0,
                  schedule_days_json TEXT NOT NULL DEFAULT '[0]',
                  schedule_time TEXT NOT NULL DEFAULT '07:00',
                  schedule_frequency TEXT NOT NULL DEFAULT 'weekly',
                  last_scheduled_run_at TEXT,
                  created_at TEXT NOT NULL,
                  updated_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS users (
                  id TEXT PRIMARY KEY,
                  email TEXT NOT NULL UNIQUE,
                  name TEXT NOT NULL DEFAULT '',
                  role TEXT NOT NULL DEFAULT 'user',
                  password_hash TEXT NOT NULL,
                  is_active INTEGER NOT NULL DEFAULT 1,
                  failed_login_attempts INTEGER NOT NULL DEFAULT 0,
                  locked_until TEXT,
                  last_login_at TEXT,
                  created_at TEXT NOT NULL,
                  updated_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS sessions (
                  token_hash TEXT PRIMARY KEY,
                  user_id TEXT NOT NULL,
                  expires_at TEXT NOT NULL,
                  ip_address TEXT,
                  user_agent TEXT,
                  created_at TEXT NOT NULL,
                  FOREIGN KEY (user_id) REFERENCES users(id) ON DELETE CASCADE
                );

                CREATE TABLE IF NOT EXISTS audit_logs (
                  id INTEGER PRIMARY KEY AUTOINCREMENT,
                  user_id TEXT,
                  action TEXT NOT NULL,
                  entity_type TEXT,
                  entity_id TEXT,
                  details_json TEXT NOT NULL DEFAULT '{}',
                  ip_address TEXT,
                  user_agent TEXT,
                  created_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS system_settings (
                  key TEXT PRIMARY KEY,
                  value TEXT NOT NULL,
                  updated_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS import_runs (
                  run_id TEXT PRIMARY KEY,
                  account_id TEXT NOT NULL,
                  status TEXT NOT NULL DEFAULT 'in_progress',
                  datasets_expected INTEGER NOT NULL DEFAULT 10,
                  datasets_received INTEGER NOT NULL DEFAULT 0,
                  total_rows INTEGER NOT NULL DEFAULT 0,
                  error_message TEXT,
                  metadata_json TEXT NOT NULL DEFAULT '{}',
                  started_at TEXT NOT NULL,
                  completed_at TEXT,
                  FOREIGN KEY (account_id) REFERENCES accounts(id) ON DELETE CASCADE
                );

                CREATE TABLE IF NOT EXISTS import_chunks (
                  id TEXT PRIMARY KEY,
                  run_id TEXT NOT NULL,
                  dataset_name TEXT NOT NULL,
                  chunk_index INTEGER NOT NULL,
                  chunk_total INTEGER NOT NULL,
                  row_count INTEGER NOT NULL DEFAULT 0,
                  created_at TEXT NOT NULL,
                  UNIQUE (run_id, dataset_name, chunk_index),
                  FOREIGN KEY (run_id) REFERENCES import_runs(run_id) ON DELETE CASCADE
                );

                CREATE INDEX IF NOT EXISTS idx_runs_account_status ON import_runs(account_id, status, completed_at);
                """
            )

            conn.executescript(
                f"""
                CREATE TABLE IF NOT EXISTS campaigns (
                  id INTEGER PRIMARY KEY AUTOINCREMENT,
                  account_id TEXT NOT NULL,
                  run_id TEXT NOT NULL,
                  campaign_id TEXT NOT NULL,
                  campaign_name TEXT NOT NULL DEFAULT '',
                  status TEXT NOT NULL DEFAULT '',
                  advertising_channel_type TEXT NOT NULL DEFAULT '',
                  bidding_strategy_type TEXT NOT NULL DEFAULT '',
                  target_cpa_micros INTEGER,
                  target_roas REAL,
                  budget_micros INTEGER,
                  {_METRICS}
                  search_impression_share REAL,
                  search_impression_share_lost_rank REAL,
                  search_impression_share_lost_budget REAL,
                  search_top_impression_share REAL,
                  search_absolute_top_impression_share REAL,
                  top_impression_percentage REAL,
                  absolute_top_impression_percentage REAL,
                  phone_calls INTEGER NOT NULL DEFAULT 0,
                  phone_impressions INTEGER NOT NULL DEFAULT 0,
                  message_chats INTEGER NOT NULL DEFAULT 0,
                  message_impressions INTEGER NOT NULL DEFAULT 0,
                  data_date_start TEXT,
                  data_date_end TEXT,
                  UNIQUE (account_id, run_id, campaign_id)
                );

                CREATE TABLE IF NOT EXISTS ad_groups (
                  id INTEGER PRIMARY KEY AUTOINCREMENT,
                  account_id TEXT NOT NULL,
                  run_id TEXT NOT NULL,
                  ad_group_id TEXT NOT NULL,
                  ad_group_name TEXT NOT NULL DEFAULT '',
                  campaign_id TEXT NOT NULL DEFAULT '',
                  campaign_name TEXT NOT NULL DEFAULT '',
                  status TEXT NOT NULL DEFAULT '',
                  type TEXT NOT NULL DEFAULT '',
                  cpc_bid_micros INTEGER,
                  target_cpa_micros INTEGER,
                  {_METRICS}
                  search_impression_share REAL,
                  search_impression_share_lost_rank REAL,
                  search_impression_share_lost_budget REAL,
                  phone_calls INTEGER NOT NULL DEFAULT 0,
                  message_chats INTEGER NOT NULL DEFAULT 0,
                  data_date_start TEXT,
                  data_date_end TEXT,
                  UNIQUE (account_id, run_id, ad_group_id)
                );

                CREATE TABLE IF NOT EXISTS ads (
                  id INTEGER PRIMARY KEY AUTOINCREMENT,
                  account_id TEXT NOT NULL,
                  run_id TEXT NOT NULL,
                  ad_id TEXT NOT NULL,
                  ad_group_id TEXT NOT NULL DEFAULT '',
                  ad_group_name TEXT NOT NULL DEFAULT '',
                  campaign_id TEXT NOT NULL DEFAULT '',
                  campaign_name TEXT NOT NULL DEFAULT '',
                  ad_type TEXT NOT NULL DEFAULT '',
                  status TEXT NOT NULL DEFAULT '',
                  approval_status TEXT NOT NULL DEFAULT '',
                  ad_strength TEXT NOT NULL DEFAULT '',
                  headlines_json TEXT NOT NULL DEFAULT '[]',
                  descriptions_json TEXT NOT NULL DEFAULT '[]',
                  final_urls_json TEXT NOT NULL DEFAULT '[]',
                  path1 TEXT,
                  path2 TEXT,
                  {_METRICS}
                  phone_calls INTEGER NOT NULL DEFAULT 0,
                  message_chats INTEGER NOT NULL DEFAULT 0,
                  data_date_start TEXT,
                  data_date_end TEXT,
                  UNIQUE (account_id, run_id, ad_id)
                );

                CREATE TABLE IF NOT EXISTS keywords (
                  id INTEGER PRIMARY KEY AUTOINCREMENT,
                  account_id TEXT NOT NULL,
                  run_id TEXT NOT NULL,
                  keyword_id TEXT NOT NULL,
                  keyword_text TEXT NOT NULL DEFAULT '',
                  match_type TEXT NOT NULL DEFAULT '',
                  ad_group_id TEXT NOT NULL DEFAULT '',
                  ad_group_name TEXT NOT NULL DEFAULT '',
                  campaign_id TEXT NOT NULL DEFAULT '',
                  campaign_name TEXT NOT NULL DEFAULT '',
                  status TEXT NOT NULL DEFAULT '',
                  approval_status TEXT NOT NULL DEFAULT '',
                  cpc_bid_micros INTEGER,
                  final_url TEXT,
                  quality_score INTEGER,
                  creative_relevance TEXT,
                  landing_page_experience TEXT,
                  expected_ctr TEXT,
                  {_METRICS}
                  search_impression_share REAL,
                  search_impression_share_lost_rank REAL,
                  search_impression_share_lost_budget REAL,
                  phone_calls INTEGER NOT NULL DEFAULT 0,
                  data_date_start TEXT,
                  data_date_end TEXT,
                  UNIQUE (account_id, run_id, keyword_id)
                );

                CREATE TABLE IF NOT EXISTS search_terms (
                  id INTEGER PRIMARY KEY AUTOINCREMENT,
                  account_id TEXT NOT NULL,
                  run_id TEXT NOT NULL,
                  search_term TEXT NOT NULL,
                  keyword_id TEXT,
                  keyword_text TEXT,
                  match_type_triggered TEXT,
                  ad_group_id TEXT NOT NULL DEFAULT '',
                  ad_group_name TEXT NOT NULL DEFAULT '',
                  campaign_id TEXT NOT NULL DEFAULT '',
                  campaign_name TEXT NOT NULL DEFAULT '',
                  {_METRICS}
                  data_date_start TEXT,
                  data_date_end TEXT,
                  created_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS negative_keywords (
                  id INTEGER PRIMARY KEY AUTOINCREMENT,
                  account_id TEXT NOT NULL,
                  run_id TEXT NOT NULL,
                  negative_keyword_id TEXT,
                  keyword_text TEXT NOT NULL,
                  match_type TEXT NOT NULL DEFAULT '',
                  level TEXT NOT NULL DEFAULT '',
                  campaign_id TEXT,
                  campaign_name TEXT,
                  ad_group_id TEXT,
                  ad_group_name TEXT,
                  shared_set_id TEXT,
                  shared_set_name TEXT,
                  created_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS assets (
                  id INTEGER PRIMARY KEY AUTOINCREMENT,
                  account_id TEXT NOT NULL,
                  run_id TEXT NOT NULL,
                  asset_id TEXT NOT NULL,
                  asset_type TEXT NOT NULL DEFAULT '',
                  asset_text TEXT,
                  description1 TEXT,
                  description2 TEXT,
                  final_url TEXT,
                  phone_number TEXT,
                  status TEXT NOT NULL DEFAULT '',
                  performance_label TEXT,
                  source TEXT,
                  linked_level TEXT,
                  campaign_id TEXT,
                  ad_group_id TEXT,
                  impressions INTEGER NOT NULL DEFAULT 0,
                  clicks INTEGER NOT NULL DEFAULT 0,
                  cost_micros INTEGER NOT NULL DEFAULT 0,
                  conversions REAL NOT NULL DEFAULT 0,
                  ctr REAL NOT NULL DEFAULT 0,
                  data_date_start TEXT,
                  data_date_end TEXT,
                  UNIQUE (account_id, run_id, asset_id)
                );

                CREATE TABLE IF NOT EXISTS conversion_actions (
                  id INTEGER PRIMARY KEY AUTOINCREMENT,
                  account_id TEXT NOT NULL,
                  run_id TEXT NOT NULL,
                  conversion_action_id TEXT NOT NULL,
                  name TEXT NOT NULL DEFAULT '',
                  status TEXT NOT NULL DEFAULT '',
                  type TEXT NOT NULL DEFAULT '',
                  category TEXT NOT NULL DEFAULT '',
                  origin TEXT,
                  counting_type TEXT,
                  default_value REAL,
                  always_use_default_value INTEGER NOT NULL DEFAULT 0,
                  primary_for_goal INTEGER NOT NULL DEFAULT 0,
                  campaigns_using_count INTEGER NOT NULL DEFAULT 0,
                  UNIQUE (account_id, run_id, conversion_action_id)
                );

                CREATE TABLE IF NOT EXISTS geo_performance (
                  id INTEGER PRIMARY KEY AUTOINCREMENT,
                  account_id TEXT NOT NULL,
                  run_id TEXT NOT NULL,
                  campaign_id TEXT NOT NULL,
                  campaign_name TEXT NOT NULL DEFAULT '',
                  location_id TEXT NOT NULL,
                  location_name TEXT,
                  location_type TEXT,
                  is_targeted INTEGER NOT NULL DEFAULT 0,
                  bid_modifier REAL,
                  impressions INTEGER NOT NULL DEFAULT 0,
                  clicks INTEGER NOT NULL DEFAULT 0,
                  cost_micros INTEGER NOT NULL DEFAULT 0,
                  conversions REAL NOT NULL DEFAULT 0,
                  data_date_start TEXT,
                  data_date_end TEXT,
                  UNIQUE (account_id, run_id, campaign_id, location_id)
                );

                CREATE TABLE IF NOT EXISTS device_performance (
                  id INTEGER PRIMARY KEY AUTOINCREMENT,
                  account_id TEXT NOT NULL,
                  run_id TEXT NOT NULL,
                  campaign_id TEXT NOT NULL,
                  campaign_name TEXT NOT NULL DEFAULT '',
                  device TEXT NOT NULL,
                  bid_modifier REAL,
                  impressions INTEGER NOT NULL DEFAULT 0,
                  clicks INTEGER NOT NULL DEFAULT 0,
                  cost_micros INTEGER NOT NULL DEFAULT 0,
                  conversions REAL NOT NULL DEFAULT 0,
                  data_date_start TEXT,
                  data_date_end TEXT,
                  UNIQUE (account_id, run_id, campaign_id, device)
                );

                CREATE INDEX IF NOT EXISTS idx_search_terms_run ON search_terms(account_id, run_id);
                CREATE INDEX IF NOT EXISTS idx_negatives_run ON negative_keywords(account_id, run_id);
                """
            )

            conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS audit_issues (
                  id TEXT PRIMARY KEY,
                  account_id TEXT NOT NULL,
                  run_id TEXT NOT NULL,
                  rule_id TEXT NOT NULL,
                  title TEXT NOT NULL,
                  description TEXT NOT NULL DEFAULT '',
                  severity TEXT NOT NULL,
                  category TEXT NOT NULL,
                  status TEXT NOT NULL DEFAULT 'open',
                  entity_type TEXT,
                  entity_id TEXT,
                  entity_name TEXT,
                  potential_savings REAL,
                  potential_gain REAL,
                  affected_impressions INTEGER,
                  affected_clicks INTEGER,
                  affected_cost REAL,
                  recommendation TEXT,
                  action_steps_json TEXT NOT NULL DEFAULT '[]',
                  metadata_json TEXT NOT NULL DEFAULT '{}',
                  acknowledged_at TEXT,
                  resolved_at TEXT,
                  created_at TEXT NOT NULL,
                  FOREIGN KEY (account_id) REFERENCES accounts(id) ON DELETE CASCADE
                );

                CREATE TABLE IF NOT EXISTS modifications (
                  id TEXT PRIMARY KEY,
                  account_id TEXT NOT NULL,
                  entity_type TEXT NOT NULL,
                  entity_id TEXT NOT NULL,
                  entity_name TEXT,
                  modification_type TEXT NOT NULL,
                  before_value_json TEXT,
                  after_value_json TEXT NOT NULL,
                  notes TEXT,
                  status TEXT NOT NULL DEFAULT 'pending',
                  rejection_reason TEXT,
                  applied_at TEXT,
                  result_message TEXT,
                  result_details_json TEXT,
                  created_by TEXT,
                  approved_by TEXT,
                  approved_at TEXT,
                  created_at TEXT NOT NULL,
                  updated_at TEXT NOT NULL,
                  FOREIGN KEY (account_id) REFERENCES accounts(id) ON DELETE CASCADE
                );

                CREATE TABLE IF NOT EXISTS change_sets (
                  id TEXT PRIMARY KEY,
                  account_id TEXT NOT NULL,
                  name TEXT NOT NULL,
                  description TEXT,
                  status TEXT NOT NULL DEFAULT 'draft',
                  created_by TEXT,
                  approved_at TEXT,
                  exported_at TEXT,
                  export_files_json TEXT,
                  export_hash TEXT,
                  created_at TEXT NOT NULL,
                  updated_at TEXT NOT NULL,
                  FOREIGN KEY (account_id) REFERENCES accounts(id) ON DELETE CASCADE
                );

                CREATE TABLE IF NOT EXISTS decisions (
                  id TEXT PRIMARY KEY,
                  account_id TEXT NOT NULL,
                  decision_group_id TEXT NOT NULL,
                  version INTEGER NOT NULL DEFAULT 1,
                  is_current INTEGER NOT NULL DEFAULT 1,
                  superseded_by TEXT,
                  module_id INTEGER NOT NULL,
                  entity_type TEXT NOT NULL,
                  entity_id TEXT NOT NULL,
                  entity_name TEXT,
                  action_type TEXT NOT NULL,
                  before_value_json TEXT,
                  after_value_json TEXT,
                  rationale TEXT,
                  evidence_json TEXT,
                  status TEXT NOT NULL DEFAULT 'draft',
                  change_set_id TEXT,
                  created_by TEXT,
                  created_at TEXT NOT NULL,
                  FOREIGN KEY (account_id) REFERENCES accounts(id) ON DELETE CASCADE,
                  FOREIGN KEY (change_set_id) REFERENCES change_sets(id) ON DELETE SET NULL
                );

                CREATE TABLE IF NOT EXISTS ai_analysis_logs (
                  id TEXT PRIMARY KEY,
                  account_id TEXT NOT NULL,
                  triggered_by TEXT,
                  trigger_type TEXT NOT NULL DEFAULT 'manual',
                  status TEXT NOT NULL DEFAULT 'running',
                  modules_analyzed INTEGER NOT NULL DEFAULT 0,
                  total_recommendations INTEGER NOT NULL DEFAULT 0,
                  module_results_json TEXT NOT NULL DEFAULT '[]',
                  error TEXT,
                  started_at TEXT NOT NULL,
                  completed_at TEXT,
                  duration_ms INTEGER,
                  FOREIGN KEY (account_id) REFERENCES accounts(id) ON DELETE CASCADE
                );

                CREATE INDEX IF NOT EXISTS idx_issues_account_run ON audit_issues(account_id, run_id);
                CREATE INDEX IF NOT EXISTS idx_modifications_account_status ON modifications(account_id, status);
                CREATE INDEX IF NOT EXISTS idx_decisions_group ON decisions(decision_group_id, version);
                """
            )

            if 0 < current_version < 2:
                self._migrate_to_v2(conn)
            if current_version < SCHEMA_VERSION:
                logger.info("schema upgraded %s -> %s", current_version, SCHEMA_VERSION)
            self._set_schema_version(conn, SCHEMA_VERSION)

    def _column_exists(self, conn: sqlite3.Connection, table: str, column: str) -> bool:
        rows = conn.execute(f"PRAGMA table_info({table})").fetchall()
        return any(r["name"] == column for r in rows)

    def _migrate_to_v2(self, conn: sqlite3.Connection) -> None:
        for table in _DATED_TABLES:
            for column in ("data_date_start", "data_date_end"):
                if not self._column_exists(conn, table, column):
                    conn.execute(f"ALTER TABLE {table} ADD COLUMN {column} TEXT")

    def _get_schema_version(self, conn: sqlite3.Connection) -> int:
        row = conn.execute("SELECT value FROM meta WHERE key='schema_version'").fetchone()
        if not row:
            return 0
        try:
            return int(row["value"])
        except (TypeError, ValueError):
            return 0

    def _set_schema_version(self, conn: sqlite3.Connection, version: int) -> None:
        conn.execute(
            "INSERT INTO meta(key, value) VALUES('schema_version', ?) "
            "ON CONFLICT(key) DO UPDATE SET value=excluded.value",
            (str(version),),
        )
        conn.execute(
            "INSERT INTO meta(key, value) VALUES('schema_updated_at', ?) "
            "ON CONFLICT(key) DO UPDATE SET value=excluded.value",
            (now_utc_iso(),),
        )
