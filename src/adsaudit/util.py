from __future__ import annotations

import hashlib
import json
import re
import secrets
from datetime import datetime, timezone
from typing import Any


def now_utc() -> datetime:
    return datetime.now(tz=timezone.utc).replace(microsecond=0)


def now_utc_iso() -> str:
    return now_utc().isoformat()


def new_id(prefix: str) -> str:
    # URL-safe, reasonably short, no external deps
    return f"{prefix}_{secrets.token_urlsafe(10)}"


def parse_iso(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def sha256_hex(s: str) -> str:
    return hashlib.sha256(s.encode("utf-8", errors="strict")).hexdigest()


def strip_dashes(customer_id: str) -> str:
    return (customer_id or "").replace("-", "").strip()


def micros_to_units(micros: Any) -> float:
    try:
        return float(micros or 0) / 1_000_000
    except (TypeError, ValueError):
        return 0.0


def json_dumps(obj: Any) -> str:
    return json.dumps(obj, ensure_ascii=True)


def json_loads(raw: str | None, default: Any = None) -> Any:
    if raw is None or raw == "":
        return default
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        return default


_CAMEL_RE = re.compile(r"_([a-z0-9])")


def snake_to_camel(name: str) -> str:
    return _CAMEL_RE.sub(lambda m: m.group(1).upper(), name)


def camelize(row: dict[str, Any]) -> dict[str, Any]:
    """Return a copy of a DB row with camelCase keys and *_json columns decoded."""
    out: dict[str, Any] = {}
    for k, v in row.items():
        if k.endswith("_json"):
            out[snake_to_camel(k[: -len("_json")])] = json_loads(v, None)
            continue
        out[snake_to_camel(k)] = v
    return out
