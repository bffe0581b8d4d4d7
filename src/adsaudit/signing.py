from __future__ import annotations

import hashlib
import hmac
from datetime import datetime, timezone
from typing import Any, Mapping

from adsaudit.errors import BadRequestError, UnauthorizedError
from adsaudit.repo import Repo
from adsaudit.util import now_utc, parse_iso

REQUIRED_HEADERS = ("X-Timestamp", "X-Signature", "X-Account-Id")


def sign_request(secret: str, timestamp: str, body: bytes | str = b"") -> str:
    if isinstance(body, str):
        body = body.encode("utf-8")
    msg = timestamp.encode("utf-8") + body
    return hmac.new(secret.encode("utf-8"), msg, hashlib.sha256).hexdigest()


def parse_timestamp(value: str) -> datetime | None:
    """ISO-8601 or epoch (seconds or milliseconds)."""
    s = (value or "").strip()
    if not s:
        return None
    if s.isdigit():
        n = int(s)
        if n > 10_000_000_000:
            n = n // 1000
        try:
            return datetime.fromtimestamp(n, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    return parse_iso(s)


def verify_request(
    repo: Repo,
    *,
    headers: Mapping[str, str],
    body: bytes,
    max_skew_seconds: int = 300,
    now: datetime | None = None,
) -> dict[str, Any]:
    """
    Authenticate a script request and return the signing account row.

    Raises BadRequestError for missing headers and UnauthorizedError for any
    timestamp/account/signature failure.
    """
    timestamp = headers.get("x-timestamp") or headers.get("X-Timestamp")
    signature = headers.get("x-signature") or headers.get("X-Signature")
    customer_id = headers.get("x-account-id") or headers.get("X-Account-Id")
    if not timestamp or not signature or not customer_id:
        raise BadRequestError(f"Missing required headers: {', '.join(REQUIRED_HEADERS)}")

    ts = parse_timestamp(timestamp)
    current = now or now_utc()
    if ts is None or abs((current - ts).total_seconds()) > max_skew_seconds:
        raise UnauthorizedError("Request timestamp is invalid or expired")

    account = repo.find_active_by_customer_id(customer_id)
    if not account:
        raise UnauthorizedError("Account not found or inactive")

    expected = sign_request(account["shared_secret"], timestamp, body)
    if not hmac.compare_digest(expected, signature.strip().lower()):
        raise UnauthorizedError("Invalid signature")
    return account
