from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path

import pytest

from adsaudit.db import AdsDB
from adsaudit.errors import BadRequestError, UnauthorizedError
from adsaudit.repo import Repo
from adsaudit.signing import parse_timestamp, sign_request, verify_request

NOW = datetime(2026, 3, 2, 10, 0, 0, tzinfo=timezone.utc)
BODY = b'{"metadata":{"runId":"r1"}}'


def _repo_with_account(tmp_path: Path) -> tuple[Repo, dict, str]:
    db_path = tmp_path / "audit.sqlite3"
    AdsDB(db_path).init()
    repo = Repo(db_path)
    account = repo.create_account(customer_id="123-456-7890", customer_name="Acme")
    secret = repo.require_account_row(account["id"])["shared_secret"]
    return repo, account, secret


def _headers(secret: str, ts: str, body: bytes = BODY, customer_id: str = "123-456-7890") -> dict[str, str]:
    return {"X-Timestamp": ts, "X-Signature": sign_request(secret, ts, body), "X-Account-Id": customer_id}


def test_sign_request_is_hex_hmac_of_timestamp_and_body() -> None:
    sig = sign_request("secret", "2026-03-02T10:00:00Z", b"{}")
    assert len(sig) == 64
    assert sig == sig.lower()
    assert sig == sign_request("secret", "2026-03-02T10:00:00Z", "{}")
    assert sig != sign_request("secret", "2026-03-02T10:00:01Z", b"{}")


def test_parse_timestamp_accepts_iso_and_epoch() -> None:
    assert parse_timestamp("2026-03-02T10:00:00Z") == NOW
    assert parse_timestamp(str(int(NOW.timestamp()))) == NOW
    assert parse_timestamp(str(int(NOW.timestamp() * 1000))) == NOW
    assert parse_timestamp("yesterday") is None
    assert parse_timestamp("") is None


def test_verify_request_returns_signing_account(tmp_path: Path) -> None:
    repo, account, secret = _repo_with_account(tmp_path)
    ts = "2026-03-02T10:01:00Z"

    got = verify_request(repo, headers=_headers(secret, ts), body=BODY, now=NOW)
    assert got["id"] == account["id"]

    # Dashes in the header are ignored.
    got = verify_request(repo, headers=_headers(secret, ts, customer_id="1234567890"), body=BODY, now=NOW)
    assert got["id"] == account["id"]


def test_verify_request_missing_headers(tmp_path: Path) -> None:
    repo, _account, secret = _repo_with_account(tmp_path)
    headers = _headers(secret, "2026-03-02T10:00:00Z")
    del headers["X-Signature"]
    with pytest.raises(BadRequestError, match="Missing required headers: X-Timestamp, X-Signature, X-Account-Id"):
        verify_request(repo, headers=headers, body=BODY, now=NOW)


def test_verify_request_rejects_stale_timestamp(tmp_path: Path) -> None:
    repo, _account, secret = _repo_with_account(tmp_path)
    ts = "2026-03-02T09:54:00Z"
    with pytest.raises(UnauthorizedError, match="Request timestamp is invalid or expired"):
        verify_request(repo, headers=_headers(secret, ts), body=BODY, now=NOW)

    # Wider skew window accepts it.
    verify_request(repo, headers=_headers(secret, ts), body=BODY, now=NOW, max_skew_seconds=600)


def test_verify_request_unknown_account(tmp_path: Path) -> None:
    repo, _account, secret = _repo_with_account(tmp_path)
    headers = _headers(secret, "2026-03-02T10:00:00Z", customer_id="999-999-9999")
    with pytest.raises(UnauthorizedError, match="Account not found or inactive"):
        verify_request(repo, headers=headers, body=BODY, now=NOW)


def test_verify_request_rejects_tampered_body(tmp_path: Path) -> None:
    repo, _account, secret = _repo_with_account(tmp_path)
    headers = _headers(secret, "2026-03-02T10:00:00Z")
    with pytest.raises(UnauthorizedError, match="Invalid signature"):
        verify_request(repo, headers=headers, body=BODY + b" ", now=NOW)

    headers = _headers("not-the-secret", "2026-03-02T10:00:00Z")
    with pytest.raises(UnauthorizedError, match="Invalid signature"):
        verify_request(repo, headers=headers, body=BODY, now=NOW)
