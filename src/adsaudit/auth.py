from __future__ import annotations

import re
import secrets
from datetime import timedelta
from typing import Any

import bcrypt

from adsaudit.errors import BadRequestError, ForbiddenError, NotFoundError, UnauthorizedError
from adsaudit.log import get_logger
from adsaudit.repo import Repo, user_out
from adsaudit.schemas import CreateUserBody, UpdateUserBody
from adsaudit.util import now_utc, parse_iso, sha256_hex

logger = get_logger(__name__)

BCRYPT_ROUNDS = 12
MAX_FAILED_LOGINS = 5
LOCKOUT_MINUTES = 15


def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt(rounds=BCRYPT_ROUNDS)).decode("utf-8")


def check_password(password: str, password_hash: str) -> bool:
    try:
        return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("utf-8"))
    except ValueError:
        # malformed stored hash
        return False


def validate_password_policy(password: str) -> None:
    if len(password or "") < 8:
        raise BadRequestError("Password must be at least 8 characters long")
    if not re.search(r"[A-Za-z]", password) or not re.search(r"\d", password):
        raise BadRequestError("Password must contain at least one letter and one digit")


def is_admin(user: dict[str, Any] | None) -> bool:
    return bool(user) and user.get("role") == "admin"


def require_admin(user: dict[str, Any] | None) -> None:
    if not is_admin(user):
        raise ForbiddenError("Admin role required")


class AuthService:
    """Password login, bearer sessions and user management."""

    def __init__(self, repo: Repo, *, session_ttl_hours: int = 12):
        self.repo = repo
        self.session_ttl_hours = session_ttl_hours

    def _is_locked(self, row: dict[str, Any]) -> bool:
        locked_until = parse_iso(row.get("locked_until"))
        return locked_until is not None and locked_until > now_utc()

    def _register_failure(self, row: dict[str, Any]) -> None:
        attempts = int(row.get("failed_login_attempts") or 0) + 1
        fields: dict[str, Any] = {"failed_login_attempts": attempts}
        if attempts >= MAX_FAILED_LOGINS:
            fields["locked_until"] = (now_utc() + timedelta(minutes=LOCKOUT_MINUTES)).isoformat()
            fields["failed_login_attempts"] = 0
            logger.warning("user %s locked after %s failed logins", row["email"], attempts)
        self.repo.update_user_fields(row["id"], **fields)

    def login(
        self, email: str, password: str, *, ip: str | None = None, user_agent: str | None = None
    ) -> dict[str, Any]:
        row = self.repo.get_user_by_email(email)
        if not row:
            raise UnauthorizedError("Invalid credentials")
        if self._is_locked(row):
            raise UnauthorizedError("Account locked")
        if not row["is_active"]:
            raise UnauthorizedError("User is inactive")
        if not check_password(password, row["password_hash"]):
            self._register_failure(row)
            self.repo.add_audit_log(
                user_id=row["id"], action="LOGIN_FAILED", entity_type="user", entity_id=row["id"], ip=ip,
                user_agent=user_agent,
            )
            raise UnauthorizedError("Invalid credentials")

        token = secrets.token_urlsafe(32)
        now = now_utc()
        expires_at = (now + timedelta(hours=self.session_ttl_hours)).isoformat()
        self.repo.insert_session(
            token_hash=sha256_hex(token), user_id=row["id"], expires_at=expires_at, ip=ip, user_agent=user_agent
        )
        self.repo.update_user_fields(
            row["id"], failed_login_attempts=0, locked_until=None, last_login_at=now.isoformat()
        )
        self.repo.add_audit_log(
            user_id=row["id"], action="LOGIN", entity_type="user", entity_id=row["id"], ip=ip, user_agent=user_agent
        )
        user = self.repo.get_user_row(row["id"])
        assert user is not None
        return {"accessToken": token, "expiresAt": expires_at, "user": user_out(user)}

    def logout(self, token: str) -> None:
        session = self.repo.get_session(sha256_hex(token))
        self.repo.delete_session(sha256_hex(token))
        if session:
            self.repo.add_audit_log(user_id=session["user_id"], action="LOGOUT", entity_type="user",
                                    entity_id=session["user_id"])

    def authenticate(self, token: str | None) -> dict[str, Any]:
        """Resolve a bearer token to the sanitized, active user it belongs to."""
        if not token:
            raise UnauthorizedError("Missing bearer token")
        token_hash = sha256_hex(token)
        session = self.repo.get_session(token_hash)
        if not session:
            raise UnauthorizedError("Invalid session")
        expires_at = parse_iso(session["expires_at"])
        if expires_at is None or expires_at <= now_utc():
            self.repo.delete_session(token_hash)
            raise UnauthorizedError("Session expired")
        row = self.repo.get_user_row(session["user_id"])
        if not row or not row["is_active"]:
            raise UnauthorizedError("Invalid session")
        return user_out(row)

    # ------------------------------------------------------------------ #
    # Users
    # ------------------------------------------------------------------ #

    def create_user(self, body: CreateUserBody, actor: dict[str, Any] | None = None) -> dict[str, Any]:
        email = body.email.strip().lower()
        if "@" not in email:
            raise BadRequestError("Invalid email")
        validate_password_policy(body.password)
        row = self.repo.insert_user(
            email=email, name=body.name.strip(), role=body.role, password_hash=hash_password(body.password)
        )
        self.repo.add_audit_log(
            user_id=actor["id"] if actor else None, action="USER_CREATED", entity_type="user", entity_id=row["id"],
            details={"email": email, "role": body.role},
        )
        return user_out(row)

    def update_user(self, user_id: str, body: UpdateUserBody, actor: dict[str, Any]) -> dict[str, Any]:
        if not self.repo.get_user_row(user_id):
            raise NotFoundError(f"User {user_id} not found")
        fields = body.model_dump(exclude_unset=True, exclude_none=True)
        if "is_active" in fields:
            fields["is_active"] = 1 if fields["is_active"] else 0
        self.repo.update_user_fields(user_id, **fields)
        self.repo.add_audit_log(
            user_id=actor["id"], action="USER_UPDATED", entity_type="user", entity_id=user_id,
            details=body.model_dump(exclude_unset=True),
        )
        row = self.repo.get_user_row(user_id)
        assert row is not None
        return user_out(row)

    def change_password(self, user: dict[str, Any], current_password: str, new_password: str) -> None:
        row = self.repo.get_user_row(user["id"])
        if not row or not check_password(current_password, row["password_hash"]):
            raise UnauthorizedError("Current password is incorrect")
        validate_password_policy(new_password)
        self.repo.update_user_fields(row["id"], password_hash=hash_password(new_password))
        self.repo.add_audit_log(user_id=row["id"], action="PASSWORD_CHANGED", entity_type="user", entity_id=row["id"])

    def reveal_secret(self, account_id: str, user: dict[str, Any], password: str) -> dict[str, str]:
        row = self.repo.get_user_row(user["id"])
        if not row or not check_password(password, row["password_hash"]):
            raise UnauthorizedError("Invalid password")
        account = self.repo.require_account_row(account_id)
        self.repo.add_audit_log(user_id=row["id"], action="SECRET_REVEALED", entity_type="account", entity_id=account_id)
        return {"sharedSecret": account["shared_secret"]}
