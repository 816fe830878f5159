"""账号凭据存储与口令校验。"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import logging
import secrets
from datetime import datetime, timedelta
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from emrs_api.core.config import get_settings
from emrs_api.core.errors import AccountInactive, AccountLocked, InvalidCredentials
from emrs_api.core.logging import redact_email
from emrs_api.models.user import User
from emrs_api.utils.clock import as_utc

logger = logging.getLogger(__name__)

# 未知邮箱时仍执行一次哈希，使两类失败的耗时一致。
_DUMMY_PASSWORD_HASH: str | None = None


def normalize_email(value: str) -> str:
    """标准化邮箱字段（去空格 + 小写）。"""
    return value.strip().lower()


def hash_password(password: str) -> str:
    """使用 PBKDF2-SHA256 生成口令哈希。"""
    settings = get_settings()
    salt = secrets.token_bytes(16)
    digest = hashlib.pbkdf2_hmac(
        "sha256",
        password.encode("utf-8"),
        salt,
        settings.auth_password_hash_iterations,
    )
    salt_b64 = base64.b64encode(salt).decode("ascii")
    digest_b64 = base64.b64encode(digest).decode("ascii")
    return f"pbkdf2_sha256${settings.auth_password_hash_iterations}${salt_b64}${digest_b64}"


def verify_password(password: str, password_hash: str) -> bool:
    """校验口令是否匹配。"""
    try:
        algorithm, iterations_text, salt_b64, expected_digest_b64 = password_hash.split("$", 3)
        if algorithm != "pbkdf2_sha256":
            return False
        iterations = int(iterations_text)
        salt = base64.b64decode(salt_b64.encode("ascii"))
        expected_digest = base64.b64decode(expected_digest_b64.encode("ascii"))
    except (ValueError, TypeError, binascii.Error):
        return False

    actual_digest = hashlib.pbkdf2_hmac(
        "sha256",
        password.encode("utf-8"),
        salt,
        iterations,
    )
    return hmac.compare_digest(actual_digest, expected_digest)


def _burn_password_check(password: str) -> None:
    global _DUMMY_PASSWORD_HASH
    if _DUMMY_PASSWORD_HASH is None:
        _DUMMY_PASSWORD_HASH = hash_password(secrets.token_urlsafe(16))
    verify_password(password, _DUMMY_PASSWORD_HASH)


def find_user_by_email(db: Session, email: str) -> User | None:
    return db.execute(select(User).where(User.email == normalize_email(email))).scalar_one_or_none()


def find_active_user(db: Session, user_id: UUID, email: str) -> User | None:
    """按令牌中的 (用户 ID, 邮箱) 查找仍然有效的账号。"""
    user = db.get(User, user_id)
    if user is None or user.email != normalize_email(email) or not user.is_active:
        return None
    return user


def _is_locked(user: User, now: datetime) -> bool:
    return user.locked_until is not None and as_utc(user.locked_until) > now


def _record_failed_attempt(user: User, now: datetime) -> None:
    settings = get_settings()
    user.failed_login_attempts = (user.failed_login_attempts or 0) + 1
    if user.failed_login_attempts >= settings.auth_max_failed_logins:
        user.locked_until = now + timedelta(seconds=settings.auth_lockout_seconds)
        logger.warning("account locked user_id=%s attempts=%s", user.id, user.failed_login_attempts)


def authenticate(db: Session, email: str, password: str, *, now: datetime) -> User:
    """校验邮箱密码并返回账号。

    失败计数的变更只 flush 不提交，由调用方决定提交时机。
    """
    settings = get_settings()
    user = find_user_by_email(db, email)
    if user is None:
        _burn_password_check(password)
        logger.info("login rejected reason=unknown_email email=%s", redact_email(normalize_email(email)))
        raise InvalidCredentials()

    if _is_locked(user, now):
        remaining = int((as_utc(user.locked_until) - now).total_seconds())
        raise AccountLocked(details={"retry_after_seconds": max(1, remaining)})
    if user.locked_until is not None:
        # 锁定期已过，重新计数。
        user.failed_login_attempts = 0
        user.locked_until = None

    # 停用账号不校验密码，也不会发送验证码或签发令牌。
    if not user.is_active:
        logger.info("login rejected reason=inactive user_id=%s", user.id)
        if settings.auth_expose_account_status:
            raise AccountInactive()
        raise InvalidCredentials()

    if not user.password_hash or not verify_password(password, user.password_hash):
        _record_failed_attempt(user, now)
        db.flush()
        logger.info("login rejected reason=bad_password user_id=%s attempts=%s", user.id, user.failed_login_attempts)
        if _is_locked(user, now):
            raise AccountLocked(details={"retry_after_seconds": settings.auth_lockout_seconds})
        raise InvalidCredentials()

    user.failed_login_attempts = 0
    user.locked_until = None
    db.flush()
    return user
