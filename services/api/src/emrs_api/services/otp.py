"""一次性验证码签发与校验。

同一用户同一用途任意时刻只有最新一条未使用验证码有意义：
签发新码时会把旧的未使用码全部置为已使用。
校验成功的“置已使用”是一条带条件的 UPDATE，依据影响行数判断是否抢到，
因此并发提交同一验证码时只有一个请求能成功。
"""

from __future__ import annotations

import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from uuid import UUID

from sqlalchemy import delete, or_, select, update
from sqlalchemy.orm import Session
from sqlalchemy.orm.attributes import set_committed_value

from emrs_api.core.config import get_settings
from emrs_api.core.errors import OtpAlreadyUsed, OtpExpired, OtpMismatch
from emrs_api.core.security import secure_compare
from emrs_api.models.auth import OneTimeCode
from emrs_api.models.enums import OtpPurpose
from emrs_api.utils.clock import as_utc

logger = logging.getLogger(__name__)

OTP_LENGTH = 6
# 校验时只比对最近若干条验证码，旧码一定已被取代。
_RECENT_CODES_LIMIT = 10


@dataclass(frozen=True)
class IssuedCode:
    code: str
    expires_at: datetime
    ttl_seconds: int


def ttl_for(purpose: OtpPurpose) -> int:
    settings = get_settings()
    if purpose == OtpPurpose.PASSWORD_RESET:
        return settings.otp_reset_ttl_seconds
    return settings.otp_login_ttl_seconds


def generate_code() -> str:
    """生成 6 位数字验证码（首位允许为 0）。"""
    return f"{secrets.randbelow(10**OTP_LENGTH):0{OTP_LENGTH}d}"


def normalize_code(value: str) -> str:
    """去掉用户输入中的空白字符。"""
    return "".join(str(value).split())


def issue_code(db: Session, *, user_id: UUID, purpose: OtpPurpose, now: datetime) -> IssuedCode:
    """签发新验证码并取代该用途下所有未使用的旧码。"""
    ttl_seconds = ttl_for(purpose)
    db.execute(
        update(OneTimeCode)
        .where(OneTimeCode.user_id == user_id)
        .where(OneTimeCode.purpose == purpose)
        .where(OneTimeCode.used.is_(False))
        .values(used=True, used_at=now)
    )
    code = generate_code()
    expires_at = now + timedelta(seconds=ttl_seconds)
    db.add(
        OneTimeCode(
            user_id=user_id,
            code=code,
            purpose=purpose,
            created_at=now,
            expires_at=expires_at,
            used=False,
        )
    )
    db.flush()
    logger.info("otp issued user_id=%s purpose=%s", user_id, purpose)
    return IssuedCode(code=code, expires_at=expires_at, ttl_seconds=ttl_seconds)


def _find_candidate(db: Session, *, user_id: UUID, purpose: OtpPurpose, code: str) -> OneTimeCode | None:
    rows = (
        db.execute(
            select(OneTimeCode)
            .where(OneTimeCode.user_id == user_id)
            .where(OneTimeCode.purpose == purpose)
            .order_by(OneTimeCode.created_at.desc())
            .limit(_RECENT_CODES_LIMIT)
        )
        .scalars()
        .all()
    )
    matched = None
    # 逐条常量时间比较，不在 SQL 中直接按验证码过滤。
    for row in rows:
        if secure_compare(row.code, code) and matched is None:
            matched = row
    return matched


def _consume(db: Session, *, row_id: UUID, now: datetime) -> bool:
    """原子地把验证码置为已使用，返回是否由本次调用完成。"""
    result = db.execute(
        update(OneTimeCode)
        .where(OneTimeCode.id == row_id)
        .where(OneTimeCode.used.is_(False))
        .where(OneTimeCode.expires_at > now)
        .values(used=True, used_at=now)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def verify_code(db: Session, *, user_id: UUID, purpose: OtpPurpose, code: str, now: datetime) -> OneTimeCode:
    """校验并消费验证码，返回被消费的记录。

    失败原因通过不同异常类型区分，仅用于日志；对外统一为同一错误。
    """
    normalized = normalize_code(code)
    candidate = None
    if len(normalized) == OTP_LENGTH and normalized.isdigit():
        candidate = _find_candidate(db, user_id=user_id, purpose=purpose, code=normalized)

    if candidate is None:
        error = OtpMismatch()
    elif candidate.used:
        error = OtpAlreadyUsed()
    elif as_utc(candidate.expires_at) <= now:
        error = OtpExpired()
    elif not _consume(db, row_id=candidate.id, now=now):
        # 并发请求已先一步消费。
        error = OtpAlreadyUsed()
    else:
        set_committed_value(candidate, "used", True)
        set_committed_value(candidate, "used_at", now)
        logger.info("otp verified user_id=%s purpose=%s", user_id, purpose)
        return candidate

    logger.warning("otp rejected user_id=%s purpose=%s reason=%s", user_id, purpose, error.reason)
    raise error


def prune_stale_codes(db: Session, *, now: datetime, retention_seconds: int | None = None) -> int:
    """清理已使用或已过期且超过保留期的验证码，返回删除条数。"""
    settings = get_settings()
    retention = settings.otp_retention_seconds if retention_seconds is None else retention_seconds
    cutoff = now - timedelta(seconds=retention)
    result = db.execute(
        delete(OneTimeCode)
        .where(or_(OneTimeCode.used.is_(True), OneTimeCode.expires_at <= now))
        .where(OneTimeCode.created_at < cutoff)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount or 0
