"""访问令牌与刷新令牌服务。

访问令牌是无状态的短期 JWT；刷新令牌是按终端落库的不透明随机串，
有效需同时满足：未吊销、未超过绝对有效期、距最近活跃不超过无操作超时。
"""

from __future__ import annotations

import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from uuid import UUID, uuid4

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from emrs_api.core.config import get_settings
from emrs_api.core.errors import SessionExpired
from emrs_api.core.security import ACCESS_TOKEN_TYPE, ClientInfo, digest_secret, encode_jwt
from emrs_api.models.auth import RefreshToken
from emrs_api.models.user import User
from emrs_api.utils.clock import as_utc

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SessionWindow:
    """单个刷新令牌会话的时间窗口。"""

    last_activity: datetime
    session_expires_at: datetime
    seconds_until_expiry: int


def issue_access_token(user: User, *, now: datetime) -> tuple[str, datetime]:
    """签发访问令牌，返回 (令牌, 过期时间)。"""
    settings = get_settings()
    expires_at = now + timedelta(seconds=settings.auth_access_token_ttl_seconds)
    claims = {
        "sub": str(user.id),
        "email": user.email,
        "role": user.role,
        "type": ACCESS_TOKEN_TYPE,
        "iat": int(now.timestamp()),
        "exp": int(expires_at.timestamp()),
        "jti": uuid4().hex,
        "iss": settings.auth_jwt_issuer,
    }
    return encode_jwt(claims), expires_at


def issue_refresh_token(db: Session, *, user_id: UUID, client: ClientInfo, now: datetime) -> str:
    """为一个终端签发刷新令牌，原文只返回给调用方一次。"""
    settings = get_settings()
    raw = secrets.token_hex(64)
    db.add(
        RefreshToken(
            user_id=user_id,
            token_hash=digest_secret(raw),
            device_info=client.device_info,
            ip_address=client.ip_address,
            created_at=now,
            last_activity_at=now,
            expires_at=now + timedelta(seconds=settings.auth_refresh_token_ttl_seconds),
            revoked=False,
        )
    )
    db.flush()
    logger.info("refresh token issued user_id=%s ip=%s", user_id, client.ip_address)
    return raw


def find_token(db: Session, raw: str | None) -> RefreshToken | None:
    if not raw:
        return None
    return db.execute(select(RefreshToken).where(RefreshToken.token_hash == digest_secret(raw))).scalar_one_or_none()


def session_window(token: RefreshToken, *, now: datetime) -> SessionWindow:
    """计算会话到期时间：取无操作超时与绝对有效期中较早者。"""
    settings = get_settings()
    last_activity = as_utc(token.last_activity_at)
    idle_deadline = last_activity + timedelta(seconds=settings.auth_session_idle_timeout_seconds)
    expires_at = min(idle_deadline, as_utc(token.expires_at))
    remaining = int((expires_at - now).total_seconds())
    return SessionWindow(
        last_activity=last_activity,
        session_expires_at=expires_at,
        seconds_until_expiry=max(0, remaining),
    )


def is_live(token: RefreshToken, *, now: datetime) -> bool:
    if token.revoked:
        return False
    settings = get_settings()
    if now >= as_utc(token.expires_at):
        return False
    idle_seconds = (now - as_utc(token.last_activity_at)).total_seconds()
    return idle_seconds <= settings.auth_session_idle_timeout_seconds


def _require_live_token(db: Session, raw: str | None, *, now: datetime) -> RefreshToken:
    token = find_token(db, raw)
    if token is None:
        logger.info("refresh rejected reason=unknown_token")
        raise SessionExpired()
    if not is_live(token, now=now):
        logger.info("refresh rejected reason=expired_or_revoked token_id=%s", token.id)
        raise SessionExpired()
    return token


def touch_refresh_token(db: Session, raw: str | None, *, now: datetime) -> RefreshToken:
    """记录一次活跃，重置无操作计时。"""
    token = _require_live_token(db, raw, now=now)
    token.last_activity_at = now
    db.flush()
    return token


def refresh_access_token(db: Session, raw: str | None, *, now: datetime) -> tuple[str, datetime]:
    """用刷新令牌换取新的访问令牌；刷新令牌本身不轮换。"""
    token = _require_live_token(db, raw, now=now)
    user = db.get(User, token.user_id)
    if user is None or not user.is_active:
        logger.info("refresh rejected reason=owner_inactive token_id=%s", token.id)
        raise SessionExpired()
    token.last_activity_at = now
    db.flush()
    return issue_access_token(user, now=now)


def revoke_refresh_token(db: Session, raw: str | None, *, now: datetime, user_id: UUID | None = None) -> bool:
    """吊销单个刷新令牌，幂等；传入 user_id 时只吊销属于该用户的令牌。"""
    token = find_token(db, raw)
    if token is None or token.revoked:
        return False
    if user_id is not None and token.user_id != user_id:
        logger.warning("refresh revoke skipped reason=owner_mismatch token_id=%s", token.id)
        return False
    token.revoked = True
    token.revoked_at = now
    db.flush()
    logger.info("refresh token revoked user_id=%s token_id=%s", token.user_id, token.id)
    return True


def revoke_all_for_user(db: Session, user_id: UUID, *, now: datetime) -> int:
    """吊销用户全部未吊销的刷新令牌，返回影响条数。"""
    result = db.execute(
        update(RefreshToken)
        .where(RefreshToken.user_id == user_id)
        .where(RefreshToken.revoked.is_(False))
        .values(revoked=True, revoked_at=now)
        .execution_options(synchronize_session="fetch")
    )
    count = result.rowcount or 0
    logger.info("refresh tokens revoked user_id=%s count=%s", user_id, count)
    return count


def latest_live_token(db: Session, user_id: UUID, *, now: datetime) -> RefreshToken | None:
    """返回用户最近活跃且仍有效的刷新令牌。"""
    rows = (
        db.execute(
            select(RefreshToken)
            .where(RefreshToken.user_id == user_id)
            .where(RefreshToken.revoked.is_(False))
            .order_by(RefreshToken.last_activity_at.desc())
            .limit(20)
        )
        .scalars()
        .all()
    )
    for row in rows:
        if is_live(row, now=now):
            return row
    return None
