"""登录会话编排。

登录状态流转：
- 等待凭据 -> 拒绝；
- 等待凭据 -> 已认证（未开启二次验证，直接签发令牌）；
- 等待凭据 -> 等待验证码（已开启二次验证）-> 拒绝 | 已认证。

只有到达“已认证”才会签发访问令牌与刷新令牌。
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from uuid import UUID

from sqlalchemy.orm import Session

from emrs_api.core.config import get_settings
from emrs_api.core.errors import (
    AccountInactive,
    AccountLocked,
    InvalidCredentials,
    OtpMismatch,
    SessionExpired,
)
from emrs_api.core.security import ClientInfo
from emrs_api.models.enums import OtpPurpose
from emrs_api.models.user import User
from emrs_api.services import credentials, otp, tokens
from emrs_api.services.mailer import Mailer
from emrs_api.services.transaction import transactional

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LoginResult:
    """已认证：携带访问令牌与刷新令牌原文。"""

    user: User
    access_token: str
    access_expires_at: datetime
    expires_in: int
    refresh_token: str


@dataclass(frozen=True)
class OtpChallenge:
    """等待验证码：不携带任何令牌。"""

    user_id: UUID
    email: str
    expires_in: int


@dataclass(frozen=True)
class SessionInfo:
    last_activity: datetime
    session_expires_at: datetime
    seconds_until_expiry: int
    device_info: str | None


def _send_login_code(db: Session, mailer: Mailer, user: User, *, now: datetime) -> OtpChallenge:
    issued = otp.issue_code(db, user_id=user.id, purpose=OtpPurpose.LOGIN, now=now)
    mailer.send_code(user.email, issued.code, OtpPurpose.LOGIN, name=user.name, ttl_seconds=issued.ttl_seconds)
    return OtpChallenge(user_id=user.id, email=user.email, expires_in=issued.ttl_seconds)


def complete_login(db: Session, user: User, *, client: ClientInfo, now: datetime) -> LoginResult:
    """进入已认证状态：记录登录时间并签发令牌对。"""
    user.last_login_at = now
    access_token, access_expires_at = tokens.issue_access_token(user, now=now)
    refresh_token = tokens.issue_refresh_token(db, user_id=user.id, client=client, now=now)
    logger.info("login completed user_id=%s ip=%s", user.id, client.ip_address)
    return LoginResult(
        user=user,
        access_token=access_token,
        access_expires_at=access_expires_at,
        expires_in=get_settings().auth_access_token_ttl_seconds,
        refresh_token=refresh_token,
    )


@transactional
def login(
    db: Session,
    mailer: Mailer,
    email: str,
    password: str,
    *,
    client: ClientInfo,
    now: datetime,
) -> LoginResult | OtpChallenge:
    try:
        user = credentials.authenticate(db, email, password, now=now)
    except (InvalidCredentials, AccountLocked):
        # 失败计数需要落库。
        db.commit()
        raise

    if user.two_factor_enabled:
        logger.info("login awaiting otp user_id=%s", user.id)
        return _send_login_code(db, mailer, user, now=now)
    return complete_login(db, user, client=client, now=now)


def _load_otp_user(db: Session, user_id: UUID) -> User:
    """按 user_id 加载待验证账号；账号状态是否外显与登录接口保持一致。"""
    user = db.get(User, user_id)
    if user is None:
        raise OtpMismatch()
    if not user.is_active:
        logger.info("otp rejected reason=inactive user_id=%s", user.id)
        if get_settings().auth_expose_account_status:
            raise AccountInactive()
        raise OtpMismatch()
    return user


@transactional
def verify_login_otp(db: Session, user_id: UUID, code: str, *, client: ClientInfo, now: datetime) -> LoginResult:
    user = _load_otp_user(db, user_id)
    otp.verify_code(db, user_id=user.id, purpose=OtpPurpose.LOGIN, code=code, now=now)
    return complete_login(db, user, client=client, now=now)


@transactional
def resend_login_otp(db: Session, mailer: Mailer, user_id: UUID, *, now: datetime) -> OtpChallenge:
    """重新发送登录验证码，旧码随之失效。"""
    user = _load_otp_user(db, user_id)
    if not user.two_factor_enabled:
        # 与未知 user_id 同样处理，不暴露账号是否开启二次验证。
        logger.info("otp resend rejected reason=two_factor_off user_id=%s", user.id)
        raise OtpMismatch()
    return _send_login_code(db, mailer, user, now=now)


@transactional
def refresh(db: Session, raw: str | None, *, now: datetime) -> tuple[str, int]:
    """返回 (访问令牌, 有效秒数)。"""
    access_token, _ = tokens.refresh_access_token(db, raw, now=now)
    return access_token, get_settings().auth_access_token_ttl_seconds


@transactional
def record_activity(db: Session, raw: str | None, *, now: datetime) -> tokens.SessionWindow:
    token = tokens.touch_refresh_token(db, raw, now=now)
    return tokens.session_window(token, now=now)


@transactional
def logout(db: Session, user_id: UUID, raw: str | None, *, now: datetime) -> bool:
    """吊销当前终端的刷新令牌；令牌不属于调用者时不做任何处理。"""
    revoked = tokens.revoke_refresh_token(db, raw, now=now, user_id=user_id)
    logger.info("logout user_id=%s revoked=%s", user_id, revoked)
    return revoked


@transactional
def session_info(db: Session, user_id: UUID, raw: str | None, *, now: datetime) -> SessionInfo:
    """优先描述当前 Cookie 对应的会话，否则取该用户最近活跃的有效会话。"""
    token = tokens.find_token(db, raw)
    if token is None or token.user_id != user_id or not tokens.is_live(token, now=now):
        token = tokens.latest_live_token(db, user_id, now=now)
    if token is None:
        raise SessionExpired("当前没有有效会话，请重新登录。")
    window = tokens.session_window(token, now=now)
    return SessionInfo(
        last_activity=window.last_activity,
        session_expires_at=window.session_expires_at,
        seconds_until_expiry=window.seconds_until_expiry,
        device_info=token.device_info,
    )
