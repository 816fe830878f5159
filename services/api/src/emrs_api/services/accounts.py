"""账号管理：管理员开通与维护账号、个人资料、密码与二次验证设置。"""

from __future__ import annotations

import logging
import secrets
from datetime import datetime, timedelta
from uuid import UUID

from sqlalchemy import case, func, select, update
from sqlalchemy.orm import Session

from emrs_api.core.config import get_settings
from emrs_api.core.errors import BadRequest, Conflict, InvalidCredentials, NotFound, OtpMismatch
from emrs_api.core.logging import redact_email
from emrs_api.core.security import digest_secret
from emrs_api.models.auth import PasswordSetupToken
from emrs_api.models.enums import CLINICIAN_ROLES, OtpPurpose, UserRole
from emrs_api.models.user import User
from emrs_api.services import otp, tokens
from emrs_api.services.credentials import find_user_by_email, hash_password, normalize_email, verify_password
from emrs_api.services.mailer import Mailer
from emrs_api.services.password_policy import ensure_strong_password
from emrs_api.services.transaction import transactional
from emrs_api.utils.clock import as_utc

logger = logging.getLogger(__name__)


def _get_user(db: Session, user_id: UUID) -> User:
    user = db.get(User, user_id)
    if user is None:
        raise NotFound("用户不存在。")
    return user


def _ensure_email_available(db: Session, email: str, *, exclude_user_id: UUID | None = None) -> None:
    stmt = select(User.id).where(User.email == email)
    if exclude_user_id is not None:
        stmt = stmt.where(User.id != exclude_user_id)
    if db.execute(stmt).first() is not None:
        raise Conflict("该邮箱已被其他账号使用。")


def _set_password(user: User, password: str) -> None:
    ensure_strong_password(password)
    user.password_hash = hash_password(password)
    user.failed_login_attempts = 0
    user.locked_until = None


def setup_link(raw_token: str) -> str:
    settings = get_settings()
    return f"{settings.frontend_base_url.rstrip('/')}/setup-password?token={raw_token}"


def issue_setup_token(db: Session, user_id: UUID, *, now: datetime) -> str:
    """签发密码设置令牌，取代该用户此前未使用的令牌。"""
    settings = get_settings()
    db.execute(
        update(PasswordSetupToken)
        .where(PasswordSetupToken.user_id == user_id)
        .where(PasswordSetupToken.used.is_(False))
        .values(used=True)
    )
    raw = secrets.token_urlsafe(32)
    db.add(
        PasswordSetupToken(
            user_id=user_id,
            token_hash=digest_secret(raw),
            expires_at=now + timedelta(seconds=settings.auth_password_setup_ttl_seconds),
            used=False,
        )
    )
    db.flush()
    return raw


def _send_setup_link(db: Session, mailer: Mailer, user: User, *, now: datetime) -> None:
    raw = issue_setup_token(db, user.id, now=now)
    mailer.send_setup_link(
        user.email,
        setup_link(raw),
        name=user.name,
        ttl_seconds=get_settings().auth_password_setup_ttl_seconds,
    )


@transactional
def create_user(
    db: Session,
    mailer: Mailer,
    *,
    name: str,
    email: str,
    role: UserRole,
    two_factor_enabled: bool = False,
    now: datetime,
) -> User:
    """管理员开通账号，并向其邮箱发送密码设置链接。"""
    normalized = normalize_email(email)
    _ensure_email_available(db, normalized)
    user = User(
        name=name.strip(),
        email=normalized,
        password_hash=None,
        role=role,
        two_factor_enabled=two_factor_enabled,
        is_active=True,
        failed_login_attempts=0,
    )
    db.add(user)
    db.flush()
    _send_setup_link(db, mailer, user, now=now)
    logger.info("user created user_id=%s role=%s email=%s", user.id, role, redact_email(normalized))
    return user


@transactional
def resend_setup_link(db: Session, mailer: Mailer, user_id: UUID, *, now: datetime) -> User:
    user = _get_user(db, user_id)
    if not user.is_active:
        raise BadRequest("账号已停用，无法发送设置链接。")
    _send_setup_link(db, mailer, user, now=now)
    return user


@transactional
def setup_password(db: Session, raw_token: str, password: str, *, now: datetime) -> User:
    """通过设置链接首次设定密码，令牌只能使用一次。"""
    row = db.execute(
        select(PasswordSetupToken).where(PasswordSetupToken.token_hash == digest_secret(raw_token))
    ).scalar_one_or_none()
    if row is None or row.used or as_utc(row.expires_at) <= now:
        raise BadRequest("密码设置链接无效或已过期，请联系管理员重新发送。")
    user = _get_user(db, row.user_id)
    if not user.is_active:
        raise BadRequest("账号已停用，无法设置密码。")
    _set_password(user, password)
    row.used = True
    db.flush()
    logger.info("password set via setup link user_id=%s", user.id)
    return user


def list_users(
    db: Session,
    *,
    page: int = 1,
    page_size: int = 20,
    role: UserRole | None = None,
    keyword: str | None = None,
) -> tuple[list[User], int]:
    """分页查询账号，返回 (当前页, 总数)。"""
    stmt = select(User)
    if role is not None:
        stmt = stmt.where(User.role == role)
    if keyword:
        pattern = f"%{keyword.strip().lower()}%"
        stmt = stmt.where(func.lower(User.name).like(pattern) | User.email.like(pattern))
    total = db.execute(select(func.count()).select_from(stmt.subquery())).scalar_one()
    items = (
        db.execute(stmt.order_by(User.created_at.desc(), User.email).offset((page - 1) * page_size).limit(page_size))
        .scalars()
        .all()
    )
    return list(items), int(total)


def user_stats(db: Session) -> list[dict[str, object]]:
    """按角色统计账号总数与启用数，按角色名排序。"""
    rows = db.execute(
        select(
            User.role,
            func.count(User.id),
            func.sum(case((User.is_active.is_(True), 1), else_=0)),
        )
        .group_by(User.role)
        .order_by(User.role)
    ).all()
    return [{"role": role, "total": int(total), "active": int(active or 0)} for role, total, active in rows]


def get_user(db: Session, user_id: UUID) -> User:
    return _get_user(db, user_id)


def list_doctors(db: Session) -> list[User]:
    """在岗医生列表（主治与住院医生）。"""
    return list(
        db.execute(
            select(User)
            .where(User.role.in_([role.value for role in CLINICIAN_ROLES]))
            .where(User.is_active.is_(True))
            .order_by(User.name)
        )
        .scalars()
        .all()
    )


@transactional
def update_user(
    db: Session,
    user_id: UUID,
    *,
    name: str | None = None,
    email: str | None = None,
    role: UserRole | None = None,
) -> User:
    user = _get_user(db, user_id)
    if name is not None:
        user.name = name.strip()
    if email is not None:
        normalized = normalize_email(email)
        if normalized != user.email:
            _ensure_email_available(db, normalized, exclude_user_id=user.id)
            user.email = normalized
    if role is not None:
        user.role = role
    db.flush()
    logger.info("user updated user_id=%s", user.id)
    return user


@transactional
def set_active(db: Session, actor_id: UUID, user_id: UUID, active: bool, *, now: datetime) -> User:
    """启用或停用账号；停用时吊销其全部会话。"""
    user = _get_user(db, user_id)
    if not active and user.id == actor_id:
        raise BadRequest("不能停用当前登录的管理员账号。")
    user.is_active = active
    if not active:
        tokens.revoke_all_for_user(db, user.id, now=now)
    else:
        user.failed_login_attempts = 0
        user.locked_until = None
    db.flush()
    logger.info("user %s user_id=%s actor_id=%s", "activated" if active else "deactivated", user.id, actor_id)
    return user


@transactional
def set_two_factor(db: Session, user_id: UUID, enabled: bool) -> User:
    """管理员直接开启或关闭某账号的二次验证。"""
    user = _get_user(db, user_id)
    user.two_factor_enabled = enabled
    db.flush()
    logger.info("two factor %s user_id=%s", "enabled" if enabled else "disabled", user.id)
    return user


@transactional
def request_two_factor_otp(db: Session, mailer: Mailer, user_id: UUID, *, now: datetime) -> int:
    """向本人邮箱发送用于关闭二次验证的验证码，返回有效秒数。"""
    user = _get_user(db, user_id)
    issued = otp.issue_code(db, user_id=user.id, purpose=OtpPurpose.LOGIN, now=now)
    mailer.send_code(user.email, issued.code, OtpPurpose.LOGIN, name=user.name, ttl_seconds=issued.ttl_seconds)
    return issued.ttl_seconds


@transactional
def enable_own_two_factor(db: Session, user_id: UUID) -> User:
    user = _get_user(db, user_id)
    user.two_factor_enabled = True
    db.flush()
    return user


@transactional
def disable_own_two_factor(db: Session, user_id: UUID, code: str, *, now: datetime) -> User:
    """本人关闭二次验证，需要先通过邮箱验证码确认。"""
    user = _get_user(db, user_id)
    if not user.two_factor_enabled:
        raise BadRequest("二次验证未开启。")
    otp.verify_code(db, user_id=user.id, purpose=OtpPurpose.LOGIN, code=code, now=now)
    user.two_factor_enabled = False
    db.flush()
    return user


@transactional
def update_profile(db: Session, user_id: UUID, *, name: str | None = None, email: str | None = None) -> User:
    user = _get_user(db, user_id)
    if name is not None:
        user.name = name.strip()
    if email is not None:
        normalized = normalize_email(email)
        if normalized != user.email:
            _ensure_email_available(db, normalized, exclude_user_id=user.id)
            user.email = normalized
    db.flush()
    return user


@transactional
def change_password(db: Session, user_id: UUID, current_password: str, new_password: str) -> User:
    user = _get_user(db, user_id)
    if not user.password_hash or not verify_password(current_password, user.password_hash):
        raise InvalidCredentials("当前密码错误。")
    if current_password == new_password:
        raise BadRequest("新密码不能与当前密码相同。")
    _set_password(user, new_password)
    db.flush()
    logger.info("password changed user_id=%s", user.id)
    return user


@transactional
def forgot_password(db: Session, mailer: Mailer, email: str, *, now: datetime) -> None:
    """发送找回密码验证码；邮箱不存在或已停用时静默返回。"""
    user = find_user_by_email(db, email)
    if user is None or not user.is_active:
        logger.info("password reset skipped email=%s", redact_email(normalize_email(email)))
        return
    issued = otp.issue_code(db, user_id=user.id, purpose=OtpPurpose.PASSWORD_RESET, now=now)
    mailer.send_code(
        user.email,
        issued.code,
        OtpPurpose.PASSWORD_RESET,
        name=user.name,
        ttl_seconds=issued.ttl_seconds,
    )


@transactional
def reset_password(db: Session, mailer: Mailer, email: str, code: str, new_password: str, *, now: datetime) -> User:
    """校验找回密码验证码并重设密码，同一事务内吊销该用户全部会话。"""
    ensure_strong_password(new_password)
    user = find_user_by_email(db, email)
    if user is None or not user.is_active:
        raise OtpMismatch()
    otp.verify_code(db, user_id=user.id, purpose=OtpPurpose.PASSWORD_RESET, code=code, now=now)
    _set_password(user, new_password)
    tokens.revoke_all_for_user(db, user.id, now=now)
    db.flush()
    mailer.send_password_changed(user.email, name=user.name)
    logger.info("password reset user_id=%s", user.id)
    return user
