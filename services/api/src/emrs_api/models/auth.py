"""认证相关模型。"""

from datetime import datetime
from uuid import UUID

from sqlalchemy import Boolean, DateTime, Index, String
from sqlalchemy.orm import Mapped, mapped_column

from emrs_api.models.base import Base, IssuedAtMixin, TimestampMixin, UUIDPrimaryKeyMixin


class OneTimeCode(Base, UUIDPrimaryKeyMixin, IssuedAtMixin):
    """一次性验证码（登录二次验证 / 找回密码）。"""

    __tablename__ = "one_time_codes"
    __table_args__ = (Index("ix_one_time_codes_user_purpose", "user_id", "purpose", "used"),)

    # 所属用户 ID（逻辑关联 users.id，不声明数据库外键）。
    user_id: Mapped[UUID] = mapped_column(nullable=False)
    # 6 位数字验证码。
    code: Mapped[str] = mapped_column(String(6), nullable=False)
    # 用途，取值见 OtpPurpose。
    purpose: Mapped[str] = mapped_column(String(32), nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    # 一次性锁存位：校验成功或被新验证码取代后置为 true。
    used: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    used_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))


class RefreshToken(Base, UUIDPrimaryKeyMixin, IssuedAtMixin):
    """刷新令牌会话，每个终端一条，相互独立。"""

    __tablename__ = "refresh_tokens"

    user_id: Mapped[UUID] = mapped_column(nullable=False, index=True)
    # 令牌摘要；原文只存在于客户端 HttpOnly Cookie 中。
    token_hash: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    # 终端 User-Agent。
    device_info: Mapped[str | None] = mapped_column(String(255))
    ip_address: Mapped[str | None] = mapped_column(String(64))
    # 最近活跃时间，刷新与心跳都会更新。
    last_activity_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    # 绝对过期时间，与活跃度无关。
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    revoked: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    revoked_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))


class PasswordSetupToken(Base, UUIDPrimaryKeyMixin, TimestampMixin):
    """管理员创建账号后发出的密码设置链接令牌。"""

    __tablename__ = "password_setup_tokens"

    user_id: Mapped[UUID] = mapped_column(nullable=False, index=True)
    token_hash: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    used: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
