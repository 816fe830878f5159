"""对象映射基础模型与通用混入。"""

from datetime import datetime
from uuid import UUID
from uuid import uuid4

from sqlalchemy import DateTime, MetaData, Uuid, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """全局对象映射声明基类。"""

    metadata = MetaData(
        naming_convention={
            # 账号与认证表之间只做逻辑关联，不声明外键，因此没有 fk 规则。
            "pk": "pk_%(table_name)s",
            "ix": "ix_%(table_name)s_%(column_0_name)s",
            "uq": "uk_%(table_name)s_%(column_0_name)s",
            "ck": "ck_%(table_name)s_%(constraint_name)s",
        }
    )


class UUIDPrimaryKeyMixin:
    """UUID 主键，由应用侧生成。"""

    # 令牌与验证码中引用的用户 ID 即为该主键，不可预测。
    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4, comment="主键 ID。")


class IssuedAtMixin:
    """签发类记录（验证码、刷新令牌）的创建时间。

    由服务层传入业务时钟写入，不使用数据库默认值，
    保证与 expires_at、last_activity_at 基于同一时间源比较。
    """

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, comment="签发时间。")


class TimestampMixin:
    """账号等可编辑记录的创建与更新时间，由数据库维护。"""

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False, comment="创建时间。"
    )
    # 资料、角色、启停状态变更时刷新。
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
        comment="更新时间。",
    )
