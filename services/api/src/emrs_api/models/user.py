"""院内账号模型。"""

from datetime import datetime

from sqlalchemy import Boolean, DateTime, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from emrs_api.models.base import Base, TimestampMixin, UUIDPrimaryKeyMixin
from emrs_api.models.enums import UserRole


class User(Base, UUIDPrimaryKeyMixin, TimestampMixin):
    """院内工作人员账号，仅由管理员创建，不做物理删除。"""

    __tablename__ = "users"

    # 展示姓名。
    name: Mapped[str] = mapped_column(String(128), nullable=False)
    # 登录邮箱，去空格并转小写后全局唯一。
    email: Mapped[str] = mapped_column(String(256), nullable=False, unique=True)
    # 口令哈希；为空表示尚未通过设置链接设定密码。
    password_hash: Mapped[str | None] = mapped_column(String(256))
    # 角色，取值见 UserRole。
    role: Mapped[str] = mapped_column(String(64), nullable=False, default=UserRole.RESIDENT)
    # 是否开启登录二次验证。
    two_factor_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    # 停用账号不可登录，已签发的访问令牌也会在下次请求时被拒绝。
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    # 最近一次成功登录时间。
    last_login_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    # 连续密码错误次数，成功登录后清零。
    failed_login_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    # 锁定截止时间。
    locked_until: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
