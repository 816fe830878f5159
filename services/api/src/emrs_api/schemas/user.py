"""账号相关请求与返回结构。"""

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, Field

from emrs_api.models.enums import UserRole
from emrs_api.schemas.common import BaseSchema

_EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"


class UserData(BaseSchema):
    """账号信息，不包含口令哈希。"""

    id: UUID = Field(description="用户 ID。")
    name: str = Field(description="姓名。")
    email: str = Field(description="登录邮箱。")
    role: str = Field(description="角色。")
    two_factor_enabled: bool = Field(description="是否开启登录二次验证。")
    is_active: bool = Field(description="账号是否启用。")
    last_login_at: datetime | None = Field(default=None, description="最近登录时间。")
    created_at: datetime | None = Field(default=None, description="创建时间。")


class DoctorData(BaseSchema):
    id: UUID = Field(description="用户 ID。")
    name: str = Field(description="姓名。")
    email: str = Field(description="邮箱。")
    role: str = Field(description="角色。")


class UserCreateRequest(BaseModel):
    """管理员开通账号。"""

    name: str = Field(min_length=1, max_length=128, description="姓名。", examples=["Dr. Mehta"])
    email: str = Field(min_length=5, max_length=256, pattern=_EMAIL_PATTERN, description="登录邮箱。")
    role: UserRole = Field(description="角色。", examples=[UserRole.RESIDENT])
    two_factor_enabled: bool = Field(default=False, description="是否开启登录二次验证。")


class UserUpdateRequest(BaseModel):
    """管理员更新账号资料。"""

    name: str | None = Field(default=None, min_length=1, max_length=128, description="姓名。")
    email: str | None = Field(default=None, min_length=5, max_length=256, pattern=_EMAIL_PATTERN, description="邮箱。")
    role: UserRole | None = Field(default=None, description="角色。")


class ProfileUpdateRequest(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=128, description="姓名。")
    email: str | None = Field(default=None, min_length=5, max_length=256, pattern=_EMAIL_PATTERN, description="邮箱。")


class ChangePasswordRequest(BaseModel):
    current_password: str = Field(min_length=1, max_length=128, description="当前密码。")
    new_password: str = Field(min_length=8, max_length=128, description="新密码。")


class DisableTwoFactorRequest(BaseModel):
    otp: str = Field(min_length=6, max_length=12, description="邮箱收到的 6 位验证码。")


class OtpSentData(BaseSchema):
    message: str = Field(description="提示信息。")
    expires_in: int = Field(description="验证码有效秒数。")


class RoleStatsData(BaseSchema):
    """按角色统计的账号数量。"""

    role: str = Field(description="角色。")
    total: int = Field(description="账号总数。")
    active: int = Field(description="启用中的账号数。")
