"""登录、二次验证与密码找回请求结构。"""

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, Field

from emrs_api.schemas.common import BaseSchema
from emrs_api.schemas.user import UserData

EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"


class LoginRequest(BaseModel):
    """邮箱密码登录请求。"""

    email: str = Field(
        min_length=5,
        max_length=256,
        pattern=EMAIL_PATTERN,
        description="登录邮箱。",
        examples=["doctor@hospital.org"],
    )
    password: str = Field(min_length=1, max_length=128, description="登录密码。", examples=["StrongPassw0rd!"])


class VerifyLoginOtpRequest(BaseModel):
    """提交登录验证码。"""

    user_id: UUID = Field(description="登录第一步返回的用户 ID。")
    otp: str = Field(min_length=6, max_length=12, description="邮箱收到的 6 位验证码。", examples=["042913"])


class ResendLoginOtpRequest(BaseModel):
    user_id: UUID = Field(description="登录第一步返回的用户 ID。")


class ForgotPasswordRequest(BaseModel):
    email: str = Field(min_length=5, max_length=256, pattern=EMAIL_PATTERN, description="账号邮箱。")


class ResetPasswordRequest(BaseModel):
    """通过找回密码验证码重设密码。"""

    email: str = Field(min_length=5, max_length=256, pattern=EMAIL_PATTERN, description="账号邮箱。")
    otp: str = Field(min_length=6, max_length=12, description="邮箱收到的 6 位验证码。")
    new_password: str = Field(min_length=8, max_length=128, description="新密码。")


class SetupPasswordRequest(BaseModel):
    """通过管理员发送的链接首次设置密码。"""

    token: str = Field(min_length=16, max_length=256, description="设置链接中的令牌。")
    password: str = Field(min_length=8, max_length=128, description="新密码。")


class LoginData(BaseSchema):
    """登录结果：直接签发令牌，或要求提交验证码。"""

    otp_required: bool = Field(description="是否需要提交邮箱验证码。")
    user: UserData | None = Field(default=None, description="已认证时返回的账号信息。")
    access_token: str | None = Field(default=None, description="访问令牌。")
    token_type: str | None = Field(default=None, description="令牌类型。")
    expires_at: datetime | None = Field(default=None, description="访问令牌过期时间（UTC）。")
    expires_in: int = Field(description="访问令牌或验证码的有效秒数。")
    user_id: UUID | None = Field(default=None, description="待验证账号 ID，提交验证码时使用。")
    email: str | None = Field(default=None, description="验证码发送到的邮箱。")


class OtpChallengeData(BaseSchema):
    user_id: UUID = Field(description="待验证账号 ID。")
    email: str = Field(description="验证码发送到的邮箱。")
    expires_in: int = Field(description="验证码有效秒数。")
