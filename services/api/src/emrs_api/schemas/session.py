"""会话接口返回结构。"""

from datetime import datetime

from pydantic import Field

from emrs_api.schemas.common import BaseSchema


class RefreshData(BaseSchema):
    access_token: str = Field(description="新的访问令牌。")
    token_type: str = Field(default="bearer", description="令牌类型。")
    expires_in: int = Field(description="访问令牌有效秒数。")


class SessionInfoData(BaseSchema):
    """会话信息。"""

    last_activity: datetime = Field(description="最近活跃时间（UTC）。")
    session_expires_at: datetime = Field(description="会话到期时间（UTC）。")
    seconds_until_expiry: int = Field(description="距会话到期剩余秒数。")
    device_info: str | None = Field(default=None, description="终端 User-Agent。")


class LogoutData(BaseSchema):
    logged_out: bool = Field(description="是否已完成登出。")
    revoked: bool = Field(description="当前终端的刷新令牌是否被吊销。")
