"""ORM 模型导出集合。"""

from emrs_api.models.auth import OneTimeCode, PasswordSetupToken, RefreshToken
from emrs_api.models.user import User

__all__ = [
    "OneTimeCode",
    "PasswordSetupToken",
    "RefreshToken",
    "User",
]
