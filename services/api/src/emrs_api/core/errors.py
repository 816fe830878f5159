"""领域错误定义。

服务层只抛出这里定义的错误，由 `exceptions.py` 统一转换为 HTTP 错误结构。
`code` 为前端可识别的稳定错误码，`message` 为对外展示文案。
"""

from typing import Any

from fastapi import status


class ServiceError(Exception):
    """所有业务错误的基类。"""

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    code: str = "INTERNAL_ERROR"
    message: str = "请求处理失败。"

    def __init__(self, message: str | None = None, *, details: dict[str, Any] | None = None) -> None:
        super().__init__(message or self.message)
        if message:
            self.message = message
        self.details = details or {}


class AuthError(ServiceError):
    """认证失败。"""

    status_code = status.HTTP_401_UNAUTHORIZED
    code = "UNAUTHORIZED"
    message = "未登录或登录状态已失效。"


class InvalidCredentials(AuthError):
    code = "INVALID_CREDENTIALS"
    message = "邮箱或密码错误。"


class AccountInactive(AuthError):
    code = "ACCOUNT_INACTIVE"
    message = "账号已停用，请联系管理员。"


class AccountLocked(AuthError):
    status_code = status.HTTP_423_LOCKED
    code = "ACCOUNT_LOCKED"
    message = "连续登录失败次数过多，账号已临时锁定。"


class OtpVerificationFailed(AuthError):
    """验证码校验失败。

    子类区分失败原因，仅用于服务端日志；对外统一为同一错误码与文案，
    避免调用方据此枚举验证码状态。
    """

    code = "OTP_INVALID"
    message = "验证码无效或已过期，请核对后重试或重新获取。"
    reason = "rejected"


class OtpMismatch(OtpVerificationFailed):
    reason = "mismatch"


class OtpAlreadyUsed(OtpVerificationFailed):
    reason = "already_used"


class OtpExpired(OtpVerificationFailed):
    reason = "expired"


class SessionExpired(AuthError):
    code = "SESSION_EXPIRED"
    message = "会话已过期，请重新登录。"


class TokenExpired(AuthError):
    code = "TOKEN_EXPIRED"
    message = "访问令牌已过期。"


class TokenMalformed(AuthError):
    code = "TOKEN_INVALID"
    message = "访问令牌无效。"


class Forbidden(ServiceError):
    status_code = status.HTTP_403_FORBIDDEN
    code = "FORBIDDEN"
    message = "无权限访问该资源。"


class NotFound(ServiceError):
    status_code = status.HTTP_404_NOT_FOUND
    code = "NOT_FOUND"
    message = "请求资源不存在。"


class Conflict(ServiceError):
    status_code = status.HTTP_409_CONFLICT
    code = "CONFLICT"
    message = "请求与当前数据状态冲突。"


class BadRequest(ServiceError):
    status_code = status.HTTP_400_BAD_REQUEST
    code = "BAD_REQUEST"
    message = "请求参数不合法。"


class PasswordPolicyViolation(BadRequest):
    code = "WEAK_PASSWORD"
    message = "密码不符合安全要求。"


class RateLimited(ServiceError):
    status_code = status.HTTP_429_TOO_MANY_REQUESTS
    code = "RATE_LIMITED"
    message = "请求过于频繁，请稍后再试。"


class ServiceUnavailable(ServiceError):
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    code = "SERVICE_UNAVAILABLE"
    message = "服务暂时不可用，请稍后重试。"
