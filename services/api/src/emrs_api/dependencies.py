"""请求身份依赖。

职责:
1. 解析并校验 Bearer 访问令牌。
2. 每次请求按 (用户 ID, 邮箱) 重新加载账号，已停用或已变更的账号立即失效。
3. 生成后续路由统一使用的 RequestIdentity。
"""

from dataclasses import dataclass
from uuid import UUID

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.orm import Session

from emrs_api.core.errors import AccountInactive, AuthError, Forbidden, ServiceError, TokenMalformed
from emrs_api.core.security import client_ip, decode_access_token
from emrs_api.db.session import get_db
from emrs_api.models.enums import UserRole
from emrs_api.models.user import User
from emrs_api.services.credentials import normalize_email
from emrs_api.services.rate_limit import hit_otp_limit

bearer_scheme = HTTPBearer(auto_error=False)


@dataclass(frozen=True)
class RequestIdentity:
    """当前请求的调用者。

    字段取自数据库中的账号记录，而非令牌声明，保证角色变更即时生效。
    """

    user_id: UUID
    name: str
    email: str
    role: str


def _identity_from_token(db: Session, token: str) -> RequestIdentity:
    claims = decode_access_token(token)
    user = db.get(User, claims.user_id)
    if user is None or user.email != normalize_email(claims.email):
        raise TokenMalformed("令牌对应的账号不存在。")
    if not user.is_active:
        raise AccountInactive()
    return RequestIdentity(user_id=user.id, name=user.name, email=user.email, role=user.role)


def get_current_identity(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
    db: Session = Depends(get_db),
) -> RequestIdentity:
    """要求携带有效访问令牌。"""
    if credentials is None or not credentials.credentials:
        raise AuthError("缺少访问令牌。")
    return _identity_from_token(db, credentials.credentials)


def get_optional_identity(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
    db: Session = Depends(get_db),
) -> RequestIdentity | None:
    """可选认证：令牌缺失或无效时返回 None，从不拒绝请求。"""
    if credentials is None or not credentials.credentials:
        return None
    try:
        return _identity_from_token(db, credentials.credentials)
    except ServiceError:
        return None


def _flatten_roles(roles: tuple) -> set[str]:
    flattened: set[str] = set()
    for item in roles:
        if isinstance(item, (list, tuple, set, frozenset)):
            flattened |= _flatten_roles(tuple(item))
        elif item is not None:
            flattened.add(str(item).strip().casefold())
    return flattened


def require_roles(*roles):
    """按账号角色做路由级权限限制，支持可变参数或列表参数，忽略大小写与首尾空白。"""
    allowed = _flatten_roles(roles)

    def _dep(identity: RequestIdentity = Depends(get_current_identity)) -> RequestIdentity:
        if str(identity.role).strip().casefold() not in allowed:
            raise Forbidden()
        return identity

    return _dep


def otp_rate_limit(request: Request) -> None:
    """验证码发送类接口按客户端 IP 限流。"""
    hit_otp_limit(client_ip(request) or "unknown")


# 仅管理员可访问。
ADMIN_ONLY = (UserRole.ADMIN,)
