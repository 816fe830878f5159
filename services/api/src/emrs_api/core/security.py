"""认证解析与令牌编解码工具。"""

from dataclasses import dataclass
from datetime import datetime, timezone
import hashlib
import hmac
from typing import Any
from uuid import UUID

import jwt
from fastapi import Request
from jwt import ExpiredSignatureError, InvalidTokenError

from emrs_api.core.config import get_settings
from emrs_api.core.errors import TokenExpired, TokenMalformed

ACCESS_TOKEN_TYPE = "access"


@dataclass(frozen=True)
class AccessClaims:
    """访问令牌中的身份声明。"""

    user_id: UUID
    email: str
    role: str | None
    issued_at: datetime
    expires_at: datetime
    jti: str | None


@dataclass(frozen=True)
class ClientInfo:
    """发起请求的终端描述，用于标记刷新令牌。"""

    device_info: str
    ip_address: str | None


def secure_compare(left: str, right: str) -> bool:
    """常量时间比较两个秘密字符串。"""
    return hmac.compare_digest(left.encode("utf-8"), right.encode("utf-8"))


def digest_secret(raw: str) -> str:
    """对高熵随机令牌取摘要，数据库只保存摘要。"""
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


def encode_jwt(claims: dict[str, Any]) -> str:
    settings = get_settings()
    return jwt.encode(claims, settings.auth_jwt_secret, algorithm=settings.auth_algorithms[0])


def _decode_jwt(token: str) -> dict[str, Any]:
    """按配置解码并校验令牌签名、签发方与过期时间。"""
    settings = get_settings()
    try:
        return jwt.decode(
            token,
            key=settings.auth_jwt_secret,
            algorithms=settings.auth_algorithms,
            issuer=settings.auth_jwt_issuer,
            leeway=settings.auth_jwt_leeway_seconds,
            options={"require": ["sub", "exp", "iat"]},
        )
    except ExpiredSignatureError as exc:
        raise TokenExpired() from exc
    except InvalidTokenError as exc:
        raise TokenMalformed() from exc


def decode_access_token(token: str) -> AccessClaims:
    """校验访问令牌并提取身份声明。"""
    claims = _decode_jwt(token)

    # 刷新令牌等其他类型的令牌不允许访问业务接口。
    if claims.get("type") != ACCESS_TOKEN_TYPE:
        raise TokenMalformed("访问令牌类型错误。")

    try:
        user_id = UUID(str(claims.get("sub")))
    except ValueError as exc:
        raise TokenMalformed("访问令牌载荷无效。") from exc

    email = claims.get("email")
    if not isinstance(email, str) or not email.strip():
        raise TokenMalformed("访问令牌载荷无效。")

    role = claims.get("role")
    jti = claims.get("jti")
    return AccessClaims(
        user_id=user_id,
        email=email,
        role=role if isinstance(role, str) else None,
        issued_at=datetime.fromtimestamp(int(claims["iat"]), tz=timezone.utc),
        expires_at=datetime.fromtimestamp(int(claims["exp"]), tz=timezone.utc),
        jti=jti if isinstance(jti, str) else None,
    )


def client_ip(request: Request) -> str | None:
    """从代理头或连接信息中提取客户端 IP。"""
    # 优先读取反向代理透传头，兼容网关/负载均衡场景。
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    if request.client:
        return request.client.host
    return None


def client_info(request: Request) -> ClientInfo:
    user_agent = request.headers.get("user-agent") or "Unknown"
    return ClientInfo(device_info=user_agent[:255], ip_address=client_ip(request))
