"""刷新令牌 Cookie 读写。"""

from fastapi import Request, Response

from emrs_api.core.config import get_settings


def read_refresh_cookie(request: Request) -> str | None:
    settings = get_settings()
    value = request.cookies.get(settings.auth_refresh_cookie_name)
    return value or None


def set_refresh_cookie(response: Response, raw_token: str) -> None:
    """HttpOnly + SameSite=strict，作用域限定在接口前缀。"""
    settings = get_settings()
    response.set_cookie(
        key=settings.auth_refresh_cookie_name,
        value=raw_token,
        max_age=settings.auth_refresh_token_ttl_seconds,
        path=settings.api_prefix,
        secure=settings.refresh_cookie_secure,
        httponly=True,
        samesite="strict",
    )


def clear_refresh_cookie(response: Response) -> None:
    settings = get_settings()
    response.delete_cookie(
        key=settings.auth_refresh_cookie_name,
        path=settings.api_prefix,
        secure=settings.refresh_cookie_secure,
        httponly=True,
        samesite="strict",
    )
