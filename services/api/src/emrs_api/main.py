"""FastAPI 应用入口点。"""

from fastapi import FastAPI

from emrs_api.api.router import api_router
from emrs_api.core.config import get_settings
from emrs_api.core.logging import setup_logging
from emrs_api.exceptions import register_exception_handlers
from emrs_api.middlewares import register_middlewares

settings = get_settings()


def create_app() -> FastAPI:
    """创建并配置 FastAPI 应用实例。"""
    setup_logging()
    app = FastAPI(
        title=settings.app_name,
        version="1.0.0",
        debug=settings.app_debug,
        description=(
            "电子病历系统身份与会话接口。\n\n"
            "所有业务接口统一返回：`{request_id, data, meta}`。\n"
            "业务接口通过 `Authorization: Bearer <访问令牌>` 认证；"
            "刷新令牌保存在 HttpOnly Cookie `refreshToken` 中。"
        ),
        openapi_tags=[
            {"name": "health", "description": "服务存活与就绪探针。"},
            {"name": "auth", "description": "登录、二次验证、找回与设置密码。"},
            {"name": "session", "description": "刷新令牌、活跃心跳、会话信息与退出登录。"},
            {"name": "users", "description": "个人资料与管理员账号管理。"},
        ],
    )

    register_middlewares(app)
    register_exception_handlers(app)
    app.include_router(api_router, prefix=settings.api_prefix)
    return app


app = create_app()
