"""路由模块导出集合。"""

from . import auth, health, session, users

__all__ = ["auth", "health", "session", "users"]
