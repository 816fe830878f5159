"""数据库基础模型导出。

仅提供 Base 定义，应用启动时不执行自动建表。
表结构由 `scripts/init_db.py` 初始化或由迁移脚本维护。
"""

from emrs_api.models.base import Base

__all__ = ["Base"]
