"""服务层事务边界。"""

from __future__ import annotations

import logging
from functools import wraps
from typing import Any, Callable, TypeVar

from sqlalchemy.exc import InterfaceError, OperationalError, SQLAlchemyError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError
from sqlalchemy.orm import Session

from emrs_api.core.errors import ServiceError, ServiceUnavailable

logger = logging.getLogger(__name__)

F = TypeVar("F", bound=Callable[..., Any])


def transactional(func: F) -> F:
    """首个参数为数据库会话的服务入口：成功提交，失败回滚。

    存储层异常在此重新分类：连接或超时类为 ServiceUnavailable，其余为内部错误。
    """

    @wraps(func)
    def wrapper(db: Session, *args: Any, **kwargs: Any) -> Any:
        try:
            result = func(db, *args, **kwargs)
            db.commit()
            return result
        except ServiceError:
            db.rollback()
            raise
        except (OperationalError, InterfaceError, PoolTimeoutError) as exc:
            db.rollback()
            logger.error("storage unavailable in %s: %s", func.__name__, exc)
            raise ServiceUnavailable() from exc
        except SQLAlchemyError as exc:
            db.rollback()
            logger.exception("storage failure in %s", func.__name__)
            raise ServiceError() from exc

    return wrapper  # type: ignore[return-value]
