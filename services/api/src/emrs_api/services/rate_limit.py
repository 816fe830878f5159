"""固定窗口限流。

优先使用 Redis 计数，多实例共享窗口；未配置或 Redis 异常时回退到进程内计数。
"""

from __future__ import annotations

import logging
import time
from threading import Lock

from redis import Redis
from redis.exceptions import RedisError

from emrs_api.core.config import get_settings
from emrs_api.core.errors import RateLimited

logger = logging.getLogger(__name__)

_LOCAL_LOCK = Lock()
# key -> (窗口起始时间戳, 计数)
_LOCAL_WINDOWS: dict[str, tuple[int, int]] = {}

_redis_client: Redis | None = None


def _get_redis() -> Redis | None:
    global _redis_client
    settings = get_settings()
    if not settings.redis_url:
        return None
    if _redis_client is None:
        _redis_client = Redis.from_url(settings.redis_url, decode_responses=True)
    return _redis_client


def _window_key(scope: str, identity: str, window_start: int) -> str:
    settings = get_settings()
    return f"{settings.rate_limit_prefix}{scope}:{identity}:{window_start}"


def _hit_redis(client: Redis, key: str, window_seconds: int) -> int:
    pipe = client.pipeline()
    pipe.incr(key)
    pipe.expire(key, window_seconds)
    count, _ = pipe.execute()
    return int(count)


def _hit_local(key: str, window_start: int) -> int:
    with _LOCAL_LOCK:
        started, count = _LOCAL_WINDOWS.get(key, (window_start, 0))
        if started != window_start:
            started, count = window_start, 0
        count += 1
        _LOCAL_WINDOWS[key] = (started, count)
        # 顺带清理已结束窗口的计数。
        for stale_key in [k for k, (start, _) in _LOCAL_WINDOWS.items() if start < window_start]:
            _LOCAL_WINDOWS.pop(stale_key, None)
        return count


def hit(scope: str, identity: str, *, limit: int, window_seconds: int, now_ts: float | None = None) -> int:
    """在当前窗口内计数一次，超过上限时抛出 RateLimited。"""
    ts = int(time.time() if now_ts is None else now_ts)
    window_start = ts - ts % window_seconds
    key = _window_key(scope, identity, window_start)

    count: int | None = None
    client = _get_redis()
    if client is not None:
        try:
            count = _hit_redis(client, key, window_seconds)
        except RedisError as exc:
            logger.warning("rate limit redis unavailable, using local window: %s", exc)
    if count is None:
        # 本地键不带窗口起点，由 _hit_local 自行判断窗口切换。
        count = _hit_local(f"{scope}:{identity}", window_start)

    if count > limit:
        retry_after = window_start + window_seconds - ts
        logger.info("rate limited scope=%s identity=%s count=%s", scope, identity, count)
        raise RateLimited(details={"retry_after_seconds": max(1, retry_after)})
    return count


def hit_otp_limit(identity: str, *, now_ts: float | None = None) -> int:
    settings = get_settings()
    return hit(
        "otp",
        identity,
        limit=settings.otp_rate_limit_requests,
        window_seconds=settings.otp_rate_limit_window_seconds,
        now_ts=now_ts,
    )


def reset_local_windows() -> None:
    """清空进程内计数（测试与运维脚本使用）。"""
    with _LOCAL_LOCK:
        _LOCAL_WINDOWS.clear()
