"""时间工具。

数据库统一保存 UTC 时间；部分驱动（如 SQLite）读回时会丢失时区信息，
比较前需要用 `as_utc` 补齐。
"""

from datetime import datetime, timezone


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def utc_iso(value: datetime) -> str:
    return as_utc(value).isoformat().replace("+00:00", "Z")
