from datetime import datetime, timezone
from zoneinfo import ZoneInfo

__all__ = ["DB_TIME_FORMAT", "now_utc", "now_in_tz", "to_db_time", "from_db_time", "hhmm"]

# 数据库中统一保存 UTC 时间, 精确到秒
DB_TIME_FORMAT = "%Y-%m-%d %H:%M:%S"


def now_utc() -> datetime:
    """获取当前 UTC 时间"""
    return datetime.now(timezone.utc)


def now_in_tz(tz_name: str) -> datetime:
    """获取指定时区的当前时间(带时区, 去掉微秒)"""
    return datetime.now(ZoneInfo(tz_name)).replace(microsecond=0)


def to_db_time(dt: datetime) -> str:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).strftime(DB_TIME_FORMAT)


def from_db_time(raw: str | None) -> datetime | None:
    if raw is None or raw == "":
        return None
    return datetime.strptime(raw, DB_TIME_FORMAT).replace(tzinfo=timezone.utc)


def hhmm(dt: datetime) -> str:
    """墙上时间的 'HH:MM' 表示"""
    return dt.strftime("%H:%M")
