import os
import sys
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from dotenv import load_dotenv
from logger import logger
load_dotenv()

__all__ = [
    "DB_PATH", "LOG_FILE", "LOG_LEVEL", "CONSOLE_LOG_LEVEL",
    "SCHEDULE_TIMEZONE",
    "REMINDER_TICK_SECONDS", "DELIVERY_TICK_SECONDS",
    "DELIVERY_BATCH_SIZE", "DELIVERY_CONCURRENCY", "PUSH_SEND_TIMEOUT_SECONDS",
    "PUSH_PROVIDER", "EXPO_PUSH_URL", "EXPO_ACCESS_TOKEN",
    "ADMIN_HTTP_ENABLED", "ADMIN_HTTP_HOST", "ADMIN_HTTP_PORT", "ADMIN_AUTH_TOKEN",
]


def _parse_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on", "y")


def _parse_positive_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = float(raw)
    except ValueError:
        logger.warning(f"{name}={raw!r} 非法, 已回退到 {default}")
        return default
    if value <= 0:
        logger.warning(f"{name}={raw!r} 必须为正数, 已回退到 {default}")
        return default
    return value


def _parse_positive_int(name: str, default: int) -> int:
    return int(_parse_positive_float(name, default))


# 存储与日志
DB_PATH = os.getenv("DB_PATH", "data/healthnudge.db")
LOG_FILE = os.getenv("LOG_FILE", "logs/healthnudge.log")
LOG_LEVEL = os.getenv("LOG_LEVEL", "DEBUG").strip().upper()
CONSOLE_LOG_LEVEL = os.getenv("CONSOLE_LOG_LEVEL", "INFO").strip().upper()

# 提醒规则中的 HH:mm 均按此时区的墙上时间解释
SCHEDULE_TIMEZONE = os.getenv("SCHEDULE_TIMEZONE", "UTC").strip()
try:
    ZoneInfo(SCHEDULE_TIMEZONE)
except (ZoneInfoNotFoundError, ValueError):
    logger.warning(f"SCHEDULE_TIMEZONE 非法: {SCHEDULE_TIMEZONE}, 已回退到 UTC")
    SCHEDULE_TIMEZONE = "UTC"

# 两个周期任务
REMINDER_TICK_SECONDS = _parse_positive_float("REMINDER_TICK_SECONDS", 60.0)
DELIVERY_TICK_SECONDS = _parse_positive_float("DELIVERY_TICK_SECONDS", 10.0)
DELIVERY_BATCH_SIZE = _parse_positive_int("DELIVERY_BATCH_SIZE", 100)
DELIVERY_CONCURRENCY = _parse_positive_int("DELIVERY_CONCURRENCY", 10)
PUSH_SEND_TIMEOUT_SECONDS = _parse_positive_float("PUSH_SEND_TIMEOUT_SECONDS", 10.0)

# 推送通道: "log" 仅写日志, "expo" 走 Expo Push API
PUSH_PROVIDER = os.getenv("PUSH_PROVIDER", "log").strip().lower()
if PUSH_PROVIDER not in ("log", "expo"):
    logger.critical(f"PUSH_PROVIDER 非法: {PUSH_PROVIDER}, 仅支持 log 或 expo")
    sys.exit(1)

EXPO_PUSH_URL = os.getenv("EXPO_PUSH_URL", "https://exp.host/--/api/v2/push/send")
EXPO_ACCESS_TOKEN = os.getenv("EXPO_ACCESS_TOKEN", "")

# Admin API (只读运维接口)
ADMIN_HTTP_ENABLED = _parse_bool("ADMIN_HTTP_ENABLED", False)
ADMIN_HTTP_HOST = os.getenv("ADMIN_HTTP_HOST", "127.0.0.1")
ADMIN_HTTP_PORT = _parse_positive_int("ADMIN_HTTP_PORT", 18080)
ADMIN_AUTH_TOKEN = os.getenv("ADMIN_AUTH_TOKEN", "")
