from __future__ import annotations

import math
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, List, Optional

__all__ = [
    "ScheduleError",
    "ReminderType", "ScheduleType", "ScheduleConfig", "Reminder",
    "NotificationType", "NotificationStatus", "can_transition", "Notification",
    "Device", "NotificationPreferences",
    "PushMessage", "PushResult",
]

HHMM_PATTERN = re.compile(r"^([01]\d|2[0-3]):([0-5]\d)$")

# timedelta 能表示的最大分钟数
MAX_INTERVAL_MINUTES = timedelta.max // timedelta(minutes=1)


class ScheduleError(ValueError):
    """提醒的调度规则无法解析或求值"""


# ----------------- Reminder 数据模型 ----------------
class ReminderType(str, Enum):
    HYDRATION = "HYDRATION"
    MOVEMENT = "MOVEMENT"
    SLEEP = "SLEEP"
    MEDICATION = "MEDICATION"
    WORKOUT = "WORKOUT"
    CUSTOM = "CUSTOM"


class ScheduleType(str, Enum):
    DAILY = "daily"
    WEEKLY = "weekly"
    INTERVAL = "interval"


@dataclass
class ScheduleConfig:
    type: str
    time: Optional[str] = None  # 格式: "HH:MM"
    days: Optional[List[int]] = None  # 0 = 周日 ... 6 = 周六
    interval_minutes: Optional[int] = None

    @classmethod
    def from_dict(cls, raw: Dict[str, Any] | None) -> "ScheduleConfig":
        """宽松解析, 不做校验; 校验推迟到求值时 (validate)"""
        if not isinstance(raw, dict):
            return cls(type="")
        interval = raw.get("interval_minutes", raw.get("intervalMinutes"))
        return cls(
            type=str(raw.get("type") or ""),
            time=raw.get("time"),
            days=raw.get("days"),
            interval_minutes=interval,
        )

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"type": self.type}
        if self.time is not None:
            data["time"] = self.time
        if self.days is not None:
            data["days"] = list(self.days)
        if self.interval_minutes is not None:
            data["interval_minutes"] = self.interval_minutes
        return data

    def validate(self) -> ScheduleType:
        """检查当前类型所需字段是否齐全合法, 返回规范化后的类型"""
        try:
            schedule_type = ScheduleType(self.type)
        except ValueError:
            raise ScheduleError(f"未知的调度类型: {self.type!r}") from None

        if schedule_type in (ScheduleType.DAILY, ScheduleType.WEEKLY):
            if not isinstance(self.time, str) or not HHMM_PATTERN.match(self.time):
                raise ScheduleError(f"{schedule_type.value} 规则的 time 非法: {self.time!r}")

        if schedule_type == ScheduleType.WEEKLY:
            if not self.days or not isinstance(self.days, (list, tuple, set)):
                raise ScheduleError(f"weekly 规则缺少 days: {self.days!r}")
            for day in self.days:
                if isinstance(day, bool) or not isinstance(day, int) or not 0 <= day <= 6:
                    raise ScheduleError(f"weekly 规则的 days 非法: {self.days!r}")

        if schedule_type == ScheduleType.INTERVAL:
            interval = self.interval_minutes
            if isinstance(interval, bool) or not isinstance(interval, (int, float)):
                raise ScheduleError(f"interval 规则的 interval_minutes 非法: {interval!r}")
            # json 会把 NaN / Infinity 解析成 float
            if isinstance(interval, float) and not math.isfinite(interval):
                raise ScheduleError(f"interval 规则的 interval_minutes 非法: {interval!r}")
            if not 0 < interval <= MAX_INTERVAL_MINUTES:
                raise ScheduleError(f"interval 规则的 interval_minutes 超出范围: {interval!r}")

        return schedule_type


@dataclass
class Reminder:
    reminder_id: str
    user_id: str
    type: str  # ReminderType 的取值
    title: str
    schedule: ScheduleConfig
    message: Optional[str] = None
    quiet_hours_start: Optional[str] = None  # 格式: "HH:MM"
    quiet_hours_end: Optional[str] = None  # 格式: "HH:MM"
    is_active: bool = True
    last_triggered: Optional[datetime] = None  # 只增不减
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


# ----------------- Notification 数据模型 ----------------
class NotificationType(str, Enum):
    REMINDER = "REMINDER"
    INSIGHT = "INSIGHT"
    ACHIEVEMENT = "ACHIEVEMENT"
    BOOKING = "BOOKING"
    MESSAGE = "MESSAGE"
    SYSTEM = "SYSTEM"


class NotificationStatus(str, Enum):
    PENDING = "PENDING"
    SENT = "SENT"
    DELIVERED = "DELIVERED"
    FAILED = "FAILED"


# 状态机只允许从 PENDING 出发, 终态不可再转移
_ALLOWED_TRANSITIONS = {
    NotificationStatus.PENDING: {
        NotificationStatus.SENT,
        NotificationStatus.DELIVERED,
        NotificationStatus.FAILED,
    },
}


def can_transition(src: NotificationStatus | str, dst: NotificationStatus | str) -> bool:
    return NotificationStatus(dst) in _ALLOWED_TRANSITIONS.get(NotificationStatus(src), set())


@dataclass
class Notification:
    notification_id: str
    user_id: str
    type: str  # NotificationType 的取值
    title: str
    body: str
    payload: Optional[Dict[str, Any]] = None
    status: NotificationStatus = NotificationStatus.PENDING
    created_at: Optional[datetime] = None
    sent_at: Optional[datetime] = None


# ----------------- Device 数据模型 ----------------
@dataclass
class Device:
    device_id: str
    user_id: str
    push_token: Optional[str] = None  # None 表示该设备无推送能力
    platform: Optional[str] = None


# ----------------- 通知偏好 ----------------
@dataclass
class NotificationPreferences:
    reminders: bool = True
    insights: bool = True
    achievements: bool = True
    bookings: bool = True
    messages: bool = True
    system: bool = True
    push_enabled: bool = True
    email_enabled: bool = False
    quiet_hours_enabled: bool = False
    quiet_hours_start: Optional[str] = None
    quiet_hours_end: Optional[str] = None


# ----------------- 推送 ----------------
@dataclass
class PushMessage:
    title: str
    body: str
    payload: Dict[str, Any] = field(default_factory=dict)


@dataclass
class PushResult:
    ok: bool
    error: Optional[str] = None
    ticket_id: Optional[str] = None  # 推送服务返回的回执 ID (如有)
