"""提醒调度规则求值

is_due(reminder, now) 是 (reminder, now) 的纯函数, 不读写任何外部状态。
`now` 必须带时区; 规则中的 "HH:MM" 以及"同一天"的判断都按 `now` 所在时区的墙上时间计算。

注意: daily/weekly 只在分钟完全匹配的那一次检查中触发, 进程停机错过的分钟不会补发,
当天的这一次提醒会直接跳过, 等到下一个符合条件的日期。
"""

from __future__ import annotations

from datetime import datetime, timedelta

from datamodel import HHMM_PATTERN, Reminder, ScheduleError, ScheduleType
from utils import hhmm

__all__ = ["ScheduleError", "parse_hhmm", "is_in_quiet_hours", "sunday_based_weekday", "is_due"]


def parse_hhmm(value: str) -> int:
    """'HH:MM' -> 当天的分钟数"""
    if not isinstance(value, str) or not HHMM_PATTERN.match(value):
        raise ScheduleError(f"时间格式非法, 需要 HH:MM: {value!r}")
    hours, minutes = value.split(":")
    return int(hours) * 60 + int(minutes)


def is_in_quiet_hours(start: str | None, end: str | None, now: datetime) -> bool:
    """判断 now 是否落在免打扰窗口 [start, end) 内

    start > end 表示跨午夜 (如 22:00 - 06:00); start == end 视为空窗口;
    任意一端缺失则不启用免打扰。
    """
    if not start or not end:
        return False

    current = now.hour * 60 + now.minute
    start_min = parse_hhmm(start)
    end_min = parse_hhmm(end)

    if start_min > end_min:
        return current >= start_min or current < end_min
    return start_min <= current < end_min


def sunday_based_weekday(now: datetime) -> int:
    """0 = 周日 ... 6 = 周六 (Python 的 weekday() 以周一为 0)"""
    return (now.weekday() + 1) % 7


def _triggered_earlier_day(last_triggered: datetime | None, now: datetime) -> bool:
    if last_triggered is None:
        return True
    local_last = last_triggered.astimezone(now.tzinfo) if now.tzinfo else last_triggered
    return local_last.date() < now.date()


def is_due(reminder: Reminder, now: datetime) -> bool:
    """判断提醒在 now 这一刻是否应当触发

    规则非法时抛出 ScheduleError, 由调用方决定跳过。
    """
    if not reminder.is_active:
        return False

    schedule_type = reminder.schedule.validate()

    # 免打扰只抑制, 不顺延
    if is_in_quiet_hours(reminder.quiet_hours_start, reminder.quiet_hours_end, now):
        return False

    schedule = reminder.schedule
    if schedule_type == ScheduleType.INTERVAL:
        if reminder.last_triggered is None:
            return True
        return now - reminder.last_triggered >= timedelta(minutes=schedule.interval_minutes)

    if hhmm(now) != schedule.time:
        return False

    if schedule_type == ScheduleType.WEEKLY and sunday_based_weekday(now) not in schedule.days:
        return False

    return _triggered_earlier_day(reminder.last_triggered, now)
