"""
一个简单的运行时指标收集类，统计提醒触发、通知投递、推送发送等计数，供 Admin API 查询。
"""

from __future__ import annotations

import time
from dataclasses import dataclass


@dataclass
class RuntimeMetrics:
    reminder_tick_count: int = 0
    reminders_evaluated: int = 0
    reminders_triggered: int = 0
    reminders_suppressed: int = 0
    reminders_errored: int = 0
    notifications_created: int = 0
    delivery_tick_count: int = 0
    notifications_sent: int = 0
    notifications_delivered: int = 0
    notifications_failed: int = 0
    notifications_left_pending: int = 0
    push_send_ok: int = 0
    push_send_failed: int = 0
    last_reminder_tick_at: float | None = None
    last_delivery_tick_at: float | None = None

    def record_reminder_tick(self, evaluated: int) -> None:
        self.reminder_tick_count += 1
        self.reminders_evaluated += evaluated
        self.last_reminder_tick_at = time.time()

    def record_reminder_triggered(self, notification_created: bool) -> None:
        self.reminders_triggered += 1
        if notification_created:
            self.notifications_created += 1
        else:
            self.reminders_suppressed += 1

    def record_reminder_error(self) -> None:
        self.reminders_errored += 1

    def record_delivery_tick(self) -> None:
        self.delivery_tick_count += 1
        self.last_delivery_tick_at = time.time()

    def record_delivery_outcome(self, outcome: str) -> None:
        if outcome == "SENT":
            self.notifications_sent += 1
        elif outcome == "DELIVERED":
            self.notifications_delivered += 1
        elif outcome == "FAILED":
            self.notifications_failed += 1
        elif outcome == "PENDING":
            self.notifications_left_pending += 1

    def record_push_send(self, ok: bool) -> None:
        if ok:
            self.push_send_ok += 1
        else:
            self.push_send_failed += 1

    def snapshot(self) -> dict:
        return {
            "reminder_tick_count": self.reminder_tick_count,
            "reminders_evaluated": self.reminders_evaluated,
            "reminders_triggered": self.reminders_triggered,
            "reminders_suppressed": self.reminders_suppressed,
            "reminders_errored": self.reminders_errored,
            "notifications_created": self.notifications_created,
            "delivery_tick_count": self.delivery_tick_count,
            "notifications_sent": self.notifications_sent,
            "notifications_delivered": self.notifications_delivered,
            "notifications_failed": self.notifications_failed,
            "notifications_left_pending": self.notifications_left_pending,
            "push_send_ok": self.push_send_ok,
            "push_send_failed": self.push_send_failed,
            "last_reminder_tick_at_utc": _fmt_epoch(self.last_reminder_tick_at),
            "last_delivery_tick_at_utc": _fmt_epoch(self.last_delivery_tick_at),
        }


def _fmt_epoch(epoch: float | None) -> str | None:
    if epoch is None:
        return None
    return time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime(epoch))


runtime_metrics = RuntimeMetrics()


__all__ = ["RuntimeMetrics", "runtime_metrics"]
