"""提醒触发循环

每一轮: 取出全部启用的提醒 -> 求值是否到期 -> 对每条到期提醒独立执行
"偏好检查 -> 创建 PENDING 通知 -> 推进 last_triggered"。

单条提醒失败只记录日志, 不影响同一轮的其他提醒。被偏好关闭的提醒不创建通知,
但同样推进 last_triggered, 保证每个周期最多触发一次。
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, List

from datamodel import Notification, NotificationType, Reminder, ReminderType, ScheduleError
from events import E, bus
from logger import logger
from metrics import runtime_metrics
from storage.base import Store
from utils import now_in_tz
from world.preferences import PreferenceGate
from world.schedule import is_due

__all__ = ["ReminderTrigger", "TriggerReport", "DEFAULT_MESSAGES", "default_message"]

DEFAULT_MESSAGES = {
    ReminderType.HYDRATION.value: "Time to drink some water! Stay hydrated for better health.",
    ReminderType.MOVEMENT.value: "Time to move! Take a short walk or stretch.",
    ReminderType.SLEEP.value: "It's getting late. Consider winding down for better sleep.",
    ReminderType.MEDICATION.value: "Don't forget to take your medication.",
    ReminderType.WORKOUT.value: "Time for your workout! Stay active and healthy.",
    ReminderType.CUSTOM.value: "You have a reminder.",
}


def default_message(reminder_type: str) -> str:
    key = reminder_type.value if isinstance(reminder_type, ReminderType) else str(reminder_type).upper()
    return DEFAULT_MESSAGES.get(key, DEFAULT_MESSAGES[ReminderType.CUSTOM.value])


TRIGGERED = "triggered"
SUPPRESSED = "suppressed"
FAILED = "failed"


@dataclass
class TriggerReport:
    now: datetime
    evaluated: int = 0
    triggered: List[str] = field(default_factory=list)
    suppressed: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)  # 规则非法, 本轮跳过
    failed: List[str] = field(default_factory=list)
    notifications: List[Notification] = field(default_factory=list)

    @property
    def due(self) -> int:
        return len(self.triggered) + len(self.suppressed) + len(self.failed)


class ReminderTrigger:
    def __init__(
        self,
        store: Store,
        gate: PreferenceGate | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.store = store
        self.gate = gate or PreferenceGate(store)
        self.clock = clock or (lambda: now_in_tz("UTC"))

    async def run_tick(self, now: datetime | None = None) -> TriggerReport:
        now = now or self.clock()
        reminders = await self.store.list_active_reminders()
        report = TriggerReport(now=now, evaluated=len(reminders))

        due: List[Reminder] = []
        for reminder in reminders:
            try:
                if is_due(reminder, now):
                    due.append(reminder)
            except ScheduleError as e:
                report.skipped.append(reminder.reminder_id)
                runtime_metrics.record_reminder_error()
                logger.warning(f"提醒 {reminder.reminder_id} 的调度规则非法, 本轮跳过: {e}")
            except Exception as e:
                report.skipped.append(reminder.reminder_id)
                runtime_metrics.record_reminder_error()
                logger.opt(exception=e).error(f"提醒 {reminder.reminder_id} 求值异常, 本轮跳过: {e!r}")

        outcomes = await asyncio.gather(*(self._fire(reminder, now) for reminder in due))
        for reminder, (outcome, notification) in zip(due, outcomes):
            if outcome == TRIGGERED:
                report.triggered.append(reminder.reminder_id)
                report.notifications.append(notification)
            elif outcome == SUPPRESSED:
                report.suppressed.append(reminder.reminder_id)
            else:
                report.failed.append(reminder.reminder_id)

        runtime_metrics.record_reminder_tick(len(reminders))
        if due or report.skipped:
            logger.info(
                f"提醒检查完成 ({now:%Y-%m-%d %H:%M}): 启用 {report.evaluated}, 到期 {report.due}, "
                f"触发 {len(report.triggered)}, 偏好抑制 {len(report.suppressed)}, "
                f"失败 {len(report.failed)}, 规则非法 {len(report.skipped)}"
            )
        else:
            logger.debug(f"提醒检查完成 ({now:%Y-%m-%d %H:%M}): 启用 {report.evaluated}, 无到期提醒")
        return report

    async def _fire(self, reminder: Reminder, now: datetime) -> tuple[str, Notification | None]:
        try:
            enabled = await self.gate.is_enabled(reminder.user_id, NotificationType.REMINDER)
        except Exception as e:
            runtime_metrics.record_reminder_error()
            logger.opt(exception=e).error(f"读取用户 {reminder.user_id} 的通知偏好失败, 提醒 {reminder.reminder_id} 留待下一轮")
            return FAILED, None

        notification: Notification | None = None
        if enabled:
            try:
                notification = await self.store.create_notification(
                    user_id=reminder.user_id,
                    type=NotificationType.REMINDER.value,
                    title=reminder.title,
                    body=reminder.message or default_message(reminder.type),
                    payload={"reminder_id": reminder.reminder_id, "reminder_type": str(reminder.type)},
                )
            except Exception as e:
                runtime_metrics.record_reminder_error()
                logger.opt(exception=e).error(f"为提醒 {reminder.reminder_id} 创建通知失败")
                return FAILED, None
        else:
            logger.debug(f"用户 {reminder.user_id} 关闭了提醒类通知, 提醒 {reminder.reminder_id} 本次不创建通知")

        # 通知已创建时必须尝试推进, 失败只能记录, 下一轮可能重复触发
        try:
            await self.store.update_reminder_last_triggered(reminder.reminder_id, now)
        except Exception as e:
            runtime_metrics.record_reminder_error()
            if notification is None:
                logger.opt(exception=e).error(f"提醒 {reminder.reminder_id} 推进 last_triggered 失败")
                return FAILED, None
            logger.opt(exception=e).error(
                f"提醒 {reminder.reminder_id} 已创建通知 {notification.notification_id}, "
                f"但推进 last_triggered 失败, 下一轮可能重复触发"
            )

        runtime_metrics.record_reminder_triggered(notification_created=notification is not None)
        if notification is None:
            return SUPPRESSED, None

        logger.info(f"已为提醒 {reminder.reminder_id} 创建通知 {notification.notification_id}")
        bus.emit(E.NOTIFICATION_CREATED, notification=notification)
        return TRIGGERED, notification
