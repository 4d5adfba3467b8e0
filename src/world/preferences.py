from __future__ import annotations

from datamodel import NotificationPreferences, NotificationType
from logger import logger
from storage.base import Store

__all__ = ["PreferenceGate", "CATEGORY_FLAGS"]

# 通知类别 -> 偏好开关
CATEGORY_FLAGS: dict[str, str] = {
    NotificationType.REMINDER.value: "reminders",
    NotificationType.INSIGHT.value: "insights",
    NotificationType.ACHIEVEMENT.value: "achievements",
    NotificationType.BOOKING.value: "bookings",
    NotificationType.MESSAGE.value: "messages",
    NotificationType.SYSTEM.value: "system",
}


class PreferenceGate:
    """按用户偏好决定某类通知是否允许创建

    用户没有保存过偏好时使用全开的默认值; 未知类别一律放行, 宁可多发也不静默丢弃。
    """

    def __init__(self, store: Store) -> None:
        self.store = store

    async def is_enabled(self, user_id: str, category: NotificationType | str) -> bool:
        preferences = await self.store.get_preferences(user_id)
        if preferences is None:
            preferences = NotificationPreferences()

        key = category.value if isinstance(category, NotificationType) else str(category).upper()
        flag = CATEGORY_FLAGS.get(key)
        if flag is None:
            logger.debug(f"未知通知类别 {category!r}, 默认放行 (user_id={user_id})")
            return True
        return bool(getattr(preferences, flag))
