"""存储能力的抽象接口

两个周期循环只依赖 Store 接口, 由 main.py 在启动时注入具体实现 (见 sqlite_store.py)。
所有方法都可能阻塞在 I/O 上; 任何方法都可能抛出 StoreError 或底层驱动的异常,
调用方负责在单条记录的粒度上捕获。
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from datamodel import (
    Device,
    Notification,
    NotificationPreferences,
    NotificationStatus,
    Reminder,
    ScheduleConfig,
)

__all__ = ["Store", "StoreError", "NotFoundError", "InvalidStatusTransition", "PendingItem"]

PendingItem = Tuple[Notification, List[Device]]


class StoreError(Exception):
    pass


class NotFoundError(StoreError):
    pass


class InvalidStatusTransition(StoreError):
    def __init__(self, notification_id: str, current: str, target: str) -> None:
        super().__init__(f"通知 {notification_id} 不允许从 {current} 转移到 {target}")
        self.notification_id = notification_id
        self.current = current
        self.target = target


class Store(ABC):
    # ---------- 两个循环直接使用的操作 ----------
    @abstractmethod
    async def list_active_reminders(self) -> List[Reminder]:
        pass

    @abstractmethod
    async def update_reminder_last_triggered(self, reminder_id: str, timestamp: datetime) -> Reminder:
        """推进 last_triggered, 不会让它倒退"""

    @abstractmethod
    async def create_notification(
        self,
        user_id: str,
        type: str,
        title: str,
        body: str,
        payload: Optional[Dict[str, Any]] = None,
    ) -> Notification:
        pass

    @abstractmethod
    async def list_pending_notifications(self, limit: int) -> List[PendingItem]:
        """最多返回 limit 条 PENDING 通知, 每条附带其用户持有推送 token 的设备"""

    @abstractmethod
    async def update_notification_status(
        self,
        notification_id: str,
        status: NotificationStatus,
        sent_at: Optional[datetime] = None,
    ) -> Notification:
        """只允许 PENDING -> 终态, 否则抛出 InvalidStatusTransition"""

    @abstractmethod
    async def get_preferences(self, user_id: str) -> Optional[NotificationPreferences]:
        pass

    # ---------- 辅助操作 (初始化数据、Admin API、测试) ----------
    @abstractmethod
    async def create_reminder(
        self,
        user_id: str,
        type: str,
        title: str,
        schedule: ScheduleConfig,
        message: Optional[str] = None,
        quiet_hours_start: Optional[str] = None,
        quiet_hours_end: Optional[str] = None,
        is_active: bool = True,
    ) -> Reminder:
        pass

    @abstractmethod
    async def get_reminder(self, reminder_id: str) -> Optional[Reminder]:
        pass

    @abstractmethod
    async def get_notification(self, notification_id: str) -> Optional[Notification]:
        pass

    @abstractmethod
    async def register_device(
        self,
        user_id: str,
        push_token: Optional[str],
        platform: Optional[str] = None,
    ) -> Device:
        pass

    @abstractmethod
    async def save_preferences(self, user_id: str, preferences: NotificationPreferences) -> None:
        pass

    @abstractmethod
    async def count_notifications_by_status(self) -> Dict[str, int]:
        pass
