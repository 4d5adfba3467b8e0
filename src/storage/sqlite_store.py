from __future__ import annotations

import json
from datetime import datetime
from typing import Any, Dict, List, Optional

import aiosqlite
from ulid import ULID

from datamodel import *
from logger import logger
from storage.base import *
from utils import from_db_time, now_utc, to_db_time

__all__ = ["SqliteStore"]

_REMINDER_COLUMNS = (
    "reminder_id, user_id, type, title, message, schedule, quiet_hours_start, quiet_hours_end, "
    "is_active, last_triggered_utc, created_at_utc, updated_at_utc"
)
_NOTIFICATION_COLUMNS = (
    "notification_id, user_id, type, title, body, payload, status, created_at_utc, sent_at_utc"
)
_PREFERENCE_FLAGS = (
    "reminders", "insights", "achievements", "bookings", "messages", "system",
    "push_enabled", "email_enabled", "quiet_hours_enabled",
)


def _loads_json(raw: str | None, what: str) -> Any:
    if raw is None or raw.strip() == "":
        return None
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        logger.warning(f"{what} 解析失败，已忽略")
        return None


def _row_to_reminder(row) -> Reminder:
    return Reminder(
        reminder_id=row[0],
        user_id=row[1],
        type=row[2],
        title=row[3],
        message=row[4],
        schedule=ScheduleConfig.from_dict(_loads_json(row[5], f"提醒 {row[0]} 的 schedule")),
        quiet_hours_start=row[6],
        quiet_hours_end=row[7],
        is_active=bool(row[8]),
        last_triggered=from_db_time(row[9]),
        created_at=from_db_time(row[10]),
        updated_at=from_db_time(row[11]),
    )


def _row_to_notification(row) -> Notification:
    payload = _loads_json(row[5], f"通知 {row[0]} 的 payload")
    return Notification(
        notification_id=row[0],
        user_id=row[1],
        type=row[2],
        title=row[3],
        body=row[4],
        payload=payload if isinstance(payload, dict) else None,
        status=NotificationStatus(row[6]),
        created_at=from_db_time(row[7]),
        sent_at=from_db_time(row[8]),
    )


class SqliteStore(Store):
    """基于 aiosqlite 单连接的 Store 实现

    状态机在 SQL 层强制: 状态更新带 `status = 'PENDING'` 条件, 并发的重复写入最多一次生效。
    """

    def __init__(self, conn: aiosqlite.Connection) -> None:
        self.conn = conn

    async def close(self) -> None:
        await self.conn.close()

    # ---------------- reminders ----------------
    async def list_active_reminders(self) -> List[Reminder]:
        async with self.conn.execute(
            f"SELECT {_REMINDER_COLUMNS} FROM reminders WHERE is_active = 1 ORDER BY rowid"
        ) as cursor:
            rows = await cursor.fetchall()
        return [_row_to_reminder(row) for row in rows]

    async def get_reminder(self, reminder_id: str) -> Optional[Reminder]:
        async with self.conn.execute(
            f"SELECT {_REMINDER_COLUMNS} FROM reminders WHERE reminder_id = ?",
            (reminder_id,),
        ) as cursor:
            row = await cursor.fetchone()
        return _row_to_reminder(row) if row else None

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
        reminder_id = str(ULID())
        await self.conn.execute(
            "INSERT INTO reminders (reminder_id, user_id, type, title, message, schedule, "
            "quiet_hours_start, quiet_hours_end, is_active) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                reminder_id, user_id, str(type), title, message,
                json.dumps(schedule.to_dict(), ensure_ascii=False),
                quiet_hours_start, quiet_hours_end, int(is_active),
            ),
        )
        await self.conn.commit()
        logger.trace(f"创建提醒: reminder_id={reminder_id}, user_id={user_id}, schedule={schedule}")
        return await self.get_reminder(reminder_id)

    async def update_reminder_last_triggered(self, reminder_id: str, timestamp: datetime) -> Reminder:
        ts = to_db_time(timestamp)
        # 只前进不后退
        async with self.conn.execute(
            "UPDATE reminders SET "
            "last_triggered_utc = CASE WHEN last_triggered_utc IS NULL OR last_triggered_utc < ? "
            "THEN ? ELSE last_triggered_utc END, "
            "updated_at_utc = CURRENT_TIMESTAMP "
            "WHERE reminder_id = ?",
            (ts, ts, reminder_id),
        ) as cursor:
            changed = cursor.rowcount
        await self.conn.commit()
        if changed == 0:
            raise NotFoundError(f"提醒不存在: {reminder_id}")
        logger.trace(f"推进提醒 last_triggered: reminder_id={reminder_id}, last_triggered_utc={ts}")
        return await self.get_reminder(reminder_id)

    # ---------------- notifications ----------------
    async def create_notification(
        self,
        user_id: str,
        type: str,
        title: str,
        body: str,
        payload: Optional[Dict[str, Any]] = None,
    ) -> Notification:
        notification_id = str(ULID())
        created_at = to_db_time(now_utc())
        payload_json = json.dumps(payload, ensure_ascii=False) if payload is not None else None
        await self.conn.execute(
            "INSERT INTO notifications (notification_id, user_id, type, title, body, payload, status, created_at_utc) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
            (notification_id, user_id, str(type), title, body, payload_json,
             NotificationStatus.PENDING.value, created_at),
        )
        await self.conn.commit()
        return Notification(
            notification_id=notification_id,
            user_id=user_id,
            type=str(type),
            title=title,
            body=body,
            payload=payload,
            status=NotificationStatus.PENDING,
            created_at=from_db_time(created_at),
        )

    async def get_notification(self, notification_id: str) -> Optional[Notification]:
        async with self.conn.execute(
            f"SELECT {_NOTIFICATION_COLUMNS} FROM notifications WHERE notification_id = ?",
            (notification_id,),
        ) as cursor:
            row = await cursor.fetchone()
        return _row_to_notification(row) if row else None

    async def list_pending_notifications(self, limit: int) -> List[PendingItem]:
        async with self.conn.execute(
            f"SELECT {_NOTIFICATION_COLUMNS} FROM notifications WHERE status = 'PENDING' "
            "ORDER BY rowid LIMIT ?",
            (limit,),
        ) as cursor:
            notifications = [_row_to_notification(row) for row in await cursor.fetchall()]
        if not notifications:
            return []

        user_ids = sorted({n.user_id for n in notifications})
        placeholders = ", ".join("?" for _ in user_ids)
        devices_by_user: Dict[str, List[Device]] = {uid: [] for uid in user_ids}
        async with self.conn.execute(
            "SELECT device_id, user_id, push_token, platform FROM devices "
            f"WHERE push_token IS NOT NULL AND push_token != '' AND user_id IN ({placeholders}) "
            "ORDER BY rowid",
            tuple(user_ids),
        ) as cursor:
            async for row in cursor:
                devices_by_user[row[1]].append(
                    Device(device_id=row[0], user_id=row[1], push_token=row[2], platform=row[3])
                )

        return [(n, list(devices_by_user[n.user_id])) for n in notifications]

    async def update_notification_status(
        self,
        notification_id: str,
        status: NotificationStatus,
        sent_at: Optional[datetime] = None,
    ) -> Notification:
        status = NotificationStatus(status)
        if not can_transition(NotificationStatus.PENDING, status):
            raise InvalidStatusTransition(notification_id, NotificationStatus.PENDING.value, status.value)

        sent_at_db = to_db_time(sent_at) if sent_at is not None else None
        async with self.conn.execute(
            "UPDATE notifications SET status = ?, sent_at_utc = COALESCE(?, sent_at_utc) "
            "WHERE notification_id = ? AND status = 'PENDING'",
            (status.value, sent_at_db, notification_id),
        ) as cursor:
            changed = cursor.rowcount
        await self.conn.commit()

        if changed == 0:
            current = await self.get_notification(notification_id)
            if current is None:
                raise NotFoundError(f"通知不存在: {notification_id}")
            raise InvalidStatusTransition(notification_id, current.status.value, status.value)

        logger.trace(f"通知状态更新: notification_id={notification_id}, status={status.value}")
        return await self.get_notification(notification_id)

    async def count_notifications_by_status(self) -> Dict[str, int]:
        counts = {s.value: 0 for s in NotificationStatus}
        async with self.conn.execute(
            "SELECT status, COUNT(*) FROM notifications GROUP BY status"
        ) as cursor:
            async for row in cursor:
                counts[row[0]] = row[1]
        return counts

    # ---------------- devices ----------------
    async def register_device(
        self,
        user_id: str,
        push_token: Optional[str],
        platform: Optional[str] = None,
    ) -> Device:
        device_id = str(ULID())
        await self.conn.execute(
            "INSERT INTO devices (device_id, user_id, push_token, platform) VALUES (?, ?, ?, ?)",
            (device_id, user_id, push_token, platform),
        )
        await self.conn.commit()
        return Device(device_id=device_id, user_id=user_id, push_token=push_token, platform=platform)

    # ---------------- preferences ----------------
    async def get_preferences(self, user_id: str) -> Optional[NotificationPreferences]:
        async with self.conn.execute(
            f"SELECT {', '.join(_PREFERENCE_FLAGS)}, quiet_hours_start, quiet_hours_end "
            "FROM notification_preferences WHERE user_id = ?",
            (user_id,),
        ) as cursor:
            row = await cursor.fetchone()
        if row is None:
            return None
        flags = {name: bool(row[i]) for i, name in enumerate(_PREFERENCE_FLAGS)}
        return NotificationPreferences(
            **flags,
            quiet_hours_start=row[len(_PREFERENCE_FLAGS)],
            quiet_hours_end=row[len(_PREFERENCE_FLAGS) + 1],
        )

    async def save_preferences(self, user_id: str, preferences: NotificationPreferences) -> None:
        values = [int(getattr(preferences, name)) for name in _PREFERENCE_FLAGS]
        columns = ", ".join(_PREFERENCE_FLAGS)
        updates = ", ".join(f"{name} = excluded.{name}" for name in _PREFERENCE_FLAGS)
        await self.conn.execute(
            f"INSERT INTO notification_preferences (user_id, {columns}, quiet_hours_start, quiet_hours_end) "
            f"VALUES (?, {', '.join('?' for _ in _PREFERENCE_FLAGS)}, ?, ?) "
            f"ON CONFLICT(user_id) DO UPDATE SET {updates}, "
            "quiet_hours_start = excluded.quiet_hours_start, "
            "quiet_hours_end = excluded.quiet_hours_end, "
            "updated_at_utc = CURRENT_TIMESTAMP",
            (user_id, *values, preferences.quiet_hours_start, preferences.quiet_hours_end),
        )
        await self.conn.commit()
