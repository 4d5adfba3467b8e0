"""通知投递循环

每一轮最多取 batch_size 条 PENDING 通知 (附带用户持有推送 token 的设备), 逐条独立处理:

1. 有推送设备 -> SENT, 没有 -> DELIVERED (应用内角标即视为送达), 同时记录 sent_at;
2. 状态写入成功后, 再向每个设备各推送一次。单个设备失败/超时只记录日志,
   不影响其他设备, 也不会回滚已经写入的状态;
3. 状态写入本身失败时, 尽力改写为 FAILED; 若仍失败则保持 PENDING, 下一轮重试
   (可能重复推送, 但不会丢失)。

已知缺口: SENT 在推送之前写入, 推送全部失败的通知仍然是 SENT, 需要设备级回执表
或对账任务才能修正, 目前不做处理。
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, List

from channels.base import PushSender
from datamodel import Device, Notification, NotificationStatus, PushMessage, PushResult
from logger import logger
from metrics import runtime_metrics
from storage.base import InvalidStatusTransition, NotFoundError, Store
from utils import now_in_tz

__all__ = ["NotificationDelivery", "DeliveryReport", "DEFAULT_BATCH_SIZE"]

DEFAULT_BATCH_SIZE = 100

# 已被其他写入者终结的通知, 本轮不处理
SKIPPED = "SKIPPED"


@dataclass
class _Outcome:
    status: str
    push_ok: int = 0
    push_failed: int = 0


@dataclass
class DeliveryReport:
    now: datetime
    fetched: int = 0
    sent: List[str] = field(default_factory=list)
    delivered: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)
    left_pending: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    push_ok: int = 0
    push_failed: int = 0


class NotificationDelivery:
    def __init__(
        self,
        store: Store,
        sender: PushSender,
        clock: Callable[[], datetime] | None = None,
        batch_size: int = DEFAULT_BATCH_SIZE,
        send_timeout: float = 10.0,
        concurrency: int = 10,
    ) -> None:
        self.store = store
        self.sender = sender
        self.clock = clock or (lambda: now_in_tz("UTC"))
        self.batch_size = batch_size
        self.send_timeout = send_timeout
        self.concurrency = max(1, concurrency)

    async def run_tick(self, now: datetime | None = None) -> DeliveryReport:
        now = now or self.clock()
        batch = await self.store.list_pending_notifications(self.batch_size)
        report = DeliveryReport(now=now, fetched=len(batch))
        runtime_metrics.record_delivery_tick()
        if not batch:
            return report

        semaphore = asyncio.Semaphore(self.concurrency)

        async def guarded(notification: Notification, devices: List[Device]) -> _Outcome:
            async with semaphore:
                return await self._deliver(notification, devices, now)

        results = await asyncio.gather(
            *(guarded(notification, devices) for notification, devices in batch),
            return_exceptions=True,
        )

        for (notification, _), result in zip(batch, results):
            nid = notification.notification_id
            if isinstance(result, BaseException):
                logger.opt(exception=result).error(f"投递通知 {nid} 时发生未预期的异常, 保持 PENDING")
                result = _Outcome(status=NotificationStatus.PENDING.value)
                runtime_metrics.record_delivery_outcome(result.status)

            report.push_ok += result.push_ok
            report.push_failed += result.push_failed
            if result.status == NotificationStatus.SENT.value:
                report.sent.append(nid)
            elif result.status == NotificationStatus.DELIVERED.value:
                report.delivered.append(nid)
            elif result.status == NotificationStatus.FAILED.value:
                report.failed.append(nid)
            elif result.status == SKIPPED:
                report.skipped.append(nid)
            else:
                report.left_pending.append(nid)

        logger.info(
            f"通知投递完成: 取出 {report.fetched}, SENT {len(report.sent)}, DELIVERED {len(report.delivered)}, "
            f"FAILED {len(report.failed)}, 保持 PENDING {len(report.left_pending)}, "
            f"推送成功 {report.push_ok}, 推送失败 {report.push_failed}"
        )
        return report

    async def _deliver(self, notification: Notification, devices: List[Device], now: datetime) -> _Outcome:
        nid = notification.notification_id
        target = NotificationStatus.SENT if devices else NotificationStatus.DELIVERED

        try:
            await self.store.update_notification_status(nid, target, sent_at=now)
        except (InvalidStatusTransition, NotFoundError) as e:
            # 已被其他写入者终结或被用户删除
            logger.warning(f"通知 {nid} 已不是 PENDING, 跳过: {e}")
            return _Outcome(status=SKIPPED)
        except Exception as e:
            logger.opt(exception=e).error(f"通知 {nid} 写入 {target.value} 失败, 尝试标记为 FAILED")
            outcome = _Outcome(status=await self._mark_failed(nid))
            runtime_metrics.record_delivery_outcome(outcome.status)
            return outcome

        runtime_metrics.record_delivery_outcome(target.value)
        outcome = _Outcome(status=target.value)
        if not devices:
            return outcome

        message = PushMessage(
            title=notification.title,
            body=notification.body,
            payload=dict(notification.payload or {}),
        )
        results = await asyncio.gather(*(self._send_one(nid, device, message) for device in devices))
        outcome.push_ok = sum(1 for r in results if r.ok)
        outcome.push_failed = len(results) - outcome.push_ok
        return outcome

    async def _mark_failed(self, notification_id: str) -> str:
        try:
            await self.store.update_notification_status(notification_id, NotificationStatus.FAILED)
        except Exception as e:
            logger.opt(exception=e).error(f"通知 {notification_id} 标记 FAILED 也失败, 保持 PENDING 等待下一轮")
            return NotificationStatus.PENDING.value
        return NotificationStatus.FAILED.value

    async def _send_one(self, notification_id: str, device: Device, message: PushMessage) -> PushResult:
        try:
            result = await asyncio.wait_for(
                self.sender.send(device.push_token, message),
                timeout=self.send_timeout,
            )
        except asyncio.TimeoutError:
            result = PushResult(ok=False, error=f"timeout after {self.send_timeout}s")
        except Exception as e:
            result = PushResult(ok=False, error=repr(e))

        runtime_metrics.record_push_send(result.ok)
        if not result.ok:
            logger.warning(
                f"推送发送失败: notification_id={notification_id}, device_id={device.device_id}, "
                f"channel={self.sender.name}, error={result.error}"
            )
        return result
