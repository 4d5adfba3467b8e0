"""周期任务调度器

Ticker 把一个协程函数按固定周期反复执行:
- 时间网格以启动时刻为锚点, 单轮耗时不会造成累计漂移;
- 同一个 Ticker 的两轮永远不会并发, 上一轮超时导致错过的网格点直接跳过;
- 单轮抛出的异常只记录日志, 不会终止循环;
- shutdown_event 置位后不再开始新的一轮, 正在执行的一轮会等待其完成;
- wake() 可以让下一轮提前执行 (多次调用会合并), 不改变原有网格。

    ticker = Ticker("delivery", 10, delivery.run_tick)
    await ticker.run(shutdown_event)
"""

from __future__ import annotations

import asyncio
import time
from typing import Any, Awaitable, Callable

from logger import logger, loop_context

__all__ = ["Ticker"]


class Ticker:
    def __init__(self, name: str, interval_seconds: float, task: Callable[[], Awaitable[Any]]) -> None:
        if interval_seconds <= 0:
            raise ValueError(f"interval_seconds 必须为正数: {interval_seconds}")
        self.name = name
        self.interval = float(interval_seconds)
        self._task = task
        self._wake_event = asyncio.Event()
        self._running = False

        self.tick_count = 0
        self.skipped_ticks = 0
        self.last_tick_at_epoch: float | None = None
        self.last_tick_duration: float | None = None
        self.last_error: str | None = None

    @property
    def running(self) -> bool:
        return self._running

    def wake(self) -> None:
        self._wake_event.set()

    def get_status(self) -> dict[str, object]:
        return {
            "name": self.name,
            "running": self._running,
            "interval_seconds": self.interval,
            "tick_count": self.tick_count,
            "skipped_ticks": self.skipped_ticks,
            "last_tick_at_epoch": self.last_tick_at_epoch,
            "last_tick_duration_seconds": self.last_tick_duration,
            "last_error": self.last_error,
        }

    async def run(self, shutdown_event: asyncio.Event) -> None:
        if self._running:
            raise RuntimeError(f"Ticker {self.name} 已在运行")
        with loop_context(self.name):
            await self._run_loop(shutdown_event)

    async def _run_loop(self, shutdown_event: asyncio.Event) -> None:
        self._running = True
        loop = asyncio.get_running_loop()
        logger.info(f"周期任务已启动 (interval={self.interval}s)")

        next_at = loop.time()
        try:
            while not shutdown_event.is_set():
                woken = await self._sleep_until(next_at, shutdown_event, loop)
                if shutdown_event.is_set():
                    break
                self._wake_event.clear()

                await self._run_tick()

                if not woken:
                    next_at += self.interval
                missed = 0
                now = loop.time()
                while next_at <= now:
                    next_at += self.interval
                    missed += 1
                if missed and not woken:
                    self.skipped_ticks += missed
                    logger.warning(f"本轮耗时超过周期, 跳过 {missed} 个网格点")
        finally:
            self._running = False
            logger.info("周期任务已停止")

    async def _run_tick(self) -> None:
        started = time.time()
        self.last_tick_at_epoch = started
        try:
            await self._task()
            self.last_error = None
        except Exception as e:
            self.last_error = repr(e)
            logger.opt(exception=e).error(f"本轮执行异常: {e}")
        finally:
            self.tick_count += 1
            self.last_tick_duration = time.time() - started

    async def _sleep_until(
        self,
        deadline: float,
        shutdown_event: asyncio.Event,
        loop: asyncio.AbstractEventLoop,
    ) -> bool:
        """等到 deadline / shutdown / wake 三者之一; 返回是否被 wake 提前唤醒"""
        timeout = deadline - loop.time()
        if timeout <= 0:
            return False

        waiters = [
            asyncio.ensure_future(shutdown_event.wait()),
            asyncio.ensure_future(self._wake_event.wait()),
        ]
        try:
            await asyncio.wait(waiters, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for waiter in waiters:
                waiter.cancel()
            await asyncio.gather(*waiters, return_exceptions=True)
        return self._wake_event.is_set() and loop.time() < deadline
