"""事件总线模块，定义了事件总线类 Bus 及事件名集合 E

总线上的处理器均为尽力而为的旁路逻辑（例如通知创建后提前唤醒投递循环），
不得参与决定通知状态。
"""

from __future__ import annotations
from pyee.asyncio import AsyncIOEventEmitter
from typing import Awaitable, Callable

from logger import logger

AsyncHandler = Callable[..., Awaitable[None]]

# 事件名集中定义
class E:
    NOTIFICATION_CREATED = "notification.created"


class Bus(AsyncIOEventEmitter):
    def __init__(self) -> None:
        super().__init__()
        # 处理器异常不向外传播, 只记录
        super(Bus, self).on("error", self._on_handler_error)

    @staticmethod
    def _on_handler_error(error: Exception) -> None:
        logger.opt(exception=error).warning(f"事件处理器异常: {error}")

    def on(self, event: str) -> Callable[[AsyncHandler], AsyncHandler]:
        """注册事件处理器装饰器"""
        def decorator(handler: AsyncHandler) -> AsyncHandler:
            logger.debug(f"注册事件处理器: {event} -> {handler.__name__}")
            super(Bus, self).on(event, handler)
            return handler

        return decorator


bus = Bus()

__all__ = ["bus", "E"]
