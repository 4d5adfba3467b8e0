from abc import ABC, abstractmethod

from datamodel import PushMessage, PushResult

__all__ = ["PushSender"]


class PushSender(ABC):
    """推送通道: 每个设备 token 调用一次 send

    实现不应因传输失败而抛出异常, 而是返回 ok=False 的 PushResult;
    调用方仍会兜底捕获异常与超时。实现不持有跨调用的可变状态。
    """

    name: str = "push"

    @abstractmethod
    async def send(self, push_token: str, message: PushMessage) -> PushResult:
        pass

    async def aclose(self) -> None:
        return None
