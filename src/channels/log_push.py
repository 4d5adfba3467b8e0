from channels.base import PushSender
from datamodel import PushMessage, PushResult
from logger import logger

__all__ = ["LogPushSender"]


class LogPushSender(PushSender):
    """不接入任何推送服务, 只记录一条日志并视为成功 (开发环境默认通道)"""

    name = "log"

    async def send(self, push_token: str, message: PushMessage) -> PushResult:
        logger.info(f"[log-push] Would send push to {push_token}: {message.title}")
        return PushResult(ok=True)
