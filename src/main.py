from logger import setup_logging, logger
from config.settings import *
setup_logging(
    log_level=LOG_LEVEL,
    log_file=LOG_FILE,
    console_level=CONSOLE_LOG_LEVEL,
)

import asyncio
import signal
import time

from admin.http_server import main_loop as admin_http_main
from admin.schemas import RuntimeControl
from channels.base import PushSender
from events import bus, E
from storage.db_config import init_db
from storage.sqlite_store import SqliteStore
from utils import now_in_tz
from world.delivery import NotificationDelivery
from world.preferences import PreferenceGate
from world.reminder import ReminderTrigger
from world.ticker import Ticker

shutdown_event = asyncio.Event()


def signal_handler(sig, frame):
    """处理 SIGINT / SIGTERM 信号"""
    logger.info("收到中断信号, 当前一轮执行完毕后停止...")
    shutdown_event.set()


def _create_push_sender() -> PushSender:
    if PUSH_PROVIDER == "expo":
        from channels.expo_push import ExpoPushSender

        return ExpoPushSender(
            url=EXPO_PUSH_URL,
            access_token=EXPO_ACCESS_TOKEN,
            timeout=PUSH_SEND_TIMEOUT_SECONDS,
        )

    if PUSH_PROVIDER == "log":
        from channels.log_push import LogPushSender

        return LogPushSender()

    raise ValueError(f"不支持的 PUSH_PROVIDER: {PUSH_PROVIDER}")


async def main():
    # 注册信号处理器
    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    conn = await init_db(DB_PATH)
    store = SqliteStore(conn)
    sender = _create_push_sender()

    def clock():
        return now_in_tz(SCHEDULE_TIMEZONE)

    trigger = ReminderTrigger(store, PreferenceGate(store), clock=clock)
    delivery = NotificationDelivery(
        store,
        sender,
        clock=clock,
        batch_size=DELIVERY_BATCH_SIZE,
        send_timeout=PUSH_SEND_TIMEOUT_SECONDS,
        concurrency=DELIVERY_CONCURRENCY,
    )
    reminder_ticker = Ticker("reminder", REMINDER_TICK_SECONDS, trigger.run_tick)
    delivery_ticker = Ticker("delivery", DELIVERY_TICK_SECONDS, delivery.run_tick)

    @bus.on(E.NOTIFICATION_CREATED)
    async def wake_delivery(notification=None) -> None:
        delivery_ticker.wake()

    try:
        tasks = [
            reminder_ticker.run(shutdown_event),
            delivery_ticker.run(shutdown_event),
        ]

        if ADMIN_HTTP_ENABLED:
            control = RuntimeControl(
                shutdown_event=shutdown_event,
                started_at=time.time(),
                store=store,
                tickers={"reminder": reminder_ticker, "delivery": delivery_ticker},
            )
            tasks.append(admin_http_main(control, ADMIN_HTTP_HOST, ADMIN_HTTP_PORT, ADMIN_AUTH_TOKEN))
        else:
            logger.warning("Admin HTTP 服务已禁用")

        await asyncio.gather(*tasks)
    finally:
        logger.info("关闭 healthnudge...")
        await sender.aclose()
        logger.info("关闭数据库连接...")
        await store.close()
        logger.info("healthnudge 已关闭")


if __name__ == "__main__":
    logger.info(f"启动 healthnudge (时区 {SCHEDULE_TIMEZONE}, 推送通道 {PUSH_PROVIDER})...")
    asyncio.run(main())
