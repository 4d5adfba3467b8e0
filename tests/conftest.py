import asyncio
from datetime import datetime
from zoneinfo import ZoneInfo

import pytest
from loguru import logger

from channels.base import PushSender
from datamodel import PushMessage, PushResult
from metrics import runtime_metrics
from storage.db_config import init_db
from storage.sqlite_store import SqliteStore


def at(hour: int, minute: int, day: int = 19, second: int = 0, tz: str = "UTC") -> datetime:
    """2026-10-19 是周一"""
    return datetime(2026, 10, day, hour, minute, second, tzinfo=ZoneInfo(tz))


class RecordingSender(PushSender):
    name = "recording"

    def __init__(self, failing=(), raising=(), slow=(), delay: float = 0.0) -> None:
        self.failing = set(failing)
        self.raising = set(raising)
        self.slow = set(slow)
        self.delay = delay
        self.calls: list[tuple[str, PushMessage]] = []

    async def send(self, push_token: str, message: PushMessage) -> PushResult:
        self.calls.append((push_token, message))
        if push_token in self.raising:
            raise RuntimeError("connection reset by peer")
        if push_token in self.slow:
            await asyncio.sleep(self.delay)
        if push_token in self.failing:
            return PushResult(ok=False, error="DeviceNotRegistered")
        return PushResult(ok=True)


@pytest.fixture
async def store():
    conn = await init_db(":memory:")
    s = SqliteStore(conn)
    yield s
    await s.close()


@pytest.fixture
def log_records():
    records = []
    handler_id = logger.add(lambda message: records.append(message.record), level="DEBUG")
    yield records
    logger.remove(handler_id)


@pytest.fixture(autouse=True)
def reset_metrics():
    runtime_metrics.__init__()
    yield
