from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Dict

from storage.base import Store
from world.ticker import Ticker


@dataclass
class RuntimeControl:
    shutdown_event: asyncio.Event
    started_at: float
    store: Store
    tickers: Dict[str, Ticker] = field(default_factory=dict)
