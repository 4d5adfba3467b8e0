"""只读运维 API: 健康检查、运行时指标、周期任务状态、通知状态统计"""

from __future__ import annotations

import time
from typing import Any

from fastapi import FastAPI, Request
from fastapi.responses import PlainTextResponse

from logger import logger
from metrics import runtime_metrics

from .auth import require_admin_auth
from .schemas import RuntimeControl


def create_app(control: RuntimeControl, auth_token: str) -> FastAPI:
    app = FastAPI(title="healthnudge Admin API", version="0.1.0")
    if not auth_token:
        logger.warning("未配置 ADMIN_AUTH_TOKEN，管理 API 将不可访问")

    def health_payload() -> dict[str, Any]:
        return {
            "status": "ok",
            "now_utc": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime()),
            "uptime_seconds": max(0.0, time.time() - control.started_at),
            "shutdown_requested": control.shutdown_event.is_set(),
            "loops": {name: ticker.running for name, ticker in control.tickers.items()},
        }

    @app.get("/healthz", include_in_schema=False)
    async def healthz() -> PlainTextResponse:
        return PlainTextResponse("ok")

    @app.get("/api/v1/health")
    async def api_health() -> dict[str, Any]:
        return health_payload()

    @app.get("/api/v1/metrics")
    async def get_metrics(request: Request) -> dict[str, Any]:
        require_admin_auth(request, auth_token)
        return {
            "runtime": runtime_metrics.snapshot(),
            "loops": {name: ticker.get_status() for name, ticker in control.tickers.items()},
        }

    @app.get("/api/v1/notifications/stats")
    async def notification_stats(request: Request) -> dict[str, Any]:
        require_admin_auth(request, auth_token)
        return {"by_status": await control.store.count_notifications_by_status()}

    return app
