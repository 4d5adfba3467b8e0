"""Expo Push API 通道

POST https://exp.host/--/api/v2/push/send, 每次请求一个 token。
文档: https://docs.expo.dev/push-notifications/sending-notifications/

响应体形如 {"data": {"status": "ok", "id": "..."}} 或
{"data": {"status": "error", "message": "...", "details": {"error": "DeviceNotRegistered"}}}。
"""

from __future__ import annotations

from typing import Any, Dict

import httpx

from channels.base import PushSender
from datamodel import PushMessage, PushResult
from logger import logger

__all__ = ["ExpoPushSender"]


class ExpoPushSender(PushSender):
    name = "expo"

    def __init__(
        self,
        url: str,
        access_token: str = "",
        timeout: float = 10.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.url = url
        self.access_token = access_token
        self._client = client or httpx.AsyncClient(timeout=timeout)

    def _headers(self) -> Dict[str, str]:
        headers = {
            "Accept": "application/json",
            "Accept-Encoding": "gzip, deflate",
            "Content-Type": "application/json",
        }
        if self.access_token:
            headers["Authorization"] = f"Bearer {self.access_token}"
        return headers

    @staticmethod
    def _body(push_token: str, message: PushMessage) -> Dict[str, Any]:
        return {
            "to": push_token,
            "title": message.title,
            "body": message.body,
            "data": message.payload or {},
            "sound": "default",
        }

    async def send(self, push_token: str, message: PushMessage) -> PushResult:
        try:
            response = await self._client.post(
                self.url,
                json=self._body(push_token, message),
                headers=self._headers(),
            )
        except httpx.HTTPError as e:
            logger.warning(f"Expo 推送请求失败: token={push_token}, error={e!r}")
            return PushResult(ok=False, error=f"transport: {e!r}")

        if response.status_code >= 400:
            return PushResult(ok=False, error=f"http {response.status_code}: {response.text[:200]}")

        try:
            body = response.json()
        except ValueError:
            return PushResult(ok=False, error="响应不是合法 JSON")

        ticket = body.get("data") if isinstance(body, dict) else None
        if isinstance(ticket, list):
            ticket = ticket[0] if ticket else None
        if not isinstance(ticket, dict):
            logger.warning(f"Expo 推送响应格式异常: token={push_token}, body={response.text[:200]}")
            return PushResult(ok=False, error="响应缺少 ticket")

        if ticket.get("status") == "ok":
            return PushResult(ok=True, ticket_id=ticket.get("id"))

        details = ticket.get("details")
        error = (details.get("error") if isinstance(details, dict) else None) or ticket.get("message") or "unknown error"
        return PushResult(ok=False, error=str(error))

    async def aclose(self) -> None:
        await self._client.aclose()
