"""Outbound send primitive for the WhatsApp channel (Evolution-style HTTP API)."""

from dataclasses import dataclass
from typing import Any, Optional

import httpx

from leadrelay.logging_config import get_logger

logger = get_logger("channel_service")


class ChannelSendError(Exception):
    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)


@dataclass
class SendReceipt:
    ok: bool
    status_code: int
    provider_message_id: Optional[str] = None
    body: Optional[dict] = None


def to_jid(recipient: str) -> str:
    if "@" in recipient:
        return recipient
    return f"{recipient}@s.whatsapp.net"


class EvolutionChannel:
    """Async client bound to one instance. ``send`` matches the delivery manager's primitive."""

    def __init__(
        self,
        base_url: str,
        api_key: str,
        instance: str,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.instance = instance
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            headers={"apikey": api_key, "Content-Type": "application/json"},
            timeout=timeout,
            transport=transport,
        )

    async def send(self, recipient: str, content: str, opts: Optional[dict[str, Any]] = None) -> SendReceipt:
        opts = opts or {}
        payload: dict[str, Any] = {"number": recipient.split("@", 1)[0], "text": content}
        if opts.get("delay_ms"):
            payload["delay"] = int(opts["delay_ms"])
        if opts.get("quoted_message_id"):
            payload["quoted"] = {"key": {"id": opts["quoted_message_id"], "remoteJid": to_jid(recipient)}}

        headers = {}
        if opts.get("idempotency_key"):
            headers["Idempotency-Key"] = opts["idempotency_key"]

        try:
            response = await self._client.post(f"/message/sendText/{self.instance}", json=payload, headers=headers)
        except httpx.HTTPError as e:
            logger.warning(f"Channel request failed: recipient={recipient}, error={e}")
            raise ChannelSendError(f"request failed: {e}") from e

        logger.info(f"Channel response: status={response.status_code}, recipient={recipient}, body={response.text[:200]}")
        if response.status_code >= 300:
            raise ChannelSendError(f"channel returned HTTP {response.status_code}", response.status_code)

        try:
            body = response.json()
        except ValueError:
            body = None
        message_id = None
        if isinstance(body, dict):
            message_id = (body.get("key") or {}).get("id") or body.get("id")
        return SendReceipt(ok=True, status_code=response.status_code, provider_message_id=message_id, body=body)

    async def aclose(self) -> None:
        await self._client.aclose()
