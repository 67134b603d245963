import asyncio
import json

import httpx
import pytest

from leadrelay.services.channel_service import ChannelSendError, EvolutionChannel, to_jid


def run_send(handler, recipient="5511988887777", content="Hello", opts=None):
    channel = EvolutionChannel(
        "http://evolution.local/",
        "secret-key",
        "leadrelay",
        transport=httpx.MockTransport(handler),
    )

    async def run():
        try:
            return await channel.send(recipient, content, opts)
        finally:
            await channel.aclose()

    return asyncio.run(run())


class TestEvolutionChannel:
    def test_posts_send_text(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["apikey"] = request.headers.get("apikey")
            seen["idempotency"] = request.headers.get("idempotency-key")
            seen["body"] = json.loads(request.content)
            return httpx.Response(201, json={"key": {"id": "PROVIDER-1"}})

        receipt = run_send(handler, opts={"idempotency_key": "abc"})

        assert seen["url"] == "http://evolution.local/message/sendText/leadrelay"
        assert seen["apikey"] == "secret-key"
        assert seen["idempotency"] == "abc"
        assert seen["body"] == {"number": "5511988887777", "text": "Hello"}
        assert receipt.ok is True
        assert receipt.provider_message_id == "PROVIDER-1"

    def test_strips_jid_suffix(self):
        seen = {}

        def handler(request):
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={})

        run_send(handler, recipient="5511988887777@s.whatsapp.net")
        assert seen["body"]["number"] == "5511988887777"

    def test_error_status_raises(self):
        def handler(request):
            return httpx.Response(500, text="boom")

        with pytest.raises(ChannelSendError) as exc_info:
            run_send(handler)
        assert exc_info.value.status_code == 500

    def test_transport_error_raises(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        with pytest.raises(ChannelSendError):
            run_send(handler)

    def test_to_jid(self):
        assert to_jid("5511988887777") == "5511988887777@s.whatsapp.net"
        assert to_jid("x@g.us") == "x@g.us"
