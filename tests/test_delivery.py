import asyncio

import pytest

from conftest import FakeClock, FakeSend, RecordingSleep
from leadrelay.services.classifier_service import OutboundTimestampStore
from leadrelay.services.delivery_service import (
    DeliveryManager,
    DeliveryStatus,
    delivery_key,
    normalize_content,
)
from leadrelay.services.errors import DeliveryFailedError

CONTACT = "5511988887777"


def make_manager(send, clock=None, sleep=None, **kwargs):
    clock = clock or FakeClock()
    return DeliveryManager(
        send,
        outbound_timestamps=kwargs.pop("outbound_timestamps", OutboundTimestampStore(clock=clock)),
        clock=clock,
        sleep=sleep or RecordingSleep(),
        **kwargs,
    )


class TestDeliveryKey:
    def test_normalization_ignores_case_and_whitespace(self):
        assert normalize_content("  Hello   THERE\n") == "hello there"
        assert delivery_key(CONTACT, "Hello there") == delivery_key(CONTACT, "hello   there ")

    def test_recipient_is_part_of_key(self):
        assert delivery_key(CONTACT, "hi") != delivery_key("5511900001111", "hi")

    def test_content_truncated_for_fingerprint(self):
        base = "x" * 200
        assert delivery_key(CONTACT, base + "a") == delivery_key(CONTACT, base + "b")

    def test_turn_id_scopes_the_key(self):
        assert delivery_key(CONTACT, "hi", "turn-1") != delivery_key(CONTACT, "hi", "turn-2")
        assert delivery_key(CONTACT, "hi", "turn-1") != delivery_key(CONTACT, "hi")

    def test_same_reply_on_different_turns_is_sent_each_time(self):
        send = FakeSend()
        manager = make_manager(send)

        async def run():
            first = await manager.deliver(CONTACT, "Sorry, something went wrong", {"turn_id": "M1"})
            second = await manager.deliver(CONTACT, "Sorry, something went wrong", {"turn_id": "M2"})
            replay = await manager.deliver(CONTACT, "Sorry, something went wrong", {"turn_id": "M2"})
            return first, second, replay

        first, second, replay = asyncio.run(run())

        assert first.status == DeliveryStatus.SENT
        assert second.status == DeliveryStatus.SENT
        assert replay.status == DeliveryStatus.DUPLICATE_BLOCKED
        assert len(send.calls) == 2
        assert "turn_id" not in send.calls[0][2]


class TestDedup:
    def test_identical_sends_make_one_attempt(self):
        send = FakeSend()
        manager = make_manager(send)

        async def run():
            first = await manager.deliver(CONTACT, "Thanks for reaching out!")
            second = await manager.deliver(CONTACT, "thanks for reaching   out!")
            return first, second

        first, second = asyncio.run(run())

        assert first.status == DeliveryStatus.SENT
        assert second.status == DeliveryStatus.DUPLICATE_BLOCKED
        assert second.attached is False
        assert len(send.calls) == 1

    def test_same_content_after_window_is_sent_again(self):
        clock = FakeClock()
        send = FakeSend()
        manager = make_manager(send, clock=clock, duplicate_window_seconds=300)

        async def run():
            await manager.deliver(CONTACT, "Hi")
            clock.advance(301)
            return await manager.deliver(CONTACT, "Hi")

        assert asyncio.run(run()).status == DeliveryStatus.SENT
        assert len(send.calls) == 2

    def test_concurrent_identical_sends_attach(self):
        send = FakeSend(delay=0.01)
        manager = make_manager(send)

        async def run():
            return await asyncio.gather(
                manager.deliver(CONTACT, "Let's find a time"),
                manager.deliver(CONTACT, "Let's find a time"),
                manager.deliver(CONTACT, "let's  find a time"),
            )

        outcomes = asyncio.run(run())

        assert len(send.calls) == 1
        assert [o.status for o in outcomes].count(DeliveryStatus.SENT) == 1
        attached = [o for o in outcomes if o.attached]
        assert len(attached) == 2
        assert all(o.status == DeliveryStatus.DUPLICATE_BLOCKED for o in attached)
        assert len(manager.inflight) == 0

    def test_attached_callers_see_terminal_failure(self):
        send = FakeSend(failures=99, delay=0.01)
        manager = make_manager(send, max_attempts=2)

        async def run():
            return await asyncio.gather(
                manager.deliver(CONTACT, "hello"),
                manager.deliver(CONTACT, "hello"),
                return_exceptions=True,
            )

        results = asyncio.run(run())

        assert all(isinstance(r, DeliveryFailedError) for r in results)
        assert len(send.calls) == 2


class TestRetry:
    def test_transient_failure_retried_then_sent(self):
        send = FakeSend(failures=2)
        sleep = RecordingSleep()
        manager = make_manager(send, sleep=sleep, max_attempts=3, backoff_base_seconds=1.0)

        outcome = asyncio.run(manager.deliver(CONTACT, "hello"))

        assert outcome.status == DeliveryStatus.SENT
        assert outcome.attempts == 3
        assert sleep.delays == [1.0, 2.0]
        assert manager.stats()["retries"] == 2

    def test_always_failing_primitive_retried_exactly_max(self):
        send = FakeSend(failures=99)
        sleep = RecordingSleep()
        manager = make_manager(send, sleep=sleep, max_attempts=4, backoff_base_seconds=0.5)

        with pytest.raises(DeliveryFailedError) as exc_info:
            asyncio.run(manager.deliver(CONTACT, "hello"))

        assert len(send.calls) == 4
        assert exc_info.value.attempts == 4
        assert sleep.delays == [0.5, 1.0, 2.0]
        assert all(b > a for a, b in zip(sleep.delays, sleep.delays[1:]))

    def test_exhaustion_releases_key(self):
        send = FakeSend(failures=3)
        manager = make_manager(send, max_attempts=3)

        async def run():
            with pytest.raises(DeliveryFailedError):
                await manager.deliver(CONTACT, "hello")
            return await manager.deliver(CONTACT, "hello")

        outcome = asyncio.run(run())
        assert outcome.status == DeliveryStatus.SENT
        assert len(send.calls) == 4

    def test_timeout_counts_as_failed_attempt(self):
        send = FakeSend(delay=0.2)
        manager = make_manager(send, max_attempts=2, send_timeout_seconds=0.01)

        with pytest.raises(DeliveryFailedError) as exc_info:
            asyncio.run(manager.deliver(CONTACT, "hello"))

        assert "timed out" in exc_info.value.last_error
        assert len(send.calls) == 2

    def test_receipt_reporting_failure_is_retried(self):
        send = FakeSend(receipt={"ok": False})
        manager = make_manager(send, max_attempts=2)
        with pytest.raises(DeliveryFailedError):
            asyncio.run(manager.deliver(CONTACT, "hello"))
        assert len(send.calls) == 2


class TestSideEffects:
    def test_success_records_outbound_timestamp(self):
        clock = FakeClock()
        store = OutboundTimestampStore(clock=clock)
        manager = make_manager(FakeSend(), clock=clock, outbound_timestamps=store)

        asyncio.run(manager.deliver(CONTACT, "hello"))

        assert store.peek(CONTACT) == clock()

    def test_failure_does_not_record_timestamp(self):
        clock = FakeClock()
        store = OutboundTimestampStore(clock=clock)
        manager = make_manager(FakeSend(failures=9), clock=clock, outbound_timestamps=store, max_attempts=1)

        with pytest.raises(DeliveryFailedError):
            asyncio.run(manager.deliver(CONTACT, "hello"))
        assert store.peek(CONTACT) is None

    def test_idempotency_key_passed_to_primitive(self):
        send = FakeSend()
        manager = make_manager(send)
        outcome = asyncio.run(manager.deliver(CONTACT, "hello"))
        assert send.calls[0][2]["idempotency_key"] == outcome.key

    def test_sent_registry_is_capped(self):
        manager = make_manager(FakeSend(), sent_max_entries=10, sent_evict_fraction=0.2)

        async def run():
            for i in range(11):
                await manager.deliver(CONTACT, f"message {i}")

        asyncio.run(run())
        assert len(manager.sent) == 9

    def test_rejects_zero_attempts(self):
        with pytest.raises(ValueError):
            make_manager(FakeSend(), max_attempts=0)
