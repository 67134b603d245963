"""Outbound delivery with content-level dedup, in-flight coalescing and bounded retries."""

import asyncio
import hashlib
import re
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

from leadrelay.logging_config import get_logger
from leadrelay.services.cache import BoundedTTLCache
from leadrelay.services.classifier_service import OutboundTimestampStore
from leadrelay.services.errors import DeliveryFailedError

logger = get_logger("delivery")

SendFunc = Callable[[str, str, dict], Awaitable[Any]]

FINGERPRINT_CHARS = 200
_WHITESPACE = re.compile(r"\s+")


class DeliveryStatus(str, Enum):
    SENT = "sent"
    DUPLICATE_BLOCKED = "duplicate_blocked"


@dataclass
class DeliveryOutcome:
    status: DeliveryStatus
    key: str
    recipient: str
    attempts: int = 0
    attached: bool = False
    receipt: Any = None

    @property
    def sent(self) -> bool:
        return self.status == DeliveryStatus.SENT


@dataclass
class SentRecord:
    recipient: str
    sent_at: float
    attempts: int


def normalize_content(content: str) -> str:
    return _WHITESPACE.sub(" ", (content or "").strip().lower())


def delivery_key(recipient: str, content: str, turn_id: Optional[str] = None) -> str:
    """Recipient plus content fingerprint. No timestamp, so a quick resend maps to the same key.

    ``turn_id`` scopes the key to one inbound turn, so a reply that legitimately
    repeats word for word on a later turn is not mistaken for a resend.
    """
    fingerprint = normalize_content(content)[:FINGERPRINT_CHARS]
    scope = f"{recipient}:{fingerprint}" if turn_id is None else f"{recipient}:{turn_id}:{fingerprint}"
    return hashlib.sha256(scope.encode("utf-8")).hexdigest()[:32]


def _receipt_failed(receipt: Any) -> bool:
    if receipt is False:
        return True
    if isinstance(receipt, dict):
        return receipt.get("ok") is False
    return getattr(receipt, "ok", None) is False


class DeliveryManager:
    def __init__(
        self,
        send_func: SendFunc,
        outbound_timestamps: Optional[OutboundTimestampStore] = None,
        max_attempts: int = 3,
        backoff_base_seconds: float = 1.0,
        send_timeout_seconds: float = 10.0,
        duplicate_window_seconds: float = 300.0,
        sent_max_entries: int = 5000,
        sent_evict_fraction: float = 0.2,
        inflight_max_entries: int = 500,
        inflight_evict_fraction: float = 0.5,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self._send = send_func
        self.outbound_timestamps = outbound_timestamps
        self.max_attempts = max_attempts
        self.backoff_base_seconds = backoff_base_seconds
        self.send_timeout_seconds = send_timeout_seconds
        self._clock = clock
        self._sleep = sleep
        self.sent = BoundedTTLCache(
            duplicate_window_seconds, sent_max_entries, sent_evict_fraction, clock=clock, name="delivery_sent"
        )
        # in-flight attempts never expire by age, only by completion or cap eviction
        self.inflight = BoundedTTLCache(
            None, inflight_max_entries, inflight_evict_fraction, clock=clock, name="delivery_inflight"
        )
        self.counters = {"sent": 0, "duplicates_blocked": 0, "attached": 0, "failed": 0, "retries": 0}

    def stats(self) -> dict:
        return {**self.counters, "recently_sent": len(self.sent), "in_flight": len(self.inflight)}

    def sweep(self) -> int:
        return self.sent.sweep()

    def backoff_delay(self, attempt: int) -> float:
        return self.backoff_base_seconds * (2**attempt)

    async def deliver(self, recipient: str, content: str, opts: Optional[dict] = None) -> DeliveryOutcome:
        """Send ``content`` once per dedup window, or once per turn when ``opts`` carries ``turn_id``.

        Raises DeliveryFailedError when every attempt fails; callers attached to
        the same in-flight attempt receive the same error.
        """
        opts = dict(opts or {})
        key = delivery_key(recipient, content, opts.pop("turn_id", None))

        if self.sent.get(key) is not None:
            self.counters["duplicates_blocked"] += 1
            logger.info("Duplicate outbound blocked", extra={"context": {"recipient": recipient, "key": key}})
            return DeliveryOutcome(DeliveryStatus.DUPLICATE_BLOCKED, key, recipient)

        loop = asyncio.get_running_loop()
        future, created = self.inflight.get_or_insert(key, loop.create_future)
        if not created:
            self.counters["attached"] += 1
            logger.info("Attached to in-flight send", extra={"context": {"recipient": recipient, "key": key}})
            outcome = await asyncio.shield(future)
            return DeliveryOutcome(
                DeliveryStatus.DUPLICATE_BLOCKED, key, recipient, attempts=outcome.attempts, attached=True
            )

        try:
            outcome = await self._send_with_retry(key, recipient, content, opts)
        except BaseException as exc:
            if not future.done():
                if isinstance(exc, asyncio.CancelledError):
                    future.cancel()
                else:
                    future.set_exception(exc)
                    # mark retrieved so an unattended failure is not reported twice
                    future.exception()
            raise
        else:
            future.set_result(outcome)
            return outcome
        finally:
            self.inflight.discard_if(key, future)

    async def _send_with_retry(self, key: str, recipient: str, content: str, opts: dict) -> DeliveryOutcome:
        last_error: Optional[str] = None
        send_opts = {**opts, "idempotency_key": key}

        for attempt in range(self.max_attempts):
            if attempt:
                self.counters["retries"] += 1
            try:
                receipt = await asyncio.wait_for(
                    self._send(recipient, content, send_opts), timeout=self.send_timeout_seconds
                )
                if _receipt_failed(receipt):
                    raise RuntimeError(f"send primitive reported failure: {receipt!r}")
            except asyncio.TimeoutError:
                last_error = f"timed out after {self.send_timeout_seconds}s"
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                last_error = str(exc) or type(exc).__name__
            else:
                sent_at = self._clock()
                self.sent.set(key, SentRecord(recipient=recipient, sent_at=sent_at, attempts=attempt + 1))
                if self.outbound_timestamps is not None:
                    self.outbound_timestamps.record(recipient, sent_at)
                self.counters["sent"] += 1
                return DeliveryOutcome(DeliveryStatus.SENT, key, recipient, attempts=attempt + 1, receipt=receipt)

            logger.warning(
                "Outbound send attempt failed",
                extra={
                    "context": {
                        "recipient": recipient,
                        "attempt": attempt + 1,
                        "max_attempts": self.max_attempts,
                        "error": last_error,
                    }
                },
            )
            if attempt < self.max_attempts - 1:
                await self._sleep(self.backoff_delay(attempt))

        # release the key so a later request can try again
        self.sent.pop(key)
        self.counters["failed"] += 1
        logger.error(
            "Outbound delivery exhausted retries",
            extra={"context": {"recipient": recipient, "attempts": self.max_attempts, "error": last_error}},
        )
        raise DeliveryFailedError(recipient, self.max_attempts, last_error)
