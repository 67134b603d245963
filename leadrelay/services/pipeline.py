"""Composition of ingress, classifier, router and delivery into one message flow."""

import asyncio
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

from sqlalchemy.orm import Session, sessionmaker

from leadrelay.config import Settings
from leadrelay.logging_config import get_logger
from leadrelay.schemas.inbound import MessageKind
from leadrelay.services import alert_service
from leadrelay.services.agents import build_default_agents
from leadrelay.services.channel_service import EvolutionChannel
from leadrelay.services.classifier_service import BotClassifier, Decision, OutboundTimestampStore, Weights
from leadrelay.services.delivery_service import DeliveryManager, DeliveryOutcome, SendFunc
from leadrelay.services.errors import DeliveryFailedError, PersistenceError
from leadrelay.services.ingress_service import IngressDeduplicator
from leadrelay.services.router_service import AgentRouter

logger = get_logger("pipeline")

AlertFunc = Callable[[str, str, Optional[dict]], Any]

STATUS_PROCESSED = "processed"
STATUS_IGNORED_SYSTEM = "ignored_system"
STATUS_BLOCKED = "blocked"
STATUS_DELIVERY_FAILED = "delivery_failed"


@dataclass
class PipelineResult:
    status: str
    reason: Optional[str] = None
    contact_id: Optional[str] = None
    decision: Optional[str] = None
    reply: Optional[str] = None
    delivery: Optional[DeliveryOutcome] = None
    handed_off_to: Optional[str] = None


class MessagePipeline:
    def __init__(
        self,
        ingress: IngressDeduplicator,
        classifier: BotClassifier,
        router: AgentRouter,
        delivery: DeliveryManager,
        session_factory: Callable[[], Session],
        challenge_reply: str,
        verified_reply: str,
        reprompt_reply: Optional[str] = None,
        alert: AlertFunc = alert_service.send_alert,
        channel: Optional[EvolutionChannel] = None,
    ):
        self.ingress = ingress
        self.classifier = classifier
        self.router = router
        self.delivery = delivery
        self.session_factory = session_factory
        self.challenge_reply = challenge_reply
        self.verified_reply = verified_reply
        self.reprompt_reply = reprompt_reply or challenge_reply
        self.alert = alert
        self.channel = channel

    def stats(self) -> dict:
        return {
            "ingress": self.ingress.stats(),
            "classifier": self.classifier.stats(),
            "delivery": self.delivery.stats(),
            "router": self.router.stats(),
        }

    def sweep(self) -> int:
        return self.ingress.sweep() + self.classifier.sweep() + self.delivery.sweep() + self.router.sweep()

    async def handle_webhook(self, payload: Any) -> PipelineResult:
        admission = self.ingress.process(payload)
        if not admission.admitted:
            return PipelineResult(status=admission.status.value, reason=admission.reason)

        message = admission.message
        if message.kind == MessageKind.SYSTEM:
            return PipelineResult(status=STATUS_IGNORED_SYSTEM, contact_id=message.contact_id)

        db = self.session_factory()
        try:
            classification = self.classifier.evaluate(db, message)
            decision = classification.decision
            handed_off_to = None

            if decision in (Decision.BLOCK, Decision.BLOCKED):
                return PipelineResult(
                    status=STATUS_BLOCKED,
                    reason=classification.reason,
                    contact_id=message.contact_id,
                    decision=decision.value,
                )
            if decision == Decision.CHALLENGE:
                reply = self.challenge_reply
            elif decision == Decision.REPROMPT:
                reply = self.reprompt_reply
            elif decision == Decision.VERIFIED:
                reply = self.verified_reply
            else:
                turn = await self.router.handle(db, message)
                reply = turn.reply
                handed_off_to = turn.handed_off_to.value if turn.handed_off_to else None
        except PersistenceError as e:
            # let the provider's redelivery reach us again
            self.ingress.forget(admission.identity)
            self.alert(
                "CRITICAL",
                "Persistence failure while processing message",
                {"contact_id": message.contact_id, "operation": e.operation, "error": str(e.cause)},
            )
            raise
        finally:
            db.close()

        result = PipelineResult(
            status=STATUS_PROCESSED,
            contact_id=message.contact_id,
            decision=decision.value,
            reply=reply,
            handed_off_to=handed_off_to,
        )
        if not reply:
            return result

        try:
            result.delivery = await self.delivery.deliver(
                message.contact_id, reply, {"turn_id": admission.identity}
            )
        except DeliveryFailedError as e:
            self.alert(
                "ERROR",
                "Outbound delivery failed",
                {"contact_id": e.recipient, "attempts": e.attempts, "error": e.last_error},
            )
            result.status = STATUS_DELIVERY_FAILED
            result.reason = e.last_error
        return result

    async def run_sweeper(self, interval_seconds: float) -> None:
        while True:
            try:
                await asyncio.sleep(interval_seconds)
                removed = self.sweep()
                if removed:
                    logger.info("Cache sweep", extra={"context": {"removed": removed}})
            except asyncio.CancelledError:
                break
            except Exception as exc:
                logger.error("Cache sweep failed", extra={"context": {"error": str(exc)}})

    async def aclose(self) -> None:
        if self.channel is not None:
            await self.channel.aclose()


def build_pipeline(
    settings: Settings,
    session_factory: Callable[[], Session] | sessionmaker,
    send_func: Optional[SendFunc] = None,
    clock: Callable[[], float] = time.time,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    alert: AlertFunc = alert_service.send_alert,
) -> MessagePipeline:
    """Wire every component from settings. Without ``send_func`` the HTTP channel is used."""
    channel = None
    if send_func is None:
        channel = EvolutionChannel(
            settings.channel_api_url,
            settings.channel_api_key,
            settings.channel_instance,
            timeout=settings.send_timeout_seconds,
        )
        send_func = channel.send

    outbound_timestamps = OutboundTimestampStore(
        ttl_seconds=settings.outbound_timestamp_ttl_seconds,
        max_entries=settings.outbound_timestamp_max_entries,
        evict_fraction=settings.outbound_timestamp_evict_fraction,
        clock=clock,
    )
    ingress = IngressDeduplicator(
        bot_number=settings.bot_number,
        window_seconds=settings.dedup_window_seconds,
        max_entries=settings.dedup_max_entries,
        evict_fraction=settings.dedup_evict_fraction,
        clock=clock,
    )
    classifier = BotClassifier(
        outbound_timestamps,
        weights=Weights(
            frequency=settings.weight_frequency,
            latency=settings.weight_latency,
            entropy=settings.weight_entropy,
            content=settings.weight_content,
            carryover=settings.weight_carryover,
        ),
        low_threshold=settings.low_threshold,
        high_threshold=settings.high_threshold,
        frequency_window_seconds=settings.frequency_window_seconds,
        frequency_limit=settings.frequency_limit,
        latency_instant_seconds=settings.latency_instant_seconds,
        latency_human_seconds=settings.latency_human_seconds,
        history_size=settings.history_size,
        entropy_reference_bits=settings.entropy_reference_bits,
        carryover_half_life_seconds=settings.carryover_half_life_seconds,
        score_inactivity_seconds=settings.score_inactivity_seconds,
        score_max_entries=settings.score_max_entries,
        score_evict_fraction=settings.score_evict_fraction,
        verification_max_attempts=settings.verification_max_attempts,
        verification_timeout_seconds=settings.verification_timeout_seconds,
        clock=clock,
    )
    router = AgentRouter(
        build_default_agents(),
        engine_idle_seconds=settings.engine_idle_seconds,
        engine_max_entries=settings.engine_max_entries,
        engine_evict_fraction=settings.engine_evict_fraction,
        handoff_history_limit=settings.handoff_history_limit,
        fallback_reply=settings.fallback_reply,
        clock=clock,
    )
    delivery = DeliveryManager(
        send_func,
        outbound_timestamps=outbound_timestamps,
        max_attempts=settings.delivery_max_attempts,
        backoff_base_seconds=settings.delivery_backoff_base_seconds,
        send_timeout_seconds=settings.send_timeout_seconds,
        duplicate_window_seconds=settings.delivery_duplicate_window_seconds,
        sent_max_entries=settings.delivery_sent_max_entries,
        sent_evict_fraction=settings.delivery_sent_evict_fraction,
        inflight_max_entries=settings.delivery_inflight_max_entries,
        inflight_evict_fraction=settings.delivery_inflight_evict_fraction,
        clock=clock,
        sleep=sleep,
    )
    return MessagePipeline(
        ingress,
        classifier,
        router,
        delivery,
        session_factory,
        challenge_reply=settings.challenge_reply,
        verified_reply=settings.verified_reply,
        reprompt_reply=settings.reprompt_reply,
        alert=alert,
        channel=channel,
    )
