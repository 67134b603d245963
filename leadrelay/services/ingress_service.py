"""Ingress deduplication: normalize webhook payloads and admit each message once."""

import hashlib
import re
import secrets
import time
from typing import Any, Callable

from leadrelay.logging_config import get_logger
from leadrelay.schemas.inbound import (
    IngressResult,
    IngressStatus,
    InboundMessage,
    MediaInfo,
    MessageKind,
)
from leadrelay.services.cache import BoundedTTLCache
from leadrelay.services.errors import MalformedPayloadError

logger = get_logger("ingress")

IGNORED_EVENTS = frozenset(
    {
        "presence.update",
        "connection.update",
        "qrcode.updated",
        "groups.upsert",
        "groups.update",
        "group-participants.update",
        "chats.set",
        "chats.upsert",
        "chats.update",
        "chats.delete",
        "contacts.set",
        "contacts.upsert",
        "contacts.update",
        "labels.edit",
        "labels.association",
        "call",
        "messages.delete",
        "messages.set",
        "send.message",
    }
)

GROUP_SUFFIX = "@g.us"
LID_SUFFIX = "@lid"

_NON_DIGITS = re.compile(r"\D+")
_WHITESPACE = re.compile(r"\s+")

SYSTEM_MESSAGE_TYPES = ("reactionMessage", "protocolMessage", "senderKeyDistributionMessage")


def normalize_event_name(event: Any) -> str | None:
    """MESSAGES_UPSERT / messages-upsert / messages.upsert -> messages.upsert."""
    if not isinstance(event, str) or not event.strip():
        return None
    name = event.strip().lower().replace("_", ".")
    if name.startswith("group.participants") or name.startswith("group-participants"):
        return "group-participants.update"
    return name


def normalize_contact_id(jid: Any) -> str | None:
    """Reduce a phone-style JID to its digits; leave other addresses intact."""
    if not isinstance(jid, str):
        if isinstance(jid, int):
            return str(jid)
        return None
    value = jid.strip()
    if not value:
        return None
    local = value.split("@", 1)[0].split(":", 1)[0]
    if value.endswith(GROUP_SUFFIX) or value.endswith(LID_SUFFIX):
        return value
    digits = _NON_DIGITS.sub("", local)
    return digits or None


def _first(*values: Any) -> Any:
    for value in values:
        if value not in (None, ""):
            return value
    return None


def _normalize_body(text: str | None) -> str:
    return _WHITESPACE.sub(" ", (text or "").strip().lower())


def _as_dict(value: Any) -> dict:
    return value if isinstance(value, dict) else {}


def _coerce_timestamp(value: Any) -> float | None:
    if isinstance(value, dict):
        # protobuf Long serialized as {"low": ..., "high": ...}
        value = value.get("low")
    try:
        ts = float(value)
    except (TypeError, ValueError):
        return None
    if ts <= 0:
        return None
    if ts > 1e12:
        ts = ts / 1000.0
    return ts


def _media(message_type: str, node: dict, caption: str | None = None) -> MediaInfo:
    return MediaInfo(
        media_type=message_type.replace("Message", ""),
        mime_type=node.get("mimetype"),
        url=node.get("url"),
        caption=caption,
        file_name=node.get("fileName"),
        seconds=node.get("seconds"),
    )


def extract_content(message: dict) -> dict:
    """Map a provider message node onto (kind, text, type, media, transcription flag)."""
    content = {
        "kind": MessageKind.TEXT,
        "text": "",
        "message_type": "unknown",
        "media": None,
        "needs_transcription": False,
    }

    # ephemeral / view-once wrappers carry the real message one level down
    for wrapper in ("ephemeralMessage", "viewOnceMessage", "viewOnceMessageV2", "documentWithCaptionMessage"):
        inner = _as_dict(_as_dict(message.get(wrapper)).get("message"))
        if inner:
            message = inner
            break

    if isinstance(message.get("conversation"), str):
        content.update(text=message["conversation"], message_type="conversation")
        return content

    extended = _as_dict(message.get("extendedTextMessage"))
    if extended:
        content.update(text=extended.get("text") or "", message_type="extendedTextMessage")
        return content

    for media_type in ("imageMessage", "videoMessage", "documentMessage"):
        node = message.get(media_type)
        if isinstance(node, dict):
            caption = node.get("caption")
            placeholder = f"[{media_type.replace('Message', '')}]"
            if media_type == "documentMessage" and node.get("fileName"):
                placeholder = f"[document: {node['fileName']}]"
            content.update(
                kind=MessageKind.MEDIA,
                text=caption or placeholder,
                message_type=media_type,
                media=_media(media_type, node, caption),
            )
            return content

    audio = message.get("audioMessage")
    if isinstance(audio, dict):
        content.update(
            kind=MessageKind.MEDIA,
            text="[audio]",
            message_type="audioMessage",
            media=_media("audioMessage", audio),
            needs_transcription=True,
        )
        return content

    sticker = message.get("stickerMessage")
    if isinstance(sticker, dict):
        content.update(
            kind=MessageKind.MEDIA,
            text="[sticker]",
            message_type="stickerMessage",
            media=_media("stickerMessage", sticker),
        )
        return content

    for location_type in ("locationMessage", "liveLocationMessage"):
        location = message.get(location_type)
        if isinstance(location, dict):
            lat = location.get("degreesLatitude")
            lng = location.get("degreesLongitude")
            label = location.get("name") or location.get("address") or "shared location"
            text = f"[location: {label}]" if lat is None else f"[location: {label} ({lat}, {lng})]"
            content.update(kind=MessageKind.MEDIA, text=text, message_type=location_type)
            return content

    contact = message.get("contactMessage")
    if isinstance(contact, dict):
        content.update(
            kind=MessageKind.MEDIA,
            text=f"[contact: {contact.get('displayName') or 'unknown'}]",
            message_type="contactMessage",
        )
        return content

    contacts = message.get("contactsArrayMessage")
    if isinstance(contacts, dict):
        names = [c.get("displayName") for c in contacts.get("contacts") or [] if isinstance(c, dict)]
        label = ", ".join(n for n in names if n) or contacts.get("displayName") or "unknown"
        content.update(kind=MessageKind.MEDIA, text=f"[contact: {label}]", message_type="contactsArrayMessage")
        return content

    buttons = _as_dict(message.get("buttonsResponseMessage"))
    if buttons:
        content.update(
            text=buttons.get("selectedDisplayText") or buttons.get("selectedButtonId") or "",
            message_type="buttonsResponseMessage",
        )
        return content

    list_response = _as_dict(message.get("listResponseMessage"))
    if list_response:
        selected = _as_dict(list_response.get("singleSelectReply")).get("selectedRowId")
        content.update(text=list_response.get("title") or selected or "", message_type="listResponseMessage")
        return content

    template = _as_dict(message.get("templateButtonReplyMessage"))
    if template:
        content.update(
            text=template.get("selectedDisplayText") or template.get("selectedId") or "",
            message_type="templateButtonReplyMessage",
        )
        return content

    for system_type in SYSTEM_MESSAGE_TYPES:
        if system_type in message:
            node = _as_dict(message.get(system_type))
            content.update(kind=MessageKind.SYSTEM, text=node.get("text") or "", message_type=system_type)
            return content

    content.update(text="[unsupported message]", message_type=next(iter(message), "unknown"))
    return content


class IngressDeduplicator:
    """First stage of the pipeline.

    Every call to ``process`` returns an ``IngressResult``. Unexpected payload
    shapes become ``invalid`` results; nothing raises past this boundary.
    """

    def __init__(
        self,
        bot_number: str = "",
        window_seconds: float = 60.0,
        max_entries: int = 10000,
        evict_fraction: float = 0.2,
        clock: Callable[[], float] = time.time,
    ):
        self.bot_number = normalize_contact_id(bot_number) or ""
        self._clock = clock
        self.seen = BoundedTTLCache(
            ttl_seconds=window_seconds,
            max_entries=max_entries,
            evict_fraction=evict_fraction,
            clock=clock,
            name="ingress_identities",
        )
        self.counters = {"received": 0, "ignored": 0, "duplicates": 0, "invalid": 0, "admitted": 0}

    def stats(self) -> dict:
        return {**self.counters, "tracked_identities": len(self.seen)}

    def forget(self, identity: str) -> None:
        """Release an admitted identity so a redelivery is processed again."""
        if identity:
            self.seen.pop(identity)

    def sweep(self) -> int:
        return self.seen.sweep()

    def is_message_event(self, payload: dict) -> bool:
        event = normalize_event_name(payload.get("event") or payload.get("type"))
        if event is None:
            return True
        if event in IGNORED_EVENTS or event.startswith("groups."):
            return False
        if event == "messages.update":
            data = _as_dict(payload.get("data"))
            return bool(_as_dict(data.get("message")))
        return True

    def _resolve_sender(self, payload: dict, data: dict, key: dict) -> tuple[str | None, bool]:
        remote_jid = _first(key.get("remoteJid"), data.get("remoteJid"), data.get("from"), payload.get("from"))
        if not isinstance(remote_jid, str):
            remote_jid = normalize_contact_id(remote_jid)

        if remote_jid and remote_jid.endswith(GROUP_SUFFIX):
            participant = _first(key.get("participant"), data.get("participant"))
            return normalize_contact_id(participant), True

        if remote_jid and remote_jid.endswith(LID_SUFFIX):
            alt = _first(key.get("remoteJidAlt"), key.get("participant"), data.get("senderPn"))
            return normalize_contact_id(alt), False

        return normalize_contact_id(remote_jid), False

    def _parse(self, payload: dict) -> tuple[dict, dict, dict]:
        data = payload.get("data", payload)
        if isinstance(data, list):
            data = data[0] if data else None
        if not isinstance(data, dict):
            raise MalformedPayloadError("event data is not an object")
        key = _as_dict(data.get("key")) or _as_dict(_as_dict(data.get("message")).get("key"))
        message = _as_dict(data.get("message"))
        return data, key, message

    def _identity(self, payload: dict, data: dict, key: dict, sender: str, timestamp: float) -> tuple[str, bool]:
        provider_id = _first(key.get("id"), data.get("id"), data.get("messageId"), payload.get("messageId"))
        if provider_id is not None:
            return str(provider_id), False
        return f"{sender}:{int(timestamp * 1000)}:{secrets.token_hex(4)}", True

    def _content_key(self, sender: str, content: dict) -> str:
        """Dedup key for id-less payloads: a redelivery carries the same sender and body."""
        media = content["media"]
        body = ":".join(
            (sender, content["message_type"] or "", _normalize_body(content["text"]), (media.url or "") if media else "")
        )
        digest = hashlib.sha256(body.encode("utf-8")).hexdigest()[:32]
        return f"{sender}:content:{digest}"

    def process(self, payload: Any) -> IngressResult:
        self.counters["received"] += 1
        try:
            return self._process(payload)
        except MalformedPayloadError as exc:
            self.counters["invalid"] += 1
            logger.warning("Malformed webhook payload", extra={"context": {"error": str(exc)}})
            return IngressResult(status=IngressStatus.INVALID, reason=str(exc))
        except Exception as exc:
            self.counters["invalid"] += 1
            logger.error(
                "Unexpected webhook payload shape",
                extra={"context": {"error": str(exc), "error_type": type(exc).__name__}},
            )
            return IngressResult(status=IngressStatus.INVALID, reason=f"unexpected payload: {type(exc).__name__}")

    def _process(self, payload: Any) -> IngressResult:
        if not isinstance(payload, dict):
            raise MalformedPayloadError("payload is not an object")

        if not self.is_message_event(payload):
            self.counters["ignored"] += 1
            return IngressResult(status=IngressStatus.IGNORED_NON_MESSAGE, reason=str(payload.get("event")))

        data, key, message = self._parse(payload)

        from_me = bool(_first(key.get("fromMe"), data.get("fromMe")))
        if from_me:
            self.counters["ignored"] += 1
            return IngressResult(status=IngressStatus.IGNORED_SELF_ORIGINATED, reason="from_me")

        sender, is_group = self._resolve_sender(payload, data, key)
        if self.bot_number and sender == self.bot_number:
            self.counters["ignored"] += 1
            return IngressResult(status=IngressStatus.IGNORED_SELF_ORIGINATED, reason="sender_is_bot")
        if not sender:
            self.counters["invalid"] += 1
            return IngressResult(status=IngressStatus.INVALID_MISSING_SENDER, reason="no sender field")

        timestamp = _coerce_timestamp(_first(data.get("messageTimestamp"), payload.get("date_time"))) or self._clock()
        message_id, synthesized = self._identity(payload, data, key, sender, timestamp)

        content = extract_content(message)
        if not message and isinstance(data.get("text"), str):
            content.update(text=data["text"], message_type="conversation")
        identity = self._content_key(sender, content) if synthesized else message_id

        inbound = InboundMessage(
            kind=content["kind"],
            contact_id=sender,
            message_id=message_id,
            text=content["text"].strip(),
            message_type=content["message_type"],
            timestamp=timestamp,
            push_name=_first(data.get("pushName"), payload.get("pushName")),
            is_group=is_group,
            synthesized_id=synthesized,
            needs_transcription=content["needs_transcription"],
            media=content["media"],
            raw_event=data,
        )

        # registered last: a payload that fails to normalize leaves no trace
        if not self.seen.add_if_absent(identity):
            self.counters["duplicates"] += 1
            logger.info("Duplicate message skipped", extra={"context": {"message_id": identity, "contact_id": sender}})
            return IngressResult(status=IngressStatus.DUPLICATE, identity=identity)

        self.counters["admitted"] += 1
        return IngressResult(status=IngressStatus.VALID, message=inbound, identity=identity)
