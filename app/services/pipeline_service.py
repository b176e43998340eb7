"""Event pipeline: classify LINE events and run each one in its own transaction.

Runs after the webhook has been acknowledged. Side effects that leave the
process (replies) are sent only after the event's transaction has committed.
"""

import re
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Optional

from sqlalchemy.orm import Session

from app.config import settings
from app.database import SessionLocal, dialect_insert, utcnow
from app.errors import DownstreamCallFailure
from app.logging_config import LoggerAdapter, get_logger
from app.models import ProcessedWebhookEvent
from app.schemas.line import LineEvent
from app.services import message_service, storage_service
from app.services.ai_service import build_ai_service
from app.services.command_handlers import build_command_router
from app.services.command_router import CommandContext, CommandRouter
from app.services.failure_policy import safe_rollback
from app.services.line_service import LineService, build_line_service
from app.services.payments.stripe_provider import build_stripe_provider
from app.services.storage_service import StorageProvider, build_storage_provider
from app.services.tenant_service import is_sentinel, resolve_org

logger = get_logger("pipeline_service")

MEDIA_TYPES = {"image", "video", "audio", "file"}
MEDIA_EXTENSIONS = {"image": "jpg", "video": "mp4", "audio": "m4a", "file": "bin"}

WELCOME_MESSAGE = (
    "👋 สวัสดีครับ! ผม Arkai ผู้ช่วยทำงานในแชทของคุณ\n\n"
    "📁 ส่งไฟล์/รูปมา → เก็บให้อัตโนมัติ\n"
    "✅ /งาน: ส่งรายงานพรุ่งนี้ → สร้างงาน\n"
    "📝 /สรุปวันนี้ → สรุปแชท\n\n"
    "ในกลุ่ม พิมพ์คำสั่งที่ขึ้นต้นด้วย / หรือแท็ก @Arkai\n"
    "พิมพ์ /help เพื่อดูคำสั่งทั้งหมด"
)
MEDIA_FAILED_REPLY = "❌ เก็บไฟล์อัตโนมัติไม่สำเร็จ กรุณาลองใหม่อีกครั้ง"
UNAVAILABLE_REPLY = "❌ ระบบขัดข้องชั่วคราว กรุณาลองใหม่อีกครั้ง"


class EventKind(str, Enum):
    JOIN = "join"
    FOLLOW = "follow"
    TEXT = "text"
    MEDIA = "media"
    LEAVE = "leave"
    OTHER = "other"


@dataclass
class InboundEvent:
    kind: EventKind
    source_type: str = "user"
    user_id: Optional[str] = None
    group_id: Optional[str] = None
    reply_token: Optional[str] = None
    event_id: Optional[str] = None
    text: str = ""
    message_id: Optional[str] = None
    message_type: Optional[str] = None
    file_name: Optional[str] = None
    is_mention: bool = False
    raw: dict = field(default_factory=dict, repr=False)

    @property
    def is_group(self) -> bool:
        return self.group_id is not None

    @property
    def source_id(self) -> Optional[str]:
        """External identity of the tenant: the group or room, else the user."""
        return self.group_id or self.user_id


def _cut(text: str, start: int, length: int) -> str:
    return (text[:start] + text[start + length :]).strip()


def _mention_pattern(name: str) -> re.Pattern:
    # Latin letters and digits must not continue the name ("arkaion" is not "arkai").
    return re.compile(rf"(?<![A-Za-z0-9_]){re.escape(name)}(?![A-Za-z0-9_])", re.IGNORECASE)


def _detect_mention(message, text: str, mention_names: list[str]) -> tuple[bool, str]:
    """Return (is_mention, text without the bot mention)."""
    if message.mention:
        for mentionee in message.mention.mentionees:
            if mentionee.isSelf:
                return True, _cut(text, mentionee.index, mentionee.length)

    for name in sorted(mention_names, key=len, reverse=True):
        match = _mention_pattern(name).search(text)
        if match:
            return True, _cut(text, match.start(), match.end() - match.start())
    return False, text


def classify_event(raw: dict, mention_names: Optional[list[str]] = None) -> InboundEvent:
    """Normalize one raw LINE event. Raises pydantic.ValidationError on malformed input."""
    event = LineEvent.model_validate(raw)
    source = event.source
    inbound = InboundEvent(
        kind=EventKind.OTHER,
        source_type=source.type if source else "user",
        user_id=source.userId if source else None,
        group_id=(source.groupId or source.roomId) if source else None,
        reply_token=event.replyToken,
        event_id=event.webhookEventId,
        raw=raw,
    )

    if event.type in ("join", "follow"):
        inbound.kind = EventKind(event.type)
    elif event.type in ("leave", "unfollow"):
        inbound.kind = EventKind.LEAVE
    elif event.type == "message" and event.message is not None:
        message = event.message
        inbound.message_id = message.id
        inbound.message_type = message.type
        if message.type == "text":
            inbound.kind = EventKind.TEXT
            names = mention_names if mention_names is not None else settings.mention_names
            inbound.is_mention, inbound.text = _detect_mention(message, message.text or "", names)
        elif message.type in MEDIA_TYPES:
            inbound.kind = EventKind.MEDIA
            inbound.file_name = message.fileName
    return inbound


def media_file_name(event: InboundEvent, now_ms: Optional[int] = None) -> str:
    if event.file_name:
        return event.file_name
    timestamp = now_ms if now_ms is not None else int(time.time() * 1000)
    extension = MEDIA_EXTENSIONS.get(event.message_type or "", "bin")
    return f"{event.message_type or 'file'}-{timestamp}.{extension}"


def claim_event(db: Session, event_id: str) -> bool:
    """Insert-if-absent on the LINE event id; False means the event was already handled."""
    stmt = (
        dialect_insert(db, ProcessedWebhookEvent)
        .values(event_id=event_id, created_at=utcnow())
        .on_conflict_do_nothing(index_elements=["event_id"])
    )
    return bool(db.execute(stmt).rowcount)


@dataclass
class PendingReply:
    reply_token: Optional[str]
    text: str


class EventPipeline:
    def __init__(
        self,
        router: CommandRouter,
        line: LineService,
        storage: Optional[StorageProvider] = None,
        mention_names: Optional[list[str]] = None,
    ):
        self.router = router
        self.line = line
        self.storage = storage
        self.mention_names = mention_names

    def process(self, raw_events: list[dict[str, Any]], session_factory: Callable[[], Session] = SessionLocal) -> dict:
        """Process a delivery sequentially; one failing event never aborts its siblings."""
        results = {"processed": 0, "duplicates": 0, "failed": 0}
        db = session_factory()
        try:
            for raw in raw_events:
                try:
                    reply = self.handle_event(db, raw)
                    db.commit()
                except Exception as e:
                    logger.error(
                        f"Event processing failed: {e}",
                        exc_info=True,
                        extra={"context": {"event_type": raw.get("type"), "event_id": raw.get("webhookEventId")}},
                    )
                    safe_rollback(db)
                    results["failed"] += 1
                    continue

                if reply is False:
                    results["duplicates"] += 1
                    continue
                results["processed"] += 1
                if reply is not None and reply.text:
                    self.line.reply_message(reply.reply_token, reply.text)
        finally:
            db.close()

        logger.info("LINE events processed", extra={"context": results})
        return results

    def handle_event(self, db: Session, raw: dict):
        """Handle one event. Returns the reply to send, None for no reply, False for a duplicate."""
        event = classify_event(raw, self.mention_names)
        event_logger = LoggerAdapter(
            logger, {"event_id": event.event_id, "kind": event.kind.value, "source_id": event.source_id}
        )

        if event.event_id and not claim_event(db, event.event_id):
            event_logger.info("Duplicate LINE event skipped")
            return False

        if event.kind in (EventKind.LEAVE, EventKind.OTHER):
            event_logger.info(f"LINE {raw.get('type')} event")
            return None

        if not event.source_id:
            event_logger.warning("LINE event without source")
            return None

        org = resolve_org(db, event.source_id, event.is_group)

        if event.kind in (EventKind.JOIN, EventKind.FOLLOW):
            event_logger.info("Bot added", context={"org_id": str(org.id)})
            return PendingReply(event.reply_token, WELCOME_MESSAGE)

        if event.kind == EventKind.TEXT:
            return self._handle_text(db, event, org)
        return self._handle_media(db, event, org)

    def _handle_text(self, db: Session, event: InboundEvent, org) -> Optional[PendingReply]:
        if not is_sentinel(org):
            message_service.record_message(db, org.id, event.user_id, event.text)
            db.commit()

        context = CommandContext(
            db=db,
            org=org,
            source_type=event.source_type,
            user_id=event.user_id,
            group_id=event.group_id,
            is_mention=event.is_mention,
        )
        reply = self.router.dispatch(event.text, org, context)
        if reply is None:
            return None
        return PendingReply(event.reply_token, reply)

    def _handle_media(self, db: Session, event: InboundEvent, org) -> PendingReply:
        if self.storage is None or is_sentinel(org):
            return PendingReply(event.reply_token, UNAVAILABLE_REPLY)

        try:
            content, content_type = self.line.get_message_content(event.message_id)
        except DownstreamCallFailure as e:
            logger.error(f"Media download failed: {e}", extra={"context": {"message_id": event.message_id}})
            return PendingReply(event.reply_token, MEDIA_FAILED_REPLY)

        try:
            reply = storage_service.save_upload(
                db,
                self.storage,
                org,
                content,
                media_file_name(event),
                content_type,
            )
        except OSError as e:
            logger.error(f"Media store failed: {e}", extra={"context": {"org_id": str(org.id)}})
            return PendingReply(event.reply_token, MEDIA_FAILED_REPLY)
        return PendingReply(event.reply_token, reply)


def build_pipeline(line: Optional[LineService] = None) -> EventPipeline:
    storage = build_storage_provider()
    router = build_command_router(build_ai_service(), storage, build_stripe_provider())
    return EventPipeline(router, line or build_line_service(), storage)


def process_events(
    raw_events: list[dict[str, Any]],
    session_factory: Callable[[], Session] = SessionLocal,
    line: Optional[LineService] = None,
) -> dict:
    """Background entry point for the LINE webhook."""
    return build_pipeline(line).process(raw_events, session_factory)
