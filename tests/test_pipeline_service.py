from unittest.mock import Mock, patch

import pytest
from pydantic import ValidationError
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Query

from app.errors import DownstreamCallFailure
from app.models import ChatMessage, Organization, ProcessedWebhookEvent, StoredFile
from app.services.ai_service import AIService
from app.services.command_handlers import HELP_TEXT, build_command_router
from app.services.line_service import LineService
from app.services.pipeline_service import (
    MEDIA_FAILED_REPLY,
    WELCOME_MESSAGE,
    EventKind,
    EventPipeline,
    classify_event,
    media_file_name,
)
from app.services.storage_service import LocalStorageProvider

MENTION_NAMES = ["@arkai", "arkai"]


def text_event(text, event_id="evt-1", source=None, reply_token="rt-1", **message):
    return {
        "type": "message",
        "webhookEventId": event_id,
        "replyToken": reply_token,
        "timestamp": 1760000000000,
        "source": source or {"type": "user", "userId": "U1"},
        "message": {"id": "m-1", "type": "text", "text": text, **message},
    }


def media_event(message_type="image", event_id="evt-media", **message):
    return {
        "type": "message",
        "webhookEventId": event_id,
        "replyToken": "rt-media",
        "source": {"type": "user", "userId": "U1"},
        "message": {"id": "m-media", "type": message_type, **message},
    }


GROUP = {"type": "group", "groupId": "C1", "userId": "U1"}


class TestClassifyEvent:
    def test_user_text(self):
        event = classify_event(text_event("/help"), MENTION_NAMES)
        assert event.kind == EventKind.TEXT
        assert event.text == "/help"
        assert event.source_id == "U1"
        assert event.is_group is False

    def test_room_is_treated_as_group(self):
        event = classify_event(text_event("hi", source={"type": "room", "roomId": "R1", "userId": "U1"}), MENTION_NAMES)
        assert event.group_id == "R1"
        assert event.source_id == "R1"
        assert event.is_group is True

    def test_self_mentionee_is_stripped(self):
        raw = text_event(
            "@Arkai Bot ช่วยหน่อย",
            source=GROUP,
            mention={"mentionees": [{"index": 0, "length": 10, "type": "user", "isSelf": True}]},
        )
        event = classify_event(raw, MENTION_NAMES)
        assert event.is_mention is True
        assert event.text == "ช่วยหน่อย"

    def test_mention_of_someone_else_is_not_bot_mention(self):
        raw = text_event(
            "@somchai ส่งงานยัง",
            source=GROUP,
            mention={"mentionees": [{"index": 0, "length": 8, "type": "user", "userId": "U2"}]},
        )
        event = classify_event(raw, MENTION_NAMES)
        assert event.is_mention is False
        assert event.text == "@somchai ส่งงานยัง"

    def test_configured_name_counts_as_mention(self):
        event = classify_event(text_event("@ARKAI สรุปหน่อย", source=GROUP), MENTION_NAMES)
        assert event.is_mention is True

    def test_name_inside_a_longer_word_is_not_a_mention(self):
        event = classify_event(text_event("arkaion launch today", source=GROUP), MENTION_NAMES)
        assert event.is_mention is False
        assert event.text == "arkaion launch today"

    def test_mention_is_cut_from_original_text(self):
        event = classify_event(text_event("Straße ARKAI /plan", source=GROUP), MENTION_NAMES)
        assert event.is_mention is True
        assert event.text == "Straße  /plan"
        assert event.text == "สรุปหน่อย"

    @pytest.mark.parametrize(
        "event_type,kind",
        [("join", EventKind.JOIN), ("follow", EventKind.FOLLOW), ("leave", EventKind.LEAVE), ("unfollow", EventKind.LEAVE)],
    )
    def test_lifecycle_events(self, event_type, kind):
        raw = {"type": event_type, "source": {"type": "user", "userId": "U1"}}
        assert classify_event(raw, MENTION_NAMES).kind == kind

    def test_media(self):
        event = classify_event(media_event("file", fileName="report.pdf", fileSize=10), MENTION_NAMES)
        assert event.kind == EventKind.MEDIA
        assert event.file_name == "report.pdf"
        assert media_file_name(event) == "report.pdf"

    def test_media_name_is_generated(self):
        event = classify_event(media_event("video"), MENTION_NAMES)
        assert media_file_name(event, now_ms=123) == "video-123.mp4"

    def test_sticker_is_other(self):
        raw = media_event("sticker", packageId="1", stickerId="2")
        assert classify_event(raw, MENTION_NAMES).kind == EventKind.OTHER

    def test_malformed_event_raises(self):
        with pytest.raises(ValidationError):
            classify_event({"webhookEventId": "evt-x"}, MENTION_NAMES)


@pytest.fixture
def line():
    service = Mock(spec=LineService)
    service.get_message_content.return_value = (b"data", "image/jpeg")
    return service


@pytest.fixture
def storage(tmp_path):
    return LocalStorageProvider(str(tmp_path), "media-secret", "https://arkai.test")


@pytest.fixture
def pipeline(line, storage, mock_env):
    return EventPipeline(build_command_router(AIService(), storage), line, storage, MENTION_NAMES)


class TestEventPipeline:
    def test_command_reply_is_sent(self, pipeline, line, session_factory):
        results = pipeline.process([text_event("/help")], session_factory)

        assert results == {"processed": 1, "duplicates": 0, "failed": 0}
        line.reply_message.assert_called_once_with("rt-1", HELP_TEXT)

        db = session_factory()
        assert db.query(Organization).filter(Organization.line_user_id == "U1").count() == 1
        assert db.query(ChatMessage).one().text == "/help"
        assert db.query(ProcessedWebhookEvent).count() == 1
        db.close()

    def test_redelivered_event_is_skipped(self, pipeline, line, session_factory):
        pipeline.process([text_event("/help")], session_factory)
        results = pipeline.process([text_event("/help")], session_factory)

        assert results["duplicates"] == 1
        assert line.reply_message.call_count == 1

    def test_claimed_event_survives_tenant_fallback(self, pipeline, line, session_factory):
        with patch.object(Query, "one", side_effect=OperationalError("SELECT", {}, Exception("down"))):
            first = pipeline.process([text_event("/help")], session_factory)
        second = pipeline.process([text_event("/help")], session_factory)

        assert first["processed"] == 1
        assert second["duplicates"] == 1
        line.reply_message.assert_called_once_with("rt-1", HELP_TEXT)

    def test_group_chatter_is_recorded_without_reply(self, pipeline, line, session_factory):
        results = pipeline.process([text_event("ประชุมบ่ายสอง", source=GROUP)], session_factory)

        assert results["processed"] == 1
        line.reply_message.assert_not_called()
        db = session_factory()
        org = db.query(Organization).filter(Organization.line_group_id == "C1").one()
        assert db.query(ChatMessage).filter(ChatMessage.org_id == org.id).count() == 1
        db.close()

    def test_bad_event_does_not_abort_siblings(self, pipeline, line, session_factory):
        events = [
            {"webhookEventId": "evt-bad"},
            text_event("/help", event_id="evt-good"),
        ]

        results = pipeline.process(events, session_factory)

        assert results == {"processed": 1, "duplicates": 0, "failed": 1}
        line.reply_message.assert_called_once()

    def test_follow_gets_welcome(self, pipeline, line, session_factory):
        raw = {"type": "follow", "webhookEventId": "evt-f", "replyToken": "rt-f", "source": {"type": "user", "userId": "U9"}}

        pipeline.process([raw], session_factory)

        line.reply_message.assert_called_once_with("rt-f", WELCOME_MESSAGE)

    def test_leave_has_no_reply(self, pipeline, line, session_factory):
        raw = {"type": "leave", "webhookEventId": "evt-l", "source": {"type": "group", "groupId": "C1"}}

        results = pipeline.process([raw], session_factory)

        assert results["processed"] == 1
        line.reply_message.assert_not_called()

    def test_media_is_stored(self, pipeline, line, session_factory):
        pipeline.process([media_event("file", fileName="report.pdf")], session_factory)

        line.get_message_content.assert_called_once_with("m-media")
        reply = line.reply_message.call_args.args[1]
        assert "เก็บไฟล์สำเร็จ" in reply
        assert "report.pdf" in reply

        db = session_factory()
        stored = db.query(StoredFile).one()
        org = db.query(Organization).filter(Organization.id == stored.org_id).one()
        assert stored.size_bytes == 4
        assert org.storage_used_bytes == 4
        db.close()

    def test_media_download_failure(self, pipeline, line, session_factory):
        line.get_message_content.side_effect = DownstreamCallFailure("line", "timeout")

        results = pipeline.process([media_event()], session_factory)

        assert results["processed"] == 1
        line.reply_message.assert_called_once_with("rt-media", MEDIA_FAILED_REPLY)
        db = session_factory()
        assert db.query(StoredFile).count() == 0
        db.close()

    def test_reply_failure_does_not_undo_commit(self, pipeline, line, session_factory):
        line.reply_message.side_effect = None
        line.reply_message.return_value = False

        pipeline.process([text_event("/note ตกลงส่งงานวันศุกร์")], session_factory)

        db = session_factory()
        assert db.query(ProcessedWebhookEvent).count() == 1
        db.close()
