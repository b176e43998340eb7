from typing import Optional

import httpx

from app.config import settings
from app.errors import ConfigurationError, DownstreamCallFailure
from app.logging_config import get_logger

logger = get_logger("line_service")

MAX_MESSAGE_LENGTH = 4900
TRUNCATION_MARKER = "\n...(ตัดข้อความเนื่องจากยาวเกินไป)"


def truncate_message(text: str, limit: int = MAX_MESSAGE_LENGTH) -> str:
    """Keep a reply within LINE's text limit, marking the cut visibly."""
    if len(text) <= limit:
        return text
    return text[:limit] + TRUNCATION_MARKER


class LineService:
    """Client for the LINE Messaging API (reply, push, content download)."""

    API_URL = "https://api.line.me/v2/bot/message"
    DATA_API_URL = "https://api-data.line.me/v2/bot/message"

    def __init__(self, access_token: Optional[str], timeout_seconds: Optional[float] = None):
        if not access_token:
            raise ConfigurationError("LINE_CHANNEL_ACCESS_TOKEN is not configured")
        self.access_token = access_token
        self.timeout_seconds = timeout_seconds if timeout_seconds is not None else settings.line_timeout_seconds

    @property
    def _headers(self) -> dict:
        return {"Authorization": f"Bearer {self.access_token}", "Content-Type": "application/json"}

    def _post(self, method: str, payload: dict) -> bool:
        url = f"{self.API_URL}/{method}"
        try:
            with httpx.Client(timeout=self.timeout_seconds) as client:
                response = client.post(url, json=payload, headers=self._headers)
        except Exception as e:
            logger.error(f"LINE API error: {e}", extra={"context": {"method": method}})
            return False

        if response.status_code != 200:
            logger.error(
                "LINE API rejected request",
                extra={"context": {"method": method, "status": response.status_code, "body": response.text[:300]}},
            )
            return False
        return True

    def reply_message(self, reply_token: str, text: str) -> bool:
        """Reply to an inbound event. Reply tokens expire, so failures are not retried."""
        if not reply_token:
            logger.warning("reply_message called without reply token")
            return False
        return self._post(
            "reply",
            {"replyToken": reply_token, "messages": [{"type": "text", "text": truncate_message(text)}]},
        )

    def push_message(self, to: str, text: str) -> bool:
        """Send an unsolicited message to a user or group."""
        if not to:
            logger.warning("push_message called without recipient")
            return False
        return self._post("push", {"to": to, "messages": [{"type": "text", "text": truncate_message(text)}]})

    def get_message_content(self, message_id: str) -> tuple[bytes, str]:
        """Download media attached to a message. Returns (content, content_type)."""
        url = f"{self.DATA_API_URL}/{message_id}/content"
        try:
            with httpx.Client(timeout=self.timeout_seconds) as client:
                response = client.get(url, headers={"Authorization": f"Bearer {self.access_token}"})
        except Exception as e:
            raise DownstreamCallFailure("line", f"content download failed: {e}") from e

        if response.status_code != 200:
            raise DownstreamCallFailure("line", f"content download status {response.status_code}")
        content_type = response.headers.get("content-type", "application/octet-stream")
        return response.content, content_type


def build_line_service() -> LineService:
    return LineService(settings.line_channel_access_token)
