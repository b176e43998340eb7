from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


class LineSource(BaseModel):
    type: str  # user, group, room
    userId: Optional[str] = None
    groupId: Optional[str] = None
    roomId: Optional[str] = None


class LineMentionee(BaseModel):
    index: int = 0
    length: int = 0
    type: Optional[str] = None  # user, all
    userId: Optional[str] = None
    isSelf: bool = False


class LineMention(BaseModel):
    mentionees: list[LineMentionee] = Field(default_factory=list)


class LineMessage(BaseModel):
    id: Optional[str] = None
    type: str
    text: Optional[str] = None
    fileName: Optional[str] = None
    fileSize: Optional[int] = None
    mention: Optional[LineMention] = None

    model_config = ConfigDict(extra="allow")


class LineDeliveryContext(BaseModel):
    isRedelivery: bool = False


class LineEvent(BaseModel):
    type: str
    webhookEventId: Optional[str] = None
    timestamp: Optional[int] = None
    replyToken: Optional[str] = None
    source: Optional[LineSource] = None
    message: Optional[LineMessage] = None
    deliveryContext: Optional[LineDeliveryContext] = None

    model_config = ConfigDict(extra="allow")


class LineWebhookBody(BaseModel):
    destination: Optional[str] = None
    # Kept raw so one malformed event cannot reject the whole delivery.
    events: list[dict[str, Any]] = Field(default_factory=list)


class LineWebhookResponse(BaseModel):
    success: bool
    accepted: int = 0
    message: Optional[str] = None
