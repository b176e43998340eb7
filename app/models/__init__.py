from app.models.chat_message import ChatMessage
from app.models.memory import Memory
from app.models.organization import Organization
from app.models.payment import Payment
from app.models.processed_webhook_event import ProcessedWebhookEvent
from app.models.reminder import Reminder
from app.models.stored_file import StoredFile
from app.models.task import Task

__all__ = [
    "Organization",
    "Payment",
    "ChatMessage",
    "Task",
    "Memory",
    "Reminder",
    "StoredFile",
    "ProcessedWebhookEvent",
]
