"""AI collaborator: chat replies, task extraction and chat summaries.

Replies are keyword-rule based. When an LLM provider is configured, free-form
chat is answered by the model and the rules are used as fallback.
"""

import re
from dataclasses import dataclass
from datetime import datetime, time, timedelta, timezone
from typing import Optional

from app.config import settings
from app.errors import DownstreamCallFailure
from app.logging_config import get_logger
from app.services.llm import LLMProvider, OpenAIProvider

logger = get_logger("ai_service")

SUMMARY_PREVIEW_LINES = 15
TASK_TITLE_MAX = 80
DUE_HOUR = 9

SYSTEM_PROMPT = (
    "คุณคือ Arkai ผู้ช่วยทำงานในแชท LINE ตอบสั้น กระชับ เป็นมิตร "
    "ถ้าผู้ใช้ถามเรื่องงาน ไฟล์ สรุปแชท เตือนความจำ หรือแผน ให้แนะนำคำสั่งที่เกี่ยวข้อง "
    "และบอกว่าพิมพ์ /help เพื่อดูคำสั่งทั้งหมด"
)

GREETING_RESPONSE = "👋 สวัสดีครับ! ผม Arkai ผู้ช่วยทำงานของคุณ\n\nพิมพ์ /help เพื่อดูคำสั่งทั้งหมด 📚"
DEFAULT_RESPONSE = (
    "💬 ผม Arkai ผู้ช่วยทำงานครับ!\n\nผมช่วยได้เรื่อง:\n"
    "📁 เก็บไฟล์ • ✅ จัดการงาน • 📝 สรุปแชท\n🧠 บันทึกความจำ • ⏰ เตือนความจำ\n\n"
    "พิมพ์ /help เพื่อดูคำสั่งทั้งหมด"
)

CHAT_RULES: list[tuple[tuple[str, ...], str]] = [
    (("สวัสดี", "หวัดดี", "hello", "hi", "hey"), GREETING_RESPONSE),
    (("ขอบคุณ", "thank", "thx"), "😊 ยินดีครับ! มีอะไรให้ช่วยอีกก็บอกได้เลยนะ"),
    (
        ("งาน", "task", "todo", "ต้องทำ"),
        "✅ จัดการงานได้ด้วยคำสั่ง:\n• /task [รายละเอียด] — สร้างงาน\n• /mytasks — ดูงานของคุณ\n• /alltasks — ดูงานทั้งหมด",
    ),
    (
        ("ไฟล์", "file", "รูป", "เอกสาร", "document"),
        "📁 จัดการไฟล์:\n• ส่งไฟล์/รูปเข้ามา → เก็บอัตโนมัติ\n• /files — ดูไฟล์ล่าสุด\n• /file [ชื่อ] — ค้นหาไฟล์",
    ),
    (("สรุป", "summary", "recap"), "📝 สรุปแชท:\n• /summary — สรุปแชทวันนี้\n• /yesterday — สรุปเมื่อวาน"),
    (("เตือน", "remind", "alarm", "นัด"), "⏰ ตั้งเตือน:\n• /remind [เรื่อง] — เตือนพรุ่งนี้ 09:00"),
    (
        ("จำ", "บันทึก", "note", "remember", "จด"),
        "🧠 บันทึกความจำ:\n• /note [ข้อความ] — บันทึก\n• /agreements — ดูข้อตกลง",
    ),
    (
        ("ราคา", "price", "แพ็ค", "plan", "upgrade", "อัพเกรด"),
        "📊 ดูแผน/ราคา:\n• /plan — ดูแผนปัจจุบัน\n• /upgrade [แผน] — อัพเกรด",
    ),
    (("ใช้ยังไง", "วิธีใช้", "how", "help", "ช่วย", "ทำอะไรได้"), "พิมพ์ /help เพื่อดูคำสั่งทั้งหมด 📚"),
]

# Longest phrases first so "day after tomorrow" is not read as "tomorrow".
DUE_KEYWORDS: list[tuple[tuple[str, ...], int]] = [
    (("มะรืนนี้", "มะรืน", "day after tomorrow"), 2),
    (("สัปดาห์หน้า", "อาทิตย์หน้า", "next week"), 7),
    (("พรุ่งนี้", "tomorrow"), 1),
]
DUE_PATTERN = re.compile(
    "|".join(re.escape(keyword) for keywords, _ in DUE_KEYWORDS for keyword in keywords),
    re.IGNORECASE,
)


@dataclass
class ExtractedTask:
    title: str
    description: Optional[str] = None
    due_date: Optional[datetime] = None


def _contains_word(text: str, keyword: str) -> bool:
    if keyword.isascii():
        return re.search(rf"\b{re.escape(keyword)}\b", text) is not None
    return keyword in text


class AIService:
    def __init__(self, llm: Optional[LLMProvider] = None):
        self.llm = llm

    def chat(self, text: str) -> str:
        if self.llm is not None:
            try:
                response = self.llm.generate(
                    [
                        {"role": "system", "content": SYSTEM_PROMPT},
                        {"role": "user", "content": text},
                    ]
                )
                if response.content.strip():
                    return response.content.strip()
            except DownstreamCallFailure as e:
                logger.warning(f"LLM chat failed, using rule-based reply: {e}")
        return self.rule_based_reply(text)

    @staticmethod
    def rule_based_reply(text: str) -> str:
        lowered = text.casefold()
        for keywords, reply in CHAT_RULES:
            if any(_contains_word(lowered, keyword) for keyword in keywords):
                return reply
        return DEFAULT_RESPONSE

    @staticmethod
    def extract_task(text: str, now: Optional[datetime] = None, tz=timezone.utc) -> ExtractedTask:
        """Pull a title and an optional due date (09:00 local) out of free text."""
        now = now or datetime.now(timezone.utc)
        lowered = text.casefold()

        due_date = None
        for keywords, days in DUE_KEYWORDS:
            if any(keyword in lowered for keyword in keywords):
                local_day = now.astimezone(tz).date() + timedelta(days=days)
                due_date = datetime.combine(local_day, time(DUE_HOUR), tzinfo=tz).astimezone(timezone.utc)
                break

        title = re.sub(r"\s+", " ", DUE_PATTERN.sub("", text)).strip()
        if not title:
            title = text.strip()
        title = title[:TASK_TITLE_MAX]

        return ExtractedTask(
            title=title,
            description=text if len(text) > TASK_TITLE_MAX else None,
            due_date=due_date,
        )

    @staticmethod
    def summarize(text: str) -> str:
        lines = [line.strip() for line in text.split("\n") if line.strip()]
        if not lines:
            return "📭 ไม่มีข้อความให้สรุป"

        total = len(lines)
        preview = lines[-SUMMARY_PREVIEW_LINES:]
        result = f"📋 สรุปแชท ({total} ข้อความ):\n\n"
        result += "\n".join(f"{i}. {line[:100]}" for i, line in enumerate(preview, start=1))
        if total > SUMMARY_PREVIEW_LINES:
            result += f"\n\n... และอีก {total - SUMMARY_PREVIEW_LINES} ข้อความก่อนหน้า"
        return result


def build_ai_service() -> AIService:
    llm = None
    if settings.openai_api_key:
        llm = OpenAIProvider(settings.openai_api_key, default_model=settings.openai_model)
    return AIService(llm=llm)
