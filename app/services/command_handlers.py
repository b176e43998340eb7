"""Feature handlers behind the command router and the alias table that binds them."""

from typing import Optional
from uuid import UUID

from app.database import as_utc
from app.logging_config import get_logger
from app.services import (
    memory_service,
    message_service,
    reminder_service,
    storage_service,
    task_service,
    usage_service,
)
from app.services.ai_service import AIService
from app.services.command_router import (
    CommandContext,
    CommandError,
    CommandRegistry,
    CommandRouter,
    CommandSpec,
)
from app.services.payment_service import create_checkout, upgrade_reply
from app.services.payments import StripeProvider
from app.services.plans import PLAN_PRICES, get_limits
from app.services.storage_service import StorageProvider, format_bytes
from app.services.tenant_service import is_sentinel
from app.services.usage_service import Cap, Feature, Resource

logger = get_logger("command_handlers")

HELP_TEXT = """📚 รายการคำสั่งที่ใช้ได้:

📁 จัดการไฟล์
• ส่งไฟล์/รูปเข้ามา → เก็บอัตโนมัติ
• /หาไฟล์ [ชื่อ] (/file)
• /เปิดไฟล์ล่าสุด (/files)
• /ลบไฟล์ [ชื่อ] (/delfile)

📝 สรุปการคุย
• /สรุปวันนี้ (/summary, /today)
• /สรุปเมื่อวาน (/yesterday)
• /สรุปเรื่อง [หัวข้อ] (/topic)
• /สรุปงานของ @ชื่อ (/work)

✅ งาน / Task
• /งาน: [รายละเอียดงาน] (/task)
• /มอบหมาย @ชื่อ [งาน] (/assign)
• /งานของฉัน (/mytasks)
• /งานทั้งหมด (/alltasks)

⏰ เตือนความจำ
• /เตือนพรุ่งนี้ [เรื่อง] (/remind)
• /เตือนทุกวัน [เรื่อง] (/daily)

🧠 Memory / บริบท
• /บันทึกว่า [ข้อความ] (/note)
• /เราตกลงอะไร (/agreements)
• /ใครรับผิดชอบ [โปรเจค] (/who)

📊 แผน & ระบบ
• /แผน (/plan)
• /อัพเกรด [basic|pro|business] [monthly|yearly] (/upgrade)
• /พื้นที่เหลือเท่าไร (/storage)
• /help"""

TASK_FORM = (
    "ฟอร์มสร้างงาน:\n1. ชื่องาน: ___\n2. รายละเอียด: ___\n3. กำหนดส่ง: ___\n\n"
    "หรือใช้รูปแบบเร็ว: /งาน: ส่งรายงานพรุ่งนี้"
)


def _require(args: str, usage: str) -> str:
    args = args.strip()
    if not args:
        raise CommandError(usage)
    return args


def _require_org(context: CommandContext) -> None:
    """Commands that write tenant-owned rows cannot run on the degraded placeholder org."""
    if is_sentinel(context.org):
        raise CommandError("❌ ระบบขัดข้องชั่วคราว กรุณาลองใหม่อีกครั้ง")


def _gate(decision: usage_service.QuotaDecision) -> None:
    if not decision.allowed:
        raise CommandError(decision.message)


def _format_due(task, tz) -> str:
    if not task.due_date:
        return ""
    return as_utc(task.due_date).astimezone(tz).strftime("%d/%m/%Y %H:%M")


def _numbered(lines: list[str]) -> str:
    return "\n".join(f"{i}. {line}" for i, line in enumerate(lines, start=1))


class CommandHandlers:
    """Handlers share the signature ``(args, org_id, context) -> reply``."""

    def __init__(
        self,
        ai: AIService,
        storage: Optional[StorageProvider] = None,
        checkout: Optional[StripeProvider] = None,
    ):
        self.ai = ai
        self.storage = storage
        self.checkout = checkout

    # --- chat ---

    def chat(self, args: str, org_id: UUID, context: CommandContext) -> str:
        """Default handler for non-command text, gated by the daily AI quota."""
        decision = usage_service.check_and_consume(context.db, Resource.AI_CHAT, context.org, now=context.now)
        if not decision.allowed:
            return decision.message
        reply = self.ai.chat(args)
        usage_service.record(context.db, Resource.AI_CHAT, context.org)
        return reply

    # --- plan & system ---

    def help(self, args: str, org_id: UUID, context: CommandContext) -> str:
        return HELP_TEXT

    def plan(self, args: str, org_id: UUID, context: CommandContext) -> str:
        return usage_service.get_plan_status(context.db, context.org)

    def upgrade(self, args: str, org_id: UUID, context: CommandContext) -> str:
        parts = args.split()
        if not parts:
            lines = [
                f"{price.label} ฿{price.monthly}/เดือน หรือ ฿{price.yearly}/ปี → /upgrade {plan} [monthly|yearly]"
                for plan, price in PLAN_PRICES.items()
            ]
            return "💎 เลือกแผนที่ต้องการอัพเกรด:\n\n" + "\n".join(lines)
        if self.checkout is None:
            raise CommandError("❌ ระบบชำระเงินยังไม่พร้อม กรุณาติดต่อแอดมิน")
        _require_org(context)

        result = create_checkout(
            context.db,
            self.checkout,
            context.org,
            parts[0],
            parts[1] if len(parts) > 1 else None,
        )
        if not result.ok:
            logger.warning(
                "Upgrade checkout not created",
                extra={"context": {"org_id": str(org_id), "error_code": result.error_code}},
            )
            raise CommandError(result.error)
        return upgrade_reply(result.value)

    def storage_status(self, args: str, org_id: UUID, context: CommandContext) -> str:
        org = context.org
        used = org.storage_used_bytes or 0
        quota = get_limits(org.plan).storage_bytes
        remaining = max(0.0, 100 - used * 100 / quota) if quota else 0.0
        file_count = 0 if is_sentinel(org) else storage_service.count_files(context.db, org_id)
        return (
            "📊 พื้นที่จัดเก็บ\n"
            f"ใช้ไป: {format_bytes(used)}\n"
            f"โควต้า: {format_bytes(quota)}\n"
            f"คงเหลือ: {remaining:.1f}% ({file_count} ไฟล์)"
        )

    # --- tasks ---

    def create_task(self, args: str, org_id: UUID, context: CommandContext) -> str:
        if not args.strip():
            return TASK_FORM
        _require_org(context)
        _gate(usage_service.check_and_consume(context.db, Resource.TASK, context.org, now=context.now))

        tz = usage_service.quota_timezone()
        task = task_service.create_task(context.db, org_id, args.strip(), self.ai, now=context.now, tz=tz)
        usage_service.record(context.db, Resource.TASK, context.org)

        reply = f'✅ สร้างงานใหม่: "{task.title}"'
        if task.due_date:
            reply += f"\nกำหนดส่ง: {_format_due(task, tz)}"
        return reply

    def assign_task(self, args: str, org_id: UUID, context: CommandContext) -> str:
        _gate(usage_service.can_access_feature(context.org, Feature.ASSIGN_TASK))
        parts = args.split(None, 1)
        if len(parts) < 2:
            raise CommandError("กรุณาระบุรูปแบบ: /มอบหมาย @ชื่อ รายละเอียดงาน วันเวลา")
        _require_org(context)
        _gate(usage_service.check_and_consume(context.db, Resource.TASK, context.org, now=context.now))

        assignee = parts[0].lstrip("@")
        tz = usage_service.quota_timezone()
        task = task_service.create_task(
            context.db, org_id, parts[1], self.ai, assignee=assignee, now=context.now, tz=tz
        )
        usage_service.record(context.db, Resource.TASK, context.org)
        return f'✅ มอบหมายงาน "{task.title}" ให้ {assignee} เรียบร้อย'

    def my_tasks(self, args: str, org_id: UUID, context: CommandContext) -> str:
        tasks = task_service.list_pending(context.db, org_id, assignee=context.user_id or "unknown")
        if not tasks:
            return "📝 คุณไม่มีงานค้างอยู่ในขณะนี้"
        tz = usage_service.quota_timezone()
        lines = [f"{t.title} (เสร็จภายใน {_format_due(t, tz)})" if t.due_date else t.title for t in tasks]
        return "📝 งานของคุณ:\n" + _numbered(lines)

    def all_tasks(self, args: str, org_id: UUID, context: CommandContext) -> str:
        tasks = task_service.list_pending(context.db, org_id)
        if not tasks:
            return "📝 ไม่มีงานในกลุ่มขณะนี้"
        lines = [f"{t.title} (@{t.assignee})" if t.assignee else t.title for t in tasks]
        return "📝 งานประจำกลุ่ม:\n" + _numbered(lines)

    def user_work(self, args: str, org_id: UUID, context: CommandContext) -> str:
        name = _require(args, "กรุณาระบุชื่อผู้ใช้ เช่น: /สรุปงานของ @username")
        tasks = task_service.tasks_for_assignee(context.db, org_id, name)
        if not tasks:
            return f"📭 ไม่พบงานของ {name} ครับ"
        return f"📝 สรุปงานของ {name}:\n" + _numbered([f"{t.title} [สถานะ: {t.status}]" for t in tasks])

    # --- summaries ---

    def _summarize_day(self, context: CommandContext, org_id: UUID, day_offset: int) -> list[str]:
        start, end = message_service.day_bounds(day_offset, context.now, usage_service.quota_timezone())
        messages = message_service.messages_between(context.db, org_id, start, end)
        return [m.text for m in messages if not m.text.startswith("/")]

    def summary_today(self, args: str, org_id: UUID, context: CommandContext) -> str:
        _gate(usage_service.can_access_feature(context.org, Feature.SUMMARY_TODAY))
        texts = self._summarize_day(context, org_id, 0)
        if not texts:
            return "📭 ยังไม่มีการพูดคุยในวันนี้เลยครับ"
        return self.ai.summarize("\n".join(texts))

    def summary_yesterday(self, args: str, org_id: UUID, context: CommandContext) -> str:
        _gate(usage_service.can_access_feature(context.org, Feature.SUMMARY_YESTERDAY))
        texts = self._summarize_day(context, org_id, -1)
        if not texts:
            return "📭 ไม่มีบันทึกการพูดคุยของเมื่อวานครับ"
        return self.ai.summarize("\n".join(texts))

    def summary_topic(self, args: str, org_id: UUID, context: CommandContext) -> str:
        topic = _require(args, "กรุณาระบุหัวข้อที่ต้องการสรุป เช่น: /สรุปเรื่อง ประชุมลูกค้า")
        messages = message_service.search_messages(context.db, org_id, topic)
        texts = [m.text for m in messages if not m.text.startswith("/")]
        if not texts:
            return f'📭 ไม่พบการพูดคุยเรื่อง "{topic}" ในแชทนี้ครับ'
        return self.ai.summarize("\n".join(texts))

    # --- reminders ---

    def _set_reminder(self, args: str, org_id: UUID, context: CommandContext, daily: bool) -> str:
        topic = _require(args, "กรุณาระบุเรื่องที่ต้องการให้เตือน เช่น: /เตือนพรุ่งนี้ ประชุมทีม")
        _require_org(context)
        active = reminder_service.count_active(context.db, org_id, context.now)
        _gate(usage_service.check_cap(context.org, Cap.REMINDERS, active))
        reminder_service.set_reminder(
            context.db, org_id, topic, daily=daily, now=context.now, tz=usage_service.quota_timezone()
        )
        if daily:
            return f'⏰ ตั้งเตือนทุกวันเวลา 09:00 สำหรับเรื่อง "{topic}" สำเร็จ'
        return f'⏰ ตั้งเตือนพรุ่งนี้ 09:00 สำหรับเรื่อง "{topic}" สำเร็จ'

    def remind_tomorrow(self, args: str, org_id: UUID, context: CommandContext) -> str:
        return self._set_reminder(args, org_id, context, daily=False)

    def remind_daily(self, args: str, org_id: UUID, context: CommandContext) -> str:
        return self._set_reminder(args, org_id, context, daily=True)

    # --- memory ---

    def save_note(self, args: str, org_id: UUID, context: CommandContext) -> str:
        text = _require(args, "กรุณาระบุสิ่งที่ต้องการบันทึก เช่น: /บันทึกว่า ตกลงส่งงานทุกวันศุกร์")
        _require_org(context)
        _gate(usage_service.check_cap(context.org, Cap.NOTES, memory_service.count_memories(context.db, org_id)))
        memory_service.save_memory(context.db, org_id, text)
        return f'✅ บันทึกความจำ: "{text}" เรียบร้อยครับ'

    def agreements(self, args: str, org_id: UUID, context: CommandContext) -> str:
        memories = memory_service.recent_agreements(context.db, org_id)
        if not memories:
            return "🧠 ยังไม่มีข้อตกลงที่ถูกบันทึกไว้ในกลุ่มนี้ครับ"
        return "🤝 ข้อตกลงล่าสุดที่เราบันทึกไว้:\n" + _numbered([m.text for m in memories])

    def responsibility(self, args: str, org_id: UUID, context: CommandContext) -> str:
        project = _require(args, "กรุณาระบุโปรเจคหรืองาน เช่น: /ใครรับผิดชอบ เว็บไซต์")
        memories = memory_service.find_responsibilities(context.db, org_id, project)
        if not memories:
            return f'🤷 ไม่พบผู้รับผิดชอบสำหรับงานหรือโปรเจคที่มีคำว่า "{project}" ครับ'
        return f'📌 ความรับผิดชอบเกี่ยวกับ "{project}":\n' + _numbered([m.text for m in memories])

    # --- files ---

    def _file_line(self, stored) -> str:
        line = f"{stored.file_name} ({format_bytes(stored.size_bytes or 0)})"
        if self.storage is not None:
            line += f"\n   {self.storage.presigned_url(stored.storage_key)}"
        return line

    def recent_files(self, args: str, org_id: UUID, context: CommandContext) -> str:
        files = storage_service.list_recent_files(context.db, org_id)
        if not files:
            return "📭 ยังไม่มีไฟล์ที่เก็บไว้ ส่งไฟล์หรือรูปเข้ามาในแชทเพื่อเก็บอัตโนมัติ"
        return "📁 ไฟล์ล่าสุด:\n" + _numbered([self._file_line(f) for f in files])

    def find_file(self, args: str, org_id: UUID, context: CommandContext) -> str:
        query = _require(args, "กรุณาระบุชื่อไฟล์ที่ต้องการค้นหา เช่น: /หาไฟล์ report.pdf")
        files = storage_service.find_files(context.db, org_id, query)
        if not files:
            return f'📭 ไม่พบไฟล์ที่ตรงกับ "{query}"'
        return f'🔍 ไฟล์ที่ตรงกับ "{query}":\n' + _numbered([self._file_line(f) for f in files])

    def delete_file(self, args: str, org_id: UUID, context: CommandContext) -> str:
        query = _require(args, "กรุณาระบุชื่อไฟล์ที่ต้องการลบ เช่น: /ลบไฟล์ report.pdf")
        if self.storage is None:
            raise CommandError("❌ ระบบเก็บไฟล์ยังไม่พร้อม กรุณาติดต่อแอดมิน")
        files = storage_service.find_files(context.db, org_id, query)
        if not files:
            return f'📭 ไม่พบไฟล์ที่ตรงกับ "{query}"'
        if len(files) > 1:
            names = _numbered([f.file_name for f in files])
            return f"⚠️ พบหลายไฟล์ กรุณาระบุชื่อให้ชัดเจนขึ้น:\n{names}"
        stored = files[0]
        storage_service.delete_file(context.db, self.storage, context.org, stored)
        return f"🗑️ ลบไฟล์ {stored.file_name} เรียบร้อย (คืนพื้นที่ {format_bytes(stored.size_bytes or 0)})"

    def store_file_hint(self, args: str, org_id: UUID, context: CommandContext) -> str:
        return "📎 ส่งไฟล์ รูป วิดีโอ หรือเสียงเข้ามาในแชทได้เลย ระบบจะเก็บให้อัตโนมัติ"


def build_command_specs(handlers: CommandHandlers) -> list[CommandSpec]:
    return [
        CommandSpec("help", ("h", "วิธีใช้", "ช่วยเหลือ", "คำสั่ง"), handlers.help, "รายการคำสั่ง"),
        CommandSpec("plan", ("แผน", "แพ็กเกจ", "สถานะแพ็กเกจ", "package"), handlers.plan, "ดูแผนและโควต้า"),
        CommandSpec("upgrade", ("อัพเกรด", "อัปเกรด", "สมัคร"), handlers.upgrade, "อัพเกรดแผน"),
        CommandSpec("storage", ("พื้นที่", "พื้นที่เหลือเท่าไร"), handlers.storage_status, "พื้นที่จัดเก็บ"),
        CommandSpec("task", ("งาน", "สร้างงาน", "newtask"), handlers.create_task, "สร้างงาน"),
        CommandSpec("assign", ("มอบหมาย",), handlers.assign_task, "มอบหมายงาน"),
        CommandSpec("mytasks", ("tasks", "งานของฉัน"), handlers.my_tasks, "งานของฉัน"),
        CommandSpec("alltasks", ("งานทั้งหมด",), handlers.all_tasks, "งานทั้งหมด"),
        CommandSpec("work", ("สรุปงานของ",), handlers.user_work, "สรุปงานของสมาชิก"),
        CommandSpec("summary", ("sum", "today", "สรุป", "สรุปวันนี้"), handlers.summary_today, "สรุปแชทวันนี้"),
        CommandSpec("yesterday", ("สรุปเมื่อวาน",), handlers.summary_yesterday, "สรุปแชทเมื่อวาน"),
        CommandSpec("topic", ("สรุปเรื่อง",), handlers.summary_topic, "สรุปตามหัวข้อ"),
        CommandSpec("remind", ("เตือน", "เตือนพรุ่งนี้"), handlers.remind_tomorrow, "เตือนพรุ่งนี้"),
        CommandSpec("daily", ("เตือนทุกวัน",), handlers.remind_daily, "เตือนทุกวัน"),
        CommandSpec("note", ("บันทึก", "บันทึกว่า", "จำ"), handlers.save_note, "บันทึกความจำ"),
        CommandSpec("agreements", ("ข้อตกลง", "เราตกลงอะไร"), handlers.agreements, "ดูข้อตกลง"),
        CommandSpec("who", ("ใครรับผิดชอบ",), handlers.responsibility, "ใครรับผิดชอบ"),
        CommandSpec("files", ("ไฟล์", "เปิดไฟล์ล่าสุด"), handlers.recent_files, "ไฟล์ล่าสุด"),
        CommandSpec("file", ("find", "หาไฟล์"), handlers.find_file, "ค้นหาไฟล์"),
        CommandSpec("delfile", ("ลบไฟล์",), handlers.delete_file, "ลบไฟล์"),
        CommandSpec("save", ("เก็บไฟล์", "เก็บไฟล์นี้"), handlers.store_file_hint, "วิธีเก็บไฟล์"),
    ]


def build_command_router(
    ai: AIService,
    storage: Optional[StorageProvider] = None,
    checkout: Optional[StripeProvider] = None,
) -> CommandRouter:
    handlers = CommandHandlers(ai, storage, checkout)
    return CommandRouter(CommandRegistry(build_command_specs(handlers)), handlers.chat)
