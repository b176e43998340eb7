"""Command routing: prefixed text to feature handlers, everything else to chat.

The alias table is built once from ``CommandSpec`` entries. Aliases are
normalized (NFKC, casefold, trailing colon stripped) at build time and at
dispatch time, so Thai and English surface forms resolve to the same handler.
"""

import unicodedata
from dataclasses import dataclass, field
from datetime import datetime
from types import MappingProxyType
from typing import Callable, Iterable, Optional
from uuid import UUID

from sqlalchemy.orm import Session

from app.database import utcnow
from app.errors import ArkaiError, ConfigurationError
from app.logging_config import get_logger
from app.models import Organization

logger = get_logger("command_router")

PREFIX = "/"
UNKNOWN_COMMAND_REPLY = "❓ ไม่รู้จักคำสั่งนี้ พิมพ์ /help เพื่อดูรายการคำสั่ง"
GENERIC_APOLOGY = "❌ ขออภัย เกิดข้อผิดพลาดชั่วคราว กรุณาลองใหม่อีกครั้ง"
CHAT_COMMAND = "chat"


class DuplicateAliasError(ConfigurationError):
    """Two commands claim the same alias."""


class CommandError(ArkaiError):
    """Handler failure with a message that is safe to show in the chat."""

    def __init__(self, user_message: str):
        self.user_message = user_message
        super().__init__(user_message)


@dataclass
class CommandContext:
    db: Session
    org: Organization
    source_type: str = "user"  # user, group, room
    user_id: Optional[str] = None
    group_id: Optional[str] = None
    is_mention: bool = False
    now: datetime = field(default_factory=utcnow)

    @property
    def is_group(self) -> bool:
        return self.source_type in ("group", "room")


Handler = Callable[[str, UUID, CommandContext], str]


@dataclass(frozen=True)
class CommandSpec:
    name: str
    aliases: tuple[str, ...]
    handler: Handler
    description: str = ""


@dataclass(frozen=True)
class CommandInvocation:
    command: str
    args: str
    org_id: UUID
    context: CommandContext


def normalize_token(token: str) -> str:
    return unicodedata.normalize("NFKC", token).strip().casefold().rstrip(":")


def parse_command(text: str) -> Optional[tuple[str, str]]:
    """Split prefixed text into (normalized token, argument string).

    Returns None when the text does not start with the prefix. A token glued to
    its argument with a colon (``/งาน:ส่งรายงาน``) is split at the colon.
    """
    stripped = text.strip()
    if not stripped.startswith(PREFIX):
        return None

    body = stripped[len(PREFIX) :].strip()
    if not body:
        return "", ""

    parts = body.split(None, 1)
    token = parts[0].replace("\uff1a", ":")
    args = parts[1].strip() if len(parts) > 1 else ""

    head, sep, tail = token.partition(":")
    if sep and tail.strip(":"):
        token = head
        args = f"{tail} {args}".strip()

    return normalize_token(token), args


class CommandRegistry:
    """Immutable reverse lookup from every alias to its command."""

    def __init__(self, specs: Iterable[CommandSpec]):
        commands: dict[str, CommandSpec] = {}
        aliases: dict[str, str] = {}
        for spec in specs:
            if spec.name in commands:
                raise DuplicateAliasError(f"Command {spec.name!r} registered twice")
            commands[spec.name] = spec
            for alias in (spec.name, *spec.aliases):
                key = normalize_token(alias)
                owner = aliases.get(key)
                if owner is not None and owner != spec.name:
                    raise DuplicateAliasError(f"Alias {alias!r} registered for both {owner!r} and {spec.name!r}")
                aliases[key] = spec.name
        self._commands = MappingProxyType(commands)
        self._aliases = MappingProxyType(aliases)

    def lookup(self, token: str) -> Optional[CommandSpec]:
        name = self._aliases.get(normalize_token(token))
        return self._commands[name] if name else None

    def __contains__(self, token: str) -> bool:
        return self.lookup(token) is not None


class CommandRouter:
    def __init__(self, registry: CommandRegistry, chat_handler: Handler):
        self.registry = registry
        self.chat_handler = chat_handler

    def dispatch(self, text: str, org: Organization, context: CommandContext) -> Optional[str]:
        """Route one text message and return the reply, or None when nothing should be sent."""
        parsed = parse_command(text)

        if parsed is None:
            if context.is_group and not context.is_mention:
                return None
            invocation = CommandInvocation(CHAT_COMMAND, text.strip(), org.id, context)
            return self._run_handler(invocation, self.chat_handler)

        token, args = parsed
        spec = self.registry.lookup(token) if token else None
        if spec is None:
            logger.info(f"Unknown command: {token!r}", extra={"context": {"org_id": str(org.id)}})
            return UNKNOWN_COMMAND_REPLY

        return self._run_handler(CommandInvocation(spec.name, args, org.id, context), spec.handler)

    def _run_handler(self, invocation: CommandInvocation, handler: Handler) -> str:
        try:
            return handler(invocation.args, invocation.org_id, invocation.context)
        except CommandError as e:
            logger.info(f"Command {invocation.command} rejected: {e.user_message}")
            return e.user_message
        except Exception as e:
            logger.error(
                f"Command {invocation.command} failed: {e}",
                exc_info=True,
                extra={
                    "context": {
                        "org_id": str(invocation.org_id),
                        "command": invocation.command,
                        "error_type": type(e).__name__,
                    }
                },
            )
            return GENERIC_APOLOGY
