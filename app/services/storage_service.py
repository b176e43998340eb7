"""File storage collaborator and per-organization file bookkeeping."""

import hashlib
import hmac
import re
import time
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional
from urllib.parse import quote
from uuid import UUID

from sqlalchemy.orm import Session

from app.config import settings
from app.logging_config import get_logger
from app.models import Organization, StoredFile
from app.services import usage_service
from app.services.search import phrase_then_words
from app.services.usage_service import Resource

logger = get_logger("storage_service")

RECENT_FILES_LIMIT = 5


class StorageProvider(ABC):
    """Byte storage backend. Keys are ``{org_id}/{timestamp}-{file_name}``."""

    @abstractmethod
    def upload(self, key: str, content: bytes, content_type: str) -> str:
        """Store content and return a URL for it."""

    @abstractmethod
    def download(self, key: str) -> bytes:
        pass

    @abstractmethod
    def delete(self, key: str) -> None:
        pass

    @abstractmethod
    def presigned_url(self, key: str, expires_in: Optional[int] = None) -> str:
        pass


def _normalize_media_path(path: str) -> str:
    normalized = (path or "").strip().lstrip("/")
    return normalized.replace("\\", "/")


def _sign_media_path(path: str, expires: int, secret: str) -> str:
    payload = f"{path}:{expires}".encode("utf-8")
    return hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()


class LocalStorageProvider(StorageProvider):
    """Stores files on local disk and serves them through signed /media URLs."""

    def __init__(
        self,
        base_dir: str,
        signing_secret: Optional[str],
        public_base_url: str,
        ttl_seconds: int = 3600,
    ):
        self.base_dir = Path(base_dir)
        self.signing_secret = signing_secret
        self.public_base_url = public_base_url.rstrip("/")
        self.ttl_seconds = ttl_seconds

    def _path_for(self, key: str) -> Path:
        base = self.base_dir.resolve()
        target = (base / _normalize_media_path(key)).resolve()
        if base not in target.parents:
            raise ValueError(f"Invalid storage key: {key}")
        return target

    def upload(self, key: str, content: bytes, content_type: str) -> str:
        target = self._path_for(key)
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(content)
        return self.presigned_url(key)

    def download(self, key: str) -> bytes:
        return self._path_for(key).read_bytes()

    def delete(self, key: str) -> None:
        target = self._path_for(key)
        if target.exists():
            target.unlink()

    def presigned_url(self, key: str, expires_in: Optional[int] = None) -> str:
        normalized_path = _normalize_media_path(key)
        quoted_path = quote(normalized_path, safe="/")
        if not self.signing_secret:
            logger.error("MEDIA_SIGNING_SECRET not configured; returning unsigned path")
            return f"{self.public_base_url}/media/{quoted_path}"
        ttl = expires_in if expires_in is not None else self.ttl_seconds
        expires = int(time.time()) + max(int(ttl), 60)
        signature = _sign_media_path(normalized_path, expires, self.signing_secret)
        return f"{self.public_base_url}/media/{quoted_path}?expires={expires}&sig={signature}"

    def verify_signed_path(self, relative_path: str, expires: int, signature: str) -> bool:
        if not self.signing_secret or not signature:
            return False
        if expires < int(time.time()):
            return False
        expected = _sign_media_path(_normalize_media_path(relative_path), expires, self.signing_secret)
        return hmac.compare_digest(expected, signature)

    def resolve_path(self, relative_path: str) -> Optional[Path]:
        try:
            target = self._path_for(relative_path)
        except ValueError:
            return None
        return target if target.is_file() else None


def build_storage_provider() -> LocalStorageProvider:
    return LocalStorageProvider(
        settings.media_storage_dir,
        settings.media_signing_secret,
        settings.app_url,
        settings.media_url_ttl_seconds,
    )


def generate_key(org_id: UUID, file_name: str, now_ms: Optional[int] = None) -> str:
    timestamp = now_ms if now_ms is not None else int(time.time() * 1000)
    sanitized = re.sub(r"[^a-zA-Z0-9.-]", "_", file_name)
    return f"{org_id}/{timestamp}-{sanitized}"


def format_bytes(size: int) -> str:
    if size <= 0:
        return "0 Bytes"
    units = ["Bytes", "KB", "MB", "GB", "TB"]
    value = float(size)
    index = 0
    while value >= 1024 and index < len(units) - 1:
        value /= 1024
        index += 1
    return f"{round(value, 2):g} {units[index]}"


def save_upload(
    db: Session,
    provider: StorageProvider,
    org: Organization,
    content: bytes,
    file_name: str,
    content_type: str,
) -> str:
    """Quota-check, store and record an uploaded file. Returns the chat reply."""
    size = len(content)
    if size > settings.max_upload_bytes:
        return f"❌ ไฟล์ใหญ่เกินไป (สูงสุด {settings.max_upload_bytes // (1024 * 1024)}MB)"

    decision = usage_service.check_and_consume(db, Resource.STORAGE, org, size)
    if not decision.allowed:
        return decision.message

    key = generate_key(org.id, file_name)
    url = provider.upload(key, content, content_type)
    db.add(
        StoredFile(
            org_id=org.id,
            storage_key=key,
            file_name=file_name,
            content_type=content_type,
            size_bytes=size,
        )
    )
    db.flush()
    usage_service.record(db, Resource.STORAGE, org, size)

    logger.info(
        "File stored",
        extra={"context": {"org_id": str(org.id), "key": key, "size_bytes": size}},
    )
    return f"📁 เก็บไฟล์สำเร็จ\nชื่อ: {file_name}\nขนาด: {size / 1024:.1f} KB\nลิงก์: {url}"


def list_recent_files(db: Session, org_id: UUID, limit: int = RECENT_FILES_LIMIT) -> list[StoredFile]:
    return (
        db.query(StoredFile)
        .filter(StoredFile.org_id == org_id)
        .order_by(StoredFile.created_at.desc())
        .limit(limit)
        .all()
    )


def find_files(db: Session, org_id: UUID, query: str, limit: int = 10) -> list[StoredFile]:
    return phrase_then_words(
        db.query(StoredFile).filter(StoredFile.org_id == org_id),
        StoredFile.file_name,
        query,
        StoredFile.created_at.desc(),
        limit,
    )


def delete_file(db: Session, provider: StorageProvider, org: Organization, stored: StoredFile) -> None:
    provider.delete(stored.storage_key)
    db.delete(stored)
    db.flush()
    usage_service.release_storage(db, org, stored.size_bytes or 0)
    logger.info("File deleted", extra={"context": {"org_id": str(org.id), "key": stored.storage_key}})


def count_files(db: Session, org_id: UUID) -> int:
    return db.query(StoredFile).filter(StoredFile.org_id == org_id).count()
