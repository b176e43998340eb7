from app.services.signature_service import verify_signature
from app.services.tenant_service import resolve_org
from app.services.usage_service import (
    check_and_consume,
    record,
)

__all__ = [
    "verify_signature",
    "resolve_org",
    "check_and_consume",
    "record",
]
