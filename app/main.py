from fastapi import Depends, FastAPI
from sqlalchemy import text
from sqlalchemy.orm import Session

from app.config import settings
from app.database import get_db, init_db
from app.logging_config import setup_logging
from app.models import Organization, Payment
from app.routers import line_webhook, media, payment

setup_logging(settings.log_level)

app = FastAPI(
    title="Arkai API",
    description="Backend service for the Arkai LINE work assistant",
    version="0.1.0",
)

app.include_router(line_webhook.router)
app.include_router(payment.router)
app.include_router(media.router)


@app.on_event("startup")
def create_tables() -> None:
    init_db()


@app.get("/health")
async def health():
    return {"status": "ok"}


@app.get("/db-check")
def db_check(db: Session = Depends(get_db)):
    db.execute(text("SELECT 1"))
    return {
        "status": "ok",
        "organizations": db.query(Organization).count(),
        "payments": db.query(Payment).count(),
    }
