from fastapi import Depends, FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import text
from sqlalchemy.orm import Session

from app.config import settings
from app.database import get_db
from app.logging_config import get_logger, setup_logging
from app.routers import conversations, media, webhook
from app.services.auto_reply_service import drain_auto_replies

setup_logging(settings.log_level, sql_echo=settings.debug)

logger = get_logger("main")

app = FastAPI(
    title="Inbox API",
    description="WhatsApp inbox ingestion and auto-reply service",
    version="0.1.0",
)

cors_origins = [origin.strip() for origin in settings.cors_allow_origins.split(",") if origin.strip()]
if not cors_origins:
    cors_origins = ["*"]

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(webhook.router)
app.include_router(conversations.router)
app.include_router(media.router)


@app.on_event("shutdown")
async def drain_pending_replies() -> None:
    await drain_auto_replies(timeout=settings.completion_timeout_seconds + settings.http_timeout_seconds)
    logger.info("Shutdown complete")


@app.get("/health")
async def health():
    return {"status": "ok"}


@app.get("/db-check")
def db_check(db: Session = Depends(get_db)):
    db.execute(text("SELECT 1"))
    return {"status": "ok"}
