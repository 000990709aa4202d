"""FastAPI application entrypoint."""

from contextlib import asynccontextmanager
import logging
from pathlib import Path

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.staticfiles import StaticFiles

from skillchat.config import get_settings
from skillchat.dependencies import open_messaging_service
from skillchat.logging_config import configure_logging
from skillchat.realtime.gateway import RealtimeGateway
from skillchat.realtime.registry import ConnectionRegistry
from skillchat.routers import attachments, conversations, messages, realtime

logger = logging.getLogger(__name__)


def _warm_backend_state() -> None:
    """Open the configured backend once so connection problems surface at start."""

    try:
        with open_messaging_service() as service:
            service.active_conversation_ids("__warmup__")
    except Exception:
        logger.exception("Backend warm-up failed; continuing without startup pre-warm.")


@asynccontextmanager
async def lifespan(_: FastAPI):
    configure_logging()
    if settings.attachment_backend == "local":
        Path(settings.attachment_dir).mkdir(parents=True, exist_ok=True)
    _warm_backend_state()
    yield


settings = get_settings()

app = FastAPI(title=settings.app_name, version="0.1.0", lifespan=lifespan)
app.state.gateway = RealtimeGateway(
    ConnectionRegistry(),
    open_messaging_service,
    call_timeout=settings.realtime_call_timeout_seconds,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(conversations.router, tags=["conversations"])
app.include_router(messages.router, tags=["messages"])
app.include_router(attachments.router, tags=["attachments"])
app.include_router(realtime.router, tags=["realtime"])

if settings.attachment_backend == "local":
    app.mount("/uploads", StaticFiles(directory=settings.attachment_dir, check_dir=False), name="uploads")


@app.get("/health")
def health() -> dict[str, str]:
    """Simple health check endpoint."""

    return {"status": "ok"}
