"""FastAPI dependencies wiring the messaging service and realtime gateway."""

from collections.abc import Iterator
from contextlib import contextmanager

from fastapi import Depends, Request

from skillchat.config import Settings, get_settings
from skillchat.realtime.gateway import RealtimeGateway
from skillchat.services.attachments import AttachmentUploader, get_attachment_uploader
from skillchat.services.messaging import MessagingService
from skillchat.stores.factory import open_backend


@contextmanager
def open_messaging_service(settings: Settings | None = None) -> Iterator[MessagingService]:
    """Yield a service bound to one backend unit of work."""

    settings = settings or get_settings()
    with open_backend(settings) as (store, users):
        yield MessagingService(store, users, default_page_size=settings.message_page_size)


def get_messaging_service(settings: Settings = Depends(get_settings)) -> Iterator[MessagingService]:
    """Yield a request-scoped messaging service."""

    with open_messaging_service(settings) as service:
        yield service


def get_gateway(request: Request) -> RealtimeGateway:
    return request.app.state.gateway


def get_uploader(settings: Settings = Depends(get_settings)) -> AttachmentUploader:
    return get_attachment_uploader(settings)
