"""Shared HTTP error mapping for messaging routes."""

from fastapi import HTTPException

from skillchat.services.errors import MessagingError

_STATUS_BY_CODE = {
    "validation_error": 400,
    "forbidden": 403,
    "not_found": 404,
    "membership_repair_failed": 503,
}


def http_error(exc: MessagingError) -> HTTPException:
    """Translate a domain error into an HTTP error carrying its code."""

    return HTTPException(
        status_code=_STATUS_BY_CODE.get(exc.code, 400),
        detail={"message": exc.message, "code": exc.code},
    )
