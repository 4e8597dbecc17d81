"""Bearer-secret check for the periodic job endpoints.

A scheduler calls the ``/jobs/*`` endpoints with
``Authorization: Bearer <KOYA_CRON_SECRET>``. The same secret guards the
manual inbound retry and the ``/webhooks/{id}/*`` routes. When no secret is
configured the check is skipped, which is only allowed outside production.
"""

from __future__ import annotations

import hmac
from typing import Annotated

from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from koya.exceptions import AuthenticationError
from koya.logging import get_logger
from koya.service import WebhookService

from .deps import get_service

logger = get_logger(__name__)

# Security scheme for OpenAPI docs
security = HTTPBearer(auto_error=False)


def check_cron_secret(expected: str | None, provided: str | None) -> None:
    """Raise AuthenticationError unless ``provided`` matches ``expected``.

    Does nothing when ``expected`` is empty.
    """
    if not expected:
        return
    if not provided:
        raise AuthenticationError("Missing bearer token")
    if not hmac.compare_digest(expected.encode("utf-8"), provided.encode("utf-8")):
        logger.warning("job_auth_rejected")
        raise AuthenticationError("Invalid bearer token")


async def require_cron_secret(
    service: Annotated[WebhookService, Depends(get_service)],
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(security)],
) -> None:
    """Dependency guarding job and per-endpoint webhook routes."""
    if not service.settings.is_job_auth_enabled:
        return
    check_cron_secret(
        service.settings.cron_secret,
        credentials.credentials if credentials else None,
    )


CronAuth = Depends(require_cron_secret)
