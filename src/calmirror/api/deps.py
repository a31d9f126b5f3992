"""FastAPI dependencies: the service graph and the cron bearer guard."""

from __future__ import annotations

import hmac
import logging

from fastapi import Depends, Header, HTTPException, Request

from calmirror.services import Services

logger = logging.getLogger(__name__)

_BEARER_PREFIX = "Bearer "


def get_services(request: Request) -> Services:
    """Return the ``Services`` attached to the running app.

    Raises RuntimeError when the lifespan has not wired them yet.
    """
    services = getattr(request.app.state, "services", None)
    if services is None:
        raise RuntimeError("Services not initialized")
    return services


def require_cron_secret(
    authorization: str | None = Header(default=None),
    services: Services = Depends(get_services),
) -> None:
    """Reject the request unless it carries ``Authorization: Bearer <cron_secret>``.

    With no secret configured every request is rejected.
    """
    expected = services.config.server.cron_secret
    if not expected:
        logger.warning("Cron endpoint called but no cron secret is configured")
        raise HTTPException(status_code=401, detail="Unauthorized")
    if not authorization or not authorization.startswith(_BEARER_PREFIX):
        raise HTTPException(status_code=401, detail="Unauthorized")
    supplied = authorization[len(_BEARER_PREFIX) :].strip()
    if not hmac.compare_digest(supplied.encode(), expected.encode()):
        raise HTTPException(status_code=401, detail="Unauthorized")
