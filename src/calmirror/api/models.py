"""Response envelopes shared by the HTTP endpoints."""

from __future__ import annotations

from pydantic import BaseModel, Field

from calmirror.models import TokenRefreshSummary, WebhookRefreshResult, WebhookStats


class ErrorDetail(BaseModel):
    """Structured error payload."""

    code: str
    message: str
    retryable: bool | None = None


class ErrorResponse(BaseModel):
    """Standard error response envelope."""

    error: ErrorDetail


class MessageResponse(BaseModel):
    message: str


class NotificationResponse(BaseModel):
    message: str
    events_processed: int = Field(default=0, serialization_alias="eventsProcessed")


class TokenRefreshResponse(BaseModel):
    message: str
    results: TokenRefreshSummary


class WebhookStatsDelta(BaseModel):
    before: WebhookStats
    after: WebhookStats


class WebhookRefreshResponse(BaseModel):
    message: str
    results: WebhookRefreshResult
    stats: WebhookStatsDelta
