"""Google Calendar v3 client.

``CalendarProvider`` is the provider contract consumed by the webhook manager
and the sync engine.  ``GoogleCalendarProvider`` implements it over raw REST
calls with ``httpx``: every request obtains its bearer token from the
:class:`~calmirror.tokens.TokenManager`, retries once with a forced refresh on
401, and runs inside :func:`~calmirror.retry.with_retry` so transient
failures are classified and retried with backoff.
"""

from __future__ import annotations

import abc
import asyncio
import logging
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from typing import Any
from urllib.parse import quote

import httpx

from calmirror.errors import (
    CalendarSyncError,
    ErrorKind,
    ProviderHTTPError,
    SyncTokenExpiredError,
    parse_retry_after,
)
from calmirror.models import Account, ChannelInfo, EventPage, ProviderCalendar, ProviderEvent
from calmirror.retry import DEFAULT_RETRY_POLICY, RetryPolicy, Sleep, with_retry
from calmirror.tokens import TokenManager

logger = logging.getLogger(__name__)

GOOGLE_CALENDAR_API_BASE_URL = "https://www.googleapis.com/calendar/v3"
_PAGE_SIZE = 250


def google_rfc3339(value: datetime) -> str:
    normalized = value if value.tzinfo is not None else value.replace(tzinfo=UTC)
    return normalized.astimezone(UTC).isoformat().replace("+00:00", "Z")


def _parse_expiration_millis(value: Any) -> datetime | None:
    if isinstance(value, bool):
        return None
    try:
        millis = int(value)
    except (TypeError, ValueError):
        return None
    return datetime.fromtimestamp(millis / 1000, tz=UTC)


def _safe_google_error_message(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        payload = None

    if isinstance(payload, dict):
        error_payload = payload.get("error")
        if isinstance(error_payload, dict):
            message = error_payload.get("message")
            if isinstance(message, str) and message.strip():
                return " ".join(message.split())[:200]
        if isinstance(error_payload, str) and error_payload.strip():
            return " ".join(error_payload.split())[:200]

    raw_text = response.text.strip()
    if raw_text:
        return " ".join(raw_text.split())[:200]
    return "Request failed without an error payload"


class CalendarProvider(abc.ABC):
    """Calendar operations the sync core needs from a provider."""

    @abc.abstractmethod
    async def list_calendars(self, account: Account) -> list[ProviderCalendar]:
        """Return the account's calendar list."""
        ...

    @abc.abstractmethod
    async def list_events(
        self,
        account: Account,
        *,
        calendar_id: str,
        sync_token: str | None = None,
        time_min: datetime | None = None,
        time_max: datetime | None = None,
    ) -> EventPage:
        """Return all changes since *sync_token*, or all events in the window.

        Raises ``SyncTokenExpiredError`` when the cursor is no longer valid.
        """
        ...

    @abc.abstractmethod
    async def create_event(
        self, account: Account, *, calendar_id: str, body: dict[str, Any]
    ) -> ProviderEvent: ...

    @abc.abstractmethod
    async def update_event(
        self, account: Account, *, calendar_id: str, event_id: str, body: dict[str, Any]
    ) -> ProviderEvent: ...

    @abc.abstractmethod
    async def delete_event(self, account: Account, *, calendar_id: str, event_id: str) -> None:
        """Delete an event; an already-deleted event counts as success."""
        ...

    @abc.abstractmethod
    async def open_channel(
        self,
        account: Account,
        *,
        calendar_id: str,
        channel_id: str,
        address: str,
        expiration: datetime,
    ) -> ChannelInfo:
        """Subscribe *address* to change notifications for *calendar_id*."""
        ...

    @abc.abstractmethod
    async def close_channel(self, account: Account, *, channel_id: str, resource_id: str) -> None:
        """Stop a push channel."""
        ...

    async def check_access(self, account: Account) -> bool:
        """Return True when the account's credentials can read its calendar list."""
        try:
            await self.list_calendars(account)
        except CalendarSyncError as exc:
            logger.warning("Account validation failed for %s: %s", account.id, exc.kind)
            return False
        return True


class GoogleCalendarProvider(CalendarProvider):
    """Google Calendar REST provider with token refresh and retry."""

    def __init__(
        self,
        token_manager: TokenManager,
        http_client: httpx.AsyncClient,
        *,
        retry_policy: RetryPolicy = DEFAULT_RETRY_POLICY,
        sleep: Sleep = asyncio.sleep,
        base_url: str = GOOGLE_CALENDAR_API_BASE_URL,
    ) -> None:
        self._tokens = token_manager
        self._http_client = http_client
        self._retry_policy = retry_policy
        self._sleep = sleep
        self._base_url = base_url.rstrip("/")

    # ------------------------------------------------------------------
    # Request helpers
    # ------------------------------------------------------------------

    async def _send_with_bearer(
        self,
        account: Account,
        *,
        method: str,
        url: str,
        params: dict[str, Any] | None,
        json_body: dict[str, Any] | None,
    ) -> httpx.Response:
        session = await self._tokens.get_client(account)
        response = await self._http_client.request(
            method, url, params=params, json=json_body, headers=session.auth_headers()
        )
        if response.status_code == 401:
            session = await self._tokens.refresh(account)
            response = await self._http_client.request(
                method, url, params=params, json=json_body, headers=session.auth_headers()
            )
        return response

    async def _request(
        self,
        account: Account,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json_body: dict[str, Any] | None = None,
        ok_statuses: frozenset[int] = frozenset(),
        on_status: Callable[[httpx.Response], None] | None = None,
    ) -> httpx.Response:
        """Send one API call with retries.

        Statuses in *ok_statuses* are returned as-is; *on_status* may raise a
        more specific error before the generic ``ProviderHTTPError``.
        """
        url = f"{self._base_url}{path if path.startswith('/') else '/' + path}"

        async def attempt() -> httpx.Response:
            response = await self._send_with_bearer(
                account, method=method, url=url, params=params, json_body=json_body
            )
            if 200 <= response.status_code < 300 or response.status_code in ok_statuses:
                return response
            if on_status is not None:
                on_status(response)
            raise ProviderHTTPError(
                status_code=response.status_code,
                message=_safe_google_error_message(response),
                retry_after=parse_retry_after(response.headers.get("Retry-After")),
            )

        def log_retry(error: CalendarSyncError, attempt_number: int) -> None:
            logger.warning(
                "Google API %s %s failed (%s), retrying (attempt %d/%d)",
                method,
                path,
                error.kind,
                attempt_number,
                self._retry_policy.max_attempts,
            )

        return await with_retry(
            attempt, self._retry_policy, on_retry=log_retry, sleep=self._sleep
        )

    async def _request_json(self, account: Account, method: str, path: str, **kwargs: Any) -> dict:
        response = await self._request(account, method, path, **kwargs)
        if response.status_code == 204 or not response.content:
            return {}
        try:
            payload = response.json()
        except ValueError as exc:
            raise CalendarSyncError(
                "Google Calendar API returned invalid JSON for a successful response",
                kind=ErrorKind.UNKNOWN,
                retryable=False,
                status_code=response.status_code,
            ) from exc
        if not isinstance(payload, dict):
            raise CalendarSyncError(
                "Google Calendar API returned an unexpected JSON payload shape",
                kind=ErrorKind.UNKNOWN,
                retryable=False,
                status_code=response.status_code,
            )
        return payload

    async def _paginate(
        self,
        fetch_page: Callable[[str | None], Awaitable[dict[str, Any]]],
    ) -> tuple[list[dict[str, Any]], str | None]:
        items: list[dict[str, Any]] = []
        next_sync_token: str | None = None
        page_token: str | None = None
        while True:
            payload = await fetch_page(page_token)
            page_items = payload.get("items")
            if isinstance(page_items, list):
                items.extend(item for item in page_items if isinstance(item, dict))
            candidate = payload.get("nextSyncToken")
            if isinstance(candidate, str) and candidate.strip():
                next_sync_token = candidate.strip()
            page_token = payload.get("nextPageToken")
            if not isinstance(page_token, str) or not page_token:
                break
        return items, next_sync_token

    # ------------------------------------------------------------------
    # CalendarProvider
    # ------------------------------------------------------------------

    async def list_calendars(self, account: Account) -> list[ProviderCalendar]:
        async def fetch_page(page_token: str | None) -> dict[str, Any]:
            params: dict[str, Any] = {"maxResults": _PAGE_SIZE}
            if page_token:
                params["pageToken"] = page_token
            return await self._request_json(
                account, "GET", "/users/me/calendarList", params=params
            )

        items, _ = await self._paginate(fetch_page)
        return [
            ProviderCalendar.model_validate(item)
            for item in items
            if isinstance(item.get("id"), str)
        ]

    async def list_events(
        self,
        account: Account,
        *,
        calendar_id: str,
        sync_token: str | None = None,
        time_min: datetime | None = None,
        time_max: datetime | None = None,
    ) -> EventPage:
        base_params: dict[str, Any] = {"singleEvents": True, "maxResults": _PAGE_SIZE}
        if sync_token:
            base_params["syncToken"] = sync_token
        else:
            # The window fetch seeds the next cursor; orderBy is not allowed on it.
            if time_min is not None:
                base_params["timeMin"] = google_rfc3339(time_min)
            if time_max is not None:
                base_params["timeMax"] = google_rfc3339(time_max)

        def reject_expired_cursor(response: httpx.Response) -> None:
            # 410 Gone: the sync token expired; caller must fall back to a window fetch.
            if response.status_code == 410:
                raise SyncTokenExpiredError(
                    f"Sync token expired for calendar '{calendar_id}'; full re-sync required"
                )

        async def fetch_page(page_token: str | None) -> dict[str, Any]:
            params = dict(base_params)
            if page_token:
                params["pageToken"] = page_token
            return await self._request_json(
                account,
                "GET",
                f"/calendars/{quote(calendar_id, safe='')}/events",
                params=params,
                on_status=reject_expired_cursor,
            )

        items, next_sync_token = await self._paginate(fetch_page)
        events = [
            ProviderEvent.model_validate(item)
            for item in items
            if isinstance(item.get("id"), str) and item["id"].strip()
        ]
        return EventPage(events=events, next_sync_token=next_sync_token)

    async def create_event(
        self, account: Account, *, calendar_id: str, body: dict[str, Any]
    ) -> ProviderEvent:
        payload = await self._request_json(
            account,
            "POST",
            f"/calendars/{quote(calendar_id, safe='')}/events",
            json_body=body,
        )
        return ProviderEvent.model_validate(payload)

    async def update_event(
        self, account: Account, *, calendar_id: str, event_id: str, body: dict[str, Any]
    ) -> ProviderEvent:
        payload = await self._request_json(
            account,
            "PATCH",
            f"/calendars/{quote(calendar_id, safe='')}/events/{quote(event_id, safe='')}",
            json_body=body,
        )
        return ProviderEvent.model_validate(payload)

    async def delete_event(self, account: Account, *, calendar_id: str, event_id: str) -> None:
        response = await self._request(
            account,
            "DELETE",
            f"/calendars/{quote(calendar_id, safe='')}/events/{quote(event_id, safe='')}",
            ok_statuses=frozenset({404, 410}),
        )
        if response.status_code in (404, 410):
            logger.debug(
                "delete_event: event '%s' not found (already deleted); treating as success",
                event_id,
            )

    async def open_channel(
        self,
        account: Account,
        *,
        calendar_id: str,
        channel_id: str,
        address: str,
        expiration: datetime,
    ) -> ChannelInfo:
        payload = await self._request_json(
            account,
            "POST",
            f"/calendars/{quote(calendar_id, safe='')}/events/watch",
            json_body={
                "id": channel_id,
                "type": "web_hook",
                "address": address,
                "expiration": str(int(expiration.timestamp() * 1000)),
            },
        )
        resource_id = payload.get("resourceId")
        if not isinstance(resource_id, str) or not resource_id:
            raise CalendarSyncError(
                "Google watch response is missing resourceId",
                kind=ErrorKind.UNKNOWN,
                retryable=False,
            )
        return ChannelInfo(
            channel_id=str(payload.get("id") or channel_id),
            resource_id=resource_id,
            expiration=_parse_expiration_millis(payload.get("expiration")),
        )

    async def close_channel(self, account: Account, *, channel_id: str, resource_id: str) -> None:
        await self._request(
            account,
            "POST",
            "/channels/stop",
            json_body={"id": channel_id, "resourceId": resource_id},
            ok_statuses=frozenset({404}),
        )
