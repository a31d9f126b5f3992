"""OAuth access token lifecycle for linked Google accounts.

``TokenManager`` keeps one :class:`AuthorizedSession` per account.  A session
whose token expires within the safety margin is refreshed before it is handed
out, and concurrent refreshes for one account collapse into a single request
to the token endpoint.

The session cache and the in-flight map are process-local.  Several
processes may each refresh the same account; the margin keeps that harmless.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import Any

import httpx

from calmirror.core.keyed import SingleFlight
from calmirror.core.metrics import sync_metrics
from calmirror.core.telemetry import sync_span
from calmirror.errors import TokenRefreshError, redact_credentials
from calmirror.models import Account, FailureDetail, TokenRefreshSummary
from calmirror.retry import run_in_batches
from calmirror.storage import SyncStore

logger = logging.getLogger(__name__)

GOOGLE_OAUTH_TOKEN_URL = "https://oauth2.googleapis.com/token"

REFRESH_MARGIN = timedelta(minutes=5)
BATCH_REFRESH_HORIZON = timedelta(minutes=30)
BATCH_REFRESH_SIZE = 5
_DEFAULT_EXPIRES_IN_SECONDS = 3600

Clock = Callable[[], datetime]


def _utcnow() -> datetime:
    return datetime.now(UTC)


class AuthorizedSession:
    """Bearer credentials for one account, updated in place on refresh."""

    def __init__(
        self,
        account_id: str,
        access_token: str | None,
        expires_at: datetime | None,
    ) -> None:
        self.account_id = account_id
        self.access_token = access_token
        self.expires_at = expires_at

    def needs_refresh(self, now: datetime, margin: timedelta = REFRESH_MARGIN) -> bool:
        if not self.access_token or self.expires_at is None:
            return True
        return self.expires_at - now < margin

    def auth_headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.access_token}"}

    def __repr__(self) -> str:
        return (
            f"AuthorizedSession(account_id={self.account_id!r}, "
            f"access_token=<REDACTED>, expires_at={self.expires_at!r})"
        )


def _coerce_expires_in_seconds(value: Any) -> int:
    if isinstance(value, bool):
        return _DEFAULT_EXPIRES_IN_SECONDS
    if isinstance(value, int | float):
        return int(value) if value > 0 else _DEFAULT_EXPIRES_IN_SECONDS
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip()) or _DEFAULT_EXPIRES_IN_SECONDS
    return _DEFAULT_EXPIRES_IN_SECONDS


def _token_error_message(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        payload = None

    if isinstance(payload, dict):
        description = payload.get("error_description")
        if isinstance(description, str) and description.strip():
            return redact_credentials(" ".join(description.split())[:200])
        error = payload.get("error")
        if isinstance(error, str) and error.strip():
            return redact_credentials(" ".join(error.split())[:200])

    raw_text = response.text.strip()
    if raw_text:
        return redact_credentials(" ".join(raw_text.split())[:200])
    return "Request failed without an error payload"


class TokenManager:
    """Hands out fresh access tokens and refreshes them exactly once at a time.

    Parameters
    ----------
    store:
        Persistence for refreshed tokens.
    client_id, client_secret:
        OAuth client credentials used for the refresh-token grant.
    http_client:
        Shared ``httpx.AsyncClient``.
    clock:
        Returns the current aware UTC time; injectable for tests.
    """

    def __init__(
        self,
        store: SyncStore,
        *,
        client_id: str,
        client_secret: str,
        http_client: httpx.AsyncClient,
        clock: Clock = _utcnow,
        margin: timedelta = REFRESH_MARGIN,
    ) -> None:
        self._store = store
        self._client_id = client_id
        self._client_secret = client_secret
        self._http_client = http_client
        self._clock = clock
        self._margin = margin
        self._sessions: dict[str, AuthorizedSession] = {}
        self._refreshes: SingleFlight[str, AuthorizedSession] = SingleFlight()

    async def get_client(self, account: Account) -> AuthorizedSession:
        """Return an authorized session for *account*, refreshing it when near expiry."""
        session = self._sessions.get(account.id)
        if session is None:
            session = AuthorizedSession(account.id, account.access_token, account.token_expires_at)
            self._sessions[account.id] = session
        elif self._account_is_newer(account, session):
            # Another process refreshed this account; adopt its token.
            session.access_token = account.access_token
            session.expires_at = account.token_expires_at

        if session.needs_refresh(self._clock(), self._margin):
            return await self.refresh(account)
        return session

    async def refresh(self, account: Account) -> AuthorizedSession:
        """Refresh *account* now, joining an in-flight refresh when there is one.

        Raises
        ------
        TokenRefreshError
            If the token endpoint rejects the grant or the result cannot be
            stored.  The cached session is evicted.
        """
        return await self._refreshes.do(account.id, lambda: self._refresh_access_token(account))

    def invalidate(self, account_id: str) -> None:
        """Drop the cached session for *account_id*."""
        if self._sessions.pop(account_id, None) is not None:
            logger.info("Token cache cleared for account %s", account_id)

    def clear_cache(self) -> None:
        self._sessions.clear()
        logger.info("Token cache cleared for all accounts")

    def cached_session(self, account_id: str) -> AuthorizedSession | None:
        return self._sessions.get(account_id)

    @sync_span("refresh_tokens")
    async def refresh_expiring_accounts(self) -> TokenRefreshSummary:
        """Refresh every account whose token expires within the batch horizon.

        Accounts are refreshed five at a time; one account's failure never
        affects the others.
        """
        deadline = self._clock() + BATCH_REFRESH_HORIZON
        accounts = await self._store.list_accounts_expiring_before(deadline)
        if not accounts:
            logger.info("No expiring tokens found")
            return TokenRefreshSummary()

        logger.info("Found %d expiring token(s)", len(accounts))
        result = await run_in_batches(
            accounts,
            self.refresh,
            batch_size=BATCH_REFRESH_SIZE,
            pause=0,
        )

        summary = TokenRefreshSummary(
            total=len(accounts),
            refreshed=len(result.successful),
            failed=[
                FailureDetail(
                    id=failure.item.id,
                    error=redact_credentials(failure.error.message),
                    kind=str(failure.error.kind),
                )
                for failure in result.failed
            ],
        )
        logger.info(
            "Batch token refresh completed: total=%d refreshed=%d failed=%d",
            summary.total,
            summary.refreshed,
            len(summary.failed),
        )
        return summary

    # ------------------------------------------------------------------

    @staticmethod
    def _account_is_newer(account: Account, session: AuthorizedSession) -> bool:
        if not account.access_token or account.token_expires_at is None:
            return False
        if session.expires_at is None:
            return True
        return account.token_expires_at > session.expires_at

    async def _refresh_access_token(self, account: Account) -> AuthorizedSession:
        logger.info("Refreshing access token for account %s", account.id)
        try:
            session = await self._exchange_and_store(account)
        except Exception as exc:
            self._sessions.pop(account.id, None)
            sync_metrics.record_token_refresh(success=False)
            logger.error(
                "Failed to refresh access token for account %s: %s",
                account.id,
                redact_credentials(str(exc)),
            )
            if isinstance(exc, TokenRefreshError):
                raise
            raise TokenRefreshError(
                f"Token refresh failed: {redact_credentials(str(exc))}"
            ) from exc

        sync_metrics.record_token_refresh(success=True)
        logger.info("Access token refreshed for account %s", account.id)
        return session

    async def _exchange_and_store(self, account: Account) -> AuthorizedSession:
        if not account.refresh_token:
            raise TokenRefreshError(f"No refresh token available for account {account.id}")

        try:
            response = await self._http_client.post(
                GOOGLE_OAUTH_TOKEN_URL,
                data={
                    "client_id": self._client_id,
                    "client_secret": self._client_secret,
                    "refresh_token": account.refresh_token,
                    "grant_type": "refresh_token",
                },
                headers={"Accept": "application/json"},
            )
        except httpx.HTTPError as exc:
            raise TokenRefreshError(f"Google OAuth token refresh request failed: {exc}") from exc

        if response.status_code < 200 or response.status_code >= 300:
            raise TokenRefreshError(
                "Google OAuth token refresh failed "
                f"({response.status_code}): {_token_error_message(response)}",
                status_code=response.status_code,
            )

        try:
            payload = response.json()
        except ValueError as exc:
            raise TokenRefreshError("Google OAuth token endpoint returned invalid JSON") from exc

        if not isinstance(payload, dict):
            raise TokenRefreshError("Google OAuth token endpoint returned a non-object payload")

        access_token = payload.get("access_token")
        if not isinstance(access_token, str) or not access_token.strip():
            raise TokenRefreshError(
                "Google OAuth token response is missing a non-empty access_token"
            )
        access_token = access_token.strip()

        expires_at = self._clock() + timedelta(
            seconds=_coerce_expires_in_seconds(payload.get("expires_in"))
        )

        new_refresh_token = payload.get("refresh_token")
        if isinstance(new_refresh_token, str) and new_refresh_token.strip():
            new_refresh_token = new_refresh_token.strip()
        else:
            new_refresh_token = None

        await self._store.update_account_tokens(
            account.id,
            access_token=access_token,
            token_expires_at=expires_at,
            refresh_token=new_refresh_token,
        )

        account.access_token = access_token
        account.token_expires_at = expires_at
        if new_refresh_token is not None:
            account.refresh_token = new_refresh_token

        session = self._sessions.get(account.id)
        if session is None:
            session = AuthorizedSession(account.id, access_token, expires_at)
            self._sessions[account.id] = session
        else:
            session.access_token = access_token
            session.expires_at = expires_at
        return session
