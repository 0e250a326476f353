"""
Netatmo Crawler - Credential cache
Fetches the public weathermap access token once and reuses it until it expires.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Optional, Tuple

import httpx

from config import NETATMO_TOKEN_URL
from core.errors import AuthenticationError
from core.models import UTC, Credential

logger = logging.getLogger("credentials")

DEFAULT_TOKEN_LIFETIME_SECONDS = 3 * 3600


def _utc_now() -> datetime:
    return datetime.now(UTC)


def parse_token_response(data: Any) -> Tuple[str, Optional[int]]:
    """
    Extract (token, declared lifetime in seconds) from a token endpoint body.

    The weathermap endpoint answers {"body": "<token>"}; OAuth-style
    {"access_token": ..., "expires_in": ...} answers are accepted too.
    """
    token = None
    expires_in = None
    if isinstance(data, str):
        token = data
    elif isinstance(data, dict):
        body = data.get("body", data)
        if isinstance(body, str):
            token = body
            expires_in = data.get("expires_in")
        elif isinstance(body, dict):
            token = body.get("access_token") or body.get("token")
            expires_in = body.get("expires_in", data.get("expires_in"))
    token = str(token or "").strip()
    if not token:
        raise AuthenticationError("Token response carried no token")
    try:
        lifetime = int(expires_in) if expires_in is not None else None
    except (TypeError, ValueError):
        lifetime = None
    if lifetime is not None and lifetime <= 0:
        lifetime = None
    return token, lifetime


class CredentialCache:
    """
    Process-wide token holder.

    At most one token exchange is in flight: concurrent callers await the same
    pending task and observe the same success or failure.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        token_url: str = NETATMO_TOKEN_URL,
        timeout_seconds: float = 10.0,
        default_lifetime_seconds: int = DEFAULT_TOKEN_LIFETIME_SECONDS,
        clock: Callable[[], datetime] = _utc_now,
    ):
        self.client = client
        self.token_url = token_url
        self.timeout_seconds = float(timeout_seconds)
        self.default_lifetime_seconds = int(default_lifetime_seconds)
        self.clock = clock
        self.acquisitions = 0

        self._credential: Optional[Credential] = None
        self._pending: Optional[asyncio.Task] = None

    @property
    def credential(self) -> Optional[Credential]:
        return self._credential

    def invalidate(self, token: Optional[str] = None) -> None:
        """Drop the cached credential; with `token`, only if it is still the cached one."""
        if self._credential is None:
            return
        if token is not None and self._credential.token != token:
            return
        logger.debug("Invalidating cached weathermap token")
        self._credential = None

    def cancel(self) -> None:
        """Abort an in-flight token exchange, if any."""
        pending = self._pending
        if pending is not None and not pending.done():
            logger.info("Cancelling in-flight weathermap token request")
            pending.cancel()

    async def get_token(self, force: bool = False) -> Credential:
        if force:
            self.invalidate()
        cached = self._credential
        if cached is not None and cached.is_valid(self.clock()):
            return cached

        if self._pending is None:
            self._pending = asyncio.ensure_future(self._acquire())
            self._pending.add_done_callback(self._clear_pending)
        # Shield so one cancelled waiter does not abort the shared exchange.
        return await asyncio.shield(self._pending)

    def _clear_pending(self, task: asyncio.Task) -> None:
        if self._pending is task:
            self._pending = None
        if not task.cancelled():
            # Mark retrieved so an unawaited failure is not reported as lost.
            task.exception()

    async def _acquire(self) -> Credential:
        self.acquisitions += 1
        issued_at = self.clock()
        logger.info("Requesting weathermap token")
        try:
            response = await self.client.get(self.token_url, timeout=self.timeout_seconds)
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPStatusError as e:
            raise AuthenticationError(
                f"Token endpoint returned HTTP {e.response.status_code}",
                status_code=e.response.status_code,
            ) from e
        except httpx.HTTPError as e:
            raise AuthenticationError(f"Token request failed: {e!r}") from e
        except ValueError as e:
            raise AuthenticationError("Token endpoint returned a non-JSON body") from e

        token, lifetime = parse_token_response(data)
        lifetime = lifetime or self.default_lifetime_seconds
        credential = Credential(token=token, expires_at=issued_at + timedelta(seconds=lifetime))
        self._credential = credential
        logger.info(f"Weathermap token acquired, valid until {credential.expires_at.isoformat()}")
        return credential
