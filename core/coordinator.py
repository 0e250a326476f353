"""
Run coordinator.

One run: IDLE -> ACQUIRING (token) -> FETCHING (stations in parallel) -> DONE.
Retry policy lives here and nowhere else:
  - AuthenticationError: invalidate the token, force one refresh, retry once.
  - TransientError: wait `retry_delay_seconds`, retry once.
  - PermanentError: recorded, not retried.
A failing station never aborts its siblings and no exception escapes a run.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Awaitable, Callable, List, Optional, Tuple

import httpx

from collector.credentials import CredentialCache
from collector.netatmo_fetcher import StationFetcher
from collector.station_refs import parse_station_references
from config import CrawlerConfig
from core.errors import (
    AuthenticationError,
    ConfigurationError,
    CrawlerError,
    ErrorKind,
    PermanentError,
    TransientError,
)
from core.models import (
    CONNECTION_KEY,
    PreviousStates,
    UTC,
    Credential,
    RunOutcome,
    RunResult,
    RunState,
    StateWrite,
    StationDescriptor,
    StationError,
)
from core.normalizer import normalize
from core.publisher import ChangePublisher, apply

logger = logging.getLogger("coordinator")

StationResult = Tuple[RunOutcome, List[StateWrite], List[StationError]]

# Station id used for errors that are not tied to one station.
RUN_SCOPE = "*"


def _utc_now() -> datetime:
    return datetime.now(UTC)


class RunCoordinator:
    def __init__(
        self,
        config: CrawlerConfig,
        store,
        client: Optional[httpx.AsyncClient] = None,
        credentials: Optional[CredentialCache] = None,
        fetcher: Optional[StationFetcher] = None,
        clock: Callable[[], datetime] = _utc_now,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.config = config
        self.store = store
        self.clock = clock
        self.sleep = sleep

        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(follow_redirects=False)
        self.credentials = credentials or CredentialCache(
            self.client,
            token_url=config.token_url,
            timeout_seconds=config.token_timeout_seconds,
            default_lifetime_seconds=config.token_lifetime_seconds,
            clock=clock,
        )
        self.fetcher = fetcher or StationFetcher(
            self.client,
            measure_url=config.measure_url,
            timeout_seconds=config.request_timeout_seconds,
        )

        self.state = RunState.IDLE
        self._run_lock = asyncio.Lock()
        self._tasks: List[asyncio.Task] = []
        self._acquiring: Optional[asyncio.Task] = None
        self._stopping = False
        self._published: PreviousStates = {}

    # ---------------------------------------------------------------------
    # Lifecycle
    # ---------------------------------------------------------------------
    def shutdown(self) -> None:
        """Abandon in-flight token and station work. Stations not yet published write nothing."""
        self._stopping = True
        if self._acquiring is not None and not self._acquiring.done():
            self._acquiring.cancel()
            self.credentials.cancel()
        for task in self._tasks:
            if not task.done():
                task.cancel()

    def reconfigure(self, config: CrawlerConfig) -> None:
        """Adopt a freshly loaded configuration; takes effect from the next run."""
        if config.token_url != self.config.token_url:
            self.credentials.invalidate()
        self.config = config
        self.credentials.token_url = config.token_url
        self.credentials.timeout_seconds = float(config.token_timeout_seconds)
        self.credentials.default_lifetime_seconds = int(config.token_lifetime_seconds)
        self.fetcher.measure_url = config.measure_url
        self.fetcher.timeout_seconds = float(config.request_timeout_seconds)

    async def aclose(self) -> None:
        if self._owns_client:
            await self.client.aclose()

    async def run_once(self, station_text: Optional[str] = None) -> RunResult:
        """Execute one complete run and always return its summary."""
        async with self._run_lock:
            result = RunResult(state=RunState.IDLE)
            text = self.config.station_urls if station_text is None else station_text
            try:
                await self._run(result, text)
            except Exception as e:
                logger.exception("Run failed unexpectedly")
                result.errors.append(StationError(RUN_SCOPE, ErrorKind.UNEXPECTED, str(e)))
            finally:
                self._tasks = []

            result.connected = any(outcome.succeeded for outcome in result.outcomes)
            self._set_state(result, RunState.DONE)
            self._publish_connection(result.connected)
            logger.info(
                f"Run done: {result.succeeded_count}/{len(result.outcomes)} stations ok, "
                f"{len(result.writes)} writes, connected={result.connected}"
            )
            return result

    # ---------------------------------------------------------------------
    # Run phases
    # ---------------------------------------------------------------------
    def _set_state(self, result: RunResult, state: RunState) -> None:
        self.state = state
        result.state = state

    async def _run(self, result: RunResult, text: str) -> None:
        descriptors = parse_station_references(text, self.config.naming)
        if not descriptors:
            error = ConfigurationError("No valid station references configured")
            logger.warning(str(error))
            result.errors.append(StationError(RUN_SCOPE, error.kind, str(error)))
            return
        logger.info(f"Run started for {len(descriptors)} station(s)")

        self._set_state(result, RunState.ACQUIRING)
        self._acquiring = asyncio.ensure_future(self._acquire_token(result))
        if self._stopping:
            self.shutdown()
        try:
            credential = await self._acquiring
        except asyncio.CancelledError:
            if not (self._stopping and self._acquiring.cancelled()):
                raise
            logger.warning("Run shut down while acquiring the token")
            for d in descriptors:
                result.outcomes.append(RunOutcome(d.station_id, succeeded=False, error=ErrorKind.CANCELLED))
                result.errors.append(StationError(d.station_id, ErrorKind.CANCELLED, "run shut down"))
            return
        finally:
            self._acquiring = None
        if credential is None:
            result.outcomes.extend(
                RunOutcome(d.station_id, succeeded=False, error=ErrorKind.AUTHENTICATION) for d in descriptors
            )
            return

        self._set_state(result, RunState.FETCHING)
        publisher = ChangePublisher(
            epsilon=self.config.change_epsilon,
            display_names={d.station_id: d.display_name for d in descriptors},
        )
        semaphore = asyncio.Semaphore(self.config.max_in_flight)
        self._tasks = [
            asyncio.ensure_future(self._run_station(d, credential, publisher, semaphore))
            for d in descriptors
        ]
        if self._stopping:
            self.shutdown()
        station_results = await asyncio.gather(*self._tasks, return_exceptions=True)

        for descriptor, station_result in zip(descriptors, station_results):
            station_id = descriptor.station_id
            if isinstance(station_result, asyncio.CancelledError):
                logger.warning(f"[{station_id}] cancelled before publishing")
                result.outcomes.append(RunOutcome(station_id, succeeded=False, error=ErrorKind.CANCELLED))
                result.errors.append(StationError(station_id, ErrorKind.CANCELLED, "run shut down"))
            elif isinstance(station_result, BaseException):
                logger.error(f"[{station_id}] unexpected failure: {station_result!r}")
                result.outcomes.append(RunOutcome(station_id, succeeded=False, error=ErrorKind.UNEXPECTED))
                result.errors.append(StationError(station_id, ErrorKind.UNEXPECTED, str(station_result)))
            else:
                outcome, writes, errors = station_result
                result.outcomes.append(outcome)
                result.writes.extend(writes)
                result.errors.extend(errors)

    async def _acquire_token(self, result: RunResult) -> Optional[Credential]:
        attempts = 1 + self.config.auth_retries
        for attempt in range(attempts):
            try:
                return await self.credentials.get_token(force=attempt > 0)
            except AuthenticationError as e:
                logger.error(f"Token exchange failed (attempt {attempt + 1}/{attempts}): {e}")
                result.errors.append(StationError(RUN_SCOPE, e.kind, str(e)))
        logger.error("Token exchange exhausted its retries, run is disconnected")
        return None

    async def _run_station(
        self,
        descriptor: StationDescriptor,
        credential: Credential,
        publisher: ChangePublisher,
        semaphore: asyncio.Semaphore,
    ) -> StationResult:
        station_id = descriptor.station_id
        errors: List[StationError] = []
        auth_left = self.config.auth_retries
        transient_left = self.config.transient_retries
        attempts = 0

        def failed(error: CrawlerError) -> StationResult:
            logger.warning(f"[{station_id}] {error.kind.value} error, giving up: {error}")
            return RunOutcome(station_id, succeeded=False, error=error.kind, attempts=attempts), [], errors

        def record(error: CrawlerError) -> None:
            errors.append(StationError(station_id, error.kind, str(error)))

        while True:
            attempts += 1
            try:
                # The slot covers the request only, not the backoff or token refresh.
                async with semaphore:
                    payload = await self.fetcher.fetch(descriptor, credential)
                break
            except AuthenticationError as e:
                record(e)
                if auth_left <= 0:
                    return failed(e)
                auth_left -= 1
                logger.info(f"[{station_id}] token rejected, refreshing")
                self.credentials.invalidate(credential.token)
                try:
                    credential = await self.credentials.get_token()
                except AuthenticationError as refresh_error:
                    record(refresh_error)
                    return failed(refresh_error)
            except TransientError as e:
                record(e)
                if transient_left <= 0:
                    return failed(e)
                transient_left -= 1
                logger.info(f"[{station_id}] transient failure, retrying in {self.config.retry_delay_seconds}s")
                await self.sleep(self.config.retry_delay_seconds)
            except PermanentError as e:
                record(e)
                return failed(e)

        fetched_at = self.clock()
        observed_at = payload.observed_at or fetched_at
        measurements = normalize(station_id, payload.fields, observed_at)
        if not measurements:
            logger.info(f"[{station_id}] reachable but no usable measurements")

        previous = self._previous_states(publisher.keys_for(station_id, measurements))
        writes = publisher.publish(measurements, previous, seen_stations=[station_id], seen_at=fetched_at)
        self.store.write_many(writes)
        self._published = apply(self._published, writes)
        logger.debug(f"[{station_id}] {len(measurements)} measurements, {len(writes)} writes")
        outcome = RunOutcome(station_id, succeeded=True, measurement_count=len(measurements), attempts=attempts)
        return outcome, writes, errors

    def _previous_states(self, keys: List[str]) -> PreviousStates:
        """Last published value per key; keys not seen by this process are read from the store."""
        missing = [key for key in keys if key not in self._published]
        if missing:
            self._published.update(self.store.snapshot(missing))
        return {key: self._published[key] for key in keys if key in self._published}

    def _publish_connection(self, connected: bool) -> None:
        try:
            self.store.write(CONNECTION_KEY, connected, ack=True, timestamp=self.clock(), name="connection")
        except Exception as e:
            logger.error(f"Could not write connection state: {e}")
