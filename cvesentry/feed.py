"""Feed Client for the NVD CVE API 2.0.

Pulls vulnerability records modified since a watermark, one page at a
time.  Pages are consumed strictly in order; the cursor is the API's
``startIndex``.

Usage::

    async with FeedClient(config.feed) as feed:
        async for page in feed.iter_pages(since):
            for raw in page.records:
                ...
"""

from __future__ import annotations

import asyncio
import datetime as dt
import email.utils
import json
import logging
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Awaitable, Callable

import aiohttp
from pydantic import BaseModel, ValidationError
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    stop_after_delay,
    wait_exponential_jitter,
)

from . import __version__
from .config import FeedConfig
from .errors import FeedError, FeedMalformed, FeedRateLimited, FeedUnavailable
from .utils import isoformat_utc, log_event, utc_now

log = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[None]]


class _PageSchema(BaseModel):
    """Minimal shape a page must have to be usable."""

    totalResults: int
    startIndex: int = 0
    resultsPerPage: int = 0
    vulnerabilities: list[dict[str, Any]]


@dataclass
class FeedPage:
    """One page of raw feed records.

    Attributes:
        records: Raw record dicts, as the feed sent them.
        next_cursor: Cursor of the page after this one.
        has_more: Whether another page exists in this window.
        cursor: Cursor this page was requested with.
        total: Total records in the window, when the feed said so.
        window_end: Upper bound of the modified-date window.
        window_truncated: The window was clamped to the feed's maximum
            span, so records newer than ``window_end`` remain for later.
        error: Set when the page was malformed and stepped over.
    """

    records: list[dict[str, Any]]
    next_cursor: int
    has_more: bool
    cursor: int = 0
    total: int | None = None
    window_end: dt.datetime | None = None
    window_truncated: bool = False
    error: FeedMalformed | None = field(default=None, repr=False)


def parse_retry_after(value: str | None, now: dt.datetime | None = None) -> float | None:
    """Parse a ``Retry-After`` header (delta-seconds or HTTP-date)."""
    if not value:
        return None
    value = value.strip()
    try:
        return max(float(value), 0.0)
    except ValueError:
        pass
    try:
        when = email.utils.parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=dt.timezone.utc)
    now = now or utc_now()
    delta = when.astimezone(dt.timezone.utc).replace(tzinfo=None) - now
    return max(delta.total_seconds(), 0.0)


_RATE_LIMIT_MARKERS = ("rate limit", "rate-limit", "too many requests")


def _is_rate_limit_403(headers: Any, body: str) -> bool:
    """The NVD answers throttled clients with 403 and a rate-limit message."""
    if headers.get("Retry-After") is not None or headers.get("X-RateLimit-Remaining") == "0":
        return True
    text = f"{headers.get('message', '')} {body}".lower()
    return any(marker in text for marker in _RATE_LIMIT_MARKERS)


class FeedClient:
    """Async client for the paginated vulnerability feed.

    Args:
        config: Feed settings.
        session: Optional ``aiohttp.ClientSession``; one is created on
            first use (and closed by ``close``) when omitted.
        sleep: Coroutine used for backoff and politeness delays.
    """

    def __init__(
        self,
        config: FeedConfig,
        session: aiohttp.ClientSession | None = None,
        sleep: Sleep = asyncio.sleep,
    ):
        self.config = config
        self._session = session
        self._owns_session = session is None
        self._sleep = sleep

    async def __aenter__(self) -> FeedClient:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    async def close(self) -> None:
        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None

    def _headers(self) -> dict[str, str]:
        headers = {
            "User-Agent": f"cvesentry/{__version__}",
            "Accept": "application/json",
        }
        if self.config.api_key:
            headers["apiKey"] = self.config.api_key
        return headers

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None:
            timeout = aiohttp.ClientTimeout(total=self.config.request_timeout_seconds, connect=15)
            self._session = aiohttp.ClientSession(timeout=timeout, headers=self._headers())
        return self._session

    def window(self, since: dt.datetime, now: dt.datetime | None = None) -> tuple[dt.datetime, bool]:
        """Compute the end of the modified-date window starting at ``since``.

        Returns:
            Tuple of (window end, truncated).  ``truncated`` is ``True``
            when the feed's maximum span cut the window short of now.
        """
        now = now or utc_now()
        limit = since + dt.timedelta(days=self.config.max_window_days)
        if limit < now:
            return limit, True
        return now, False

    # ─── Single page ─────────────────────────────────────────────────────────

    async def fetch(self, since: dt.datetime, cursor: int = 0, until: dt.datetime | None = None) -> FeedPage:
        """Fetch one page of records modified at or after ``since``.

        Args:
            since: Watermark; records modified before it are not returned.
            cursor: ``startIndex`` of the page.
            until: End of the window; derived from ``since`` when omitted.

        Returns:
            ``FeedPage``.

        Raises:
            FeedUnavailable: network failure or 5xx.
            FeedRateLimited: 429, or a 403 carrying a rate-limit message.
            FeedMalformed: body is not a valid feed page.
            FeedError: any other non-success status.
        """
        truncated = False
        if until is None:
            until, truncated = self.window(since)
        params = {
            "lastModStartDate": isoformat_utc(since),
            "lastModEndDate": isoformat_utc(until),
            "startIndex": str(cursor),
            "resultsPerPage": str(self.config.results_per_page),
        }
        session = self._get_session()
        try:
            async with session.get(self.config.base_url, params=params, headers=self._headers()) as resp:
                status = resp.status
                if status == 429 or (status == 403 and _is_rate_limit_403(resp.headers, await resp.text())):
                    raise FeedRateLimited(
                        f"feed rate limited (HTTP {status})",
                        retry_after=parse_retry_after(resp.headers.get("Retry-After")),
                        status_code=status,
                    )
                if status >= 500:
                    raise FeedUnavailable(f"feed returned HTTP {status}", status_code=status)
                if status != 200:
                    # 403 without a rate-limit marker: bad or revoked apiKey.
                    raise FeedError(f"feed rejected request (HTTP {status})", status_code=status)
                body = await resp.text()
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise FeedUnavailable(f"feed unreachable: {exc}") from exc

        try:
            page = _PageSchema.model_validate(json.loads(body))
        except (ValueError, ValidationError) as exc:
            raise FeedMalformed(
                f"malformed feed page at cursor {cursor}: {exc}",
                cursor=cursor,
                page_size=self.config.results_per_page,
            ) from exc

        next_cursor = cursor + len(page.vulnerabilities)
        has_more = bool(page.vulnerabilities) and next_cursor < page.totalResults
        return FeedPage(
            records=page.vulnerabilities,
            next_cursor=next_cursor,
            has_more=has_more,
            cursor=cursor,
            total=page.totalResults,
            window_end=until,
            window_truncated=truncated,
        )

    # ─── Retry ───────────────────────────────────────────────────────────────

    def _wait(self, retry_state: RetryCallState) -> float:
        backoff = wait_exponential_jitter(
            initial=self.config.backoff_initial_seconds,
            max=self.config.backoff_max_seconds,
        )(retry_state)
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        if isinstance(exc, FeedRateLimited) and exc.retry_after is not None:
            return min(exc.retry_after, self.config.max_retry_window_seconds)
        return backoff

    def _before_sleep(self, retry_state: RetryCallState) -> None:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        delay = retry_state.next_action.sleep if retry_state.next_action else None
        log_event(
            log,
            logging.WARNING,
            "feed_retry",
            attempt=retry_state.attempt_number,
            kind=getattr(exc, "kind", type(exc).__name__),
            sleep=f"{delay:.1f}" if delay is not None else None,
            error=exc,
        )

    async def fetch_with_retry(
        self, since: dt.datetime, cursor: int = 0, until: dt.datetime | None = None
    ) -> FeedPage:
        """``fetch`` with exponential backoff and jitter on transient errors.

        A server-indicated delay (``Retry-After``) replaces the computed
        backoff.  Retrying stops after ``max_retry_window_seconds`` or
        ``max_attempts``; the last error is then re-raised.
        """
        async for attempt in AsyncRetrying(
            retry=retry_if_exception_type((FeedUnavailable, FeedRateLimited)),
            wait=self._wait,
            stop=stop_after_delay(self.config.max_retry_window_seconds) | stop_after_attempt(self.config.max_attempts),
            before_sleep=self._before_sleep,
            sleep=self._sleep,
            reraise=True,
        ):
            with attempt:
                return await self.fetch(since, cursor, until)
        raise FeedError("feed retry loop ended without a result")

    # ─── Pagination ──────────────────────────────────────────────────────────

    async def iter_pages(self, since: dt.datetime) -> AsyncIterator[FeedPage]:
        """Yield every page of the window starting at ``since``, in order.

        A malformed page is yielded empty with its ``error`` set and the
        cursor moves past it.  If the total is not known yet there is no
        way to tell where the window ends, so iteration stops there.
        """
        until, truncated = self.window(since)
        cursor = 0
        total: int | None = None
        while True:
            try:
                page = await self.fetch_with_retry(since, cursor, until)
            except FeedMalformed as exc:
                log_event(log, logging.WARNING, "feed_page_skipped", cursor=exc.cursor, page_size=exc.page_size)
                next_cursor = cursor + (exc.page_size or self.config.results_per_page)
                page = FeedPage(
                    records=[],
                    next_cursor=next_cursor,
                    has_more=total is not None and next_cursor < total,
                    cursor=cursor,
                    total=total,
                    error=exc,
                )
            else:
                total = page.total
            page.window_end = until
            page.window_truncated = truncated
            log_event(
                log,
                logging.DEBUG,
                "feed_page",
                cursor=page.cursor,
                records=len(page.records),
                total=page.total,
                has_more=page.has_more,
            )
            yield page
            if not page.has_more:
                return
            cursor = page.next_cursor
            if self.config.page_delay_seconds:
                await self._sleep(self.config.page_delay_seconds)
