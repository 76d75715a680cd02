"""
Range Fetcher - Truncation-aware retrieval of meetings for a date range

The meetings API caps how many records one response carries. For each
sub-window of the run range we request one page; when the reported total
exceeds what came back, the window is truncated:

- multi-day windows are bisected at the midpoint day and both halves fetched
- single-day windows fall back to offset pagination via startRecord

A failing window is recorded in the result and its siblings continue.
Runs are best effort: the page ceiling logs a warning and keeps partial data.
"""

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, List, Optional, Tuple
from urllib.parse import urlencode

import aiohttp

from config import get_logger
from exceptions import UpstreamError, UpstreamHTTPError
from pipeline.models import RunRange
from pipeline.protocols import MetricsCollector, NullMetrics
from pipeline.range import bisect_range, days_in_range, split_range_by_days
from upstream.cache import ResponseCache
from upstream.normalizer import ResponseNormalizer
from upstream.rate_limiter import RequestPacer
from upstream.schemas import RawMeetingData, RawMeetingRecord
from upstream.session_manager_async import AsyncSessionManager

logger = get_logger(__name__).bind(component="upstream")


@dataclass
class FetchOptions:
    """Per-call fetch settings"""
    max_records_per_page: int = 10
    chunk_days: int = 7
    request_interval_ms: int = 1000
    max_pages: int = 50
    use_cache: bool = True
    bypass_cache: bool = False


@dataclass
class FailedWindow:
    window: RunRange
    error: str
    retryable: bool = True

    def to_dict(self) -> dict:
        return {"window": str(self.window), "error": self.error, "retryable": self.retryable}


@dataclass
class FetchResult:
    meetings: List[RawMeetingRecord] = field(default_factory=list)
    record_count: int = 0
    failed_windows: List[FailedWindow] = field(default_factory=list)
    windows_completed: int = 0
    requests_made: int = 0

    @property
    def all_failed(self) -> bool:
        """Every window failed and nothing was retrieved"""
        return bool(self.failed_windows) and self.windows_completed == 0 and not self.meetings


@dataclass
class _FetchRun:
    endpoint: str
    options: FetchOptions
    pacer: RequestPacer
    result: FetchResult


class RangeFetcher:
    """Fetch every meeting in a RunRange from the meetings API

    Args:
        normalizer: ResponseNormalizer applied to each page
        cache: Optional response cache (reads gated by FetchOptions)
        metrics: Optional metrics collector
        upstream: Session pool name
        timeout_seconds: Total timeout per request
    """

    def __init__(
        self,
        normalizer: ResponseNormalizer,
        cache: Optional[ResponseCache] = None,
        metrics: Optional[MetricsCollector] = None,
        upstream: str = "ndl",
        timeout_seconds: int = 30,
    ):
        self.normalizer = normalizer
        self.cache = cache
        self.metrics = metrics or NullMetrics()
        self.upstream = upstream
        self.timeout_seconds = timeout_seconds

    async def fetch(self, endpoint: str, run_range: RunRange, options: Optional[FetchOptions] = None) -> FetchResult:
        options = options or FetchOptions()
        run = _FetchRun(
            endpoint=endpoint,
            options=options,
            pacer=RequestPacer(options.request_interval_ms),
            result=FetchResult(),
        )

        windows = split_range_by_days(run_range, options.chunk_days)
        logger.info(
            "fetching range",
            range=str(run_range),
            windows=len(windows),
            chunk_days=options.chunk_days,
            use_cache=options.use_cache and self.cache is not None,
        )

        for window in windows:
            await self._fetch_window(run, window, depth=0)

        result = run.result
        self.metrics.meetings_fetched.labels(upstream=self.upstream).inc(len(result.meetings))
        logger.info(
            "range fetched",
            range=str(run_range),
            meetings=len(result.meetings),
            record_count=result.record_count,
            failed_windows=len(result.failed_windows),
            requests=result.requests_made,
        )
        return result

    async def _fetch_window(self, run: _FetchRun, window: RunRange, depth: int):
        """Fetch one window, recursing or paginating on truncation. Failures are recorded, not raised."""
        try:
            page = await self._request_page(run, window, start_record=1, depth=depth)
        except UpstreamError as e:
            self._record_failure(run, window, e)
            return

        reported = page.number_of_records
        returned = page.number_of_return or len(page.meeting_record)

        if reported <= returned:
            run.result.meetings.extend(page.meeting_record)
            run.result.record_count += reported
            run.result.windows_completed += 1
            return

        if days_in_range(window) > 1:
            left, right = bisect_range(window)
            logger.info(
                "window truncated, bisecting",
                window=str(window),
                reported=reported,
                returned=returned,
                depth=depth,
                left=str(left),
                right=str(right),
            )
            await self._fetch_window(run, left, depth + 1)
            await self._fetch_window(run, right, depth + 1)
            return

        logger.info(
            "single-day window truncated, paginating",
            window=str(window),
            reported=reported,
            returned=returned,
        )
        meetings, complete = await self._paginate_day(run, window, page, depth)
        run.result.meetings.extend(meetings)
        run.result.record_count += reported
        if complete:
            run.result.windows_completed += 1

    async def _paginate_day(
        self, run: _FetchRun, window: RunRange, first_page: RawMeetingData, depth: int
    ) -> Tuple[List[RawMeetingRecord], bool]:
        """Offset pagination within one day. Returns (meetings, completed_without_error)."""
        total = first_page.number_of_records
        meetings = list(first_page.meeting_record)
        returned_total = first_page.number_of_return or len(meetings)
        start_record = first_page.start_record + returned_total
        pages = 1

        while returned_total < total:
            if pages >= run.options.max_pages:
                logger.warning(
                    "page ceiling reached, keeping partial results",
                    window=str(window),
                    pages=pages,
                    retrieved=returned_total,
                    reported=total,
                )
                break

            try:
                page = await self._request_page(run, window, start_record=start_record, depth=depth + 1)
            except UpstreamError as e:
                self._record_failure(run, window, e)
                return meetings, False

            got = page.number_of_return or len(page.meeting_record)
            if got == 0 or not page.meeting_record:
                logger.warning(
                    "page returned no records, stopping pagination",
                    window=str(window),
                    start_record=start_record,
                    retrieved=returned_total,
                    reported=total,
                )
                break

            meetings.extend(page.meeting_record)
            returned_total += got
            start_record += got
            pages += 1

        return meetings, True

    def _record_failure(self, run: _FetchRun, window: RunRange, error: UpstreamError):
        logger.error(
            "window fetch failed",
            window=str(window),
            error=str(error),
            error_type=type(error).__name__,
            retryable=error.is_retryable,
        )
        self.metrics.record_error("upstream", error)
        run.result.failed_windows.append(
            FailedWindow(window=window, error=str(error), retryable=error.is_retryable)
        )

    def build_url(self, endpoint: str, window: RunRange, max_records: int, start_record: int = 1) -> str:
        params = {
            "from": window.from_date,
            "until": window.until_date,
            "recordPacking": "json",
            "maximumRecords": max_records,
        }
        if start_record > 1:
            params["startRecord"] = start_record
        return f"{endpoint}?{urlencode(params)}"

    async def _request_page(self, run: _FetchRun, window: RunRange, start_record: int, depth: int) -> RawMeetingData:
        options = run.options
        url = self.build_url(run.endpoint, window, options.max_records_per_page, start_record)

        payload: Any = None
        read_cache = self.cache is not None and options.use_cache and not options.bypass_cache
        if read_cache:
            payload = self.cache.get(url)
            if payload is not None:
                self.metrics.upstream_requests.labels(status="cache").inc()
                logger.debug("cache hit", url=url)

        if payload is None:
            await run.pacer.wait(depth)
            logger.debug("fetching page", url=url, depth=depth)
            run.result.requests_made += 1
            payload = await self._get_json(url)
            if self.cache is not None and options.use_cache:
                self.cache.put(url, payload)

        return await self.normalizer.normalize(payload)

    async def _get_json(self, url: str) -> Any:
        """GET url and decode JSON. Raises UpstreamHTTPError on any transport or status failure."""
        session = await AsyncSessionManager.get_session(self.upstream, self.timeout_seconds)
        started = time.monotonic()
        try:
            async with session.get(url) as response:
                if response.status < 200 or response.status >= 300:
                    raise UpstreamHTTPError(
                        f"Meetings API returned HTTP {response.status}",
                        upstream=self.upstream,
                        status_code=response.status,
                        url=url,
                    )
                try:
                    payload = await response.json(content_type=None)
                except ValueError as e:
                    raise UpstreamHTTPError(
                        f"Meetings API returned a non-JSON body: {e}",
                        upstream=self.upstream,
                        status_code=response.status,
                        url=url,
                    ) from e
        except asyncio.TimeoutError as e:
            self.metrics.upstream_requests.labels(status="error").inc()
            raise UpstreamHTTPError("Meetings API request timed out", upstream=self.upstream, url=url) from e
        except aiohttp.ClientError as e:
            self.metrics.upstream_requests.labels(status="error").inc()
            raise UpstreamHTTPError(f"Meetings API request failed: {e}", upstream=self.upstream, url=url) from e
        except UpstreamHTTPError:
            self.metrics.upstream_requests.labels(status="error").inc()
            raise
        finally:
            self.metrics.upstream_request_duration.labels(upstream=self.upstream).observe(
                time.monotonic() - started
            )

        self.metrics.upstream_requests.labels(status="success").inc()
        return payload
