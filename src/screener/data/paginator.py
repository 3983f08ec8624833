"""
Ticker listing paginator.

Fetches page 1 inline (a failure there is fatal), then drains the cursor
frontier with a working set bounded by the governor's concurrency ceiling.

- next_url style: every completed page contributes its successor cursor
- page_number style: page numbers are launched ahead until a short or empty
  page marks the end of the listing

A failing page is logged and contributes no tickers. With next_url cursors a
failed page also loses its successor, so the walk ends there and is flagged
as truncated. With page numbers, a run of consecutive failures past the last
good page is taken as the end of the listing. Each page is filtered
before its tickers are kept, and the result is de-duplicated by symbol.
"""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass
from typing import Any

from screener.data.base import CursorStyle, ListingPage, ListingRequest, ProviderAdapter
from screener.data.filters import TickerFilter
from screener.data.governor import RateGovernor
from screener.exceptions import AuthenticationError, CircuitOpenError, DataFetchError
from screener.logging import get_logger
from screener.pool import AdaptiveWorkingSet
from screener.types import TickerReference

logger = get_logger(__name__)


@dataclass
class _PageOutcome:
    number: int
    cursor: str | int
    page: ListingPage | None


class Paginator:
    """Walks a provider's ticker listing.

    Args:
        adapter: Provider adapter that knows the listing endpoint.
        ticker_filter: Allow/exclude rules applied to every page.
        max_pages: Optional safety cap on pages fetched (None = unbounded).
        max_failed_pages: Consecutive failed pages past the last good page that
            end a page-number walk (defaults to the governor concurrency ceiling).
    """

    def __init__(
        self,
        adapter: ProviderAdapter,
        ticker_filter: TickerFilter | None = None,
        max_pages: int | None = None,
        max_failed_pages: int | None = None,
    ) -> None:
        self.adapter = adapter
        self.ticker_filter = ticker_filter or TickerFilter(
            security_types=adapter.default_security_types,
            exchanges=adapter.default_exchanges,
        )
        self.max_pages = max_pages
        self.max_failed_pages = max_failed_pages
        self.pages_fetched = 0
        self.pages_failed = 0
        self.truncated = False

    @property
    def governor(self) -> RateGovernor:
        return self.adapter.client.governor

    async def fetch_all_pages(self, request: ListingRequest | None = None) -> list[TickerReference]:
        """Fetch every listing page and return the filtered tickers.

        Raises:
            DataFetchError: If the first page cannot be fetched.
            AuthenticationError: On 401/403 at any page.
        """
        request = request or self.adapter.listing_request()
        self.pages_fetched = 0
        self.pages_failed = 0
        self.truncated = False

        first_params = dict(request.params)
        if request.cursor_style is CursorStyle.PAGE_NUMBER:
            first_params[request.page_param] = request.first_page
        first_body = await self.adapter.client.request(request.endpoint, first_params)
        first = self.adapter.parse_listing(first_body)
        self.pages_fetched = 1

        collected: dict[str, TickerReference] = {}
        self._keep(first, collected, page_number=1)

        frontier: deque[str | int] = deque()
        next_page_number = request.first_page + 1
        exhausted_at: int | None = None
        last_good = request.first_page
        failed_numbers: set[int] = set()

        if request.cursor_style is CursorStyle.NEXT_URL and first.next_cursor:
            frontier.append(first.next_cursor)
        elif request.cursor_style is CursorStyle.PAGE_NUMBER:
            if self._is_last_page(first, request):
                exhausted_at = request.first_page

        pool = AdaptiveWorkingSet(self.governor)
        launched = 1

        try:
            while True:
                while pool.has_room() and not self._capped(launched):
                    if request.cursor_style is CursorStyle.PAGE_NUMBER:
                        if exhausted_at is not None:
                            break
                        cursor: str | int = next_page_number
                        next_page_number += 1
                    elif frontier:
                        cursor = frontier.popleft()
                    else:
                        break
                    launched += 1
                    pool.spawn(
                        self._fetch_page(request, cursor, launched),
                        name=f"page-{launched}",
                    )

                if not len(pool):
                    break

                fatal: BaseException | None = None
                for task in await pool.wait_any():
                    error = task.exception()
                    if error is not None:
                        fatal = fatal or error
                        continue
                    outcome: _PageOutcome = task.result()
                    if outcome.page is None:
                        if request.cursor_style is CursorStyle.PAGE_NUMBER:
                            failed_numbers.add(int(outcome.cursor))
                        else:
                            self.truncated = True
                            logger.warning(
                                "Listing truncated, next cursor lost with failed page",
                                page=outcome.number,
                            )
                        continue
                    page = outcome.page
                    if request.cursor_style is CursorStyle.PAGE_NUMBER:
                        number = int(outcome.cursor)
                        last_good = max(last_good, number)
                        if exhausted_at is not None and number > exhausted_at:
                            continue
                        if self._is_last_page(page, request):
                            exhausted_at = number if exhausted_at is None else min(exhausted_at, number)
                    elif page.next_cursor:
                        frontier.append(page.next_cursor)
                    self._keep(page, collected, page_number=outcome.number)
                if fatal is not None:
                    raise fatal

                failed_run = self._failed_run(last_good, failed_numbers)
                if exhausted_at is None and failed_run >= self._failure_limit():
                    exhausted_at = last_good
                    logger.warning(
                        "Pages past the last good page keep failing, ending listing",
                        last_good_page=last_good,
                    )
        finally:
            await pool.cancel_all()

        more_pages = bool(frontier) or (
            request.cursor_style is CursorStyle.PAGE_NUMBER and exhausted_at is None
        )
        if self._capped(launched) and more_pages:
            logger.info("Page cap reached, listing truncated", max_pages=self.max_pages)

        logger.info(
            "Ticker listing complete",
            source=self.adapter.source_name,
            pages=self.pages_fetched,
            failed_pages=self.pages_failed,
            truncated=self.truncated,
            tickers=len(collected),
        )
        return list(collected.values())

    def _failure_limit(self) -> int:
        return self.max_failed_pages or self.governor.config.max_concurrency

    @staticmethod
    def _failed_run(last_good: int, failed_numbers: set[int]) -> int:
        run = 0
        while last_good + run + 1 in failed_numbers:
            run += 1
        return run

    def _capped(self, launched: int) -> bool:
        return self.max_pages is not None and launched >= self.max_pages

    @staticmethod
    def _is_last_page(page: ListingPage, request: ListingRequest) -> bool:
        if page.raw_count == 0:
            return True
        return request.page_size is not None and page.raw_count < request.page_size

    def _keep(
        self,
        page: ListingPage,
        collected: dict[str, TickerReference],
        page_number: int,
    ) -> None:
        accepted = self.ticker_filter.apply(page.tickers)
        for ticker in accepted:
            collected.setdefault(ticker.symbol, ticker)
        logger.debug(
            "Filtered listing page",
            page=page_number,
            received=len(page.tickers),
            kept=len(accepted),
        )

    async def _fetch_page(
        self,
        request: ListingRequest,
        cursor: str | int,
        number: int,
    ) -> _PageOutcome:
        if isinstance(cursor, int):
            endpoint = request.endpoint
            params: dict[str, Any] | None = {**request.params, request.page_param: cursor}
        else:
            endpoint, params = cursor, None

        try:
            body = await self.adapter.client.request(endpoint, params)
        except (AuthenticationError, CircuitOpenError):
            raise
        except DataFetchError as e:
            self.pages_failed += 1
            logger.warning(
                "Listing page failed",
                page=number,
                error=str(e),
            )
            return _PageOutcome(number=number, cursor=cursor, page=None)

        self.pages_fetched += 1
        return _PageOutcome(number=number, cursor=cursor, page=self.adapter.parse_listing(body))
