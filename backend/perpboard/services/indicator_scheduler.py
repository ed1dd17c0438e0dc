"""Background indicator refresh.

Walks a priority list of instruments one at a time, skipping those whose
cached indicators are still fresh, and refreshes the rest from REST
candles. Requests are spaced by a fixed pause so a pass stays under the
exchange's public rate limits; retries on throttling happen one level
down in the RateLimitedFetcher.

At most one pass runs at a time. A trigger that arrives while a pass is
running is dropped, not queued.
"""

import asyncio
import logging
import time
from typing import Awaitable, Callable, Protocol, Sequence

from perpboard.core.indicators import IndicatorCalculator
from perpboard.core.models import CacheEntry, Candle, PassResult, SchedulerStatus
from perpboard.core.single_flight import SingleFlight
from perpboard.errors import MarketDataError, SchedulerItemError
from perpboard.storage.indicator_cache import PersistentIndicatorCache

logger = logging.getLogger(__name__)

SleepFunc = Callable[[float], Awaitable[None]]
PrioritySource = Callable[[], Sequence[str]]


class CandleSource(Protocol):
    async def get_candles(self, inst_id: str, bar: str = "1D", limit: int = 60) -> list[Candle]: ...


class IndicatorScheduler:
    """Single-flight, rate-shaped indicator refresh job."""

    def __init__(
        self,
        candles: CandleSource,
        cache: PersistentIndicatorCache,
        calculator: IndicatorCalculator | None = None,
        ttl: float = 15 * 60,
        initial_delay: float = 2.0,
        interval: float = 15 * 60,
        item_delay: float = 0.18,
        failure_cooldown: float = 0.6,
        request_delay: float = 0.1,
        daily_limit: int = 60,
        weekly_limit: int = 100,
        hourly_limit: int = 24,
        clock: Callable[[], float] = time.time,
        sleep: SleepFunc = asyncio.sleep,
    ):
        self.candles = candles
        self.cache = cache
        self.calculator = calculator or IndicatorCalculator()
        self.ttl = ttl
        self.initial_delay = initial_delay
        self.interval = interval
        self.item_delay = item_delay
        self.failure_cooldown = failure_cooldown
        self.request_delay = request_delay
        self.daily_limit = daily_limit
        self.weekly_limit = weekly_limit
        self.hourly_limit = hourly_limit
        self._clock = clock
        self._sleep = sleep

        self._flight = SingleFlight()
        self._aborted = False
        self._stopped = False
        self._priority_source: PrioritySource | None = None
        self._timer_task: asyncio.Task | None = None
        self._pass_tasks: set[asyncio.Task] = set()

        self._done = 0
        self._total = 0
        self.last_result: PassResult | None = None

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    @property
    def status(self) -> SchedulerStatus:
        if self._stopped:
            return SchedulerStatus.STOPPED
        if self._flight.held:
            return SchedulerStatus.RUNNING
        return SchedulerStatus.IDLE

    @property
    def is_running(self) -> bool:
        return self._flight.held

    @property
    def progress(self) -> str:
        """``done/total`` for the current (or last) pass."""
        return f"{self._done}/{self._total}"

    # ------------------------------------------------------------------
    # Pass
    # ------------------------------------------------------------------

    async def run_pass(
        self, priority_list: Sequence[str], now: float | None = None
    ) -> PassResult | None:
        """
        Refresh stale indicators for ``priority_list``, in order.

        Args:
            priority_list: Instrument IDs; copied on entry
            now: Freshness reference time (defaults to the clock)

        Returns:
            PassResult, or None if another pass was already running or the
            scheduler is stopped
        """
        # acquire before the first await
        if self._stopped or not self._flight.try_acquire():
            return None

        inst_ids = list(priority_list)
        started = self._clock()
        ref_now = now if now is not None else started
        result = PassResult(total=len(inst_ids), started_at=started)
        self._done = 0
        self._total = len(inst_ids)

        logger.info(f"Indicator pass started: {len(inst_ids)} instruments")
        try:
            for index, inst_id in enumerate(inst_ids):
                if self._aborted:
                    result.aborted = True
                    break

                entry = await self.cache.get(inst_id)
                if entry is not None and entry.is_fresh(ref_now, self.ttl):
                    result.skipped_fresh.append(inst_id)
                    self._done += 1
                    continue

                try:
                    written = await self._refresh(inst_id)
                except SchedulerItemError as e:
                    logger.warning(f"Indicator refresh failed: {e}")
                    result.failed.append(inst_id)
                    self._done += 1
                    await self._sleep(self.failure_cooldown)
                    continue

                if not written:
                    result.aborted = True
                    break

                result.refreshed.append(inst_id)
                self._done += 1
                if index < len(inst_ids) - 1:
                    await self._sleep(self.item_delay)
        finally:
            result.finished_at = self._clock()
            self.last_result = result
            self._flight.release()

        logger.info(
            f"Indicator pass finished: refreshed={len(result.refreshed)} "
            f"fresh={len(result.skipped_fresh)} failed={len(result.failed)}"
            f"{' (aborted)' if result.aborted else ''} "
            f"in {result.finished_at - result.started_at:.1f}s"
        )
        return result

    async def _refresh(self, inst_id: str) -> bool:
        """
        Fetch, compute and store one instrument. False if aborted mid-way.

        Daily candles are required. Weekly and hourly candles are optional:
        a failed weekly request leaves the weekly RSI empty, and a failed
        hourly request falls back to 4H candles for the 4h change.
        Requests are spaced by ``request_delay``.
        """
        try:
            daily = await self.candles.get_candles(inst_id, bar="1D", limit=self.daily_limit)
            await self._sleep(self.request_delay)
            weekly = await self._optional_candles(inst_id, "1W", self.weekly_limit)
            await self._sleep(self.request_delay)
            hourly = await self._optional_candles(inst_id, "1H", self.hourly_limit)
            four_hour = None
            if hourly is None:
                await self._sleep(self.request_delay)
                four_hour = await self._optional_candles(inst_id, "4H", 2)

            updated_at = self._clock()
            record = self.calculator.compute(
                inst_id,
                daily,
                four_hour or (),
                updated_at,
                weekly=weekly or (),
                hourly=hourly or (),
            )
        except MarketDataError as e:
            raise SchedulerItemError(inst_id, str(e)) from e
        except (ValueError, ArithmeticError) as e:
            raise SchedulerItemError(inst_id, f"indicator computation failed: {e!r}") from e
        except Exception as e:
            logger.error(f"Unexpected error refreshing {inst_id}: {e!r}")
            raise SchedulerItemError(inst_id, f"unexpected error: {e!r}") from e

        if self._aborted:
            return False

        await self.cache.set(inst_id, CacheEntry(record=record, updated_at=updated_at))
        return True

    async def _optional_candles(self, inst_id: str, bar: str, limit: int) -> list[Candle] | None:
        """Candles for a secondary bar size, or None if the request failed."""
        try:
            return await self.candles.get_candles(inst_id, bar=bar, limit=limit)
        except MarketDataError as e:
            logger.debug(f"{bar} candles unavailable for {inst_id}: {e}")
            return None

    # ------------------------------------------------------------------
    # Triggers
    # ------------------------------------------------------------------

    def start(self, priority_source: PrioritySource) -> None:
        """
        Schedule the first pass after ``initial_delay``, then one every
        ``interval``. Each trigger reads a fresh list from ``priority_source``.
        """
        if self._timer_task is not None:
            return
        self._priority_source = priority_source
        self._aborted = False
        self._stopped = False
        self._timer_task = asyncio.create_task(self._timer_loop())
        logger.info(
            f"Indicator scheduler started (first pass in {self.initial_delay}s, "
            f"every {self.interval}s)"
        )

    async def _timer_loop(self) -> None:
        await self._sleep(self.initial_delay)
        while not self._stopped:
            self.request_pass()
            await self._sleep(self.interval)

    def request_pass(self) -> bool:
        """
        Trigger a pass now, in the background.

        Returns:
            False if a pass is already running (the trigger is dropped)
        """
        if self._stopped or self._priority_source is None or self._flight.held:
            return False
        try:
            priority_list = list(self._priority_source())
        except Exception as e:
            logger.error(f"Priority source failed: {e!r}")
            return False

        task = asyncio.create_task(self.run_pass(priority_list))
        self._pass_tasks.add(task)
        task.add_done_callback(self._pass_tasks.discard)
        return True

    async def stop(self) -> None:
        """Abort the running pass, cancel timers, and wait for the pass to end.

        No cache write happens after this returns.
        """
        self._aborted = True
        self._stopped = True

        if self._timer_task is not None:
            self._timer_task.cancel()
            try:
                await self._timer_task
            except asyncio.CancelledError:
                pass
            self._timer_task = None

        if self._pass_tasks:
            await asyncio.gather(*self._pass_tasks, return_exceptions=True)

        logger.info("Indicator scheduler stopped")
