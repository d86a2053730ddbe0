"""
Periodic power monitoring.

A WatchScheduler runs one cooperative loop per handle. Each tick fetches a
snapshot from every selected server, evaluates diagnostics and hands one
WatchSample per server to the callback. Ticks are aligned to a fixed grid;
when a tick runs past one or more grid points those ticks are skipped, so
at most one tick is ever in flight per handle.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional, Sequence, Union

from .config import Settings
from .diagnostics import STANDARD_RULES, evaluate
from .errors import Plan10Error
from .models import Finding, PowerSnapshot, Rule, ServerRecord, TargetSelector
from .registry import ServerRegistry
from .snapshot import collect_local_snapshot, fetch_remote_snapshot
from .ssh_client import RemoteExecutor

logger = logging.getLogger(__name__)

# Fetches the snapshot of one server, or of this machine when given None
Sampler = Callable[[Optional[ServerRecord]], Awaitable[PowerSnapshot]]
SampleCallback = Callable[["WatchSample"], Union[None, Awaitable[None]]]


@dataclass(frozen=True)
class WatchSample:
    """One server's result for one tick. Times are monotonic seconds."""

    target: Optional[str]
    tick: int
    started_at: float
    finished_at: float
    snapshot: Optional[PowerSnapshot] = None
    findings: tuple[Finding, ...] = ()
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class WatchHandle:
    interval: float
    selector: Optional[TargetSelector]
    ticks: int = 0
    skipped_ticks: int = 0
    _stop: asyncio.Event = field(default_factory=asyncio.Event, repr=False)
    _task: Optional[asyncio.Task] = field(default=None, repr=False)

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()


def remote_sampler(executor: RemoteExecutor) -> Sampler:
    """Sampler that opens a short-lived session per snapshot."""

    async def sample(record: Optional[ServerRecord]) -> PowerSnapshot:
        if record is None:
            return await collect_local_snapshot()
        async with executor.session(record) as session:
            return await fetch_remote_snapshot(executor, session)

    return sample


class WatchScheduler:
    """
    Args:
        registry: Resolves the handle's selector on every tick
        sampler: Snapshot source, see :func:`remote_sampler`
        settings: Provides per-server thresholds and the default interval
        rules: Rule table used for every evaluation
        grace_period: How long ``stop`` waits for an in-flight tick
    """

    def __init__(
        self,
        registry: ServerRegistry,
        sampler: Sampler,
        settings: Optional[Settings] = None,
        rules: Sequence[Rule] = STANDARD_RULES,
        grace_period: float = 10.0,
    ):
        self.registry = registry
        self.sampler = sampler
        self.settings = settings or Settings()
        self.rules = rules
        self.grace_period = grace_period

    def start(
        self,
        interval: Optional[float],
        target_selector: Optional[TargetSelector],
        on_sample: SampleCallback,
    ) -> WatchHandle:
        """
        Start a watch loop; must be called from a running event loop.

        ``interval`` defaults to the monitoring interval from settings when None.
        """
        if interval is None:
            interval = self.settings.monitoring_interval
        if interval <= 0:
            raise ValueError("interval must be positive")
        handle = WatchHandle(interval=interval, selector=target_selector)
        handle._task = asyncio.create_task(self._loop(handle, on_sample), name="plan10-watch")
        logger.info("Watching every %ss", interval)
        return handle

    async def stop(self, handle: WatchHandle) -> None:
        """
        Signal the loop to stop and wait for the in-flight tick.

        If the tick does not finish within the grace period it is cancelled.
        No callback runs after this returns.
        """
        handle._stop.set()
        task = handle._task
        if task is None or task.done():
            return
        try:
            await asyncio.wait_for(asyncio.shield(task), timeout=self.grace_period)
        except asyncio.TimeoutError:
            logger.warning("Watch tick still running after %ss grace period; cancelling", self.grace_period)
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
        logger.info("Watch stopped after %d tick(s), %d skipped", handle.ticks, handle.skipped_ticks)

    async def _loop(self, handle: WatchHandle, on_sample: SampleCallback) -> None:
        loop = asyncio.get_running_loop()
        interval = handle.interval
        next_tick = loop.time()

        while not handle._stop.is_set():
            await self._tick(handle, on_sample)

            now = loop.time()
            next_tick += interval
            if next_tick < now:
                missed = int((now - next_tick) // interval) + 1
                handle.skipped_ticks += missed
                next_tick += missed * interval
                logger.debug("Tick overran its interval; skipped %d tick(s)", missed)

            try:
                await asyncio.wait_for(handle._stop.wait(), timeout=next_tick - now)
            except asyncio.TimeoutError:
                pass

    def _targets(self, selector: Optional[TargetSelector]) -> list[Optional[ServerRecord]]:
        if selector is None:
            return [None]
        return list(self.registry.select(selector))

    async def _tick(self, handle: WatchHandle, on_sample: SampleCallback) -> None:
        handle.ticks += 1
        tick = handle.ticks
        try:
            targets = self._targets(handle.selector)
        except Plan10Error as e:
            logger.error("Cannot resolve watch targets: %s", e)
            return

        samples = await asyncio.gather(*(self._sample(record, tick) for record in targets))
        for sample in samples:
            try:
                outcome = on_sample(sample)
                if inspect.isawaitable(outcome):
                    await outcome
            except Exception:
                logger.exception("Watch callback failed for %s", sample.target or "localhost")

    async def _sample(self, record: Optional[ServerRecord], tick: int) -> WatchSample:
        name = record.name if record is not None else None
        started = time.monotonic()
        try:
            snapshot = await self.sampler(record)
        except Plan10Error as e:
            logger.warning("Sampling %s failed: %s", name or "localhost", e)
            return WatchSample(target=name, tick=tick, started_at=started, finished_at=time.monotonic(), error=str(e))
        except Exception as e:
            logger.exception("Unexpected error sampling %s", name or "localhost")
            return WatchSample(target=name, tick=tick, started_at=started, finished_at=time.monotonic(), error=repr(e))

        try:
            findings = evaluate(snapshot, self.rules, self.settings.thresholds_for(record))
        except Plan10Error as e:
            logger.warning("Cannot evaluate %s: %s", name or "localhost", e)
            return WatchSample(
                target=name,
                tick=tick,
                started_at=started,
                finished_at=time.monotonic(),
                snapshot=snapshot,
                error=str(e),
            )
        return WatchSample(
            target=name,
            tick=tick,
            started_at=started,
            finished_at=time.monotonic(),
            snapshot=snapshot,
            findings=tuple(findings),
        )
