import time
import logging
import asyncio
from typing import Any, Awaitable, Dict, Optional
from .cache import ExternalDataCache, UNKNOWN
from .chains import ChainPlugin, IdentityState, NodeStatus, SyncState
from .client import as_int
from .config import Settings
from .metrics import MetricSnapshot, SnapshotBuilder
from .renderer import PLACEHOLDER, publish, render

logger = logging.getLogger(__name__)


class CollectorState:
    """Hand-off between the poll loop and the metrics server.

    Only the poll loop writes; ``snapshot`` and ``data`` are replaced together by
    a single reference swap, never mutated.
    """

    def __init__(self, cache: ExternalDataCache):
        self.cache = cache
        self._published = (None, None)

    @property
    def snapshot(self) -> Optional[MetricSnapshot]:
        return self._published[0]

    @property
    def data(self) -> Optional[bytes]:
        return self._published[1]

    def swap(self, snapshot: MetricSnapshot, data: bytes):
        self._published = (snapshot, data)

    def exposition(self) -> bytes:
        data = self.data
        return data if data is not None else PLACEHOLDER


class NodeMonitor:
    def __init__(self, settings: Settings, plugin: ChainPlugin, cache: Optional[ExternalDataCache] = None,
                 clock=time.time):
        self.settings = settings
        self.plugin = plugin
        self.clock = clock
        self.state = CollectorState(
            cache or ExternalDataCache(settings.cache_file, ttl=settings.external_data_interval, clock=clock)
        )
        self.running = True
        self.cycles = 0
        self.write_failures = 0
        self._cycle_errors = 0
        self._stopped = asyncio.Event()

    async def _isolated(self, what: str, coro: Awaitable, default):
        try:
            return await coro
        except Exception as e:
            logger.error(f"{what} failed: {type(e).__name__}: {e}")
            self._cycle_errors += 1
            return default

    async def refresh_external(self) -> Dict[str, Any]:
        external: Dict[str, Any] = {}
        for fact in self.plugin.external_facts():
            value = await self.state.cache.get_or_refresh(
                fact.key,
                fact.fetch,
                ttl=self.settings.external_data_interval,
                default='0' if fact.numeric else UNKNOWN,
            )
            external[fact.key] = as_int(value) if fact.numeric else value
        return external

    async def poll(self) -> NodeStatus:
        """One pass over the node; sub-polls are independent and never abort the cycle."""
        plugin = self.plugin
        status = NodeStatus()
        status.external = await self._isolated('External data refresh', self.refresh_external(), {})
        status.healthy = await self._isolated('Health poll', plugin.poll_health(), False)
        status.sync = await self._isolated(
            'Sync poll', plugin.poll_sync_state(status.healthy, status.external), SyncState()
        )
        status.identity = await self._isolated('Identity poll', plugin.poll_identity_state(), IdentityState())
        status.details = await self._isolated('Detail poll', plugin.poll_details(), {})
        return status

    def build_snapshot(self, status: NodeStatus, timestamp: float, scrape_success: bool,
                       duration: float) -> MetricSnapshot:
        builder = SnapshotBuilder(self.plugin.metric_prefix, timestamp)
        builder.gauge('collector_scrape_timestamp_seconds', 'Unix timestamp of last scrape', int(timestamp))
        builder.flag('node_healthy', 'Whether the node is healthy (1=healthy, 0=unhealthy)', status.healthy)
        self.plugin.describe(builder, status)
        self.plugin.describe_versions(builder, status)
        builder.flag('collector_scrape_success', 'Whether the last scrape was successful (1=yes, 0=no)',
                     scrape_success)
        builder.gauge('collector_cycle_duration_seconds', 'Time spent polling the node in the last cycle',
                      round(duration, 3))
        builder.gauge('collector_snapshot_write_failures', 'Snapshot file writes that failed since start',
                      self.write_failures)
        return builder.build()

    async def run_cycle(self) -> MetricSnapshot:
        started = time.monotonic()
        timestamp = self.clock()
        self._cycle_errors = 0
        self.plugin.api.reset_counters()

        status = await self.poll()

        # the node must have answered at least once and no sub-poll may have blown up
        scrape_success = self.plugin.api.succeeded > 0 and self._cycle_errors == 0
        snapshot = self.build_snapshot(status, timestamp, scrape_success, time.monotonic() - started)
        data = render(snapshot)

        try:
            publish(data, self.settings.metrics_file)
        except OSError as e:
            self.write_failures += 1
            logger.error(f"Failed to write snapshot to {self.settings.metrics_file}: {e}")

        self.state.swap(snapshot, data)
        self.cycles += 1
        logger.info(
            f"Cycle {self.cycles}: healthy={int(status.healthy)} synced={int(status.sync.is_synced)} "
            f"height={status.sync.local_height} behind={status.sync.behind} success={int(scrape_success)}"
        )
        return snapshot

    async def collect_metrics(self):
        logger.info("Starting metrics collection...")

        while self.running:
            try:
                await self.run_cycle()
            except Exception as e:
                logger.error(f"Error in collection loop: {e}")

            try:
                await asyncio.wait_for(self._stopped.wait(), timeout=self.settings.scrape_interval)
            except asyncio.TimeoutError:
                pass

        logger.info("Metrics collection stopped")

    async def shutdown(self):
        """Stop the poll loop and release HTTP sessions"""
        logger.info("Shutting down node monitor...")
        self.running = False
        self._stopped.set()
        await self.plugin.close()
