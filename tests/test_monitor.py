import asyncio

import pytest

from chain_collector.cache import ExternalDataCache
from chain_collector.chains.base import ChainPlugin, ExternalFact, SyncState
from chain_collector.monitor import NodeMonitor


class FakePlugin(ChainPlugin):
    name = 'fake'
    metric_prefix = 'fake'

    def __init__(self, *args, answers=True, broken_details=False, **kwargs):
        super().__init__(*args, **kwargs)
        self.answers = answers
        self.broken_details = broken_details
        self.fetches = 0

    def external_facts(self):
        async def fetch():
            self.fetches += 1
            return '120'
        return [ExternalFact(key='network_height', fetch=fetch, numeric=True)]

    async def poll_health(self):
        self.api.record(self.answers)
        return self.answers

    async def poll_sync_state(self, healthy, external):
        return SyncState(local_height=100, network_height=external['network_height'], behind=20,
                         is_synced=healthy)

    async def poll_details(self):
        if self.broken_details:
            raise RuntimeError('unexpected payload')
        return {'version': '1.0.0'}

    def describe(self, builder, status):
        builder.gauge('node_height', 'Local height', status.sync.local_height)
        builder.gauge('network_height', 'Network height', status.sync.network_height)


@pytest.fixture
def make_monitor(make_settings, clock):
    def factory(settings=None, **plugin_kwargs):
        settings = settings or make_settings('fake', 'http://127.0.0.1:1')
        cache = ExternalDataCache(settings.cache_file, ttl=settings.external_data_interval, clock=clock)
        return NodeMonitor(settings, FakePlugin(settings, **plugin_kwargs), cache=cache, clock=clock)
    return factory


class TestCycle:

    @pytest.mark.asyncio
    async def test_snapshot_layout(self, make_monitor, clock):
        monitor = make_monitor()

        snapshot = await monitor.run_cycle()
        await monitor.shutdown()

        assert snapshot.names() == [
            'fake_collector_scrape_timestamp_seconds',
            'fake_node_healthy',
            'fake_node_height',
            'fake_network_height',
            'fake_node_version_info',
            'fake_collector_scrape_success',
            'fake_collector_cycle_duration_seconds',
            'fake_collector_snapshot_write_failures',
        ]
        assert snapshot.value('fake_collector_scrape_timestamp_seconds') == int(clock.now)
        assert snapshot.value('fake_network_height') == 120
        assert snapshot.value('fake_collector_scrape_success') == 1

    @pytest.mark.asyncio
    async def test_failing_sub_poll_keeps_the_rest(self, make_monitor):
        monitor = make_monitor(broken_details=True)

        snapshot = await monitor.run_cycle()
        await monitor.shutdown()

        assert snapshot.value('fake_node_healthy') == 1
        assert snapshot.value('fake_node_height') == 100
        assert snapshot.labels('fake_node_version_info') == [{'version': 'unknown'}]
        assert snapshot.value('fake_collector_scrape_success') == 0

    @pytest.mark.asyncio
    async def test_silent_node_is_not_a_successful_scrape(self, make_monitor):
        monitor = make_monitor(answers=False)

        snapshot = await monitor.run_cycle()
        await monitor.shutdown()

        assert snapshot.value('fake_node_healthy') == 0
        assert snapshot.value('fake_collector_scrape_success') == 0

    @pytest.mark.asyncio
    async def test_write_failure_still_updates_served_snapshot(self, make_monitor, make_settings, tmp_path):
        settings = make_settings('fake', 'http://127.0.0.1:1', metrics_file=str(tmp_path / 'missing' / 'm.prom'))
        monitor = make_monitor(settings)

        first = await monitor.run_cycle()
        second = await monitor.run_cycle()
        await monitor.shutdown()

        assert monitor.write_failures == 2
        assert first.value('fake_collector_snapshot_write_failures') == 0
        assert second.value('fake_collector_snapshot_write_failures') == 1
        assert monitor.state.snapshot is second
        assert b'fake_node_healthy 1.0' in monitor.state.exposition()

    @pytest.mark.asyncio
    async def test_external_data_is_fetched_once_per_interval(self, make_monitor, clock):
        monitor = make_monitor()

        for _ in range(5):
            await monitor.run_cycle()
            clock.now += 15
        await monitor.shutdown()

        assert monitor.plugin.fetches == 1


class TestLoop:

    @pytest.mark.asyncio
    async def test_shutdown_stops_the_loop_without_waiting_out_the_interval(self, make_monitor, make_settings):
        monitor = make_monitor(make_settings('fake', 'http://127.0.0.1:1', scrape_interval=3600))

        task = asyncio.ensure_future(monitor.collect_metrics())
        while monitor.cycles == 0:
            await asyncio.sleep(0.01)
        await monitor.shutdown()
        await asyncio.wait_for(task, timeout=5)

        assert monitor.cycles == 1
        assert monitor.running is False
