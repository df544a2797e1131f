import os

import pytest

from chain_collector.chains import SyncState, lag
from chain_collector.metrics import SnapshotBuilder
from chain_collector.renderer import publish, render


def sample_snapshot(version='1.2.3', healthy=True):
    builder = SnapshotBuilder('algorand', timestamp=1_700_000_000)
    builder.gauge('collector_scrape_timestamp_seconds', 'Unix timestamp of last scrape', 1_700_000_000)
    builder.flag('node_healthy', 'Whether the node is healthy (1=healthy, 0=unhealthy)', healthy)
    builder.gauge('node_last_round', 'Last committed round number', 45_000_000)
    builder.labeled('chain_bootstrapped', 'Whether a chain is bootstrapped', 'chain', {'P': True, 'X': False})
    builder.counter('transaction_count', 'Total transaction count', 12)
    builder.info('node_version_info', 'Algorand node version', version)
    return builder.build()


class TestExposition:

    def test_help_type_and_value_lines(self):
        text = render(sample_snapshot()).decode()

        assert '# HELP algorand_node_healthy Whether the node is healthy (1=healthy, 0=unhealthy)\n' in text
        assert '# TYPE algorand_node_healthy gauge\n' in text
        assert 'algorand_node_healthy 1.0\n' in text
        assert 'algorand_node_last_round 4.5e+07\n' in text
        assert 'algorand_chain_bootstrapped{chain="P"} 1.0\n' in text
        assert 'algorand_chain_bootstrapped{chain="X"} 0.0\n' in text
        assert '# TYPE algorand_transaction_count counter\n' in text
        assert 'algorand_transaction_count_total 12.0\n' in text

    def test_info_pattern_carries_version_in_label(self):
        text = render(sample_snapshot(version='3.27.0')).decode()

        assert 'algorand_node_version_info{version="3.27.0"} 1.0\n' in text

    def test_missing_version_renders_unknown(self):
        text = render(sample_snapshot(version=None)).decode()

        assert 'algorand_node_version_info{version="unknown"} 1.0\n' in text

    def test_rendering_is_byte_identical(self):
        assert render(sample_snapshot()) == render(sample_snapshot())

    def test_metric_order_follows_declaration(self):
        text = render(sample_snapshot()).decode()
        types = [line.split()[2] for line in text.splitlines() if line.startswith('# TYPE')]

        assert types == [
            'algorand_collector_scrape_timestamp_seconds',
            'algorand_node_healthy',
            'algorand_node_last_round',
            'algorand_chain_bootstrapped',
            'algorand_transaction_count',
            'algorand_node_version_info',
        ]

    def test_every_value_line_has_a_number(self):
        builder = SnapshotBuilder('solana')
        builder.gauge('nothing', 'Missing value', None)
        builder.gauge('not_a_number', 'Malformed value', 'abc')
        builder.gauge('nan', 'NaN value', float('nan'))
        text = render(builder.build()).decode()

        for line in text.splitlines():
            if not line.startswith('#'):
                assert line.split()[-1] == '0.0'


class TestSnapshotBuilder:

    def test_flag_is_one_or_zero(self):
        builder = SnapshotBuilder('solana')
        builder.flag('up', 'Up', True).flag('down', 'Down', False).flag('missing', 'Missing', None)
        snapshot = builder.build()

        assert snapshot.value('solana_up') == 1.0
        assert snapshot.value('solana_down') == 0.0
        assert snapshot.value('solana_missing') == 0.0

    def test_duplicate_metric_is_rejected(self):
        builder = SnapshotBuilder('solana')
        builder.gauge('node_slot', 'Current slot number', 1)

        with pytest.raises(ValueError):
            builder.flag('node_slot', 'Current slot number', True)

    def test_snapshot_is_immutable(self):
        snapshot = sample_snapshot()

        with pytest.raises(AttributeError):
            snapshot.timestamp = 0


class TestLag:

    @pytest.mark.parametrize('network, local, expected', [
        (110, 100, 10),
        (100, 110, 0),
        (0, 100, 0),
        (100, 0, 0),
    ])
    def test_lag_is_never_negative(self, network, local, expected):
        assert lag(network, local) == expected

    def test_sync_state_clamps_behind(self):
        assert SyncState(behind=-5).behind == 0


class TestPublish:

    def test_publish_replaces_file_without_leftovers(self, tmp_path):
        path = tmp_path / 'metrics.prom'
        path.write_bytes(b'# old\n')

        publish(render(sample_snapshot()), str(path))

        assert path.read_bytes() == render(sample_snapshot())
        assert os.listdir(tmp_path) == ['metrics.prom']

    def test_publish_failure_raises(self, tmp_path):
        with pytest.raises(OSError):
            publish(b'# new\n', str(tmp_path / 'missing' / 'metrics.prom'))
