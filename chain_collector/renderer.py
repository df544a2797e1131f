import os
import logging
import tempfile
from prometheus_client import CollectorRegistry, generate_latest
from prometheus_client.core import CounterMetricFamily, GaugeMetricFamily
from .metrics import COUNTER, MetricSnapshot

logger = logging.getLogger(__name__)

CONTENT_TYPE = 'text/plain'
CHARSET = 'utf-8'
PLACEHOLDER = b'# No metrics available yet\n'


class SnapshotCollector:
    """prometheus_client collector that replays a frozen MetricSnapshot."""

    def __init__(self, snapshot: MetricSnapshot):
        self.snapshot = snapshot

    def collect(self):
        for family in self.snapshot.families:
            if family.kind == COUNTER:
                metric = CounterMetricFamily(family.name, family.documentation, labels=family.labelnames)
            else:
                metric = GaugeMetricFamily(family.name, family.documentation, labels=family.labelnames)
            for labelvalues, value in family.samples:
                metric.add_metric(list(labelvalues), value)
            yield metric


def render(snapshot: MetricSnapshot) -> bytes:
    """Prometheus text exposition for ``snapshot``; same input, same bytes."""
    registry = CollectorRegistry(auto_describe=False)
    registry.register(SnapshotCollector(snapshot))
    return generate_latest(registry)


def publish(data: bytes, path: str):
    """Replace ``path`` with ``data`` by writing a sibling temp file and renaming it over."""
    directory = os.path.dirname(os.path.abspath(path))
    fd, tmp_path = tempfile.mkstemp(prefix='.metrics-', suffix='.tmp', dir=directory)
    try:
        with os.fdopen(fd, 'wb') as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.chmod(tmp_path, 0o644)
        os.replace(tmp_path, path)
    except OSError:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise
