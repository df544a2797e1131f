import contextlib

import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer
from chain_collector.config import Settings

COLLECTOR_ENV = (
    'CONFIG_PATH', 'CHAIN', 'NODE_API_URL', 'NODE_API_TOKEN', 'DATA_DIR', 'LISTEN_HOST', 'LISTEN_PORT',
    'SCRAPE_INTERVAL', 'EXTERNAL_DATA_INTERVAL', 'METRICS_FILE', 'CACHE_FILE', 'HEALTH_TIMEOUT',
    'REQUEST_TIMEOUT', 'EXTERNAL_TIMEOUT', 'LOG_LEVEL', 'ALGORAND_API', 'ALGORAND_TOKEN', 'ALGORAND_DATA',
    'AVALANCHE_RPC', 'SOLANA_RPC', 'ETHEREUM_RPC',
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in COLLECTOR_ENV:
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def make_settings(tmp_path):
    def factory(chain: str, node_api_url: str, **overrides) -> Settings:
        values = dict(
            chain=chain,
            node_api_url=node_api_url,
            listen_port=9100,
            data_dir=str(tmp_path),
            metrics_file=str(tmp_path / 'metrics.prom'),
            cache_file=str(tmp_path / 'external.cache'),
            health_timeout=1.0,
            request_timeout=2.0,
            external_timeout=2.0,
        )
        values.update(overrides)
        return Settings(**values)
    return factory


@pytest.fixture
def clock():
    """Controllable time source: call it for the time, set ``clock.now`` to move it."""
    class Clock:
        now = 1_700_000_000.0

        def __call__(self):
            return self.now

    return Clock()


@pytest.fixture
def rpc_handler():
    """Build an aiohttp handler answering JSON-RPC calls from a method -> result table.

    Values may be callables taking the params; methods missing from the table get a
    JSON-RPC "method not found" error. Every call is appended to ``handler.calls``.
    """
    def factory(methods):
        calls = []

        async def handle(request):
            body = await request.json()
            method = body.get('method')
            calls.append(method)
            reply = {'jsonrpc': '2.0', 'id': body.get('id')}
            if method not in methods:
                reply['error'] = {'code': -32601, 'message': f'method {method} not found'}
                return web.json_response(reply)
            result = methods[method]
            reply['result'] = result(body.get('params')) if callable(result) else result
            return web.json_response(reply)

        handle.calls = calls
        return handle
    return factory


@pytest.fixture
def serve():
    """``async with serve(app) as url``: run an aiohttp app on a local port for the test."""
    @contextlib.asynccontextmanager
    async def run(app):
        async with TestServer(app) as server:
            yield str(server.make_url('')).rstrip('/')
    return run
