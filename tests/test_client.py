import aiohttp
import pytest
from aiohttp import web

from chain_collector.chains.avalanche import AvalanchePlugin
from chain_collector.client import NodeApi, as_float, as_int, dig


class TestFieldHelpers:

    @pytest.mark.parametrize('value, expected', [
        ('0x3e8', 1000),
        ('0X1A', 26),
        (' 42 ', 42),
        ('99.7', 99),
        (7, 7),
        (None, 0),
        (True, 0),
        ('abc', 0),
        ('0xzz', 0),
    ])
    def test_as_int(self, value, expected):
        assert as_int(value) == expected

    def test_as_float_rejects_non_finite(self):
        assert as_float('98.25') == 98.25
        assert as_float('nan') == 0.0
        assert as_float('inf') == 0.0
        assert as_float([]) == 0.0

    def test_dig(self):
        body = {'result': {'current': [{'nodePubkey': 'abc'}]}}

        assert dig(body, 'result', 'current', 0, 'nodePubkey') == 'abc'
        assert dig(body, 'result', 'current', 3) is None
        assert dig(body, 'result', 'missing', 'x') is None
        assert dig(None, 'result') is None


class TestNodeApiClose:

    @pytest.mark.asyncio
    async def test_closed_client_does_not_open_a_new_session(self, serve):
        async def status(request):
            return web.json_response({'last-round': 1000})

        app = web.Application()
        app.router.add_get('/v2/status', status)

        async with serve(app) as url:
            api = NodeApi(url)
            assert await api.get_json('/v2/status') == {'last-round': 1000}
            session = api._session
            await api.close()

            assert await api.get_json('/v2/status') is None
            assert await api.post_json('/v2/status', {}) is None
            assert api._session is session
            assert session.closed
            assert api.succeeded == 1
            assert api.failed == 2

    @pytest.mark.asyncio
    async def test_close_before_first_request(self):
        api = NodeApi('http://127.0.0.1:1')
        await api.close()

        assert await api.rpc('getHealth') is None
        assert api._session is None


class TestPluginClose:

    @pytest.mark.asyncio
    async def test_external_session_is_not_reopened_after_close(self, make_settings):
        plugin = AvalanchePlugin(make_settings('avalanche', 'http://127.0.0.1:1'))
        await plugin.close()

        with pytest.raises(aiohttp.ClientConnectionError):
            plugin.external_session
        assert plugin._external_session is None
