from aiohttp import web
import logging
from .monitor import CollectorState
from .renderer import CHARSET, CONTENT_TYPE

logger = logging.getLogger(__name__)

STATE_KEY = web.AppKey('state', CollectorState)


def create_web_app(state: CollectorState) -> web.Application:
    app = web.Application()
    app[STATE_KEY] = state
    # every path answers with the current snapshot
    app.router.add_get('/{tail:.*}', metrics_handler)
    return app


async def metrics_handler(request):
    state = request.app[STATE_KEY]
    return web.Response(
        body=state.exposition(),
        content_type=CONTENT_TYPE,
        charset=CHARSET,
    )
