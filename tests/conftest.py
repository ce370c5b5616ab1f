import pytest
from aiohttp import web


def _recording(handler, hits):
    async def wrapper(request):
        hits.append((request.path, dict(request.headers)))
        return await handler(request)
    return wrapper


@pytest.fixture
def origin(aiohttp_server):
    """Starts a fake upstream server from a {path: handler} mapping.

    Every request is recorded in ``server.hits`` as (path, headers).
    """
    async def start(routes):
        hits = []
        app = web.Application()
        for path, handler in routes.items():
            app.router.add_get(path, _recording(handler, hits))
        server = await aiohttp_server(app)
        server.hits = hits
        return server
    return start
