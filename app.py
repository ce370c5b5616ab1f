import logging
import sys

from aiohttp import web

from config import HOST, PORT, FETCH_MAX_RETRIES, FETCH_TIMEOUT, FETCH_BACKOFF
from services.hls_proxy import HLSProxy
from services.upstream_fetcher import UpstreamFetcher

logger = logging.getLogger(__name__)


def create_app(max_retries=FETCH_MAX_RETRIES, timeout=FETCH_TIMEOUT, backoff=FETCH_BACKOFF):
    """Creates and configures the aiohttp application."""
    proxy = HLSProxy(UpstreamFetcher(max_retries=max_retries, timeout=timeout, backoff=backoff))

    app = web.Application()

    app.router.add_get('/pp', proxy.handle_proxy_request)

    # Generic OPTIONS handler for CORS
    app.router.add_route('OPTIONS', '/{tail:.*}', proxy.handle_options)

    async def cleanup_handler(app):
        await proxy.cleanup()
    app.on_cleanup.append(cleanup_handler)

    return app


def main():
    """Starts the proxy server."""
    if sys.platform == 'win32':
        # Avoid ConnectionResetError spam from the Windows proactor loop
        logging.getLogger('asyncio').setLevel(logging.CRITICAL)

    logger.info(f"✅ Proxy running on port {PORT}")
    logger.info(f"   • /pp?jj=<token>[&dd=1][&ref=<referer>] (retries={FETCH_MAX_RETRIES}, timeout={FETCH_TIMEOUT:g}s)")

    web.run_app(create_app(), host=HOST, port=PORT, print=None)


if __name__ == '__main__':
    main()
