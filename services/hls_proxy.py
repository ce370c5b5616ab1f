import logging

from aiohttp import web

from services.upstream_fetcher import UpstreamFetcher, UpstreamTimeout, UpstreamFailure, build_request_headers
from services.response_relay import relay_response
from utils.reference_codec import decode, DecodeError

logger = logging.getLogger(__name__)


class HLSProxy:
    """Obfuscated-link HLS proxy: resolves /pp tokens, rewrites manifests and relays segments"""

    def __init__(self, fetcher: UpstreamFetcher = None):
        self.fetcher = fetcher or UpstreamFetcher()

    async def handle_proxy_request(self, request):
        """Handles GET /pp?jj=<token>&dd=<0|1>&ref=<referer>"""
        token = request.query.get('jj')
        if not token:
            return web.Response(text="Missing 'jj' parameter", status=400)

        direct = request.query.get('dd') == '1'
        referer = request.query.get('ref') or None

        try:
            url = decode(token)
        except DecodeError as e:
            logger.info(f"⛔ Rejected token: {e}")
            return web.Response(text="Invalid 'jj' parameter", status=400)

        logger.info(f"🔍 Proxying: {url} ({'direct' if direct else 'proxied'})")

        try:
            headers = build_request_headers(request.headers, url, referer)
            upstream = await self.fetcher.fetch(url, headers)
            return await relay_response(request, upstream, url, direct=direct, referer=referer)

        except UpstreamTimeout as e:
            return web.Response(text=f"Upstream timeout: {e}", status=504)

        except UpstreamFailure as e:
            logger.error(f"❌ Upstream failure for {url}: {e}")
            return web.Response(text=f"Proxy error: {e}", status=500)

        except Exception as e:
            logger.exception(f"❌ Generic error in stream proxy: {e}")
            return web.Response(text=f"Proxy error: {e}", status=500)

    async def handle_options(self, request):
        """Handles OPTIONS requests for CORS"""
        headers = {
            'Access-Control-Allow-Origin': '*',
            'Access-Control-Allow-Methods': 'GET, HEAD, OPTIONS',
            'Access-Control-Allow-Headers': 'Range, Content-Type',
            'Access-Control-Max-Age': '86400'
        }
        return web.Response(headers=headers)

    async def cleanup(self):
        """Resource cleanup"""
        try:
            await self.fetcher.close()
        except Exception as e:
            logger.error(f"Error during cleanup: {e}")
