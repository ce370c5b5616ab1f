import asyncio
import logging
from urllib.parse import urlparse

from aiohttp import web, ClientPayloadError, ClientConnectionError

from config import STREAM_CHUNK_SIZE
from services.manifest_rewriter import ManifestRewriter
from services.upstream_fetcher import UpstreamTimeout

logger = logging.getLogger(__name__)

DEFAULT_MANIFEST_TYPE = 'application/vnd.apple.mpegurl'

# Upstream headers that survive the binary passthrough
FORWARDED_HEADERS = ('Content-Type', 'Content-Range', 'Content-Length', 'Accept-Ranges',
                     'Cache-Control', 'ETag', 'Last-Modified')

CORS_HEADERS = {'Access-Control-Allow-Origin': '*'}


def is_manifest(url: str, content_type: str) -> bool:
    return urlparse(url).path.lower().endswith('.m3u8') or 'mpegurl' in (content_type or '').lower()


async def relay_response(request, upstream, url: str, direct: bool = False, referer: str = None):
    """Turns an upstream response into the client response.

    The upstream response is always released before this returns.
    """
    try:
        if upstream.status in (403, 404):
            logger.warning(f"🚫 Upstream returned {upstream.status} for {url}")
            return web.Response(
                text=f"Upstream returned {upstream.status}",
                status=upstream.status,
                headers=CORS_HEADERS
            )

        content_type = upstream.headers.get('Content-Type', '')
        if 200 <= upstream.status < 300 and is_manifest(url, content_type):
            return await _relay_manifest(upstream, url, direct, referer)

        return await _relay_binary(request, upstream, url)
    finally:
        upstream.release()


async def _relay_manifest(upstream, url, direct, referer):
    try:
        content_bytes = await upstream.read()
    except asyncio.TimeoutError:
        logger.warning(f"⏱️ Manifest body stalled: {url}")
        raise UpstreamTimeout("manifest body stalled past the read timeout")
    try:
        manifest_content = content_bytes.decode('utf-8')
    except UnicodeDecodeError:
        logger.warning(f"⚠️ Binary body behind manifest URL {url}. Serving as binary.")
        return web.Response(
            body=content_bytes,
            status=upstream.status,
            headers={'Content-Type': 'application/octet-stream', **CORS_HEADERS}
        )

    rewritten_manifest = ManifestRewriter.rewrite(manifest_content, url, direct=direct, referer=referer)

    headers = {
        'Content-Type': upstream.headers.get('Content-Type') or DEFAULT_MANIFEST_TYPE,
        **CORS_HEADERS
    }
    if 'Cache-Control' in upstream.headers:
        headers['Cache-Control'] = upstream.headers['Cache-Control']

    return web.Response(text=rewritten_manifest, status=200, headers=headers)


async def _relay_binary(request, upstream, url):
    response_headers = {}
    for header in FORWARDED_HEADERS:
        if header in upstream.headers:
            response_headers[header] = upstream.headers[header]

    # aiohttp hands us the decoded body, so the encoded length no longer applies
    if 'Content-Encoding' in upstream.headers:
        response_headers.pop('Content-Length', None)

    response_headers.update(CORS_HEADERS)

    response = web.StreamResponse(status=upstream.status, headers=response_headers)
    await response.prepare(request)

    try:
        async for chunk in upstream.content.iter_chunked(STREAM_CHUNK_SIZE):
            await response.write(chunk)
    except asyncio.CancelledError:
        upstream.close()
        raise
    except ConnectionResetError:
        # Client went away: drop the upstream connection instead of draining it
        logger.info(f"ℹ️ Client disconnected from stream: {url}")
        upstream.close()
        return response
    except (ClientPayloadError, ClientConnectionError, asyncio.TimeoutError) as e:
        # Headers are already out, so the body ends truncated
        logger.warning(f"⚠️ Connection lost with source: {url} ({e})")
        upstream.close()
        return response

    await response.write_eof()
    return response
