"""
End-to-end tests for the /pp route against a fake origin.
"""
import asyncio
from urllib.parse import urlparse, parse_qs

from aiohttp import web

from app import create_app
from utils.reference_codec import decode, encode, encode_manifest

MANIFEST = "#EXTM3U\n#EXT-X-TARGETDURATION:10\n#EXTINF:10,\nseg001.ts\n#EXTINF:10,\nseg002.ts\n#EXT-X-ENDLIST\n"
SEGMENT = bytes(range(256)) * 16


async def manifest_handler(request):
    return web.Response(
        text=MANIFEST,
        content_type='application/vnd.apple.mpegurl',
        headers={'Cache-Control': 'max-age=2'}
    )


async def segment_handler(request):
    range_header = request.headers.get('Range')
    if range_header == 'bytes=0-99':
        return web.Response(
            status=206,
            body=SEGMENT[:100],
            content_type='video/mp2t',
            headers={'Content-Range': f'bytes 0-99/{len(SEGMENT)}', 'Accept-Ranges': 'bytes'}
        )
    return web.Response(body=SEGMENT, content_type='video/mp2t', headers={'ETag': '"seg1"'})


async def proxy_client(aiohttp_client, **kwargs):
    kwargs.setdefault('backoff', 0)
    kwargs.setdefault('timeout', 5)
    return await aiohttp_client(create_app(**kwargs))


async def test_missing_token(aiohttp_client):
    client = await proxy_client(aiohttp_client)
    resp = await client.get('/pp')
    assert resp.status == 400
    assert "Missing" in await resp.text()


async def test_invalid_token_fails_before_fetch(aiohttp_client):
    client = await proxy_client(aiohttp_client)
    resp = await client.get('/pp', params={'jj': 's.!!!notbase64'})
    assert resp.status == 400
    assert "Invalid" in await resp.text()


async def test_manifest_proxied_mode(aiohttp_client, origin):
    server = await origin({'/path/index.m3u8': manifest_handler, '/path/seg001.ts': segment_handler})
    client = await proxy_client(aiohttp_client)

    resp = await client.get('/pp', params={'jj': encode_manifest(str(server.make_url('/path/index.m3u8')))})
    assert resp.status == 200
    assert resp.headers['Access-Control-Allow-Origin'] == '*'
    assert resp.headers['Content-Type'].startswith('application/vnd.apple.mpegurl')
    assert resp.headers['Cache-Control'] == 'max-age=2'

    body = await resp.text()
    links = [line for line in body.splitlines() if line and not line.startswith('#')]
    assert len(links) == 2
    tokens = [parse_qs(urlparse(link).query)['jj'][0] for link in links]
    assert [decode(t) for t in tokens] == [
        str(server.make_url('/path/seg001.ts')),
        str(server.make_url('/path/seg002.ts')),
    ]

    # Following a rewritten link streams the segment back through the proxy
    seg = await client.get(links[0])
    assert seg.status == 200
    assert seg.headers['Content-Type'] == 'video/mp2t'
    assert seg.headers['ETag'] == '"seg1"'
    assert seg.headers['Access-Control-Allow-Origin'] == '*'
    assert await seg.read() == SEGMENT


async def test_manifest_direct_mode(aiohttp_client, origin):
    server = await origin({'/path/index.m3u8': manifest_handler})
    client = await proxy_client(aiohttp_client)

    resp = await client.get('/pp', params={'jj': encode_manifest(str(server.make_url('/path/index.m3u8'))), 'dd': '1'})
    assert resp.status == 200
    links = [line for line in (await resp.text()).splitlines() if line and not line.startswith('#')]
    assert links == [str(server.make_url('/path/seg001.ts')), str(server.make_url('/path/seg002.ts'))]


async def test_manifest_detected_by_content_type(aiohttp_client, origin):
    server = await origin({'/live/playlist': manifest_handler})
    client = await proxy_client(aiohttp_client)

    resp = await client.get('/pp', params={'jj': encode_manifest(str(server.make_url('/live/playlist'))), 'dd': '1'})
    assert str(server.make_url('/live/seg001.ts')) in await resp.text()


async def test_range_request_passthrough(aiohttp_client, origin):
    server = await origin({'/path/seg001.ts': segment_handler})
    client = await proxy_client(aiohttp_client)

    resp = await client.get(
        '/pp',
        params={'jj': encode(str(server.make_url('/path/seg001.ts')))},
        headers={'Range': 'bytes=0-99'}
    )
    assert resp.status == 206
    assert resp.headers['Content-Range'] == f'bytes 0-99/{len(SEGMENT)}'
    assert resp.headers['Accept-Ranges'] == 'bytes'
    assert await resp.read() == SEGMENT[:100]


async def test_referer_override(aiohttp_client, origin):
    server = await origin({'/path/index.m3u8': manifest_handler})
    client = await proxy_client(aiohttp_client)

    resp = await client.get('/pp', params={
        'jj': encode_manifest(str(server.make_url('/path/index.m3u8'))),
        'ref': 'https://player.example/',
    })
    body = await resp.text()

    _, headers = server.hits[0]
    assert headers['Referer'] == 'https://player.example/'
    link = next(line for line in body.splitlines() if line.startswith('/pp?'))
    assert parse_qs(urlparse(link).query)['ref'] == ['https://player.example/']


async def test_upstream_404_passthrough(aiohttp_client, origin):
    async def missing(request):
        return web.Response(status=404, text=MANIFEST, content_type='application/vnd.apple.mpegurl')

    server = await origin({'/path/index.m3u8': missing})
    client = await proxy_client(aiohttp_client)

    resp = await client.get('/pp', params={'jj': encode_manifest(str(server.make_url('/path/index.m3u8')))})
    assert resp.status == 404
    body = await resp.text()
    assert "#EXTM3U" not in body
    assert len(server.hits) == 1


async def test_non_2xx_manifest_is_not_rewritten(aiohttp_client, origin):
    async def gone(request):
        return web.Response(status=410, text=MANIFEST, content_type='application/vnd.apple.mpegurl')

    server = await origin({'/path/index.m3u8': gone})
    client = await proxy_client(aiohttp_client)

    resp = await client.get('/pp', params={'jj': encode_manifest(str(server.make_url('/path/index.m3u8')))})
    assert resp.status == 410
    assert await resp.text() == MANIFEST


async def test_retry_then_success(aiohttp_client, origin):
    calls = []

    async def flaky(request):
        calls.append(request.path)
        if len(calls) < 3:
            return web.Response(status=503)
        return await segment_handler(request)

    server = await origin({'/path/seg001.ts': flaky})
    client = await proxy_client(aiohttp_client, max_retries=2)

    resp = await client.get('/pp', params={'jj': encode(str(server.make_url('/path/seg001.ts')))})
    assert resp.status == 200
    assert await resp.read() == SEGMENT
    assert len(calls) == 3


async def test_retries_exhausted(aiohttp_client, origin):
    async def broken(request):
        return web.Response(status=502)

    server = await origin({'/path/seg001.ts': broken})
    client = await proxy_client(aiohttp_client, max_retries=1)

    resp = await client.get('/pp', params={'jj': encode(str(server.make_url('/path/seg001.ts')))})
    assert resp.status == 500
    assert "Proxy error" in await resp.text()
    assert len(server.hits) == 2


async def test_upstream_timeout_maps_to_504(aiohttp_client, origin):
    async def hang(request):
        await asyncio.sleep(1)
        return web.Response(body=SEGMENT)

    server = await origin({'/path/seg001.ts': hang})
    client = await proxy_client(aiohttp_client, max_retries=0, timeout=0.1)

    resp = await client.get('/pp', params={'jj': encode(str(server.make_url('/path/seg001.ts')))})
    assert resp.status == 504


async def test_cors_preflight(aiohttp_client):
    client = await proxy_client(aiohttp_client)
    resp = await client.options('/pp')
    assert resp.status == 200
    assert resp.headers['Access-Control-Allow-Origin'] == '*'
    assert 'Range' in resp.headers['Access-Control-Allow-Headers']


async def test_stalled_manifest_body_maps_to_504(aiohttp_client, origin):
    async def stalled(request):
        response = web.StreamResponse(headers={'Content-Type': 'application/vnd.apple.mpegurl'})
        await response.prepare(request)
        await response.write(b"#EXTM3U\n")
        await asyncio.sleep(2)
        return response

    server = await origin({'/path/index.m3u8': stalled})
    client = await proxy_client(aiohttp_client, max_retries=0, timeout=0.3)

    resp = await asyncio.wait_for(
        client.get('/pp', params={'jj': encode_manifest(str(server.make_url('/path/index.m3u8')))}),
        5
    )
    assert resp.status == 504


async def test_stalled_segment_body_ends_stream(aiohttp_client, origin):
    async def stalled(request):
        response = web.StreamResponse(headers={'Content-Type': 'video/mp2t'})
        await response.prepare(request)
        await response.write(SEGMENT[:188])
        await asyncio.sleep(2)
        return response

    server = await origin({'/path/seg001.ts': stalled})
    client = await proxy_client(aiohttp_client, max_retries=0, timeout=0.3)

    resp = await client.get('/pp', params={'jj': encode(str(server.make_url('/path/seg001.ts')))})
    assert resp.status == 200
    body = await asyncio.wait_for(resp.read(), 5)
    assert body == SEGMENT[:188]
