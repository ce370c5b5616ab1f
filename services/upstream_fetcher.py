import asyncio
import logging
from urllib.parse import urlparse

import aiohttp
from aiohttp import ClientSession, ClientTimeout, TCPConnector
from aiohttp_socks import ProxyConnector

from config import (
    GLOBAL_PROXIES, TRANSPORT_ROUTES, get_proxy_for_url, get_ssl_setting_for_url,
    FETCH_MAX_RETRIES, FETCH_TIMEOUT, FETCH_BACKOFF,
    DEFAULT_USER_AGENT, DEFAULT_ACCEPT, DEFAULT_ACCEPT_LANGUAGE,
)

logger = logging.getLogger(__name__)

RETRYABLE_STATUSES = {429}

# Client headers forwarded verbatim, and only when present
PASSTHROUGH_HEADERS = ('Range', 'Cookie', 'If-None-Match', 'If-Modified-Since')


class UpstreamError(Exception):
    """Base class for failures talking to the origin"""
    pass


class UpstreamTimeout(UpstreamError):
    """The final allowed attempt ran past the per-attempt timeout"""
    pass


class UpstreamFailure(UpstreamError):
    """Network errors or bad statuses persisted after every retry"""

    def __init__(self, message, status=None):
        super().__init__(message)
        self.status = status


def is_retryable_status(status: int) -> bool:
    return status in RETRYABLE_STATUSES or status >= 500


def build_request_headers(client_headers, url: str, referer: str = None) -> dict:
    """Merges client headers with browser-like defaults for the upstream request.

    Each header is either forwarded from the client or replaced by a fixed
    default. Nothing outside this table reaches the origin.
    """
    client = {k.lower(): v for k, v in client_headers.items()}
    parsed = urlparse(url)
    headers = {
        'User-Agent': client.get('user-agent') or DEFAULT_USER_AGENT,
        'Accept': client.get('accept') or DEFAULT_ACCEPT,
        'Accept-Language': client.get('accept-language') or DEFAULT_ACCEPT_LANGUAGE,
        'Referer': referer or f"{parsed.scheme}://{parsed.netloc}/",
        # Compressed bodies break byte ranges, so stay on identity unless asked
        'Accept-Encoding': client.get('accept-encoding') or 'identity',
    }
    for name in PASSTHROUGH_HEADERS:
        value = client.get(name.lower())
        if value:
            headers[name] = value
    return headers


class UpstreamFetcher:
    """Retrieves upstream resources with retries, backoff and per-attempt timeouts"""

    def __init__(self, max_retries=FETCH_MAX_RETRIES, timeout=FETCH_TIMEOUT, backoff=FETCH_BACKOFF):
        self.max_retries = max_retries
        self.timeout = timeout
        self.backoff = backoff

        # Shared session for direct connections
        self.session = None

        # Cache for proxy sessions (proxy_url -> session)
        self.proxy_sessions = {}

    async def _get_session(self):
        if self.session is None or self.session.closed:
            connector = TCPConnector(
                limit=0,
                limit_per_host=0,
                keepalive_timeout=60,
                enable_cleanup_closed=True
            )
            # Headers are bounded by fetch(); sock_read is an idle limit, so long bodies still finish
            self.session = ClientSession(
                timeout=ClientTimeout(total=None, sock_connect=self.timeout, sock_read=self.timeout),
                connector=connector
            )
        return self.session

    async def _get_proxy_session(self, url: str):
        """Get a session with proxy support for the given URL.

        Sessions are cached and reused for the same proxy.
        """
        proxy = get_proxy_for_url(url, TRANSPORT_ROUTES, GLOBAL_PROXIES)

        if proxy:
            cached_session = self.proxy_sessions.get(proxy)
            if cached_session is not None and not cached_session.closed:
                logger.debug(f"♻️ Reusing cached proxy session: {proxy}")
                return cached_session
            self.proxy_sessions.pop(proxy, None)

            logger.info(f"🌍 Creating proxy session: {proxy}")
            try:
                connector = ProxyConnector.from_url(
                    proxy,
                    limit=0,
                    limit_per_host=0,
                    keepalive_timeout=60
                )
                session = ClientSession(
                    timeout=ClientTimeout(total=None, sock_connect=self.timeout, sock_read=self.timeout),
                    connector=connector
                )
                self.proxy_sessions[proxy] = session
                return session
            except Exception as e:
                logger.warning(f"⚠️ Failed to create proxy connector: {e}, falling back to direct")

        return await self._get_session()

    async def fetch(self, url: str, headers: dict, max_retries: int = None, timeout: float = None):
        """Fetches ``url`` and returns the open aiohttp response.

        The caller owns the response and must release it. Raises
        UpstreamTimeout when the last attempt times out and UpstreamFailure
        when retries run out on network errors or 429/5xx statuses.
        """
        max_retries = self.max_retries if max_retries is None else max_retries
        timeout = self.timeout if timeout is None else timeout
        attempts = max_retries + 1
        disable_ssl = get_ssl_setting_for_url(url, TRANSPORT_ROUTES)
        session = await self._get_proxy_session(url)

        last_error = None
        for attempt in range(1, attempts + 1):
            if attempt > 1:
                delay = self.backoff * (attempt - 1)
                logger.info(f"🔁 Retry {attempt - 1}/{max_retries} for {url} in {delay:.1f}s ({last_error})")
                await asyncio.sleep(delay)

            try:
                resp = await asyncio.wait_for(
                    session.get(url, headers=headers, allow_redirects=True, ssl=not disable_ssl),
                    timeout
                )
            except asyncio.TimeoutError:
                if attempt == attempts:
                    logger.warning(f"⏱️ Upstream timeout after {attempts} attempt(s): {url}")
                    raise UpstreamTimeout(f"no response within {timeout:g}s after {attempts} attempt(s)")
                last_error = f"timeout after {timeout:g}s"
                continue
            except (aiohttp.ClientError, OSError) as e:
                last_error = f"{type(e).__name__}: {e}" if str(e) else type(e).__name__
                logger.warning(f"⚠️ Network error on attempt {attempt}/{attempts} for {url}: {last_error}")
                continue

            if not is_retryable_status(resp.status):
                return resp

            resp.release()
            last_error = f"upstream returned HTTP {resp.status}"
            logger.warning(f"⚠️ Upstream returned {resp.status} on attempt {attempt}/{attempts} for {url}")
            if attempt == attempts:
                raise UpstreamFailure(last_error, status=resp.status)

        raise UpstreamFailure(last_error)

    async def close(self):
        if self.session and not self.session.closed:
            await self.session.close()

        for session in list(self.proxy_sessions.values()):
            if not session.closed:
                await session.close()
        self.proxy_sessions.clear()
