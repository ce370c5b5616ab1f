import os
import logging
import random
from dotenv import load_dotenv

load_dotenv() # Load variables from .env file

LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()

logging.basicConfig(
    level=getattr(logging, LOG_LEVEL, logging.INFO),
    format='%(asctime)s - %(levelname)s - %(message)s'
)

logger = logging.getLogger(__name__)

# --- Outbound proxy configuration ---
def parse_proxies(proxy_env_var: str) -> list:
    """Parses a comma-separated proxy string from an environment variable."""
    proxies_str = os.environ.get(proxy_env_var, "").strip()
    if proxies_str:
        return [p.strip() for p in proxies_str.split(',') if p.strip()]
    return []

def parse_transport_routes(routes_str: str = None) -> list:
    """Parses TRANSPORT_ROUTES in the format {URL=domain, PROXY=proxy, DISABLE_SSL=true/false}, {URL=domain2, PROXY=proxy2}"""
    if routes_str is None:
        routes_str = os.environ.get('TRANSPORT_ROUTES', "")
    routes_str = routes_str.strip()
    if not routes_str:
        return []

    routes = []
    try:
        route_parts = [part.strip() for part in routes_str.replace(' ', '').split('},{')]

        for part in route_parts:
            if not part:
                continue

            part = part.strip('{}')

            url_match = None
            proxy_match = None
            disable_ssl_match = None

            for item in part.split(','):
                if item.startswith('URL='):
                    url_match = item[4:]
                elif item.startswith('PROXY='):
                    proxy_match = item[6:]
                elif item.startswith('DISABLE_SSL='):
                    disable_ssl_match = item[12:].lower() in ('true', '1', 'yes', 'on')

            if url_match:
                routes.append({
                    'url': url_match,
                    'proxy': proxy_match if proxy_match else None,
                    'disable_ssl': disable_ssl_match if disable_ssl_match is not None else False
                })

    except Exception as e:
        logger.warning(f"Error parsing TRANSPORT_ROUTES: {e}")

    return routes

def get_proxy_for_url(url: str, transport_routes: list, global_proxies: list) -> str:
    """Finds the appropriate proxy for a URL based on TRANSPORT_ROUTES"""
    if not url or not transport_routes:
        return random.choice(global_proxies) if global_proxies else None

    for route in transport_routes:
        if route['url'] in url:
            # An empty PROXY on a matching route means direct connection
            return route['proxy']

    return random.choice(global_proxies) if global_proxies else None

def get_ssl_setting_for_url(url: str, transport_routes: list) -> bool:
    """Determines if SSL should be disabled for a URL based on TRANSPORT_ROUTES"""
    if not url or not transport_routes:
        return False

    for route in transport_routes:
        if route['url'] in url:
            return route.get('disable_ssl', False)

    return False

GLOBAL_PROXIES = parse_proxies('GLOBAL_PROXY')
TRANSPORT_ROUTES = parse_transport_routes()

if GLOBAL_PROXIES: logging.info(f"🌍 Loaded {len(GLOBAL_PROXIES)} global proxies.")
if TRANSPORT_ROUTES: logging.info(f"🚦 Loaded {len(TRANSPORT_ROUTES)} transport rules.")

HOST = os.environ.get("HOST", "0.0.0.0")
PORT = int(os.environ.get("PORT", 7860))

# --- Upstream fetch policy ---
FETCH_MAX_RETRIES = int(os.environ.get("FETCH_MAX_RETRIES", 2))
FETCH_TIMEOUT = float(os.environ.get("FETCH_TIMEOUT", 15))
FETCH_BACKOFF = float(os.environ.get("FETCH_BACKOFF", 0.5))  # seconds, multiplied by attempt number
STREAM_CHUNK_SIZE = int(os.environ.get("STREAM_CHUNK_SIZE", 65536))

if FETCH_MAX_RETRIES < 0:
    logging.warning(f"⚠️ Invalid FETCH_MAX_RETRIES '{FETCH_MAX_RETRIES}'. Using 0.")
    FETCH_MAX_RETRIES = 0

# --- Browser impersonation defaults ---
DEFAULT_USER_AGENT = os.environ.get(
    "DEFAULT_USER_AGENT",
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/136.0.0.0 Safari/537.36"
)
DEFAULT_ACCEPT = "*/*"
DEFAULT_ACCEPT_LANGUAGE = "en-US,en;q=0.9"

# --- Token obfuscation ---
XOR_KEY = int(os.environ.get("XOR_KEY", 125))
